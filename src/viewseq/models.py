"""Core domain models for counterbalanced view sequencing."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Condition(str, Enum):
    """Between-participants group a session is assigned to."""

    GROUP_A = "GroupA"
    GROUP_B = "GroupB"


class ViewRole(str, Enum):
    """What kind of screen a view is."""

    INTRODUCTION = "introduction"
    INSTRUCTIONS = "instructions"
    PRACTICE = "practice"
    MAIN_TRIAL_BLOCK = "main-trial-block"
    BREAK = "break"
    POST_TEST = "post-test"
    THANKS = "thanks"


@dataclass(frozen=True)
class ViewDescriptor:
    """One screen the participant will see."""

    name: str
    role: ViewRole
    title: str
    text: str = ""
    search_type: str | None = None
    trials: int = 0
    stimuli: tuple[str, ...] = ()
    wants_progress: bool = False


@dataclass(frozen=True)
class ProgressBarConfig:
    """Which views report progress and how the bar is drawn."""

    views: frozenset[str]
    style: str = "default"
    width: int = 100


@dataclass(frozen=True)
class DeployConfig:
    """Deployment descriptor passed through to submission and platform glue."""

    experiment_id: str
    server_app_url: str
    deploy_method: str
    contact_email: str
    prolific_url: str = ""


@dataclass(frozen=True)
class Experiment:
    """Complete declarative experiment definition."""

    id: str
    title: str
    catalog: dict[str, ViewDescriptor]
    templates: dict[Condition, tuple[str, ...]]
    progress_bar: ProgressBarConfig
    deploy: DeployConfig

    def template_views(self) -> dict[Condition, tuple[ViewDescriptor, ...]]:
        """Resolve every template from view names to descriptors."""
        return {
            condition: tuple(self.catalog[name] for name in names) for condition, names in self.templates.items()
        }
