"""Load declarative experiment definitions from bundled JSON resources."""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from importlib import resources
from pathlib import Path
from typing import Any

from .deployment import parse_deploy_method
from .models import Condition, DeployConfig, Experiment, ProgressBarConfig, ViewDescriptor, ViewRole
from .sequencer import PROGRESS_STYLES, ConfigurationError, build_progress_table, build_sequence

logger = logging.getLogger(__name__)

CONTENT_PACKAGE = "viewseq.content.experiments"
DEFAULT_EXPERIMENT = "visual_search"

PREFIX_ROLES = (ViewRole.INTRODUCTION, ViewRole.INSTRUCTIONS)
SUFFIX_ROLES = (ViewRole.POST_TEST, ViewRole.THANKS)


def _int_field(raw: dict[str, Any], key: str, default: int, owner: str) -> int:
    value = raw.get(key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{owner} has a non-integer '{key}': {value!r}.") from None


def _list_field(raw: dict[str, Any], key: str, owner: str) -> list[Any]:
    value = raw.get(key, [])
    if not isinstance(value, list):
        raise ConfigurationError(f"{owner} field '{key}' must be a list.")
    return value


def _object_field(raw: dict[str, Any], key: str) -> dict[str, Any]:
    value = raw.get(key, {})
    if not isinstance(value, dict):
        raise ConfigurationError(f"Experiment field '{key}' must be a JSON object.")
    return value


def _view_from_dict(raw: object) -> ViewDescriptor:
    """Build a view descriptor from raw JSON content."""
    if not isinstance(raw, dict):
        raise ConfigurationError(f"View entries must be JSON objects, got {raw!r}.")
    name = str(raw.get("name", "")).strip()
    if not name:
        raise ConfigurationError("View without a name.")
    try:
        role = ViewRole(str(raw.get("role", "")))
    except ValueError:
        raise ConfigurationError(f"View '{name}' has unknown role '{raw.get('role')}'.") from None

    trials = _int_field(raw, "trials", 0, f"View '{name}'")
    if trials < 0:
        raise ConfigurationError(f"View '{name}' has a negative trial count.")
    search_type = raw.get("search_type")
    return ViewDescriptor(
        name=name,
        role=role,
        title=str(raw.get("title", name)),
        text=str(raw.get("text", "")),
        search_type=str(search_type) if search_type is not None else None,
        trials=trials,
        stimuli=tuple(str(item) for item in _list_field(raw, "stimuli", f"View '{name}'")),
    )


def _progress_bar_from_dict(raw: dict[str, Any]) -> ProgressBarConfig:
    """Build progress bar settings from raw JSON content."""
    style = str(raw.get("style", "default"))
    if style not in PROGRESS_STYLES:
        raise ConfigurationError(f"Unknown progress bar style '{style}'.")
    width = _int_field(raw, "width", 100, "Progress bar")
    if width <= 0:
        raise ConfigurationError("Progress bar width must be positive.")
    return ProgressBarConfig(
        views=frozenset(str(item) for item in _list_field(raw, "in", "Progress bar")),
        style=style,
        width=width,
    )


def _deploy_from_dict(raw: dict[str, Any]) -> DeployConfig:
    """Build the deployment descriptor from raw JSON content."""
    method = str(raw.get("deploy_method", "debug"))
    try:
        parse_deploy_method(method)
    except ValueError as exc:
        raise ConfigurationError(str(exc)) from None
    return DeployConfig(
        experiment_id=str(raw.get("experiment_id", "")),
        server_app_url=str(raw.get("server_app_url", "")),
        deploy_method=method,
        contact_email=str(raw.get("contact_email", "")),
        prolific_url=str(raw.get("prolific_url", "")),
    )


def _experiment_from_dict(raw: dict[str, Any]) -> Experiment:
    """Build and validate an experiment from raw JSON content."""
    catalog: dict[str, ViewDescriptor] = {}
    for item in _list_field(raw, "views", "Experiment"):
        view = _view_from_dict(item)
        if view.name in catalog:
            raise ConfigurationError(f"Duplicate view name: {view.name}")
        catalog[view.name] = view

    templates: dict[Condition, tuple[str, ...]] = {}
    conditions = _object_field(raw, "conditions")
    for key in conditions:
        try:
            condition = Condition(key)
        except ValueError:
            raise ConfigurationError(f"Template for unknown condition '{key}'.") from None
        templates[condition] = tuple(str(name) for name in _list_field(conditions, key, "Conditions"))

    progress_bar = _progress_bar_from_dict(_object_field(raw, "progress_bar"))
    # Descriptors carry their progress membership so views can be rendered without the table.
    catalog = {name: replace(view, wants_progress=name in progress_bar.views) for name, view in catalog.items()}
    experiment = Experiment(
        id=str(raw.get("id", "experiment")),
        title=str(raw.get("title", "")),
        catalog=catalog,
        templates=templates,
        progress_bar=progress_bar,
        deploy=_deploy_from_dict(_object_field(raw, "deploy")),
    )
    validate_experiment(experiment)
    return experiment


def load_experiment(name: str = DEFAULT_EXPERIMENT) -> Experiment:
    """Load a bundled experiment definition."""
    entry = resources.files(CONTENT_PACKAGE).joinpath(f"{name}.json")
    if not entry.is_file():
        raise ConfigurationError(f"No bundled experiment named '{name}'.")
    return _load(entry.read_text(encoding="utf-8-sig"), source=f"bundled:{name}")


def load_experiment_from_file(path: Path | str) -> Experiment:
    """Load an experiment definition from a JSON file."""
    file_path = Path(path)
    try:
        text = file_path.read_text(encoding="utf-8-sig")
    except (OSError, UnicodeDecodeError) as exc:
        logger.error("Cannot read experiment file %s: %s", file_path, exc)
        raise ConfigurationError(f"Cannot read experiment file {file_path}: {exc}") from None
    return _load(text, source=str(file_path))


def _load(text: str, source: str) -> Experiment:
    try:
        raw: object = json.loads(text)
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Experiment file {source} must contain a JSON object.")
        experiment = _experiment_from_dict(raw)
    except json.JSONDecodeError as exc:
        logger.error("Experiment definition %s is not valid JSON: %s", source, exc)
        raise ConfigurationError(f"Experiment file {source} is not valid JSON: {exc}") from None
    except ConfigurationError as exc:
        logger.error("Invalid experiment definition %s: %s", source, exc)
        raise
    logger.debug("Loaded experiment %s from %s", experiment.id, source)
    return experiment


def validate_experiment(experiment: Experiment) -> None:
    """Raise ConfigurationError unless the experiment can run for every condition."""
    _validate_templates(experiment)
    _validate_prefix_and_suffix(experiment)
    _validate_breaks(experiment)
    _validate_progress_bar(experiment)


def _validate_templates(experiment: Experiment) -> None:
    """Validate one non-empty template per condition over known, unique views."""
    for condition in Condition:
        if condition not in experiment.templates:
            raise ConfigurationError(f"Missing view template for condition '{condition.value}'.")

    for condition, names in experiment.templates.items():
        if not names:
            raise ConfigurationError(f"View template for condition '{condition.value}' is empty.")
        seen: set[str] = set()
        for name in names:
            if name not in experiment.catalog:
                raise ConfigurationError(f"Condition '{condition.value}' references unknown view '{name}'.")
            if name in seen:
                raise ConfigurationError(f"Condition '{condition.value}' lists view '{name}' twice.")
            seen.add(name)


def _validate_prefix_and_suffix(experiment: Experiment) -> None:
    """Validate that all templates share the introduction prefix and thanks suffix."""
    prefixes = {names[:2] for names in experiment.templates.values()}
    suffixes = {names[-2:] for names in experiment.templates.values()}
    if len(prefixes) != 1:
        raise ConfigurationError("Condition templates do not share the same opening views.")
    if len(suffixes) != 1:
        raise ConfigurationError("Condition templates do not share the same closing views.")

    prefix = next(iter(prefixes))
    suffix = next(iter(suffixes))
    prefix_roles = tuple(experiment.catalog[name].role for name in prefix)
    suffix_roles = tuple(experiment.catalog[name].role for name in suffix)
    if prefix_roles != PREFIX_ROLES:
        raise ConfigurationError(f"Templates must open with introduction and instructions, got {list(prefix)}.")
    if suffix_roles != SUFFIX_ROLES:
        raise ConfigurationError(f"Templates must close with post-test and thanks, got {list(suffix)}.")


def _validate_breaks(experiment: Experiment) -> None:
    """Validate that every main block is followed by exactly one break."""
    for condition, names in experiment.templates.items():
        body_end = len(names) - len(SUFFIX_ROLES)
        roles = [experiment.catalog[name].role for name in names]
        for index, role in enumerate(roles):
            if role is not ViewRole.MAIN_TRIAL_BLOCK:
                continue
            if index == body_end - 1:
                continue
            follows_break = index + 1 < len(roles) and roles[index + 1] is ViewRole.BREAK
            double_break = index + 2 < len(roles) and roles[index + 2] is ViewRole.BREAK
            if not follows_break or double_break:
                raise ConfigurationError(
                    f"Condition '{condition.value}': main block '{names[index]}' must be followed by exactly one break."
                )


def _validate_progress_bar(experiment: Experiment) -> None:
    """Validate that progress-tracked views exist in every condition's sequence."""
    unknown = sorted(experiment.progress_bar.views - set(experiment.catalog))
    if unknown:
        raise ConfigurationError(f"Progress bar references unknown views: {', '.join(unknown)}")
    templates = experiment.template_views()
    for condition in templates:
        build_progress_table(build_sequence(templates, condition), experiment.progress_bar.views)


def collect_preload_urls(experiment: Experiment) -> list[str]:
    """Return every stimulus locator of the catalog, de-duplicated in catalog order."""
    urls: list[str] = []
    seen: set[str] = set()
    for view in experiment.catalog.values():
        for url in view.stimuli:
            if url not in seen:
                seen.add(url)
                urls.append(url)
    return urls
