"""Deployment platform glue: deploy methods, URL parameters and completion redirects."""

from __future__ import annotations

from collections.abc import Mapping
from enum import Enum
from urllib.parse import urlencode

from .models import DeployConfig

MTURK_SUBMIT_URL = "https://www.mturk.com/mturk/externalSubmit"
MTURK_SANDBOX_SUBMIT_URL = "https://workersandbox.mturk.com/mturk/externalSubmit"


class DeploymentError(ValueError):
    """Participant context is incomplete for the configured platform."""


class DeployMethod(str, Enum):
    """Supported ways of delivering the experiment."""

    DEBUG = "debug"
    DIRECT_LINK = "directLink"
    MTURK = "MTurk"
    MTURK_SANDBOX = "MTurkSandbox"
    PROLIFIC = "Prolific"


PLATFORM_PARAMETERS: dict[DeployMethod, tuple[str, ...]] = {
    DeployMethod.PROLIFIC: ("PROLIFIC_PID", "STUDY_ID", "SESSION_ID"),
    DeployMethod.MTURK: ("workerId", "assignmentId", "hitId"),
    DeployMethod.MTURK_SANDBOX: ("workerId", "assignmentId", "hitId"),
}

OPTIONAL_PARAMETERS: dict[DeployMethod, tuple[str, ...]] = {
    DeployMethod.MTURK: ("turkSubmitTo",),
    DeployMethod.MTURK_SANDBOX: ("turkSubmitTo",),
}


def parse_deploy_method(value: str) -> DeployMethod:
    """Return the deploy method for a configuration string."""
    try:
        return DeployMethod(value)
    except ValueError:
        allowed = ", ".join(method.value for method in DeployMethod)
        raise ValueError(f"Unknown deploy method '{value}' (expected one of: {allowed}).") from None


def is_debug(deploy: DeployConfig) -> bool:
    return parse_deploy_method(deploy.deploy_method) is DeployMethod.DEBUG


def participant_context(method: DeployMethod | str, params: Mapping[str, str]) -> dict[str, str]:
    """Extract platform identifiers from URL query parameters.

    Recruitment platforms must hand over their identifiers; a participant
    arriving without them cannot be credited, so they are required.
    """
    deploy_method = parse_deploy_method(method) if isinstance(method, str) else method
    required = PLATFORM_PARAMETERS.get(deploy_method, ())
    missing = [key for key in required if not str(params.get(key, "")).strip()]
    if missing:
        raise DeploymentError(f"Missing {deploy_method.value} parameters: {', '.join(missing)}")

    context: dict[str, str] = {}
    for key in required + OPTIONAL_PARAMETERS.get(deploy_method, ()):
        value = str(params.get(key, "")).strip()
        if value:
            context[key] = value
    return context


def completion_redirect(deploy: DeployConfig, context: Mapping[str, str]) -> str | None:
    """Return where to send a participant after submission, if anywhere."""
    method = parse_deploy_method(deploy.deploy_method)
    if method is DeployMethod.PROLIFIC:
        return deploy.prolific_url or None
    if method in (DeployMethod.MTURK, DeployMethod.MTURK_SANDBOX):
        default = MTURK_SUBMIT_URL if method is DeployMethod.MTURK else MTURK_SANDBOX_SUBMIT_URL
        submit_to = context.get("turkSubmitTo")
        base = f"{submit_to.rstrip('/')}/mturk/externalSubmit" if submit_to else default
        return f"{base}?{urlencode({'assignmentId': context.get('assignmentId', '')})}"
    return None
