import pytest

from viewseq.deployment import (
    DeploymentError,
    DeployMethod,
    completion_redirect,
    is_debug,
    parse_deploy_method,
    participant_context,
)
from viewseq.models import DeployConfig


def _deploy(method: str, prolific_url: str = "") -> DeployConfig:
    return DeployConfig(
        experiment_id="1",
        server_app_url="http://localhost/",
        deploy_method=method,
        contact_email="lab@example.org",
        prolific_url=prolific_url,
    )


def test_parse_deploy_method_accepts_known_values() -> None:
    assert parse_deploy_method("directLink") is DeployMethod.DIRECT_LINK
    assert parse_deploy_method("MTurkSandbox") is DeployMethod.MTURK_SANDBOX


def test_parse_deploy_method_rejects_unknown_values() -> None:
    with pytest.raises(ValueError, match="expected one of"):
        parse_deploy_method("email")


def test_is_debug() -> None:
    assert is_debug(_deploy("debug")) is True
    assert is_debug(_deploy("directLink")) is False


def test_direct_link_ignores_parameters() -> None:
    assert participant_context("directLink", {"PROLIFIC_PID": "x", "foo": "bar"}) == {}


def test_prolific_requires_all_identifiers() -> None:
    with pytest.raises(DeploymentError) as info:
        participant_context("Prolific", {"PROLIFIC_PID": "p", "STUDY_ID": " "})
    assert "STUDY_ID" in str(info.value)
    assert "SESSION_ID" in str(info.value)
    assert "PROLIFIC_PID" not in str(info.value)


def test_mturk_context_keeps_optional_submit_target() -> None:
    context = participant_context(
        DeployMethod.MTURK,
        {"workerId": "w", "assignmentId": "a", "hitId": "h", "turkSubmitTo": "https://www.mturk.com/", "extra": "z"},
    )
    assert context == {"workerId": "w", "assignmentId": "a", "hitId": "h", "turkSubmitTo": "https://www.mturk.com/"}


def test_prolific_redirect_uses_completion_url() -> None:
    url = "https://app.prolific.ac/submissions/complete?cc=ABC"
    assert completion_redirect(_deploy("Prolific", url), {}) == url
    assert completion_redirect(_deploy("Prolific"), {}) is None


def test_mturk_redirect_carries_assignment_id() -> None:
    redirect = completion_redirect(_deploy("MTurk"), {"assignmentId": "A 1"})
    assert redirect == "https://www.mturk.com/mturk/externalSubmit?assignmentId=A+1"

    sandbox = completion_redirect(
        _deploy("MTurkSandbox"), {"assignmentId": "A1", "turkSubmitTo": "https://workersandbox.mturk.com/"}
    )
    assert sandbox == "https://workersandbox.mturk.com/mturk/externalSubmit?assignmentId=A1"


def test_other_methods_do_not_redirect() -> None:
    assert completion_redirect(_deploy("directLink"), {}) is None
    assert completion_redirect(_deploy("debug"), {}) is None
