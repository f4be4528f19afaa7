from dataclasses import replace
from typing import Any

from conftest import RecordingSubmitter
from fastapi.testclient import TestClient

from viewseq.models import Experiment
from viewseq.service import ExperimentService
from viewseq.submission import SubmissionResult
from viewseq.web import create_app


def _finish(client: TestClient, session_id: str) -> dict[str, Any]:
    body = client.get(f"/sessions/{session_id}/view").json()
    while not body["finished"]:
        view = body["view"]
        trials = [{"response": "absent", "rt": 612}] if view["trials"] else []
        response = client.post(f"/sessions/{session_id}/complete", json={"view_name": view["name"], "trials": trials})
        assert response.status_code == 200
        body = response.json()
    return body


def test_create_session_returns_first_view_and_preload(service: ExperimentService) -> None:
    client = TestClient(create_app(service))
    response = client.post("/sessions")
    assert response.status_code == 200
    body = response.json()
    assert body["view"]["name"] == "intro"
    assert body["position"] == 0
    assert body["length"] == 27
    assert body["progress"] is None
    assert len(body["preload"]) == 8


def test_tracked_views_carry_progress(service: ExperimentService) -> None:
    client = TestClient(create_app(service))
    session_id = client.post("/sessions").json()["session_id"]
    for name in ("intro", "instructions"):
        body = client.post(f"/sessions/{session_id}/complete", json={"view_name": name}).json()
    assert body["view"]["role"] == "practice"
    assert body["progress"]["index"] == 1
    assert body["progress"]["total"] == 8
    assert body["progress"]["style"] == "separate"


def test_stale_completion_does_not_advance(service: ExperimentService) -> None:
    client = TestClient(create_app(service))
    session_id = client.post("/sessions").json()["session_id"]
    client.post(f"/sessions/{session_id}/complete", json={"view_name": "intro"})
    body = client.post(f"/sessions/{session_id}/complete", json={"view_name": "intro"}).json()
    assert body["advanced"] is False
    assert body["view"]["name"] == "instructions"
    assert body["position"] == 1


def test_full_walk_submits_results(service: ExperimentService, submitter: RecordingSubmitter) -> None:
    client = TestClient(create_app(service))
    session_id = client.post("/sessions").json()["session_id"]
    body = _finish(client, session_id)

    assert body["finished"] is True
    assert body["submitted"] is True
    assert body["view"] is None
    assert body["results"] is None
    assert len(submitter.calls) == 1
    assert client.get(f"/sessions/{session_id}/view").json()["finished"] is True


def test_submit_before_finish_conflicts(service: ExperimentService) -> None:
    client = TestClient(create_app(service))
    session_id = client.post("/sessions").json()["session_id"]
    response = client.post(f"/sessions/{session_id}/submit")
    assert response.status_code == 409


def test_failed_submission_can_be_retried(experiment: Experiment) -> None:
    submitter = RecordingSubmitter([SubmissionResult(success=False, status_code=502, error="bad gateway")])
    svc = ExperimentService(":memory:", experiment=experiment, submitter=submitter)  # type: ignore[arg-type]
    client = TestClient(create_app(svc))
    session_id = client.post("/sessions").json()["session_id"]
    body = _finish(client, session_id)
    assert body["submitted"] is False
    assert body["submission_error"] == "bad gateway"

    retry = client.post(f"/sessions/{session_id}/submit").json()
    assert retry["success"] is True
    assert retry["status_code"] == 200
    svc.close()


def test_unknown_session_is_not_found(service: ExperimentService) -> None:
    client = TestClient(create_app(service))
    assert client.get("/sessions/nope/view").status_code == 404
    assert client.post("/sessions/nope/complete", json={"view_name": "intro"}).status_code == 404


def test_monitor_hidden_outside_debug(service: ExperimentService) -> None:
    client = TestClient(create_app(service))
    session_id = client.post("/sessions").json()["session_id"]
    assert client.get(f"/sessions/{session_id}/monitor").status_code == 404


def test_debug_deployment_exposes_monitor_and_results(experiment: Experiment) -> None:
    debug = replace(experiment, deploy=replace(experiment.deploy, deploy_method="debug"))
    submitter = RecordingSubmitter()
    svc = ExperimentService(":memory:", experiment=debug, submitter=submitter)  # type: ignore[arg-type]
    client = TestClient(create_app(svc))
    session_id = client.post("/sessions").json()["session_id"]

    monitor = client.get(f"/sessions/{session_id}/monitor").json()
    assert monitor["current"] == "intro"
    assert monitor["session_id"] == session_id

    body = _finish(client, session_id)
    assert body["submitted"] is True
    assert body["results"]["deploy_method"] == "debug"
    assert len(body["results"]["trials"]) == 8
    assert submitter.calls == []
    svc.close()


def test_prolific_parameters_are_required(experiment: Experiment) -> None:
    prolific = replace(experiment, deploy=replace(experiment.deploy, deploy_method="Prolific"))
    svc = ExperimentService(":memory:", experiment=prolific, submitter=RecordingSubmitter())  # type: ignore[arg-type]
    client = TestClient(create_app(svc))
    assert client.post("/sessions").status_code == 400

    created = client.post("/sessions", params={"PROLIFIC_PID": "p", "STUDY_ID": "s", "SESSION_ID": "x"})
    assert created.status_code == 200
    body = _finish(client, created.json()["session_id"])
    assert body["redirect_url"] == experiment.deploy.prolific_url
    svc.close()


def test_progress_carries_bar_fraction(service: ExperimentService) -> None:
    client = TestClient(create_app(service))
    session_id = client.post("/sessions").json()["session_id"]
    for name in ("intro", "instructions"):
        body = client.post(f"/sessions/{session_id}/complete", json={"view_name": name}).json()
    assert body["progress"]["fraction"] == 0.0


def test_default_style_fraction_counts_earlier_trials(experiment: Experiment) -> None:
    default_bar = replace(experiment.progress_bar, style="default")
    svc = ExperimentService(":memory:", experiment=replace(experiment, progress_bar=default_bar), submitter=RecordingSubmitter())  # type: ignore[arg-type]
    client = TestClient(create_app(svc))
    session_id = client.post("/sessions").json()["session_id"]
    body = client.get(f"/sessions/{session_id}/view").json()
    while body["progress"] is None or body["progress"]["index"] < 2:
        body = client.post(f"/sessions/{session_id}/complete", json={"view_name": body["view"]["name"]}).json()

    progress = body["progress"]
    assert progress["trial_offset"] == 8
    assert progress["fraction"] == progress["trial_offset"] / progress["total_trials"]
    svc.close()


def test_finished_session_view_has_no_current_view(service: ExperimentService) -> None:
    client = TestClient(create_app(service))
    session_id = client.post("/sessions").json()["session_id"]
    _finish(client, session_id)
    body = client.get(f"/sessions/{session_id}/view").json()
    assert body["finished"] is True
    assert body["view"] is None
    assert body["progress"] is None
    assert body["position"] == body["length"]
