"""Web adapter: FastAPI endpoints around the experiment service.

The browser renders whatever view the session is on and reports back when
the participant completes it. All sequencing decisions stay in the service.
"""

from __future__ import annotations

from typing import Any, Dict, List

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel

from .deployment import DeploymentError
from .models import ViewDescriptor
from .sequencer import ProgressEntry, SequencingError
from .service import ExperimentService, SessionState


class ViewModel(BaseModel):
    name: str
    role: str
    title: str
    text: str
    search_type: str | None = None
    trials: int = 0
    stimuli: List[str] = []
    wants_progress: bool = False


class ProgressModel(BaseModel):
    index: int
    total: int
    trial_offset: int
    trial_count: int
    total_trials: int
    style: str
    width: int
    fraction: float


class SessionStateResponse(BaseModel):
    session_id: str
    condition: str
    finished: bool
    position: int
    length: int
    view: ViewModel | None = None
    progress: ProgressModel | None = None


class CreateSessionResponse(SessionStateResponse):
    preload: List[str]


class CompleteRequest(BaseModel):
    view_name: str
    trials: List[Dict[str, Any]] = []


class CompleteResponse(SessionStateResponse):
    advanced: bool
    submitted: bool | None = None
    submission_error: str | None = None
    redirect_url: str | None = None
    results: Dict[str, Any] | None = None


class SubmitResponse(BaseModel):
    success: bool
    status_code: int | None = None
    error: str | None = None
    redirect_url: str | None = None


def _view_model(view: ViewDescriptor) -> ViewModel:
    return ViewModel(
        name=view.name,
        role=view.role.value,
        title=view.title,
        text=view.text,
        search_type=view.search_type,
        trials=view.trials,
        stimuli=list(view.stimuli),
        wants_progress=view.wants_progress,
    )


def _progress_model(entry: ProgressEntry | None) -> ProgressModel | None:
    if entry is None:
        return None
    return ProgressModel(
        index=entry.index,
        total=entry.total,
        trial_offset=entry.trial_offset,
        trial_count=entry.trial_count,
        total_trials=entry.total_trials,
        style=entry.style,
        width=entry.width,
        fraction=entry.fraction(0),
    )


def _state_fields(state: SessionState) -> Dict[str, Any]:
    handle = state.handle
    return {
        "session_id": handle.session_id,
        "condition": handle.condition.value,
        "finished": state.finished,
        "position": state.cursor,
        "length": len(handle.sequencer.sequence),
        "view": _view_model(state.view) if state.view is not None else None,
        "progress": _progress_model(state.progress),
    }


def create_app(service: ExperimentService) -> FastAPI:
    """Build the FastAPI application for one experiment service."""
    app = FastAPI(title=f"viewseq: {service.experiment.title or service.experiment.id}")

    def _state(session_id: str) -> SessionState:
        try:
            return service.session_state(session_id)
        except KeyError:
            raise HTTPException(status_code=404, detail="Session not found") from None

    @app.post("/sessions", response_model=CreateSessionResponse)
    def create_session(request: Request) -> CreateSessionResponse:
        try:
            handle = service.create_session(dict(request.query_params))
        except DeploymentError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from None
        return CreateSessionResponse(**_state_fields(_state(handle.session_id)), preload=service.preload_urls())

    @app.get("/sessions/{session_id}/view", response_model=SessionStateResponse)
    def current_view(session_id: str) -> SessionStateResponse:
        return SessionStateResponse(**_state_fields(_state(session_id)))

    @app.post("/sessions/{session_id}/complete", response_model=CompleteResponse)
    def complete_view(session_id: str, req: CompleteRequest) -> CompleteResponse:
        _state(session_id)
        try:
            outcome = service.complete_view(session_id, req.view_name, req.trials)
        except SequencingError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from None

        extra: Dict[str, Any] = {"advanced": outcome.advanced, "redirect_url": outcome.redirect_url}
        if outcome.submission is not None:
            extra["submitted"] = outcome.submission.success
            extra["submission_error"] = outcome.submission.error
            if service.is_debug():
                extra["results"] = service.results_payload(session_id)
        return CompleteResponse(**_state_fields(_state(session_id)), **extra)

    @app.post("/sessions/{session_id}/submit", response_model=SubmitResponse)
    def submit(session_id: str) -> SubmitResponse:
        _state(session_id)
        try:
            result = service.submit(session_id)
        except SequencingError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from None
        redirect = service.completion_redirect(session_id) if result.success else None
        return SubmitResponse(
            success=result.success, status_code=result.status_code, error=result.error, redirect_url=redirect
        )

    @app.get("/sessions/{session_id}/monitor", response_model=Dict[str, Any])
    def monitor(session_id: str) -> Dict[str, Any]:
        _state(session_id)
        try:
            return service.monitor(session_id)
        except DeploymentError:
            raise HTTPException(status_code=404, detail="Not found") from None

    return app
