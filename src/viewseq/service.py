"""Application service for experiment sessions: assignment, navigation and submission."""

from __future__ import annotations

import logging
import random
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from uuid import uuid4

from .content_loader import collect_preload_urls, load_experiment
from .deployment import DeploymentError, completion_redirect, is_debug, participant_context
from .models import Condition, Experiment, ViewDescriptor
from .sequencer import (
    ProgressEntry,
    SequencingError,
    ViewSequencer,
    assign_condition,
    build_progress_table,
    build_sequence,
)
from .store import SessionStore
from .submission import SubmissionClient, SubmissionResult, build_payload

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionHandle:
    """Caller-scoped handle on one participant's session."""

    session_id: str
    condition: Condition
    sequencer: ViewSequencer
    participant: dict[str, str]
    started_at: str


@dataclass(frozen=True)
class CompletionOutcome:
    """What happened when a view reported completion."""

    advanced: bool
    finished: bool
    next_view: ViewDescriptor | None
    submission: SubmissionResult | None = None
    redirect_url: str | None = None


@dataclass(frozen=True)
class SessionState:
    """Point-in-time view of a session, taken under the service lock."""

    handle: SessionHandle
    finished: bool
    cursor: int
    view: ViewDescriptor | None
    progress: ProgressEntry | None


class ExperimentService:
    """Coordinates sessions of one experiment."""

    def __init__(
        self,
        db_path: Path | str,
        experiment: Experiment | None = None,
        submitter: SubmissionClient | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize service with database path and experiment definition."""
        self.experiment = experiment if experiment is not None else load_experiment()
        self.store = SessionStore(db_path)
        self.submitter = submitter if submitter is not None else SubmissionClient()
        self._rng = rng
        self._templates = self.experiment.template_views()
        self._sessions: dict[str, SessionHandle] = {}
        self._lock = threading.RLock()

    def create_session(self, params: Mapping[str, str] | None = None) -> SessionHandle:
        """Assign a condition, build its sequence and show the first view."""
        participant = participant_context(self.experiment.deploy.deploy_method, params or {})
        condition = assign_condition(tuple(Condition), self._rng)
        sequencer = self._new_sequencer(condition)
        sequencer.start()

        session_id = str(uuid4())
        with self._lock:
            record = self.store.create_session(
                session_id,
                self.experiment.id,
                condition.value,
                self.experiment.deploy.deploy_method,
                participant,
            )
            handle = SessionHandle(
                session_id=session_id,
                condition=condition,
                sequencer=sequencer,
                participant=participant,
                started_at=record.started_at,
            )
            self._sessions[session_id] = handle
        logger.info("Session %s assigned to %s", session_id, condition.value)
        return handle

    def get_session(self, session_id: str) -> SessionHandle:
        """Return a live session, resuming it from the store when not cached."""
        with self._lock:
            cached = self._sessions.get(session_id)
            if cached is not None:
                return cached
            record = self.store.get_session(session_id)
            if record is None:
                raise KeyError(session_id)
            condition = Condition(record.condition)
            fresh = self._new_sequencer(condition)
            sequencer = ViewSequencer.resume(fresh.sequence, fresh.progress_table, record.cursor)
            handle = SessionHandle(
                session_id=record.id,
                condition=condition,
                sequencer=sequencer,
                participant=record.participant,
                started_at=record.started_at,
            )
            self._sessions[session_id] = handle
        logger.info("Session %s resumed at view %d", session_id, record.cursor)
        return handle

    def complete_view(
        self, session_id: str, view_name: str, trials: list[dict[str, Any]] | None = None
    ) -> CompletionOutcome:
        """Record a view's results and advance once.

        A completion for anything other than the current view (a late or
        duplicate signal) is acknowledged without advancing.
        """
        handle = self.get_session(session_id)
        sequencer = handle.sequencer
        with self._lock:
            if sequencer.is_finished():
                logger.debug("Session %s already finished, ignoring completion of %s", session_id, view_name)
                return CompletionOutcome(advanced=False, finished=True, next_view=None)
            current = sequencer.current()
            if current.name != view_name:
                logger.warning(
                    "Session %s: ignoring completion of %s while showing %s", session_id, view_name, current.name
                )
                return CompletionOutcome(advanced=False, finished=False, next_view=current)

            if trials:
                self.store.record_view_result(session_id, sequencer.cursor, view_name, trials)
            next_view = sequencer.advance()
            self.store.update_cursor(session_id, sequencer.cursor)
            if sequencer.is_finished():
                self.store.mark_finished(session_id)
                logger.info("Session %s finished", session_id)

        if next_view is not None:
            return CompletionOutcome(advanced=True, finished=False, next_view=next_view)
        submission = self.submit(session_id)
        return CompletionOutcome(
            advanced=True,
            finished=True,
            next_view=None,
            submission=submission,
            redirect_url=self.completion_redirect(session_id) if submission.success else None,
        )

    def results_payload(self, session_id: str) -> dict[str, Any]:
        """Build the submission body for a finished session."""
        handle = self.get_session(session_id)
        with self._lock:
            record = self.store.get_session(session_id)
            if record is None or record.finished_at is None:
                raise SequencingError(f"Session {session_id} has not finished yet.")
            view_results = self.store.list_view_results(session_id)
        return build_payload(
            deploy=self.experiment.deploy,
            condition=handle.condition.value,
            participant=handle.participant,
            view_results=view_results,
            started_at=record.started_at,
            finished_at=record.finished_at,
        )

    def submit(self, session_id: str) -> SubmissionResult:
        """Send results of a finished session; may be called again after a failure."""
        payload = self.results_payload(session_id)
        if self.is_debug():
            logger.info("Debug deployment, results of session %s are not sent", session_id)
            return SubmissionResult(success=True)
        # Network I/O stays outside the lock.
        result = self.submitter.submit(self.experiment.deploy, payload)
        with self._lock:
            self.store.record_submission(session_id, result.success, result.status_code, result.error)
        return result

    def completion_redirect(self, session_id: str) -> str | None:
        """Platform URL the participant is sent to after a successful submission."""
        handle = self.get_session(session_id)
        return completion_redirect(self.experiment.deploy, handle.participant)

    def session_state(self, session_id: str) -> SessionState:
        """Consistent read of where a session stands."""
        handle = self.get_session(session_id)
        sequencer = handle.sequencer
        with self._lock:
            if sequencer.is_finished():
                return SessionState(handle, True, sequencer.cursor, None, None)
            return SessionState(handle, False, sequencer.cursor, sequencer.current(), sequencer.progress_info())

    def delete_session(self, session_id: str) -> bool:
        """Forget a session and everything recorded for it."""
        with self._lock:
            self._sessions.pop(session_id, None)
            deleted = self.store.delete_session(session_id)
        if deleted:
            logger.info("Session %s deleted", session_id)
        return deleted

    def is_debug(self) -> bool:
        return is_debug(self.experiment.deploy)

    def monitor(self, session_id: str) -> dict[str, object]:
        """Debug introspection of one session's sequencer."""
        if not self.is_debug():
            raise DeploymentError("Session monitor is only available in debug deployments.")
        handle = self.get_session(session_id)
        with self._lock:
            snapshot = handle.sequencer.snapshot()
        snapshot["session_id"] = session_id
        snapshot["condition"] = handle.condition.value
        return snapshot

    def preload_urls(self) -> list[str]:
        """Stimulus locators the browser should warm before the first trial view."""
        return collect_preload_urls(self.experiment)

    def _new_sequencer(self, condition: Condition) -> ViewSequencer:
        sequence = build_sequence(self._templates, condition)
        table = build_progress_table(sequence, self.experiment.progress_bar.views, self.experiment.progress_bar)
        return ViewSequencer(sequence, table)

    def close(self) -> None:
        """Close resources."""
        self.store.close()
        self.submitter.close()

    def __del__(self) -> None:  # pragma: no cover
        """Best-effort cleanup for test/process teardown."""
        try:
            self.close()
        except Exception:
            pass
