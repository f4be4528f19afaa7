"""Results payload construction and remote submission."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import requests

from .models import DeployConfig
from .store import ViewResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


@dataclass(frozen=True)
class SubmissionResult:
    """Outcome of one submission attempt."""

    success: bool
    status_code: int | None = None
    error: str | None = None


def submission_url(deploy: DeployConfig) -> str:
    """Endpoint receiving results for the configured experiment."""
    return f"{deploy.server_app_url}{deploy.experiment_id}"


def build_payload(
    *,
    deploy: DeployConfig,
    condition: str,
    participant: Mapping[str, str],
    view_results: Iterable[ViewResult],
    started_at: str,
    finished_at: str,
) -> dict[str, Any]:
    """Flatten recorded view results into one submission body.

    Every trial row is merged with the session-level fields so that rows can
    be analysed without joining, and numbered across the whole session.
    """
    shared: dict[str, Any] = {
        "experiment_id": deploy.experiment_id,
        "condition": condition,
        "deploy_method": deploy.deploy_method,
        **participant,
    }
    trials: list[dict[str, Any]] = []
    for result in view_results:
        for row in result.trials:
            trials.append({**row, **shared, "view_name": result.view_name, "trial_number": len(trials) + 1})

    duration = (datetime.fromisoformat(finished_at) - datetime.fromisoformat(started_at)).total_seconds() / 60
    return {
        "experiment_id": deploy.experiment_id,
        "condition": condition,
        "deploy_method": deploy.deploy_method,
        "start_date_time": started_at,
        "end_date_time": finished_at,
        "experiment_duration": round(duration, 2),
        "contact_email": deploy.contact_email,
        "trials": trials,
    }


class SubmissionClient:
    """POSTs results payloads to the experiment server."""

    def __init__(self, session: requests.Session | None = None, timeout: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self._session = session if session is not None else requests.Session()
        self.timeout = timeout

    def submit(self, deploy: DeployConfig, payload: dict[str, Any]) -> SubmissionResult:
        """Send one payload; network and HTTP failures become unsuccessful results."""
        url = submission_url(deploy)
        try:
            response = self._session.post(url, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.warning("Submission to %s failed: %s", url, exc)
            return SubmissionResult(success=False, error=str(exc))

        if not response.ok:
            logger.warning("Submission to %s rejected with HTTP %s", url, response.status_code)
            return SubmissionResult(success=False, status_code=response.status_code, error=response.text[:500])
        logger.info("Submitted %d trials to %s", len(payload.get("trials", [])), url)
        return SubmissionResult(success=True, status_code=response.status_code)

    def close(self) -> None:
        self._session.close()
