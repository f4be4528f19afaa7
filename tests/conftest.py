from __future__ import annotations

import random
import shutil
import sys
from collections.abc import Iterator
from pathlib import Path
from typing import Any
from uuid import uuid4

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from viewseq.content_loader import load_experiment  # noqa: E402
from viewseq.models import DeployConfig, Experiment  # noqa: E402
from viewseq.service import ExperimentService  # noqa: E402
from viewseq.submission import SubmissionResult  # noqa: E402


def _tmp_path_fixture() -> Iterator[Path]:
    """Per-test temporary directory kept under ``.tmp_pytest/`` in the project."""
    base = ROOT / ".tmp_pytest"
    base.mkdir(parents=True, exist_ok=True)
    path = base / str(uuid4())
    path.mkdir(parents=True, exist_ok=False)
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
        try:
            next(base.iterdir())
        except StopIteration:
            base.rmdir()
        except FileNotFoundError:
            pass


tmp_path = pytest.fixture(name="tmp_path")(_tmp_path_fixture)


class RecordingSubmitter:
    """Submission client double that records payloads instead of sending them."""

    def __init__(self, results: list[SubmissionResult] | None = None) -> None:
        self.results = list(results or [])
        self.calls: list[tuple[DeployConfig, dict[str, Any]]] = []
        self.closed = False

    def submit(self, deploy: DeployConfig, payload: dict[str, Any]) -> SubmissionResult:
        self.calls.append((deploy, payload))
        if self.results:
            return self.results.pop(0)
        return SubmissionResult(success=True, status_code=200)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def experiment() -> Experiment:
    return load_experiment()


@pytest.fixture
def submitter() -> RecordingSubmitter:
    return RecordingSubmitter()


@pytest.fixture
def service(experiment: Experiment, submitter: RecordingSubmitter) -> Iterator[ExperimentService]:
    svc = ExperimentService(":memory:", experiment=experiment, submitter=submitter, rng=random.Random(7))  # type: ignore[arg-type]
    try:
        yield svc
    finally:
        svc.close()
