"""viewseq package."""

from __future__ import annotations

import tomllib
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

from .models import Condition, ViewDescriptor, ViewRole
from .sequencer import ConfigurationError, SequencingError, ViewSequencer

__all__ = [
    "Condition",
    "ConfigurationError",
    "SequencingError",
    "ViewDescriptor",
    "ViewRole",
    "ViewSequencer",
    "__version__",
]


def _version_from_pyproject() -> str | None:
    """Version from a source checkout's pyproject.toml, if this is one."""
    for base in Path(__file__).resolve().parents:
        pyproject = base / "pyproject.toml"
        if not pyproject.exists():
            continue
        data = tomllib.loads(pyproject.read_text(encoding="utf-8"))
        project = data.get("project", {})
        if project.get("name") == "viewseq":
            return str(project.get("version"))
    return None


_project_version = _version_from_pyproject()
if _project_version is not None:
    __version__ = _project_version
else:
    try:
        __version__ = version("viewseq")
    except PackageNotFoundError:
        __version__ = "0+unknown"
