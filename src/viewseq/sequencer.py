"""Condition assignment, sequence construction, progress mapping and the view state machine."""

from __future__ import annotations

import logging
import random
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType

from .models import Condition, ProgressBarConfig, ViewDescriptor

logger = logging.getLogger(__name__)

PROGRESS_STYLES = ("default", "separate", "chunks")


class ConfigurationError(ValueError):
    """Experiment definition is inconsistent; the session must not start."""


class SequencingError(RuntimeError):
    """Sequencer was driven outside its valid states."""


def assign_condition(
    conditions: Sequence[Condition] = tuple(Condition), rng: random.Random | None = None
) -> Condition:
    """Pick one condition uniformly at random."""
    if not conditions:
        raise ConfigurationError("No conditions configured for assignment.")
    chooser = rng if rng is not None else random
    return chooser.choice(list(conditions))


def build_sequence(
    templates: Mapping[Condition, Sequence[ViewDescriptor]], condition: Condition
) -> tuple[ViewDescriptor, ...]:
    """Return the ordered views for a condition."""
    try:
        template = templates[condition]
    except KeyError:
        raise ConfigurationError(f"No view template for condition '{condition}'.") from None
    if not template:
        raise ConfigurationError(f"View template for condition '{condition}' is empty.")
    return tuple(template)


@dataclass(frozen=True)
class ProgressEntry:
    """Progress metadata for one view of a sequence.

    Untracked views carry ``tracked=False`` and zeroed counters. For tracked
    views ``index`` is the 1-based position among tracked views and the trial
    counters locate the view inside the trials of all tracked views.
    """

    tracked: bool
    index: int = 0
    total: int = 0
    trial_offset: int = 0
    trial_count: int = 0
    total_trials: int = 0
    style: str = "default"
    width: int = 100

    def fraction(self, trials_done: int = 0) -> float:
        """Return bar fill in [0, 1] after ``trials_done`` trials of this view."""
        if not self.tracked:
            return 0.0
        done = max(0, min(trials_done, self.trial_count))
        within = done / self.trial_count if self.trial_count else 0.0
        if self.style == "separate":
            return within
        if self.style == "chunks":
            return (self.index - 1 + within) / self.total if self.total else 0.0
        if not self.total_trials:
            return (self.index - 1 + within) / self.total if self.total else 0.0
        return (self.trial_offset + done) / self.total_trials


def build_progress_table(
    sequence: Sequence[ViewDescriptor],
    progress_set: Iterable[str],
    bar: ProgressBarConfig | None = None,
) -> Mapping[str, ProgressEntry]:
    """Map every view name of a sequence to its progress entry."""
    tracked_names = set(progress_set)
    names = [view.name for view in sequence]
    missing = sorted(tracked_names - set(names))
    if missing:
        message = f"Progress bar references views missing from the sequence: {', '.join(missing)}"
        logger.error(message)
        raise ConfigurationError(message)

    style = bar.style if bar is not None else "default"
    width = bar.width if bar is not None else 100
    tracked = [view for view in sequence if view.name in tracked_names]
    total_trials = sum(view.trials for view in tracked)

    table: dict[str, ProgressEntry] = {}
    offset = 0
    index = 0
    for view in sequence:
        if view.name not in tracked_names:
            table[view.name] = ProgressEntry(tracked=False, style=style, width=width)
            continue
        index += 1
        table[view.name] = ProgressEntry(
            tracked=True,
            index=index,
            total=len(tracked),
            trial_offset=offset,
            trial_count=view.trials,
            total_trials=total_trials,
            style=style,
            width=width,
        )
        offset += view.trials
    return MappingProxyType(table)


class SequencerState(str, Enum):
    """Lifecycle states of a view sequencer."""

    READY = "ready"
    AT_VIEW = "at_view"
    FINISHED = "finished"


class ViewSequencer:
    """Walks a fixed sequence of views with a forward-only cursor.

    ``start()`` moves from READY to the first view and may only be called
    once. ``advance()`` in FINISHED is a no-op so that duplicate completion
    signals from the UI cannot crash a session.
    """

    def __init__(self, sequence: Sequence[ViewDescriptor], progress_table: Mapping[str, ProgressEntry]) -> None:
        if not sequence:
            raise ConfigurationError("Cannot sequence an empty list of views.")
        unmapped = [view.name for view in sequence if view.name not in progress_table]
        if unmapped:
            raise ConfigurationError(f"Progress table has no entry for: {', '.join(unmapped)}")
        self._sequence = tuple(sequence)
        self._progress_table = progress_table
        self._cursor = 0
        self._state = SequencerState.READY

    @classmethod
    def resume(
        cls, sequence: Sequence[ViewDescriptor], progress_table: Mapping[str, ProgressEntry], cursor: int
    ) -> ViewSequencer:
        """Rebuild a started sequencer at a persisted cursor."""
        sequencer = cls(sequence, progress_table)
        if not (0 <= cursor <= len(sequencer._sequence)):
            raise SequencingError(f"Cursor {cursor} outside 0..{len(sequencer._sequence)}.")
        sequencer._cursor = cursor
        if cursor == len(sequencer._sequence):
            sequencer._state = SequencerState.FINISHED
        else:
            sequencer._state = SequencerState.AT_VIEW
        return sequencer

    @property
    def state(self) -> SequencerState:
        return self._state

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def sequence(self) -> tuple[ViewDescriptor, ...]:
        return self._sequence

    @property
    def progress_table(self) -> Mapping[str, ProgressEntry]:
        return self._progress_table

    def start(self) -> ViewDescriptor:
        """Show the first view."""
        if self._state is not SequencerState.READY:
            raise SequencingError("Sequencer already started.")
        self._state = SequencerState.AT_VIEW
        return self._sequence[0]

    def current(self) -> ViewDescriptor:
        """Return the view at the cursor."""
        self._require_at_view("current()")
        return self._sequence[self._cursor]

    def advance(self) -> ViewDescriptor | None:
        """Move to the next view and return it, or None once finished."""
        if self._state is SequencerState.FINISHED:
            logger.debug("advance() ignored, sequence already finished")
            return None
        if self._state is SequencerState.READY:
            raise SequencingError("advance() called before start().")
        self._cursor += 1
        if self._cursor >= len(self._sequence):
            self._cursor = len(self._sequence)
            self._state = SequencerState.FINISHED
            return None
        return self._sequence[self._cursor]

    def progress_info(self) -> ProgressEntry | None:
        """Return progress metadata for the current view if it is tracked."""
        view = self.current()
        entry = self._progress_table[view.name]
        return entry if entry.tracked else None

    def is_finished(self) -> bool:
        return self._state is SequencerState.FINISHED

    def snapshot(self) -> dict[str, object]:
        """Plain view of the sequencer for debug tooling."""
        current = self._sequence[self._cursor].name if self._state is SequencerState.AT_VIEW else None
        return {
            "state": self._state.value,
            "cursor": self._cursor,
            "length": len(self._sequence),
            "current": current,
            "views": [view.name for view in self._sequence],
        }

    def _require_at_view(self, operation: str) -> None:
        if self._state is SequencerState.READY:
            raise SequencingError(f"{operation} called before start().")
        if self._state is SequencerState.FINISHED:
            raise SequencingError(f"{operation} called after the sequence finished.")
