"""SQLite persistence for experiment sessions, view results and submissions."""

from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

SCHEMA_VERSION = 1


@dataclass(frozen=True)
class SessionRecord:
    """Persisted session row."""

    id: str
    experiment_id: str
    condition: str
    cursor: int
    deploy_method: str
    participant: dict[str, str]
    started_at: str
    finished_at: str | None


@dataclass(frozen=True)
class ViewResult:
    """Trial rows recorded when one view completed."""

    position: int
    view_name: str
    trials: list[dict[str, Any]]
    recorded_at: str


@dataclass(frozen=True)
class SubmissionRecord:
    """One submission attempt."""

    attempted_at: str
    success: bool
    status_code: int | None
    error: str | None


class SessionStore:
    """Database access layer for experiment sessions."""

    def __init__(self, db_path: Path | str) -> None:
        """Initialize database and schema."""
        if isinstance(db_path, Path):
            db_path.parent.mkdir(parents=True, exist_ok=True)
            target = str(db_path)
        else:
            target = db_path
        self._conn = sqlite3.connect(target, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._apply_migrations()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run one transaction with exclusive use of the shared connection."""
        with self._lock, self._conn:
            yield self._conn

    def _fetchall(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def _apply_migrations(self) -> None:
        """Apply forward-only schema migrations to latest version."""
        current = int(self._conn.execute("PRAGMA user_version").fetchone()[0])
        if current > SCHEMA_VERSION:
            raise RuntimeError(f"Database schema version {current} is newer than supported {SCHEMA_VERSION}.")

        with self._transaction():
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_migrations (
                    version INTEGER PRIMARY KEY,
                    applied_at TEXT NOT NULL
                )
                """)

        for version in range(current + 1, SCHEMA_VERSION + 1):
            if version == 1:
                self._migrate_to_v1()
            with self._transaction():
                self._conn.execute(f"PRAGMA user_version = {version}")
                self._conn.execute(
                    "INSERT OR REPLACE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                    (version, datetime.now(UTC).isoformat()),
                )

    def _migrate_to_v1(self) -> None:
        """Create session, view result and submission tables."""
        with self._transaction():
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    experiment_id TEXT NOT NULL,
                    condition TEXT NOT NULL,
                    cursor INTEGER NOT NULL DEFAULT 0,
                    deploy_method TEXT NOT NULL,
                    participant TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    finished_at TEXT
                )
                """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS view_results (
                    session_id TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    view_name TEXT NOT NULL,
                    trials TEXT NOT NULL,
                    recorded_at TEXT NOT NULL,
                    PRIMARY KEY (session_id, position)
                )
                """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS submissions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT NOT NULL,
                    attempted_at TEXT NOT NULL,
                    success INTEGER NOT NULL,
                    status_code INTEGER,
                    error TEXT
                )
                """)

    def create_session(
        self,
        session_id: str,
        experiment_id: str,
        condition: str,
        deploy_method: str,
        participant: dict[str, str] | None = None,
    ) -> SessionRecord:
        """Insert a new session at cursor 0."""
        now = datetime.now(UTC).isoformat()
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO sessions (id, experiment_id, condition, cursor, deploy_method, participant, started_at)
                VALUES (?, ?, ?, 0, ?, ?, ?)
                """,
                (session_id, experiment_id, condition, deploy_method, json.dumps(participant or {}), now),
            )
        record = self.get_session(session_id)
        if record is None:
            raise RuntimeError("Could not create session.")
        return record

    def get_session(self, session_id: str) -> SessionRecord | None:
        """Get one session by id."""
        rows = self._fetchall(
            """
            SELECT id, experiment_id, condition, cursor, deploy_method, participant, started_at, finished_at
            FROM sessions
            WHERE id = ?
            """,
            (session_id,),
        )
        if not rows:
            return None
        row = rows[0]
        return SessionRecord(
            id=str(row["id"]),
            experiment_id=str(row["experiment_id"]),
            condition=str(row["condition"]),
            cursor=int(row["cursor"]),
            deploy_method=str(row["deploy_method"]),
            participant={str(key): str(value) for key, value in json.loads(row["participant"]).items()},
            started_at=str(row["started_at"]),
            finished_at=str(row["finished_at"]) if row["finished_at"] is not None else None,
        )

    def update_cursor(self, session_id: str, cursor: int) -> None:
        with self._transaction():
            self._conn.execute("UPDATE sessions SET cursor = ? WHERE id = ?", (cursor, session_id))

    def mark_finished(self, session_id: str) -> None:
        """Set finished timestamp if absent."""
        now = datetime.now(UTC).isoformat()
        with self._transaction():
            self._conn.execute(
                "UPDATE sessions SET finished_at = ? WHERE id = ? AND finished_at IS NULL",
                (now, session_id),
            )

    def record_view_result(
        self, session_id: str, position: int, view_name: str, trials: list[dict[str, Any]]
    ) -> None:
        """Store the trial rows of one completed view."""
        now = datetime.now(UTC).isoformat()
        with self._transaction():
            self._conn.execute(
                """
                INSERT OR REPLACE INTO view_results (session_id, position, view_name, trials, recorded_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (session_id, position, view_name, json.dumps(trials), now),
            )

    def list_view_results(self, session_id: str) -> list[ViewResult]:
        """Return recorded view results in sequence order."""
        rows = self._fetchall(
            """
            SELECT position, view_name, trials, recorded_at
            FROM view_results
            WHERE session_id = ?
            ORDER BY position ASC
            """,
            (session_id,),
        )
        return [
            ViewResult(
                position=int(row["position"]),
                view_name=str(row["view_name"]),
                trials=list(json.loads(row["trials"])),
                recorded_at=str(row["recorded_at"]),
            )
            for row in rows
        ]

    def record_submission(
        self, session_id: str, success: bool, status_code: int | None = None, error: str | None = None
    ) -> None:
        """Append one submission attempt."""
        now = datetime.now(UTC).isoformat()
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO submissions (session_id, attempted_at, success, status_code, error)
                VALUES (?, ?, ?, ?, ?)
                """,
                (session_id, now, 1 if success else 0, status_code, error),
            )

    def list_submissions(self, session_id: str) -> list[SubmissionRecord]:
        """Return submission attempts oldest first."""
        rows = self._fetchall(
            """
            SELECT attempted_at, success, status_code, error
            FROM submissions
            WHERE session_id = ?
            ORDER BY id ASC
            """,
            (session_id,),
        )
        return [
            SubmissionRecord(
                attempted_at=str(row["attempted_at"]),
                success=bool(row["success"]),
                status_code=int(row["status_code"]) if row["status_code"] is not None else None,
                error=str(row["error"]) if row["error"] is not None else None,
            )
            for row in rows
        ]

    def delete_session(self, session_id: str) -> bool:
        """Delete session and all associated results."""
        with self._transaction():
            self._conn.execute("DELETE FROM submissions WHERE session_id = ?", (session_id,))
            self._conn.execute("DELETE FROM view_results WHERE session_id = ?", (session_id,))
            cursor = self._conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        return cursor.rowcount > 0

    def close(self) -> None:
        """Close db connection."""
        with self._lock:
            self._conn.close()

    def __del__(self) -> None:  # pragma: no cover
        """Best-effort connection cleanup."""
        try:
            self.close()
        except Exception:
            pass
