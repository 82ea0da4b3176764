"""Durable handles that let a long external agent session resume after a restart."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

from conductor.state.database import Database, StateError, dumps, loads, utcnow_iso

logger = logging.getLogger(__name__)

CHECKPOINT_STATUSES = ("active", "completed", "failed", "abandoned")
TERMINAL_CHECKPOINT_STATUSES = ("completed", "failed", "abandoned")


def checkpoint_key(phase: str, item_id: str | None = None) -> str:
    return f"{phase}:{item_id}" if item_id else phase


@dataclass(slots=True)
class ExecutionCheckpoint:
    id: str
    task_id: str
    phase_name: str
    status: str = "active"
    external_session_id: str | None = None
    last_message_id: str | None = None
    turns_completed: int = 0
    workspace_path: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    started_at: str = ""
    last_checkpoint_at: str = ""
    completed_at: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass(slots=True)
class ResumeOptions:
    session_id: str
    resume_at_message_id: str | None = None
    turns_completed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_resume": True,
            "session_id": self.session_id,
            "resume_at_message_id": self.resume_at_message_id,
            "turns_completed": self.turns_completed,
        }


def _row_to_checkpoint(row: sqlite3.Row) -> ExecutionCheckpoint:
    return ExecutionCheckpoint(
        id=row["id"],
        task_id=row["task_id"],
        phase_name=row["phase_name"],
        status=row["status"],
        external_session_id=row["external_session_id"],
        last_message_id=row["last_message_id"],
        turns_completed=int(row["turns_completed"] or 0),
        workspace_path=row["workspace_path"],
        metadata=loads(row["metadata"], {}) or {},
        error=row["error"],
        started_at=row["started_at"],
        last_checkpoint_at=row["last_checkpoint_at"],
        completed_at=row["completed_at"],
    )


class SessionCheckpointStore:
    def __init__(
        self,
        db: Database,
        *,
        freshness: timedelta = timedelta(hours=1),
        heartbeat_turns: int = 5,
        heartbeat_seconds: int = 30,
    ) -> None:
        self.db = db
        self.freshness = freshness
        self.heartbeat_turns = heartbeat_turns
        self.heartbeat_seconds = heartbeat_seconds

    def get(self, task_id: str, phase_key: str) -> ExecutionCheckpoint | None:
        row = self.db.fetchone(
            "SELECT * FROM execution_checkpoints WHERE task_id = ? AND phase_name = ?",
            (task_id, phase_key),
        )
        return _row_to_checkpoint(row) if row else None

    def is_fresh(self, checkpoint: ExecutionCheckpoint, now: datetime | None = None) -> bool:
        last = datetime.fromisoformat(checkpoint.last_checkpoint_at)
        return (now or datetime.now(UTC)) - last <= self.freshness

    def load_checkpoint(
        self, task_id: str, phase_key: str, now: datetime | None = None
    ) -> ExecutionCheckpoint | None:
        """Return the fresh active checkpoint for ``phase_key``.

        Terminal checkpoints are never resumed. An active one whose last
        heartbeat is outside the freshness window is abandoned instead.
        """
        checkpoint = self.get(task_id, phase_key)
        if checkpoint is None or not checkpoint.is_active:
            return None
        if not self.is_fresh(checkpoint, now):
            logger.info(
                "Abandoning stale session %s for %s/%s (last heartbeat %s)",
                checkpoint.external_session_id,
                task_id,
                phase_key,
                checkpoint.last_checkpoint_at,
            )
            self.abandon(task_id, phase_key, "Session checkpoint went stale")
            return None
        return checkpoint

    @staticmethod
    def build_resume_options(checkpoint: ExecutionCheckpoint | None) -> ResumeOptions | None:
        if checkpoint is None or not checkpoint.is_active or not checkpoint.external_session_id:
            return None
        return ResumeOptions(
            session_id=checkpoint.external_session_id,
            resume_at_message_id=checkpoint.last_message_id,
            turns_completed=checkpoint.turns_completed,
        )

    def save_checkpoint(
        self,
        task_id: str,
        phase_key: str,
        external_session_id: str | None,
        *,
        turns: int | None = None,
        last_message_id: str | None = None,
        workspace_path: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ExecutionCheckpoint:
        """Idempotent upsert; a save over a terminal checkpoint starts a fresh session."""
        now = utcnow_iso()
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM execution_checkpoints WHERE task_id = ? AND phase_name = ?",
                (task_id, phase_key),
            ).fetchone()
            if row is None or row["status"] != "active":
                if row is not None:
                    conn.execute("DELETE FROM execution_checkpoints WHERE id = ?", (row["id"],))
                conn.execute(
                    "INSERT INTO execution_checkpoints (id, task_id, phase_name, status, "
                    "external_session_id, last_message_id, turns_completed, workspace_path, "
                    "metadata, started_at, last_checkpoint_at) "
                    "VALUES (?, ?, ?, 'active', ?, ?, ?, ?, ?, ?, ?)",
                    (
                        f"ckpt-{uuid4().hex[:12]}",
                        task_id,
                        phase_key,
                        external_session_id,
                        last_message_id,
                        int(turns or 0),
                        workspace_path,
                        dumps(metadata or {}),
                        now,
                        now,
                    ),
                )
            else:
                merged = loads(row["metadata"], {}) or {}
                merged.update(metadata or {})
                conn.execute(
                    "UPDATE execution_checkpoints SET "
                    "external_session_id = COALESCE(?, external_session_id), "
                    "last_message_id = COALESCE(?, last_message_id), "
                    "turns_completed = COALESCE(?, turns_completed), "
                    "workspace_path = COALESCE(?, workspace_path), "
                    "metadata = ?, last_checkpoint_at = ? WHERE id = ?",
                    (
                        external_session_id,
                        last_message_id,
                        turns,
                        workspace_path,
                        dumps(merged),
                        now,
                        row["id"],
                    ),
                )
        checkpoint = self.get(task_id, phase_key)
        if checkpoint is None:
            raise StateError(f"Checkpoint {phase_key} for task {task_id} vanished after save")
        return checkpoint

    def should_update(self, checkpoint: ExecutionCheckpoint, turns_completed: int) -> bool:
        """Heartbeat policy: every N turns or every M seconds, whichever comes first."""
        if turns_completed - checkpoint.turns_completed >= self.heartbeat_turns:
            return True
        last = datetime.fromisoformat(checkpoint.last_checkpoint_at)
        return datetime.now(UTC) - last >= timedelta(seconds=self.heartbeat_seconds)

    def _finish(self, task_id: str, phase_key: str, status: str, error: str | None) -> bool:
        now = utcnow_iso()
        cursor = self.db.execute(
            "UPDATE execution_checkpoints SET status = ?, error = ?, completed_at = ?, "
            "last_checkpoint_at = ? WHERE task_id = ? AND phase_name = ? AND status = 'active'",
            (status, error, now, now, task_id, phase_key),
        )
        return cursor.rowcount > 0

    def mark_completed(self, task_id: str, phase_key: str) -> bool:
        return self._finish(task_id, phase_key, "completed", None)

    def mark_failed(self, task_id: str, phase_key: str, error: str | None = None) -> bool:
        return self._finish(task_id, phase_key, "failed", (error or "")[:1000] or None)

    def abandon(self, task_id: str, phase_key: str, reason: str | None = None) -> bool:
        return self._finish(task_id, phase_key, "abandoned", reason)

    def find_active_for_recovery(self, now: datetime | None = None) -> list[ExecutionCheckpoint]:
        cutoff = ((now or datetime.now(UTC)) - self.freshness).replace(microsecond=0)
        rows = self.db.fetchall(
            "SELECT * FROM execution_checkpoints WHERE status = 'active' "
            "AND last_checkpoint_at >= ? ORDER BY last_checkpoint_at",
            (cutoff.isoformat(),),
        )
        return [_row_to_checkpoint(row) for row in rows]

    def recover_active(
        self, is_runnable: Callable[[str], bool], now: datetime | None = None
    ) -> list[ExecutionCheckpoint]:
        """Fresh active checkpoints whose task can still run; the others are abandoned."""
        recoverable = []
        for checkpoint in self.find_active_for_recovery(now):
            if is_runnable(checkpoint.task_id):
                recoverable.append(checkpoint)
            else:
                self.abandon(
                    checkpoint.task_id, checkpoint.phase_name, "Task is no longer runnable"
                )
        return recoverable

    def find_by_task(self, task_id: str) -> list[ExecutionCheckpoint]:
        rows = self.db.fetchall(
            "SELECT * FROM execution_checkpoints WHERE task_id = ? ORDER BY started_at",
            (task_id,),
        )
        return [_row_to_checkpoint(row) for row in rows]

    def cleanup(self, older_than_days: int = 1, now: datetime | None = None) -> int:
        cutoff = ((now or datetime.now(UTC)) - timedelta(days=older_than_days)).replace(
            microsecond=0
        )
        cursor = self.db.execute(
            "DELETE FROM execution_checkpoints WHERE status IN ('completed', 'failed', 'abandoned') "
            "AND COALESCE(completed_at, last_checkpoint_at) < ?",
            (cutoff.isoformat(),),
        )
        deleted = cursor.rowcount
        if deleted:
            logger.info("Removed %d terminal checkpoints older than %d day(s)", deleted, older_than_days)
        return deleted
