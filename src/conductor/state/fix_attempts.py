from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

from conductor.state.database import Database, utcnow_iso

MAX_ERROR_LENGTH = 1000


class FixAttemptStore:
    """Per-(task, phase) repair counters that survive process restarts."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def get_attempt_count(self, task_id: str, phase_name: str) -> int:
        row = self.db.fetchone(
            "SELECT attempt_count FROM fix_attempts WHERE task_id = ? AND phase_name = ?",
            (task_id, phase_name),
        )
        return int(row["attempt_count"]) if row else 0

    def record_attempt(self, task_id: str, phase_name: str, error: str | None = None) -> int:
        """Atomically increment the counter and return the new attempt count."""
        now = utcnow_iso()
        last_error = (error or "")[:MAX_ERROR_LENGTH] or None
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT INTO fix_attempts (task_id, phase_name, attempt_count, last_error, "
                "created_at, updated_at) VALUES (?, ?, 1, ?, ?, ?) "
                "ON CONFLICT(task_id, phase_name) DO UPDATE SET "
                "attempt_count = attempt_count + 1, last_error = excluded.last_error, "
                "updated_at = excluded.updated_at",
                (task_id, phase_name, last_error, now, now),
            )
            row = conn.execute(
                "SELECT attempt_count FROM fix_attempts WHERE task_id = ? AND phase_name = ?",
                (task_id, phase_name),
            ).fetchone()
        return int(row["attempt_count"])

    def reset(self, task_id: str) -> int:
        cursor = self.db.execute("DELETE FROM fix_attempts WHERE task_id = ?", (task_id,))
        return cursor.rowcount

    def stats(self, task_id: str) -> dict[str, Any]:
        rows = self.db.fetchall(
            "SELECT phase_name, attempt_count, last_error, updated_at FROM fix_attempts "
            "WHERE task_id = ? ORDER BY phase_name",
            (task_id,),
        )
        phases = {
            row["phase_name"]: {
                "attempts": int(row["attempt_count"]),
                "last_error": row["last_error"],
                "updated_at": row["updated_at"],
            }
            for row in rows
        }
        return {
            "task_id": task_id,
            "total_attempts": sum(item["attempts"] for item in phases.values()),
            "phases": phases,
        }

    def cleanup(self, older_than_days: int = 7, now: datetime | None = None) -> int:
        cutoff = ((now or datetime.now(UTC)) - timedelta(days=older_than_days)).replace(
            microsecond=0
        )
        cursor = self.db.execute(
            "DELETE FROM fix_attempts WHERE updated_at < ?",
            (cutoff.isoformat(),),
        )
        return cursor.rowcount
