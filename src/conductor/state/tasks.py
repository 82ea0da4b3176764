from __future__ import annotations

import copy
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from conductor.state.database import (
    Database,
    StateError,
    TaskNotFoundError,
    dumps,
    loads,
    utcnow_iso,
)

logger = logging.getLogger(__name__)

TASK_STATUSES = ("pending", "in_progress", "paused", "completed", "failed", "cancelled")
TERMINAL_STATUSES = ("completed", "failed", "cancelled")
TASK_PRIORITIES = ("low", "medium", "high", "critical")
DIRECTIVE_PRIORITIES = ("critical", "high", "normal", "suggestion")

DEFAULT_ORCHESTRATION: dict[str, Any] = {
    "current_phase": "planning",
    "steps": {},
    "epics": [],
    "stories": [],
    "team": [],
    "total_cost": 0.0,
    "total_tokens": 0,
    "paused": False,
    "cancel_requested": False,
    "directives": [],
    "continuations": [],
    "continuation_seq": 0,
    "pending_approval": None,
    "checkpoint": None,
}

_UPDATABLE_COLUMNS = {
    "title",
    "description",
    "status",
    "priority",
    "repository_ids",
    "orchestration",
    "attachments",
    "tags",
    "completed_at",
}
_JSON_COLUMNS = {"repository_ids", "orchestration", "attachments", "tags", "logs", "activities"}
_ORDERABLE_COLUMNS = {"created_at", "updated_at", "priority", "status", "title"}

OrchestrationUpdater = Callable[[dict[str, Any]], dict[str, Any] | None]


def default_orchestration() -> dict[str, Any]:
    return copy.deepcopy(DEFAULT_ORCHESTRATION)


@dataclass(slots=True)
class Task:
    id: str
    title: str
    description: str = ""
    status: str = "pending"
    priority: str = "medium"
    repository_ids: list[str] = field(default_factory=list)
    orchestration: dict[str, Any] = field(default_factory=default_orchestration)
    attachments: list[Any] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    logs: list[dict[str, Any]] = field(default_factory=list)
    activities: list[dict[str, Any]] = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""
    completed_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def step(self, phase: str) -> dict[str, Any]:
        steps = self.orchestration.get("steps")
        if not isinstance(steps, dict):
            return {}
        record = steps.get(phase)
        return record if isinstance(record, dict) else {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "repository_ids": list(self.repository_ids),
            "orchestration": self.orchestration,
            "tags": list(self.tags),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
        }


def _row_to_task(row: sqlite3.Row) -> Task:
    orchestration = loads(row["orchestration"], None)
    if not isinstance(orchestration, dict):
        orchestration = default_orchestration()
    return Task(
        id=row["id"],
        title=row["title"],
        description=row["description"] or "",
        status=row["status"],
        priority=row["priority"],
        repository_ids=loads(row["repository_ids"], []),
        orchestration=orchestration,
        attachments=loads(row["attachments"], []),
        tags=loads(row["tags"], []),
        logs=loads(row["logs"], []),
        activities=loads(row["activities"], []),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        completed_at=row["completed_at"],
    )


def _steps(orchestration: dict[str, Any]) -> dict[str, Any]:
    steps = orchestration.get("steps")
    if not isinstance(steps, dict):
        steps = {}
        orchestration["steps"] = steps
    return steps


def _list_field(orchestration: dict[str, Any], key: str) -> list[Any]:
    values = orchestration.get(key)
    if not isinstance(values, list):
        values = []
        orchestration[key] = values
    return values


class TaskStore:
    """Persists tasks and their embedded orchestration document.

    ``modify_orchestration`` is a read-then-write without a storage-level
    transaction; callers rely on a single phase driving a task at a time.
    """

    def __init__(
        self,
        db: Database,
        *,
        log_retention: int = 1000,
        activity_retention: int = 500,
    ) -> None:
        self.db = db
        self.log_retention = log_retention
        self.activity_retention = activity_retention

    # -- queries -----------------------------------------------------------

    def find_by_id(self, task_id: str) -> Task | None:
        row = self.db.fetchone("SELECT * FROM tasks WHERE id = ?", (task_id,))
        return _row_to_task(row) if row else None

    def get(self, task_id: str) -> Task:
        task = self.find_by_id(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return task

    def find_all(
        self,
        *,
        status: str | list[str] | None = None,
        priority: str | None = None,
        repository_id: str | None = None,
        created_after: str | None = None,
        limit: int | None = None,
        offset: int = 0,
        order_by: str = "created_at",
        descending: bool = True,
    ) -> list[Task]:
        clauses: list[str] = []
        params: list[Any] = []
        if isinstance(status, list):
            if status:
                clauses.append(f"status IN ({', '.join('?' for _ in status)})")
                params.extend(status)
        elif status:
            clauses.append("status = ?")
            params.append(status)
        if priority:
            clauses.append("priority = ?")
            params.append(priority)
        if repository_id:
            clauses.append("EXISTS (SELECT 1 FROM json_each(tasks.repository_ids) WHERE value = ?)")
            params.append(repository_id)
        if created_after:
            clauses.append("created_at > ?")
            params.append(created_after)

        if order_by not in _ORDERABLE_COLUMNS:
            raise StateError(f"Cannot order tasks by '{order_by}'.")
        sql = "SELECT * FROM tasks"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += f" ORDER BY {order_by} {'DESC' if descending else 'ASC'}, id"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([int(limit), int(offset)])
        return [_row_to_task(row) for row in self.db.fetchall(sql, params)]

    def find_interrupted(self) -> list[Task]:
        """Tasks left ``in_progress`` by a process that is no longer running them."""
        return self.find_all(status="in_progress", order_by="updated_at", descending=False)

    # -- whole-record mutations ---------------------------------------------

    def create(
        self,
        title: str,
        description: str = "",
        *,
        repository_ids: list[str] | None = None,
        priority: str = "medium",
        tags: list[str] | None = None,
        attachments: list[Any] | None = None,
        task_id: str | None = None,
    ) -> Task:
        if priority not in TASK_PRIORITIES:
            raise StateError(f"Unknown task priority '{priority}'.")
        now = utcnow_iso()
        task = Task(
            id=task_id or f"task-{uuid4().hex[:12]}",
            title=title,
            description=description,
            priority=priority,
            repository_ids=list(repository_ids or []),
            tags=list(tags or []),
            attachments=list(attachments or []),
            created_at=now,
            updated_at=now,
        )
        self.db.execute(
            "INSERT INTO tasks (id, title, description, status, priority, repository_ids, "
            "orchestration, attachments, tags, logs, activities, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, '[]', '[]', ?, ?)",
            (
                task.id,
                task.title,
                task.description,
                task.status,
                task.priority,
                dumps(task.repository_ids),
                dumps(task.orchestration),
                dumps(task.attachments),
                dumps(task.tags),
                now,
                now,
            ),
        )
        return task

    def update(self, task_id: str, **fields: Any) -> Task:
        unknown = set(fields) - _UPDATABLE_COLUMNS
        if unknown:
            raise StateError(f"Cannot update task fields: {', '.join(sorted(unknown))}")
        if "status" in fields and fields["status"] not in TASK_STATUSES:
            raise StateError(f"Unknown task status '{fields['status']}'.")
        assignments: list[str] = []
        params: list[Any] = []
        for column, value in fields.items():
            assignments.append(f"{column} = ?")
            params.append(dumps(value) if column in _JSON_COLUMNS else value)
        assignments.append("updated_at = ?")
        params.append(utcnow_iso())
        params.append(task_id)
        cursor = self.db.execute(
            f"UPDATE tasks SET {', '.join(assignments)} WHERE id = ?",
            params,
        )
        if cursor.rowcount == 0:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return self.get(task_id)

    def update_status(self, task_id: str, status: str) -> Task:
        fields: dict[str, Any] = {"status": status}
        if status == "completed":
            fields["completed_at"] = utcnow_iso()
        return self.update(task_id, **fields)

    # -- orchestration document -------------------------------------------

    def update_orchestration(self, task_id: str, orchestration: dict[str, Any]) -> None:
        self.update(task_id, orchestration=orchestration)

    def modify_orchestration(self, task_id: str, updater: OrchestrationUpdater) -> dict[str, Any]:
        """Apply ``updater`` to a fresh copy of the orchestration document and store it.

        The updater may mutate its argument in place and return ``None``.
        """
        task = self.get(task_id)
        current = copy.deepcopy(task.orchestration)
        updated = updater(current)
        if updated is None:
            updated = current
        self.update(task_id, orchestration=updated)
        return updated

    def update_phase_status(
        self,
        task_id: str,
        phase: str,
        status: str,
        **fields: Any,
    ) -> dict[str, Any]:
        now = utcnow_iso()

        def _updater(orchestration: dict[str, Any]) -> None:
            steps = _steps(orchestration)
            step = steps.get(phase)
            if not isinstance(step, dict):
                step = {}
            step["status"] = status
            if status == "in_progress":
                step["started_at"] = now
                step.pop("error", None)
            elif status in ("completed", "failed"):
                step["completed_at"] = now
            step.update(fields)
            steps[phase] = step
            orchestration["current_phase"] = phase

        return self.modify_orchestration(task_id, _updater)

    def record_usage(
        self,
        task_id: str,
        phase: str,
        *,
        cost: float = 0.0,
        tokens: int = 0,
    ) -> None:
        """Commit cost/token counters for one agent invocation immediately."""
        if not cost and not tokens:
            return

        def _updater(orchestration: dict[str, Any]) -> None:
            orchestration["total_cost"] = float(orchestration.get("total_cost") or 0.0) + cost
            orchestration["total_tokens"] = int(orchestration.get("total_tokens") or 0) + tokens
            step = _steps(orchestration).setdefault(phase, {})
            step["cost"] = float(step.get("cost") or 0.0) + cost
            step["tokens"] = int(step.get("tokens") or 0) + tokens

        self.modify_orchestration(task_id, _updater)

    def set_paused(self, task_id: str, paused: bool) -> Task:
        def _updater(orchestration: dict[str, Any]) -> None:
            orchestration["paused"] = paused

        self.modify_orchestration(task_id, _updater)
        task = self.get(task_id)
        if paused and task.status in ("pending", "in_progress"):
            return self.update_status(task_id, "paused")
        if not paused and task.status == "paused":
            return self.update_status(task_id, "pending")
        return task

    def set_cancel_requested(self, task_id: str, requested: bool = True) -> None:
        def _updater(orchestration: dict[str, Any]) -> None:
            orchestration["cancel_requested"] = requested

        self.modify_orchestration(task_id, _updater)

    def set_pending_approval(self, task_id: str, approval: dict[str, Any] | None) -> None:
        def _updater(orchestration: dict[str, Any]) -> None:
            orchestration["pending_approval"] = approval

        self.modify_orchestration(task_id, _updater)

    def add_directive(
        self,
        task_id: str,
        content: str,
        *,
        priority: str = "normal",
        target_phase: str | None = None,
    ) -> dict[str, Any]:
        if priority not in DIRECTIVE_PRIORITIES:
            raise StateError(f"Unknown directive priority '{priority}'.")
        directive = {
            "id": f"dir-{uuid4().hex[:8]}",
            "content": content,
            "priority": priority,
            "target_phase": target_phase,
            "consumed": False,
            "created_at": utcnow_iso(),
        }

        def _updater(orchestration: dict[str, Any]) -> None:
            _list_field(orchestration, "directives").append(directive)

        self.modify_orchestration(task_id, _updater)
        return directive

    def mark_directives_consumed(self, task_id: str, directive_ids: list[str]) -> None:
        if not directive_ids:
            return
        wanted = set(directive_ids)
        now = utcnow_iso()

        def _updater(orchestration: dict[str, Any]) -> None:
            for directive in _list_field(orchestration, "directives"):
                if isinstance(directive, dict) and directive.get("id") in wanted:
                    directive["consumed"] = True
                    directive["consumed_at"] = now

        self.modify_orchestration(task_id, _updater)

    def add_continuation(self, task_id: str, requirements: str) -> dict[str, Any]:
        """Record added requirements; every step completed before this is superseded."""
        continuation: dict[str, Any] = {"requirements": requirements, "created_at": utcnow_iso()}

        def _updater(orchestration: dict[str, Any]) -> None:
            seq = int(orchestration.get("continuation_seq") or 0) + 1
            orchestration["continuation_seq"] = seq
            continuation["seq"] = seq
            _list_field(orchestration, "continuations").append(continuation)
            orchestration["cancel_requested"] = False
            orchestration["paused"] = False

        self.modify_orchestration(task_id, _updater)
        self.update(task_id, status="pending", completed_at=None)
        return continuation

    # -- bounded appenders -------------------------------------------------

    def _append_bounded(self, task_id: str, column: str, entry: dict[str, Any], keep: int) -> None:
        row = self.db.fetchone(f"SELECT {column} FROM tasks WHERE id = ?", (task_id,))
        if row is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        entries = loads(row[column], [])
        if not isinstance(entries, list):
            entries = []
        entries.append(entry)
        self.db.execute(
            f"UPDATE tasks SET {column} = ?, updated_at = ? WHERE id = ?",
            (dumps(entries[-keep:]), utcnow_iso(), task_id),
        )

    def append_log(
        self,
        task_id: str,
        message: str,
        *,
        level: str = "info",
        phase: str | None = None,
    ) -> None:
        entry = {"at": utcnow_iso(), "level": level, "message": message}
        if phase:
            entry["phase"] = phase
        self._append_bounded(task_id, "logs", entry, self.log_retention)

    def append_activity(self, task_id: str, activity: dict[str, Any]) -> None:
        entry = dict(activity)
        entry.setdefault("at", utcnow_iso())
        self._append_bounded(task_id, "activities", entry, self.activity_retention)
