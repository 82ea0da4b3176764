"""Append-only event log and the replay that derives planning state from it."""

from __future__ import annotations

import copy
import hashlib
import json
import logging
import sqlite3
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from conductor.state.database import Database, StateError, dumps, loads, utcnow_iso

logger = logging.getLogger(__name__)

DUPLICATE_WINDOW = timedelta(seconds=5)
DUPLICATE_LOOKBACK = 10
FAILED_EVENT_RETENTION = 100

EVENT_REQUIRED_FIELDS: dict[str, tuple[str, ...]] = {
    "PhaseStarted": ("phase",),
    "PhaseCompleted": ("phase",),
    "PhaseFailed": ("phase", "error"),
    "PhaseSkipped": ("phase",),
    "PhaseStopped": ("phase", "reason"),
    "PlanningCompleted": ("epics",),
    "PlanningRejected": ("attempt", "reason"),
    "EpicCreated": ("id", "title", "targetRepository"),
    "EpicBranchCreated": ("epicId", "branchName"),
    "StoryCreated": ("id", "epicId", "title"),
    "StoryStarted": ("storyId",),
    "StoryCompleted": ("storyId",),
    "StoryFailed": ("storyId",),
    "StoryApproved": ("storyId",),
    "StoryRejected": ("storyId",),
    "BranchMerged": ("repository", "branchName"),
    "MergeConflict": ("repository", "branchName", "files"),
    "FixApplied": ("phase", "method"),
}


class EventValidationError(ValueError):
    """Raised when an event is missing its task id or a required payload field."""


@dataclass(slots=True)
class Event:
    task_id: str
    event_type: str
    payload: dict[str, Any]
    version: int = 0
    agent_name: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    checksum: str = ""
    created_at: str = ""
    id: int | None = None


@dataclass(slots=True)
class TaskState:
    """View folded from a task's events; the log stays authoritative."""

    epics: list[dict[str, Any]] = field(default_factory=list)
    stories: list[dict[str, Any]] = field(default_factory=list)
    branch_assignments: dict[str, str] = field(default_factory=dict)
    current_phase: str | None = None
    planning_completed: bool = False
    planning_approved: bool = False
    development_completed: bool = False
    review_completed: bool = False
    integration_completed: bool = False
    total_cost: float = 0.0
    version: int = 0

    def epic(self, epic_id: str) -> dict[str, Any] | None:
        for epic in self.epics:
            if epic.get("id") == epic_id:
                return epic
        return None

    def story(self, story_id: str) -> dict[str, Any] | None:
        for story in self.stories:
            if story.get("id") == story_id:
                return story
        return None


def payload_checksum(payload: dict[str, Any]) -> str:
    raw = json.dumps(payload, sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


def _row_to_event(row: sqlite3.Row) -> Event:
    return Event(
        id=row["id"],
        task_id=row["task_id"],
        version=row["version"],
        event_type=row["event_type"],
        agent_name=row["agent_name"],
        payload=loads(row["payload"], {}),
        metadata=loads(row["metadata"], {}) or {},
        checksum=row["checksum"],
        created_at=row["created_at"],
    )


def validate_event(task_id: str, event_type: str, payload: dict[str, Any]) -> None:
    if not task_id:
        raise EventValidationError("Event is missing its task id.")
    if not event_type:
        raise EventValidationError("Event is missing its type.")
    if not isinstance(payload, dict):
        raise EventValidationError(f"{event_type} payload must be an object.")
    missing = [
        name
        for name in EVENT_REQUIRED_FIELDS.get(event_type, ())
        if payload.get(name) is None or payload.get(name) == ""
    ]
    if missing:
        raise EventValidationError(
            f"{event_type} payload is missing required fields: {', '.join(missing)}"
        )


class EventLog:
    def __init__(self, db: Database) -> None:
        self.db = db
        self.failed_events: deque[dict[str, Any]] = deque(maxlen=FAILED_EVENT_RETENTION)

    def append(
        self,
        task_id: str,
        event_type: str,
        payload: dict[str, Any] | None = None,
        *,
        agent_name: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Event:
        payload = payload if payload is not None else {}
        validate_event(task_id, event_type, payload)
        checksum = payload_checksum(payload)
        now = utcnow_iso()

        with self.db.transaction() as conn:
            duplicate = self._recent_duplicate(conn, task_id, event_type, checksum, now)
            if duplicate is not None:
                logger.debug("Suppressed duplicate %s event for %s", event_type, task_id)
                return duplicate
            row = conn.execute(
                "SELECT COALESCE(MAX(version), 0) AS version FROM events WHERE task_id = ?",
                (task_id,),
            ).fetchone()
            version = int(row["version"]) + 1
            cursor = conn.execute(
                "INSERT INTO events (task_id, version, event_type, agent_name, payload, "
                "metadata, checksum, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    task_id,
                    version,
                    event_type,
                    agent_name,
                    dumps(payload),
                    dumps(metadata) if metadata else None,
                    checksum,
                    now,
                ),
            )
        return Event(
            id=cursor.lastrowid,
            task_id=task_id,
            version=version,
            event_type=event_type,
            agent_name=agent_name,
            payload=payload,
            metadata=dict(metadata or {}),
            checksum=checksum,
            created_at=now,
        )

    @staticmethod
    def _recent_duplicate(
        conn: sqlite3.Connection,
        task_id: str,
        event_type: str,
        checksum: str,
        now: str,
    ) -> Event | None:
        rows = conn.execute(
            "SELECT * FROM events WHERE task_id = ? ORDER BY version DESC LIMIT ?",
            (task_id, DUPLICATE_LOOKBACK),
        ).fetchall()
        current = datetime.fromisoformat(now)
        for row in rows:
            if row["event_type"] != event_type or row["checksum"] != checksum:
                continue
            if current - datetime.fromisoformat(row["created_at"]) <= DUPLICATE_WINDOW:
                return _row_to_event(row)
        return None

    def safe_append(
        self,
        task_id: str,
        event_type: str,
        payload: dict[str, Any] | None = None,
        *,
        agent_name: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Event | None:
        """Append for telemetry purposes; failures are logged, never raised."""
        try:
            return self.append(
                task_id,
                event_type,
                payload,
                agent_name=agent_name,
                metadata=metadata,
            )
        except (EventValidationError, StateError) as exc:
            logger.warning("Dropped %s event for task %s: %s", event_type, task_id, exc)
            self.failed_events.append(
                {
                    "task_id": task_id,
                    "event_type": event_type,
                    "payload": payload,
                    "error": str(exc),
                    "at": utcnow_iso(),
                }
            )
            return None

    def get_events(
        self,
        task_id: str,
        *,
        event_type: str | None = None,
        since_version: int = 0,
    ) -> list[Event]:
        sql = "SELECT * FROM events WHERE task_id = ? AND version > ?"
        params: list[Any] = [task_id, since_version]
        if event_type:
            sql += " AND event_type = ?"
            params.append(event_type)
        sql += " ORDER BY version"
        return [_row_to_event(row) for row in self.db.fetchall(sql, params)]

    def get_current_state(self, task_id: str) -> TaskState:
        return build_state(self.get_events(task_id))


def _upsert(items: list[dict[str, Any]], item: dict[str, Any]) -> dict[str, Any]:
    for existing in items:
        if existing.get("id") == item.get("id"):
            existing.update(item)
            return existing
    items.append(item)
    return item


def _set_story_status(state: TaskState, story_id: str, status: str) -> dict[str, Any]:
    story = state.story(story_id)
    if story is None:
        story = {"id": story_id}
        state.stories.append(story)
    story["status"] = status
    return story


def _complete_epic_if_done(state: TaskState, epic_id: str | None) -> None:
    if not epic_id:
        return
    stories = [story for story in state.stories if story.get("epicId") == epic_id]
    epic = state.epic(epic_id)
    if epic is not None and stories and all(s.get("status") == "completed" for s in stories):
        epic["status"] = "completed"


def build_state(events: list[Event]) -> TaskState:
    state = TaskState()
    for event in events:
        payload = event.payload
        state.version = event.version
        cost = event.metadata.get("cost") if event.metadata else None
        if isinstance(cost, (int, float)):
            state.total_cost += float(cost)

        kind = event.event_type
        if kind == "PhaseStarted":
            state.current_phase = payload.get("phase")
        elif kind == "PhaseCompleted":
            phase = payload.get("phase")
            if phase == "development":
                state.development_completed = True
            elif phase == "review":
                state.review_completed = True
            elif phase == "integration":
                state.integration_completed = True
        elif kind == "PlanningCompleted":
            state.epics = copy.deepcopy(payload.get("epics") or [])
            state.planning_completed = True
        elif kind == "PlanningApproved":
            state.planning_approved = True
        elif kind == "EpicCreated":
            _upsert(state.epics, copy.deepcopy(payload))
        elif kind == "EpicBranchCreated":
            epic_id = payload["epicId"]
            state.branch_assignments[epic_id] = payload["branchName"]
            epic = state.epic(epic_id)
            if epic is not None:
                epic["branchName"] = payload["branchName"]
        elif kind == "StoryCreated":
            story = copy.deepcopy(payload)
            story.setdefault("status", "pending")
            _upsert(state.stories, story)
        elif kind == "StoryStarted":
            story = _set_story_status(state, payload["storyId"], "in_progress")
            if payload.get("workspacePath"):
                story["workspacePath"] = payload["workspacePath"]
        elif kind == "StoryCompleted":
            story = _set_story_status(state, payload["storyId"], "completed")
            _complete_epic_if_done(state, story.get("epicId"))
        elif kind == "StoryFailed":
            story = state.story(payload["storyId"])
            if story is not None and story.get("reviewStatus") == "approved":
                continue
            story = _set_story_status(state, payload["storyId"], "failed")
            story["error"] = payload.get("error")
        elif kind in ("StoryApproved", "StoryRejected"):
            story = state.story(payload["storyId"])
            if story is None:
                story = _set_story_status(state, payload["storyId"], "completed")
            story["reviewStatus"] = "approved" if kind == "StoryApproved" else "rejected"
            if "judgeScore" in payload:
                story["judgeScore"] = payload["judgeScore"]
            if payload.get("judgeComments"):
                story["judgeComments"] = payload["judgeComments"]
        elif kind == "BranchMerged":
            epic_id = payload.get("epicId")
            epic = state.epic(epic_id) if epic_id else None
            if epic is not None:
                epic["merged"] = True
    return state
