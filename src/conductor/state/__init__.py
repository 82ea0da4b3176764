from conductor.state.checkpoints import (
    ExecutionCheckpoint,
    ResumeOptions,
    SessionCheckpointStore,
    checkpoint_key,
)
from conductor.state.database import Database, StateError, TaskNotFoundError
from conductor.state.events import Event, EventLog, EventValidationError, TaskState
from conductor.state.fix_attempts import FixAttemptStore
from conductor.state.repositories import Repository, RepositoryStore
from conductor.state.tasks import Task, TaskStore

__all__ = [
    "Database",
    "Event",
    "EventLog",
    "EventValidationError",
    "ExecutionCheckpoint",
    "FixAttemptStore",
    "Repository",
    "RepositoryStore",
    "ResumeOptions",
    "SessionCheckpointStore",
    "StateError",
    "Task",
    "TaskNotFoundError",
    "TaskState",
    "TaskStore",
    "checkpoint_key",
]
