from datetime import UTC, datetime, timedelta

import pytest

from conductor.state import Database, FixAttemptStore, SessionCheckpointStore, StateError, checkpoint_key


def test_checkpoint_key_shape() -> None:
    assert checkpoint_key("planning") == "planning"
    assert checkpoint_key("development", "epic-1") == "development:epic-1"


def test_save_is_an_idempotent_upsert(db: Database) -> None:
    store = SessionCheckpointStore(db)

    first = store.save_checkpoint("task-1", "development:epic-1", None, workspace_path="/w")
    second = store.save_checkpoint(
        "task-1",
        "development:epic-1",
        "sess-1",
        turns=3,
        last_message_id="msg-3",
        metadata={"branch": "b"},
    )

    assert second.id == first.id
    assert second.external_session_id == "sess-1"
    assert second.turns_completed == 3
    assert second.last_message_id == "msg-3"
    assert second.workspace_path == "/w"
    assert second.metadata == {"branch": "b"}
    assert len(store.find_by_task("task-1")) == 1


def test_terminal_checkpoint_is_never_resumed(db: Database) -> None:
    store = SessionCheckpointStore(db)
    store.save_checkpoint("task-1", "planning", "sess-1", turns=4)

    resume = store.build_resume_options(store.load_checkpoint("task-1", "planning"))
    assert resume is not None
    assert resume.session_id == "sess-1"
    assert resume.turns_completed == 4
    assert resume.to_dict()["is_resume"] is True

    assert store.mark_completed("task-1", "planning") is True
    assert store.mark_completed("task-1", "planning") is False
    assert store.load_checkpoint("task-1", "planning") is None

    fresh = store.save_checkpoint("task-1", "planning", None)
    assert fresh.is_active
    assert fresh.turns_completed == 0
    assert store.build_resume_options(fresh) is None


def test_mark_failed_records_error(db: Database) -> None:
    store = SessionCheckpointStore(db)
    store.save_checkpoint("task-1", "review", "sess-1")

    store.mark_failed("task-1", "review", "x" * 5000)

    checkpoint = store.get("task-1", "review")
    assert checkpoint is not None
    assert checkpoint.status == "failed"
    assert len(checkpoint.error or "") == 1000


def test_heartbeat_policy(db: Database) -> None:
    store = SessionCheckpointStore(db, heartbeat_turns=5, heartbeat_seconds=30)
    checkpoint = store.save_checkpoint("task-1", "planning", "sess-1", turns=2)

    assert store.should_update(checkpoint, 4) is False
    assert store.should_update(checkpoint, 7) is True

    checkpoint.last_checkpoint_at = (datetime.now(UTC) - timedelta(seconds=31)).isoformat()
    assert store.should_update(checkpoint, 3) is True


def test_recovery_only_returns_fresh_checkpoints(db: Database) -> None:
    store = SessionCheckpointStore(db, freshness=timedelta(hours=1))
    store.save_checkpoint("task-1", "planning", "sess-1")
    store.save_checkpoint("task-2", "planning", "sess-2")
    store.save_checkpoint("task-3", "planning", "sess-3")
    store.mark_completed("task-3", "planning")

    assert {item.task_id for item in store.find_active_for_recovery()} == {"task-1", "task-2"}
    later = datetime.now(UTC) + timedelta(hours=2)
    assert store.find_active_for_recovery(now=later) == []


def test_stale_checkpoint_is_abandoned_instead_of_resumed(db: Database) -> None:
    store = SessionCheckpointStore(db, freshness=timedelta(hours=1))
    store.save_checkpoint("task-1", "development:epic-1", "dead-session", turns=7)
    stale = (datetime.now(UTC) - timedelta(hours=5)).replace(microsecond=0).isoformat()
    db.execute(
        "UPDATE execution_checkpoints SET last_checkpoint_at = ? WHERE task_id = ?",
        (stale, "task-1"),
    )

    assert store.load_checkpoint("task-1", "development:epic-1") is None
    abandoned = store.get("task-1", "development:epic-1")
    assert abandoned is not None
    assert abandoned.status == "abandoned"
    assert abandoned.error == "Session checkpoint went stale"

    fresh = store.save_checkpoint("task-1", "development:epic-1", None)
    assert fresh.is_active
    assert fresh.external_session_id is None
    assert fresh.turns_completed == 0


def test_recover_active_abandons_unrunnable_tasks(db: Database) -> None:
    store = SessionCheckpointStore(db)
    store.save_checkpoint("task-1", "planning", "sess-1")
    store.save_checkpoint("task-2", "planning", "sess-2")

    recovered = store.recover_active(lambda task_id: task_id == "task-1")

    assert [item.task_id for item in recovered] == ["task-1"]
    abandoned = store.get("task-2", "planning")
    assert abandoned is not None
    assert abandoned.status == "abandoned"
    assert abandoned.error == "Task is no longer runnable"


def test_cleanup_removes_only_old_terminal_checkpoints(db: Database) -> None:
    store = SessionCheckpointStore(db)
    store.save_checkpoint("task-1", "planning", "sess-1")
    store.save_checkpoint("task-1", "review", "sess-2")
    store.mark_completed("task-1", "planning")

    assert store.cleanup(older_than_days=1) == 0
    assert store.cleanup(older_than_days=1, now=datetime.now(UTC) + timedelta(days=2)) == 1
    assert [item.phase_name for item in store.find_by_task("task-1")] == ["review"]


def test_fix_attempts_count_per_phase(db: Database) -> None:
    store = FixAttemptStore(db)

    assert store.get_attempt_count("task-1", "planning") == 0
    assert store.record_attempt("task-1", "planning", "bad json") == 1
    assert store.record_attempt("task-1", "planning", "e" * 2000) == 2
    assert store.record_attempt("task-1", "review") == 1

    stats = store.stats("task-1")
    assert stats["total_attempts"] == 3
    assert stats["phases"]["planning"]["attempts"] == 2
    assert len(stats["phases"]["planning"]["last_error"]) == 1000

    assert store.reset("task-1") == 2
    assert store.get_attempt_count("task-1", "planning") == 0


def test_fix_attempt_cleanup(db: Database) -> None:
    store = FixAttemptStore(db)
    store.record_attempt("task-1", "planning")

    assert store.cleanup(older_than_days=7) == 0
    assert store.cleanup(older_than_days=7, now=datetime.now(UTC) + timedelta(days=8)) == 1


def test_save_reports_a_row_that_cannot_be_read_back(db: Database, monkeypatch) -> None:
    store = SessionCheckpointStore(db)
    monkeypatch.setattr(store, "get", lambda task_id, phase_key: None)

    with pytest.raises(StateError, match="vanished"):
        store.save_checkpoint("task-1", "planning", "sess-1")
