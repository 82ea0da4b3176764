import pytest

from conductor.state import Database, EventLog, EventValidationError


def test_versions_are_dense_per_task(db: Database) -> None:
    events = EventLog(db)

    first = events.append("task-1", "PhaseStarted", {"phase": "planning"})
    second = events.append("task-1", "PhaseCompleted", {"phase": "planning"})
    other = events.append("task-2", "PhaseStarted", {"phase": "planning"})

    assert (first.version, second.version, other.version) == (1, 2, 1)
    assert [event.event_type for event in events.get_events("task-1")] == [
        "PhaseStarted",
        "PhaseCompleted",
    ]
    assert [event.version for event in events.get_events("task-1", since_version=1)] == [2]
    assert len(events.get_events("task-1", event_type="PhaseStarted")) == 1


def test_identical_event_within_window_is_suppressed(db: Database) -> None:
    events = EventLog(db)

    first = events.append("task-1", "StoryStarted", {"storyId": "s1"})
    duplicate = events.append("task-1", "StoryStarted", {"storyId": "s1"})
    different = events.append("task-1", "StoryStarted", {"storyId": "s2"})

    assert duplicate.version == first.version
    assert duplicate.checksum == first.checksum
    assert different.version == 2
    assert len(events.get_events("task-1")) == 2


def test_validation_rejects_missing_fields(db: Database) -> None:
    events = EventLog(db)

    with pytest.raises(EventValidationError, match="task id"):
        events.append("", "PhaseStarted", {"phase": "planning"})
    with pytest.raises(EventValidationError, match="targetRepository"):
        events.append("task-1", "EpicCreated", {"id": "epic-1", "title": "API"})
    assert events.get_events("task-1") == []


def test_safe_append_records_failures_without_raising(db: Database) -> None:
    events = EventLog(db)

    result = events.safe_append("task-1", "PhaseFailed", {"phase": "review"})

    assert result is None
    assert len(events.failed_events) == 1
    assert events.failed_events[0]["event_type"] == "PhaseFailed"
    assert "error" in events.failed_events[0]["error"]


def test_unknown_event_types_are_accepted(db: Database) -> None:
    events = EventLog(db)

    event = events.append("task-1", "CustomNote", {"text": "hello"}, agent_name="operator")

    assert event.agent_name == "operator"
    assert events.get_events("task-1")[0].payload == {"text": "hello"}


def test_replay_derives_planning_and_story_state(db: Database) -> None:
    events = EventLog(db)
    task_id = "task-1"
    epics = [
        {"id": "epic-1", "title": "API", "targetRepository": "api"},
        {"id": "epic-2", "title": "UI", "targetRepository": "web"},
    ]
    events.append(task_id, "PhaseStarted", {"phase": "planning"})
    events.append(task_id, "PlanningCompleted", {"epics": epics}, metadata={"cost": 0.5})
    events.append(task_id, "PlanningApproved", {"score": 90})
    events.append(task_id, "EpicBranchCreated", {"epicId": "epic-1", "branchName": "c/t/epic-1"})
    events.append(task_id, "StoryCreated", {"id": "epic-1-story-1", "epicId": "epic-1", "title": "API"})
    events.append(task_id, "StoryStarted", {"storyId": "epic-1-story-1", "workspacePath": "/w/1"})
    events.append(
        task_id, "StoryCompleted", {"storyId": "epic-1-story-1"}, metadata={"cost": 1.25}
    )
    events.append(task_id, "StoryCreated", {"id": "epic-2-story-1", "epicId": "epic-2", "title": "UI"})
    events.append(task_id, "StoryFailed", {"storyId": "epic-2-story-1", "error": "tests failed"})
    events.append(task_id, "PhaseCompleted", {"phase": "development"})

    state = events.get_current_state(task_id)

    assert state.planning_completed is True
    assert state.planning_approved is True
    assert state.development_completed is True
    assert state.review_completed is False
    assert state.current_phase == "planning"
    assert state.version == 10
    assert state.total_cost == pytest.approx(1.75)
    assert state.branch_assignments == {"epic-1": "c/t/epic-1"}
    assert state.epic("epic-1")["branchName"] == "c/t/epic-1"
    assert state.epic("epic-1")["status"] == "completed"
    assert state.story("epic-1-story-1")["workspacePath"] == "/w/1"
    assert state.story("epic-2-story-1")["status"] == "failed"
    assert state.story("epic-2-story-1")["error"] == "tests failed"


def test_replay_keeps_approved_story_after_late_failure(db: Database) -> None:
    events = EventLog(db)
    task_id = "task-1"
    events.append(task_id, "StoryCreated", {"id": "s1", "epicId": "epic-1", "title": "API"})
    events.append(task_id, "StoryCompleted", {"storyId": "s1"})
    events.append(task_id, "StoryApproved", {"storyId": "s1", "judgeScore": 88, "judgeComments": "good"})
    events.append(task_id, "StoryFailed", {"storyId": "s1", "error": "late"})

    story = events.get_current_state(task_id).story("s1")

    assert story["status"] == "completed"
    assert story["reviewStatus"] == "approved"
    assert story["judgeScore"] == 88
    assert story["judgeComments"] == "good"
