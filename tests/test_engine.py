import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from conductor.backends.base import BackendTimeoutError
from conductor.orchestration.context import OrchestrationContext
from conductor.orchestration.phases import PhasePreconditionError, PhaseResult, PhaseServices
from conductor.state import StateError


class FakePhase:
    """Phase whose outcome is a callable of the context, recording every execution."""

    def __init__(
        self,
        name: str,
        services: PhaseServices,
        outcome: Callable[[OrchestrationContext], PhaseResult] | None = None,
    ) -> None:
        self.name = name
        self.services = services
        self.outcome = outcome or (lambda context: PhaseResult.ok(self.name))
        self.executions = 0
        self.restored = 0

    async def should_skip(self, context: OrchestrationContext) -> bool:
        return self.services.skip_completed_step(context, self.name)

    async def restore(self, context: OrchestrationContext) -> None:
        self.restored += 1

    async def execute_phase(self, context: OrchestrationContext) -> PhaseResult:
        self.executions += 1
        return self.outcome(context)


class RepairablePhase(FakePhase):
    def __init__(self, name: str, services: PhaseServices, failure: PhaseResult) -> None:
        super().__init__(name, services, lambda context: failure)
        self.fixed_with: dict[str, Any] | None = None

    async def apply_fix(self, context: OrchestrationContext, data: dict[str, Any]) -> PhaseResult:
        self.fixed_with = data
        return PhaseResult.ok(self.name, metrics={"epics": len(data.get("epics", []))})


def _raise(exc: Exception) -> Callable[[OrchestrationContext], PhaseResult]:
    def _outcome(context: OrchestrationContext) -> PhaseResult:
        raise exc

    return _outcome


def _run(harness, phases, task_id: str, **kwargs):
    return asyncio.run(harness.engine(phases).run(task_id, **kwargs))


def test_default_pipeline_runs_to_completion(harness) -> None:
    task = harness.create_task()

    summary = asyncio.run(harness.engine().run(task.id))

    assert summary.status == "completed", summary.error
    assert summary.phases_run == ["planning", "development", "review", "integration"]
    assert summary.recovery is False
    assert summary.total_cost > 0
    stored = harness.tasks.get(task.id)
    assert stored.status == "completed"
    assert stored.completed_at is not None
    assert all(stored.step(name)["status"] == "completed" for name in summary.phases_run)
    assert set(stored.orchestration["checkpoint"]) >= {"epics", "stories", "review", "integration"}
    state = harness.events.get_current_state(task.id)
    assert state.development_completed and state.review_completed and state.integration_completed


def test_recovery_skips_completed_phases(harness) -> None:
    task = harness.create_task()
    first = FakePhase("first", harness.services)
    broken = FakePhase("second", harness.services, lambda c: PhaseResult.failure("second", "flaky"))

    failed = _run(harness, [first, broken], task.id)

    assert failed.status == "failed"
    assert failed.failed_phase == "second"
    assert harness.tasks.get(task.id).status == "failed"

    broken.outcome = lambda context: PhaseResult.ok("second")
    recovered = _run(harness, [first, broken], task.id)

    assert recovered.recovery is True
    assert recovered.status == "completed"
    assert recovered.phases_skipped == ["first"]
    assert recovered.phases_run == ["second"]
    assert first.executions == 1 and first.restored == 1
    assert harness.tasks.get(task.id).step("first")["skipped_on_recovery"] is True
    assert len(harness.events.get_events(task.id, event_type="PhaseSkipped")) == 1


def test_continuation_reruns_every_phase(harness) -> None:
    task = harness.create_task()
    phases = [FakePhase("first", harness.services), FakePhase("second", harness.services)]
    assert _run(harness, phases, task.id).status == "completed"

    with pytest.raises(StateError, match="continuation"):
        _run(harness, phases, task.id)

    harness.tasks.add_continuation(task.id, "Also add logout")
    summary = _run(harness, phases, task.id)

    assert summary.status == "completed"
    assert summary.phases_skipped == []
    assert [phase.executions for phase in phases] == [2, 2]
    assert harness.tasks.get(task.id).step("first")["continuation_seq"] == 1


def test_precondition_failure_is_fatal_and_not_repaired(harness) -> None:
    task = harness.create_task()
    phase = FakePhase("planning", harness.services, _raise(PhasePreconditionError("no repos")))

    summary = _run(harness, [phase], task.id)

    assert summary.status == "failed"
    assert summary.error == "no repos"
    step = harness.tasks.get(task.id).step("planning")
    assert step["status"] == "failed"
    assert step["fatal"] is True
    assert harness.fix_attempts.get_attempt_count(task.id, "planning") == 0


def test_crashing_phase_still_records_a_failed_step(harness) -> None:
    task = harness.create_task()
    phase = FakePhase("planning", harness.services, _raise(RuntimeError("kaboom")))

    with pytest.raises(RuntimeError, match="kaboom"):
        _run(harness, [phase], task.id)

    stored = harness.tasks.get(task.id)
    assert stored.status == "failed"
    assert stored.step("planning")["status"] == "failed"
    assert stored.step("planning")["error"] == "RuntimeError: kaboom"
    failed = harness.events.get_events(task.id, event_type="PhaseFailed")
    assert [event.payload["error"] for event in failed] == ["RuntimeError: kaboom"]
    assert any("Run crashed" in entry["message"] for entry in stored.logs)


def test_backend_timeout_fails_the_phase_without_crashing(harness) -> None:
    task = harness.create_task()
    phase = FakePhase("development", harness.services, _raise(BackendTimeoutError("timed out")))

    summary = _run(harness, [phase], task.id)

    assert summary.status == "failed"
    assert summary.error == "timed out"
    assert len(harness.events.get_events(task.id, event_type="PhaseFailed")) == 1


def test_fixable_failure_is_repaired_by_the_global_fixer(harness) -> None:
    task = harness.create_task()
    failure = PhaseResult.failure(
        "planning",
        "Could not parse planning JSON",
        fixable=True,
        raw_output='Plan:\n```json\n{"epics": [{"id": "epic-1"}]}\n```',
        required_fields=("epics",),
        error_type="json_parsing",
    )
    phase = RepairablePhase("planning", harness.services, failure)

    summary = _run(harness, [phase], task.id)

    assert summary.status == "completed"
    assert phase.fixed_with == {"epics": [{"id": "epic-1"}]}
    assert summary.warnings[0] == "Recovered from: Could not parse planning JSON"
    step = harness.tasks.get(task.id).step("planning")
    assert step["metrics"]["fixed_by"] == "lenient_extraction"
    fix_event = harness.events.get_events(task.id, event_type="FixApplied")[0]
    assert fix_event.payload["errorType"] == "json_parsing"
    assert fix_event.payload["success"] is True
    # A completed run clears the fixer's attempt counters.
    assert harness.fix_attempts.get_attempt_count(task.id, "planning") == 0


def test_unrepairable_failure_keeps_the_original_error(harness) -> None:
    task = harness.create_task()
    failure = PhaseResult.failure(
        "planning", "odd failure", fixable=True, raw_output="no json here", error_type="unknown"
    )
    phase = RepairablePhase("planning", harness.services, failure)

    summary = _run(harness, [phase], task.id)

    assert summary.status == "failed"
    assert summary.error == "odd failure"
    assert phase.fixed_with is None
    assert any("could not repair planning" in warning for warning in summary.warnings)
    assert harness.fix_attempts.get_attempt_count(task.id, "planning") == 1


def test_phase_needing_approval_pauses_the_task(harness) -> None:
    task = harness.create_task()
    gate = FakePhase(
        "planning",
        harness.services,
        lambda c: PhaseResult.ok("planning", data={"needs_approval": True}, warnings=["check me"]),
    )
    after = FakePhase("development", harness.services)

    summary = _run(harness, [gate, after], task.id)

    assert summary.status == "paused"
    assert after.executions == 0
    stored = harness.tasks.get(task.id)
    assert stored.status == "paused"
    assert stored.orchestration["pending_approval"]["phase"] == "planning"
    with pytest.raises(StateError, match="paused"):
        _run(harness, [gate, after], task.id)

    harness.tasks.set_paused(task.id, False)
    with pytest.raises(StateError, match="approval"):
        _run(harness, [gate, after], task.id)


def test_cancel_request_stops_before_the_first_phase(harness) -> None:
    task = harness.create_task()
    harness.tasks.set_cancel_requested(task.id)
    phase = FakePhase("planning", harness.services)

    summary = _run(harness, [phase], task.id)

    assert summary.status == "cancelled"
    assert phase.executions == 0
    assert harness.tasks.get(task.id).status == "cancelled"
    stopped = harness.events.get_events(task.id, event_type="PhaseStopped")
    assert [event.payload["phase"] for event in stopped] == ["planning"]
    assert stopped[0].payload["status"] == "cancelled"


def test_pause_takes_effect_between_phases(harness) -> None:
    task = harness.create_task()

    def _pause(context: OrchestrationContext) -> PhaseResult:
        harness.tasks.set_paused(context.task_id, True)
        return PhaseResult.ok("planning")

    after = FakePhase("development", harness.services)
    summary = _run(harness, [FakePhase("planning", harness.services, _pause), after], task.id)

    assert summary.status == "paused"
    assert summary.error == "Task paused by user"
    assert after.executions == 0
    assert harness.tasks.get(task.id).step("planning")["status"] == "completed"
    stopped = harness.events.get_events(task.id, event_type="PhaseStopped")
    assert [event.payload for event in stopped] == [
        {"phase": "development", "reason": "Task paused by user", "status": "paused"}
    ]


def test_cancel_inside_a_phase_records_the_stopped_step(harness) -> None:
    task = harness.create_task()

    def _cancel(context: OrchestrationContext) -> PhaseResult:
        harness.tasks.set_cancel_requested(context.task_id)
        return PhaseResult.stopped("development", "Task cancelled by user")

    after = FakePhase("review", harness.services)
    summary = _run(harness, [FakePhase("development", harness.services, _cancel), after], task.id)

    assert summary.status == "cancelled"
    assert after.executions == 0
    assert harness.tasks.get(task.id).step("development")["status"] == "stopped"
    stopped = harness.events.get_events(task.id, event_type="PhaseStopped")
    assert len(stopped) == 1
    assert stopped[0].payload["phase"] == "development"
    assert stopped[0].payload["reason"] == "Task cancelled by user"
    assert harness.events.get_events(task.id, event_type="PhaseFailed") == []


def test_recover_resumes_interrupted_tasks_only(harness) -> None:
    interrupted = harness.create_task(title="Interrupted")
    cancelled = harness.create_task(title="Cancelled")
    harness.tasks.update_status(interrupted.id, "in_progress")
    harness.tasks.update_status(cancelled.id, "cancelled")
    harness.checkpoints.save_checkpoint(interrupted.id, "development:epic-1", "sess-a")
    harness.checkpoints.save_checkpoint(cancelled.id, "development:epic-1", "sess-b")
    phase = FakePhase("planning", harness.services)

    summaries = asyncio.run(harness.engine([phase]).recover())

    assert [summary.task_id for summary in summaries] == [interrupted.id]
    assert summaries[0].recovery is True
    assert summaries[0].status == "completed"
    assert harness.checkpoints.get(cancelled.id, "development:epic-1").status == "abandoned"
    assert asyncio.run(harness.engine([phase]).recover()) == []


def test_run_many_turns_errors_into_failed_summaries(harness) -> None:
    runnable = harness.create_task(title="Runnable")
    finished = harness.create_task(title="Finished")
    harness.tasks.update_status(finished.id, "completed")
    phase = FakePhase("planning", harness.services)

    summaries = asyncio.run(harness.engine([phase]).run_many([runnable.id, finished.id]))

    assert [summary.status for summary in summaries] == ["completed", "failed"]
    assert "continuation" in summaries[1].error
