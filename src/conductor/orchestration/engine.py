"""Phase engine: drives a task through its phases and keeps its record honest.

Every phase it starts ends with a persisted step record, whatever the outcome.
Completed steps are skipped only on crash recovery, never after a continuation.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from contextvars import ContextVar
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from conductor.backends.base import BackendExecutionError, BackendTimeoutError
from conductor.orchestration.context import OrchestrationContext
from conductor.orchestration.fixer import GlobalFixer
from conductor.orchestration.phases import (
    DevelopmentPhase,
    FixablePhase,
    IntegrationPhase,
    Phase,
    PhasePreconditionError,
    PhaseResult,
    PhaseServices,
    PlanningPhase,
    ReviewPhase,
)
from conductor.state.database import StateError, utcnow_iso
from conductor.state.events import EventLog
from conductor.state.repositories import RepositoryStore
from conductor.state.tasks import TaskStore

logger = logging.getLogger(__name__)

RUNNABLE_STATUSES = ("pending", "in_progress", "failed")

# Id of the task driven by the current asyncio task; read by backend event hooks.
current_task_id: ContextVar[str | None] = ContextVar("conductor_task_id", default=None)


@dataclass(slots=True)
class RunSummary:
    task_id: str
    status: str
    started_at: str
    ended_at: str = ""
    recovery: bool = False
    phases_run: list[str] = field(default_factory=list)
    phases_skipped: list[str] = field(default_factory=list)
    failed_phase: str | None = None
    error: str | None = None
    warnings: list[str] = field(default_factory=list)
    total_cost: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "status": self.status,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "recovery": self.recovery,
            "phases_run": list(self.phases_run),
            "phases_skipped": list(self.phases_skipped),
            "failed_phase": self.failed_phase,
            "error": self.error,
            "warnings": list(self.warnings),
            "total_cost": self.total_cost,
        }


def build_default_phases(services: PhaseServices) -> list[Phase]:
    return [
        PlanningPhase(services),
        DevelopmentPhase(services),
        ReviewPhase(services),
        IntegrationPhase(services),
    ]


class PhaseEngine:
    def __init__(
        self,
        services: PhaseServices,
        repositories: RepositoryStore,
        phases: Sequence[Phase],
        *,
        fixer: GlobalFixer | None = None,
        workspace_root: Path | None = None,
    ) -> None:
        self.services = services
        self.repositories = repositories
        self.phases = list(phases)
        self.fixer = fixer
        self.workspace_root = (workspace_root or Path.cwd()).resolve()

    @property
    def tasks(self) -> TaskStore:
        return self.services.tasks

    @property
    def events(self) -> EventLog:
        return self.services.events

    # -- single task ---------------------------------------------------------

    async def run(self, task_id: str, *, recovery: bool | None = None) -> RunSummary:
        task = self.tasks.get(task_id)
        if task.status == "paused":
            raise StateError(f"Task {task_id} is paused; resume it first.")
        if task.status not in RUNNABLE_STATUSES:
            raise StateError(f"Task {task_id} is {task.status}; add a continuation to rerun it.")
        if task.orchestration.get("pending_approval"):
            raise StateError(f"Task {task_id} is waiting for approval; resume it to approve.")

        steps = task.orchestration.get("steps") or {}
        if recovery is None:
            recovery = bool(steps) and any(
                isinstance(step, dict) and step.get("status") for step in steps.values()
            )
        context = OrchestrationContext(
            task,
            self.repositories.find_by_ids(task.repository_ids),
            self.workspace_root,
            recovery=recovery,
        )
        if recovery:
            restored = context.restore_from_checkpoint(task.orchestration.get("checkpoint"))
            if restored:
                logger.info("Restored %s for task %s", ", ".join(restored), task_id)

        summary = RunSummary(
            task_id=task_id, status="in_progress", started_at=utcnow_iso(), recovery=recovery
        )
        self.tasks.update_status(task_id, "in_progress")
        self.tasks.append_log(task_id, "Recovery run started" if recovery else "Run started")
        logger.info("Task %s started (recovery=%s)", task_id, recovery)

        token = current_task_id.set(task_id)
        try:
            await self._drive(context, summary)
        except Exception as exc:
            logger.exception("Task %s crashed", task_id)
            self.tasks.update_status(task_id, "failed")
            self.tasks.append_log(task_id, f"Run crashed: {exc}", level="error")
            raise
        finally:
            current_task_id.reset(token)
            summary.ended_at = utcnow_iso()
            orchestration = self.tasks.get(task_id).orchestration
            summary.total_cost = float(orchestration.get("total_cost") or 0.0)
        return summary

    async def _drive(self, context: OrchestrationContext, summary: RunSummary) -> None:
        task_id = context.task_id
        for phase in self.phases:
            reason = self.services.stop_requested(context)
            if reason:
                self._stop(context, summary, phase.name, reason)
                return

            if await phase.should_skip(context):
                await phase.restore(context)
                self._mark_skipped(task_id, phase.name)
                summary.phases_skipped.append(phase.name)
                continue

            result = await self._execute(phase, context)
            summary.phases_run.append(phase.name)
            summary.warnings.extend(result.warnings)
            context.record_result(phase.name, result)
            self._persist_context(context)

            if result.cancelled:
                self._stop(context, summary, phase.name, result.error or "Stopped")
                return
            if not result.success:
                summary.status = "failed"
                summary.failed_phase = phase.name
                summary.error = result.error
                self.tasks.update_status(task_id, "failed")
                self.tasks.append_log(
                    task_id,
                    f"Phase {phase.name} failed: {result.error}",
                    level="error",
                    phase=phase.name,
                )
                logger.error("Task %s failed in %s: %s", task_id, phase.name, result.error)
                return
            if result.data.get("needs_approval"):
                self.tasks.set_pending_approval(
                    task_id,
                    {"phase": phase.name, "requested_at": utcnow_iso(), "warnings": result.warnings},
                )
                self.tasks.set_paused(task_id, True)
                summary.status = "paused"
                summary.error = f"Phase {phase.name} output needs approval"
                self.tasks.append_log(task_id, summary.error, level="warning", phase=phase.name)
                return

        summary.status = "completed"
        self.tasks.update_status(task_id, "completed")
        if self.fixer is not None:
            self.fixer.attempts.reset(task_id)
        self.tasks.append_log(task_id, "Run completed")
        logger.info("Task %s completed", task_id)

    def _stop(
        self, context: OrchestrationContext, summary: RunSummary, phase: str, reason: str
    ) -> None:
        task = self.tasks.get(context.task_id)
        cancelled = bool(task.orchestration.get("cancel_requested"))
        summary.status = "cancelled" if cancelled else "paused"
        summary.error = reason
        self.tasks.update_status(context.task_id, summary.status)
        self.events.safe_append(
            context.task_id,
            "PhaseStopped",
            {"phase": phase, "reason": reason, "status": summary.status},
        )
        self.tasks.append_log(context.task_id, reason, level="warning")
        logger.info("Task %s stopped: %s", context.task_id, reason)

    def _mark_skipped(self, task_id: str, phase: str) -> None:
        now = utcnow_iso()

        def _updater(orchestration: dict[str, Any]) -> None:
            step = orchestration.setdefault("steps", {}).setdefault(phase, {})
            step["skipped_on_recovery"] = True
            step["skipped_at"] = now

        self.tasks.modify_orchestration(task_id, _updater)
        self.events.safe_append(
            task_id, "PhaseSkipped", {"phase": phase, "reason": "completed before restart"}
        )
        logger.info("Skipping %s for task %s (already completed)", phase, task_id)

    # -- one phase -----------------------------------------------------------

    async def _execute(self, phase: Phase, context: OrchestrationContext) -> PhaseResult:
        task_id = context.task_id
        self.tasks.update_phase_status(task_id, phase.name, "in_progress")
        self.events.safe_append(task_id, "PhaseStarted", {"phase": phase.name})
        result: PhaseResult | None = None
        crash: str | None = None
        try:
            try:
                result = await phase.execute_phase(context)
            except PhasePreconditionError as exc:
                result = PhaseResult.failure(
                    phase.name, str(exc), fatal=True, error_type="precondition"
                )
            except BackendExecutionError as exc:
                result = PhaseResult.failure(
                    phase.name,
                    str(exc),
                    error_type="timeout" if isinstance(exc, BackendTimeoutError) else None,
                )
            if not result.success and result.fixable and not result.fatal:
                result = await self._try_fix(phase, context, result)
        except Exception as exc:
            crash = f"{type(exc).__name__}: {exc}"[:1000]
            raise
        finally:
            self._finish_step(task_id, phase.name, result, crash)
        return result

    async def _try_fix(
        self, phase: Phase, context: OrchestrationContext, result: PhaseResult
    ) -> PhaseResult:
        if self.fixer is None:
            return result
        fix = await self.fixer.attempt_fix(
            context.task_id,
            phase.name,
            result.error or "",
            raw_output=result.raw_output,
            required_fields=result.required_fields,
            error_type=result.error_type,
            workspace_path=context.workspace_path,
        )
        if fix.cost or fix.tokens:
            self.tasks.record_usage(context.task_id, phase.name, cost=fix.cost, tokens=fix.tokens)
        if not fix.fixed:
            result.warnings.append(f"Global fixer could not repair {phase.name}: {fix.error}")
            return result
        if not isinstance(phase, FixablePhase):
            result.warnings.append(f"Phase {phase.name} cannot adopt a repaired payload")
            return result

        logger.info("Applying %s repair to %s for task %s", fix.method, phase.name, context.task_id)
        fixed = await phase.apply_fix(context, fix.data or {})
        self.events.safe_append(
            context.task_id,
            "FixApplied",
            {
                "phase": phase.name,
                "method": fix.method,
                "attempt": fix.attempts_made,
                "errorType": fix.error_type,
                "success": fixed.success,
            },
            agent_name="fixer",
        )
        fixed.metrics.setdefault("fixed_by", fix.method)
        fixed.warnings[:0] = [f"Recovered from: {result.error}"]
        return fixed

    def _finish_step(
        self, task_id: str, phase: str, result: PhaseResult | None, crash: str | None = None
    ) -> None:
        """Persist the step record; a phase is never left in_progress."""
        if result is not None and result.success:
            seq = int(self.tasks.get(task_id).orchestration.get("continuation_seq") or 0)
            self.tasks.update_phase_status(
                task_id,
                phase,
                "completed",
                continuation_seq=seq,
                metrics=result.metrics,
                warnings=result.warnings,
                skipped_on_recovery=False,
            )
            self.events.safe_append(
                task_id, "PhaseCompleted", {"phase": phase, "metrics": result.metrics}
            )
            return
        if result is not None and result.cancelled:
            self.tasks.update_phase_status(task_id, phase, "stopped", error=result.error)
            return
        if result is not None:
            error = result.error
        else:
            error = crash or "Phase was interrupted"
        self.tasks.update_phase_status(
            task_id,
            phase,
            "failed",
            error=error,
            fatal=bool(result and result.fatal),
        )
        self.events.safe_append(task_id, "PhaseFailed", {"phase": phase, "error": error or ""})

    def _persist_context(self, context: OrchestrationContext) -> None:
        consumed = context.drain_consumed_directives()
        if consumed:
            self.tasks.mark_directives_consumed(context.task_id, consumed)
        snapshot = context.to_checkpoint()
        snapshot["saved_at"] = utcnow_iso()

        def _updater(orchestration: dict[str, Any]) -> None:
            orchestration["checkpoint"] = snapshot

        self.tasks.modify_orchestration(context.task_id, _updater)

    # -- many tasks ----------------------------------------------------------

    async def run_many(
        self, task_ids: Sequence[str], *, recovery: bool | None = None
    ) -> list[RunSummary]:
        outcomes = await asyncio.gather(
            *(self.run(task_id, recovery=recovery) for task_id in task_ids),
            return_exceptions=True,
        )
        summaries: list[RunSummary] = []
        for task_id, outcome in zip(task_ids, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                summaries.append(
                    RunSummary(
                        task_id=task_id,
                        status="failed",
                        started_at="",
                        ended_at=utcnow_iso(),
                        error=str(outcome),
                    )
                )
            else:
                summaries.append(outcome)
        return summaries

    def _is_recoverable(self, task_id: str) -> bool:
        task = self.tasks.find_by_id(task_id)
        return task is not None and task.status in ("pending", "in_progress")

    async def recover(self) -> list[RunSummary]:
        """Resume every task a previous process left running."""
        task_ids: list[str] = []
        for checkpoint in self.services.checkpoints.recover_active(self._is_recoverable):
            if checkpoint.task_id not in task_ids:
                task_ids.append(checkpoint.task_id)
        for task in self.tasks.find_interrupted():
            if task.id not in task_ids:
                task_ids.append(task.id)
        if not task_ids:
            logger.info("No interrupted tasks to recover")
            return []
        logger.info("Recovering %d task(s): %s", len(task_ids), ", ".join(task_ids))
        return await self.run_many(task_ids, recovery=True)
