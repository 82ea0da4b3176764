"""Phase contract shared by every step of the pipeline.

A phase is any object with a ``name`` and three coroutines: ``should_skip``,
``restore`` and ``execute_phase``. Phases that can take a repaired payload
from the Global Fixer additionally implement ``apply_fix``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from conductor.backends.base import TurnCallback
from conductor.config import ConductorConfig
from conductor.orchestration.context import OrchestrationContext
from conductor.orchestration.executor import AgentExecution, AgentExecutor
from conductor.orchestration.judge import JudgeProtocol, JudgeRequest, JudgeVerdict
from conductor.state.checkpoints import SessionCheckpointStore
from conductor.state.events import EventLog
from conductor.state.tasks import TaskStore

if TYPE_CHECKING:
    from conductor.orchestration.workspace import RepositoryManager


class PhasePreconditionError(RuntimeError):
    """Raised when a phase cannot start because its inputs are invalid; never retried."""


class StepState(str, Enum):
    NOT_STARTED = "not_started"
    COMPLETED = "completed"
    SUPERSEDED = "superseded"


def step_state(orchestration: dict[str, Any], phase: str) -> StepState:
    """Classify a phase's step record against the task's continuation history.

    A step completed before the most recent continuation is superseded: the
    added requirements may change what that phase would produce.
    """
    steps = orchestration.get("steps")
    step = steps.get(phase) if isinstance(steps, dict) else None
    if not isinstance(step, dict) or step.get("status") != "completed":
        return StepState.NOT_STARTED
    current_seq = int(orchestration.get("continuation_seq") or 0)
    if int(step.get("continuation_seq") or 0) < current_seq:
        return StepState.SUPERSEDED
    return StepState.COMPLETED


@dataclass(slots=True)
class PhaseResult:
    success: bool
    phase: str
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    warnings: list[str] = field(default_factory=list)
    metrics: dict[str, Any] = field(default_factory=dict)
    fixable: bool = False
    fatal: bool = False
    cancelled: bool = False
    raw_output: str | None = None
    required_fields: tuple[str, ...] = ()
    error_type: str | None = None

    @classmethod
    def ok(cls, phase: str, **kwargs: Any) -> PhaseResult:
        return cls(success=True, phase=phase, **kwargs)

    @classmethod
    def failure(cls, phase: str, error: str, **kwargs: Any) -> PhaseResult:
        return cls(success=False, phase=phase, error=error, **kwargs)

    @classmethod
    def stopped(cls, phase: str, reason: str) -> PhaseResult:
        return cls(success=False, phase=phase, error=reason, cancelled=True)


@runtime_checkable
class Phase(Protocol):
    name: str

    async def should_skip(self, context: OrchestrationContext) -> bool: ...

    async def restore(self, context: OrchestrationContext) -> None: ...

    async def execute_phase(self, context: OrchestrationContext) -> PhaseResult: ...


@runtime_checkable
class FixablePhase(Protocol):
    async def apply_fix(
        self, context: OrchestrationContext, data: dict[str, Any]
    ) -> PhaseResult: ...


@dataclass(slots=True)
class PhaseServices:
    tasks: TaskStore
    events: EventLog
    checkpoints: SessionCheckpointStore
    executor: AgentExecutor
    config: ConductorConfig
    judge: JudgeProtocol | None = None
    repository_manager: RepositoryManager | None = None

    def skip_completed_step(self, context: OrchestrationContext, phase: str) -> bool:
        """Shared skip policy: only a crash-recovery run skips, never a continuation."""
        task = self.tasks.get(context.task_id)
        context.refresh(task)
        state = step_state(task.orchestration, phase)
        if state is StepState.SUPERSEDED:
            return False
        return state is StepState.COMPLETED and context.recovery

    def stop_requested(self, context: OrchestrationContext) -> str | None:
        """Safe-point check of the pause/cancel flags; returns the reason to stop."""
        task = self.tasks.get(context.task_id)
        context.refresh(task)
        if task.orchestration.get("cancel_requested"):
            return "Task cancelled by user"
        if task.orchestration.get("paused"):
            return "Task paused by user"
        return None

    def record_usage(self, task_id: str, phase: str, execution: AgentExecution) -> None:
        self.tasks.record_usage(
            task_id,
            phase,
            cost=execution.cost,
            tokens=execution.total_tokens,
        )

    async def evaluate(self, phase: str, request: JudgeRequest) -> JudgeVerdict:
        """Run the judge and charge its cost to ``phase``; approves when no judge is wired."""
        if self.judge is None:
            return JudgeVerdict(approved=True, score=100, reason="No judge configured")
        verdict = await self.judge.evaluate(request)
        if verdict.cost or verdict.tokens:
            self.tasks.record_usage(
                request.task_id, phase, cost=verdict.cost, tokens=verdict.tokens
            )
        return verdict

    def heartbeat(
        self,
        task_id: str,
        phase_key: str,
        workspace_path: Path | None = None,
        *,
        base_turns: int = 0,
    ) -> TurnCallback:
        """Progress callback that persists the session checkpoint on the heartbeat policy.

        ``base_turns`` carries the turns already completed by a resumed session.
        """
        current = {"checkpoint": self.checkpoints.get(task_id, phase_key)}

        def _on_turn(session_id: str | None, message_id: str | None, turns: int) -> None:
            if not session_id:
                return
            total = base_turns + turns
            checkpoint = current["checkpoint"]
            if (
                checkpoint is None
                or not checkpoint.is_active
                or checkpoint.external_session_id != session_id
                or self.checkpoints.should_update(checkpoint, total)
            ):
                current["checkpoint"] = self.checkpoints.save_checkpoint(
                    task_id,
                    phase_key,
                    session_id,
                    turns=total,
                    last_message_id=message_id,
                    workspace_path=str(workspace_path) if workspace_path else None,
                )

        return _on_turn
