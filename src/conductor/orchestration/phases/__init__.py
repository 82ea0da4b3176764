from conductor.orchestration.phases.base import (
    FixablePhase,
    Phase,
    PhasePreconditionError,
    PhaseResult,
    PhaseServices,
    StepState,
    step_state,
)
from conductor.orchestration.phases.development import DevelopmentPhase
from conductor.orchestration.phases.integration import IntegrationPhase
from conductor.orchestration.phases.planning import PlanningPhase
from conductor.orchestration.phases.review import ReviewPhase

__all__ = [
    "DevelopmentPhase",
    "FixablePhase",
    "IntegrationPhase",
    "Phase",
    "PhasePreconditionError",
    "PhaseResult",
    "PhaseServices",
    "PlanningPhase",
    "ReviewPhase",
    "StepState",
    "step_state",
]
