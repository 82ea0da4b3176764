from __future__ import annotations

import copy
from pathlib import Path
from typing import TYPE_CHECKING, Any

from conductor.state.repositories import Repository
from conductor.state.tasks import Task

if TYPE_CHECKING:
    from conductor.orchestration.phases.base import PhaseResult

SERIALIZABLE_KEYS = (
    "epics",
    "analysis",
    "architecture_brief",
    "codebase_knowledge",
    "stories",
    "branches",
    "plan_approved",
    "review",
    "integration",
)

DIRECTIVE_ORDER = {"critical": 0, "high": 1, "normal": 2, "suggestion": 3}
DIRECTIVE_LABELS = {
    "critical": "CRITICAL",
    "high": "HIGH PRIORITY",
    "normal": "NOTE",
    "suggestion": "SUGGESTION",
}


class OrchestrationContext:
    """Scratch space shared by the phases of one task execution."""

    def __init__(
        self,
        task: Task,
        repositories: list[Repository],
        workspace_path: Path,
        *,
        recovery: bool = False,
    ) -> None:
        self.task = task
        self.repositories = list(repositories)
        self.workspace_path = workspace_path
        self.recovery = recovery
        self.phase_results: dict[str, PhaseResult] = {}
        self._data: dict[str, Any] = {}
        self._consumed: list[str] = []

    @property
    def task_id(self) -> str:
        return self.task.id

    def refresh(self, task: Task) -> None:
        self.task = task

    def get_data(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set_data(self, key: str, value: Any) -> None:
        self._data[key] = value

    def repository(self, name: str | None) -> Repository | None:
        for repository in self.repositories:
            if name in (repository.name, repository.id):
                return repository
        return None

    def repository_path(self, repository: Repository) -> Path:
        path = Path(repository.local_path)
        return path if path.is_absolute() else self.workspace_path / path

    def register_branch(self, epic_id: str, repository: str, branch_name: str) -> None:
        branches = self._data.setdefault("branches", {})
        branches[epic_id] = {"repository": repository, "branch": branch_name}

    def record_result(self, phase: str, result: PhaseResult) -> None:
        self.phase_results[phase] = result

    # -- directives --------------------------------------------------------

    def get_directives_block(self, phase: str) -> str:
        """Render unconsumed directives aimed at ``phase`` and mark them consumed."""
        directives = self.task.orchestration.get("directives") or []
        pending = [
            directive
            for directive in directives
            if isinstance(directive, dict)
            and not directive.get("consumed")
            and directive.get("id") not in self._consumed
            and directive.get("target_phase") in (None, "", phase)
        ]
        if not pending:
            return ""
        pending.sort(key=lambda item: DIRECTIVE_ORDER.get(item.get("priority", "normal"), 2))
        lines = ["## Operator directives", ""]
        for directive in pending:
            label = DIRECTIVE_LABELS.get(directive.get("priority", "normal"), "NOTE")
            lines.append(f"- [{label}] {directive.get('content', '').strip()}")
            self._consumed.append(directive["id"])
        return "\n".join(lines) + "\n"

    def drain_consumed_directives(self) -> list[str]:
        consumed, self._consumed = self._consumed, []
        return consumed

    # -- crash-recovery snapshot ------------------------------------------

    def to_checkpoint(self) -> dict[str, Any]:
        return {
            key: copy.deepcopy(self._data[key]) for key in SERIALIZABLE_KEYS if key in self._data
        }

    def restore_from_checkpoint(self, snapshot: dict[str, Any] | None) -> list[str]:
        if not isinstance(snapshot, dict):
            return []
        restored = []
        for key in SERIALIZABLE_KEYS:
            if key in snapshot and key not in self._data:
                self._data[key] = copy.deepcopy(snapshot[key])
                restored.append(key)
        return restored
