import json
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from conductor.backends.base import AgentBackend, AgentReply, AgentRequest
from conductor.config import ConductorConfig
from conductor.orchestration.context import OrchestrationContext
from conductor.orchestration.engine import PhaseEngine, build_default_phases
from conductor.orchestration.executor import AgentExecutor
from conductor.orchestration.fixer import GlobalFixer
from conductor.orchestration.judge import JudgeProtocol
from conductor.orchestration.phases import PhaseServices
from conductor.orchestration.workspace import MergeResult, branch_slug
from conductor.specialists import DeveloperAgent, FixerAgent, JudgeAgent, PlanningAgent, QAAgent
from conductor.state import (
    Database,
    EventLog,
    FixAttemptStore,
    Repository,
    RepositoryStore,
    SessionCheckpointStore,
    Task,
    TaskStore,
)

PLAN = {
    "analysis": "The API needs a login endpoint and the UI a form.",
    "architectureBrief": "JWT issued by the API, stored by the UI.",
    "epics": [
        {
            "id": "epic-1",
            "title": "Login API",
            "description": "Add a POST /login endpoint that issues a JWT",
            "filesToModify": ["src/api/routes.py"],
            "filesToCreate": ["src/api/auth.py"],
            "executionOrder": 1,
        },
        {
            "id": "epic-2",
            "title": "Login UI",
            "description": "Add a login form component that calls the API",
            "filesToCreate": ["src/components/LoginForm.tsx"],
            "executionOrder": 1,
        },
    ],
}
APPROVE = json.dumps({"approved": True, "score": 90, "feedback": "Looks complete."})
REJECT = json.dumps(
    {"approved": False, "score": 20, "feedback": "Too vague.", "issues": ["No tests planned"]}
)
QA_PASS = json.dumps({"passed": True, "errors": [], "summary": "build and tests green"})


class ScriptedBackend(AgentBackend):
    """Replies with queued outputs; the last one repeats once the queue runs dry."""

    def __init__(self, *outputs: str) -> None:
        self.outputs = list(outputs)
        self.requests: list[AgentRequest] = []
        self.error: Exception | None = None

    async def run(self, request: AgentRequest) -> AgentReply:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        output = self.outputs.pop(0) if len(self.outputs) > 1 else (self.outputs or [""])[0]
        number = len(self.requests)
        session_id = request.session_id or f"sess-{number}"
        if request.on_turn:
            request.on_turn(session_id, f"msg-{number}", 1)
        return AgentReply(
            content=output,
            session_id=session_id,
            last_message_id=f"msg-{number}",
            cost=0.1,
            usage={"input_tokens": 10, "output_tokens": 10},
            turns=1,
            backend="scripted",
        )

    @property
    def prompts(self) -> list[str]:
        return [request.user_prompt for request in self.requests]


@dataclass
class FakeRepositoryManager:
    root: Path
    prepared: list[str] = field(default_factory=list)
    merged: list[tuple[str, str]] = field(default_factory=list)
    pushed: list[str] = field(default_factory=list)
    conflicts: set[str] = field(default_factory=set)
    changes: dict[str, list[str]] = field(default_factory=dict)

    def prepare_workspace(self, repo_path: Path, branch: str, base: str) -> Path:
        workspace = self.root / branch_slug(branch)
        workspace.mkdir(parents=True, exist_ok=True)
        self.prepared.append(branch)
        return workspace

    def changed_files(self, repo_path: Path, branch: str, base: str) -> list[str]:
        return self.changes.get(branch, ["src/changed.py"])

    def merge_branch(self, repo_path: Path, source: str, target: str, base: str) -> MergeResult:
        if source in self.conflicts:
            return MergeResult(
                success=False, source=source, target=target, conflicts=["src/shared.py"]
            )
        self.merged.append((source, target))
        workspace = self.root / branch_slug(target)
        workspace.mkdir(parents=True, exist_ok=True)
        return MergeResult(
            success=True, source=source, target=target, commit="abc123", workspace=str(workspace)
        )

    def push_branch(self, repo_path: Path, branch: str, remote: str = "origin") -> bool:
        self.pushed.append(branch)
        return True


@dataclass
class Harness:
    root: Path
    db: Database
    config: ConductorConfig
    tasks: TaskStore
    events: EventLog
    checkpoints: SessionCheckpointStore
    fix_attempts: FixAttemptStore
    repositories: RepositoryStore
    backends: dict[str, ScriptedBackend]
    executor: AgentExecutor
    manager: FakeRepositoryManager
    services: PhaseServices

    def add_repositories(self) -> list[Repository]:
        return [
            self.repositories.add("api", str(self.root / "api"), type="backend"),
            self.repositories.add("web", str(self.root / "web"), type="frontend"),
        ]

    def create_task(self, **kwargs: Any) -> Task:
        repos = self.repositories.find_all() or self.add_repositories()
        kwargs.setdefault("repository_ids", [repo.id for repo in repos])
        return self.tasks.create(
            kwargs.pop("title", "Add login"),
            kwargs.pop("description", "Login API plus a login UI form"),
            **kwargs,
        )

    def context(self, task_id: str, *, recovery: bool = False) -> OrchestrationContext:
        task = self.tasks.get(task_id)
        return OrchestrationContext(
            task,
            self.repositories.find_by_ids(task.repository_ids),
            self.root,
            recovery=recovery,
        )

    def fixer(self) -> GlobalFixer:
        return GlobalFixer(
            self.fix_attempts, self.executor, max_attempts=self.config.fixer.max_attempts
        )

    def engine(self, phases: list[Any] | None = None, *, fixer: bool = True) -> PhaseEngine:
        return PhaseEngine(
            self.services,
            self.repositories,
            phases if phases is not None else build_default_phases(self.services),
            fixer=self.fixer() if fixer else None,
            workspace_root=self.root,
        )


@pytest.fixture
def db(tmp_path: Path) -> Iterator[Database]:
    database = Database(tmp_path / "state" / "conductor.db")
    yield database
    database.close()


@pytest.fixture
def harness(tmp_path: Path, db: Database) -> Harness:
    config = ConductorConfig.default()
    tasks = TaskStore(db)
    events = EventLog(db)
    checkpoints = SessionCheckpointStore(db)
    backends = {
        "planning-agent": ScriptedBackend(json.dumps(PLAN)),
        "developer": ScriptedBackend("Implemented the epic and committed."),
        "judge": ScriptedBackend(APPROVE),
        "qa": ScriptedBackend(QA_PASS),
        "fixer": ScriptedBackend("{}"),
    }
    executor = AgentExecutor(
        {
            "planning-agent": PlanningAgent(backends["planning-agent"]),
            "developer": DeveloperAgent(backends["developer"]),
            "judge": JudgeAgent(backends["judge"]),
            "qa": QAAgent(backends["qa"]),
            "fixer": FixerAgent(backends["fixer"]),
        }
    )
    manager = FakeRepositoryManager(tmp_path / "worktrees")
    services = PhaseServices(
        tasks=tasks,
        events=events,
        checkpoints=checkpoints,
        executor=executor,
        config=config,
        judge=JudgeProtocol(executor, min_score=config.workflow.judge_min_score),
        repository_manager=manager,
    )
    return Harness(
        root=tmp_path,
        db=db,
        config=config,
        tasks=tasks,
        events=events,
        checkpoints=checkpoints,
        fix_attempts=FixAttemptStore(db),
        repositories=RepositoryStore(db),
        backends=backends,
        executor=executor,
        manager=manager,
        services=services,
    )
