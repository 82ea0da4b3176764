from __future__ import annotations

import json
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["claude", "openai"]


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    workspace_root: str = "."


@dataclass(slots=True)
class StorageConfig:
    database_path: str = ".conductor/conductor.db"


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "openai"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 1800.0
    claude_binary: str = "claude"
    openai_model: str = "gpt-5"


@dataclass(slots=True)
class AgentsConfig:
    default_model: str = "claude-sonnet-4-5"
    judge_model: str = "claude-sonnet-4-5"
    fixer_model: str = "claude-opus-4-1"


@dataclass(slots=True)
class WorkflowConfig:
    planning_max_attempts: int = 3
    judge_enabled: bool = True
    judge_min_score: int = 60
    review_max_attempts: int = 2
    max_parallel_epics: int = 4
    push_on_success: bool = False
    integration_branch_prefix: str = "integration"


@dataclass(slots=True)
class FixerConfig:
    max_attempts: int = 2
    retention_days: int = 7


@dataclass(slots=True)
class CheckpointConfig:
    freshness_seconds: int = 3600
    retention_days: int = 1
    heartbeat_turns: int = 5
    heartbeat_seconds: int = 30


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    task_log_retention: int = 1000
    activity_retention: int = 500


SECTION_ORDER = [
    "project",
    "storage",
    "backend",
    "agents",
    "workflow",
    "fixer",
    "checkpoints",
    "logging",
]


@dataclass(slots=True)
class ConductorConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    fixer: FixerConfig = field(default_factory=FixerConfig)
    checkpoints: CheckpointConfig = field(default_factory=CheckpointConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> ConductorConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ConductorConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            storage=StorageConfig(**data.get("storage", {})),
            backend=BackendConfig(**data.get("backend", {})),
            agents=AgentsConfig(**data.get("agents", {})),
            workflow=WorkflowConfig(**data.get("workflow", {})),
            fixer=FixerConfig(**data.get("fixer", {})),
            checkpoints=CheckpointConfig(**data.get("checkpoints", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {section: asdict(getattr(self, section)) for section in SECTION_ORDER}

    def database_path(self, root: Path) -> Path:
        path = Path(self.storage.database_path)
        if not path.is_absolute():
            path = root / path
        return path


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ConductorConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in SECTION_ORDER:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ConductorConfig:
    if not path.exists():
        return ConductorConfig.default()
    return ConductorConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: ConductorConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
