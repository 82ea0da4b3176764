import tomllib
from pathlib import Path

from conductor import __version__
from conductor.config import ConductorConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "conductor.toml"
    config = ConductorConfig.default()
    config.project.name = "conductor-test"
    config.backend.primary = "openai"
    config.backend.fallback = "claude"
    config.backend.max_retries = 3
    config.backend.openai_model = "gpt-5-mini"
    config.workflow.planning_max_attempts = 4
    config.workflow.judge_min_score = 75
    config.workflow.push_on_success = True
    config.checkpoints.heartbeat_turns = 2

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.project.name == "conductor-test"
    assert loaded.backend.primary == "openai"
    assert loaded.backend.fallback == "claude"
    assert loaded.backend.max_retries == 3
    assert loaded.backend.openai_model == "gpt-5-mini"
    assert loaded.workflow.planning_max_attempts == 4
    assert loaded.workflow.judge_min_score == 75
    assert loaded.workflow.push_on_success is True
    assert loaded.checkpoints.heartbeat_turns == 2
    assert loaded.fixer.max_attempts == 2


def test_missing_config_file_falls_back_to_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded == ConductorConfig.default()


def test_database_path_is_relative_to_root(tmp_path: Path) -> None:
    config = ConductorConfig.default()
    assert config.database_path(tmp_path) == tmp_path / ".conductor" / "conductor.db"

    config.storage.database_path = str(tmp_path / "elsewhere.db")
    assert config.database_path(Path("/unused")) == tmp_path / "elsewhere.db"


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(ConductorConfig.default())

    for section in ("project", "storage", "backend", "agents", "workflow", "fixer", "checkpoints"):
        assert f"[{section}]" in rendered
    assert "max_retries" in rendered
    assert "retry_backoff_seconds" in rendered
    assert "heartbeat_turns" in rendered
    assert "push_on_success = false" in rendered
    assert tomllib.loads(rendered)["workflow"]["planning_max_attempts"] == 3


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
