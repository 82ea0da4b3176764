import json
import re
import subprocess
from pathlib import Path

import pytest
from click.testing import CliRunner

from conductor import cli as cli_module
from conductor.backends.base import AgentBackend, AgentReply, AgentRequest
from conductor.cli import cli

from conftest import APPROVE, PLAN, QA_PASS


def _git(args: list[str], cwd: Path) -> str:
    return subprocess.run(["git", *args], cwd=cwd, check=True, text=True, capture_output=True).stdout


def _init_git_repo(repo_path: Path) -> None:
    repo_path.mkdir(parents=True)
    _git(["init"], repo_path)
    _git(["config", "user.email", "test@example.com"], repo_path)
    _git(["config", "user.name", "Test User"], repo_path)
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    _git(["add", "README.md"], repo_path)
    _git(["commit", "-m", "seed"], repo_path)
    _git(["branch", "-M", "main"], repo_path)


class WorkingBackend(AgentBackend):
    """Answers by role; developer runs commit a file in their worktree like a real agent would."""

    def __init__(self) -> None:
        self.labels: list[str] = []

    async def run(self, request: AgentRequest) -> AgentReply:
        label = str(request.context.get("label", ""))
        self.labels.append(label)
        if label.startswith("planning"):
            content = json.dumps(PLAN)
        elif label.startswith("judge:"):
            content = APPROVE
        elif label == "integration:verify":
            content = QA_PASS
        else:
            workspace = request.working_directory
            assert workspace is not None
            name = label.replace(":", "-") + ".txt"
            (workspace / name).write_text(f"work for {label}\n", encoding="utf-8")
            _git(["add", name], workspace)
            _git(["commit", "-m", f"{label}"], workspace)
            content = f"Committed {name}"
        return AgentReply(content=content, session_id=f"sess-{len(self.labels)}", cost=0.05)


@pytest.fixture
def project(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> WorkingBackend:
    backend = WorkingBackend()
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(cli_module, "_build_backend", lambda config, root, tasks: backend)
    result = CliRunner().invoke(cli, ["init", "--name", "demo"])
    assert result.exit_code == 0, result.output
    return backend


def _invoke(*args: str) -> str:
    result = CliRunner().invoke(cli, list(args))
    assert result.exit_code == 0, result.output
    return result.output


def _create_task(*repos: str) -> str:
    args = ["create", "Add login", "-d", "Login API plus a login UI form"]
    for repo in repos:
        args += ["--repo", repo]
    output = _invoke(*args)
    match = re.search(r"Created task (\S+)", output)
    assert match is not None
    return match.group(1)


def test_init_writes_config_and_database(tmp_path: Path, project: WorkingBackend) -> None:
    assert (tmp_path / "conductor.toml").exists()
    assert (tmp_path / ".conductor" / "conductor.db").exists()
    assert 'name = "demo"' in (tmp_path / "conductor.toml").read_text(encoding="utf-8")


def test_task_runs_end_to_end_across_two_repositories(
    tmp_path: Path, project: WorkingBackend
) -> None:
    for name in ("api", "web"):
        _init_git_repo(tmp_path / name)
    _invoke("repo", "add", "api", str(tmp_path / "api"), "--type", "backend")
    _invoke("repo", "add", "web", str(tmp_path / "web"), "--type", "frontend")
    assert "frontend" in _invoke("repo", "list")
    task_id = _create_task("api", "web")

    output = _invoke("run", task_id)

    assert f"Task {task_id}: completed" in output
    assert "Ran: planning, development, review, integration" in output
    status = json.loads(_invoke("status", task_id))
    assert status["status"] == "completed"
    assert status["epics"] == 2
    assert set(status["stories"].values()) == {"completed"}
    assert all(phase["status"] == "completed" for phase in status["phases"].values())
    assert status["total_cost"] > 0
    target = f"integration/{task_id}"
    assert target in _git(["branch", "--list", target], tmp_path / "api")
    assert _git(["rev-parse", "--abbrev-ref", "HEAD"], tmp_path / "web").strip() == "main"
    assert not (tmp_path / "web" / "development-epic-2.txt").exists()
    assert "development-epic-2.txt" in _git(["ls-tree", "--name-only", target], tmp_path / "web")
    assert "development:epic-1" in project.labels


def test_operator_controls(tmp_path: Path, project: WorkingBackend) -> None:
    _invoke("repo", "add", "api", str(tmp_path / "api"), "--type", "backend")
    task_id = _create_task("api")

    assert "Queued directive" in _invoke("directive", task_id, "Use argon2", "--priority", "high")
    assert "will pause" in _invoke("pause", task_id)
    assert json.loads(_invoke("status", task_id))["status"] == "paused"
    assert "resumed" in _invoke("resume", task_id)
    assert json.loads(_invoke("status", task_id))["status"] == "pending"
    assert "Continuation #1 added" in _invoke("continue", task_id, "Also add logout")
    assert f"Task {task_id} cancelled." in _invoke("cancel", task_id)

    again = CliRunner().invoke(cli, ["cancel", task_id])
    assert again.exit_code == 1
    assert "already cancelled" in again.output
    rerun = CliRunner().invoke(cli, ["run", task_id])
    assert rerun.exit_code == 1
    assert "continuation" in rerun.output

    assert task_id in _invoke("status", "--status", "cancelled")
    assert "Nothing to recover." in _invoke("recover")
    assert "Removed 0 checkpoint(s) and 0 fix record(s)." in _invoke("cleanup")
    assert project.labels == []


def test_create_rejects_unknown_repository(project: WorkingBackend) -> None:
    result = CliRunner().invoke(cli, ["create", "Add login", "--repo", "ghost"])

    assert result.exit_code == 1
    assert "Repository not found: ghost" in result.output
