from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class WorkspaceError(RuntimeError):
    """Raised when a git operation on a managed repository fails."""


@dataclass(slots=True)
class MergeResult:
    success: bool
    source: str
    target: str
    conflicts: list[str] = field(default_factory=list)
    commit: str | None = None
    error: str | None = None
    workspace: str | None = None


class RepositoryManager(Protocol):
    def prepare_workspace(self, repo_path: Path, branch: str, base: str) -> Path: ...

    def changed_files(self, repo_path: Path, branch: str, base: str) -> list[str]: ...

    def merge_branch(self, repo_path: Path, source: str, target: str, base: str) -> MergeResult: ...

    def push_branch(self, repo_path: Path, branch: str, remote: str = "origin") -> bool: ...


def branch_slug(value: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9._-]+", "-", value).strip("-.")
    return slug[:60] or "work"


class GitRepositoryManager:
    """Isolated git worktree per branch, so epics in one repository can run side by side."""

    def __init__(self, worktree_root: Path | None = None) -> None:
        self.worktree_root = worktree_root

    @staticmethod
    def _run_git(
        repo_path: Path, args: list[str], check: bool = True
    ) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=repo_path,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise WorkspaceError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def is_repository(self, repo_path: Path) -> bool:
        if not repo_path.is_dir():
            return False
        proc = self._run_git(repo_path, ["rev-parse", "--is-inside-work-tree"], check=False)
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def branch_exists(self, repo_path: Path, branch: str) -> bool:
        proc = self._run_git(
            repo_path, ["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], check=False
        )
        return proc.returncode == 0

    def current_branch(self, repo_path: Path) -> str:
        return self._run_git(repo_path, ["rev-parse", "--abbrev-ref", "HEAD"]).stdout.strip()

    def _worktree_path(self, repo_path: Path, branch: str) -> Path:
        root = self.worktree_root or repo_path.resolve().parent / ".conductor-worktrees"
        return root / repo_path.resolve().name / branch_slug(branch)

    def prepare_workspace(self, repo_path: Path, branch: str, base: str) -> Path:
        """Check ``branch`` out in its own worktree, creating it from ``base`` if needed.

        An existing worktree is reused so a resumed session finds its files.
        """
        workspace = self._worktree_path(repo_path, branch)
        if workspace.exists() and self.is_repository(workspace):
            return workspace
        workspace.parent.mkdir(parents=True, exist_ok=True)
        if self.branch_exists(repo_path, branch):
            self._run_git(repo_path, ["worktree", "add", str(workspace), branch])
        else:
            self._run_git(repo_path, ["worktree", "add", "-b", branch, str(workspace), base])
        logger.info("Prepared worktree %s for %s", workspace, branch)
        return workspace

    def changed_files(self, repo_path: Path, branch: str, base: str) -> list[str]:
        proc = self._run_git(repo_path, ["diff", "--name-only", f"{base}...{branch}"])
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]

    def merge_branch(self, repo_path: Path, source: str, target: str, base: str) -> MergeResult:
        """Merge ``source`` into ``target`` inside the target's own worktree.

        The operator's checkout of ``repo_path`` is never switched or touched.
        """
        workspace = self.prepare_workspace(repo_path, target, base)
        proc = self._run_git(
            workspace,
            ["merge", "--no-ff", "--no-edit", "-m", f"Merge {source} into {target}", source],
            check=False,
        )
        if proc.returncode == 0:
            commit = self._run_git(workspace, ["rev-parse", "HEAD"]).stdout.strip()
            return MergeResult(
                success=True, source=source, target=target, commit=commit, workspace=str(workspace)
            )

        conflicted = self._run_git(
            workspace, ["diff", "--name-only", "--diff-filter=U"], check=False
        ).stdout
        conflicts = [line.strip() for line in conflicted.splitlines() if line.strip()]
        self._run_git(workspace, ["merge", "--abort"], check=False)
        return MergeResult(
            success=False,
            source=source,
            target=target,
            conflicts=conflicts,
            error=proc.stderr.strip() or proc.stdout.strip(),
            workspace=str(workspace),
        )

    def push_branch(self, repo_path: Path, branch: str, remote: str = "origin") -> bool:
        proc = self._run_git(repo_path, ["push", "-u", remote, branch], check=False)
        if proc.returncode != 0:
            logger.warning("Push of %s to %s failed: %s", branch, remote, proc.stderr.strip())
            return False
        return True
