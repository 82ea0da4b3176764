from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from uuid import uuid4

from conductor.state.database import Database, StateError, utcnow_iso

REPOSITORY_TYPES = ("backend", "frontend", "mobile", "shared", "infrastructure")


@dataclass(slots=True)
class Repository:
    id: str
    name: str
    type: str | None
    local_path: str
    default_branch: str = "main"
    remote_url: str | None = None
    created_at: str = ""

    def to_dict(self) -> dict[str, str | None]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "local_path": self.local_path,
            "default_branch": self.default_branch,
            "remote_url": self.remote_url,
        }


def _row_to_repository(row: sqlite3.Row) -> Repository:
    return Repository(
        id=row["id"],
        name=row["name"],
        type=row["type"],
        local_path=row["local_path"],
        default_branch=row["default_branch"] or "main",
        remote_url=row["remote_url"],
        created_at=row["created_at"],
    )


class RepositoryStore:
    """Registry of repositories a task may target, each tagged with a content type."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def add(
        self,
        name: str,
        local_path: str,
        *,
        type: str | None = None,
        default_branch: str = "main",
        remote_url: str | None = None,
    ) -> Repository:
        if type is not None and type not in REPOSITORY_TYPES:
            raise StateError(
                f"Unknown repository type '{type}'. Expected one of: {', '.join(REPOSITORY_TYPES)}"
            )
        if self.find_by_name(name) is not None:
            raise StateError(f"Repository '{name}' is already registered.")
        repository = Repository(
            id=f"repo-{uuid4().hex[:12]}",
            name=name,
            type=type,
            local_path=local_path,
            default_branch=default_branch,
            remote_url=remote_url,
            created_at=utcnow_iso(),
        )
        self.db.execute(
            "INSERT INTO repositories (id, name, type, local_path, default_branch, remote_url, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                repository.id,
                repository.name,
                repository.type,
                repository.local_path,
                repository.default_branch,
                repository.remote_url,
                repository.created_at,
            ),
        )
        return repository

    def find_by_id(self, repository_id: str) -> Repository | None:
        row = self.db.fetchone("SELECT * FROM repositories WHERE id = ?", (repository_id,))
        return _row_to_repository(row) if row else None

    def find_by_name(self, name: str) -> Repository | None:
        row = self.db.fetchone("SELECT * FROM repositories WHERE name = ?", (name,))
        return _row_to_repository(row) if row else None

    def find_by_ids(self, repository_ids: list[str]) -> list[Repository]:
        """Return repositories in the order the ids were given; unknown ids are dropped."""
        found = []
        for repository_id in repository_ids:
            repository = self.find_by_id(repository_id)
            if repository is not None:
                found.append(repository)
        return found

    def find_all(self) -> list[Repository]:
        rows = self.db.fetchall("SELECT * FROM repositories ORDER BY created_at, name")
        return [_row_to_repository(row) for row in rows]

    def resolve(self, ref: str) -> Repository | None:
        return self.find_by_id(ref) or self.find_by_name(ref)
