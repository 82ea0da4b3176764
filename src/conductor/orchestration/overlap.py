"""Make a planned epic set safe to run in parallel and bind each epic to a repository."""

from __future__ import annotations

import copy
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from conductor.state.repositories import Repository

logger = logging.getLogger(__name__)

BACKEND_PATH_KEYWORDS = ("backend", "api", "server", "routes", "controller", "model")
FRONTEND_PATH_KEYWORDS = (
    "frontend",
    "component",
    "pages",
    "views",
    ".tsx",
    ".jsx",
    "src/app",
)


@dataclass(slots=True)
class OverlapReport:
    epics: list[dict[str, Any]]
    conflicts: list[dict[str, Any]] = field(default_factory=list)
    dropped_dependencies: list[dict[str, str]] = field(default_factory=list)


def epic_files(epic: dict[str, Any]) -> set[str]:
    files: set[str] = set()
    for key in ("filesToModify", "filesToCreate"):
        values = epic.get(key)
        if isinstance(values, list):
            files.update(str(value).strip() for value in values if str(value).strip())
    return files


def _as_order(value: Any, default: int) -> int:
    try:
        order = int(value)
    except (TypeError, ValueError):
        return default
    return order if order > 0 else default


def _topological_order(
    ids: list[str], dependencies: dict[str, list[str]]
) -> tuple[list[str], set[str]]:
    position = {epic_id: index for index, epic_id in enumerate(ids)}
    indegree = {epic_id: 0 for epic_id in ids}
    dependents: dict[str, list[str]] = {epic_id: [] for epic_id in ids}
    for epic_id in ids:
        for dependency in dependencies[epic_id]:
            indegree[epic_id] += 1
            dependents[dependency].append(epic_id)
    ready = sorted((epic_id for epic_id in ids if indegree[epic_id] == 0), key=position.get)
    ordered: list[str] = []
    while ready:
        current = ready.pop(0)
        ordered.append(current)
        for dependent in dependents[current]:
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                ready.append(dependent)
                ready.sort(key=position.get)
    stuck = {epic_id for epic_id in ids if epic_id not in ordered}
    return ordered, stuck


def resolve_file_overlaps(epics: Sequence[dict[str, Any]]) -> OverlapReport:
    """Serialize epics whose file sets intersect.

    For every intersecting pair the later epic (by list position) gains a
    dependency on the earlier one, then execution orders are raised until
    each epic runs strictly after all of its dependencies. Declared
    dependencies that close a cycle are dropped, starting with edges from
    an earlier epic to a later one; overlap edges always point the other way.
    Dependencies on unknown epic ids are discarded.
    """
    resolved = [copy.deepcopy(dict(epic)) for epic in epics]
    for index, epic in enumerate(resolved):
        epic["id"] = str(epic.get("id") or f"epic-{index + 1}")
        epic["executionOrder"] = _as_order(epic.get("executionOrder"), index + 1)
        deps = epic.get("dependencies")
        epic["dependencies"] = [str(dep) for dep in deps] if isinstance(deps, list) else []

    ids = [epic["id"] for epic in resolved]
    by_id = {epic["id"]: epic for epic in resolved}
    position = {epic_id: index for index, epic_id in enumerate(ids)}
    report = OverlapReport(epics=resolved)

    file_sets = [epic_files(epic) for epic in resolved]
    conflicts_by_file: dict[str, list[str]] = {}
    for later in range(len(resolved)):
        for earlier in range(later):
            shared = file_sets[earlier] & file_sets[later]
            if not shared:
                continue
            earlier_id, later_id = ids[earlier], ids[later]
            if earlier_id not in resolved[later]["dependencies"]:
                resolved[later]["dependencies"].append(earlier_id)
            for path in sorted(shared):
                owners = conflicts_by_file.setdefault(path, [])
                for epic_id in (earlier_id, later_id):
                    if epic_id not in owners:
                        owners.append(epic_id)
    report.conflicts = [
        {"file": path, "epics": owners} for path, owners in sorted(conflicts_by_file.items())
    ]

    graph: dict[str, list[str]] = {
        epic_id: [
            dep for dep in by_id[epic_id]["dependencies"] if dep in by_id and dep != epic_id
        ]
        for epic_id in ids
    }
    ordered, stuck = _topological_order(ids, graph)
    while stuck:
        for epic_id in sorted(stuck, key=position.get):
            forward = [
                dep
                for dep in graph[epic_id]
                if dep in stuck and position[dep] > position[epic_id]
            ]
            for dep in forward:
                graph[epic_id].remove(dep)
                report.dropped_dependencies.append({"epic": epic_id, "dependency": dep})
                logger.warning("Dropped cyclic dependency %s -> %s", epic_id, dep)
        ordered, stuck = _topological_order(ids, graph)

    for epic_id in ordered:
        epic = by_id[epic_id]
        epic["dependencies"] = list(graph[epic_id])
        floor = max((by_id[dep]["executionOrder"] for dep in graph[epic_id]), default=0) + 1
        if epic["executionOrder"] < floor:
            epic["executionOrder"] = floor

    if report.conflicts:
        logger.info(
            "Resolved %d overlapping file(s) across %d epics",
            len(report.conflicts),
            len(resolved),
        )
    return report


def _infer_repository_from_files(
    epic: dict[str, Any], repositories: Sequence[Repository]
) -> Repository | None:
    files = [*(epic.get("filesToModify") or []), *(epic.get("filesToCreate") or [])]
    if not files:
        return None
    first = str(files[0]).lower()
    if any(keyword in first for keyword in BACKEND_PATH_KEYWORDS):
        wanted = "backend"
    elif any(keyword in first for keyword in FRONTEND_PATH_KEYWORDS):
        wanted = "frontend"
    else:
        return None
    for repository in repositories:
        if repository.type == wanted:
            return repository
    return None


def _match_repository(name: Any, repositories: Sequence[Repository]) -> Repository | None:
    if not isinstance(name, str) or not name.strip():
        return None
    wanted = name.strip().lower()
    for repository in repositories:
        if wanted in (repository.name.lower(), repository.id.lower()):
            return repository
        if repository.remote_url and repository.remote_url.lower().rstrip("/").endswith(
            "/" + wanted
        ):
            return repository
    return None


def assign_repositories(
    epics: Sequence[dict[str, Any]], repositories: Sequence[Repository]
) -> list[dict[str, Any]]:
    """Bind every epic to exactly one repository.

    Priority: explicit ``targetRepository`` that names a known repository,
    then the first ``affectedRepositories`` entry, then path keyword
    inference, then the first repository.
    """
    if not repositories:
        raise ValueError("Cannot assign epics without repositories.")
    enriched: list[dict[str, Any]] = []
    for index, source in enumerate(epics):
        epic = dict(source)
        repository = _match_repository(epic.get("targetRepository"), repositories)
        if repository is None:
            affected = epic.get("affectedRepositories")
            if isinstance(affected, list) and affected:
                repository = _match_repository(affected[0], repositories)
        if repository is None:
            repository = _infer_repository_from_files(epic, repositories)
        if repository is None:
            repository = repositories[0]
        epic["targetRepository"] = repository.name
        epic["repositoryId"] = repository.id
        epic["repoType"] = repository.type
        epic["affectedRepositories"] = [repository.name]
        epic["executionOrder"] = _as_order(epic.get("executionOrder"), index + 1)
        enriched.append(epic)
    return enriched
