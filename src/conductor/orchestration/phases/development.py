from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from pathlib import Path
from typing import Any

from conductor.backends.base import BackendExecutionError
from conductor.orchestration.context import OrchestrationContext
from conductor.orchestration.judge import JudgeVerdict
from conductor.orchestration.phases.base import (
    PhasePreconditionError,
    PhaseResult,
    PhaseServices,
)
from conductor.orchestration.workspace import WorkspaceError, branch_slug
from conductor.state.checkpoints import checkpoint_key
from conductor.state.repositories import Repository

logger = logging.getLogger(__name__)

MAX_SUMMARY = 2000


def epic_branch_name(task_id: str, epic_id: str) -> str:
    return f"conductor/{branch_slug(task_id)}/{branch_slug(epic_id)}"


def story_id_for(epic_id: str) -> str:
    return f"{epic_id}-story-1"


def build_developer_prompt(
    context: OrchestrationContext,
    epic: dict[str, Any],
    repository: Repository,
    branch: str,
    *,
    phase: str,
    feedback: JudgeVerdict | None = None,
) -> str:
    parts: list[str] = []
    if feedback is not None:
        parts.append(feedback.feedback_block())
    parts.append(f"# Epic {epic['id']}: {epic.get('title', '')}")
    if epic.get("description"):
        parts.append(str(epic["description"]))
    parts.append(
        f"Task: {context.task.title}\n"
        f"Repository: {repository.name} ({repository.type}), branch {branch}"
    )
    brief = context.get_data("architecture_brief")
    if brief:
        parts.append(f"## Architecture brief\n{brief}")
    for key, label in (
        ("filesToModify", "Files to modify"),
        ("filesToCreate", "Files to create"),
        ("filesToRead", "Files to read for context"),
    ):
        files = epic.get(key) or []
        if files:
            parts.append(f"## {label}\n" + "\n".join(f"- {path}" for path in files))
    directives = context.get_directives_block(phase)
    if directives:
        parts.append(directives)
    parts.append(
        "Implement the epic in the working directory and commit your changes on the "
        "current branch. Finish with a short summary of what changed."
    )
    return "\n\n".join(parts)


def group_by_order(epics: list[dict[str, Any]]) -> list[tuple[int, list[dict[str, Any]]]]:
    groups: dict[int, list[dict[str, Any]]] = defaultdict(list)
    for epic in epics:
        groups[int(epic.get("executionOrder") or 1)].append(epic)
    return sorted(groups.items())


class DevelopmentPhase:
    """Runs one developer session per epic, each on its own branch and worktree.

    Groups of equal ``executionOrder`` run in order; epics inside a group run
    concurrently up to ``workflow.max_parallel_epics``.
    """

    name = "development"

    def __init__(self, services: PhaseServices) -> None:
        self.services = services

    async def should_skip(self, context: OrchestrationContext) -> bool:
        return self.services.skip_completed_step(context, self.name)

    async def restore(self, context: OrchestrationContext) -> None:
        step = context.task.step(self.name)
        branches = step.get("branches")
        if not branches:
            state = self.services.events.get_current_state(context.task_id)
            branches = {
                epic_id: {
                    "repository": (state.epic(epic_id) or {}).get("targetRepository"),
                    "branch": branch,
                }
                for epic_id, branch in state.branch_assignments.items()
            }
        context.set_data("stories", step.get("stories") or {})
        context.set_data("branches", branches)

    def _epics(self, context: OrchestrationContext) -> list[dict[str, Any]]:
        epics = context.get_data("epics")
        if not epics:
            epics = context.task.orchestration.get("epics") or []
            context.set_data("epics", epics)
        return epics

    def _save_story(self, context: OrchestrationContext, record: dict[str, Any]) -> None:
        story = {
            "id": record["story_id"],
            "epicId": record["epic_id"],
            "assignedTo": "developer",
            "status": record["status"],
        }

        def _updater(orchestration: dict[str, Any]) -> None:
            step = orchestration.setdefault("steps", {}).setdefault(self.name, {})
            step.setdefault("stories", {})[record["epic_id"]] = record
            step.setdefault("branches", {})[record["epic_id"]] = {
                "repository": record["repository"],
                "branch": record["branch"],
            }
            others = [
                item for item in orchestration.get("stories") or [] if item.get("id") != story["id"]
            ]
            orchestration["stories"] = [*others, story]

        self.services.tasks.modify_orchestration(context.task_id, _updater)
        context.get_data("stories")[record["epic_id"]] = record

    async def execute_phase(self, context: OrchestrationContext) -> PhaseResult:
        services = self.services
        epics = self._epics(context)
        if not epics:
            raise PhasePreconditionError("No epics to develop; planning produced no plan.")
        if services.repository_manager is None:
            raise PhasePreconditionError("No repository manager configured for development.")

        context.refresh(services.tasks.get(context.task_id))
        seq = int(context.task.orchestration.get("continuation_seq") or 0)
        previous = context.task.step(self.name).get("stories") or {}
        # Only stories finished under the current continuation count as done.
        stories = {
            epic_id: record
            for epic_id, record in previous.items()
            if record.get("status") == "completed" and record.get("continuation_seq") == seq
        }
        context.set_data("stories", stories)
        context.set_data(
            "branches",
            {
                epic_id: {"repository": record["repository"], "branch": record["branch"]}
                for epic_id, record in stories.items()
            },
        )

        limit = asyncio.Semaphore(max(1, services.config.workflow.max_parallel_epics))
        total_cost = 0.0
        for order, group in group_by_order(epics):
            reason = services.stop_requested(context)
            if reason:
                return PhaseResult.stopped(self.name, reason)
            pending = [epic for epic in group if epic["id"] not in stories]
            if not pending:
                continue
            logger.info(
                "Development group %d for task %s: %d epic(s)", order, context.task_id, len(pending)
            )
            outcomes = await asyncio.gather(
                *(self._run_epic(context, epic, limit, seq) for epic in pending),
                return_exceptions=True,
            )
            records = []
            for epic, outcome in zip(pending, outcomes):
                if isinstance(outcome, BaseException):
                    if not isinstance(outcome, Exception):
                        raise outcome
                    outcome = self._crashed(context, epic, seq, outcome)
                records.append(outcome)
            total_cost += sum(float(record.get("cost") or 0.0) for record in records)

        failed = [record for record in stories.values() if record["status"] != "completed"]
        metrics = {
            "epics": len(epics),
            "completed": len(stories) - len(failed),
            "failed": len(failed),
            "cost": total_cost,
        }
        if failed:
            details = "; ".join(f"{record['epic_id']}: {record.get('error')}" for record in failed)
            return PhaseResult.failure(
                self.name, f"{len(failed)} epic(s) failed: {details}", metrics=metrics
            )
        return PhaseResult.ok(self.name, data={"stories": stories}, metrics=metrics)

    def _crashed(
        self, context: OrchestrationContext, epic: dict[str, Any], seq: int, exc: Exception
    ) -> dict[str, Any]:
        """Turn an unexpected error from one epic into its failed record."""
        logger.error("Epic %s of task %s crashed", epic["id"], context.task_id, exc_info=exc)
        record = {
            "epic_id": epic["id"],
            "story_id": story_id_for(epic["id"]),
            "repository": epic.get("targetRepository"),
            "branch": epic_branch_name(context.task_id, epic["id"]),
            "workspace": None,
            "status": "failed",
            "continuation_seq": seq,
            "error": str(exc)[:1000] or type(exc).__name__,
        }
        self.services.checkpoints.mark_failed(
            context.task_id, checkpoint_key(self.name, epic["id"]), record["error"]
        )
        self._save_story(context, record)
        return record

    def _blocked_by(self, context: OrchestrationContext, epic: dict[str, Any]) -> str | None:
        stories = context.get_data("stories") or {}
        for dependency in epic.get("dependencies") or []:
            record = stories.get(dependency)
            if record is not None and record["status"] != "completed":
                return dependency
        return None

    async def _run_epic(
        self,
        context: OrchestrationContext,
        epic: dict[str, Any],
        limit: asyncio.Semaphore,
        seq: int,
    ) -> dict[str, Any]:
        epic_id = epic["id"]
        story_id = story_id_for(epic_id)
        repository = context.repository(epic.get("targetRepository")) or context.repository(
            epic.get("repositoryId")
        )
        branch = epic_branch_name(context.task_id, epic_id)
        record: dict[str, Any] = {
            "epic_id": epic_id,
            "story_id": story_id,
            "repository": repository.name if repository else epic.get("targetRepository"),
            "branch": branch,
            "workspace": None,
            "status": "failed",
            "continuation_seq": seq,
        }
        if repository is None:
            record["error"] = f"Unknown repository '{epic.get('targetRepository')}'"
            self._save_story(context, record)
            return record
        blocker = self._blocked_by(context, epic)
        if blocker is not None:
            record["error"] = f"Dependency {blocker} did not complete"
            self._save_story(context, record)
            return record

        async with limit:
            return await self._develop(context, epic, repository, record)

    async def _develop(
        self,
        context: OrchestrationContext,
        epic: dict[str, Any],
        repository: Repository,
        record: dict[str, Any],
    ) -> dict[str, Any]:
        services = self.services
        events = services.events
        task_id = context.task_id
        epic_id = epic["id"]
        branch = record["branch"]
        manager = services.repository_manager
        if manager is None:
            raise PhasePreconditionError("No repository manager configured for development.")

        try:
            workspace = await asyncio.to_thread(
                manager.prepare_workspace,
                context.repository_path(repository),
                branch,
                repository.default_branch,
            )
        except WorkspaceError as exc:
            record["error"] = f"Workspace setup failed: {exc}"
            self._save_story(context, record)
            return record

        record["workspace"] = str(workspace)
        context.register_branch(epic_id, repository.name, branch)
        events.safe_append(
            task_id,
            "EpicBranchCreated",
            {"epicId": epic_id, "branchName": branch, "repository": repository.name},
        )
        events.safe_append(
            task_id,
            "StoryCreated",
            {"id": record["story_id"], "epicId": epic_id, "title": epic.get("title", epic_id)},
        )
        events.safe_append(
            task_id,
            "StoryStarted",
            {"storyId": record["story_id"], "epicId": epic_id, "workspacePath": str(workspace)},
            agent_name="developer",
        )

        key = checkpoint_key(self.name, epic_id)
        resume = services.checkpoints.build_resume_options(
            services.checkpoints.load_checkpoint(task_id, key)
        )
        if resume is None:
            services.checkpoints.save_checkpoint(
                task_id,
                key,
                None,
                workspace_path=str(workspace),
                metadata={"epic_id": epic_id, "branch": branch, "repository": repository.name},
            )
        else:
            logger.info(
                "Resuming session %s for epic %s after %d turn(s)",
                resume.session_id,
                epic_id,
                resume.turns_completed,
            )

        try:
            execution = await services.executor.execute(
                "developer",
                build_developer_prompt(context, epic, repository, branch, phase=self.name),
                workspace,
                task_id,
                f"development:{epic_id}",
                attachments=context.task.attachments or None,
                resume_options=resume,
                on_turn=services.heartbeat(
                    task_id,
                    key,
                    workspace,
                    base_turns=resume.turns_completed if resume else 0,
                ),
            )
        except BackendExecutionError as exc:
            services.checkpoints.mark_failed(task_id, key, str(exc))
            record["error"] = str(exc)
            events.safe_append(
                task_id,
                "StoryFailed",
                {"storyId": record["story_id"], "epicId": epic_id, "error": str(exc)[:1000]},
                agent_name="developer",
            )
            self._save_story(context, record)
            return record

        services.record_usage(task_id, self.name, execution)
        services.checkpoints.mark_completed(task_id, key)
        record.update(
            status="completed",
            summary=execution.output[:MAX_SUMMARY],
            session_id=execution.external_session_id,
            cost=execution.cost,
            turns=execution.turns + (resume.turns_completed if resume else 0),
        )
        events.safe_append(
            task_id,
            "StoryCompleted",
            {"storyId": record["story_id"], "epicId": epic_id, "summary": record["summary"]},
            agent_name="developer",
            metadata={"cost": execution.cost, "duration": round(execution.duration_seconds, 3)},
        )
        self._save_story(context, record)
        return record


def workspace_for(record: dict[str, Any]) -> Path | None:
    workspace = record.get("workspace")
    return Path(workspace) if workspace else None
