from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from conductor.backends.base import BackendExecutionError
from conductor.orchestration.context import OrchestrationContext
from conductor.orchestration.judge import JudgeRequest, JudgeVerdict
from conductor.orchestration.phases.base import (
    PhasePreconditionError,
    PhaseResult,
    PhaseServices,
)
from conductor.orchestration.phases.development import build_developer_prompt, workspace_for
from conductor.orchestration.workspace import WorkspaceError
from conductor.state.repositories import Repository

logger = logging.getLogger(__name__)


class ReviewPhase:
    """Judges each developed epic against its branch diff and sends rejections back for rework."""

    name = "review"

    def __init__(self, services: PhaseServices) -> None:
        self.services = services

    async def should_skip(self, context: OrchestrationContext) -> bool:
        return self.services.skip_completed_step(context, self.name)

    async def restore(self, context: OrchestrationContext) -> None:
        context.set_data("review", context.task.step(self.name).get("verdicts") or {})

    def _stories(self, context: OrchestrationContext) -> dict[str, dict[str, Any]]:
        stories = context.get_data("stories")
        if not stories:
            stories = context.task.step("development").get("stories") or {}
            context.set_data("stories", stories)
        return stories

    def _epic(self, context: OrchestrationContext, epic_id: str) -> dict[str, Any]:
        for epic in context.get_data("epics") or context.task.orchestration.get("epics") or []:
            if epic.get("id") == epic_id:
                return epic
        return {"id": epic_id, "title": epic_id}

    async def _changed_files(
        self, repo_path: Path, record: dict[str, Any], repository: Repository
    ) -> list[str]:
        manager = self.services.repository_manager
        if manager is None:
            raise PhasePreconditionError("No repository manager configured for review.")
        try:
            return await asyncio.to_thread(
                manager.changed_files, repo_path, record["branch"], repository.default_branch
            )
        except WorkspaceError as exc:
            logger.warning("Could not diff %s: %s", record["branch"], exc)
            return []

    async def execute_phase(self, context: OrchestrationContext) -> PhaseResult:
        services = self.services
        if services.repository_manager is None:
            raise PhasePreconditionError("No repository manager configured for review.")
        stories = self._stories(context)
        completed = [record for record in stories.values() if record.get("status") == "completed"]
        if not completed:
            raise PhasePreconditionError("No developed epics to review.")

        verdicts: dict[str, dict[str, Any]] = {}
        for record in completed:
            reason = services.stop_requested(context)
            if reason:
                return PhaseResult.stopped(self.name, reason)
            verdict, attempts = await self._review(context, record)
            verdicts[record["epic_id"]] = {**verdict.to_dict(), "attempts": attempts}

        def _updater(orchestration: dict[str, Any]) -> None:
            step = orchestration.setdefault("steps", {}).setdefault(self.name, {})
            step["verdicts"] = verdicts
            for story in orchestration.get("stories") or []:
                verdict = verdicts.get(story.get("epicId"))
                if verdict is not None:
                    story["reviewStatus"] = "approved" if verdict["approved"] else "rejected"
                    story["judgeScore"] = verdict["score"]

        services.tasks.modify_orchestration(context.task_id, _updater)
        context.set_data("review", verdicts)

        rejected = [epic_id for epic_id, verdict in verdicts.items() if not verdict["approved"]]
        metrics = {"reviewed": len(verdicts), "rejected": len(rejected)}
        if rejected:
            return PhaseResult.failure(
                self.name,
                f"Review rejected {len(rejected)} epic(s): {', '.join(rejected)}",
                data={"verdicts": verdicts},
                metrics=metrics,
            )
        return PhaseResult.ok(self.name, data={"verdicts": verdicts}, metrics=metrics)

    async def _review(
        self, context: OrchestrationContext, record: dict[str, Any]
    ) -> tuple[JudgeVerdict, int]:
        services = self.services
        task_id = context.task_id
        epic = self._epic(context, record["epic_id"])
        repository = context.repository(record.get("repository"))
        if repository is None:
            return (
                JudgeVerdict(
                    approved=False,
                    reason=f"Unknown repository '{record.get('repository')}'",
                    retryable=False,
                ),
                0,
            )
        repo_path = context.repository_path(repository)
        workspace = workspace_for(record)
        max_attempts = max(1, services.config.workflow.review_max_attempts)

        verdict = JudgeVerdict(approved=False, reason="Not reviewed")
        attempt = 0
        for attempt in range(1, max_attempts + 1):
            changed = await self._changed_files(repo_path, record, repository)
            verdict = await services.evaluate(
                self.name,
                JudgeRequest(
                    judge_type="development",
                    task_id=task_id,
                    task_title=context.task.title,
                    task_description=context.task.description,
                    items=[epic],
                    workspace_path=workspace,
                    changed_files=changed,
                    details=str(record.get("summary") or ""),
                ),
            )
            payload = {
                "storyId": record["story_id"],
                "epicId": record["epic_id"],
                "judgeScore": verdict.score,
                "judgeComments": verdict.feedback or verdict.reason or "",
                "attempt": attempt,
            }
            if verdict.approved:
                services.events.safe_append(task_id, "StoryApproved", payload, agent_name="judge")
                return verdict, attempt
            services.events.safe_append(task_id, "StoryRejected", payload, agent_name="judge")
            services.tasks.append_log(
                task_id,
                f"Epic {record['epic_id']} rejected in review: {verdict.reason}",
                level="warning",
                phase=self.name,
            )
            if attempt == max_attempts or not verdict.retryable:
                break
            if not await self._rework(context, epic, repository, record, verdict, attempt):
                break
        return verdict, attempt

    async def _rework(
        self,
        context: OrchestrationContext,
        epic: dict[str, Any],
        repository: Repository,
        record: dict[str, Any],
        verdict: JudgeVerdict,
        attempt: int,
    ) -> bool:
        services = self.services
        try:
            execution = await services.executor.execute(
                "developer",
                build_developer_prompt(
                    context,
                    epic,
                    repository,
                    record["branch"],
                    phase=self.name,
                    feedback=verdict,
                ),
                workspace_for(record),
                context.task_id,
                f"review:{record['epic_id']}:rework-{attempt}",
            )
        except BackendExecutionError as exc:
            logger.warning("Rework of epic %s failed: %s", record["epic_id"], exc)
            return False
        services.record_usage(context.task_id, self.name, execution)
        record["summary"] = execution.output[:2000]
        return True
