from __future__ import annotations

import json
import logging
import time
from typing import Any

from conductor.orchestration.context import OrchestrationContext
from conductor.orchestration.discovery import discover_codebase, format_discovery
from conductor.orchestration.executor import AgentExecution
from conductor.orchestration.extraction import ExtractionError, extract_json
from conductor.orchestration.judge import JudgeRequest, JudgeVerdict
from conductor.orchestration.overlap import assign_repositories, resolve_file_overlaps
from conductor.orchestration.phases.base import (
    PhasePreconditionError,
    PhaseResult,
    PhaseServices,
)
from conductor.state.repositories import REPOSITORY_TYPES

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("epics",)
MAX_STORED_OUTPUT = 20000
FILE_KEYS = ("filesToModify", "filesToCreate", "filesToRead")


def normalize_epics(raw_epics: list[Any]) -> list[dict[str, Any]]:
    epics: list[dict[str, Any]] = []
    for index, raw in enumerate(raw_epics):
        if not isinstance(raw, dict):
            continue
        epic = dict(raw)
        epic["id"] = str(epic.get("id") or f"epic-{index + 1}")
        epic["title"] = str(epic.get("title") or epic.get("name") or epic["id"])
        epic["description"] = str(epic.get("description") or "")
        for key in FILE_KEYS:
            values = epic.get(key)
            epic[key] = [str(value) for value in values] if isinstance(values, list) else []
        deps = epic.get("dependencies")
        epic["dependencies"] = [str(dep) for dep in deps] if isinstance(deps, list) else []
        epics.append(epic)
    return epics


class PlanningPhase:
    """Decomposes the task into repository-bound epics behind a judge-approval loop."""

    name = "planning"

    def __init__(self, services: PhaseServices) -> None:
        self.services = services

    async def should_skip(self, context: OrchestrationContext) -> bool:
        return self.services.skip_completed_step(context, self.name)

    async def restore(self, context: OrchestrationContext) -> None:
        state = self.services.events.get_current_state(context.task_id)
        step = context.task.step(self.name)
        epics = state.epics if state.planning_completed else None
        if not epics:
            epics = context.task.orchestration.get("epics") or []
        context.set_data("epics", epics)
        context.set_data("analysis", step.get("analysis", ""))
        context.set_data("architecture_brief", step.get("architecture_brief", ""))
        context.set_data("plan_approved", True)

    # -- inputs ------------------------------------------------------------

    @staticmethod
    def _validate_repositories(context: OrchestrationContext) -> None:
        if not context.repositories:
            raise PhasePreconditionError("Task has no repositories to plan against.")
        untyped = [repo.name for repo in context.repositories if not repo.type]
        if untyped:
            raise PhasePreconditionError(
                f"Repositories without a type: {', '.join(untyped)}. "
                f"Set one of: {', '.join(REPOSITORY_TYPES)}."
            )

    def _codebase_knowledge(self, context: OrchestrationContext) -> dict[str, Any]:
        cached = context.get_data("codebase_knowledge")
        if cached is not None:
            return cached
        try:
            knowledge = discover_codebase(
                (repo.name, context.repository_path(repo)) for repo in context.repositories
            )
        except OSError as exc:
            logger.warning("Codebase discovery failed for task %s: %s", context.task_id, exc)
            knowledge = {}
        context.set_data("codebase_knowledge", knowledge)
        return knowledge

    def _build_prompt(
        self,
        context: OrchestrationContext,
        knowledge: dict[str, Any],
        feedback: JudgeVerdict | None,
    ) -> str:
        task = context.task
        parts: list[str] = []
        if feedback is not None:
            parts.append(feedback.feedback_block())
        parts.append(f"# Task: {task.title}")
        if task.description:
            parts.append(task.description)

        continuations = task.orchestration.get("continuations") or []
        if continuations:
            parts.append("## Additional requirements")
            parts.extend(f"- {item.get('requirements', '')}" for item in continuations)
            previous = task.orchestration.get("epics") or []
            if previous:
                summary = [
                    {"id": epic.get("id"), "title": epic.get("title")} for epic in previous
                ]
                parts.append("## Previously planned epics")
                parts.append(json.dumps(summary, ensure_ascii=False, indent=2))

        parts.append("## Repositories")
        parts.extend(
            f"- {repo.name} (type: {repo.type}) at {context.repository_path(repo)}"
            for repo in context.repositories
        )
        directives = context.get_directives_block(self.name)
        if directives:
            parts.append(directives)
        overview = format_discovery(knowledge)
        if overview:
            parts.append(overview)
        parts.append(
            'Respond with one JSON object: {"analysis": str, "architectureBrief": str, '
            '"epics": [{"id", "title", "description", "targetRepository", "filesToModify", '
            '"filesToCreate", "filesToRead", "dependencies", "executionOrder"}]}'
        )
        return "\n\n".join(parts)

    # -- plan shaping --------------------------------------------------------

    def _shape_plan(
        self, context: OrchestrationContext, epics: list[dict[str, Any]]
    ) -> tuple[list[dict[str, Any]], list[str]]:
        report = resolve_file_overlaps(epics)
        shaped = assign_repositories(report.epics, context.repositories)
        warnings = [
            f"Overlapping file {conflict['file']} serialized across {', '.join(conflict['epics'])}"
            for conflict in report.conflicts
        ]
        warnings.extend(
            f"Dropped cyclic dependency {item['epic']} -> {item['dependency']}"
            for item in report.dropped_dependencies
        )
        return shaped, warnings

    def _judge_request(
        self, context: OrchestrationContext, epics: list[dict[str, Any]]
    ) -> JudgeRequest:
        return JudgeRequest(
            judge_type="planning",
            task_id=context.task_id,
            task_title=context.task.title,
            task_description=context.task.description,
            items=epics,
            workspace_path=context.workspace_path,
        )

    async def _judge(
        self, context: OrchestrationContext, epics: list[dict[str, Any]]
    ) -> JudgeVerdict:
        return await self.services.evaluate(self.name, self._judge_request(context, epics))

    # -- execution -----------------------------------------------------------

    async def execute_phase(self, context: OrchestrationContext) -> PhaseResult:
        services = self.services
        self._validate_repositories(context)
        knowledge = self._codebase_knowledge(context)
        max_attempts = max(1, services.config.workflow.planning_max_attempts)
        started = time.monotonic()

        feedback: JudgeVerdict | None = None
        verdict: JudgeVerdict | None = None
        last_output = ""
        total_cost = 0.0
        attempts = 0
        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                reason = services.stop_requested(context)
                if reason:
                    return PhaseResult.stopped(self.name, reason)

            attempts = attempt
            execution = await services.executor.execute(
                "planning-agent",
                self._build_prompt(context, knowledge, feedback),
                context.workspace_path,
                context.task_id,
                f"planning:attempt-{attempt}",
                attachments=context.task.attachments or None,
                permission_mode="bypassPermissions",
            )
            services.record_usage(context.task_id, self.name, execution)
            total_cost += execution.cost
            last_output = execution.output

            parsed = extract_json(execution.output, REQUIRED_FIELDS)
            if isinstance(parsed, ExtractionError):
                return PhaseResult.failure(
                    self.name,
                    f"Planning output JSON extraction failed: {parsed.reason}",
                    fixable=True,
                    raw_output=last_output,
                    required_fields=REQUIRED_FIELDS,
                    error_type="json_parsing",
                    metrics={"attempts": attempt, "cost": total_cost},
                )
            raw_epics = parsed.data.get("epics")
            if not isinstance(raw_epics, list):
                return PhaseResult.failure(
                    self.name,
                    "Planning output validation failed: required epics list is missing",
                    fixable=True,
                    raw_output=last_output,
                    required_fields=REQUIRED_FIELDS,
                    error_type="validation",
                    metrics={"attempts": attempt, "cost": total_cost},
                )

            epics = normalize_epics(raw_epics)
            verdict = None
            if services.judge is not None:
                verdict = services.judge.structural_check(self._judge_request(context, epics))
            if verdict is None:
                shaped, warnings = self._shape_plan(context, epics)
                verdict = await self._judge(context, shaped)
                if verdict.approved:
                    return self._persist_plan(
                        context,
                        parsed.data,
                        shaped,
                        warnings,
                        verdict,
                        execution=execution,
                        attempts=attempt,
                        total_cost=total_cost,
                        duration=time.monotonic() - started,
                    )

            logger.info(
                "Planning attempt %d/%d for task %s rejected: %s",
                attempt,
                max_attempts,
                context.task_id,
                verdict.reason,
            )
            services.events.safe_append(
                context.task_id,
                "PlanningRejected",
                {
                    "attempt": attempt,
                    "reason": verdict.reason or "rejected",
                    "score": verdict.score,
                    "issues": verdict.issues[:10],
                },
                agent_name="judge",
            )
            services.tasks.append_log(
                context.task_id,
                f"Plan attempt {attempt} rejected: {verdict.reason}",
                level="warning",
                phase=self.name,
            )
            if not verdict.retryable:
                break
            feedback = verdict

        reason = verdict.reason if verdict is not None else "no verdict"
        return PhaseResult.failure(
            self.name,
            f"Planning rejected after {attempts} attempt(s): {reason}",
            fixable=True,
            raw_output=last_output,
            required_fields=REQUIRED_FIELDS,
            error_type="unknown",
            metrics={"attempts": attempts, "cost": total_cost},
        )

    async def apply_fix(self, context: OrchestrationContext, data: dict[str, Any]) -> PhaseResult:
        """Adopt a payload repaired by the Global Fixer.

        The repaired plan goes through the judge once; if it is not approved
        it is kept but the task waits for an operator to approve it.
        """
        epics = normalize_epics(data.get("epics") or [])
        if self.services.judge is not None:
            rejection = self.services.judge.structural_check(self._judge_request(context, epics))
            if rejection is not None:
                return PhaseResult.failure(
                    self.name, f"Repaired plan is unusable: {rejection.reason}"
                )
        shaped, warnings = self._shape_plan(context, epics)
        verdict = await self._judge(context, shaped)
        result = self._persist_plan(
            context,
            data,
            shaped,
            warnings,
            verdict,
            execution=None,
            attempts=0,
            total_cost=verdict.cost,
            duration=0.0,
        )
        if not verdict.approved:
            result.data["needs_approval"] = True
            result.warnings.append(
                f"Repaired plan was not approved by the judge: {verdict.reason}"
            )
        return result

    def _persist_plan(
        self,
        context: OrchestrationContext,
        data: dict[str, Any],
        epics: list[dict[str, Any]],
        warnings: list[str],
        verdict: JudgeVerdict,
        *,
        execution: AgentExecution | None,
        attempts: int,
        total_cost: float,
        duration: float,
    ) -> PhaseResult:
        services = self.services
        analysis = str(data.get("analysis") or "")
        brief = str(data.get("architectureBrief") or data.get("architecture_brief") or "")

        def _updater(orchestration: dict[str, Any]) -> None:
            orchestration["epics"] = epics
            steps = orchestration.setdefault("steps", {})
            step = steps.setdefault(self.name, {})
            step["analysis"] = analysis
            step["architecture_brief"] = brief
            step["attempts"] = attempts
            step["judge"] = verdict.to_dict()
            if execution is not None:
                step["output"] = execution.output[:MAX_STORED_OUTPUT]
                step["session_id"] = execution.session_id
                step["external_session_id"] = execution.external_session_id

        # Re-read right before writing: notification writers may have touched the task.
        services.tasks.modify_orchestration(context.task_id, _updater)
        services.events.safe_append(
            context.task_id,
            "PlanningCompleted",
            {"epicCount": len(epics), "epics": epics, "analysis": analysis[:2000]},
            agent_name="planning-agent",
            metadata={"cost": total_cost, "duration": round(duration, 3)},
        )
        for epic in epics:
            services.events.safe_append(
                context.task_id,
                "EpicCreated",
                {
                    "id": epic["id"],
                    "title": epic["title"],
                    "targetRepository": epic["targetRepository"],
                    "executionOrder": epic["executionOrder"],
                    "dependencies": epic["dependencies"],
                },
                agent_name="planning-agent",
            )
        if verdict.approved:
            services.events.safe_append(
                context.task_id,
                "PlanningApproved",
                {"score": verdict.score, "attempts": attempts},
                agent_name="judge",
            )

        context.set_data("epics", epics)
        context.set_data("analysis", analysis)
        context.set_data("architecture_brief", brief)
        context.set_data("plan_approved", verdict.approved)
        return PhaseResult.ok(
            self.name,
            data={"epics": epics, "analysis": analysis},
            warnings=warnings,
            metrics={
                "attempts": attempts,
                "epic_count": len(epics),
                "cost": total_cost,
                "judge_score": verdict.score,
            },
        )
