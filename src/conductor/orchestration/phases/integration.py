from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from pathlib import Path
from typing import Any

from conductor.backends.base import BackendExecutionError
from conductor.orchestration.context import OrchestrationContext
from conductor.orchestration.extraction import ExtractionError, extract_json
from conductor.orchestration.judge import JudgeRequest
from conductor.orchestration.phases.base import (
    PhasePreconditionError,
    PhaseResult,
    PhaseServices,
)
from conductor.orchestration.workspace import WorkspaceError, branch_slug

logger = logging.getLogger(__name__)


class IntegrationPhase:
    """Merges approved epic branches per repository, verifies the result and optionally pushes."""

    name = "integration"

    def __init__(self, services: PhaseServices) -> None:
        self.services = services

    async def should_skip(self, context: OrchestrationContext) -> bool:
        return self.services.skip_completed_step(context, self.name)

    async def restore(self, context: OrchestrationContext) -> None:
        context.set_data("integration", context.task.step(self.name).get("report") or {})

    def target_branch(self, context: OrchestrationContext) -> str:
        prefix = self.services.config.workflow.integration_branch_prefix
        return f"{prefix}/{branch_slug(context.task_id)}"

    def _approved_records(self, context: OrchestrationContext) -> list[dict[str, Any]]:
        stories = context.get_data("stories") or context.task.step("development").get("stories") or {}
        review = context.get_data("review") or context.task.step("review").get("verdicts") or {}
        order = {
            epic.get("id"): int(epic.get("executionOrder") or 1)
            for epic in context.get_data("epics") or context.task.orchestration.get("epics") or []
        }
        records = [
            record
            for epic_id, record in stories.items()
            if record.get("status") == "completed"
            and (not review or review.get(epic_id, {}).get("approved"))
        ]
        return sorted(records, key=lambda record: (order.get(record["epic_id"], 1), record["epic_id"]))

    async def execute_phase(self, context: OrchestrationContext) -> PhaseResult:
        services = self.services
        manager = services.repository_manager
        if manager is None:
            raise PhasePreconditionError("No repository manager configured for integration.")
        records = self._approved_records(context)
        if not records:
            raise PhasePreconditionError("No approved epic branches to integrate.")

        target = self.target_branch(context)
        by_repository: dict[str, list[dict[str, Any]]] = defaultdict(list)
        for record in records:
            by_repository[record["repository"]].append(record)

        report: dict[str, Any] = {
            "target_branch": target,
            "merged": [],
            "conflicts": [],
            "pushed": [],
            "worktrees": {},
        }
        warnings: list[str] = []
        for repo_name, repo_records in by_repository.items():
            repository = context.repository(repo_name)
            if repository is None:
                warnings.append(f"Skipped unknown repository {repo_name}")
                continue
            repo_path = context.repository_path(repository)
            for record in repo_records:
                try:
                    result = await asyncio.to_thread(
                        manager.merge_branch,
                        repo_path,
                        record["branch"],
                        target,
                        repository.default_branch,
                    )
                except WorkspaceError as exc:
                    return PhaseResult.failure(
                        self.name, f"Merge of {record['branch']} failed: {exc}"
                    )
                if result.workspace:
                    report["worktrees"][repo_name] = result.workspace
                if result.success:
                    report["merged"].append(
                        {"repository": repo_name, "branch": record["branch"], "commit": result.commit}
                    )
                    services.events.safe_append(
                        context.task_id,
                        "BranchMerged",
                        {
                            "repository": repo_name,
                            "branchName": record["branch"],
                            "epicId": record["epic_id"],
                            "target": target,
                            "commit": result.commit,
                        },
                    )
                    continue
                report["conflicts"].append(
                    {"repository": repo_name, "branch": record["branch"], "files": result.conflicts}
                )
                warnings.append(
                    f"Merge conflict merging {record['branch']} into {target} in {repo_name}: "
                    f"{', '.join(result.conflicts) or result.error}"
                )
                services.events.safe_append(
                    context.task_id,
                    "MergeConflict",
                    {
                        "repository": repo_name,
                        "branchName": record["branch"],
                        "files": result.conflicts,
                    },
                )

        verification = await self._verify(context, report)
        report["verification"] = verification
        passed = bool(verification.get("passed"))

        if services.config.workflow.push_on_success and passed and not report["conflicts"]:
            for repo_name in by_repository:
                repository = context.repository(repo_name)
                if repository is None:
                    continue
                pushed = await asyncio.to_thread(
                    manager.push_branch, context.repository_path(repository), target
                )
                if pushed:
                    report["pushed"].append(repo_name)
                else:
                    warnings.append(f"Push of {target} failed for {repo_name}")

        def _updater(orchestration: dict[str, Any]) -> None:
            orchestration.setdefault("steps", {}).setdefault(self.name, {})["report"] = report

        services.tasks.modify_orchestration(context.task_id, _updater)
        context.set_data("integration", report)

        metrics = {
            "merged": len(report["merged"]),
            "conflicts": len(report["conflicts"]),
            "pushed": len(report["pushed"]),
        }
        if not passed:
            errors = verification.get("errors") or []
            detail = "; ".join(str(error) for error in errors[:5]) or verification.get("summary")
            return PhaseResult.failure(
                self.name,
                f"Integration verification failed: {detail}",
                data={"report": report},
                warnings=warnings,
                metrics=metrics,
            )
        return PhaseResult.ok(self.name, data={"report": report}, warnings=warnings, metrics=metrics)

    async def _verify(self, context: OrchestrationContext, report: dict[str, Any]) -> dict[str, Any]:
        """Ask the QA agent to build and test the integrated branch.

        Without a QA specialist the judge evaluates the merge report instead.
        """
        services = self.services
        if not services.executor.has_role("qa"):
            verdict = await services.evaluate(
                self.name,
                JudgeRequest(
                    judge_type="integration",
                    task_id=context.task_id,
                    task_title=context.task.title,
                    task_description=context.task.description,
                    items=[report],
                    workspace_path=context.workspace_path,
                ),
            )
            return {
                "passed": verdict.approved,
                "errors": verdict.issues,
                "summary": verdict.reason or verdict.feedback,
                "verifier": "judge",
            }

        merged_repos = sorted({item["repository"] for item in report["merged"]})
        if not merged_repos:
            return {"passed": False, "errors": ["Nothing was merged"], "summary": "", "verifier": "qa"}
        lines = [
            f"# Verify integration branch {report['target_branch']}",
            f"Task: {context.task.title}",
            "## Repositories",
        ]
        paths: list[Path] = []
        for name in merged_repos:
            repository = context.repository(name)
            if repository is None:
                continue
            worktree = report["worktrees"].get(name)
            paths.append(Path(worktree) if worktree else context.repository_path(repository))
            lines.append(f"- {name} at {paths[-1]}")
        if report["conflicts"]:
            lines.append("## Unmerged branches (conflicts)")
            lines.extend(f"- {item['branch']} ({item['repository']})" for item in report["conflicts"])
        directives = context.get_directives_block(self.name)
        if directives:
            lines.append(directives)
        lines.append(
            "Each path is a checkout of the integration branch. Run the build and the test suite, and "
            'answer with JSON: {"passed": bool, "errors": [str], "summary": str}'
        )
        try:
            execution = await services.executor.execute(
                "qa",
                "\n".join(lines),
                paths[0] if paths else context.workspace_path,
                context.task_id,
                "integration:verify",
            )
        except BackendExecutionError as exc:
            logger.warning("QA verification for task %s failed: %s", context.task_id, exc)
            return {"passed": False, "errors": [str(exc)], "summary": "", "verifier": "qa"}
        services.record_usage(context.task_id, self.name, execution)
        parsed = extract_json(execution.output, ("passed",))
        if isinstance(parsed, ExtractionError):
            return {
                "passed": False,
                "errors": [f"QA report unreadable: {parsed.reason}"],
                "summary": execution.output[:500],
                "verifier": "qa",
            }
        errors = parsed.data.get("errors")
        return {
            "passed": parsed.data.get("passed") is True,
            "errors": [str(error) for error in errors] if isinstance(errors, list) else [],
            "summary": str(parsed.data.get("summary") or ""),
            "verifier": "qa",
        }
