"""Two-tier approval gate reused by planning, review and integration.

Tier 1 is a free structural check that rejects trivially broken output.
Tier 2 asks the judge specialist for a scored evaluation, with read-only
tools so it can verify what the submission claims. Approval needs the
judge's boolean and a score at or above the threshold.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from conductor.orchestration.executor import AgentExecutor
from conductor.orchestration.extraction import ExtractionError, extract_json
from conductor.specialists.base import READ_ONLY_TOOLS

logger = logging.getLogger(__name__)

JUDGE_TYPES = ("planning", "development", "integration")
MIN_DESCRIPTION_LENGTH = 20


@dataclass(slots=True)
class JudgeRequest:
    judge_type: str
    task_id: str
    task_title: str
    task_description: str = ""
    items: list[dict[str, Any]] = field(default_factory=list)
    workspace_path: Path | None = None
    changed_files: list[str] | None = None
    details: str = ""


@dataclass(slots=True)
class JudgeVerdict:
    approved: bool
    score: int = 0
    reason: str | None = None
    feedback: str = ""
    issues: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)
    files_verified: list[str] = field(default_factory=list)
    retryable: bool = True
    tier: int = 1
    cost: float = 0.0
    tokens: int = 0

    def feedback_block(self) -> str:
        """Rejection summary injected at the top of the next agent prompt."""
        lines = ["## Previous attempt was rejected", ""]
        if self.reason:
            lines.append(f"Reason: {self.reason}")
        if self.feedback:
            lines.append(f"Feedback: {self.feedback}")
        if self.issues:
            lines.append("Issues:")
            lines.extend(f"- {issue}" for issue in self.issues)
        if self.suggestions:
            lines.append("Suggestions:")
            lines.extend(f"- {suggestion}" for suggestion in self.suggestions)
        return "\n".join(lines) + "\n"

    def to_dict(self) -> dict[str, Any]:
        return {
            "approved": self.approved,
            "score": self.score,
            "reason": self.reason,
            "feedback": self.feedback,
            "issues": list(self.issues),
            "suggestions": list(self.suggestions),
            "files_verified": list(self.files_verified),
            "tier": self.tier,
        }


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    items = []
    for item in value:
        if isinstance(item, dict):
            text = item.get("description") or item.get("message") or json.dumps(item)
            items.append(str(text))
        elif str(item).strip():
            items.append(str(item).strip())
    return items


def _clamp_score(value: Any) -> int:
    try:
        score = int(float(value))
    except (TypeError, ValueError):
        return 0
    return min(100, max(0, score))


class JudgeProtocol:
    def __init__(
        self,
        executor: AgentExecutor,
        *,
        min_score: int = 60,
        enabled: bool = True,
        model: str | None = None,
    ) -> None:
        self.executor = executor
        self.min_score = min_score
        self.enabled = enabled
        self.model = model

    def structural_check(self, request: JudgeRequest) -> JudgeVerdict | None:
        """Tier 1. Returns a rejection, or ``None`` when the output may proceed."""
        if request.judge_type not in JUDGE_TYPES:
            raise ValueError(f"Unknown judge type '{request.judge_type}'")

        if request.judge_type == "planning":
            if not request.items:
                return JudgeVerdict(approved=False, reason="No epics created")
            described = [
                item
                for item in request.items
                if len(str(item.get("description") or "").strip()) >= MIN_DESCRIPTION_LENGTH
            ]
            if len(described) * 2 < len(request.items):
                return JudgeVerdict(
                    approved=False,
                    reason="Most epics lack a meaningful description",
                    issues=[
                        f"Epic {item.get('id') or item.get('title')} has no usable description"
                        for item in request.items
                        if item not in described
                    ],
                )
        elif request.judge_type == "development":
            if request.changed_files is not None and not request.changed_files:
                return JudgeVerdict(approved=False, reason="No changes produced")
        return None

    def _build_prompt(self, request: JudgeRequest) -> str:
        sections = [
            f"# Evaluate {request.judge_type} output",
            "",
            f"Task: {request.task_title}",
        ]
        if request.task_description:
            sections.extend(["", request.task_description])
        if request.items:
            sections.extend(
                [
                    "",
                    "## Submission",
                    "```json",
                    json.dumps(request.items, ensure_ascii=False, indent=2),
                    "```",
                ]
            )
        if request.changed_files:
            sections.extend(["", "## Changed files", *[f"- {path}" for path in request.changed_files]])
        if request.details:
            sections.extend(["", request.details])
        sections.extend(
            [
                "",
                f"Approval requires a score of at least {self.min_score}.",
                'Respond with JSON: {"approved", "score", "feedback", "issues", '
                '"suggestions", "filesVerified"}.',
            ]
        )
        return "\n".join(sections)

    async def evaluate(self, request: JudgeRequest) -> JudgeVerdict:
        rejection = self.structural_check(request)
        if rejection is not None:
            logger.info("Judge tier 1 rejected %s output: %s", request.judge_type, rejection.reason)
            return rejection
        if not self.enabled:
            return JudgeVerdict(approved=True, score=100, reason="Judge disabled", tier=1)

        execution = await self.executor.execute(
            "judge",
            self._build_prompt(request),
            request.workspace_path,
            request.task_id,
            f"judge:{request.judge_type}",
            options={"allowed_tools": READ_ONLY_TOOLS, "model": self.model},
            permission_mode="plan",
        )
        parsed = extract_json(execution.output, ("approved",))
        if isinstance(parsed, ExtractionError):
            logger.warning("Judge output for task %s was unreadable: %s", request.task_id, parsed.reason)
            return JudgeVerdict(
                approved=False,
                reason="Judge evaluation could not be parsed",
                tier=2,
                cost=execution.cost,
                tokens=execution.total_tokens,
                issues=[parsed.reason],
            )

        data = parsed.data
        score = _clamp_score(data.get("score"))
        judged_ok = data.get("approved") is True
        approved = judged_ok and score >= self.min_score
        reason = None
        if not approved:
            reason = (
                f"Score {score} is below the approval threshold of {self.min_score}"
                if judged_ok
                else "Judge did not approve the submission"
            )
        verdict = JudgeVerdict(
            approved=approved,
            score=score,
            reason=reason,
            feedback=str(data.get("feedback") or ""),
            issues=_string_list(data.get("issues")),
            suggestions=_string_list(data.get("suggestions")),
            files_verified=_string_list(data.get("filesVerified")),
            retryable=data.get("retryable", True) is not False,
            tier=2,
            cost=execution.cost,
            tokens=execution.total_tokens,
        )
        logger.info(
            "Judge %s verdict for task %s: approved=%s score=%d",
            request.judge_type,
            request.task_id,
            verdict.approved,
            verdict.score,
        )
        return verdict
