"""Last-resort automated repair, invoked only after a phase's own retries are spent."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from conductor.backends.base import BackendExecutionError
from conductor.orchestration.executor import AgentExecution, AgentExecutor
from conductor.orchestration.extraction import (
    ParsedPayload,
    extract_json,
    lenient_extract,
    salvage_objects,
)
from conductor.state.fix_attempts import FixAttemptStore

logger = logging.getLogger(__name__)

ERROR_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("json_parsing", ("json", "parse", "extraction", "valid epics")),
    ("validation", ("validation", "missing", "required")),
    ("timeout", ("timeout", "timed out")),
]


def classify_error(message: str | None) -> str:
    lowered = (message or "").lower()
    for error_type, keywords in ERROR_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return error_type
    return "unknown"


@dataclass(slots=True)
class FixResult:
    fixed: bool
    attempts_made: int
    error_type: str | None = None
    method: str | None = None
    data: dict[str, Any] | None = None
    error: str | None = None
    cost: float = 0.0
    tokens: int = 0


class GlobalFixer:
    def __init__(
        self,
        attempts: FixAttemptStore,
        executor: AgentExecutor | None = None,
        *,
        max_attempts: int = 2,
        model: str | None = None,
    ) -> None:
        self.attempts = attempts
        self.executor = executor
        self.max_attempts = max_attempts
        self.model = model

    async def attempt_fix(
        self,
        task_id: str,
        phase_name: str,
        error: str,
        *,
        raw_output: str | None = None,
        required_fields: Iterable[str] = (),
        error_type: str | None = None,
        workspace_path: Path | None = None,
    ) -> FixResult:
        previous = self.attempts.get_attempt_count(task_id, phase_name)
        if previous >= self.max_attempts:
            logger.warning(
                "Fix attempts exhausted for task %s phase %s (%d)", task_id, phase_name, previous
            )
            return FixResult(
                fixed=False,
                attempts_made=previous,
                error=f"Max fix attempts ({self.max_attempts}) reached",
            )

        # Counted before any repair runs so a crash mid-repair still uses up an attempt.
        attempts_made = self.attempts.record_attempt(task_id, phase_name, error)
        kind = error_type or classify_error(error)
        required = tuple(required_fields)
        logger.info(
            "Global fixer attempt %d/%d for task %s phase %s (%s)",
            attempts_made,
            self.max_attempts,
            task_id,
            phase_name,
            kind,
        )

        try:
            if kind == "json_parsing":
                result = await self._fix_json(task_id, raw_output, required, workspace_path)
            elif kind == "validation":
                result = await self._fix_validation(task_id, raw_output, required, workspace_path)
            elif kind == "timeout":
                result = FixResult(
                    fixed=False,
                    attempts_made=0,
                    error="Timeouts are retried by the backend retry policy",
                )
            else:
                result = self._salvage(raw_output, required)
        except BackendExecutionError as exc:
            logger.warning("Global fixer model pass failed for task %s: %s", task_id, exc)
            result = FixResult(fixed=False, attempts_made=0, error=str(exc))

        result.attempts_made = attempts_made
        result.error_type = kind
        return result

    async def _model_pass(
        self, task_id: str, prompt: str, workspace_path: Path | None
    ) -> AgentExecution | None:
        if self.executor is None or not self.executor.has_role("fixer"):
            return None
        return await self.executor.execute(
            "fixer",
            prompt,
            workspace_path,
            task_id,
            "global-fixer",
            options={"model": self.model},
            permission_mode="plan",
            skip_optimization=True,
        )

    @staticmethod
    def _from_execution(
        execution: AgentExecution, required: tuple[str, ...], method: str
    ) -> FixResult:
        parsed = extract_json(execution.output, required)
        if isinstance(parsed, ParsedPayload):
            return FixResult(
                fixed=True,
                attempts_made=0,
                method=method,
                data=parsed.data,
                cost=execution.cost,
                tokens=execution.total_tokens,
            )
        try:
            direct = json.loads(execution.output.strip())
        except json.JSONDecodeError:
            direct = None
        if isinstance(direct, dict) and all(name in direct for name in required):
            return FixResult(
                fixed=True,
                attempts_made=0,
                method=f"{method}_direct_parse",
                data=direct,
                cost=execution.cost,
                tokens=execution.total_tokens,
            )
        return FixResult(
            fixed=False,
            attempts_made=0,
            error=f"Repair pass output was not usable: {parsed.reason}",
            cost=execution.cost,
            tokens=execution.total_tokens,
        )

    async def _fix_json(
        self,
        task_id: str,
        raw_output: str | None,
        required: tuple[str, ...],
        workspace_path: Path | None,
    ) -> FixResult:
        if not raw_output:
            return FixResult(fixed=False, attempts_made=0, error="No raw output to repair")

        lenient = lenient_extract(raw_output, required)
        if lenient is not None:
            return FixResult(
                fixed=True,
                attempts_made=0,
                method="lenient_extraction",
                data=lenient.data,
            )

        fields = ", ".join(required) if required else "the original fields"
        prompt = (
            "The text below was supposed to be a single JSON object with the fields "
            f"{fields}, but it could not be parsed. Re-emit it as one valid JSON object.\n\n"
            f"--- BEGIN OUTPUT ---\n{raw_output}\n--- END OUTPUT ---"
        )
        execution = await self._model_pass(task_id, prompt, workspace_path)
        if execution is None:
            return FixResult(fixed=False, attempts_made=0, error="No repair model configured")
        return self._from_execution(execution, required, "model_reextraction")

    async def _fix_validation(
        self,
        task_id: str,
        raw_output: str | None,
        required: tuple[str, ...],
        workspace_path: Path | None,
    ) -> FixResult:
        salvaged = salvage_objects(raw_output)
        if not salvaged:
            return FixResult(fixed=False, attempts_made=0, error="No structured data to complete")
        existing = salvaged[0]
        missing = [name for name in required if not existing.get(name)]
        prompt = (
            "The JSON object below is missing required fields: "
            f"{', '.join(missing) or 'none listed'}. Fill in only those fields. "
            "Keep every existing field and value unchanged. Return the complete object.\n\n"
            f"{json.dumps(existing, ensure_ascii=False, indent=2)}"
        )
        execution = await self._model_pass(task_id, prompt, workspace_path)
        if execution is None:
            return FixResult(fixed=False, attempts_made=0, error="No repair model configured")
        result = self._from_execution(execution, required, "model_validation_fix")
        if result.fixed and result.data is not None:
            merged = dict(result.data)
            merged.update({key: value for key, value in existing.items() if value})
            result.data = merged
        return result

    @staticmethod
    def _salvage(raw_output: str | None, required: tuple[str, ...]) -> FixResult:
        for candidate in salvage_objects(raw_output):
            if all(name in candidate for name in required):
                return FixResult(
                    fixed=True,
                    attempts_made=0,
                    method="partial_salvage",
                    data=candidate,
                )
        return FixResult(fixed=False, attempts_made=0, error="Nothing could be salvaged")
