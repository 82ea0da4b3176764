from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from uuid import uuid4

from conductor.backends.base import TurnCallback
from conductor.specialists.base import SpecialistAgent
from conductor.state.checkpoints import ResumeOptions

logger = logging.getLogger(__name__)

_BLANK_RUNS = re.compile(r"\n{3,}")
_TRAILING_SPACE = re.compile(r"[ \t]+\n")


@dataclass(slots=True)
class AgentExecution:
    output: str
    session_id: str
    cost: float = 0.0
    usage: dict[str, int] = field(
        default_factory=lambda: {"input_tokens": 0, "output_tokens": 0}
    )
    external_session_id: str | None = None
    last_message_id: str | None = None
    duration_seconds: float = 0.0
    turns: int = 0

    @property
    def total_tokens(self) -> int:
        return int(self.usage.get("input_tokens", 0)) + int(self.usage.get("output_tokens", 0))


def optimize_prompt(prompt: str) -> str:
    compact = _TRAILING_SPACE.sub("\n", prompt)
    return _BLANK_RUNS.sub("\n\n", compact).strip()


class AgentExecutor:
    """Runs a role's specialist and reports output plus session and cost bookkeeping.

    ``output`` is untrusted text; callers extract structure from it.
    """

    def __init__(self, specialists: dict[str, SpecialistAgent]) -> None:
        self.specialists = specialists

    def has_role(self, role: str) -> bool:
        return role in self.specialists

    async def execute(
        self,
        role: str,
        prompt: str,
        workspace_path: str | Path | None,
        task_id: str,
        label: str,
        *,
        session_id: str | None = None,
        fork: bool = False,
        attachments: list[Any] | None = None,
        options: dict[str, Any] | None = None,
        context_override: dict[str, Any] | None = None,
        skip_optimization: bool = False,
        permission_mode: str = "bypassPermissions",
        resume_options: ResumeOptions | None = None,
        on_turn: TurnCallback | None = None,
    ) -> AgentExecution:
        specialist = self.specialists.get(role)
        if specialist is None:
            raise KeyError(f"No specialist registered for role '{role}'")
        options = dict(options or {})

        instruction = prompt if skip_optimization else optimize_prompt(prompt)
        if attachments:
            listed = "\n".join(f"- {item}" for item in attachments)
            instruction = f"{instruction}\n\nAttachments:\n{listed}"

        context = (
            dict(context_override)
            if context_override is not None
            else {"task_id": task_id, "label": label}
        )
        resume_session = session_id
        resume_at = None
        if resume_options is not None:
            resume_session = resume_options.session_id
            resume_at = resume_options.resume_at_message_id

        started = time.monotonic()
        logger.info(
            "Running %s for task %s (%s)%s",
            role,
            task_id,
            label,
            " [resume]" if resume_session else "",
        )
        response = await specialist.run(
            instruction,
            context,
            options.get("allowed_tools"),
            working_directory=Path(workspace_path) if workspace_path else None,
            session_id=resume_session,
            resume_at_message_id=resume_at,
            fork_session=fork,
            permission_mode=permission_mode,
            model=options.get("model"),
            on_turn=on_turn,
        )
        duration = time.monotonic() - started
        execution = AgentExecution(
            output=response.content,
            session_id=f"exec-{uuid4().hex[:12]}",
            cost=float(response.cost or 0.0),
            usage={
                "input_tokens": int(response.usage.get("input_tokens", 0)),
                "output_tokens": int(response.usage.get("output_tokens", 0)),
            },
            external_session_id=response.session_id,
            last_message_id=response.last_message_id,
            duration_seconds=duration,
            turns=int(response.metadata.get("turns") or 0),
        )
        logger.info(
            "%s for task %s finished in %.1fs (cost=%.4f, tokens=%d)",
            role,
            task_id,
            duration,
            execution.cost,
            execution.total_tokens,
        )
        return execution
