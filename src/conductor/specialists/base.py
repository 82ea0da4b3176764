from __future__ import annotations

from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Any

from conductor.backends.base import AgentBackend, AgentRequest, TurnCallback

TOOL_POLICY_ALLOWLIST = {
    "read_file",
    "write_file",
    "edit_file",
    "run_command",
    "search",
}
READ_ONLY_TOOLS = ["read_file", "search"]


@dataclass(slots=True)
class SpecialistResponse:
    role: str
    content: str
    session_id: str | None = None
    last_message_id: str | None = None
    cost: float = 0.0
    usage: dict[str, int] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)


class SpecialistAgent:
    role: str = "specialist"
    prompt_file: str | None = None
    fallback_prompt: str = "You are a software specialist."
    default_tools: list[str] | None = None

    def __init__(self, backend: AgentBackend, *, model: str | None = None) -> None:
        self.backend = backend
        self.model = model
        self.system_prompt = self._load_system_prompt()

    def _load_system_prompt(self) -> str:
        if not self.prompt_file:
            return self.fallback_prompt.strip()
        try:
            prompt_path = resources.files("conductor.prompts").joinpath(self.prompt_file)
            return prompt_path.read_text(encoding="utf-8").strip()
        except (FileNotFoundError, ModuleNotFoundError):
            return self.fallback_prompt.strip()

    @staticmethod
    def _normalize_allowed_tools(allowed_tools: list[str] | None) -> list[str] | None:
        if not allowed_tools:
            return None
        normalized = sorted({str(tool).strip() for tool in allowed_tools if str(tool).strip()})
        unknown = [tool for tool in normalized if tool not in TOOL_POLICY_ALLOWLIST]
        if unknown:
            raise RuntimeError(
                "Tool policy rejected unknown tools for specialist run: "
                + ", ".join(unknown)
            )
        return normalized

    async def run(
        self,
        instruction: str,
        context: dict[str, Any],
        allowed_tools: list[str] | None = None,
        *,
        working_directory: Path | None = None,
        session_id: str | None = None,
        resume_at_message_id: str | None = None,
        fork_session: bool = False,
        permission_mode: str | None = None,
        model: str | None = None,
        on_turn: TurnCallback | None = None,
    ) -> SpecialistResponse:
        tools = self._normalize_allowed_tools(
            allowed_tools if allowed_tools is not None else self.default_tools
        )
        reply = await self.backend.run(
            AgentRequest(
                system_prompt=self.system_prompt,
                user_prompt=instruction,
                context=dict(context),
                allowed_tools=tools,
                working_directory=working_directory,
                model=model or self.model,
                session_id=session_id,
                resume_at_message_id=resume_at_message_id,
                fork_session=fork_session,
                permission_mode=permission_mode,
                on_turn=on_turn,
            )
        )
        return SpecialistResponse(
            role=self.role,
            content=reply.content,
            session_id=reply.session_id,
            last_message_id=reply.last_message_id,
            cost=reply.cost,
            usage=dict(reply.usage),
            metadata={
                "backend": reply.backend,
                "turns": reply.turns,
                "tool_mode": tools is not None,
                "allowed_tools": list(tools or []),
                "resumed": session_id is not None,
            },
        )
