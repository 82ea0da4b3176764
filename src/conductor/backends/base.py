from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from collections.abc import Callable
from pathlib import Path
from typing import Any

# (session_id, last_message_id, turns) reported as an agent session progresses.
TurnCallback = Callable[[str | None, str | None, int], None]


class BackendExecutionError(RuntimeError):
    """Raised when a backend process execution fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when backend execution exceeds configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when backend process lifecycle fails."""


@dataclass(slots=True)
class AgentRequest:
    system_prompt: str
    user_prompt: str
    context: dict[str, Any] = field(default_factory=dict)
    allowed_tools: list[str] | None = None
    working_directory: Path | None = None
    model: str | None = None
    session_id: str | None = None
    resume_at_message_id: str | None = None
    fork_session: bool = False
    permission_mode: str | None = None
    on_turn: TurnCallback | None = None


@dataclass(slots=True)
class AgentReply:
    content: str
    session_id: str | None = None
    last_message_id: str | None = None
    cost: float = 0.0
    usage: dict[str, int] = field(
        default_factory=lambda: {"input_tokens": 0, "output_tokens": 0}
    )
    turns: int = 0
    backend: str | None = None

    @property
    def total_tokens(self) -> int:
        return int(self.usage.get("input_tokens", 0)) + int(self.usage.get("output_tokens", 0))


class AgentBackend(ABC):
    @abstractmethod
    async def run(self, request: AgentRequest) -> AgentReply:
        """Execute one agent invocation and return its text plus session bookkeeping."""
