from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

from openai import OpenAI, OpenAIError

from conductor.backends.base import (
    AgentBackend,
    AgentReply,
    AgentRequest,
    BackendExecutionError,
    BackendProcessError,
)


class OpenAIResponsesBackend(AgentBackend):
    """Text-only backend on the OpenAI Responses API.

    Sessions map onto ``previous_response_id`` so a resumed request continues
    the same conversation. There is no filesystem access; this backend is
    meant for planning, judging, and repair passes rather than code edits.
    """

    def __init__(
        self,
        *,
        model: str = "gpt-5",
        working_directory: Path | None = None,
    ) -> None:
        self.model = model
        self.working_directory = working_directory
        self._client: Any | None = None

    def _get_client(self) -> Any:
        if self._client is None:
            try:
                self._client = OpenAI()
            except OpenAIError as exc:
                raise BackendProcessError(
                    f"OpenAI client unavailable: {exc}",
                    backend="openai",
                    retriable=False,
                ) from exc
        return self._client

    @staticmethod
    def _build_user_input(request: AgentRequest) -> str:
        parts = [request.user_prompt]
        if request.context:
            parts.append("Context JSON:")
            parts.append(json.dumps(request.context, ensure_ascii=False, indent=2))
        if request.allowed_tools:
            parts.append("Allowed tools:")
            parts.append(json.dumps(request.allowed_tools, ensure_ascii=False))
        return "\n\n".join(parts)

    @staticmethod
    def _field(payload: Any, name: str) -> Any:
        if isinstance(payload, dict):
            return payload.get(name)
        return getattr(payload, name, None)

    def _to_reply(self, payload: Any) -> AgentReply:
        text = self._field(payload, "output_text")
        usage = self._field(payload, "usage")
        input_tokens = self._field(usage, "input_tokens") if usage is not None else 0
        output_tokens = self._field(usage, "output_tokens") if usage is not None else 0
        response_id = self._field(payload, "id")
        return AgentReply(
            content=str(text or "").strip(),
            session_id=response_id if isinstance(response_id, str) else None,
            last_message_id=response_id if isinstance(response_id, str) else None,
            usage={
                "input_tokens": int(input_tokens or 0),
                "output_tokens": int(output_tokens or 0),
            },
            turns=1,
            backend="openai",
        )

    async def run(self, request: AgentRequest) -> AgentReply:
        client = self._get_client()
        model_name = request.model.strip() if request.model and request.model.strip() else self.model
        kwargs: dict[str, Any] = {
            "model": model_name,
            "input": [
                {"role": "system", "content": request.system_prompt},
                {"role": "user", "content": self._build_user_input(request)},
            ],
        }
        if request.session_id:
            kwargs["previous_response_id"] = request.session_id

        def _request() -> Any:
            return client.responses.create(**kwargs)

        try:
            payload = await asyncio.to_thread(_request)
        except OpenAIError as exc:
            raise BackendExecutionError(
                f"OpenAI execution failed: {exc}",
                backend="openai",
                retriable=True,
            ) from exc
        return self._to_reply(payload)
