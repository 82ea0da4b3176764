from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from conductor.backends.base import (
    AgentBackend,
    AgentReply,
    AgentRequest,
    BackendExecutionError,
    BackendProcessError,
)

logger = logging.getLogger(__name__)

CLAUDE_TOOL_NAMES = {
    "read_file": "Read",
    "write_file": "Write",
    "edit_file": "Edit",
    "run_command": "Bash",
    "search": "Grep",
}


class ClaudeCodeBackend(AgentBackend):
    """Runs the ``claude`` CLI in print mode and folds its stream-json events."""

    def __init__(self, binary: str = "claude", working_directory: Path | None = None) -> None:
        self.binary = binary
        self.working_directory = working_directory

    def build_command(self, request: AgentRequest) -> list[str]:
        prompt = request.user_prompt
        if request.context:
            prompt = (
                f"{prompt}\n\nContext JSON:\n"
                f"{json.dumps(request.context, ensure_ascii=False, indent=2)}"
            )
        command = [self.binary, "-p", prompt, "--output-format", "stream-json", "--verbose"]
        if request.system_prompt:
            command.extend(["--append-system-prompt", request.system_prompt])
        if request.model:
            command.extend(["--model", request.model])
        if request.session_id:
            command.extend(["--resume", request.session_id])
            if request.fork_session:
                command.append("--fork-session")
        if request.permission_mode:
            command.extend(["--permission-mode", request.permission_mode])
        if request.allowed_tools:
            tools = [CLAUDE_TOOL_NAMES.get(tool, tool) for tool in request.allowed_tools]
            command.extend(["--allowedTools", ",".join(tools)])
        return command

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        message = event.get("message")
        content = message.get("content") if isinstance(message, dict) else event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict) and item.get("type", "text") == "text":
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)
        delta = event.get("delta")
        if isinstance(delta, str):
            return delta
        return ""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    async def _stream_events(self, request: AgentRequest) -> AsyncIterator[dict[str, Any]]:
        command = self.build_command(request)
        cwd = request.working_directory or self.working_directory
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Claude binary not found: {self.binary}",
                backend="claude",
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise BackendProcessError(
                "Claude backend did not expose stdout.", backend="claude", retriable=False
            )

        parse_buffer = ""
        async for raw_line in process.stdout:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            candidate = f"{parse_buffer}{line}" if parse_buffer else line
            try:
                event = json.loads(candidate)
                parse_buffer = ""
            except json.JSONDecodeError:
                if self._appears_partial_json(candidate):
                    parse_buffer = candidate
                    continue
                parse_buffer = ""
                yield {"type": "text", "content": line}
                continue
            if isinstance(event, dict):
                yield event

        if parse_buffer:
            yield {"type": "text", "content": parse_buffer}

        return_code = await process.wait()
        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        if return_code != 0:
            raise BackendExecutionError(
                f"Claude backend failed with exit code {return_code}: {stderr_output}",
                backend="claude",
                exit_code=return_code,
                retriable=True,
            )

    async def run(self, request: AgentRequest) -> AgentReply:
        chunks: list[str] = []
        reply = AgentReply(content="", backend="claude", session_id=request.session_id)
        final_result: str | None = None

        async for event in self._stream_events(request):
            event_type = event.get("type")
            session_id = event.get("session_id")
            if isinstance(session_id, str) and session_id and session_id != reply.session_id:
                reply.session_id = session_id
                if request.on_turn and event_type != "assistant":
                    request.on_turn(reply.session_id, reply.last_message_id, reply.turns)
            if event_type == "assistant":
                reply.turns += 1
                message = event.get("message")
                message_id = event.get("uuid") or (
                    message.get("id") if isinstance(message, dict) else None
                )
                if isinstance(message_id, str):
                    reply.last_message_id = message_id
                if request.on_turn:
                    request.on_turn(reply.session_id, reply.last_message_id, reply.turns)
            if event_type == "result":
                result = event.get("result")
                if isinstance(result, str):
                    final_result = result
                cost = event.get("total_cost_usd")
                if isinstance(cost, (int, float)):
                    reply.cost = float(cost)
                usage = event.get("usage")
                if isinstance(usage, dict):
                    reply.usage = {
                        "input_tokens": int(usage.get("input_tokens") or 0),
                        "output_tokens": int(usage.get("output_tokens") or 0),
                    }
                if event.get("is_error"):
                    raise BackendExecutionError(
                        f"Claude session ended with an error: {result}",
                        backend="claude",
                        retriable=True,
                    )
                continue
            content = self._extract_content(event)
            if content:
                chunks.append(content)

        reply.content = (final_result if final_result is not None else "".join(chunks)).strip()
        logger.debug(
            "claude run finished: session=%s turns=%d cost=%.4f",
            reply.session_id,
            reply.turns,
            reply.cost,
        )
        return reply
