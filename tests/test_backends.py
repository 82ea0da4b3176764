import asyncio
import json
from pathlib import Path
from typing import Any

import pytest

from conductor.backends import RetryPolicy
from conductor.backends.base import AgentBackend, AgentReply, AgentRequest, BackendExecutionError
from conductor.backends.claude import ClaudeCodeBackend
from conductor.backends.openai_responses import OpenAIResponsesBackend
from conductor.backends.resilient import ResilientBackend


class AlwaysFailBackend(AgentBackend):
    def __init__(self, retriable: bool = True) -> None:
        self.retriable = retriable
        self.calls = 0

    async def run(self, request: AgentRequest) -> AgentReply:
        _ = request
        self.calls += 1
        raise BackendExecutionError("boom", backend="fake", retriable=self.retriable)


class RecordingBackend(AgentBackend):
    def __init__(self, content: str = "ok") -> None:
        self.content = content
        self.requests: list[AgentRequest] = []

    async def run(self, request: AgentRequest) -> AgentReply:
        self.requests.append(request)
        return AgentReply(content=self.content, session_id="fresh-session", turns=1)


class FakeStdout:
    def __init__(self, lines: list[bytes]) -> None:
        self._lines = lines
        self._index = 0

    def __aiter__(self) -> "FakeStdout":
        return self

    async def __anext__(self) -> bytes:
        if self._index >= len(self._lines):
            raise StopAsyncIteration
        line = self._lines[self._index]
        self._index += 1
        return line


class FakeStderr:
    def __init__(self, data: bytes = b"") -> None:
        self.data = data

    async def read(self) -> bytes:
        return self.data


class FakeProcess:
    def __init__(self, lines: list[bytes], return_code: int = 0, stderr: bytes = b"") -> None:
        self.stdout = FakeStdout(lines)
        self.stderr = FakeStderr(stderr)
        self.return_code = return_code

    async def wait(self) -> int:
        return self.return_code


def _json_line(payload: dict[str, Any]) -> bytes:
    return (json.dumps(payload) + "\n").encode("utf-8")


def _resilient(primary: AgentBackend, fallback: AgentBackend, events: list[dict[str, Any]]):
    return ResilientBackend(
        primary_name="primary",
        primary_backend=primary,
        fallback_name="fallback",
        fallback_backend=fallback,
        retry_policy=RetryPolicy(max_retries=1, backoff_seconds=0.0, timeout_seconds=5.0),
        event_hook=events.append,
    )


def test_claude_build_command_shape() -> None:
    backend = ClaudeCodeBackend(binary="claude", working_directory=Path("."))
    command = backend.build_command(
        AgentRequest(
            system_prompt="system",
            user_prompt="implement feature",
            context={"epic": "epic-1"},
            allowed_tools=["read_file", "run_command"],
            model="claude-sonnet-4-5",
            session_id="sess-1",
            fork_session=True,
        )
    )

    assert command[0:2] == ["claude", "-p"]
    assert "stream-json" in command
    assert "Context JSON:" in command[2]
    assert command[command.index("--append-system-prompt") + 1] == "system"
    assert command[command.index("--model") + 1] == "claude-sonnet-4-5"
    assert command[command.index("--resume") + 1] == "sess-1"
    assert "--fork-session" in command
    assert command[command.index("--allowedTools") + 1] == "Read,Bash"


def test_claude_run_folds_stream_events(monkeypatch: pytest.MonkeyPatch) -> None:
    lines = [
        _json_line({"type": "system", "subtype": "init", "session_id": "sess-9"}),
        b"not json at all\n",
        _json_line(
            {
                "type": "assistant",
                "session_id": "sess-9",
                "uuid": "msg-1",
                "message": {"content": [{"type": "text", "text": "working"}]},
            }
        ),
        b'{"type": "assistant", "session_id": "sess-9",\n',
        b'"uuid": "msg-2", "message": {"content": "still working"}}\n',
        _json_line(
            {
                "type": "result",
                "session_id": "sess-9",
                "result": "done",
                "total_cost_usd": 0.25,
                "usage": {"input_tokens": 100, "output_tokens": 40},
            }
        ),
    ]
    captured: dict[str, Any] = {}

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        captured["args"] = args
        captured["cwd"] = kwargs.get("cwd")
        return FakeProcess(lines)

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    turns: list[tuple[str | None, str | None, int]] = []

    reply = asyncio.run(
        ClaudeCodeBackend().run(
            AgentRequest(
                system_prompt="system",
                user_prompt="user",
                working_directory=Path("/tmp/work"),
                on_turn=lambda session, message, count: turns.append((session, message, count)),
            )
        )
    )

    assert reply.content == "done"
    assert reply.session_id == "sess-9"
    assert reply.last_message_id == "msg-2"
    assert reply.turns == 2
    assert reply.cost == pytest.approx(0.25)
    assert reply.total_tokens == 140
    assert reply.backend == "claude"
    assert captured["cwd"] == "/tmp/work"
    assert turns == [("sess-9", None, 0), ("sess-9", "msg-1", 1), ("sess-9", "msg-2", 2)]


def test_claude_nonzero_exit_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args, kwargs
        return FakeProcess([], return_code=2, stderr=b"bad flag")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    with pytest.raises(BackendExecutionError, match="bad flag") as excinfo:
        asyncio.run(ClaudeCodeBackend().run(AgentRequest(system_prompt="s", user_prompt="u")))
    assert excinfo.value.exit_code == 2


def test_claude_missing_binary_is_not_retriable(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args, kwargs
        raise FileNotFoundError("claude")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    with pytest.raises(BackendExecutionError) as excinfo:
        asyncio.run(
            ClaudeCodeBackend(binary="missing-claude").run(
                AgentRequest(system_prompt="s", user_prompt="u")
            )
        )
    assert excinfo.value.retriable is False


def test_resilient_backend_fallback_and_retry_events() -> None:
    events: list[dict[str, Any]] = []
    primary = AlwaysFailBackend()
    fallback = RecordingBackend()

    reply = asyncio.run(
        _resilient(primary, fallback, events).run(AgentRequest(system_prompt="s", user_prompt="u"))
    )

    assert reply.content == "ok"
    assert reply.backend == "fallback"
    assert primary.calls == 2
    event_names = [event["event"] for event in events]
    assert "backend_retry" in event_names
    assert "backend_attempt_failed" in event_names
    assert event_names[-1] == "backend_fallback_success"


def test_resilient_fallback_starts_fresh_session() -> None:
    events: list[dict[str, Any]] = []
    fallback = RecordingBackend()
    request = AgentRequest(
        system_prompt="s",
        user_prompt="u",
        model="claude-opus-4-1",
        session_id="claude-session",
        resume_at_message_id="msg-3",
        fork_session=True,
    )

    asyncio.run(_resilient(AlwaysFailBackend(), fallback, events).run(request))

    forwarded = fallback.requests[0]
    assert forwarded.session_id is None
    assert forwarded.resume_at_message_id is None
    assert forwarded.fork_session is False
    assert forwarded.model is None
    assert forwarded.user_prompt == "u"
    assert request.session_id == "claude-session"


def test_resilient_non_retriable_error_skips_retries() -> None:
    events: list[dict[str, Any]] = []
    primary = AlwaysFailBackend(retriable=False)
    fallback = AlwaysFailBackend(retriable=False)

    with pytest.raises(BackendExecutionError, match="All backend attempts failed") as excinfo:
        asyncio.run(
            _resilient(primary, fallback, events).run(AgentRequest(system_prompt="s", user_prompt="u"))
        )

    assert excinfo.value.retriable is False
    assert primary.calls == 1
    assert fallback.calls == 1
    assert "backend_retry" not in [event["event"] for event in events]


def test_resilient_timeout_counts_as_failed_attempt() -> None:
    class SlowBackend(AgentBackend):
        async def run(self, request: AgentRequest) -> AgentReply:
            _ = request
            await asyncio.sleep(1)
            return AgentReply(content="late")

    events: list[dict[str, Any]] = []
    backend = ResilientBackend(
        primary_name="slow",
        primary_backend=SlowBackend(),
        fallback_name="fast",
        fallback_backend=RecordingBackend("fast"),
        retry_policy=RetryPolicy(max_retries=0, backoff_seconds=0.0, timeout_seconds=0.01),
        event_hook=events.append,
    )

    reply = asyncio.run(backend.run(AgentRequest(system_prompt="s", user_prompt="u")))

    assert reply.content == "fast"
    assert "timed out" in events[0]["error"]


def test_openai_backend_maps_sessions_to_previous_response(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, Any] = {}

    class FakeResponses:
        def create(self, **kwargs: Any) -> dict[str, Any]:
            captured.update(kwargs)
            return {
                "id": "resp_2",
                "output_text": " planned ",
                "usage": {"input_tokens": 12, "output_tokens": 8},
            }

    class FakeClient:
        def __init__(self) -> None:
            self.responses = FakeResponses()

    backend = OpenAIResponsesBackend(model="gpt-5")
    monkeypatch.setattr(backend, "_client", FakeClient())

    reply = asyncio.run(
        backend.run(
            AgentRequest(
                system_prompt="system",
                user_prompt="user",
                context={"task": "t"},
                session_id="resp_1",
            )
        )
    )

    assert reply.content == "planned"
    assert reply.session_id == "resp_2"
    assert reply.total_tokens == 20
    assert captured["model"] == "gpt-5"
    assert captured["previous_response_id"] == "resp_1"
    assert "Context JSON:" in captured["input"][1]["content"]
