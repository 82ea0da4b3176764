from conductor.backends.base import (
    AgentBackend,
    AgentReply,
    AgentRequest,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
)
from conductor.backends.claude import ClaudeCodeBackend
from conductor.backends.openai_responses import OpenAIResponsesBackend
from conductor.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "AgentBackend",
    "AgentReply",
    "AgentRequest",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "OpenAIResponsesBackend",
    "ResilientBackend",
    "RetryPolicy",
]
