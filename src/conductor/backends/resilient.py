from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from conductor.backends.base import (
    AgentBackend,
    AgentReply,
    AgentRequest,
    BackendExecutionError,
    BackendTimeoutError,
)

logger = logging.getLogger(__name__)

BackendEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 1800.0


class ResilientBackend(AgentBackend):
    """Wraps primary/fallback backends with timeout, retry, and failover.

    Session ids and model names belong to the backend that issued them, so
    the fallback always starts a fresh session on its own default model.
    """

    def __init__(
        self,
        primary_name: str,
        primary_backend: AgentBackend,
        fallback_name: str,
        fallback_backend: AgentBackend,
        retry_policy: RetryPolicy,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.primary_name = primary_name
        self.primary_backend = primary_backend
        self.fallback_name = fallback_name
        self.fallback_backend = fallback_backend
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _attempt_plan(self, request: AgentRequest) -> list[tuple[str, AgentBackend, AgentRequest]]:
        attempts = [(self.primary_name, self.primary_backend, request)]
        if self.fallback_name != self.primary_name:
            fresh = dataclasses.replace(
                request,
                session_id=None,
                resume_at_message_id=None,
                fork_session=False,
                model=None,
            )
            attempts.append((self.fallback_name, self.fallback_backend, fresh))
        return attempts

    async def _run_once(self, backend: AgentBackend, request: AgentRequest) -> AgentReply:
        try:
            return await asyncio.wait_for(
                backend.run(request),
                timeout=self.retry_policy.timeout_seconds,
            )
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"Backend request timed out after {self.retry_policy.timeout_seconds:.1f}s",
                retriable=True,
            ) from exc

    async def run(self, request: AgentRequest) -> AgentReply:
        errors: list[str] = []
        for backend_name, backend, attempt_request in self._attempt_plan(request):
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                    self._emit(
                        {
                            "event": "backend_retry",
                            "backend": backend_name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                        }
                    )
                    await asyncio.sleep(delay)
                try:
                    reply = await self._run_once(backend, attempt_request)
                except BackendExecutionError as exc:
                    errors.append(f"{backend_name}[{attempt}]: {exc}")
                    logger.warning("Backend %s attempt %d failed: %s", backend_name, attempt, exc)
                    self._emit(
                        {
                            "event": "backend_attempt_failed",
                            "backend": backend_name,
                            "attempt": attempt,
                            "error": str(exc),
                            "retriable": exc.retriable,
                        }
                    )
                    if not exc.retriable:
                        break
                    continue
                except Exception as exc:
                    errors.append(f"{backend_name}[{attempt}]: {exc}")
                    logger.warning("Backend %s attempt %d failed: %s", backend_name, attempt, exc)
                    self._emit(
                        {
                            "event": "backend_attempt_failed",
                            "backend": backend_name,
                            "attempt": attempt,
                            "error": str(exc),
                            "retriable": True,
                        }
                    )
                    continue

                if backend_name != self.primary_name:
                    self._emit(
                        {
                            "event": "backend_fallback_success",
                            "backend": backend_name,
                            "attempt": attempt,
                        }
                    )
                reply.backend = reply.backend or backend_name
                return reply

        summary = "; ".join(errors[-6:])
        raise BackendExecutionError(
            f"All backend attempts failed. {summary}",
            retriable=False,
        )
