from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from autopilot.backends.base import (
    AgentBackend,
    BackendEventHook,
    BackendExecutionError,
    BackendTimeoutError,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 600.0

    def delay(self, attempt: int) -> float:
        return self.backoff_seconds * (2 ** (attempt - 1)) if attempt > 0 else 0.0


class ResilientBackend(AgentBackend):
    """Primary/fallback backends behind a timeout, exponential backoff and failover.

    Every attempt, retry and failover is reported to `event_hook`, which the CLI
    wires to the store's metrics document.
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

    def _backends(self) -> Iterator[tuple[str, AgentBackend]]:
        yield self.primary_name, self.primary_backend
        if self.fallback_name != self.primary_name:
            yield self.fallback_name, self.fallback_backend

    async def _run_once(
        self,
        backend: AgentBackend,
        system_prompt: str,
        user_prompt: str,
        options: dict[str, Any],
    ) -> list[str]:
        async def _consume() -> list[str]:
            return [
                chunk async for chunk in backend.execute(system_prompt, user_prompt, **options)
            ]

        timeout = self.retry_policy.timeout_seconds
        try:
            return await asyncio.wait_for(_consume(), timeout=timeout)
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"Backend request timed out after {timeout:.1f}s", retriable=True
            ) from exc

    def _record_failure(
        self, backend_name: str, attempt: int, error: Exception, retriable: bool
    ) -> None:
        logger.warning("Backend %s attempt %d failed: %s", backend_name, attempt, error)
        self._emit(
            {
                "event": "backend_attempt_failed",
                "backend": backend_name,
                "attempt": attempt,
                "error": str(error),
                "retriable": retriable,
            }
        )

    async def _execute_attempts(
        self,
        system_prompt: str,
        user_prompt: str,
        options: dict[str, Any],
    ) -> list[str]:
        errors: list[str] = []
        for backend_name, backend in self._backends():
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.delay(attempt)
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
                    chunks = await self._run_once(backend, system_prompt, user_prompt, options)
                except BackendExecutionError as exc:
                    errors.append(f"{backend_name}[{attempt}]: {exc}")
                    self._record_failure(backend_name, attempt, exc, exc.retriable)
                    if not exc.retriable:
                        break
                    continue
                except OSError as exc:
                    errors.append(f"{backend_name}[{attempt}]: {exc}")
                    self._record_failure(backend_name, attempt, exc, True)
                    continue
                if backend_name != self.primary_name:
                    self._emit(
                        {
                            "event": "backend_fallback_success",
                            "backend": backend_name,
                            "attempt": attempt,
                        }
                    )
                return chunks

        raise BackendExecutionError(
            f"All backend attempts failed. {'; '.join(errors[-6:])}",
            retriable=False,
        )

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        cwd: Path | None = None,
        tools: list[str] | None = None,
        model: str | None = None,
        json_output: bool = False,
    ) -> AsyncIterator[str]:
        options = {"cwd": cwd, "tools": tools, "model": model, "json_output": json_output}
        for chunk in await self._execute_attempts(system_prompt, user_prompt, options):
            yield chunk
