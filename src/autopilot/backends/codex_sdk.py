from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from openai import OpenAI, OpenAIError

from autopilot.backends.base import AgentBackend, BackendExecutionError, compose_prompt
from autopilot.backends.codex import CodexBackend

logger = logging.getLogger(__name__)


def response_text(payload: Any) -> str:
    """`output_text` from a Responses API result or its dict form."""
    if isinstance(payload, dict):
        value = payload.get("output_text")
    else:
        value = getattr(payload, "output_text", None)
    return value if isinstance(value, str) else ""


class CodexSDKBackend(AgentBackend):
    """OpenAI Responses backend; uses the Codex CLI when no client can be configured."""

    def __init__(
        self,
        *,
        model: str = "gpt-5-codex",
        working_directory: Path | None = None,
        client: Any | None = None,
    ) -> None:
        self.model = model
        self.working_directory = working_directory
        self.cli_fallback = CodexBackend(working_directory=working_directory)
        self._client = client
        if self._client is None:
            try:
                self._client = OpenAI()
            except OpenAIError as exc:
                logger.info("OpenAI client unavailable, using Codex CLI: %s", exc)

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
        if self._client is None:
            async for chunk in self.cli_fallback.execute(
                system_prompt,
                user_prompt,
                cwd=cwd,
                tools=tools,
                model=model,
                json_output=json_output,
            ):
                yield chunk
            return

        client = self._client
        request = {
            "model": model.strip() if model and model.strip() else self.model,
            "input": [
                {"role": "system", "content": system_prompt},
                {
                    "role": "user",
                    "content": compose_prompt(
                        user_prompt,
                        tools=tools,
                        json_output=json_output,
                        cwd=cwd or self.working_directory,
                    ),
                },
            ],
        }
        try:
            payload = await asyncio.to_thread(lambda: client.responses.create(**request))
        except OpenAIError as exc:
            raise BackendExecutionError(
                f"Codex SDK execution failed: {exc}",
                backend="codex_sdk",
                retriable=True,
            ) from exc

        content = response_text(payload).strip()
        if content:
            yield content
