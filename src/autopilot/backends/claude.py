from __future__ import annotations

import os
from collections.abc import AsyncIterator
from pathlib import Path

from autopilot.backends.base import BackendEventHook, CLIBackend, compose_prompt, flatten_text

SKIPPED_EVENT_TYPES = frozenset({"system", "user"})


class ClaudeCodeBackend(CLIBackend):
    """Claude Code in print mode; the prompt goes over stdin."""

    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
        working_directory: Path | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        super().__init__(binary, working_directory, event_hook)

    def build_command(
        self,
        system_prompt: str,
        *,
        tools: list[str] | None = None,
        model: str | None = None,
    ) -> list[str]:
        command = [self.binary, "-p", "--output-format", "stream-json", "--verbose"]
        if system_prompt.strip():
            command.extend(["--append-system-prompt", system_prompt])
        if tools:
            command.extend(["--allowedTools", ",".join(tools)])
        if model and model.strip():
            command.extend(["--model", model.strip()])
        return command

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
        env = os.environ.copy()
        env["CLAUDE_NON_INTERACTIVE"] = "true"
        workdir = cwd or self.working_directory
        command = self.build_command(system_prompt, tools=tools, model=model)
        self._emit({"event": "claude_cli_start", "tool_mode": bool(tools), "model": model})
        process = await self._spawn(
            command,
            workdir,
            stdin_text=compose_prompt(user_prompt, json_output=json_output),
            env=env,
        )

        # stream-json repeats the assistant text in its final result event; prefer the result.
        assistant_parts: list[str] = []
        result_text: str | None = None
        async for event in self._stream_events(process):
            if isinstance(event, str):
                assistant_parts.append(event)
                continue
            event_type = event.get("type")
            if event_type == "result":
                result = event.get("result")
                if isinstance(result, str):
                    result_text = result
                continue
            if event_type in SKIPPED_EVENT_TYPES:
                continue
            text = flatten_text(event.get("content")) or flatten_text(event.get("message"))
            if not text and isinstance(event.get("delta"), str):
                text = event["delta"]
            if text:
                assistant_parts.append(text)
        await self._wait(process)

        if result_text is not None:
            yield result_text
            return
        for part in assistant_parts:
            yield part
