from __future__ import annotations

import json
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from autopilot.backends.base import BackendEventHook, CLIBackend, compose_prompt, flatten_text

# Item types carrying the agent's answer; reasoning and tool items are skipped.
ANSWER_ITEM_TYPES = frozenset({"agent_message", "assistant_message"})


class CodexBackend(CLIBackend):
    name = "codex"

    def __init__(
        self,
        binary: str = "codex",
        working_directory: Path | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        super().__init__(binary, working_directory, event_hook)

    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        cwd: Path | None = None,
        tools: list[str] | None = None,
        model: str | None = None,
        json_output: bool = False,
    ) -> list[str]:
        command = [
            self.binary,
            "exec",
            "--json",
            "-c",
            f"instructions={json.dumps(system_prompt, ensure_ascii=False)}",
        ]
        if cwd is not None:
            command.extend(["-C", str(cwd)])
        if model and model.strip():
            command.extend(["-m", model.strip()])
        command.append(compose_prompt(user_prompt, tools=tools, json_output=json_output))
        return command

    @staticmethod
    def answer_text(event: dict[str, Any]) -> str:
        item = event.get("item")
        if isinstance(item, dict):
            if item.get("type", "agent_message") in ANSWER_ITEM_TYPES:
                return flatten_text(item.get("text"))
            return ""
        return flatten_text(event.get("content")) or flatten_text(event.get("message"))

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
        workdir = cwd or self.working_directory
        command = self.build_command(
            system_prompt,
            user_prompt,
            cwd=workdir,
            tools=tools,
            model=model,
            json_output=json_output,
        )
        self._emit(
            {
                "event": "codex_cli_start",
                "command": command[:4],
                "tool_mode": bool(tools),
                "model": model,
            }
        )
        process = await self._spawn(command, workdir)
        async for event in self._stream_events(process):
            # Non-JSON output is progress noise, not part of the answer.
            if isinstance(event, str):
                continue
            text = self.answer_text(event)
            if text:
                yield text
        await self._wait(process)
