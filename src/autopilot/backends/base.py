from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

JSON_ONLY_INSTRUCTION = "Respond with a single JSON object and nothing else."

BackendEventHook = Callable[[dict[str, Any]], None]


class BackendExecutionError(RuntimeError):
    """Raised when a reasoning request cannot be completed."""

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
    """Raised when a request exceeds the configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when an agent CLI cannot be started or wired up."""


def compose_prompt(
    user_prompt: str,
    *,
    tools: list[str] | None = None,
    json_output: bool = False,
    cwd: Path | None = None,
) -> str:
    """Append the execution constraints a backend cannot pass as flags."""
    parts = [user_prompt]
    if cwd is not None:
        parts.append(f"Working directory: {cwd}")
    if tools:
        parts.append("Allowed tools:")
        parts.append(json.dumps(tools, ensure_ascii=False))
    if json_output:
        parts.append(JSON_ONLY_INSTRUCTION)
    return "\n\n".join(parts)


def flatten_text(value: Any) -> str:
    """Text carried by a stream event field: a string, content parts, or a message."""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return "".join(
            flatten_text(part.get("text")) for part in value if isinstance(part, dict)
        )
    if isinstance(value, dict):
        return flatten_text(value.get("content"))
    return ""


def _unbalanced(raw: str) -> bool:
    return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")


class AgentBackend(ABC):
    @abstractmethod
    def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        cwd: Path | None = None,
        tools: list[str] | None = None,
        model: str | None = None,
        json_output: bool = False,
    ) -> AsyncIterator[str]:
        """Run one reasoning request and stream textual chunks."""


class CLIBackend(AgentBackend):
    """Process plumbing shared by the agent CLIs that stream JSON lines."""

    name = "cli"

    def __init__(
        self,
        binary: str,
        working_directory: Path | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    async def _spawn(
        self,
        command: list[str],
        workdir: Path | None,
        *,
        stdin_text: str | None = None,
        env: dict[str, str] | None = None,
    ) -> asyncio.subprocess.Process:
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(workdir) if workdir else None,
                env=env,
                stdin=asyncio.subprocess.PIPE if stdin_text is not None else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"{self.name} binary not found: {self.binary}",
                backend=self.name,
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise BackendProcessError(
                f"{self.name} backend did not expose stdout.", backend=self.name, retriable=False
            )
        if stdin_text is not None:
            if process.stdin is None:
                raise BackendProcessError(
                    f"{self.name} backend did not expose stdin.",
                    backend=self.name,
                    retriable=False,
                )
            process.stdin.write(stdin_text.encode("utf-8"))
            await process.stdin.drain()
            process.stdin.close()
        return process

    async def _stream_events(
        self, process: asyncio.subprocess.Process
    ) -> AsyncIterator[dict[str, Any] | str]:
        """Decode stdout into JSON objects; undecodable lines come through as text.

        A JSON document split across lines is buffered until its brackets balance.
        """
        assert process.stdout is not None
        buffer = ""
        async for raw_line in process.stdout:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            candidate = f"{buffer}{line}" if buffer else line
            try:
                event = json.loads(candidate)
            except json.JSONDecodeError:
                if _unbalanced(candidate):
                    buffer = candidate
                    continue
                buffer = ""
                self._emit({"event": f"{self.name}_json_parse_fallback", "line": line[:200]})
                yield line
                continue
            buffer = ""
            if isinstance(event, dict):
                yield event
        if buffer:
            self._emit({"event": f"{self.name}_json_buffer_flush", "bytes": len(buffer)})
            yield buffer

    async def _wait(self, process: asyncio.subprocess.Process) -> None:
        return_code = await process.wait()
        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        if return_code != 0:
            self._emit(
                {
                    "event": f"{self.name}_cli_exit",
                    "exit_code": return_code,
                    "stderr": stderr_output[:400],
                }
            )
            raise BackendExecutionError(
                f"{self.name} backend failed with exit code {return_code}: {stderr_output}",
                backend=self.name,
                exit_code=return_code,
                retriable=True,
            )
        self._emit({"event": f"{self.name}_cli_exit", "exit_code": 0})
