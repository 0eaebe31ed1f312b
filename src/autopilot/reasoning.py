from __future__ import annotations

import json
import re
from importlib import resources
from pathlib import Path
from typing import Any

from autopilot.backends.base import AgentBackend

FENCED_JSON_PATTERN = re.compile(r"```(?:json)?\s*\n(.*?)```", re.DOTALL)


class ReasoningOutputError(ValueError):
    """Raised when a reasoning response cannot be parsed into the expected shape."""


def load_prompt(prompt_file: str | None, fallback: str) -> str:
    if not prompt_file:
        return fallback.strip()
    try:
        prompt_path = resources.files("autopilot.prompts").joinpath(prompt_file)
        return prompt_path.read_text(encoding="utf-8").strip()
    except (FileNotFoundError, ModuleNotFoundError):
        return fallback.strip()


def _loads_object(candidate: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _unwrap_envelope(payload: dict[str, Any]) -> dict[str, Any]:
    # CLI result envelopes carry the model's text in "result".
    if payload.get("type") == "result" and isinstance(payload.get("result"), str):
        inner = payload["result"]
        try:
            return parse_json_response(inner)
        except ReasoningOutputError:
            return payload
    return payload


def parse_json_response(text: str) -> dict[str, Any]:
    """Extract a JSON object from free-form reasoning output.

    Accepts a bare object, a CLI result envelope, a fenced ```json block, or an
    object embedded in surrounding prose.
    """
    raw = (text or "").strip()
    if not raw:
        raise ReasoningOutputError("empty response")

    direct = _loads_object(raw)
    if direct is not None:
        return _unwrap_envelope(direct)

    for match in FENCED_JSON_PATTERN.finditer(raw):
        fenced = _loads_object(match.group(1).strip())
        if fenced is not None:
            return fenced

    start = raw.find("{")
    end = raw.rfind("}")
    if start != -1 and end > start:
        embedded = _loads_object(raw[start : end + 1])
        if embedded is not None:
            return embedded

    preview = raw[:120].replace("\n", " ")
    raise ReasoningOutputError(f"no JSON object found in response: {preview}")


class ReasoningTool:
    """Single entry point for reasoning requests made by pipeline steps."""

    def __init__(
        self,
        backend: AgentBackend,
        *,
        model: str | None = None,
        fast_model: str | None = None,
    ) -> None:
        self.backend = backend
        self.model = model
        self.fast_model = fast_model

    async def invoke(
        self,
        prompt: str,
        *,
        json_output: bool = False,
        cwd: Path | None = None,
        system_prompt: str | None = None,
        tools: list[str] | None = None,
        model: str | None = None,
    ) -> str:
        chunks: list[str] = []
        async for chunk in self.backend.execute(
            system_prompt or "",
            prompt,
            cwd=cwd,
            tools=tools,
            model=model or self.model,
            json_output=json_output,
        ):
            chunks.append(chunk)
        return "".join(chunks).strip()

    async def invoke_json(self, prompt: str, **options: Any) -> dict[str, Any]:
        response = await self.invoke(prompt, json_output=True, **options)
        return parse_json_response(response)
