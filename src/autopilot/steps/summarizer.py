from __future__ import annotations

import logging
from typing import Any

from autopilot.backends.base import BackendExecutionError
from autopilot.models import ActionTrace, Span
from autopilot.reasoning import ReasoningTool, load_prompt
from autopilot.steps.base import json_block

logger = logging.getLogger(__name__)

SUMMARY_FALLBACK_PROMPT = """
Summarize what an automation pipeline did for one repository event in one or two sentences.
""".strip()


def chain_payload(spans: list[Span], trace: ActionTrace) -> dict[str, Any]:
    return {
        "spans": [
            {"step": span.step, "status": span.status, "summary": span.summary, "meta": span.meta}
            for span in spans
        ],
        "steps": [
            {"action": step.action, "status": step.status, "reasoning": step.reasoning}
            for step in trace.steps
        ],
    }


def fallback_summary(spans: list[Span]) -> str:
    return " -> ".join(span.summary for span in spans if span.summary)


async def summarize_chain(
    spans: list[Span], trace: ActionTrace, tool: ReasoningTool | None
) -> str:
    """Describe a finished chain, falling back to the joined span summaries."""
    if tool is None:
        return fallback_summary(spans)
    try:
        summary = await tool.invoke(
            json_block(chain_payload(spans, trace)),
            system_prompt=load_prompt("summary.md", SUMMARY_FALLBACK_PROMPT),
            model=tool.fast_model,
        )
    except BackendExecutionError as exc:
        logger.warning("Chain summary failed, using span summaries: %s", exc)
        return fallback_summary(spans)
    return summary.strip() or fallback_summary(spans)
