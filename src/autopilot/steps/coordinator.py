from __future__ import annotations

import logging
from typing import Any

from autopilot.audit import ActionWriter
from autopilot.models import COORDINATE, NOOP, NOTIFY, PLAN, PendingAction
from autopilot.steps.base import (
    COLLABORATOR_ERRORS,
    Step,
    StepContext,
    StepDependencies,
    StepResult,
    json_block,
)

logger = logging.getLogger(__name__)

DECISIONS = frozenset({PLAN, NOTIFY, NOOP, "clarify"})


def build_coordinator_prompt(meta: dict[str, Any], context: dict[str, Any] | None) -> str:
    prompt = f"## Event\n\n{json_block(meta)}\n"
    if context:
        prompt += f"\n## Additional Context\n\n{json_block(context.get('data', context))}\n"
    prompt += (
        "\n## Constraint\n\nThe `coordinate` action is NOT available for this decision. "
        "You must choose one of the other actions.\n"
    )
    return prompt


def normalize_decision(decision: dict[str, Any]) -> tuple[str, dict[str, Any], str]:
    """Map a raw decision onto an action the pipeline can run."""
    action = str(decision.get("action") or "").strip().lower()
    meta = decision.get("meta") if isinstance(decision.get("meta"), dict) else {}
    reasoning = str(decision.get("reasoning") or "")
    if action == COORDINATE:
        return NOOP, meta, "Forced to noop: coordinate is not available as a sub-action."
    if action == "clarify":
        return NOTIFY, {**meta, "original_action": "clarify"}, reasoning
    if action not in DECISIONS:
        logger.warning("Coordinator returned unknown action %r; using noop", action)
        return NOOP, meta, reasoning or f"Unknown action {action!r}"
    return action, meta, reasoning


class CoordinatorStep(Step):
    action_type = COORDINATE
    default_max_parallel = 3
    dependencies = StepDependencies(needs_owner_repo=True)
    prompt_file = "coordinator.md"
    fallback_prompt = """
You triage repository events. Choose one action: plan, clarify, notify or noop.
Respond with JSON: {"action", "confidence", "reasoning", "meta"}.
""".strip()

    async def process(self, pending: PendingAction, ctx: StepContext) -> StepResult:
        span = self.open_span(ctx, pending, pending.meta)
        try:
            context = None
            if ctx.github is not None and ctx.owner and ctx.repo and pending.meta:
                context = await ctx.github.fetch_context(ctx.owner, ctx.repo, pending.meta)
            tool = self.require_tool(ctx)
            decision = await tool.invoke_json(
                build_coordinator_prompt(pending.meta, context),
                system_prompt=self.system_prompt,
                model=tool.fast_model,
            )
        except COLLABORATOR_ERRORS as exc:
            return self.failed(span, str(exc))

        action, meta, reasoning = normalize_decision(decision)
        confidence = decision.get("confidence") or "unknown"
        writer = ActionWriter(ctx.store, action, span.id, pending.trace_id, reasoning, meta)
        span.complete(f"coordinate: {action}: {pending.summary}", meta)
        # The coordinator never ends a chain; noop is its own step.
        return StepResult(
            span_id=span.id,
            terminal=False,
            enqueued_actions=[writer.enqueue(f"{action}: {pending.summary}")],
            reasoning=f"{action} ({confidence})",
        )
