from __future__ import annotations

from autopilot.models import NOOP, PendingAction
from autopilot.steps.base import Step, StepContext, StepResult
from autopilot.steps.summarizer import summarize_chain


class NoopStep(Step):
    """Ends a chain that needs no work, recording a summary of what led here."""

    action_type = NOOP
    default_max_parallel = 5

    async def process(self, pending: PendingAction, ctx: StepContext) -> StepResult:
        spans = ctx.store.get_span_trace(pending.span_id) if pending.span_id else []
        summary = await summarize_chain(spans, ctx.trace, ctx.tool)
        span = self.open_span(ctx, pending, {"summary": summary})
        span.complete(f"noop: {summary}")
        return StepResult(span_id=span.id, terminal=True, reasoning=f"noop: {summary}")
