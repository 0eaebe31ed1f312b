from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from autopilot.backends.base import BackendExecutionError
from autopilot.github import CommentKind, GitHubError
from autopilot.models import NOTIFY, ActionTrace, PendingAction, Span
from autopilot.steps.base import Step, StepContext, StepDependencies, StepResult, json_block
from autopilot.steps.summarizer import chain_payload

logger = logging.getLogger(__name__)

TRUNCATION_LIMIT = 60000
TRUNCATION_NOTICE = "\n\n---\n*Message truncated due to length.*"
PR_REVIEW_EVENTS = frozenset({"PullRequestReviewEvent", "PullRequestReviewCommentEvent"})


@dataclass(slots=True, frozen=True)
class NotifyChannel:
    kind: CommentKind
    number: int

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "number": self.number}


def resolve_channel(spans: list[Span]) -> NotifyChannel | None:
    """Pick the issue or pull request to comment on from the root event span."""
    root = next((span for span in spans if span.parent_id is None), None)
    if root is None:
        return None
    meta = root.meta
    event_type = meta.get("type")
    if event_type == "IssuesEvent":
        number, kind = meta.get("issue_number"), "issue"
    elif event_type == "PullRequestEvent" or event_type in PR_REVIEW_EVENTS:
        number, kind = meta.get("pr_number"), "pr"
    elif event_type == "IssueCommentEvent":
        number = meta.get("issue_number") or meta.get("pr_number")
        kind = "pr" if meta.get("is_pull_request") else "issue"
    else:
        return None
    if not number:
        return None
    return NotifyChannel(kind=kind, number=int(number))


def fallback_message(spans: list[Span], trace: ActionTrace) -> str:
    parts = [span.summary for span in spans if span.summary]
    if not parts:
        return f"Autopilot finished processing: {trace.summary}"
    return "\n\n".join(parts)


def truncate_message(message: str) -> str:
    if len(message) <= TRUNCATION_LIMIT:
        return message
    return message[:TRUNCATION_LIMIT] + TRUNCATION_NOTICE


class NotifyStep(Step):
    action_type = NOTIFY
    default_max_parallel = 5
    dependencies = StepDependencies(needs_owner_repo=True)
    prompt_file = "notify.md"
    fallback_prompt = """
Write a short Markdown comment describing what the automation did. Reply with the body only.
""".strip()

    async def _compose(
        self, ctx: StepContext, pending: PendingAction, spans: list[Span]
    ) -> str:
        if ctx.tool is None:
            return fallback_message(spans, ctx.trace)
        payload = {**chain_payload(spans, ctx.trace), "context": pending.meta}
        try:
            message = await ctx.tool.invoke(
                json_block(payload),
                system_prompt=self.system_prompt,
                model=ctx.tool.fast_model,
            )
        except BackendExecutionError as exc:
            logger.warning("Notify message composition failed: %s", exc)
            return fallback_message(spans, ctx.trace)
        return message.strip() or fallback_message(spans, ctx.trace)

    async def process(self, pending: PendingAction, ctx: StepContext) -> StepResult:
        spans = ctx.store.get_span_trace(pending.span_id) if pending.span_id else []
        channel = resolve_channel(spans) if ctx.owner and ctx.repo else None
        message = truncate_message(await self._compose(ctx, pending, spans))

        posted = False
        post_error: str | None = None
        if channel is not None and ctx.github is not None:
            try:
                await ctx.github.post_comment(
                    channel.kind, channel.number, message, ctx.owner, ctx.repo
                )
                posted = True
            except GitHubError as exc:
                post_error = str(exc)
        elif channel is not None:
            post_error = "no GitHub client configured"

        span_meta: dict[str, Any] = {
            "channel": channel.to_dict() if channel else None,
            "posted": posted,
            "message_length": len(message),
        }
        if post_error:
            span_meta["post_error"] = post_error
        if pending.meta.get("original_action"):
            span_meta["original_action"] = pending.meta["original_action"]
        span = self.open_span(ctx, pending, span_meta)

        if channel is None:
            span.complete("notify: no comment target (trace ends silently)")
            reasoning = "no comment target"
        elif posted:
            span.complete(f"notify: commented on {channel.kind} #{channel.number}")
            reasoning = f"commented on {channel.kind} #{channel.number}"
        else:
            span.fail(f"notify: failed to post on {channel.kind} #{channel.number}: {post_error}")
            reasoning = f"failed to comment on {channel.kind} #{channel.number}"

        return StepResult(
            span_id=span.id,
            terminal=True,
            reasoning=reasoning,
            status="completed" if channel is None or posted else "failed",
        )
