from __future__ import annotations

import uuid
from typing import Any

from autopilot.models import (
    Action,
    EnqueuedAction,
    LogEntry,
    PendingAction,
    Span,
    SpanStatus,
    utcnow_iso,
)
from autopilot.state.store import AutopilotStore


class SpanFinalizedError(RuntimeError):
    """Raised when a span is finalized more than once."""


def new_id() -> str:
    return str(uuid.uuid4())


class SpanWriter:
    """Lifecycle of one span.

    The span is written with status ``running`` as soon as it is created. One of
    ``complete``, ``fail`` or ``error`` then records the outcome; a span can be
    finalized only once.

    ``fail`` means the step ran but the outcome was negative. ``error`` means the
    step could not finish because of an environmental or unexpected problem.
    """

    def __init__(
        self,
        store: AutopilotStore,
        step: str,
        parent_id: str | None,
        meta: dict[str, Any] | None = None,
    ) -> None:
        self.store = store
        self.id = new_id()
        self._span = Span(id=self.id, step=step, parent_id=parent_id, meta=dict(meta or {}))
        self._finalized = False
        self.store.write_span(self._span)

    @property
    def status(self) -> SpanStatus:
        return self._span.status

    @property
    def finalized(self) -> bool:
        return self._finalized

    def complete(self, summary: str, extra_meta: dict[str, Any] | None = None) -> None:
        self._finalize("completed", summary, extra_meta)

    def fail(self, summary: str, extra_meta: dict[str, Any] | None = None) -> None:
        self._finalize("failed", summary, extra_meta)

    def error(self, summary: str, extra_meta: dict[str, Any] | None = None) -> None:
        self._finalize("error", summary, extra_meta)

    def _finalize(
        self, status: SpanStatus, summary: str, extra_meta: dict[str, Any] | None
    ) -> None:
        if self._finalized:
            raise SpanFinalizedError(f"Span {self.id} already finalized")
        self._span.status = status
        self._span.summary = summary
        self._span.completed_at = utcnow_iso()
        if extra_meta:
            self._span.meta.update(extra_meta)
        self.store.write_span(self._span)
        self._finalized = True


def finalize_span(
    store: AutopilotStore,
    span_id: str,
    status: SpanStatus,
    summary: str,
    extra_meta: dict[str, Any] | None = None,
) -> Span | None:
    """Finalize a span left ``running`` by a two-phase step."""
    span = store.read_span(span_id)
    if span is None:
        return None
    if span.status != "running":
        raise SpanFinalizedError(f"Span {span_id} already finalized")
    span.status = status
    span.summary = summary
    span.completed_at = utcnow_iso()
    if extra_meta:
        span.meta.update(extra_meta)
    store.write_span(span)
    return span


class ActionWriter:
    """Immutable decision record, written once at construction."""

    def __init__(
        self,
        store: AutopilotStore,
        action: str,
        span_id: str,
        trace_id: str,
        reasoning: str,
        meta: dict[str, Any] | None = None,
    ) -> None:
        self.store = store
        self.id = new_id()
        self.data = Action(
            id=self.id,
            action=action,
            span_id=span_id,
            trace_id=trace_id,
            reasoning=reasoning,
            meta=dict(meta or {}),
        )
        self.store.write_action(self.data)

    def enqueue(
        self,
        summary: str,
        meta: dict[str, Any] | None = None,
        trace_id: str | None = None,
    ) -> EnqueuedAction:
        return EnqueuedAction(
            action_id=self.id,
            action_type=self.data.action,
            summary=summary,
            span_id=self.data.span_id,
            meta=dict(self.data.meta if meta is None else meta),
            trace_id=trace_id,
        )


def log_enqueued(store: AutopilotStore, pending: PendingAction, step: str) -> None:
    store.append_log(
        LogEntry(
            chain_id=pending.chain_id,
            trace_id=pending.trace_id,
            span_id=pending.span_id,
            action_id=pending.action_id,
            step=step,
            action=pending.action,
            summary=pending.summary,
        )
    )


def enqueue_action(
    store: AutopilotStore,
    *,
    chain_id: str,
    trace_id: str,
    action: ActionWriter,
    step: str,
    summary: str,
    meta: dict[str, Any] | None = None,
) -> PendingAction:
    """Queue an action outside a step run and record it in the structured log."""
    pending = action.enqueue(summary, meta).to_pending(chain_id=chain_id, trace_id=trace_id)
    store.add_pending(pending)
    log_enqueued(store, pending, step)
    return pending
