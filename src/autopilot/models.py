from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

COORDINATE = "coordinate"
PLAN = "plan"
WORKFLOW = "workflow"
COMMIT = "commit"
RESOLVE = "resolve"
PUSH = "push"
NOTIFY = "notify"
NOOP = "noop"

ACTION_TYPES = (COORDINATE, PLAN, WORKFLOW, COMMIT, RESOLVE, PUSH, NOTIFY, NOOP)
TERMINAL_ACTION_TYPES = frozenset({NOTIFY, NOOP})

StepStatus = Literal["pending", "running", "completed", "failed"]
SpanStatus = Literal["running", "completed", "failed", "error"]

RECORD_VERSION = "1.0"


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


def _as_dict(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, dict) else {}


@dataclass(slots=True)
class PendingAction:
    chain_id: str
    action_id: str
    trace_id: str
    action: str
    summary: str
    created_at: str = field(default_factory=utcnow_iso)
    span_id: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "chain_id": self.chain_id,
            "action_id": self.action_id,
            "trace_id": self.trace_id,
            "action": self.action,
            "summary": self.summary,
            "created_at": self.created_at,
            "span_id": self.span_id,
            "meta": dict(self.meta),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PendingAction:
        return cls(
            chain_id=str(payload.get("chain_id") or payload.get("trace_id") or ""),
            action_id=str(payload["action_id"]),
            trace_id=str(payload.get("trace_id") or ""),
            action=str(payload.get("action") or ""),
            summary=str(payload.get("summary") or ""),
            created_at=str(payload.get("created_at") or utcnow_iso()),
            span_id=payload.get("span_id"),
            meta=_as_dict(payload.get("meta")),
        )


@dataclass(slots=True)
class ActionStep:
    action_id: str
    action: str
    status: StepStatus = "pending"
    timestamp: str = field(default_factory=utcnow_iso)
    reasoning: str | None = None
    span_id: str | None = None
    terminal: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "action_id": self.action_id,
            "action": self.action,
            "status": self.status,
            "timestamp": self.timestamp,
            "reasoning": self.reasoning,
            "span_id": self.span_id,
            "terminal": self.terminal,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ActionStep:
        return cls(
            action_id=str(payload["action_id"]),
            action=str(payload.get("action") or ""),
            status=payload.get("status") or "pending",
            timestamp=str(payload.get("timestamp") or utcnow_iso()),
            reasoning=payload.get("reasoning"),
            span_id=payload.get("span_id"),
            terminal=bool(payload.get("terminal", False)),
        )


@dataclass(slots=True)
class ActionTrace:
    id: str
    summary: str
    created_at: str = field(default_factory=utcnow_iso)
    chain_id: str = ""
    root_span_id: str | None = None
    retry_count: int = 0
    steps: list[ActionStep] = field(default_factory=list)

    @property
    def status(self) -> StepStatus:
        """Status of the trace, derived from its most recent step."""
        if not self.steps:
            return "pending"
        return self.steps[-1].status

    def find_step(self, action_id: str) -> ActionStep | None:
        for step in self.steps:
            if step.action_id == action_id:
                return step
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "summary": self.summary,
            "created_at": self.created_at,
            "chain_id": self.chain_id,
            "root_span_id": self.root_span_id,
            "retry_count": self.retry_count,
            "steps": [step.to_dict() for step in self.steps],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ActionTrace:
        steps = payload.get("steps")
        return cls(
            id=str(payload["id"]),
            summary=str(payload.get("summary") or ""),
            created_at=str(payload.get("created_at") or utcnow_iso()),
            chain_id=str(payload.get("chain_id") or ""),
            root_span_id=payload.get("root_span_id"),
            retry_count=int(payload.get("retry_count") or 0),
            steps=[
                ActionStep.from_dict(item)
                for item in (steps if isinstance(steps, list) else [])
                if isinstance(item, dict) and item.get("action_id")
            ],
        )


@dataclass(slots=True)
class Span:
    id: str
    step: str
    parent_id: str | None
    status: SpanStatus = "running"
    started_at: str = field(default_factory=utcnow_iso)
    completed_at: str | None = None
    summary: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)
    version: str = RECORD_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "version": self.version,
            "step": self.step,
            "parent_id": self.parent_id,
            "status": self.status,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "summary": self.summary,
            "meta": dict(self.meta),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Span:
        return cls(
            id=str(payload["id"]),
            step=str(payload.get("step") or ""),
            parent_id=payload.get("parent_id"),
            status=payload.get("status") or "running",
            started_at=str(payload.get("started_at") or ""),
            completed_at=payload.get("completed_at"),
            summary=payload.get("summary"),
            meta=_as_dict(payload.get("meta")),
            version=str(payload.get("version") or RECORD_VERSION),
        )


@dataclass(slots=True)
class Action:
    id: str
    action: str
    span_id: str
    trace_id: str
    reasoning: str
    timestamp: str = field(default_factory=utcnow_iso)
    meta: dict[str, Any] = field(default_factory=dict)
    version: str = RECORD_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "version": self.version,
            "action": self.action,
            "timestamp": self.timestamp,
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "meta": dict(self.meta),
            "reasoning": self.reasoning,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Action:
        return cls(
            id=str(payload["id"]),
            action=str(payload.get("action") or ""),
            span_id=str(payload.get("span_id") or ""),
            trace_id=str(payload.get("trace_id") or ""),
            reasoning=str(payload.get("reasoning") or ""),
            timestamp=str(payload.get("timestamp") or ""),
            meta=_as_dict(payload.get("meta")),
            version=str(payload.get("version") or RECORD_VERSION),
        )


@dataclass(slots=True)
class TaskMapping:
    task_id: int
    branch_name: str
    trace_id: str | None = None
    workflow_span_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "branch_name": self.branch_name,
            "trace_id": self.trace_id,
            "workflow_span_id": self.workflow_span_id,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TaskMapping:
        return cls(
            task_id=int(payload["task_id"]),
            branch_name=str(payload["branch_name"]),
            trace_id=payload.get("trace_id"),
            workflow_span_id=payload.get("workflow_span_id"),
        )


@dataclass(slots=True)
class LogEntry:
    chain_id: str
    trace_id: str
    span_id: str | None
    action_id: str
    step: str
    action: str
    summary: str
    ts: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ts": self.ts,
            "chain_id": self.chain_id,
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "action_id": self.action_id,
            "step": self.step,
            "action": self.action,
            "summary": self.summary,
        }


@dataclass(slots=True)
class EnqueuedAction:
    """A follow-up action a step asks the orchestrator to queue."""

    action_id: str
    action_type: str
    summary: str
    span_id: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)
    trace_id: str | None = None

    def to_pending(self, *, chain_id: str, trace_id: str) -> PendingAction:
        return PendingAction(
            chain_id=chain_id,
            action_id=self.action_id,
            trace_id=self.trace_id or trace_id,
            action=self.action_type,
            summary=self.summary,
            span_id=self.span_id,
            meta=dict(self.meta),
        )
