from __future__ import annotations

import inspect
import json
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

from autopilot.audit import SpanWriter
from autopilot.backends.base import BackendExecutionError
from autopilot.git import GitCommandError
from autopilot.github import GitHubError
from autopilot.models import (
    ActionStep,
    ActionTrace,
    EnqueuedAction,
    PendingAction,
    Span,
    StepStatus,
)
from autopilot.project import ProjectError
from autopilot.reasoning import ReasoningOutputError, load_prompt

if TYPE_CHECKING:
    from autopilot.config import AutopilotConfig
    from autopilot.git import Git
    from autopilot.github import GitHubClient
    from autopilot.project import ProjectManager
    from autopilot.reasoning import ReasoningTool
    from autopilot.state.store import AutopilotStore

ResultStatus = Literal["completed", "failed", "error", "running", "pending"]
DedupBy = Literal["trace_id", "chain_id"] | Callable[[PendingAction], str] | None

# Failures of external collaborators that a step converts into a failed result.
COLLABORATOR_ERRORS = (
    BackendExecutionError,
    ReasoningOutputError,
    GitCommandError,
    GitHubError,
    ProjectError,
)


@dataclass(slots=True, frozen=True)
class StepConfig:
    action_type: str
    max_parallel: int = 1
    dedup_by: DedupBy = None

    def dedup_key(self, pending: PendingAction) -> str | None:
        if self.dedup_by is None:
            return None
        if self.dedup_by == "trace_id":
            return pending.trace_id
        if self.dedup_by == "chain_id":
            return pending.chain_id
        return str(self.dedup_by(pending))


@dataclass(slots=True, frozen=True)
class StepDependencies:
    needs_owner_repo: bool = False
    needs_project_manager: bool = False


@dataclass(slots=True)
class StepContext:
    """Collaborators handed to ``Step.process``.

    ``trace`` is the orchestrator's live trace object; a step may adjust
    trace-level fields such as ``retry_count`` and the orchestrator persists them.
    """

    store: AutopilotStore
    project_id: str
    project_path: Path
    trace: ActionTrace
    config: AutopilotConfig
    tool: ReasoningTool | None = None
    git: Git | None = None
    github: GitHubClient | None = None
    owner: str | None = None
    repo: str | None = None
    project: ProjectManager | None = None
    verbose: bool = False


@dataclass(slots=True)
class MonitorContext:
    store: AutopilotStore
    project_path: Path
    traces: dict[str, ActionTrace]
    config: AutopilotConfig
    owner: str | None = None
    repo: str | None = None
    project: ProjectManager | None = None
    verbose: bool = False


@dataclass(slots=True)
class StepUpdate:
    action_id: str
    status: StepStatus
    reasoning: str | None = None


@dataclass(slots=True)
class StepResult:
    span_id: str | None
    terminal: bool
    enqueued_actions: list[EnqueuedAction] = field(default_factory=list)
    reasoning: str = ""
    status: ResultStatus = "completed"
    step_updates: list[StepUpdate] = field(default_factory=list)


@dataclass(slots=True)
class TraceUpdate:
    trace_id: str
    step_updates: list[StepUpdate] = field(default_factory=list)
    new_steps: list[ActionStep] = field(default_factory=list)


@dataclass(slots=True)
class TraceMutations:
    """Changes produced by a monitor pass, applied by the orchestrator."""

    updates: list[TraceUpdate] = field(default_factory=list)
    enqueued: list[PendingAction] = field(default_factory=list)


def json_block(payload: Any) -> str:
    return "```json\n" + json.dumps(payload, ensure_ascii=False, indent=2, default=str) + "\n```"


def render_spans(spans: list[Span]) -> str:
    sections: list[str] = []
    for span in spans:
        sections.append(
            f"### Span: {span.step} ({span.id})\n\n"
            f"- **status**: {span.status}\n"
            f"- **started_at**: {span.started_at}\n"
            f"- **summary**: {span.summary}\n"
            f"- **parent**: {span.parent_id or 'null'}\n\n"
            f"{json_block(span.meta)}\n"
        )
    return "\n".join(sections)


class Step(ABC):
    action_type: str = ""
    default_max_parallel: int = 1
    dedup_by: DedupBy = None
    dependencies: StepDependencies = StepDependencies()
    prompt_file: str | None = None
    fallback_prompt: str = "You are a repository automation assistant. Respond in JSON."

    def __init__(self, *, max_parallel: int | None = None, dedup_by: DedupBy = None) -> None:
        if dedup_by is None:
            # A key extractor declared on the class must not be bound to the step.
            dedup_by = inspect.getattr_static(self, "dedup_by")
            if isinstance(dedup_by, staticmethod):
                dedup_by = dedup_by.__func__
        self.config = StepConfig(
            action_type=self.action_type,
            max_parallel=max(1, max_parallel or self.default_max_parallel),
            dedup_by=dedup_by,
        )
        self.system_prompt = load_prompt(self.prompt_file, self.fallback_prompt)

    @abstractmethod
    async def process(self, pending: PendingAction, ctx: StepContext) -> StepResult:
        """Handle one pending action and return its outcome."""

    def monitor(self, ctx: MonitorContext) -> TraceMutations | None:
        return None

    def open_span(
        self,
        ctx: StepContext,
        pending: PendingAction,
        meta: dict[str, Any] | None = None,
    ) -> SpanWriter:
        return SpanWriter(ctx.store, self.action_type, pending.span_id, meta)

    def failed(
        self,
        span: SpanWriter,
        reason: str,
        *,
        as_error: bool = False,
        extra_meta: dict[str, Any] | None = None,
    ) -> StepResult:
        summary = f"{self.action_type}: {reason}"
        if as_error:
            span.error(summary, extra_meta)
        else:
            span.fail(summary, extra_meta)
        return StepResult(span_id=span.id, terminal=True, reasoning=reason, status="failed")

    @staticmethod
    def wait() -> StepResult:
        return StepResult(span_id=None, terminal=False, status="pending")

    @staticmethod
    def require_tool(ctx: StepContext) -> ReasoningTool:
        if ctx.tool is None:
            raise BackendExecutionError("no reasoning tool configured", retriable=False)
        return ctx.tool
