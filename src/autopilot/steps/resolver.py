from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal

from autopilot.audit import ActionWriter
from autopilot.models import (
    COMMIT,
    PUSH,
    RESOLVE,
    WORKFLOW,
    ActionStep,
    ActionTrace,
    LogEntry,
    PendingAction,
)
from autopilot.state.store import AutopilotStore
from autopilot.steps.base import (
    COLLABORATOR_ERRORS,
    Step,
    StepContext,
    StepDependencies,
    StepResult,
    StepUpdate,
    json_block,
)

logger = logging.getLogger(__name__)

Decision = Literal["wait", "push", "iterate", "fail"]

# Steps that belong to the resolution phase rather than to the work itself.
RESOLUTION_ACTIONS = frozenset({COMMIT, RESOLVE, PUSH})
ACTIVE_STEP_STATUSES = frozenset({"pending", "running"})


@dataclass(slots=True)
class ResolverDecision:
    decision: Decision
    reason: str
    instructions: str | None = None


def _task_id(store: AutopilotStore, action_id: str) -> int | None:
    mapping = store.get_task_mapping(action_id)
    return mapping.task_id if mapping else None


def outstanding_failures(trace: ActionTrace, store: AutopilotStore) -> list[ActionStep]:
    """Failed work steps not superseded by a later successful retry of the same task."""
    failures: list[ActionStep] = []
    for index, step in enumerate(trace.steps):
        if step.status != "failed" or step.action in (RESOLVE, PUSH):
            continue
        task_id = _task_id(store, step.action_id)
        superseded = task_id is not None and any(
            later.action == step.action
            and later.status == "completed"
            and _task_id(store, later.action_id) == task_id
            for later in trace.steps[index + 1 :]
        )
        if not superseded:
            failures.append(step)
    return failures


def quick_decision(
    trace: ActionTrace, store: AutopilotStore, max_retries: int
) -> ResolverDecision | None:
    steps = trace.steps
    if any(
        step.action not in RESOLUTION_ACTIONS and step.status in ACTIVE_STEP_STATUSES
        for step in steps
    ):
        return ResolverDecision("wait", "workflow steps still running or pending")
    if any(step.action == COMMIT and step.status in ACTIVE_STEP_STATUSES for step in steps):
        return ResolverDecision("wait", "commit steps still active")
    if any(step.action == PUSH and step.status != "failed" for step in steps):
        return ResolverDecision("wait", "push already scheduled")

    failures = outstanding_failures(trace, store)
    committed = any(step.action == COMMIT and step.status == "completed" for step in steps)
    if committed and not failures:
        return ResolverDecision("push", "all commits completed")
    if failures and trace.retry_count >= max_retries:
        return ResolverDecision("fail", f"max retries ({max_retries}) exceeded")
    return None


class ResolverStep(Step):
    action_type = RESOLVE
    default_max_parallel = 3
    dedup_by = "trace_id"
    dependencies = StepDependencies(needs_project_manager=True)
    prompt_file = "resolver.md"
    fallback_prompt = """
Decide whether a failed task should be retried.
Respond with JSON: {"decision": "iterate" | "fail", "reasoning", "instructions"}.
""".strip()

    def _log_decision(
        self,
        ctx: StepContext,
        pending: PendingAction,
        span_id: str | None,
        action: str,
        summary: str,
    ) -> None:
        ctx.store.append_log(
            LogEntry(
                chain_id=pending.chain_id,
                trace_id=pending.trace_id,
                span_id=span_id,
                action_id=pending.action_id,
                step=RESOLVE,
                action=action,
                summary=f"trace: {ctx.trace.summary}: {summary}",
            )
        )

    def _failure_details(
        self, ctx: StepContext, pending: PendingAction, failures: list[ActionStep]
    ) -> list[dict[str, Any]]:
        details: list[dict[str, Any]] = []
        for step in failures:
            detail: dict[str, Any] = {
                "action": step.action,
                "reasoning": step.reasoning or "unknown error",
            }
            mapping = ctx.store.get_task_mapping(step.action_id)
            task = ctx.project.get_task(mapping.task_id) if mapping else None
            if task is not None:
                detail.update(
                    task_title=task.title,
                    task_description=task.description,
                    task_status=task.status,
                    error=task.error,
                )
            if "committed" in pending.meta:
                detail["committed"] = pending.meta["committed"]
            details.append(detail)
        return details

    async def _ask(self, ctx: StepContext, pending: PendingAction) -> ResolverDecision:
        trace = ctx.trace
        spans = ctx.store.get_span_trace(pending.span_id) if pending.span_id else []
        payload = {
            "trace_summary": trace.summary,
            "retry_count": trace.retry_count,
            "max_retries": ctx.config.workflow.max_retries,
            "steps": [
                {"action": step.action, "status": step.status, "reasoning": step.reasoning}
                for step in trace.steps
            ],
            "failed_steps": self._failure_details(
                ctx, pending, outstanding_failures(trace, ctx.store)
            ),
            "spans": [
                {"id": span.id, "step": span.step, "summary": span.summary, "meta": span.meta}
                for span in spans
            ],
        }
        tool = self.require_tool(ctx)
        result = await tool.invoke_json(
            json_block(payload), cwd=ctx.project_path, system_prompt=self.system_prompt
        )
        decision = result.get("decision")
        instructions = result.get("instructions") or result.get("iterate_instructions")
        if decision == "fail":
            return ResolverDecision(
                "fail", str(result.get("fail_reason") or result.get("reasoning") or "")
            )
        if decision != "iterate":
            return ResolverDecision(
                "iterate",
                f"unexpected decision {decision!r}, defaulting to iterate",
                instructions or "Retry the task, addressing any previous errors.",
            )
        return ResolverDecision(
            "iterate",
            str(result.get("reasoning") or ""),
            instructions or "Retry the task, addressing the errors from the previous attempt.",
        )

    def _push(self, ctx: StepContext, pending: PendingAction, reason: str) -> StepResult:
        span = self.open_span(ctx, pending, {"decision": "push", "reason": reason})
        span.complete(f"resolve: trace ready to push: {ctx.trace.summary}")
        writer = ActionWriter(
            ctx.store,
            PUSH,
            span.id,
            pending.trace_id,
            f"Push trace: {ctx.trace.summary}",
            {**pending.meta, "decision": "push"},
        )
        return StepResult(
            span_id=span.id,
            terminal=False,
            enqueued_actions=[writer.enqueue(f"push: {ctx.trace.summary}")],
            reasoning=f"push: {reason}",
        )

    def _fail(self, ctx: StepContext, pending: PendingAction, reason: str) -> StepResult:
        span = self.open_span(ctx, pending, {"decision": "fail", "reason": reason})
        span.fail(f"resolve: trace failed: {ctx.trace.summary}")
        self._log_decision(ctx, pending, span.id, "fail", f"failed: {reason}")
        return StepResult(
            span_id=span.id,
            terminal=True,
            reasoning=f"fail: {reason}",
            status="failed",
            step_updates=[
                StepUpdate(step.action_id, "failed", f"trace failed: {reason}")
                for step in ctx.trace.steps
                if step.status == "pending"
            ],
        )

    def _iterate(
        self, ctx: StepContext, pending: PendingAction, decision: ResolverDecision
    ) -> StepResult:
        trace = ctx.trace
        failures = outstanding_failures(trace, ctx.store)
        failed = next((step for step in failures if step.action == WORKFLOW), None) or next(
            (step for step in failures if step.action == COMMIT), None
        )
        mapping = ctx.store.get_task_mapping(failed.action_id) if failed else None
        if mapping is None:
            return self._fail(ctx, pending, "no task mapping for failed step")
        task = ctx.project.get_task(mapping.task_id)
        if task is None:
            return self._fail(ctx, pending, f"task #{mapping.task_id} not found")

        error_context = failed.reasoning or "unknown error"
        description = decision.instructions or (
            f"Previous attempt failed: {error_context}\n\n"
            "Please retry the task, addressing the failure."
        )
        ctx.project.start_iteration(
            task, f"Retry: {task.title}", description, previous_summary=error_context
        )
        trace.retry_count += 1

        span = self.open_span(
            ctx,
            pending,
            {
                "decision": "iterate",
                "reason": decision.reason,
                "task_id": task.id,
                "iteration": task.iterations,
                "retry_count": trace.retry_count,
            },
        )
        span.complete(f"resolve: iterating task #{task.id}: {decision.reason}")
        context = pending.meta.get("context")
        if not isinstance(context, dict):
            context = {}
        writer = ActionWriter(
            ctx.store,
            WORKFLOW,
            span.id,
            pending.trace_id,
            f"{task.workflow}: {task.title} (retry #{trace.retry_count})",
            {
                "workflow": task.workflow,
                "title": task.title,
                "description": description,
                "acceptance_criteria": pending.meta.get("acceptance_criteria") or [],
                "context": {
                    "files": context.get("files") or [],
                    "references": context.get("references") or [],
                    "depends_on": None,
                },
                "retry_task_id": task.id,
            },
        )
        return StepResult(
            span_id=span.id,
            terminal=False,
            enqueued_actions=[writer.enqueue(f"{task.workflow}: {task.title}")],
            reasoning=f"iterate: {decision.reason}",
        )

    async def process(self, pending: PendingAction, ctx: StepContext) -> StepResult:
        commit_error = pending.meta.get("commit_error")
        if commit_error:
            span = self.open_span(
                ctx,
                pending,
                {
                    "decision": "noop",
                    "reason": f"git commit failed: {commit_error}",
                    "commit_error": commit_error,
                },
            )
            span.fail(f"resolve: commit error on trace: {ctx.trace.summary}")
            self._log_decision(ctx, pending, span.id, "noop", f"commit failed: {commit_error}")
            return StepResult(
                span_id=span.id,
                terminal=True,
                reasoning=f"fail: git commit failed: {commit_error}",
                status="failed",
            )

        decision = quick_decision(ctx.trace, ctx.store, ctx.config.workflow.max_retries)
        if decision is None:
            try:
                decision = await self._ask(ctx, pending)
            except COLLABORATOR_ERRORS as exc:
                span = self.open_span(ctx, pending, {"decision": "error"})
                return self.failed(span, str(exc))

        logger.debug("Resolver decided %s for trace %s", decision.decision, pending.trace_id)
        if decision.decision == "wait":
            self._log_decision(ctx, pending, pending.span_id, "wait", f"wait: {decision.reason}")
            return StepResult(
                span_id=pending.span_id,
                terminal=True,
                reasoning=f"wait: {decision.reason}",
            )
        if decision.decision == "push":
            return self._push(ctx, pending, decision.reason)
        if decision.decision == "fail":
            return self._fail(ctx, pending, decision.reason)
        try:
            return self._iterate(ctx, pending, decision)
        except COLLABORATOR_ERRORS as exc:
            span = self.open_span(ctx, pending, {"decision": "iterate"})
            return self.failed(span, str(exc))
