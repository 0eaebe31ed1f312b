from __future__ import annotations

import logging
from typing import Any

from autopilot.audit import ActionWriter, SpanFinalizedError, SpanWriter, finalize_span
from autopilot.git import Git, generate_branch_name
from autopilot.models import COMMIT, WORKFLOW, ActionStep, PendingAction, TaskMapping
from autopilot.project import ACTIVE_STATUSES, FINISHED_STATUSES, ProjectError, Task
from autopilot.steps.base import (
    COLLABORATOR_ERRORS,
    MonitorContext,
    Step,
    StepContext,
    StepDependencies,
    StepResult,
    StepUpdate,
    TraceMutations,
    TraceUpdate,
)

logger = logging.getLogger(__name__)


class WorkflowStep(Step):
    """Runs one planned task in its own worktree.

    ``process`` only starts the task and leaves the trace step ``running``;
    ``monitor`` finishes the step and queues ``commit`` once the task is done.
    """

    action_type = WORKFLOW
    default_max_parallel = 3
    dependencies = StepDependencies(needs_project_manager=True)

    def _dependency_state(self, pending: PendingAction, ctx: StepContext) -> str | None:
        """Return ``wait``, ``failed`` or the dependency's branch once it completed."""
        depends_on = pending.meta.get("depends_on_action_id")
        if not depends_on:
            return None
        mapping = ctx.store.get_task_mapping(str(depends_on))
        if mapping is None:
            return "wait"
        task = ctx.project.get_task(mapping.task_id)
        if task is None:
            return "wait"
        if task.status == "FAILED":
            return "failed"
        if task.status != "COMPLETED":
            return "wait"
        return mapping.branch_name

    def _running_count(self, ctx: StepContext, exclude: int | None) -> int:
        return sum(
            1
            for task in ctx.project.list_tasks()
            if task.status in ACTIVE_STATUSES and task.id != exclude
        )

    def _start_task(
        self, pending: PendingAction, ctx: StepContext, base_branch: str | None
    ) -> Task:
        project = ctx.project
        meta = pending.meta
        git = ctx.git or Git(ctx.project_path)
        base = base_branch or git.current_branch()
        task = project.create_task(
            str(meta.get("title") or pending.summary),
            str(meta.get("description") or pending.summary),
            workflow=str(meta.get("workflow") or "swe"),
            source_branch=base,
        )
        worktree = project.workspace_path(task.id)
        branch = generate_branch_name(task.id, ctx.config.workflow.branch_prefix)
        git.create_worktree(worktree, branch, base)
        task.branch_name = branch
        task.worktree_path = str(worktree)
        task.base_commit = git.commit_hash("HEAD", cwd=worktree)
        project.start_iteration(task, task.title, task.description)
        return task

    async def process(self, pending: PendingAction, ctx: StepContext) -> StepResult:
        project = ctx.project
        retry_task_id = pending.meta.get("retry_task_id")
        exclude = int(retry_task_id) if retry_task_id is not None else None
        if self._running_count(ctx, exclude) >= ctx.config.workflow.max_running_tasks:
            return self.wait()

        dependency = self._dependency_state(pending, ctx)
        if dependency == "wait":
            return self.wait()
        if dependency == "failed":
            span = self.open_span(ctx, pending, {"title": pending.meta.get("title")})
            return self.failed(span, "dependency failed")

        try:
            if exclude is not None:
                task = project.get_task(exclude)
                if task is None or not task.branch_name:
                    raise ProjectError(f"Task #{exclude} cannot be retried")
            else:
                task = self._start_task(pending, ctx, dependency)
        except COLLABORATOR_ERRORS as exc:
            span = self.open_span(ctx, pending, {"title": pending.meta.get("title")})
            return self.failed(span, str(exc))

        span = self.open_span(
            ctx,
            pending,
            {
                "task_id": task.id,
                "branch_name": task.branch_name,
                "worktree_path": task.worktree_path,
                "workflow": task.workflow,
                "title": task.title,
                "base_branch": task.source_branch,
                "iteration": task.iterations,
            },
        )
        ctx.store.set_task_mapping(
            pending.action_id,
            TaskMapping(
                task_id=task.id,
                branch_name=task.branch_name,
                trace_id=pending.trace_id,
                workflow_span_id=span.id,
            ),
        )
        if not project.launch(task):
            logger.info("Task #%s waits for an external runner", task.id)
        return StepResult(
            span_id=span.id,
            terminal=False,
            reasoning=f"task #{task.id} on {task.branch_name}",
            status="running",
        )

    def _commit_action(
        self, ctx: MonitorContext, action_id: str, mapping: TaskMapping, task: Task
    ) -> PendingAction:
        trace = ctx.traces[mapping.trace_id]
        meta: dict[str, Any] = {
            "task_id": task.id,
            "workflow": task.workflow,
            "title": task.title,
            "branch_name": mapping.branch_name,
            "source_action_id": action_id,
            "task_status": task.status,
        }
        span = SpanWriter(ctx.store, COMMIT, mapping.workflow_span_id, meta)
        span.complete(f"commit: {task.title}")
        writer = ActionWriter(
            ctx.store,
            COMMIT,
            span.id,
            mapping.trace_id,
            f"Commit task #{task.id}: {task.title}",
            meta,
        )
        ctx.store.set_task_mapping(
            writer.id,
            TaskMapping(task_id=task.id, branch_name=mapping.branch_name, trace_id=trace.id),
        )
        return writer.enqueue(f"commit: {task.title}").to_pending(
            chain_id=trace.chain_id, trace_id=trace.id
        )

    def monitor(self, ctx: MonitorContext) -> TraceMutations | None:
        project = ctx.project
        if project is None:
            return None
        mutations = TraceMutations()
        for action_id, mapping in ctx.store.get_all_task_mappings().items():
            if not mapping.trace_id or not mapping.workflow_span_id:
                continue
            trace = ctx.traces.get(mapping.trace_id)
            step = trace.find_step(action_id) if trace else None
            if step is None or step.action != WORKFLOW or step.status != "running":
                continue
            task = project.get_task(mapping.task_id)
            if task is None:
                continue
            status = project.refresh_status(task)
            if (
                status in ACTIVE_STATUSES
                and project.runner is not None
                and not project.is_running(task.id)
            ):
                logger.warning("Task #%s has no live runner; marking it failed", task.id)
                project.mark_interrupted(task)
                status = task.status
            if status not in FINISHED_STATUSES:
                continue

            if status == "COMPLETED":
                reasoning = f"task #{task.id} on {mapping.branch_name}"
                summary = f"workflow: task #{task.id} completed on {mapping.branch_name}"
                extra: dict[str, Any] = {}
            else:
                reasoning = task.error or "unknown error"
                summary = f"workflow: task #{task.id} failed: {reasoning}"
                extra = {"error": reasoning}
            try:
                finalize_span(
                    ctx.store,
                    mapping.workflow_span_id,
                    "completed" if status == "COMPLETED" else "failed",
                    summary,
                    extra,
                )
            except SpanFinalizedError:
                logger.warning("Workflow span %s was already finalized", mapping.workflow_span_id)

            commit = self._commit_action(ctx, action_id, mapping, task)
            mutations.enqueued.append(commit)
            mutations.updates.append(
                TraceUpdate(
                    trace_id=mapping.trace_id,
                    step_updates=[
                        StepUpdate(
                            action_id=action_id,
                            status="completed" if status == "COMPLETED" else "failed",
                            reasoning=reasoning,
                        )
                    ],
                    new_steps=[
                        ActionStep(
                            action_id=commit.action_id,
                            action=COMMIT,
                            reasoning=task.title
                            if status == "COMPLETED"
                            else f"{task.title} (failed: {reasoning})",
                            span_id=commit.span_id,
                        )
                    ],
                )
            )
        return mutations if mutations.updates else None
