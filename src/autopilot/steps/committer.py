from __future__ import annotations

from pathlib import Path
from typing import Any

from autopilot.audit import ActionWriter
from autopilot.git import Git
from autopilot.models import COMMIT, RESOLVE, EnqueuedAction, PendingAction
from autopilot.project import ProjectError
from autopilot.steps.base import (
    COLLABORATOR_ERRORS,
    Step,
    StepContext,
    StepDependencies,
    StepResult,
)

ATTRIBUTION_TRAILER = "Co-Authored-By: Autopilot <autopilot@users.noreply.github.com>"
COMMIT_TOOLS = ["Bash"]
COMMIT_STATUSES = frozenset({"committed", "no_changes", "failed"})


def build_commit_message(
    title: str,
    description: str,
    branch_name: str,
    summaries: list[str],
    recent_commits: list[str],
    *,
    attribution: bool,
) -> str:
    message = (
        f"## Task\n\n**Title**: {title}\n\n**Description**: {description}\n\n"
        f"**Branch**: {branch_name}\n\n"
    )
    if attribution:
        message += (
            "**Attribution**: Append the following trailer to the commit message "
            f"(after a blank line):\n`{ATTRIBUTION_TRAILER}`\n\n"
        )
    if summaries:
        message += "## Iteration Summaries\n\n"
        message += "".join(f"- {summary}\n" for summary in summaries) + "\n"
    if recent_commits:
        message += "## Recent Commits (for style reference)\n\n"
        message += "".join(f"- {commit}\n" for commit in recent_commits) + "\n"
    return message


class CommitterStep(Step):
    action_type = COMMIT
    default_max_parallel = 3
    dependencies = StepDependencies(needs_project_manager=True)
    prompt_file = "committer.md"
    fallback_prompt = """
Commit the finished work in this worktree with a concise message.
Respond with JSON: {"status", "commit_sha", "commit_message", "recovery_actions_taken",
"summary", "error"}.
""".strip()

    def _resolve(
        self,
        ctx: StepContext,
        pending: PendingAction,
        span_id: str,
        reasoning: str,
        meta: dict[str, Any],
    ) -> list[EnqueuedAction]:
        writer = ActionWriter(ctx.store, RESOLVE, span_id, pending.trace_id, reasoning, meta)
        return [writer.enqueue(f"resolve: {pending.meta.get('title')}")]

    async def process(self, pending: PendingAction, ctx: StepContext) -> StepResult:
        meta = pending.meta
        title = meta.get("title")
        source_action_id = str(meta.get("source_action_id") or "")
        mapping = ctx.store.get_task_mapping(source_action_id) if source_action_id else None
        task = ctx.project.get_task(mapping.task_id) if mapping else None
        if mapping is None or task is None:
            span = self.open_span(ctx, pending, {"source_action_id": source_action_id})
            return self.failed(span, f"no task found for source action {source_action_id}")

        if meta.get("task_status") == "FAILED" or task.status == "FAILED":
            span = self.open_span(
                ctx,
                pending,
                {
                    "task_id": task.id,
                    "branch_name": mapping.branch_name,
                    "committed": False,
                    "commit_sha": None,
                    "task_status": "FAILED",
                    "error": task.error or "unknown error",
                },
            )
            span.fail(f"commit: task #{task.id} failed, skipping commit")
            return StepResult(
                span_id=span.id,
                terminal=False,
                enqueued_actions=self._resolve(
                    ctx,
                    pending,
                    span.id,
                    f"Resolve task #{task.id}: {title} (failed)",
                    {**meta, "committed": False, "task_status": "FAILED"},
                ),
                reasoning=f"task #{task.id} failed, skipping commit",
                status="failed",
            )

        span = self.open_span(
            ctx, pending, {"task_id": task.id, "branch_name": mapping.branch_name}
        )
        try:
            if not task.worktree_path:
                raise ProjectError(f"Task #{task.id} has no worktree")
            worktree = Path(task.worktree_path)
            git = ctx.git or Git(ctx.project_path)
            tool = self.require_tool(ctx)
            result = await tool.invoke_json(
                build_commit_message(
                    task.title,
                    task.description,
                    mapping.branch_name,
                    ctx.project.iteration_summaries(task),
                    git.recent_commits(cwd=worktree),
                    attribution=ctx.config.workflow.attribution,
                ),
                cwd=worktree,
                system_prompt=self.system_prompt,
                tools=COMMIT_TOOLS,
            )
        except COLLABORATOR_ERRORS as exc:
            return self.failed(span, str(exc))

        status = result.get("status") if result.get("status") in COMMIT_STATUSES else "failed"
        error = result.get("error") or (None if status != "failed" else "unknown error")
        committed = status == "committed"
        span_meta: dict[str, Any] = {
            "committed": committed,
            "commit_sha": result.get("commit_sha"),
            "task_status": "COMPLETED",
            "commit_message": result.get("commit_message"),
            "recovery_actions": result.get("recovery_actions_taken") or [],
            "agent_summary": result.get("summary"),
        }
        if error:
            span_meta["error"] = error

        resolve_meta = {**meta, "committed": committed, "task_status": "COMPLETED"}
        if status == "failed":
            span.error(f"commit: task #{task.id}: commit failed: {error}", span_meta)
            resolve_meta["commit_error"] = error
            reasoning = f"task #{task.id} commit failed: {error}"
            resolve_reason = f"Resolve task #{task.id}: {title} (commit failed: {error})"
        else:
            label = "committed" if committed else "no changes"
            span.complete(f"commit: task #{task.id}: {label}", span_meta)
            reasoning = (
                f"task #{task.id} committed on {mapping.branch_name}"
                if committed
                else f"task #{task.id} no changes"
            )
            resolve_reason = f"Resolve task #{task.id}: {title} ({label})"

        return StepResult(
            span_id=span.id,
            terminal=False,
            enqueued_actions=self._resolve(ctx, pending, span.id, resolve_reason, resolve_meta),
            reasoning=reasoning,
            status="error" if status == "failed" else "completed",
        )
