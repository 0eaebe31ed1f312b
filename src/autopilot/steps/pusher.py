from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from autopilot.audit import ActionWriter
from autopilot.git import Git
from autopilot.github import PullRequestInfo
from autopilot.models import COMMIT, NOTIFY, PUSH, WORKFLOW, ActionStep, PendingAction
from autopilot.state.store import AutopilotStore
from autopilot.steps.base import (
    COLLABORATOR_ERRORS,
    Step,
    StepContext,
    StepDependencies,
    StepResult,
)

PUSH_TOOLS = ["Bash"]
EVENT_SOURCE_KEYS = ("type", "issue_number", "pr_number")


@dataclass(slots=True, frozen=True)
class BranchInfo:
    task_id: int
    branch_name: str


def collect_branches(
    steps: list[ActionStep], store: AutopilotStore, source_action_id: str | None = None
) -> list[BranchInfo]:
    """Distinct task branches touched by the trace, in step order."""
    seen: set[str] = set()
    branches: list[BranchInfo] = []
    for step in steps:
        if step.action not in (WORKFLOW, COMMIT):
            continue
        mapping = store.get_task_mapping(step.action_id)
        if mapping is None or mapping.branch_name in seen:
            continue
        seen.add(mapping.branch_name)
        branches.append(BranchInfo(mapping.task_id, mapping.branch_name))
    if not branches and source_action_id:
        mapping = store.get_task_mapping(source_action_id)
        if mapping is not None:
            branches.append(BranchInfo(mapping.task_id, mapping.branch_name))
    return branches


def build_push_message(
    *,
    branches: list[BranchInfo],
    owner: str | None,
    repo: str | None,
    main_branch: str,
    trace_summary: str,
    existing_pr: PullRequestInfo | None,
    event_meta: dict[str, Any],
) -> str:
    message = (
        f"## Push Context\n\n**Repository**: {owner}/{repo}\n"
        f"**Main branch**: {main_branch}\n\n## Branches to Push\n\n"
    )
    message += "".join(
        f"- **{branch.branch_name}** (task #{branch.task_id})\n" for branch in branches
    )
    message += f"\n## Trace Summary\n\n{trace_summary}\n\n"
    if existing_pr is not None:
        message += (
            "## Existing Pull Request\n\nA PR already exists for the primary branch:\n"
            f"- **URL**: {existing_pr.url}\n"
            f"- **Number**: #{existing_pr.number}\n"
            f"- **State**: {existing_pr.state}\n\n"
        )
    else:
        message += "## Pull Request\n\nNo existing PR found. Please create one after pushing.\n\n"
    if event_meta:
        message += "## Event Source\n\n"
        if event_meta.get("type"):
            message += f"- **Event type**: {event_meta['type']}\n"
        if event_meta.get("issue_number"):
            message += f"- **Issue**: #{event_meta['issue_number']}\n"
        if event_meta.get("pr_number"):
            message += f"- **PR**: #{event_meta['pr_number']}\n"
        message += "\n"
    return message


class PusherStep(Step):
    action_type = PUSH
    default_max_parallel = 2
    dedup_by = "trace_id"
    dependencies = StepDependencies(needs_project_manager=True, needs_owner_repo=True)
    prompt_file = "pusher.md"
    fallback_prompt = """
Push the listed branches and make sure a pull request exists for the primary branch.
Respond with JSON: {"status", "branches_pushed", "pull_request": {"url"}, "summary", "error"}.
""".strip()

    async def process(self, pending: PendingAction, ctx: StepContext) -> StepResult:
        meta = pending.meta
        branches = collect_branches(ctx.trace.steps, ctx.store, meta.get("source_action_id"))
        if not branches:
            span = self.open_span(ctx, pending, {"error": "no branches found"})
            span.fail("push: no branches found to push")
            return StepResult(
                span_id=span.id,
                terminal=True,
                reasoning="no branches found to push",
                status="failed",
            )

        spans = ctx.store.get_span_trace(pending.span_id) if pending.span_id else []
        root_meta = spans[0].meta if spans else {}
        event_meta = {key: root_meta[key] for key in EVENT_SOURCE_KEYS if root_meta.get(key)}
        primary = branches[0]

        span = self.open_span(
            ctx, pending, {"branches": [branch.branch_name for branch in branches]}
        )
        try:
            git = ctx.git or Git(ctx.project_path)
            main_branch = git.main_branch()
            existing_pr = None
            if ctx.github is not None and ctx.owner and ctx.repo:
                existing_pr = await ctx.github.find_pull_request(
                    ctx.owner, ctx.repo, primary.branch_name
                )
            first_task = ctx.project.get_task(primary.task_id) if ctx.project else None
            cwd = (
                Path(first_task.worktree_path)
                if first_task and first_task.worktree_path
                else ctx.project_path
            )
            tool = self.require_tool(ctx)
            result = await tool.invoke_json(
                build_push_message(
                    branches=branches,
                    owner=ctx.owner,
                    repo=ctx.repo,
                    main_branch=main_branch,
                    trace_summary=ctx.trace.summary,
                    existing_pr=existing_pr,
                    event_meta=event_meta,
                ),
                cwd=cwd,
                system_prompt=self.system_prompt,
                tools=PUSH_TOOLS,
            )
        except COLLABORATOR_ERRORS as exc:
            return self.failed(span, str(exc))

        pushed = result.get("status") == "pushed"
        branches_pushed = [str(name) for name in result.get("branches_pushed") or []]
        pull_request = result.get("pull_request")
        pr_url = pull_request.get("url") if isinstance(pull_request, dict) else None
        if not pr_url and pushed and existing_pr is not None:
            pr_url = existing_pr.url
        error = result.get("error") or (None if pushed else "unknown error")
        span_meta: dict[str, Any] = {
            "pushed": pushed,
            "branches_pushed": branches_pushed,
            "pull_request": pull_request if isinstance(pull_request, dict) else None,
            "existing_pr": existing_pr.to_dict() if existing_pr else None,
            "agent_summary": result.get("summary"),
        }
        if error:
            span_meta["error"] = error

        if pushed:
            pr_suffix = f" (PR: {pr_url})" if pr_url else ""
            span.complete(f"push: {', '.join(branches_pushed)}{pr_suffix}", span_meta)
            reasoning = f"pushed {', '.join(branches_pushed)}"
            if pr_url:
                reasoning += f", PR: {pr_url}"
        else:
            span.error(f"push: failed: {error}", span_meta)
            reasoning = f"push failed: {error}"

        writer = ActionWriter(
            ctx.store,
            NOTIFY,
            span.id,
            pending.trace_id,
            f"Push completed: {result.get('summary')}" if pushed else f"Push failed: {error}",
            {
                **meta,
                "pushed": pushed,
                "branches_pushed": branches_pushed,
                "pull_request_url": pr_url,
            },
        )
        summary = f"done: {ctx.trace.summary}" if pushed else f"push failed: {ctx.trace.summary}"
        return StepResult(
            span_id=span.id,
            terminal=False,
            enqueued_actions=[writer.enqueue(summary)],
            reasoning=reasoning,
            status="completed" if pushed else "error",
        )
