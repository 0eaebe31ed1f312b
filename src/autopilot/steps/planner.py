from __future__ import annotations

from typing import Any

from autopilot.audit import ActionWriter
from autopilot.models import PLAN, WORKFLOW, EnqueuedAction, PendingAction, Span
from autopilot.reasoning import ReasoningOutputError
from autopilot.steps.base import (
    COLLABORATOR_ERRORS,
    Step,
    StepContext,
    StepResult,
    json_block,
    render_spans,
)

VALID_WORKFLOWS = frozenset({"swe", "code-review", "bug-finder", "security-analyst"})
PLAN_TOOLS = ["Read", "Glob", "Grep"]
REASONING_DESCRIPTION_LIMIT = 200


def build_plan_message(meta: dict[str, Any], spans: list[Span]) -> str:
    return f"## Plan Directive\n\n{json_block(meta)}\n\n## Spans\n\n{render_spans(spans)}"


def validate_plan(plan: dict[str, Any]) -> list[dict[str, Any]]:
    tasks = plan.get("tasks")
    if not isinstance(tasks, list) or not tasks:
        raise ReasoningOutputError("Plan produced no tasks")
    for task in tasks:
        if not isinstance(task, dict) or not str(task.get("title") or "").strip():
            raise ReasoningOutputError("Plan task is missing a title")
        if task.get("workflow") not in VALID_WORKFLOWS:
            raise ReasoningOutputError(f"Invalid workflow type: {task.get('workflow')}")
        context = task.get("context")
        depends_on = context.get("depends_on") if isinstance(context, dict) else None
        if depends_on is not None and not isinstance(depends_on, str):
            raise ReasoningOutputError(
                f"Plan task {task['title']!r} has a non-string depends_on: {depends_on!r}"
            )
    return tasks


def _shorten(text: str) -> str:
    if len(text) <= REASONING_DESCRIPTION_LIMIT:
        return text
    return text[:REASONING_DESCRIPTION_LIMIT] + "…"


class PlannerStep(Step):
    action_type = PLAN
    default_max_parallel = 2
    prompt_file = "planner.md"
    fallback_prompt = """
You split a request into tasks. Respond with JSON:
{"analysis", "tasks": [{"title", "workflow", "description", "acceptance_criteria", "context"}],
 "execution_order", "reasoning"}.
""".strip()

    async def process(self, pending: PendingAction, ctx: StepContext) -> StepResult:
        span = self.open_span(ctx, pending)
        spans = ctx.store.get_span_trace(pending.span_id) if pending.span_id else []
        try:
            tool = self.require_tool(ctx)
            plan = await tool.invoke_json(
                build_plan_message(pending.meta, spans),
                cwd=ctx.project_path,
                system_prompt=self.system_prompt,
                tools=PLAN_TOOLS,
            )
            tasks = validate_plan(plan)
        except COLLABORATOR_ERRORS as exc:
            return self.failed(span, str(exc))

        execution_order = str(plan.get("execution_order") or "sequential")
        span.complete(
            f"plan: {pending.summary}",
            {
                "analysis": plan.get("analysis"),
                "task_count": len(tasks),
                "execution_order": execution_order,
            },
        )

        # Titles resolve to action ids so later tasks can wait on earlier ones.
        title_to_action: dict[str, str] = {}
        enqueued: list[EnqueuedAction] = []
        for task in tasks:
            title = str(task["title"]).strip()
            description = str(task.get("description") or "")
            context = task.get("context") if isinstance(task.get("context"), dict) else {}
            depends_on = context.get("depends_on")
            writer = ActionWriter(
                ctx.store,
                WORKFLOW,
                span.id,
                pending.trace_id,
                f"{title}: {_shorten(description)}",
                {
                    "workflow": task["workflow"],
                    "title": title,
                    "description": description,
                    "acceptance_criteria": task.get("acceptance_criteria") or [],
                    "context": context,
                    "depends_on_action_id": title_to_action.get(depends_on)
                    if depends_on
                    else None,
                },
            )
            title_to_action[title] = writer.id
            enqueued.append(writer.enqueue(f"{task['workflow']}: {title}"))

        return StepResult(
            span_id=span.id,
            terminal=False,
            enqueued_actions=enqueued,
            reasoning=f"{len(tasks)} task(s), {execution_order}",
        )
