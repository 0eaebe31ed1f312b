import asyncio
import json
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from autopilot.backends.base import AgentBackend
from autopilot.config import AutopilotConfig
from autopilot.events import record_event
from autopilot.git import Git
from autopilot.github import GitHubClient, PullRequestInfo
from autopilot.models import ActionStep, ActionTrace, PendingAction, TaskMapping
from autopilot.orchestrator import StepOrchestrator
from autopilot.project import ProjectManager, ReasoningTaskRunner, Task, TaskRunner
from autopilot.reasoning import ReasoningTool
from autopilot.state import AutopilotStore
from autopilot.steps import build_steps
from autopilot.steps.base import MonitorContext, StepContext
from autopilot.steps.committer import ATTRIBUTION_TRAILER, CommitterStep, build_commit_message
from autopilot.steps.workflow import WorkflowStep


class ScriptedBackend(AgentBackend):
    def __init__(self, responses: list[str]) -> None:
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        cwd: Path | None = None,
        tools: list[str] | None = None,
        model: str | None = None,
        json_output: bool = False,
    ) -> AsyncIterator[str]:
        self.calls.append({"user_prompt": user_prompt, "cwd": cwd, "tools": tools})
        yield self.responses.pop(0)


class FakeGit(Git):
    def __init__(self, repo_root: Path) -> None:
        super().__init__(repo_root)
        self.worktrees: list[tuple[Path, str, str | None]] = []

    def current_branch(self) -> str:
        return "main"

    def main_branch(self) -> str:
        return "main"

    def create_worktree(self, path: Path, branch: str, base: str | None = None) -> Path:
        path.mkdir(parents=True, exist_ok=True)
        self.worktrees.append((path, branch, base))
        return path

    def commit_hash(self, ref: str = "HEAD", *, cwd: Path | None = None) -> str:
        return "abc1234"

    def recent_commits(self, limit: int = 10, *, cwd: Path | None = None) -> list[str]:
        return ["Fix flaky CI job", "Add config loader"]


class FakeGitHub(GitHubClient):
    def __init__(self) -> None:
        super().__init__(binary="gh-fake")
        self.comments: list[tuple[str, int, str]] = []

    async def find_pull_request(
        self, owner: str, repo: str, branch: str
    ) -> PullRequestInfo | None:
        return None

    async def post_comment(
        self, kind: str, number: int, body: str, owner: str, repo: str
    ) -> None:
        self.comments.append((kind, number, body))


class FinishingRunner(TaskRunner):
    def __init__(self, status: str = "COMPLETED") -> None:
        self.status = status
        self.runs: list[int] = []

    async def run(self, task: Task, iteration_dir: Path) -> None:
        self.runs.append(task.id)
        payload: dict[str, Any] = {"status": self.status}
        if self.status == "FAILED":
            payload["error"] = "tests still failing"
        (iteration_dir / "summary.md").write_text("Handled empty files\n", encoding="utf-8")
        (iteration_dir / "status.json").write_text(json.dumps(payload), encoding="utf-8")


def _workflow_pending(meta: dict[str, Any] | None = None) -> PendingAction:
    return PendingAction(
        chain_id="c1",
        action_id="w1",
        trace_id="t1",
        action="workflow",
        summary="swe: Fix loader",
        span_id=None,
        meta=meta
        or {"workflow": "swe", "title": "Fix loader", "description": "Handle empty files"},
    )


def _context(
    tmp_path: Path,
    runner: TaskRunner | None = None,
    backend: AgentBackend | None = None,
) -> tuple[AutopilotStore, ProjectManager, StepContext]:
    store = AutopilotStore(tmp_path / ".autopilot")
    project = ProjectManager(tmp_path / "tasks", tmp_path, runner)
    ctx = StepContext(
        store=store,
        project_id="demo",
        project_path=tmp_path,
        trace=ActionTrace(id="t1", summary="issue opened #7", chain_id="c1"),
        config=AutopilotConfig.default(),
        tool=ReasoningTool(backend) if backend else None,
        git=FakeGit(tmp_path),
        project=project,
    )
    return store, project, ctx


def test_workflow_starts_task_and_monitor_queues_commit(tmp_path: Path) -> None:
    runner = FinishingRunner()
    store, project, ctx = _context(tmp_path, runner)
    pending = _workflow_pending()
    ctx.trace.steps.append(ActionStep(action_id="w1", action="workflow", status="running"))

    async def scenario():
        result = await WorkflowStep().process(pending, ctx)
        await project.wait_for_running()
        return result

    result = asyncio.run(scenario())

    assert result.status == "running"
    assert result.terminal is False
    assert runner.runs == [1]
    mapping = store.get_task_mapping("w1")
    assert mapping is not None
    assert mapping.task_id == 1
    assert mapping.branch_name.startswith("rover/task-1-")
    assert mapping.workflow_span_id == result.span_id
    task = project.get_task(1)
    assert task is not None
    assert task.base_commit == "abc1234"
    assert task.source_branch == "main"
    assert Path(task.worktree_path or "").is_dir()

    mutations = WorkflowStep().monitor(
        MonitorContext(
            store=store,
            project_path=tmp_path,
            traces={"t1": ctx.trace},
            config=ctx.config,
            project=project,
        )
    )

    assert mutations is not None
    (commit,) = mutations.enqueued
    assert commit.action == "commit"
    assert commit.meta["source_action_id"] == "w1"
    assert commit.meta["task_status"] == "COMPLETED"
    (update,) = mutations.updates
    assert update.step_updates[0].status == "completed"
    assert update.new_steps[0].action_id == commit.action_id
    workflow_span = store.read_span(result.span_id)
    assert workflow_span is not None
    assert workflow_span.status == "completed"
    commit_mapping = store.get_task_mapping(commit.action_id)
    assert commit_mapping is not None
    assert commit_mapping.branch_name == mapping.branch_name


def test_workflow_waits_for_unfinished_dependency(tmp_path: Path) -> None:
    _store, _project, ctx = _context(tmp_path)
    pending = _workflow_pending(
        {"workflow": "code-review", "title": "Review", "depends_on_action_id": "w0"}
    )

    result = asyncio.run(WorkflowStep().process(pending, ctx))

    assert result.status == "pending"
    assert result.span_id is None


def test_workflow_fails_when_dependency_failed(tmp_path: Path) -> None:
    store, project, ctx = _context(tmp_path)
    task = project.create_task("Fix loader", "Handle empty files")
    task.status = "FAILED"
    project.save_task(task)
    store.set_task_mapping("w0", TaskMapping(task_id=task.id, branch_name="b-1"))
    pending = _workflow_pending(
        {"workflow": "code-review", "title": "Review", "depends_on_action_id": "w0"}
    )

    result = asyncio.run(WorkflowStep().process(pending, ctx))

    assert result.status == "failed"
    assert result.reasoning == "dependency failed"


def test_workflow_respects_running_task_limit(tmp_path: Path) -> None:
    _store, project, ctx = _context(tmp_path)
    ctx.config.workflow.max_running_tasks = 1
    busy = project.create_task("Busy", "Already running")
    project.start_iteration(busy, busy.title, busy.description)

    result = asyncio.run(WorkflowStep().process(_workflow_pending(), ctx))

    assert result.status == "pending"
    assert len(project.list_tasks()) == 1


def test_commit_message_includes_attribution_and_history() -> None:
    message = build_commit_message(
        "Fix loader",
        "Handle empty files",
        "rover/task-1-abc123",
        ["Iteration 1: Handled empty files"],
        ["Add config loader"],
        attribution=True,
    )

    assert ATTRIBUTION_TRAILER in message
    assert "- Iteration 1: Handled empty files" in message
    assert "## Recent Commits (for style reference)" in message

    plain = build_commit_message("T", "D", "b", [], [], attribution=False)
    assert ATTRIBUTION_TRAILER not in plain
    assert "## Iteration Summaries" not in plain


def _commit_setup(
    tmp_path: Path, backend: AgentBackend | None, task_status: str = "COMPLETED"
) -> tuple[AutopilotStore, StepContext, PendingAction]:
    store, project, ctx = _context(tmp_path, backend=backend)
    task = project.create_task("Fix loader", "Handle empty files")
    worktree = project.workspace_path(task.id)
    worktree.mkdir(parents=True)
    task.worktree_path = str(worktree)
    task.branch_name = "rover/task-1-abc123"
    task.status = task_status
    if task_status == "FAILED":
        task.error = "tests still failing"
    project.save_task(task)
    store.set_task_mapping("w1", TaskMapping(task_id=task.id, branch_name=task.branch_name))
    pending = PendingAction(
        chain_id="c1",
        action_id="c1",
        trace_id="t1",
        action="commit",
        summary="commit: Fix loader",
        span_id=None,
        meta={"title": "Fix loader", "source_action_id": "w1", "task_status": task_status},
    )
    return store, ctx, pending


def test_committer_commits_and_queues_resolve(tmp_path: Path) -> None:
    response = {"status": "committed", "commit_sha": "def5678", "commit_message": "Fix loader"}
    backend = ScriptedBackend([json.dumps(response)])
    store, ctx, pending = _commit_setup(tmp_path, backend)

    result = asyncio.run(CommitterStep().process(pending, ctx))

    assert result.status == "completed"
    assert result.reasoning == "task #1 committed on rover/task-1-abc123"
    (resolve,) = result.enqueued_actions
    assert resolve.action_type == "resolve"
    assert resolve.meta["committed"] is True
    assert "commit_error" not in resolve.meta
    assert backend.calls[0]["tools"] == ["Bash"]
    assert "Add config loader" in backend.calls[0]["user_prompt"]
    span = store.read_span(result.span_id)
    assert span is not None
    assert span.meta["commit_sha"] == "def5678"


def test_committer_reports_commit_failure_to_resolver(tmp_path: Path) -> None:
    response = {"status": "failed", "error": "pre-commit hook failed"}
    store, ctx, pending = _commit_setup(tmp_path, ScriptedBackend([json.dumps(response)]))

    result = asyncio.run(CommitterStep().process(pending, ctx))

    assert result.status == "error"
    (resolve,) = result.enqueued_actions
    assert resolve.meta["commit_error"] == "pre-commit hook failed"
    span = store.read_span(result.span_id)
    assert span is not None
    assert span.status == "error"


def test_committer_skips_failed_task(tmp_path: Path) -> None:
    backend = ScriptedBackend([])
    store, ctx, pending = _commit_setup(tmp_path, backend, task_status="FAILED")

    result = asyncio.run(CommitterStep().process(pending, ctx))

    assert result.status == "failed"
    assert result.terminal is False
    assert backend.calls == []
    (resolve,) = result.enqueued_actions
    assert resolve.meta["committed"] is False
    assert resolve.meta["task_status"] == "FAILED"
    span = store.read_span(result.span_id)
    assert span is not None
    assert span.meta["error"] == "tests still failing"


def test_pipeline_runs_workflow_through_notify(tmp_path: Path) -> None:
    backend = ScriptedBackend(
        [
            "Handled empty config files and added a regression test.",
            json.dumps({"status": "committed", "commit_sha": "def5678"}),
            json.dumps(
                {
                    "status": "pushed",
                    "branches_pushed": ["rover/task-1-abc123"],
                    "pull_request": {"url": "https://github.com/o/r/pull/9"},
                    "summary": "Opened PR #9",
                }
            ),
            "Fixed in https://github.com/o/r/pull/9",
        ]
    )
    tool = ReasoningTool(backend)
    store = AutopilotStore(tmp_path / ".autopilot")
    project = ProjectManager(tmp_path / "tasks", tmp_path, ReasoningTaskRunner(tool))
    github = FakeGitHub()
    config = AutopilotConfig.default()
    event = record_event(store, "issue opened #7", {"type": "IssuesEvent", "issue_number": 7})
    store.remove_pending(event.action_id)
    store.add_pending(
        PendingAction(
            chain_id=event.chain_id,
            action_id="w1",
            trace_id=event.trace_id,
            action="workflow",
            summary="issue opened #7",
            span_id=event.span_id,
            meta={"workflow": "swe", "title": "Fix loader", "description": "Handle empty files"},
        )
    )
    orchestrator = StepOrchestrator(
        store,
        build_steps(config),
        project_path=tmp_path,
        config=config,
        tool=tool,
        git=FakeGit(tmp_path),
        github=github,
        owner="o",
        repo="r",
        project=project,
    )

    asyncio.run(orchestrator.run_until_idle())

    trace = orchestrator.traces[event.trace_id]
    assert [step.action for step in trace.steps] == [
        "workflow",
        "commit",
        "resolve",
        "push",
        "notify",
    ]
    assert all(step.status == "completed" for step in trace.steps)
    assert trace.steps[-1].terminal is True
    assert store.get_pending() == []
    assert github.comments == [("issue", 7, "Fixed in https://github.com/o/r/pull/9")]
    assert backend.responses == []

    notify_span = store.read_span(trace.steps[-1].span_id)
    assert notify_span is not None
    chain = [span.step for span in store.get_span_trace(notify_span.id)]
    assert chain == ["event", "workflow", "commit", "commit", "resolve", "push", "notify"]
