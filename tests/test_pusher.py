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
from autopilot.project import ProjectManager
from autopilot.reasoning import ReasoningTool
from autopilot.state import AutopilotStore
from autopilot.steps.base import StepContext
from autopilot.steps.pusher import BranchInfo, PusherStep, build_push_message, collect_branches

BRANCH = "rover/task-7-abc123"
PR_URL = "https://github.com/o/r/pull/42"


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
    def main_branch(self) -> str:
        return "main"


class FakeGitHub(GitHubClient):
    def __init__(self, pull_request: PullRequestInfo | None = None) -> None:
        super().__init__(binary="gh-fake")
        self.pull_request = pull_request
        self.lookups: list[str] = []

    async def find_pull_request(
        self, owner: str, repo: str, branch: str
    ) -> PullRequestInfo | None:
        self.lookups.append(branch)
        return self.pull_request


def _push_setup(
    tmp_path: Path,
    backend: AgentBackend,
    github: GitHubClient,
    *,
    with_branch: bool = True,
) -> tuple[AutopilotStore, StepContext, PendingAction]:
    store = AutopilotStore(tmp_path / ".autopilot")
    event = record_event(store, "issue opened #7", {"type": "IssuesEvent", "issue_number": 7})
    trace = ActionTrace(
        id=event.trace_id, summary="issue opened #7", chain_id=event.chain_id
    )
    if with_branch:
        trace.steps.append(ActionStep(action_id="w1", action="workflow", status="completed"))
        store.set_task_mapping(
            "w1", TaskMapping(task_id=7, branch_name=BRANCH, trace_id=event.trace_id)
        )
    ctx = StepContext(
        store=store,
        project_id="demo",
        project_path=tmp_path,
        trace=trace,
        config=AutopilotConfig.default(),
        tool=ReasoningTool(backend),
        git=FakeGit(tmp_path),
        github=github,
        owner="o",
        repo="r",
        project=ProjectManager(tmp_path / "tasks", tmp_path),
    )
    pending = PendingAction(
        chain_id=event.chain_id,
        action_id="push-1",
        trace_id=event.trace_id,
        action="push",
        summary="push: issue opened #7",
        span_id=event.span_id,
        meta={"decision": "push"},
    )
    return store, ctx, pending


def test_collect_branches_dedupes_and_uses_source_mapping(tmp_path: Path) -> None:
    store = AutopilotStore(tmp_path / ".autopilot")
    store.set_task_mapping("w1", TaskMapping(task_id=1, branch_name="b-1"))
    store.set_task_mapping("c1", TaskMapping(task_id=1, branch_name="b-1"))
    store.set_task_mapping("w2", TaskMapping(task_id=2, branch_name="b-2"))
    steps = [
        ActionStep(action_id="w1", action="workflow"),
        ActionStep(action_id="c1", action="commit"),
        ActionStep(action_id="w2", action="workflow"),
        ActionStep(action_id="n1", action="notify"),
    ]

    assert collect_branches(steps, store) == [BranchInfo(1, "b-1"), BranchInfo(2, "b-2")]
    assert collect_branches([], store, "w2") == [BranchInfo(2, "b-2")]
    assert collect_branches([], store) == []


def test_push_message_mentions_existing_pull_request() -> None:
    message = build_push_message(
        branches=[BranchInfo(7, BRANCH)],
        owner="o",
        repo="r",
        main_branch="main",
        trace_summary="issue opened #7",
        existing_pr=PullRequestInfo(number=42, url=PR_URL, state="OPEN"),
        event_meta={"type": "IssuesEvent", "issue_number": 7},
    )

    assert "## Existing Pull Request" in message
    assert PR_URL in message
    assert "#42" in message
    assert f"**{BRANCH}** (task #7)" in message
    assert "- **Issue**: #7" in message


def test_push_with_existing_pull_request_carries_url_to_notify(tmp_path: Path) -> None:
    response = {
        "status": "pushed",
        "branches_pushed": [BRANCH],
        "summary": "Pushed one branch; PR already open",
    }
    backend = ScriptedBackend([json.dumps(response)])
    github = FakeGitHub(PullRequestInfo(number=42, url=PR_URL, state="OPEN"))
    store, ctx, pending = _push_setup(tmp_path, backend, github)

    result = asyncio.run(PusherStep().process(pending, ctx))

    assert result.status == "completed"
    assert result.terminal is False
    assert github.lookups == [BRANCH]
    prompt = backend.calls[0]["user_prompt"]
    assert PR_URL in prompt
    assert "#42" in prompt
    assert backend.calls[0]["cwd"] == tmp_path

    (notify,) = result.enqueued_actions
    assert notify.action_type == "notify"
    assert notify.meta["pull_request_url"] == PR_URL
    assert notify.meta["pushed"] is True
    assert notify.meta["branches_pushed"] == [BRANCH]
    assert notify.meta["decision"] == "push"

    span = store.read_span(result.span_id)
    assert span is not None
    assert span.status == "completed"
    assert span.meta["existing_pr"] == {"number": 42, "url": PR_URL, "state": "OPEN"}
    assert PR_URL in (span.summary or "")


def test_push_failure_reported_by_agent_still_notifies(tmp_path: Path) -> None:
    response = {"status": "failed", "branches_pushed": [], "error": "remote rejected"}
    store, ctx, pending = _push_setup(
        tmp_path, ScriptedBackend([json.dumps(response)]), FakeGitHub()
    )

    result = asyncio.run(PusherStep().process(pending, ctx))

    assert result.status == "error"
    (notify,) = result.enqueued_actions
    assert notify.meta["pushed"] is False
    assert notify.meta["pull_request_url"] is None
    span = store.read_span(result.span_id)
    assert span is not None
    assert span.status == "error"
    assert span.meta["error"] == "remote rejected"


def test_push_with_malformed_json_fails_without_notify(tmp_path: Path) -> None:
    store, ctx, pending = _push_setup(
        tmp_path, ScriptedBackend(["I pushed everything, trust me"]), FakeGitHub()
    )

    result = asyncio.run(PusherStep().process(pending, ctx))

    assert result.status == "failed"
    assert result.terminal is True
    assert result.enqueued_actions == []
    span = store.read_span(result.span_id)
    assert span is not None
    assert span.status == "failed"


def test_push_without_branches_fails_and_leaves_queue_empty(tmp_path: Path) -> None:
    backend = ScriptedBackend([])
    store, ctx, pending = _push_setup(tmp_path, backend, FakeGitHub(), with_branch=False)
    store.add_pending(pending)
    orchestrator = StepOrchestrator(
        store,
        [PusherStep()],
        project_path=tmp_path,
        tool=ctx.tool,
        git=ctx.git,
        github=ctx.github,
        owner="o",
        repo="r",
        project=ctx.project,
    )

    asyncio.run(orchestrator.run_until_idle())

    assert store.get_pending() == []
    assert backend.calls == []
    trace_step = orchestrator.traces[pending.trace_id].steps[0]
    assert trace_step.action == "push"
    assert trace_step.status == "failed"
    assert trace_step.terminal is True
    assert trace_step.reasoning == "no branches found to push"
    span = store.read_span(trace_step.span_id)
    assert span is not None
    assert span.summary == "push: no branches found to push"
