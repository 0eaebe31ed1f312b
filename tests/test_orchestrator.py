import asyncio
import logging
from pathlib import Path

import pytest

from autopilot.audit import ActionWriter
from autopilot.events import record_event
from autopilot.models import ActionStep, ActionTrace, PendingAction, TaskMapping
from autopilot.orchestrator import StepOrchestrator
from autopilot.project import ProjectManager
from autopilot.state import AutopilotStore, StoreError
from autopilot.steps import build_steps
from autopilot.steps.base import (
    DedupBy,
    MonitorContext,
    Step,
    StepConfig,
    StepContext,
    StepDependencies,
    StepResult,
    TraceMutations,
)
from autopilot.steps.pusher import PusherStep


class FakeStep(Step):
    def __init__(
        self,
        action_type: str,
        *,
        follow_up: str | None = None,
        max_parallel: int = 1,
        dedup_by: DedupBy = None,
        delay: float = 0.0,
    ) -> None:
        self.action_type = action_type
        super().__init__(max_parallel=max_parallel, dedup_by=dedup_by)
        self.follow_up = follow_up
        self.delay = delay
        self.seen: list[PendingAction] = []
        self.queue_snapshots: list[list[str]] = []
        self.active = 0
        self.max_active = 0
        self.active_by_trace: dict[str, int] = {}
        self.max_active_per_trace = 0
        self.active_by_chain: dict[str, int] = {}
        self.max_active_per_chain = 0

    async def process(self, pending: PendingAction, ctx: StepContext) -> StepResult:
        self.seen.append(pending)
        self.queue_snapshots.append([item.action_id for item in ctx.store.get_pending()])
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        per_trace = self.active_by_trace.get(pending.trace_id, 0) + 1
        self.active_by_trace[pending.trace_id] = per_trace
        self.max_active_per_trace = max(self.max_active_per_trace, per_trace)
        per_chain = self.active_by_chain.get(pending.chain_id, 0) + 1
        self.active_by_chain[pending.chain_id] = per_chain
        self.max_active_per_chain = max(self.max_active_per_chain, per_chain)
        await asyncio.sleep(self.delay)
        self.active -= 1
        self.active_by_trace[pending.trace_id] -= 1
        self.active_by_chain[pending.chain_id] -= 1

        span = self.open_span(ctx, pending)
        span.complete(f"{self.action_type}: done")
        enqueued = []
        if self.follow_up:
            writer = ActionWriter(ctx.store, self.follow_up, span.id, pending.trace_id, "next")
            enqueued.append(writer.enqueue(f"{self.follow_up}: {pending.summary}"))
        return StepResult(
            span_id=span.id,
            terminal=self.follow_up is None,
            enqueued_actions=enqueued,
            reasoning=f"{self.action_type} done",
        )


class RaisingStep(FakeStep):
    def __init__(self, action_type: str, error: Exception) -> None:
        super().__init__(action_type)
        self.error = error

    async def process(self, pending: PendingAction, ctx: StepContext) -> StepResult:
        self.seen.append(pending)
        raise self.error


class WaitingStep(FakeStep):
    async def process(self, pending: PendingAction, ctx: StepContext) -> StepResult:
        self.seen.append(pending)
        return self.wait()


def _pending(action_id: str, action: str, trace_id: str) -> PendingAction:
    return PendingAction(
        chain_id=trace_id,
        action_id=action_id,
        trace_id=trace_id,
        action=action,
        summary=f"{action} {action_id}",
    )


def _orchestrator(tmp_path: Path, *steps: Step, **kwargs) -> StepOrchestrator:
    store = AutopilotStore(tmp_path / ".autopilot")
    return StepOrchestrator(store, list(steps), project_path=tmp_path, **kwargs)


def test_event_chain_runs_to_terminal_step(tmp_path: Path) -> None:
    coordinate = FakeStep("coordinate", follow_up="notify")
    notify = FakeStep("notify")
    orchestrator = _orchestrator(tmp_path, coordinate, notify)
    store = orchestrator.store
    event = record_event(store, "issue opened #7", {"type": "IssuesEvent", "issue_number": 7})

    asyncio.run(orchestrator.run_until_idle())

    assert store.get_pending() == []
    trace = store.load_traces()[event.trace_id]
    assert trace.summary == "issue opened #7"
    assert trace.root_span_id == event.span_id
    assert [step.action for step in trace.steps] == ["coordinate", "notify"]
    assert [step.status for step in trace.steps] == ["completed", "completed"]
    assert trace.steps[1].terminal is True
    assert [entry["step"] for entry in store.read_logs()] == ["event", "coordinate"]

    spans = store.get_span_trace(trace.steps[1].span_id)
    assert [span.step for span in spans] == ["event", "coordinate", "notify"]
    assert orchestrator.statuses()["coordinate"] == {"status": "idle", "processed_count": 1}


def test_successor_is_not_dispatched_before_its_parent_leaves_the_queue(tmp_path: Path) -> None:
    coordinate = FakeStep("coordinate", follow_up="notify")
    notify = FakeStep("notify")
    orchestrator = _orchestrator(tmp_path, coordinate, notify)
    parent = record_event(orchestrator.store, "issue opened #1", {})

    asyncio.run(orchestrator.run_until_idle())

    assert len(notify.queue_snapshots) == 1
    assert parent.action_id not in notify.queue_snapshots[0]
    assert notify.seen[0].chain_id == parent.chain_id


def test_max_parallel_bounds_concurrency(tmp_path: Path) -> None:
    step = FakeStep("plan", max_parallel=2, delay=0.02)
    orchestrator = _orchestrator(tmp_path, step)
    for index in range(5):
        orchestrator.store.add_pending(_pending(f"a{index}", "plan", f"t{index}"))

    asyncio.run(orchestrator.run_until_idle())

    assert step.max_active == 2
    assert orchestrator.statuses()["plan"]["processed_count"] == 5
    assert orchestrator.store.get_pending() == []


def test_actions_dispatch_in_creation_order(tmp_path: Path) -> None:
    step = FakeStep("plan")
    orchestrator = _orchestrator(tmp_path, step)
    for index in range(4):
        orchestrator.store.add_pending(_pending(f"a{index}", "plan", "t1"))

    asyncio.run(orchestrator.run_until_idle())

    assert [item.action_id for item in step.seen] == ["a0", "a1", "a2", "a3"]


def test_dedup_key_allows_one_action_per_trace(tmp_path: Path) -> None:
    step = FakeStep("resolve", max_parallel=3, dedup_by="trace_id", delay=0.02)
    orchestrator = _orchestrator(tmp_path, step)
    for action_id in ("a1", "a2", "a3"):
        orchestrator.store.add_pending(_pending(action_id, "resolve", "same"))
    orchestrator.store.add_pending(_pending("b1", "resolve", "other"))

    asyncio.run(orchestrator.run_until_idle())

    assert step.max_active_per_trace == 1
    assert step.max_active == 2
    assert len(step.seen) == 4


def test_unknown_action_type_is_skipped_and_logged_once(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    caplog.set_level(logging.WARNING, logger="autopilot.orchestrator")
    orchestrator = _orchestrator(tmp_path, FakeStep("notify"))
    orchestrator.store.add_pending(_pending("m1", "mystery", "t1"))

    asyncio.run(orchestrator.run_until_idle())
    asyncio.run(orchestrator.run_until_idle())

    assert [item.action_id for item in orchestrator.store.get_pending()] == ["m1"]
    warnings = [record for record in caplog.records if "mystery" in record.getMessage()]
    assert len(warnings) == 1


def test_missing_prerequisite_fails_without_running_the_step(tmp_path: Path) -> None:
    step = FakeStep("coordinate")
    step.dependencies = StepDependencies(needs_owner_repo=True)
    orchestrator = _orchestrator(tmp_path, step)
    event = record_event(orchestrator.store, "issue opened #2", {})

    asyncio.run(orchestrator.run_until_idle())

    assert step.seen == []
    assert orchestrator.store.get_pending() == []
    trace_step = orchestrator.traces[event.trace_id].steps[0]
    assert trace_step.status == "failed"
    assert trace_step.terminal is True
    span = orchestrator.store.read_span(trace_step.span_id)
    assert span is not None
    assert span.status == "failed"
    assert "missing prerequisite" in (span.summary or "")
    assert span.parent_id == event.span_id


def test_unexpected_exception_marks_type_as_error_until_next_success(tmp_path: Path) -> None:
    failing = RaisingStep("plan", ValueError("boom"))
    orchestrator = _orchestrator(tmp_path, failing)
    orchestrator.store.add_pending(_pending("a1", "plan", "t1"))

    asyncio.run(orchestrator.run_until_idle())

    assert orchestrator.store.get_pending() == []
    assert orchestrator.statuses()["plan"] == {"status": "error", "processed_count": 1}
    trace_step = orchestrator.traces["t1"].steps[0]
    assert trace_step.status == "failed"
    assert trace_step.reasoning == "boom"
    span = orchestrator.store.read_span(trace_step.span_id)
    assert span is not None
    assert span.status == "error"
    assert span.summary == "plan: boom"

    orchestrator.steps["plan"] = FakeStep("plan")
    orchestrator.store.add_pending(_pending("a2", "plan", "t2"))
    asyncio.run(orchestrator.run_until_idle())

    assert orchestrator.statuses()["plan"] == {"status": "idle", "processed_count": 2}


def test_store_error_propagates_out_of_the_orchestrator(tmp_path: Path) -> None:
    orchestrator = _orchestrator(tmp_path, RaisingStep("plan", StoreError("disk full")))
    orchestrator.store.add_pending(_pending("a1", "plan", "t1"))

    with pytest.raises(StoreError, match="disk full"):
        asyncio.run(orchestrator.run_until_idle())

    assert [item.action_id for item in orchestrator.store.get_pending()] == ["a1"]


def test_pending_result_defers_the_action(tmp_path: Path) -> None:
    step = WaitingStep("workflow")
    orchestrator = _orchestrator(tmp_path, step)
    orchestrator.store.add_pending(_pending("w1", "workflow", "t1"))

    asyncio.run(orchestrator.run_until_idle())

    assert len(step.seen) == 1
    assert [item.action_id for item in orchestrator.store.get_pending()] == ["w1"]
    assert orchestrator.traces["t1"].steps[0].status == "pending"

    orchestrator.store.add_pending(_pending("w2", "workflow", "t2"))
    asyncio.run(orchestrator.run_until_idle())

    # A queue change gives the deferred action another attempt.
    assert [item.action_id for item in step.seen] == ["w1", "w1", "w2"]


def test_recover_reconciles_interrupted_state(tmp_path: Path) -> None:
    store = AutopilotStore(tmp_path / ".autopilot")
    trace = ActionTrace(id="t1", summary="issue opened #3", chain_id="t1")
    trace.steps = [
        ActionStep(action_id="a1", action="coordinate", status="running"),
        ActionStep(action_id="a2", action="plan", status="running"),
        ActionStep(action_id="a3", action="notify", status="pending"),
        ActionStep(action_id="w1", action="workflow", status="running"),
    ]
    store.save_traces({"t1": trace})
    store.add_pending(_pending("a1", "coordinate", "t1"))
    store.add_pending(_pending("a4", "plan", "t2"))
    store.set_task_mapping(
        "w1",
        TaskMapping(task_id=1, branch_name="rover/task-1-abc123", trace_id="t1"),
    )

    orchestrator = StepOrchestrator(store, [FakeStep("plan")], project_path=tmp_path)
    orchestrator.recover()

    steps = {step.action_id: step for step in orchestrator.traces["t1"].steps}
    assert steps["a1"].status == "failed"
    assert steps["a2"].status == "failed"
    assert steps["a2"].reasoning == "interrupted"
    assert steps["a3"].status == "failed"
    assert "orphaned" in (steps["a3"].reasoning or "")
    assert steps["w1"].status == "running"
    assert [item.action_id for item in store.get_pending()] == ["a4"]
    assert orchestrator.traces["t2"].steps[0].action_id == "a4"
    assert orchestrator.traces["t2"].steps[0].status == "pending"
    assert store.load_traces()["t1"].steps[0].status == "failed"


def test_observers_receive_trace_and_status_changes(tmp_path: Path) -> None:
    snapshots: list[int] = []
    transitions: list[tuple[str, str, int]] = []
    orchestrator = _orchestrator(
        tmp_path,
        FakeStep("coordinate", follow_up="noop"),
        FakeStep("noop"),
        on_traces_updated=lambda traces: snapshots.append(len(traces)),
        on_status_changed=lambda action_type, status, count: transitions.append(
            (action_type, status, count)
        ),
    )
    record_event(orchestrator.store, "push to main", {"type": "PushEvent"})

    asyncio.run(orchestrator.run_until_idle())

    assert snapshots and snapshots[-1] == 1
    assert ("coordinate", "processing", 0) in transitions
    assert ("coordinate", "idle", 1) in transitions
    assert transitions[-1] == ("noop", "idle", 1)


def test_background_loop_drains_on_request(tmp_path: Path) -> None:
    orchestrator = _orchestrator(
        tmp_path, FakeStep("coordinate", follow_up="notify"), FakeStep("notify")
    )
    store = orchestrator.store

    async def _run() -> None:
        await orchestrator.start()
        assert orchestrator.is_running
        record_event(store, "issue opened #9", {})
        orchestrator.request_drain()
        for _ in range(200):
            if not store.get_pending() and orchestrator.in_flight_count() == 0:
                break
            await asyncio.sleep(0.01)
        await orchestrator.stop()

    asyncio.run(_run())

    assert store.get_pending() == []
    assert not orchestrator.is_running
    trace = next(iter(store.load_traces().values()))
    assert [step.status for step in trace.steps] == ["completed", "completed"]


def _issue_key(pending: PendingAction) -> str:
    return pending.summary.rsplit("#", 1)[-1]


class IssueKeyedStep(FakeStep):
    dedup_by = _issue_key

    def __init__(self) -> None:
        super().__init__("plan", max_parallel=3, delay=0.02)
        self.active_by_issue: dict[str, int] = {}
        self.max_active_per_issue = 0

    async def process(self, pending: PendingAction, ctx: StepContext) -> StepResult:
        issue = _issue_key(pending)
        count = self.active_by_issue.get(issue, 0) + 1
        self.active_by_issue[issue] = count
        self.max_active_per_issue = max(self.max_active_per_issue, count)
        try:
            return await super().process(pending, ctx)
        finally:
            self.active_by_issue[issue] -= 1


class CountingPusher(PusherStep):
    def __init__(self, max_parallel: int | None = None) -> None:
        super().__init__(max_parallel=max_parallel)
        self.seen: list[str] = []
        self.active = 0
        self.max_active = 0

    async def process(self, pending: PendingAction, ctx: StepContext) -> StepResult:
        self.seen.append(pending.action_id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        await asyncio.sleep(0.02)
        self.active -= 1
        span = self.open_span(ctx, pending)
        span.complete("push: done")
        return StepResult(span_id=span.id, terminal=True)


class FlakyMonitorStep(FakeStep):
    def __init__(self) -> None:
        super().__init__("workflow")
        self.monitor_calls = 0

    def monitor(self, ctx: MonitorContext) -> TraceMutations | None:
        self.monitor_calls += 1
        if self.monitor_calls == 1:
            raise OSError("status.json unreadable")
        return None


def test_chain_dedup_serializes_actions_across_traces(tmp_path: Path) -> None:
    step = FakeStep("push", max_parallel=3, dedup_by="chain_id", delay=0.02)
    orchestrator = _orchestrator(tmp_path, step)
    chains = (("a1", "t1", "c1"), ("a2", "t2", "c1"), ("a3", "t3", "c2"))
    for action_id, trace_id, chain_id in chains:
        orchestrator.store.add_pending(
            PendingAction(
                chain_id=chain_id,
                action_id=action_id,
                trace_id=trace_id,
                action="push",
                summary=f"push {action_id}",
            )
        )

    asyncio.run(orchestrator.run_until_idle())

    assert step.max_active_per_chain == 1
    assert step.max_active == 2
    assert [item.action_id for item in step.seen] == ["a1", "a3", "a2"]


def test_class_level_key_extractor_dedups_by_issue(tmp_path: Path) -> None:
    step = IssueKeyedStep()
    assert step.config.dedup_key(_pending("x", "plan", "t9")) == "plan x"
    orchestrator = _orchestrator(tmp_path, step)
    for action_id, trace_id, issue in (("a1", "t1", 7), ("a2", "t2", 7), ("a3", "t3", 8)):
        orchestrator.store.add_pending(
            PendingAction(
                chain_id=trace_id,
                action_id=action_id,
                trace_id=trace_id,
                action="plan",
                summary=f"plan issue #{issue}",
            )
        )

    asyncio.run(orchestrator.run_until_idle())

    assert step.max_active_per_issue == 1
    assert step.max_active == 2
    assert len(step.seen) == 3
    assert orchestrator.store.get_pending() == []


def test_key_extractor_passed_to_constructor(tmp_path: Path) -> None:
    step = FakeStep("plan", dedup_by=lambda pending: pending.meta.get("branch", "none"))

    assert step.config.dedup_key(_pending("a1", "plan", "t1")) == "none"


def test_registered_push_step_runs_at_most_two_at_once(tmp_path: Path) -> None:
    registered = build_steps()["push"]
    assert registered.config == StepConfig(action_type="push", max_parallel=2, dedup_by="trace_id")
    pusher = CountingPusher(max_parallel=registered.config.max_parallel)
    assert pusher.config == registered.config
    orchestrator = _orchestrator(
        tmp_path,
        pusher,
        owner="o",
        repo="r",
        project=ProjectManager(tmp_path / "tasks", tmp_path),
    )
    for index in range(5):
        orchestrator.store.add_pending(_pending(f"p{index}", "push", f"t{index}"))

    asyncio.run(orchestrator.run_until_idle())

    assert pusher.max_active == 2
    assert pusher.seen == ["p0", "p1", "p2", "p3", "p4"]
    assert orchestrator.store.get_pending() == []


def test_monitor_failure_does_not_stop_the_background_loop(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    caplog.set_level(logging.ERROR, logger="autopilot.orchestrator")
    flaky = FlakyMonitorStep()
    orchestrator = _orchestrator(tmp_path, flaky, FakeStep("coordinate"))
    store = orchestrator.store

    async def _run() -> bool:
        await orchestrator.start()
        for _ in range(100):
            if flaky.monitor_calls:
                break
            await asyncio.sleep(0.01)
        record_event(store, "issue opened #4", {})
        orchestrator.request_drain()
        for _ in range(200):
            if not store.get_pending() and orchestrator.in_flight_count() == 0:
                break
            await asyncio.sleep(0.01)
        running = orchestrator.is_running
        await orchestrator.stop()
        return running

    assert asyncio.run(_run()) is True
    assert store.get_pending() == []
    assert flaky.monitor_calls >= 2
    messages = [record.getMessage() for record in caplog.records]
    assert any("Monitor for workflow raised" in message for message in messages)


def test_failing_observers_do_not_block_dispatch(tmp_path: Path) -> None:
    def explode(*_args: object) -> None:
        raise RuntimeError("display gone")

    orchestrator = _orchestrator(
        tmp_path,
        FakeStep("coordinate", follow_up="noop"),
        FakeStep("noop"),
        on_traces_updated=explode,
        on_status_changed=explode,
    )
    event = record_event(orchestrator.store, "push to main", {"type": "PushEvent"})

    asyncio.run(orchestrator.run_until_idle())

    assert orchestrator.store.get_pending() == []
    trace = orchestrator.store.load_traces()[event.trace_id]
    assert [step.status for step in trace.steps] == ["completed", "completed"]


def test_failing_key_extractor_leaves_only_its_action_queued(tmp_path: Path) -> None:
    broken = FakeStep("plan", dedup_by=lambda pending: pending.meta["issue"])
    notify = FakeStep("notify")
    orchestrator = _orchestrator(tmp_path, broken, notify)
    orchestrator.store.add_pending(_pending("p1", "plan", "t1"))
    orchestrator.store.add_pending(_pending("n1", "notify", "t2"))

    asyncio.run(orchestrator.run_until_idle())

    assert broken.seen == []
    assert [item.action_id for item in notify.seen] == ["n1"]
    assert [item.action_id for item in orchestrator.store.get_pending()] == ["p1"]


def test_step_without_process_cannot_be_built() -> None:
    class Incomplete(Step):
        action_type = "noop"

    with pytest.raises(TypeError):
        Incomplete()
