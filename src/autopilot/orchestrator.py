from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from autopilot.audit import SpanWriter, log_enqueued
from autopilot.config import AutopilotConfig
from autopilot.git import Git
from autopilot.github import GitHubClient
from autopilot.models import (
    WORKFLOW,
    ActionStep,
    ActionTrace,
    PendingAction,
    StepStatus,
    utcnow_iso,
)
from autopilot.project import ProjectManager
from autopilot.reasoning import ReasoningTool
from autopilot.state.store import AutopilotStore, StoreError
from autopilot.steps.base import (
    COLLABORATOR_ERRORS,
    MonitorContext,
    Step,
    StepContext,
    StepResult,
    StepUpdate,
    TraceMutations,
)

logger = logging.getLogger(__name__)

StepTypeState = Literal["idle", "processing", "error"]
TracesCallback = Callable[[dict[str, ActionTrace]], None]
StatusCallback = Callable[[str, StepTypeState, int], None]

RESULT_STEP_STATUS: dict[str, StepStatus] = {
    "completed": "completed",
    "running": "running",
    "failed": "failed",
    "error": "failed",
}


@dataclass(slots=True)
class StepTypeStatus:
    status: StepTypeState = "idle"
    processed_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "processed_count": self.processed_count}


class StepOrchestrator:
    """Drains the pending-action queue through the registered steps.

    Each tick runs the step monitors, then dispatches queued actions grouped by
    action type in creation order. Per type, at most ``max_parallel`` actions are
    in flight and at most one per dedup key. A finished action is removed from
    the queue in the same write that queues its successors.
    """

    def __init__(
        self,
        store: AutopilotStore,
        steps: dict[str, Step] | Iterable[Step],
        *,
        project_path: Path,
        config: AutopilotConfig | None = None,
        project_id: str | None = None,
        tool: ReasoningTool | None = None,
        git: Git | None = None,
        github: GitHubClient | None = None,
        owner: str | None = None,
        repo: str | None = None,
        project: ProjectManager | None = None,
        on_traces_updated: TracesCallback | None = None,
        on_status_changed: StatusCallback | None = None,
        verbose: bool | None = None,
    ) -> None:
        self.store = store
        if isinstance(steps, dict):
            self.steps = dict(steps)
        else:
            self.steps = {step.config.action_type: step for step in steps}
        self.project_path = project_path
        self.config = config or AutopilotConfig.default()
        self.project_id = project_id or self.config.project.name or project_path.name
        self.tool = tool
        self.git = git
        self.github = github
        self.owner = owner
        self.repo = repo
        self.project = project
        self.on_traces_updated = on_traces_updated
        self.on_status_changed = on_status_changed
        self.verbose = self.config.orchestrator.verbose if verbose is None else verbose
        self.fallback_interval = max(
            0.01, float(self.config.orchestrator.fallback_interval_seconds)
        )

        self._traces: dict[str, ActionTrace] = {}
        self._statuses = {action_type: StepTypeStatus() for action_type in self.steps}
        self._error_types: set[str] = set()
        self._in_flight: dict[str, dict[str, str | None]] = {
            action_type: {} for action_type in self.steps
        }
        self._tasks: set[asyncio.Task[None]] = set()
        self._deferred: set[str] = set()
        self._last_queue: tuple[str, ...] = ()
        self._warned_types: set[str] = set()
        self._recovered = False
        self._stopping = False
        self._wake: asyncio.Event | None = None
        self._loop_task: asyncio.Task[None] | None = None
        self._fatal: StoreError | None = None

    @property
    def traces(self) -> dict[str, ActionTrace]:
        return self._traces

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def statuses(self) -> dict[str, dict[str, Any]]:
        return {action_type: status.to_dict() for action_type, status in self._statuses.items()}

    def in_flight_count(self, action_type: str | None = None) -> int:
        if action_type is not None:
            return len(self._in_flight.get(action_type, {}))
        return sum(len(actions) for actions in self._in_flight.values())

    # Persistence and observers

    def _save_traces(self) -> None:
        self.store.save_traces(self._traces)
        if self.on_traces_updated is not None:
            try:
                self.on_traces_updated(self._traces)
            except Exception:
                logger.exception("Trace observer failed")

    def _publish_status(self, action_type: str) -> None:
        status = self._statuses.setdefault(action_type, StepTypeStatus())
        if self._in_flight.get(action_type):
            status.status = "processing"
        elif action_type in self._error_types:
            status.status = "error"
        else:
            status.status = "idle"
        if self.on_status_changed is not None:
            try:
                self.on_status_changed(action_type, status.status, status.processed_count)
            except Exception:
                logger.exception("Status observer failed for %s", action_type)

    # Trace bookkeeping

    def _trace_for(self, pending: PendingAction) -> ActionTrace:
        trace = self._traces.get(pending.trace_id)
        if trace is None:
            trace = ActionTrace(
                id=pending.trace_id,
                summary=pending.summary,
                chain_id=pending.chain_id,
                root_span_id=pending.span_id,
            )
            self._traces[pending.trace_id] = trace
        return trace

    def _ensure_step(self, pending: PendingAction) -> ActionStep:
        trace = self._trace_for(pending)
        step = trace.find_step(pending.action_id)
        if step is None:
            step = ActionStep(
                action_id=pending.action_id,
                action=pending.action,
                reasoning=pending.summary,
                span_id=pending.span_id,
            )
            trace.steps.append(step)
        return step

    def _sync_queue(self, pending: list[PendingAction]) -> None:
        """Give every queued action a step in its trace."""
        changed = False
        for action in pending:
            trace = self._traces.get(action.trace_id)
            if trace is None or trace.find_step(action.action_id) is None:
                self._ensure_step(action)
                changed = True
        if changed:
            self._save_traces()

    @staticmethod
    def _apply_updates(trace: ActionTrace, updates: list[StepUpdate]) -> None:
        for update in updates:
            step = trace.find_step(update.action_id)
            if step is None:
                continue
            step.status = update.status
            step.timestamp = utcnow_iso()
            if update.reasoning is not None:
                step.reasoning = update.reasoning

    # Recovery

    def recover(self) -> None:
        """Reconcile persisted traces with the queue after a restart."""
        self._traces = self.store.load_traces()
        pending = self.store.get_pending()
        queued = {action.action_id for action in pending}
        mapped = set(self.store.get_all_task_mappings())
        for trace in self._traces.values():
            for step in trace.steps:
                if step.status == "running":
                    if step.action_id in queued:
                        # The action may have run partially; never run it twice.
                        self.store.remove_pending(step.action_id)
                        queued.discard(step.action_id)
                        self._mark_failed(step, "interrupted before completion")
                    elif step.action != WORKFLOW or step.action_id not in mapped:
                        self._mark_failed(step, "interrupted")
                elif step.status == "pending" and step.action_id not in queued:
                    self._mark_failed(step, "orphaned: no queued action")
        for action in pending:
            if action.action_id in queued:
                self._ensure_step(action)
        self._recovered = True
        self._save_traces()

    @staticmethod
    def _mark_failed(step: ActionStep, reasoning: str) -> None:
        logger.warning("Marking step %s (%s) failed: %s", step.action_id, step.action, reasoning)
        step.status = "failed"
        step.reasoning = reasoning
        step.timestamp = utcnow_iso()

    # Monitors

    def _monitor_context(self) -> MonitorContext:
        return MonitorContext(
            store=self.store,
            project_path=self.project_path,
            traces=self._traces,
            config=self.config,
            owner=self.owner,
            repo=self.repo,
            project=self.project,
            verbose=self.verbose,
        )

    def _apply_mutations(self, source: str, mutations: TraceMutations) -> None:
        for pending in mutations.enqueued:
            self.store.add_pending(pending)
            log_enqueued(self.store, pending, source)
        for update in mutations.updates:
            trace = self._traces.get(update.trace_id)
            if trace is None:
                continue
            self._apply_updates(trace, update.step_updates)
            for new_step in update.new_steps:
                if trace.find_step(new_step.action_id) is None:
                    trace.steps.append(new_step)
        self._save_traces()

    def run_monitors(self) -> None:
        ctx = self._monitor_context()
        for action_type, step in self.steps.items():
            try:
                mutations = step.monitor(ctx)
            except StoreError:
                raise
            except COLLABORATOR_ERRORS as exc:
                logger.warning("Monitor for %s failed: %s", action_type, exc)
                continue
            except Exception:
                logger.exception("Monitor for %s raised", action_type)
                continue
            if mutations is not None:
                self._apply_mutations(action_type, mutations)

    # Dispatch

    def tick(self) -> int:
        """Run monitors and dispatch what is eligible; returns how many actions started."""
        if not self._recovered:
            self.recover()
        self.run_monitors()
        return self._dispatch()

    def _dispatch(self) -> int:
        pending = self.store.get_pending()
        queue_ids = tuple(action.action_id for action in pending)
        if queue_ids != self._last_queue:
            self._deferred.clear()
            self._last_queue = queue_ids
        self._sync_queue(pending)

        groups: dict[str, list[PendingAction]] = {}
        for action in pending:
            groups.setdefault(action.action, []).append(action)

        started = 0
        for action_type, actions in groups.items():
            step = self.steps.get(action_type)
            if step is None:
                if action_type not in self._warned_types:
                    logger.warning("No step registered for action type %r; skipping", action_type)
                    self._warned_types.add(action_type)
                continue
            in_flight = self._in_flight.setdefault(action_type, {})
            slots = step.config.max_parallel - len(in_flight)
            busy_keys = {key for key in in_flight.values() if key is not None}
            for action in actions:
                if slots <= 0:
                    break
                if action.action_id in in_flight or action.action_id in self._deferred:
                    continue
                try:
                    key = step.config.dedup_key(action)
                except Exception:
                    logger.exception("Dedup key for action %s failed", action.action_id)
                    continue
                if key is not None and key in busy_keys:
                    continue
                in_flight[action.action_id] = key
                if key is not None:
                    busy_keys.add(key)
                slots -= 1
                started += 1
                self._start(step, action)
        return started

    def _start(self, step: Step, pending: PendingAction) -> None:
        action_step = self._ensure_step(pending)
        action_step.status = "running"
        action_step.timestamp = utcnow_iso()
        self._save_traces()
        self._publish_status(step.config.action_type)
        task = asyncio.get_running_loop().create_task(
            self._run_step(step, pending),
            name=f"{pending.action}-{pending.action_id[:8]}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _missing_prerequisite(self, step: Step) -> str | None:
        if step.dependencies.needs_owner_repo and not (self.owner and self.repo):
            return "owner/repo could not be resolved"
        if step.dependencies.needs_project_manager and self.project is None:
            return "no project manager available"
        return None

    def _step_context(self, trace: ActionTrace) -> StepContext:
        return StepContext(
            store=self.store,
            project_id=self.project_id,
            project_path=self.project_path,
            trace=trace,
            config=self.config,
            tool=self.tool,
            git=self.git,
            github=self.github,
            owner=self.owner,
            repo=self.repo,
            project=self.project,
            verbose=self.verbose,
        )

    async def _run_step(self, step: Step, pending: PendingAction) -> None:
        action_type = step.config.action_type
        try:
            await self._process(step, pending)
        except StoreError as exc:
            logger.error("Persistence failure while running %s: %s", action_type, exc)
            if self._fatal is None:
                self._fatal = exc
        finally:
            self._in_flight.get(action_type, {}).pop(pending.action_id, None)
            self._publish_status(action_type)
            if self._wake is not None:
                self._wake.set()

    def _abort(self, step: Step, pending: PendingAction, summary: str, *, error: bool) -> None:
        action_type = step.config.action_type
        span = SpanWriter(self.store, action_type, pending.span_id, {"error": summary})
        if error:
            span.error(f"{action_type}: {summary}")
        else:
            span.fail(f"{action_type}: {summary}")
        self.store.remove_pending(pending.action_id)
        self._finish(
            pending,
            StepResult(span_id=span.id, terminal=True, reasoning=summary, status="failed"),
        )

    async def _process(self, step: Step, pending: PendingAction) -> None:
        action_type = step.config.action_type
        trace = self._trace_for(pending)
        status = self._statuses.setdefault(action_type, StepTypeStatus())

        missing = self._missing_prerequisite(step)
        if missing is not None:
            status.processed_count += 1
            self._abort(step, pending, f"missing prerequisite: {missing}", error=False)
            return

        try:
            result = await step.process(pending, self._step_context(trace))
        except StoreError:
            raise
        except Exception as exc:
            logger.exception("Step %s failed on action %s", action_type, pending.action_id)
            status.processed_count += 1
            self._error_types.add(action_type)
            self._abort(step, pending, str(exc) or type(exc).__name__, error=True)
            return

        status.processed_count += 1
        self._error_types.discard(action_type)
        if result.status == "pending":
            self._deferred.add(pending.action_id)
            action_step = self._ensure_step(pending)
            action_step.status = "pending"
            self._save_traces()
            return

        successors = [
            enqueued.to_pending(chain_id=pending.chain_id, trace_id=pending.trace_id)
            for enqueued in result.enqueued_actions
        ]
        self.store.complete_pending(pending.action_id, successors)
        for successor in successors:
            log_enqueued(self.store, successor, action_type)
        self._finish(pending, result, successors)

    def _finish(
        self,
        pending: PendingAction,
        result: StepResult,
        successors: list[PendingAction] | None = None,
    ) -> None:
        action_step = self._ensure_step(pending)
        action_step.status = RESULT_STEP_STATUS.get(result.status, "failed")
        action_step.timestamp = utcnow_iso()
        action_step.terminal = result.terminal
        if result.reasoning:
            action_step.reasoning = result.reasoning
        if result.span_id:
            action_step.span_id = result.span_id
        for successor in successors or []:
            self._ensure_step(successor)
        if result.step_updates:
            self._apply_updates(self._trace_for(pending), result.step_updates)
        self._save_traces()

    # Lifecycle

    def request_drain(self) -> None:
        """Wake the scheduling loop without waiting for the fallback interval."""
        if self._wake is not None:
            self._wake.set()

    async def start(self) -> None:
        if self._loop_task is not None:
            return
        self._stopping = False
        self._wake = asyncio.Event()
        self.recover()
        self._loop_task = asyncio.get_running_loop().create_task(
            self._run_loop(), name="autopilot-orchestrator"
        )

    async def _run_loop(self) -> None:
        while not self._stopping and self._fatal is None:
            self._wake.clear()
            try:
                self.tick()
            except StoreError as exc:
                logger.error("Persistence failure during tick: %s", exc)
                self._fatal = exc
                break
            except Exception:
                # Only persistence failures stop scheduling.
                logger.exception("Scheduling tick failed")
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.fallback_interval)
            except TimeoutError:
                # Timer ticks give deferred actions another chance.
                self._deferred.clear()

    async def stop(self) -> None:
        """Stop scheduling and let in-flight steps finish."""
        self._stopping = True
        if self._wake is not None:
            self._wake.set()
        if self._loop_task is not None:
            loop_task, self._loop_task = self._loop_task, None
            await loop_task
        if self._tasks:
            await asyncio.gather(*list(self._tasks))
        if self._fatal is not None:
            raise self._fatal

    async def run_forever(self) -> None:
        await self.start()
        try:
            if self._loop_task is not None:
                await asyncio.shield(self._loop_task)
        finally:
            await self.stop()

    async def run_until_idle(self) -> None:
        """Drain until nothing is in flight and nothing more can be dispatched."""
        while self._fatal is None:
            started = self.tick()
            if self._tasks:
                await asyncio.wait(set(self._tasks), return_when=asyncio.FIRST_COMPLETED)
                continue
            if started:
                continue
            if self.project is not None and self.project.has_running():
                await self.project.wait_for_running()
                continue
            break
        if self._fatal is not None:
            raise self._fatal
