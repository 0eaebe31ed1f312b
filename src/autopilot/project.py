from __future__ import annotations

import asyncio
import functools
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from autopilot.backends.base import BackendExecutionError
from autopilot.models import utcnow_iso
from autopilot.reasoning import ReasoningTool, load_prompt

logger = logging.getLogger(__name__)

TaskStatus = Literal["NEW", "IN_PROGRESS", "ITERATING", "COMPLETED", "FAILED"]
ACTIVE_STATUSES = frozenset({"IN_PROGRESS", "ITERATING"})
FINISHED_STATUSES = frozenset({"COMPLETED", "FAILED"})

WORKFLOW_GOALS = {
    "swe": "Implement the change end to end: code, tests and any docs it needs.",
    "code-review": "Review the referenced code and write actionable findings.",
    "bug-finder": "Locate the root cause of the reported problem and fix it with a test.",
    "security-analyst": "Audit the referenced code for security issues and fix what you find.",
}
WORKER_TOOLS = ["Bash", "Read", "Edit", "Write", "Glob", "Grep"]


class ProjectError(RuntimeError):
    """Raised when task files cannot be read or written."""


@dataclass(slots=True)
class Task:
    id: int
    title: str
    description: str
    workflow: str = "swe"
    status: TaskStatus = "NEW"
    source_branch: str | None = None
    branch_name: str | None = None
    worktree_path: str | None = None
    base_commit: str | None = None
    iterations: int = 0
    error: str | None = None
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "workflow": self.workflow,
            "status": self.status,
            "source_branch": self.source_branch,
            "branch_name": self.branch_name,
            "worktree_path": self.worktree_path,
            "base_commit": self.base_commit,
            "iterations": self.iterations,
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        return cls(
            id=int(payload["id"]),
            title=str(payload.get("title") or ""),
            description=str(payload.get("description") or ""),
            workflow=str(payload.get("workflow") or "swe"),
            status=payload.get("status") or "NEW",
            source_branch=payload.get("source_branch"),
            branch_name=payload.get("branch_name"),
            worktree_path=payload.get("worktree_path"),
            base_commit=payload.get("base_commit"),
            iterations=int(payload.get("iterations") or 0),
            error=payload.get("error"),
            created_at=str(payload.get("created_at") or ""),
            updated_at=str(payload.get("updated_at") or ""),
        )


class TaskRunner(ABC):
    @abstractmethod
    async def run(self, task: Task, iteration_dir: Path) -> None:
        """Execute one iteration and leave its outcome in ``status.json``."""


class ProjectManager:
    """File-backed tasks and their iterations.

    Layout: ``<tasks_dir>/<id>/task.json`` plus
    ``<tasks_dir>/<id>/iterations/<n>/{description.md,summary.md,status.json}``.
    """

    def __init__(self, tasks_dir: Path, repo_root: Path, runner: TaskRunner | None = None) -> None:
        self.tasks_dir = tasks_dir
        self.repo_root = repo_root.resolve()
        self.runner = runner
        self._running: dict[int, asyncio.Task[None]] = {}

    def _task_dir(self, task_id: int) -> Path:
        return self.tasks_dir / str(task_id)

    def iterations_path(self, task_id: int) -> Path:
        return self._task_dir(task_id) / "iterations"

    def workspace_path(self, task_id: int) -> Path:
        return self._task_dir(task_id) / "workspace"

    @staticmethod
    def _write_json(path: Path, payload: dict[str, Any]) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        except OSError as exc:
            raise ProjectError(f"Failed to write {path}: {exc}") from exc

    @staticmethod
    def _read_json(path: Path) -> dict[str, Any] | None:
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None
        return payload if isinstance(payload, dict) else None

    def list_tasks(self) -> list[Task]:
        if not self.tasks_dir.exists():
            return []
        tasks: list[Task] = []
        for child in self.tasks_dir.iterdir():
            if not child.is_dir() or not child.name.isdigit():
                continue
            payload = self._read_json(child / "task.json")
            if payload is not None:
                tasks.append(Task.from_dict(payload))
        return sorted(tasks, key=lambda task: task.id)

    def get_task(self, task_id: int) -> Task | None:
        payload = self._read_json(self._task_dir(task_id) / "task.json")
        if payload is None:
            return None
        return Task.from_dict(payload)

    def save_task(self, task: Task) -> None:
        task.updated_at = utcnow_iso()
        self._write_json(self._task_dir(task.id) / "task.json", task.to_dict())

    def create_task(
        self,
        title: str,
        description: str,
        *,
        workflow: str = "swe",
        source_branch: str | None = None,
    ) -> Task:
        next_id = max((task.id for task in self.list_tasks()), default=0) + 1
        now = utcnow_iso()
        task = Task(
            id=next_id,
            title=title,
            description=description,
            workflow=workflow,
            source_branch=source_branch,
            created_at=now,
            updated_at=now,
        )
        self.save_task(task)
        return task

    def start_iteration(
        self,
        task: Task,
        title: str,
        description: str,
        *,
        previous_summary: str | None = None,
    ) -> Path:
        task.iterations += 1
        iteration_dir = self.iterations_path(task.id) / str(task.iterations)
        lines = [f"# {title}", "", description.strip()]
        if previous_summary:
            lines.extend(["", "## Previous iteration", "", previous_summary.strip()])
        try:
            iteration_dir.mkdir(parents=True, exist_ok=True)
            (iteration_dir / "description.md").write_text("\n".join(lines) + "\n", encoding="utf-8")
        except OSError as exc:
            raise ProjectError(f"Failed to create iteration {iteration_dir}: {exc}") from exc
        self._write_json(
            iteration_dir / "status.json", {"status": "NEW", "updated_at": utcnow_iso()}
        )
        task.status = "IN_PROGRESS" if task.iterations == 1 else "ITERATING"
        task.error = None
        self.save_task(task)
        return iteration_dir

    def current_iteration_dir(self, task: Task) -> Path | None:
        if task.iterations < 1:
            return None
        return self.iterations_path(task.id) / str(task.iterations)

    def write_iteration_status(
        self, task: Task, status: TaskStatus, *, error: str | None = None
    ) -> None:
        iteration_dir = self.current_iteration_dir(task)
        if iteration_dir is None:
            raise ProjectError(f"Task #{task.id} has no iteration")
        payload: dict[str, Any] = {"status": status, "updated_at": utcnow_iso()}
        if error:
            payload["error"] = error
        self._write_json(iteration_dir / "status.json", payload)

    def refresh_status(self, task: Task) -> TaskStatus:
        """Copy a finished iteration's outcome from ``status.json`` onto the task."""
        iteration_dir = self.current_iteration_dir(task)
        if iteration_dir is None:
            return task.status
        payload = self._read_json(iteration_dir / "status.json")
        if payload is None:
            return task.status
        status = payload.get("status")
        if status in FINISHED_STATUSES and status != task.status:
            task.status = status
            task.error = payload.get("error") if status == "FAILED" else None
            self.save_task(task)
        return task.status

    def iteration_summaries(self, task: Task) -> list[str]:
        root = self.iterations_path(task.id)
        if not root.exists():
            return []
        numbers = sorted(int(child.name) for child in root.iterdir() if child.name.isdigit())
        summaries: list[str] = []
        for number in numbers:
            summary_file = root / str(number) / "summary.md"
            if not summary_file.exists():
                continue
            try:
                summary = summary_file.read_text(encoding="utf-8").strip()
            except OSError:
                continue
            if summary:
                summaries.append(f"Iteration {number}: {summary}")
        return summaries

    def is_running(self, task_id: int) -> bool:
        handle = self._running.get(task_id)
        return handle is not None and not handle.done()

    def launch(self, task: Task) -> bool:
        """Start the runner for the task's current iteration in the background."""
        iteration_dir = self.current_iteration_dir(task)
        if self.runner is None or iteration_dir is None:
            return False
        if self.is_running(task.id):
            return True
        handle = asyncio.get_running_loop().create_task(
            self.runner.run(task, iteration_dir), name=f"task-{task.id}"
        )
        self._running[task.id] = handle
        handle.add_done_callback(functools.partial(self._runner_done, task.id))
        return True

    def _runner_done(self, task_id: int, handle: asyncio.Task[None]) -> None:
        if self._running.get(task_id) is handle:
            del self._running[task_id]
        if handle.cancelled():
            return
        error = handle.exception()
        if error is not None:
            logger.error("Runner for task #%s raised: %s", task_id, error, exc_info=error)

    def mark_interrupted(self, task: Task) -> None:
        """Fail an active iteration whose runner no longer exists."""
        self.write_iteration_status(task, "FAILED", error="interrupted before completion")
        self.refresh_status(task)

    def has_running(self) -> bool:
        return any(not handle.done() for handle in self._running.values())

    async def wait_for_running(self) -> None:
        handles = [handle for handle in self._running.values() if not handle.done()]
        if handles:
            await asyncio.gather(*handles, return_exceptions=True)


class ReasoningTaskRunner(TaskRunner):
    """Runs an iteration by asking the reasoning tool to work inside the task worktree."""

    prompt_file = "workflow.md"
    fallback_prompt = """
You are a software engineer working inside a git worktree.
Complete the task described by the user. Do not commit or push.
Finish with a short summary of what you changed.
""".strip()

    def __init__(self, tool: ReasoningTool) -> None:
        self.tool = tool
        self.system_prompt = load_prompt(self.prompt_file, self.fallback_prompt)

    def _build_prompt(self, task: Task, iteration_dir: Path) -> str:
        description_file = iteration_dir / "description.md"
        description = (
            description_file.read_text(encoding="utf-8")
            if description_file.exists()
            else task.description
        )
        goal = WORKFLOW_GOALS.get(task.workflow, WORKFLOW_GOALS["swe"])
        return (
            f"## Workflow: {task.workflow}\n\n{goal}\n\n"
            f"## Task #{task.id}: {task.title}\n\n{description.strip()}\n"
        )

    async def run(self, task: Task, iteration_dir: Path) -> None:
        status_file = iteration_dir / "status.json"
        cwd = Path(task.worktree_path) if task.worktree_path else None
        status: dict[str, Any] = {"status": "IN_PROGRESS", "updated_at": utcnow_iso()}
        status_file.write_text(json.dumps(status, indent=2), encoding="utf-8")
        try:
            summary = await self.tool.invoke(
                self._build_prompt(task, iteration_dir),
                cwd=cwd,
                system_prompt=self.system_prompt,
                tools=WORKER_TOOLS,
            )
        except BackendExecutionError as exc:
            logger.warning("Task #%s iteration failed: %s", task.id, exc)
            status = {"status": "FAILED", "error": str(exc), "updated_at": utcnow_iso()}
        else:
            (iteration_dir / "summary.md").write_text(summary.strip() + "\n", encoding="utf-8")
            status = {"status": "COMPLETED", "updated_at": utcnow_iso()}
        status_file.write_text(json.dumps(status, indent=2), encoding="utf-8")
