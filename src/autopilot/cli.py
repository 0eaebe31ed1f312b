from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from autopilot.backends import (
    ClaudeCodeBackend,
    CodexBackend,
    CodexSDKBackend,
    ResilientBackend,
    RetryPolicy,
)
from autopilot.backends.base import AgentBackend
from autopilot.config import (
    CONFIG_FILENAME,
    AutopilotConfig,
    BackendName,
    ConfigError,
    load_config,
    save_config,
)
from autopilot.events import EventWatcher, record_event
from autopilot.git import Git
from autopilot.github import GitHubClient, GitHubError
from autopilot.orchestrator import StepOrchestrator
from autopilot.project import ProjectManager, ReasoningTaskRunner
from autopilot.reasoning import ReasoningTool
from autopilot.state import AutopilotStore, StoreError
from autopilot.steps import build_steps

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: AutopilotConfig
    store: AutopilotStore
    github: GitHubClient
    project: ProjectManager
    orchestrator: StepOrchestrator
    owner: str | None = None
    repo: str | None = None


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_config_or_fail(config_path: Path) -> AutopilotConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc


def _configure_logging(config: AutopilotConfig, verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(logging, config.logging.level, logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)


def _build_store(repo_root: Path, config: AutopilotConfig) -> AutopilotStore:
    return AutopilotStore(
        repo_root / config.project.data_dir,
        log_max_bytes=config.logging.log_max_bytes,
        log_max_rotated=config.logging.log_max_rotated,
        cursor_max_ids=config.events.cursor_max_ids,
    )


def _build_single_backend(backend_name: BackendName, repo_root: Path) -> AgentBackend:
    if backend_name == "codex":
        return CodexBackend(working_directory=repo_root)
    if backend_name == "codex_sdk":
        return CodexSDKBackend(working_directory=repo_root)
    return ClaudeCodeBackend(working_directory=repo_root)


def _record_backend_event(store: AutopilotStore, event: dict[str, Any]) -> None:
    try:
        store.record_metric_event(event)
    except StoreError as exc:
        logger.warning("Could not record backend event %s: %s", event.get("event"), exc)


def _build_backend(
    config: AutopilotConfig, repo_root: Path, store: AutopilotStore
) -> ResilientBackend:
    primary_name = config.backend.primary
    fallback_name = config.backend.fallback
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(
        primary_name=primary_name,
        primary_backend=_build_single_backend(primary_name, repo_root),
        fallback_name=fallback_name,
        fallback_backend=_build_single_backend(fallback_name, repo_root),
        retry_policy=policy,
        event_hook=lambda event: _record_backend_event(store, event),
    )


def _load_runtime(repo_root: Path, config_path: Path, *, verbose: bool = False) -> Runtime:
    config = _load_config_or_fail(config_path)
    _configure_logging(config, verbose)
    store = _build_store(repo_root, config)
    tool = ReasoningTool(
        _build_backend(config, repo_root, store),
        model=config.agents.model,
        fast_model=config.agents.fast_model,
    )
    git = Git(repo_root)
    info = git.repo_info() if git.is_repo() else None
    if info is None:
        logger.warning("No GitHub remote found; steps that need owner/repo will fail")
    github = GitHubClient()
    project = ProjectManager(store.base_dir / "tasks", repo_root, ReasoningTaskRunner(tool))
    orchestrator = StepOrchestrator(
        store,
        build_steps(config),
        project_path=repo_root,
        config=config,
        tool=tool,
        git=git,
        github=github,
        owner=info.owner if info else None,
        repo=info.repo if info else None,
        project=project,
        verbose=verbose or None,
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=store,
        github=github,
        project=project,
        orchestrator=orchestrator,
        owner=info.owner if info else None,
        repo=info.repo if info else None,
    )


def _load_store(config_value: str) -> AutopilotStore:
    repo_root = Path.cwd().resolve()
    config = _load_config_or_fail(_resolve_config_path(repo_root, config_value))
    return _build_store(repo_root, config)


async def _serve(runtime: Runtime, *, poll: bool) -> None:
    orchestrator = runtime.orchestrator
    watcher = None
    if poll and runtime.owner and runtime.repo:
        watcher = EventWatcher(
            runtime.store,
            runtime.github,
            runtime.owner,
            runtime.repo,
            per_page=runtime.config.events.per_page,
        )
    await orchestrator.start()
    try:
        while orchestrator.is_running:
            if watcher is not None:
                try:
                    if await watcher.poll_once():
                        orchestrator.request_drain()
                except GitHubError as exc:
                    logger.warning("Event polling failed: %s", exc)
            await asyncio.sleep(runtime.config.events.poll_interval_seconds)
    finally:
        await orchestrator.stop()


def _print_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@click.group()
def cli() -> None:
    """Autopilot CLI."""


@cli.command("init")
@click.option(
    "--backend", type=click.Choice(["codex", "claude", "codex_sdk"]), default=None
)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def init_command(backend: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = _load_config_or_fail(config_path)
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
    save_config(config_path, config)

    store = _build_store(repo_root, config)
    try:
        store.ensure_dir()
    except StoreError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Initialized Autopilot in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.backend.primary}")
    click.echo(f"State: {store.base_dir}")


@cli.command("run")
@click.option("--no-poll", is_flag=True, default=False, help="Do not poll GitHub events.")
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def run_command(no_poll: bool, verbose: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(
        repo_root, _resolve_config_path(repo_root, config_value), verbose=verbose
    )
    click.echo(f"Watching {runtime.owner}/{runtime.repo}" if runtime.owner else "Running")
    try:
        asyncio.run(_serve(runtime, poll=not no_poll))
    except KeyboardInterrupt:
        click.echo("Stopped.")
    except StoreError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command("drain")
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def drain_command(verbose: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(
        repo_root, _resolve_config_path(repo_root, config_value), verbose=verbose
    )
    try:
        asyncio.run(runtime.orchestrator.run_until_idle())
    except StoreError as exc:
        raise click.ClickException(str(exc)) from exc
    _print_json(
        {
            "steps": runtime.orchestrator.statuses(),
            "pending": len(runtime.store.get_pending()),
        }
    )


@cli.command("status")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def status_command(config_value: str) -> None:
    store = _load_store(config_value)
    try:
        pending = store.get_pending()
        traces = store.load_traces()
    except StoreError as exc:
        raise click.ClickException(str(exc)) from exc

    queued: dict[str, int] = {}
    for action in pending:
        queued[action.action] = queued.get(action.action, 0) + 1
    _print_json(
        {
            "queue": [action.to_dict() for action in pending],
            "queued_by_type": queued,
            "traces": [
                {
                    "id": trace.id,
                    "summary": trace.summary,
                    "status": trace.status,
                    "steps": len(trace.steps),
                    "retry_count": trace.retry_count,
                }
                for trace in traces.values()
            ],
        }
    )


@cli.command("traces")
@click.option("--trace", "trace_id", default=None)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def traces_command(trace_id: str | None, config_value: str) -> None:
    store = _load_store(config_value)
    traces = store.load_traces()
    if trace_id:
        trace = traces.get(trace_id)
        if trace is None:
            raise click.ClickException(f"Trace not found: {trace_id}")
        _print_json(trace.to_dict())
        return
    if not traces:
        click.echo("No traces recorded.")
        return
    for trace in traces.values():
        click.echo(f"{trace.id} {trace.status:<9} {len(trace.steps):>2} {trace.summary}")


@cli.command("span")
@click.argument("span_id")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def span_command(span_id: str, config_value: str) -> None:
    store = _load_store(config_value)
    spans = store.get_span_trace(span_id)
    if not spans:
        raise click.ClickException(f"Span not found: {span_id}")
    for span in spans:
        click.echo(f"{span.id} {span.step:<10} {span.status:<9} {span.summary or ''}")


@cli.command("trigger")
@click.argument("summary")
@click.option("--meta", "meta_value", default="{}", help="Event metadata as a JSON object.")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def trigger_command(summary: str, meta_value: str, config_value: str) -> None:
    try:
        meta = json.loads(meta_value)
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"invalid JSON: {exc}", param_hint="--meta") from exc
    if not isinstance(meta, dict):
        raise click.BadParameter("must be a JSON object", param_hint="--meta")
    store = _load_store(config_value)
    try:
        pending = record_event(store, summary, meta)
    except StoreError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Recorded event on trace {pending.trace_id}")


@cli.command("retry")
@click.argument("trace_id")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def retry_command(trace_id: str, config_value: str) -> None:
    store = _load_store(config_value)
    try:
        trace = store.load_traces().get(trace_id)
        if trace is None:
            raise click.ClickException(f"Trace not found: {trace_id}")
        root = store.read_span(trace.root_span_id) if trace.root_span_id else None
        if root is None:
            raise click.ClickException(f"Trace {trace_id} has no recorded root event")
        pending = record_event(
            store,
            root.summary or trace.summary,
            root.meta,
            chain_id=trace.chain_id or trace.id,
        )
    except StoreError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Retrying {trace_id} as trace {pending.trace_id}")


@cli.command("backend")
@click.argument("backend_name", type=click.Choice(["codex", "claude", "codex_sdk"]))
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def backend_command(backend_name: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = _load_config_or_fail(config_path)
    config.backend.primary = backend_name  # type: ignore[assignment]
    save_config(config_path, config)
    click.echo(f"Primary backend set to {backend_name}")
