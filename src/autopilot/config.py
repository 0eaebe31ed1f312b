from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["codex", "claude", "codex_sdk"]
LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

CONFIG_FILENAME = "autopilot.toml"


class ConfigError(ValueError):
    pass


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    data_dir: str = ".autopilot"


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "codex"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 600.0


@dataclass(slots=True)
class AgentsConfig:
    model: str = "sonnet"
    fast_model: str = "haiku"


@dataclass(slots=True)
class OrchestratorConfig:
    fallback_interval_seconds: float = 30.0
    verbose: bool = False


@dataclass(slots=True)
class StepsConfig:
    coordinate: int = 3
    plan: int = 2
    workflow: int = 3
    commit: int = 3
    resolve: int = 3
    push: int = 2
    notify: int = 5
    noop: int = 5

    def max_parallel(self, action_type: str) -> int:
        value = getattr(self, action_type, None)
        if not isinstance(value, int) or value < 1:
            return 1
        return value


@dataclass(slots=True)
class WorkflowConfig:
    max_running_tasks: int = 3
    max_retries: int = 3
    attribution: bool = True
    branch_prefix: str = "rover/task"


@dataclass(slots=True)
class EventsConfig:
    poll_interval_seconds: float = 60.0
    per_page: int = 25
    cursor_max_ids: int = 200


@dataclass(slots=True)
class LoggingConfig:
    level: LogLevel = "INFO"
    log_max_bytes: int = 5 * 1024 * 1024
    log_max_rotated: int = 3


@dataclass(slots=True)
class AutopilotConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    steps: StepsConfig = field(default_factory=StepsConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    events: EventsConfig = field(default_factory=EventsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> AutopilotConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> AutopilotConfig:
        try:
            return cls(
                project=ProjectConfig(**data.get("project", {})),
                backend=BackendConfig(**data.get("backend", {})),
                agents=AgentsConfig(**data.get("agents", {})),
                orchestrator=OrchestratorConfig(**data.get("orchestrator", {})),
                steps=StepsConfig(**data.get("steps", {})),
                workflow=WorkflowConfig(**data.get("workflow", {})),
                events=EventsConfig(**data.get("events", {})),
                logging=LoggingConfig(**data.get("logging", {})),
            )
        except TypeError as exc:
            raise ConfigError(f"invalid configuration: {exc}") from exc

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "data_dir": self.project.data_dir,
            },
            "backend": {
                "primary": self.backend.primary,
                "fallback": self.backend.fallback,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "agents": {
                "model": self.agents.model,
                "fast_model": self.agents.fast_model,
            },
            "orchestrator": {
                "fallback_interval_seconds": self.orchestrator.fallback_interval_seconds,
                "verbose": self.orchestrator.verbose,
            },
            "steps": {
                "coordinate": self.steps.coordinate,
                "plan": self.steps.plan,
                "workflow": self.steps.workflow,
                "commit": self.steps.commit,
                "resolve": self.steps.resolve,
                "push": self.steps.push,
                "notify": self.steps.notify,
                "noop": self.steps.noop,
            },
            "workflow": {
                "max_running_tasks": self.workflow.max_running_tasks,
                "max_retries": self.workflow.max_retries,
                "attribution": self.workflow.attribution,
                "branch_prefix": self.workflow.branch_prefix,
            },
            "events": {
                "poll_interval_seconds": self.events.poll_interval_seconds,
                "per_page": self.events.per_page,
                "cursor_max_ids": self.events.cursor_max_ids,
            },
            "logging": {
                "level": self.logging.level,
                "log_max_bytes": self.logging.log_max_bytes,
                "log_max_rotated": self.logging.log_max_rotated,
            },
        }


SECTION_ORDER = (
    "project",
    "backend",
    "agents",
    "orchestrator",
    "steps",
    "workflow",
    "events",
    "logging",
)


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: AutopilotConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in SECTION_ORDER:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> AutopilotConfig:
    if not path.exists():
        return AutopilotConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"{path}: {exc}") from exc
    return AutopilotConfig.from_dict(data)


def save_config(path: Path, config: AutopilotConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
