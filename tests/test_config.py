import tomllib
from pathlib import Path

import pytest

from autopilot import __version__
from autopilot.config import AutopilotConfig, ConfigError, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "autopilot.toml"
    config = AutopilotConfig.default()
    config.project.name = "autopilot-test"
    config.project.data_dir = ".state"
    config.backend.primary = "codex"
    config.backend.max_retries = 3
    config.agents.fast_model = "haiku-latest"
    config.orchestrator.fallback_interval_seconds = 5.5
    config.steps.workflow = 1
    config.workflow.max_retries = 2
    config.workflow.attribution = False
    config.workflow.branch_prefix = "bot/task"
    config.events.cursor_max_ids = 50
    config.logging.level = "DEBUG"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.project.name == "autopilot-test"
    assert loaded.project.data_dir == ".state"
    assert loaded.backend.primary == "codex"
    assert loaded.backend.fallback == "codex"
    assert loaded.backend.max_retries == 3
    assert loaded.agents.fast_model == "haiku-latest"
    assert loaded.orchestrator.fallback_interval_seconds == 5.5
    assert loaded.steps.workflow == 1
    assert loaded.workflow.max_retries == 2
    assert loaded.workflow.attribution is False
    assert loaded.workflow.branch_prefix == "bot/task"
    assert loaded.events.cursor_max_ids == 50
    assert loaded.logging.level == "DEBUG"


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(AutopilotConfig.default())

    for section in (
        "project",
        "backend",
        "agents",
        "orchestrator",
        "steps",
        "workflow",
        "events",
        "logging",
    ):
        assert f"[{section}]" in rendered
    assert "retry_backoff_seconds = 0.5" in rendered
    assert 'branch_prefix = "rover/task"' in rendered
    assert "fallback_interval_seconds = 30.0" in rendered


def test_missing_config_file_uses_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.toml")

    assert config.workflow.max_running_tasks == 3
    assert config.steps.max_parallel("notify") == 5
    assert config.steps.max_parallel("unknown") == 1


def test_invalid_config_raises_config_error(tmp_path: Path) -> None:
    config_path = tmp_path / "autopilot.toml"
    config_path.write_text("[workflow]\nmax_parallel_tasks = 3\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(config_path)

    config_path.write_text("[workflow\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(config_path)


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
