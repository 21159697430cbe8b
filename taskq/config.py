"""Three-layer config loading and merging."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .notifier import DEFAULT_EVENTS

CONFIG_DIR = ".taskq"


# ---------------------------------------------------------------------------
# Config dataclasses
# ---------------------------------------------------------------------------

@dataclass
class SchedulerConfig:
    default_mode: str = "prefer-analysed"


@dataclass
class NotifyConfig:
    webhook_url: str = ""
    events: list[str] = field(default_factory=lambda: list(DEFAULT_EVENTS))


@dataclass
class AnalysisConfig:
    auto_approve_splits: bool = False
    # Tasks at or above this effort are flagged as split candidates.
    split_threshold_effort: str = "XL"
    question_timeout_hours: float | None = None


@dataclass
class LoggingConfig:
    level: str = "INFO"
    dir: str = ".taskq/logs"


@dataclass
class Config:
    task_dir: str = ".taskq/tasks"
    control_dir: str = ".taskq/control"
    lock_timeout_sec: float = 10.0
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    notify: NotifyConfig = field(default_factory=NotifyConfig)
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    project_root: str = ""

    def _resolve(self, value: str) -> Path:
        path = Path(value).expanduser()
        if path.is_absolute():
            return path
        return Path(self.project_root) / path

    @property
    def task_path(self) -> Path:
        return self._resolve(self.task_dir)

    @property
    def control_path(self) -> Path:
        return self._resolve(self.control_dir)

    @property
    def log_path(self) -> Path:
        return self._resolve(self.logging.dir)


# ---------------------------------------------------------------------------
# Deep merge
# ---------------------------------------------------------------------------

def deep_merge(base: dict, override: dict) -> dict:
    """Field-level deep merge. Lists are replaced, None values ignored."""
    result = dict(base)
    for key, value in override.items():
        if value is None:
            continue
        if (
            key in result
            and isinstance(result[key], dict)
            and isinstance(value, dict)
        ):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


# ---------------------------------------------------------------------------
# Dict → Config mapping
# ---------------------------------------------------------------------------

def _dict_to_config(data: dict, project_root: str) -> Config:
    cfg = Config(project_root=project_root)

    if "task_dir" in data:
        cfg.task_dir = str(data["task_dir"])
    if "control_dir" in data:
        cfg.control_dir = str(data["control_dir"])
    if "lock_timeout_sec" in data:
        cfg.lock_timeout_sec = float(data["lock_timeout_sec"])

    if "scheduler" in data and isinstance(data["scheduler"], dict):
        s = data["scheduler"]
        cfg.scheduler = SchedulerConfig(
            default_mode=s.get("default_mode", cfg.scheduler.default_mode),
        )

    if "notify" in data and isinstance(data["notify"], dict):
        n = data["notify"]
        cfg.notify = NotifyConfig(
            webhook_url=n.get("webhook_url", "") or "",
            events=n.get("events", cfg.notify.events),
        )

    if "analysis" in data and isinstance(data["analysis"], dict):
        a = data["analysis"]
        timeout = a.get("question_timeout_hours")
        cfg.analysis = AnalysisConfig(
            auto_approve_splits=bool(a.get("auto_approve_splits", False)),
            split_threshold_effort=str(a.get("split_threshold_effort", "XL")),
            question_timeout_hours=float(timeout) if timeout is not None else None,
        )

    if "logging" in data and isinstance(data["logging"], dict):
        lg = data["logging"]
        cfg.logging = LoggingConfig(
            level=str(lg.get("level", cfg.logging.level)).upper(),
            dir=lg.get("dir", cfg.logging.dir),
        )

    return cfg


def _read_yaml(path: Path, strict: bool) -> dict:
    if not path.exists():
        return {}
    parsed = yaml.safe_load(path.read_text())
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        if strict:
            raise ValueError(
                f"Invalid {path.name}: expected mapping, got {type(parsed).__name__}"
            )
        return {}
    return parsed


# ---------------------------------------------------------------------------
# Load config (3-layer)
# ---------------------------------------------------------------------------

def load_config(project_root: str | Path) -> Config:
    """Load and merge config from up to 3 layers.

    Priority (highest first):
      1. Environment variables (TASKQ_*)
      2. .taskq/local.config.yaml
      3. .taskq/config.yaml
    """
    project_root = Path(project_root)
    config_dir = project_root / CONFIG_DIR

    base_data = _read_yaml(config_dir / "config.yaml", strict=True)
    local_data = _read_yaml(config_dir / "local.config.yaml", strict=False)

    merged = deep_merge(base_data, local_data)
    cfg = _dict_to_config(merged, str(project_root))

    env_task_dir = os.environ.get("TASKQ_TASK_DIR")
    if env_task_dir:
        cfg.task_dir = env_task_dir

    env_control_dir = os.environ.get("TASKQ_CONTROL_DIR")
    if env_control_dir:
        cfg.control_dir = env_control_dir

    env_webhook = os.environ.get("TASKQ_WEBHOOK_URL")
    if env_webhook:
        cfg.notify.webhook_url = env_webhook

    env_level = os.environ.get("TASKQ_LOG_LEVEL")
    if env_level:
        cfg.logging.level = env_level.upper()

    return cfg
