"""Tests for three-layer config loading and merging."""

import pytest

from taskq.config import deep_merge, load_config


# --- Three-layer merge ---

def test_load_default_config(tmp_project):
    """Load config.yaml correctly."""
    config = load_config(tmp_project)
    assert config.lock_timeout_sec == 5.0
    assert config.scheduler.default_mode == "prefer-analysed"
    assert config.notify.events == ["task.done"]
    assert config.logging.level == "DEBUG"
    assert config.task_path == tmp_project / ".taskq" / "tasks"


def test_missing_config_uses_defaults(tmp_path):
    config = load_config(tmp_path)
    assert config.task_dir == ".taskq/tasks"
    assert "steering.abort" in config.notify.events


def test_local_overrides_base(tmp_project):
    """local.config.yaml overrides config.yaml field-by-field."""
    (tmp_project / ".taskq" / "local.config.yaml").write_text("""\
notify:
  webhook_url: https://hooks.example.com/me
scheduler:
  default_mode: todo
""")
    config = load_config(tmp_project)
    assert config.notify.webhook_url == "https://hooks.example.com/me"
    assert config.scheduler.default_mode == "todo"
    # Un-overridden fields keep original values
    assert config.notify.events == ["task.done"]


def test_env_var_overrides_all(tmp_project, monkeypatch):
    """Environment variables have highest priority."""
    (tmp_project / ".taskq" / "local.config.yaml").write_text("notify:\n  webhook_url: https://local\n")
    monkeypatch.setenv("TASKQ_WEBHOOK_URL", "https://env")
    monkeypatch.setenv("TASKQ_TASK_DIR", "/srv/tasks")
    monkeypatch.setenv("TASKQ_LOG_LEVEL", "warning")
    config = load_config(tmp_project)
    assert config.notify.webhook_url == "https://env"
    assert str(config.task_path) == "/srv/tasks"
    assert config.logging.level == "WARNING"


def test_invalid_base_config(tmp_project):
    (tmp_project / ".taskq" / "config.yaml").write_text("- just\n- a list\n")
    with pytest.raises(ValueError):
        load_config(tmp_project)


def test_invalid_local_config_ignored(tmp_project):
    (tmp_project / ".taskq" / "local.config.yaml").write_text("oops\n")
    config = load_config(tmp_project)
    assert config.lock_timeout_sec == 5.0


# --- deep_merge ---

def test_deep_merge_nested():
    base = {"a": {"b": 1, "c": 2}, "d": [1, 2]}
    override = {"a": {"c": 3}, "d": [9], "e": None}
    assert deep_merge(base, override) == {"a": {"b": 1, "c": 3}, "d": [9]}


# --- Analysis settings ---

def test_analysis_defaults(tmp_project):
    analysis = load_config(tmp_project).analysis
    assert analysis.auto_approve_splits is False
    assert analysis.split_threshold_effort == "XL"
    assert analysis.question_timeout_hours is None


def test_analysis_section(tmp_project):
    (tmp_project / ".taskq" / "local.config.yaml").write_text("""\
analysis:
  auto_approve_splits: true
  split_threshold_effort: L
  question_timeout_hours: 12
""")
    analysis = load_config(tmp_project).analysis
    assert analysis.auto_approve_splits is True
    assert analysis.split_threshold_effort == "L"
    assert analysis.question_timeout_hours == 12.0
