"""Shared fixtures for taskq tests."""

import json
import logging
import uuid

import pytest

from taskq.dispatcher import ToolDispatcher
from taskq.models import TaskRecord, TaskStatus, utc_now
from taskq.steering import SteeringChannel
from taskq.store import TaskStore, status_dir


@pytest.fixture(autouse=True)
def _reset_logging():
    """Drop handlers the CLI callback installs so they don't leak between tests."""
    yield
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()


@pytest.fixture
def store(tmp_path):
    """Initialized task store with every status directory present."""
    s = TaskStore(tmp_path / "tasks", lock_timeout=2)
    s.init()
    return s


@pytest.fixture
def steering(tmp_path):
    return SteeringChannel(tmp_path / "control", lock_timeout=2)


@pytest.fixture
def dispatcher(store, steering):
    return ToolDispatcher(store, steering, source="test")


@pytest.fixture
def put_task(store):
    """Write a task document straight into a status directory.

    Bypasses validation so tests can lay out arbitrary queue states.
    """

    def _put(name, status=TaskStatus.TODO, priority=50, dependencies=None, **extra):
        now = utc_now()
        task = TaskRecord(
            id=extra.pop("id", str(uuid.uuid4())),
            name=name,
            description=extra.pop("description", f"Do {name}"),
            priority=priority,
            dependencies=dependencies or [],
            status=TaskStatus(status),
            created_at=now,
            updated_at=extra.pop("updated_at", now),
            **extra,
        )
        path = status_dir(store.base_dir, task.status) / task.filename
        path.write_text(json.dumps(task.to_dict()))
        return task

    return _put


@pytest.fixture
def tmp_project(tmp_path):
    """Project with .taskq/config.yaml and initialized task directories."""
    taskq_dir = tmp_path / ".taskq"
    taskq_dir.mkdir()
    (taskq_dir / "config.yaml").write_text("""\
task_dir: .taskq/tasks
control_dir: .taskq/control
lock_timeout_sec: 5
scheduler:
  default_mode: prefer-analysed
notify:
  webhook_url: ""
  events:
    - task.done
logging:
  level: debug
  dir: .taskq/logs
""")
    TaskStore(taskq_dir / "tasks").init()
    return tmp_path
