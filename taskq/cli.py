"""taskq CLI — typer-based command interface."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import typer
import yaml

app = typer.Typer(
    name="taskq",
    help="taskq — task queue and steering channel for coding agents",
    no_args_is_help=True,
)

# -------------------------------------------------------------------
# Templates
# -------------------------------------------------------------------

DEFAULT_CONFIG_TEMPLATE = """\
# .taskq/config.yaml — team-shared configuration
task_dir: .taskq/tasks
control_dir: .taskq/control
lock_timeout_sec: 10

scheduler:
  # prefer-analysed | analysed | todo
  default_mode: prefer-analysed

notify:
  webhook_url: ""
  events:
    - task.done
    - task.needs_input
    - task.skipped
    - task.cancelled
    - steering.abort

analysis:
  auto_approve_splits: false
  # XS | S | M | L | XL
  split_threshold_effort: XL
  # question_timeout_hours: 24

logging:
  level: INFO
  dir: .taskq/logs
"""

DEFAULT_LOCAL_CONFIG_TEMPLATE = """\
# .taskq/local.config.yaml — personal overrides (DO NOT commit)
# notify:
#   webhook_url: https://hooks.example.com/taskq
"""

GITIGNORE_ENTRIES = [
    ".taskq/local.config.yaml",
    ".taskq/logs/",
    ".taskq/control/",
    ".taskq/tasks/.locks/",
]

STATUS_ICONS = {
    "todo": "⏳", "analysing": "🔍", "needs-input": "❓", "analysed": "📋",
    "in-progress": "🔄", "done": "✅", "split": "🔀", "skipped": "⏭️",
    "cancelled": "❌",
}


# -------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------

def _get_project_root() -> Path:
    return Path.cwd()


def _load():
    from .config import load_config
    return load_config(_get_project_root())


def _get_dispatcher():
    from .dispatcher import ToolDispatcher
    from .notifier import Notifier
    from .steering import SteeringChannel
    from .store import TaskStore

    config = _load()
    store = TaskStore(config.task_path, lock_timeout=config.lock_timeout_sec)
    steering = SteeringChannel(config.control_path, lock_timeout=config.lock_timeout_sec)
    notifier = Notifier(config.notify.webhook_url, config.notify.events)
    return ToolDispatcher(
        store, steering, notifier,
        source="cli", default_mode=config.scheduler.default_mode,
        analysis=config.analysis,
    )


def _run_tool(name: str, args: dict | None = None):
    """Dispatch a tool; print errors and exit 1 on failure."""
    env = _get_dispatcher().dispatch(name, args or {})
    for warning in env.warnings:
        typer.echo(f"  ⚠️  {warning}", err=True)
    if not env.ok:
        for error in env.errors:
            typer.echo(f"  ❌ [{error['code']}] {error['message']}", err=True)
        raise typer.Exit(1)
    return env


def _read_structured(path: Path):
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        return json.loads(text)
    return yaml.safe_load(text)


def _print_task_row(task: dict) -> None:
    icon = STATUS_ICONS.get(task["status"], "  ")
    typer.echo(
        f"  {icon} {task['id'][:8]}  p{task['priority']:<4} {task['effort']:<3} "
        f"{task['status']:<12} {task['name']}"
    )


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log to the console"),
):
    """Configure logging for every command."""
    from .logging_setup import setup_logging

    try:
        config = _load()
    except (ValueError, yaml.YAMLError):
        setup_logging(console_level=logging.INFO if verbose else logging.WARNING)
        return
    log_dir = config.log_path if (_get_project_root() / ".taskq").is_dir() else None
    setup_logging(
        log_dir=log_dir,
        console_level=logging.INFO if verbose else logging.WARNING,
        file_level=config.logging.level,
    )


# -------------------------------------------------------------------
# Commands
# -------------------------------------------------------------------

@app.command()
def init():
    """Initialize taskq in the current project."""
    root = _get_project_root()

    config_dir = root / ".taskq"
    config_dir.mkdir(exist_ok=True)

    config_path = config_dir / "config.yaml"
    if not config_path.exists():
        config_path.write_text(DEFAULT_CONFIG_TEMPLATE)
        typer.echo(f"  Created {config_path.relative_to(root)}")
    else:
        typer.echo(f"  Exists  {config_path.relative_to(root)}")

    local_path = config_dir / "local.config.yaml"
    if not local_path.exists():
        local_path.write_text(DEFAULT_LOCAL_CONFIG_TEMPLATE)
        typer.echo(f"  Created {local_path.relative_to(root)}")

    from .store import TaskStore
    config = _load()
    store = TaskStore(config.task_path)
    store.init()
    pruned = store.prune_locks()
    if pruned:
        typer.echo(f"  Pruned {pruned} stale lock file(s)")
    (config.control_path / "processes").mkdir(parents=True, exist_ok=True)
    typer.echo(f"  Task directories ready under {config.task_dir}/")

    gitignore_path = root / ".gitignore"
    existing = ""
    if gitignore_path.exists():
        existing = gitignore_path.read_text()
    additions = [e for e in GITIGNORE_ENTRIES if e not in existing]
    if additions:
        with open(gitignore_path, "a") as f:
            if existing and not existing.endswith("\n"):
                f.write("\n")
            f.write("# taskq\n")
            for entry in additions:
                f.write(f"{entry}\n")
        typer.echo("  Updated .gitignore")

    typer.echo("\n  taskq initialized. Run `taskq create --help` to add tasks.")


@app.command("list")
def list_tasks(
    status: list[str] = typer.Option(None, "--status", "-s", help="Filter by status (repeatable)"),
    category: list[str] = typer.Option(None, "--category", "-c", help="Filter by category"),
    limit: int = typer.Option(None, "--limit", "-n", help="Maximum number of tasks"),
):
    """List tasks by ascending priority."""
    args = {"status": status or None, "category": category or None, "limit": limit}
    env = _run_tool("task_list", args)
    tasks = env.data["tasks"]
    if not tasks:
        typer.echo("  No tasks found.")
        return
    for task in tasks:
        _print_task_row(task)


@app.command()
def show(task_id: str = typer.Argument(..., help="Task ID")):
    """Show one task."""
    env = _run_tool("task_get_by_id", {"task_id": task_id})
    task = env.data
    typer.echo(f"\n  {task['name']}")
    typer.echo(f"  ID: {task['id']}")
    typer.echo(f"  Status: {task['status']}")
    typer.echo(f"  Category: {task['category']} · Effort: {task['effort']} · Priority: {task['priority']}")
    typer.echo(f"  Deps: {', '.join(task['dependencies']) if task['dependencies'] else '—'}")
    if task["description"]:
        typer.echo(f"\n  {task['description']}")
    if task["acceptance_criteria"]:
        typer.echo("\n  Acceptance criteria:")
        for item in task["acceptance_criteria"]:
            typer.echo(f"    - {item}")
    if task["skip_history"]:
        typer.echo("\n  Skip history:")
        for skip in task["skip_history"]:
            typer.echo(f"    [{skip['skipped_at']}] {skip['reason']}")
    typer.echo("")


@app.command("next")
def next_task(
    mode: str = typer.Option(None, "--mode", "-m", help="prefer-analysed | analysed | todo"),
):
    """Show the task an agent should pick up next."""
    env = _run_tool("task_get_next", {"mode": mode})
    typer.echo(f"  {env.summary}")
    if env.data["task"]:
        _print_task_row(env.data["task"])


@app.command()
def stats():
    """Show queue statistics and remaining effort."""
    env = _run_tool("task_get_stats")
    data = env.data
    typer.echo("\n  taskq — Queue Overview")
    typer.echo("  " + "─" * 40)
    for status_name, count in data["counts"].items():
        icon = STATUS_ICONS.get(status_name, "  ")
        typer.echo(f"  {icon} {status_name:<12} {count}")
    typer.echo("  " + "─" * 40)
    typer.echo(f"  Total: {data['total']} · Complete: {data['completion_percent']}%")
    typer.echo(f"  Blocked: {data['blocked']} · Remaining: {data['remaining_effort_days']:g} day(s)")
    typer.echo("")


@app.command()
def create(
    name: str = typer.Option(None, "--name", help="Task title"),
    description: str = typer.Option(None, "--description", "-d"),
    category: str = typer.Option("feature", "--category", "-c"),
    priority: int = typer.Option(50, "--priority", "-p"),
    effort: str = typer.Option("M", "--effort", "-e"),
    depends: list[str] = typer.Option(None, "--depends", help="Dependency id/name/slug (repeatable)"),
    file: Path = typer.Option(None, "--file", "-f", help="YAML/JSON list of tasks to create in bulk"),
):
    """Create one task, or many from a file."""
    if file is not None:
        entries = _read_structured(file)
        if isinstance(entries, dict) and "tasks" in entries:
            entries = entries["tasks"]
        env = _run_tool("task_create_bulk", {"tasks": entries})
        for task in env.data["created"]:
            typer.echo(f"  Created {task['id'][:8]} {task['name']}")
        typer.echo(f"  {env.summary}")
        return

    env = _run_tool("task_create", {
        "name": name,
        "description": description,
        "category": category,
        "priority": priority,
        "effort": effort,
        "dependencies": depends or [],
    })
    typer.echo(f"  {env.summary}")


@app.command()
def analyse(task_id: str = typer.Argument(..., help="Task ID")):
    """Mark a todo task as being analysed."""
    typer.echo(f"  {_run_tool('task_mark_analysing', {'task_id': task_id}).summary}")


@app.command()
def analysed(
    task_id: str = typer.Argument(..., help="Task ID"),
    file: Path = typer.Option(..., "--file", "-f", help="YAML/JSON analysis document"),
    by: str = typer.Option(None, "--by", help="Who produced the analysis"),
):
    """Attach an analysis and mark the task analysed."""
    args = {"task_id": task_id, "analysis": _read_structured(file), "analysed_by": by}
    typer.echo(f"  {_run_tool('task_mark_analysed', args).summary}")


@app.command()
def start(task_id: str = typer.Argument(..., help="Task ID")):
    """Mark a task in progress."""
    typer.echo(f"  {_run_tool('task_mark_in_progress', {'task_id': task_id}).summary}")


@app.command()
def done(
    task_id: str = typer.Argument(..., help="Task ID"),
    commit: str = typer.Option(None, "--commit", help="Commit SHA"),
):
    """Mark an in-progress task done."""
    args = {"task_id": task_id, "commit_sha": commit}
    typer.echo(f"  ✅ {_run_tool('task_mark_done', args).summary}")


@app.command()
def skip(
    task_id: str = typer.Argument(..., help="Task ID"),
    reason: str = typer.Option(..., "--reason", "-r"),
):
    """Skip a task, recording why."""
    args = {"task_id": task_id, "reason": reason}
    typer.echo(f"  ⏭️  {_run_tool('task_mark_skipped', args).summary}")


@app.command()
def cancel(
    task_id: str = typer.Argument(..., help="Task ID"),
    reason: str = typer.Option(None, "--reason", "-r"),
):
    """Cancel a task."""
    args = {"task_id": task_id, "reason": reason}
    typer.echo(f"  {_run_tool('task_mark_cancelled', args).summary}")


@app.command()
def requeue(task_id: str = typer.Argument(..., help="Task ID")):
    """Send a skipped or cancelled task back to todo."""
    typer.echo(f"  {_run_tool('task_requeue', {'task_id': task_id}).summary}")


@app.command()
def answer(
    task_id: str = typer.Argument(..., help="Task ID"),
    text: str = typer.Argument(..., help="Answer to the pending question"),
):
    """Answer a needs-input task's pending question."""
    args = {"task_id": task_id, "answer": text}
    typer.echo(f"  {_run_tool('task_answer_question', args).summary}")


@app.command()
def whisper(
    process_id: str = typer.Argument(..., help="Process ID"),
    instruction: str = typer.Argument(..., help="Instruction for the agent"),
    priority: str = typer.Option("normal", "--priority", "-p", help="normal | urgent | abort"),
):
    """Send an instruction to a running agent process."""
    args = {"process_id": process_id, "instruction": instruction, "priority": priority}
    typer.echo(f"  {_run_tool('steering_whisper', args).summary}")


@app.command()
def heartbeat(
    process_id: str = typer.Argument(..., help="Process ID"),
    status: str = typer.Option("", "--status", help="What the process is doing"),
    next_action: str = typer.Option("", "--next", help="What it will do next"),
):
    """Report liveness and print whispers received since the last heartbeat."""
    args = {"process_id": process_id, "status": status, "next_action": next_action}
    env = _run_tool("steering_heartbeat", args)
    typer.echo(f"  {env.summary}")
    for w in env.data["whispers"]:
        typer.echo(f"  [{w['priority']}] {w['instruction']}")


@app.command()
def processes():
    """List known agent processes."""
    env = _run_tool("steering_list_processes")
    records = env.data["processes"]
    if not records:
        typer.echo("  No processes found.")
        return
    for p in records:
        typer.echo(
            f"  {p['id']:<30} {p['status']:<8} last={p['last_heartbeat']} "
            f"{p['heartbeat_status']}"
        )


@app.command()
def deps():
    """Show the task dependency graph in execution order."""
    from .deps import build_graph, topological_order
    from .errors import DependencyCycleError
    from .store import TaskStore

    config = _load()
    snap = TaskStore(config.task_path).scan()
    if not snap.tasks:
        typer.echo("  No tasks found.")
        return

    graph = build_graph(snap.tasks)
    try:
        order = topological_order(graph)
    except DependencyCycleError as e:
        typer.echo(f"  DAG Error: {e}", err=True)
        raise typer.Exit(1)

    names = {t.id: t.name for t in snap.tasks}
    typer.echo("\n  Task Dependency Graph")
    typer.echo("  " + "─" * 40)
    for node in order:
        parents = graph.get(node, set())
        if parents:
            typer.echo(f"  {names[node]} ← {', '.join(sorted(names[p] for p in parents))}")
        else:
            typer.echo(f"  {names[node]} (root)")
    typer.echo("")


@app.command("repair-deps")
def repair_deps(
    apply: bool = typer.Option(False, "--apply", help="Rewrite references instead of only listing"),
    cutoff: float = typer.Option(0.75, "--cutoff", help="Minimum similarity for a proposal"),
):
    """Propose (and optionally apply) fixes for dangling dependency references."""
    from .repair import apply_dependency_fixes, propose_dependency_fixes
    from .store import TaskStore

    config = _load()
    store = TaskStore(config.task_path, lock_timeout=config.lock_timeout_sec)
    fixes = propose_dependency_fixes(store.scan(), cutoff=cutoff)
    if not fixes:
        typer.echo("  All dependency references resolve.")
        return

    for fix in fixes:
        target = f"'{fix.new}'" if fix.new else "—"
        typer.echo(f"  {fix.task_name}: '{fix.old}' → {target}  ({fix.reason})")

    if apply:
        updated = apply_dependency_fixes(store, fixes)
        typer.echo(f"\n  Updated {len(updated)} task(s).")
    else:
        typer.echo("\n  Dry run. Re-run with --apply to rewrite references.")


@app.command()
def call(
    tool: str = typer.Argument(..., help="Tool name, e.g. task_get_next"),
    arguments: str = typer.Argument("{}", help="JSON object of arguments"),
):
    """Dispatch a tool and print its JSON envelope."""
    try:
        args = json.loads(arguments)
    except json.JSONDecodeError as e:
        typer.echo(f"  Invalid JSON arguments: {e}", err=True)
        raise typer.Exit(2)
    env = _get_dispatcher().dispatch(tool, args)
    typer.echo(json.dumps(env.to_dict(), indent=2, ensure_ascii=False))
    if not env.ok:
        raise typer.Exit(1)


@app.command("config")
def config_show():
    """Show merged configuration."""
    from dataclasses import asdict

    config = _load()
    typer.echo("\n  taskq — Merged Configuration")
    typer.echo("  " + "─" * 40)
    typer.echo(yaml.dump(asdict(config), default_flow_style=False, allow_unicode=True))


if __name__ == "__main__":
    app()
