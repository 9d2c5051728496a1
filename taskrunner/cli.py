import json
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
from rich import print
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .config import RunnerConfig, default_db_path, load_runner_config
from .errors import DuplicateId, InvalidArgument, StoreUnavailable
from .logging_setup import setup_logging
from .scheduler import Scheduler
from .storage import TaskStore
from .utils import utcnow
from .worker import start_workers

app = typer.Typer(help="taskrunner - persistent task queue with ordered groups and retry backoff.")

# Sub-apps so CLI supports commands like:
#   taskrunner worker start --count 3 --factory myapp.tasks:factory
#   taskrunner config set scan_interval 10
worker_app = typer.Typer(help="Start and stop worker processes.")
config_app = typer.Typer(help="Read and write settings stored in the database.")

app.add_typer(worker_app, name="worker")
app.add_typer(config_app, name="config")

STATES = ("pending", "scheduled", "locked", "failed", "processed")


class State:
    db_path: Optional[Path] = None
    verbose: bool = False


state = State()


@app.callback()
def main(
    db: Optional[Path] = typer.Option(None, "--db", help="Database file (default: $TASKRUNNER_HOME/tasks.db)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    if db is not None:
        state.db_path = db
    state.verbose = verbose
    setup_logging(verbose)


def open_store() -> TaskStore:
    try:
        return TaskStore(state.db_path or default_db_path()).connect()
    except StoreUnavailable as e:
        print(f"[red]Cannot open database:[/red] {escape(str(e))}")
        raise typer.Exit(1)


def _fmt(value: Optional[datetime]) -> str:
    return value.isoformat(timespec="seconds") if value else ""


# -----------------------------
# Enqueue
# -----------------------------
@app.command()
def enqueue(
    name: str = typer.Argument(..., help="Task name, used to pick the processor"),
    data: Optional[str] = typer.Option(None, "--data", help="Task data as JSON e.g. '{\"to\":\"me\"}'"),
    json_file: Optional[Path] = typer.Option(None, "--json-file", help="Read task data JSON from a file"),
    task_id: Optional[str] = typer.Option(None, "--id", help="Task id (generated if omitted)"),
    group: Optional[str] = typer.Option(None, "--group", help="Run after earlier tasks of this group"),
    start_at: Optional[datetime] = typer.Option(None, "--start-at", help="Not before this UTC time"),
    repeat_every: float = typer.Option(0, "--repeat-every", help="Repeat every N seconds (0 = once)"),
    retry_strategy: str = typer.Option("pow1", "--retry-strategy", help="none | powN | Nm | Nh | Nd"),
):
    """Add a new task to the queue."""
    if json_file:
        data = json_file.read_text(encoding="utf-8").strip()
    payload = None
    if data:
        try:
            payload = json.loads(data)
        except json.JSONDecodeError as e:
            raise typer.BadParameter(f"Invalid JSON: {e.msg}")

    store = open_store()
    try:
        task = Scheduler(store).schedule(
            name,
            payload,
            task_id=task_id,
            group=group,
            start_at=start_at,
            repeat_every=repeat_every,
            retry_strategy=retry_strategy,
        )
    except (InvalidArgument, DuplicateId) as e:
        print(f"[red]Rejected:[/red] {escape(str(e))}")
        raise typer.Exit(1)
    finally:
        store.close()
    print(f"[green]Enqueued[/green] task [bold]{task.name}[/bold] ({task.id})")


# -----------------------------
# Workers
# -----------------------------
@worker_app.command("start")
def worker_start(
    count: int = typer.Option(1, "--count", "-c", help="Number of worker processes"),
    factory: Optional[str] = typer.Option(
        None, "--factory", help="Processor factory 'module:callable' (default: task name is an import path)"
    ),
    scan_interval: Optional[float] = typer.Option(None, help="Seconds between scans"),
    lock_interval: Optional[float] = typer.Option(None, help="Lease duration in seconds"),
    tasks_per_scanning: Optional[int] = typer.Option(None, help="Tasks leased per scan"),
    reset_shutdown: bool = typer.Option(True, help="Set shutdown=false before start"),
    shutdown_timeout: float = typer.Option(30.0, help="Seconds workers get to finish after Ctrl+C"),
):
    """Start worker processes."""
    overrides = {
        "scan_interval": scan_interval,
        "lock_interval": lock_interval,
        "tasks_per_scanning": tasks_per_scanning,
    }
    store = open_store()
    try:
        load_runner_config(store, **overrides)
        if reset_shutdown:
            store.config_set("shutdown", "false")
    except InvalidArgument as e:
        raise typer.BadParameter(str(e))
    finally:
        store.close()

    print(f"Starting {count} worker(s). Ctrl+C to stop.")
    start_workers(
        count,
        state.db_path or default_db_path(),
        factory,
        {k: v for k, v in overrides.items() if v is not None},
        shutdown_timeout=shutdown_timeout,
        verbose=state.verbose,
    )


@worker_app.command("stop")
def worker_stop():
    """Signal workers to stop gracefully (finish current task)."""
    store = open_store()
    store.config_set("shutdown", "true")
    store.close()
    print("[yellow]Set shutdown=true. Workers will exit after finishing the current task.[/yellow]")


# -----------------------------
# Status & listing
# -----------------------------
@app.command()
def status():
    """Show task state counts and active workers."""
    store = open_store()
    try:
        config = load_runner_config(store)
        counts = store.counts_by_state(config.lock_interval)
        workers = store.list_workers()
    finally:
        store.close()

    console = Console()
    tbl = Table(title="Tasks")
    tbl.add_column("State")
    tbl.add_column("Count")
    for st, n in counts:
        tbl.add_row(st, str(n))
    console.print(tbl)

    wt = Table(title="Active Workers")
    wt.add_column("worker_id")
    wt.add_column("pid")
    wt.add_column("started_at")
    for w in workers:
        wt.add_row(w["id"], str(w["pid"]), w["started_at"])
    console.print(wt)


@app.command("list")
def list_cmd(
    task_state: Optional[str] = typer.Option(None, "--state", help=f"Filter by state: {', '.join(STATES)}"),
    name: Optional[str] = typer.Option(None, "--name", help="Filter by task name"),
    group: Optional[str] = typer.Option(None, "--group", help="Filter by group"),
    limit: int = typer.Option(100, "--limit", help="Show at most N tasks"),
):
    """List tasks in creation order."""
    if task_state and task_state not in STATES:
        raise typer.BadParameter(f"state should be one of {', '.join(STATES)}")
    filters = {k: v for k, v in {"name": name, "group": group}.items() if v}

    store = open_store()
    try:
        lock_interval = load_runner_config(store).lock_interval
        tasks = store.list_tasks(filters)
    finally:
        store.close()

    now = utcnow()
    t = Table(title=f"Tasks{'' if not task_state else f' ({task_state})'}")
    for c in ["id", "name", "state", "group", "retries", "start_at", "processed_at", "error_msg"]:
        t.add_column(c)
    shown = 0
    for task in tasks:
        st = task.state(lock_interval, now)
        if task_state and st != task_state:
            continue
        t.add_row(
            task.id,
            task.name,
            st,
            task.group or "",
            str(task.retries),
            _fmt(task.start_at),
            _fmt(task.processed_at),
            (task.error_msg or "")[:80],
        )
        shown += 1
        if shown >= limit:
            break
    Console().print(t)


@app.command()
def show(task_id: str = typer.Argument(..., help="Task id")):
    """Print one task as JSON."""
    store = open_store()
    try:
        task = store.find_task(id=task_id)
    finally:
        store.close()
    if task is None:
        print(f"[red]Not found:[/red] {task_id}")
        raise typer.Exit(1)
    Console().print_json(task.model_dump_json())


@app.command()
def remove(
    task_id: Optional[str] = typer.Option(None, "--id", help="Remove the task with this id"),
    name: Optional[str] = typer.Option(None, "--name", help="Remove tasks with this name"),
    processed: bool = typer.Option(False, "--processed", help="Remove only processed tasks"),
    all_tasks: bool = typer.Option(False, "--all", help="Remove every task"),
):
    """Delete tasks (maintenance)."""
    filters = {k: v for k, v in {"id": task_id, "name": name}.items() if v}
    if not filters and not processed and not all_tasks:
        raise typer.BadParameter("Give --id, --name, --processed or --all")

    store = open_store()
    try:
        if processed:
            candidates = store.list_tasks(filters)
            removed = sum(store.remove(id=t.id) for t in candidates if t.processed_at is not None)
        else:
            removed = store.remove(**filters)
    finally:
        store.close()
    print(f"Removed {removed} task(s)")


# -----------------------------
# Config
# -----------------------------
@config_app.command("set")
def config_set_cmd(key: str = typer.Argument(..., help="Config key"), value: str = typer.Argument(..., help="Value")):
    key = key.replace("-", "_")
    store = open_store()
    try:
        if key in RunnerConfig.model_fields:
            # reject values the workers could not load
            load_runner_config(store, **{key: value})
        store.config_set(key, value)
    except InvalidArgument as e:
        raise typer.BadParameter(str(e))
    finally:
        store.close()
    print(f"set {key}={value}")


@config_app.command("get")
def config_get_cmd(key: str = typer.Argument(..., help="Config key")):
    store = open_store()
    try:
        print(store.config_get(key.replace("-", "_"), ""))
    finally:
        store.close()


if __name__ == "__main__":
    app()
