# taskrunner/worker.py
import asyncio
import json
import logging
import os
import uuid
from datetime import timedelta
from multiprocessing import Process
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .config import RunnerConfig, load_runner_config
from .errors import ProcessorFailure
from .executor import import_processor, invoke, load_factory, resolve_processor
from .logging_setup import setup_logging
from .models import ExtendedInfo, Task
from .scheduler import Scheduler
from .storage import TaskStore
from .utils import add_capped, utcnow

logger = logging.getLogger(__name__)

ProcessorFactory = Callable[[str], Any]


class Runner:
    """
    Scan loop of one worker.

    Every iteration leases tasks one by one (up to tasks_per_scanning, or
    until none is eligible), runs them and commits the outcome, then sleeps
    scan_interval before the next iteration. Mutual exclusion between
    runners comes only from TaskStore.lease_next.
    """

    def __init__(
        self,
        store: TaskStore,
        config: Optional[RunnerConfig] = None,
        task_processor_factory: Optional[ProcessorFactory] = None,
        scheduler: Optional[Scheduler] = None,
    ):
        self.store = store
        self.config = config or RunnerConfig()
        self.task_processor_factory = task_processor_factory or import_processor
        self.scheduler = scheduler or Scheduler(store)

        # a scan iteration is running
        self.is_in_progress = False
        # graceful shutdown requested
        self.is_stopping = False
        self.is_stopped = False

        self._timer: Optional[asyncio.TimerHandle] = None
        self._next: Optional[asyncio.Task] = None
        self._stopped = asyncio.Event()

    async def start(self) -> None:
        """Run one iteration, then keep rescanning every scan_interval seconds."""
        try:
            await self.scan()
        except Exception:
            # most likely the store is unavailable; the next iteration retries
            logger.exception("Scanning iteration failed")

        if self.is_stopped:
            return

        logger.debug("Finished scanning iteration, rescan in %s seconds", self.config.scan_interval)
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.config.scan_interval, self._spawn_iteration)

    def _spawn_iteration(self) -> None:
        self._timer = None
        self._next = asyncio.ensure_future(self.start())

    def stop(self) -> None:
        """Graceful shutdown: the task in hand is finished, nothing new is leased."""
        self.is_stopping = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if not self.is_in_progress:
            if self._next is not None and not self._next.done():
                # spawned but not scanning yet
                self._next.cancel()
            self._mark_stopped()

    def _mark_stopped(self) -> None:
        self.is_stopped = True
        self._stopped.set()

    async def wait_stopped(self, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        nxt = self._next
        if nxt is not None and nxt is not asyncio.current_task():
            await asyncio.gather(nxt, return_exceptions=True)
        return True

    async def scan(self) -> int:
        """One scanning iteration. Returns how many tasks were leased."""
        leased = 0
        self.is_in_progress = True
        try:
            while not self.is_stopping and leased < self.config.tasks_per_scanning:
                task = self.store.lease_next(self.config.lock_interval)
                if task is None:
                    # queue drained
                    break
                leased += 1
                await self.process_task(task)
        finally:
            self.is_in_progress = False
            if self.is_stopping:
                self._mark_stopped()
        return leased

    async def process_task(self, task: Task) -> None:
        logger.debug('Start processing of task "%s" (%s)', task.name, task.id)

        previous = None
        if task.group:
            previous = self.store.find_predecessor(task.group, task.created_at, task.seq)
            if previous is not None and previous.processed_at is None:
                self._postpone_blocked(task, previous)
                return

        previous_result = previous.result if previous is not None else None
        try:
            result = await self._execute(task, previous_result)
        except ProcessorFailure as e:
            self._fail(task, e)
            return

        logger.debug('End processing of task "%s" (%s). Result: %r', task.name, task.id, result)
        if task.is_repeatable:
            self.scheduler.reschedule_repeatable_task(task, result)
        else:
            self.store.mark_processed(task.id, result)

    def _postpone_blocked(self, task: Task, previous: Task) -> None:
        """Push a blocked group task past its predecessor's start, without counting a retry."""
        logger.debug("Task is blocked: %s blocked by %s", task.id, previous.id)
        start_at = add_capped(max(utcnow(), previous.start_at), timedelta(seconds=self.config.group_interval))
        self.store.reschedule(task.id, start_at, reset_lease=True, reset_retries=True)

    async def _execute(self, task: Task, previous_result: Any) -> Any:
        try:
            invocation = resolve_processor(self.task_processor_factory(task.name), task.name)
        except Exception as e:
            # a factory that cannot build the processor fails the task like the processor would
            raise ProcessorFailure(task.name, str(e) or type(e).__name__) from e
        result = await invoke(invocation, task.data, previous_result, ExtendedInfo.from_task(task))
        try:
            json.dumps(result)
        except (TypeError, ValueError) as e:
            raise ProcessorFailure(task.name, f"Result is not JSON serializable: {e}") from e
        return result

    def _fail(self, task: Task, error: ProcessorFailure) -> None:
        logger.error(
            'Task was failed: "%s" (%s): %s', task.name, task.id, error.message,
            exc_info=error.__cause__,
        )
        failed = self.store.mark_failed(task.id, error.message)
        if failed is not None:
            self.scheduler.reschedule_failed_task(failed)


# -----------------------------
# Worker processes
# -----------------------------
async def watch_shutdown(store: TaskStore, runner: Runner, poll_interval: float = 1.0) -> None:
    """Stop the runner once someone sets shutdown=true in the store."""
    while not runner.is_stopped:
        if store.config_get("shutdown", "false") == "true":
            runner.stop()
            break
        await asyncio.sleep(poll_interval)


async def run_worker(
    db_path: Path,
    factory_path: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
    worker_id: Optional[str] = None,
) -> None:
    """
    Single worker process:
      - registers itself in the store
      - runs a Runner until the shutdown flag is set
      - always deregisters itself on exit
    """
    worker_id = worker_id or f"w-{uuid.uuid4().hex[:8]}"
    store = TaskStore(db_path).connect()
    store.register_worker(worker_id, os.getpid())
    try:
        config = load_runner_config(store, **(overrides or {}))
        factory = load_factory(factory_path) if factory_path else None
        runner = Runner(store, config, factory)
        logger.info("Worker %s started (pid %s)", worker_id, os.getpid())
        await runner.start()
        await watch_shutdown(store, runner)
        await runner.wait_stopped()
        logger.info("Worker %s stopped", worker_id)
    finally:
        store.stop_worker_record(worker_id)
        store.close()


def worker_process(db_path: Path, factory_path: Optional[str], overrides: Dict[str, Any], verbose: bool) -> None:
    setup_logging(verbose)
    try:
        asyncio.run(run_worker(db_path, factory_path, overrides))
    except KeyboardInterrupt:
        # the parent sets the shutdown flag
        pass


def start_workers(
    count: int,
    db_path: Path,
    factory_path: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
    shutdown_timeout: float = 30.0,
    verbose: bool = False,
) -> None:
    """
    Spawn N workers and join them. If Ctrl+C is pressed in the parent,
    set shutdown=true so children finish their current task and exit; any
    child still alive after shutdown_timeout seconds is terminated.
    """
    procs = []
    for _ in range(count):
        p = Process(target=worker_process, args=(db_path, factory_path, overrides or {}, verbose), daemon=False)
        p.start()
        procs.append(p)

    try:
        for p in procs:
            p.join()
    except KeyboardInterrupt:
        # parent interrupted -> request graceful stop for all workers
        with TaskStore(db_path) as store:
            store.config_set("shutdown", "true")
        for p in procs:
            p.join(shutdown_timeout)
            if p.is_alive():
                logger.warning("Worker pid %s did not stop in %ss, terminating", p.pid, shutdown_timeout)
                p.terminate()
                p.join()
