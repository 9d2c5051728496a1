import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .config import default_db_path, load_runner_config
from .models import Task
from .scheduler import Scheduler
from .storage import TaskStore
from .worker import ProcessorFactory, Runner

logger = logging.getLogger(__name__)


class TaskManager:
    """
    Entry point for applications: owns the store connection, schedules
    tasks and runs in-process runners.

        manager = TaskManager("tasks.db").connect()
        manager.schedule("emails.send", {"to": "a@b.c"}, group="user-1")
        runner = await manager.run(task_processor_factory=factory)
        ...
        await manager.stop()
    """

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        self.store = TaskStore(db_path or default_db_path())
        self.scheduler = Scheduler(self.store)
        self._runners: List[Runner] = []
        self._is_stopping = False

    def connect(self) -> "TaskManager":
        self.store.connect()
        return self

    def close(self) -> None:
        self.store.close()

    def schedule(
        self,
        name: str,
        data: Any = None,
        *,
        task_id: Optional[str] = None,
        group: Optional[str] = None,
        start_at: Optional[datetime] = None,
        repeat_every: float = 0,
        retry_strategy: str = "pow1",
    ) -> Task:
        return self.scheduler.schedule(
            name,
            data,
            task_id=task_id,
            group=group,
            start_at=start_at,
            repeat_every=repeat_every,
            retry_strategy=retry_strategy,
        )

    def find_task(self, **filters: Any) -> Optional[Task]:
        return self.store.find_task(**filters)

    def list_tasks(self, filters: Optional[Dict[str, Any]] = None, limit: Optional[int] = None) -> List[Task]:
        return self.store.list_tasks(filters, limit)

    def remove(self, **filters: Any) -> int:
        return self.store.remove(**filters)

    @property
    def runners(self) -> List[Runner]:
        return list(self._runners)

    async def run(
        self,
        task_processor_factory: Optional[ProcessorFactory] = None,
        **options: Any,
    ) -> Runner:
        """
        Start a runner. Returns once its first scanning iteration is done;
        later iterations keep running on the event loop until stop().
        options: scan_interval, lock_interval, group_interval, tasks_per_scanning.
        """
        config = load_runner_config(self.store, **options)
        runner = Runner(self.store, config, task_processor_factory, self.scheduler)
        self._runners.append(runner)
        await runner.start()
        return runner

    async def stop(self, timeout: float = 30.0) -> bool:
        """
        Graceful shutdown: runners finish the task in hand. Returns False
        if some runner was still busy after timeout seconds; the caller
        decides whether to kill the process then.
        """
        if self._is_stopping:
            return True
        self._is_stopping = True
        logger.debug("Graceful shutdown is in progress, please wait...")

        for runner in self._runners:
            runner.stop()
        pending = [r for r in self._runners if not r.is_stopped]
        stopped = True
        if pending:
            results = await asyncio.gather(*(r.wait_stopped(timeout) for r in pending))
            stopped = all(results)
        self._runners = [r for r in self._runners if not r.is_stopped]
        if stopped:
            self.close()
        else:
            logger.warning("%s runner(s) did not stop in %ss", len(self._runners), timeout)
        self._is_stopping = False
        return stopped
