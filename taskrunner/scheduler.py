import json
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

from pydantic import BaseModel, Field, StrictStr, ValidationError, field_validator, model_validator

from .errors import InvalidArgument
from .models import RetryStrategy, Task
from .storage import TaskStore
from .utils import EPOCH, PARKED_AT, add_capped, as_utc, utcnow

logger = logging.getLogger(__name__)


class ScheduleOptions(BaseModel):
    task_id: Optional[StrictStr] = None
    group: Optional[StrictStr] = None
    start_at: Optional[datetime] = None
    repeat_every: float = Field(default=0, ge=0)
    retry_strategy: StrictStr = "pow1"

    @field_validator("retry_strategy")
    @classmethod
    def _known_strategy(cls, v: str) -> str:
        RetryStrategy.parse(v)
        return v.strip().lower()

    @field_validator("group")
    @classmethod
    def _empty_group(cls, v: Optional[str]) -> Optional[str]:
        return v or None

    @model_validator(mode="after")
    def _group_or_repeat(self) -> "ScheduleOptions":
        if self.group and self.repeat_every > 0:
            raise ValueError("Can not specify group for repeatable task")
        return self


class Scheduler:
    """Creates tasks and decides when failed or repeatable tasks run again."""

    def __init__(self, store: TaskStore):
        self.store = store

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
        """
        Validate the options and insert one task.

        Raises InvalidArgument before touching the store when the options are
        malformed, and DuplicateId when task_id is already taken.
        """
        if not isinstance(name, str) or not name:
            raise InvalidArgument(f'Name should be a non-empty string, found {name!r}')
        try:
            opts = ScheduleOptions(
                task_id=task_id,
                group=group,
                start_at=start_at,
                repeat_every=repeat_every,
                retry_strategy=retry_strategy,
            )
        except ValidationError as e:
            raise InvalidArgument(_first_error(e)) from e
        try:
            json.dumps(data)
        except (TypeError, ValueError) as e:
            raise InvalidArgument(f"Task data should be JSON serializable: {e}") from e

        now = utcnow()
        task = Task(
            id=opts.task_id or str(uuid.uuid4()),
            name=name,
            data=data,
            group=opts.group,
            start_at=as_utc(opts.start_at) if opts.start_at else now,
            repeat_every=opts.repeat_every,
            retry_strategy=opts.retry_strategy,
            locked_at=EPOCH,
            created_at=now,
        )
        task = self.store.insert_unique(task)
        logger.debug("Scheduled task %s (%s) start_at=%s", task.name, task.id, task.start_at.isoformat())
        return task

    @staticmethod
    def compute_backoff(task: Task) -> Optional[timedelta]:
        """
        Delay before the next attempt of a failed task; task.retries is the
        count after the failure was recorded. None means do not retry.
        """
        return task.backoff.delay(task.retries)

    def reschedule_failed_task(self, task: Task) -> Optional[datetime]:
        delay = self.compute_backoff(task)
        if not delay:
            # "none" strategy: the task stays failed until someone reschedules it
            self.store.reschedule(task.id, PARKED_AT, reset_lease=True)
            logger.warning("Task %s (%s) parked after %s failure(s)", task.name, task.id, task.retries)
            return None
        start_at = add_capped(utcnow(), delay)
        self.store.reschedule(task.id, start_at, reset_lease=True)
        return start_at

    def reschedule_repeatable_task(self, task: Task, result: Any = None) -> datetime:
        start_at = add_capped(utcnow(), timedelta(seconds=task.repeat_every))
        self.store.reschedule(task.id, start_at, result=result)
        return start_at


def _first_error(e: ValidationError) -> str:
    err = e.errors()[0]
    loc = ".".join(str(p) for p in err.get("loc", ()))
    msg = err.get("msg", str(e))
    return f'Option "{loc}": {msg}' if loc else msg
