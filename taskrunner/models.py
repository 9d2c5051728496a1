import re
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .utils import EPOCH, PARKED_AT, as_utc

RETRY_STRATEGY_RE = re.compile(r"^(?:none|pow([1-9]\d*)|([1-9]\d*)([mhd]))$", re.IGNORECASE)

_UNIT_MINUTES = {"m": 1, "h": 60, "d": 24 * 60}

# longest backoff a failed task can get, in minutes (100 years)
MAX_DELAY_MINUTES = 100 * 365 * 24 * 60


class RetryStrategy(BaseModel):
    """
    Parsed form of a retry strategy string:
      none   -> kind="none"
      pow<N> -> kind="power", value=N (delay = retries ** N minutes)
      <N>m/h/d -> kind="fixed", value=N converted to minutes
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["none", "power", "fixed"]
    value: int = 0

    @staticmethod
    @lru_cache(maxsize=256)
    def parse(raw: str) -> "RetryStrategy":
        m = RETRY_STRATEGY_RE.match(raw.strip()) if isinstance(raw, str) else None
        if not m:
            raise ValueError(
                "retry strategy should match one of [none, powN, Nm, Nh, Nd], "
                f"where N is a positive integer; found {raw!r}"
            )
        power, amount, unit = m.groups()
        if power is not None:
            return RetryStrategy(kind="power", value=int(power))
        if amount is not None:
            return RetryStrategy(kind="fixed", value=int(amount) * _UNIT_MINUTES[unit.lower()])
        return RetryStrategy(kind="none")

    def delay(self, retries: int) -> Optional[timedelta]:
        """Backoff before the next attempt, given the failure count so far."""
        if self.kind == "power":
            retries = int(retries)
            # retries ** value stays below 2 ** 64 here; past that the cap applies anyway
            if self.value * retries.bit_length() <= 64:
                minutes = retries ** self.value
            else:
                minutes = MAX_DELAY_MINUTES
        elif self.kind == "fixed":
            minutes = self.value
        else:
            return None
        if not minutes:
            return None
        return timedelta(minutes=min(minutes, MAX_DELAY_MINUTES))


class Task(BaseModel):
    id: str
    name: str
    data: Any = None
    group: Optional[str] = None
    start_at: datetime
    repeat_every: float = Field(default=0, ge=0)  # seconds
    retry_strategy: str = "pow1"
    locked_at: datetime = EPOCH
    processed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    error_msg: Optional[str] = None
    retries: int = 0
    result: Any = None
    created_at: datetime
    seq: Optional[int] = None  # insertion order, assigned by the store

    @field_validator("start_at", "locked_at", "processed_at", "failed_at", "created_at")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v) if v is not None else None

    @property
    def backoff(self) -> RetryStrategy:
        return RetryStrategy.parse(self.retry_strategy)

    @property
    def is_repeatable(self) -> bool:
        return self.repeat_every > 0

    def state(self, lock_interval: float, now: datetime) -> str:
        """Derived state, same rules as TaskStore.counts_by_state."""
        if self.processed_at is not None:
            return "processed"
        if self.locked_at >= now - timedelta(seconds=lock_interval):
            return "locked"
        if self.start_at == PARKED_AT:
            return "failed"
        if self.start_at > now:
            return "scheduled"
        if self.retries > 0:
            return "failed"
        return "pending"


class ExtendedInfo(BaseModel):
    """State of earlier attempts, handed to the processor with the task data."""

    model_config = ConfigDict(frozen=True)

    failed_at: Optional[datetime] = None
    error_msg: Optional[str] = None
    retries: int = 0
    created_at: datetime

    @classmethod
    def from_task(cls, task: Task) -> "ExtendedInfo":
        return cls(
            failed_at=task.failed_at,
            error_msg=task.error_msg,
            retries=task.retries,
            created_at=task.created_at,
        )


DEFAULTS = {
    "scan_interval": 60,
    "lock_interval": 60,
    "group_interval": 5,
    "tasks_per_scanning": 1000,
}
