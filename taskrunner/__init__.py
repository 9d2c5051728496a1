"""
taskrunner - persistent task queue with leasing workers, ordered groups
and retry backoff, stored in SQLite.
"""

from .config import RunnerConfig
from .errors import DuplicateId, InvalidArgument, ProcessorFailure, StoreUnavailable, TaskRunnerError
from .executor import DirectInvocation, MethodInvocation
from .manager import TaskManager
from .models import ExtendedInfo, RetryStrategy, Task
from .scheduler import Scheduler
from .storage import TaskStore
from .worker import Runner

__version__ = "0.1.0"

__all__ = [
    "DirectInvocation",
    "DuplicateId",
    "ExtendedInfo",
    "InvalidArgument",
    "MethodInvocation",
    "ProcessorFailure",
    "RetryStrategy",
    "Runner",
    "RunnerConfig",
    "Scheduler",
    "StoreUnavailable",
    "Task",
    "TaskManager",
    "TaskRunnerError",
    "TaskStore",
]
