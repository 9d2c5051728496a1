import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from .errors import InvalidArgument
from .models import DEFAULTS
from .storage import TaskStore

HOME_ENV = "TASKRUNNER_HOME"
DB_FILENAME = "tasks.db"


def default_home() -> Path:
    return Path(os.environ.get(HOME_ENV, Path.home() / ".taskrunner"))


def default_db_path() -> Path:
    return default_home() / DB_FILENAME


class RunnerConfig(BaseModel):
    scan_interval: float = Field(default=DEFAULTS["scan_interval"], gt=0)  # seconds
    lock_interval: float = Field(default=DEFAULTS["lock_interval"], gt=0)  # seconds
    group_interval: float = Field(default=DEFAULTS["group_interval"], ge=0)  # seconds
    tasks_per_scanning: int = Field(default=DEFAULTS["tasks_per_scanning"], gt=0)


def load_runner_config(store: TaskStore, **overrides: Any) -> RunnerConfig:
    """Values saved in the store's config table, then explicit overrides on top."""
    values = {}
    for key in RunnerConfig.model_fields:
        raw = store.config_get(key)
        if raw is not None:
            values[key] = raw
    values.update({k: v for k, v in overrides.items() if v is not None})
    try:
        return RunnerConfig(**values)
    except ValidationError as e:
        raise InvalidArgument(f"Invalid runner configuration: {e}") from e
