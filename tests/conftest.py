# tests/conftest.py

from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path

import pytest

from taskrunner.config import RunnerConfig
from taskrunner.scheduler import Scheduler
from taskrunner.storage import TaskStore
from taskrunner.utils import utcnow
from taskrunner.worker import Runner

# allowed drift between "now" in a test and "now" inside the code under test
TOLERANCE = timedelta(seconds=2)


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "tasks.db"


@pytest.fixture()
def store(db_path: Path):
    """A real SQLite store; its correctness is part of what we test."""
    s = TaskStore(db_path).connect()
    yield s
    s.close()


@pytest.fixture()
def scheduler(store: TaskStore) -> Scheduler:
    return Scheduler(store)


def make_runner(store: TaskStore, factory, **config) -> Runner:
    return Runner(store, RunnerConfig(**config), factory)


def assert_close(actual: datetime, expected: datetime) -> None:
    assert abs(actual - expected) < TOLERANCE, f"{actual} is not close to {expected}"


def past(seconds: float = 86400) -> datetime:
    return utcnow() - timedelta(seconds=seconds)


def future(seconds: float = 86400) -> datetime:
    return utcnow() + timedelta(seconds=seconds)
