# tests/test_cli.py

from __future__ import annotations

from pathlib import Path

import pytest
from typer.testing import CliRunner

from taskrunner.cli import app
from taskrunner.storage import TaskStore

runner = CliRunner()


@pytest.fixture()
def cli(db_path: Path):
    def invoke(*args: str):
        return runner.invoke(app, ["--db", str(db_path), *args])

    return invoke


def test_enqueue_and_show(cli, db_path: Path) -> None:
    result = cli("enqueue", "emails.send", "--data", '{"to": "me"}', "--id", "t1", "--group", "g")
    assert result.exit_code == 0, result.output
    assert "Enqueued" in result.output

    with TaskStore(db_path) as store:
        task = store.find_task(id="t1")
    assert task.data == {"to": "me"}
    assert task.group == "g"

    shown = cli("show", "t1")
    assert shown.exit_code == 0
    assert '"emails.send"' in shown.output


def test_enqueue_rejections(cli) -> None:
    assert cli("enqueue", "a", "--id", "dup").exit_code == 0

    duplicate = cli("enqueue", "b", "--id", "dup")
    assert duplicate.exit_code == 1
    assert "Rejected" in duplicate.output

    assert cli("enqueue", "a", "--retry-strategy", "sometimes").exit_code == 1
    assert cli("enqueue", "a", "--group", "g", "--repeat-every", "10").exit_code == 1
    assert cli("enqueue", "a", "--data", "{broken").exit_code == 2


def test_enqueue_from_json_file(cli, db_path: Path, tmp_path: Path) -> None:
    payload = tmp_path / "payload.json"
    payload.write_text('[1, 2, 3]', encoding="utf-8")

    assert cli("enqueue", "sum", "--json-file", str(payload), "--id", "s").exit_code == 0
    with TaskStore(db_path) as store:
        assert store.find_task(id="s").data == [1, 2, 3]


def test_list_and_status(cli) -> None:
    cli("enqueue", "now", "--id", "n1")
    cli("enqueue", "later", "--id", "l1", "--start-at", "2099-01-01T00:00:00")

    pending = cli("list", "--state", "pending")
    assert pending.exit_code == 0
    assert "n1" in pending.output
    assert "l1" not in pending.output

    scheduled = cli("list", "--state", "scheduled")
    assert "l1" in scheduled.output

    assert cli("list", "--state", "bogus").exit_code == 2

    status = cli("status")
    assert status.exit_code == 0
    assert "pending" in status.output
    assert "scheduled" in status.output


def test_show_missing(cli) -> None:
    result = cli("show", "nope")
    assert result.exit_code == 1
    assert "Not found" in result.output


def test_remove(cli, db_path: Path) -> None:
    cli("enqueue", "a", "--id", "a1")
    cli("enqueue", "a", "--id", "a2")
    cli("enqueue", "b", "--id", "b1")
    with TaskStore(db_path) as store:
        store.mark_processed("a1")

    assert cli("remove").exit_code == 2
    result = cli("remove", "--name", "a", "--processed")
    assert "Removed 1" in result.output
    assert "Removed 1" in cli("remove", "--id", "b1").output
    assert "Removed 1" in cli("remove", "--all").output


def test_config_and_worker_stop(cli) -> None:
    assert cli("config", "set", "scan-interval", "10").exit_code == 0
    assert cli("config", "get", "scan_interval").output.strip() == "10"
    assert cli("config", "set", "lock_interval", "0").exit_code == 2

    assert cli("worker", "stop").exit_code == 0
    assert cli("config", "get", "shutdown").output.strip() == "true"
