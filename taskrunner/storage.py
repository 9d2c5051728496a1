import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from functools import wraps
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from .errors import DuplicateId, InvalidArgument, StoreUnavailable
from .models import DEFAULTS, Task
from .utils import EPOCH, PARKED_AT, from_db, to_db, utcnow

logger = logging.getLogger(__name__)

_UNSET: Any = object()

# Task field -> column. "group" is quoted because it is an SQL keyword.
_COLUMNS = {
    "id": "id",
    "name": "name",
    "data": "data",
    "group": '"group"',
    "start_at": "start_at",
    "repeat_every": "repeat_every",
    "retry_strategy": "retry_strategy",
    "locked_at": "locked_at",
    "processed_at": "processed_at",
    "failed_at": "failed_at",
    "error_msg": "error_msg",
    "retries": "retries",
    "result": "result",
    "created_at": "created_at",
}
_JSON_FIELDS = {"data", "result"}
_TIME_FIELDS = {"start_at", "locked_at", "processed_at", "failed_at", "created_at"}


def wrap_store_errors(fn):
    """Surface low-level sqlite and filesystem failures as StoreUnavailable."""

    @wraps(fn)
    def wrapper(self, *args, **kwargs):
        try:
            return fn(self, *args, **kwargs)
        except (sqlite3.Error, OSError) as e:
            raise StoreUnavailable(f"{fn.__name__} failed: {e}") from e

    return wrapper


class TaskStore:
    """
    SQLite-backed task store.

    Each store owns one connection in autocommit mode. Multi-statement
    operations run inside BEGIN IMMEDIATE so that only one writer across
    all processes can be between the SELECT and the UPDATE at a time.
    """

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = Path(db_path)
        self._conn: Optional[sqlite3.Connection] = None

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    @wrap_store_errors
    def connect(self) -> "TaskStore":
        if self._conn is not None:
            return self
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.db_path), timeout=30.0, isolation_level=None, check_same_thread=False
        )
        conn.row_factory = sqlite3.Row
        self._conn = conn
        try:
            init_db(conn)
        except sqlite3.Error:
            self._conn = None
            conn.close()
            raise
        logger.debug("Connected to %s", self.db_path)
        return self

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            logger.debug("Connection to %s closed", self.db_path)

    def __enter__(self) -> "TaskStore":
        return self.connect()

    def __exit__(self, *exc) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        # reconnect lazily, the path is all we need
        if self._conn is None:
            self.connect()
        return self._conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self.conn
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")

    # -----------------------------
    # Tasks
    # -----------------------------
    @wrap_store_errors
    def insert_unique(self, task: Task) -> Task:
        row = task_to_row(task)
        cols = ", ".join(_COLUMNS[k] for k in row)
        params = ", ".join(f":{k}" for k in row)
        try:
            cur = self.conn.execute(f"INSERT INTO tasks({cols}) VALUES({params})", row)
        except sqlite3.IntegrityError as e:
            raise DuplicateId(task.id) from e
        logger.debug("Task inserted: %s (%s)", task.name, task.id)
        return task.model_copy(update={"seq": cur.lastrowid})

    @wrap_store_errors
    def lease_next(self, lease_seconds: float) -> Optional[Task]:
        """
        Pick the oldest task that is not processed, due, and not locked
        within the last lease_seconds; stamp locked_at=now.
        Returns the record as it was before the lease.
        """
        now = utcnow()
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT * FROM tasks
                 WHERE processed_at IS NULL
                   AND start_at <= ?
                   AND locked_at < ?
                 ORDER BY created_at ASC, seq ASC
                 LIMIT 1
                """,
                (to_db(now), to_db(now - timedelta(seconds=lease_seconds))),
            ).fetchone()
            if row is None:
                return None
            conn.execute("UPDATE tasks SET locked_at=? WHERE seq=?", (to_db(now), row["seq"]))
        return row_to_task(row)

    @wrap_store_errors
    def find_predecessor(
        self, group: str, created_at: datetime, seq: Optional[int] = None
    ) -> Optional[Task]:
        """The task right before (created_at, seq) in the same group."""
        created = to_db(created_at)
        if seq is None:
            row = self.conn.execute(
                """
                SELECT * FROM tasks
                 WHERE "group"=? AND created_at < ?
                 ORDER BY created_at DESC, seq DESC
                 LIMIT 1
                """,
                (group, created),
            ).fetchone()
        else:
            row = self.conn.execute(
                """
                SELECT * FROM tasks
                 WHERE "group"=? AND (created_at < ? OR (created_at = ? AND seq < ?))
                 ORDER BY created_at DESC, seq DESC
                 LIMIT 1
                """,
                (group, created, created, seq),
            ).fetchone()
        return row_to_task(row) if row else None

    @wrap_store_errors
    def mark_failed(self, task_id: str, message: str) -> Optional[Task]:
        """Record a failed attempt. Returns the task with its new retries count."""
        with self._transaction() as conn:
            conn.execute(
                "UPDATE tasks SET failed_at=?, error_msg=?, retries=retries+1 WHERE id=?",
                (to_db(utcnow()), message, task_id),
            )
            row = conn.execute("SELECT * FROM tasks WHERE id=?", (task_id,)).fetchone()
        return row_to_task(row) if row else None

    @wrap_store_errors
    def mark_processed(self, task_id: str, result: Any = None) -> bool:
        cur = self.conn.execute(
            "UPDATE tasks SET processed_at=?, result=? WHERE id=? AND processed_at IS NULL",
            (to_db(utcnow()), _dump(result), task_id),
        )
        return cur.rowcount == 1

    @wrap_store_errors
    def reschedule(
        self,
        task_id: str,
        start_at: datetime,
        reset_lease: bool = False,
        reset_retries: bool = False,
        result: Any = _UNSET,
    ) -> bool:
        sets = ["start_at=?"]
        params: List[Any] = [to_db(start_at)]
        if reset_lease:
            sets.append("locked_at=?")
            params.append(to_db(EPOCH))
        if reset_retries:
            sets.append("retries=0")
        if result is not _UNSET:
            sets.append("result=?")
            params.append(_dump(result))
        params.append(task_id)
        cur = self.conn.execute(f"UPDATE tasks SET {', '.join(sets)} WHERE id=?", params)
        logger.debug("Task was rescheduled: %s start_at=%s", task_id, to_db(start_at))
        return cur.rowcount == 1

    @wrap_store_errors
    def find_task(self, **filters: Any) -> Optional[Task]:
        where, params = _where(filters)
        row = self.conn.execute(
            f"SELECT * FROM tasks{where} ORDER BY created_at, seq LIMIT 1", params
        ).fetchone()
        return row_to_task(row) if row else None

    @wrap_store_errors
    def list_tasks(self, filters: Optional[Dict[str, Any]] = None, limit: Optional[int] = None) -> List[Task]:
        where, params = _where(filters or {})
        sql = f"SELECT * FROM tasks{where} ORDER BY created_at, seq"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        return [row_to_task(r) for r in self.conn.execute(sql, params).fetchall()]

    @wrap_store_errors
    def remove(self, **filters: Any) -> int:
        where, params = _where(filters)
        cur = self.conn.execute(f"DELETE FROM tasks{where}", params)
        return cur.rowcount

    @wrap_store_errors
    def counts_by_state(self, lock_interval: float, now: Optional[datetime] = None) -> List[Tuple[str, int]]:
        now = now or utcnow()
        cur = self.conn.execute(
            """
            SELECT CASE
                     WHEN processed_at IS NOT NULL THEN 'processed'
                     WHEN locked_at >= :lock_since THEN 'locked'
                     WHEN start_at = :parked THEN 'failed'
                     WHEN start_at > :now THEN 'scheduled'
                     WHEN retries > 0 THEN 'failed'
                     ELSE 'pending'
                   END AS state,
                   COUNT(*)
              FROM tasks
             GROUP BY state
             ORDER BY state
            """,
            {"now": to_db(now), "parked": to_db(PARKED_AT), "lock_since": to_db(now - timedelta(seconds=lock_interval))},
        )
        return [(r[0], r[1]) for r in cur.fetchall()]

    # -----------------------------
    # Config
    # -----------------------------
    @wrap_store_errors
    def config_get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        row = self.conn.execute("SELECT value FROM config WHERE key=?", (key,)).fetchone()
        return row[0] if row else default

    @wrap_store_errors
    def config_set(self, key: str, value: Any) -> None:
        self.conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, str(value)),
        )

    # -----------------------------
    # Worker registry
    # -----------------------------
    @wrap_store_errors
    def register_worker(self, wid: str, pid: int) -> None:
        self.conn.execute(
            "INSERT INTO workers(id,pid,started_at) VALUES(?,?,?)", (wid, pid, to_db(utcnow()))
        )

    @wrap_store_errors
    def stop_worker_record(self, wid: str) -> None:
        self.conn.execute("UPDATE workers SET stopped_at=? WHERE id=?", (to_db(utcnow()), wid))

    @wrap_store_errors
    def list_workers(self) -> List[sqlite3.Row]:
        return self.conn.execute("SELECT * FROM workers WHERE stopped_at IS NULL").fetchall()


def init_db(conn: sqlite3.Connection):
    conn.execute("PRAGMA journal_mode=WAL")
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS tasks(
          seq INTEGER PRIMARY KEY AUTOINCREMENT,
          id TEXT NOT NULL,
          name TEXT NOT NULL,
          data TEXT,
          "group" TEXT,
          start_at TEXT NOT NULL,
          repeat_every REAL NOT NULL DEFAULT 0,
          retry_strategy TEXT NOT NULL DEFAULT 'pow1',
          locked_at TEXT NOT NULL,
          processed_at TEXT,
          failed_at TEXT,
          error_msg TEXT,
          retries INTEGER NOT NULL DEFAULT 0,
          result TEXT,
          created_at TEXT NOT NULL
        );
        CREATE UNIQUE INDEX IF NOT EXISTS idx_tasks_id ON tasks(id);
        CREATE INDEX IF NOT EXISTS idx_tasks_lease ON tasks(processed_at, start_at, locked_at);
        CREATE INDEX IF NOT EXISTS idx_tasks_group ON tasks("group", created_at);
        CREATE INDEX IF NOT EXISTS idx_tasks_created ON tasks(created_at);
        CREATE TABLE IF NOT EXISTS config(
          key TEXT PRIMARY KEY,
          value TEXT NOT NULL
        );
        CREATE TABLE IF NOT EXISTS workers(
          id TEXT PRIMARY KEY,
          pid INTEGER NOT NULL,
          started_at TEXT NOT NULL,
          stopped_at TEXT
        );
        """
    )
    # defaults
    for k, v in DEFAULTS.items():
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) ON CONFLICT(key) DO NOTHING",
            (k, str(v)),
        )
    conn.execute("INSERT INTO config(key,value) VALUES('shutdown','false') ON CONFLICT(key) DO NOTHING")


def _dump(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value)


def _load(raw: Optional[str]) -> Any:
    return None if raw is None else json.loads(raw)


def task_to_row(task: Task) -> Dict[str, Any]:
    row = {}
    for field in _COLUMNS:
        value = getattr(task, field)
        if field in _JSON_FIELDS:
            value = _dump(value)
        elif field in _TIME_FIELDS:
            value = to_db(value)
        row[field] = value
    return row


def row_to_task(row: sqlite3.Row) -> Task:
    values: Dict[str, Any] = {"seq": row["seq"]}
    for field in _COLUMNS:
        value = row[field]
        if field in _JSON_FIELDS:
            value = _load(value)
        elif field in _TIME_FIELDS:
            value = from_db(value)
        values[field] = value
    return Task(**values)


def _where(filters: Dict[str, Any]) -> Tuple[str, List[Any]]:
    clauses: List[str] = []
    params: List[Any] = []
    for field, value in filters.items():
        column = _COLUMNS.get(field)
        if column is None:
            raise InvalidArgument(f"Unknown task field {field!r}")
        if value is None:
            clauses.append(f"{column} IS NULL")
            continue
        if field in _JSON_FIELDS:
            value = _dump(value)
        elif field in _TIME_FIELDS:
            value = to_db(value)
        clauses.append(f"{column}=?")
        params.append(value)
    if not clauses:
        return "", params
    return " WHERE " + " AND ".join(clauses), params
