"""SQLite storage layer for sysinsight.

Module functions operate on an open connection and are used directly by
the CLI. SnapshotStore wraps them for the daemon: a single writer task
drains a bounded queue, reads run in worker threads on their own
connections, and an initialization failure leaves the store in a degraded
(unavailable) state instead of stopping the daemon.
"""

import asyncio
import sqlite3
import time
from collections.abc import Callable, Generator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TypeVar

import structlog

from sysinsight.models import (
    DailyMetrics,
    HourlyMetrics,
    MemoryPressure,
    Snapshot,
    ThermalState,
)
from sysinsight.probes import CPU, GPU, MEMORY, THERMAL

log = structlog.get_logger()

SCHEMA_VERSION = 3  # Bump on any column change; mismatch recreates the database
LAST_PRUNE_KEY = "last_prune"

SCHEMA = """
CREATE TABLE IF NOT EXISTS daemon_state (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at REAL
);

CREATE TABLE IF NOT EXISTS snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp REAL NOT NULL,
    -- CPU
    cpu_usage REAL NOT NULL,
    cpu_performance_cores REAL NOT NULL,
    cpu_efficiency_cores REAL NOT NULL,
    cpu_core_count INTEGER NOT NULL,
    -- Memory
    memory_used INTEGER NOT NULL,
    memory_total INTEGER NOT NULL,
    memory_pressure TEXT NOT NULL,
    swap_used INTEGER NOT NULL,
    memory_wired INTEGER NOT NULL,
    memory_compressed INTEGER NOT NULL,
    -- GPU
    gpu_usage REAL NOT NULL,
    gpu_memory_used INTEGER NOT NULL,
    -- Disk
    disk_read_rate REAL NOT NULL,
    disk_write_rate REAL NOT NULL,
    disk_read_ops INTEGER NOT NULL,
    disk_write_ops INTEGER NOT NULL,
    -- Thermal
    cpu_temperature REAL NOT NULL,
    gpu_temperature REAL NOT NULL,
    fan_speed INTEGER NOT NULL,
    thermal_state TEXT NOT NULL,
    -- Network
    network_bytes_in INTEGER NOT NULL,
    network_bytes_out INTEGER NOT NULL,
    -- Comma-separated probe groups that failed for this snapshot
    unavailable TEXT NOT NULL DEFAULT ''
);

CREATE INDEX IF NOT EXISTS idx_snapshots_timestamp ON snapshots(timestamp);
"""

_COLUMNS = (
    "timestamp",
    "cpu_usage",
    "cpu_performance_cores",
    "cpu_efficiency_cores",
    "cpu_core_count",
    "memory_used",
    "memory_total",
    "memory_pressure",
    "swap_used",
    "memory_wired",
    "memory_compressed",
    "gpu_usage",
    "gpu_memory_used",
    "disk_read_rate",
    "disk_write_rate",
    "disk_read_ops",
    "disk_write_ops",
    "cpu_temperature",
    "gpu_temperature",
    "fan_speed",
    "thermal_state",
    "network_bytes_in",
    "network_bytes_out",
    "unavailable",
)

HOUR_BUCKET = "%Y-%m-%d %H:00:00"
DAY_BUCKET = "%Y-%m-%d"


class StoreUnavailable(Exception):
    """Raised when the database is missing or cannot be opened."""


def init_database(db_path: Path) -> None:
    """Initialize database with WAL mode and schema.

    If the database exists with a different schema version, it is deleted
    and recreated. No migrations - schema mismatch means fresh start.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    if db_path.exists():
        conn = sqlite3.connect(db_path)
        try:
            existing_version = _get_schema_version_raw(conn)
        except sqlite3.DatabaseError:
            existing_version = None
        finally:
            conn.close()

        if existing_version == SCHEMA_VERSION:
            return

        log.info(
            "schema_mismatch",
            existing=existing_version,
            expected=SCHEMA_VERSION,
            action="recreate",
        )
        _remove_database_files(db_path)

    conn = sqlite3.connect(db_path)
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA journal_size_limit=16777216")

        conn.executescript(SCHEMA)

        conn.execute(
            "INSERT OR REPLACE INTO daemon_state (key, value, updated_at) VALUES (?, ?, ?)",
            ("schema_version", str(SCHEMA_VERSION), time.time()),
        )
        conn.commit()
        log.info("database_initialized", path=str(db_path), version=SCHEMA_VERSION)
    finally:
        conn.close()


def _remove_database_files(db_path: Path) -> None:
    """Delete the database along with its WAL and SHM side files."""
    for path in (db_path, Path(f"{db_path}-wal"), Path(f"{db_path}-shm")):
        if path.exists():
            path.unlink()


def _get_schema_version_raw(conn: sqlite3.Connection) -> int:
    """Get schema version without error handling (for init_database use)."""
    row = conn.execute("SELECT value FROM daemon_state WHERE key = 'schema_version'").fetchone()
    return int(row[0]) if row else 0


def get_connection(db_path: Path, *, check_same_thread: bool = True) -> sqlite3.Connection:
    """Get a database connection.

    Pass check_same_thread=False for a connection that one task uses
    serially from different worker threads.
    """
    return sqlite3.connect(db_path, check_same_thread=check_same_thread)


@contextmanager
def open_database(db_path: Path) -> Generator[sqlite3.Connection, None, None]:
    """Context manager for commands that read an existing database.

    Raises:
        StoreUnavailable: If the database file does not exist
    """
    if not db_path.exists():
        raise StoreUnavailable(f"Database not found at {db_path}")

    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


def get_schema_version(conn: sqlite3.Connection) -> int:
    """Get current schema version from database."""
    try:
        return _get_schema_version_raw(conn)
    except sqlite3.OperationalError:
        return 0


def get_daemon_state(conn: sqlite3.Connection, key: str) -> str | None:
    """Get a value from daemon_state table."""
    try:
        row = conn.execute("SELECT value FROM daemon_state WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None
    except sqlite3.OperationalError:
        return None


def set_daemon_state(conn: sqlite3.Connection, key: str, value: str) -> None:
    """Set a value in daemon_state table."""
    conn.execute(
        "INSERT OR REPLACE INTO daemon_state (key, value, updated_at) VALUES (?, ?, ?)",
        (key, value, time.time()),
    )
    conn.commit()


# --- Snapshot rows ---


def _snapshot_row(snapshot: Snapshot) -> tuple:
    data = snapshot.to_dict()
    data["unavailable"] = ",".join(data["unavailable"])
    return tuple(data[column] for column in _COLUMNS)


def _row_to_snapshot(row: sqlite3.Row | tuple) -> Snapshot:
    data = dict(zip(_COLUMNS, row))
    unavailable = data.pop("unavailable") or ""
    return Snapshot(
        **{
            **data,
            "memory_pressure": MemoryPressure(data["memory_pressure"]),
            "thermal_state": ThermalState(data["thermal_state"]),
            "unavailable": frozenset(g for g in unavailable.split(",") if g),
        }
    )


def insert_snapshot(conn: sqlite3.Connection, snapshot: Snapshot) -> int:
    """Append a snapshot row.

    Returns:
        The new row id
    """
    placeholders = ", ".join("?" for _ in _COLUMNS)
    cursor = conn.execute(
        f"INSERT INTO snapshots ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
        _snapshot_row(snapshot),
    )
    conn.commit()
    return cursor.lastrowid  # type: ignore[return-value]


def get_snapshots(
    conn: sqlite3.Connection,
    start: float,
    end: float,
    limit: int | None = None,
) -> list[Snapshot]:
    """Get snapshots with start <= timestamp <= end, oldest first."""
    query = f"""
        SELECT {", ".join(_COLUMNS)} FROM snapshots
        WHERE timestamp >= ? AND timestamp <= ?
        ORDER BY timestamp ASC
    """
    params: list[Any] = [start, end]
    if limit is not None:
        query += " LIMIT ?"
        params.append(limit)
    return [_row_to_snapshot(row) for row in conn.execute(query, params).fetchall()]


def _when_available(column: str, group: str) -> str:
    """SQL expression yielding column, or NULL when its probe group failed."""
    return f"CASE WHEN instr(unavailable, '{group}') = 0 THEN {column} END"


_MEMORY_PERCENT = "memory_used * 100.0 / NULLIF(memory_total, 0)"

_AGGREGATE_SELECT = f"""
    SELECT
        strftime(?, timestamp, 'unixepoch') AS bucket,
        COALESCE(AVG({_when_available("cpu_usage", CPU)}), 0),
        COALESCE(AVG({_when_available("memory_used", MEMORY)}), 0),
        COALESCE(AVG({_when_available(_MEMORY_PERCENT, MEMORY)}), 0),
        COALESCE(AVG({_when_available("gpu_usage", GPU)}), 0),
        COALESCE(AVG({_when_available("cpu_temperature", THERMAL)}), 0),
        COALESCE(MAX({_when_available("cpu_usage", CPU)}), 0),
        COALESCE(MAX({_when_available("memory_used", MEMORY)}), 0),
        COALESCE(MAX({_when_available("cpu_temperature", THERMAL)}), 0),
        COUNT(*)
    FROM snapshots
    WHERE timestamp >= ? AND timestamp <= ?
    GROUP BY bucket
    ORDER BY bucket ASC
"""


def _parse_bucket(value: str, fmt: str) -> datetime:
    return datetime.strptime(value, fmt).replace(tzinfo=timezone.utc)


def get_hourly_averages(conn: sqlite3.Connection, start: float, end: float) -> list[HourlyMetrics]:
    """Aggregate snapshots into UTC hour buckets, oldest first.

    Fields from probe groups that failed are left out of the averages.
    """
    rows = conn.execute(_AGGREGATE_SELECT, (HOUR_BUCKET, start, end)).fetchall()
    return [
        HourlyMetrics(
            hour=_parse_bucket(row[0], "%Y-%m-%d %H:%M:%S"),
            avg_cpu=row[1],
            avg_memory=row[2],
            avg_memory_percent=row[3],
            avg_gpu=row[4],
            avg_temperature=row[5],
            max_cpu=row[6],
            max_memory=row[7],
            sample_count=row[9],
        )
        for row in rows
    ]


def get_daily_averages(conn: sqlite3.Connection, start: float, end: float) -> list[DailyMetrics]:
    """Aggregate snapshots into UTC day buckets, oldest first."""
    rows = conn.execute(_AGGREGATE_SELECT, (DAY_BUCKET, start, end)).fetchall()
    return [
        DailyMetrics(
            date=_parse_bucket(row[0], DAY_BUCKET),
            avg_cpu=row[1],
            avg_memory=row[2],
            avg_memory_percent=row[3],
            avg_gpu=row[4],
            avg_temperature=row[5],
            max_cpu=row[6],
            max_temperature=row[8],
            sample_count=row[9],
        )
        for row in rows
    ]


def prune_old_snapshots(
    conn: sqlite3.Connection,
    retention_days: int = 30,
    now: float | None = None,
) -> int:
    """Delete snapshots older than the retention window.

    Args:
        conn: Database connection
        retention_days: Delete snapshots older than this
        now: Reference time (defaults to current time)

    Returns:
        Number of snapshots deleted

    Raises:
        ValueError: If retention days < 1
    """
    if retention_days < 1:
        raise ValueError("Retention days must be >= 1")

    now = now if now is not None else time.time()
    cutoff = now - retention_days * 86400
    cursor = conn.execute("DELETE FROM snapshots WHERE timestamp < ?", (cutoff,))
    deleted = cursor.rowcount
    conn.commit()
    set_daemon_state(conn, LAST_PRUNE_KEY, str(now))

    log.info("prune_complete", snapshots_deleted=deleted, retention_days=retention_days)
    return deleted


def vacuum(conn: sqlite3.Connection) -> None:
    """Reclaim space after a prune."""
    conn.execute("VACUUM")


def get_store_stats(conn: sqlite3.Connection) -> dict:
    """Return snapshot count and the oldest/newest timestamps (None when empty)."""
    row = conn.execute("SELECT COUNT(*), MIN(timestamp), MAX(timestamp) FROM snapshots").fetchone()
    return {"count": row[0], "oldest": row[1], "newest": row[2]}


# --- Async service ---

T = TypeVar("T")


class SnapshotStore:
    """Durable snapshot history for the daemon.

    Writes are fire-and-forget: save() enqueues and returns immediately, a
    single writer task performs them in order. A failed write is logged and
    dropped. Reads open their own connection in a worker thread and return
    an empty list on any database error.
    """

    def __init__(self, db_path: Path, queue_size: int = 1000):
        self.db_path = db_path
        self.available = False
        self.init_error: str | None = None
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._writer_task: asyncio.Task | None = None
        self._conn: sqlite3.Connection | None = None
        self.dropped_writes = 0

    @property
    def is_running(self) -> bool:
        return self._writer_task is not None and not self._writer_task.done()

    def open(self) -> bool:
        """Initialize the database. Returns False (degraded) on failure."""
        try:
            init_database(self.db_path)
        except (sqlite3.Error, OSError) as e:
            self.available = False
            self.init_error = str(e)
            log.error("store_init_failed", path=str(self.db_path), error=str(e))
            return False
        self.available = True
        self.init_error = None
        return True

    async def start(self) -> None:
        """Start the writer task. No-op when degraded or already running."""
        if not self.available or self.is_running:
            return
        self._conn = get_connection(self.db_path, check_same_thread=False)
        self._writer_task = asyncio.create_task(self._writer())
        log.info("store_writer_started", path=str(self.db_path))

    async def stop(self, timeout: float = 5.0) -> None:
        """Stop the writer, letting queued writes finish within the timeout."""
        if self._writer_task is not None and not self._writer_task.done():
            try:
                self._queue.put_nowait(None)
                await asyncio.wait_for(self._writer_task, timeout=timeout)
            except (asyncio.QueueFull, asyncio.TimeoutError):
                pending = self._queue.qsize()
                self._writer_task.cancel()
                try:
                    await self._writer_task
                except asyncio.CancelledError:
                    pass
                log.warning("store_writer_abandoned", pending=pending)
        self._writer_task = None
        self._release_pending()

        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def save(self, snapshot: Snapshot) -> bool:
        """Queue a snapshot for writing. Never blocks.

        Returns:
            True if queued, False if the store is unavailable or the queue is full
        """
        if not self.is_running:
            return False
        try:
            self._queue.put_nowait(snapshot)
        except asyncio.QueueFull:
            self.dropped_writes += 1
            log.warning(
                "persist_dropped",
                timestamp=snapshot.timestamp,
                queue_size=self._queue.maxsize,
                dropped=self.dropped_writes,
            )
            return False
        return True

    async def cleanup(self, retention_days: int) -> int:
        """Delete snapshots past retention and VACUUM.

        Runs on the writer when it is running so it never races a pending
        insert. Returns rows deleted, 0 on failure.
        """
        if not self.available:
            return 0
        if not self.is_running:
            return await asyncio.to_thread(self._prune_with_own_connection, retention_days)

        future: asyncio.Future[int] = asyncio.get_running_loop().create_future()
        await self._queue.put((retention_days, future))
        return await future

    async def flush(self) -> None:
        """Wait until every write queued so far has been performed."""
        if self.is_running:
            await self._queue.join()

    async def query_range(self, start: float, end: float) -> list[Snapshot]:
        return await self._read(get_snapshots, start, end)

    async def hourly_averages(self, start: float, end: float) -> list[HourlyMetrics]:
        return await self._read(get_hourly_averages, start, end)

    async def daily_averages(self, start: float, end: float) -> list[DailyMetrics]:
        return await self._read(get_daily_averages, start, end)

    async def stats(self) -> dict:
        """Snapshot count and time span; zeros when unavailable."""
        empty = {"count": 0, "oldest": None, "newest": None}
        if not self.available:
            return empty
        try:
            return await asyncio.to_thread(self._read_sync, get_store_stats)
        except sqlite3.Error as e:
            log.warning("persist_read_failed", query="get_store_stats", error=str(e))
            return empty

    async def _read(self, query: Callable[..., list[T]], *args: Any) -> list[T]:
        if not self.available:
            return []
        try:
            return await asyncio.to_thread(self._read_sync, query, *args)
        except sqlite3.Error as e:
            log.warning("persist_read_failed", query=query.__name__, error=str(e))
            return []

    def _read_sync(self, query: Callable[..., T], *args: Any) -> T:
        conn = get_connection(self.db_path)
        try:
            return query(conn, *args)
        finally:
            conn.close()

    def _prune_and_vacuum(self, conn: sqlite3.Connection, retention_days: int) -> int:
        deleted = prune_old_snapshots(conn, retention_days)
        vacuum(conn)
        return deleted

    def _prune_with_own_connection(self, retention_days: int) -> int:
        try:
            return self._read_sync(self._prune_and_vacuum, retention_days)
        except (sqlite3.Error, ValueError) as e:
            log.error("cleanup_failed", error=str(e))
            return 0

    async def _writer(self) -> None:
        """Drain the queue in order until the stop sentinel arrives."""
        assert self._conn is not None
        try:
            while True:
                item = await self._queue.get()
                try:
                    if item is None:
                        break
                    if isinstance(item, Snapshot):
                        await self._write(item)
                    else:
                        await self._cleanup(*item)
                finally:
                    self._queue.task_done()
        finally:
            self._release_pending()

    def _release_pending(self) -> None:
        """Empty the queue once the writer exits; waiting cleanups get 0."""
        while not self._queue.empty():
            item = self._queue.get_nowait()
            self._queue.task_done()
            if isinstance(item, tuple):
                _, future = item
                if not future.done():
                    future.set_result(0)

    async def _write(self, snapshot: Snapshot) -> None:
        try:
            await asyncio.to_thread(insert_snapshot, self._conn, snapshot)
        except sqlite3.Error as e:
            log.warning("persist_failed", timestamp=snapshot.timestamp, error=str(e))

    async def _cleanup(self, retention_days: int, future: asyncio.Future[int]) -> None:
        deleted = 0
        try:
            deleted = await asyncio.to_thread(self._prune_and_vacuum, self._conn, retention_days)
        except (sqlite3.Error, ValueError) as e:
            log.error("cleanup_failed", error=str(e))
        finally:
            if not future.done():
                future.set_result(deleted)
