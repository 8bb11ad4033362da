"""Tests for SQLite storage layer."""

import asyncio
import sqlite3
import time
from datetime import datetime, timezone

import pytest

from sysinsight.models import MemoryPressure, ThermalState
from sysinsight.storage import (
    LAST_PRUNE_KEY,
    SCHEMA_VERSION,
    SnapshotStore,
    StoreUnavailable,
    get_connection,
    get_daemon_state,
    get_daily_averages,
    get_hourly_averages,
    get_schema_version,
    get_snapshots,
    get_store_stats,
    init_database,
    insert_snapshot,
    open_database,
    prune_old_snapshots,
    set_daemon_state,
)

# 2024-03-04 10:00:00 UTC, a Monday
BASE = datetime(2024, 3, 4, 10, 0, tzinfo=timezone.utc).timestamp()


# ─────────────────────────────────────────────────────────────────────────────
# Schema
# ─────────────────────────────────────────────────────────────────────────────


def test_init_database_creates_file(tmp_db):
    """init_database creates the database file."""
    init_database(tmp_db)
    assert tmp_db.exists()


def test_init_database_enables_wal(tmp_db):
    """Database uses WAL journal mode."""
    init_database(tmp_db)
    conn = sqlite3.connect(tmp_db)
    mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
    conn.close()
    assert mode == "wal"


def test_init_database_creates_tables(tmp_db):
    init_database(tmp_db)
    conn = sqlite3.connect(tmp_db)
    tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    indexes = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='index'")}
    conn.close()

    assert {"daemon_state", "snapshots"} <= tables
    assert "idx_snapshots_timestamp" in indexes


def test_init_database_sets_schema_version(initialized_db):
    conn = get_connection(initialized_db)
    assert get_schema_version(conn) == SCHEMA_VERSION
    conn.close()


def test_init_database_is_idempotent(initialized_db, make_snapshot):
    conn = get_connection(initialized_db)
    insert_snapshot(conn, make_snapshot(timestamp=BASE))
    conn.close()

    init_database(initialized_db)

    conn = get_connection(initialized_db)
    assert get_store_stats(conn)["count"] == 1
    conn.close()


def test_schema_mismatch_recreates_database(initialized_db, make_snapshot):
    """An older schema version is discarded, data included."""
    conn = get_connection(initialized_db)
    insert_snapshot(conn, make_snapshot(timestamp=BASE))
    set_daemon_state(conn, "schema_version", str(SCHEMA_VERSION - 1))
    conn.close()

    init_database(initialized_db)

    conn = get_connection(initialized_db)
    assert get_schema_version(conn) == SCHEMA_VERSION
    assert get_store_stats(conn)["count"] == 0
    conn.close()


def test_corrupt_file_is_recreated(tmp_db):
    tmp_db.write_bytes(b"this is not a sqlite database" * 100)
    init_database(tmp_db)

    conn = get_connection(tmp_db)
    assert get_schema_version(conn) == SCHEMA_VERSION
    conn.close()


def test_get_schema_version_empty_database(tmp_db):
    conn = sqlite3.connect(tmp_db)
    assert get_schema_version(conn) == 0
    conn.close()


def test_daemon_state_round_trip(initialized_db):
    conn = get_connection(initialized_db)
    assert get_daemon_state(conn, "last_prune") is None
    set_daemon_state(conn, "last_prune", "123.0")
    assert get_daemon_state(conn, "last_prune") == "123.0"
    conn.close()


def test_open_database_missing_file(tmp_db):
    with pytest.raises(StoreUnavailable):
        with open_database(tmp_db):
            pass


# ─────────────────────────────────────────────────────────────────────────────
# Snapshots
# ─────────────────────────────────────────────────────────────────────────────


def test_insert_and_get_snapshot(initialized_db, make_snapshot):
    snapshot = make_snapshot(
        timestamp=BASE,
        cpu_usage=42.5,
        memory_pressure=MemoryPressure.WARNING,
        thermal_state=ThermalState.SERIOUS,
        fan_speed=3000,
        unavailable=frozenset({"gpu", "network"}),
    )
    conn = get_connection(initialized_db)
    row_id = insert_snapshot(conn, snapshot)
    loaded = get_snapshots(conn, BASE - 1, BASE + 1)
    conn.close()

    assert row_id == 1
    assert loaded == [snapshot]


def test_get_snapshots_inclusive_range_ascending(initialized_db, make_snapshot):
    conn = get_connection(initialized_db)
    for offset in (30, 0, 10, 20):
        insert_snapshot(conn, make_snapshot(timestamp=BASE + offset))

    in_range = get_snapshots(conn, BASE + 10, BASE + 20)
    limited = get_snapshots(conn, BASE, BASE + 30, limit=2)
    conn.close()

    assert [s.timestamp for s in in_range] == [BASE + 10, BASE + 20]
    assert [s.timestamp for s in limited] == [BASE, BASE + 10]


def test_hourly_averages_bucket_by_utc_hour(initialized_db, make_snapshot):
    conn = get_connection(initialized_db)
    insert_snapshot(conn, make_snapshot(timestamp=BASE + 60, cpu_usage=20.0))
    insert_snapshot(conn, make_snapshot(timestamp=BASE + 1800, cpu_usage=40.0))
    insert_snapshot(conn, make_snapshot(timestamp=BASE + 3600, cpu_usage=90.0))

    hourly = get_hourly_averages(conn, BASE, BASE + 7200)
    conn.close()

    assert len(hourly) == 2
    first, second = hourly
    assert first.hour == datetime(2024, 3, 4, 10, tzinfo=timezone.utc)
    assert first.avg_cpu == pytest.approx(30.0)
    assert first.max_cpu == pytest.approx(40.0)
    assert first.sample_count == 2
    assert first.avg_memory_percent == pytest.approx(50.0)
    assert second.hour.hour == 11
    assert second.avg_cpu == pytest.approx(90.0)


def test_daily_averages(initialized_db, make_snapshot):
    conn = get_connection(initialized_db)
    insert_snapshot(conn, make_snapshot(timestamp=BASE, cpu_usage=10.0, cpu_temperature=50.0))
    insert_snapshot(conn, make_snapshot(timestamp=BASE + 3600, cpu_usage=30.0, cpu_temperature=70.0))
    insert_snapshot(conn, make_snapshot(timestamp=BASE + 86400, cpu_usage=50.0))

    daily = get_daily_averages(conn, BASE, BASE + 2 * 86400)
    conn.close()

    assert [d.date.day for d in daily] == [4, 5]
    assert daily[0].date.tzinfo is timezone.utc
    assert daily[0].avg_cpu == pytest.approx(20.0)
    assert daily[0].max_temperature == pytest.approx(70.0)
    assert daily[1].sample_count == 1


def test_averages_exclude_unavailable_groups(initialized_db, make_snapshot):
    """A failed probe's zeros never drag an average down."""
    conn = get_connection(initialized_db)
    insert_snapshot(conn, make_snapshot(timestamp=BASE, cpu_usage=60.0, cpu_temperature=50.0))
    insert_snapshot(
        conn,
        make_snapshot(
            timestamp=BASE + 10,
            cpu_usage=0.0,
            cpu_temperature=0.0,
            unavailable=frozenset({"cpu", "thermal"}),
        ),
    )

    hourly = get_hourly_averages(conn, BASE, BASE + 60)
    conn.close()

    assert hourly[0].avg_cpu == pytest.approx(60.0)
    assert hourly[0].avg_temperature == pytest.approx(50.0)
    assert hourly[0].sample_count == 2


def test_averages_empty_range(initialized_db):
    conn = get_connection(initialized_db)
    assert get_hourly_averages(conn, BASE, BASE + 3600) == []
    conn.close()


def test_prune_old_snapshots(initialized_db, make_snapshot):
    now = BASE + 40 * 86400
    conn = get_connection(initialized_db)
    insert_snapshot(conn, make_snapshot(timestamp=BASE))  # 40 days old
    insert_snapshot(conn, make_snapshot(timestamp=now - 86400))

    deleted = prune_old_snapshots(conn, retention_days=30, now=now)
    remaining = get_store_stats(conn)
    last_prune = get_daemon_state(conn, LAST_PRUNE_KEY)
    conn.close()

    assert deleted == 1
    assert remaining["count"] == 1
    assert remaining["oldest"] == now - 86400
    assert float(last_prune) == now


def test_prune_rejects_zero_days(initialized_db):
    conn = get_connection(initialized_db)
    with pytest.raises(ValueError):
        prune_old_snapshots(conn, retention_days=0)
    conn.close()


def test_store_stats_empty(initialized_db):
    conn = get_connection(initialized_db)
    assert get_store_stats(conn) == {"count": 0, "oldest": None, "newest": None}
    conn.close()


# ─────────────────────────────────────────────────────────────────────────────
# SnapshotStore
# ─────────────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_store_save_and_query(tmp_db, make_snapshot):
    store = SnapshotStore(tmp_db)
    assert store.open()
    await store.start()
    try:
        assert store.save(make_snapshot(timestamp=BASE, cpu_usage=10.0))
        assert store.save(make_snapshot(timestamp=BASE + 5, cpu_usage=20.0))
        await store.flush()

        snapshots = await store.query_range(BASE, BASE + 10)
        hourly = await store.hourly_averages(BASE, BASE + 10)
        stats = await store.stats()
    finally:
        await store.stop()

    assert [s.cpu_usage for s in snapshots] == [10.0, 20.0]
    assert hourly[0].avg_cpu == pytest.approx(15.0)
    assert stats["count"] == 2


@pytest.mark.asyncio
async def test_store_stop_flushes_queue(tmp_db, make_snapshot):
    store = SnapshotStore(tmp_db)
    store.open()
    await store.start()
    for i in range(5):
        store.save(make_snapshot(timestamp=BASE + i))
    await store.stop()

    conn = get_connection(tmp_db)
    assert get_store_stats(conn)["count"] == 5
    conn.close()


@pytest.mark.asyncio
async def test_store_degraded_when_init_fails(tmp_path, make_snapshot):
    """A path that cannot hold a database leaves the store degraded, not crashed."""
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    store = SnapshotStore(blocker / "metrics.db")

    assert store.open() is False
    assert store.available is False
    assert store.init_error

    await store.start()
    assert store.save(make_snapshot(timestamp=BASE)) is False
    assert await store.query_range(BASE, BASE + 10) == []
    assert await store.daily_averages(BASE, BASE + 10) == []
    assert await store.stats() == {"count": 0, "oldest": None, "newest": None}
    assert await store.cleanup(30) == 0
    await store.stop()


def test_store_save_before_start_is_rejected(tmp_db, make_snapshot):
    store = SnapshotStore(tmp_db)
    store.open()
    assert store.save(make_snapshot(timestamp=BASE)) is False


@pytest.mark.asyncio
async def test_store_full_queue_drops_write(tmp_db, make_snapshot):
    store = SnapshotStore(tmp_db, queue_size=1)
    store.open()
    await store.start()
    try:
        # The writer cannot run between these two calls
        assert store.save(make_snapshot(timestamp=BASE))
        assert store.save(make_snapshot(timestamp=BASE + 1)) is False
        assert store.dropped_writes == 1
    finally:
        await store.stop()


@pytest.mark.asyncio
async def test_store_cleanup_through_writer(tmp_db, make_snapshot):
    now = time.time()
    store = SnapshotStore(tmp_db)
    store.open()
    await store.start()
    try:
        store.save(make_snapshot(timestamp=now - 40 * 86400))
        store.save(make_snapshot(timestamp=now - 60))
        deleted = await store.cleanup(30)
        stats = await store.stats()
    finally:
        await store.stop()

    assert deleted == 1
    assert stats["count"] == 1


@pytest.mark.asyncio
async def test_store_cleanup_without_writer(initialized_db, make_snapshot):
    conn = get_connection(initialized_db)
    insert_snapshot(conn, make_snapshot(timestamp=time.time() - 40 * 86400))
    conn.close()

    store = SnapshotStore(initialized_db)
    store.open()
    assert await store.cleanup(30) == 1
    assert await store.cleanup(0) == 0


@pytest.mark.asyncio
async def test_store_read_error_returns_empty(tmp_db):
    store = SnapshotStore(tmp_db)
    store.open()
    tmp_db.unlink()
    tmp_db.mkdir()

    assert await store.query_range(BASE, BASE + 10) == []


@pytest.mark.asyncio
async def test_store_cleanup_resolves_when_writer_cancelled(tmp_db):
    store = SnapshotStore(tmp_db)
    store.open()
    await store.start()

    cleanup = asyncio.create_task(store.cleanup(30))
    await asyncio.sleep(0)
    store._writer_task.cancel()

    assert await asyncio.wait_for(cleanup, timeout=2) == 0
    await store.stop()
    assert not store.is_running

