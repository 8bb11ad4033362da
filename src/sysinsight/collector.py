"""Periodic snapshot collection.

The collector owns the ring buffer and is its only writer. Each tick reads
every probe group in a worker thread, assembles a Snapshot, publishes it,
hands it to the store on the persist cadence and notifies subscribers.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

import structlog

from sysinsight.config import CollectorConfig
from sysinsight.models import MetricTrend, ProcessResourceSample, Snapshot
from sysinsight.probes import (
    CPU,
    DISK,
    GPU,
    MEMORY,
    NETWORK,
    PROCESSES,
    THERMAL,
    CpuReading,
    DiskReading,
    GpuReading,
    MemoryReading,
    NetworkReading,
    ProbeSet,
    ThermalReading,
)
from sysinsight.ringbuffer import RingBuffer

if TYPE_CHECKING:
    from sysinsight.storage import SnapshotStore

log = structlog.get_logger()

SnapshotCallback = Callable[[Snapshot, list[ProcessResourceSample]], Awaitable[None] | None]

TREND_SAMPLES = 10
TREND_THRESHOLD = 5.0


class SnapshotCollector:
    """Samples the probe set on a fixed cadence.

    A tick that comes due while the previous one is still running is
    skipped and counted in ``skipped_ticks``; ticks never overlap. After
    stop() returns, no further snapshot is published, persisted or sent to
    subscribers.
    """

    def __init__(
        self,
        probes: ProbeSet,
        config: CollectorConfig | None = None,
        store: SnapshotStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.probes = probes
        self.config = config or CollectorConfig()
        self.store = store
        self.clock = clock

        self.ring_buffer = RingBuffer(max_samples=self.config.history_size)
        self.latest_processes: list[ProcessResourceSample] = []
        self.sample_count = 0
        self.skipped_ticks = 0

        self._latest: Snapshot | None = None
        self._subscribers: list[SnapshotCallback] = []
        self._running = False
        self._generation = 0
        self._last_persist: float | None = None
        self._lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._tick_task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def latest(self) -> Snapshot | None:
        """Most recently published snapshot."""
        return self._latest

    def on_snapshot(self, callback: SnapshotCallback) -> None:
        """Register a callback run after each published snapshot (sync or async)."""
        self._subscribers.append(callback)

    def history(self, count: int | None = None) -> list[Snapshot]:
        """The last ``count`` snapshots (all if None), oldest first."""
        return self.ring_buffer.recent(count)

    async def start(self) -> None:
        """Begin periodic sampling. Calling start() while running is a no-op."""
        if self._running:
            return
        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run())
        log.info("collector_started", interval=self.config.sample_interval)

    async def stop(self) -> None:
        """Stop sampling and wait for the loop and any in-flight tick to end."""
        if not self._running and self._task is None:
            return
        self._running = False
        self._generation += 1
        self._stop_event.set()

        for task in (self._task, self._tick_task):
            if task is None or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._task = None
        self._tick_task = None
        log.info("collector_stopped", samples=self.sample_count, skipped=self.skipped_ticks)

    async def refresh(self) -> Snapshot | None:
        """Take one sample now, outside the periodic schedule."""
        return await self._tick()

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        interval = self.config.sample_interval
        next_due = loop.time()

        while self._running:
            if self._tick_task is not None and not self._tick_task.done():
                self.skipped_ticks += 1
                log.warning("tick_skipped", skipped_ticks=self.skipped_ticks)
            else:
                self._tick_task = asyncio.create_task(self._tick())

            next_due += interval
            now = loop.time()
            if next_due < now:
                next_due = now
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=next_due - now)
                break
            except asyncio.TimeoutError:
                pass

    async def _tick(self) -> Snapshot | None:
        generation = self._generation
        async with self._lock:
            try:
                snapshot, processes = await asyncio.to_thread(self._sample)
            except Exception as e:
                log.error("sample_failed", error=str(e))
                return None

            if generation != self._generation:
                return None

            self._publish(snapshot, processes)
            await self._notify(snapshot, processes)
            return snapshot

    def _publish(self, snapshot: Snapshot, processes: list[ProcessResourceSample]) -> None:
        self.ring_buffer.push(snapshot)
        self._latest = snapshot
        self.latest_processes = processes
        self.sample_count += 1

        if self.store is None:
            return
        if (
            self._last_persist is None
            or snapshot.timestamp - self._last_persist >= self.config.persist_interval
        ):
            self.store.save(snapshot)
            self._last_persist = snapshot.timestamp

    async def _notify(self, snapshot: Snapshot, processes: list[ProcessResourceSample]) -> None:
        for callback in self._subscribers:
            try:
                result = callback(snapshot, processes)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                log.error("subscriber_failed", callback=getattr(callback, "__name__", "?"), error=str(e))

    # ─────────────────────────────────────────────────────────────────────────
    # Sampling (runs in a worker thread)
    # ─────────────────────────────────────────────────────────────────────────

    def _read(self, group: str, reader: Callable[[], Any], default: Any, failed: set[str]) -> Any:
        try:
            return reader()
        except Exception as e:
            log.warning("probe_unavailable", group=group, error=str(e))
            failed.add(group)
            return default

    def _sample(self) -> tuple[Snapshot, list[ProcessResourceSample]]:
        failed: set[str] = set()
        timestamp = self.clock()

        cpu = self._read(CPU, self.probes.read_cpu, CpuReading(), failed)
        memory = self._read(MEMORY, self.probes.read_memory, MemoryReading(), failed)
        gpu = self._read(GPU, self.probes.read_gpu, GpuReading(), failed)
        disk = self._read(DISK, self.probes.read_disk, DiskReading(), failed)
        thermal = self._read(THERMAL, self.probes.read_thermal, ThermalReading(), failed)
        network = self._read(NETWORK, self.probes.read_network, NetworkReading(), failed)
        processes = self._read(PROCESSES, self.probes.read_processes, [], failed)

        snapshot = Snapshot(
            timestamp=timestamp,
            cpu_usage=cpu.usage,
            cpu_performance_cores=cpu.performance_cores,
            cpu_efficiency_cores=cpu.efficiency_cores,
            cpu_core_count=cpu.core_count,
            memory_used=memory.used,
            memory_total=memory.total,
            memory_pressure=memory.pressure,
            swap_used=memory.swap_used,
            memory_wired=memory.wired,
            memory_compressed=memory.compressed,
            gpu_usage=gpu.usage,
            gpu_memory_used=gpu.memory_used,
            disk_read_rate=disk.read_rate,
            disk_write_rate=disk.write_rate,
            disk_read_ops=disk.read_ops,
            disk_write_ops=disk.write_ops,
            cpu_temperature=thermal.cpu_temperature,
            gpu_temperature=gpu.temperature or thermal.gpu_temperature,
            fan_speed=thermal.fan_speed,
            thermal_state=thermal.state,
            network_bytes_in=network.bytes_in,
            network_bytes_out=network.bytes_out,
            unavailable=frozenset(failed),
        )
        return snapshot, list(processes)

    # ─────────────────────────────────────────────────────────────────────────
    # Convenience statistics over recent history
    # ─────────────────────────────────────────────────────────────────────────

    def average(self, metric: str, window: int | None = None) -> float:
        """Mean of a Snapshot attribute over the last ``window`` snapshots (0 when empty)."""
        values = [float(getattr(s, metric)) for s in self.history(window)]
        return sum(values) / len(values) if values else 0.0

    def trend(self, metric: str) -> MetricTrend:
        """Compare the older and newer halves of the last ten samples."""
        values = [float(getattr(s, metric)) for s in self.history(TREND_SAMPLES)]
        if len(values) < 2:
            return MetricTrend.STABLE
        half = len(values) // 2
        older = sum(values[:half]) / half
        newer = sum(values[half:]) / (len(values) - half)
        if newer - older > TREND_THRESHOLD:
            return MetricTrend.INCREASING
        if older - newer > TREND_THRESHOLD:
            return MetricTrend.DECREASING
        return MetricTrend.STABLE
