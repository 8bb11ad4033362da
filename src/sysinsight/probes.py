"""Probe interface consumed by the collector, plus a psutil-backed implementation.

A probe set supplies raw readings grouped by subsystem. Each ``read_*``
method either returns a reading or raises; the collector treats any
exception as ProbeUnavailable for that group and substitutes defaults.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Protocol

import psutil
import structlog

from sysinsight.models import (
    MB,
    MemoryPressure,
    ProcessCategory,
    ProcessResourceSample,
    ThermalState,
)

log = structlog.get_logger()

# Probe group names, also used in Snapshot.unavailable
CPU = "cpu"
MEMORY = "memory"
GPU = "gpu"
DISK = "disk"
THERMAL = "thermal"
NETWORK = "network"
PROCESSES = "processes"


class ProbeUnavailable(Exception):
    """Raised when a probe cannot produce a reading this tick."""


@dataclass(frozen=True)
class CpuReading:
    usage: float = 0.0
    performance_cores: float = 0.0
    efficiency_cores: float = 0.0
    core_count: int = 0


@dataclass(frozen=True)
class MemoryReading:
    used: int = 0
    total: int = 0
    pressure: MemoryPressure = MemoryPressure.NORMAL
    swap_used: int = 0
    wired: int = 0
    compressed: int = 0


@dataclass(frozen=True)
class GpuReading:
    usage: float = 0.0
    memory_used: int = 0
    temperature: float = 0.0


@dataclass(frozen=True)
class DiskReading:
    read_rate: float = 0.0  # MB/s
    write_rate: float = 0.0  # MB/s
    read_ops: int = 0
    write_ops: int = 0


@dataclass(frozen=True)
class ThermalReading:
    state: ThermalState = ThermalState.NOMINAL
    fan_speed: int = 0
    cpu_temperature: float = 0.0
    gpu_temperature: float = 0.0


@dataclass(frozen=True)
class NetworkReading:
    bytes_in: int = 0  # Bytes/sec
    bytes_out: int = 0


class ProbeSet(Protocol):
    """Source of raw telemetry for one collection tick."""

    def read_cpu(self) -> CpuReading: ...

    def read_memory(self) -> MemoryReading: ...

    def read_gpu(self) -> GpuReading: ...

    def read_disk(self) -> DiskReading: ...

    def read_thermal(self) -> ThermalReading: ...

    def read_network(self) -> NetworkReading: ...

    def read_processes(self) -> list[ProcessResourceSample]: ...


def memory_pressure_from_percent(percent: float) -> MemoryPressure:
    """Approximate a pressure level from memory usage percent."""
    if percent >= 90:
        return MemoryPressure.CRITICAL
    if percent >= 75:
        return MemoryPressure.WARNING
    return MemoryPressure.NORMAL


def thermal_state_from_temperature(celsius: float) -> ThermalState:
    """Approximate a thermal state from the hottest sensor reading."""
    if celsius >= 95:
        return ThermalState.CRITICAL
    if celsius >= 85:
        return ThermalState.SERIOUS
    if celsius >= 70:
        return ThermalState.FAIR
    return ThermalState.NOMINAL


@dataclass
class _Counter:
    """Previous cumulative counter values for rate calculation."""

    values: tuple[int, ...] = ()
    at: float = 0.0


@dataclass
class PsutilProbeSet:
    """Best-effort probes backed by psutil.

    psutil exposes neither memory pressure nor a thermal state, so both are
    derived from usage percent and sensor temperature. GPU metrics are not
    available through psutil and always raise ProbeUnavailable.
    """

    max_processes: int = 200
    _disk: _Counter = field(default_factory=_Counter)
    _net: _Counter = field(default_factory=_Counter)

    def read_cpu(self) -> CpuReading:
        usage = psutil.cpu_percent(interval=None)
        return CpuReading(usage=float(usage), core_count=psutil.cpu_count() or 0)

    def read_memory(self) -> MemoryReading:
        vm = psutil.virtual_memory()
        swap = psutil.swap_memory()
        return MemoryReading(
            used=int(vm.used),
            total=int(vm.total),
            pressure=memory_pressure_from_percent(vm.percent),
            swap_used=int(swap.used),
            wired=int(getattr(vm, "wired", 0)),
        )

    def read_gpu(self) -> GpuReading:
        raise ProbeUnavailable("psutil does not expose GPU metrics")

    def read_disk(self) -> DiskReading:
        counters = psutil.disk_io_counters()
        if counters is None:
            raise ProbeUnavailable("no disk counters")
        current = (
            counters.read_bytes,
            counters.write_bytes,
            counters.read_count,
            counters.write_count,
        )
        read_rate, write_rate, read_ops, write_ops = self._rates(self._disk, current)
        return DiskReading(
            read_rate=read_rate / MB,
            write_rate=write_rate / MB,
            read_ops=int(read_ops),
            write_ops=int(write_ops),
        )

    def read_thermal(self) -> ThermalReading:
        sensors = getattr(psutil, "sensors_temperatures", None)
        if sensors is None:
            raise ProbeUnavailable("temperature sensors not supported on this platform")
        temps = sensors() or {}
        readings = [t.current for entries in temps.values() for t in entries if t.current]
        if not readings:
            raise ProbeUnavailable("no temperature sensors reported")
        hottest = max(readings)

        fan_speed = 0
        fans = getattr(psutil, "sensors_fans", None)
        if fans is not None:
            speeds = [f.current for entries in (fans() or {}).values() for f in entries]
            fan_speed = int(max(speeds)) if speeds else 0

        return ThermalReading(
            state=thermal_state_from_temperature(hottest),
            fan_speed=fan_speed,
            cpu_temperature=float(hottest),
        )

    def read_network(self) -> NetworkReading:
        counters = psutil.net_io_counters()
        bytes_in, bytes_out = self._rates(self._net, (counters.bytes_recv, counters.bytes_sent))
        return NetworkReading(bytes_in=int(bytes_in), bytes_out=int(bytes_out))

    def read_processes(self) -> list[ProcessResourceSample]:
        samples = []
        for proc in psutil.process_iter(["pid", "name", "cpu_percent", "memory_info"]):
            try:
                info = proc.info
                name = info.get("name") or f"pid {info['pid']}"
                mem = info.get("memory_info")
                io = _io_counters(proc)
                samples.append(
                    ProcessResourceSample(
                        pid=info["pid"],
                        name=name,
                        cpu_usage=float(info.get("cpu_percent") or 0.0),
                        memory_usage=int(mem.rss) if mem else 0,
                        disk_read_bytes=io[0],
                        disk_write_bytes=io[1],
                        category=ProcessCategory.categorize(name),
                    )
                )
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
        samples.sort(key=lambda p: (p.cpu_usage, p.memory_usage), reverse=True)
        return samples[: self.max_processes]

    @staticmethod
    def _rates(previous: _Counter, current: tuple[int, ...]) -> tuple[float, ...]:
        """Per-second deltas against the previous call; zeros on the first call."""
        now = time.monotonic()
        if not previous.values or now <= previous.at:
            rates = tuple(0.0 for _ in current)
        else:
            elapsed = now - previous.at
            rates = tuple(max(0, c - p) / elapsed for c, p in zip(current, previous.values))
        previous.values = current
        previous.at = now
        return rates


def _io_counters(proc: psutil.Process) -> tuple[int, int]:
    """Cumulative (read, write) bytes for a process, zeros where unsupported."""
    io_counters = getattr(proc, "io_counters", None)
    if io_counters is None:
        return (0, 0)
    try:
        io = io_counters()
    except (psutil.AccessDenied, psutil.NoSuchProcess, NotImplementedError):
        return (0, 0)
    return (int(io.read_bytes), int(io.write_bytes))
