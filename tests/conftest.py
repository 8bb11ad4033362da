"""Shared test fixtures for sysinsight."""

import time
from collections.abc import Iterator
from contextlib import ExitStack
from pathlib import Path
from unittest.mock import patch

import pytest

from sysinsight.config import Config
from sysinsight.models import GB, ProcessCategory, ProcessResourceSample, Snapshot
from sysinsight.probes import (
    CpuReading,
    DiskReading,
    GpuReading,
    MemoryReading,
    NetworkReading,
    ProbeUnavailable,
    ThermalReading,
)
from sysinsight.storage import init_database


@pytest.fixture
def tmp_db(tmp_path: Path) -> Path:
    """Create a temporary database path."""
    return tmp_path / "test.db"


@pytest.fixture
def initialized_db(tmp_db: Path) -> Path:
    """Create an initialized database with schema."""
    init_database(tmp_db)
    return tmp_db


def _make_snapshot(**kwargs) -> Snapshot:
    """Create a Snapshot with a calm 16GB machine as the baseline."""
    defaults = {
        "timestamp": time.time(),
        "cpu_usage": 20.0,
        "cpu_core_count": 8,
        "memory_used": 8 * GB,
        "memory_total": 16 * GB,
        "disk_read_rate": 1.0,
        "disk_write_rate": 1.0,
        "cpu_temperature": 45.0,
    }
    defaults.update(kwargs)
    return Snapshot(**defaults)


def _make_process(
    pid: int = 100,
    name: str = "worker",
    cpu_usage: float = 0.0,
    memory_usage: int = 0,
    disk_read_bytes: int = 0,
    disk_write_bytes: int = 0,
    category: ProcessCategory | None = None,
) -> ProcessResourceSample:
    """Create a ProcessResourceSample, categorized from its name unless given."""
    return ProcessResourceSample(
        pid=pid,
        name=name,
        cpu_usage=cpu_usage,
        memory_usage=memory_usage,
        disk_read_bytes=disk_read_bytes,
        disk_write_bytes=disk_write_bytes,
        category=category if category is not None else ProcessCategory.categorize(name),
    )


@pytest.fixture
def make_snapshot():
    """Factory fixture for Snapshots."""
    return _make_snapshot


@pytest.fixture
def make_process():
    """Factory fixture for ProcessResourceSamples."""
    return _make_process


class FakeProbeSet:
    """ProbeSet returning fixed readings; groups in ``failing`` raise."""

    def __init__(self, failing: set[str] | None = None, delay: float = 0.0) -> None:
        self.failing = failing or set()
        self.delay = delay
        self.cpu = CpuReading(usage=30.0, core_count=8)
        self.memory = MemoryReading(used=8 * GB, total=16 * GB)
        self.gpu = GpuReading(usage=5.0)
        self.disk = DiskReading(read_rate=2.0, write_rate=1.0)
        self.thermal = ThermalReading(cpu_temperature=50.0, fan_speed=1200)
        self.network = NetworkReading(bytes_in=1000, bytes_out=500)
        self.processes = [_make_process(pid=1, name="Safari", cpu_usage=12.0, memory_usage=GB)]
        self.reads = 0

    def _get(self, group: str, value):
        if group in self.failing:
            raise ProbeUnavailable(f"{group} probe offline")
        return value

    def read_cpu(self) -> CpuReading:
        self.reads += 1
        if self.delay:
            time.sleep(self.delay)
        return self._get("cpu", self.cpu)

    def read_memory(self) -> MemoryReading:
        return self._get("memory", self.memory)

    def read_gpu(self) -> GpuReading:
        return self._get("gpu", self.gpu)

    def read_disk(self) -> DiskReading:
        return self._get("disk", self.disk)

    def read_thermal(self) -> ThermalReading:
        return self._get("thermal", self.thermal)

    def read_network(self) -> NetworkReading:
        return self._get("network", self.network)

    def read_processes(self) -> list[ProcessResourceSample]:
        return self._get("processes", self.processes)


@pytest.fixture
def fake_probes() -> FakeProbeSet:
    return FakeProbeSet()


@pytest.fixture
def patched_config_paths(tmp_path: Path) -> Iterator[Path]:
    """Patch Config path properties so nothing touches the real home directory."""
    # fmt: off
    with ExitStack() as stack:
        for name, value in (
            ("config_dir", tmp_path / "config"),
            ("data_dir", tmp_path / "data"),
            ("state_dir", tmp_path / "state"),
        ):
            stack.enter_context(patch.object(
                Config, name,
                new_callable=lambda v=value: property(lambda self: v)
            ))
        yield tmp_path
    # fmt: on
