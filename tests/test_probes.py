"""Tests for the psutil-backed probe set."""

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import psutil
import pytest

from sysinsight.models import GB, MB, MemoryPressure, ProcessCategory, ThermalState
from sysinsight.probes import (
    ProbeUnavailable,
    PsutilProbeSet,
    memory_pressure_from_percent,
    thermal_state_from_temperature,
)


@pytest.mark.parametrize(
    "percent,expected",
    [
        (40.0, MemoryPressure.NORMAL),
        (75.0, MemoryPressure.WARNING),
        (92.0, MemoryPressure.CRITICAL),
    ],
)
def test_memory_pressure_from_percent(percent, expected):
    assert memory_pressure_from_percent(percent) is expected


@pytest.mark.parametrize(
    "celsius,expected",
    [
        (50.0, ThermalState.NOMINAL),
        (72.0, ThermalState.FAIR),
        (88.0, ThermalState.SERIOUS),
        (99.0, ThermalState.CRITICAL),
    ],
)
def test_thermal_state_from_temperature(celsius, expected):
    assert thermal_state_from_temperature(celsius) is expected


def test_read_cpu():
    with (
        patch("psutil.cpu_percent", return_value=37.5),
        patch("psutil.cpu_count", return_value=10),
    ):
        reading = PsutilProbeSet().read_cpu()
    assert reading.usage == 37.5
    assert reading.core_count == 10


def test_read_memory():
    vm = SimpleNamespace(used=12 * GB, total=16 * GB, percent=80.0)
    swap = SimpleNamespace(used=GB)
    with (
        patch("psutil.virtual_memory", return_value=vm),
        patch("psutil.swap_memory", return_value=swap),
    ):
        reading = PsutilProbeSet().read_memory()

    assert reading.used == 12 * GB
    assert reading.pressure is MemoryPressure.WARNING
    assert reading.swap_used == GB
    assert reading.wired == 0


def test_read_gpu_is_unavailable():
    with pytest.raises(ProbeUnavailable):
        PsutilProbeSet().read_gpu()


def test_read_disk_rates_from_counter_deltas():
    """The first read has no baseline; the second yields per-second rates."""
    first = SimpleNamespace(read_bytes=0, write_bytes=0, read_count=0, write_count=0)
    second = SimpleNamespace(
        read_bytes=20 * MB, write_bytes=10 * MB, read_count=200, write_count=100
    )
    probes = PsutilProbeSet()

    with (
        patch("psutil.disk_io_counters", side_effect=[first, second]),
        patch("sysinsight.probes.time.monotonic", side_effect=[100.0, 102.0]),
    ):
        baseline = probes.read_disk()
        reading = probes.read_disk()

    assert baseline.read_rate == 0.0
    assert reading.read_rate == pytest.approx(10.0)
    assert reading.write_rate == pytest.approx(5.0)
    assert reading.read_ops == 100


def test_read_disk_without_counters():
    with patch("psutil.disk_io_counters", return_value=None):
        with pytest.raises(ProbeUnavailable):
            PsutilProbeSet().read_disk()


def test_read_thermal():
    temps = {"coretemp": [SimpleNamespace(current=61.0), SimpleNamespace(current=88.0)]}
    fans = {"applesmc": [SimpleNamespace(current=2400)]}
    with (
        patch("psutil.sensors_temperatures", return_value=temps, create=True),
        patch("psutil.sensors_fans", return_value=fans, create=True),
    ):
        reading = PsutilProbeSet().read_thermal()

    assert reading.cpu_temperature == 88.0
    assert reading.state is ThermalState.SERIOUS
    assert reading.fan_speed == 2400


def test_read_thermal_without_sensors():
    with patch("psutil.sensors_temperatures", return_value={}, create=True):
        with pytest.raises(ProbeUnavailable):
            PsutilProbeSet().read_thermal()


class _VanishedProcess:
    """A process that exits between iteration and attribute access."""

    @property
    def info(self):
        raise psutil.NoSuchProcess(99)


def test_read_processes_skips_vanished_and_sorts():
    def proc(pid, name, cpu, rss):
        p = MagicMock()
        p.info = {
            "pid": pid,
            "name": name,
            "cpu_percent": cpu,
            "memory_info": SimpleNamespace(rss=rss),
        }
        p.io_counters.return_value = SimpleNamespace(read_bytes=5, write_bytes=7)
        return p

    procs = [proc(1, "Safari", 5.0, GB), _VanishedProcess(), proc(2, "Xcode", 40.0, 2 * GB)]
    with patch("psutil.process_iter", return_value=procs):
        samples = PsutilProbeSet(max_processes=5).read_processes()

    assert [s.pid for s in samples] == [2, 1]
    assert samples[0].category is ProcessCategory.DEVELOPER
    assert samples[0].memory_usage == 2 * GB
    assert samples[1].disk_write_bytes == 7


def test_read_processes_respects_limit():
    procs = []
    for pid in range(10):
        p = MagicMock()
        p.info = {"pid": pid, "name": f"proc{pid}", "cpu_percent": float(pid), "memory_info": None}
        p.io_counters.side_effect = psutil.AccessDenied(pid)
        procs.append(p)

    with patch("psutil.process_iter", return_value=procs):
        samples = PsutilProbeSet(max_processes=3).read_processes()

    assert [s.pid for s in samples] == [9, 8, 7]
    assert samples[0].disk_read_bytes == 0
