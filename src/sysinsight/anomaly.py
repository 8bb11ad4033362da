"""Rolling z-score anomaly detection over per-metric windows."""

from __future__ import annotations

import math
import time
from collections import deque
from collections.abc import Callable

import structlog

from sysinsight.config import AnomalyConfig
from sysinsight.models import Anomaly, Snapshot
from sysinsight.probes import CPU, DISK, MEMORY

log = structlog.get_logger()


class RollingWindow:
    """Bounded FIFO of recent values for one metric stream."""

    def __init__(self, capacity: int = 60) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._values: deque[float] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._values)

    @property
    def count(self) -> int:
        return len(self._values)

    @property
    def capacity(self) -> int:
        return self._values.maxlen or 0

    @property
    def values(self) -> list[float]:
        return list(self._values)

    def push(self, value: float) -> None:
        self._values.append(value)

    def clear(self) -> None:
        self._values.clear()

    @property
    def mean(self) -> float:
        if not self._values:
            return 0.0
        return sum(self._values) / len(self._values)

    @property
    def variance(self) -> float:
        """Sample variance (n - 1 denominator); 0 with fewer than two values."""
        n = len(self._values)
        if n < 2:
            return 0.0
        m = self.mean
        return sum((v - m) ** 2 for v in self._values) / (n - 1)

    @property
    def stddev(self) -> float:
        return math.sqrt(self.variance)

    @property
    def min(self) -> float:
        return min(self._values, default=0.0)

    @property
    def max(self) -> float:
        return max(self._values, default=0.0)


# Metric streams watched by detect(): name -> (probe group, extractor)
METRIC_STREAMS: dict[str, tuple[str, Callable[[Snapshot], float]]] = {
    "CPU Usage": (CPU, lambda s: s.cpu_usage),
    "Memory Usage": (MEMORY, lambda s: s.memory_usage_percent),
    "Disk Read": (DISK, lambda s: s.disk_read_rate),
    "Disk Write": (DISK, lambda s: s.disk_write_rate),
}


class AnomalyDetector:
    """Flags values unusually far above their rolling mean.

    Assumes time-ordered arrival from a single producer per stream. Only
    upward spikes are reported; unusually low values are not anomalies here.
    """

    def __init__(self, config: AnomalyConfig | None = None) -> None:
        self.config = config or AnomalyConfig()
        self._windows: dict[str, RollingWindow] = {}

    def window(self, metric: str) -> RollingWindow:
        """Return the window for a stream, creating it on first use."""
        window = self._windows.get(metric)
        if window is None:
            window = RollingWindow(self.config.window_size)
            self._windows[metric] = window
        return window

    def observe(self, metric: str, value: float, timestamp: float | None = None) -> Anomaly | None:
        """Push a value into its stream and return an Anomaly if it is a spike.

        The value is included in the window before the statistics are taken.
        Returns None while the window holds fewer than min_samples values or
        when the stream is near-constant.
        """
        window = self.window(metric)
        window.push(value)

        if window.count < self.config.min_samples:
            return None

        mean = window.mean
        stddev = window.stddev
        if stddev < self.config.min_stddev:
            return None

        deviation = (value - mean) / stddev
        if deviation <= self.config.z_threshold:
            return None

        return Anomaly(
            metric=metric,
            current_value=value,
            expected_value=mean,
            deviation=deviation,
            timestamp=timestamp if timestamp is not None else time.time(),
        )

    def detect(self, snapshot: Snapshot) -> list[Anomaly]:
        """Feed every watched stream from a snapshot and collect anomalies.

        Streams whose probe group was unavailable this tick are skipped so a
        substituted zero never enters the statistics.
        """
        anomalies = []
        for metric, (group, extract) in METRIC_STREAMS.items():
            if not snapshot.is_available(group):
                continue
            anomaly = self.observe(metric, extract(snapshot), snapshot.timestamp)
            if anomaly is not None:
                log.info(
                    "anomaly_detected",
                    metric=metric,
                    value=round(anomaly.current_value, 2),
                    expected=round(anomaly.expected_value, 2),
                    deviation=round(anomaly.deviation, 2),
                )
                anomalies.append(anomaly)
        return anomalies

    def reset(self) -> None:
        """Clear all rolling windows."""
        self._windows.clear()
