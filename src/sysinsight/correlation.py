"""Attribute elevated system metrics to the processes most likely causing them."""

from __future__ import annotations

import time

from sysinsight.config import CorrelationConfig
from sysinsight.models import (
    GB,
    MB,
    Correlation,
    MemoryPressure,
    ProcessCategory,
    ProcessResourceSample,
    Snapshot,
)

CPU_METRIC = "CPU Usage"
MEMORY_METRIC = "Memory Pressure"
DISK_METRIC = "Disk I/O"


class CorrelationEngine:
    """Ranks processes against the aggregate metric they contribute to.

    Each aggregate has a trigger below which no attribution is attempted, a
    top-K cut, and a materiality floor that drops small contributors.
    Strength is the process's share of the aggregate, capped at 1.0.
    """

    def __init__(self, config: CorrelationConfig | None = None) -> None:
        self.config = config or CorrelationConfig()

    def correlate(
        self,
        snapshot: Snapshot,
        processes: list[ProcessResourceSample],
    ) -> list[Correlation]:
        """Return correlations for every triggered aggregate, cpu then memory then disk."""
        correlations: list[Correlation] = []
        now = time.time()

        if snapshot.cpu_usage > self.config.cpu_trigger:
            correlations.extend(self._correlate_cpu(snapshot.cpu_usage, processes, now))

        if snapshot.memory_pressure is not MemoryPressure.NORMAL:
            correlations.extend(self._correlate_memory(snapshot, processes, now))

        if snapshot.disk_total_rate > self.config.disk_trigger:
            correlations.extend(self._correlate_disk(processes, now))

        return correlations

    def _correlate_cpu(
        self,
        usage: float,
        processes: list[ProcessResourceSample],
        now: float,
    ) -> list[Correlation]:
        top = sorted(processes, key=lambda p: p.cpu_usage, reverse=True)[: self.config.cpu_top_k]
        return [
            Correlation(
                source_metric=CPU_METRIC,
                target_process=p,
                strength=min(p.cpu_usage / usage, 1.0),
                description=describe_cpu_usage(p),
                timestamp=now,
            )
            for p in top
            if p.cpu_usage > self.config.cpu_floor
        ]

    def _correlate_memory(
        self,
        snapshot: Snapshot,
        processes: list[ProcessResourceSample],
        now: float,
    ) -> list[Correlation]:
        if snapshot.memory_total <= 0 or snapshot.memory_used <= 0:
            return []

        top = sorted(processes, key=lambda p: p.memory_usage, reverse=True)[
            : self.config.memory_top_k
        ]
        correlations = []
        for p in top:
            ratio = p.memory_usage / snapshot.memory_total
            if ratio <= self.config.memory_floor_ratio:
                continue
            correlations.append(
                Correlation(
                    source_metric=MEMORY_METRIC,
                    target_process=p,
                    strength=min(p.memory_usage / snapshot.memory_used, 1.0),
                    description=describe_memory_usage(p, ratio),
                    timestamp=now,
                )
            )
        return correlations

    def _correlate_disk(
        self,
        processes: list[ProcessResourceSample],
        now: float,
    ) -> list[Correlation]:
        total_bytes = sum(p.disk_bytes for p in processes)
        if total_bytes <= 0:
            return []

        top = sorted(processes, key=lambda p: p.disk_bytes, reverse=True)[: self.config.disk_top_k]
        return [
            Correlation(
                source_metric=DISK_METRIC,
                target_process=p,
                strength=min(p.disk_bytes / total_bytes, 1.0),
                description=describe_disk_usage(p),
                timestamp=now,
            )
            for p in top
            if p.disk_bytes > self.config.disk_floor_bytes
        ]


def describe_cpu_usage(process: ProcessResourceSample) -> str:
    name = process.display_name
    usage = int(process.cpu_usage)
    lowered = name.lower()

    if process.category is ProcessCategory.BROWSER:
        return f"{name} is using {usage}% CPU, possibly from many tabs or extensions"
    if process.category is ProcessCategory.DEVELOPER:
        if "xcode" in lowered:
            return f"{name} is using {usage}% CPU, likely building or indexing"
        if "docker" in lowered:
            return f"Docker is using {usage}% CPU with containers running"
    if process.category is ProcessCategory.SYSTEM:
        if name == "kernel_task":
            return f"kernel_task is using {usage}% CPU, the system may be thermal throttling"
        if "mds" in name or "Spotlight" in name:
            return f"Spotlight is indexing and using {usage}% CPU"
    return f"{name} is using {usage}% CPU"


def describe_memory_usage(process: ProcessResourceSample, ratio: float) -> str:
    name = process.display_name
    if process.memory_usage >= GB:
        return f"{name} is holding {process.memory_gb:.1f}GB RAM ({int(ratio * 100)}% of total)"
    return f"{name} is using {process.memory_usage // MB}MB RAM"


def describe_disk_usage(process: ProcessResourceSample) -> str:
    name = process.display_name
    if "mds" in name or "Spotlight" in name:
        return "Spotlight is indexing files and causing heavy disk I/O"
    if "backupd" in name or "Time Machine" in name:
        return "Time Machine is backing up, disk I/O will stay high for a while"
    if "bird" in name or "cloudd" in name:
        return "iCloud is syncing files, which can cause disk I/O"
    return f"{name} is reading and writing the disk heavily"
