"""Insight rules.

Each rule looks at one analysis context and either returns an Insight or
None. Rules never raise for missing data: a rule that needs a process to
blame and finds none simply does not fire.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from sysinsight.config import RulesConfig
from sysinsight.correlation import DISK_METRIC
from sysinsight.models import (
    GB,
    MB,
    ActionType,
    Anomaly,
    Correlation,
    Insight,
    InsightAction,
    InsightMetrics,
    InsightType,
    MemoryPressure,
    MetricTrend,
    ProcessCategory,
    ProcessResourceSample,
    Severity,
    Snapshot,
    ThermalState,
)

TOP_PROCESS_COUNT = 5


@dataclass(frozen=True)
class RuleContext:
    """Everything a rule may consult for one snapshot."""

    snapshot: Snapshot
    processes: list[ProcessResourceSample] = field(default_factory=list)
    correlations: list[Correlation] = field(default_factory=list)
    anomalies: list[Anomaly] = field(default_factory=list)
    config: RulesConfig = field(default_factory=RulesConfig)

    def top_by_cpu(self, count: int = TOP_PROCESS_COUNT) -> list[ProcessResourceSample]:
        return sorted(self.processes, key=lambda p: p.cpu_usage, reverse=True)[:count]

    def top_by_memory(self, count: int = TOP_PROCESS_COUNT) -> list[ProcessResourceSample]:
        return sorted(self.processes, key=lambda p: p.memory_usage, reverse=True)[:count]


class InsightRule(Protocol):
    """A single trigger/severity/description policy."""

    def evaluate(self, context: RuleContext) -> Insight | None: ...


def rank_actions(actions: list[InsightAction]) -> tuple[InsightAction, ...]:
    """Order actions by estimated impact, highest first; unquantified ones keep their order last."""
    quantified = [a for a in actions if a.estimated_impact is not None]
    unquantified = [a for a in actions if a.estimated_impact is None]
    quantified.sort(key=lambda a: a.estimated_impact, reverse=True)  # type: ignore[arg-type, return-value]
    return tuple(quantified + unquantified)


def _quit_action(
    process: ProcessResourceSample, reason: str, impact: str, estimate: float
) -> InsightAction:
    return InsightAction(
        title=f"Quit {process.display_name}",
        description=reason,
        action_type=ActionType.QUIT_APP,
        impact=impact,
        estimated_impact=estimate,
        target_pid=process.pid,
    )


# ─────────────────────────────────────────────────────────────────────────────
# CPU saturation
# ─────────────────────────────────────────────────────────────────────────────


class CpuSaturationRule:
    """Fires when total CPU usage is above the warning threshold."""

    def evaluate(self, context: RuleContext) -> Insight | None:
        snapshot = context.snapshot
        config = context.config
        if snapshot.cpu_usage <= config.cpu_warning:
            return None

        top_processes = context.top_by_cpu()
        if not top_processes:
            return None
        top = top_processes[0]

        severity = Severity.CRITICAL if snapshot.cpu_usage > config.cpu_critical else Severity.WARNING

        actions = []
        if top.cpu_usage > config.quit_cpu_threshold:
            actions.append(
                _quit_action(
                    top,
                    "This app is using the most CPU",
                    f"Frees ~{int(top.cpu_usage)}% CPU",
                    top.cpu_usage,
                )
            )
        actions.append(
            InsightAction(
                title="Open Activity Monitor",
                description="See details for every process",
                action_type=ActionType.OPEN_ACTIVITY_MONITOR,
            )
        )

        return Insight(
            type=InsightType.CPU_SATURATION,
            severity=severity,
            title=f"CPU is overloaded ({int(snapshot.cpu_usage)}%)",
            description=self._describe(top),
            cause=f"{top.display_name} is using {int(top.cpu_usage)}% CPU",
            affected_processes=tuple(top_processes),
            suggested_actions=rank_actions(actions),
            metrics=InsightMetrics(
                current_value=snapshot.cpu_usage,
                threshold_value=config.cpu_warning,
                unit="%",
            ),
        )

    @staticmethod
    def _describe(top: ProcessResourceSample) -> str:
        name = top.display_name
        cpu = int(top.cpu_usage)
        lowered = name.lower()

        if name == "kernel_task" and cpu > 30:
            return (
                "The system is throttling to cool down. "
                "Reduce CPU load to avoid overheating."
            )
        if top.category is ProcessCategory.BROWSER:
            return f"{name} is using {cpu}% CPU. Many open tabs or a heavy extension may be the cause."
        if "xcode" in lowered or "clang" in lowered or "swift" in lowered:
            return f"Xcode is compiling and using {cpu}% CPU. The build should finish soon."
        if "docker" in lowered:
            return f"Docker containers are busy and using {cpu}% CPU."
        return f"{name} is using {cpu}% CPU, most of the available processing power."


# ─────────────────────────────────────────────────────────────────────────────
# Memory pressure
# ─────────────────────────────────────────────────────────────────────────────


class MemoryPressureRule:
    """Fires when the OS reports elevated memory pressure."""

    def evaluate(self, context: RuleContext) -> Insight | None:
        snapshot = context.snapshot
        config = context.config
        if snapshot.memory_pressure is MemoryPressure.NORMAL:
            return None

        top_processes = context.top_by_memory()
        if not top_processes:
            return None
        top = top_processes[0]

        severity = (
            Severity.CRITICAL
            if snapshot.memory_pressure is MemoryPressure.CRITICAL
            else Severity.WARNING
        )

        actions = []
        if top.memory_gb > config.quit_memory_gb:
            actions.append(
                _quit_action(
                    top,
                    "This app is holding the most RAM",
                    f"Frees ~{top.memory_gb:.1f}GB RAM",
                    top.memory_gb,
                )
            )

        return Insight(
            type=InsightType.MEMORY_PRESSURE,
            severity=severity,
            title=f"Memory pressure is {snapshot.memory_pressure.value}",
            description=self._describe(top, snapshot, config),
            cause=f"{top.display_name} is holding {_format_memory(top.memory_usage)}",
            affected_processes=tuple(top_processes),
            suggested_actions=rank_actions(actions),
            metrics=InsightMetrics(
                current_value=snapshot.memory_usage_percent,
                threshold_value=config.memory_reference_percent,
                unit="%",
            ),
        )

    @staticmethod
    def _describe(top: ProcessResourceSample, snapshot: Snapshot, config: RulesConfig) -> str:
        used_gb = snapshot.memory_used / GB
        total_gb = snapshot.memory_total / GB
        swap_mb = snapshot.swap_used / MB

        parts = [f"Using {used_gb:.1f}GB / {total_gb:.0f}GB RAM."]
        if swap_mb > config.swap_notice_mb:
            parts.append(f"The system is using {swap_mb:.0f}MB of swap, which can slow things down.")
        parts.append(f"{top.display_name} is holding {top.memory_gb:.1f}GB of {total_gb:.0f}GB.")
        return " ".join(parts)


def _format_memory(num_bytes: int) -> str:
    if num_bytes >= GB:
        return f"{num_bytes / GB:.1f}GB"
    return f"{num_bytes // MB}MB"


# ─────────────────────────────────────────────────────────────────────────────
# I/O bottleneck
# ─────────────────────────────────────────────────────────────────────────────


class IoBottleneckRule:
    """Fires when combined disk throughput is above the warning threshold."""

    def evaluate(self, context: RuleContext) -> Insight | None:
        snapshot = context.snapshot
        config = context.config
        total_io = snapshot.disk_total_rate
        if total_io <= config.io_warning:
            return None

        severity = Severity.CRITICAL if total_io > config.io_critical else Severity.WARNING
        disk_correlations = [c for c in context.correlations if c.source_metric == DISK_METRIC]

        return Insight(
            type=InsightType.IO_BOTTLENECK,
            severity=severity,
            title=f"High disk I/O ({total_io:.0f} MB/s)",
            description=self._describe(snapshot, disk_correlations),
            cause=(
                f"Read: {snapshot.disk_read_rate:.1f} MB/s, "
                f"Write: {snapshot.disk_write_rate:.1f} MB/s"
            ),
            affected_processes=tuple(c.target_process for c in disk_correlations),
            suggested_actions=(
                InsightAction(
                    title="Wait for it to finish",
                    description="Disk activity usually drops after a few minutes",
                    action_type=ActionType.REDUCE_LOAD,
                    suggestions=(
                        "Avoid starting other large copies",
                        "Let Spotlight finish indexing",
                    ),
                ),
            ),
            metrics=InsightMetrics(
                current_value=total_io,
                threshold_value=config.io_warning,
                unit="MB/s",
            ),
        )

    @staticmethod
    def _describe(snapshot: Snapshot, disk_correlations: list[Correlation]) -> str:
        if disk_correlations:
            return disk_correlations[0].description
        if snapshot.disk_write_rate > snapshot.disk_read_rate * 2:
            return (
                "Lots of data is being written. "
                "A backup, a download, or an app saving large files may be the cause."
            )
        if snapshot.disk_read_rate > snapshot.disk_write_rate * 2:
            return (
                "Lots of data is being read. "
                "An app may be loading files or Spotlight may be indexing."
            )
        return "The disk is busy with both reads and writes. The system may slow down."


# ─────────────────────────────────────────────────────────────────────────────
# Thermal throttling
# ─────────────────────────────────────────────────────────────────────────────


class ThermalThrottlingRule:
    """Fires on a serious or critical thermal state."""

    def evaluate(self, context: RuleContext) -> Insight | None:
        snapshot = context.snapshot
        if snapshot.thermal_state not in (ThermalState.SERIOUS, ThermalState.CRITICAL):
            return None

        severity = (
            Severity.CRITICAL
            if snapshot.thermal_state is ThermalState.CRITICAL
            else Severity.WARNING
        )

        return Insight(
            type=InsightType.THERMAL_THROTTLING,
            severity=severity,
            title="The machine is overheating and the CPU is throttling",
            description=self._describe(snapshot),
            cause=f"CPU temperature: {snapshot.cpu_temperature:.0f}°C",
            suggested_actions=(
                InsightAction(
                    title="Reduce CPU load",
                    description="Close apps you are not using",
                    action_type=ActionType.REDUCE_LOAD,
                    impact="Helps the CPU cool down",
                    suggestions=(
                        "Close unused browser tabs",
                        "Pause downloads and uploads",
                        "Quit heavy apps",
                    ),
                ),
                InsightAction(
                    title="Improve ventilation",
                    description="Give the machine room to breathe",
                    action_type=ActionType.REDUCE_LOAD,
                    impact="Improves heat dissipation",
                    suggestions=(
                        "Keep it off blankets and pillows",
                        "Use a laptop stand",
                        "Avoid direct sunlight",
                    ),
                ),
            ),
            metrics=InsightMetrics(
                current_value=snapshot.cpu_temperature,
                threshold_value=context.config.thermal_reference_celsius,
                unit="°C",
                trend=MetricTrend.INCREASING,
            ),
        )

    @staticmethod
    def _describe(snapshot: Snapshot) -> str:
        desc = f"The machine is {snapshot.thermal_state.description}. "
        if snapshot.thermal_state is ThermalState.CRITICAL:
            desc += "The CPU is slowed down hard to cool off and performance will drop noticeably."
        else:
            desc += "The CPU may slow down to avoid overheating."
        if snapshot.fan_speed > 0:
            desc += f" Fans are running at {snapshot.fan_speed} RPM."
        return desc


def default_rules() -> list[InsightRule]:
    """The built-in rules in evaluation order. Order decides which insight wins a type tie."""
    return [
        CpuSaturationRule(),
        MemoryPressureRule(),
        IoBottleneckRule(),
        ThermalThrottlingRule(),
    ]
