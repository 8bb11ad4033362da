"""Data model shared by the collector, store and analysis pipeline."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

GB = 1_073_741_824
MB = 1_048_576


class MemoryPressure(str, Enum):
    """Kernel-reported memory pressure level."""

    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"


class ThermalState(str, Enum):
    """Thermal state as reported by the OS."""

    NOMINAL = "nominal"
    FAIR = "fair"
    SERIOUS = "serious"
    CRITICAL = "critical"

    @property
    def description(self) -> str:
        return _THERMAL_DESCRIPTIONS[self]


_THERMAL_DESCRIPTIONS = {
    ThermalState.NOMINAL: "running at normal temperature",
    ThermalState.FAIR: "warming up",
    ThermalState.SERIOUS: "running hot and may throttle",
    ThermalState.CRITICAL: "overheating and throttling the CPU",
}


class SystemStatus(str, Enum):
    """Overall status derived from the current insights."""

    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"


class Severity(str, Enum):
    """Insight severity. Ordered info < warning < critical."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def priority(self) -> int:
        return _SEVERITY_PRIORITY[self]

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.priority < other.priority

    def __le__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.priority <= other.priority

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.priority > other.priority

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.priority >= other.priority


_SEVERITY_PRIORITY = {
    Severity.INFO: 0,
    Severity.WARNING: 1,
    Severity.CRITICAL: 2,
}


class InsightType(str, Enum):
    """Kinds of insight. Also the deduplication key within one analysis pass."""

    CPU_SATURATION = "cpu_saturation"
    MEMORY_PRESSURE = "memory_pressure"
    IO_BOTTLENECK = "io_bottleneck"
    THERMAL_THROTTLING = "thermal_throttling"
    BACKGROUND_MISBEHAVIOR = "background_misbehavior"
    NETWORK_HOG = "network_hog"

    @property
    def category(self) -> str:
        if self in (
            InsightType.CPU_SATURATION,
            InsightType.MEMORY_PRESSURE,
            InsightType.THERMAL_THROTTLING,
        ):
            return "performance"
        if self is InsightType.IO_BOTTLENECK:
            return "storage"
        if self is InsightType.NETWORK_HOG:
            return "network"
        return "efficiency"


class ProcessCategory(str, Enum):
    """Coarse grouping of processes used for description templates."""

    BROWSER = "browser"
    DEVELOPER = "developer"
    PRODUCTIVITY = "productivity"
    MEDIA = "media"
    COMMUNICATION = "communication"
    SYSTEM = "system"
    BACKGROUND = "background"
    OTHER = "other"

    @classmethod
    def categorize(cls, name: str, bundle_id: str | None = None) -> ProcessCategory:
        """Guess a category from a process name and optional bundle identifier.

        Checks run in priority order; the first matching group wins.
        """
        lowered = name.lower()
        bundle = (bundle_id or "").lower()

        def has(*needles: str) -> bool:
            return any(n in lowered for n in needles)

        if has("chrome", "safari", "firefox", "edge", "brave", "arc") or "browser" in bundle:
            return cls.BROWSER
        if has("xcode", "vscode", "code", "terminal", "iterm", "docker", "simulator", "git"):
            return cls.DEVELOPER
        if "developer" in bundle:
            return cls.DEVELOPER
        if has("spotify", "music", "vlc", "quicktime", "photos", "preview"):
            return cls.MEDIA
        if "music" in bundle or "video" in bundle:
            return cls.MEDIA
        if has("slack", "discord", "zoom", "teams", "messages", "mail", "telegram"):
            return cls.COMMUNICATION
        if has("pages", "numbers", "keynote", "word", "excel", "notion", "obsidian", "notes"):
            return cls.PRODUCTIVITY
        if has("kernel", "launchd", "mds", "spotlight", "finder", "dock", "windowserver"):
            return cls.SYSTEM
        if lowered.startswith("com.apple") or bundle.startswith("com.apple"):
            return cls.SYSTEM
        if lowered.endswith("d") or lowered.endswith("agent") or has("helper", "daemon"):
            return cls.BACKGROUND
        return cls.OTHER


@dataclass(frozen=True)
class Snapshot:
    """One point-in-time bundle of system metrics.

    Fields whose probe failed keep their default value and the probe group
    name is listed in ``unavailable`` so a genuine zero can be told apart
    from a missing reading.
    """

    timestamp: float
    # CPU
    cpu_usage: float = 0.0  # 0-100%
    cpu_performance_cores: float = 0.0
    cpu_efficiency_cores: float = 0.0
    cpu_core_count: int = 0
    # Memory
    memory_used: int = 0  # Bytes
    memory_total: int = 0  # Bytes
    memory_pressure: MemoryPressure = MemoryPressure.NORMAL
    swap_used: int = 0
    memory_wired: int = 0
    memory_compressed: int = 0
    # GPU
    gpu_usage: float = 0.0
    gpu_memory_used: int = 0
    # Disk
    disk_read_rate: float = 0.0  # MB/s
    disk_write_rate: float = 0.0  # MB/s
    disk_read_ops: int = 0
    disk_write_ops: int = 0
    # Thermal
    cpu_temperature: float = 0.0  # Celsius
    gpu_temperature: float = 0.0
    fan_speed: int = 0  # RPM, 0 for fanless machines
    thermal_state: ThermalState = ThermalState.NOMINAL
    # Network
    network_bytes_in: int = 0  # Bytes/sec
    network_bytes_out: int = 0
    # Probe groups that failed this tick
    unavailable: frozenset[str] = field(default_factory=frozenset)

    @property
    def memory_usage_percent(self) -> float:
        if self.memory_total <= 0:
            return 0.0
        return min(100.0, max(0.0, self.memory_used / self.memory_total * 100))

    @property
    def disk_total_rate(self) -> float:
        """Combined disk read + write rate in MB/s."""
        return self.disk_read_rate + self.disk_write_rate

    def is_available(self, group: str) -> bool:
        return group not in self.unavailable

    def to_dict(self) -> dict:
        """Serialize to a dictionary."""
        return {
            "timestamp": self.timestamp,
            "cpu_usage": self.cpu_usage,
            "cpu_performance_cores": self.cpu_performance_cores,
            "cpu_efficiency_cores": self.cpu_efficiency_cores,
            "cpu_core_count": self.cpu_core_count,
            "memory_used": self.memory_used,
            "memory_total": self.memory_total,
            "memory_pressure": self.memory_pressure.value,
            "swap_used": self.swap_used,
            "memory_wired": self.memory_wired,
            "memory_compressed": self.memory_compressed,
            "gpu_usage": self.gpu_usage,
            "gpu_memory_used": self.gpu_memory_used,
            "disk_read_rate": self.disk_read_rate,
            "disk_write_rate": self.disk_write_rate,
            "disk_read_ops": self.disk_read_ops,
            "disk_write_ops": self.disk_write_ops,
            "cpu_temperature": self.cpu_temperature,
            "gpu_temperature": self.gpu_temperature,
            "fan_speed": self.fan_speed,
            "thermal_state": self.thermal_state.value,
            "network_bytes_in": self.network_bytes_in,
            "network_bytes_out": self.network_bytes_out,
            "unavailable": sorted(self.unavailable),
        }

    @classmethod
    def from_dict(cls, data: dict) -> Snapshot:
        """Deserialize from a dictionary, tolerating missing keys."""
        return cls(
            timestamp=data["timestamp"],
            cpu_usage=data.get("cpu_usage", 0.0),
            cpu_performance_cores=data.get("cpu_performance_cores", 0.0),
            cpu_efficiency_cores=data.get("cpu_efficiency_cores", 0.0),
            cpu_core_count=data.get("cpu_core_count", 0),
            memory_used=data.get("memory_used", 0),
            memory_total=data.get("memory_total", 0),
            memory_pressure=MemoryPressure(data.get("memory_pressure", "normal")),
            swap_used=data.get("swap_used", 0),
            memory_wired=data.get("memory_wired", 0),
            memory_compressed=data.get("memory_compressed", 0),
            gpu_usage=data.get("gpu_usage", 0.0),
            gpu_memory_used=data.get("gpu_memory_used", 0),
            disk_read_rate=data.get("disk_read_rate", 0.0),
            disk_write_rate=data.get("disk_write_rate", 0.0),
            disk_read_ops=data.get("disk_read_ops", 0),
            disk_write_ops=data.get("disk_write_ops", 0),
            cpu_temperature=data.get("cpu_temperature", 0.0),
            gpu_temperature=data.get("gpu_temperature", 0.0),
            fan_speed=data.get("fan_speed", 0),
            thermal_state=ThermalState(data.get("thermal_state", "nominal")),
            network_bytes_in=data.get("network_bytes_in", 0),
            network_bytes_out=data.get("network_bytes_out", 0),
            unavailable=frozenset(data.get("unavailable", ())),
        )


@dataclass(frozen=True)
class ProcessResourceSample:
    """Resource usage of one process, as supplied by the probe set."""

    pid: int
    name: str
    cpu_usage: float = 0.0  # 0-100% (may exceed 100 on multi-core)
    memory_usage: int = 0  # Bytes
    disk_read_bytes: int = 0
    disk_write_bytes: int = 0
    network_bytes_in: int = 0
    network_bytes_out: int = 0
    category: ProcessCategory = ProcessCategory.OTHER
    bundle_id: str | None = None

    @property
    def disk_bytes(self) -> int:
        return self.disk_read_bytes + self.disk_write_bytes

    @property
    def network_bytes(self) -> int:
        return self.network_bytes_in + self.network_bytes_out

    @property
    def display_name(self) -> str:
        """Process name with helper suffixes stripped."""
        name = self.name
        for suffix in (" Helper", " (GPU)"):
            if name.endswith(suffix):
                name = name[: -len(suffix)]
        return name

    @property
    def memory_gb(self) -> float:
        return self.memory_usage / GB


@dataclass(frozen=True)
class Anomaly:
    """A metric value unusually far above its rolling mean."""

    metric: str
    current_value: float
    expected_value: float
    deviation: float  # z-score
    timestamp: float = field(default_factory=time.time)

    @property
    def description(self) -> str:
        return f"{self.metric} is {self.deviation:.1f}σ above normal"


@dataclass(frozen=True)
class Correlation:
    """Attribution of an elevated aggregate metric to one process."""

    source_metric: str
    target_process: ProcessResourceSample
    strength: float  # 0-1
    description: str
    timestamp: float = field(default_factory=time.time)


class ActionType(str, Enum):
    """What a suggested action would do if carried out."""

    QUIT_APP = "quit_app"
    FORCE_QUIT_APP = "force_quit_app"
    REDUCE_LOAD = "reduce_load"
    OPEN_ACTIVITY_MONITOR = "open_activity_monitor"
    SYSTEM_SETTING = "system_setting"


@dataclass(frozen=True)
class InsightAction:
    """A proposed remediation. Never executed by this package."""

    title: str
    description: str
    action_type: ActionType
    impact: str = ""
    estimated_impact: float | None = None  # Same unit as the triggering metric
    target_pid: int | None = None
    suggestions: tuple[str, ...] = ()


class MetricTrend(str, Enum):
    INCREASING = "increasing"
    STABLE = "stable"
    DECREASING = "decreasing"


@dataclass(frozen=True)
class InsightMetrics:
    """Metric context attached to an insight."""

    current_value: float
    threshold_value: float
    unit: str
    trend: MetricTrend = MetricTrend.STABLE

    @property
    def percent_of_threshold(self) -> float:
        if self.threshold_value <= 0:
            return 0.0
        return min(self.current_value / self.threshold_value * 100, 100.0)


@dataclass(frozen=True)
class Insight:
    """Human-readable advisory about a detected condition."""

    type: InsightType
    severity: Severity
    title: str
    description: str
    cause: str
    affected_processes: tuple[ProcessResourceSample, ...] = ()
    suggested_actions: tuple[InsightAction, ...] = ()
    metrics: InsightMetrics | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        """Serialize the fields a downstream consumer needs to render an insight."""
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "type": self.type.value,
            "severity": self.severity.value,
            "title": self.title,
            "description": self.description,
            "cause": self.cause,
            "affected_processes": [
                {"pid": p.pid, "name": p.name} for p in self.affected_processes
            ],
            "suggested_actions": [
                {
                    "title": a.title,
                    "action_type": a.action_type.value,
                    "impact": a.impact,
                    "estimated_impact": a.estimated_impact,
                    "target_pid": a.target_pid,
                }
                for a in self.suggested_actions
            ],
        }


# ─────────────────────────────────────────────────────────────────────────────
# Aggregates and trend results
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class HourlyMetrics:
    """Snapshots averaged over one UTC hour."""

    hour: datetime
    avg_cpu: float
    avg_memory: float  # Bytes
    avg_memory_percent: float
    avg_gpu: float
    avg_temperature: float
    max_cpu: float
    max_memory: float
    sample_count: int


@dataclass(frozen=True)
class DailyMetrics:
    """Snapshots averaged over one UTC day."""

    date: datetime
    avg_cpu: float
    avg_memory: float  # Bytes
    avg_memory_percent: float
    avg_gpu: float
    avg_temperature: float
    max_cpu: float
    max_temperature: float
    sample_count: int


@dataclass(frozen=True)
class DailyPattern:
    """Average load for one hour of the day across the analysis window."""

    hour: int  # 0-23
    avg_cpu: float
    avg_memory: float
    avg_gpu: float
    sample_count: int

    @property
    def hour_label(self) -> str:
        return f"{self.hour:02d}:00"


@dataclass(frozen=True)
class WeeklyPattern:
    """Average load for one day of the week (0 = Monday)."""

    weekday: int
    avg_cpu: float
    avg_memory: float
    avg_gpu: float
    sample_count: int

    @property
    def weekday_name(self) -> str:
        return WEEKDAY_NAMES[self.weekday]


WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


class TrendAnomalyType(str, Enum):
    CPU_SPIKE = "cpu_spike"
    TEMPERATURE_SPIKE = "temperature_spike"
    SUDDEN_CHANGE = "sudden_change"


class TrendSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class TrendAnomaly:
    """A day whose aggregate stands out from the rest of the window."""

    type: TrendAnomalyType
    date: datetime
    value: float
    expected_range: tuple[float, float]
    severity: TrendSeverity


class LeakType(str, Enum):
    GRADUAL_GROWTH = "gradual_growth"


@dataclass(frozen=True)
class MemoryLeakSuspect:
    """Sustained growth of daily memory averages."""

    type: LeakType
    description: str
    growth_rate_per_day: float
    confidence: float
    detected_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class PredictedMetrics:
    timestamp: datetime
    predicted_cpu: float
    predicted_memory: float
    predicted_gpu: float
    confidence: float


class AnalysisPeriod(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"

    @property
    def days(self) -> int:
        return {AnalysisPeriod.DAY: 1, AnalysisPeriod.WEEK: 7, AnalysisPeriod.MONTH: 30}[self]


@dataclass(frozen=True)
class UsageSummary:
    period: AnalysisPeriod
    start: datetime
    end: datetime
    avg_cpu: float
    max_cpu: float
    min_cpu: float
    avg_memory: float
    max_memory: float
    avg_gpu: float
    max_gpu: float
    avg_temperature: float
    max_temperature: float
    sample_count: int
