"""Configuration system for sysinsight."""

from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, TypeVar

import tomlkit


@dataclass
class RetentionConfig:
    """Data retention configuration."""

    snapshots_days: int = 30  # Delete persisted snapshots older than this


@dataclass
class CollectorConfig:
    """Sampling cadence and in-memory history."""

    sample_interval: float = 2.0  # Seconds between snapshots
    history_size: int = 300  # Snapshots kept in memory (10 minutes at 2s)
    persist_interval: float = 300.0  # Seconds between snapshots handed to the store
    write_queue_size: int = 1000  # Pending store writes before new ones are dropped


@dataclass
class AnomalyConfig:
    """Rolling z-score anomaly detection."""

    window_size: int = 60  # Samples per rolling window
    min_samples: int = 10  # No verdict below this many samples
    z_threshold: float = 2.0  # Standard deviations above mean to flag
    min_stddev: float = 0.1  # Near-constant signals are never flagged


@dataclass
class CorrelationConfig:
    """Triggers and materiality floors for process attribution."""

    cpu_trigger: float = 50.0  # System CPU % before attributing
    disk_trigger: float = 50.0  # Combined disk MB/s before attributing
    cpu_top_k: int = 5
    memory_top_k: int = 5
    disk_top_k: int = 3
    cpu_floor: float = 10.0  # Ignore processes below this CPU %
    memory_floor_ratio: float = 0.05  # Ignore processes below 5% of total memory
    disk_floor_bytes: int = 10_000_000  # Ignore processes below 10MB read+written


@dataclass
class RulesConfig:
    """Trigger and escalation thresholds for the insight rules."""

    cpu_warning: float = 80.0
    cpu_critical: float = 95.0
    io_warning: float = 100.0  # MB/s
    io_critical: float = 200.0  # MB/s
    quit_cpu_threshold: float = 50.0  # Suggest quitting a process above this CPU %
    quit_memory_gb: float = 1.0  # Suggest quitting a process above this many GB
    swap_notice_mb: float = 100.0  # Mention swap in descriptions above this
    memory_reference_percent: float = 75.0  # Threshold shown in memory insight context
    thermal_reference_celsius: float = 80.0


@dataclass
class InsightsConfig:
    """Insight history behaviour."""

    history_limit: int = 100  # Oldest insights evicted past this
    recency_window: float = 60.0  # Seconds a same-type insight is suppressed in history


@dataclass
class TrendsConfig:
    """Long-horizon trend analysis."""

    weekly_window_days: int = 7
    monthly_window_days: int = 30
    leak_min_days: int = 7
    growing_ratio: float = 0.6  # Fraction of positive day-over-day deltas
    growth_floor: float = 0.01  # 1% growth per day
    anomaly_min_days: int = 5
    anomaly_sigma: float = 2.0
    sudden_change: float = 20.0  # CPU points day over day
    sudden_change_high: float = 30.0
    peak_hour_count: int = 3
    confidence_samples: int = 30  # Buckets needed for full forecast confidence
    max_confidence: float = 0.95


@dataclass
class SystemConfig:
    """Daemon housekeeping."""

    heartbeat_samples: int = 60  # Log heartbeat every N snapshots
    auto_prune_interval_hours: int = 24
    log_max_bytes: int = 5 * 1024 * 1024
    log_backup_count: int = 3


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


T = TypeVar("T")


def _load_section(cls: type[T], data: Any) -> T:
    """Build a section dataclass from TOML data, using dataclass defaults for missing keys.

    Unknown keys are ignored so older config files keep loading.
    """
    defaults = cls()
    kwargs = {}
    for f in fields(cls):  # type: ignore[arg-type]
        default = getattr(defaults, f.name)
        value = data.get(f.name, default) if data else default
        # tomlkit returns wrapper types; unwrap to plain Python values
        if hasattr(value, "unwrap"):
            value = value.unwrap()
        if isinstance(default, float) and isinstance(value, int):
            value = float(value)
        kwargs[f.name] = value
    return cls(**kwargs)


SECTIONS = (
    "retention",
    "collector",
    "anomaly",
    "correlation",
    "rules",
    "insights",
    "trends",
    "system",
)


@dataclass
class Config:
    """Main configuration container."""

    retention: RetentionConfig = field(default_factory=RetentionConfig)
    collector: CollectorConfig = field(default_factory=CollectorConfig)
    anomaly: AnomalyConfig = field(default_factory=AnomalyConfig)
    correlation: CorrelationConfig = field(default_factory=CorrelationConfig)
    rules: RulesConfig = field(default_factory=RulesConfig)
    insights: InsightsConfig = field(default_factory=InsightsConfig)
    trends: TrendsConfig = field(default_factory=TrendsConfig)
    system: SystemConfig = field(default_factory=SystemConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "sysinsight"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def data_dir(self) -> Path:
        """Data directory."""
        return Path.home() / ".local" / "share" / "sysinsight"

    @property
    def state_dir(self) -> Path:
        """State directory for logs and other expendable persistent state."""
        return Path.home() / ".local" / "state" / "sysinsight"

    @property
    def db_path(self) -> Path:
        """Snapshot database path."""
        return self.data_dir / "metrics.db"

    @property
    def log_path(self) -> Path:
        """Daemon log path."""
        return self.state_dir / "daemon.log"

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in SECTIONS:
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        All defaults come from the dataclass definitions, so Config() and
        Config.load() agree when no file exists.
        """
        defaults = cls()
        path = path or defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = tomlkit.load(f)
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse config file {path}: {e}") from e

        config = cls(
            retention=_load_section(RetentionConfig, data.get("retention", {})),
            collector=_load_section(CollectorConfig, data.get("collector", {})),
            anomaly=_load_section(AnomalyConfig, data.get("anomaly", {})),
            correlation=_load_section(CorrelationConfig, data.get("correlation", {})),
            rules=_load_section(RulesConfig, data.get("rules", {})),
            insights=_load_section(InsightsConfig, data.get("insights", {})),
            trends=_load_section(TrendsConfig, data.get("trends", {})),
            system=_load_section(SystemConfig, data.get("system", {})),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Raise ValueError for settings the pipeline cannot run with."""
        if self.retention.snapshots_days < 1:
            raise ValueError(
                f"retention.snapshots_days must be >= 1, got {self.retention.snapshots_days}"
            )
        if self.collector.sample_interval <= 0:
            raise ValueError(
                f"collector.sample_interval must be > 0, got {self.collector.sample_interval}"
            )
        if self.collector.history_size < 1:
            raise ValueError(
                f"collector.history_size must be >= 1, got {self.collector.history_size}"
            )
        if self.anomaly.min_samples < 2:
            raise ValueError(f"anomaly.min_samples must be >= 2, got {self.anomaly.min_samples}")
        if self.anomaly.window_size < self.anomaly.min_samples:
            raise ValueError(
                f"anomaly.window_size ({self.anomaly.window_size}) must be >= "
                f"anomaly.min_samples ({self.anomaly.min_samples})"
            )
        if self.rules.cpu_critical < self.rules.cpu_warning:
            raise ValueError("rules.cpu_critical must be >= rules.cpu_warning")
        if self.rules.io_critical < self.rules.io_warning:
            raise ValueError("rules.io_critical must be >= rules.io_warning")
        if self.insights.history_limit < 1:
            raise ValueError(
                f"insights.history_limit must be >= 1, got {self.insights.history_limit}"
            )
