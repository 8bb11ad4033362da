"""Long-horizon analysis over stored hourly and daily aggregates.

Pure functions do the math so they can be tested with hand-built
aggregates; TrendAnalyzer fetches the windows from the store and keeps
the latest results. All bucketing is UTC and weekdays run 0 = Monday.
"""

from __future__ import annotations

import math
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import structlog

from sysinsight.config import TrendsConfig
from sysinsight.models import (
    AnalysisPeriod,
    DailyMetrics,
    DailyPattern,
    HourlyMetrics,
    LeakType,
    MemoryLeakSuspect,
    PredictedMetrics,
    TrendAnomaly,
    TrendAnomalyType,
    TrendSeverity,
    UsageSummary,
    WeeklyPattern,
)

if TYPE_CHECKING:
    from sysinsight.storage import SnapshotStore

log = structlog.get_logger()

HIGH_TEMPERATURE = 75.0  # Celsius; temperature anomalies above this are high severity
SUDDEN_CHANGE_RANGE = (0.0, 10.0)


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _stddev(values: Sequence[float]) -> float:
    """Sample standard deviation (n - 1); 0 with fewer than two values."""
    if len(values) < 2:
        return 0.0
    m = _mean(values)
    return math.sqrt(sum((v - m) ** 2 for v in values) / (len(values) - 1))


def _grouped(hourly: Sequence[HourlyMetrics], key) -> dict[int, list[HourlyMetrics]]:
    groups: dict[int, list[HourlyMetrics]] = defaultdict(list)
    for bucket in hourly:
        groups[key(bucket.hour)].append(bucket)
    return groups


# ─────────────────────────────────────────────────────────────────────────────
# Patterns
# ─────────────────────────────────────────────────────────────────────────────


def daily_patterns(hourly: Sequence[HourlyMetrics]) -> list[DailyPattern]:
    """Average each hour of the day across the window, ordered by hour."""
    groups = _grouped(hourly, lambda dt: dt.hour)
    return [
        DailyPattern(
            hour=hour,
            avg_cpu=_mean([b.avg_cpu for b in buckets]),
            avg_memory=_mean([b.avg_memory for b in buckets]),
            avg_gpu=_mean([b.avg_gpu for b in buckets]),
            sample_count=len(buckets),
        )
        for hour, buckets in sorted(groups.items())
    ]


def weekday_patterns(hourly: Sequence[HourlyMetrics]) -> list[WeeklyPattern]:
    """Average each day of the week across the window, Monday first."""
    groups = _grouped(hourly, lambda dt: dt.weekday())
    return [
        WeeklyPattern(
            weekday=weekday,
            avg_cpu=_mean([b.avg_cpu for b in buckets]),
            avg_memory=_mean([b.avg_memory for b in buckets]),
            avg_gpu=_mean([b.avg_gpu for b in buckets]),
            sample_count=len(buckets),
        )
        for weekday, buckets in sorted(groups.items())
    ]


def peak_hours(hourly: Sequence[HourlyMetrics], count: int = 3) -> list[int]:
    """Hours of the day with the highest average CPU, busiest first."""
    patterns = daily_patterns(hourly)
    ranked = sorted(patterns, key=lambda p: p.avg_cpu, reverse=True)
    return [p.hour for p in ranked[:count]]


# ─────────────────────────────────────────────────────────────────────────────
# Leaks and anomalies
# ─────────────────────────────────────────────────────────────────────────────


def is_growing(values: Sequence[float], ratio: float = 0.6) -> bool:
    """True when more than ``ratio`` of day-over-day deltas are positive."""
    if len(values) < 2:
        return False
    increases = sum(1 for prev, cur in zip(values, values[1:]) if cur > prev)
    return increases / (len(values) - 1) > ratio


def growth_rate(values: Sequence[float]) -> float:
    """Relative growth per point: (last - first) / first / len. 0 when first <= 0."""
    if len(values) < 2 or values[0] <= 0:
        return 0.0
    return (values[-1] - values[0]) / values[0] / len(values)


def detect_memory_leak(
    daily: Sequence[DailyMetrics],
    config: TrendsConfig | None = None,
) -> MemoryLeakSuspect | None:
    """Flag sustained growth of daily average memory."""
    config = config or TrendsConfig()
    if len(daily) < config.leak_min_days:
        return None

    memory = [d.avg_memory for d in daily]
    if not is_growing(memory, config.growing_ratio):
        return None

    rate = growth_rate(memory)
    if rate <= config.growth_floor:
        return None

    return MemoryLeakSuspect(
        type=LeakType.GRADUAL_GROWTH,
        description=f"Memory usage has been rising steadily, about {rate * 100:.1f}% per day",
        growth_rate_per_day=rate,
        confidence=min(0.9, rate * 10),
    )


def detect_trend_anomalies(
    daily: Sequence[DailyMetrics],
    config: TrendsConfig | None = None,
) -> list[TrendAnomaly]:
    """Find days whose cpu or temperature is far from the window mean, plus sudden cpu jumps."""
    config = config or TrendsConfig()
    if len(daily) < config.anomaly_min_days:
        return []

    cpu = [d.avg_cpu for d in daily]
    temps = [d.avg_temperature for d in daily]
    cpu_mean, cpu_std = _mean(cpu), _stddev(cpu)
    temp_mean, temp_std = _mean(temps), _stddev(temps)
    sigma = config.anomaly_sigma

    anomalies = []
    for index, day in enumerate(daily):
        if abs(day.avg_cpu - cpu_mean) > sigma * cpu_std:
            anomalies.append(
                TrendAnomaly(
                    type=TrendAnomalyType.CPU_SPIKE,
                    date=day.date,
                    value=day.avg_cpu,
                    expected_range=(cpu_mean - cpu_std, cpu_mean + cpu_std),
                    severity=TrendSeverity.HIGH if day.avg_cpu > cpu_mean else TrendSeverity.MEDIUM,
                )
            )

        if day.avg_temperature > 0 and abs(day.avg_temperature - temp_mean) > sigma * temp_std:
            anomalies.append(
                TrendAnomaly(
                    type=TrendAnomalyType.TEMPERATURE_SPIKE,
                    date=day.date,
                    value=day.avg_temperature,
                    expected_range=(temp_mean - temp_std, temp_mean + temp_std),
                    severity=(
                        TrendSeverity.HIGH
                        if day.avg_temperature > HIGH_TEMPERATURE
                        else TrendSeverity.MEDIUM
                    ),
                )
            )

        if index > 0:
            change = abs(day.avg_cpu - daily[index - 1].avg_cpu)
            if change > config.sudden_change:
                anomalies.append(
                    TrendAnomaly(
                        type=TrendAnomalyType.SUDDEN_CHANGE,
                        date=day.date,
                        value=change,
                        expected_range=SUDDEN_CHANGE_RANGE,
                        severity=(
                            TrendSeverity.HIGH
                            if change > config.sudden_change_high
                            else TrendSeverity.MEDIUM
                        ),
                    )
                )

    return anomalies


# ─────────────────────────────────────────────────────────────────────────────
# Forecast and summary
# ─────────────────────────────────────────────────────────────────────────────


def forecast_next_hour(
    patterns: Sequence[DailyPattern],
    now: datetime,
    config: TrendsConfig | None = None,
) -> PredictedMetrics | None:
    """Predict the next hour from the matching hour-of-day pattern."""
    config = config or TrendsConfig()
    next_hour = (now.hour + 1) % 24
    pattern = next((p for p in patterns if p.hour == next_hour), None)
    if pattern is None:
        return None
    return PredictedMetrics(
        timestamp=now + timedelta(hours=1),
        predicted_cpu=pattern.avg_cpu,
        predicted_memory=pattern.avg_memory,
        predicted_gpu=pattern.avg_gpu,
        confidence=min(config.max_confidence, pattern.sample_count / config.confidence_samples),
    )


def summarize(
    hourly: Sequence[HourlyMetrics],
    period: AnalysisPeriod,
    start: datetime,
    end: datetime,
) -> UsageSummary | None:
    if not hourly:
        return None
    cpu = [h.avg_cpu for h in hourly]
    memory = [h.avg_memory for h in hourly]
    gpu = [h.avg_gpu for h in hourly]
    temps = [h.avg_temperature for h in hourly]
    return UsageSummary(
        period=period,
        start=start,
        end=end,
        avg_cpu=_mean(cpu),
        max_cpu=max(cpu),
        min_cpu=min(cpu),
        avg_memory=_mean(memory),
        max_memory=max(memory),
        avg_gpu=_mean(gpu),
        max_gpu=max(gpu),
        avg_temperature=_mean(temps),
        max_temperature=max(temps),
        sample_count=sum(h.sample_count for h in hourly),
    )


# ─────────────────────────────────────────────────────────────────────────────
# Analyzer
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class WeeklyReport:
    daily_patterns: list[DailyPattern] = field(default_factory=list)
    weekly_patterns: list[WeeklyPattern] = field(default_factory=list)
    peak_hours: list[int] = field(default_factory=list)


@dataclass
class MonthlyReport:
    leak_suspects: list[MemoryLeakSuspect] = field(default_factory=list)
    anomalies: list[TrendAnomaly] = field(default_factory=list)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TrendAnalyzer:
    """Runs pattern, leak and anomaly analysis against the snapshot store.

    Only one analysis runs at a time; a call made while another is in
    progress returns None without touching the stored results.
    """

    def __init__(self, store: SnapshotStore, config: TrendsConfig | None = None) -> None:
        self.store = store
        self.config = config or TrendsConfig()
        self.weekly = WeeklyReport()
        self.monthly = MonthlyReport()
        self.is_analyzing = False

    async def analyze_weekly(self, now: datetime | None = None) -> WeeklyReport | None:
        if self.is_analyzing:
            log.debug("trend_analysis_skipped", kind="weekly")
            return None
        self.is_analyzing = True
        try:
            end = now or _utc_now()
            start = end - timedelta(days=self.config.weekly_window_days)
            hourly = await self.store.hourly_averages(start.timestamp(), end.timestamp())
            self.weekly = WeeklyReport(
                daily_patterns=daily_patterns(hourly),
                weekly_patterns=weekday_patterns(hourly),
                peak_hours=peak_hours(hourly, self.config.peak_hour_count),
            )
            log.info(
                "weekly_analysis_complete",
                buckets=len(hourly),
                peak_hours=self.weekly.peak_hours,
            )
            return self.weekly
        finally:
            self.is_analyzing = False

    async def analyze_monthly(self, now: datetime | None = None) -> MonthlyReport | None:
        if self.is_analyzing:
            log.debug("trend_analysis_skipped", kind="monthly")
            return None
        self.is_analyzing = True
        try:
            end = now or _utc_now()
            start = end - timedelta(days=self.config.monthly_window_days)
            daily = await self.store.daily_averages(start.timestamp(), end.timestamp())
            leak = detect_memory_leak(daily, self.config)
            self.monthly = MonthlyReport(
                leak_suspects=[leak] if leak else [],
                anomalies=detect_trend_anomalies(daily, self.config),
            )
            log.info(
                "monthly_analysis_complete",
                days=len(daily),
                leak_suspects=len(self.monthly.leak_suspects),
                anomalies=len(self.monthly.anomalies),
            )
            return self.monthly
        finally:
            self.is_analyzing = False

    def predict_next_hour(self, now: datetime | None = None) -> PredictedMetrics | None:
        """Forecast from the last weekly analysis; None before one has run."""
        if not self.weekly.daily_patterns:
            return None
        return forecast_next_hour(self.weekly.daily_patterns, now or _utc_now(), self.config)

    async def usage_summary(
        self,
        period: AnalysisPeriod,
        now: datetime | None = None,
    ) -> UsageSummary | None:
        end = now or _utc_now()
        start = end - timedelta(days=period.days)
        hourly = await self.store.hourly_averages(start.timestamp(), end.timestamp())
        return summarize(hourly, period, start, end)
