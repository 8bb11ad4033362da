"""Tests for the insight engine."""

import pytest

from sysinsight.config import Config, InsightsConfig
from sysinsight.engine import (
    NORMAL_SUMMARY,
    InsightEngine,
    InsightHistory,
    dedupe_insights,
    overall_status,
    sort_by_severity,
)
from sysinsight.models import (
    GB,
    Insight,
    InsightType,
    MemoryPressure,
    Severity,
    SystemStatus,
    ThermalState,
)


def _insight(
    insight_type: InsightType = InsightType.CPU_SATURATION,
    severity: Severity = Severity.WARNING,
    title: str = "test",
    timestamp: float = 1000.0,
) -> Insight:
    return Insight(
        type=insight_type,
        severity=severity,
        title=title,
        description=f"{title} description",
        cause="",
        timestamp=timestamp,
    )


class _ExplodingRule:
    def evaluate(self, context):
        raise RuntimeError("boom")


class _FixedRule:
    def __init__(self, insight: Insight) -> None:
        self.insight = insight

    def evaluate(self, context):
        return self.insight


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────


def test_dedupe_keeps_first_of_each_type():
    first = _insight(title="first")
    second = _insight(title="second", severity=Severity.CRITICAL)
    other = _insight(InsightType.IO_BOTTLENECK, title="other")

    assert [i.title for i in dedupe_insights([first, other, second])] == ["first", "other"]


def test_sort_by_severity_is_stable():
    a = _insight(InsightType.CPU_SATURATION, Severity.WARNING, "a")
    b = _insight(InsightType.IO_BOTTLENECK, Severity.CRITICAL, "b")
    c = _insight(InsightType.THERMAL_THROTTLING, Severity.WARNING, "c")
    d = _insight(InsightType.NETWORK_HOG, Severity.INFO, "d")

    assert [i.title for i in sort_by_severity([a, b, c, d])] == ["b", "a", "c", "d"]


@pytest.mark.parametrize(
    "severities,expected",
    [
        ([], SystemStatus.NORMAL),
        ([Severity.INFO], SystemStatus.NORMAL),
        ([Severity.INFO, Severity.WARNING], SystemStatus.WARNING),
        ([Severity.WARNING, Severity.CRITICAL], SystemStatus.CRITICAL),
    ],
)
def test_overall_status(severities, expected):
    assert overall_status([_insight(severity=s) for s in severities]) is expected


# ─────────────────────────────────────────────────────────────────────────────
# InsightHistory
# ─────────────────────────────────────────────────────────────────────────────


class TestInsightHistory:
    def test_suppresses_same_type_within_window(self):
        history = InsightHistory(limit=10, recency_window=60.0)
        assert history.add(_insight(timestamp=1000.0), now=1000.0)
        assert not history.add(_insight(timestamp=1030.0), now=1030.0)
        assert len(history) == 1

    def test_records_same_type_after_window(self):
        history = InsightHistory(limit=10, recency_window=60.0)
        history.add(_insight(timestamp=1000.0), now=1000.0)
        assert history.add(_insight(timestamp=1061.0), now=1061.0)
        assert len(history) == 2

    def test_other_types_not_suppressed(self):
        history = InsightHistory(limit=10, recency_window=60.0)
        history.add(_insight(InsightType.CPU_SATURATION, timestamp=1000.0), now=1000.0)
        assert history.add(_insight(InsightType.MEMORY_PRESSURE, timestamp=1001.0), now=1001.0)

    def test_suppression_looks_past_other_types(self):
        """A same-type entry behind newer entries of other types still suppresses."""
        history = InsightHistory(limit=50, recency_window=60.0)
        history.add(_insight(InsightType.CPU_SATURATION, timestamp=1000.0), now=1000.0)
        for offset in range(12):
            kind = InsightType.IO_BOTTLENECK if offset % 2 else InsightType.NETWORK_HOG
            history.add(_insight(kind, timestamp=1000.0 + offset), now=1000.0 + offset * 61)
        assert not history.add(_insight(InsightType.CPU_SATURATION, timestamp=1020.0), now=1020.0)

    def test_evicts_oldest_past_limit(self):
        """The 101st insight pushes the first one out of a 100-entry history."""
        history = InsightHistory(limit=100, recency_window=60.0)
        for i in range(101):
            history.add(_insight(title=str(i), timestamp=i * 100.0), now=i * 100.0)

        assert len(history) == 100
        assert history.entries[0].title == "1"
        assert history.entries[-1].title == "100"

    def test_clear(self):
        history = InsightHistory()
        history.add(_insight(), now=1000.0)
        history.clear()
        assert len(history) == 0


# ─────────────────────────────────────────────────────────────────────────────
# InsightEngine
# ─────────────────────────────────────────────────────────────────────────────


class TestInsightEngine:
    def test_calm_system(self, make_snapshot, make_process):
        engine = InsightEngine()
        result = engine.analyze(make_snapshot(), [make_process(cpu_usage=5.0)])

        assert result.insights == []
        assert result.status is SystemStatus.NORMAL
        assert result.summary == NORMAL_SUMMARY
        assert engine.most_critical is None
        assert engine.status_summary() == NORMAL_SUMMARY

    def test_cpu_and_memory_insights(self, make_snapshot, make_process):
        engine = InsightEngine()
        snapshot = make_snapshot(
            cpu_usage=97.0,
            memory_pressure=MemoryPressure.WARNING,
            memory_used=14 * GB,
        )
        processes = [
            make_process(pid=1, name="Google Chrome", cpu_usage=70.0, memory_usage=3 * GB),
            make_process(pid=2, name="Slack", cpu_usage=12.0, memory_usage=GB),
        ]

        result = engine.analyze(snapshot, processes)

        assert [i.type for i in result.insights] == [
            InsightType.CPU_SATURATION,
            InsightType.MEMORY_PRESSURE,
        ]
        assert result.status is SystemStatus.CRITICAL
        assert result.summary == result.insights[0].description
        assert engine.current_status is SystemStatus.CRITICAL
        assert engine.most_critical.type is InsightType.CPU_SATURATION
        assert len(result.correlations) > 0
        assert engine.status_summary() == "1 critical"

    def test_critical_sorted_before_warning(self, make_snapshot, make_process):
        engine = InsightEngine()
        snapshot = make_snapshot(cpu_usage=85.0, thermal_state=ThermalState.CRITICAL)
        result = engine.analyze(snapshot, [make_process(cpu_usage=60.0)])

        assert [i.severity for i in result.insights] == [Severity.CRITICAL, Severity.WARNING]
        assert result.insights[0].type is InsightType.THERMAL_THROTTLING

    def test_recorded_only_once_within_window(self, make_snapshot, make_process):
        engine = InsightEngine()
        processes = [make_process(cpu_usage=60.0)]

        first = engine.analyze(make_snapshot(cpu_usage=90.0), processes)
        second = engine.analyze(make_snapshot(cpu_usage=91.0), processes)

        assert len(first.recorded) == 1
        assert second.recorded == []
        # Still current even though history suppressed it
        assert len(second.insights) == 1
        assert len(engine.history) == 1

    def test_failing_rule_is_skipped(self, make_snapshot):
        good = _insight(InsightType.NETWORK_HOG, Severity.INFO)
        engine = InsightEngine(rules=[_ExplodingRule(), _FixedRule(good)])

        result = engine.analyze(make_snapshot(), [])

        assert result.insights == [good]
        assert engine.status_summary() == "1 info"

    def test_duplicate_types_from_rules(self, make_snapshot):
        first = _insight(title="first", severity=Severity.WARNING)
        second = _insight(title="second", severity=Severity.CRITICAL)
        engine = InsightEngine(rules=[_FixedRule(first), _FixedRule(second)])

        result = engine.analyze(make_snapshot(), [])
        assert [i.title for i in result.insights] == ["first"]

    def test_warning_summary_pluralized(self, make_snapshot):
        engine = InsightEngine(
            rules=[
                _FixedRule(_insight(InsightType.CPU_SATURATION)),
                _FixedRule(_insight(InsightType.IO_BOTTLENECK)),
            ]
        )
        engine.analyze(make_snapshot(), [])
        assert engine.status_summary() == "2 warnings"

    def test_filters(self, make_snapshot):
        engine = InsightEngine(
            rules=[
                _FixedRule(_insight(InsightType.CPU_SATURATION, Severity.CRITICAL)),
                _FixedRule(_insight(InsightType.IO_BOTTLENECK, Severity.WARNING)),
            ]
        )
        engine.analyze(make_snapshot(), [])

        assert len(engine.insights_of_type(InsightType.IO_BOTTLENECK)) == 1
        assert engine.insights_of_type(InsightType.NETWORK_HOG) == []
        assert len(engine.insights_with_severity(Severity.CRITICAL)) == 1

    def test_history_limit_from_config(self):
        engine = InsightEngine(Config(insights=InsightsConfig(history_limit=5, recency_window=10.0)))
        assert engine.history.recency_window == 10.0
        for i in range(7):
            engine.history.add(_insight(timestamp=i * 100.0), now=i * 100.0)
        assert len(engine.history) == 5

    def test_anomalies_reported(self, make_snapshot):
        engine = InsightEngine()
        for i in range(10):
            engine.analyze(make_snapshot(timestamp=float(i), cpu_usage=10.0), [])
        result = engine.analyze(make_snapshot(timestamp=10.0, cpu_usage=70.0), [])
        assert [a.metric for a in result.anomalies] == ["CPU Usage"]

    def test_reset(self, make_snapshot, make_process):
        engine = InsightEngine()
        engine.analyze(make_snapshot(cpu_usage=90.0), [make_process(cpu_usage=60.0)])
        engine.reset()
        assert engine.current_insights == []
        assert len(engine.history) == 0
