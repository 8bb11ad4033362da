"""Insight engine: correlation, anomaly detection and rules for each snapshot."""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field

import structlog

from sysinsight.anomaly import AnomalyDetector
from sysinsight.config import Config
from sysinsight.correlation import CorrelationEngine
from sysinsight.models import (
    Anomaly,
    Correlation,
    Insight,
    InsightType,
    ProcessResourceSample,
    Severity,
    Snapshot,
    SystemStatus,
)
from sysinsight.rules import InsightRule, RuleContext, default_rules

log = structlog.get_logger()

NORMAL_SUMMARY = "System is running normally"


@dataclass
class AnalysisResult:
    """Outcome of one analysis pass."""

    insights: list[Insight] = field(default_factory=list)
    status: SystemStatus = SystemStatus.NORMAL
    correlations: list[Correlation] = field(default_factory=list)
    anomalies: list[Anomaly] = field(default_factory=list)
    summary: str = NORMAL_SUMMARY
    recorded: list[Insight] = field(default_factory=list)  # Newly added to history


def dedupe_insights(insights: list[Insight]) -> list[Insight]:
    """Keep the first insight of each type, preserving order."""
    seen: set[InsightType] = set()
    unique = []
    for insight in insights:
        if insight.type in seen:
            continue
        seen.add(insight.type)
        unique.append(insight)
    return unique


def sort_by_severity(insights: list[Insight]) -> list[Insight]:
    """Most severe first; equal severities keep their relative order."""
    return sorted(insights, key=lambda i: i.severity.priority, reverse=True)


def overall_status(insights: list[Insight]) -> SystemStatus:
    if any(i.severity is Severity.CRITICAL for i in insights):
        return SystemStatus.CRITICAL
    if any(i.severity is Severity.WARNING for i in insights):
        return SystemStatus.WARNING
    return SystemStatus.NORMAL


class InsightHistory:
    """Bounded log of past insights with same-type suppression.

    An insight is not recorded if one of the same type was recorded within
    the recency window. Past the limit, the oldest entries are evicted.
    """

    def __init__(self, limit: int = 100, recency_window: float = 60.0) -> None:
        self.recency_window = recency_window
        self._entries: deque[Insight] = deque(maxlen=limit)

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> list[Insight]:
        return list(self._entries)

    def add(self, insight: Insight, now: float | None = None) -> bool:
        """Record an insight. Returns False when it was suppressed."""
        now = now if now is not None else time.time()
        cutoff = now - self.recency_window
        for existing in reversed(self._entries):
            if existing.timestamp < cutoff:
                break
            if existing.type is insight.type:
                return False
        self._entries.append(insight)
        return True

    def clear(self) -> None:
        self._entries.clear()


class InsightEngine:
    """Runs the correlation engine, anomaly detector and rules over each snapshot.

    Owns the anomaly windows and the insight history, so a single engine
    should be fed by a single producer in time order.
    """

    def __init__(
        self,
        config: Config | None = None,
        rules: list[InsightRule] | None = None,
    ) -> None:
        self.config = config or Config()
        self.rules = rules if rules is not None else default_rules()
        self.correlation_engine = CorrelationEngine(self.config.correlation)
        self.anomaly_detector = AnomalyDetector(self.config.anomaly)
        self.history = InsightHistory(
            limit=self.config.insights.history_limit,
            recency_window=self.config.insights.recency_window,
        )
        self.current = AnalysisResult()

    def analyze(
        self,
        snapshot: Snapshot,
        processes: list[ProcessResourceSample],
    ) -> AnalysisResult:
        """Analyze one snapshot and the process list captured with it."""
        correlations = self.correlation_engine.correlate(snapshot, processes)
        anomalies = self.anomaly_detector.detect(snapshot)

        context = RuleContext(
            snapshot=snapshot,
            processes=processes,
            correlations=correlations,
            anomalies=anomalies,
            config=self.config.rules,
        )

        insights = []
        for rule in self.rules:
            try:
                insight = rule.evaluate(context)
            except Exception as e:
                log.error("rule_failed", rule=type(rule).__name__, error=str(e))
                continue
            if insight is not None:
                insights.append(insight)

        insights = sort_by_severity(dedupe_insights(insights))

        recorded = [i for i in insights if self.history.add(i)]
        for insight in recorded:
            log.info(
                "insight_recorded",
                type=insight.type.value,
                severity=insight.severity.value,
                title=insight.title,
            )

        self.current = AnalysisResult(
            insights=insights,
            status=overall_status(insights),
            correlations=correlations,
            anomalies=anomalies,
            summary=insights[0].description if insights else NORMAL_SUMMARY,
            recorded=recorded,
        )
        return self.current

    @property
    def current_insights(self) -> list[Insight]:
        return self.current.insights

    @property
    def current_status(self) -> SystemStatus:
        return self.current.status

    @property
    def most_critical(self) -> Insight | None:
        return self.current.insights[0] if self.current.insights else None

    def insights_of_type(self, insight_type: InsightType) -> list[Insight]:
        return [i for i in self.current.insights if i.type is insight_type]

    def insights_with_severity(self, severity: Severity) -> list[Insight]:
        return [i for i in self.current.insights if i.severity is severity]

    def status_summary(self) -> str:
        """One-line count of current insights by their highest severity."""
        insights = self.current.insights
        if not insights:
            return NORMAL_SUMMARY
        critical = len(self.insights_with_severity(Severity.CRITICAL))
        if critical:
            return f"{critical} critical"
        warnings = len(self.insights_with_severity(Severity.WARNING))
        if warnings:
            return f"{warnings} warning" + ("s" if warnings > 1 else "")
        return f"{len(insights)} info"

    def reset(self) -> None:
        """Forget anomaly windows, history and the last result."""
        self.anomaly_detector.reset()
        self.history.clear()
        self.current = AnalysisResult()
