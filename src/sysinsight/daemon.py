"""Background daemon for sysinsight.

Composition root: builds the store, probes, collector, insight engine and
trend analyzer once and wires them together. The collector drives the
engine through its snapshot subscription.
"""

import asyncio
import signal
from dataclasses import dataclass
from datetime import datetime

import structlog

from sysinsight import logging as console
from sysinsight.collector import SnapshotCollector
from sysinsight.config import Config
from sysinsight.engine import AnalysisResult, InsightEngine
from sysinsight.models import ProcessResourceSample, Snapshot, SystemStatus
from sysinsight.probes import ProbeSet, PsutilProbeSet
from sysinsight.storage import SnapshotStore
from sysinsight.trends import TrendAnalyzer

log = structlog.get_logger()


@dataclass
class DaemonState:
    """Runtime state of the daemon."""

    running: bool = False
    sample_count: int = 0
    insight_count: int = 0
    last_sample_time: datetime | None = None
    current_status: SystemStatus = SystemStatus.NORMAL

    def update_sample(self, result: AnalysisResult) -> None:
        """Update state after an analysis pass."""
        self.sample_count += 1
        self.insight_count = len(result.insights)
        self.current_status = result.status
        self.last_sample_time = datetime.now()


class Daemon:
    """Main daemon class orchestrating sampling and analysis."""

    def __init__(self, config: Config, probes: ProbeSet | None = None):
        self.config = config
        self.state = DaemonState()

        self.store = SnapshotStore(config.db_path, queue_size=config.collector.write_queue_size)
        self.collector = SnapshotCollector(
            probes if probes is not None else PsutilProbeSet(),
            config.collector,
            store=self.store,
        )
        self.engine = InsightEngine(config)
        self.trends = TrendAnalyzer(self.store, config.trends)

        self.collector.on_snapshot(self._on_snapshot)

        self._shutdown_event = asyncio.Event()
        self._auto_prune_task: asyncio.Task | None = None
        self._heartbeat_count = 0

    def status(self) -> dict:
        """Snapshot of daemon health for status displays."""
        return {
            "running": self.state.running,
            "status": self.state.current_status.value,
            "store": "ok" if self.store.available else "degraded",
            "store_error": self.store.init_error,
            "samples": self.state.sample_count,
            "skipped_ticks": self.collector.skipped_ticks,
            "insights": self.state.insight_count,
            "summary": self.engine.status_summary(),
            "buffer": f"{len(self.collector.ring_buffer)}/{self.collector.ring_buffer.capacity}",
        }

    async def _init_store(self) -> None:
        """Open the store, continuing without history when it fails."""
        if not self.config.config_path.exists():
            self.config.save()
            console.config_created(str(self.config.config_path))

        if not self.store.open():
            console.store_degraded(self.store.init_error or "unknown error")
            return

        stats = await self.store.stats()
        console.store_ready(str(self.config.db_path), stats["count"])
        await self.store.start()

    async def start(self) -> None:
        """Start the daemon and run until shutdown is requested."""
        from importlib.metadata import version

        log.info("daemon_starting", version=version("sysinsight"))
        console.version_info("sysinsight", version("sysinsight"))
        console.config_summary(
            self.config.collector.sample_interval,
            self.config.collector.history_size,
            self.config.retention.snapshots_days,
        )

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: self._handle_signal(s))

        await self._init_store()

        await self.collector.start()
        self.state.running = True
        log.info("daemon_started")
        console.daemon_started()

        self._auto_prune_task = asyncio.create_task(self._auto_prune())

        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Stop the daemon gracefully."""
        log.info("daemon_stopping")
        console.daemon_stopping()
        self.state.running = False
        self._shutdown_event.set()

        await self.collector.stop()

        if self._auto_prune_task:
            self._auto_prune_task.cancel()
            try:
                await self._auto_prune_task
            except asyncio.CancelledError:
                pass
            self._auto_prune_task = None

        await self.store.stop()

        log.info("daemon_stopped")
        console.daemon_stopped()

    def _handle_signal(self, sig: signal.Signals) -> None:
        """Handle shutdown signals."""
        log.info("signal_received", signal=sig.name)
        console.signal_received(sig.name)
        self._shutdown_event.set()

    async def _on_snapshot(
        self,
        snapshot: Snapshot,
        processes: list[ProcessResourceSample],
    ) -> None:
        """Run the insight engine for each published snapshot."""
        result = self.engine.analyze(snapshot, processes)
        self.state.update_sample(result)

        for anomaly in result.anomalies:
            console.anomaly_detected(anomaly.metric, anomaly.current_value, anomaly.deviation)
        for insight in result.recorded:
            console.insight_raised(insight)

        self._heartbeat_count += 1
        if self._heartbeat_count >= self.config.system.heartbeat_samples:
            self._heartbeat_count = 0
            self._heartbeat()

    def _heartbeat(self) -> None:
        db_size_mb = (
            self.config.db_path.stat().st_size / 1024 / 1024
            if self.config.db_path.exists()
            else 0.0
        )
        buffer = self.collector.ring_buffer
        log.info(
            "daemon_heartbeat",
            status=self.state.current_status.value,
            insights=self.state.insight_count,
            samples=self.state.sample_count,
            buffer=f"{len(buffer)}/{buffer.capacity}",
            skipped_ticks=self.collector.skipped_ticks,
            dropped_writes=self.store.dropped_writes,
            db_mb=round(db_size_mb, 1),
        )
        console.heartbeat(
            self.state.current_status.value,
            self.state.insight_count,
            len(buffer),
            buffer.capacity,
            self.collector.skipped_ticks,
            db_size_mb,
        )

    async def _auto_prune(self) -> None:
        """Prune snapshots past retention on a fixed interval."""
        interval = self.config.system.auto_prune_interval_hours * 3600
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                await self.prune_now()

    async def prune_now(self) -> int:
        """Run one retention cleanup through the store."""
        if not self.store.available:
            return 0
        log.info("auto_prune_starting")
        console.auto_prune_started()
        deleted = await self.store.cleanup(self.config.retention.snapshots_days)
        log.info("auto_prune_completed", snapshots_deleted=deleted)
        console.auto_prune_complete(deleted)
        return deleted


async def run_daemon(config: Config | None = None) -> None:
    """Run the daemon until shutdown.

    Args:
        config: Optional config, loads from file if not provided
    """
    if config is None:
        config = Config.load()

    console.configure(config)

    daemon = Daemon(config)

    try:
        await daemon.start()
    except Exception as e:
        log.exception("daemon_crashed", error=str(e))
        raise
    finally:
        await daemon.stop()
