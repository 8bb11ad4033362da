"""CLI commands for sysinsight."""

import click


@click.group()
@click.version_option()
def main() -> None:
    """Turn machine telemetry into prioritized insights."""
    pass


@main.command()
def daemon() -> None:
    """Run the background collector and insight engine."""
    import asyncio

    from sysinsight.daemon import run_daemon

    asyncio.run(run_daemon())


@main.command()
@click.option("--interval", "-i", default=1.0, help="Seconds between the two samples")
def check(interval: float) -> None:
    """Sample the system once and print current insights.

    Takes two samples so rate-based metrics have a baseline.
    """
    import asyncio

    from sysinsight.collector import SnapshotCollector
    from sysinsight.config import Config
    from sysinsight.engine import InsightEngine
    from sysinsight.probes import PsutilProbeSet

    config = Config.load()
    collector = SnapshotCollector(PsutilProbeSet(), config.collector)
    engine = InsightEngine(config)

    async def sample():
        await collector.refresh()
        await asyncio.sleep(interval)
        return await collector.refresh()

    snapshot = asyncio.run(sample())
    if snapshot is None:
        click.echo("Sampling failed.")
        raise SystemExit(1)

    result = engine.analyze(snapshot, collector.latest_processes)
    click.echo(f"Status: {result.status.value}")
    click.echo(
        f"CPU {snapshot.cpu_usage:.0f}%, memory {snapshot.memory_usage_percent:.0f}% "
        f"({snapshot.memory_pressure.value}), disk {snapshot.disk_total_rate:.1f} MB/s, "
        f"thermal {snapshot.thermal_state.value}"
    )
    if snapshot.unavailable:
        click.echo(f"Unavailable: {', '.join(sorted(snapshot.unavailable))}")

    if not result.insights:
        click.echo(result.summary)
        return

    for insight in result.insights:
        click.echo(f"\n[{insight.severity.value}] {insight.title}")
        click.echo(f"  {insight.description}")
        click.echo(f"  Cause: {insight.cause}")
        for action in insight.suggested_actions:
            impact = f" ({action.impact})" if action.impact else ""
            click.echo(f"  - {action.title}{impact}")


@main.command()
def status() -> None:
    """Show what the snapshot store holds."""
    from sysinsight.config import Config
    from sysinsight.formatting import format_span, format_timestamp
    from sysinsight.storage import (
        LAST_PRUNE_KEY,
        StoreUnavailable,
        get_daemon_state,
        get_schema_version,
        get_store_stats,
        open_database,
    )

    config = Config.load()

    try:
        with open_database(config.db_path) as conn:
            stats = get_store_stats(conn)
            schema_version = get_schema_version(conn)
            last_prune = get_daemon_state(conn, LAST_PRUNE_KEY)
    except StoreUnavailable:
        click.echo("Database not found. Run 'sysinsight daemon' first.")
        return

    click.echo(f"Database: {config.db_path} (schema v{schema_version})")
    if last_prune is not None:
        click.echo(f"Last prune: {format_timestamp(float(last_prune))}")
    if not stats["count"]:
        click.echo("No snapshots recorded.")
        return

    click.echo(f"Snapshots: {stats['count']}")
    click.echo(f"Oldest: {format_timestamp(stats['oldest'])}")
    click.echo(f"Newest: {format_timestamp(stats['newest'])}")
    click.echo(f"Span: {format_span(stats['oldest'], stats['newest'])}")


@main.command()
@click.option(
    "--period",
    "-p",
    type=click.Choice(["day", "week", "month"]),
    default="week",
    help="Window for the usage summary",
)
def trends(period: str) -> None:
    """Report usage patterns, peak hours, leaks and a next-hour forecast."""
    import asyncio

    from sysinsight.config import Config
    from sysinsight.formatting import format_bytes
    from sysinsight.models import AnalysisPeriod
    from sysinsight.storage import SnapshotStore
    from sysinsight.trends import TrendAnalyzer

    config = Config.load()

    if not config.db_path.exists():
        click.echo("Database not found. Run 'sysinsight daemon' first.")
        return

    store = SnapshotStore(config.db_path)
    if not store.open():
        click.echo(f"Database unavailable: {store.init_error}")
        raise SystemExit(1)

    analyzer = TrendAnalyzer(store, config.trends)

    async def analyze():
        summary = await analyzer.usage_summary(AnalysisPeriod(period))
        weekly = await analyzer.analyze_weekly()
        monthly = await analyzer.analyze_monthly()
        return summary, weekly, monthly

    summary, weekly, monthly = asyncio.run(analyze())

    if summary is None:
        click.echo(f"No data for the last {period}.")
        return

    click.echo(f"Usage over the last {period} ({summary.sample_count} snapshots)")
    click.echo(
        f"  CPU avg {summary.avg_cpu:.1f}%  min {summary.min_cpu:.1f}%  "
        f"max {summary.max_cpu:.1f}%"
    )
    click.echo(
        f"  Memory avg {format_bytes(summary.avg_memory)}  max {format_bytes(summary.max_memory)}"
    )
    click.echo(f"  GPU avg {summary.avg_gpu:.1f}%  max {summary.max_gpu:.1f}%")
    if summary.max_temperature > 0:
        click.echo(
            f"  Temperature avg {summary.avg_temperature:.1f}°C  "
            f"max {summary.max_temperature:.1f}°C"
        )

    if weekly and weekly.peak_hours:
        hours = ", ".join(f"{h:02d}:00" for h in weekly.peak_hours)
        click.echo(f"\nPeak hours (UTC): {hours}")

    if weekly and weekly.weekly_patterns:
        click.echo("\nBy weekday:")
        for pattern in weekly.weekly_patterns:
            click.echo(f"  {pattern.weekday_name:<10} CPU {pattern.avg_cpu:.1f}%")

    forecast = analyzer.predict_next_hour()
    if forecast is not None:
        click.echo(
            f"\nNext hour: CPU ~{forecast.predicted_cpu:.0f}%, "
            f"memory ~{format_bytes(forecast.predicted_memory)} "
            f"(confidence {forecast.confidence:.0%})"
        )

    if monthly:
        for leak in monthly.leak_suspects:
            click.echo(f"\nPossible memory leak: {leak.description} (confidence {leak.confidence:.0%})")
        if monthly.anomalies:
            click.echo("\nUnusual days:")
            for anomaly in monthly.anomalies:
                click.echo(
                    f"  {anomaly.date:%Y-%m-%d} {anomaly.type.value} "
                    f"{anomaly.value:.1f} ({anomaly.severity.value})"
                )


@main.command()
@click.option("--days", default=None, type=int, help="Override snapshot retention days")
@click.option("--dry-run", is_flag=True, help="Show what would be deleted")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation prompt")
def prune(days: int | None, dry_run: bool, force: bool) -> None:
    """Delete snapshots older than the retention window."""
    from sysinsight.config import Config
    from sysinsight.storage import get_connection, prune_old_snapshots, vacuum

    config = Config.load()

    if not config.db_path.exists():
        click.echo("Database not found. Run 'sysinsight daemon' first.")
        return

    if days is None:
        days = config.retention.snapshots_days
    if days < 1:
        raise click.BadParameter("Retention days must be >= 1", param_hint="'--days'")

    if dry_run:
        click.echo(f"Would prune snapshots older than {days} days")
        return

    if not force:
        click.confirm(f"Delete snapshots older than {days} days?", abort=True)

    conn = get_connection(config.db_path)
    try:
        deleted = prune_old_snapshots(conn, retention_days=days)
        vacuum(conn)
    finally:
        conn.close()

    click.echo(f"Deleted {deleted} snapshots")


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
def config_show() -> None:
    """Display current configuration."""
    from dataclasses import fields

    from sysinsight.config import SECTIONS, Config

    cfg = Config.load()

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    for name in SECTIONS:
        section = getattr(cfg, name)
        click.echo()
        click.echo(f"[{name}]")
        for f in fields(section):
            click.echo(f"  {f.name} = {getattr(section, f.name)}")


@config.command("reset")
@click.confirmation_option(prompt="Reset config to defaults?")
def config_reset() -> None:
    """Reset configuration to defaults."""
    from sysinsight.config import Config

    cfg = Config()
    cfg.save()
    click.echo(f"Config reset to defaults at {cfg.config_path}")
