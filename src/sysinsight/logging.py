"""Centralized console logging with Rich formatting.

This module provides:
1. Icon vocabulary (Icon class namespace)
2. Level-based styling
3. Core log functions (log, info, warn, error)
4. Domain-specific helpers (daemon_started, insight_raised, heartbeat, etc.)
5. Structlog configuration (configure, get_structlog)

Console output uses Rich markup for colors. JSON file output via structlog
remains separate (machine-parseable, no colors).
"""

from __future__ import annotations

import logging
import logging.handlers
from datetime import datetime
from typing import TYPE_CHECKING

import structlog
from rich.console import Console

if TYPE_CHECKING:
    from sysinsight.config import Config
    from sysinsight.models import Insight

_console = Console(highlight=False)


# ─────────────────────────────────────────────────────────────────────────────
# Icons
# ─────────────────────────────────────────────────────────────────────────────


class Icon:
    """Icon vocabulary for console output."""

    OK = "[bold green]✓[/]"
    FAIL = "[bold red]✗[/]"
    WAIT = "⏳"
    PRUNE = "🧹"
    SAVE = "💾"
    HEARTBEAT = "[magenta]♡[/]"
    INSIGHT = "[bright_yellow]◆[/]"
    ANOMALY = "[bright_red]▲[/]"
    SIGNAL = "⚡"


# ─────────────────────────────────────────────────────────────────────────────
# Level Styles
# ─────────────────────────────────────────────────────────────────────────────

_LEVEL_STYLES = {
    "info": "[bright_blue]\\[info][/]",
    "warn": "[yellow]\\[warn][/]",
    "error": "[bold red]\\[err][/] ",
}

_SEVERITY_COLORS = {
    "info": "bright_blue",
    "warning": "bright_yellow",
    "critical": "bright_red",
}


# ─────────────────────────────────────────────────────────────────────────────
# Core Functions
# ─────────────────────────────────────────────────────────────────────────────


def log(level: str, msg: str, icon: str = "") -> None:
    """Print a log message with timestamp and level.

    Args:
        level: Log level (info, warn, error)
        msg: Message to print (can include Rich markup)
        icon: Optional icon to show after level (e.g., Icon.OK)
    """
    ts = datetime.now().strftime("%H:%M:%S")
    lvl = _LEVEL_STYLES.get(level, f"[{level}]")
    icon_part = f" {icon}" if icon else ""
    _console.print(f"[dim]{ts}[/] {lvl}{icon_part} {msg}")


def info(msg: str, icon: str = "") -> None:
    """Log an info message."""
    log("info", msg, icon)


def warn(msg: str, icon: str = "") -> None:
    """Log a warning message."""
    log("warn", msg, icon)


def error(msg: str, icon: str = "") -> None:
    """Log an error message."""
    log("error", msg, icon)


def severity_color(severity: str) -> str:
    """Return Rich color name for an insight severity value."""
    return _SEVERITY_COLORS.get(severity, "white")


# ─────────────────────────────────────────────────────────────────────────────
# Domain Helpers
# ─────────────────────────────────────────────────────────────────────────────


def daemon_started() -> None:
    """Log daemon startup complete."""
    info("Daemon started", Icon.OK)


def daemon_stopping() -> None:
    """Log daemon shutdown initiated."""
    info("Daemon stopping...", Icon.WAIT)


def daemon_stopped() -> None:
    """Log daemon shutdown complete."""
    info("Daemon stopped", Icon.OK)


def signal_received(name: str) -> None:
    """Log signal received."""
    info(f"Received [bold]{name}[/]", Icon.SIGNAL)


def insight_raised(insight: Insight) -> None:
    """Log a newly recorded insight."""
    color = severity_color(insight.severity.value)
    info(f"[{color}]{insight.title}[/] [dim]({insight.cause})[/]", Icon.INSIGHT)


def anomaly_detected(metric: str, value: float, deviation: float) -> None:
    """Log a rolling-window anomaly."""
    info(f"[cyan]{metric}[/] at {value:.1f} [dim]({deviation:.1f}σ)[/]", Icon.ANOMALY)


def heartbeat(
    status: str,
    insight_count: int,
    buffer_size: int,
    buffer_capacity: int,
    skipped_ticks: int,
    db_size_mb: float,
) -> None:
    """Log periodic heartbeat stats."""
    color = severity_color(status) if status != "normal" else "green"
    info(
        f"status [{color}]{status}[/], "
        f"[cyan]{insight_count}[/] insights, "
        f"[dim]{buffer_size}/{buffer_capacity} buffer, "
        f"{skipped_ticks} skipped ticks, "
        f"{round(db_size_mb, 1)}MB DB[/]",
        Icon.HEARTBEAT,
    )


def store_degraded(reason: str) -> None:
    """Log store initialization failure (daemon keeps running without history)."""
    warn(f"History store unavailable: {reason}", Icon.FAIL)


def store_ready(path: str, snapshot_count: int) -> None:
    """Log store initialization."""
    info(f"Store ready at [cyan]{path}[/] [dim]({snapshot_count} snapshots)[/]")


def auto_prune_started() -> None:
    """Log auto-prune started."""
    info("[dim]Auto-pruning...[/]", Icon.PRUNE)


def auto_prune_complete(snapshots_deleted: int) -> None:
    """Log auto-prune complete."""
    info(f"[dim]Pruned {snapshots_deleted} snapshots[/]")


def config_created(path: str) -> None:
    """Log config file created."""
    info(f"Created config at [cyan]{path}[/]", Icon.SAVE)


def version_info(name: str, version: str) -> None:
    """Log version info."""
    info(f"[bold cyan]{name}[/] v{version}")


def config_summary(sample_interval: float, history_size: int, retention_days: int) -> None:
    """Log config summary."""
    info(
        f"Config: interval=[cyan]{sample_interval}s[/], "
        f"history=[cyan]{history_size}[/], retention=[cyan]{retention_days}d[/]"
    )


# ─────────────────────────────────────────────────────────────────────────────
# Structlog Configuration
# ─────────────────────────────────────────────────────────────────────────────


def _add_source(source: str) -> structlog.types.Processor:
    """Create a processor that adds a source field to log events."""

    def processor(
        logger: structlog.types.WrappedLogger,
        method_name: str,
        event_dict: structlog.types.EventDict,
    ) -> structlog.types.EventDict:
        event_dict["source"] = source
        return event_dict

    return processor


def configure(config: Config) -> None:
    """Configure structlog to write JSON Lines to a rotating log file.

    Human-readable console output goes through the Rich helpers above;
    structlog events are machine-parseable and land in the file only.

    Args:
        config: Application config with paths and rotation settings
    """
    config.state_dir.mkdir(parents=True, exist_ok=True)

    file_handler = logging.handlers.RotatingFileHandler(
        config.log_path,
        maxBytes=config.system.log_max_bytes,
        backupCount=config.system.log_backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.INFO)

    stdlib_root = logging.getLogger()
    stdlib_root.setLevel(logging.INFO)
    stdlib_root.handlers.clear()

    file_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
                structlog.processors.add_log_level,
                _add_source("daemon"),
                structlog.processors.format_exc_info,
            ],
        )
    )
    stdlib_root.addHandler(file_handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="%H:%M:%S", utc=False),
            structlog.processors.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_structlog() -> structlog.stdlib.BoundLogger:
    """Get a structlog logger instance for structured JSON file output."""
    return structlog.get_logger()
