"""Operator-facing output for hang-monitor.

Two channels live here. The terminal gets short Rich-markup lines from the
helpers below (one per tick, event, hang, dump and session summary). The
state directory gets a rotating JSON Lines file from structlog, which every
module writes to through ``structlog.get_logger()``.
"""

from __future__ import annotations

import logging
import logging.handlers
from datetime import datetime
from typing import TYPE_CHECKING

import structlog
from rich.console import Console

from hang_monitor.formatting import format_duration

if TYPE_CHECKING:
    from hang_monitor.config import Config
    from hang_monitor.health import MonitorEvent
    from hang_monitor.investigator import FreezeReport
    from hang_monitor.report import MonitorReport

_console = Console(highlight=False)


# ─────────────────────────────────────────────────────────────────────────────
# Icons
# ─────────────────────────────────────────────────────────────────────────────


class Icon:
    """Icon vocabulary for console output."""

    OK = "[bold green]✓[/]"
    FAIL = "[bold red]✗[/]"
    WAIT = "⏳"
    HANG = "[bright_red]⏸[/]"
    DUMP = "📸"
    SAVE = "💾"
    SIGNAL = "⚡"
    EVENT = "[yellow]●[/]"
    NEW = "[red]+[/]"
    FIXED = "[green]-[/]"


# ─────────────────────────────────────────────────────────────────────────────
# Level Styles
# ─────────────────────────────────────────────────────────────────────────────

_LEVEL_STYLES = {
    "info": "[bright_blue]\\[info][/]",
    "warn": "[yellow]\\[warn][/]",
    "error": "[bold red]\\[err][/] ",
}
_TIME_FORMAT = "%H:%M:%S"

_SEVERITY_STYLES = {
    "Critical": "bright_red",
    "Warning": "yellow",
    "Info": "cyan",
    "Ok": "green",
}

_BAND_COLORS = {
    "Critical": "bright_red",
    "High": "red",
    "Pressure": "yellow",
    "Some latency": "yellow",
}


# ─────────────────────────────────────────────────────────────────────────────
# Core Functions
# ─────────────────────────────────────────────────────────────────────────────


def log(level: str, msg: str, icon: str = "") -> None:
    """Print one console line: dimmed clock, level tag, optional icon, message.

    ``msg`` may carry Rich markup. Unknown levels are shown verbatim.
    """
    parts = [f"[dim]{datetime.now().strftime(_TIME_FORMAT)}[/]"]
    parts.append(_LEVEL_STYLES.get(level, f"[{level}]"))
    if icon:
        parts.append(icon)
    parts.append(msg)
    _console.print(" ".join(parts))


def info(msg: str, icon: str = "") -> None:
    log("info", msg, icon)


def warn(msg: str, icon: str = "") -> None:
    log("warn", msg, icon)


def error(msg: str, icon: str = "") -> None:
    log("error", msg, icon)


# ─────────────────────────────────────────────────────────────────────────────
# Styling Helpers
# ─────────────────────────────────────────────────────────────────────────────


def band_color(label: str) -> str:
    """Rich color for a band label ("Critical", "High", "Pressure", ...)."""
    return _BAND_COLORS.get(label, "green")


def severity_color(severity: str) -> str:
    """Rich color for an event or check severity."""
    return _SEVERITY_STYLES.get(severity, "white")


# ─────────────────────────────────────────────────────────────────────────────
# Domain Helpers
# ─────────────────────────────────────────────────────────────────────────────


def monitor_started(interval: float, duration: float, admin: bool) -> None:
    """Log session start."""
    mode = " [bold]admin[/]" if admin else ""
    info(
        f"Monitoring every [cyan]{interval:g}s[/] for [cyan]{format_duration(duration)}[/]{mode}",
        Icon.OK,
    )


def monitor_stopping() -> None:
    """Log shutdown requested."""
    info("Stopping after the current tick...", Icon.WAIT)


def monitor_stopped(samples: int) -> None:
    """Log session end."""
    info(f"Monitoring stopped [dim]({samples} samples)[/]", Icon.OK)


def signal_received(name: str) -> None:
    """Log signal received."""
    info(f"Received [bold]{name}[/]", Icon.SIGNAL)


def tick_skipped() -> None:
    """Log a tick slot dropped because the previous tick is still running."""
    warn("[dim]Previous tick still running, skipping[/]")


def sample_failed(error_msg: str) -> None:
    """Log a tick that failed outright."""
    error(f"Sample failed: {error_msg}", Icon.FAIL)


def tick_summary(overall: int, memory_pressure: int, latency: int, bands) -> None:
    """Log the headline numbers of one tick."""
    mem_label = bands.memory_label(memory_pressure)
    lat_label = bands.latency_label(latency)
    info(
        f"health [cyan]{overall}[/] "
        f"memory [{band_color(mem_label)}]{memory_pressure} {mem_label}[/] "
        f"latency [{band_color(lat_label)}]{latency} {lat_label}[/]"
    )


def event_raised(event: MonitorEvent) -> None:
    """Log an event entering the session log."""
    color = severity_color(event.severity)
    info(f"[{color}]{event.event_type}[/] {event.description}", Icon.EVENT)


def hang_detected(name: str, pid: int, seconds: float, cause: str) -> None:
    """Log a hanging process and its classified cause."""
    info(
        f"[cyan]{name}[/] [dim]({pid})[/] not responding for {seconds:.0f}s "
        f"[dim]- {cause}[/]",
        Icon.HANG,
    )


def freeze_report(report: FreezeReport) -> None:
    """Log the result of a deep investigation."""
    dominant = report.dominant_wait_reason or "none"
    info(
        f"[cyan]{report.process_name}[/] [dim]({report.process_id})[/] "
        f"{report.running_threads}/{report.total_threads} threads running, "
        f"dominant wait [cyan]{dominant}[/] -> [bold]{report.likely_root_cause}[/]"
    )
    if report.mini_dump_path:
        dump_written(report.mini_dump_path)
    if report.mini_dump_analysis and report.mini_dump_analysis.flagged_modules:
        warn(f"Flagged modules: {', '.join(report.mini_dump_analysis.flagged_modules)}")


def dump_written(path: str) -> None:
    """Log a process snapshot written to disk."""
    info(f"Dump written to [cyan]{path}[/]", Icon.DUMP)


def run_saved(path: str) -> None:
    """Log run log saved."""
    info(f"Run saved to [cyan]{path}[/]", Icon.SAVE)


def session_summary(report: MonitorReport) -> None:
    """Log the end-of-session headline figures."""
    critical = sum(1 for e in report.events if e.severity == "Critical")
    info(
        f"Session {format_duration(report.duration_seconds)}: "
        f"{report.total_samples} samples, health [cyan]{report.health_score}[/], "
        f"{report.freeze_count} freezes, {len(report.events)} events "
        f"[dim]({critical} critical)[/]"
    )
    info(
        f"[dim]Peak CPU {report.peaks.get('cpu_percent', 0):.0f}%, "
        f"memory {report.peaks.get('memory_used_percent', 0):.0f}%, "
        f"disk latency {report.peaks.get('disk_latency_ms', 0):.0f}ms[/]"
    )


def run_diff(new: list[str], fixed: list[str]) -> None:
    """Log issues that appeared or disappeared since the previous run."""
    if not new and not fixed:
        info("[dim]No changes since the previous run[/]")
        return
    for key in new:
        info(key.replace("|", ": "), Icon.NEW)
    for key in fixed:
        info(key.replace("|", ": "), Icon.FIXED)


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


def configure(config: Config, source: str = "monitor") -> None:
    """Route structlog events to a rotating JSON Lines file.

    Console output is handled by the Rich helpers above; structlog only
    writes the machine-parseable file, with local timestamps under "ts".

    Args:
        config: Application config with paths and rotation limits
        source: Value of the "source" field on every file record
    """
    config.state_dir.mkdir(parents=True, exist_ok=True)

    # Shared by structlog events and records from plain stdlib loggers
    enrich: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
        structlog.processors.add_log_level,
        _add_source(source),
    ]

    handler = logging.handlers.RotatingFileHandler(
        config.log_path,
        maxBytes=config.logging.max_bytes,
        backupCount=config.logging.backup_count,
        encoding="utf-8",
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=[*enrich, structlog.processors.format_exc_info],
        )
    )

    root = logging.getLogger()
    root.setLevel(logging.INFO)
    root.handlers.clear()
    root.addHandler(handler)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *enrich,
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
