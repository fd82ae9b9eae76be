"""Disk queue and latency health."""

from collections.abc import Sequence

import psutil
import structlog

from hang_monitor.analyzers.base import (
    CONSECUTIVE_REQUIRED,
    SubAnalyzer,
    consecutive,
    history_confidence,
)
from hang_monitor.collector import MetricsCollector
from hang_monitor.formatting import format_bytes
from hang_monitor.health import HealthAssessment, HealthScore, MonitorEvent
from hang_monitor.sample import MonitorSample, MonitorSampleBuilder

log = structlog.get_logger()

QUEUE_WARNING = 2.0
QUEUE_CRITICAL = 5.0
LATENCY_WARNING_MS = 50.0
LATENCY_CRITICAL_MS = 200.0


def _io_hint(current: MonitorSample) -> str:
    if not current.top_io_processes:
        return "No I/O-heavy process identified in this sample. "
    top = [f"{p.name} ({format_bytes(p.total_bytes)})" for p in current.top_io_processes[:3]]
    return f"Largest I/O processes: {', '.join(top)}. "


def _worst_disk_hint(current: MonitorSample) -> str:
    if not current.disk_instances:
        return ""
    disk = max(current.disk_instances, key=lambda d: max(d.read_latency_ms, d.write_latency_ms))
    return (
        f"Worst disk: {disk.name} (R {disk.read_latency_ms:.1f}ms, "
        f"W {disk.write_latency_ms:.1f}ms, queue {disk.queue_length:.1f}, "
        f"busy {disk.busy_percent:.0f}%)."
    )


class DiskAnalyzer(SubAnalyzer):
    """Detects disk I/O bottlenecks and slow storage."""

    domain = "Disk"

    def __init__(self, collector: MetricsCollector) -> None:
        self._collector = collector

    def collect(self, builder: MonitorSampleBuilder) -> None:
        try:
            disks = self._collector.disks()
        except (psutil.Error, OSError) as e:
            log.warning("disk_query_failed", error=str(e))
            builder.mark_degraded(self.domain)
            return
        builder.disk_queue_length = disks.queue_length
        builder.avg_disk_read_ms = disks.avg_read_ms
        builder.avg_disk_write_ms = disks.avg_write_ms
        builder.disk_instances = disks.instances

    def _analyze(
        self, current: MonitorSample, history: Sequence[MonitorSample]
    ) -> HealthAssessment:
        events: list[MonitorEvent] = []
        score = 100

        run = consecutive(current, history, lambda s: s.disk_queue_length > QUEUE_WARNING)
        if run >= CONSECUTIVE_REQUIRED:
            critical = current.disk_queue_length > QUEUE_CRITICAL
            score -= 25 if critical else 10
            if run == CONSECUTIVE_REQUIRED:
                events.append(
                    self._event(
                        current,
                        "DiskBottleneck",
                        f"Disk I/O bottleneck: queue length {current.disk_queue_length:.1f} "
                        f"for {run} samples",
                        critical,
                        "Check background processes. " + _io_hint(current) + _worst_disk_hint(current),
                    )
                )

        latency = current.max_disk_latency_ms
        run = consecutive(current, history, lambda s: s.max_disk_latency_ms > LATENCY_WARNING_MS)
        if run >= CONSECUTIVE_REQUIRED:
            critical = latency > LATENCY_CRITICAL_MS
            score -= 30 if critical else 15
            if run == CONSECUTIVE_REQUIRED:
                events.append(
                    self._event(
                        current,
                        "DiskLatency",
                        f"Disk latency: read {current.avg_disk_read_ms:.1f}ms, "
                        f"write {current.avg_disk_write_ms:.1f}ms",
                        critical,
                        f"Disk response time is high ({latency:.0f}ms). "
                        + _io_hint(current)
                        + _worst_disk_hint(current),
                    )
                )

        hint = None
        if latency > LATENCY_WARNING_MS:
            hint = "High disk latency: I/O operations take too long"

        return HealthAssessment(
            score=HealthScore(
                domain=self.domain,
                score=score,
                confidence=history_confidence(history),
                root_cause_hint=hint,
            ),
            new_events=events,
        )
