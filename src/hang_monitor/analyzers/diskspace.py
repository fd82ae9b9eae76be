"""Free space on mounted volumes."""

from collections.abc import Sequence

import psutil
import structlog

from hang_monitor.analyzers.base import SubAnalyzer
from hang_monitor.collector import MetricsCollector
from hang_monitor.formatting import format_bytes
from hang_monitor.health import HealthAssessment, HealthScore, MonitorEvent
from hang_monitor.sample import MonitorSample, MonitorSampleBuilder, VolumeSpace

log = structlog.get_logger()

FREE_WARNING_PERCENT = 15.0
FREE_CRITICAL_PERCENT = 8.0
# The system volume is penalized a little earlier
SYSTEM_FREE_PERCENT = 20.0


def _describe(volume: VolumeSpace) -> str:
    return (
        f"{volume.mountpoint}: {volume.free_percent:.1f}% free "
        f"({format_bytes(volume.free_bytes)} of {format_bytes(volume.total_bytes)})"
    )


class DiskSpaceAnalyzer(SubAnalyzer):
    """Warns when a volume runs low on free space."""

    domain = "DiskSpace"

    def __init__(self, collector: MetricsCollector) -> None:
        self._collector = collector

    def collect(self, builder: MonitorSampleBuilder) -> None:
        try:
            builder.volumes = self._collector.volumes()
        except (psutil.Error, OSError) as e:
            log.warning("volume_query_failed", error=str(e))
            builder.mark_degraded(self.domain)

    def _analyze(
        self, current: MonitorSample, history: Sequence[MonitorSample]
    ) -> HealthAssessment:
        if not current.volumes:
            return HealthAssessment(
                score=HealthScore(domain=self.domain, score=100, confidence=0.0)
            )

        score = 100
        low = []
        for volume in current.volumes:
            if volume.free_percent < FREE_CRITICAL_PERCENT:
                score -= 30
                low.append(volume)
            elif volume.free_percent < FREE_WARNING_PERCENT:
                score -= 15
                low.append(volume)
            if volume.is_system and volume.free_percent < SYSTEM_FREE_PERCENT:
                score -= 5

        # One event per tick so the session log dedups it as a single condition
        events: list[MonitorEvent] = []
        if low:
            worst = min(low, key=lambda v: v.free_percent)
            critical = worst.free_percent < FREE_CRITICAL_PERCENT
            description = (
                f"{'Critically low' if critical else 'Low'} disk space on {_describe(worst)}"
            )
            if len(low) > 1:
                description += f" and {len(low) - 1} more low volume(s)"
            events.append(
                self._event(
                    current,
                    "LowDiskSpace",
                    description,
                    critical,
                    f"Free up space on {worst.mountpoint}: clear temporary files and caches, "
                    "empty the trash, remove unused applications or move large files "
                    "to another volume.",
                )
            )

        hint = "Disk space low on one or more volumes" if score < 70 else None
        return HealthAssessment(
            score=HealthScore(
                domain=self.domain,
                score=score,
                confidence=min(1.0, len(history) / 2),
                root_cause_hint=hint,
            ),
            new_events=events,
        )
