"""Network throughput health."""

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
from hang_monitor.health import HealthAssessment, HealthScore, MonitorEvent
from hang_monitor.sample import MonitorSample, MonitorSampleBuilder

log = structlog.get_logger()

SPIKE_MBPS = 100.0
SPIKE_CRITICAL_MBPS = 500.0


class NetworkAnalyzer(SubAnalyzer):
    """Flags sustained network spikes."""

    domain = "Network"

    def __init__(self, collector: MetricsCollector) -> None:
        self._collector = collector

    def collect(self, builder: MonitorSampleBuilder) -> None:
        try:
            builder.network_mbps = self._collector.network_mbps()
        except (psutil.Error, OSError) as e:
            log.warning("network_query_failed", error=str(e))
            builder.mark_degraded(self.domain)

    def _analyze(
        self, current: MonitorSample, history: Sequence[MonitorSample]
    ) -> HealthAssessment:
        events: list[MonitorEvent] = []
        score = 100

        run = consecutive(current, history, lambda s: s.network_mbps > SPIKE_MBPS)
        if run >= CONSECUTIVE_REQUIRED:
            critical = current.network_mbps > SPIKE_CRITICAL_MBPS
            score -= 15 if critical else 5
            if run == CONSECUTIVE_REQUIRED:
                events.append(
                    self._event(
                        current,
                        "NetworkSpike",
                        f"Network spike: {current.network_mbps:.0f} Mbps for {run} samples",
                        critical,
                        "Something is downloading or uploading in the background "
                        "(updates, sync clients, game launchers).",
                    )
                )

        return HealthAssessment(
            score=HealthScore(
                domain=self.domain,
                score=score,
                confidence=history_confidence(history),
            ),
            new_events=events,
        )
