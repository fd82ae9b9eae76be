"""Sub-analyzer contract shared by every health domain."""

from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence

import structlog

from hang_monitor.health import (
    SEVERITY_CRITICAL,
    SEVERITY_WARNING,
    HealthAssessment,
    MonitorEvent,
)
from hang_monitor.sample import MonitorSample, MonitorSampleBuilder

log = structlog.get_logger()

# Samples in a row a condition must hold before it is reported
CONSECUTIVE_REQUIRED = 2


def consecutive(
    current: MonitorSample,
    history: Sequence[MonitorSample],
    condition: Callable[[MonitorSample], bool],
) -> int:
    """Count how many samples in a row, ending with current, satisfy condition."""
    if not condition(current):
        return 0
    count = 1
    for sample in reversed(history):
        if not condition(sample):
            break
        count += 1
    return count


def history_confidence(history: Sequence[MonitorSample]) -> float:
    """Confidence grows with the amount of trend data, full at three samples."""
    return min(1.0, len(history) / 3)


class SubAnalyzer(ABC):
    """One health domain: collects its own fields and scores them.

    Subclasses implement collect() and _analyze(). analyze() never raises and
    must depend only on its arguments.
    """

    domain: str = ""

    @abstractmethod
    def collect(self, builder: MonitorSampleBuilder) -> None:
        """Write this domain's fields into the builder."""

    @abstractmethod
    def _analyze(
        self, current: MonitorSample, history: Sequence[MonitorSample]
    ) -> HealthAssessment:
        """Score this domain. May raise; analyze() converts failures."""

    def analyze(
        self, current: MonitorSample, history: Sequence[MonitorSample]
    ) -> HealthAssessment:
        """Score this domain against the current sample and history (oldest first)."""
        if self.domain in current.degraded_domains:
            return HealthAssessment.unknown(self.domain, f"{self.domain} metrics unavailable")
        try:
            return self._analyze(current, history)
        except Exception as e:
            log.warning("analyze_failed", domain=self.domain, error=str(e))
            return HealthAssessment.unknown(
                self.domain, f"{self.domain} analysis failed: {type(e).__name__}: {e}"
            )

    def _event(
        self,
        current: MonitorSample,
        event_type: str,
        description: str,
        critical: bool,
        tip: str,
    ) -> MonitorEvent:
        return MonitorEvent(
            timestamp=current.timestamp,
            event_type=event_type,
            description=description,
            severity=SEVERITY_CRITICAL if critical else SEVERITY_WARNING,
            tip=tip,
        )
