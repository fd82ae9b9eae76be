"""End-of-session summary built from running statistics."""

from dataclasses import dataclass, field
from datetime import datetime

from hang_monitor.health import MonitorEvent
from hang_monitor.sample import MonitorSample


@dataclass
class RunningStat:
    """Count, running sum and running max; no per-sample storage."""

    count: int = 0
    total: float = 0.0
    peak: float = 0.0

    def add(self, value: float) -> None:
        self.count += 1
        self.total += value
        if value > self.peak:
            self.peak = value

    @property
    def avg(self) -> float:
        return self.total / self.count if self.count else 0.0


# Sample attribute tracked for each report metric
TRACKED_METRICS: dict[str, str] = {
    "cpu_percent": "cpu_percent",
    "memory_used_percent": "memory_used_percent",
    "disk_queue_length": "disk_queue_length",
    "network_mbps": "network_mbps",
    "total_handles": "total_handles",
    "pages_per_sec": "pages_per_sec",
    "committed_bytes": "committed_bytes",
    "pages_input_per_sec": "pages_input_per_sec",
    "dpc_time_percent": "dpc_time_percent",
    "interrupt_time_percent": "interrupt_time_percent",
    "context_switches_per_sec": "context_switches_per_sec",
    "processor_queue_length": "processor_queue_length",
    "disk_latency_ms": "max_disk_latency_ms",
    "pool_nonpaged_bytes": "pool_nonpaged_bytes",
    "memory_pressure_index": "memory_pressure_index",
    "system_latency_score": "system_latency_score",
}


class SessionStats:
    """Accumulates per-tick figures for the session report."""

    def __init__(self) -> None:
        self.metrics = {name: RunningStat() for name in TRACKED_METRICS}
        self.health = RunningStat()
        self.domain_scores: dict[str, RunningStat] = {}
        self.freeze_count = 0
        self.sample_count = 0

    def add(self, sample: MonitorSample, overall_score: int, domain_scores: dict[str, int]) -> None:
        self.sample_count += 1
        for name, attr in TRACKED_METRICS.items():
            self.metrics[name].add(float(getattr(sample, attr)))
        self.health.add(overall_score)
        for domain, score in domain_scores.items():
            # Lowest score is the interesting one, so track the inverse
            self.domain_scores.setdefault(domain, RunningStat()).add(100 - score)


@dataclass
class MonitorReport:
    """Summary of one monitoring session."""

    start_time: datetime
    end_time: datetime
    total_samples: int
    events: list[MonitorEvent] = field(default_factory=list)
    averages: dict[str, float] = field(default_factory=dict)
    peaks: dict[str, float] = field(default_factory=dict)
    worst_domain_scores: dict[str, int] = field(default_factory=dict)
    health_score: int = 0
    freeze_count: int = 0

    @property
    def duration_seconds(self) -> float:
        return (self.end_time - self.start_time).total_seconds()

    @classmethod
    def from_stats(
        cls,
        stats: SessionStats,
        events: list[MonitorEvent],
        start_time: datetime,
        end_time: datetime,
    ) -> "MonitorReport":
        return cls(
            start_time=start_time,
            end_time=end_time,
            total_samples=stats.sample_count,
            events=events,
            averages={name: stat.avg for name, stat in stats.metrics.items()},
            peaks={name: stat.peak for name, stat in stats.metrics.items()},
            worst_domain_scores={
                domain: int(100 - stat.peak) for domain, stat in stats.domain_scores.items()
            },
            health_score=round(stats.health.avg),
            freeze_count=stats.freeze_count,
        )

    def to_dict(self) -> dict:
        return {
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "total_samples": self.total_samples,
            "health_score": self.health_score,
            "freeze_count": self.freeze_count,
            "averages": self.averages,
            "peaks": self.peaks,
            "worst_domain_scores": self.worst_domain_scores,
            "events": [e.to_dict() for e in self.events],
        }
