"""Memory, commit and paging health."""

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

MIB = 1024 * 1024
GIB = 1024 * MIB

PAGES_INPUT_STORM = 300.0
PAGES_INPUT_CRITICAL = 1000.0
GROWTH_WINDOW_SAMPLES = 10
GROWTH_DROP_BYTES = 500 * MIB
GROWTH_CRITICAL_BYTES = GIB
COMMIT_WARNING = 0.90
COMMIT_CRITICAL = 0.95
POOL_WARNING_BYTES = 200 * MIB
POOL_CRITICAL_BYTES = 400 * MIB


def _commit_ratio(s: MonitorSample) -> float:
    return s.committed_bytes / s.commit_limit if s.commit_limit > 0 else 0.0


def _top_memory_hint(current: MonitorSample) -> str:
    top = [f"{p.name} ({format_bytes(p.memory_bytes)})" for p in current.top_memory_processes[:3]]
    return f" Largest right now: {', '.join(top)}." if top else ""


class MemoryAnalyzer(SubAnalyzer):
    """Detects paging storms, memory growth, commit exhaustion and kernel pool growth."""

    domain = "Memory"

    def __init__(self, collector: MetricsCollector) -> None:
        self._collector = collector

    def collect(self, builder: MonitorSampleBuilder) -> None:
        try:
            mem = self._collector.memory()
        except (psutil.Error, OSError) as e:
            log.warning("memory_query_failed", error=str(e))
            builder.mark_degraded(self.domain)
            return
        builder.memory_used_percent = mem.used_percent
        builder.memory_available_bytes = mem.available_bytes
        builder.memory_total_bytes = mem.total_bytes
        builder.committed_bytes = mem.committed_bytes
        builder.commit_limit = mem.commit_limit
        builder.pages_input_per_sec = mem.pages_input_per_sec
        builder.pages_per_sec = mem.pages_per_sec
        builder.pool_nonpaged_bytes = mem.pool_nonpaged_bytes

    def _analyze(
        self, current: MonitorSample, history: Sequence[MonitorSample]
    ) -> HealthAssessment:
        events: list[MonitorEvent] = []
        score = 100

        # 1. Hard paging storm
        run = consecutive(current, history, lambda s: s.pages_input_per_sec > PAGES_INPUT_STORM)
        if run >= CONSECUTIVE_REQUIRED:
            critical = current.pages_input_per_sec > PAGES_INPUT_CRITICAL
            score -= 30 if critical else 15
            if run == CONSECUTIVE_REQUIRED:
                events.append(
                    self._event(
                        current,
                        "PageFaultStorm",
                        f"Hard paging storm: {current.pages_input_per_sec:.0f} pages/s "
                        f"read from disk for {run} samples",
                        critical,
                        "Physical memory is exhausted and the system is reading back "
                        f"from swap.{_top_memory_hint(current)}",
                    )
                )

        # 2. Available memory shrinking across the window
        if len(history) >= GROWTH_WINDOW_SAMPLES:
            oldest = history[-GROWTH_WINDOW_SAMPLES].memory_available_bytes
            drop = oldest - current.memory_available_bytes
            if drop > GROWTH_DROP_BYTES:
                critical = drop > GROWTH_CRITICAL_BYTES
                score -= 20 if critical else 10
                events.append(
                    self._event(
                        current,
                        "MemorySpike",
                        f"Memory growth: {format_bytes(drop)} consumed over the last "
                        f"{GROWTH_WINDOW_SAMPLES} samples.{_top_memory_hint(current)}",
                        critical,
                        "Close programs and browser tabs you are not using.",
                    )
                )

        # 3. Commit approaching the limit
        run = consecutive(current, history, lambda s: _commit_ratio(s) > COMMIT_WARNING)
        if run >= CONSECUTIVE_REQUIRED:
            ratio = _commit_ratio(current)
            critical = ratio > COMMIT_CRITICAL
            score -= 25 if critical else 10
            if run == CONSECUTIVE_REQUIRED:
                events.append(
                    self._event(
                        current,
                        "CommitExhaustion",
                        f"Commit limit: {ratio * 100:.0f}% of committable memory in use "
                        f"({format_bytes(current.committed_bytes)}/"
                        f"{format_bytes(current.commit_limit)})",
                        critical,
                        "Allocations will start failing when the limit is reached. "
                        f"Add swap or free memory.{_top_memory_hint(current)}",
                    )
                )

        # 4. Kernel pool growth
        run = consecutive(current, history, lambda s: s.pool_nonpaged_bytes > POOL_WARNING_BYTES)
        if run >= CONSECUTIVE_REQUIRED:
            critical = current.pool_nonpaged_bytes > POOL_CRITICAL_BYTES
            score -= 20 if critical else 10
            if run == CONSECUTIVE_REQUIRED:
                events.append(
                    self._event(
                        current,
                        "PoolExhaustion",
                        f"Kernel pool is {format_bytes(current.pool_nonpaged_bytes)}",
                        critical,
                        "Unusually large kernel allocations usually mean a leaking driver.",
                    )
                )

        hint = None
        if score < 50:
            hint = "Memory pressure: the system is paging and committed memory is high"

        return HealthAssessment(
            score=HealthScore(
                domain=self.domain,
                score=score,
                confidence=history_confidence(history),
                root_cause_hint=hint,
            ),
            new_events=events,
        )
