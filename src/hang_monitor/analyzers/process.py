"""Per-process health: hangs, handle leaks and thread explosions."""

from collections.abc import Sequence

import psutil
import structlog

from hang_monitor.analyzers.base import SubAnalyzer
from hang_monitor.collector import MetricsCollector
from hang_monitor.health import HealthAssessment, HealthScore, MonitorEvent
from hang_monitor.sample import MonitorSample, MonitorSampleBuilder, ProcessInfo

log = structlog.get_logger()

HANG_PENALTY = 20
HANDLE_LEAK_GROWTH = 1000
HANDLE_LEAK_CRITICAL = 5000
THREAD_EXPLOSION_MIN_THREADS = 50
THREAD_EXPLOSION_GROWTH = 200
THREAD_EXPLOSION_CRITICAL = 500


def _by_pid(sample: MonitorSample) -> dict[int, ProcessInfo]:
    procs: dict[int, ProcessInfo] = {}
    for proc in (*sample.top_cpu_processes, *sample.top_memory_processes):
        procs.setdefault(proc.pid, proc)
    return procs


class ProcessAnalyzer(SubAnalyzer):
    """Scores process-level problems against the previous sample."""

    domain = "Process"

    def __init__(self, collector: MetricsCollector, top_n: int = 5) -> None:
        self._collector = collector
        self._top_n = top_n

    def collect(self, builder: MonitorSampleBuilder) -> None:
        try:
            stats = self._collector.processes(self._top_n)
        except (psutil.Error, OSError) as e:
            log.warning("process_query_failed", error=str(e))
            builder.mark_degraded(self.domain)
            return
        builder.top_cpu_processes = stats.top_cpu
        builder.top_memory_processes = stats.top_memory
        builder.top_io_processes = stats.top_io
        builder.top_fault_processes = stats.top_faults
        builder.total_handles = stats.total_handles
        builder.total_threads = stats.total_threads

    def _analyze(
        self, current: MonitorSample, history: Sequence[MonitorSample]
    ) -> HealthAssessment:
        events: list[MonitorEvent] = []
        score = 100
        previous = history[-1] if history else None

        # 1. Newly hanging processes
        already_hanging = set()
        if previous is not None:
            already_hanging = {(h.pid, h.name) for h in previous.hanging_processes}
        for hang in current.hanging_processes:
            if (hang.pid, hang.name) in already_hanging:
                continue
            score -= HANG_PENALTY
            events.append(
                MonitorEvent(
                    timestamp=current.timestamp,
                    event_type="Hang",
                    description=f"Process hang: {hang.name} (PID {hang.pid}) not responding",
                    severity="Critical",
                    tip=f"Give {hang.name} 30 seconds. If it does not recover, end it and "
                    "check for storage or driver problems.",
                )
            )

        if previous is not None:
            before = _by_pid(previous)
            for pid, proc in _by_pid(current).items():
                prev = before.get(pid)
                if prev is None:
                    continue

                # 2. Handle leak
                growth = proc.handle_count - prev.handle_count
                if growth > HANDLE_LEAK_GROWTH:
                    critical = growth > HANDLE_LEAK_CRITICAL
                    score -= 20 if critical else 10
                    events.append(
                        self._event(
                            current,
                            "HandleLeak",
                            f"Handle leak: {proc.name} +{growth} handles (now: {proc.handle_count})",
                            critical,
                            f"{proc.name} is leaking handles. Restart it; if it repeats, update it.",
                        )
                    )

                # 3. Thread explosion
                growth = proc.thread_count - prev.thread_count
                if proc.thread_count > THREAD_EXPLOSION_MIN_THREADS and growth > THREAD_EXPLOSION_GROWTH:
                    critical = growth > THREAD_EXPLOSION_CRITICAL
                    score -= 20 if critical else 10
                    events.append(
                        self._event(
                            current,
                            "ThreadExplosion",
                            f"Thread explosion: {proc.name} +{growth} threads "
                            f"(now: {proc.thread_count})",
                            critical,
                            f"{proc.name} is creating threads uncontrollably, which can starve "
                            "its thread pool and freeze it. Restart it and report the bug.",
                        )
                    )

        hint = None
        if current.hanging_processes:
            names = ", ".join(h.name for h in current.hanging_processes)
            hint = f"Process hang: {names} not responding"

        return HealthAssessment(
            score=HealthScore(
                domain=self.domain,
                score=score,
                confidence=1.0 if history else 0.3,
                root_cause_hint=hint,
            ),
            new_events=events,
        )
