"""CPU and scheduler health."""

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

CPU_SPIKE_PERCENT = 80.0
CPU_SPIKE_CRITICAL = 95.0
DPC_STORM_PERCENT = 15.0
DPC_STORM_CRITICAL = 25.0
CONTENTION_MAX_CPU = 50.0
THROTTLE_MIN_LOAD = 40.0
THROTTLE_RATIO = 0.6
THROTTLE_CRITICAL_RATIO = 0.4


def _spiking(s: MonitorSample) -> bool:
    return s.cpu_percent > CPU_SPIKE_PERCENT


def _dpc_storm(s: MonitorSample) -> bool:
    return s.dpc_time_percent > DPC_STORM_PERCENT


def _contended(s: MonitorSample) -> bool:
    return s.cpu_percent < CONTENTION_MAX_CPU and s.processor_queue_length > 2 * s.logical_cores


def _clock_ratio(s: MonitorSample) -> float | None:
    if s.cpu_max_clock_mhz <= 0:
        return None
    return s.cpu_clock_mhz / s.cpu_max_clock_mhz


def _throttled(s: MonitorSample) -> bool:
    ratio = _clock_ratio(s)
    return ratio is not None and s.cpu_percent > THROTTLE_MIN_LOAD and ratio < THROTTLE_RATIO


class CpuAnalyzer(SubAnalyzer):
    """Detects CPU spikes, DPC/interrupt storms, scheduler contention and throttling."""

    domain = "CPU"

    def __init__(self, collector: MetricsCollector) -> None:
        self._collector = collector

    def collect(self, builder: MonitorSampleBuilder) -> None:
        try:
            cpu = self._collector.cpu()
            builder.cpu_percent = cpu.percent
            builder.cpu_clock_mhz = cpu.clock_mhz
            builder.cpu_max_clock_mhz = cpu.max_clock_mhz
            builder.logical_cores = cpu.logical_cores
        except (psutil.Error, OSError) as e:
            log.warning("cpu_query_failed", error=str(e))
            builder.mark_degraded(self.domain)

        try:
            sched = self._collector.scheduler()
            builder.context_switches_per_sec = sched.context_switches_per_sec
            builder.interrupt_time_percent = sched.interrupt_time_percent
            builder.dpc_time_percent = sched.dpc_time_percent
            builder.processor_queue_length = sched.processor_queue_length
        except (psutil.Error, OSError) as e:
            log.warning("scheduler_query_failed", error=str(e))
            builder.mark_degraded(self.domain)

    def _analyze(
        self, current: MonitorSample, history: Sequence[MonitorSample]
    ) -> HealthAssessment:
        events: list[MonitorEvent] = []
        score = 100
        hints = []

        run = consecutive(current, history, _spiking)
        if run >= CONSECUTIVE_REQUIRED:
            critical = current.cpu_percent > CPU_SPIKE_CRITICAL
            score -= 25 if critical else 10
            hints.append(f"CPU at {current.cpu_percent:.0f}%")
            if run == CONSECUTIVE_REQUIRED:
                top = current.top_cpu_processes[0] if current.top_cpu_processes else None
                proc_info = f" ({top.name} {top.cpu_percent:.0f}%)" if top else ""
                tip = (
                    f"{top.name} is the heaviest process; end it if it is not doing useful work."
                    if top
                    else "Sort processes by CPU to find the source of the load."
                )
                events.append(
                    self._event(
                        current,
                        "CpuSpike",
                        f"CPU spike: {current.cpu_percent:.0f}% for {run} samples{proc_info}",
                        critical,
                        tip,
                    )
                )

        run = consecutive(current, history, _dpc_storm)
        if run >= CONSECUTIVE_REQUIRED:
            critical = current.dpc_time_percent > DPC_STORM_CRITICAL
            score -= 30 if critical else 15
            hints.append(f"interrupt/DPC time {current.dpc_time_percent:.1f}%")
            if run == CONSECUTIVE_REQUIRED:
                events.append(
                    self._event(
                        current,
                        "DpcStorm",
                        f"DPC storm: {current.dpc_time_percent:.1f}% DPC time + "
                        f"{current.interrupt_time_percent:.1f}% interrupt time",
                        critical,
                        "High deferred interrupt time points at a driver "
                        "(network, GPU, USB or storage). Update drivers.",
                    )
                )

        run = consecutive(current, history, _contended)
        if run >= CONSECUTIVE_REQUIRED:
            cores = current.logical_cores
            critical = current.processor_queue_length > 4 * cores
            score -= 20 if critical else 10
            hints.append(f"run queue {current.processor_queue_length}")
            if run == CONSECUTIVE_REQUIRED:
                events.append(
                    self._event(
                        current,
                        "SchedulerContention",
                        f"Scheduler contention: CPU {current.cpu_percent:.0f}% but processor "
                        f"queue = {current.processor_queue_length} (should be < {2 * cores})",
                        critical,
                        "Threads are waiting to be scheduled while the CPU is mostly idle. "
                        "Look for priority inversion or processes pinned to few cores.",
                    )
                )

        run = consecutive(current, history, _throttled)
        if run >= CONSECUTIVE_REQUIRED:
            ratio = _clock_ratio(current) or 0.0
            score -= 15
            hints.append(f"clock at {ratio * 100:.0f}% of max")
            if run == CONSECUTIVE_REQUIRED:
                events.append(
                    self._event(
                        current,
                        "CpuThrottle",
                        f"CPU throttling: {current.cpu_clock_mhz:.0f}/"
                        f"{current.cpu_max_clock_mhz:.0f} MHz ({ratio * 100:.0f}%) "
                        f"at {current.cpu_percent:.0f}% load",
                        ratio < THROTTLE_CRITICAL_RATIO,
                        "CPU running at low frequency under load. Check temperatures, "
                        "power profile and cooling.",
                    )
                )

        return HealthAssessment(
            score=HealthScore(
                domain=self.domain,
                score=score,
                confidence=history_confidence(history),
                root_cause_hint="; ".join(hints) or None,
            ),
            new_events=events,
        )
