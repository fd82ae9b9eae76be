"""Deep, thread-level investigation of a frozen process.

Triggered by the engine for hangs past the investigation threshold. The
target's threads are enumerated and their wait reasons tabulated, then an
ordered rule table picks a likely root cause. Long freezes also get a dump.
"""

import time
from collections import Counter
from dataclasses import dataclass, field

import psutil
import structlog

from hang_monitor.dumps import DumpCapture, MiniDumpAnalysis
from hang_monitor.introspection import (
    EXECUTIVE,
    FREE_PAGE,
    PAGE_IN,
    STATE_RUNNING,
    STATE_WAIT,
    USER_REQUEST,
    VIRTUAL_MEMORY,
    ProcessIntrospector,
    ThreadState,
)
from hang_monitor.sample import MonitorSample

log = structlog.get_logger()

DOMINANT_SHARE = 0.6
IDLE_CPU_PERCENT = 20.0
THRASH_CONTEXT_SWITCHES = 80000.0
THRASH_MAX_CPU = 30.0
HIGH_DPC_PERCENT = 15.0
STARVED_TOTAL_THREADS = 100
STARVED_RUNNING_THREADS = 2
DUMP_AFTER_SECONDS = 15.0
BUDGET_MS = 200.0

FALLBACK_CAUSE = "Cause undetermined: deeper stack analysis required"


@dataclass
class FreezeReport:
    """Outcome of one deep investigation."""

    process_name: str
    process_id: int
    freeze_duration: float
    total_threads: int
    running_threads: int
    wait_reason_counts: dict[str, int] = field(default_factory=dict)
    dominant_wait_reason: str | None = None
    likely_root_cause: str = FALLBACK_CAUSE
    mini_dump_path: str | None = None
    mini_dump_analysis: MiniDumpAnalysis | None = None

    def to_dict(self) -> dict:
        return {
            "process_name": self.process_name,
            "process_id": self.process_id,
            "freeze_duration": self.freeze_duration,
            "total_threads": self.total_threads,
            "running_threads": self.running_threads,
            "wait_reason_counts": dict(self.wait_reason_counts),
            "dominant_wait_reason": self.dominant_wait_reason,
            "likely_root_cause": self.likely_root_cause,
            "mini_dump_path": self.mini_dump_path,
            "mini_dump_analysis": (
                self.mini_dump_analysis.to_dict() if self.mini_dump_analysis else None
            ),
        }


def dominant_wait_reason(counts: dict[str, int], total: int) -> str | None:
    """The wait reason held by strictly more than 60% of all threads, if any."""
    if total <= 0 or not counts:
        return None
    reason, count = max(counts.items(), key=lambda item: item[1])
    return reason if count / total > DOMINANT_SHARE else None


def root_cause(
    dominant: str | None,
    threads: list[ThreadState],
    running: int,
    sample: MonitorSample,
) -> str:
    """Apply the rule table in order; the first matching rule wins."""
    total = len(threads)
    all_waiting = total > 0 and all(t.state == STATE_WAIT for t in threads)

    if dominant == EXECUTIVE:
        return "Lock contention or synchronization block"
    if dominant == PAGE_IN:
        return "Memory or disk paging pressure"
    if all_waiting and sample.cpu_percent < IDLE_CPU_PERCENT:
        return "Deadlock or kernel object wait"
    if (
        sample.context_switches_per_sec > THRASH_CONTEXT_SWITCHES
        and sample.cpu_percent < THRASH_MAX_CPU
    ):
        return "Scheduler thrashing"
    if sample.dpc_time_percent > HIGH_DPC_PERCENT:
        return "Driver or interrupt latency issue"
    if dominant == USER_REQUEST:
        return "Waiting for user input or I/O completion"
    if dominant == FREE_PAGE:
        return "Memory allocation pressure"
    if dominant == VIRTUAL_MEMORY:
        return "Virtual memory management delay"
    if total > STARVED_TOTAL_THREADS and running < STARVED_RUNNING_THREADS:
        return "Thread pool starvation or async deadlock"
    return FALLBACK_CAUSE


class FreezeInvestigator:
    """Stateless deep analysis of one frozen process per call."""

    def __init__(
        self,
        introspector: ProcessIntrospector,
        dump_capture: DumpCapture | None = None,
        dump_after: float = DUMP_AFTER_SECONDS,
    ) -> None:
        self._introspector = introspector
        self._dump_capture = dump_capture
        self._dump_after = dump_after

    def investigate(
        self,
        process_name: str,
        process_id: int,
        freeze_duration: float,
        sample: MonitorSample,
        *,
        capture_dump: bool = True,
    ) -> FreezeReport | None:
        """Investigate one frozen process.

        Args:
            process_name: Name of the frozen process
            process_id: Its pid
            freeze_duration: Seconds it has been unresponsive
            sample: Current sample, for ambient CPU, scheduler and DPC state
            capture_dump: False suppresses the dump even past the threshold

        Returns:
            The report, or None if the process vanished, could not be
            inspected, or anything else went wrong.
        """
        start = time.monotonic()
        try:
            report = self._investigate(
                process_name, process_id, freeze_duration, sample, capture_dump
            )
        except Exception as e:
            log.warning(
                "investigation_failed",
                process=process_name,
                pid=process_id,
                error=f"{type(e).__name__}: {e}",
            )
            return None

        elapsed_ms = (time.monotonic() - start) * 1000
        if elapsed_ms > BUDGET_MS:
            log.warning("investigation_slow", pid=process_id, elapsed_ms=round(elapsed_ms))
        log.info(
            "investigation_complete",
            process=process_name,
            pid=process_id,
            cause=report.likely_root_cause,
            elapsed_ms=round(elapsed_ms),
        )
        return report

    def _investigate(
        self,
        process_name: str,
        process_id: int,
        freeze_duration: float,
        sample: MonitorSample,
        capture_dump: bool,
    ) -> FreezeReport:
        threads = self._introspector.threads(process_id)

        running = sum(1 for t in threads if t.state == STATE_RUNNING)
        counts = Counter(t.wait_reason for t in threads if t.state == STATE_WAIT and t.wait_reason)
        dominant = dominant_wait_reason(counts, len(threads))
        cause = root_cause(dominant, threads, running, sample)

        # Never report on a process that exited while we were looking at it
        if not self._introspector.alive(process_id):
            raise psutil.NoSuchProcess(process_id, process_name)

        report = FreezeReport(
            process_name=process_name,
            process_id=process_id,
            freeze_duration=freeze_duration,
            total_threads=len(threads),
            running_threads=running,
            wait_reason_counts=dict(counts),
            dominant_wait_reason=dominant,
            likely_root_cause=cause,
        )

        if capture_dump and freeze_duration > self._dump_after and self._dump_capture:
            self._attach_dump(report)
        return report

    def _attach_dump(self, report: FreezeReport) -> None:
        # A failed capture or analysis leaves the report valid without it
        try:
            path = self._dump_capture.create_dump(report.process_id, report.process_name)
        except Exception as e:
            log.warning("dump_failed", pid=report.process_id, error=str(e))
            return
        if path is None:
            return
        report.mini_dump_path = str(path)
        try:
            report.mini_dump_analysis = self._dump_capture.analyze_dump(path)
        except Exception as e:
            log.warning("dump_analysis_failed", path=str(path), error=str(e))
