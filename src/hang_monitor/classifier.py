"""Cheap, always-on labelling of why a hanging process might be stuck.

Only ambient state from the current sample is used: system CPU, disk queue
and latency, DPC time, memory pressure, and whatever the top-N lists say about
the process itself. Per-thread inspection is left to the investigator.
"""

from dataclasses import dataclass, field

from hang_monitor.sample import MonitorSample

DISK_BOUND_LATENCY_MS = 100.0
DISK_BOUND_QUEUE = 4.0
CPU_STARVATION_PERCENT = 80.0
DPC_LATENCY_PERCENT = 15.0
MEMORY_PRESSURE_INDEX = 70
# An idle system around a hung process
IDLE_CPU_PERCENT = 30.0
IDLE_DISK_QUEUE = 2.0
IDLE_LATENCY_MS = 50.0
STARVED_POOL_THREADS = 100
STARVED_POOL_CPU = 5.0
LOCK_CONTEXT_SWITCHES = 30000.0
LOCK_PROCESS_CPU = 10.0
PAGING_FAULTS_PER_SEC = 100.0
PAGING_PROCESS_CPU = 5.0
ELEVATED_DPC_PERCENT = 5.0
UI_BUSY_MIN_CPU = 10.0
UI_BUSY_MAX_CPU = 30.0

UNDETERMINED = "Undetermined"


@dataclass(frozen=True)
class FreezeClassification:
    """Coarse cause label for one hanging process."""

    process_name: str
    likely_cause: str
    description: str
    evidence: list[str] = field(default_factory=list)


class FreezeClassifier:
    """Walks a fixed ladder of ambient conditions; first match wins."""

    def classify(self, process_name: str, sample: MonitorSample) -> FreezeClassification:
        latency = sample.max_disk_latency_ms
        evidence = [
            f"System CPU {sample.cpu_percent:.0f}%",
            f"Disk queue {sample.disk_queue_length:.1f}",
            f"Disk latency {latency:.0f}ms",
        ]

        def result(cause: str, description: str, *extra: str) -> FreezeClassification:
            return FreezeClassification(
                process_name=process_name,
                likely_cause=cause,
                description=description,
                evidence=evidence + list(extra),
            )

        if latency > DISK_BOUND_LATENCY_MS or sample.disk_queue_length > DISK_BOUND_QUEUE:
            return result(
                "I/O wait",
                f"{process_name} is probably waiting on storage; the disk is saturated.",
            )
        if sample.cpu_percent > CPU_STARVATION_PERCENT:
            return result(
                "CPU starvation",
                f"{process_name} is not getting CPU time; other work is saturating the processors.",
            )
        if sample.dpc_time_percent > DPC_LATENCY_PERCENT:
            return result(
                "Driver or interrupt latency",
                "Interrupt handling is consuming CPU time before user threads can run.",
                f"DPC time {sample.dpc_time_percent:.1f}%",
            )
        if sample.memory_pressure_index > MEMORY_PRESSURE_INDEX:
            return result(
                "Memory pressure",
                f"{process_name} is likely stalled on paging; memory is nearly exhausted.",
                f"Memory pressure index {sample.memory_pressure_index}",
            )

        idle = (
            sample.cpu_percent < IDLE_CPU_PERCENT
            and sample.disk_queue_length < IDLE_DISK_QUEUE
            and latency < IDLE_LATENCY_MS
        )
        if not idle:
            return result(
                UNDETERMINED,
                "No single resource explains the hang at this point.",
            )
        return self._internal_blocking(process_name, sample, result)

    def _internal_blocking(self, process_name, sample, result) -> FreezeClassification:
        # The system is idle, so the cause is inside the process
        proc = sample.find_process(process_name)
        proc_cpu = proc.cpu_percent if proc is not None else 0.0
        proc_threads = proc.thread_count if proc is not None else 0
        faults = next(
            (
                p.page_faults_per_sec
                for p in sample.top_fault_processes
                if p.name.lower() == process_name.lower()
            ),
            0.0,
        )
        process_evidence = f"Process CPU {proc_cpu:.0f}%, {proc_threads} threads"

        if proc_threads > STARVED_POOL_THREADS and proc_cpu < STARVED_POOL_CPU:
            return result(
                "Thread pool starvation",
                f"{process_name} has many threads but almost none are doing work.",
                process_evidence,
            )
        if (
            sample.context_switches_per_sec > LOCK_CONTEXT_SWITCHES
            and proc_cpu < LOCK_PROCESS_CPU
        ):
            return result(
                "Lock contention",
                f"Threads are switching rapidly while {process_name} makes no progress.",
                process_evidence,
                f"Context switches {sample.context_switches_per_sec:.0f}/s",
            )
        if faults > PAGING_FAULTS_PER_SEC and proc_cpu < PAGING_PROCESS_CPU:
            return result(
                "Paging wait",
                f"{process_name} is faulting pages in faster than it runs.",
                process_evidence,
                f"Process page faults {faults:.0f}/s",
            )
        if sample.dpc_time_percent > ELEVATED_DPC_PERCENT:
            return result(
                "Elevated DPC",
                "Interrupt handling is elevated and may be delaying the process.",
                f"DPC time {sample.dpc_time_percent:.1f}%",
            )
        if sample.processor_queue_length > sample.logical_cores:
            return result(
                "Scheduler congestion",
                "More threads are ready to run than there are cores.",
                f"Processor queue {sample.processor_queue_length}",
            )
        if UI_BUSY_MIN_CPU <= proc_cpu <= UI_BUSY_MAX_CPU:
            return result(
                "UI thread busy",
                f"{process_name} is busy on one thread while the rest of the system is idle.",
                process_evidence,
            )
        return result(
            "internal blocking / deadlock-suspected",
            f"The system is idle, so {process_name} is likely blocked on its own locks.",
            process_evidence,
        )
