# src/hang_monitor/sample.py
"""Point-in-time system samples.

A MonitorSampleBuilder is filled by the sub-analyzers during one tick and
frozen exactly once into an immutable MonitorSample. Samples are appended to
the engine history and never mutated afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from hang_monitor.classifier import FreezeClassification
    from hang_monitor.investigator import FreezeReport


@dataclass(frozen=True)
class ProcessInfo:
    """Per-process resource figures used by the top-N lists."""

    name: str
    pid: int
    cpu_percent: float = 0.0
    memory_bytes: int = 0
    handle_count: int = 0
    thread_count: int = 0


@dataclass(frozen=True)
class IoProcessInfo:
    """Cumulative I/O for one process."""

    name: str
    pid: int
    read_bytes: int
    write_bytes: int

    @property
    def total_bytes(self) -> int:
        return self.read_bytes + self.write_bytes


@dataclass(frozen=True)
class FaultProcessInfo:
    """Page fault rate for one process."""

    name: str
    pid: int
    page_faults_per_sec: float


@dataclass(frozen=True)
class DiskInstanceStat:
    """Latency and load of one physical disk."""

    name: str
    read_latency_ms: float = 0.0
    write_latency_ms: float = 0.0
    queue_length: float = 0.0
    busy_percent: float = 0.0


@dataclass(frozen=True)
class VolumeSpace:
    """Capacity and free space of one mounted volume."""

    mountpoint: str
    total_bytes: int
    free_bytes: int
    is_system: bool = False

    @property
    def free_percent(self) -> float:
        return self.free_bytes / self.total_bytes * 100 if self.total_bytes > 0 else 100.0


@dataclass(frozen=True)
class HangingProcessInfo:
    """A process observed unresponsive for longer than the liveness threshold."""

    name: str
    hang_seconds: float
    pid: int = 0


@dataclass(frozen=True)
class MonitorSample:
    """Immutable snapshot of system health for one tick."""

    timestamp: datetime
    # CPU / scheduler
    cpu_percent: float = 0.0
    cpu_clock_mhz: float = 0.0
    cpu_max_clock_mhz: float = 0.0
    logical_cores: int = 1
    context_switches_per_sec: float = 0.0
    processor_queue_length: int = 0
    dpc_time_percent: float = 0.0
    interrupt_time_percent: float = 0.0
    # Memory
    memory_used_percent: float = 0.0
    memory_available_bytes: int = 0
    memory_total_bytes: int = 0
    committed_bytes: int = 0
    commit_limit: int = 0
    pages_per_sec: float = 0.0
    pages_input_per_sec: float = 0.0
    pool_nonpaged_bytes: int = 0
    # Disk
    disk_queue_length: float = 0.0
    avg_disk_read_ms: float = 0.0
    avg_disk_write_ms: float = 0.0
    disk_instances: tuple[DiskInstanceStat, ...] = ()
    volumes: tuple[VolumeSpace, ...] = ()
    # Network
    network_mbps: float = 0.0
    # Processes
    total_handles: int = 0
    total_threads: int = 0
    top_cpu_processes: tuple[ProcessInfo, ...] = ()
    top_memory_processes: tuple[ProcessInfo, ...] = ()
    top_io_processes: tuple[IoProcessInfo, ...] = ()
    top_fault_processes: tuple[FaultProcessInfo, ...] = ()
    # Hangs
    hanging_processes: tuple[HangingProcessInfo, ...] = ()
    freeze_classifications: tuple[FreezeClassification, ...] = ()
    freeze_reports: tuple[FreezeReport, ...] = ()
    # Domains whose collection failed this tick
    degraded_domains: frozenset[str] = frozenset()
    # Derived composites, 0-100
    memory_pressure_index: int = 0
    system_latency_score: int = 0

    @property
    def max_disk_latency_ms(self) -> float:
        """Worse of the average read and write latency."""
        return max(self.avg_disk_read_ms, self.avg_disk_write_ms)

    def find_process(self, name: str) -> ProcessInfo | None:
        """Look up a process by name in the CPU then memory top lists."""
        lowered = name.lower()
        for proc in (*self.top_cpu_processes, *self.top_memory_processes):
            if proc.name.lower() == lowered:
                return proc
        return None

    def trimmed(self) -> MonitorSample:
        """Return a lighter copy for long-lived history.

        CPU and memory top lists are kept so later ticks can compare handle
        and thread counts against the previous sample.
        """
        return replace(
            self,
            disk_instances=(),
            volumes=(),
            top_io_processes=(),
            top_fault_processes=(),
            freeze_classifications=(),
            freeze_reports=(),
        )


@dataclass
class MonitorSampleBuilder:
    """Mutable accumulator for one tick.

    Each sub-analyzer writes only its own domain's fields. Unwritten fields
    keep their zero/empty defaults.
    """

    timestamp: datetime = field(default_factory=datetime.now)
    cpu_percent: float = 0.0
    cpu_clock_mhz: float = 0.0
    cpu_max_clock_mhz: float = 0.0
    logical_cores: int = 1
    context_switches_per_sec: float = 0.0
    processor_queue_length: int = 0
    dpc_time_percent: float = 0.0
    interrupt_time_percent: float = 0.0
    memory_used_percent: float = 0.0
    memory_available_bytes: int = 0
    memory_total_bytes: int = 0
    committed_bytes: int = 0
    commit_limit: int = 0
    pages_per_sec: float = 0.0
    pages_input_per_sec: float = 0.0
    pool_nonpaged_bytes: int = 0
    disk_queue_length: float = 0.0
    avg_disk_read_ms: float = 0.0
    avg_disk_write_ms: float = 0.0
    disk_instances: list[DiskInstanceStat] = field(default_factory=list)
    volumes: list[VolumeSpace] = field(default_factory=list)
    network_mbps: float = 0.0
    total_handles: int = 0
    total_threads: int = 0
    top_cpu_processes: list[ProcessInfo] = field(default_factory=list)
    top_memory_processes: list[ProcessInfo] = field(default_factory=list)
    top_io_processes: list[IoProcessInfo] = field(default_factory=list)
    top_fault_processes: list[FaultProcessInfo] = field(default_factory=list)
    hanging_processes: list[HangingProcessInfo] = field(default_factory=list)
    freeze_classifications: list[FreezeClassification] = field(default_factory=list)
    freeze_reports: list[FreezeReport] = field(default_factory=list)
    degraded_domains: set[str] = field(default_factory=set)
    memory_pressure_index: int = 0
    system_latency_score: int = 0
    _built: bool = field(default=False, init=False, repr=False)

    def mark_degraded(self, domain: str) -> None:
        """Record that a domain could not be fully collected this tick."""
        self.degraded_domains.add(domain)

    def build(self) -> MonitorSample:
        """Freeze the accumulated values into a MonitorSample.

        Raises:
            RuntimeError: If the builder was already built.
        """
        if self._built:
            raise RuntimeError("MonitorSampleBuilder.build() called twice")
        self._built = True

        values = {}
        for f in fields(MonitorSample):
            value = getattr(self, f.name)
            if isinstance(value, list):
                value = tuple(value)
            elif isinstance(value, set):
                value = frozenset(value)
            values[f.name] = value
        return MonitorSample(**values)
