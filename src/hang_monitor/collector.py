# src/hang_monitor/collector.py
"""System metrics collector backed by psutil.

Cumulative OS counters are turned into per-second rates against the values
seen on the previous call, so the first call of every rate returns 0.
Individual queries raise psutil.Error or OSError on failure; callers decide
how to degrade.

System-wide paging is read from swap traffic: pages_per_sec counts pages
swapped in and out, pages_input_per_sec only those swapped in. Neither is a
minor-fault rate; per-process fault rates come from the process table where
the platform reports them.
"""

import os
import time
from dataclasses import dataclass, field

import psutil
import structlog

from hang_monitor.sample import (
    DiskInstanceStat,
    FaultProcessInfo,
    IoProcessInfo,
    ProcessInfo,
    VolumeSpace,
)

log = structlog.get_logger()

# Below this many faults per second a process is not worth listing
MIN_FAULT_RATE = 10.0

# Read-only image filesystems report 100% used by construction
IMAGE_FILESYSTEMS = frozenset({"squashfs", "iso9660", "udf", "cramfs"})


@dataclass
class CpuStats:
    """Processor load and clock."""

    percent: float = 0.0
    clock_mhz: float = 0.0
    max_clock_mhz: float = 0.0
    logical_cores: int = 1


@dataclass
class SchedulerStats:
    """Scheduler and interrupt figures."""

    context_switches_per_sec: float = 0.0
    interrupt_time_percent: float = 0.0
    dpc_time_percent: float = 0.0
    processor_queue_length: int = 0


@dataclass
class MemoryStats:
    """Physical memory, commit and paging."""

    used_percent: float = 0.0
    available_bytes: int = 0
    total_bytes: int = 0
    committed_bytes: int = 0
    commit_limit: int = 0
    pages_input_per_sec: float = 0.0
    pages_per_sec: float = 0.0
    pool_nonpaged_bytes: int = 0


@dataclass
class DiskStats:
    """Aggregated and per-disk I/O latency."""

    queue_length: float = 0.0
    avg_read_ms: float = 0.0
    avg_write_ms: float = 0.0
    instances: list[DiskInstanceStat] = field(default_factory=list)


@dataclass
class ProcessStats:
    """Top-N process lists and system-wide totals."""

    top_cpu: list[ProcessInfo] = field(default_factory=list)
    top_memory: list[ProcessInfo] = field(default_factory=list)
    top_io: list[IoProcessInfo] = field(default_factory=list)
    top_faults: list[FaultProcessInfo] = field(default_factory=list)
    total_handles: int = 0
    total_threads: int = 0


class MetricsCollector:
    """Queries psutil and keeps the previous counters for rate computation."""

    def __init__(self, clock=time.monotonic) -> None:
        self._clock = clock
        self._prev: dict[str, tuple[float, float]] = {}
        self._prev_disks: dict[str, tuple[float, object]] = {}
        self._prev_faults: dict[int, tuple[float, int]] = {}

    def _rate(self, key: str, value: float) -> float:
        """Per-second rate of a cumulative counter since the previous call."""
        now = self._clock()
        prev = self._prev.get(key)
        self._prev[key] = (now, value)
        if prev is None:
            return 0.0
        prev_time, prev_value = prev
        elapsed = now - prev_time
        if elapsed <= 0 or value < prev_value:
            return 0.0
        return (value - prev_value) / elapsed

    def cpu(self) -> CpuStats:
        stats = CpuStats(
            percent=psutil.cpu_percent(interval=None),
            logical_cores=psutil.cpu_count(logical=True) or 1,
        )
        try:
            freq = psutil.cpu_freq()
        except (NotImplementedError, OSError):
            freq = None
        if freq is not None:
            stats.clock_mhz = freq.current
            stats.max_clock_mhz = freq.max
        return stats

    def scheduler(self) -> SchedulerStats:
        cpu_stats = psutil.cpu_stats()
        times = psutil.cpu_times_percent(interval=None)
        cores = psutil.cpu_count(logical=True) or 1
        load1, _, _ = psutil.getloadavg()
        return SchedulerStats(
            context_switches_per_sec=self._rate("ctx_switches", cpu_stats.ctx_switches),
            # Windows reports interrupt/dpc, Linux irq/softirq
            interrupt_time_percent=getattr(times, "interrupt", getattr(times, "irq", 0.0)),
            dpc_time_percent=getattr(times, "dpc", getattr(times, "softirq", 0.0)),
            processor_queue_length=max(0, round(load1 - cores)),
        )

    def memory(self) -> MemoryStats:
        vm = psutil.virtual_memory()
        swap = psutil.swap_memory()
        page_size = 4096
        pool = getattr(vm, "slab", None) or getattr(vm, "wired", None) or 0
        return MemoryStats(
            used_percent=vm.percent,
            available_bytes=vm.available,
            total_bytes=vm.total,
            committed_bytes=(vm.total - vm.available) + swap.used,
            commit_limit=vm.total + swap.total,
            pages_input_per_sec=self._rate("swap_in", swap.sin / page_size),
            pages_per_sec=self._rate("swap_io", (swap.sin + swap.sout) / page_size),
            pool_nonpaged_bytes=int(pool),
        )

    def disks(self) -> DiskStats:
        counters = psutil.disk_io_counters(perdisk=True) or {}
        now = self._clock()
        stats = DiskStats()
        previous = self._prev_disks
        self._prev_disks = {name: (now, c) for name, c in counters.items()}

        for name, current in counters.items():
            if name not in previous:
                continue
            prev_time, prev = previous[name]
            elapsed_ms = (now - prev_time) * 1000
            if elapsed_ms <= 0:
                continue
            reads = current.read_count - prev.read_count
            writes = current.write_count - prev.write_count
            read_ms = current.read_time - prev.read_time
            write_ms = current.write_time - prev.write_time
            busy_ms = getattr(current, "busy_time", 0) - getattr(prev, "busy_time", 0)
            instance = DiskInstanceStat(
                name=name,
                read_latency_ms=read_ms / reads if reads > 0 else 0.0,
                write_latency_ms=write_ms / writes if writes > 0 else 0.0,
                # Time spent in I/O per unit of wall time approximates the average queue depth
                queue_length=max(0.0, (read_ms + write_ms) / elapsed_ms),
                busy_percent=min(100.0, max(0.0, busy_ms / elapsed_ms * 100)),
            )
            stats.instances.append(instance)

        if stats.instances:
            stats.queue_length = sum(d.queue_length for d in stats.instances)
            stats.avg_read_ms = max(d.read_latency_ms for d in stats.instances)
            stats.avg_write_ms = max(d.write_latency_ms for d in stats.instances)
        return stats

    def volumes(self) -> list[VolumeSpace]:
        """Free space of every writable physical volume.

        Read-only and image mounts (snap packages, ISOs) are always full and are
        skipped, as are volumes that cannot be queried.
        """
        system_root = os.path.abspath(os.environ.get("SystemDrive", "") + os.sep)
        volumes = []
        seen = set()
        for part in psutil.disk_partitions(all=False):
            options = part.opts.split(",") if part.opts else []
            if part.fstype in IMAGE_FILESYSTEMS or "ro" in options or part.device in seen:
                continue
            try:
                usage = psutil.disk_usage(part.mountpoint)
            except OSError as e:
                log.debug("volume_query_failed", mountpoint=part.mountpoint, error=str(e))
                continue
            if usage.total <= 0:
                continue
            seen.add(part.device)
            volumes.append(
                VolumeSpace(
                    mountpoint=part.mountpoint,
                    total_bytes=usage.total,
                    free_bytes=usage.free,
                    is_system=os.path.abspath(part.mountpoint) == system_root,
                )
            )
        return volumes

    def network_mbps(self) -> float:
        counters = psutil.net_io_counters(pernic=True) or {}
        total = sum(
            c.bytes_sent + c.bytes_recv
            for nic, c in counters.items()
            if not (nic.startswith("lo") or "loopback" in nic.lower())
        )
        return round(self._rate("net_bytes", total) * 8 / 1_000_000, 1)

    def processes(self, top_n: int = 5) -> ProcessStats:
        handle_attr = "num_handles" if psutil.WINDOWS else "num_fds"
        attrs = ["pid", "name", "cpu_percent", "memory_info", "num_threads", handle_attr]
        if hasattr(psutil.Process, "io_counters"):
            attrs.append("io_counters")
        cores = psutil.cpu_count(logical=True) or 1
        now = self._clock()

        infos: list[ProcessInfo] = []
        io: list[IoProcessInfo] = []
        faults: list[FaultProcessInfo] = []
        current_faults: dict[int, tuple[float, int]] = {}
        stats = ProcessStats()

        for proc in psutil.process_iter(attrs):
            data = proc.info
            name = data.get("name") or f"pid-{data['pid']}"
            pid = data["pid"]
            handles = data.get(handle_attr) or 0
            threads = data.get("num_threads") or 0
            mem = data.get("memory_info")
            stats.total_handles += handles
            stats.total_threads += threads

            infos.append(
                ProcessInfo(
                    name=name,
                    pid=pid,
                    # psutil reports per-core percent; normalise to whole-machine
                    cpu_percent=min(100.0, (data.get("cpu_percent") or 0.0) / cores),
                    memory_bytes=mem.rss if mem else 0,
                    handle_count=handles,
                    thread_count=threads,
                )
            )

            counters = data.get("io_counters")
            if counters and (counters.read_bytes or counters.write_bytes):
                io.append(IoProcessInfo(name, pid, counters.read_bytes, counters.write_bytes))

            fault_count = getattr(mem, "num_page_faults", None) if mem else None
            if fault_count is not None:
                current_faults[pid] = (now, fault_count)
                prev = self._prev_faults.get(pid)
                if prev and now > prev[0] and fault_count > prev[1]:
                    per_sec = (fault_count - prev[1]) / (now - prev[0])
                    if per_sec > MIN_FAULT_RATE:
                        faults.append(FaultProcessInfo(name, pid, per_sec))

        self._prev_faults = current_faults

        stats.top_cpu = sorted(
            (p for p in infos if p.cpu_percent > 1), key=lambda p: p.cpu_percent, reverse=True
        )[:top_n]
        stats.top_memory = sorted(infos, key=lambda p: p.memory_bytes, reverse=True)[:top_n]
        stats.top_io = sorted(io, key=lambda p: p.total_bytes, reverse=True)[:top_n]
        stats.top_faults = sorted(faults, key=lambda p: p.page_faults_per_sec, reverse=True)[:top_n]
        log.debug("processes_collected", count=len(infos))
        return stats
