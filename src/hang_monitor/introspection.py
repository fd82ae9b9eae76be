# src/hang_monitor/introspection.py
"""Process responsiveness and per-thread wait state.

Responsiveness and thread lists come from psutil. Per-thread run state and
wait channel come from procfs where it exists; elsewhere every thread is
reported with state "unknown".
"""

from dataclasses import dataclass
from pathlib import Path

import psutil
import structlog

log = structlog.get_logger()

PROC_ROOT = Path("/proc")

STATE_RUNNING = "running"
STATE_WAIT = "wait"
STATE_UNKNOWN = "unknown"

# Wait reason vocabulary shared with the root-cause rule table
EXECUTIVE = "Executive"
PAGE_IN = "PageIn"
FREE_PAGE = "FreePage"
VIRTUAL_MEMORY = "VirtualMemory"
USER_REQUEST = "UserRequest"
EXECUTION_DELAY = "ExecutionDelay"
SUSPENDED = "Suspended"
UNKNOWN = "Unknown"

# Kernel wait channel fragments, checked in order; first match wins
WCHAN_REASONS: list[tuple[str, str]] = [
    ("futex", EXECUTIVE),
    ("mutex", EXECUTIVE),
    ("rwsem", EXECUTIVE),
    ("lock", EXECUTIVE),
    ("filemap", PAGE_IN),
    ("folio", PAGE_IN),
    ("wait_on_page", PAGE_IN),
    ("swap", PAGE_IN),
    ("alloc_pages", FREE_PAGE),
    ("compact", FREE_PAGE),
    ("reclaim", FREE_PAGE),
    ("shrink", FREE_PAGE),
    ("mmap", VIRTUAL_MEMORY),
    ("page_fault", VIRTUAL_MEMORY),
    ("vm_", VIRTUAL_MEMORY),
    ("nanosleep", EXECUTION_DELAY),
    ("hrtimer", EXECUTION_DELAY),
    ("poll", USER_REQUEST),
    ("select", USER_REQUEST),
    ("pipe", USER_REQUEST),
    ("tty", USER_REQUEST),
    ("sk_wait", USER_REQUEST),
    ("unix_stream", USER_REQUEST),
    ("wait_woken", USER_REQUEST),
    ("io_schedule", USER_REQUEST),
]

UNRESPONSIVE_STATUSES = frozenset({psutil.STATUS_DISK_SLEEP, psutil.STATUS_STOPPED})


@dataclass(frozen=True)
class ProcessStatus:
    """Responsiveness of one process at poll time."""

    pid: int
    name: str
    responsive: bool


@dataclass(frozen=True)
class ThreadState:
    """Run state of one thread; wait_reason is set only for waiting threads."""

    thread_id: int
    state: str
    wait_reason: str | None = None


def wait_reason_for(state_letter: str, wchan: str) -> str | None:
    """Map a procfs thread state letter and wait channel to a wait reason.

    Returns None for running threads.
    """
    if state_letter == "R":
        return None
    if state_letter in ("T", "t"):
        return SUSPENDED
    channel = wchan.lower()
    if channel and channel != "0":
        for fragment, reason in WCHAN_REASONS:
            if fragment in channel:
                return reason
    if state_letter == "D":
        # Uninterruptible sleep with no recognised channel is almost always I/O
        return PAGE_IN
    return UNKNOWN


class ProcessIntrospector:
    """Inspects live processes and their threads."""

    def __init__(self, proc_root: Path = PROC_ROOT) -> None:
        self._proc_root = proc_root

    def poll(self) -> list[ProcessStatus]:
        """Report responsiveness for every live, non-zombie process."""
        statuses = []
        for proc in psutil.process_iter(["pid", "name", "status"]):
            status = proc.info.get("status")
            if status is None or status == psutil.STATUS_ZOMBIE:
                continue
            statuses.append(
                ProcessStatus(
                    pid=proc.info["pid"],
                    name=proc.info.get("name") or f"pid-{proc.info['pid']}",
                    responsive=status not in UNRESPONSIVE_STATUSES,
                )
            )
        return statuses

    def threads(self, pid: int) -> list[ThreadState]:
        """Enumerate the threads of pid with their run state.

        Raises:
            psutil.NoSuchProcess: If the process is gone.
            psutil.AccessDenied: If the process cannot be inspected.
        """
        process = psutil.Process(pid)
        thread_ids = [t.id for t in process.threads()]
        return [self._thread_state(pid, tid) for tid in thread_ids]

    def _thread_state(self, pid: int, tid: int) -> ThreadState:
        task_dir = self._proc_root / str(pid) / "task" / str(tid)
        try:
            stat = (task_dir / "stat").read_text()
        except FileNotFoundError:
            # Thread exited between listing and reading; the process may be gone too
            if not psutil.pid_exists(pid):
                raise psutil.NoSuchProcess(pid) from None
            return ThreadState(thread_id=tid, state=STATE_UNKNOWN)
        except OSError:
            return ThreadState(thread_id=tid, state=STATE_UNKNOWN)

        # comm may contain spaces and parentheses; the state follows the last ')'
        state_letter = stat[stat.rfind(")") + 2 :].split(" ", 1)[0]
        if state_letter == "R":
            return ThreadState(thread_id=tid, state=STATE_RUNNING)

        try:
            wchan = (task_dir / "wchan").read_text().strip()
        except OSError:
            wchan = ""
        return ThreadState(
            thread_id=tid,
            state=STATE_WAIT,
            wait_reason=wait_reason_for(state_letter, wchan),
        )

    def alive(self, pid: int) -> bool:
        """True while pid names a live process."""
        return psutil.pid_exists(pid)
