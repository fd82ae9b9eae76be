"""Process snapshot capture for frozen processes.

A dump is a JSON document written from psutil: process identity, threads
with their procfs state, memory maps (loaded modules), open files and
connections. With the admin flag set, each thread's kernel stack is read from
/proc/<pid>/task/<tid>/stack as well. Files are named
freeze_{name}_{pid}_{YYYY-MM-DD_HH-MM-SS}.dmp and the directory is pruned to
the newest max_files.
"""

import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import psutil
import structlog

from hang_monitor.config import DEFAULT_FLAGGED_MODULES

log = structlog.get_logger()

PROC_ROOT = Path("/proc")
DUMP_FORMAT = "hang-monitor-snapshot/1"

_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass
class MiniDumpAnalysis:
    """Best-effort findings extracted from a written dump."""

    faulting_module: str | None = None
    exception_code: str | None = None
    faulting_thread_id: int | None = None
    loaded_modules: list[str] = field(default_factory=list)
    stack_traces: list[str] = field(default_factory=list)
    flagged_modules: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "faulting_module": self.faulting_module,
            "exception_code": self.exception_code,
            "faulting_thread_id": self.faulting_thread_id,
            "loaded_modules": self.loaded_modules,
            "stack_traces": self.stack_traces,
            "flagged_modules": self.flagged_modules,
        }


def dump_filename(name: str, pid: int, when: datetime) -> str:
    """Build the dump file name for a process at a point in time."""
    safe = _UNSAFE_NAME.sub("_", name).strip("_") or "process"
    return f"freeze_{safe}_{pid}_{when.strftime('%Y-%m-%d_%H-%M-%S')}.dmp"


def _read_text(path: Path) -> str | None:
    try:
        return path.read_text()
    except OSError:
        return None


class DumpCapture:
    """Writes and reads process snapshots in one directory."""

    def __init__(
        self,
        dumps_dir: Path,
        max_files: int = 10,
        flagged_modules: list[str] | None = None,
        admin: bool = False,
        proc_root: Path = PROC_ROOT,
    ) -> None:
        self.dumps_dir = dumps_dir
        self.max_files = max_files
        self.flagged_modules = (
            list(flagged_modules) if flagged_modules is not None else list(DEFAULT_FLAGGED_MODULES)
        )
        self.admin = admin
        self._proc_root = proc_root

    def create_dump(self, pid: int, name: str | None = None) -> Path | None:
        """Snapshot one process to disk.

        Single attempt. Returns the path, or None if the process is gone,
        access is denied or the file cannot be written.
        """
        try:
            process = psutil.Process(pid)
            name = name or process.name()
            snapshot = self._snapshot(process, name)
            self.dumps_dir.mkdir(parents=True, exist_ok=True)
            path = self.dumps_dir / dump_filename(name, pid, datetime.now())
            path.write_text(json.dumps(snapshot, indent=2))
        except (psutil.Error, OSError) as e:
            log.warning("dump_failed", pid=pid, error=str(e))
            return None

        log.info("dump_written", pid=pid, path=str(path))
        self._prune()
        return path

    def _snapshot(self, process: psutil.Process, name: str) -> dict:
        with process.oneshot():
            snapshot = {
                "format": DUMP_FORMAT,
                "captured_at": datetime.now().isoformat(),
                "pid": process.pid,
                "name": name,
                "status": process.status(),
                "create_time": process.create_time(),
                "memory_rss": process.memory_info().rss,
                "threads": [self._thread_entry(process.pid, t) for t in process.threads()],
            }
        snapshot["modules"] = self._optional(
            lambda: sorted({m.path for m in process.memory_maps() if m.path.startswith("/")})
        )
        snapshot["open_files"] = self._optional(lambda: [f.path for f in process.open_files()])
        snapshot["connections"] = self._optional(
            lambda: [
                {"status": c.status, "laddr": list(c.laddr) if c.laddr else None}
                for c in process.net_connections()
            ]
        )
        return snapshot

    def _optional(self, query) -> list:
        # Modules, files and sockets need more privilege than the rest
        try:
            return query()
        except (psutil.AccessDenied, NotImplementedError, AttributeError):
            return []

    def _thread_entry(self, pid: int, thread) -> dict:
        task_dir = self._proc_root / str(pid) / "task" / str(thread.id)
        stat = _read_text(task_dir / "stat") or ""
        state = stat[stat.rfind(")") + 2 :].split(" ", 1)[0] if ")" in stat else ""
        entry = {
            "id": thread.id,
            "user_time": thread.user_time,
            "system_time": thread.system_time,
            "state": state,
            "wchan": (_read_text(task_dir / "wchan") or "").strip(),
        }
        if self.admin:
            entry["stack"] = (_read_text(task_dir / "stack") or "").strip()
        return entry

    def _prune(self) -> None:
        dumps = sorted(self.dumps_dir.glob("freeze_*.dmp"), key=lambda p: p.stat().st_mtime)
        for old in dumps[: max(0, len(dumps) - self.max_files)]:
            try:
                old.unlink()
            except OSError as e:
                log.warning("dump_prune_failed", path=str(old), error=str(e))

    def analyze_dump(self, path: Path) -> MiniDumpAnalysis | None:
        """Extract modules, stacks and the stuck thread from a written dump.

        Returns None if the file cannot be read or is not a snapshot.
        """
        try:
            snapshot = json.loads(path.read_text())
        except (OSError, ValueError) as e:
            log.warning("dump_analysis_failed", path=str(path), error=str(e))
            return None
        if not isinstance(snapshot, dict) or snapshot.get("format") != DUMP_FORMAT:
            log.warning("dump_analysis_failed", path=str(path), error="not a snapshot")
            return None

        modules = [str(m) for m in snapshot.get("modules", [])]
        threads = snapshot.get("threads", [])
        stacks = [f"Thread {t.get('id')}:\n{t['stack']}" for t in threads if t.get("stack")]

        flagged = []
        for module in modules:
            base = Path(module).name.lower()
            if any(pattern.lower() in base for pattern in self.flagged_modules):
                flagged.append(module)

        stuck = next((t for t in threads if t.get("state") == "D"), None)
        analysis = MiniDumpAnalysis(
            loaded_modules=modules,
            stack_traces=stacks,
            flagged_modules=flagged,
        )
        if stuck is not None:
            analysis.faulting_thread_id = stuck.get("id")
            wchan = stuck.get("wchan")
            if wchan and wchan != "0":
                analysis.faulting_module = wchan
        return analysis
