"""Shared test fixtures for hang-monitor."""

from collections.abc import Iterator
from contextlib import ExitStack
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import patch

import psutil
import pytest

from hang_monitor.analyzers.base import SubAnalyzer
from hang_monitor.config import Config
from hang_monitor.health import HealthAssessment, HealthScore, MonitorEvent
from hang_monitor.introspection import (
    STATE_RUNNING,
    STATE_WAIT,
    ProcessStatus,
    ThreadState,
)
from hang_monitor.sample import MonitorSample, ProcessInfo

BASE_TIME = datetime(2026, 3, 2, 14, 30, 0)


def make_sample(offset: float = 0.0, **kwargs) -> MonitorSample:
    """Create a MonitorSample at BASE_TIME + offset seconds with quiet defaults."""
    defaults = {
        "timestamp": BASE_TIME + timedelta(seconds=offset),
        "cpu_percent": 10.0,
        "logical_cores": 4,
        "memory_used_percent": 40.0,
        "memory_available_bytes": 8 * 1024**3,
        "memory_total_bytes": 16 * 1024**3,
        "committed_bytes": 6 * 1024**3,
        "commit_limit": 20 * 1024**3,
    }
    defaults.update(kwargs)
    return MonitorSample(**defaults)


def make_history(count: int, **kwargs) -> list[MonitorSample]:
    """Create count samples 3s apart, oldest first, all with the same fields."""
    return [make_sample(offset=i * 3.0 - count * 3.0, **kwargs) for i in range(count)]


def make_process(
    name: str = "app",
    pid: int = 100,
    cpu: float = 0.0,
    memory: int = 100 * 1024 * 1024,
    handles: int = 200,
    threads: int = 10,
) -> ProcessInfo:
    """Create a ProcessInfo for top-N lists."""
    return ProcessInfo(
        name=name,
        pid=pid,
        cpu_percent=cpu,
        memory_bytes=memory,
        handle_count=handles,
        thread_count=threads,
    )


def make_threads(running: int = 0, **waiting: int) -> list[ThreadState]:
    """Create thread states: `running` running threads plus N per wait reason.

    make_threads(1, Executive=7, UserRequest=2) -> 10 threads.
    """
    threads = [ThreadState(thread_id=1000 + i, state=STATE_RUNNING) for i in range(running)]
    tid = 2000
    for reason, count in waiting.items():
        for _ in range(count):
            threads.append(ThreadState(thread_id=tid, state=STATE_WAIT, wait_reason=reason))
            tid += 1
    return threads


def make_event(event_type: str = "CpuSpike", offset: float = 0.0, **kwargs) -> MonitorEvent:
    """Create a MonitorEvent at BASE_TIME + offset seconds."""
    defaults = {
        "timestamp": BASE_TIME + timedelta(seconds=offset),
        "event_type": event_type,
        "description": f"{event_type} happened",
        "severity": "Warning",
        "tip": "",
    }
    defaults.update(kwargs)
    return MonitorEvent(**defaults)


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeIntrospector:
    """In-memory stand-in for ProcessIntrospector."""

    def __init__(self) -> None:
        self.statuses: list[ProcessStatus] = []
        self.thread_map: dict[int, list[ThreadState]] = {}
        self.dead: set[int] = set()
        self.poll_error: Exception | None = None
        self.thread_calls: list[int] = []

    def set_status(self, pid: int, name: str, responsive: bool) -> None:
        self.statuses = [s for s in self.statuses if s.pid != pid]
        self.statuses.append(ProcessStatus(pid=pid, name=name, responsive=responsive))

    def poll(self) -> list[ProcessStatus]:
        if self.poll_error is not None:
            raise self.poll_error
        return list(self.statuses)

    def threads(self, pid: int) -> list[ThreadState]:
        self.thread_calls.append(pid)
        if pid in self.dead or pid not in self.thread_map:
            raise psutil.NoSuchProcess(pid)
        return list(self.thread_map[pid])

    def alive(self, pid: int) -> bool:
        return pid not in self.dead


class FakeAnalyzer(SubAnalyzer):
    """Configurable sub-analyzer for engine tests."""

    def __init__(
        self,
        domain: str = "Fake",
        score: int = 90,
        fields: dict | None = None,
        events: list[str] | None = None,
        collect_error: Exception | None = None,
        analyze_error: Exception | None = None,
    ) -> None:
        self.domain = domain
        self.score = score
        self.fields = fields or {}
        self.events = events or []
        self.collect_error = collect_error
        self.analyze_error = analyze_error
        self.seen_history_lengths: list[int] = []
        self.seen_samples: list[MonitorSample] = []

    def collect(self, builder) -> None:
        if self.collect_error is not None:
            raise self.collect_error
        for name, value in self.fields.items():
            setattr(builder, name, value)

    def _analyze(self, current, history) -> HealthAssessment:
        self.seen_history_lengths.append(len(history))
        self.seen_samples.append(current)
        if self.analyze_error is not None:
            raise self.analyze_error
        return HealthAssessment(
            score=HealthScore(domain=self.domain, score=self.score, confidence=1.0),
            new_events=[
                MonitorEvent(
                    timestamp=current.timestamp,
                    event_type=event_type,
                    description=f"{event_type} detected",
                    severity="Warning",
                )
                for event_type in self.events
            ],
        )


def _patch_config_paths(stack: ExitStack, base_path: Path) -> None:
    """Point every Config path property at base_path."""
    # fmt: off
    stack.enter_context(patch.object(
        Config, "config_dir",
        new_callable=lambda: property(lambda self: base_path / "config")
    ))
    stack.enter_context(patch.object(
        Config, "data_dir",
        new_callable=lambda: property(lambda self: base_path / "data")
    ))
    stack.enter_context(patch.object(
        Config, "state_dir",
        new_callable=lambda: property(lambda self: base_path / "state")
    ))
    # fmt: on


@pytest.fixture
def patched_config_paths(tmp_path: Path) -> Iterator[Path]:
    """Patch Config paths to live under tmp_path; yields the base path."""
    with ExitStack() as stack:
        _patch_config_paths(stack, tmp_path)
        yield tmp_path


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def introspector() -> FakeIntrospector:
    return FakeIntrospector()
