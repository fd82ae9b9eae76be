"""Tests for the monitoring session loop."""

import asyncio
import time
from unittest.mock import patch

import pytest

from hang_monitor.config import Config
from hang_monitor.engine import TickResult
from hang_monitor.monitor import Monitor, persist_run
from hang_monitor.report import MonitorReport

from conftest import BASE_TIME, make_event, make_sample


class FakeEngine:
    """Engine stand-in with a configurable tick time."""

    def __init__(self, delay: float = 0.0, error: Exception | None = None) -> None:
        self.delay = delay
        self.error = error
        self.calls = 0
        self.completed = 0

    def tick(self) -> TickResult:
        self.calls += 1
        time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self.completed += 1
        return TickResult(sample=make_sample(), overall_score=90)

    def build_report(self, start_time, end_time) -> MonitorReport:
        return MonitorReport(start_time=start_time, end_time=end_time, total_samples=self.completed)


@pytest.fixture(autouse=True)
def quiet_console():
    with patch("hang_monitor.logging._console"):
        yield


def make_config(interval: float, duration: float) -> Config:
    config = Config()
    config.monitor.interval = interval
    config.monitor.duration = duration
    return config


class TestMonitorLoop:
    """Tests for Monitor.run scheduling."""

    @pytest.mark.asyncio
    async def test_runs_until_duration(self):
        engine = FakeEngine()
        monitor = Monitor(make_config(0.05, 0.3), engine=engine)

        report = await asyncio.wait_for(monitor.run(), timeout=5.0)

        assert engine.calls >= 3
        assert monitor.state.ticks == engine.calls
        assert monitor.state.last_overall == 90
        assert monitor.state.running is False
        assert report.total_samples == engine.completed

    @pytest.mark.asyncio
    async def test_slow_tick_skips_slots(self):
        """A slot that comes due mid-tick is dropped, never queued."""
        engine = FakeEngine(delay=0.12)
        monitor = Monitor(make_config(0.05, 0.3), engine=engine)

        await asyncio.wait_for(monitor.run(), timeout=5.0)

        assert monitor.state.skipped >= 1
        # The last tick in flight at the deadline still completes
        assert monitor.state.ticks == engine.calls
        assert engine.calls < 6

    @pytest.mark.asyncio
    async def test_request_stop(self):
        engine = FakeEngine()
        monitor = Monitor(make_config(0.05, 60.0), engine=engine)
        asyncio.get_running_loop().call_later(0.15, monitor.request_stop)

        start = time.monotonic()
        await asyncio.wait_for(monitor.run(), timeout=5.0)
        assert time.monotonic() - start < 2.0

    @pytest.mark.asyncio
    async def test_failed_ticks_counted(self):
        engine = FakeEngine(error=RuntimeError("boom"))
        monitor = Monitor(make_config(0.05, 0.2), engine=engine)

        report = await asyncio.wait_for(monitor.run(), timeout=5.0)

        assert monitor.state.failed == engine.calls
        assert monitor.state.ticks == 0
        assert report.total_samples == 0


class TestPersistRun:
    """Tests for saving a session into the run history."""

    def _report(self, minutes: int, *events) -> MonitorReport:
        return MonitorReport(
            start_time=BASE_TIME,
            end_time=BASE_TIME.replace(minute=minutes),
            total_samples=10,
            events=list(events),
            health_score=80,
        )

    def test_first_run_has_no_diff(self, patched_config_paths):
        config = Config()
        diff = persist_run(self._report(31, make_event("CpuSpike")), config)
        assert diff.new == []
        assert diff.fixed == []
        assert len(list(config.runs_dir.glob("run_*.json"))) == 1

    def test_second_run_diffs_against_first(self, patched_config_paths):
        config = Config()
        persist_run(self._report(31, make_event("CpuSpike")), config)
        diff = persist_run(self._report(36, make_event("DiskLatency", severity="Critical")), config)
        assert diff.new == ["Events|DiskLatency"]
        assert diff.fixed == ["Events|CpuSpike"]
