"""Monitoring session loop for hang-monitor."""

import asyncio
import signal
from dataclasses import dataclass
from datetime import datetime

import structlog

from hang_monitor import logging as console
from hang_monitor.config import Config
from hang_monitor.engine import HealthEngine, TickResult, create_engine
from hang_monitor.report import MonitorReport
from hang_monitor.runlog import RunDiff, diff_runs, load_runs, report_to_runlog, save_run

log = structlog.get_logger()


@dataclass
class MonitorState:
    """Runtime state of one session."""

    running: bool = False
    ticks: int = 0
    skipped: int = 0
    failed: int = 0
    last_overall: int | None = None


class Monitor:
    """Drives the engine on a fixed interval for a fixed duration.

    Ticks run in a worker thread because psutil and procfs calls block.
    At most one tick is in flight; a slot that comes due while the previous
    tick is still running is skipped, not queued.
    """

    def __init__(self, config: Config, engine: HealthEngine | None = None) -> None:
        self.config = config
        self.engine = engine or create_engine(config)
        self.state = MonitorState()
        self._shutdown_event = asyncio.Event()
        self._tick_task: asyncio.Task | None = None

    def request_stop(self) -> None:
        """Stop scheduling ticks; an in-flight tick still completes."""
        self._shutdown_event.set()

    def _handle_signal(self, sig: signal.Signals) -> None:
        log.info("signal_received", signal=sig.name)
        console.signal_received(sig.name)
        console.monitor_stopping()
        self.request_stop()

    async def run(self) -> MonitorReport:
        """Run the session and return its report."""
        loop = asyncio.get_running_loop()
        installed = []
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, lambda s=sig: self._handle_signal(s))
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                # Not available off the main thread or on some platforms
                log.debug("signal_handler_unavailable", signal=sig.name)

        start_time = datetime.now()
        self.state.running = True
        log.info(
            "monitor_started",
            interval=self.config.monitor.interval,
            duration=self.config.monitor.duration,
            admin=self.config.monitor.admin,
        )
        try:
            await self._main_loop()
        finally:
            if self._tick_task is not None:
                await self._finish_tick(self._tick_task)
                self._tick_task = None
            for sig in installed:
                loop.remove_signal_handler(sig)
            self.state.running = False

        end_time = datetime.now()
        log.info(
            "monitor_stopped",
            ticks=self.state.ticks,
            skipped=self.state.skipped,
            failed=self.state.failed,
        )
        return self.engine.build_report(start_time, end_time)

    async def _main_loop(self) -> None:
        """Schedule ticks until the session duration elapses or a stop is requested.

        Slots are computed from the start time, so a slow tick does not
        shift later slots.
        """
        loop = asyncio.get_running_loop()
        interval = self.config.monitor.interval
        started = loop.time()
        deadline = started + self.config.monitor.duration
        next_slot = started

        while not self._shutdown_event.is_set():
            try:
                if loop.time() >= deadline:
                    break

                if self._tick_task is not None and not self._tick_task.done():
                    self.state.skipped += 1
                    log.info("tick_skipped", ticks=self.state.ticks)
                    console.tick_skipped()
                else:
                    if self._tick_task is not None:
                        await self._finish_tick(self._tick_task)
                    self._tick_task = asyncio.create_task(asyncio.to_thread(self.engine.tick))

                next_slot += interval
                sleep_time = min(next_slot, deadline) - loop.time()
                if sleep_time > 0:
                    try:
                        await asyncio.wait_for(self._shutdown_event.wait(), timeout=sleep_time)
                        break
                    except asyncio.TimeoutError:
                        pass

            except asyncio.CancelledError:
                log.info("monitor_cancelled")
                break

    async def _finish_tick(self, task: asyncio.Task) -> None:
        try:
            result = await task
        except Exception as e:
            self.state.failed += 1
            log.error("tick_failed", error=str(e))
            console.sample_failed(str(e))
            return
        self.state.ticks += 1
        self._report_tick(result)

    def _report_tick(self, result: TickResult) -> None:
        self.state.last_overall = result.overall_score
        sample = result.sample
        console.tick_summary(
            result.overall_score,
            sample.memory_pressure_index,
            sample.system_latency_score,
            self.config.bands,
        )
        for event in result.new_events:
            console.event_raised(event)
        causes = {c.process_name: c.likely_cause for c in sample.freeze_classifications}
        for hang in sample.hanging_processes:
            console.hang_detected(hang.name, hang.pid, hang.hang_seconds, causes.get(hang.name, ""))
        for report in sample.freeze_reports:
            console.freeze_report(report)
        for assessment in result.assessments:
            if assessment.score.is_unknown:
                log.info(
                    "domain_unknown",
                    domain=assessment.score.domain,
                    hint=assessment.score.root_cause_hint,
                )


def persist_run(report: MonitorReport, config: Config) -> RunDiff:
    """Save the session to the run history and diff it against the previous run."""
    previous_runs = load_runs(config.runs_dir, limit=1)
    previous = previous_runs[-1] if previous_runs else None
    run = report_to_runlog(report, config.bands)
    path = save_run(run, config.runs_dir, config.history.max_runs)
    console.run_saved(str(path))
    return diff_runs(run, previous)


async def run_monitor(config: Config | None = None) -> MonitorReport:
    """Run one monitoring session, then write its run log.

    Args:
        config: Optional config, loads from file if not provided
    """
    if config is None:
        config = Config.load()

    console.configure(config)
    monitor = Monitor(config)
    console.monitor_started(
        config.monitor.interval, config.monitor.duration, config.monitor.admin
    )
    try:
        report = await monitor.run()
    except Exception as e:
        log.exception("monitor_crashed", error=str(e))
        raise

    console.monitor_stopped(report.total_samples)
    console.session_summary(report)
    diff = persist_run(report, config)
    console.run_diff(diff.new, diff.fixed)
    return report
