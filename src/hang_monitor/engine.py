"""Per-tick orchestration of the health sub-analyzers.

One tick:
1. every sub-analyzer collects into a shared builder, which is frozen once
2. composite scores are derived from the raw sample
3. hang tracking lists unresponsive processes; each is classified and the
   long ones are investigated
4. every sub-analyzer scores the finished sample against history
5. events are merged into the session log
6. a trimmed copy of the sample joins the history

The engine is the only writer of history. Analyzers see a frozen tuple.
"""

import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime

import psutil
import structlog

from hang_monitor.analyzers.base import SubAnalyzer
from hang_monitor.classifier import FreezeClassification, FreezeClassifier
from hang_monitor.config import Config
from hang_monitor.events import EventLog
from hang_monitor.health import HealthAssessment, MonitorEvent, clamp
from hang_monitor.introspection import ProcessIntrospector
from hang_monitor.investigator import FreezeInvestigator, FreezeReport
from hang_monitor.report import MonitorReport, SessionStats
from hang_monitor.ringbuffer import SampleHistory
from hang_monitor.sample import HangingProcessInfo, MonitorSample, MonitorSampleBuilder

log = structlog.get_logger()


def compute_memory_pressure_index(sample: MonitorSample) -> int:
    """Memory pressure 0-100: commit ratio, hard paging and RAM use."""
    commit = (
        sample.committed_bytes / sample.commit_limit * 100 if sample.commit_limit > 0 else 0.0
    )
    paging = clamp(sample.pages_input_per_sec / 50.0)
    index = commit * 0.40 + paging * 0.35 + sample.memory_used_percent * 0.25
    return int(clamp(int(index)))


def compute_system_latency_score(sample: MonitorSample) -> int:
    """System latency 0-100: interrupt time, disk latency and run queue depth."""
    interrupts = clamp((sample.dpc_time_percent + sample.interrupt_time_percent) / 20.0 * 100)
    disk = clamp(sample.max_disk_latency_ms / 2.0)
    cores = sample.logical_cores
    queue = clamp(sample.processor_queue_length / (2.0 * cores) * 100) if cores > 0 else 0.0
    score = interrupts * 0.30 + disk * 0.35 + queue * 0.35
    return int(clamp(int(score)))


def overall_health(assessments: Sequence[HealthAssessment]) -> int:
    """Confidence-weighted mean of the domain scores; unknown domains carry no weight."""
    weight = sum(a.score.confidence for a in assessments)
    if weight <= 0:
        return 0
    return round(sum(a.score.score * a.score.confidence for a in assessments) / weight)


@dataclass
class TickResult:
    """Everything one tick produced."""

    sample: MonitorSample
    assessments: list[HealthAssessment] = field(default_factory=list)
    new_events: list[MonitorEvent] = field(default_factory=list)
    overall_score: int = 0


class HangTracker:
    """Tracks how long each process has been unresponsive.

    Keyed by (pid, name) so a recycled pid is a new process. A process first
    seen unresponsive starts its clock at that moment.
    """

    def __init__(self, liveness_threshold: float = 1.0, clock: Callable[[], float] = time.monotonic):
        self.liveness_threshold = liveness_threshold
        self._clock = clock
        self._last_responsive: dict[tuple[int, str], float] = {}

    def update(self, introspector: ProcessIntrospector) -> list[HangingProcessInfo]:
        now = self._clock()
        seen = set()
        hanging = []
        for status in introspector.poll():
            key = (status.pid, status.name)
            seen.add(key)
            if status.responsive:
                self._last_responsive[key] = now
                continue
            since = self._last_responsive.setdefault(key, now)
            hang_seconds = now - since
            if hang_seconds > self.liveness_threshold:
                hanging.append(
                    HangingProcessInfo(name=status.name, hang_seconds=hang_seconds, pid=status.pid)
                )
        for key in set(self._last_responsive) - seen:
            del self._last_responsive[key]
        return hanging


class HealthEngine:
    """Owns history, hang tracking and the session event log."""

    def __init__(
        self,
        analyzers: Sequence[SubAnalyzer],
        introspector: ProcessIntrospector,
        classifier: FreezeClassifier | None = None,
        investigator: FreezeInvestigator | None = None,
        config: Config | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or Config()
        self.analyzers = list(analyzers)
        self.introspector = introspector
        self.classifier = classifier or FreezeClassifier()
        self.investigator = investigator
        self._clock = clock

        self.history = SampleHistory(self.config.monitor.history_size)
        self.events = EventLog(self.config.monitor.max_events)
        self.stats = SessionStats()
        self.hangs = HangTracker(self.config.hangs.liveness_threshold, clock)
        self._last_dump: dict[tuple[int, str], float] = {}
        self._known_hangs: set[tuple[int, str]] = set()

    def tick(self) -> TickResult:
        """Run one full collect/derive/analyze cycle. Never raises for analyzer failures."""
        builder = MonitorSampleBuilder()
        for analyzer in self.analyzers:
            try:
                analyzer.collect(builder)
            except Exception as e:
                log.error("collect_failed", domain=analyzer.domain, error=str(e))
                builder.mark_degraded(analyzer.domain)
        raw = builder.build()

        hanging = self._track_hangs()
        sample = replace(
            raw,
            memory_pressure_index=compute_memory_pressure_index(raw),
            system_latency_score=compute_system_latency_score(raw),
            hanging_processes=tuple(hanging),
        )
        classifications, reports = self._diagnose(sample)
        sample = replace(
            sample,
            freeze_classifications=tuple(classifications),
            freeze_reports=tuple(reports),
        )

        history = self.history.freeze()
        assessments = [analyzer.analyze(sample, history) for analyzer in self.analyzers]
        raised = [event for a in assessments for event in a.new_events]
        new_events = self.events.record(raised, sample.timestamp)
        self.events.refresh_hangs(sample)

        overall = overall_health(assessments)
        self.stats.add(
            sample,
            overall,
            {a.score.domain: a.score.score for a in assessments if not a.score.is_unknown},
        )
        self.history.push(sample.trimmed())

        log.debug(
            "tick_complete",
            overall=overall,
            memory_pressure=sample.memory_pressure_index,
            latency=sample.system_latency_score,
            hanging=len(hanging),
            events=len(new_events),
        )
        return TickResult(
            sample=sample,
            assessments=assessments,
            new_events=new_events,
            overall_score=overall,
        )

    def _track_hangs(self) -> list[HangingProcessInfo]:
        try:
            hanging = self.hangs.update(self.introspector)
        except (psutil.Error, OSError) as e:
            log.warning("hang_poll_failed", error=str(e))
            return []

        current = {(h.pid, h.name) for h in hanging}
        for key in current - self._known_hangs:
            self.stats.freeze_count += 1
            log.info("hang_detected", pid=key[0], process=key[1])
        self._known_hangs = current
        for key in set(self._last_dump) - current:
            del self._last_dump[key]
        return hanging

    def _diagnose(
        self, sample: MonitorSample
    ) -> tuple[list[FreezeClassification], list[FreezeReport]]:
        classifications = []
        reports = []
        for hang in sample.hanging_processes:
            classifications.append(self.classifier.classify(hang.name, sample))
            if self.investigator is None or hang.hang_seconds < self.config.hangs.investigate_after:
                continue

            key = (hang.pid, hang.name)
            wants_dump = hang.hang_seconds > self.config.hangs.dump_after
            capture = wants_dump and self._dump_allowed(key)
            report = self.investigator.investigate(
                hang.name, hang.pid, hang.hang_seconds, sample, capture_dump=capture
            )
            if report is None:
                continue
            if report.mini_dump_path is not None:
                self._last_dump[key] = self._clock()
            reports.append(report)
        return classifications, reports

    def _dump_allowed(self, key: tuple[int, str]) -> bool:
        """One dump per hanging process per cooldown; other processes are unaffected."""
        last = self._last_dump.get(key)
        if last is None:
            return True
        return self._clock() - last >= self.config.hangs.dump_cooldown

    def build_report(self, start_time: datetime, end_time: datetime) -> MonitorReport:
        """Summarize the session so far."""
        return MonitorReport.from_stats(self.stats, self.events.events, start_time, end_time)


def create_engine(config: Config) -> HealthEngine:
    """Wire the engine to the real psutil-backed collaborators."""
    from hang_monitor.analyzers.cpu import CpuAnalyzer
    from hang_monitor.analyzers.disk import DiskAnalyzer
    from hang_monitor.analyzers.diskspace import DiskSpaceAnalyzer
    from hang_monitor.analyzers.memory import MemoryAnalyzer
    from hang_monitor.analyzers.network import NetworkAnalyzer
    from hang_monitor.analyzers.process import ProcessAnalyzer
    from hang_monitor.collector import MetricsCollector
    from hang_monitor.dumps import DumpCapture

    collector = MetricsCollector()
    introspector = ProcessIntrospector()
    dumps = DumpCapture(
        config.dumps_dir,
        max_files=config.dumps.max_files,
        flagged_modules=config.dumps.flagged_modules,
        admin=config.monitor.admin,
    )
    analyzers = [
        MemoryAnalyzer(collector),
        CpuAnalyzer(collector),
        DiskAnalyzer(collector),
        DiskSpaceAnalyzer(collector),
        NetworkAnalyzer(collector),
        ProcessAnalyzer(collector, top_n=config.monitor.top_n),
    ]
    investigator = FreezeInvestigator(introspector, dumps, dump_after=config.hangs.dump_after)
    return HealthEngine(analyzers, introspector, FreezeClassifier(), investigator, config)
