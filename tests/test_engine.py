"""Tests for the per-tick health engine."""

from unittest.mock import MagicMock

import psutil
import pytest

from hang_monitor.analyzers.network import NetworkAnalyzer
from hang_monitor.collector import MetricsCollector
from hang_monitor.config import Config
from hang_monitor.engine import (
    HangTracker,
    HealthEngine,
    compute_memory_pressure_index,
    compute_system_latency_score,
    create_engine,
    overall_health,
)
from hang_monitor.health import HealthAssessment, HealthScore
from hang_monitor.investigator import FreezeInvestigator, FreezeReport

from conftest import BASE_TIME, FakeAnalyzer, make_sample


def assessment(score: int, confidence: float) -> HealthAssessment:
    return HealthAssessment(score=HealthScore(domain="X", score=score, confidence=confidence))


@pytest.fixture
def config() -> Config:
    config = Config()
    config.hangs.liveness_threshold = 1.0
    config.hangs.investigate_after = 5.0
    config.hangs.dump_after = 15.0
    config.hangs.dump_cooldown = 300.0
    return config


@pytest.fixture
def investigator() -> MagicMock:
    mock = MagicMock(spec=FreezeInvestigator)
    mock.investigate.return_value = None
    return mock


def make_engine(introspector, clock, config, analyzers=None, investigator=None) -> HealthEngine:
    return HealthEngine(
        analyzers if analyzers is not None else [FakeAnalyzer()],
        introspector,
        investigator=investigator,
        config=config,
        clock=clock,
    )


class TestComposites:
    """Tests for the derived composite scores."""

    def test_memory_pressure_known_value(self):
        # 30% commit * 0.40 + no paging + 40% used * 0.25
        assert compute_memory_pressure_index(make_sample()) == 22

    def test_memory_pressure_paging_term(self):
        sample = make_sample(pages_input_per_sec=5000, committed_bytes=0, memory_used_percent=0)
        assert compute_memory_pressure_index(sample) == 35

    def test_system_latency_known_value(self):
        sample = make_sample(
            dpc_time_percent=5.0,
            interrupt_time_percent=5.0,
            avg_disk_read_ms=100.0,
            processor_queue_length=4,
        )
        assert compute_system_latency_score(sample) == 50

    def test_quiet_system_has_no_latency(self):
        assert compute_system_latency_score(make_sample()) == 0

    def test_composites_bounded(self):
        extreme = make_sample(
            committed_bytes=10**15,
            commit_limit=1,
            pages_input_per_sec=10**9,
            memory_used_percent=100.0,
            dpc_time_percent=100.0,
            interrupt_time_percent=100.0,
            avg_disk_write_ms=10**6,
            processor_queue_length=10**6,
        )
        assert compute_memory_pressure_index(extreme) == 100
        assert compute_system_latency_score(extreme) == 100

    def test_zero_limits(self):
        sample = make_sample(commit_limit=0, logical_cores=0, processor_queue_length=10)
        assert 0 <= compute_memory_pressure_index(sample) <= 100
        assert 0 <= compute_system_latency_score(sample) <= 100


class TestOverallHealth:
    def test_confidence_weighted(self):
        assert overall_health([assessment(100, 1.0), assessment(40, 0.5)]) == 80

    def test_unknown_domains_ignored(self):
        assert overall_health([assessment(90, 1.0), assessment(0, 0.0)]) == 90

    def test_no_confidence_at_all(self):
        assert overall_health([assessment(0, 0.0)]) == 0


class TestHangTracker:
    """Tests for per-process unresponsiveness timing."""

    def test_threshold(self, introspector, clock):
        tracker = HangTracker(liveness_threshold=1.0, clock=clock)
        introspector.set_status(42, "editor", responsive=False)
        assert tracker.update(introspector) == []

        clock.advance(1.5)
        hanging = tracker.update(introspector)
        assert len(hanging) == 1
        assert hanging[0].pid == 42
        assert hanging[0].hang_seconds == pytest.approx(1.5)

    def test_recovery_resets(self, introspector, clock):
        tracker = HangTracker(clock=clock)
        introspector.set_status(42, "editor", responsive=False)
        tracker.update(introspector)
        clock.advance(3)
        introspector.set_status(42, "editor", responsive=True)
        assert tracker.update(introspector) == []

        introspector.set_status(42, "editor", responsive=False)
        clock.advance(0.5)
        assert tracker.update(introspector) == []

    def test_recycled_pid_is_a_new_process(self, introspector, clock):
        tracker = HangTracker(clock=clock)
        introspector.set_status(42, "editor", responsive=False)
        tracker.update(introspector)
        clock.advance(5)
        introspector.set_status(42, "compiler", responsive=False)
        assert tracker.update(introspector) == []


class TestHealthEngine:
    """Tests for HealthEngine.tick."""

    def test_tick_runs_every_analyzer(self, introspector, clock, config):
        cpu = FakeAnalyzer(domain="CPU", score=80, fields={"cpu_percent": 55.0})
        disk = FakeAnalyzer(domain="Disk", score=100)
        engine = make_engine(introspector, clock, config, [cpu, disk])

        result = engine.tick()
        assert result.sample.cpu_percent == 55.0
        assert [a.score.domain for a in result.assessments] == ["CPU", "Disk"]
        assert result.overall_score == 90
        assert disk.seen_samples[0] is result.sample

    def test_first_tick_domains_count_in_stats(self, introspector, clock, config):
        """A domain with no history yet is scored, not treated as unavailable."""
        collector = MagicMock(spec=MetricsCollector)
        collector.network_mbps.return_value = 2.0
        engine = make_engine(introspector, clock, config, [NetworkAnalyzer(collector)])

        result = engine.tick()
        network = result.assessments[0].score
        assert network.confidence == 0.0
        assert not network.is_unknown
        assert "Network" in engine.stats.domain_scores

    def test_analyzers_see_history_before_current(self, introspector, clock, config):
        config.monitor.history_size = 3
        analyzer = FakeAnalyzer()
        engine = make_engine(introspector, clock, config, [analyzer])
        for _ in range(5):
            engine.tick()
        assert analyzer.seen_history_lengths == [0, 1, 2, 3, 3]
        assert len(engine.history) == 3

    def test_collect_failure_degrades_domain(self, introspector, clock, config):
        broken = FakeAnalyzer(domain="Disk", collect_error=RuntimeError("counter missing"))
        healthy = FakeAnalyzer(domain="CPU", fields={"cpu_percent": 20.0})
        engine = make_engine(introspector, clock, config, [broken, healthy])

        result = engine.tick()
        assert "Disk" in result.sample.degraded_domains
        assert result.sample.cpu_percent == 20.0
        disk = result.assessments[0]
        assert disk.score.is_unknown
        assert result.overall_score == 90

    def test_events_deduplicated_across_ticks(self, introspector, clock, config):
        engine = make_engine(introspector, clock, config, [FakeAnalyzer(events=["CpuSpike"])])
        assert len(engine.tick().new_events) == 1
        assert engine.tick().new_events == []
        assert len(engine.events) == 1

    def test_composites_on_sample(self, introspector, clock, config):
        analyzer = FakeAnalyzer(
            fields={"committed_bytes": 6 * 1024**3, "commit_limit": 20 * 1024**3,
                    "memory_used_percent": 40.0}
        )
        result = make_engine(introspector, clock, config, [analyzer]).tick()
        assert result.sample.memory_pressure_index == 22

    def test_history_is_trimmed(self, introspector, clock, config):
        from hang_monitor.sample import IoProcessInfo

        analyzer = FakeAnalyzer(fields={"top_io_processes": [IoProcessInfo("app", 1, 10, 10)]})
        engine = make_engine(introspector, clock, config, [analyzer])
        result = engine.tick()
        assert result.sample.top_io_processes
        assert engine.history.freeze()[-1].top_io_processes == ()


class TestHangHandling:
    """Hang classification, investigation and dumps inside a tick."""

    def _hang_for(self, engine, introspector, clock, seconds: float):
        introspector.set_status(42, "editor", responsive=False)
        engine.tick()
        clock.advance(seconds)
        return engine.tick()

    def test_hang_is_classified(self, introspector, clock, config, investigator):
        engine = make_engine(introspector, clock, config, investigator=investigator)
        result = self._hang_for(engine, introspector, clock, 2.0)
        assert result.sample.hanging_processes[0].name == "editor"
        assert result.sample.freeze_classifications[0].process_name == "editor"
        investigator.investigate.assert_not_called()

    def test_investigation_threshold(self, introspector, clock, config, investigator):
        engine = make_engine(introspector, clock, config, investigator=investigator)
        self._hang_for(engine, introspector, clock, 4.9)
        investigator.investigate.assert_not_called()

        clock.now = 1005.0
        engine.tick()
        investigator.investigate.assert_called_once()
        args, kwargs = investigator.investigate.call_args
        assert args[:2] == ("editor", 42)
        assert kwargs["capture_dump"] is False

    def test_report_lands_on_sample(self, introspector, clock, config, investigator):
        report = FreezeReport("editor", 42, 6.0, total_threads=3, running_threads=0)
        investigator.investigate.return_value = report
        engine = make_engine(introspector, clock, config, investigator=investigator)
        result = self._hang_for(engine, introspector, clock, 6.0)
        assert result.sample.freeze_reports == (report,)

    def _dumping(self, investigator, written: bool = True):
        """Make the investigator report a dump file whenever one is requested."""

        def investigate(name, pid, seconds, sample, capture_dump=False):
            path = f"/tmp/freeze_{name}_{pid}.dmp" if capture_dump and written else None
            return FreezeReport(
                name, pid, seconds, total_threads=1, running_threads=0, mini_dump_path=path
            )

        investigator.investigate.side_effect = investigate

    def _captures(self, investigator) -> dict[int, bool]:
        return {
            call.args[1]: call.kwargs["capture_dump"]
            for call in investigator.investigate.call_args_list
        }

    def test_dump_cooldown(self, introspector, clock, config, investigator):
        self._dumping(investigator)
        engine = make_engine(introspector, clock, config, investigator=investigator)
        self._hang_for(engine, introspector, clock, 16.0)
        assert investigator.investigate.call_args.kwargs["capture_dump"] is True

        clock.advance(3)
        engine.tick()
        assert investigator.investigate.call_args.kwargs["capture_dump"] is False

        clock.advance(300)
        engine.tick()
        assert investigator.investigate.call_args.kwargs["capture_dump"] is True

    def test_concurrent_hangs_each_get_a_dump(self, introspector, clock, config, investigator):
        self._dumping(investigator)
        introspector.set_status(43, "player", responsive=False)
        engine = make_engine(introspector, clock, config, investigator=investigator)
        result = self._hang_for(engine, introspector, clock, 16.0)

        assert self._captures(investigator) == {42: True, 43: True}
        assert {r.mini_dump_path for r in result.sample.freeze_reports} == {
            "/tmp/freeze_editor_42.dmp",
            "/tmp/freeze_player_43.dmp",
        }

    def test_cooldown_of_one_process_spares_another(
        self, introspector, clock, config, investigator
    ):
        self._dumping(investigator)
        engine = make_engine(introspector, clock, config, investigator=investigator)
        self._hang_for(engine, introspector, clock, 16.0)

        introspector.set_status(43, "player", responsive=False)
        engine.tick()
        clock.advance(16)
        investigator.investigate.reset_mock()
        engine.tick()
        assert self._captures(investigator) == {42: False, 43: True}

    def test_failed_dump_does_not_start_cooldown(
        self, introspector, clock, config, investigator
    ):
        self._dumping(investigator, written=False)
        engine = make_engine(introspector, clock, config, investigator=investigator)
        self._hang_for(engine, introspector, clock, 16.0)

        clock.advance(3)
        engine.tick()
        assert investigator.investigate.call_args.kwargs["capture_dump"] is True

    def test_recovery_clears_cooldown(self, introspector, clock, config, investigator):
        self._dumping(investigator)
        engine = make_engine(introspector, clock, config, investigator=investigator)
        self._hang_for(engine, introspector, clock, 16.0)

        introspector.set_status(42, "editor", responsive=True)
        engine.tick()
        self._hang_for(engine, introspector, clock, 16.0)
        assert investigator.investigate.call_args.kwargs["capture_dump"] is True

    def test_freeze_count_counts_episodes(self, introspector, clock, config):
        engine = make_engine(introspector, clock, config)
        self._hang_for(engine, introspector, clock, 2.0)
        clock.advance(3)
        engine.tick()
        assert engine.stats.freeze_count == 1

        introspector.set_status(42, "editor", responsive=True)
        engine.tick()
        self._hang_for(engine, introspector, clock, 2.0)
        assert engine.stats.freeze_count == 2

    def test_poll_failure_means_no_hangs(self, introspector, clock, config):
        introspector.poll_error = psutil.AccessDenied()
        result = make_engine(introspector, clock, config).tick()
        assert result.sample.hanging_processes == ()

    def test_build_report(self, introspector, clock, config):
        engine = make_engine(introspector, clock, config, [FakeAnalyzer(score=70)])
        engine.tick()
        engine.tick()
        report = engine.build_report(BASE_TIME, BASE_TIME)
        assert report.total_samples == 2
        assert report.health_score == 70
        assert report.worst_domain_scores == {"Fake": 70}


def test_create_engine_registers_every_domain(patched_config_paths):
    engine = create_engine(Config())
    assert [a.domain for a in engine.analyzers] == [
        "Memory",
        "CPU",
        "Disk",
        "DiskSpace",
        "Network",
        "Process",
    ]
