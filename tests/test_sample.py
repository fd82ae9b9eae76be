"""Tests for the sample model and builder."""

import dataclasses

import pytest

from hang_monitor.health import HealthAssessment, HealthScore
from hang_monitor.sample import (
    DiskInstanceStat,
    HangingProcessInfo,
    MonitorSample,
    MonitorSampleBuilder,
)

from conftest import make_process, make_sample


class TestMonitorSampleBuilder:
    """Tests for the staged builder."""

    def test_unwritten_fields_default_to_zero_or_empty(self):
        """A builder nobody wrote to still builds a complete sample."""
        sample = MonitorSampleBuilder().build()
        assert sample.cpu_percent == 0.0
        assert sample.committed_bytes == 0
        assert sample.top_cpu_processes == ()
        assert sample.hanging_processes == ()
        assert sample.degraded_domains == frozenset()
        assert sample.memory_pressure_index == 0

    def test_build_converts_collections_to_immutable(self):
        builder = MonitorSampleBuilder()
        builder.top_cpu_processes = [make_process()]
        builder.mark_degraded("Disk")
        sample = builder.build()
        assert isinstance(sample.top_cpu_processes, tuple)
        assert sample.degraded_domains == frozenset({"Disk"})

    def test_build_twice_raises(self):
        """The builder freezes exactly once."""
        builder = MonitorSampleBuilder()
        builder.build()
        with pytest.raises(RuntimeError):
            builder.build()

    def test_builder_covers_every_sample_field(self):
        """Every MonitorSample field has a builder counterpart."""
        builder_fields = {f.name for f in dataclasses.fields(MonitorSampleBuilder)}
        for f in dataclasses.fields(MonitorSample):
            assert f.name in builder_fields


class TestMonitorSample:
    """Tests for MonitorSample behaviour."""

    def test_sample_is_immutable(self):
        sample = make_sample()
        with pytest.raises(dataclasses.FrozenInstanceError):
            sample.cpu_percent = 50.0  # type: ignore[misc]

    def test_max_disk_latency(self):
        sample = make_sample(avg_disk_read_ms=12.0, avg_disk_write_ms=40.0)
        assert sample.max_disk_latency_ms == 40.0

    def test_find_process_case_insensitive(self):
        proc = make_process(name="Editor", pid=42)
        sample = make_sample(top_memory_processes=(proc,))
        assert sample.find_process("editor") is proc
        assert sample.find_process("missing") is None

    def test_trimmed_drops_heavy_fields_keeps_scalars(self):
        sample = make_sample(
            cpu_percent=55.0,
            disk_instances=(DiskInstanceStat(name="sda"),),
            top_cpu_processes=(make_process(),),
            hanging_processes=(HangingProcessInfo(name="app", hang_seconds=3.0, pid=1),),
        )
        trimmed = sample.trimmed()
        assert trimmed.cpu_percent == 55.0
        assert trimmed.disk_instances == ()
        assert trimmed.top_cpu_processes == sample.top_cpu_processes
        assert trimmed.hanging_processes == sample.hanging_processes


class TestHealthScore:
    """Score and confidence are clamped on construction."""

    def test_score_clamped(self):
        assert HealthScore(domain="CPU", score=-40, confidence=1.0).score == 0
        assert HealthScore(domain="CPU", score=140, confidence=1.0).score == 100

    def test_confidence_clamped(self):
        assert HealthScore(domain="CPU", score=50, confidence=3.0).confidence == 1.0
        assert HealthScore(domain="CPU", score=50, confidence=-1.0).confidence == 0.0

    def test_unknown_assessment(self):
        assessment = HealthAssessment.unknown("Disk", "Disk metrics unavailable")
        assert assessment.score.confidence == 0.0
        assert assessment.score.is_unknown
        assert assessment.score.root_cause_hint == "Disk metrics unavailable"
        assert assessment.new_events == []

    def test_no_trend_data_is_not_unknown(self):
        """Zero confidence alone means no history yet, not a failed domain."""
        score = HealthScore(domain="CPU", score=100, confidence=0.0)
        assert not score.is_unknown
