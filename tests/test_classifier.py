"""Tests for the ambient freeze classifier."""

import pytest

from hang_monitor.classifier import UNDETERMINED, FreezeClassifier
from hang_monitor.sample import FaultProcessInfo

from conftest import make_process, make_sample


@pytest.fixture
def classifier() -> FreezeClassifier:
    return FreezeClassifier()


class TestSystemCauses:
    """Causes read off the whole system come first."""

    def test_disk_latency_wins(self, classifier):
        result = classifier.classify("editor", make_sample(avg_disk_read_ms=150.0, cpu_percent=95))
        assert result.likely_cause == "I/O wait"
        assert result.process_name == "editor"

    def test_disk_queue(self, classifier):
        assert classifier.classify("editor", make_sample(disk_queue_length=5)).likely_cause == "I/O wait"

    def test_cpu_starvation(self, classifier):
        assert classifier.classify("editor", make_sample(cpu_percent=90)).likely_cause == "CPU starvation"

    def test_dpc(self, classifier):
        result = classifier.classify("editor", make_sample(dpc_time_percent=20))
        assert result.likely_cause == "Driver or interrupt latency"
        assert any("DPC" in e for e in result.evidence)

    def test_memory_pressure(self, classifier):
        result = classifier.classify("editor", make_sample(memory_pressure_index=80))
        assert result.likely_cause == "Memory pressure"

    def test_busy_but_unexplained(self, classifier):
        """A system that is neither saturated nor idle gives no verdict."""
        result = classifier.classify("editor", make_sample(cpu_percent=50))
        assert result.likely_cause == UNDETERMINED

    def test_evidence_always_has_system_readings(self, classifier):
        result = classifier.classify("editor", make_sample(cpu_percent=90))
        assert result.evidence[0] == "System CPU 90%"
        assert len(result.evidence) == 3


class TestInternalBlocking:
    """On an idle system the cause is looked for inside the process."""

    def test_thread_pool_starvation(self, classifier):
        sample = make_sample(top_cpu_processes=(make_process(name="editor", threads=150, cpu=1.0),))
        assert classifier.classify("editor", sample).likely_cause == "Thread pool starvation"

    def test_lock_contention(self, classifier):
        sample = make_sample(
            context_switches_per_sec=40000,
            top_cpu_processes=(make_process(name="editor", cpu=2.0),),
        )
        assert classifier.classify("editor", sample).likely_cause == "Lock contention"

    def test_paging_wait(self, classifier):
        sample = make_sample(
            top_cpu_processes=(make_process(name="editor", cpu=1.0),),
            top_fault_processes=(FaultProcessInfo(name="editor", pid=100, page_faults_per_sec=500),),
        )
        assert classifier.classify("editor", sample).likely_cause == "Paging wait"

    def test_elevated_dpc(self, classifier):
        sample = make_sample(dpc_time_percent=8)
        assert classifier.classify("editor", sample).likely_cause == "Elevated DPC"

    def test_scheduler_congestion(self, classifier):
        sample = make_sample(processor_queue_length=6)
        assert classifier.classify("editor", sample).likely_cause == "Scheduler congestion"

    def test_ui_thread_busy(self, classifier):
        sample = make_sample(top_cpu_processes=(make_process(name="Editor", cpu=20.0),))
        assert classifier.classify("editor", sample).likely_cause == "UI thread busy"

    def test_deadlock_fallback(self, classifier):
        result = classifier.classify("editor", make_sample())
        assert result.likely_cause == "internal blocking / deadlock-suspected"
        assert "Process CPU 0%, 0 threads" in result.evidence
