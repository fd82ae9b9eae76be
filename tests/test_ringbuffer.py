"""Tests for the sample history window."""

import pytest

from hang_monitor.ringbuffer import SampleHistory

from conftest import make_sample


def test_empty_history():
    history = SampleHistory(capacity=5)
    assert len(history) == 0
    assert history.freeze() == ()


def test_capacity_must_be_positive():
    with pytest.raises(ValueError, match="capacity"):
        SampleHistory(capacity=0)


def test_push_keeps_order():
    history = SampleHistory(capacity=5)
    samples = [make_sample(offset=i) for i in range(3)]
    for s in samples:
        history.push(s)
    assert history.freeze() == tuple(samples)


def test_oldest_dropped_when_full():
    history = SampleHistory(capacity=3)
    samples = [make_sample(offset=i) for i in range(5)]
    for s in samples:
        history.push(s)
    assert len(history) == 3
    assert history.freeze() == tuple(samples[2:])


def test_freeze_is_a_snapshot():
    """Later pushes do not change an already frozen view."""
    history = SampleHistory(capacity=3)
    history.push(make_sample(offset=0))
    frozen = history.freeze()
    history.push(make_sample(offset=1))
    assert len(frozen) == 1
