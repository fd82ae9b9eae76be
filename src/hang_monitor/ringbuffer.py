"""Sliding window of recent samples.

60 samples at the 3s default interval covers about three minutes. The engine
is the only writer; analyzers receive a frozen tuple, oldest first.
"""

from collections import deque

from hang_monitor.sample import MonitorSample


class SampleHistory:
    """Bounded history; the oldest sample is discarded first."""

    def __init__(self, capacity: int = 60) -> None:
        if capacity < 1:
            raise ValueError(f"history capacity must be >= 1, got {capacity}")
        self._samples: deque[MonitorSample] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._samples)

    def push(self, sample: MonitorSample) -> None:
        """Append a sample, dropping the oldest once full."""
        self._samples.append(sample)

    def freeze(self) -> tuple[MonitorSample, ...]:
        """Immutable oldest-first copy for analyzers and observers."""
        return tuple(self._samples)
