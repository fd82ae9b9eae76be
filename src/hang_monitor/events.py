"""Session event log with per-type deduplication.

Analyzers report a condition on every tick it holds. The log keeps one live
entry per event type, annotates it "(ongoing Ns)" while it repeats and
"(resolved after Ns)" once it stops. Hang events are per process: they are
kept individually and updated with the live hang duration instead.
"""

import re
from dataclasses import dataclass, replace
from datetime import datetime

import structlog

from hang_monitor.health import SEVERITY_INFO, MonitorEvent
from hang_monitor.sample import MonitorSample

log = structlog.get_logger()

HANG_EVENT = "Hang"
# Below this, a duration suffix is noise
MIN_ANNOTATED_SECONDS = 6
MIN_HANG_UPDATE_SECONDS = 3

_STATUS_SUFFIX = re.compile(r" \((ongoing|resolved after) \d+s\)$")


def strip_status_suffix(description: str) -> str:
    """Remove a trailing "(ongoing Ns)" or "(resolved after Ns)" annotation."""
    return _STATUS_SUFFIX.sub("", description)


@dataclass
class _Active:
    index: int
    first_fired: datetime
    seconds: float = 0.0


class EventLog:
    """Append-only event list, capped at max_events entries."""

    def __init__(self, max_events: int = 500) -> None:
        self.max_events = max_events
        self._events: list[MonitorEvent] = []
        self._active: dict[str, _Active] = {}
        self._hangs: dict[tuple[int, str], _Active] = {}

    def __len__(self) -> int:
        return len(self._events)

    @property
    def events(self) -> list[MonitorEvent]:
        """Copy of all events in order of first occurrence."""
        return list(self._events)

    def _append(self, event: MonitorEvent) -> int | None:
        if len(self._events) >= self.max_events:
            log.debug("event_dropped", event_type=event.event_type)
            return None
        self._events.append(event)
        return len(self._events) - 1

    def _annotate(self, index: int, first_fired: datetime, now: datetime, status: str) -> None:
        existing = self._events[index]
        base = strip_status_suffix(existing.description)
        seconds = int((now - first_fired).total_seconds())
        description = (
            f"{base} ({status} {seconds}s)" if seconds >= MIN_ANNOTATED_SECONDS else base
        )
        self._events[index] = replace(existing, description=description)

    def record(self, events: list[MonitorEvent], now: datetime) -> list[MonitorEvent]:
        """Merge one tick's analyzer events.

        Returns:
            Events that entered the log this tick.
        """
        added = []
        fired = set()
        for event in events:
            if event.event_type == HANG_EVENT:
                if self._append(event) is not None:
                    added.append(event)
                continue

            fired.add(event.event_type)
            active = self._active.get(event.event_type)
            if active is None:
                index = self._append(event)
                if index is not None:
                    self._active[event.event_type] = _Active(index, event.timestamp)
                    added.append(event)
            else:
                self._annotate(active.index, active.first_fired, now, "ongoing")

        for event_type in list(self._active):
            if event_type not in fired:
                active = self._active.pop(event_type)
                self._annotate(active.index, active.first_fired, now, "resolved after")
        return added

    def refresh_hangs(self, sample: MonitorSample) -> None:
        """Keep Hang events current with the live duration and best known cause."""
        causes = {
            c.process_name.lower(): f"Likely cause: {c.likely_cause}"
            for c in sample.freeze_classifications
        }
        for report in sample.freeze_reports:
            cause = report.likely_root_cause
            if report.mini_dump_path:
                cause += f" (dump: {report.mini_dump_path.rsplit('/', 1)[-1]})"
            causes[report.process_name.lower()] = cause

        hanging = set()
        for hang in sample.hanging_processes:
            key = (hang.pid, hang.name)
            hanging.add(key)
            if key not in self._hangs:
                index = self._find_hang_event(hang.pid)
                if index is None:
                    continue
                self._hangs[key] = _Active(index, sample.timestamp)
            active = self._hangs[key]
            active.seconds = hang.hang_seconds
            if hang.hang_seconds <= MIN_HANG_UPDATE_SECONDS:
                continue
            index = active.index
            cause = causes.get(hang.name.lower())
            suffix = f" -> {cause}" if cause else ""
            self._events[index] = replace(
                self._events[index],
                description=f"Process hang: {hang.name} (PID {hang.pid}) not responding "
                f"({hang.hang_seconds:.0f}s){suffix}",
            )

        for key in list(self._hangs):
            if key in hanging:
                continue
            active = self._hangs.pop(key)
            pid, name = key
            self._events[active.index] = replace(
                self._events[active.index],
                description=f"Process hang: {name} (PID {pid}) was not responding "
                f"({active.seconds:.0f}s, recovered)",
                severity=SEVERITY_INFO,
            )

    def _find_hang_event(self, pid: int) -> int | None:
        marker = f"(PID {pid})"
        for index in range(len(self._events) - 1, -1, -1):
            event = self._events[index]
            if (
                event.event_type == HANG_EVENT
                and marker in event.description
                and "was not responding" not in event.description
            ):
                return index
        return None
