"""Per-run history logs and the new/fixed diff between runs.

Each finished session is saved as runs_dir/run_<YYYY-MM-DD_HH-MM-SS>.json.
Only the newest max_runs files are kept.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import structlog

from hang_monitor.config import BandsConfig
from hang_monitor.events import strip_status_suffix
from hang_monitor.health import SEVERITY_CRITICAL, SEVERITY_OK, SEVERITY_WARNING
from hang_monitor.report import MonitorReport

log = structlog.get_logger()

ISSUE_SEVERITIES = frozenset({SEVERITY_WARNING, SEVERITY_CRITICAL})
_SEVERITY_RANK = {SEVERITY_OK: 0, "Info": 1, SEVERITY_WARNING: 2, SEVERITY_CRITICAL: 3}


@dataclass
class ResultLog:
    """One check outcome within a run."""

    category: str
    check_name: str
    description: str
    severity: str
    recommendation: str | None = None

    @property
    def key(self) -> str:
        return f"{self.category}|{self.check_name}"

    @property
    def is_issue(self) -> bool:
        return self.severity in ISSUE_SEVERITIES

    def to_dict(self) -> dict:
        return {
            "category": self.category,
            "check_name": self.check_name,
            "description": self.description,
            "severity": self.severity,
            "recommendation": self.recommendation,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ResultLog":
        return cls(
            category=data["category"],
            check_name=data["check_name"],
            description=data.get("description", ""),
            severity=data.get("severity", SEVERITY_OK),
            recommendation=data.get("recommendation"),
        )


@dataclass
class RunLog:
    """Summary of one monitoring run."""

    timestamp: datetime
    health_score: int
    critical_count: int = 0
    warning_count: int = 0
    ok_count: int = 0
    results: list[ResultLog] = field(default_factory=list)

    @classmethod
    def from_results(
        cls, timestamp: datetime, health_score: int, results: list[ResultLog]
    ) -> "RunLog":
        return cls(
            timestamp=timestamp,
            health_score=health_score,
            critical_count=sum(1 for r in results if r.severity == SEVERITY_CRITICAL),
            warning_count=sum(1 for r in results if r.severity == SEVERITY_WARNING),
            ok_count=sum(1 for r in results if r.severity == SEVERITY_OK),
            results=results,
        )

    def issue_keys(self) -> set[str]:
        return {r.key for r in self.results if r.is_issue}

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "health_score": self.health_score,
            "critical_count": self.critical_count,
            "warning_count": self.warning_count,
            "ok_count": self.ok_count,
            "results": [r.to_dict() for r in self.results],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RunLog":
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            health_score=int(data.get("health_score", 0)),
            critical_count=int(data.get("critical_count", 0)),
            warning_count=int(data.get("warning_count", 0)),
            ok_count=int(data.get("ok_count", 0)),
            results=[ResultLog.from_dict(r) for r in data.get("results", [])],
        )


@dataclass
class RunDiff:
    """Issue keys ("Category|CheckName") that appeared or cleared since the previous run."""

    new: list[str] = field(default_factory=list)
    fixed: list[str] = field(default_factory=list)


def diff_runs(current: RunLog, previous: RunLog | None) -> RunDiff:
    """Compare two runs.

    An issue is a Warning or Critical result. Without a previous run nothing
    is new or fixed.
    """
    if previous is None:
        return RunDiff()
    now = current.issue_keys()
    before = previous.issue_keys()
    return RunDiff(new=sorted(now - before), fixed=sorted(before - now))


def run_filename(timestamp: datetime) -> str:
    return f"run_{timestamp.strftime('%Y-%m-%d_%H-%M-%S')}.json"


def save_run(run: RunLog, runs_dir: Path, max_runs: int = 10) -> Path:
    """Write a run log and prune the directory to the newest max_runs."""
    runs_dir.mkdir(parents=True, exist_ok=True)
    path = runs_dir / run_filename(run.timestamp)
    path.write_text(json.dumps(run.to_dict(), indent=2))
    log.info("run_saved", path=str(path), health_score=run.health_score)
    prune_runs(runs_dir, max_runs)
    return path


def prune_runs(runs_dir: Path, max_runs: int) -> int:
    """Delete all but the newest max_runs run files. Returns the number deleted."""
    files = sorted(runs_dir.glob("run_*.json"))
    stale = files[: max(0, len(files) - max_runs)]
    for path in stale:
        path.unlink()
    if stale:
        log.info("runs_pruned", deleted=len(stale))
    return len(stale)


def load_runs(runs_dir: Path, limit: int = 10) -> list[RunLog]:
    """Load the newest runs, oldest first. Unreadable files are skipped."""
    if not runs_dir.exists():
        return []
    runs = []
    for path in sorted(runs_dir.glob("run_*.json"))[-limit:]:
        try:
            runs.append(RunLog.from_dict(json.loads(path.read_text())))
        except (OSError, ValueError, KeyError, TypeError) as e:
            log.warning("run_load_failed", path=str(path), error=str(e))
    return runs


def _band_severity(value: float, bands: BandsConfig) -> str:
    if value > bands.critical:
        return SEVERITY_CRITICAL
    if value > bands.high:
        return SEVERITY_WARNING
    return SEVERITY_OK


def report_to_runlog(report: MonitorReport, bands: BandsConfig | None = None) -> RunLog:
    """Turn a session report into check results for the run history.

    Checks: one per domain (worst score), one per composite (peak), and one
    per event type (worst severity seen).
    """
    bands = bands or BandsConfig()
    results = []

    for domain, score in sorted(report.worst_domain_scores.items()):
        results.append(
            ResultLog(
                category="Health",
                check_name=domain,
                description=f"Lowest {domain} score {score}",
                severity=_band_severity(100 - score, bands),
            )
        )

    for check_name, metric, labeler in (
        ("Memory pressure", "memory_pressure_index", bands.memory_label),
        ("System latency", "system_latency_score", bands.latency_label),
    ):
        peak = report.peaks.get(metric, 0.0)
        results.append(
            ResultLog(
                category="Composite",
                check_name=check_name,
                description=f"Peak {peak:.0f} ({labeler(int(peak))})",
                severity=_band_severity(peak, bands),
            )
        )

    by_type: dict[str, ResultLog] = {}
    for event in report.events:
        existing = by_type.get(event.event_type)
        rank = _SEVERITY_RANK.get(event.severity, 0)
        if existing is None or rank > _SEVERITY_RANK.get(existing.severity, 0):
            by_type[event.event_type] = ResultLog(
                category="Events",
                check_name=event.event_type,
                description=strip_status_suffix(event.description),
                severity=event.severity,
                recommendation=event.tip or None,
            )
    results.extend(by_type[k] for k in sorted(by_type))

    return RunLog.from_results(report.end_time, report.health_score, results)
