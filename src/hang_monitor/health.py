"""Health scores, assessments and events produced by the sub-analyzers."""

from dataclasses import dataclass, field
from datetime import datetime

SEVERITY_OK = "Ok"
SEVERITY_INFO = "Info"
SEVERITY_WARNING = "Warning"
SEVERITY_CRITICAL = "Critical"


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    """Clamp value into [low, high]."""
    return max(low, min(high, value))


@dataclass(frozen=True)
class HealthScore:
    """One domain's rating for one tick.

    Score is clamped to 0-100 (100 = healthy) and confidence to 0-1. Zero
    confidence only means "no trend data yet"; a domain that could not be
    assessed at all is flagged unavailable.
    """

    domain: str
    score: int
    confidence: float
    root_cause_hint: str | None = None
    unavailable: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "score", int(clamp(self.score)))
        object.__setattr__(self, "confidence", clamp(self.confidence, 0.0, 1.0))

    @property
    def is_unknown(self) -> bool:
        """True when the domain could not be assessed at all."""
        return self.unavailable


@dataclass(frozen=True)
class MonitorEvent:
    """Append-only notable occurrence; event_type is its identity for dedup."""

    timestamp: datetime
    event_type: str
    description: str
    severity: str
    tip: str = ""

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type,
            "description": self.description,
            "severity": self.severity,
            "tip": self.tip,
        }


@dataclass(frozen=True)
class HealthAssessment:
    """A sub-analyzer's full per-tick output."""

    score: HealthScore
    new_events: list[MonitorEvent] = field(default_factory=list)

    @classmethod
    def unknown(cls, domain: str, hint: str) -> "HealthAssessment":
        """Zero-confidence assessment for a domain that could not be analyzed."""
        return cls(
            score=HealthScore(
                domain=domain, score=0, confidence=0.0, root_cause_hint=hint, unavailable=True
            )
        )
