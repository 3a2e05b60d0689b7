"""
Data types for the journal analysis pipeline.
"""

import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional


def utc_now() -> str:
    """Current UTC timestamp in canonical format: YYYY-MM-DDTHH:MM:SS.ffffff.

    All timestamps in compass are UTC, stored without timezone suffix.
    Microseconds are kept so entries written in the same second still sort.
    """
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a stored timestamp string to a timezone-aware UTC datetime.

    Accepts the canonical format as well as 'Z' or '+00:00' suffixes.
    Naive values are taken to be UTC.
    """
    ts = ts.strip().replace("Z", "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utc_day(value: "str | datetime | date") -> str:
    """Normalize a timestamp to its UTC calendar day (YYYY-MM-DD).

    Two interpretations created at 00:10 and 23:50 UTC on the same day
    map to the same daily activity record.
    """
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc).strftime("%Y-%m-%d")
    if isinstance(value, date):
        return value.isoformat()
    if len(value.strip()) == 10:
        return date.fromisoformat(value.strip()).isoformat()
    return parse_utc_timestamp(value).strftime("%Y-%m-%d")


class ActivityLevel(str, Enum):
    """Per-goal activity detected in an entry, ordered none < partial < full."""
    NONE = "none"
    PARTIAL = "partial"
    FULL = "full"

    @property
    def rank(self) -> int:
        return _ACTIVITY_RANK[self]


_ACTIVITY_RANK = {
    ActivityLevel.NONE: 0,
    ActivityLevel.PARTIAL: 1,
    ActivityLevel.FULL: 2,
}


class MomentumSignal(str, Enum):
    """Overall engagement signal for one interpretation."""
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ReframeType(str, Enum):
    """Why a goal itself may need reconsideration."""
    MISALIGNMENT = "misalignment"
    STAGNATION = "stagnation"
    OVER_OPTIMIZATION = "over_optimization"
    PHASE_MISMATCH = "phase_mismatch"
    EXIT_SIGNAL = "exit_signal"


class MomentumTrend(str, Enum):
    """Week-over-week direction of a goal's active days."""
    GROWING = "growing"
    STABLE = "stable"
    DECLINING = "declining"


class GoalKind(str, Enum):
    HABIT_BUNDLE = "habit_bundle"
    MEASURABLE_OUTCOME = "measurable_outcome"
    EXPLORATORY_TRACK = "exploratory_track"


class GoalStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class ProviderName(str, Enum):
    """LLM backends an analysis can run on."""
    CLAUDE = "claude"
    OPENAI = "openai"
    GEMINI = "gemini"
    OLLAMA = "ollama"


def _enum_dict(data: dict) -> dict:
    """asdict() result with enum members replaced by their values."""
    out = {}
    for k, v in data.items():
        if isinstance(v, Enum):
            out[k] = v.value
        elif isinstance(v, dict):
            out[k] = _enum_dict(v)
        elif isinstance(v, list):
            out[k] = [_enum_dict(i) if isinstance(i, dict) else
                      (i.value if isinstance(i, Enum) else i) for i in v]
        else:
            out[k] = v
    return out


@dataclass(frozen=True)
class Phase:
    """A time-bounded context that changes what is expected of a goal."""
    id: str
    goal_id: str
    name: str
    description: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    expected_frequency: Optional[str] = None
    intensity: Optional[int] = None       # 1..5
    created_at: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class Goal:
    """
    A user-declared thing being tracked.

    Attributes:
        id: Stable identifier, used as the key in detected activity
        kind: How progress is evaluated (habit, outcome, exploration)
        current_phase: The goal's active phase, when one is set
    """
    id: str
    name: str
    kind: GoalKind
    status: GoalStatus = GoalStatus.ACTIVE
    purpose: Optional[str] = None
    success_signals: Optional[str] = None
    exit_criteria: Optional[str] = None
    target_date: Optional[str] = None
    created_at: str = ""
    current_phase: Optional[Phase] = None

    def to_dict(self) -> dict:
        return _enum_dict(asdict(self))


@dataclass(frozen=True)
class Interpretation:
    """
    A structured analysis result attached to one entry.

    Interpretations are additive: reanalysis appends a new one and the
    newest is authoritative for display.
    """
    id: int
    entry_id: str
    provider: str
    detected_activity: dict[str, ActivityLevel]
    momentum: MomentumSignal
    risk_flags: list[str] = field(default_factory=list)
    suggested_adjustments: Optional[str] = None
    reframe_type: Optional[ReframeType] = None
    reframe_reason: Optional[str] = None
    reframe_suggestion: Optional[str] = None
    created_at: str = ""

    def to_dict(self) -> dict:
        return _enum_dict(asdict(self))


@dataclass(frozen=True)
class Entry:
    """
    An immutable free-text journal entry.

    Attributes:
        id: Row identity; the client's idempotency key when one was given
        text: Raw text as submitted
        linked_goal_ids: Goals the user declared as related
        interpretations: Attached analyses, newest first (may be empty)
    """
    id: str
    text: str
    created_at: str
    linked_goal_ids: list[str] = field(default_factory=list)
    interpretations: list[Interpretation] = field(default_factory=list)

    @property
    def latest_interpretation(self) -> Optional[Interpretation]:
        return self.interpretations[0] if self.interpretations else None

    def to_dict(self) -> dict:
        return _enum_dict(asdict(self))


@dataclass(frozen=True)
class DailyActivity:
    """Highest activity level observed for one goal on one UTC day."""
    day: str
    goal_id: str
    level: ActivityLevel
    updated_at: str = ""

    def to_dict(self) -> dict:
        return _enum_dict(asdict(self))


@dataclass(frozen=True)
class AnalysisResult:
    """Typed form of a validated structured-output object."""
    detected_activity: dict[str, ActivityLevel]
    momentum: MomentumSignal
    risk_flags: list[str] = field(default_factory=list)
    suggested_adjustments: Optional[str] = None
    reframe_type: Optional[ReframeType] = None
    reframe_reason: Optional[str] = None
    reframe_suggestion: Optional[str] = None

    @classmethod
    def neutral(cls) -> "AnalysisResult":
        """Result used when there is nothing to analyze against."""
        return cls(detected_activity={}, momentum=MomentumSignal.NONE)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AnalysisResult":
        """Build from an object that already passed schema validation."""
        reframe = data.get("reframe_type")
        return cls(
            detected_activity={
                goal_id: ActivityLevel(level)
                for goal_id, level in data["detected_activity"].items()
            },
            momentum=MomentumSignal(data["momentum_signal"]),
            risk_flags=list(data.get("risk_flags") or []),
            suggested_adjustments=data.get("suggested_adjustments"),
            reframe_type=ReframeType(reframe) if reframe else None,
            reframe_reason=data.get("reframe_reason"),
            reframe_suggestion=data.get("reframe_suggestion"),
        )


@dataclass(frozen=True)
class Reframe:
    """A reframe raised by one interpretation, with its entry's context."""
    interpretation_id: int
    entry_id: str
    reframe_type: ReframeType
    reason: Optional[str]
    suggestion: Optional[str]
    detected_at: str
    entry_created_at: str
    linked_goal_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return _enum_dict(asdict(self))


@dataclass(frozen=True)
class WeeklyReview:
    """
    One goal's week, computed from daily activity and latest interpretations.

    Attributes:
        week_start: Sunday that begins the week (YYYY-MM-DD, UTC)
        active_days: full_days + partial_days
        entry_count: Entries this week whose latest interpretation detected
            activity for the goal
        risk_flags: Up to three distinct flags, newest entries first
        adjustments: Up to two distinct suggested adjustments
    """
    goal_id: str
    goal_name: str
    kind: GoalKind
    purpose: Optional[str]
    week_start: str
    active_days: int
    full_days: int
    partial_days: int
    momentum_trend: MomentumTrend
    risk_flags: list[str] = field(default_factory=list)
    adjustments: list[str] = field(default_factory=list)
    entry_count: int = 0

    def to_dict(self) -> dict:
        return _enum_dict(asdict(self))


def parse_date_param(value: str) -> str:
    """
    Parse a date/duration parameter and return a YYYY-MM-DD date.

    Accepts:
    - ISO 8601 duration: P3D (3 days), P1W (1 week), PT12H, P1DT12H, etc.
      counted back from now
    - ISO date: 2026-01-15 (a trailing time part is ignored)
    - Date with slashes: 2026/01/15
    """
    text = value.strip()

    if text.upper().startswith("P"):
        duration = text.upper()[1:]
        date_part, _, time_part = duration.partition("T")
        amounts = {"Y": 0, "M": 0, "W": 0, "D": 0}
        for match in re.finditer(r"(\d+)([YMWD])", date_part):
            amounts[match.group(2)] = int(match.group(1))
        clock = {"H": 0, "M": 0, "S": 0}
        for match in re.finditer(r"(\d+)([HMS])", time_part):
            clock[match.group(2)] = int(match.group(1))
        # Months and years are approximate
        total_days = (amounts["Y"] * 365 + amounts["M"] * 30
                      + amounts["W"] * 7 + amounts["D"])
        delta = timedelta(days=total_days, hours=clock["H"],
                          minutes=clock["M"], seconds=clock["S"])
        return (datetime.now(timezone.utc) - delta).strftime("%Y-%m-%d")

    date_str = text.replace("/", "-").split("T")[0]
    try:
        return datetime.strptime(date_str, "%Y-%m-%d").strftime("%Y-%m-%d")
    except ValueError:
        pass

    raise ValueError(
        f"Invalid date/duration format: {value}. "
        "Use ISO duration (P3D, PT1H, P1W) or date (2026-01-15)"
    )
