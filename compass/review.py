"""
Weekly review: per-goal engagement for one Sunday-to-Saturday UTC week.

Reviews are computed on read from the daily activity records and the
latest interpretation of each entry written that week; nothing is stored.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Iterable, Optional

from .types import (
    ActivityLevel,
    DailyActivity,
    Entry,
    Goal,
    MomentumTrend,
    WeeklyReview,
    parse_date_param,
    utc_day,
)

MAX_RISK_FLAGS = 3
MAX_ADJUSTMENTS = 2


def week_start(value: "str | date | datetime | None" = None) -> date:
    """
    Sunday on or before a day.

    Args:
        value: A day, a timestamp, an ISO date or duration string
            (``P1W`` is a week ago), or None for today (UTC)
    """
    if value is None:
        day = datetime.now(timezone.utc).date()
    elif isinstance(value, str):
        day = date.fromisoformat(parse_date_param(value))
    else:
        day = date.fromisoformat(utc_day(value))
    # weekday(): Monday is 0, Sunday is 6
    return day - timedelta(days=(day.weekday() + 1) % 7)


def momentum_trend(active_days: int, previous_active_days: int, entry_count: int) -> MomentumTrend:
    """Compare this week's active days with last week's."""
    if active_days == 0 and entry_count == 0:
        return MomentumTrend.DECLINING
    if active_days > previous_active_days:
        return MomentumTrend.GROWING
    if active_days < previous_active_days:
        return MomentumTrend.DECLINING
    return MomentumTrend.STABLE


def review_goal(
    goal: Goal,
    start: date,
    activity: Iterable[DailyActivity],
    previous_activity: Iterable[DailyActivity],
    entries: Iterable[Entry],
) -> WeeklyReview:
    """
    Build one goal's review.

    Args:
        goal: The goal under review
        start: Sunday that begins the week
        activity: Daily records for this week (any goal)
        previous_activity: Daily records for the week before (any goal)
        entries: This week's entries, newest first, each carrying its
            latest interpretation (if any)
    """
    levels = [r.level for r in activity if r.goal_id == goal.id]
    full_days = sum(1 for level in levels if level == ActivityLevel.FULL)
    partial_days = sum(1 for level in levels if level == ActivityLevel.PARTIAL)
    active_days = full_days + partial_days
    previous_active_days = sum(
        1 for r in previous_activity
        if r.goal_id == goal.id and r.level != ActivityLevel.NONE
    )

    risk_flags: list[str] = []
    adjustments: list[str] = []
    entry_count = 0
    for entry in entries:
        interpretation = entry.latest_interpretation
        if interpretation is None:
            continue
        detected = interpretation.detected_activity.get(goal.id, ActivityLevel.NONE)
        engaged = detected != ActivityLevel.NONE
        if engaged:
            entry_count += 1
        if engaged or goal.id in entry.linked_goal_ids:
            risk_flags.extend(interpretation.risk_flags)
            if interpretation.suggested_adjustments:
                adjustments.append(interpretation.suggested_adjustments)

    return WeeklyReview(
        goal_id=goal.id,
        goal_name=goal.name,
        kind=goal.kind,
        purpose=goal.purpose,
        week_start=start.isoformat(),
        active_days=active_days,
        full_days=full_days,
        partial_days=partial_days,
        momentum_trend=momentum_trend(active_days, previous_active_days, entry_count),
        risk_flags=_distinct(risk_flags, MAX_RISK_FLAGS),
        adjustments=_distinct(adjustments, MAX_ADJUSTMENTS),
        entry_count=entry_count,
    )


def _distinct(values: list[str], limit: Optional[int] = None) -> list[str]:
    """First occurrences in order, at most ``limit`` of them."""
    return list(dict.fromkeys(values))[:limit]
