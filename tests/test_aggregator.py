"""Tests for the daily activity aggregator."""

import itertools
import sqlite3
from datetime import date, datetime, timezone
from unittest.mock import patch

import pytest

from compass.aggregator import ActivityAggregator
from compass.types import ActivityLevel


@pytest.fixture
def agg(tmp_path):
    a = ActivityAggregator(tmp_path / "compass.db")
    yield a
    a.close()


class TestMonotonicMerge:
    """A day's level only moves up none < partial < full."""

    def test_full_then_partial_stays_full(self, agg):
        """Scenario: a weaker later detection does not erase a stronger one."""
        agg.merge_day("2026-03-01", {"g1": "full"})
        agg.merge_day("2026-03-01", {"g1": "partial"})

        assert agg.get("2026-03-01", "g1").level is ActivityLevel.FULL

    def test_partial_then_full_upgrades(self, agg):
        agg.merge_day("2026-03-01", {"g1": ActivityLevel.PARTIAL})
        stored = agg.merge_day("2026-03-01", {"g1": ActivityLevel.FULL})

        assert stored == {"g1": ActivityLevel.FULL}
        assert agg.get("2026-03-01", "g1").level is ActivityLevel.FULL

    @pytest.mark.parametrize("order", list(itertools.permutations(["partial", "full", "partial"])))
    def test_any_order_yields_maximum(self, agg, order):
        for level in order:
            agg.merge_day("2026-03-01", {"g1": level})
        assert agg.get("2026-03-01", "g1").level is ActivityLevel.FULL

    def test_none_is_not_recorded(self, agg):
        stored = agg.merge_day("2026-03-01", {"g1": "none", "g2": "partial"})

        assert stored == {"g2": ActivityLevel.PARTIAL}
        assert agg.get("2026-03-01", "g1") is None

    def test_goals_and_days_are_independent(self, agg):
        agg.merge_day("2026-03-01", {"g1": "full", "g2": "partial"})
        agg.merge_day("2026-03-02", {"g1": "partial"})

        assert agg.get("2026-03-01", "g2").level is ActivityLevel.PARTIAL
        assert agg.get("2026-03-02", "g1").level is ActivityLevel.PARTIAL


class TestDayNormalization:
    """Timestamps collapse onto their UTC calendar day."""

    def test_same_utc_day_same_record(self, agg):
        agg.merge_day("2026-03-01T00:10:00.000000", {"g1": "partial"})
        agg.merge_day("2026-03-01T23:50:00.000000", {"g1": "full"})

        records = agg.list_activity()
        assert len(records) == 1
        assert records[0].day == "2026-03-01"
        assert records[0].level is ActivityLevel.FULL

    def test_offset_timestamp_uses_utc_day(self, agg):
        agg.merge_day("2026-03-02T01:00:00+02:00", {"g1": "full"})
        assert agg.get("2026-03-01", "g1") is not None

    def test_datetime_and_date_values(self, agg):
        agg.merge_day(datetime(2026, 3, 1, 22, 0, tzinfo=timezone.utc), {"g1": "partial"})
        agg.merge_day(date(2026, 3, 1), {"g1": "full"})
        assert agg.get("2026-03-01", "g1").level is ActivityLevel.FULL


class TestFailureIsolation:
    """One goal's failed write does not stop the others."""

    def test_invalid_level_skipped(self, agg):
        stored = agg.merge_day("2026-03-01", {"g1": "bogus", "g2": "full"})

        assert stored == {"g2": ActivityLevel.FULL}
        assert agg.get("2026-03-01", "g1") is None

    def test_database_error_for_one_goal(self, agg):
        real_upsert = agg._upsert

        def flaky(day, goal_id, level):
            if goal_id == "g1":
                raise sqlite3.OperationalError("database is locked")
            return real_upsert(day, goal_id, level)

        with patch.object(agg, "_upsert", side_effect=flaky):
            stored = agg.merge_day("2026-03-01", {"g1": "full", "g2": "partial", "g3": "full"})

        assert set(stored) == {"g2", "g3"}
        assert agg.get("2026-03-01", "g3").level is ActivityLevel.FULL


class TestListActivity:
    """Range and goal filters."""

    def test_filters(self, agg):
        agg.merge_day("2026-03-01", {"g1": "full", "g2": "partial"})
        agg.merge_day("2026-03-02", {"g1": "partial"})
        agg.merge_day("2026-03-03", {"g2": "full"})

        assert [(r.day, r.goal_id) for r in agg.list_activity()] == [
            ("2026-03-01", "g1"),
            ("2026-03-01", "g2"),
            ("2026-03-02", "g1"),
            ("2026-03-03", "g2"),
        ]
        assert [r.day for r in agg.list_activity(goal_id="g1")] == ["2026-03-01", "2026-03-02"]
        assert [r.day for r in agg.list_activity(since="2026-03-02", until="2026-03-03")] == [
            "2026-03-02"
        ]
