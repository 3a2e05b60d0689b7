"""
Daily activity aggregation.

Folds per-entry activity detections into one record per (UTC day, goal).
A record's level only ever moves up the order none < partial < full, so
the stored value is the maximum of everything merged for that day no
matter what order the merges arrive in. A later low-signal reanalysis
cannot erase an earlier high-signal detection.
"""

import logging
import sqlite3
import threading
from datetime import date, datetime
from pathlib import Path
from typing import Mapping, Optional

from .types import ActivityLevel, DailyActivity, parse_date_param, utc_day, utc_now

logger = logging.getLogger(__name__)


class ActivityAggregator:
    """SQLite-backed per-day, per-goal activity records."""

    def __init__(self, db_path: Path):
        """
        Args:
            db_path: Path to SQLite database file
        """
        self._db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS daily_activity (
                day TEXT NOT NULL,
                goal_id TEXT NOT NULL,
                level TEXT NOT NULL,
                rank INTEGER NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (day, goal_id)
            )
        """)
        self._conn.commit()

    def merge_day(
        self,
        day: "str | datetime | date",
        per_goal_level: Mapping[str, ActivityLevel | str],
    ) -> dict[str, ActivityLevel]:
        """
        Merge one interpretation's detections into the day's records.

        ``day`` is normalized to its UTC calendar day. Levels of ``none``
        are skipped. An existing record is overwritten only when the new
        level ranks strictly higher. A failure for one goal is logged and
        does not stop the others.

        Returns:
            The stored level for each goal that was merged successfully
        """
        day_key = utc_day(day)
        stored: dict[str, ActivityLevel] = {}
        for goal_id, level in per_goal_level.items():
            try:
                level = ActivityLevel(level)
                if level is ActivityLevel.NONE:
                    continue
                stored[goal_id] = self._upsert(day_key, goal_id, level)
            except (sqlite3.Error, ValueError) as e:
                logger.warning(
                    "Failed to merge activity for goal %s on %s: %s",
                    goal_id, day_key, e,
                )
        return stored

    def _upsert(self, day: str, goal_id: str, level: ActivityLevel) -> ActivityLevel:
        """Insert or raise one record; returns the level now stored."""
        with self._lock:
            self._conn.execute("""
                INSERT INTO daily_activity (day, goal_id, level, rank, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(day, goal_id) DO UPDATE SET
                    level = excluded.level,
                    rank = excluded.rank,
                    updated_at = excluded.updated_at
                WHERE excluded.rank > daily_activity.rank
            """, (day, goal_id, level.value, level.rank, utc_now()))
            self._conn.commit()
            row = self._conn.execute(
                "SELECT level FROM daily_activity WHERE day = ? AND goal_id = ?",
                (day, goal_id),
            ).fetchone()
        return ActivityLevel(row["level"])

    def get(self, day: "str | datetime | date", goal_id: str) -> Optional[DailyActivity]:
        """The record for one (day, goal), or None."""
        row = self._conn.execute(
            "SELECT * FROM daily_activity WHERE day = ? AND goal_id = ?",
            (utc_day(day), goal_id),
        ).fetchone()
        return self._row_to_record(row) if row else None

    def list_activity(
        self,
        since: Optional[str] = None,
        until: Optional[str] = None,
        goal_id: Optional[str] = None,
    ) -> list[DailyActivity]:
        """
        List records ordered by day, then goal.

        Args:
            since: First day to include (ISO date or duration)
            until: Day to stop before (ISO date or duration)
            goal_id: Only records for this goal
        """
        clauses = []
        params: list = []
        if since:
            clauses.append("day >= ?")
            params.append(parse_date_param(since))
        if until:
            clauses.append("day < ?")
            params.append(parse_date_param(until))
        if goal_id is not None:
            clauses.append("goal_id = ?")
            params.append(goal_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._conn.execute(
            f"SELECT * FROM daily_activity {where} ORDER BY day, goal_id", params
        ).fetchall()
        return [self._row_to_record(r) for r in rows]

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> DailyActivity:
        return DailyActivity(
            day=row["day"],
            goal_id=row["goal_id"],
            level=ActivityLevel(row["level"]),
            updated_at=row["updated_at"],
        )

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __del__(self):
        self.close()
