"""
Goal and phase store using SQLite.

Goals are the things a user tracks; each may have one current phase that
adjusts what a "good day" looks like. The analysis pipeline only reads
from here (the active goal set and each goal's current phase).
"""

import sqlite3
import threading
import uuid
from pathlib import Path
from typing import Optional

from .errors import NotFoundError, ValidationError
from .types import Goal, GoalKind, GoalStatus, Phase, utc_now


class GoalStore:
    """SQLite-backed store for goals and their phases."""

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
            CREATE TABLE IF NOT EXISTS goals (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                kind TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'active',
                purpose TEXT,
                success_signals TEXT,
                exit_criteria TEXT,
                target_date TEXT,
                current_phase_id TEXT,
                created_at TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS phases (
                id TEXT PRIMARY KEY,
                goal_id TEXT NOT NULL REFERENCES goals(id),
                name TEXT NOT NULL,
                description TEXT,
                start_date TEXT,
                end_date TEXT,
                expected_frequency TEXT,
                intensity INTEGER,
                created_at TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_phases_goal
            ON phases(goal_id)
        """)
        self._conn.commit()

    @staticmethod
    def _row_to_phase(row: sqlite3.Row) -> Phase:
        return Phase(
            id=row["id"],
            goal_id=row["goal_id"],
            name=row["name"],
            description=row["description"],
            start_date=row["start_date"],
            end_date=row["end_date"],
            expected_frequency=row["expected_frequency"],
            intensity=row["intensity"],
            created_at=row["created_at"],
        )

    def _row_to_goal(self, row: sqlite3.Row) -> Goal:
        phase = None
        if row["current_phase_id"]:
            phase = self.get_phase(row["current_phase_id"])
        return Goal(
            id=row["id"],
            name=row["name"],
            kind=GoalKind(row["kind"]),
            status=GoalStatus(row["status"]),
            purpose=row["purpose"],
            success_signals=row["success_signals"],
            exit_criteria=row["exit_criteria"],
            target_date=row["target_date"],
            created_at=row["created_at"],
            current_phase=phase,
        )

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def add_goal(
        self,
        name: str,
        kind: GoalKind | str = GoalKind.HABIT_BUNDLE,
        *,
        goal_id: Optional[str] = None,
        purpose: Optional[str] = None,
        success_signals: Optional[str] = None,
        exit_criteria: Optional[str] = None,
        target_date: Optional[str] = None,
    ) -> Goal:
        """
        Create a goal in the active state.

        Raises:
            ValidationError: On an empty name, unknown kind or duplicate id
        """
        if not name or not name.strip():
            raise ValidationError("Goal name must not be empty")
        try:
            kind = GoalKind(kind)
        except ValueError:
            raise ValidationError(f"Unknown goal kind: {kind!r}")

        goal_id = goal_id or uuid.uuid4().hex[:12]
        now = utc_now()
        with self._lock:
            try:
                self._conn.execute("""
                    INSERT INTO goals
                    (id, name, kind, status, purpose, success_signals,
                     exit_criteria, target_date, created_at)
                    VALUES (?, ?, ?, 'active', ?, ?, ?, ?, ?)
                """, (goal_id, name.strip(), kind.value, purpose, success_signals,
                      exit_criteria, target_date, now))
                self._conn.commit()
            except sqlite3.IntegrityError:
                raise ValidationError(f"Goal already exists: {goal_id}")
        return self.get(goal_id)

    def set_status(self, goal_id: str, status: GoalStatus | str) -> Goal:
        """Change a goal's status (active, paused, archived)."""
        try:
            status = GoalStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown goal status: {status!r}")
        with self._lock:
            cursor = self._conn.execute(
                "UPDATE goals SET status = ? WHERE id = ?", (status.value, goal_id)
            )
            self._conn.commit()
        if cursor.rowcount == 0:
            raise NotFoundError(f"Goal not found: {goal_id}")
        return self.get(goal_id)

    def add_phase(
        self,
        goal_id: str,
        name: str,
        *,
        description: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        expected_frequency: Optional[str] = None,
        intensity: Optional[int] = None,
    ) -> Phase:
        """
        Add a phase to a goal and make it the goal's current phase.

        Raises:
            NotFoundError: If the goal does not exist
            ValidationError: On an empty name or intensity outside 1..5
        """
        if not name or not name.strip():
            raise ValidationError("Phase name must not be empty")
        if intensity is not None and not 1 <= intensity <= 5:
            raise ValidationError("Phase intensity must be between 1 and 5")
        if self.get(goal_id) is None:
            raise NotFoundError(f"Goal not found: {goal_id}")

        phase_id = uuid.uuid4().hex[:12]
        now = utc_now()
        with self._lock:
            self._conn.execute("""
                INSERT INTO phases
                (id, goal_id, name, description, start_date, end_date,
                 expected_frequency, intensity, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (phase_id, goal_id, name.strip(), description, start_date,
                  end_date, expected_frequency, intensity, now))
            self._conn.execute(
                "UPDATE goals SET current_phase_id = ? WHERE id = ?",
                (phase_id, goal_id),
            )
            self._conn.commit()
        return self.get_phase(phase_id)

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def get(self, goal_id: str) -> Optional[Goal]:
        row = self._conn.execute(
            "SELECT * FROM goals WHERE id = ?", (goal_id,)
        ).fetchone()
        return self._row_to_goal(row) if row else None

    def get_phase(self, phase_id: str) -> Optional[Phase]:
        row = self._conn.execute(
            "SELECT * FROM phases WHERE id = ?", (phase_id,)
        ).fetchone()
        return self._row_to_phase(row) if row else None

    def list_goals(self, status: Optional[GoalStatus | str] = None) -> list[Goal]:
        """List goals in creation order, optionally filtered by status."""
        if status is None:
            rows = self._conn.execute(
                "SELECT * FROM goals ORDER BY created_at, rowid"
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM goals WHERE status = ? ORDER BY created_at, rowid",
                (GoalStatus(status).value,),
            ).fetchall()
        return [self._row_to_goal(r) for r in rows]

    def list_active(self) -> list[Goal]:
        """Active goals with their current phase attached."""
        return self.list_goals(GoalStatus.ACTIVE)

    def list_phases(self, goal_id: str) -> list[Phase]:
        """All phases of a goal, oldest first."""
        rows = self._conn.execute(
            "SELECT * FROM phases WHERE goal_id = ? ORDER BY created_at, rowid",
            (goal_id,),
        ).fetchall()
        return [self._row_to_phase(r) for r in rows]

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __del__(self):
        self.close()
