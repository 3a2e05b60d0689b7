"""
Entry store using SQLite.

Entries are append-only: once written they are never edited or deleted.
Interpretations are appended alongside them, one row per analysis run,
so reanalysis adds history instead of replacing it.

The entry table, not the in-memory job queue, is the durable record of
outstanding work: an entry with zero interpretations still needs analysis.
"""

import json
import logging
import sqlite3
import threading
import uuid
from pathlib import Path
from typing import Optional

from .errors import ValidationError
from .types import (
    ActivityLevel,
    AnalysisResult,
    Entry,
    Interpretation,
    MomentumSignal,
    Reframe,
    ReframeType,
    parse_date_param,
    utc_now,
)

logger = logging.getLogger(__name__)

MAX_IDEMPOTENCY_KEY_LENGTH = 256


class EntryStore:
    """
    SQLite-backed store for journal entries and their interpretations.

    Safe to share across threads: the connection is opened with
    check_same_thread=False and writes are serialized by a lock.
    """

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

        # WAL lets readers proceed while the worker writes
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS entries (
                id TEXT PRIMARY KEY,
                text TEXT NOT NULL,
                created_at TEXT NOT NULL,
                linked_goal_ids TEXT NOT NULL DEFAULT '[]'
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_entries_created
            ON entries(created_at)
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS interpretations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                entry_id TEXT NOT NULL REFERENCES entries(id),
                provider TEXT NOT NULL,
                detected_activity TEXT NOT NULL DEFAULT '{}',
                momentum TEXT NOT NULL,
                risk_flags TEXT NOT NULL DEFAULT '[]',
                suggested_adjustments TEXT,
                reframe_type TEXT,
                reframe_reason TEXT,
                reframe_suggestion TEXT,
                created_at TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_interpretations_entry
            ON interpretations(entry_id, created_at)
        """)
        self._conn.commit()

    # -------------------------------------------------------------------------
    # Row conversion
    # -------------------------------------------------------------------------

    @staticmethod
    def _row_to_interpretation(row: sqlite3.Row) -> Interpretation:
        return Interpretation(
            id=row["id"],
            entry_id=row["entry_id"],
            provider=row["provider"],
            detected_activity={
                goal_id: ActivityLevel(level)
                for goal_id, level in json.loads(row["detected_activity"]).items()
            },
            momentum=MomentumSignal(row["momentum"]),
            risk_flags=json.loads(row["risk_flags"]),
            suggested_adjustments=row["suggested_adjustments"],
            reframe_type=ReframeType(row["reframe_type"]) if row["reframe_type"] else None,
            reframe_reason=row["reframe_reason"],
            reframe_suggestion=row["reframe_suggestion"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_entry(
        row: sqlite3.Row,
        interpretations: Optional[list[Interpretation]] = None,
    ) -> Entry:
        return Entry(
            id=row["id"],
            text=row["text"],
            created_at=row["created_at"],
            linked_goal_ids=json.loads(row["linked_goal_ids"]),
            interpretations=interpretations or [],
        )

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def create(
        self,
        text: str,
        linked_goal_ids: Optional[list[str]] = None,
        idempotency_key: Optional[str] = None,
        *,
        created_at: Optional[str] = None,
    ) -> tuple[Entry, bool]:
        """
        Store a new entry.

        When ``idempotency_key`` names an existing entry, that entry is
        returned unchanged and nothing is written.

        Args:
            text: Entry text (must contain non-whitespace)
            linked_goal_ids: Goals the user linked to this entry
            idempotency_key: Client token; becomes the entry id
            created_at: Override the creation timestamp (imports, tests)

        Returns:
            (entry, created) where created is False for a duplicate key

        Raises:
            ValidationError: If text is empty or the key is malformed
        """
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("Entry text must not be empty")
        if idempotency_key is not None:
            if not idempotency_key.strip():
                raise ValidationError("Idempotency key must not be blank")
            if len(idempotency_key) > MAX_IDEMPOTENCY_KEY_LENGTH:
                raise ValidationError(
                    f"Idempotency key exceeds {MAX_IDEMPOTENCY_KEY_LENGTH} characters"
                )

        entry_id = idempotency_key or uuid.uuid4().hex
        goal_ids = list(dict.fromkeys(linked_goal_ids or []))
        now = created_at or utc_now()

        with self._lock:
            cursor = self._conn.execute("""
                INSERT OR IGNORE INTO entries (id, text, created_at, linked_goal_ids)
                VALUES (?, ?, ?, ?)
            """, (entry_id, text, now, json.dumps(goal_ids)))
            self._conn.commit()
            created = cursor.rowcount == 1

        if not created:
            logger.debug("Duplicate submission for entry %s", entry_id)
            return self.get(entry_id), False
        return Entry(id=entry_id, text=text, created_at=now, linked_goal_ids=goal_ids), True

    def add_interpretation(
        self,
        entry_id: str,
        provider: str,
        result: AnalysisResult,
    ) -> Interpretation:
        """Append one interpretation to an entry."""
        now = utc_now()
        activity = {goal_id: level.value for goal_id, level in result.detected_activity.items()}
        with self._lock:
            cursor = self._conn.execute("""
                INSERT INTO interpretations
                (entry_id, provider, detected_activity, momentum, risk_flags,
                 suggested_adjustments, reframe_type, reframe_reason,
                 reframe_suggestion, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                entry_id,
                provider,
                json.dumps(activity),
                result.momentum.value,
                json.dumps(result.risk_flags),
                result.suggested_adjustments,
                result.reframe_type.value if result.reframe_type else None,
                result.reframe_reason,
                result.reframe_suggestion,
                now,
            ))
            self._conn.commit()
        return Interpretation(
            id=cursor.lastrowid,
            entry_id=entry_id,
            provider=provider,
            detected_activity=dict(result.detected_activity),
            momentum=result.momentum,
            risk_flags=list(result.risk_flags),
            suggested_adjustments=result.suggested_adjustments,
            reframe_type=result.reframe_type,
            reframe_reason=result.reframe_reason,
            reframe_suggestion=result.reframe_suggestion,
            created_at=now,
        )

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def get(self, entry_id: str) -> Optional[Entry]:
        """Get an entry without interpretations, or None."""
        row = self._conn.execute(
            "SELECT * FROM entries WHERE id = ?", (entry_id,)
        ).fetchone()
        return self._row_to_entry(row) if row else None

    def get_with_interpretations(self, entry_id: str) -> Optional[Entry]:
        """Get an entry with all its interpretations, newest first."""
        row = self._conn.execute(
            "SELECT * FROM entries WHERE id = ?", (entry_id,)
        ).fetchone()
        if row is None:
            return None
        return self._row_to_entry(row, self.list_interpretations(entry_id))

    def list_interpretations(self, entry_id: str) -> list[Interpretation]:
        """All interpretations of an entry, newest first."""
        rows = self._conn.execute("""
            SELECT * FROM interpretations
            WHERE entry_id = ?
            ORDER BY created_at DESC, id DESC
        """, (entry_id,)).fetchall()
        return [self._row_to_interpretation(r) for r in rows]

    def latest_interpretation(self, entry_id: str) -> Optional[Interpretation]:
        """The authoritative (most recent) interpretation, or None."""
        row = self._conn.execute("""
            SELECT * FROM interpretations
            WHERE entry_id = ?
            ORDER BY created_at DESC, id DESC
            LIMIT 1
        """, (entry_id,)).fetchone()
        return self._row_to_interpretation(row) if row else None

    def list_entries(
        self,
        goal_id: Optional[str] = None,
        since: Optional[str] = None,
        until: Optional[str] = None,
        limit: Optional[int] = 50,
    ) -> list[Entry]:
        """
        List entries newest first, each with at most its latest interpretation.

        Args:
            goal_id: Only entries the user linked to this goal
            since: Only entries on or after this date (ISO date or duration)
            until: Only entries before this date (ISO date or duration)
            limit: Maximum number of entries (None for all)
        """
        clauses = []
        params: list = []
        if goal_id is not None:
            clauses.append(
                "EXISTS (SELECT 1 FROM json_each(entries.linked_goal_ids) WHERE value = ?)"
            )
            params.append(goal_id)
        if since:
            clauses.append("substr(created_at, 1, 10) >= ?")
            params.append(parse_date_param(since))
        if until:
            clauses.append("substr(created_at, 1, 10) < ?")
            params.append(parse_date_param(until))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        # A negative LIMIT is unbounded in SQLite
        params.append(-1 if limit is None else limit)

        rows = self._conn.execute(f"""
            SELECT * FROM entries
            {where}
            ORDER BY created_at DESC, rowid DESC
            LIMIT ?
        """, params).fetchall()

        entries = []
        for row in rows:
            latest = self.latest_interpretation(row["id"])
            entries.append(self._row_to_entry(row, [latest] if latest else None))
        return entries

    def list_pending_analysis(self, limit: int = 20) -> list[Entry]:
        """Entries with zero interpretations, newest first."""
        rows = self._conn.execute("""
            SELECT e.* FROM entries e
            LEFT JOIN interpretations i ON i.entry_id = e.id
            WHERE i.id IS NULL
            ORDER BY e.created_at DESC, e.rowid DESC
            LIMIT ?
        """, (limit,)).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def list_linked(self, goal_id: str, limit: int = 5) -> list[Entry]:
        """
        Entries where analysis detected activity for a goal, newest first.

        An entry counts when any of its interpretations recorded a level
        other than none for the goal. Each entry appears once.
        """
        rows = self._conn.execute("""
            SELECT e.* FROM entries e
            WHERE EXISTS (
                SELECT 1 FROM interpretations i
                WHERE i.entry_id = e.id
                  AND json_extract(i.detected_activity, '$."' || ? || '"')
                      IN ('partial', 'full')
            )
            ORDER BY e.created_at DESC, e.rowid DESC
            LIMIT ?
        """, (goal_id, limit)).fetchall()
        entries = []
        for row in rows:
            latest = self.latest_interpretation(row["id"])
            entries.append(self._row_to_entry(row, [latest] if latest else None))
        return entries

    def list_reframes(self, goal_id: Optional[str] = None, limit: int = 10) -> list[Reframe]:
        """
        Interpretations that raised a reframe, newest first.

        Every interpretation counts, not only the latest of each entry.

        Args:
            goal_id: Only reframes on entries the user linked to this goal
            limit: Maximum number of reframes
        """
        goal_clause = ""
        params: list = []
        if goal_id is not None:
            goal_clause = (
                "AND EXISTS (SELECT 1 FROM json_each(e.linked_goal_ids) WHERE value = ?)"
            )
            params.append(goal_id)
        params.append(limit)

        rows = self._conn.execute(f"""
            SELECT i.id, i.entry_id, i.reframe_type, i.reframe_reason,
                   i.reframe_suggestion, i.created_at,
                   e.created_at AS entry_created_at, e.linked_goal_ids
            FROM interpretations i
            JOIN entries e ON e.id = i.entry_id
            WHERE i.reframe_type IS NOT NULL {goal_clause}
            ORDER BY i.created_at DESC, i.id DESC
            LIMIT ?
        """, params).fetchall()
        return [
            Reframe(
                interpretation_id=r["id"],
                entry_id=r["entry_id"],
                reframe_type=ReframeType(r["reframe_type"]),
                reason=r["reframe_reason"],
                suggestion=r["reframe_suggestion"],
                detected_at=r["created_at"],
                entry_created_at=r["entry_created_at"],
                linked_goal_ids=json.loads(r["linked_goal_ids"]),
            )
            for r in rows
        ]

    def adjacent_ids(self, entry_id: str) -> tuple[Optional[str], Optional[str]]:
        """
        Ids of the entries written just before and just after this one.

        Returns:
            (previous_id, next_id); either may be None
        """
        row = self._conn.execute(
            "SELECT created_at, rowid FROM entries WHERE id = ?", (entry_id,)
        ).fetchone()
        if row is None:
            return None, None
        ts, rowid = row["created_at"], row["rowid"]
        prev_row = self._conn.execute("""
            SELECT id FROM entries
            WHERE created_at < ? OR (created_at = ? AND rowid < ?)
            ORDER BY created_at DESC, rowid DESC LIMIT 1
        """, (ts, ts, rowid)).fetchone()
        next_row = self._conn.execute("""
            SELECT id FROM entries
            WHERE created_at > ? OR (created_at = ? AND rowid > ?)
            ORDER BY created_at ASC, rowid ASC LIMIT 1
        """, (ts, ts, rowid)).fetchone()
        return (
            prev_row["id"] if prev_row else None,
            next_row["id"] if next_row else None,
        )

    def iter_all(self):
        """Yield every entry with all interpretations, oldest first."""
        rows = self._conn.execute(
            "SELECT * FROM entries ORDER BY created_at ASC, rowid ASC"
        ).fetchall()
        for row in rows:
            yield self._row_to_entry(row, self.list_interpretations(row["id"]))

    def count(self) -> int:
        """Number of stored entries."""
        return self._conn.execute("SELECT COUNT(*) FROM entries").fetchone()[0]

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __del__(self):
        self.close()
