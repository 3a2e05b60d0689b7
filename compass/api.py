"""
Core API for the compass journal.

Journal ties the stores and the analysis pipeline together:
- create_entry(): persist a note immediately, analyze it in the background
- list_entries() / get_entry(): read entries with their interpretations
- reanalyze(): user-triggered analysis that reports failure
- list_pending_analysis() / process_pending(): recover unanalyzed entries
- active_reframes() / weekly_review(): read-side views over the analyses
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

from .aggregator import ActivityAggregator
from .analysis import DEFAULT_BATCH_CONCURRENCY, AnalysisExecutor
from .analysis_queue import AnalysisQueue
from .config import StoreConfig, get_default_store_path, load_or_create_config
from .entry_store import EntryStore
from .errors import NotFoundError
from .goal_store import GoalStore
from .logging_config import configure_ops_log, remove_ops_log
from .providers.base import create_provider
from .review import review_goal, week_start
from .types import (
    DailyActivity,
    Entry,
    Goal,
    GoalKind,
    GoalStatus,
    Interpretation,
    MomentumTrend,
    Phase,
    Reframe,
    WeeklyReview,
)

logger = logging.getLogger(__name__)

DB_FILENAME = "compass.db"
EXPORT_FORMAT = "compass-export"
EXPORT_VERSION = 1


class Journal:
    """
    Journal with asynchronous AI analysis of each entry.

    Example:
        with Journal() as journal:
            goal = journal.add_goal("Learn French", "exploratory_track")
            entry = journal.create_entry("Did 30 min French today", [goal.id])
            journal.wait_for_analysis(timeout=60)
            print(journal.get_entry(entry.id).latest_interpretation)
    """

    def __init__(
        self,
        store_path: Optional[str | Path] = None,
        *,
        config: Optional[StoreConfig] = None,
        provider_factory: Optional[Callable] = None,
        autostart_worker: bool = True,
        sleep: Callable[[float], None] = time.sleep,
        backoff_unit: float = 1.0,
    ) -> None:
        """
        Initialize or open an existing journal store.

        Args:
            store_path: Path to store directory. Uses COMPASS_STORE_PATH or
                ~/.compass if not specified.
            config: Pre-loaded StoreConfig (skips filesystem config discovery).
            provider_factory: Replaces create_provider (tests, custom backends).
            autostart_worker: Start the analysis worker on first enqueue.
            sleep: Sleep used between inner provider retries.
            backoff_unit: Seconds per unit of queue retry backoff.
        """
        # --- Config resolution ---
        if config is not None:
            self._config = config
            self._store_path = Path(config.path)
        else:
            self._store_path = (
                Path(store_path).expanduser().resolve()
                if store_path is not None else get_default_store_path()
            )
            self._config = load_or_create_config(self._store_path)

        # --- Persistent operations log ---
        self._ops_log_handler = configure_ops_log(self._store_path)

        # --- Storage ---
        db_path = self._store_path / DB_FILENAME
        self._entries = EntryStore(db_path)
        self._goals = GoalStore(db_path)
        self._aggregator = ActivityAggregator(db_path)

        # --- Analysis pipeline ---
        self._executor = AnalysisExecutor(
            self._entries,
            self._goals,
            self._aggregator,
            self._config,
            provider_factory=provider_factory or create_provider,
            max_attempts=self._config.analysis.max_attempts,
            backoff_base=self._config.analysis.backoff_base,
            sleep=sleep,
        )
        self._queue = AnalysisQueue(
            self._run_job,
            max_attempts=self._config.queue.max_attempts,
            backoff_base=self._config.queue.backoff_base,
            backoff_unit=backoff_unit,
            job_pause=self._config.queue.job_pause,
            autostart=autostart_worker,
        )

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def store_path(self) -> Path:
        return self._store_path

    @property
    def queue(self) -> AnalysisQueue:
        return self._queue

    @property
    def executor(self) -> AnalysisExecutor:
        return self._executor

    def _run_job(self, entry_id: str, provider: Optional[str]) -> None:
        """Queue handler: failures must propagate so the queue can retry."""
        self._executor.analyze(entry_id, provider, throw_on_error=True)

    # -------------------------------------------------------------------------
    # Entries
    # -------------------------------------------------------------------------

    def create_entry(
        self,
        text: str,
        linked_goal_ids: Optional[list[str]] = None,
        idempotency_key: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> Entry:
        """
        Store a journal entry and schedule its analysis.

        Returns as soon as the entry is written. A repeated idempotency key
        returns the existing entry and schedules nothing.

        Raises:
            ValidationError: If text is empty
        """
        entry, created = self._entries.create(text, linked_goal_ids, idempotency_key)
        if created:
            try:
                self._queue.enqueue(entry.id, provider)
            except Exception as e:
                # Entry is saved; list_pending_analysis() will surface it
                logger.error("Failed to enqueue analysis of %s: %s", entry.id, e)
        return entry

    def list_entries(
        self,
        goal_id: Optional[str] = None,
        since: Optional[str] = None,
        until: Optional[str] = None,
        limit: int = 50,
    ) -> list[Entry]:
        """
        List entries newest first with at most the latest interpretation.

        Args:
            goal_id: Only entries linked to this goal
            since: Include entries on or after this date (ISO date or P3D style)
            until: Include entries before this date
            limit: Maximum results
        """
        return self._entries.list_entries(goal_id=goal_id, since=since, until=until, limit=limit)

    def get_entry(self, entry_id: str) -> Entry:
        """
        Get an entry with all interpretations, newest first.

        Raises:
            NotFoundError: If the entry does not exist
        """
        entry = self._entries.get_with_interpretations(entry_id)
        if entry is None:
            raise NotFoundError(f"Entry not found: {entry_id}")
        return entry

    def adjacent_entries(self, entry_id: str) -> dict[str, Optional[str]]:
        """Ids of the previous and next entries, for navigation."""
        if self._entries.get(entry_id) is None:
            raise NotFoundError(f"Entry not found: {entry_id}")
        prev_id, next_id = self._entries.adjacent_ids(entry_id)
        return {"previous": prev_id, "next": next_id}

    def list_linked_entries(self, goal_id: str, limit: int = 5) -> list[Entry]:
        """Recent entries where analysis detected activity for a goal."""
        return self._entries.list_linked(goal_id, limit=limit)

    # -------------------------------------------------------------------------
    # Analysis
    # -------------------------------------------------------------------------

    def reanalyze(
        self,
        entry_id: str,
        provider: Optional[str] = None,
        *,
        background: bool = False,
    ) -> Optional[Interpretation]:
        """
        Analyze an entry again, appending a new interpretation.

        Runs synchronously and raises on failure. With background=True the
        entry is queued instead and None is returned.

        Raises:
            NotFoundError: If the entry does not exist
            ConfigurationError: Unknown provider or missing credentials
            ProviderCallError: Analysis failed after retries
        """
        if background:
            if self._entries.get(entry_id) is None:
                raise NotFoundError(f"Entry not found: {entry_id}")
            self._queue.enqueue(entry_id, provider)
            return None
        return self._executor.analyze(entry_id, provider, throw_on_error=True)

    def list_pending_analysis(self, limit: int = 20) -> list[Entry]:
        """Entries that have no interpretation yet, newest first."""
        return self._entries.list_pending_analysis(limit=limit)

    def process_pending(
        self,
        limit: int = 20,
        provider: Optional[str] = None,
        concurrency: int = DEFAULT_BATCH_CONCURRENCY,
    ) -> dict:
        """
        Analyze entries that have no interpretation, bypassing the queue.

        This is the recovery path after a restart or persistent failure.

        Returns:
            Dict with: processed (int), failed (list of entry ids)
        """
        pending = [e.id for e in self._entries.list_pending_analysis(limit=limit)]
        if not pending:
            return {"processed": 0, "failed": []}
        logger.info("Processing %d pending entries", len(pending))
        failed = self._executor.analyze_many(pending, provider, concurrency=concurrency)
        return {"processed": len(pending) - len(failed), "failed": failed}

    def analyze_batch(
        self,
        entry_ids: list[str],
        provider: Optional[str] = None,
        concurrency: int = DEFAULT_BATCH_CONCURRENCY,
    ) -> list[str]:
        """Reanalyze specific entries concurrently; returns failed ids."""
        return self._executor.analyze_many(entry_ids, provider, concurrency=concurrency)

    def queue_status(self) -> dict:
        """Operational snapshot of the analysis queue."""
        return self._queue.status()

    def clear_queue(self) -> int:
        """Drop all queued analysis jobs; returns how many were dropped."""
        return self._queue.clear()

    def wait_for_analysis(self, timeout: Optional[float] = None) -> bool:
        """Block until the analysis queue drains. False on timeout."""
        return self._queue.wait_until_idle(timeout)

    # -------------------------------------------------------------------------
    # Goals and activity
    # -------------------------------------------------------------------------

    def add_goal(
        self,
        name: str,
        kind: GoalKind | str = GoalKind.HABIT_BUNDLE,
        **fields,
    ) -> Goal:
        """Create an active goal. See GoalStore.add_goal for fields."""
        return self._goals.add_goal(name, kind, **fields)

    def get_goal(self, goal_id: str) -> Goal:
        goal = self._goals.get(goal_id)
        if goal is None:
            raise NotFoundError(f"Goal not found: {goal_id}")
        return goal

    def list_goals(self, status: Optional[GoalStatus | str] = None) -> list[Goal]:
        return self._goals.list_goals(status)

    def set_goal_status(self, goal_id: str, status: GoalStatus | str) -> Goal:
        return self._goals.set_status(goal_id, status)

    def add_phase(self, goal_id: str, name: str, **fields) -> Phase:
        """Add a phase and make it the goal's current phase."""
        return self._goals.add_phase(goal_id, name, **fields)

    def daily_activity(
        self,
        since: Optional[str] = None,
        until: Optional[str] = None,
        goal_id: Optional[str] = None,
    ) -> list[DailyActivity]:
        """Per-day activity records, ordered by day."""
        return self._aggregator.list_activity(since=since, until=until, goal_id=goal_id)

    # -------------------------------------------------------------------------
    # Reframes and weekly review
    # -------------------------------------------------------------------------

    def active_reframes(
        self,
        goal_id: Optional[str] = None,
        limit: int = 10,
    ) -> dict[str, list[Reframe]]:
        """
        The latest reframes, grouped by the goals their entries link to.

        A reframe on an entry linked to two goals appears under both;
        one on an entry with no linked goals appears under none.

        Args:
            goal_id: Only reframes on entries linked to this goal
            limit: How many of the newest reframes to consider
        """
        grouped: dict[str, list[Reframe]] = {}
        for reframe in self._entries.list_reframes(goal_id=goal_id, limit=limit):
            for linked_id in reframe.linked_goal_ids:
                grouped.setdefault(linked_id, []).append(reframe)
        return grouped

    def reframe_history(self, goal_id: str, limit: int = 20) -> list[Reframe]:
        """Reframes raised on entries linked to a goal, newest first."""
        return self._entries.list_reframes(goal_id=goal_id, limit=limit)

    def weekly_review(self, week_of=None) -> list[WeeklyReview]:
        """
        Per-goal review of one Sunday-to-Saturday week, for each active goal.

        Args:
            week_of: Any day in the week (date, timestamp, ISO date or
                duration string such as P1W); default is the current week

        Returns:
            One WeeklyReview per active goal, in goal creation order
        """
        goals = self._goals.list_active()
        if not goals:
            return []
        start = week_start(week_of)
        end = start + timedelta(days=7)
        previous = start - timedelta(days=7)

        activity = self._aggregator.list_activity(since=start.isoformat(), until=end.isoformat())
        previous_activity = self._aggregator.list_activity(
            since=previous.isoformat(), until=start.isoformat()
        )
        entries = self._entries.list_entries(
            since=start.isoformat(), until=end.isoformat(), limit=None
        )
        return [
            review_goal(goal, start, activity, previous_activity, entries)
            for goal in goals
        ]

    def momentum_trends(self, week_of=None) -> dict[str, MomentumTrend]:
        """Week-over-week trend for each active goal."""
        return {r.goal_id: r.momentum_trend for r in self.weekly_review(week_of)}

    # -------------------------------------------------------------------------
    # Export
    # -------------------------------------------------------------------------

    def export_data(self) -> dict:
        """
        Export goals, entries with all interpretations, and daily activity.

        Returns:
            Dict in compass-export format (version 1)
        """
        goals = []
        for goal in self._goals.list_goals():
            data = goal.to_dict()
            data["phases"] = [p.to_dict() for p in self._goals.list_phases(goal.id)]
            goals.append(data)
        return {
            "format": EXPORT_FORMAT,
            "version": EXPORT_VERSION,
            "exported_at": datetime.now(timezone.utc).isoformat(),
            "goals": goals,
            "entries": [e.to_dict() for e in self._entries.iter_all()],
            "daily_activity": [r.to_dict() for r in self._aggregator.list_activity()],
        }

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self, timeout: Optional[float] = 5.0) -> None:
        """
        Stop the worker and close the stores.

        Jobs still queued are abandoned; their entries remain pending.
        """
        if getattr(self, "_queue", None) is not None:
            pending = len(self._queue)
            self._queue.stop(timeout)
            if pending:
                logger.info("Closing with %d analysis jobs still queued", pending)
        for name in ("_entries", "_goals", "_aggregator"):
            store = getattr(self, name, None)
            if store is not None:
                store.close()
        if getattr(self, "_ops_log_handler", None) is not None:
            remove_ops_log(self._ops_log_handler)
            self._ops_log_handler = None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - close resources."""
        self.close()
        return False
