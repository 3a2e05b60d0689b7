"""
Analysis of a single journal entry.

The executor gathers the entry and the active goals, calls a provider
with a closed per-call schema, stores the resulting interpretation and
folds detected activity into the daily records.

Provider calls are retried here, inside one analysis, independently of
the job queue's own retries: this loop covers "one provider call failed",
the queue covers "the job never finished".
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Iterable, Optional

from .aggregator import ActivityAggregator
from .entry_store import EntryStore
from .errors import ConfigurationError, NotFoundError, ProviderCallError
from .goal_store import GoalStore
from .prompts import ANALYSIS_SYSTEM_PROMPT, build_analysis_prompt
from .providers.base import CREDENTIAL_FREE, create_provider, parse_provider
from .schema import build_analysis_schema, validate_object
from .types import AnalysisResult, Interpretation, ProviderName

logger = logging.getLogger(__name__)

# Fan-out for explicit multi-entry reanalysis
DEFAULT_BATCH_CONCURRENCY = 3


class AnalysisExecutor:
    """
    Runs the analysis of one entry end to end.

    Args:
        entries: Entry store (entries are read, interpretations appended)
        goals: Goal store (active goals and their current phases)
        aggregator: Daily activity aggregator
        settings: Object providing resolve_default_provider(),
            resolve_credential(provider) and provider_params(provider);
            normally the store's StoreConfig
        provider_factory: Callable(name, api_key=..., params=...) returning
            a StructuredOutputProvider
        max_attempts: Provider calls per analysis before giving up
        backoff_base: Wait ``backoff_base ** n`` seconds after failed call n
        sleep: Sleep function (injectable for tests)
    """

    def __init__(
        self,
        entries: EntryStore,
        goals: GoalStore,
        aggregator: ActivityAggregator,
        settings,
        *,
        provider_factory: Callable = create_provider,
        max_attempts: int = 3,
        backoff_base: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._entries = entries
        self._goals = goals
        self._aggregator = aggregator
        self._settings = settings
        self._provider_factory = provider_factory
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self._sleep = sleep

    def resolve_provider(self, provider: "str | ProviderName | None" = None) -> ProviderName:
        """Explicit provider, else the configured default, else claude."""
        if provider:
            return parse_provider(provider)
        return parse_provider(self._settings.resolve_default_provider())

    def _provider_label(self, provider) -> str:
        """Provider name to record without requiring it to be valid."""
        try:
            return self.resolve_provider(provider).value
        except ConfigurationError:
            return str(provider).strip().lower()

    def analyze(
        self,
        entry_id: str,
        provider: "str | ProviderName | None" = None,
        *,
        throw_on_error: bool = False,
    ) -> Optional[Interpretation]:
        """
        Analyze one entry and store the interpretation.

        Args:
            entry_id: Entry to analyze
            provider: Backend to use (default: configured default)
            throw_on_error: Re-raise failures instead of logging them.
                Queue jobs and user-triggered reanalysis set this.

        Returns:
            The new interpretation, or None if analysis failed and
            throw_on_error is False

        Raises (only with throw_on_error):
            NotFoundError: Unknown entry
            ConfigurationError: Unknown provider or missing credentials
            ProviderCallError: Provider calls exhausted their retries
        """
        try:
            return self._analyze(entry_id, provider)
        except Exception as e:
            logger.error("Analysis of %s failed: %s: %s", entry_id, type(e).__name__, e)
            if throw_on_error:
                raise
            # Entry is already stored; the pending-analysis query finds it again
            return None

    def _analyze(self, entry_id: str, provider) -> Interpretation:
        entry = self._entries.get(entry_id)
        if entry is None:
            raise NotFoundError(f"Entry not found: {entry_id}")

        goals = self._goals.list_active()
        if not goals:
            # No provider call, so the provider name is recorded even if unknown
            logger.info("No active goals; neutral interpretation for %s", entry_id)
            return self._entries.add_interpretation(
                entry.id, self._provider_label(provider), AnalysisResult.neutral()
            )

        name = self.resolve_provider(provider)
        api_key = self._settings.resolve_credential(name)
        if api_key is None and name not in CREDENTIAL_FREE:
            raise ConfigurationError(
                f"No API key for provider '{name.value}'. "
                f"Store one with: compass config --api-key {name.value}=KEY"
            )
        client = self._provider_factory(
            name, api_key=api_key, params=self._settings.provider_params(name)
        )

        schema = build_analysis_schema(g.id for g in goals)
        user_prompt = build_analysis_prompt(entry.text, goals)
        data = self._call_with_retry(client, name, entry_id, user_prompt, schema)
        result = AnalysisResult.from_dict(data)

        interpretation = self._entries.add_interpretation(entry.id, name.value, result)
        self._aggregator.merge_day(entry.created_at, result.detected_activity)
        logger.info(
            "Analyzed %s with %s (momentum=%s)",
            entry_id, name.value, result.momentum.value,
        )
        return interpretation

    def _call_with_retry(
        self,
        client,
        name: ProviderName,
        entry_id: str,
        user_prompt: str,
        schema: dict,
    ) -> dict:
        """Call the provider up to max_attempts times with exponential backoff."""
        last_error: Optional[ProviderCallError] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                logger.debug(
                    "Calling %s for %s (attempt %d/%d)",
                    name.value, entry_id, attempt, self.max_attempts,
                )
                data = client.generate_structured_object(
                    ANALYSIS_SYSTEM_PROMPT, user_prompt, schema
                )
                validate_object(data, schema)
                return data
            except ProviderCallError as e:
                last_error = e
                logger.warning(
                    "Provider %s failed for %s (attempt %d/%d): %s",
                    name.value, entry_id, attempt, self.max_attempts, e,
                )
                if attempt < self.max_attempts:
                    self._sleep(self.backoff_base ** attempt)

        raise ProviderCallError(
            f"Analysis failed after {self.max_attempts} attempts: {last_error}",
            provider=name.value,
        ) from last_error

    def analyze_many(
        self,
        entry_ids: Iterable[str],
        provider: "str | ProviderName | None" = None,
        *,
        concurrency: int = DEFAULT_BATCH_CONCURRENCY,
    ) -> list[str]:
        """
        Analyze several entries concurrently, outside the job queue.

        Each entry is an independent attempt; one failure does not stop
        the rest.

        Returns:
            Ids of the entries that failed, in input order
        """
        ids = list(dict.fromkeys(entry_ids))
        if not ids:
            return []
        failed: set[str] = set()
        with ThreadPoolExecutor(
            max_workers=max(1, concurrency), thread_name_prefix="compass-batch"
        ) as pool:
            futures = {
                pool.submit(self.analyze, entry_id, provider, throw_on_error=True): entry_id
                for entry_id in ids
            }
            for future in as_completed(futures):
                try:
                    future.result()
                except Exception:
                    failed.add(futures[future])
        if failed:
            logger.warning("Batch analysis: %d of %d entries failed", len(failed), len(ids))
        return [entry_id for entry_id in ids if entry_id in failed]
