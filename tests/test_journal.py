"""Tests for the Journal API: ingestion, recovery and reanalysis."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from compass import Journal
from compass.errors import NotFoundError, ProviderCallError, ValidationError
from compass.providers.base import create_provider
from compass.review import week_start
from compass.types import ActivityLevel, MomentumSignal, MomentumTrend, ReframeType

from tests.conftest import FakeProvider, FakeProviderFactory, analysis_response, make_config


class TestCreateEntry:
    """Entries are saved at once and analysis is queued once."""

    def test_duplicate_key_enqueues_once(self, journal):
        """Scenario: the same idempotency key twice gives one entry, one job."""
        first = journal.create_entry("Did 30 min French today", [], "k1")
        second = journal.create_entry("Did 30 min French today", [], "k1")

        assert first.id == second.id == "k1"
        assert journal.queue_status()["depth"] == 1
        assert len(journal.list_entries()) == 1

    def test_create_returns_before_analysis(self, journal, fake_provider):
        journal.add_goal("French", goal_id="french")
        entry = journal.create_entry("Did 30 min French today", ["french"])

        assert fake_provider.call_count == 0
        assert journal.get_entry(entry.id).interpretations == []
        assert [j["entry_id"] for j in journal.queue_status()["jobs"]] == [entry.id]

    def test_requested_provider_is_queued(self, journal):
        journal.create_entry("text", provider="openai")
        assert journal.queue_status()["jobs"][0]["provider"] == "openai"

    def test_empty_text_fails_synchronously(self, journal):
        with pytest.raises(ValidationError):
            journal.create_entry("   ")
        assert journal.queue_status()["depth"] == 0

    def test_enqueue_failure_does_not_fail_create(self, journal):
        """The entry is durable even if scheduling fails; it shows up as pending."""
        with patch.object(journal.queue, "enqueue", side_effect=RuntimeError("queue down")):
            entry = journal.create_entry("saved anyway")

        assert journal.get_entry(entry.id).text == "saved anyway"
        assert [e.id for e in journal.list_pending_analysis()] == [entry.id]


class TestBackgroundAnalysis:
    """The worker analyzes queued entries end to end."""

    def test_entry_analyzed_by_worker(self, make_journal, fake_provider):
        journal = make_journal(autostart_worker=True)
        journal.add_goal("French", goal_id="french")

        entry = journal.create_entry("Did 30 min French today", ["french"])
        assert journal.wait_for_analysis(timeout=10)

        loaded = journal.get_entry(entry.id)
        assert len(loaded.interpretations) == 1
        assert loaded.latest_interpretation.detected_activity == {
            "french": ActivityLevel.PARTIAL
        }
        assert [r.goal_id for r in journal.daily_activity()] == ["french"]
        assert fake_provider.call_count == 1

    def test_persistent_failure_leaves_entry_pending(self, tmp_path, make_journal):
        provider = FakeProvider(fail_times=100)
        journal = make_journal(
            provider_factory=FakeProviderFactory(provider), autostart_worker=True
        )
        journal.add_goal("Run", goal_id="run")

        entry = journal.create_entry("ran 5k")
        assert journal.wait_for_analysis(timeout=10)

        # 3 queue attempts, each with 3 provider calls
        assert provider.call_count == 9
        assert [e.id for e in journal.list_pending_analysis()] == [entry.id]
        failed = journal.queue_status()["failed"]
        assert [(f["entry_id"], f["reason"]) for f in failed] == [(entry.id, "exhausted")]

    def test_missing_credentials_dropped_without_retry(self, tmp_path, make_journal, fake_provider):
        journal = make_journal(
            config=make_config(tmp_path / "store", openai="o-key"),
            autostart_worker=True,
        )
        journal.add_goal("Run", goal_id="run")

        journal.create_entry("ran 5k")
        assert journal.wait_for_analysis(timeout=10)

        failed = journal.queue_status()["failed"]
        assert failed[0]["reason"] == "not_retryable"
        assert failed[0]["attempts"] == 1
        assert fake_provider.call_count == 0

    def test_unreachable_ollama_retried(self, make_journal):
        journal = make_journal(provider_factory=create_provider, autostart_worker=True)
        journal.add_goal("Run", goal_id="run")

        with patch("requests.get", side_effect=requests.ConnectionError("refused")) as mock_get, \
             patch("requests.post") as mock_post:
            entry = journal.create_entry("ran 5k", provider="ollama")
            assert journal.wait_for_analysis(timeout=10)

        # 3 queue attempts, each with 3 provider calls
        assert mock_get.call_count == 9
        mock_post.assert_not_called()
        failed = journal.queue_status()["failed"]
        assert [(f["entry_id"], f["reason"], f["attempts"]) for f in failed] == [
            (entry.id, "exhausted", 3)
        ]
        assert [e.id for e in journal.list_pending_analysis()] == [entry.id]

    def test_missing_ollama_model_dropped_without_retry(self, make_journal):
        tags = MagicMock()
        tags.json.return_value = {"models": [{"name": "mistral:latest"}]}
        journal = make_journal(provider_factory=create_provider, autostart_worker=True)
        journal.add_goal("Run", goal_id="run")

        with patch("requests.get", return_value=tags) as mock_get:
            journal.create_entry("ran 5k", provider="ollama")
            assert journal.wait_for_analysis(timeout=10)

        assert mock_get.call_count == 1
        failed = journal.queue_status()["failed"]
        assert failed[0]["reason"] == "not_retryable"
        assert failed[0]["attempts"] == 1

    def test_zero_goals_neutral(self, make_journal, fake_provider):
        journal = make_journal(autostart_worker=True)
        entry = journal.create_entry("quiet day")
        assert journal.wait_for_analysis(timeout=10)

        interp = journal.get_entry(entry.id).latest_interpretation
        assert interp.detected_activity == {}
        assert interp.momentum is MomentumSignal.NONE
        assert fake_provider.call_count == 0


class TestReading:
    """Listing and fetching entries."""

    def test_get_entry_not_found(self, journal):
        with pytest.raises(NotFoundError):
            journal.get_entry("missing")

    def test_list_entries_shows_latest_interpretation(self, journal):
        journal.add_goal("Run", goal_id="run")
        entry = journal.create_entry("ran 5k", ["run"])
        journal.reanalyze(entry.id)
        latest = journal.reanalyze(entry.id)

        listed = journal.list_entries()[0]
        assert listed.interpretations == [latest]
        assert len(journal.get_entry(entry.id).interpretations) == 2

    def test_list_entries_goal_filter(self, journal):
        a = journal.create_entry("a", ["run"])
        journal.create_entry("b", ["french"])
        assert [e.id for e in journal.list_entries(goal_id="run")] == [a.id]

    def test_adjacent_entries(self, journal):
        a = journal.create_entry("a")
        b = journal.create_entry("b")
        assert journal.adjacent_entries(a.id) == {"previous": None, "next": b.id}
        with pytest.raises(NotFoundError):
            journal.adjacent_entries("missing")

    def test_list_linked_entries(self, journal, fake_provider):
        journal.add_goal("Run", goal_id="run")
        hit = journal.create_entry("ran 5k")
        journal.reanalyze(hit.id)
        fake_provider._responses.append(lambda schema: analysis_response(schema, level="none"))
        miss = journal.create_entry("nap")
        journal.reanalyze(miss.id)

        assert [e.id for e in journal.list_linked_entries("run")] == [hit.id]


class TestReanalyze:
    """User-triggered analysis surfaces failure."""

    def test_reanalyze_appends(self, tmp_path, make_journal):
        journal = make_journal(config=make_config(tmp_path / "store", claude="c", openai="o"))
        journal.add_goal("Run", goal_id="run")
        entry = journal.create_entry("ran 5k")

        first = journal.reanalyze(entry.id)
        second = journal.reanalyze(entry.id, "openai")

        interps = journal.get_entry(entry.id).interpretations
        assert [i.id for i in interps] == [second.id, first.id]
        assert [i.provider for i in interps] == ["openai", "claude"]

    def test_reanalyze_unknown_entry(self, journal):
        with pytest.raises(NotFoundError):
            journal.reanalyze("missing")
        with pytest.raises(NotFoundError):
            journal.reanalyze("missing", background=True)

    def test_reanalyze_raises_provider_failure(self, tmp_path, make_journal):
        journal = make_journal(provider_factory=FakeProviderFactory(FakeProvider(fail_times=10)))
        journal.add_goal("Run", goal_id="run")
        entry = journal.create_entry("ran 5k")

        with pytest.raises(ProviderCallError):
            journal.reanalyze(entry.id)

    def test_reanalyze_in_background(self, journal):
        entry = journal.create_entry("text")
        journal.clear_queue()

        assert journal.reanalyze(entry.id, "gemini", background=True) is None
        assert [(j["entry_id"], j["provider"]) for j in journal.queue_status()["jobs"]] == [
            (entry.id, "gemini")
        ]

    def test_lower_reanalysis_keeps_daily_maximum(self, journal, fake_provider):
        journal.add_goal("Run", goal_id="run")
        entry = journal.create_entry("long run")
        fake_provider._responses.extend([
            lambda schema: analysis_response(schema, level="full"),
            lambda schema: analysis_response(schema, level="partial"),
        ])

        journal.reanalyze(entry.id)
        journal.reanalyze(entry.id)

        assert [r.level for r in journal.daily_activity(goal_id="run")] == [ActivityLevel.FULL]
        latest = journal.get_entry(entry.id).latest_interpretation
        assert latest.detected_activity == {"run": ActivityLevel.PARTIAL}


class TestPendingRecovery:
    """The pending-analysis path recovers work the queue lost."""

    def test_pending_after_restart(self, tmp_path, make_journal):
        config = make_config(tmp_path / "store")
        journal = make_journal(config=config)
        entry = journal.create_entry("written before a crash")
        journal.close()

        reopened = make_journal(config=config)
        assert reopened.queue_status()["depth"] == 0
        assert [e.id for e in reopened.list_pending_analysis()] == [entry.id]

    def test_process_pending(self, journal):
        journal.add_goal("Run", goal_id="run")
        for text in ["a", "b", "c"]:
            journal.create_entry(text)
        journal.clear_queue()

        result = journal.process_pending()

        assert result == {"processed": 3, "failed": []}
        assert journal.list_pending_analysis() == []

    def test_process_pending_partial_failure(self, tmp_path, make_journal):
        provider = FakeProvider(fail_if=lambda prompt: "bad" in prompt)
        journal = make_journal(provider_factory=FakeProviderFactory(provider))
        journal.add_goal("Run", goal_id="run")
        journal.create_entry("good")
        bad = journal.create_entry("bad")

        result = journal.process_pending()

        assert result == {"processed": 1, "failed": [bad.id]}
        assert [e.id for e in journal.list_pending_analysis()] == [bad.id]

    def test_process_pending_nothing_to_do(self, journal):
        assert journal.process_pending() == {"processed": 0, "failed": []}

    def test_analyze_batch(self, journal):
        journal.add_goal("Run", goal_id="run")
        a = journal.create_entry("a")
        b = journal.create_entry("b")
        assert journal.analyze_batch([a.id, "missing", b.id]) == ["missing"]


def _reframe(kind: str, reason: str = "Runs keep slipping"):
    """Scripted response that raises a reframe."""
    return lambda schema: analysis_response(
        schema,
        reframe_type=kind,
        reframe_reason=reason,
        reframe_suggestion="Try a smaller weekly target",
    )


class TestReframes:
    """Reframes raised by analyses, grouped by linked goal."""

    def _seed(self, journal, fake_provider):
        journal.add_goal("Run", goal_id="run")
        journal.add_goal("French", goal_id="french")
        both = journal.create_entry("ran, skipped French", ["run", "french"])
        run_only = journal.create_entry("ran again", ["run"])
        unlinked = journal.create_entry("just a day")
        quiet = journal.create_entry("nothing notable", ["run"])
        fake_provider._responses.extend([
            _reframe("stagnation"),
            _reframe("phase_mismatch"),
            _reframe("exit_signal"),
        ])
        for entry in (both, run_only, unlinked, quiet):
            journal.reanalyze(entry.id)
        return both, run_only, unlinked

    def test_grouped_by_linked_goal_newest_first(self, journal, fake_provider):
        both, run_only, _ = self._seed(journal, fake_provider)

        grouped = journal.active_reframes()

        assert set(grouped) == {"run", "french"}
        assert [r.entry_id for r in grouped["run"]] == [run_only.id, both.id]
        assert [r.reframe_type for r in grouped["french"]] == [ReframeType.STAGNATION]
        first = grouped["french"][0]
        assert first.reason == "Runs keep slipping"
        assert first.suggestion == "Try a smaller weekly target"
        assert first.linked_goal_ids == ["run", "french"]

    def test_limit_applies_before_grouping(self, journal, fake_provider):
        """The newest reframe is on an entry with no linked goals."""
        self._seed(journal, fake_provider)
        assert journal.active_reframes(limit=1) == {}

    def test_goal_filter(self, journal, fake_provider):
        both, _, _ = self._seed(journal, fake_provider)

        grouped = journal.active_reframes(goal_id="french")

        assert [r.entry_id for r in grouped["french"]] == [both.id]
        assert [r.entry_id for r in grouped["run"]] == [both.id]

    def test_history_includes_superseded_interpretations(self, journal, fake_provider):
        both, _, _ = self._seed(journal, fake_provider)
        fake_provider._responses.append(_reframe("misalignment", "French no longer fits"))
        journal.reanalyze(both.id)

        history = journal.reframe_history("french")

        assert [r.reframe_type for r in history] == [
            ReframeType.MISALIGNMENT,
            ReframeType.STAGNATION,
        ]
        assert history[0].detected_at >= history[1].detected_at
        assert history[0].entry_created_at == both.created_at
        assert len(journal.reframe_history("run", limit=1)) == 1
        assert journal.reframe_history("unknown") == []


class TestWeeklyReview:
    """Per-goal summary of the current week."""

    def test_current_week(self, journal, fake_provider):
        journal.add_goal("Run", goal_id="run")
        journal.add_goal("French", goal_id="french")
        entry = journal.create_entry("ran 5k, knees sore", ["french"])
        fake_provider._responses.append(lambda schema: analysis_response(
            schema,
            detected_activity={"run": "full", "french": "none"},
            risk_flags=["knee pain", "knee pain", "overtraining"],
            suggested_adjustments="Rest a day",
        ))
        journal.reanalyze(entry.id)

        reviews = {r.goal_id: r for r in journal.weekly_review()}

        run = reviews["run"]
        assert run.week_start == week_start().isoformat()
        assert (run.active_days, run.full_days, run.partial_days) == (1, 1, 0)
        assert run.entry_count == 1
        assert run.momentum_trend is MomentumTrend.GROWING
        assert run.risk_flags == ["knee pain", "overtraining"]
        assert run.adjustments == ["Rest a day"]

        # Linked but not engaged: signals are collected, nothing is counted
        french = reviews["french"]
        assert (french.active_days, french.entry_count) == (0, 0)
        assert french.momentum_trend is MomentumTrend.DECLINING
        assert french.risk_flags == ["knee pain", "overtraining"]

        assert journal.momentum_trends() == {
            "run": MomentumTrend.GROWING,
            "french": MomentumTrend.DECLINING,
        }

    def test_unanalyzed_entries_ignored(self, journal):
        journal.add_goal("Run", goal_id="run")
        journal.create_entry("ran 5k", ["run"])

        review = journal.weekly_review()[0]
        assert review.entry_count == 0
        assert review.risk_flags == []

    def test_other_week_is_empty(self, journal):
        journal.add_goal("Run", goal_id="run")
        entry = journal.create_entry("ran 5k", ["run"])
        journal.reanalyze(entry.id)

        review = journal.weekly_review("2020-01-15")[0]
        assert review.week_start == "2020-01-12"
        assert review.active_days == 0
        assert review.entry_count == 0

    def test_no_active_goals(self, journal):
        journal.add_goal("Run", goal_id="run")
        journal.set_goal_status("run", "archived")
        assert journal.weekly_review() == []
        assert journal.momentum_trends() == {}


class TestGoalsAndExport:
    """Goal passthroughs and the JSON export."""

    def test_goal_lifecycle(self, journal):
        goal = journal.add_goal("Run", "habit_bundle", goal_id="run", purpose="Health")
        journal.add_phase("run", "Base", intensity=2)
        journal.set_goal_status("run", "paused")

        loaded = journal.get_goal("run")
        assert loaded.purpose == goal.purpose
        assert loaded.current_phase.name == "Base"
        assert [g.id for g in journal.list_goals("paused")] == ["run"]
        with pytest.raises(NotFoundError):
            journal.get_goal("missing")

    def test_export(self, journal):
        journal.add_goal("Run", goal_id="run")
        journal.add_phase("run", "Base")
        entry = journal.create_entry("ran 5k", ["run"])
        journal.reanalyze(entry.id)

        data = journal.export_data()

        assert data["format"] == "compass-export"
        assert data["version"] == 1
        assert data["goals"][0]["id"] == "run"
        assert [p["name"] for p in data["goals"][0]["phases"]] == ["Base"]
        assert data["entries"][0]["id"] == entry.id
        assert data["entries"][0]["interpretations"][0]["detected_activity"] == {"run": "partial"}
        assert data["daily_activity"][0]["level"] == "partial"


class TestLifecycle:
    """Opening and closing stores."""

    def test_context_manager(self, tmp_path, provider_factory):
        with Journal(tmp_path / "ctx", provider_factory=provider_factory,
                     autostart_worker=False) as journal:
            journal.create_entry("hello")
            assert (tmp_path / "ctx" / "compass.toml").exists()
            assert (tmp_path / "ctx" / "compass.db").exists()
        assert (tmp_path / "ctx" / "compass-ops.log").exists()

    def test_default_store_from_env(self, tmp_path, provider_factory):
        journal = Journal(provider_factory=provider_factory, autostart_worker=False)
        try:
            assert journal.store_path == (tmp_path / "default-store").resolve()
        finally:
            journal.close()
