"""CLI smoke tests using typer's test runner.

Entries are analyzed against zero goals (or not at all), so no provider
is ever contacted.
"""

import json
import os
from pathlib import Path

import pytest
from typer.testing import CliRunner

from compass import Journal
from compass.cli import app

from tests.conftest import FakeProvider, FakeProviderFactory, analysis_response, make_config


@pytest.fixture
def runner():
    return CliRunner()


def _seed(*texts: str) -> list[str]:
    """Write entries to the default store without analyzing them."""
    with Journal(autostart_worker=False) as journal:
        return [journal.create_entry(text).id for text in texts]


class TestEntryCommands:
    """add, list, show, reanalyze."""

    def test_add_waits_for_analysis(self, runner):
        result = runner.invoke(app, ["add", "Did 30 min French today"])

        assert result.exit_code == 0, result.output
        assert "Did 30 min French today" in result.output
        assert "[none]" in result.output
        assert "momentum: none" in result.output

    def test_add_with_key_is_idempotent(self, runner):
        for _ in range(2):
            result = runner.invoke(app, ["add", "same note", "--key", "k1", "--no-wait"])
            assert result.exit_code == 0, result.output

        result = runner.invoke(app, ["--json", "list"])
        entries = json.loads(result.stdout)
        assert [e["id"] for e in entries] == ["k1"]

    def test_add_empty_text_fails(self, runner):
        result = runner.invoke(app, ["add", "   "])
        assert result.exit_code == 1

    def test_list_empty(self, runner):
        result = runner.invoke(app, ["list"])
        assert result.exit_code == 0
        assert "No entries." in result.output

    def test_list_bad_date(self, runner):
        result = runner.invoke(app, ["list", "--since", "yesterday-ish"])
        assert result.exit_code == 1

    def test_show(self, runner):
        first, second = _seed("first entry", "second entry")

        result = runner.invoke(app, ["show", second])

        assert result.exit_code == 0, result.output
        assert "second entry" in result.output
        assert "(analysis pending)" in result.output
        assert f"prev: {first}" in result.output

    def test_show_json(self, runner):
        (entry_id,) = _seed("only entry")
        result = runner.invoke(app, ["--json", "show", entry_id])
        data = json.loads(result.stdout)
        assert data["id"] == entry_id
        assert data["adjacent"] == {"previous": None, "next": None}

    def test_show_missing(self, runner):
        result = runner.invoke(app, ["show", "nope"])
        assert result.exit_code == 1

    def test_reanalyze(self, runner):
        (entry_id,) = _seed("rest day")
        result = runner.invoke(app, ["reanalyze", entry_id])

        assert result.exit_code == 0, result.output
        assert "[claude] momentum: none" in result.output

    def test_reanalyze_batch_reports_failures(self, runner):
        (entry_id,) = _seed("rest day")
        result = runner.invoke(app, ["--json", "reanalyze", entry_id, "missing"])

        assert result.exit_code == 1
        assert json.loads(result.stdout) == {"failed": ["missing"]}


class TestPendingCommand:
    """Listing and processing unanalyzed entries."""

    def test_pending_then_process(self, runner):
        _seed("one", "two")

        listed = runner.invoke(app, ["pending"])
        assert listed.exit_code == 0
        assert "one" in listed.output and "two" in listed.output

        processed = runner.invoke(app, ["pending", "--process"])
        assert processed.exit_code == 0, processed.output
        assert "Processed 2 entries" in processed.output

        after = runner.invoke(app, ["pending"])
        assert "No entries." in after.output


class TestGoalCommands:
    """goal add/list/status and phase add."""

    def test_goal_add_and_list(self, runner):
        result = runner.invoke(
            app, ["goal", "add", "Learn French", "--id", "french", "--kind", "exploratory_track"]
        )
        assert result.exit_code == 0, result.output
        assert "french  Learn French  (exploratory_track)" in result.output

        runner.invoke(app, ["phase", "add", "french", "Immersion", "--intensity", "4"])
        listed = runner.invoke(app, ["goal", "list"])
        assert "french  Learn French  [active]  phase: Immersion" in listed.output

    def test_goal_status(self, runner):
        runner.invoke(app, ["goal", "add", "Run", "--id", "run"])
        result = runner.invoke(app, ["goal", "status", "run", "paused"])

        assert result.exit_code == 0
        assert "[paused]" in result.output

    def test_bad_goal_kind(self, runner):
        result = runner.invoke(app, ["goal", "add", "Run", "--kind", "chore"])
        assert result.exit_code == 1

    def test_phase_intensity_validated(self, runner):
        runner.invoke(app, ["goal", "add", "Run", "--id", "run"])
        result = runner.invoke(app, ["phase", "add", "run", "Peak", "--intensity", "9"])
        assert result.exit_code == 1

    def test_activity_empty(self, runner):
        result = runner.invoke(app, ["activity"])
        assert result.exit_code == 0
        assert "No activity recorded." in result.output


class TestStoreCommands:
    """config and export."""

    def test_config_provider_and_key(self, runner):
        assert runner.invoke(app, ["config", "--provider", "openai"]).exit_code == 0
        assert runner.invoke(app, ["config", "--api-key", "openai=sk-test"]).exit_code == 0

        result = runner.invoke(app, ["--json", "config"])
        info = json.loads(result.stdout)
        assert info["default_provider"] == "openai"
        assert info["credentials"]["openai"] is True
        assert info["credentials"]["claude"] is False
        assert "sk-test" not in result.stdout

    def test_config_rejects_unknown_provider(self, runner):
        result = runner.invoke(app, ["config", "--provider", "mistral"])
        assert result.exit_code == 1

    def test_config_api_key_format(self, runner):
        result = runner.invoke(app, ["config", "--api-key", "sk-test"])
        assert result.exit_code == 1

    def test_export_to_file(self, runner, tmp_path):
        _seed("exported entry")
        out = tmp_path / "export.json"

        result = runner.invoke(app, ["export", "--output", str(out)])

        assert result.exit_code == 0, result.output
        data = json.loads(out.read_text())
        assert data["format"] == "compass-export"
        assert [e["text"] for e in data["entries"]] == ["exported entry"]


class TestReviewCommands:
    """reframes and review."""

    def _seed_reframe(self) -> str:
        provider = FakeProvider([lambda schema: analysis_response(
            schema,
            reframe_type="stagnation",
            reframe_reason="No runs in two weeks",
            reframe_suggestion="Drop to two runs a week",
        )])
        config = make_config(Path(os.environ["COMPASS_STORE_PATH"]))
        with Journal(config=config, provider_factory=FakeProviderFactory(provider),
                     autostart_worker=False) as journal:
            journal.add_goal("Run", goal_id="run")
            entry = journal.create_entry("skipped again", ["run"])
            journal.reanalyze(entry.id)
            return entry.id

    def test_reframes_empty(self, runner):
        result = runner.invoke(app, ["reframes"])
        assert result.exit_code == 0
        assert "No reframes." in result.output

    def test_reframes_grouped_by_goal(self, runner):
        entry_id = self._seed_reframe()

        result = runner.invoke(app, ["reframes"])

        assert result.exit_code == 0, result.output
        assert "run:" in result.output
        assert f"stagnation  (entry {entry_id})" in result.output
        assert "why: No runs in two weeks" in result.output

    def test_reframe_history_json(self, runner):
        entry_id = self._seed_reframe()

        result = runner.invoke(app, ["--json", "reframes", "--goal", "run"])

        data = json.loads(result.stdout)
        assert [r["entry_id"] for r in data["run"]] == [entry_id]
        assert data["run"][0]["reframe_type"] == "stagnation"

    def test_review_without_goals(self, runner):
        result = runner.invoke(app, ["review"])
        assert result.exit_code == 0
        assert "No active goals." in result.output

    def test_review_lists_each_goal(self, runner):
        runner.invoke(app, ["goal", "add", "Run", "--id", "run"])

        result = runner.invoke(app, ["review", "--week", "2026-03-04"])

        assert result.exit_code == 0, result.output
        assert "Week of 2026-03-01" in result.output
        assert "run  declining  active 0d" in result.output

    def test_review_bad_week(self, runner):
        result = runner.invoke(app, ["review", "--week", "someday"])
        assert result.exit_code == 1
