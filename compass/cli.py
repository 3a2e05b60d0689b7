"""
CLI interface for the compass journal.

Usage:
    compass add "Did 30 min French today" --goal french
    compass list --since P1W
    compass show <entry-id>
    compass pending --process
    compass review --week P1W
"""

import json
import os
import sys
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .api import Journal
from .errors import CompassError, log_exception
from .logging_config import configure_quiet_mode, enable_debug_mode
from .types import Entry, Interpretation, utc_day


# Configure quiet mode by default (suppress verbose library output)
# Set COMPASS_VERBOSE=1 to enable debug mode via environment
if os.environ.get("COMPASS_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"compass {version('compass-journal')}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _store_callback(value: Optional[Path]):
    global _store_override
    if value is not None:
        _store_override = value


app = typer.Typer(
    name="compass",
    help="Journal with asynchronous AI analysis against your goals.",
    no_args_is_help=True,
    rich_markup_mode=None,
)
goal_app = typer.Typer(help="Manage tracked goals.", no_args_is_help=True)
phase_app = typer.Typer(help="Manage goal phases.", no_args_is_help=True)
app.add_typer(goal_app, name="goal")
app.add_typer(phase_app, name="phase")


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="COMPASS_STORE_PATH",
        help="Path to the store directory",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Journal with asynchronous AI analysis against your goals."""


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

StoreOption = Annotated[
    Optional[Path],
    typer.Option(
        "--store", "-s",
        envvar="COMPASS_STORE_PATH",
        help="Path to the store directory (default: ~/.compass/)"
    )
]

LimitOption = Annotated[
    int,
    typer.Option(
        "--limit", "-n",
        help="Maximum results to return"
    )
]

ProviderOption = Annotated[
    Optional[str],
    typer.Option(
        "--provider", "-p",
        help="AI provider: claude, openai, gemini or ollama (default: configured)"
    )
]

SinceOption = Annotated[
    Optional[str],
    typer.Option(
        "--since",
        help="Only items on or after this date (2026-01-15) or within a duration (P1W)"
    )
]

UntilOption = Annotated[
    Optional[str],
    typer.Option(
        "--until",
        help="Only items before this date or duration"
    )
]


def _get_journal(store: Optional[Path], *, autostart_worker: bool = True) -> Journal:
    """Open the journal, handling errors gracefully."""
    import atexit

    actual_store = store if store is not None else _store_override
    try:
        journal = Journal(actual_store, autostart_worker=autostart_worker)
    except Exception as e:
        log_exception(e, "open store")
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    atexit.register(journal.close)
    return journal


def _fail(e: Exception, context: str) -> None:
    """Log the traceback, print a one-line error and exit 1."""
    log_path = log_exception(e, context)
    typer.echo(f"Error: {e}", err=True)
    if not isinstance(e, CompassError):
        typer.echo(f"Details in {log_path}", err=True)
    raise typer.Exit(1)


# -----------------------------------------------------------------------------
# Output Formatting
# -----------------------------------------------------------------------------

def _format_interpretation(interp: Interpretation) -> str:
    lines = [f"  [{interp.provider}] momentum: {interp.momentum.value}"]
    for goal_id, level in interp.detected_activity.items():
        lines.append(f"    {goal_id}: {level.value}")
    if interp.risk_flags:
        lines.append(f"    risks: {', '.join(interp.risk_flags)}")
    if interp.suggested_adjustments:
        lines.append(f"    suggestion: {interp.suggested_adjustments}")
    if interp.reframe_type:
        lines.append(f"    reframe: {interp.reframe_type.value}")
        if interp.reframe_reason:
            lines.append(f"      why: {interp.reframe_reason}")
        if interp.reframe_suggestion:
            lines.append(f"      consider: {interp.reframe_suggestion}")
    return "\n".join(lines)


def _format_entry_line(entry: Entry) -> str:
    """One-line summary: id date momentum text."""
    latest = entry.latest_interpretation
    state = latest.momentum.value if latest else "pending"
    text = " ".join(entry.text.split())
    if len(text) > 60:
        text = text[:57] + "..."
    return f"{entry.id}  {utc_day(entry.created_at)}  [{state}]  {text}"


def _echo_entries(entries: list[Entry]) -> None:
    if _get_json_output():
        typer.echo(json.dumps([e.to_dict() for e in entries], indent=2))
        return
    if not entries:
        typer.echo("No entries.")
        return
    for entry in entries:
        typer.echo(_format_entry_line(entry))


# -----------------------------------------------------------------------------
# Entry Commands
# -----------------------------------------------------------------------------

@app.command()
def add(
    text: Annotated[Optional[str], typer.Argument(help="Entry text, or '-' for stdin")] = None,
    goal: Annotated[Optional[list[str]], typer.Option(
        "--goal", "-g",
        help="Link the entry to a goal id (repeatable)"
    )] = None,
    key: Annotated[Optional[str], typer.Option(
        "--key", "-k",
        help="Idempotency key; resubmitting the same key returns the same entry"
    )] = None,
    provider: ProviderOption = None,
    no_wait: Annotated[bool, typer.Option(
        "--no-wait",
        help="Return immediately; unfinished analysis is picked up by 'compass pending --process'"
    )] = False,
    timeout: Annotated[float, typer.Option(
        "--timeout",
        help="Seconds to wait for analysis before returning"
    )] = 120.0,
    store: StoreOption = None,
):
    """
    Add a journal entry and analyze it.

    \b
    Examples:
        compass add "Did 30 min French today" -g french
        echo "Long run, felt great" | compass add -
    """
    if text is None or text == "-":
        if sys.stdin.isatty():
            typer.echo("Error: provide entry text or pipe it on stdin", err=True)
            raise typer.Exit(1)
        text = sys.stdin.read()

    journal = _get_journal(store)
    try:
        entry = journal.create_entry(text, goal, key, provider)
    except CompassError as e:
        _fail(e, "add")

    if not no_wait:
        if not journal.wait_for_analysis(timeout):
            typer.echo("Analysis still running; check later with 'compass show'", err=True)
    entry = journal.get_entry(entry.id)

    if _get_json_output():
        typer.echo(json.dumps(entry.to_dict(), indent=2))
        return
    typer.echo(_format_entry_line(entry))
    if entry.latest_interpretation:
        typer.echo(_format_interpretation(entry.latest_interpretation))


@app.command("list")
def list_cmd(
    goal: Annotated[Optional[str], typer.Option(
        "--goal", "-g",
        help="Only entries linked to this goal"
    )] = None,
    since: SinceOption = None,
    until: UntilOption = None,
    limit: LimitOption = 50,
    store: StoreOption = None,
):
    """List entries, newest first."""
    journal = _get_journal(store, autostart_worker=False)
    try:
        entries = journal.list_entries(goal_id=goal, since=since, until=until, limit=limit)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    _echo_entries(entries)


@app.command()
def show(
    entry_id: Annotated[str, typer.Argument(help="Entry id")],
    store: StoreOption = None,
):
    """Show an entry with all of its interpretations, newest first."""
    journal = _get_journal(store, autostart_worker=False)
    try:
        entry = journal.get_entry(entry_id)
        nav = journal.adjacent_entries(entry_id)
    except CompassError as e:
        _fail(e, "show")

    if _get_json_output():
        data = entry.to_dict()
        data["adjacent"] = nav
        typer.echo(json.dumps(data, indent=2))
        return

    typer.echo(f"id: {entry.id}")
    typer.echo(f"created: {entry.created_at}")
    if entry.linked_goal_ids:
        typer.echo(f"goals: {', '.join(entry.linked_goal_ids)}")
    typer.echo("")
    typer.echo(entry.text.strip())
    typer.echo("")
    if not entry.interpretations:
        typer.echo("(analysis pending)")
    for interp in entry.interpretations:
        typer.echo(f"{interp.created_at}")
        typer.echo(_format_interpretation(interp))
    if nav["previous"] or nav["next"]:
        typer.echo("")
        typer.echo(f"prev: {nav['previous'] or '-'}  next: {nav['next'] or '-'}")


@app.command()
def reanalyze(
    entry_id: Annotated[list[str], typer.Argument(help="Entry id(s) to analyze again")],
    provider: ProviderOption = None,
    concurrency: Annotated[int, typer.Option(
        "--concurrency", "-c",
        help="Parallel analyses when several ids are given"
    )] = 3,
    store: StoreOption = None,
):
    """Analyze entries again, adding a new interpretation to each."""
    journal = _get_journal(store, autostart_worker=False)
    if len(entry_id) > 1:
        failed = journal.analyze_batch(entry_id, provider, concurrency=concurrency)
        if _get_json_output():
            typer.echo(json.dumps({"failed": failed}))
        else:
            typer.echo(f"Analyzed {len(entry_id) - len(failed)} of {len(entry_id)} entries")
            for failed_id in failed:
                typer.echo(f"  failed: {failed_id}", err=True)
        if failed:
            raise typer.Exit(1)
        return

    try:
        interp = journal.reanalyze(entry_id[0], provider)
    except CompassError as e:
        _fail(e, "reanalyze")
    if _get_json_output():
        typer.echo(json.dumps(interp.to_dict(), indent=2))
    else:
        typer.echo(_format_interpretation(interp))


@app.command()
def pending(
    process: Annotated[bool, typer.Option(
        "--process",
        help="Analyze pending entries now"
    )] = False,
    provider: ProviderOption = None,
    concurrency: Annotated[int, typer.Option(
        "--concurrency", "-c",
        help="Parallel analyses"
    )] = 3,
    limit: LimitOption = 20,
    store: StoreOption = None,
):
    """
    List entries that have not been analyzed yet.

    \b
    Examples:
        compass pending              # Show what is waiting
        compass pending --process    # Analyze them now
    """
    journal = _get_journal(store, autostart_worker=False)
    if not process:
        _echo_entries(journal.list_pending_analysis(limit=limit))
        return

    result = journal.process_pending(limit=limit, provider=provider, concurrency=concurrency)
    if _get_json_output():
        typer.echo(json.dumps(result))
    else:
        typer.echo(f"Processed {result['processed']} entries")
        for failed_id in result["failed"]:
            typer.echo(f"  failed: {failed_id}", err=True)
    if result["failed"]:
        raise typer.Exit(1)


@app.command()
def activity(
    goal: Annotated[Optional[str], typer.Option(
        "--goal", "-g",
        help="Only this goal"
    )] = None,
    since: SinceOption = "P1W",
    until: UntilOption = None,
    store: StoreOption = None,
):
    """Show the highest activity level per goal per day."""
    journal = _get_journal(store, autostart_worker=False)
    try:
        records = journal.daily_activity(since=since, until=until, goal_id=goal)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    if _get_json_output():
        typer.echo(json.dumps([r.to_dict() for r in records], indent=2))
        return
    if not records:
        typer.echo("No activity recorded.")
        return
    for r in records:
        typer.echo(f"{r.day}  {r.goal_id}  {r.level.value}")


@app.command()
def reframes(
    goal: Annotated[Optional[str], typer.Option(
        "--goal", "-g",
        help="Full reframe history of this goal"
    )] = None,
    limit: Annotated[Optional[int], typer.Option(
        "--limit", "-n",
        help="Maximum reframes (default 10, or 20 with --goal)"
    )] = None,
    store: StoreOption = None,
):
    """Show reframe suggestions raised by recent analyses."""
    journal = _get_journal(store, autostart_worker=False)
    if goal:
        grouped = {goal: journal.reframe_history(goal, limit=limit or 20)}
    else:
        grouped = journal.active_reframes(limit=limit or 10)

    if _get_json_output():
        typer.echo(json.dumps(
            {goal_id: [r.to_dict() for r in items] for goal_id, items in grouped.items()},
            indent=2,
        ))
        return
    if not any(grouped.values()):
        typer.echo("No reframes.")
        return
    for goal_id, items in grouped.items():
        typer.echo(f"{goal_id}:")
        for r in items:
            typer.echo(f"  {utc_day(r.detected_at)}  {r.reframe_type.value}  (entry {r.entry_id})")
            if r.reason:
                typer.echo(f"    why: {r.reason}")
            if r.suggestion:
                typer.echo(f"    consider: {r.suggestion}")


@app.command()
def review(
    week: Annotated[Optional[str], typer.Option(
        "--week", "-w",
        help="Any day in the week to review (ISO date or duration, e.g. P1W)"
    )] = None,
    store: StoreOption = None,
):
    """Summarize the week (Sunday to Saturday, UTC) for each active goal."""
    journal = _get_journal(store, autostart_worker=False)
    try:
        reviews = journal.weekly_review(week)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    if _get_json_output():
        typer.echo(json.dumps([r.to_dict() for r in reviews], indent=2))
        return
    if not reviews:
        typer.echo("No active goals.")
        return
    typer.echo(f"Week of {reviews[0].week_start}")
    for r in reviews:
        typer.echo(
            f"{r.goal_id}  {r.momentum_trend.value}  "
            f"active {r.active_days}d (full {r.full_days}, partial {r.partial_days})  "
            f"entries {r.entry_count}"
        )
        if r.risk_flags:
            typer.echo(f"  risks: {', '.join(r.risk_flags)}")
        for adjustment in r.adjustments:
            typer.echo(f"  suggestion: {adjustment}")


# -----------------------------------------------------------------------------
# Goal Commands
# -----------------------------------------------------------------------------

@goal_app.command("add")
def goal_add(
    name: Annotated[str, typer.Argument(help="Goal name")],
    kind: Annotated[str, typer.Option(
        "--kind", "-k",
        help="habit_bundle, measurable_outcome or exploratory_track"
    )] = "habit_bundle",
    goal_id: Annotated[Optional[str], typer.Option(
        "--id", "-i",
        help="Goal id (default: generated)"
    )] = None,
    purpose: Annotated[Optional[str], typer.Option("--purpose")] = None,
    target_date: Annotated[Optional[str], typer.Option("--target-date")] = None,
    store: StoreOption = None,
):
    """Start tracking a goal."""
    journal = _get_journal(store, autostart_worker=False)
    try:
        goal = journal.add_goal(
            name, kind, goal_id=goal_id, purpose=purpose, target_date=target_date
        )
    except CompassError as e:
        _fail(e, "goal add")
    if _get_json_output():
        typer.echo(json.dumps(goal.to_dict(), indent=2))
    else:
        typer.echo(f"{goal.id}  {goal.name}  ({goal.kind.value})")


@goal_app.command("list")
def goal_list(
    status: Annotated[Optional[str], typer.Option(
        "--status",
        help="active, paused or archived"
    )] = None,
    store: StoreOption = None,
):
    """List goals."""
    journal = _get_journal(store, autostart_worker=False)
    try:
        goals = journal.list_goals(status)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    if _get_json_output():
        typer.echo(json.dumps([g.to_dict() for g in goals], indent=2))
        return
    if not goals:
        typer.echo("No goals.")
    for g in goals:
        phase = f"  phase: {g.current_phase.name}" if g.current_phase else ""
        typer.echo(f"{g.id}  {g.name}  [{g.status.value}]{phase}")


@goal_app.command("status")
def goal_status(
    goal_id: Annotated[str, typer.Argument(help="Goal id")],
    status: Annotated[str, typer.Argument(help="active, paused or archived")],
    store: StoreOption = None,
):
    """Pause, resume or archive a goal."""
    journal = _get_journal(store, autostart_worker=False)
    try:
        goal = journal.set_goal_status(goal_id, status)
    except CompassError as e:
        _fail(e, "goal status")
    typer.echo(f"{goal.id}  [{goal.status.value}]")


@phase_app.command("add")
def phase_add(
    goal_id: Annotated[str, typer.Argument(help="Goal id")],
    name: Annotated[str, typer.Argument(help="Phase name")],
    frequency: Annotated[Optional[str], typer.Option(
        "--frequency", "-f",
        help="Expected frequency, e.g. '3x per week'"
    )] = None,
    intensity: Annotated[Optional[int], typer.Option(
        "--intensity",
        help="Intensity from 1 to 5"
    )] = None,
    start_date: Annotated[Optional[str], typer.Option("--start")] = None,
    end_date: Annotated[Optional[str], typer.Option("--end")] = None,
    description: Annotated[Optional[str], typer.Option("--description", "-d")] = None,
    store: StoreOption = None,
):
    """Add a phase to a goal; it becomes the goal's current phase."""
    journal = _get_journal(store, autostart_worker=False)
    try:
        phase = journal.add_phase(
            goal_id, name,
            description=description,
            start_date=start_date,
            end_date=end_date,
            expected_frequency=frequency,
            intensity=intensity,
        )
    except CompassError as e:
        _fail(e, "phase add")
    if _get_json_output():
        typer.echo(json.dumps(phase.to_dict(), indent=2))
    else:
        typer.echo(f"{phase.id}  {phase.name}  (goal {goal_id})")


# -----------------------------------------------------------------------------
# Store Commands
# -----------------------------------------------------------------------------

@app.command()
def config(
    provider: Annotated[Optional[str], typer.Option(
        "--provider", "-p",
        help="Set the default AI provider"
    )] = None,
    api_key: Annotated[Optional[str], typer.Option(
        "--api-key",
        help="Store an API key as PROVIDER=KEY (empty KEY clears it)"
    )] = None,
    store: StoreOption = None,
):
    """
    Show or change store configuration.

    \b
    Examples:
        compass config                          # Show settings
        compass config --provider openai        # Default provider
        compass config --api-key claude=sk-...  # Store a key
    """
    journal = _get_journal(store, autostart_worker=False)
    cfg = journal.config
    try:
        if provider is not None:
            cfg.set_default_provider(provider or None)
        if api_key is not None:
            if "=" not in api_key:
                typer.echo("Error: use --api-key PROVIDER=KEY", err=True)
                raise typer.Exit(1)
            name, key = api_key.split("=", 1)
            cfg.set_api_key(name, key or None)
    except CompassError as e:
        _fail(e, "config")

    default = cfg.resolve_default_provider().value
    info = {
        "store": str(cfg.path),
        "config_file": str(cfg.config_path),
        "default_provider": default,
        "credentials": {
            name: cfg.resolve_credential(name) is not None
            for name in ("claude", "openai", "gemini")
        },
        "analysis": {
            "max_attempts": cfg.analysis.max_attempts,
            "backoff_base": cfg.analysis.backoff_base,
        },
        "queue": {
            "max_attempts": cfg.queue.max_attempts,
            "backoff_base": cfg.queue.backoff_base,
            "job_pause": cfg.queue.job_pause,
        },
    }
    if _get_json_output():
        typer.echo(json.dumps(info, indent=2))
        return
    typer.echo(f"store: {info['store']}")
    typer.echo(f"config: {info['config_file']}")
    typer.echo(f"provider: {default}")
    for name, present in info["credentials"].items():
        typer.echo(f"  {name} key: {'set' if present else 'missing'}")


@app.command()
def export(
    output: Annotated[str, typer.Option(
        "--output", "-o",
        help="Output file (default: stdout)"
    )] = "-",
    store: StoreOption = None,
):
    """Export goals, entries, interpretations and daily activity as JSON."""
    journal = _get_journal(store, autostart_worker=False)
    data = journal.export_data()
    text = json.dumps(data, indent=2, ensure_ascii=False)
    if output == "-":
        typer.echo(text)
    else:
        Path(output).write_text(text + "\n", encoding="utf-8")
        typer.echo(f"Exported {len(data['entries'])} entries to {output}", err=True)


def main():
    try:
        app()
    except SystemExit:
        raise
    except KeyboardInterrupt:
        typer.echo("\nInterrupted", err=True)
        raise SystemExit(130)
    except Exception as e:
        log_path = log_exception(e, " ".join(sys.argv[1:]))
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details in {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
