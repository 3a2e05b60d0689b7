"""
Prompts for journal entry analysis.
"""

import json
from typing import Iterable

from .types import Goal


ANALYSIS_SYSTEM_PROMPT = """You read short personal journal entries and interpret them against the goals the writer is tracking.

You are an interpreter, not an enforcer. Describe what the entry shows; do not judge, praise, or scold.

How to evaluate each goal, by kind:
- habit_bundle: a set of recurring behaviors. "full" when the entry shows the habit done as intended, "partial" for a reduced or interrupted version, "none" when the entry does not mention it.
- measurable_outcome: a concrete result with a target. "full" for clear progress toward the target, "partial" for preparation or indirect work, "none" otherwise.
- exploratory_track: open-ended learning or investigation. "full" for deliberate exploration, "partial" for passing engagement, "none" otherwise.

When a goal has a current phase, judge the entry against that phase's expected frequency and intensity, not against an idealized version of the goal.

momentum_signal describes overall engagement across all goals: "none", "low", "medium" or "high".

risk_flags are short phrases for patterns worth watching (fatigue, repeated skipping, scope creep). Use an empty list when there are none.

suggested_adjustments is one or two sentences of tactical advice, or null.

Only set reframe_type when the goal itself may need reconsideration, not just the tactics:
- misalignment: the goal no longer matches what the writer says they care about
- stagnation: sustained effort with no visible movement
- over_optimization: the goal is crowding out other parts of life
- phase_mismatch: the current phase expects far more or less than the writer is doing
- exit_signal: the goal's exit criteria appear to be met, or the writer wants out
Otherwise set reframe_type, reframe_reason and reframe_suggestion to null.

Use neutral language. Respond with a single JSON object and nothing else."""


def _describe_goal(goal: Goal) -> str:
    lines = [f"- id: {goal.id}", f"  name: {goal.name}", f"  kind: {goal.kind.value}"]
    if goal.purpose:
        lines.append(f"  purpose: {goal.purpose}")
    if goal.success_signals:
        lines.append(f"  success signals: {goal.success_signals}")
    if goal.target_date:
        lines.append(f"  target date: {goal.target_date}")
    if goal.exit_criteria:
        lines.append(f"  exit criteria: {goal.exit_criteria}")
    phase = goal.current_phase
    if phase is not None:
        lines.append(f"  current phase: {phase.name}")
        if phase.description:
            lines.append(f"    description: {phase.description}")
        if phase.expected_frequency:
            lines.append(f"    expected frequency: {phase.expected_frequency}")
        if phase.intensity is not None:
            lines.append(f"    intensity: {phase.intensity}/5")
        if phase.start_date or phase.end_date:
            lines.append(
                f"    dates: {phase.start_date or '?'} to {phase.end_date or 'open'}"
            )
    return "\n".join(lines)


def build_analysis_prompt(text: str, goals: Iterable[Goal]) -> str:
    """
    Build the user prompt for one entry.

    Args:
        text: The journal entry text
        goals: Active goals, with their current phase attached

    The output contract repeats the exact goal ids so the model uses them
    verbatim as keys of detected_activity.
    """
    goals = list(goals)
    ids = [g.id for g in goals]
    goal_block = "\n".join(_describe_goal(g) for g in goals)
    return (
        f"Journal entry:\n\"\"\"\n{text.strip()}\n\"\"\"\n\n"
        f"Active goals:\n{goal_block}\n\n"
        f"Return detected_activity with exactly these keys: {json.dumps(ids)}.\n"
        "Each value is one of \"none\", \"partial\", \"full\"."
    )
