"""
Compass

A journal that analyzes each entry against your goals in the background,
using an LLM provider of your choice.

Quick Start:
    from compass import Journal

    with Journal() as journal:  # uses ~/.compass/
        goal = journal.add_goal("Learn French", "exploratory_track", goal_id="french")
        entry = journal.create_entry("Did 30 min French today", ["french"])
        journal.wait_for_analysis(timeout=60)
        print(journal.get_entry(entry.id).latest_interpretation)

CLI Usage:
    compass add "Did 30 min French today" -g french
    compass list --since P1W
    compass pending --process

Environment Variables:
    COMPASS_STORE_PATH       - Override default store location
    COMPASS_AI_PROVIDER      - Default provider (claude, openai, gemini, ollama)
    ANTHROPIC_API_KEY        - API key for Claude
    OPENAI_API_KEY           - API key for OpenAI
    GEMINI_API_KEY           - API key for Gemini
    OLLAMA_HOST              - Ollama server URL

Configuration is persisted in compass.toml within the store directory.
"""

from .api import Journal
from .errors import (
    CompassError,
    ConfigurationError,
    NotFoundError,
    ProviderCallError,
    ProviderConfigError,
    SchemaValidationError,
    ValidationError,
)
from .types import (
    ActivityLevel,
    DailyActivity,
    Entry,
    Goal,
    GoalKind,
    GoalStatus,
    Interpretation,
    MomentumSignal,
    Phase,
    ProviderName,
    ReframeType,
)

__version__ = "0.1.0"
__all__ = [
    "Journal",
    "Entry",
    "Interpretation",
    "Goal",
    "Phase",
    "DailyActivity",
    "ActivityLevel",
    "MomentumSignal",
    "ReframeType",
    "GoalKind",
    "GoalStatus",
    "ProviderName",
    "CompassError",
    "ConfigurationError",
    "NotFoundError",
    "ProviderCallError",
    "ProviderConfigError",
    "SchemaValidationError",
    "ValidationError",
]
