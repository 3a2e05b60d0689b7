"""
Structured-output schema for entry analysis.

The schema is rebuilt for every call from the ids of the goals that are
active at that moment. ``detected_activity`` is a closed object: the model
must return exactly those ids, no more and no fewer.

Schemas are plain JSON Schema dicts so they can be handed to any backend
unchanged. Output is checked locally against a pydantic model built for the
same goal set.
"""

from functools import lru_cache
from typing import Any, Iterable, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictStr, ValidationError, create_model

from .errors import SchemaValidationError
from .types import ActivityLevel, MomentumSignal, ReframeType


ACTIVITY_VALUES = [level.value for level in ActivityLevel]
MOMENTUM_VALUES = [signal.value for signal in MomentumSignal]
REFRAME_VALUES = [kind.value for kind in ReframeType]


def build_analysis_schema(goal_ids: Iterable[str]) -> dict:
    """
    Build the request-time schema for one analysis call.

    Args:
        goal_ids: Ids of the currently active goals (order is preserved)

    Returns:
        JSON Schema dict; every property is required and no extra
        properties are allowed at any level
    """
    ids = list(dict.fromkeys(goal_ids))
    activity = {
        "type": "object",
        "properties": {
            goal_id: {"type": "string", "enum": list(ACTIVITY_VALUES)}
            for goal_id in ids
        },
        "required": ids,
        "additionalProperties": False,
    }
    return {
        "type": "object",
        "properties": {
            "detected_activity": activity,
            "momentum_signal": {"type": "string", "enum": list(MOMENTUM_VALUES)},
            "risk_flags": {"type": "array", "items": {"type": "string"}},
            "suggested_adjustments": {"type": ["string", "null"]},
            "reframe_type": {
                "type": ["string", "null"],
                "enum": REFRAME_VALUES + [None],
            },
            "reframe_reason": {"type": ["string", "null"]},
            "reframe_suggestion": {"type": ["string", "null"]},
        },
        "required": [
            "detected_activity",
            "momentum_signal",
            "risk_flags",
            "suggested_adjustments",
            "reframe_type",
            "reframe_reason",
            "reframe_suggestion",
        ],
        "additionalProperties": False,
    }


def schema_goal_ids(schema: dict) -> list[str]:
    """Goal ids a schema built by build_analysis_schema accepts."""
    return list(schema["properties"]["detected_activity"]["required"])


# -----------------------------------------------------------------------------
# Validation models
# -----------------------------------------------------------------------------

ActivityValue = Literal[tuple(ACTIVITY_VALUES)]
MomentumValue = Literal[tuple(MOMENTUM_VALUES)]
ReframeValue = Literal[tuple(REFRAME_VALUES)]


class ClosedModel(BaseModel):
    """Rejects keys that are not declared fields."""

    model_config = ConfigDict(extra="forbid")


@lru_cache(maxsize=64)
def analysis_model(goal_ids: tuple[str, ...]) -> type[BaseModel]:
    """
    Pydantic model for one goal set, mirroring build_analysis_schema.

    Goal ids are arbitrary strings, so each becomes the alias of a
    positional field; validation matches keys by alias. Every field is
    required, the nullable ones included.
    """
    activity = create_model(
        "DetectedActivity",
        __base__=ClosedModel,
        **{
            f"goal_{i}": (ActivityValue, Field(alias=goal_id))
            for i, goal_id in enumerate(goal_ids)
        },
    )
    return create_model(
        "AnalysisOutput",
        __base__=ClosedModel,
        detected_activity=(activity, ...),
        momentum_signal=(MomentumValue, ...),
        risk_flags=(list[StrictStr], ...),
        suggested_adjustments=(Optional[StrictStr], ...),
        reframe_type=(Optional[ReframeValue], ...),
        reframe_reason=(Optional[StrictStr], ...),
        reframe_suggestion=(Optional[StrictStr], ...),
    )


def _error_path(loc: tuple) -> str:
    """JSON path for a pydantic error location: ("risk_flags", 1) -> $.risk_flags[1]."""
    return "$" + "".join(
        f"[{part}]" if isinstance(part, int) else f".{part}" for part in loc
    )


def validate_object(data: Any, schema: dict) -> None:
    """
    Check model output against a schema from ``build_analysis_schema``.

    Raises:
        SchemaValidationError: naming the first offending JSON path
    """
    model = analysis_model(tuple(schema_goal_ids(schema)))
    try:
        model.model_validate(data)
    except ValidationError as e:
        errors = e.errors()
        first = errors[0]
        message = first["msg"]
        if len(errors) > 1:
            message += f" (and {len(errors) - 1} more)"
        raise SchemaValidationError(message, _error_path(first["loc"])) from e
