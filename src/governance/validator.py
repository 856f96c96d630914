"""
Validates a QueryIntent / filter map against the engagement model.

Checks performed:
  1. Every breakdown dimension exists in the model
  2. Every filter column is a known column of the engagement table
  3. Filter values are non-empty strings
  4. When live values are supplied, every filter value is a member of the
     live distinct-value set for its column (unresolved alias keys never
     reach SQL)
  5. A comparison names at least two subjects
"""
from __future__ import annotations

from typing import Mapping, Sequence

from src.copilot.intent import QueryIntent, IntentType
from src.governance.semantic_loader import load_engagement_model, EngagementModel


def validate_filters(
    filters: Mapping[str, Sequence[str]],
    model: EngagementModel | None = None,
    live_values: Mapping[str, Sequence[str]] | None = None,
) -> list[str]:
    """Return filter errors (empty list = filters are valid)."""
    if model is None:
        model = load_engagement_model()

    errors: list[str] = []
    known = model.known_columns()
    for column, values in filters.items():
        if column not in known:
            errors.append(f"Filter column '{column}' is not a column of '{model.table}'.")
            continue
        if not isinstance(values, (list, tuple)):
            errors.append(f"Filter '{column}' values must be a list.")
            continue
        if not values:
            errors.append(f"Filter '{column}' has an empty value list.")
            continue
        for v in values:
            if not isinstance(v, str) or not v.strip():
                errors.append(f"Filter '{column}' has an invalid/empty value: {v!r}")
        if live_values is not None and column in live_values:
            live = set(live_values[column])
            for v in values:
                if isinstance(v, str) and v not in live:
                    errors.append(f"Filter value {v!r} is not a known value of '{column}'.")
    return errors


def validate_intent(intent: QueryIntent, model: EngagementModel | None = None) -> list[str]:
    """Return a list of validation error messages (empty list = intent is valid)."""
    if model is None:
        model = load_engagement_model()

    errors: list[str] = []

    for dim_name in intent.breakdown_dimensions:
        if model.dimension(dim_name) is None:
            errors.append(
                f"Unknown dimension '{dim_name}'. "
                f"Allowed: {', '.join(model.get_dimension_names())}"
            )

    if intent.type == IntentType.BREAKDOWN and not intent.breakdown_dimensions:
        errors.append("Breakdown requested without a dimension.")

    if intent.type == IntentType.COMPARISON and len(intent.comparison_subjects()) < 2:
        errors.append("A comparison needs two programs, lessons or regions.")

    for entity in intent.entities:
        for v in entity.values:
            if not v.strip():
                errors.append(f"Entity '{entity.text}' resolved to an empty value.")

    return errors
