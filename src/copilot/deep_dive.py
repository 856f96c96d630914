"""
Deep dives and empty-result diagnostics.

A deep dive is a pre-built follow-up analysis offered next to an answer:

  quarterly   funnel per quarter (trend), keeps program / region filters
  assignment  customer counts by assignment status x spend tier
  regional    funnel per region, keeps program / quarter filters

Options are picked from the question's context (time, assignment / tier,
region words), at most three.  When a query returns no rows, the
diagnostics here count rows per filter to tell the user which filter
matched nothing.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, asdict
from typing import Any, Callable, Mapping, Sequence

from src.copilot.intent import IntentType, QueryIntent, QueryPlan
from src.copilot.sql_generator import (
    build_filters,
    build_grouped_count_sql,
    build_breakdown_sql,
    build_filter_count_sql,
    build_trend_sql,
    describe_intent,
)
from src.governance.semantic_loader import load_engagement_model, EngagementModel
from src.core.logging import get_logger

logger = get_logger(__name__)

_TIME_CONTEXT = re.compile(r"\b(?:q[1-4]|quarters?|quarterly|time|trends?|monthly|yearly|month|year)\b", re.IGNORECASE)
_ASSIGNMENT_CONTEXT = re.compile(r"\b(?:assignment|assigned|spend|tiers?|status)\b", re.IGNORECASE)
_REGIONAL_CONTEXT = re.compile(r"\b(?:regions?|regional|country|countries|geographic|geo)\b", re.IGNORECASE)


@dataclass(frozen=True)
class DeepDiveOption:
    id: str
    title: str
    description: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


QUARTERLY = DeepDiveOption(
    id="quarterly",
    title="Quarterly Deep-Dive",
    description="View quarterly trends across deliveries, opens, clicks, and adoptions",
)
ASSIGNMENT = DeepDiveOption(
    id="assignment",
    title="Assignment Status Deep-Dive",
    description="Explore assignment status distribution with spend tier breakdown",
)
REGIONAL = DeepDiveOption(
    id="regional",
    title="Regional Deep-Dive",
    description="Compare performance across different regions",
)

DEEP_DIVES: dict[str, DeepDiveOption] = {o.id: o for o in (QUARTERLY, ASSIGNMENT, REGIONAL)}


def suggest_deep_dives(intent: QueryIntent) -> list[DeepDiveOption]:
    """Deep dives relevant to *intent*, at most three."""
    text = intent.text
    options: list[DeepDiveOption] = []
    if intent.time_filter is not None or _TIME_CONTEXT.search(text):
        options.append(QUARTERLY)
    if _ASSIGNMENT_CONTEXT.search(text) or {"assignment_status", "tier"} & set(intent.breakdown_dimensions):
        options.append(ASSIGNMENT)
    if intent.of_kind("region") or _REGIONAL_CONTEXT.search(text):
        options.append(REGIONAL)
    if not options and intent.type in (IntentType.FUNNEL, IntentType.COMPARISON):
        options = [QUARTERLY, REGIONAL]
    return options[:3]


def build_deep_dive_plan(kind: str, intent: QueryIntent, model: EngagementModel | None = None) -> QueryPlan:
    """QueryPlan for one deep dive, carrying the intent's filters.

    Raises
    ------
    KeyError
        For an unknown deep-dive id.
    """
    if model is None:
        model = load_engagement_model()
    option = DEEP_DIVES[kind]
    filters = build_filters(intent, model)
    summary = describe_intent(intent, model)

    if kind == "quarterly":
        filters.pop(model.column("quarter"), None)
        sql = build_trend_sql("quarter", filters, model)
        visualization, dimension, intent_type = "trend", "period", IntentType.TREND
    elif kind == "regional":
        filters.pop(model.column("region"), None)
        sql = build_breakdown_sql("region", filters, model)
        visualization, dimension, intent_type = "dimensional_funnel", "region", IntentType.BREAKDOWN
    else:
        sql = build_grouped_count_sql(["assignment_status", "tier"], filters, model)
        visualization, dimension, intent_type = "table", None, IntentType.BREAKDOWN

    return QueryPlan(
        intent=f"{option.title}: {summary}",
        intent_type=intent_type,
        entities=[v for e in intent.entities for v in e.values],
        filters=filters,
        sql=sql,
        visualization=visualization,
        dimension=dimension,
        explanation=option.description,
    )


# ── Empty-result diagnostics ────────────────────────────


def diagnose_empty_result(
    filters: Mapping[str, Sequence[str]],
    run: Callable[[str], list[dict[str, Any]]],
    model: EngagementModel | None = None,
) -> list[str]:
    """Count rows per filter to explain why a query came back empty.

    Parameters
    ----------
    filters : mapping
        Column -> values of the empty query.
    run : callable
        Executes one statement and returns its rows.
    """
    if model is None:
        model = load_engagement_model()
    findings: list[str] = []
    matched_all = True
    failed = False
    for column, values in filters.items():
        dim = model.dimension_for_column(column)
        label = dim.label if dim else column
        try:
            rows = run(build_filter_count_sql(column, values, model))
        except Exception as exc:
            logger.warning("Diagnostic query failed for %s: %s", column, exc)
            failed = True
            continue
        count = int(rows[0].get("row_count") or 0) if rows else 0
        if count == 0:
            matched_all = False
            findings.append(f"No rows match {label} = {', '.join(values)}.")
    if filters and matched_all and not failed:
        findings.append("Each filter matches data on its own, but not in this combination.")
    return findings
