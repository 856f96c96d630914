"""
Planner -- converts a natural-language question into a QueryIntent and an
executable QueryPlan.

Two modes:
  mock               -> resolver + classifier + SQL generator (no API key needed)
  openai / anthropic -> LLM-backed planning via llm_client

Whatever goes wrong while planning (resolver exception, invalid intent,
unparseable LLM output, filters outside the live value sets) the planner
falls back to the hard-coded default plan, flagged ``is_fallback``.  The one
exception is unsafe SQL from the LLM: that raises ``UnsafeQueryError`` and
is never downgraded.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date
from typing import Any

from pydantic import ValidationError

from src.copilot.classifier import classify_intent, has_comparison_signal
from src.copilot.intent import IntentType, QueryIntent, QueryPlan
from src.copilot.memory import ConversationMemory, carry_entities
from src.copilot.resolver import ValueLookup, live_values_for, resolve_entities
from src.copilot.sql_generator import build_query_plan, default_plan, quote_table_references
from src.core.errors import PlanningError
from src.core.utils import extract_json
from src.governance.semantic_loader import load_engagement_model, EngagementModel
from src.governance.sql_safety import ensure_read_only
from src.governance.validator import validate_filters
from src.core.logging import get_logger, kv

logger = get_logger(__name__)


@dataclass
class PlanOutcome:
    """The parsed intent plus its plan.

    ``plan`` is None when there is nothing to run: general questions and
    comparisons with fewer than two subjects.
    """
    intent: QueryIntent
    plan: QueryPlan | None = None
    planning_error: str | None = None

    @property
    def needs_second_subject(self) -> bool:
        return self.intent.type == IntentType.COMPARISON and len(self.intent.comparison_subjects()) < 2


# ── Intent ──────────────────────────────────────────────


def parse_question(
    question: str,
    lookup: ValueLookup | None = None,
    memory: ConversationMemory | None = None,
    model: EngagementModel | None = None,
    today: date | None = None,
) -> QueryIntent:
    if model is None:
        model = load_engagement_model()
    resolution = resolve_entities(
        question, lookup=lookup, model=model, today=today,
        wants_subjects=has_comparison_signal(question),
    )
    resolution = carry_entities(question, resolution, memory)
    return classify_intent(question, resolution, today=today)


# ── LLM planner ─────────────────────────────────────────

_LLM_SYSTEM_PROMPT = """\
You are a query planner for a marketing engagement funnel. Write ONE read-only \
PostgreSQL SELECT over the table "{table}" and describe it as a JSON object with \
these exact fields:

  intent        : string  -- one-line summary of the question
  type          : string  -- one of: funnel, comparison, breakdown, trend
  sql           : string  -- the SELECT (omit for comparisons)
  subjects      : dict[string, string] | null -- comparison label -> its SELECT
  filters       : dict[string, list[string]] -- column -> values used in WHERE
  visualization : string  -- one of: funnel, comparison, dimensional_funnel, trend
  dimension     : string | null -- output column holding the breakdown value

Columns: {columns}
Funnel rows: `{category}` holds a label containing deliver / open / click / \
adopt, `{count}` holds the customer count.  Aggregate with SUM({count}) grouped \
by {category}, or pivot with SUM(CASE ...) AS deliveries, opens, clicks, adoptions.
Program aliases: {programs}
Regions: {regions}
Known live values: {live}

Respond ONLY with valid JSON. No markdown, no explanation."""


def _build_llm_prompt(
    question: str,
    intent: QueryIntent,
    model: EngagementModel,
    live: dict[str, list[str]],
    memory: ConversationMemory | None,
) -> str:
    system = _LLM_SYSTEM_PROMPT.format(
        table=model.table,
        columns=", ".join(f"{role}={col}" for role, col in model.columns.items()),
        category=model.column("category"),
        count=model.column("count"),
        programs=json.dumps({a: list(v) for a, v in model.program_aliases.items()}),
        regions=", ".join(model.canonical_regions),
        live=json.dumps(live) if live else "unavailable",
    )
    hints = "; ".join(f"{e.kind}={','.join(e.values)}" for e in intent.entities) or "none"
    context = memory.context_summary() if memory is not None else ""
    parts = [system]
    if context:
        parts.append(context)
    parts.append(f"Resolved entities: {hints}")
    if intent.time_filter is not None:
        parts.append(f"Time filter: {model.column('quarter')} = '{intent.time_filter.quarter}'")
    parts.append(f"Question: {question}\n\nJSON:")
    return "\n\n".join(parts)


def _parse_llm_response(
    text: str,
    model: EngagementModel,
    live: dict[str, list[str]] | None = None,
) -> QueryPlan:
    """Parse the LLM's JSON into a QueryPlan.

    Raises
    ------
    PlanningError
        Missing / invalid JSON, missing SQL or filters outside the live values.
    UnsafeQueryError
        Any statement fails the read-only gate.
    """
    try:
        data: Any = extract_json(text)
    except ValueError as exc:
        raise PlanningError(str(exc)) from exc
    if isinstance(data, list):
        data = next((d for d in data if isinstance(d, dict)), None)
    if not isinstance(data, dict):
        raise PlanningError("LLM plan is not a JSON object")

    subjects = data.get("subjects") or {}
    if not isinstance(subjects, dict):
        raise PlanningError("'subjects' must be an object")
    subject_sql = {
        str(label): quote_table_references(str(sql), model.table)
        for label, sql in subjects.items() if sql
    }
    sql = quote_table_references(str(data["sql"]), model.table) if data.get("sql") else ""
    if not sql and not subject_sql:
        raise PlanningError("LLM plan has no SQL")

    for statement in ([sql] if sql else []) + list(subject_sql.values()):
        ensure_read_only(statement, model)

    filters = data.get("filters") or {}
    if not isinstance(filters, dict):
        raise PlanningError("'filters' must be an object")
    filters = {str(k): v if isinstance(v, list) else [v] for k, v in filters.items()}
    errors = validate_filters(filters, model, live)
    if errors:
        raise PlanningError("; ".join(errors))

    try:
        intent_type = IntentType(data.get("type", "funnel"))
    except ValueError:
        intent_type = IntentType.FUNNEL
    visualization = data.get("visualization") or ("comparison" if subject_sql else "funnel")
    if visualization not in ("funnel", "comparison", "dimensional_funnel", "trend"):
        visualization = "funnel"

    dimension = data.get("dimension")
    if dimension is not None and not (isinstance(dimension, str) and (dimension == "period" or model.dimension(dimension))):
        raise PlanningError(f"Unknown dimension {dimension!r}")

    try:
        return QueryPlan(
            intent=str(data.get("intent") or "LLM plan"),
            intent_type=intent_type,
            entities=[str(v) for values in filters.values() for v in values],
            filters=filters,
            sql=sql,
            subject_sql=subject_sql,
            visualization=visualization,
            dimension=dimension,
        )
    except ValidationError as exc:
        raise PlanningError(f"LLM plan has invalid fields: {exc}") from exc


def _plan_llm(
    question: str,
    intent: QueryIntent,
    model: EngagementModel,
    mode: str,
    lookup: ValueLookup | None,
    memory: ConversationMemory | None,
) -> QueryPlan:
    """Call the LLM and parse its response into a QueryPlan."""
    from src.copilot.llm_client import call_llm

    live = live_values_for(lookup, [model.column("program"), model.column("region")]) if lookup else {}
    prompt = _build_llm_prompt(question, intent, model, live, memory)
    try:
        response = call_llm(prompt, provider=mode)
    except Exception as exc:
        raise PlanningError(f"LLM call failed: {exc}") from exc
    return _parse_llm_response(response, model, live or None)


# ── Public API ───────────────────────────────────────────


def plan(
    question: str,
    mode: str = "mock",
    lookup: ValueLookup | None = None,
    memory: ConversationMemory | None = None,
    today: date | None = None,
) -> PlanOutcome:
    """Parse *question* and build its QueryPlan.

    Modes
    -----
    mock              -- rule-based resolution and SQL generation
    openai / anthropic -- LLM-backed planning via llm_client

    Catalogue questions ("how many programs") are always planned by rule.
    """
    model = load_engagement_model()

    try:
        intent = parse_question(question, lookup=lookup, memory=memory, model=model, today=today)
    except Exception as exc:
        logger.exception("Intent parsing failed, using default plan")
        intent = QueryIntent(type=IntentType.FUNNEL, text=question)
        return PlanOutcome(intent=intent, plan=default_plan(model), planning_error=str(exc))

    outcome = PlanOutcome(intent=intent)
    if intent.type == IntentType.GENERAL or outcome.needs_second_subject:
        logger.info("Planner[%s] nothing to run | %s", mode, kv(type=intent.type.value))
        return outcome

    try:
        if mode == "mock" or intent.type == IntentType.CATALOG:
            outcome.plan = build_query_plan(intent, model)
        else:
            outcome.plan = _plan_llm(question, intent, model, mode, lookup, memory)
    except PlanningError as exc:
        logger.warning("Planning failed, using default plan: %s", exc)
        outcome.plan = default_plan(model)
        outcome.planning_error = str(exc)

    logger.info("Planner[%s] -> %s", mode, outcome.plan.model_dump_json(include={"intent", "visualization", "is_fallback"}))
    return outcome
