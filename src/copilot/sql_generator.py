"""
SQL Generator -- turns a validated QueryIntent into read-only SELECT statements
against the engagement table.

Statement shapes:

  lookup     one row per category label
             SELECT category_1 AS category, SUM(customers_1) AS count ...
             GROUP BY category_1

  pivoted    one complete funnel per dimension value, using conditional
             sums per funnel stage (breakdowns and trends)
             SELECT <dim> AS <name>, SUM(CASE WHEN ... THEN customers_1 ELSE 0 END)
             AS deliveries, ... GROUP BY <dim>

  catalogue  distinct program / lesson names, customers reached per region,
             or one customers total

Stage conditions come from the same patterns the aggregator buckets with
and are mutually exclusive in funnel order.  Every column and the table
name come from the engagement model; the table name is always quoted.
"""
from __future__ import annotations

import re
from typing import Mapping, Sequence

from src.copilot.intent import IntentType, QueryIntent, QueryPlan, ResolvedEntity
from src.core.errors import PlanningError
from src.governance.semantic_loader import load_engagement_model, EngagementModel
from src.governance.validator import validate_intent
from src.core.logging import get_logger

logger = get_logger(__name__)

# output alias for the trend period column
PERIOD = "period"

# catalogue entity -> the entity kind it lists
CATALOG_KINDS = {"programs": "program", "lessons": "lesson", "regions": "region"}


# ── Quoting ──────────────────────────────────────────────

def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    return "'" + str(value).replace("'", "''") + "'"


def quote_table_references(sql: str, table: str) -> str:
    """Quote bare references to *table* and drop a trailing semicolon.

    Used to repair statements produced by a language model; statements built
    here are already quoted.
    """
    bare = re.compile(rf'(?<!["\w]){re.escape(table)}(?!["\w])')
    repaired = bare.sub(quote_identifier(table), sql.strip())
    return repaired.rstrip().rstrip(";").rstrip()


# ── Filters ──────────────────────────────────────────────

def build_filters(
    intent: QueryIntent,
    model: EngagementModel | None = None,
    subject: ResolvedEntity | None = None,
) -> dict[str, list[str]]:
    """Column -> values filter map for *intent*.

    When *subject* is given (one side of a comparison), it replaces every
    other entity of its kind.
    """
    if model is None:
        model = load_engagement_model()

    def values_of(kind: str) -> list[str]:
        source = [subject] if subject is not None and subject.kind == kind else intent.of_kind(kind)
        out: list[str] = []
        for e in source:
            for v in e.values:
                if v not in out:
                    out.append(v)
        return out

    filters: dict[str, list[str]] = {}
    for kind in ("program", "region", "lesson"):
        values = values_of(kind)
        if values:
            filters[model.column(kind)] = values
    if intent.time_filter is not None:
        filters[model.column("quarter")] = [intent.time_filter.quarter]
    return filters


def _where(filters: Mapping[str, Sequence[str]], model: EngagementModel) -> str:
    in_columns = {model.column("program"), model.column("lesson")}
    parts: list[str] = []
    for column, values in filters.items():
        if not values:
            continue
        if len(values) == 1 and column not in in_columns:
            parts.append(f"{column} = {quote_literal(values[0])}")
        else:
            parts.append(f"{column} IN ({', '.join(quote_literal(v) for v in values)})")
    return ("WHERE " + "\n  AND ".join(parts)) if parts else ""


def _stage_condition(patterns: Sequence[str], category: str) -> str:
    return " OR ".join(f"LOWER({category}) LIKE {quote_literal('%' + p + '%')}" for p in patterns)


def stage_sums(model: EngagementModel | None = None) -> list[str]:
    """``SUM(CASE ...) AS <stage>`` expressions, one per funnel stage."""
    if model is None:
        model = load_engagement_model()
    category = model.column("category")
    count = model.column("count")
    exprs: list[str] = []
    earlier: list[str] = []
    for stage in model.funnel_stages:
        cond = _stage_condition(stage.patterns, category)
        if earlier:
            cond = f"({cond}) AND NOT ({' OR '.join(earlier)})"
        exprs.append(f"SUM(CASE WHEN {cond} THEN {count} ELSE 0 END) AS {stage.name}")
        earlier.append(_stage_condition(stage.patterns, category))
    return exprs


# ── Statement builders ──────────────────────────────────

def _assemble(select_parts: list[str], where: str, group_by: str | None, order_by: str | None, model: EngagementModel) -> str:
    lines = ["SELECT", "  " + ",\n  ".join(select_parts), f"FROM {quote_identifier(model.table)}"]
    if where:
        lines.append(where)
    if group_by:
        lines.append(f"GROUP BY {group_by}")
    if order_by:
        lines.append(f"ORDER BY {order_by}")
    return "\n".join(lines)


def build_lookup_sql(filters: Mapping[str, Sequence[str]], model: EngagementModel | None = None) -> str:
    """Per-category counts for one slice of the data."""
    if model is None:
        model = load_engagement_model()
    category = model.column("category")
    return _assemble(
        [f"{category} AS category", f"SUM({model.column('count')}) AS count"],
        _where(filters, model),
        category,
        None,
        model,
    )


def build_pivot_sql(
    expression: str,
    alias: str,
    filters: Mapping[str, Sequence[str]],
    model: EngagementModel | None = None,
    order_by: str | None = None,
) -> str:
    """One funnel row per value of *expression*."""
    if model is None:
        model = load_engagement_model()
    return _assemble(
        [f"{expression} AS {alias}", *stage_sums(model)],
        _where(filters, model),
        expression,
        order_by or f"{model.funnel_stages[0].name} DESC",
        model,
    )


def build_breakdown_sql(
    dimension: str,
    filters: Mapping[str, Sequence[str]],
    model: EngagementModel | None = None,
) -> str:
    if model is None:
        model = load_engagement_model()
    dim = model.dimension(dimension)
    if dim is None:
        raise PlanningError(f"Unknown dimension '{dimension}'")
    return build_pivot_sql(dim.column, dim.name, filters, model)


def period_expression(grain: str, model: EngagementModel | None = None) -> str:
    if model is None:
        model = load_engagement_model()
    if grain == "month":
        # YYYY-MM prefix of the ISO date
        return f"SUBSTR(CAST({model.column('date')} AS TEXT), 1, 7)"
    return model.column("quarter")


def build_trend_sql(
    grain: str,
    filters: Mapping[str, Sequence[str]],
    model: EngagementModel | None = None,
) -> str:
    if model is None:
        model = load_engagement_model()
    expr = period_expression(grain, model)
    return build_pivot_sql(expr, PERIOD, filters, model, order_by=expr)


def build_grouped_count_sql(
    dimensions: Sequence[str],
    filters: Mapping[str, Sequence[str]],
    model: EngagementModel | None = None,
) -> str:
    """Plain ``SUM(count)`` grouped by one or more dimensions."""
    if model is None:
        model = load_engagement_model()
    dims = []
    for name in dimensions:
        dim = model.dimension(name)
        if dim is None:
            raise PlanningError(f"Unknown dimension '{name}'")
        dims.append(dim)
    return _assemble(
        [*(f"{d.column} AS {d.name}" for d in dims), f"SUM({model.column('count')}) AS count"],
        _where(filters, model),
        ", ".join(d.column for d in dims),
        "count DESC",
        model,
    )


def build_catalog_sql(
    entity: str,
    filters: Mapping[str, Sequence[str]],
    model: EngagementModel | None = None,
) -> str:
    """Statement answering a catalogue question.

    programs / lessons  distinct non-null names (``value``)
    regions             one row per region with the customers reached
    customers           a single ``customers`` total

    Customers are counted at the first funnel stage, so a customer reached
    by a send is counted once rather than once per stage.
    """
    if model is None:
        model = load_engagement_model()
    category = model.column("category")
    first = model.funnel_stages[0]
    reached = f"SUM(CASE WHEN {_stage_condition(first.patterns, category)} THEN {model.column('count')} ELSE 0 END) AS customers"

    if entity == "customers":
        return _assemble([reached], _where(filters, model), None, None, model)
    kind = CATALOG_KINDS.get(entity)
    if kind is None:
        raise PlanningError(f"Unknown catalogue entity '{entity}'")
    column = model.column(kind)
    where = _where(filters, model)
    not_null = f"{column} IS NOT NULL"
    where = f"{where}\n  AND {not_null}" if where else f"WHERE {not_null}"
    if entity == "regions":
        return _assemble([f"{column} AS value", reached], where, column, "customers DESC", model)
    return _assemble([f"DISTINCT {column} AS value"], where, None, column, model)


def build_filter_count_sql(column: str, values: Sequence[str], model: EngagementModel | None = None) -> str:
    """Row count for a single filter, used to diagnose empty results."""
    if model is None:
        model = load_engagement_model()
    return _assemble(["COUNT(*) AS row_count"], _where({column: values}, model), None, None, model)


# ── Plan assembly ────────────────────────────────────────

def _subject_label(entity: ResolvedEntity) -> str:
    return ", ".join(entity.values) if len(entity.values) <= 2 else entity.text


def describe_intent(intent: QueryIntent, model: EngagementModel | None = None) -> str:
    """One-line human summary of what will be queried."""
    parts: list[str] = []
    programs = intent.programs
    parts.append(", ".join(programs) if programs else "all programs")
    if intent.lessons:
        parts.append("lessons " + ", ".join(intent.lessons))
    regions = [e.values[0] for e in intent.of_kind("region")]
    if regions and intent.type != IntentType.COMPARISON:
        parts.append("in " + ", ".join(regions))
    if intent.time_filter is not None:
        tf = intent.time_filter
        suffix = " (assumed current quarter)" if tf.is_assumed else ""
        parts.append(f"for {tf.quarter}{suffix}")
    else:
        parts.append("all time")
    return " ".join(parts)


def generate_sql(
    intent: QueryIntent,
    model: EngagementModel | None = None,
    subject: ResolvedEntity | None = None,
) -> str:
    """Build the statement for one intent (or one side of a comparison)."""
    if model is None:
        model = load_engagement_model()
    filters = build_filters(intent, model, subject)
    if intent.type == IntentType.BREAKDOWN:
        return build_breakdown_sql(intent.breakdown_dimensions[0], filters, model)
    if intent.type == IntentType.TREND:
        return build_trend_sql(intent.trend_grain or "quarter", filters, model)
    return build_lookup_sql(filters, model)


def catalog_filters(intent: QueryIntent, model: EngagementModel | None = None) -> dict[str, list[str]]:
    """Filters for a catalogue question; the listed kind never filters itself."""
    if model is None:
        model = load_engagement_model()
    filters = build_filters(intent, model)
    kind = CATALOG_KINDS.get(intent.catalog_entity or "")
    if kind is not None:
        filters.pop(model.column(kind), None)
    return filters


def _catalog_plan(intent: QueryIntent, entities: list[str], model: EngagementModel) -> QueryPlan:
    entity = intent.catalog_entity or "programs"
    filters = catalog_filters(intent, model)
    scope = ", ".join(v for values in filters.values() for v in values)
    verb = "Count" if intent.catalog_action == "count" else "List"
    return QueryPlan(
        intent=f"{verb} {entity}" + (f" in {scope}" if scope else ""),
        intent_type=intent.type,
        entities=entities,
        filters=filters,
        sql=build_catalog_sql(entity, filters, model),
        visualization="table",
        explanation=scope,
    )


def build_query_plan(intent: QueryIntent, model: EngagementModel | None = None) -> QueryPlan:
    """Validate *intent* and turn it into an executable QueryPlan.

    Raises
    ------
    PlanningError
        When the intent fails validation or has nothing to query.
    """
    if model is None:
        model = load_engagement_model()

    if intent.type == IntentType.GENERAL:
        raise PlanningError("General questions have no query plan")

    errors = validate_intent(intent, model)
    if errors:
        raise PlanningError("; ".join(errors))

    entities = [v for e in intent.entities for v in e.values]
    summary = describe_intent(intent, model)

    if intent.type == IntentType.CATALOG:
        plan = _catalog_plan(intent, entities, model)
    elif intent.type == IntentType.COMPARISON:
        subjects = intent.comparison_subjects()[:2]
        subject_sql = {_subject_label(s): generate_sql(intent, model, subject=s) for s in subjects}
        plan = QueryPlan(
            intent=f"Compare {' vs '.join(subject_sql)}",
            intent_type=intent.type,
            entities=entities,
            filters=build_filters(intent, model),
            subject_sql=subject_sql,
            visualization="comparison",
            explanation=summary,
        )
    elif intent.type == IntentType.BREAKDOWN:
        dim = intent.breakdown_dimensions[0]
        plan = QueryPlan(
            intent=f"Funnel by {dim}: {summary}",
            intent_type=intent.type,
            entities=entities,
            filters=build_filters(intent, model),
            sql=generate_sql(intent, model),
            visualization="dimensional_funnel",
            dimension=dim,
            explanation=summary,
        )
    elif intent.type == IntentType.TREND:
        plan = QueryPlan(
            intent=f"Funnel trend by {intent.trend_grain or 'quarter'}: {summary}",
            intent_type=intent.type,
            entities=entities,
            filters=build_filters(intent, model),
            sql=generate_sql(intent, model),
            visualization="trend",
            dimension=PERIOD,
            explanation=summary,
        )
    else:
        plan = QueryPlan(
            intent=f"Funnel: {summary}",
            intent_type=intent.type,
            entities=entities,
            filters=build_filters(intent, model),
            sql=generate_sql(intent, model),
            visualization="funnel",
            explanation=summary,
        )

    for label, sql in plan.statements().items():
        logger.info("Generated SQL [%s]:\n%s", label, sql)
    return plan


def default_plan(model: EngagementModel | None = None, reason: str = "") -> QueryPlan:
    """The known-good plan used when planning fails."""
    if model is None:
        model = load_engagement_model()
    filters: dict[str, list[str]] = {model.column("program"): list(model.default_plan.programs)}
    if model.default_plan.region:
        filters[model.column("region")] = [model.default_plan.region]
    label = ", ".join(model.default_plan.programs)
    if model.default_plan.region:
        label += f" in {model.default_plan.region}"
    return QueryPlan(
        intent=f"Funnel: {label} (default)",
        intent_type=IntentType.FUNNEL,
        entities=[*model.default_plan.programs, *([model.default_plan.region] if model.default_plan.region else [])],
        filters=filters,
        sql=build_lookup_sql(filters, model),
        visualization="funnel",
        explanation=reason or "Showing the default funnel because the question could not be planned.",
        is_fallback=True,
    )
