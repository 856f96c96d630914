"""
Narrative layer.

Turns funnel metrics and pipeline errors into human-readable text:
  - insight bullets for funnels, comparisons, breakdowns and trends
  - apologetic, actionable messages for each ErrorKind
  - the help text shown for general questions
  - catalogue answers ("There are 4 different programs available.")
  - follow-up prompt suggestions

Works in ``mock`` mode (templates, no API key needed) and LLM mode
(calls the configured provider, falling back to the templates on failure).
"""
from __future__ import annotations

from typing import Any, Mapping, Sequence

from src.copilot.aggregator import FunnelMetrics, compare_funnels
from src.copilot.intent import IntentType, QueryIntent
from src.core.errors import ErrorKind
from src.governance.semantic_loader import load_engagement_model, EngagementModel
from src.core.logging import get_logger

logger = get_logger(__name__)

_RATE_LABELS = {
    "open_rate": "open rate",
    "click_through_rate": "click-through rate",
    "click_through_open_rate": "click-to-open rate",
    "adoption_rate": "adoption rate",
}


# ── Error templates ─────────────────────────────────────


_ERROR_TEMPLATES: dict[ErrorKind, str] = {
    ErrorKind.RESOLUTION_MISS: (
        "I couldn't match that to a program, lesson or region in the data. "
        "Try naming a program such as ASG Primary Path or LPW Path."
    ),
    ErrorKind.UNSAFE_QUERY: (
        "That request was blocked: only read-only SELECT queries may run against "
        "the engagement data."
    ),
    ErrorKind.EXECUTION_FAILURE: (
        "Sorry, I couldn't fetch the data for that question. "
        "The query service reported an error."
    ),
    ErrorKind.PLANNING_FAILURE: (
        "I wasn't able to plan that question, so I've shown the default funnel instead."
    ),
    ErrorKind.EMPTY_RESULT: (
        "No data found for that selection."
    ),
    ErrorKind.TIMEOUT: (
        "The query took too long to answer. Please try again, or narrow it down "
        "with a program, region or quarter."
    ),
}

_ERROR_FOLLOW_UPS: dict[ErrorKind, list[str]] = {
    ErrorKind.RESOLUTION_MISS: [
        "Show funnel performance for ASG Primary Path",
        "Compare ASG Primary Path with LPW Path",
        "Break down deliveries by region",
    ],
    ErrorKind.UNSAFE_QUERY: [
        "Show funnel performance for ASG Primary Path",
        "What are the open rates by region?",
    ],
    ErrorKind.EXECUTION_FAILURE: [
        "Show the overall funnel",
        "Show funnel performance for ASG Primary Path in Americas",
    ],
    ErrorKind.EMPTY_RESULT: [
        "Show the overall funnel for all time",
        "Break down deliveries by quarter",
        "Which programs have data?",
    ],
    ErrorKind.TIMEOUT: [
        "Show funnel performance for ASG Primary Path this quarter",
        "Break down deliveries by region",
    ],
}


def explain_error(kind: ErrorKind, detail: str | None = None) -> str:
    """User-facing narrative for one error kind."""
    text = _ERROR_TEMPLATES[kind]
    if detail and kind in (ErrorKind.UNSAFE_QUERY, ErrorKind.EXECUTION_FAILURE, ErrorKind.EMPTY_RESULT):
        text = f"{text}\n\n{detail}"
    return text


def error_follow_ups(kind: ErrorKind) -> list[str]:
    return list(_ERROR_FOLLOW_UPS.get(kind, []))


def help_text(model: EngagementModel | None = None, live_programs: Sequence[str] | None = None) -> str:
    """Guidance for questions that don't map onto the funnel."""
    if model is None:
        model = load_engagement_model()
    programs = list(live_programs) if live_programs else model.get_canonical_programs()
    lines = [
        "I can answer questions about the engagement funnel "
        "(deliveries, opens, clicks and adoptions). For example:",
        "",
        "- *Show funnel performance for ASG Primary Path in Americas*",
        "- *Compare ASG Primary Path with LPW Path*",
        "- *Break down open rates by region for Q3*",
        "- *Show the quarterly trend for MCG ASG Path*",
        "- *What programs are available?*",
        "- *What are the different lessons in ASG Primary Path?*",
        "- *How many total customers do we have?*",
        "",
        f"**Programs:** {', '.join(programs)}",
        f"**Regions:** {', '.join(model.canonical_regions)}",
        f"**Breakdowns:** {', '.join(d.label for d in model.dimensions.values())}",
    ]
    return "\n".join(lines)


# ── Catalogue answers ───────────────────────────────────

_CATALOG_TAILS = {
    "count": {"programs": " available", "lessons": "", "regions": " in the data"},
    "list": {"programs": " available", "lessons": "", "regions": " with customer counts"},
}

_CATALOG_FOLLOW_UPS: dict[str, list[str]] = {
    "programs": [
        "Show me lessons in ASG Primary Path",
        "Compare ASG Primary Path with LPW Path",
        "Break down deliveries by program",
    ],
    "lessons": [
        "Break down deliveries by lesson",
        "How many programs do we have?",
    ],
    "regions": [
        "Break down deliveries by region",
        "Show funnel performance for ASG Primary Path in Americas",
    ],
    "customers": [
        "Break down deliveries by region",
        "Break down deliveries by program",
    ],
}


def catalog_answer(
    entity: str,
    action: str,
    rows: Sequence[Mapping[str, Any]],
    scope: str = "",
) -> tuple[str, list[str]]:
    """Headline and item lines for a catalogue question.

    Parameters
    ----------
    entity : str
        ``programs``, ``lessons``, ``regions`` or ``customers``.
    action : str
        ``list`` or ``count``.
    rows : sequence of mappings
        ``value`` rows (plus ``customers`` for regions), or a single
        ``customers`` row for the customers total.
    scope : str
        Human-readable filter description, e.g. ``"ASG Primary Path"``.
    """
    where = f" in {scope}" if scope else ""
    if entity == "customers":
        total = int(rows[0].get("customers") or 0) if rows else 0
        return f"There are **{total:,} total customers**{where}.", []

    items = [r for r in rows if r.get("value") is not None]
    n = len(items)
    noun = entity if n != 1 else entity[:-1]
    tail = where or _CATALOG_TAILS[action].get(entity, "")
    verb = "is" if n == 1 else "are"
    if action == "count":
        return f"There {verb} **{n} different {noun}**{tail}.", []

    if entity == "regions":
        lines = [f"**{r['value']}**: {int(r.get('customers') or 0):,} customers" for r in items]
        tail = f"{where} with customer counts" if where else tail
    else:
        lines = [str(r["value"]) for r in items]
    return f"Here {verb} the **{n} {noun}**{tail}:", lines


def catalog_follow_ups(entity: str) -> list[str]:
    return list(_CATALOG_FOLLOW_UPS.get(entity, []))


# ── Insights ────────────────────────────────────────────


def funnel_insights(metrics: FunnelMetrics) -> list[str]:
    if metrics.is_empty:
        return []
    insights = [
        f"{metrics.deliveries:,} deliveries led to {metrics.opens:,} opens "
        f"({metrics.open_rate:.1f}% open rate).",
        f"{metrics.clicks:,} clicks: {metrics.click_through_rate:.1f}% of deliveries, "
        f"{metrics.click_through_open_rate:.1f}% of opens.",
    ]
    if metrics.adoptions:
        insights.append(f"{metrics.adoptions:,} adoptions ({metrics.adoption_rate:.1f}% adoption rate).")
    else:
        insights.append("No adoptions recorded for this selection.")
    return insights


def comparison_insights(funnels: Mapping[str, FunnelMetrics]) -> list[str]:
    labels = list(funnels)
    if len(labels) != 2:
        return []
    a, b = labels
    diff = compare_funnels(funnels[a], funnels[b])
    insights: list[str] = []
    for name, delta in diff.items():
        label = _RATE_LABELS[name]
        if delta > 0:
            insights.append(f"{a} leads on {label} by {delta:.1f} pts.")
        elif delta < 0:
            insights.append(f"{b} leads on {label} by {abs(delta):.1f} pts.")
        else:
            insights.append(f"{a} and {b} tie on {label}.")
    return insights


def dimensional_insights(dimension_label: str, funnels: Mapping[str, FunnelMetrics]) -> list[str]:
    populated = {k: m for k, m in funnels.items() if m.deliveries > 0}
    if not populated:
        return []
    best = max(populated, key=lambda k: populated[k].open_rate)
    worst = min(populated, key=lambda k: populated[k].open_rate)
    biggest = max(populated, key=lambda k: populated[k].deliveries)
    insights = [f"{biggest} has the most deliveries ({populated[biggest].deliveries:,})."]
    if best != worst:
        insights.append(
            f"Open rate ranges from {populated[worst].open_rate:.1f}% ({worst}) "
            f"to {populated[best].open_rate:.1f}% ({best})."
        )
    insights.append(f"{len(funnels)} {dimension_label.lower()} values in total.")
    return insights


def trend_insights(funnels: Mapping[str, FunnelMetrics]) -> list[str]:
    periods = sorted(funnels)
    if len(periods) < 2:
        return []
    first, last = funnels[periods[0]], funnels[periods[-1]]
    delta = round(last.open_rate - first.open_rate, 1)
    direction = "up" if delta > 0 else "down" if delta < 0 else "flat"
    return [
        f"{len(periods)} periods from {periods[0]} to {periods[-1]}.",
        f"Open rate is {direction} {abs(delta):.1f} pts over the period.",
    ]


# ── Narrative ───────────────────────────────────────────


def narrate_mock(headline: str, insights: Sequence[str]) -> str:
    if not insights:
        return headline
    return headline + "\n\n" + "\n".join(f"- {i}" for i in insights)


def narrate_llm(question: str, headline: str, insights: Sequence[str], provider: str | None = None) -> str:
    """Ask the LLM for a short narrative.  Falls back to the template on failure."""
    from src.copilot.llm_client import call_llm

    prompt = (
        "You are an analytics assistant for a marketing engagement funnel "
        "(deliveries -> opens -> clicks -> adoptions).\n\n"
        f"**User question:** {question}\n\n"
        f"**Result:** {headline}\n"
        + "\n".join(f"- {i}" for i in insights)
        + "\n\nSummarise the result in 2-3 sentences of plain language. "
        "Do not invent numbers."
    )
    try:
        text = call_llm(prompt, provider=provider)
    except Exception as exc:
        logger.warning("LLM narrative failed, falling back to template: %s", exc)
        return narrate_mock(headline, insights)
    if not text.strip():
        return narrate_mock(headline, insights)
    return text.strip()


def narrate(question: str, headline: str, insights: Sequence[str], mode: str = "mock") -> str:
    """Dispatch to template or LLM narrative.

    Parameters
    ----------
    mode : str
        ``"mock"`` for templates, otherwise the LLM provider name.
    """
    if mode == "mock":
        return narrate_mock(headline, insights)
    return narrate_llm(question, headline, insights, provider=mode)


# ── Follow-ups ──────────────────────────────────────────


def suggest_follow_ups(intent: QueryIntent, model: EngagementModel | None = None) -> list[str]:
    """Next questions that build on *intent*."""
    if model is None:
        model = load_engagement_model()
    programs = intent.programs
    subject = programs[0] if len(programs) == 1 else "this"
    suggestions: list[str] = []

    if intent.type == IntentType.FUNNEL:
        suggestions += [
            f"Break {subject} down by region",
            f"Show the quarterly trend for {subject}",
        ]
        others = [p for p in model.get_canonical_programs() if p not in programs]
        if programs and others:
            suggestions.append(f"Compare {programs[0]} with {others[0]}")
    elif intent.type == IntentType.COMPARISON:
        suggestions += ["Break this down by region", "Show the quarterly trend for this"]
    elif intent.type == IntentType.BREAKDOWN:
        used = set(intent.breakdown_dimensions)
        for name in ("region", "tier", "quarter", "language"):
            if name not in used:
                suggestions.append(f"Break this down by {model.dimension(name).label.lower()}")
            if len(suggestions) == 2:
                break
    elif intent.type == IntentType.TREND:
        suggestions += ["Break this down by region", "Show the funnel for this quarter"]

    if intent.time_filter is None and intent.type != IntentType.TREND:
        suggestions.append("Show the same for this quarter")
    return suggestions[:4]
