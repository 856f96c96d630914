"""
Query intent classification.

Assigns exactly one primary type to a question, first match wins:

  1. comparison   "vs", "versus", "compare", "against", or "<entity> with <entity>"
  2. trend        "trend", "over time", "month over month", "timeline", "progression"
  3. breakdown    "by <dimension>", "per <dimension>", "broken down by <dimension>"
  4. catalog      "how many programs", "what lessons are in ASG", "what regions
                  do we operate in", "total customers" (no funnel keyword)
  5. funnel       a funnel keyword, or any resolved program / region / lesson / time
  6. general      anything else (answered with guidance, never an empty result)

The order matters: "compare ASG vs LPW by region" carries both comparison
and breakdown signal and is a comparison.

The time filter is extracted independently of the type:
explicit quarter > month name > "this/current quarter" > assumed current
quarter (only for quarter-scoped questions) > none (all time).
"""
from __future__ import annotations

import re
from datetime import date

from src.copilot.intent import IntentType, QueryIntent, TimeFilter, ResolvedEntity
from src.copilot.resolver import Resolution, ValueLookup, resolve_entities
from src.governance.semantic_loader import load_engagement_model, EngagementModel
from src.core.logging import get_logger, kv

logger = get_logger(__name__)

# ── Keyword patterns ─────────────────────────────────────

_COMPARISON = re.compile(r"\b(?:vs\.?|versus|compare|compared|comparing|comparison|against)\b", re.IGNORECASE)
_WITH = re.compile(r"\bwith\b", re.IGNORECASE)
_TREND = re.compile(
    r"\b(?:trends?|trending|over\s+time|month\s+over\s+month|timeline|progression|monthly|by\s+month)\b",
    re.IGNORECASE,
)
_MONTHLY = re.compile(r"\b(?:month\s+over\s+month|monthly|by\s+month)\b", re.IGNORECASE)
_FUNNEL = re.compile(
    r"\b(?:funnel|deliveries|delivery|delivered|opens|opened|clicks|clicked|adoptions?|adopted|"
    r"conversions?|performance|performing|metrics|engagement|open\s+rate|click\s+rate|click[\s-]through)\b",
    re.IGNORECASE,
)
_CURRENT_QUARTER = re.compile(r"\b(?:this|current)\s+quarter\b", re.IGNORECASE)
_QUARTER_SCOPED = re.compile(r"\b(?:quarter|quarterly|qtd)\b", re.IGNORECASE)
_CATALOG_NOUN = re.compile(
    r"\b(?:(program|path|course|lesson|module|region)\s+names|(programs|paths|courses|lessons|modules|regions|customers))\b",
    re.IGNORECASE,
)
_CATALOG_COUNT = re.compile(r"\b(?:how\s+many|number\s+of|count\s+of|total)\b", re.IGNORECASE)
_CATALOG_LIST = re.compile(
    r"\b(?:list|show\s+(?:me|all)|what|which|give|display|available|names)\b", re.IGNORECASE,
)
_EACH_REGION = re.compile(r"\beach\s+region\b", re.IGNORECASE)
_RANKING = re.compile(r"\b(?:best|worst|top|highest|lowest|most|least|perform\w*)\b", re.IGNORECASE)

_SUBJECT_KINDS = ("program", "lesson", "region")
_TIME_KINDS = ("quarter", "month")


def mentions_current_quarter(text: str) -> bool:
    return bool(_CURRENT_QUARTER.search(text))


def current_quarter(today: date | None = None) -> str:
    """Quarter token for *today*, e.g. ``'2025-Q3'``."""
    if today is None:
        today = date.today()
    return f"{today.year}-Q{(today.month - 1) // 3 + 1}"


def has_comparison_signal(text: str) -> bool:
    """True when *text* might be a comparison (keyword or a bare "with")."""
    return bool(_COMPARISON.search(text) or _WITH.search(text))


def _with_comparison(entities: tuple[ResolvedEntity, ...], text: str) -> bool:
    """``<entity> with <entity>``: two subjects of one kind on either side of "with"."""
    m = _WITH.search(text)
    if not m:
        return False
    lowered = text.lower()
    for kind in _SUBJECT_KINDS:
        positions = [lowered.find(e.text.lower()) for e in entities if e.kind == kind]
        if any(0 <= p < m.start() for p in positions) and any(p > m.start() for p in positions):
            return True
    return False


_CATALOG_ENTITIES = {
    "program": "programs", "path": "programs", "course": "programs",
    "lesson": "lessons", "module": "lessons",
    "region": "regions",
    "customer": "customers",
}


def catalog_request(text: str) -> tuple[str, str] | None:
    """``(entity, action)`` for a list / count question about the catalogue.

    "how many programs" -> ``("programs", "count")``, "what lessons are in
    ASG" -> ``("lessons", "list")``.  Questions that name a funnel stage or
    ask for a ranking are funnel questions, not catalogue questions, and a
    bare "show regions" is left to the help text.
    """
    if _FUNNEL.search(text) or _RANKING.search(text):
        return None
    m = _CATALOG_NOUN.search(text)
    if not m:
        return None
    word = (m.group(1) or m.group(2)).lower().rstrip("s")
    entity = _CATALOG_ENTITIES[word]
    counted = bool(_CATALOG_COUNT.search(text))
    if entity == "customers":
        if _EACH_REGION.search(text):
            return "regions", "list"
        return ("customers", "count") if counted else None
    if counted:
        return entity, "count"
    if _CATALOG_LIST.search(text):
        return entity, "list"
    return None


def extract_time_filter(
    text: str,
    entities: tuple[ResolvedEntity, ...],
    intent_type: IntentType,
    dimensions: tuple[str, ...] = (),
    today: date | None = None,
) -> TimeFilter | None:
    """Pick the time filter for one question, or None for "all time"."""
    for e in entities:
        if e.kind == "quarter":
            return TimeFilter(quarter=e.values[0], source="explicit")
    for e in entities:
        if e.kind == "month":
            return TimeFilter(quarter=e.values[0], source="month", month=e.text.split()[0].lower())
    if mentions_current_quarter(text):
        return TimeFilter(quarter=current_quarter(today), source="current")
    if (
        _QUARTER_SCOPED.search(text)
        and intent_type != IntentType.TREND
        and "quarter" not in dimensions
    ):
        return TimeFilter(quarter=current_quarter(today), source="default")
    return None


def classify_intent(text: str, resolution: Resolution, today: date | None = None) -> QueryIntent:
    """Assign the primary type and time filter for an already-resolved question.

    Parameters
    ----------
    text : str
        The raw question.
    resolution : Resolution
        Output of ``resolve_entities`` for the same text.
    today : date, optional
        Reference date for "this quarter" and assumed quarters.
    """
    entities = resolution.entities
    dimensions = resolution.dimensions
    trend_grain = None
    catalog = catalog_request(text)

    if _COMPARISON.search(text) or _with_comparison(entities, text):
        intent_type = IntentType.COMPARISON
    elif _TREND.search(text):
        intent_type = IntentType.TREND
        trend_grain = "month" if _MONTHLY.search(text) else "quarter"
    elif dimensions:
        intent_type = IntentType.BREAKDOWN
    elif catalog is not None:
        intent_type = IntentType.CATALOG
    elif _FUNNEL.search(text) or any(e.kind in _SUBJECT_KINDS + _TIME_KINDS for e in entities):
        intent_type = IntentType.FUNNEL
    else:
        intent_type = IntentType.GENERAL

    time_filter = extract_time_filter(text, entities, intent_type, dimensions, today)

    intent = QueryIntent(
        type=intent_type,
        text=text,
        entities=entities,
        breakdown_dimensions=dimensions if intent_type in (IntentType.BREAKDOWN, IntentType.COMPARISON) else (),
        time_filter=time_filter,
        comparison=intent_type == IntentType.COMPARISON,
        trend_grain=trend_grain,
        catalog_entity=catalog[0] if intent_type == IntentType.CATALOG else None,
        catalog_action=catalog[1] if intent_type == IntentType.CATALOG else None,
        lookup_failures=resolution.lookup_failures,
    )
    logger.info(
        "Classified intent | %s",
        kv(
            type=intent.type.value,
            catalog=intent.catalog_entity,
            dimensions=list(intent.breakdown_dimensions) or None,
            quarter=time_filter.quarter if time_filter else None,
            time_source=time_filter.source if time_filter else None,
        ),
    )
    return intent


def parse_intent(
    text: str,
    lookup: ValueLookup | None = None,
    model: EngagementModel | None = None,
    today: date | None = None,
) -> QueryIntent:
    """Resolve entities in *text* and classify it in one step."""
    if model is None:
        model = load_engagement_model()
    resolution = resolve_entities(
        text, lookup=lookup, model=model, today=today, wants_subjects=has_comparison_signal(text),
    )
    return classify_intent(text, resolution, today=today)
