"""
Entity & alias resolution.

Maps free-text fragments of a question onto canonical dataset values:

  - programs   static alias table (one alias -> one or more canonical names),
               longest alias first; fuzzy fallback against live values
  - regions    synonym table (case-insensitive) + upper-case codes
               (case-sensitive, so the pronoun "us" never resolves)
  - quarters   ``Q3``, ``Q3 2025``, ``2025-Q3``, ``quarter 3``, ``third quarter``
  - months     month name -> calendar quarter
  - lessons    fuzzy only, against live lesson names
  - dimensions the word after "by" / "per" / "broken down by"

Every matched span is masked before the next pass so text consumed by an
alias is never re-scored.  Canonical program / region / lesson values must
be present in the live distinct-value set for their column; a failed live
lookup yields no match for that column and is recorded in
``lookup_failures``.  Resolution never raises.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from typing import Protocol, Sequence

from src.copilot.fuzzy import fuzzy_match
from src.copilot.intent import ResolvedEntity
from src.governance.semantic_loader import load_engagement_model, EngagementModel
from src.core.logging import get_logger, kv

logger = get_logger(__name__)


class ValueLookup(Protocol):
    """Anything that can list the distinct non-null values of a column."""

    def distinct_values(self, column: str) -> list[str]: ...


@dataclass(frozen=True)
class Resolution:
    """Everything the resolver found in one question."""

    entities: tuple[ResolvedEntity, ...] = ()
    dimensions: tuple[str, ...] = ()
    lookup_failures: tuple[str, ...] = ()

    def of_kind(self, kind: str) -> list[ResolvedEntity]:
        return [e for e in self.entities if e.kind == kind]


# ── Compiled patterns ────────────────────────────────────

_ORDINALS = {"first": 1, "1st": 1, "second": 2, "2nd": 2, "third": 3, "3rd": 3, "fourth": 4, "4th": 4}

_YEAR_FIRST_QUARTER = re.compile(r"\b(\d{4})[\s\-]?q([1-4])\b", re.IGNORECASE)
_QUARTER_TOKEN = re.compile(
    r"\bq([1-4])\b(?:[\s,\-]*(?:of\s+)?(\d{4})\b|\s*(?:of\s+)?'(\d{2})\b|\s+of\s+(\d{2})\b)?",
    re.IGNORECASE,
)
_QUARTER_WORD = re.compile(r"\bquarter\s+([1-4])\b(?:\s*(?:of\s+)?(\d{4})\b)?", re.IGNORECASE)
_ORDINAL_QUARTER = re.compile(
    r"\b(first|second|third|fourth|1st|2nd|3rd|4th)\s+quarter\b(?:\s*(?:of\s+)?(\d{4})\b)?",
    re.IGNORECASE,
)
_MAY_CONTEXT = re.compile(r"\b(?:in|during|for|of|since|from|through)\s+$", re.IGNORECASE)

_BREAKDOWN = re.compile(
    r"\b(?:broken\s+down\s+by|break\s+(?:it|this|that)?\s*down\s+by|breakdown\s+by|split\s+by|by|per)\s+"
    r"(?:each\s+|the\s+)?([a-z]+)(?:\s+([a-z]+))?",
    re.IGNORECASE,
)

_SUBJECT_SPLIT = re.compile(r"\b(?:vs\.?|versus|with|and|against|compared?\s+to)\b|,", re.IGNORECASE)
_LESSON_KEYWORD = re.compile(r"\b(?:lesson|lessons|module|modules|chapter|chapters)\b", re.IGNORECASE)
_PROGRAM_KEYWORD = re.compile(r"\b(?:program|programs|path|paths|course|courses)\b", re.IGNORECASE)


def _phrase_pattern(phrase: str, ignore_case: bool = True) -> re.Pattern[str]:
    body = r"\s+".join(re.escape(part) for part in phrase.split())
    flags = re.IGNORECASE if ignore_case else 0
    return re.compile(rf"(?<![A-Za-z0-9]){body}(?![A-Za-z0-9])", flags)


class _MaskedText:
    """The question with already-consumed spans blanked out."""

    def __init__(self, text: str):
        self.text = text
        self._chars = list(text)

    @property
    def current(self) -> str:
        return "".join(self._chars)

    def take(self, pattern: re.Pattern[str]) -> list[re.Match[str]]:
        matches = list(pattern.finditer(self.current))
        for m in matches:
            self.mask(m.start(), m.end())
        return matches

    def mask(self, start: int, end: int) -> None:
        for i in range(start, end):
            self._chars[i] = " "


class _LiveValues:
    """Per-call memo of distinct-value lookups; failures are remembered, not raised."""

    def __init__(self, lookup: ValueLookup | None):
        self._lookup = lookup
        self._values: dict[str, set[str] | None] = {}
        self.failures: list[str] = []

    @property
    def enabled(self) -> bool:
        return self._lookup is not None

    def get(self, column: str) -> set[str] | None:
        if self._lookup is None:
            return None
        if column not in self._values:
            try:
                self._values[column] = {v for v in self._lookup.distinct_values(column) if isinstance(v, str)}
            except Exception as exc:
                logger.warning("Live value lookup failed | %s", kv(column=column, error=exc))
                self._values[column] = None
                self.failures.append(column)
        return self._values[column]


# ── Individual passes ────────────────────────────────────


def _resolve_programs(masked: _MaskedText, model: EngagementModel, live: _LiveValues) -> list[tuple[int, ResolvedEntity]]:
    column = model.column("program")
    found: list[tuple[int, ResolvedEntity]] = []
    for alias in sorted(model.program_aliases, key=len, reverse=True):
        for m in masked.take(_phrase_pattern(alias)):
            found.append((m.start(), ResolvedEntity(
                kind="program", text=m.group(0), values=model.program_aliases[alias], method="alias",
            )))
    found.sort(key=lambda item: item[0])

    if not live.enabled or not found:
        return _dedupe(found)
    known = live.get(column)
    if known is None:
        return []
    kept = []
    for pos, entity in found:
        values = tuple(v for v in entity.values if v in known)
        if values:
            kept.append((pos, entity.model_copy(update={"values": values})))
        else:
            logger.info("Program alias not in live data | %s", kv(alias=entity.text, values=list(entity.values)))
    return _dedupe(kept)


def _resolve_regions(masked: _MaskedText, model: EngagementModel, live: _LiveValues) -> list[tuple[int, ResolvedEntity]]:
    column = model.column("region")
    found: list[tuple[int, ResolvedEntity]] = []
    for synonym in sorted(model.region_aliases, key=len, reverse=True):
        for m in masked.take(_phrase_pattern(synonym)):
            found.append((m.start(), ResolvedEntity(
                kind="region", text=m.group(0), values=(model.region_aliases[synonym],), method="alias",
            )))
    for code, canonical in model.region_codes.items():
        for m in masked.take(_phrase_pattern(code, ignore_case=False)):
            found.append((m.start(), ResolvedEntity(
                kind="region", text=m.group(0), values=(canonical,), method="alias",
            )))
    found.sort(key=lambda item: item[0])

    if live.enabled and found:
        known = live.get(column)
        if known is None:
            return []
        found = [(pos, e) for pos, e in found if e.values[0] in known]
    return _dedupe(found)


def _year_for_quarter(number: int, model: EngagementModel, live: _LiveValues, today: date) -> int:
    """Latest live year holding quarter *number*, else the current year."""
    known = live.get(model.column("quarter"))
    if known:
        suffix = f"-Q{number}"
        years = [v[:4] for v in known if v.endswith(suffix) and v[:4].isdigit()]
        if years:
            return int(max(years))
    return today.year


def _normalise_year(raw: str | None) -> int | None:
    if not raw:
        return None
    year = int(raw)
    return 2000 + year if year < 100 else year


def _resolve_time(
    masked: _MaskedText, model: EngagementModel, live: _LiveValues, today: date,
) -> list[tuple[int, ResolvedEntity]]:
    found: list[tuple[int, ResolvedEntity]] = []

    def add(pos: int, text: str, number: int, year: int | None, kind: str = "quarter") -> None:
        if year is None:
            year = _year_for_quarter(number, model, live, today)
        found.append((pos, ResolvedEntity(kind=kind, text=text, values=(f"{year}-Q{number}",), method="pattern")))

    for m in masked.take(_YEAR_FIRST_QUARTER):
        add(m.start(), m.group(0), int(m.group(2)), int(m.group(1)))
    for m in masked.take(_QUARTER_TOKEN):
        add(m.start(), m.group(0), int(m.group(1)), _normalise_year(m.group(2) or m.group(3) or m.group(4)))
    for m in masked.take(_QUARTER_WORD):
        add(m.start(), m.group(0), int(m.group(1)), _normalise_year(m.group(2)))
    for m in masked.take(_ORDINAL_QUARTER):
        add(m.start(), m.group(0), _ORDINALS[m.group(1).lower()], _normalise_year(m.group(2)))

    for month, number in model.month_quarters.items():
        pattern = re.compile(rf"\b{month}\b(?:\s*,?\s*(\d{{4}})\b)?", re.IGNORECASE)
        for m in pattern.finditer(masked.current):
            if month == "may" and not m.group(1) and not _MAY_CONTEXT.search(masked.current[: m.start()]):
                continue
            masked.mask(m.start(), m.end())
            add(m.start(), m.group(0), number, _normalise_year(m.group(1)), kind="month")

    found.sort(key=lambda item: item[0])
    return found


def _resolve_dimensions(masked: _MaskedText, model: EngagementModel) -> list[str]:
    names: list[str] = []
    for m in _BREAKDOWN.finditer(masked.current):
        first, second = m.group(1), m.group(2)
        dim = None
        if second:
            dim = model.dimension_for_word(f"{first} {second}")
            end = m.end(2)
        if dim is None:
            dim = model.dimension_for_word(first)
            end = m.end(1)
        if dim is None:
            continue
        masked.mask(m.start(), end)
        if dim.name not in names:
            names.append(dim.name)
    return names


def _fragments(text: str) -> list[str]:
    return [f.strip() for f in _SUBJECT_SPLIT.split(text) if f and f.strip()]


def _resolve_fuzzy(
    masked: _MaskedText,
    kind: str,
    column: str,
    model: EngagementModel,
    live: _LiveValues,
    limit: int | None = None,
) -> list[tuple[int, ResolvedEntity]]:
    """Best fuzzy hit per remaining text fragment."""
    candidates = live.get(column)
    if not candidates:
        return []
    ordered = sorted(candidates)
    found: list[tuple[int, ResolvedEntity]] = []
    seen: set[str] = set()
    for fragment in _fragments(masked.current):
        matches = fuzzy_match(fragment, ordered, model=model)
        if not matches or matches[0].value in seen:
            continue
        best = matches[0]
        seen.add(best.value)
        pos = masked.current.find(fragment)
        masked.mask(pos, pos + len(fragment))
        found.append((pos, ResolvedEntity(kind=kind, text=fragment, values=(best.value,), method="fuzzy", score=best.score)))
        if limit is not None and len(found) >= limit:
            break
    return found


def _dedupe(found: list[tuple[int, ResolvedEntity]]) -> list[tuple[int, ResolvedEntity]]:
    out: list[tuple[int, ResolvedEntity]] = []
    seen: set[tuple[str, ...]] = set()
    for pos, entity in found:
        if entity.values in seen:
            continue
        seen.add(entity.values)
        out.append((pos, entity))
    return out


# ── Public API ───────────────────────────────────────────


def resolve_entities(
    text: str,
    lookup: ValueLookup | None = None,
    model: EngagementModel | None = None,
    today: date | None = None,
    wants_subjects: bool = False,
) -> Resolution:
    """Resolve every entity mentioned in *text*.

    Parameters
    ----------
    text : str
        The raw question.
    lookup : ValueLookup, optional
        Live distinct-value source.  Without one, alias-table values are
        trusted as-is and no fuzzy matching happens.
    model : EngagementModel, optional
        Auto-loaded when omitted.
    today : date, optional
        Reference date for bare quarter numbers.
    wants_subjects : bool
        True when the question is a comparison; fuzzy matching then also
        runs to find a second subject.
    """
    if model is None:
        model = load_engagement_model()
    if today is None:
        today = date.today()

    live = _LiveValues(lookup)
    masked = _MaskedText(text)

    programs = _resolve_programs(masked, model, live)
    times = _resolve_time(masked, model, live, today)
    dimensions = _resolve_dimensions(masked, model)
    regions = _resolve_regions(masked, model, live)

    lessons: list[tuple[int, ResolvedEntity]] = []
    if live.enabled:
        remaining = masked.current
        if not programs and (_PROGRAM_KEYWORD.search(remaining) or wants_subjects):
            programs = _resolve_fuzzy(masked, "program", model.column("program"), model, live, limit=2)
        needs_more = wants_subjects and len(programs) < 2
        if _LESSON_KEYWORD.search(masked.current) or needs_more:
            lessons = _resolve_fuzzy(masked, "lesson", model.column("lesson"), model, live)

    ordered = sorted(programs + lessons + regions + times, key=lambda item: item[0])
    result = Resolution(
        entities=tuple(e for _, e in ordered),
        dimensions=tuple(dimensions),
        lookup_failures=tuple(live.failures),
    )
    logger.info(
        "Resolved entities | %s",
        kv(
            programs=[v for e in result.of_kind("program") for v in e.values],
            regions=[e.values[0] for e in result.of_kind("region")],
            lessons=[e.values[0] for e in result.of_kind("lesson")],
            time=[e.values[0] for e in result.entities if e.kind in ("quarter", "month")],
            dimensions=list(dimensions),
            lookup_failures=list(live.failures) or None,
        ),
    )
    return result


def resolve_program_alias(alias: str, model: EngagementModel | None = None) -> list[str]:
    """Canonical names for one alias (empty list if unknown)."""
    if model is None:
        model = load_engagement_model()
    return list(model.program_aliases.get(alias.strip().lower(), ()))


def resolve_region_alias(alias: str, model: EngagementModel | None = None) -> str | None:
    """Canonical region for one synonym or code (None if unknown)."""
    if model is None:
        model = load_engagement_model()
    stripped = alias.strip()
    if stripped in model.region_codes:
        return model.region_codes[stripped]
    return model.region_aliases.get(stripped.lower())


def month_to_quarter(month: str, model: EngagementModel | None = None) -> int | None:
    if model is None:
        model = load_engagement_model()
    return model.month_quarters.get(month.strip().lower())


def live_values_for(lookup: ValueLookup, columns: Sequence[str]) -> dict[str, list[str]]:
    """Fetch live values for several columns, skipping failures."""
    live = _LiveValues(lookup)
    out: dict[str, list[str]] = {}
    for column in columns:
        values = live.get(column)
        if values is not None:
            out[column] = sorted(values)
    return out
