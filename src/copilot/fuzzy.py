"""
Threshold-gated fuzzy matching of free text against live column values.

Used for program names not covered by the alias table and for lesson
names, which have no alias table at all.  Scoring:

  - 1.0  cleaned query equals the candidate (case-insensitive)
  - 0.9  one contains the other
  - else token overlap: query tokens that equal, are a substring of, or
    contain some candidate token, divided by the larger token count

Containment (whole string or per token) only counts when the shorter side
has at least MIN_CONTAINMENT_LEN characters, so "3" does not match
"Lesson 13".  Exact equality counts at any length.

Only scores strictly above the threshold (0.3 by default) are kept; results
are sorted by score, descending, ties keeping candidate order.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable

from src.governance.semantic_loader import load_engagement_model, EngagementModel

_TOKEN = re.compile(r"[a-z0-9]+")
MIN_CONTAINMENT_LEN = 3


@dataclass(frozen=True)
class FuzzyMatch:
    value: str
    score: float

    def to_dict(self) -> dict[str, Any]:
        return {"value": self.value, "score": round(self.score, 3)}


# ── Similarity helpers ──────────────────────────────────


def _tokenize(text: str) -> list[str]:
    return _TOKEN.findall(text.lower())


def clean_query(text: str, stop_words: Iterable[str]) -> str:
    """Lower-case *text* and drop stop words."""
    stop = set(stop_words)
    return " ".join(t for t in _tokenize(text) if t not in stop)


def _contains(a: str, b: str) -> bool:
    """Either string contains the other, ignoring very short fragments."""
    if min(len(a), len(b)) < MIN_CONTAINMENT_LEN:
        return False
    return a in b or b in a


def _token_overlap(query_tokens: list[str], candidate_tokens: list[str]) -> float:
    if not query_tokens or not candidate_tokens:
        return 0.0
    matched = 0
    for q in query_tokens:
        if any(q == c or _contains(q, c) for c in candidate_tokens):
            matched += 1
    return matched / max(len(query_tokens), len(candidate_tokens))


def score(cleaned_query: str, candidate: str) -> float:
    """Similarity of an already-cleaned query to one candidate value."""
    q = cleaned_query.strip().lower()
    c = candidate.strip().lower()
    if not q or not c:
        return 0.0
    if q == c:
        return 1.0
    if _contains(q, c):
        return 0.9
    return _token_overlap(q.split(), _tokenize(c))


# ── Public API ──────────────────────────────────────────


def fuzzy_match(
    query: str,
    candidates: Iterable[str],
    model: EngagementModel | None = None,
    threshold: float | None = None,
) -> list[FuzzyMatch]:
    """Rank *candidates* against *query*.

    Parameters
    ----------
    query : str
        Free-text fragment (stop words are stripped here).
    candidates : iterable of str
        Live distinct values for one column.  May be incomplete.
    model : EngagementModel, optional
        Supplies the stop-word list and default threshold.
    threshold : float, optional
        Scores must be strictly greater than this to be returned.

    Returns
    -------
    list[FuzzyMatch]
        Sorted descending by score (stable).
    """
    if model is None:
        model = load_engagement_model()
    if threshold is None:
        threshold = model.fuzzy_threshold

    cleaned = clean_query(query, model.stop_words)
    if not cleaned:
        return []

    matches: list[FuzzyMatch] = []
    seen: set[str] = set()
    for candidate in candidates:
        if not isinstance(candidate, str) or candidate in seen:
            continue
        seen.add(candidate)
        s = score(cleaned, candidate)
        if s > threshold:
            matches.append(FuzzyMatch(value=candidate, score=s))

    matches.sort(key=lambda m: m.score, reverse=True)
    return matches
