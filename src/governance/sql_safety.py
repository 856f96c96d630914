"""
Deterministic SQL safety checks (non-LLM).

This is the read-only gate every statement passes before it reaches the
engagement table.  It runs twice: once on the requesting side (the copilot
service, before handing SQL to an executor) and once on the executing side
(``execute_readonly``), because executors can be reached by other callers.

Checks performed:
  1. After trimming and lower-casing, the statement starts with ``select``
  2. No forbidden keyword as a whole word (insert, update, delete, drop,
     create, alter, truncate, grant, revoke)
  3. No statement chaining (``;`` followed by another statement)
  4. No SQL comments (``--`` or ``/*``)

Keywords are matched on word boundaries, never as substrings, so a column
such as ``last_updated`` passes.  Single-quoted string literals are masked
before the keyword scan so a filter value like ``'Update Path'`` passes too;
anything outside a literal is scanned as-is.  Violations are reported, never
stripped or rewritten.
"""
from __future__ import annotations

import re

from src.core.errors import UnsafeQueryError
from src.governance.semantic_loader import load_engagement_model, EngagementModel
from src.core.logging import get_logger

logger = get_logger(__name__)

# ── Compiled patterns ────────────────────────────────────

_STRING_LITERAL = re.compile(r"'(?:[^']|'')*'")

_MULTI_STMT = re.compile(r";\s*\S")  # semicolon followed by non-whitespace

_COMMENT_INLINE = re.compile(r"--")
_COMMENT_BLOCK = re.compile(r"/\*")


def _keyword_pattern(keywords: tuple[str, ...]) -> re.Pattern[str]:
    alternation = "|".join(re.escape(k) for k in keywords)
    return re.compile(rf"\b({alternation})\b", re.IGNORECASE)


def mask_string_literals(sql: str) -> str:
    """Replace the contents of complete single-quoted literals with ``''``."""
    return _STRING_LITERAL.sub("''", sql)


def find_forbidden_keywords(sql: str, model: EngagementModel | None = None) -> list[str]:
    """Return forbidden keywords found outside string literals, in order of appearance."""
    if model is None:
        model = load_engagement_model()
    pattern = _keyword_pattern(model.security.forbidden_keywords)
    found: list[str] = []
    for m in pattern.finditer(mask_string_literals(sql)):
        kw = m.group(1).lower()
        if kw not in found:
            found.append(kw)
    return found


def check_sql_safety(
    sql: str,
    model: EngagementModel | None = None,
) -> list[str]:
    """Return a list of safety violations (empty list = safe).

    Parameters
    ----------
    sql : str
        The SQL statement to validate.
    model : EngagementModel, optional
        If None, auto-loads the engagement model from disk.
    """
    if model is None:
        model = load_engagement_model()

    errors: list[str] = []
    clean = sql.strip().lower()

    # ── 1. Must start with SELECT ────────────────────
    if not clean.startswith("select"):
        errors.append("Only SELECT statements are allowed.")

    # ── 2. No forbidden keywords ─────────────────────
    for kw in find_forbidden_keywords(clean, model):
        errors.append(f"Forbidden keyword detected: '{kw}'.")

    masked = mask_string_literals(clean)

    # ── 3. No multi-statement ────────────────────────
    if _MULTI_STMT.search(masked):
        errors.append("Multi-statement SQL is not allowed (found ';' followed by another statement).")

    # ── 4. No SQL comments ───────────────────────────
    if _COMMENT_INLINE.search(masked):
        errors.append("Inline comments (--) are not allowed.")
    if _COMMENT_BLOCK.search(masked):
        errors.append("Block comments (/* */) are not allowed.")

    if errors:
        logger.warning("SQL safety violations: %s", errors)
    return errors


def ensure_read_only(sql: str, model: EngagementModel | None = None) -> None:
    """Raise ``UnsafeQueryError`` unless *sql* passes every safety check."""
    errors = check_sql_safety(sql, model)
    if errors:
        keywords = find_forbidden_keywords(sql, model)
        if not keywords and not sql.strip().lower().startswith("select"):
            first = sql.strip().split(None, 1)
            keywords = [first[0].lower()] if first else []
        raise UnsafeQueryError(errors, keyword=keywords[0] if keywords else None)
