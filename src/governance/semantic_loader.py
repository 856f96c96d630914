"""
Loads, parses, and caches the engagement model YAML into strongly-typed objects.

The engagement model is the single source of truth for:
  - the fixed data-source table and its column roles
  - breakdown dimensions (columns, labels, synonyms)
  - funnel stages and the category-label patterns that map onto them
  - program / region alias tables and the month -> quarter table
  - fuzzy-matching stop words and threshold
  - security rules (forbidden keywords, distinct-value cap)
  - the hard-coded default plan

Everything returned here is immutable: tuples instead of lists and
read-only mapping proxies instead of dicts, so one cached instance can be
shared by concurrent requests.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

import yaml

_MODEL_PATH = Path(__file__).resolve().parents[2] / "semantic_layer" / "engagement_model.yml"


# ── Typed domain objects ─────────────────────────────────

@dataclass(frozen=True)
class Dimension:
    name: str
    column: str
    label: str
    synonyms: tuple[str, ...] = ()


@dataclass(frozen=True)
class FunnelStage:
    name: str
    label: str
    patterns: tuple[str, ...]

    def matches(self, category: str) -> bool:
        lowered = category.lower()
        return any(p in lowered for p in self.patterns)


@dataclass(frozen=True)
class SecurityRules:
    forbidden_keywords: tuple[str, ...] = (
        "insert", "update", "delete", "drop", "create",
        "alter", "truncate", "grant", "revoke",
    )
    read_only: bool = True
    max_distinct_values: int = 100


@dataclass(frozen=True)
class DefaultPlan:
    programs: tuple[str, ...]
    region: str | None = None


@dataclass(frozen=True)
class EngagementModel:
    """Fully parsed engagement model."""

    version: int
    table: str
    columns: Mapping[str, str]                       # role -> column
    dimensions: Mapping[str, Dimension]              # keyed by name
    funnel_stages: tuple[FunnelStage, ...]
    program_aliases: Mapping[str, tuple[str, ...]]   # lower-case alias -> canonical names
    region_aliases: Mapping[str, str]                # lower-case synonym -> canonical region
    region_codes: Mapping[str, str]                  # case-sensitive code -> canonical region
    month_quarters: Mapping[str, int]                # month name -> quarter number
    stop_words: frozenset[str]
    fuzzy_threshold: float
    security: SecurityRules
    default_plan: DefaultPlan
    canonical_regions: tuple[str, ...] = field(default=())

    # ── Convenience look-ups ─────────────────────────

    def column(self, role: str) -> str:
        try:
            return self.columns[role]
        except KeyError:
            raise KeyError(f"Unknown column role '{role}'") from None

    def dimension(self, name: str) -> Dimension | None:
        return self.dimensions.get(name)

    def dimension_for_word(self, word: str) -> Dimension | None:
        """Map a free-text dimension word ("regions", "spend tier") to a Dimension."""
        w = word.lower().strip()
        for dim in self.dimensions.values():
            if w == dim.name or w in dim.synonyms:
                return dim
        return None

    def dimension_for_column(self, column: str) -> Dimension | None:
        for dim in self.dimensions.values():
            if dim.column == column:
                return dim
        return None

    def get_dimension_names(self) -> list[str]:
        return list(self.dimensions.keys())

    def get_canonical_programs(self) -> list[str]:
        seen: list[str] = []
        for names in self.program_aliases.values():
            for name in names:
                if name not in seen:
                    seen.append(name)
        return seen

    def known_columns(self) -> set[str]:
        return set(self.columns.values())

    def stage(self, name: str) -> FunnelStage | None:
        for s in self.funnel_stages:
            if s.name == name:
                return s
        return None

    def stage_for_category(self, category: str) -> FunnelStage | None:
        """First funnel stage whose pattern occurs in *category* (case-insensitive)."""
        for s in self.funnel_stages:
            if s.matches(category):
                return s
        return None

    def get_dimensions_list(self) -> list[dict[str, Any]]:
        """Return dimensions as a list of dicts (for API responses)."""
        return [
            {"name": d.name, "column": d.column, "label": d.label, "synonyms": list(d.synonyms)}
            for d in self.dimensions.values()
        ]


# ── Parsing ──────────────────────────────────────────────

def _parse_dimension(raw: dict[str, Any]) -> Dimension:
    return Dimension(
        name=raw["name"],
        column=raw["column"],
        label=raw.get("label", raw["name"].replace("_", " ").title()),
        synonyms=tuple(s.lower() for s in raw.get("synonyms") or []),
    )


def _parse_stage(raw: dict[str, Any]) -> FunnelStage:
    return FunnelStage(
        name=raw["name"],
        label=raw.get("label", raw["name"].title()),
        patterns=tuple(p.lower() for p in raw.get("patterns") or []),
    )


def _parse_program_aliases(raw: dict[str, list[str]] | None) -> Mapping[str, tuple[str, ...]]:
    aliases: dict[str, tuple[str, ...]] = {}
    for alias, names in (raw or {}).items():
        aliases[str(alias).lower()] = tuple(names)
    # canonical names resolve to themselves
    for names in list(aliases.values()):
        for name in names:
            aliases.setdefault(name.lower(), (name,))
    return MappingProxyType(aliases)


def _parse_region_aliases(raw: dict[str, list[str]] | None) -> Mapping[str, str]:
    aliases: dict[str, str] = {}
    for canonical, synonyms in (raw or {}).items():
        aliases[canonical.lower()] = canonical
        for s in synonyms or []:
            aliases[str(s).lower()] = canonical
    return MappingProxyType(aliases)


def _parse_security(raw: dict[str, Any] | None) -> SecurityRules:
    if not raw:
        return SecurityRules()
    return SecurityRules(
        forbidden_keywords=tuple(k.lower() for k in raw.get("forbidden_keywords") or SecurityRules.forbidden_keywords),
        read_only=raw.get("read_only", True),
        max_distinct_values=raw.get("max_distinct_values", 100),
    )


def _parse_model(raw_yaml: dict[str, Any]) -> EngagementModel:
    dimensions = {d["name"]: _parse_dimension(d) for d in raw_yaml.get("dimensions", [])}
    stages = tuple(_parse_stage(s) for s in raw_yaml.get("funnel_stages", []))
    default_raw = raw_yaml.get("default_plan") or {}
    region_raw = raw_yaml.get("region_aliases") or {}
    return EngagementModel(
        version=raw_yaml.get("version", 1),
        table=raw_yaml["table"],
        columns=MappingProxyType(dict(raw_yaml.get("columns") or {})),
        dimensions=MappingProxyType(dimensions),
        funnel_stages=stages,
        program_aliases=_parse_program_aliases(raw_yaml.get("program_aliases")),
        region_aliases=_parse_region_aliases(region_raw),
        region_codes=MappingProxyType(dict(raw_yaml.get("region_codes") or {})),
        month_quarters=MappingProxyType(
            {str(m).lower(): int(q) for m, q in (raw_yaml.get("month_quarters") or {}).items()}
        ),
        stop_words=frozenset(str(w).lower() for w in raw_yaml.get("stop_words") or []),
        fuzzy_threshold=float(raw_yaml.get("fuzzy_threshold", 0.3)),
        security=_parse_security(raw_yaml.get("security")),
        default_plan=DefaultPlan(
            programs=tuple(default_raw.get("programs") or []),
            region=default_raw.get("region"),
        ),
        canonical_regions=tuple(region_raw.keys()),
    )


# ── Public API ───────────────────────────────────────────

@lru_cache
def load_engagement_model() -> EngagementModel:
    """Load and cache the engagement model from YAML."""
    with open(_MODEL_PATH) as f:
        raw = yaml.safe_load(f)
    return _parse_model(raw)


def get_dimension_names() -> list[str]:
    return load_engagement_model().get_dimension_names()
