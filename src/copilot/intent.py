"""
QueryIntent / QueryPlan -- the structured intermediate representation
between a chat message and SQL.
"""
from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class IntentType(str, Enum):
    COMPARISON = "comparison"
    TREND = "trend"
    BREAKDOWN = "breakdown"
    FUNNEL = "funnel"
    CATALOG = "catalog"
    GENERAL = "general"


EntityKind = Literal["program", "region", "quarter", "month", "dimension", "lesson"]
MatchMethod = Literal["alias", "fuzzy", "pattern", "memory"]
TimeSource = Literal["explicit", "month", "current", "default"]
CatalogEntity = Literal["programs", "lessons", "regions", "customers"]
CatalogAction = Literal["list", "count"]
VisualizationKind = Literal["funnel", "comparison", "dimensional_funnel", "trend", "table", "text"]


class ResolvedEntity(BaseModel):
    """One span of the question mapped onto canonical dataset values."""

    model_config = ConfigDict(frozen=True)

    kind: EntityKind
    text: str = Field(..., description="Raw text span the entity was resolved from")
    values: tuple[str, ...] = Field(..., min_length=1, description="Canonical values (always a set, even of one)")
    method: MatchMethod = "alias"
    score: float = 1.0


class TimeFilter(BaseModel):
    """A quarter restriction.  ``source='default'`` means the quarter was assumed."""

    model_config = ConfigDict(frozen=True)

    quarter: str = Field(..., description="Quarter token, e.g. '2025-Q3'")
    source: TimeSource = "explicit"
    month: str | None = None

    @property
    def is_assumed(self) -> bool:
        return self.source == "default"


class QueryIntent(BaseModel):
    """Parsed representation of one chat turn.  Built fresh per turn, never mutated."""

    model_config = ConfigDict(frozen=True)

    type: IntentType
    text: str
    entities: tuple[ResolvedEntity, ...] = ()
    breakdown_dimensions: tuple[str, ...] = Field(default=(), description="Dimension names, e.g. ('region',)")
    time_filter: TimeFilter | None = None
    comparison: bool = False
    trend_grain: Literal["quarter", "month"] | None = None
    catalog_entity: CatalogEntity | None = Field(None, description="What a catalogue question lists or counts")
    catalog_action: CatalogAction | None = None
    lookup_failures: tuple[str, ...] = Field(default=(), description="Columns whose live values could not be fetched")

    def of_kind(self, kind: str) -> list[ResolvedEntity]:
        return [e for e in self.entities if e.kind == kind]

    @property
    def programs(self) -> list[str]:
        names: list[str] = []
        for e in self.of_kind("program"):
            for v in e.values:
                if v not in names:
                    names.append(v)
        return names

    @property
    def lessons(self) -> list[str]:
        return [e.values[0] for e in self.of_kind("lesson")]

    @property
    def region(self) -> str | None:
        regions = self.of_kind("region")
        return regions[0].values[0] if regions else None

    def comparison_subjects(self) -> list[ResolvedEntity]:
        """Entities being compared: programs first, then lessons, then regions."""
        for kind in ("program", "lesson", "region"):
            found = self.of_kind(kind)
            if len(found) >= 2:
                return found[:2]
        for kind in ("program", "lesson", "region"):
            found = self.of_kind(kind)
            if found:
                return found
        return []


class QueryPlan(BaseModel):
    """Executable plan built from a QueryIntent (or parsed from an LLM)."""

    intent: str = Field(..., description="One-line summary of what the user asked for")
    intent_type: IntentType = IntentType.FUNNEL
    entities: list[str] = Field(default_factory=list)
    filters: dict[str, list[str]] = Field(
        default_factory=dict,
        description="Column -> allowed values, e.g. {'acq_region_1': ['Americas']}",
    )
    sql: str = ""
    subject_sql: dict[str, str] = Field(
        default_factory=dict,
        description="Comparison subject label -> its own lookup statement",
    )
    visualization: VisualizationKind = "funnel"
    dimension: str | None = Field(None, description="Output column holding the breakdown value")
    explanation: str = ""
    is_fallback: bool = False

    def statements(self) -> dict[str, str]:
        """Every statement this plan will execute, keyed by label."""
        if self.subject_sql:
            return dict(self.subject_sql)
        return {"main": self.sql} if self.sql else {}
