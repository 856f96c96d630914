"""
Funnel aggregation -- reduces raw result rows into canonical funnel metrics.

Result sets come in two shapes:

  PIVOTED   rows already carry one numeric field per funnel stage
            (``deliveries``, ``opens``, ``clicks`` [, ``adoptions``])
  CATEGORY  rows carry a free-text category label plus a count
            (``category`` / ``category_1`` and ``count`` / ``customers_1``)

The shape is detected once per result set; anything else reduces to an
empty funnel.  Category labels are bucketed by case-insensitive substring
("deliver", "open", "click", "adopt"/"convert"/"complete"); unmatched
labels are ignored.

Rates are computed only after all sums are final.  Every rate is a
percentage in [0, 100] and is exactly 0 when its denominator is 0.
Adoption rate uses deliveries as its denominator.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Iterable, Mapping

from src.governance.semantic_loader import load_engagement_model, EngagementModel
from src.core.logging import get_logger

logger = get_logger(__name__)

UNKNOWN_BUCKET = "Unknown"

_CATEGORY_FIELDS = ("category", "category_1")
_COUNT_FIELDS = ("count", "customers_1")

RATE_NAMES = ("open_rate", "click_through_rate", "click_through_open_rate", "adoption_rate")


class RowShape(str, Enum):
    PIVOTED = "pivoted"
    CATEGORY = "category"
    UNKNOWN = "unknown"


# ── Metrics ─────────────────────────────────────────────


def rate(numerator: int, denominator: int) -> float:
    """``numerator / denominator * 100`` clamped to [0, 100]; 0 when denominator is 0."""
    if denominator <= 0:
        return 0.0
    return min(100.0, max(0.0, numerator * 100 / denominator))


@dataclass(frozen=True)
class FunnelMetrics:
    deliveries: int = 0
    opens: int = 0
    clicks: int = 0
    adoptions: int = 0
    open_rate: float = 0.0
    click_through_rate: float = 0.0
    click_through_open_rate: float = 0.0
    adoption_rate: float = 0.0

    @classmethod
    def from_counts(cls, deliveries: int = 0, opens: int = 0, clicks: int = 0, adoptions: int = 0) -> FunnelMetrics:
        return cls(
            deliveries=deliveries,
            opens=opens,
            clicks=clicks,
            adoptions=adoptions,
            open_rate=rate(opens, deliveries),
            click_through_rate=rate(clicks, deliveries),
            click_through_open_rate=rate(clicks, opens),
            adoption_rate=rate(adoptions, deliveries),
        )

    @property
    def is_empty(self) -> bool:
        return not (self.deliveries or self.opens or self.clicks or self.adoptions)

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        for name in RATE_NAMES:
            out[name] = round(out[name], 2)
        return out


DimensionalFunnelMetrics = dict[str, FunnelMetrics]


# ── Helpers ─────────────────────────────────────────────


def to_count(value: Any) -> int:
    """Coerce a count cell to a non-negative int (bad values count as 0)."""
    if isinstance(value, bool) or value is None:
        return 0
    if isinstance(value, int):
        return max(value, 0)
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if math.isnan(number) or math.isinf(number):
        return 0
    return max(int(round(number)), 0)


def _first_present(row: Mapping[str, Any], names: tuple[str, ...]) -> str | None:
    for name in names:
        if name in row:
            return name
    return None


def detect_shape(rows: Iterable[Mapping[str, Any]], model: EngagementModel | None = None) -> RowShape:
    """Classify a result set by the fields of its first row."""
    if model is None:
        model = load_engagement_model()
    for row in rows:
        if not isinstance(row, Mapping):
            continue
        stage_names = [s.name for s in model.funnel_stages[:3]]
        if all(name in row for name in stage_names):
            return RowShape.PIVOTED
        if _first_present(row, _CATEGORY_FIELDS) and _first_present(row, _COUNT_FIELDS):
            return RowShape.CATEGORY
        return RowShape.UNKNOWN
    return RowShape.UNKNOWN


# ── Public API ──────────────────────────────────────────


def aggregate_funnel(rows: Iterable[Mapping[str, Any]], model: EngagementModel | None = None) -> FunnelMetrics:
    """Reduce one result set into a single FunnelMetrics."""
    if model is None:
        model = load_engagement_model()
    rows = [r for r in rows if isinstance(r, Mapping)]
    shape = detect_shape(rows, model)
    totals = {stage.name: 0 for stage in model.funnel_stages}

    if shape == RowShape.PIVOTED:
        for row in rows:
            for name in totals:
                totals[name] += to_count(row.get(name))
    elif shape == RowShape.CATEGORY:
        for row in rows:
            category_field = _first_present(row, _CATEGORY_FIELDS)
            count_field = _first_present(row, _COUNT_FIELDS)
            label = row.get(category_field) if category_field else None
            if not isinstance(label, str):
                continue
            stage = model.stage_for_category(label)
            if stage is not None:
                totals[stage.name] += to_count(row.get(count_field))
    elif rows:
        logger.warning("Unrecognised result shape, columns=%s", sorted(rows[0].keys()))

    return FunnelMetrics.from_counts(
        deliveries=totals.get("deliveries", 0),
        opens=totals.get("opens", 0),
        clicks=totals.get("clicks", 0),
        adoptions=totals.get("adoptions", 0),
    )


def bucket_key(value: Any) -> str:
    if value is None:
        return UNKNOWN_BUCKET
    text = str(value).strip()
    return text or UNKNOWN_BUCKET


def aggregate_dimensional(
    rows: Iterable[Mapping[str, Any]],
    dimension: str,
    model: EngagementModel | None = None,
) -> DimensionalFunnelMetrics:
    """Group rows by *dimension* (null / blank -> "Unknown") and reduce each group."""
    if model is None:
        model = load_engagement_model()
    groups: dict[str, list[Mapping[str, Any]]] = {}
    for row in rows:
        if not isinstance(row, Mapping):
            continue
        groups.setdefault(bucket_key(row.get(dimension)), []).append(row)
    return {key: aggregate_funnel(group, model) for key, group in groups.items()}


def compare_funnels(a: FunnelMetrics, b: FunnelMetrics) -> dict[str, float]:
    """Per-rate difference ``a - b`` in percentage points."""
    return {name: round(getattr(a, name) - getattr(b, name), 2) for name in RATE_NAMES}
