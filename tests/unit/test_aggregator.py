"""
Unit tests -- funnel aggregation: both row shapes, rates, grouping.
"""
import random
from decimal import Decimal

import pytest

from src.copilot.aggregator import (
    aggregate_dimensional,
    aggregate_funnel,
    compare_funnels,
    detect_shape,
    rate,
    to_count,
    FunnelMetrics,
    RowShape,
)


def test_scenario_category_rows():
    rows = [
        {"category": "Deliveries", "count": 100},
        {"category": "Opens", "count": 40},
        {"category": "Clicks", "count": 10},
    ]
    m = aggregate_funnel(rows)
    assert (m.deliveries, m.opens, m.clicks, m.adoptions) == (100, 40, 10, 0)
    assert m.open_rate == 40
    assert m.click_through_rate == 10
    assert m.click_through_open_rate == 25
    assert m.adoption_rate == 0


def test_category_labels_case_insensitive_substring():
    rows = [
        {"category_1": "1. DELIVERED", "customers_1": 200},
        {"category_1": "2. opened", "customers_1": 50},
        {"category_1": "3. Clicked", "customers_1": 20},
        {"category_1": "4. Converted", "customers_1": 4},
        {"category_1": "Bounced", "customers_1": 999},
    ]
    m = aggregate_funnel(rows)
    assert (m.deliveries, m.opens, m.clicks, m.adoptions) == (200, 50, 20, 4)
    assert m.adoption_rate == 2


def test_pivoted_rows_are_summed():
    rows = [
        {"deliveries": 100, "opens": 30, "clicks": 6, "adoptions": 1},
        {"deliveries": Decimal("50"), "opens": "20", "clicks": None},
    ]
    m = aggregate_funnel(rows)
    assert (m.deliveries, m.opens, m.clicks, m.adoptions) == (150, 50, 6, 1)


def test_unknown_shape_reduces_to_empty():
    m = aggregate_funnel([{"foo": 1}])
    assert m.is_empty
    assert detect_shape([{"foo": 1}]) == RowShape.UNKNOWN


def test_shape_detection():
    assert detect_shape([{"deliveries": 1, "opens": 1, "clicks": 1}]) == RowShape.PIVOTED
    assert detect_shape([{"category": "x", "count": 1}]) == RowShape.CATEGORY
    assert detect_shape([]) == RowShape.UNKNOWN


def test_empty_rows():
    m = aggregate_funnel([])
    assert m == FunnelMetrics()
    assert m.is_empty


@pytest.mark.parametrize("value, expected", [
    (5, 5), (-3, 0), ("7", 7), ("abc", 0), (None, 0), (True, 0), (2.6, 3), (float("nan"), 0),
])
def test_to_count(value, expected):
    assert to_count(value) == expected


def test_rate_zero_denominator():
    assert rate(10, 0) == 0.0


def test_rates_clamped_to_hundred():
    m = FunnelMetrics.from_counts(deliveries=10, opens=50, clicks=70, adoptions=20)
    for name in ("open_rate", "click_through_rate", "click_through_open_rate", "adoption_rate"):
        assert 0 <= getattr(m, name) <= 100
    assert m.open_rate == 100


def test_order_independence():
    rows = [
        {"category": "Delivered", "count": 10},
        {"category": "Delivered", "count": 15},
        {"category": "Opened", "count": 7},
        {"category": "Clicked", "count": 3},
        {"category": "Adopted", "count": 1},
    ]
    expected = aggregate_funnel(rows)
    shuffled = rows[:]
    random.Random(7).shuffle(shuffled)
    assert aggregate_funnel(shuffled) == expected


def test_to_dict_rounds_rates():
    d = FunnelMetrics.from_counts(deliveries=3, opens=1).to_dict()
    assert d["open_rate"] == 33.33
    assert d["deliveries"] == 3


# ── Dimensional ──────────────────────────────────────────

def test_dimensional_groups_with_unknown_bucket():
    rows = [
        {"region": "Americas", "category": "Delivered", "count": 10},
        {"region": "EMEA", "category": "Delivered", "count": 5},
        {"region": "APAC", "category": "Delivered", "count": 3},
        {"region": None, "category": "Delivered", "count": 2},
        {"region": "  ", "category": "Opened", "count": 1},
    ]
    groups = aggregate_dimensional(rows, "region")
    assert set(groups) == {"Americas", "EMEA", "APAC", "Unknown"}
    assert groups["Unknown"].deliveries == 2
    assert groups["Unknown"].opens == 1


def test_dimensional_pivoted():
    rows = [
        {"period": "2025-Q2", "deliveries": 900, "opens": 390, "clicks": 90, "adoptions": 15},
        {"period": "2025-Q3", "deliveries": 2300, "opens": 700, "clicks": 190, "adoptions": 25},
    ]
    groups = aggregate_dimensional(rows, "period")
    assert groups["2025-Q3"].deliveries == 2300


def test_compare_funnels():
    a = FunnelMetrics.from_counts(deliveries=100, opens=50)
    b = FunnelMetrics.from_counts(deliveries=100, opens=20)
    diff = compare_funnels(a, b)
    assert diff["open_rate"] == 30
    assert diff["adoption_rate"] == 0
