"""
Unit tests -- entity resolution: program / region aliases, quarters,
months, breakdown dimensions, fuzzy lessons and live-value filtering.
"""
from datetime import date

import pytest

from src.copilot.resolver import (
    month_to_quarter,
    resolve_entities,
    resolve_program_alias,
    resolve_region_alias,
)

TODAY = date(2025, 8, 15)

_LIVE = {
    "program_name_1": ["ASG Primary Path", "LPW Path", "MCG ASG Path", "PMax ASG Path"],
    "acq_region_1": ["Americas", "APAC", "EMEA"],
    "send_date_quarter_1": ["2024-Q3", "2024-Q4", "2025-Q1", "2025-Q2"],
    "lesson_name_1": ["Asset Groups 101", "Landing Page Welcome", "PMax Basics"],
}


class StubLookup:
    def __init__(self, values=None, failing=()):
        self.values = values if values is not None else _LIVE
        self.failing = set(failing)
        self.calls = []

    def distinct_values(self, column):
        self.calls.append(column)
        if column in self.failing:
            raise ConnectionError("executor down")
        return list(self.values.get(column, []))


def _values(resolution, kind):
    return [v for e in resolution.of_kind(kind) for v in e.values]


# ── Programs ─────────────────────────────────────────────

def test_longest_alias_wins():
    r = resolve_entities("funnel for ASG Primary Path", today=TODAY)
    assert _values(r, "program") == ["ASG Primary Path"]


def test_asg_fans_out_to_three_programs():
    assert sorted(resolve_program_alias("asg")) == ["ASG Primary Path", "MCG ASG Path", "PMax ASG Path"]
    r = resolve_entities("show ASG deliveries", today=TODAY)
    assert len(_values(r, "program")) == 3


def test_program_alias_idempotent():
    once = resolve_program_alias("lpw")
    assert resolve_program_alias(once[0].lower()) == once


def test_unknown_alias_resolves_to_nothing():
    assert resolve_program_alias("banana path") == []


def test_programs_filtered_by_live_values():
    lookup = StubLookup({**_LIVE, "program_name_1": ["ASG Primary Path"]})
    r = resolve_entities("show ASG deliveries", lookup=lookup, today=TODAY)
    assert _values(r, "program") == ["ASG Primary Path"]


def test_program_lookup_failure_recorded_not_raised():
    lookup = StubLookup(failing={"program_name_1"})
    r = resolve_entities("funnel for LPW Path", lookup=lookup, today=TODAY)
    assert r.of_kind("program") == []
    assert "program_name_1" in r.lookup_failures


# ── Regions ──────────────────────────────────────────────

def test_region_synonym_case_insensitive():
    assert resolve_region_alias("Europe") == "EMEA"
    r = resolve_entities("funnel in north america", today=TODAY)
    assert _values(r, "region") == ["Americas"]


def test_region_code_is_case_sensitive():
    assert _values(resolve_entities("funnel for US", today=TODAY), "region") == ["Americas"]
    assert _values(resolve_entities("show us the funnel", today=TODAY), "region") == []


def test_unknown_region():
    assert resolve_region_alias("atlantis") is None


# ── Time ─────────────────────────────────────────────────

@pytest.mark.parametrize("text, expected", [
    ("funnel for Q3 2025", "2025-Q3"),
    ("funnel for 2024-Q4", "2024-Q4"),
    ("funnel for Q1 '25", "2025-Q1"),
    ("funnel for Q2 of 24", "2024-Q2"),
    ("funnel for quarter 2 2024", "2024-Q2"),
    ("funnel for the third quarter of 2024", "2024-Q3"),
])
def test_quarter_patterns(text, expected):
    r = resolve_entities(text, today=TODAY)
    assert _values(r, "quarter") == [expected]


def test_bare_quarter_uses_latest_live_year():
    r = resolve_entities("funnel for Q3", lookup=StubLookup(), today=TODAY)
    assert _values(r, "quarter") == ["2024-Q3"]


def test_bare_number_after_quarter_is_not_a_year():
    r = resolve_entities("top Q3 10 programs", today=TODAY)
    assert _values(r, "quarter") == ["2025-Q3"]


def test_bare_quarter_defaults_to_current_year():
    r = resolve_entities("funnel for Q4", today=TODAY)
    assert _values(r, "quarter") == ["2025-Q4"]


def test_month_maps_to_quarter():
    assert month_to_quarter("March") == 1
    assert month_to_quarter("Smarch") is None
    r = resolve_entities("funnel in October 2024", today=TODAY)
    assert r.of_kind("month")[0].values == ("2024-Q4",)


def test_may_needs_context():
    assert resolve_entities("may I see the funnel?", today=TODAY).of_kind("month") == []
    assert _values(resolve_entities("funnel in May", today=TODAY), "month") == ["2025-Q2"]


# ── Dimensions ───────────────────────────────────────────

@pytest.mark.parametrize("text, expected", [
    ("deliveries by region", ("region",)),
    ("funnel per language", ("language",)),
    ("open rate broken down by country", ("country",)),
    ("funnel by spend tier", ("tier",)),
    ("funnel by assignment status", ("assignment_status",)),
])
def test_breakdown_dimensions(text, expected):
    assert resolve_entities(text, today=TODAY).dimensions == expected


def test_show_regions_is_not_a_breakdown_or_region():
    r = resolve_entities("show regions", today=TODAY)
    assert r.dimensions == ()
    assert r.entities == ()


# ── Fuzzy ────────────────────────────────────────────────

def test_fuzzy_lesson_needs_live_values():
    assert resolve_entities("funnel for the PMax Basics lesson", today=TODAY).of_kind("lesson") == []


def test_fuzzy_lesson_match():
    r = resolve_entities("funnel for the asset groups lesson", lookup=StubLookup(), today=TODAY)
    lessons = r.of_kind("lesson")
    assert [e.values[0] for e in lessons] == ["Asset Groups 101"]
    assert lessons[0].method == "fuzzy"
    assert lessons[0].score == pytest.approx(0.9)


def test_fuzzy_lessons_for_comparison():
    r = resolve_entities(
        "compare asset groups vs landing page welcome",
        lookup=StubLookup(), today=TODAY, wants_subjects=True,
    )
    assert [e.values[0] for e in r.of_kind("lesson")] == ["Asset Groups 101", "Landing Page Welcome"]


def test_entities_in_text_order():
    r = resolve_entities("EMEA funnel for LPW Path in Q2 2025", today=TODAY)
    assert [e.kind for e in r.entities] == ["region", "program", "quarter"]
