"""
Unit tests -- planner: mock planning, LLM response parsing, fallbacks.
"""
import json
from datetime import date

import pytest

from src.copilot.intent import IntentType
from src.copilot.memory import ConversationMemory
from src.copilot.planner import _parse_llm_response, parse_question, plan
from src.core.errors import PlanningError, UnsafeQueryError
from src.governance.semantic_loader import load_engagement_model

TODAY = date(2025, 8, 15)


@pytest.fixture(scope="module")
def model():
    return load_engagement_model()


# ── Mock mode ────────────────────────────────────────────

def test_funnel_question_gets_plan():
    outcome = plan("Show funnel performance for ASG Primary Path in Americas", today=TODAY)
    assert outcome.intent.type == IntentType.FUNNEL
    assert outcome.plan is not None
    assert not outcome.plan.is_fallback


def test_general_question_has_no_plan():
    outcome = plan("show regions", today=TODAY)
    assert outcome.intent.type == IntentType.GENERAL
    assert outcome.plan is None


def test_single_subject_comparison_has_no_plan():
    outcome = plan("Compare ASG Primary Path", today=TODAY)
    assert outcome.needs_second_subject
    assert outcome.plan is None


def test_parse_failure_falls_back_to_default_plan(monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("resolver exploded")

    monkeypatch.setattr("src.copilot.planner.resolve_entities", boom)
    outcome = plan("funnel for LPW Path", today=TODAY)
    assert outcome.plan.is_fallback
    assert outcome.planning_error == "resolver exploded"


def test_memory_used_for_follow_up():
    memory = ConversationMemory(window=5)
    memory.remember(parse_question("funnel for LPW Path", today=TODAY))
    outcome = plan("break this down by region", memory=memory, today=TODAY)
    assert outcome.intent.type == IntentType.BREAKDOWN
    assert outcome.plan.filters == {"program_name_1": ["LPW Path"]}


# ── LLM response parsing ─────────────────────────────────

def _llm_json(**overrides):
    data = {
        "intent": "LPW funnel",
        "type": "funnel",
        "sql": "SELECT category_1 AS category, SUM(customers_1) AS count FROM sample_engagement_data "
               "WHERE program_name_1 IN ('LPW Path') GROUP BY category_1;",
        "filters": {"program_name_1": ["LPW Path"]},
        "visualization": "funnel",
        "dimension": None,
    }
    data.update(overrides)
    return json.dumps(data)


def test_parse_llm_response(model):
    parsed = _parse_llm_response(_llm_json(), model)
    assert parsed.intent == "LPW funnel"
    assert 'FROM "sample_engagement_data"' in parsed.sql
    assert not parsed.sql.endswith(";")
    assert parsed.filters == {"program_name_1": ["LPW Path"]}


def test_parse_llm_response_in_code_fence(model):
    parsed = _parse_llm_response("Here you go:\n```json\n" + _llm_json() + "\n```", model)
    assert parsed.visualization == "funnel"


def test_parse_llm_comparison(model):
    subjects = {
        "LPW Path": "SELECT category_1 AS category, SUM(customers_1) AS count FROM sample_engagement_data "
                    "WHERE program_name_1 IN ('LPW Path') GROUP BY category_1",
        "MCG ASG Path": "SELECT category_1 AS category, SUM(customers_1) AS count FROM sample_engagement_data "
                        "WHERE program_name_1 IN ('MCG ASG Path') GROUP BY category_1",
    }
    parsed = _parse_llm_response(_llm_json(sql=None, subjects=subjects, type="comparison", visualization=None), model)
    assert parsed.visualization == "comparison"
    assert list(parsed.statements()) == ["LPW Path", "MCG ASG Path"]


def test_parse_llm_unsafe_sql_raises(model):
    with pytest.raises(UnsafeQueryError) as exc_info:
        _parse_llm_response(_llm_json(sql="select * from t; DROP TABLE t"), model)
    assert exc_info.value.keyword == "drop"


def test_parse_llm_not_json(model):
    with pytest.raises(PlanningError):
        _parse_llm_response("I cannot help with that.", model)


def test_parse_llm_missing_sql(model):
    with pytest.raises(PlanningError, match="no SQL"):
        _parse_llm_response(_llm_json(sql=""), model)


def test_parse_llm_filter_outside_live_values(model):
    live = {"program_name_1": ["ASG Primary Path", "LPW Path"]}
    with pytest.raises(PlanningError, match="lpw"):
        _parse_llm_response(_llm_json(filters={"program_name_1": ["lpw"]}), model, live)


def test_parse_llm_non_string_dimension(model):
    with pytest.raises(PlanningError, match="dimension"):
        _parse_llm_response(_llm_json(dimension=["region"]), model)


def test_parse_llm_unknown_dimension(model):
    with pytest.raises(PlanningError, match="colour"):
        _parse_llm_response(_llm_json(dimension="colour", visualization="dimensional_funnel"), model)


def test_parse_llm_known_dimension_kept(model):
    parsed = _parse_llm_response(_llm_json(dimension="region", visualization="dimensional_funnel"), model)
    assert parsed.dimension == "region"


# ── LLM mode end to end ──────────────────────────────────

def test_llm_mode_uses_provider(monkeypatch):
    calls = []

    def fake_llm(prompt, provider=None):
        calls.append(provider)
        return _llm_json()

    monkeypatch.setattr("src.copilot.llm_client.call_llm", fake_llm)
    outcome = plan("funnel for LPW Path", mode="openai", today=TODAY)
    assert calls == ["openai"]
    assert outcome.plan.intent == "LPW funnel"


def test_llm_failure_falls_back(monkeypatch):
    def fake_llm(prompt, provider=None):
        raise TimeoutError("llm timed out")

    monkeypatch.setattr("src.copilot.llm_client.call_llm", fake_llm)
    outcome = plan("funnel for LPW Path", mode="anthropic", today=TODAY)
    assert outcome.plan.is_fallback
    assert "llm timed out" in outcome.planning_error


def test_llm_unsafe_sql_is_not_downgraded(monkeypatch):
    monkeypatch.setattr(
        "src.copilot.llm_client.call_llm",
        lambda prompt, provider=None: _llm_json(sql="DELETE FROM sample_engagement_data"),
    )
    with pytest.raises(UnsafeQueryError):
        plan("funnel for LPW Path", mode="openai", today=TODAY)


def test_llm_invalid_field_types_fall_back(monkeypatch):
    monkeypatch.setattr(
        "src.copilot.llm_client.call_llm",
        lambda prompt, provider=None: json.dumps({"sql": "SELECT 1 FROM sample_engagement_data", "dimension": ["region"]}),
    )
    outcome = plan("funnel for LPW Path", mode="openai", today=TODAY)
    assert outcome.plan.is_fallback
    assert "dimension" in outcome.planning_error


def test_catalog_question_is_planned_without_the_llm(monkeypatch):
    def fake_llm(prompt, provider=None):
        raise AssertionError("catalogue questions never reach the LLM")

    monkeypatch.setattr("src.copilot.llm_client.call_llm", fake_llm)
    outcome = plan("How many programs do we have?", mode="openai", today=TODAY)
    assert outcome.intent.type == IntentType.CATALOG
    assert outcome.plan.intent == "Count programs"
    assert not outcome.plan.is_fallback
