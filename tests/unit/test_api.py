"""
API tests -- FastAPI endpoints via TestClient (no live server needed).
The executor dependency is overridden with the SQLite fixture database.
"""
import pytest
from fastapi.testclient import TestClient

from src.api.main import app
from src.db.executor import SqlAlchemyExecutor, get_executor

client = TestClient(app)


@pytest.fixture(autouse=True)
def _sqlite_executor(sqlite_engine):
    app.dependency_overrides[get_executor] = lambda: SqlAlchemyExecutor(engine=sqlite_engine)
    yield
    app.dependency_overrides.clear()



def test_health():
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"



def test_dimensions_list():
    resp = client.get("/dimensions")
    assert resp.status_code == 200
    data = resp.json()
    assert "region" in data["dimensions"]
    assert "tier" in data["dimensions"]


def test_dimensions_detail():
    resp = client.get("/dimensions/detail")
    assert resp.status_code == 200
    region = next(d for d in resp.json() if d["name"] == "region")
    assert region["column"] == "acq_region_1"
    assert "geo" in region["synonyms"]


def test_live_values():
    resp = client.get("/values/region")
    assert resp.status_code == 200
    assert resp.json()["values"] == ["APAC", "Americas", "EMEA"]


def test_live_values_unknown_dimension():
    assert client.get("/values/colour").status_code == 404


def test_full_catalog():
    resp = client.get("/catalog")
    assert resp.status_code == 200
    data = resp.json()
    assert data["table"] == "sample_engagement_data"
    assert [s["name"] for s in data["funnel_stages"]] == ["deliveries", "opens", "clicks", "adoptions"]
    assert "LPW Path" in data["programs"]
    assert data["program_aliases"]["lpw"] == ["LPW Path"]
    assert set(data["regions"]) == {"Americas", "EMEA", "APAC"}



def test_ask_funnel():
    resp = client.post("/ask", json={"question": "Show funnel performance for ASG Primary Path in Americas"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["error_kind"] is None
    assert data["visualization"]["kind"] == "funnel"
    assert data["visualization"]["payload"]["metrics"]["deliveries"] == 1000
    assert data["plan"]["sql"].startswith("SELECT")


def test_ask_general_question():
    resp = client.post("/ask", json={"question": "show regions"})
    assert resp.status_code == 200
    assert resp.json()["visualization"] is None


def test_ask_catalog_question():
    resp = client.post("/ask", json={"question": "What programs are available?"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["plan"]["intent_type"] == "catalog"
    assert data["visualization"]["kind"] == "table"
    assert data["narrative"].startswith("Here are the **4 programs** available:")


def test_ask_rejects_empty_question():
    assert client.post("/ask", json={"question": ""}).status_code == 422


def test_plan_is_dry_run():
    resp = client.post("/ask/plan", json={"question": "Compare ASG Primary Path with LPW Path"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["row_count"] == 0
    assert set(data["plan"]["subject_sql"]) == {"ASG Primary Path", "LPW Path"}


def test_deep_dive_endpoint():
    resp = client.post("/ask/deep-dive", json={"question": "funnel for ASG Primary Path", "kind": "regional"})
    assert resp.status_code == 200
    assert resp.json()["visualization"]["kind"] == "dimensional_funnel"


def test_deep_dive_unknown_kind():
    resp = client.post("/ask/deep-dive", json={"question": "funnel for LPW Path", "kind": "weekly"})
    assert resp.status_code == 404


def test_list_deep_dives():
    ids = [d["id"] for d in client.get("/ask/deep-dives").json()["deep_dives"]]
    assert ids == ["quarterly", "assignment", "regional"]


def test_session_round_trip():
    client.post("/ask", json={"question": "funnel for LPW Path", "session_id": "api-1"})
    resp = client.post("/ask", json={"question": "break this down by region", "session_id": "api-1"})
    assert resp.json()["plan"]["filters"] == {"program_name_1": ["LPW Path"]}

    memory = client.get("/ask/session/api-1").json()["memory"]
    assert len(memory["queries"]) == 2
    assert client.delete("/ask/session/api-1").json() == {"cleared": True}


def test_copilot_error_maps_to_status(monkeypatch):
    from src.core.errors import QueryTimeoutError

    def slow(*args, **kwargs):
        raise QueryTimeoutError("Query exceeded the statement timeout")

    monkeypatch.setattr("src.api.routers.ask.copilot_ask", slow)
    resp = client.post("/ask", json={"question": "funnel for LPW Path"})
    assert resp.status_code == 504
    assert resp.json() == {
        "error_kind": "timeout",
        "detail": "Query exceeded the statement timeout",
        "retryable": True,
    }
