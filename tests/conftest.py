"""
Shared fixtures -- a small, hand-counted engagement table in SQLite.

Every funnel below is fixed so tests can assert exact numbers:

  program           region    quarter  lesson                 D     O    C    A
  ASG Primary Path  Americas  2025-Q3  Asset Groups 101     1000  400  100   20
  ASG Primary Path  EMEA      2025-Q3  Asset Groups 101      500  100   50    5
  LPW Path          Americas  2025-Q3  Landing Page Welcome  800  200   40    0
  MCG ASG Path      APAC      2025-Q2  MCG Foundations       300   90   30    3
  PMax ASG Path     Americas  2025-Q2  PMax Basics           600  300   60   12
"""
from __future__ import annotations

from datetime import date

import pytest
from sqlalchemy import create_engine

from pipelines.seed.seed_data import STAGES, seed
from src.copilot.memory import get_memory_store
from src.db.executor import SqlAlchemyExecutor

TODAY = date(2025, 8, 15)

_SENDS = [
    ("ASG Primary Path", "Americas", "US", date(2025, 7, 15), "Asset Groups 101", "High", (1000, 400, 100, 20)),
    ("ASG Primary Path", "EMEA", "DE", date(2025, 8, 20), "Asset Groups 101", "Medium", (500, 100, 50, 5)),
    ("LPW Path", "Americas", "CA", date(2025, 7, 2), "Landing Page Welcome", "High", (800, 200, 40, 0)),
    ("MCG ASG Path", "APAC", "JP", date(2025, 5, 10), "MCG Foundations", None, (300, 90, 30, 3)),
    ("PMax ASG Path", "Americas", "BR", date(2025, 4, 22), "PMax Basics", "Low", (600, 300, 60, 12)),
]


def engagement_rows() -> list[dict]:
    rows: list[dict] = []
    for i, (program, region, country, day, lesson, tier, counts) in enumerate(_SENDS, 1):
        base = {
            "program_name_1": program,
            "lesson_name_1": lesson,
            "lesson_number_1": 1,
            "acq_region_1": region,
            "country_code_1": country,
            "language_1": "English",
            "spend_tier_grouped_1": tier,
            "assignment_status_1": "Assigned" if i % 2 else "Unassigned",
            "primary_product_1": "Search",
            "campaign_id_1": f"CMP-{i:04d}",
            "send_date_1": day,
            "send_date_week_1": f"{day.isocalendar()[0]}-W{day.isocalendar()[1]:02d}",
            "send_date_quarter_1": f"{day.year}-Q{(day.month - 1) // 3 + 1}",
        }
        for (label, order), count in zip(STAGES, counts):
            rows.append({**base, "category_1": label, "funnel_order_1": order, "customers_1": count})
    return rows


@pytest.fixture(scope="session")
def sqlite_engine(tmp_path_factory):
    path = tmp_path_factory.mktemp("db") / "engagement.db"
    engine = create_engine(f"sqlite:///{path}")
    seed(engine, engagement_rows())
    yield engine
    engine.dispose()


@pytest.fixture
def executor(sqlite_engine):
    return SqlAlchemyExecutor(engine=sqlite_engine)


class FakeExecutor:
    """Executor returning canned results; records every statement it sees."""

    def __init__(self, result=None, values=None, error: Exception | None = None):
        self.result = result if result is not None else []
        self.values = values or {}
        self.error = error
        self.statements: list[str] = []

    def execute(self, sql):
        self.statements.append(sql)
        if self.error is not None:
            raise self.error
        return self.result(sql) if callable(self.result) else self.result

    def distinct_values(self, column):
        return list(self.values.get(column, []))


@pytest.fixture
def fake_executor():
    return FakeExecutor


@pytest.fixture(autouse=True)
def _clear_memory():
    yield
    get_memory_store().clear()
