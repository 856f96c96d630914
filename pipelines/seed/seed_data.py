"""
Seed data generator -- creates realistic engagement-funnel data.

Generates one row per (send, funnel stage): for every program / lesson /
region / quarter combination a delivery count, then opens, clicks and
adoptions drawn as shrinking fractions of the stage before, so every
generated funnel is monotone.

The table is created with SQLAlchemy Core, so the same definition seeds
Postgres and the SQLite database the unit tests use.
Run:  python -m pipelines.seed.seed_data
"""
from __future__ import annotations

import random
from datetime import date, timedelta
from pathlib import Path

from dotenv import load_dotenv
from faker import Faker
from sqlalchemy import Column, Date, Integer, MetaData, String, Table, insert
from sqlalchemy.engine import Engine

# ── Load .env from project root ─────────────────────────
_PROJECT_ROOT = Path(__file__).resolve().parents[2]
load_dotenv(_PROJECT_ROOT / ".env")

# ── Tunables ─────────────────────────────────────────────
NUM_SENDS = 1_200
SEED = 42

PROGRAMS = {
    "ASG Primary Path": ["Getting Started with ASG", "Asset Groups 101", "Measuring ASG Results"],
    "MCG ASG Path": ["MCG Foundations", "Merchant Center Feeds"],
    "PMax ASG Path": ["PMax Basics", "PMax Bidding Strategies", "PMax Reporting"],
    "LPW Path": ["Landing Page Welcome", "Landing Page Optimisation"],
}
REGIONS = {
    "Americas": ["US", "CA", "BR", "MX"],
    "EMEA": ["GB", "DE", "FR", "NG"],
    "APAC": ["JP", "AU", "IN", "SG"],
}
LANGUAGES = ["English", "Spanish", "Portuguese", "German", "French", "Japanese"]
TIERS = ["High", "Medium", "Low", None]
ASSIGNMENT_STATUSES = ["Assigned", "Unassigned", "Pending"]
PRODUCTS = ["Search", "Shopping", "Display", "Video"]
STAGES = [("1. Delivered", 1), ("2. Opened", 2), ("3. Clicked", 3), ("4. Adopted", 4)]

DATE_START = date(2024, 1, 1)
DATE_END = date(2025, 12, 31)

TABLE_NAME = "sample_engagement_data"


def engagement_table(metadata: MetaData | None = None) -> Table:
    """Table definition for the engagement data."""
    return Table(
        TABLE_NAME,
        metadata if metadata is not None else MetaData(),
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("customers_1", Integer, nullable=False),
        Column("category_1", String(64), nullable=False),
        Column("funnel_order_1", Integer),
        Column("program_name_1", String(128)),
        Column("lesson_name_1", String(128)),
        Column("lesson_number_1", Integer),
        Column("acq_region_1", String(32)),
        Column("country_code_1", String(8)),
        Column("language_1", String(32)),
        Column("spend_tier_grouped_1", String(32)),
        Column("assignment_status_1", String(32)),
        Column("primary_product_1", String(64)),
        Column("campaign_id_1", String(32)),
        Column("send_date_1", Date),
        Column("send_date_week_1", String(16)),
        Column("send_date_quarter_1", String(8)),
    )


def quarter_of(day: date) -> str:
    return f"{day.year}-Q{(day.month - 1) // 3 + 1}"


def stage_rows(base: dict, deliveries: int, rates: tuple[float, float, float]) -> list[dict]:
    """Four funnel rows for one send; each stage a fraction of the one before."""
    counts = [deliveries]
    for r in rates:
        counts.append(int(counts[-1] * r))
    return [
        {**base, "category_1": label, "funnel_order_1": order, "customers_1": count}
        for (label, order), count in zip(STAGES, counts)
    ]


def gen_rows(num_sends: int = NUM_SENDS, seed: int = SEED) -> list[dict]:
    fake = Faker()
    Faker.seed(seed)
    rng = random.Random(seed)
    span = (DATE_END - DATE_START).days
    rows: list[dict] = []

    for _ in range(num_sends):
        program = rng.choice(list(PROGRAMS))
        lessons = PROGRAMS[program]
        lesson_idx = rng.randrange(len(lessons))
        region = rng.choice(list(REGIONS))
        send_date = DATE_START + timedelta(days=rng.randint(0, span))
        iso_year, iso_week, _ = send_date.isocalendar()
        base = {
            "program_name_1": program,
            "lesson_name_1": lessons[lesson_idx],
            "lesson_number_1": lesson_idx + 1,
            "acq_region_1": region,
            "country_code_1": rng.choice(REGIONS[region]),
            "language_1": rng.choice(LANGUAGES),
            "spend_tier_grouped_1": rng.choice(TIERS),
            "assignment_status_1": rng.choice(ASSIGNMENT_STATUSES),
            "primary_product_1": rng.choice(PRODUCTS),
            "campaign_id_1": fake.bothify("CMP-####-??").upper(),
            "send_date_1": send_date,
            "send_date_week_1": f"{iso_year}-W{iso_week:02d}",
            "send_date_quarter_1": quarter_of(send_date),
        }
        rates = (rng.uniform(0.25, 0.6), rng.uniform(0.1, 0.4), rng.uniform(0.05, 0.3))
        rows.extend(stage_rows(base, rng.randint(200, 5_000), rates))
    return rows


# ── Bulk insert helper ───────────────────────────────────

def seed(engine: Engine, rows: list[dict], batch_size: int = 2000) -> int:
    """Drop, recreate and fill the engagement table.  Returns the row count."""
    metadata = MetaData()
    table = engagement_table(metadata)
    metadata.drop_all(engine, tables=[table])
    metadata.create_all(engine, tables=[table])
    with engine.begin() as conn:
        for i in range(0, len(rows), batch_size):
            conn.execute(insert(table), rows[i : i + batch_size])
    return len(rows)


# ── Main ─────────────────────────────────────────────────

def main():
    from src.core.config import get_settings
    from src.db.connection import create_db_engine

    print("═══ Engagement Seed Generator ═══")
    engine = create_db_engine(get_settings().database_url)

    print("Generating data …")
    rows = gen_rows()

    print("Inserting …")
    count = seed(engine, rows)
    print(f"\nDone -- seeded {count:,} rows into {TABLE_NAME}.")


if __name__ == "__main__":
    main()
