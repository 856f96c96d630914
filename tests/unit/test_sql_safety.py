"""
Unit tests -- SQL safety checker: read-only gate.
"""
import pytest

from src.core.errors import ErrorKind, UnsafeQueryError
from src.governance.sql_safety import (
    check_sql_safety,
    ensure_read_only,
    find_forbidden_keywords,
    mask_string_literals,
)

_SAFE_SQL = """\
SELECT
  category_1 AS category,
  SUM(customers_1) AS count
FROM "sample_engagement_data"
WHERE program_name_1 IN ('ASG Primary Path')
GROUP BY category_1"""


def test_safe_sql_passes():
    errors = check_sql_safety(_SAFE_SQL)
    assert errors == [], f"Expected no errors but got: {errors}"


# ── 1. Must start with SELECT ───────────────────────────

def test_not_select():
    errors = check_sql_safety("WITH x AS (SELECT 1) SELECT * FROM x")
    assert any("SELECT" in e for e in errors)


def test_leading_whitespace_and_case():
    assert check_sql_safety("   select 1") == []


def test_leading_delete_rejected_any_case():
    for sql in ("DELETE FROM t", "delete from t", "DeLeTe FROM t"):
        errors = check_sql_safety(sql)
        assert any("SELECT" in e for e in errors)
        assert any("'delete'" in e for e in errors)


# ── 2. Forbidden keywords, whole words only ─────────────

@pytest.mark.parametrize("keyword", [
    "insert", "update", "delete", "drop", "create", "alter", "truncate", "grant", "revoke",
])
def test_forbidden_keyword(keyword):
    errors = check_sql_safety(f"SELECT 1 FROM t WHERE x IN ({keyword.upper()} y)")
    assert any(f"'{keyword}'" in e for e in errors)


def test_keyword_inside_identifier_passes():
    assert check_sql_safety("SELECT last_updated, created_at FROM t") == []


def test_keyword_inside_string_literal_passes():
    assert check_sql_safety("SELECT 1 FROM t WHERE program_name_1 = 'Update Path'") == []


def test_mask_string_literals():
    assert mask_string_literals("SELECT 'it''s drop' AS x") == "SELECT '' AS x"


def test_find_forbidden_keywords_in_order():
    assert find_forbidden_keywords("select 1; drop table t; delete from u; drop x") == ["drop", "delete"]


# ── 3. Multi-statement ──────────────────────────────────

def test_scenario_select_then_drop():
    errors = check_sql_safety("select * from t; DROP TABLE t")
    assert any("drop" in e for e in errors)
    assert any("Multi-statement" in e for e in errors)


def test_trailing_semicolon_allowed():
    assert check_sql_safety("SELECT 1;") == []


def test_semicolon_in_literal_allowed():
    assert check_sql_safety("SELECT 1 FROM t WHERE x = 'a; b'") == []


# ── 4. Comments ─────────────────────────────────────────

def test_inline_comment():
    errors = check_sql_safety("SELECT 1 -- sneaky")
    assert any("--" in e for e in errors)


def test_block_comment():
    errors = check_sql_safety("SELECT /* hi */ 1")
    assert any("/*" in e for e in errors)


# ── ensure_read_only ────────────────────────────────────

def test_ensure_read_only_passes_safe_sql():
    ensure_read_only(_SAFE_SQL)


def test_ensure_read_only_names_keyword():
    with pytest.raises(UnsafeQueryError) as exc_info:
        ensure_read_only("select * from t; DROP TABLE t")
    assert exc_info.value.keyword == "drop"
    assert exc_info.value.kind == ErrorKind.UNSAFE_QUERY
    assert "drop" in str(exc_info.value)


def test_ensure_read_only_names_leading_verb():
    with pytest.raises(UnsafeQueryError) as exc_info:
        ensure_read_only("VACUUM t")
    assert exc_info.value.keyword == "vacuum"
