"""
Query executors.

Two implementations of the executor protocol the copilot talks to:

  SqlAlchemyExecutor  runs statements directly through SQLAlchemy
                      (``execute_readonly``: read-only transaction,
                      statement timeout, JSON-safe values)
  HttpExecutor        POSTs ``{"query": sql}`` to a remote execute-query
                      endpoint and expects ``{"data": [...]}`` back

Both expose ``execute(sql)`` and ``distinct_values(column)``.  Both re-run
the SQL safety gate before anything leaves the process.  Transport failures
and in-band error objects (``{"error": ...}``) are both raised as
``ExecutionError``; timeouts as ``QueryTimeoutError``.
"""
from __future__ import annotations

import decimal
import datetime
from functools import lru_cache
from typing import Any, Mapping, Protocol

import httpx
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from src.core.config import get_settings
from src.core.errors import ExecutionError, QueryTimeoutError
from src.db.connection import readonly_connection
from src.governance.semantic_loader import load_engagement_model, EngagementModel
from src.governance.sql_safety import ensure_read_only
from src.core.logging import get_logger

logger = get_logger(__name__)

_PG_QUERY_CANCELED = "57014"


class QueryExecutor(Protocol):
    def execute(self, sql: str) -> list[dict[str, Any]] | dict[str, Any]: ...

    def distinct_values(self, column: str) -> list[str]: ...


# ── Helpers ─────────────────────────────────────────────


def _serialise_value(val: Any) -> Any:
    """Convert DB types to JSON-serialisable Python types."""
    if isinstance(val, decimal.Decimal):
        return int(val) if val == val.to_integral_value() else float(val)
    if isinstance(val, (datetime.date, datetime.datetime)):
        return val.isoformat()
    if isinstance(val, datetime.timedelta):
        return str(val)
    return val


def normalise_result(result: Any) -> list[dict[str, Any]]:
    """Turn an executor result into rows, raising on in-band error objects."""
    if isinstance(result, list):
        return [dict(r) for r in result if isinstance(r, Mapping)]
    if isinstance(result, Mapping):
        err = result.get("error")
        if (err is not None and err is not False) or ("message" in result and "data" not in result):
            if isinstance(err, Mapping):
                message = str(err.get("message") or err)
                code = err.get("code", result.get("code"))
            else:
                # {"error": true, "message": ..., "code": SQLSTATE}
                message = str(err) if isinstance(err, str) and err else str(result.get("message") or "Unknown executor error")
                code = result.get("code")
            raise ExecutionError(message, code=str(code) if code is not None else None)
        if "data" in result:
            data = result["data"]
            if data is None:
                return []
            if isinstance(data, Mapping):
                return normalise_result(data)
            if isinstance(data, list):
                return [dict(r) for r in data if isinstance(r, Mapping)]
    raise ExecutionError(f"Unexpected executor result of type {type(result).__name__}")


def distinct_values_sql(column: str, cap: int, model: EngagementModel | None = None) -> str:
    if model is None:
        model = load_engagement_model()
    if column not in model.known_columns():
        raise ValueError(f"Unknown column '{column}'")
    return (
        f'SELECT DISTINCT {column} AS value FROM "{model.table}" '
        f"WHERE {column} IS NOT NULL ORDER BY {column} LIMIT {int(cap)}"
    )


# ── SQLAlchemy ──────────────────────────────────────────


def execute_readonly(
    sql: str,
    params: dict | None = None,
    timeout_ms: int | None = None,
    engine: Engine | None = None,
) -> list[dict[str, Any]]:
    """Execute a read-only SQL query and return rows as serialisable dicts.

    Raises
    ------
    UnsafeQueryError
        The statement fails the read-only gate; it never reaches the database.
    QueryTimeoutError
        Postgres cancelled the statement on ``statement_timeout``.
    ExecutionError
        Any other database failure.
    """
    ensure_read_only(sql)
    logger.info("Executing SQL (%d chars)", len(sql))

    try:
        with readonly_connection(engine, timeout_ms) as conn:
            result = conn.execute(text(sql), params or {})
            columns = list(result.keys())
            rows = [
                {col: _serialise_value(val) for col, val in zip(columns, row)}
                for row in result.fetchall()
            ]
    except DBAPIError as exc:
        code = getattr(exc.orig, "pgcode", None)
        if code == _PG_QUERY_CANCELED:
            raise QueryTimeoutError("Query exceeded the statement timeout", code=code) from exc
        raise ExecutionError(str(exc.orig), code=code) from exc
    except SQLAlchemyError as exc:
        raise ExecutionError(str(exc)) from exc

    logger.info("Returned %d rows", len(rows))
    return rows


class SqlAlchemyExecutor:
    """Executor backed by the SQLAlchemy engine (Postgres in production)."""

    def __init__(self, engine: Engine | None = None, timeout_ms: int | None = None, cap: int | None = None):
        settings = get_settings()
        self.engine = engine
        self.timeout_ms = timeout_ms if timeout_ms is not None else settings.query_timeout_ms
        self.cap = cap if cap is not None else settings.distinct_value_cap

    def execute(self, sql: str) -> list[dict[str, Any]]:
        return execute_readonly(sql, timeout_ms=self.timeout_ms, engine=self.engine)

    def distinct_values(self, column: str) -> list[str]:
        rows = self.execute(distinct_values_sql(column, self.cap))
        return [str(r["value"]) for r in rows if r.get("value") is not None]


# ── HTTP ────────────────────────────────────────────────


class HttpExecutor:
    """Executor that forwards statements to a remote execute-query endpoint.

    Parameters
    ----------
    url : str
        Endpoint accepting ``POST {"query": sql}``.
    api_key : str, optional
        Sent as a bearer token.
    timeout_s : float, optional
        Per-request timeout; defaults to ``settings.query_timeout_s``.
    client : httpx.Client, optional
        Injected client (tests use ``httpx.MockTransport``).
    """

    def __init__(
        self,
        url: str,
        api_key: str = "",
        timeout_s: float | None = None,
        cap: int | None = None,
        client: httpx.Client | None = None,
    ):
        settings = get_settings()
        if not url:
            raise ValueError("HttpExecutor needs an endpoint url (EXECUTOR_URL)")
        self.url = url
        self.cap = cap if cap is not None else settings.distinct_value_cap
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
            headers["apikey"] = api_key
        self._client = client or httpx.Client(
            timeout=timeout_s if timeout_s is not None else settings.query_timeout_s,
            headers=headers,
        )

    def execute(self, sql: str) -> list[dict[str, Any]]:
        ensure_read_only(sql)
        logger.info("POST %s (%d chars)", self.url, len(sql))
        try:
            response = self._client.post(self.url, json={"query": sql})
        except httpx.TimeoutException as exc:
            raise QueryTimeoutError(f"Execute endpoint timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise ExecutionError(f"Execute endpoint unreachable: {exc}") from exc

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 400:
            if isinstance(body, Mapping) and (body.get("error") or body.get("message")):
                normalise_result({**body, "code": body.get("code", response.status_code)})
            raise ExecutionError(response.text or "Execute endpoint error", code=str(response.status_code))
        if body is None:
            raise ExecutionError("Execute endpoint returned a non-JSON body")

        rows = normalise_result(body)
        logger.info("Returned %d rows", len(rows))
        return rows

    def distinct_values(self, column: str) -> list[str]:
        rows = self.execute(distinct_values_sql(column, self.cap))
        return [str(r["value"]) for r in rows if r.get("value") is not None]

    def close(self) -> None:
        self._client.close()


# ── Factory ─────────────────────────────────────────────


@lru_cache
def get_executor() -> QueryExecutor:
    """Executor chosen by ``settings.executor_backend``."""
    settings = get_settings()
    backend = settings.executor_backend.lower()
    if backend == "http":
        return HttpExecutor(settings.executor_url, settings.executor_api_key)
    if backend == "postgres":
        return SqlAlchemyExecutor()
    raise ValueError(f"Unknown executor backend '{settings.executor_backend}'")
