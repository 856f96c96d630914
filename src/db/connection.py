"""SQLAlchemy engine & read-only connections.

Single shared engine with connection pooling.  Every copilot query runs
through ``readonly_connection``, which on Postgres sets the transaction to
READ ONLY and applies a per-statement timeout before anything executes.
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine

from src.core.config import get_settings
from src.core.logging import get_logger

logger = get_logger(__name__)

_engine: Engine | None = None


def create_db_engine(url: str) -> Engine:
    kwargs: dict = {"pool_pre_ping": True, "echo": False}
    if not url.startswith("sqlite"):
        kwargs.update(pool_size=5, max_overflow=10)
    return create_engine(url, **kwargs)


def get_engine() -> Engine:
    """Return the shared SQLAlchemy engine (lazy-created, cached)."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_db_engine(settings.database_url)
        logger.info("DB engine created  dialect=%s", _engine.dialect.name)
    return _engine


def reset_engine() -> None:
    """Dispose the shared engine (next ``get_engine`` creates a new one)."""
    global _engine
    if _engine is not None:
        _engine.dispose()
        _engine = None


@contextmanager
def readonly_connection(
    engine: Engine | None = None,
    timeout_ms: int | None = None,
) -> Generator[Connection, None, None]:
    """Yield a connection inside a READ ONLY transaction.

    On Postgres the transaction is read-only and bounded by
    ``statement_timeout``; other dialects (SQLite in tests) rely on the
    SQL safety gate alone.  The transaction is rolled back on exit.
    """
    if engine is None:
        engine = get_engine()
    if timeout_ms is None:
        timeout_ms = get_settings().query_timeout_ms

    with engine.connect() as conn:
        trans = conn.begin()
        try:
            if engine.dialect.name == "postgresql":
                conn.execute(text("SET TRANSACTION READ ONLY"))
                conn.execute(text(f"SET LOCAL statement_timeout = {int(timeout_ms)}"))
            yield conn
        finally:
            trans.rollback()
