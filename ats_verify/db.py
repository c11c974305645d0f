# ats_verify/db.py
"""
ATS Verify - Database Layer

Synchronous PostgreSQL access via psycopg3 + psycopg_pool.

- One lazily created process-wide ConnectionPool
- Connections run in autocommit mode: every statement outside an explicit
  ``conn.transaction()`` block commits on its own. The parcel upsert relies
  on this for per-row partial success; the ledger loader opens its own
  transaction for all-or-nothing loads.
- ensure_schema() applies the DDL for the three relations (idempotent).
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator, Optional
from urllib.parse import urlparse

import psycopg
from psycopg_pool import ConnectionPool

from . import __version__
from .config import Settings, get_settings
from .core.errors import ConfigurationError, StoreError
from .core.logging import get_logger

logger = get_logger(__name__)

_pool: Optional[ConnectionPool] = None
_pool_lock = threading.Lock()


SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS tracked_units (
        id               UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        track_number     TEXT NOT NULL,
        marketplace      TEXT NOT NULL,
        country          TEXT NOT NULL,
        brand            TEXT NOT NULL,
        product_name     TEXT NOT NULL,
        serial_ref       TEXT NOT NULL DEFAULT '',
        is_used          BOOLEAN NOT NULL DEFAULT false,
        upload_timestamp TIMESTAMPTZ NOT NULL,
        uploader_id      UUID NOT NULL,
        created_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT tracked_units_track_number_key UNIQUE (track_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS risk_raw_data (
        id             BIGSERIAL PRIMARY KEY,
        report_date    TIMESTAMPTZ NOT NULL,
        application_id TEXT NOT NULL DEFAULT '',
        identity_key   TEXT NOT NULL,
        document_ref   TEXT NOT NULL DEFAULT '',
        user_name      TEXT NOT NULL DEFAULT '',
        organization   TEXT NOT NULL DEFAULT '',
        status         TEXT NOT NULL DEFAULT '',
        reject_flag    TEXT NOT NULL DEFAULT '',
        reason         TEXT NOT NULL DEFAULT '',
        created_at     TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS risk_raw_data_document_ref_idx ON risk_raw_data (document_ref)",
    "CREATE INDEX IF NOT EXISTS risk_raw_data_identity_key_idx ON risk_raw_data (identity_key)",
    """
    CREATE TABLE IF NOT EXISTS risk_profiles (
        id           UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        identity_key TEXT NOT NULL,
        risk_level   TEXT NOT NULL CHECK (risk_level IN ('green', 'yellow', 'red')),
        flagged_by   UUID NOT NULL,
        reason       TEXT NOT NULL DEFAULT '',
        created_at   TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at   TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT risk_profiles_identity_key_key UNIQUE (identity_key)
    )
    """,
)


def _parse_dsn_for_logging(dsn: str) -> dict[str, str | None]:
    """Extract loggable DSN parts (never the password)."""
    parsed = urlparse(dsn)
    return {
        "db_host": parsed.hostname,
        "db_port": str(parsed.port) if parsed.port else None,
        "db_name": parsed.path.lstrip("/") or None,
        "db_user": parsed.username,
    }


def _application_name() -> str:
    # Postgres rejects dots and spaces in application_name options
    return "ats_verify_v" + __version__.replace(".", "_")


def create_pool(settings: Settings) -> ConnectionPool:
    """
    Open a connection pool for the configured DSN.

    Raises:
        ConfigurationError: DATABASE_URL missing or not a postgres URL
    """
    dsn = settings.database_url
    if not dsn:
        raise ConfigurationError("DATABASE_URL is not configured")
    if not dsn.startswith(("postgresql://", "postgres://")):
        raise ConfigurationError(
            "DATABASE_URL must start with postgresql:// or postgres://",
            dsn_prefix=dsn[:12],
        )

    logger.info("Opening database pool", extra=_parse_dsn_for_logging(dsn))
    return ConnectionPool(
        dsn,
        min_size=settings.ATS_POOL_MIN_SIZE,
        max_size=settings.ATS_POOL_MAX_SIZE,
        kwargs={"autocommit": True, "application_name": _application_name()},
        open=True,
    )


def get_pool() -> ConnectionPool:
    """Return the process-wide pool, creating it on first use."""
    global _pool
    with _pool_lock:
        if _pool is None:
            _pool = create_pool(get_settings())
        return _pool


def close_pool() -> None:
    """Close the process-wide pool if open."""
    global _pool
    with _pool_lock:
        if _pool is not None:
            _pool.close()
            _pool = None
            logger.info("Database pool closed")


@contextmanager
def connection() -> Iterator[psycopg.Connection]:
    """
    Borrow an autocommit connection from the pool.

    Usage:
        with connection() as conn:
            result = ParcelIntakePipeline.for_connection(conn).ingest(stream, user_id)

    Raises:
        StoreError: No connection could be checked out (PoolTimeout etc.)
    """
    pool = get_pool()
    try:
        conn = pool.getconn()
    except psycopg.Error as exc:
        raise StoreError("acquiring connection", exc) from exc
    try:
        yield conn
    finally:
        pool.putconn(conn)


def ensure_schema(conn: psycopg.Connection) -> None:
    """Create the tracked-unit, ledger and risk-profile relations if absent."""
    try:
        with conn.transaction():
            with conn.cursor() as cur:
                for statement in SCHEMA_STATEMENTS:
                    cur.execute(statement)
    except psycopg.Error as exc:
        raise StoreError("applying schema", exc) from exc
    logger.info("Schema ensured", extra={"count": len(SCHEMA_STATEMENTS)})
