"""
ATS Verify - Structured Logging

One JSON object per line, so an upload run can be followed in a log
aggregator by its run_id. Fields bound with LogContext (run_id, uploader_id,
upload kind) are added to every record emitted inside the block; per-call
fields (row_index, track_number, chunk, report, ...) are passed via `extra`.

Connection strings never reach the output: driver errors echo the DSN they
failed on, so passwords embedded in URLs are masked in every string field.

Usage:
    from ats_verify.core.logging import LogContext, get_logger

    logger = get_logger(__name__)

    with LogContext(run_id=run_id, upload="parcels"):
        logger.info("Ingestion started", extra={"row_index": 0})
"""

from __future__ import annotations

import json
import logging
import re
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Mapping

_bound_fields: ContextVar[Mapping[str, Any]] = ContextVar("ats_log_fields", default={})

# =============================================================================
# Masking
# =============================================================================

_SECRET_KEYS = ("password", "database_url", "dsn", "secret", "token")
_URL_PASSWORD = re.compile(r"(?P<scheme>[a-z][a-z0-9+.-]*://[^:/@\s]+):[^@\s]+@", re.IGNORECASE)


def mask_secrets(value: Any) -> Any:
    """Mask URL passwords in strings and values of secret-looking keys."""
    if isinstance(value, str):
        return _URL_PASSWORD.sub(r"\g<scheme>:***@", value)
    if isinstance(value, dict):
        return {
            k: "***" if any(s in str(k).lower() for s in _SECRET_KEYS) else mask_secrets(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [mask_secrets(v) for v in value]
    return value


# =============================================================================
# Formatters
# =============================================================================


class StructuredJsonFormatter(logging.Formatter):
    """
    Render a record as a single JSON line.

    {"timestamp": "...", "level": "INFO", "logger": "ats_verify.ingest.parcel_intake",
     "message": "[intake] Parcel ingestion finished", "service": "ats-verify",
     "run_id": "...", "inserted": 42, "duration_ms": 18.3}
    """

    # Per-call fields the package passes through `extra`
    EXTRA_KEYS = (
        "row_index",
        "track_number",
        "identity_key",
        "action",
        "chunk",
        "count",
        "inserted",
        "updated",
        "skipped",
        "rejected",
        "failed",
        "persisted",
        "report",
        "duration_ms",
        "error_code",
        "db_host",
        "db_port",
        "db_name",
        "db_user",
    )

    def __init__(self, service: str = "ats-verify") -> None:
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service,
        }
        entry.update(_bound_fields.get())
        entry.update(
            (key, getattr(record, key))
            for key in self.EXTRA_KEYS
            if getattr(record, key, None) is not None
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(mask_secrets(entry), default=str, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """`time | level | name | message [run=abcd1234]` for local runs."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s | %(levelname)-8s | %(name)s | %(message)s", "%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        line = mask_secrets(super().format(record))
        run_id = _bound_fields.get().get("run_id")
        return f"{line} [run={str(run_id)[:8]}]" if run_id else line


# =============================================================================
# Setup
# =============================================================================


def configure_logging(
    level: str = "INFO",
    json_output: bool = True,
    service_name: str = "ats-verify",
) -> None:
    """
    Install stdout/stderr handlers on the root logger.

    DEBUG and INFO go to stdout, WARNING and above to stderr, so a CLI run's
    JSON result on stdout can be separated from its failures.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    formatter: logging.Formatter = (
        StructuredJsonFormatter(service_name) if json_output else ConsoleFormatter()
    )

    out = logging.StreamHandler(sys.stdout)
    out.addFilter(lambda record: record.levelno < logging.WARNING)
    err = logging.StreamHandler(sys.stderr)
    err.setLevel(logging.WARNING)

    root = logging.getLogger()
    root.setLevel(numeric_level)
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    for handler in (out, err):
        handler.setFormatter(formatter)
        root.addHandler(handler)

    # psycopg_pool logs every connection attempt at INFO
    logging.getLogger("psycopg.pool").setLevel(max(numeric_level, logging.WARNING))


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


@contextmanager
def LogContext(**fields: Any) -> Iterator[None]:
    """Bind fields to every record logged inside the block (nests)."""
    token = _bound_fields.set({**_bound_fields.get(), **fields})
    try:
        yield
    finally:
        _bound_fields.reset(token)


class Timer:
    """
    Wall-clock timer for a block.

        with Timer() as t:
            load()
        logger.info("Loaded", extra={"duration_ms": t.elapsed_ms})
    """

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        self._end: float | None = None
        return self

    def __exit__(self, *exc: Any) -> None:
        self._end = time.perf_counter()

    @property
    def elapsed_ms(self) -> float:
        end = self._end if self._end is not None else time.perf_counter()
        return round((end - self._start) * 1000, 2)
