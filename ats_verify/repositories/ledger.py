"""
Append-only risk signal ledger (risk_raw_data).

Bulk load:
    Rows are written as multi-row INSERT .. VALUES statements of
    `chunk_size` rows each, with 9 bound parameters per row, so
    chunk_size * 9 must stay under the driver's parameter limit.
    All chunks share one transaction: either every row lands or none do.

Reports:
    Four read-only aggregate queries used by the analytics aggregator.
    Rows with an empty document_ref never take part in document reports.
"""

from __future__ import annotations

from typing import Any, List, Sequence

import psycopg
from psycopg.rows import dict_row

from ..config import LEDGER_COLUMN_COUNT
from ..core.errors import ConfigurationError, LedgerLoadError, NoValidRowsError, StoreError
from ..core.logging import get_logger
from ..core.models import DocumentReuseFlag, FlipFlopFlag, FrequencyFlag, RawSignalRecord

logger = get_logger(__name__)

DEFAULT_CHUNK_SIZE = 5000
POSTGRES_PARAMETER_LIMIT = 65535

_ROW_PLACEHOLDER = "(%s, %s, %s, %s, %s, %s, %s, %s, %s, NOW())"

_INSERT_PREFIX = """
    INSERT INTO risk_raw_data (
        report_date,
        application_id,
        identity_key,
        document_ref,
        user_name,
        organization,
        status,
        reject_flag,
        reason,
        created_at
    ) VALUES
"""

DOCUMENT_REUSE_SQL = """
    SELECT document_ref, COUNT(*) AS count
    FROM risk_raw_data
    WHERE document_ref <> ''
    GROUP BY document_ref
    HAVING COUNT(*) > 1
    ORDER BY count DESC, document_ref ASC
"""

DOCUMENT_IDENTITY_REUSE_SQL = """
    SELECT document_ref, COUNT(DISTINCT identity_key) AS count
    FROM risk_raw_data
    WHERE document_ref <> ''
    GROUP BY document_ref
    HAVING COUNT(DISTINCT identity_key) > 1
    ORDER BY count DESC, document_ref ASC
"""

IDENTITY_FREQUENCY_SQL = """
    SELECT identity_key, COUNT(*) AS count
    FROM risk_raw_data
    GROUP BY identity_key
    ORDER BY count DESC, identity_key ASC
"""

# Consecutive repeats are dropped before aggregation (NEW, NEW, REJECTED
# reads "NEW -> REJECTED"); ties on report_date fall back to insertion order.
FLIP_FLOP_SQL = """
    WITH ordered AS (
        SELECT
            document_ref,
            identity_key,
            status,
            report_date,
            created_at,
            id,
            LAG(status) OVER (
                PARTITION BY document_ref, identity_key
                ORDER BY report_date, created_at, id
            ) AS previous_status
        FROM risk_raw_data
        WHERE document_ref <> ''
    )
    SELECT
        document_ref,
        identity_key,
        string_agg(status, ' -> ' ORDER BY report_date, created_at, id) AS statuses
    FROM ordered
    WHERE previous_status IS DISTINCT FROM status
    GROUP BY document_ref, identity_key
    HAVING COUNT(DISTINCT status) > 1
    ORDER BY document_ref ASC, identity_key ASC
"""


def validate_chunk_size(chunk_size: int, parameter_limit: int = POSTGRES_PARAMETER_LIMIT) -> None:
    """
    Raises:
        ConfigurationError: chunk_size < 1 or chunk_size * 9 >= parameter_limit
    """
    if chunk_size < 1:
        raise ConfigurationError("ledger chunk size must be positive", chunk_size=chunk_size)
    if chunk_size * LEDGER_COLUMN_COUNT >= parameter_limit:
        raise ConfigurationError(
            f"ledger chunk of {chunk_size} rows binds {chunk_size * LEDGER_COLUMN_COUNT} "
            f"parameters; limit is {parameter_limit}",
            chunk_size=chunk_size,
            parameter_limit=parameter_limit,
        )


class LedgerRepository:
    """psycopg-backed access to risk_raw_data."""

    def __init__(
        self,
        conn: psycopg.Connection,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        parameter_limit: int = POSTGRES_PARAMETER_LIMIT,
    ) -> None:
        self._conn = conn
        self._chunk_size = chunk_size
        self._parameter_limit = parameter_limit

    @property
    def chunk_size(self) -> int:
        return self._chunk_size

    # =========================================================================
    # Bulk load
    # =========================================================================

    def bulk_insert(self, records: Sequence[RawSignalRecord]) -> int:
        """
        Persist all records atomically.

        Returns:
            Number of rows persisted (always len(records))

        Raises:
            NoValidRowsError: records is empty
            ConfigurationError: chunk size overflows the parameter limit
            LedgerLoadError: Any chunk failed; nothing was persisted
        """
        if not records:
            raise NoValidRowsError("no valid records to load into the ledger")
        validate_chunk_size(self._chunk_size, self._parameter_limit)

        offset = 0
        try:
            with self._conn.transaction():
                with self._conn.cursor() as cur:
                    for offset in range(0, len(records), self._chunk_size):
                        chunk = records[offset : offset + self._chunk_size]
                        params: List[Any] = []
                        for record in chunk:
                            params.extend(record.as_params())
                        sql = _INSERT_PREFIX + ",\n".join([_ROW_PLACEHOLDER] * len(chunk))
                        cur.execute(sql, params)
                        logger.debug(
                            "Ledger chunk written",
                            extra={"chunk": offset // self._chunk_size, "count": len(chunk)},
                        )
        except psycopg.Error as exc:
            logger.error(
                "Ledger load rolled back",
                extra={"chunk": offset // self._chunk_size, "count": len(records)},
            )
            raise LedgerLoadError(
                "bulk loading ledger",
                exc,
                chunk_offset=offset,
                total=len(records),
            ) from exc

        logger.info("Ledger load committed", extra={"persisted": len(records)})
        return len(records)

    # =========================================================================
    # Reports
    # =========================================================================

    def _fetch(self, report: str, sql: str) -> List[dict]:
        try:
            with self._conn.cursor(row_factory=dict_row) as cur:
                cur.execute(sql)
                return list(cur.fetchall())
        except psycopg.Error as exc:
            raise StoreError(f"running {report} report", exc, report=report) from exc

    def document_reuse(self) -> List[DocumentReuseFlag]:
        rows = self._fetch("document_reuse", DOCUMENT_REUSE_SQL)
        return [DocumentReuseFlag.model_validate(row) for row in rows]

    def document_identity_reuse(self) -> List[DocumentReuseFlag]:
        rows = self._fetch("document_identity_reuse", DOCUMENT_IDENTITY_REUSE_SQL)
        return [DocumentReuseFlag.model_validate(row) for row in rows]

    def identity_frequency(self) -> List[FrequencyFlag]:
        rows = self._fetch("identity_frequency", IDENTITY_FREQUENCY_SQL)
        return [FrequencyFlag.model_validate(row) for row in rows]

    def flip_flop_status(self) -> List[FlipFlopFlag]:
        rows = self._fetch("flip_flop_status", FLIP_FLOP_SQL)
        return [FlipFlopFlag.model_validate(row) for row in rows]
