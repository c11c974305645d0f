"""
ats_verify/ingest/signal_intake.py
==================================
Risk signal CSV ingestion into the append-only ledger.

Unlike parcels, the load is all-or-nothing: rows are read and normalized
first (rejections collected as diagnostics), then the surviving records go
to the ledger loader in a single transaction.

Usage:
    with connection() as conn, open("registry.csv", "rb") as fh:
        result = load_signal_stream(fh, LedgerRepository(conn))
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Dict, List, Optional, Protocol, Sequence

from ..config import get_settings
from ..core.errors import NoValidRowsError, RowRejectedError
from ..core.logging import LogContext, Timer, get_logger
from ..core.models import RawSignalRecord
from .normalizer import RecordNormalizer
from .parcel_intake import READ_ERROR, REJECTED, RowDiagnostic
from .row_reader import TolerantRowReader

logger = get_logger(__name__)


class LedgerSink(Protocol):
    def bulk_insert(self, records: Sequence[RawSignalRecord]) -> int: ...


@dataclass(slots=True)
class SignalLoadResult:
    run_id: str
    persisted: int = 0
    rejected: int = 0
    diagnostics: List[RowDiagnostic] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "persisted": self.persisted,
            "rejected": self.rejected,
            "errors": [str(d) for d in self.diagnostics],
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        }


def load_signal_stream(
    stream: BinaryIO,
    ledger: LedgerSink,
    normalizer: Optional[RecordNormalizer] = None,
    run_id: Optional[str] = None,
) -> SignalLoadResult:
    """
    Read, normalize and bulk-load one risk registry upload.

    Raises:
        StreamReadError / HeaderReadError: The stream is unusable
        NoValidRowsError: Every row was rejected (or there were none)
        LedgerLoadError: The load transaction failed; nothing persisted
    """
    if normalizer is None:
        normalizer = RecordNormalizer.from_settings(get_settings())
    run_id = run_id or str(uuid.uuid4())
    result = SignalLoadResult(run_id=run_id)

    with LogContext(run_id=run_id), Timer() as timer:
        logger.info("[ledger] Signal load started")
        reader = TolerantRowReader(stream)
        reader.read_header()

        records: List[RawSignalRecord] = []
        for row in reader:
            if not row.ok:
                result.diagnostics.append(
                    RowDiagnostic(
                        row.row_index,
                        READ_ERROR,
                        row.error or "unreadable row",
                        line_number=row.line_number,
                    )
                )
                continue
            try:
                records.append(normalizer.normalize_signal(row))
            except RowRejectedError as exc:
                result.diagnostics.append(
                    RowDiagnostic(row.row_index, REJECTED, exc.reason, line_number=row.line_number)
                )
        result.rejected = len(result.diagnostics)

        if not records:
            logger.warning(
                "[ledger] No valid rows after filtering",
                extra={"rejected": result.rejected},
            )
            raise NoValidRowsError(
                "no valid rows found in upload",
                rejected=result.rejected,
            )

        result.persisted = ledger.bulk_insert(records)
        logger.info(
            "[ledger] Signal load complete",
            extra={
                "persisted": result.persisted,
                "rejected": result.rejected,
                "duration_ms": timer.elapsed_ms,
            },
        )
    return result
