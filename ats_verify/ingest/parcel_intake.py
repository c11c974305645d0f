"""
ats_verify/ingest/parcel_intake.py
==================================
Parcel (tracked unit) CSV ingestion with per-row partial success.

Every data row is decided on its own:
1. Row the reader could not parse      -> read_error diagnostic
2. Row the normalizer rejects          -> rejected diagnostic
3. Dedup engine outcome                -> inserted / updated / skipped_used
4. Storage failure for that row        -> store_error diagnostic

Only a failure of the stream itself (or a missing header) aborts the run.
Rows already written stay written when a run is cancelled or aborted.

Usage:
    from ats_verify.ingest.parcel_intake import ParcelIntakePipeline

    pipeline = ParcelIntakePipeline.for_connection(conn)
    with open("parcels.csv", "rb") as fh:
        result = pipeline.ingest(fh, uploader_id=user_id, marketplace_prefix="wb")
    print(result.summary())
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, BinaryIO, Dict, List, Optional

import psycopg

from ..config import Settings, get_settings
from ..core.errors import RowRejectedError, StoreError
from ..core.logging import LogContext, Timer, get_logger
from ..core.models import UpsertAction
from ..repositories.parcels import ParcelRepository
from ..services.dedup_engine import DedupEngine
from .normalizer import RecordNormalizer
from .row_reader import TolerantRowReader

logger = get_logger(__name__)

# Diagnostic kinds
READ_ERROR = "read_error"
REJECTED = "rejected"
SKIPPED_USED = "skipped_used"
STORE_ERROR = "store_error"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True, slots=True)
class RowDiagnostic:
    """
    One per-row problem.

    row_index counts data records (blank lines excluded); line_number is the
    physical line in the upload, which differs once blank lines or multi-line
    quoted fields appear.
    """

    row_index: int
    kind: str
    message: str
    track_number: Optional[str] = None
    line_number: Optional[int] = None  # physical line, header is line 1

    def __str__(self) -> str:
        if self.kind == SKIPPED_USED:
            return f"{self.track_number}: {self.message}"
        if self.track_number:
            return f"row {self.row_index} ({self.track_number}): {self.message}"
        return f"row {self.row_index}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "row_index": self.row_index,
            "kind": self.kind,
            "message": self.message,
            "track_number": self.track_number,
            "line_number": self.line_number,
        }


@dataclass(slots=True)
class IngestionResult:
    """Counters and ordered diagnostics for one parcel ingestion run."""

    run_id: str
    total_processed: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    diagnostics: List[RowDiagnostic] = field(default_factory=list)
    cancelled: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def errors(self) -> List[str]:
        return [str(d) for d in self.diagnostics]

    def summary(self) -> str:
        duration = ""
        if self.started_at and self.completed_at:
            delta = (self.completed_at - self.started_at).total_seconds()
            duration = f" in {delta:.2f}s"
        status = "CANCELLED" if self.cancelled else "COMPLETED"
        return (
            f"Ingestion {status}{duration}: "
            f"{self.total_processed} processed, "
            f"{self.inserted} inserted, "
            f"{self.updated} updated, "
            f"{self.skipped} skipped, "
            f"{len(self.diagnostics)} diagnostics"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_processed": self.total_processed,
            "inserted": self.inserted,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": self.errors,
            "diagnostics": [d.to_dict() for d in self.diagnostics],
            "cancelled": self.cancelled,
        }


# =============================================================================
# Pipeline
# =============================================================================


class ParcelIntakePipeline:
    """
    Reader -> normalizer -> dedup engine, one row at a time.

    Args:
        engine: DedupEngine bound to a parcel store
        normalizer: RecordNormalizer (defaults from settings)
    """

    def __init__(
        self,
        engine: DedupEngine,
        normalizer: Optional[RecordNormalizer] = None,
    ) -> None:
        self._engine = engine
        self._normalizer = normalizer or RecordNormalizer.from_settings(get_settings())

    @classmethod
    def for_connection(
        cls,
        conn: psycopg.Connection,
        settings: Optional[Settings] = None,
    ) -> "ParcelIntakePipeline":
        settings = settings or get_settings()
        return cls(
            DedupEngine(ParcelRepository(conn)),
            RecordNormalizer.from_settings(settings),
        )

    def ingest(
        self,
        stream: BinaryIO,
        uploader_id: uuid.UUID,
        marketplace_prefix: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
        run_id: Optional[str] = None,
    ) -> IngestionResult:
        """
        Ingest one parcel upload.

        Args:
            stream: Binary stream positioned at the header row
            uploader_id: Identity of the uploading user
            marketplace_prefix: Uploader prefix (e.g. "wb"); overrides the
                marketplace column when set
            cancel_event: Stops the loop between rows when set
            run_id: Correlation id for logs (generated when omitted)

        Raises:
            StreamReadError / HeaderReadError: The stream is unusable
        """
        run_id = run_id or str(uuid.uuid4())
        result = IngestionResult(run_id=run_id, started_at=datetime.now(timezone.utc))
        override = self._normalizer.resolve_marketplace(marketplace_prefix)

        with LogContext(run_id=run_id, uploader_id=str(uploader_id)), Timer() as timer:
            logger.info("[intake] Parcel ingestion started")
            reader = TolerantRowReader(stream)
            reader.read_header()

            for row in reader:
                if cancel_event is not None and cancel_event.is_set():
                    result.cancelled = True
                    logger.warning(
                        "[intake] Ingestion cancelled",
                        extra={"row_index": row.row_index},
                    )
                    break

                result.total_processed += 1

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
                    draft = self._normalizer.normalize_parcel(row, uploader_id, override)
                except RowRejectedError as exc:
                    logger.debug(
                        "[intake] Row rejected: %s",
                        exc.reason,
                        extra={"row_index": row.row_index},
                    )
                    result.diagnostics.append(
                        RowDiagnostic(
                            row.row_index,
                            REJECTED,
                            exc.reason,
                            exc.context.get("track_number"),
                            row.line_number,
                        )
                    )
                    continue

                try:
                    outcome = self._engine.upsert(draft)
                except StoreError as exc:
                    logger.warning(
                        "[intake] Store error: %s",
                        exc.message,
                        extra={
                            "row_index": row.row_index,
                            "track_number": draft.track_number,
                            "error_code": exc.code,
                        },
                    )
                    result.diagnostics.append(
                        RowDiagnostic(
                            row.row_index,
                            STORE_ERROR,
                            exc.message,
                            draft.track_number,
                            row.line_number,
                        )
                    )
                    continue

                if outcome.action is UpsertAction.INSERTED:
                    result.inserted += 1
                elif outcome.action is UpsertAction.UPDATED:
                    result.updated += 1
                else:
                    result.skipped += 1
                    result.diagnostics.append(
                        RowDiagnostic(
                            row.row_index,
                            SKIPPED_USED,
                            outcome.message,
                            outcome.track_number,
                            row.line_number,
                        )
                    )

            result.completed_at = datetime.now(timezone.utc)
            logger.info(
                "[intake] %s",
                result.summary(),
                extra={
                    "count": result.total_processed,
                    "inserted": result.inserted,
                    "updated": result.updated,
                    "skipped": result.skipped,
                    "rejected": len(result.diagnostics) - result.skipped,
                    "duration_ms": timer.elapsed_ms,
                },
            )
        return result
