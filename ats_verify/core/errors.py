"""
ATS Verify - Error Taxonomy

Every error carries a stable code that can be aggregated in logs and
referenced by callers.

Error Code Format: ATS-{CATEGORY}-{NUMBER}
- CONFIG (001-099): Configuration errors
- INGEST (100-199): Stream and row-level ingestion errors
- DB (200-299): Storage errors
- VALIDATION (500-599): Input validation errors

Two tiers:
- Per-record (RowRejectedError, StoreError raised for a single row) are
  collected as diagnostics by the orchestrators; the run continues.
- Structural (StreamReadError, HeaderReadError, LedgerLoadError,
  NoValidRowsError) abort the run with no partial result.
"""

from __future__ import annotations

from typing import Any, Optional


class AtsVerifyError(Exception):
    """Base exception for all ATS Verify failures."""

    code = "ATS-INTERNAL-900"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        """Serialisable form for logs and CLI output."""
        payload: dict[str, Any] = {"error_code": self.code, "message": self.message}
        if self.context:
            payload["context"] = self.context
        return payload


class ConfigurationError(AtsVerifyError):
    """Invalid runtime configuration (settings, chunk sizing)."""

    code = "ATS-CONFIG-001"


# =============================================================================
# Ingestion
# =============================================================================


class StreamReadError(AtsVerifyError):
    """The underlying byte stream could not be read. Fatal."""

    code = "ATS-INGEST-100"


class HeaderReadError(StreamReadError):
    """The header row is missing or unreadable. Fatal."""

    code = "ATS-INGEST-101"


class RowRejectedError(AtsVerifyError):
    """A single row failed normalization. Non-fatal."""

    code = "ATS-INGEST-110"

    def __init__(self, row_index: int, reason: str, **context: Any) -> None:
        super().__init__(f"row {row_index}: {reason}", row_index=row_index, **context)
        self.row_index = row_index
        self.reason = reason


class NoValidRowsError(AtsVerifyError):
    """Nothing survived filtering; there is nothing to load. Fatal."""

    code = "ATS-INGEST-120"


# =============================================================================
# Storage
# =============================================================================


class StoreError(AtsVerifyError):
    """A storage operation failed; wraps the driver error with context."""

    code = "ATS-DB-200"

    def __init__(self, operation: str, cause: Optional[BaseException] = None, **context: Any):
        message = f"{operation}: {cause}" if cause is not None else operation
        super().__init__(message, **context)
        self.operation = operation


class LedgerLoadError(StoreError):
    """The ledger bulk-load transaction failed and was rolled back. Fatal."""

    code = "ATS-DB-210"


class NotFoundError(AtsVerifyError):
    """The addressed record does not exist."""

    code = "ATS-DB-220"


# =============================================================================
# Validation
# =============================================================================


class ValidationError(AtsVerifyError):
    """Caller-supplied input is invalid."""

    code = "ATS-VALIDATION-500"
