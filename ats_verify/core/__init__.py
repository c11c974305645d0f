"""
ATS Verify - Core Module

Errors, logging and data models shared by every layer.
"""

from .errors import (
    AtsVerifyError,
    ConfigurationError,
    HeaderReadError,
    LedgerLoadError,
    NotFoundError,
    NoValidRowsError,
    RowRejectedError,
    StoreError,
    StreamReadError,
    ValidationError,
)

__all__ = [
    "AtsVerifyError",
    "ConfigurationError",
    "HeaderReadError",
    "LedgerLoadError",
    "NotFoundError",
    "NoValidRowsError",
    "RowRejectedError",
    "StoreError",
    "StreamReadError",
    "ValidationError",
]
