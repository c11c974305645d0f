"""
ATS Verify - Core Data Models

Pydantic models for the three persisted relations and the analytics rows:
- TrackedUnit / TrackedUnitDraft   (tracked_units, unique track_number)
- RawSignalRecord                  (risk_raw_data, append-only ledger)
- RiskProfile                      (risk_profiles, unique identity_key)
- DocumentReuseFlag / FrequencyFlag / FlipFlopFlag (report rows)

Usage:
    from ats_verify.core.models import TrackedUnit

    unit = TrackedUnit.model_validate(row)  # row from a dict_row cursor
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

# =============================================================================
# Enums
# =============================================================================


class RiskLevel(str, Enum):
    """Risk assessment for an identity key."""

    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"


class UpsertAction(str, Enum):
    """Outcome of one dedup/upsert decision."""

    INSERTED = "inserted"
    UPDATED = "updated"
    SKIPPED_USED = "skipped_used"


# =============================================================================
# Base Configuration
# =============================================================================


class RecordModel(BaseModel):
    """Base for records read from or written to the store."""

    model_config = ConfigDict(
        extra="ignore",
        frozen=True,
        use_enum_values=False,
    )


# =============================================================================
# Tracked Units
# =============================================================================


class TrackedUnitDraft(RecordModel):
    """Normalized parcel row, ready for the dedup engine."""

    track_number: str = Field(..., min_length=1)
    marketplace: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)
    brand: str = Field(..., min_length=1)
    product_name: str = Field(..., min_length=1)
    serial_ref: str = ""
    upload_timestamp: datetime
    uploader_id: UUID


class TrackedUnit(TrackedUnitDraft):
    """Persisted tracked unit."""

    id: UUID
    is_used: bool = False
    created_at: datetime
    updated_at: datetime


# =============================================================================
# Risk Ledger
# =============================================================================


class RawSignalRecord(RecordModel):
    """
    One append-only ledger row.

    Never mutated after insert; created_at is assigned by the store.
    """

    report_date: datetime
    application_id: str = ""
    identity_key: str = Field(..., min_length=1)
    document_ref: str = ""
    user_name: str = ""
    organization: str = ""
    status: str = ""
    reject_flag: str = ""
    reason: str = ""
    created_at: Optional[datetime] = None

    def as_params(self) -> tuple:
        """Bind parameters in ledger column order."""
        return (
            self.report_date,
            self.application_id,
            self.identity_key,
            self.document_ref,
            self.user_name,
            self.organization,
            self.status,
            self.reject_flag,
            self.reason,
        )


class RiskProfile(RecordModel):
    """Risk level assigned to an identity key (latest write wins)."""

    id: Optional[UUID] = None
    identity_key: str = Field(..., min_length=1)
    risk_level: RiskLevel
    flagged_by: UUID
    reason: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# =============================================================================
# Analytics Rows
# =============================================================================


class DocumentReuseFlag(RecordModel):
    """A document seen more than once (rows, or distinct identities)."""

    document_ref: str
    count: int


class FrequencyFlag(RecordModel):
    """Number of ledger rows for one identity key."""

    identity_key: str
    count: int


class FlipFlopFlag(RecordModel):
    """Contradictory status history for a document + identity pair."""

    document_ref: str
    identity_key: str
    statuses: str
