"""
ats_verify/ingest/normalizer.py
===============================
Positional row -> canonical record mapping.

Parcel upload (7 columns):
    marketplace, country, brand, product_name, track_number, serial_ref, date

Risk signal upload (9 columns):
    date, application_id, identity_key, document_ref, user, org, status,
    reject_flag, reason

Rules:
    - Every field is trimmed; the null placeholder (default `<nil>`) is empty.
    - Short rows are rejected; extra trailing columns are ignored.
    - Dates: YYYY-MM-DD, then DD.MM.YYYY, else the ingestion wall clock.
    - Marketplace: uploader override > in-row value > reject.
    - marketplace/country/brand/product_name must all be present.
    - Risk rows without an identity key (or with a sentinel such as "0")
      are rejected; every analytic groups by identity.

The normalizer is pure apart from the injected clock, so it can run on
any worker; order and storage concerns belong to the orchestrators.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timezone
from typing import Callable, Iterable, List, Mapping, Optional, Sequence
from uuid import UUID

from ..config import DEFAULT_MARKETPLACE_PREFIXES, Settings
from ..core.errors import RowRejectedError
from ..core.models import RawSignalRecord, TrackedUnitDraft
from .row_reader import RawRow

PARCEL_COLUMNS: tuple[str, ...] = (
    "marketplace",
    "country",
    "brand",
    "product_name",
    "track_number",
    "serial_ref",
    "date",
)

SIGNAL_COLUMNS: tuple[str, ...] = (
    "date",
    "application_id",
    "identity_key",
    "document_ref",
    "user",
    "org",
    "status",
    "reject_flag",
    "reason",
)

# Fields that must all be present for a parcel row to be accepted
REQUIRED_PARCEL_FIELDS: tuple[str, ...] = ("marketplace", "country", "brand", "product_name")

_ISO_DATE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})(?:[T ].*)?$")
_DOTTED_DATE = re.compile(r"^(\d{2})\.(\d{2})\.(\d{4})(?:\s.*)?$")

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_report_date(value: str) -> Optional[datetime]:
    """
    Parse `YYYY-MM-DD` or `DD.MM.YYYY` (a trailing time part is ignored).

    Returns None when neither format matches or the date is impossible.
    """
    value = value.strip()
    if not value:
        return None
    match = _ISO_DATE.match(value)
    if match:
        year, month, day = (int(g) for g in match.groups())
    else:
        match = _DOTTED_DATE.match(value)
        if not match:
            return None
        day, month, year = (int(g) for g in match.groups())
    try:
        parsed = date(year, month, day)
    except ValueError:
        return None
    return datetime(parsed.year, parsed.month, parsed.day, tzinfo=timezone.utc)


class RecordNormalizer:
    """
    Maps RawRow fields to TrackedUnitDraft / RawSignalRecord.

    Args:
        marketplace_prefixes: Uploader prefix -> marketplace name
        null_token: Literal placeholder that means "no value"
        identity_sentinels: Identity keys treated as missing
        clock: Wall clock used when a row has no usable date
    """

    def __init__(
        self,
        marketplace_prefixes: Optional[Mapping[str, str]] = None,
        null_token: str = "<nil>",
        identity_sentinels: Iterable[str] = ("0",),
        clock: Clock = utc_now,
    ) -> None:
        prefixes = DEFAULT_MARKETPLACE_PREFIXES if marketplace_prefixes is None else marketplace_prefixes
        self._prefixes = {k.strip().lower(): v for k, v in prefixes.items()}
        self._null_token = null_token
        self._identity_sentinels = frozenset(s.strip() for s in identity_sentinels)
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, clock: Clock = utc_now) -> "RecordNormalizer":
        return cls(
            marketplace_prefixes=settings.marketplace_prefixes,
            null_token=settings.ATS_NULL_TOKEN,
            identity_sentinels=settings.ATS_IDENTITY_SENTINELS,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def clean_fields(self, fields: Sequence[str]) -> List[str]:
        """Trim every field and blank out the null placeholder."""
        cleaned = []
        for value in fields:
            value = (value or "").strip()
            cleaned.append("" if value == self._null_token else value)
        return cleaned

    def resolve_marketplace(self, prefix: Optional[str]) -> Optional[str]:
        """
        Marketplace name for an uploader prefix.

        Known prefixes map through the table, unknown ones are used verbatim,
        an empty prefix means "no override".
        """
        if prefix is None or not prefix.strip():
            return None
        prefix = prefix.strip()
        return self._prefixes.get(prefix.lower(), prefix)

    def _resolve_date(self, raw: str) -> datetime:
        return parse_report_date(raw) or self._clock()

    @staticmethod
    def _require_columns(row: RawRow, fields: Sequence[str], expected: Sequence[str]) -> None:
        if len(fields) < len(expected):
            raise RowRejectedError(
                row.row_index,
                f"expected {len(expected)} columns, got {len(fields)}",
            )

    # ------------------------------------------------------------------
    # Parcels
    # ------------------------------------------------------------------

    def normalize_parcel(
        self,
        row: RawRow,
        uploader_id: UUID,
        marketplace_override: Optional[str] = None,
    ) -> TrackedUnitDraft:
        """
        Build a TrackedUnitDraft from a 7-column row.

        Raises:
            RowRejectedError: Short row, empty track number, or incomplete
                descriptive fields
        """
        fields = self.clean_fields(row.fields)
        self._require_columns(row, fields, PARCEL_COLUMNS)
        values = dict(zip(PARCEL_COLUMNS, fields))

        track_number = values["track_number"]
        if not track_number:
            raise RowRejectedError(row.row_index, "empty track_number")

        override = (marketplace_override or "").strip()
        values["marketplace"] = override or values["marketplace"]

        missing = [name for name in REQUIRED_PARCEL_FIELDS if not values[name]]
        if missing:
            raise RowRejectedError(
                row.row_index,
                f"missing required fields: {', '.join(missing)}",
                track_number=track_number,
            )

        return TrackedUnitDraft(
            track_number=track_number,
            marketplace=values["marketplace"],
            country=values["country"],
            brand=values["brand"],
            product_name=values["product_name"],
            serial_ref=values["serial_ref"],
            upload_timestamp=self._resolve_date(values["date"]),
            uploader_id=uploader_id,
        )

    # ------------------------------------------------------------------
    # Risk signals
    # ------------------------------------------------------------------

    def is_missing_identity(self, identity_key: str) -> bool:
        return not identity_key or identity_key in self._identity_sentinels

    def normalize_signal(self, row: RawRow) -> RawSignalRecord:
        """
        Build a RawSignalRecord from a 9-column row.

        Raises:
            RowRejectedError: Short row or missing/sentinel identity key
        """
        fields = self.clean_fields(row.fields)
        self._require_columns(row, fields, SIGNAL_COLUMNS)
        values = dict(zip(SIGNAL_COLUMNS, fields))

        identity_key = values["identity_key"]
        if self.is_missing_identity(identity_key):
            raise RowRejectedError(
                row.row_index,
                f"identity_key is empty or a sentinel ({identity_key!r})",
            )

        return RawSignalRecord(
            report_date=self._resolve_date(values["date"]),
            application_id=values["application_id"],
            identity_key=identity_key,
            document_ref=values["document_ref"],
            user_name=values["user"],
            organization=values["org"],
            status=values["status"],
            reject_flag=values["reject_flag"],
            reason=values["reason"],
        )
