"""
Parcel read and status operations.

Usage:
    with connection() as conn:
        service = ParcelService(ParcelRepository(conn))
        results = service.bulk_lookup(["WB-1", " OZ-2 ", ""])
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from ..core.errors import ValidationError
from ..core.logging import get_logger
from ..core.models import TrackedUnit

logger = get_logger(__name__)

STATUS_FILTERS = ("", "used", "unused")
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


class ParcelReader(Protocol):
    def get_by_track_number(self, track_number: str) -> Optional[TrackedUnit]: ...

    def bulk_lookup(self, track_numbers: Sequence[str]) -> List[TrackedUnit]: ...

    def list_with_filters(
        self, status: str = "", search: str = "", page: int = 1, limit: int = 20
    ) -> Tuple[List[TrackedUnit], int]: ...

    def mark_used(self, track_number: str) -> bool: ...


@dataclass(frozen=True, slots=True)
class LookupResult:
    track_number: str
    found: bool
    unit: Optional[TrackedUnit] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "track_number": self.track_number,
            "found": self.found,
            "unit": self.unit.model_dump(mode="json") if self.unit else None,
        }


@dataclass(frozen=True, slots=True)
class ParcelPage:
    items: List[TrackedUnit]
    total: int
    page: int
    limit: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [unit.model_dump(mode="json") for unit in self.items],
            "total": self.total,
            "page": self.page,
            "limit": self.limit,
        }


class ParcelService:
    def __init__(self, store: ParcelReader) -> None:
        self._store = store

    def bulk_lookup(self, track_numbers: Sequence[str]) -> List[LookupResult]:
        """
        Look up many track numbers at once.

        Inputs are trimmed and empty entries dropped; results follow input
        order (duplicates included). Missing units come back found=False.
        """
        keys = [t.strip() for t in track_numbers if t and t.strip()]
        if not keys:
            return []
        found = {unit.track_number: unit for unit in self._store.bulk_lookup(keys)}
        logger.debug("Bulk lookup", extra={"count": len(keys)})
        return [LookupResult(key, key in found, found.get(key)) for key in keys]

    def get(self, track_number: str) -> Optional[TrackedUnit]:
        track_number = track_number.strip()
        if not track_number:
            raise ValidationError("track_number is required")
        return self._store.get_by_track_number(track_number)

    def list_units(
        self,
        status: str = "",
        search: str = "",
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> ParcelPage:
        """Filtered newest-first listing; out-of-range paging is clamped."""
        status = (status or "").strip().lower()
        if status not in STATUS_FILTERS:
            raise ValidationError(f"unknown status filter {status!r}", status=status)
        if page < 1:
            page = 1
        if limit < 1 or limit > MAX_PAGE_SIZE:
            limit = DEFAULT_PAGE_SIZE
        items, total = self._store.list_with_filters(
            status=status, search=(search or "").strip(), page=page, limit=limit
        )
        return ParcelPage(items=items, total=total, page=page, limit=limit)

    def mark_used(self, track_number: str) -> bool:
        """
        Flag a unit as used so later uploads can no longer overwrite it.

        Returns:
            True if the flag changed, False if it was already set

        Raises:
            ValidationError: Empty track number
            NotFoundError: Unknown track number
        """
        track_number = track_number.strip()
        if not track_number:
            raise ValidationError("track_number is required")
        changed = self._store.mark_used(track_number)
        logger.info(
            "Parcel marked used" if changed else "Parcel already used",
            extra={"track_number": track_number},
        )
        return changed
