"""
Tracked-unit (parcel) storage primitives.

The dedup engine composes these into the insert/overwrite/reject decision.
Each statement runs on an autocommit connection, so every row's write
commits on its own. Correctness under concurrent uploads of the same
track number comes from the statements themselves:

- insert_if_absent: INSERT .. ON CONFLICT (track_number) DO NOTHING
- update_if_unused: UPDATE .. WHERE is_used = false

A writer that loses either race sees "no row affected" and re-evaluates.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import psycopg
from psycopg.rows import dict_row

from ..core.errors import NotFoundError, StoreError
from ..core.logging import get_logger
from ..core.models import TrackedUnit, TrackedUnitDraft

logger = get_logger(__name__)

_UNIT_COLUMNS = (
    "id, track_number, marketplace, country, brand, product_name, serial_ref, "
    "is_used, upload_timestamp, uploader_id, created_at, updated_at"
)


@dataclass(frozen=True, slots=True)
class ExistingState:
    """What the fast-path point check found for a track number."""

    track_number: str
    is_used: bool


class ParcelRepository:
    """psycopg-backed access to the tracked_units relation."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    # =========================================================================
    # Dedup primitives
    # =========================================================================

    def find_state(self, track_number: str) -> Optional[ExistingState]:
        try:
            with self._conn.cursor() as cur:
                cur.execute(
                    "SELECT is_used FROM tracked_units WHERE track_number = %s",
                    (track_number,),
                )
                row = cur.fetchone()
        except psycopg.Error as exc:
            raise StoreError("checking existing parcel", exc, track_number=track_number) from exc
        if row is None:
            return None
        return ExistingState(track_number=track_number, is_used=bool(row[0]))

    def insert_if_absent(self, draft: TrackedUnitDraft) -> bool:
        """Insert with is_used=false; False when the key already exists."""
        try:
            with self._conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO tracked_units (
                        track_number, marketplace, country, brand, product_name,
                        serial_ref, is_used, upload_timestamp, uploader_id,
                        created_at, updated_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, false, %s, %s, now(), now())
                    ON CONFLICT (track_number) DO NOTHING
                    RETURNING id
                    """,
                    (
                        draft.track_number,
                        draft.marketplace,
                        draft.country,
                        draft.brand,
                        draft.product_name,
                        draft.serial_ref,
                        draft.upload_timestamp,
                        draft.uploader_id,
                    ),
                )
                return cur.fetchone() is not None
        except psycopg.Error as exc:
            raise StoreError("inserting parcel", exc, track_number=draft.track_number) from exc

    def update_if_unused(self, draft: TrackedUnitDraft) -> bool:
        """Overwrite mutable fields; False when the unit is used (or gone)."""
        try:
            with self._conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE tracked_units
                    SET marketplace = %s,
                        country = %s,
                        brand = %s,
                        product_name = %s,
                        serial_ref = %s,
                        upload_timestamp = %s,
                        uploader_id = %s,
                        updated_at = now()
                    WHERE track_number = %s
                      AND is_used = false
                    RETURNING id
                    """,
                    (
                        draft.marketplace,
                        draft.country,
                        draft.brand,
                        draft.product_name,
                        draft.serial_ref,
                        draft.upload_timestamp,
                        draft.uploader_id,
                        draft.track_number,
                    ),
                )
                return cur.fetchone() is not None
        except psycopg.Error as exc:
            raise StoreError("updating parcel", exc, track_number=draft.track_number) from exc

    # =========================================================================
    # Reads
    # =========================================================================

    def get_by_track_number(self, track_number: str) -> Optional[TrackedUnit]:
        try:
            with self._conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"SELECT {_UNIT_COLUMNS} FROM tracked_units WHERE track_number = %s",
                    (track_number.strip(),),
                )
                row = cur.fetchone()
        except psycopg.Error as exc:
            raise StoreError("querying parcel by track", exc, track_number=track_number) from exc
        return TrackedUnit.model_validate(row) if row else None

    def bulk_lookup(self, track_numbers: Sequence[str]) -> List[TrackedUnit]:
        """Units whose track number is in the list (one array parameter)."""
        keys = sorted({t.strip() for t in track_numbers if t and t.strip()})
        if not keys:
            return []
        try:
            with self._conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"SELECT {_UNIT_COLUMNS} FROM tracked_units WHERE track_number = ANY(%s)",
                    (keys,),
                )
                rows = cur.fetchall()
        except psycopg.Error as exc:
            raise StoreError("bulk lookup parcels", exc, count=len(keys)) from exc
        return [TrackedUnit.model_validate(row) for row in rows]

    def list_with_filters(
        self,
        status: str = "",
        search: str = "",
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[TrackedUnit], int]:
        """Newest-first page of units plus the total matching count."""
        where: List[str] = []
        params: Dict[str, Any] = {}

        if status == "used":
            where.append("is_used = true")
        elif status == "unused":
            where.append("is_used = false")

        if search:
            where.append(
                "(track_number ILIKE %(pattern)s OR product_name ILIKE %(pattern)s "
                "OR brand ILIKE %(pattern)s)"
            )
            params["pattern"] = f"%{search}%"

        where_clause = f" WHERE {' AND '.join(where)}" if where else ""
        params["limit"] = limit
        params["offset"] = (page - 1) * limit

        try:
            with self._conn.cursor(row_factory=dict_row) as cur:
                cur.execute(f"SELECT count(*) AS total FROM tracked_units{where_clause}", params)
                total_row = cur.fetchone()
                cur.execute(
                    f"SELECT {_UNIT_COLUMNS} FROM tracked_units{where_clause} "
                    "ORDER BY created_at DESC, track_number "
                    "LIMIT %(limit)s OFFSET %(offset)s",
                    params,
                )
                rows = cur.fetchall()
        except psycopg.Error as exc:
            raise StoreError("listing parcels with filters", exc) from exc

        total = int(total_row["total"]) if total_row else 0
        return [TrackedUnit.model_validate(row) for row in rows], total

    # =========================================================================
    # Mark used
    # =========================================================================

    def mark_used(self, track_number: str) -> bool:
        """
        Set is_used=true. Idempotent.

        Returns:
            True if the flag changed, False if the unit was already used

        Raises:
            NotFoundError: No unit with this track number
        """
        track_number = track_number.strip()
        try:
            with self._conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE tracked_units
                    SET is_used = true, updated_at = now()
                    WHERE track_number = %s AND is_used = false
                    RETURNING id
                    """,
                    (track_number,),
                )
                if cur.fetchone() is not None:
                    return True
                cur.execute(
                    "SELECT 1 FROM tracked_units WHERE track_number = %s",
                    (track_number,),
                )
                exists = cur.fetchone() is not None
        except psycopg.Error as exc:
            raise StoreError("marking parcel as used", exc, track_number=track_number) from exc
        if not exists:
            raise NotFoundError(
                f"parcel with track_number {track_number} not found",
                track_number=track_number,
            )
        return False
