"""Risk profile storage (risk_profiles, one row per identity key)."""

from __future__ import annotations

from typing import List, Optional
from uuid import UUID

import psycopg
from psycopg.rows import dict_row

from ..core.errors import NotFoundError, StoreError
from ..core.models import RiskProfile

_PROFILE_COLUMNS = "id, identity_key, risk_level, flagged_by, reason, created_at, updated_at"


class RiskProfileRepository:
    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def upsert(self, profile: RiskProfile) -> RiskProfile:
        """Insert or overwrite the profile for profile.identity_key."""
        try:
            with self._conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"""
                    INSERT INTO risk_profiles (identity_key, risk_level, flagged_by, reason)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (identity_key) DO UPDATE SET
                        risk_level = EXCLUDED.risk_level,
                        flagged_by = EXCLUDED.flagged_by,
                        reason = EXCLUDED.reason,
                        updated_at = now()
                    RETURNING {_PROFILE_COLUMNS}
                    """,
                    (
                        profile.identity_key,
                        profile.risk_level.value,
                        profile.flagged_by,
                        profile.reason,
                    ),
                )
                row = cur.fetchone()
        except psycopg.Error as exc:
            raise StoreError(
                "upserting risk profile", exc, identity_key=profile.identity_key
            ) from exc
        return RiskProfile.model_validate(row)

    def get_by_identity_key(self, identity_key: str) -> Optional[RiskProfile]:
        try:
            with self._conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"SELECT {_PROFILE_COLUMNS} FROM risk_profiles WHERE identity_key = %s",
                    (identity_key,),
                )
                row = cur.fetchone()
        except psycopg.Error as exc:
            raise StoreError("querying risk profile", exc, identity_key=identity_key) from exc
        return RiskProfile.model_validate(row) if row else None

    def list_all(self) -> List[RiskProfile]:
        try:
            with self._conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"SELECT {_PROFILE_COLUMNS} FROM risk_profiles "
                    "ORDER BY updated_at DESC, identity_key"
                )
                rows = cur.fetchall()
        except psycopg.Error as exc:
            raise StoreError("listing risk profiles", exc) from exc
        return [RiskProfile.model_validate(row) for row in rows]

    def delete(self, profile_id: UUID) -> None:
        """
        Raises:
            NotFoundError: No profile with this id
        """
        try:
            with self._conn.cursor() as cur:
                cur.execute("DELETE FROM risk_profiles WHERE id = %s RETURNING id", (profile_id,))
                deleted = cur.fetchone() is not None
        except psycopg.Error as exc:
            raise StoreError("deleting risk profile", exc, profile_id=str(profile_id)) from exc
        if not deleted:
            raise NotFoundError(f"risk profile {profile_id} not found", profile_id=str(profile_id))
