"""Risk profile management: validated upsert, lookup, listing, deletion."""

from __future__ import annotations

from typing import List, Optional, Protocol
from uuid import UUID

from ..core.errors import ValidationError
from ..core.logging import get_logger
from ..core.models import RiskLevel, RiskProfile

logger = get_logger(__name__)


class RiskProfileStore(Protocol):
    def upsert(self, profile: RiskProfile) -> RiskProfile: ...

    def get_by_identity_key(self, identity_key: str) -> Optional[RiskProfile]: ...

    def list_all(self) -> List[RiskProfile]: ...

    def delete(self, profile_id: UUID) -> None: ...


class RiskProfileService:
    def __init__(self, store: RiskProfileStore) -> None:
        self._store = store

    def set_profile(
        self,
        identity_key: str,
        risk_level: str,
        flagged_by: UUID,
        reason: str = "",
    ) -> RiskProfile:
        """
        Create or overwrite the profile for an identity key.

        Raises:
            ValidationError: Empty identity key or unknown risk level
        """
        identity_key = (identity_key or "").strip()
        if not identity_key:
            raise ValidationError("identity_key is required")
        try:
            level = RiskLevel((risk_level or "").strip().lower())
        except ValueError:
            raise ValidationError(
                f"invalid risk level {risk_level!r}; must be green, yellow or red",
                risk_level=risk_level,
            ) from None

        profile = self._store.upsert(
            RiskProfile(
                identity_key=identity_key,
                risk_level=level,
                flagged_by=flagged_by,
                reason=(reason or "").strip(),
            )
        )
        logger.info(
            "Risk profile saved",
            extra={"identity_key": identity_key, "action": level.value},
        )
        return profile

    def get_profile(self, identity_key: str) -> Optional[RiskProfile]:
        return self._store.get_by_identity_key(identity_key.strip())

    def list_profiles(self) -> List[RiskProfile]:
        return self._store.list_all()

    def delete_profile(self, profile_id: UUID) -> None:
        self._store.delete(profile_id)
        logger.info("Risk profile deleted", extra={"count": 1})
