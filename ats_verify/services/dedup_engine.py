"""
Per-track-number dedup/upsert decision.

    no record               -> insert (is_used=false)   -> inserted
    record, is_used=false   -> overwrite mutable fields -> updated
    record, is_used=true    -> no mutation              -> skipped_used

The point check is only a fast path. The write statements are the arbiter:
an insert that hits the unique constraint falls back to the update path,
and an update that finds the unit already used reports skipped_used. Under
concurrent writers each key therefore has exactly one inserting winner.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from ..core.errors import StoreError
from ..core.logging import get_logger
from ..core.models import TrackedUnitDraft, UpsertAction
from ..repositories.parcels import ExistingState

logger = get_logger(__name__)

USED_MESSAGE = "Track already used (is_used=true). Cannot overwrite."


class ParcelStore(Protocol):
    """Storage primitives the engine needs (see ParcelRepository)."""

    def find_state(self, track_number: str) -> Optional[ExistingState]: ...

    def insert_if_absent(self, draft: TrackedUnitDraft) -> bool: ...

    def update_if_unused(self, draft: TrackedUnitDraft) -> bool: ...


@dataclass(frozen=True, slots=True)
class UpsertOutcome:
    track_number: str
    action: UpsertAction
    message: str


class DedupEngine:
    """Decides and applies one row at a time against a ParcelStore."""

    def __init__(self, store: ParcelStore) -> None:
        self._store = store

    def upsert(self, draft: TrackedUnitDraft) -> UpsertOutcome:
        """
        Apply one normalized row.

        Raises:
            StoreError: A storage call failed (wrapped with context)
        """
        state = self._store.find_state(draft.track_number)

        if state is None:
            if self._store.insert_if_absent(draft):
                return UpsertOutcome(draft.track_number, UpsertAction.INSERTED, "New parcel created")
            # Lost the insert race to a concurrent upload; re-read the winner
            logger.info(
                "Concurrent insert detected, re-evaluating",
                extra={"track_number": draft.track_number},
            )
            state = self._store.find_state(draft.track_number)
            if state is None:
                raise StoreError(
                    "upserting parcel",
                    RuntimeError("insert conflicted but no existing row is visible"),
                    track_number=draft.track_number,
                )

        if state.is_used:
            return UpsertOutcome(draft.track_number, UpsertAction.SKIPPED_USED, USED_MESSAGE)

        if self._store.update_if_unused(draft):
            return UpsertOutcome(
                draft.track_number,
                UpsertAction.UPDATED,
                "Existing parcel updated (was not used)",
            )

        # Marked used (or deleted) between the check and the write
        return UpsertOutcome(draft.track_number, UpsertAction.SKIPPED_USED, USED_MESSAGE)
