"""
tests/conftest.py

Pytest configuration and shared fakes for the ATS Verify test suite.

Unit tests run against in-memory fakes:

  parcel_store  - FakeParcelStore, the dedup primitives plus the read
                  operations ParcelService needs, backed by a dict
  ledger_conn   - FakeLedgerConnection, records every execute() and gives
                  conn.transaction() commit/rollback semantics

Integration tests (marker `integration`) need a real PostgreSQL database:

  ATS_TEST_DATABASE_URL=postgresql://... pytest -m integration

They are skipped when the variable is not set.
"""

from __future__ import annotations

import io
import os
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import psycopg
import pytest

from ats_verify.config import reset_settings
from ats_verify.core.errors import NotFoundError, StoreError
from ats_verify.core.models import TrackedUnit, TrackedUnitDraft
from ats_verify.repositories.parcels import ExistingState

FIXED_NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
UPLOADER_ID = uuid.UUID("6f1c0e0a-3d4b-4f7a-9a51-0b9f6f0d2c11")

# =============================================================================
# GLOBAL TEST CONFIGURATION
# =============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as requiring PostgreSQL (ATS_TEST_DATABASE_URL)",
    )


@pytest.fixture(autouse=True)
def _fresh_settings() -> Iterator[None]:
    """Settings are cached per process; never leak them between tests."""
    reset_settings()
    yield
    reset_settings()


# =============================================================================
# CSV HELPERS
# =============================================================================


def csv_stream(*lines: str, encoding: str = "utf-8") -> io.BytesIO:
    """Build an upload stream from text lines."""
    return io.BytesIO(("\n".join(lines) + "\n").encode(encoding))


@pytest.fixture
def make_stream() -> Callable[..., io.BytesIO]:
    return csv_stream


@pytest.fixture
def fixed_clock() -> Callable[[], datetime]:
    return lambda: FIXED_NOW


# =============================================================================
# FAKE PARCEL STORE
# =============================================================================


class FakeParcelStore:
    """
    In-memory tracked_units with the same conditional-write semantics as
    ParcelRepository.

    Hooks:
        fail_on: track numbers whose writes raise StoreError
        before_insert: called with the draft just before an insert attempt,
            used to simulate a concurrent writer winning the race
        before_update: same, just before an update attempt
    """

    def __init__(self) -> None:
        self.units: Dict[str, TrackedUnit] = {}
        self.fail_on: set[str] = set()
        self.before_insert: Optional[Callable[[TrackedUnitDraft], None]] = None
        self.before_update: Optional[Callable[[TrackedUnitDraft], None]] = None
        self.calls: List[Tuple[str, str]] = []

    # --- seeding -------------------------------------------------------------

    def seed(self, track_number: str, is_used: bool = False, **fields: Any) -> TrackedUnit:
        values: Dict[str, Any] = {
            "track_number": track_number,
            "marketplace": "Ozon",
            "country": "CN",
            "brand": "Acme",
            "product_name": "Widget",
            "serial_ref": "",
            "upload_timestamp": FIXED_NOW,
            "uploader_id": UPLOADER_ID,
            "id": uuid.uuid4(),
            "is_used": is_used,
            "created_at": FIXED_NOW,
            "updated_at": FIXED_NOW,
        }
        values.update(fields)
        unit = TrackedUnit(**values)
        self.units[track_number] = unit
        return unit

    def _check_failure(self, track_number: str) -> None:
        if track_number in self.fail_on:
            raise StoreError(
                "writing parcel",
                psycopg.OperationalError("connection lost"),
                track_number=track_number,
            )

    # --- dedup primitives ----------------------------------------------------

    def find_state(self, track_number: str) -> Optional[ExistingState]:
        self.calls.append(("find_state", track_number))
        unit = self.units.get(track_number)
        if unit is None:
            return None
        return ExistingState(track_number=track_number, is_used=unit.is_used)

    def insert_if_absent(self, draft: TrackedUnitDraft) -> bool:
        self.calls.append(("insert", draft.track_number))
        if self.before_insert is not None:
            self.before_insert(draft)
        self._check_failure(draft.track_number)
        if draft.track_number in self.units:
            return False
        self.units[draft.track_number] = TrackedUnit(
            **draft.model_dump(),
            id=uuid.uuid4(),
            is_used=False,
            created_at=FIXED_NOW,
            updated_at=FIXED_NOW,
        )
        return True

    def update_if_unused(self, draft: TrackedUnitDraft) -> bool:
        self.calls.append(("update", draft.track_number))
        if self.before_update is not None:
            self.before_update(draft)
        self._check_failure(draft.track_number)
        current = self.units.get(draft.track_number)
        if current is None or current.is_used:
            return False
        self.units[draft.track_number] = current.model_copy(
            update={**draft.model_dump(), "updated_at": datetime.now(timezone.utc)}
        )
        return True

    # --- reads / status ------------------------------------------------------

    def get_by_track_number(self, track_number: str) -> Optional[TrackedUnit]:
        return self.units.get(track_number.strip())

    def bulk_lookup(self, track_numbers: Sequence[str]) -> List[TrackedUnit]:
        self.calls.append(("bulk_lookup", ",".join(track_numbers)))
        return [self.units[t] for t in set(track_numbers) if t in self.units]

    def list_with_filters(
        self, status: str = "", search: str = "", page: int = 1, limit: int = 20
    ) -> Tuple[List[TrackedUnit], int]:
        self.calls.append(("list", f"{status}|{search}|{page}|{limit}"))
        units = list(self.units.values())
        if status == "used":
            units = [u for u in units if u.is_used]
        elif status == "unused":
            units = [u for u in units if not u.is_used]
        if search:
            needle = search.lower()
            units = [
                u
                for u in units
                if needle in u.track_number.lower()
                or needle in u.product_name.lower()
                or needle in u.brand.lower()
            ]
        units.sort(key=lambda u: u.created_at, reverse=True)
        start = (page - 1) * limit
        return units[start : start + limit], len(units)

    def mark_used(self, track_number: str) -> bool:
        unit = self.units.get(track_number)
        if unit is None:
            raise NotFoundError(f"parcel with track_number {track_number} not found")
        if unit.is_used:
            return False
        self.units[track_number] = unit.model_copy(update={"is_used": True})
        return True


@pytest.fixture
def parcel_store() -> FakeParcelStore:
    return FakeParcelStore()


# =============================================================================
# FAKE LEDGER CONNECTION
# =============================================================================


class _FakeLedgerCursor:
    def __init__(self, conn: "FakeLedgerConnection") -> None:
        self._conn = conn

    def __enter__(self) -> "_FakeLedgerCursor":
        return self

    def __exit__(self, *exc: Any) -> bool:
        return False

    def execute(self, sql: str, params: Optional[Sequence[Any]] = None) -> None:
        conn = self._conn
        conn.executed.append((sql, list(params or [])))
        if conn.fail_on_execute == len(conn.executed):
            raise psycopg.OperationalError("server closed the connection unexpectedly")
        params = list(params or [])
        rows = [tuple(params[i : i + 9]) for i in range(0, len(params), 9)]
        if conn._pending is None:
            conn.committed_rows.extend(rows)
        else:
            conn._pending.extend(rows)


class FakeLedgerConnection:
    """
    Connection stand-in for LedgerRepository.bulk_insert.

    Rows written inside transaction() only become visible in
    committed_rows when the block exits cleanly.

    Args:
        fail_on_execute: 1-based execute() call that raises OperationalError
    """

    def __init__(self, fail_on_execute: Optional[int] = None) -> None:
        self.fail_on_execute = fail_on_execute
        self.executed: List[Tuple[str, List[Any]]] = []
        self.committed_rows: List[tuple] = []
        self.rollbacks = 0
        self._pending: Optional[List[tuple]] = None

    @contextmanager
    def transaction(self) -> Iterator[None]:
        self._pending = []
        try:
            yield
        except BaseException:
            self._pending = None
            self.rollbacks += 1
            raise
        self.committed_rows.extend(self._pending)
        self._pending = None

    def cursor(self, row_factory: Any = None) -> _FakeLedgerCursor:
        return _FakeLedgerCursor(self)


@pytest.fixture
def ledger_conn_factory() -> Callable[..., FakeLedgerConnection]:
    return FakeLedgerConnection


# =============================================================================
# POSTGRES (integration)
# =============================================================================


@pytest.fixture
def pg_dsn() -> str:
    dsn = os.environ.get("ATS_TEST_DATABASE_URL", "").strip()
    if not dsn:
        pytest.skip("ATS_TEST_DATABASE_URL not set")
    return dsn


@pytest.fixture
def pg_conn(pg_dsn: str) -> Iterator[psycopg.Connection]:
    """Autocommit connection on a freshly truncated schema."""
    from ats_verify.db import ensure_schema

    with psycopg.connect(pg_dsn, autocommit=True) as conn:
        ensure_schema(conn)
        conn.execute("TRUNCATE tracked_units, risk_raw_data, risk_profiles RESTART IDENTITY")
        yield conn
