"""psycopg repositories, one per relation."""

from .ledger import LedgerRepository
from .parcels import ExistingState, ParcelRepository
from .risk_profiles import RiskProfileRepository

__all__ = ["ExistingState", "LedgerRepository", "ParcelRepository", "RiskProfileRepository"]
