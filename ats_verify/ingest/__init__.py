"""
CSV ingestion: tolerant row reading, normalization and the two
orchestrators (parcel upsert, risk ledger load).
"""

from .normalizer import RecordNormalizer
from .parcel_intake import IngestionResult, ParcelIntakePipeline, RowDiagnostic
from .row_reader import RawRow, TolerantRowReader
from .signal_intake import SignalLoadResult, load_signal_stream

__all__ = [
    "IngestionResult",
    "ParcelIntakePipeline",
    "RawRow",
    "RecordNormalizer",
    "RowDiagnostic",
    "SignalLoadResult",
    "TolerantRowReader",
    "load_signal_stream",
]
