"""
ATS Verify - Parcel Ingestion & Fraud-Signal Engine

Bulk CSV ingestion with per-track deduplication, an append-only risk
signal ledger, and the read-time analytics built on top of it.
"""

__version__ = "0.1.0"
