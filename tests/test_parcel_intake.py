"""
tests/test_parcel_intake.py
===========================
Parcel ingestion orchestrator: counters, ordered diagnostics, partial
success, cancellation and fatal header failures.
"""

from __future__ import annotations

import logging
import threading

import pytest

from ats_verify.core.errors import HeaderReadError
from ats_verify.ingest.normalizer import RecordNormalizer
from ats_verify.ingest.parcel_intake import (
    READ_ERROR,
    REJECTED,
    SKIPPED_USED,
    STORE_ERROR,
    IngestionResult,
    ParcelIntakePipeline,
    RowDiagnostic,
)
from ats_verify.services.dedup_engine import DedupEngine

from conftest import UPLOADER_ID

HEADER = "marketplace,country,brand,product_name,track_number,snt,date"


@pytest.fixture
def pipeline(parcel_store, fixed_clock) -> ParcelIntakePipeline:
    return ParcelIntakePipeline(DedupEngine(parcel_store), RecordNormalizer(clock=fixed_clock))


# =============================================================================
# Test: Happy Path
# =============================================================================


class TestIngest:
    def test_two_rows_same_track_insert_then_update(self, pipeline, parcel_store, make_stream):
        stream = make_stream(
            HEADER,
            "Ozon,CN,Acme,Widget,TRK-1,,2024-05-01",
            "Ozon,CN,Acme,Widget Pro,TRK-1,,2024-05-02",
        )

        result = pipeline.ingest(stream, uploader_id=UPLOADER_ID)

        assert result.total_processed == 2
        assert result.inserted == 1
        assert result.updated == 1
        assert result.skipped == 0
        assert result.errors == []
        assert parcel_store.units["TRK-1"].product_name == "Widget Pro"

    def test_reingesting_identical_row_updates(self, pipeline, parcel_store, make_stream):
        line = "WB,KZ,Nike,Shoes,T1,S1,2024-01-01"

        first = pipeline.ingest(make_stream(HEADER, line), uploader_id=UPLOADER_ID)
        second = pipeline.ingest(make_stream(HEADER, line), uploader_id=UPLOADER_ID)

        assert (first.inserted, first.updated) == (1, 0)
        assert (second.inserted, second.updated) == (0, 1)
        assert parcel_store.units["T1"].is_used is False

    def test_used_track_is_skipped_with_diagnostic(self, pipeline, parcel_store, make_stream):
        original = parcel_store.seed("TRK-9", is_used=True)
        stream = make_stream(HEADER, "Ozon,CN,Acme,Widget,TRK-9,,")

        result = pipeline.ingest(stream, uploader_id=UPLOADER_ID)

        assert result.skipped == 1
        assert result.diagnostics == [
            RowDiagnostic(
                1,
                SKIPPED_USED,
                "Track already used (is_used=true). Cannot overwrite.",
                "TRK-9",
                line_number=2,
            )
        ]
        assert result.errors == ["TRK-9: Track already used (is_used=true). Cannot overwrite."]
        assert parcel_store.units["TRK-9"] == original

    def test_marketplace_prefix_overrides_rows(self, pipeline, parcel_store, make_stream):
        stream = make_stream(HEADER, "Ozon,CN,Acme,Widget,TRK-1,,", ",CN,Acme,Widget,TRK-2,,")

        result = pipeline.ingest(stream, uploader_id=UPLOADER_ID, marketplace_prefix="wb")

        assert result.inserted == 2
        assert parcel_store.units["TRK-1"].marketplace == "Wildberries"
        assert parcel_store.units["TRK-2"].marketplace == "Wildberries"

    def test_unknown_prefix_used_verbatim(self, pipeline, parcel_store, make_stream):
        pipeline.ingest(
            make_stream(HEADER, "Ozon,CN,Acme,Widget,TRK-1,,"),
            uploader_id=UPLOADER_ID,
            marketplace_prefix="shein",
        )
        assert parcel_store.units["TRK-1"].marketplace == "shein"

    def test_header_only_stream(self, pipeline, make_stream):
        result = pipeline.ingest(make_stream(HEADER), uploader_id=UPLOADER_ID)
        assert result.total_processed == 0
        assert result.to_dict() == {
            "total_processed": 0,
            "inserted": 0,
            "updated": 0,
            "skipped": 0,
            "errors": [],
            "diagnostics": [],
            "cancelled": False,
        }


# =============================================================================
# Test: Partial Success
# =============================================================================


class TestPartialSuccess:
    def test_mixed_rows_keep_input_order(self, pipeline, parcel_store, make_stream):
        parcel_store.seed("USED-1", is_used=True)
        parcel_store.fail_on.add("BROKEN-1")
        stream = make_stream(
            HEADER,
            "Ozon,CN,Acme,Widget,OK-1,,",  # 1 inserted
            "Ozon,CN,Acme",  # 2 short row
            "Ozon,CN,Acme,Widget,USED-1,,",  # 3 used
            "Ozon,CN,Acme,Widget,BROKEN-1,,",  # 4 store error
            "Ozon,CN,Acme,Widget,,,",  # 5 empty track
            "Ozon,CN,Acme,Widget,OK-2,,",  # 6 inserted
        )

        result = pipeline.ingest(stream, uploader_id=UPLOADER_ID)

        assert result.total_processed == 6
        assert result.inserted == 2
        assert result.updated == 0
        assert result.skipped == 1
        assert [(d.row_index, d.kind) for d in result.diagnostics] == [
            (2, REJECTED),
            (3, SKIPPED_USED),
            (4, STORE_ERROR),
            (5, REJECTED),
        ]
        assert set(parcel_store.units) == {"OK-1", "OK-2", "USED-1"}

    def test_counts_add_up(self, pipeline, parcel_store, make_stream):
        parcel_store.seed("A", is_used=True)
        parcel_store.seed("B")
        stream = make_stream(
            HEADER,
            "Ozon,CN,Acme,Widget,A,,",
            "Ozon,CN,Acme,Widget,B,,",
            "Ozon,CN,Acme,Widget,C,,",
            "bad",
        )

        result = pipeline.ingest(stream, uploader_id=UPLOADER_ID)

        rejected = sum(1 for d in result.diagnostics if d.kind != SKIPPED_USED)
        assert result.total_processed == (
            result.inserted + result.updated + result.skipped + rejected
        )

    def test_malformed_row_becomes_read_error(self, pipeline, parcel_store):
        import io

        stream = io.BytesIO(
            (HEADER + "\nOzon,CN,Acme,Widget,T1,,\nOz\ron,x\nOzon,CN,Acme,Widget,T2,,\n").encode()
        )

        result = pipeline.ingest(stream, uploader_id=UPLOADER_ID)

        assert result.inserted == 2
        assert result.total_processed == 3
        assert [d.kind for d in result.diagnostics] == [READ_ERROR]
        assert result.diagnostics[0].row_index == 2
        assert result.errors[0].startswith("row 2: malformed row")

    def test_unclosed_quote_loses_only_its_own_row(self, pipeline, parcel_store, make_stream):
        stream = make_stream(
            HEADER,
            'WB,KZ,"Nike,Shoes,T1,S1,2024-01-01',
            "WB,KZ,Nike,Shoes,T2,S1,2024-01-01",
            "WB,KZ,Nike,Shoes,T3,S1,2024-01-01",
        )

        result = pipeline.ingest(stream, uploader_id=UPLOADER_ID)

        assert result.total_processed == 3
        assert result.inserted == 2
        assert result.errors == ["row 1: unterminated quoted field on line 2"]
        assert set(parcel_store.units) == {"T2", "T3"}

    def test_diagnostics_carry_physical_line(self, pipeline, make_stream):
        stream = make_stream(HEADER, "", "Ozon,CN,Acme,Widget,T1,,", "", "", "Ozon,CN,Acme")

        payload = pipeline.ingest(stream, uploader_id=UPLOADER_ID).to_dict()

        assert payload["diagnostics"] == [
            {
                "row_index": 2,
                "kind": REJECTED,
                "message": "expected 7 columns, got 3",
                "track_number": None,
                "line_number": 6,
            }
        ]

    def test_store_error_diagnostic_names_track(self, pipeline, parcel_store, make_stream):
        parcel_store.fail_on.add("T1")
        result = pipeline.ingest(
            make_stream(HEADER, "Ozon,CN,Acme,Widget,T1,,"), uploader_id=UPLOADER_ID
        )
        assert result.errors[0].startswith("row 1 (T1): writing parcel")


# =============================================================================
# Test: Fatal Failures and Cancellation
# =============================================================================


class TestRunControl:
    def test_empty_upload_is_fatal(self, pipeline, make_stream):
        import io

        with pytest.raises(HeaderReadError):
            pipeline.ingest(io.BytesIO(b""), uploader_id=UPLOADER_ID)

    def test_cancel_before_start_processes_nothing(self, pipeline, parcel_store, make_stream):
        cancel = threading.Event()
        cancel.set()

        result = pipeline.ingest(
            make_stream(HEADER, "Ozon,CN,Acme,Widget,T1,,"),
            uploader_id=UPLOADER_ID,
            cancel_event=cancel,
        )

        assert result.cancelled is True
        assert result.total_processed == 0
        assert parcel_store.units == {}

    def test_cancel_mid_run_keeps_applied_rows(self, pipeline, parcel_store, make_stream):
        cancel = threading.Event()

        def cancel_after_first(d):
            cancel.set()

        parcel_store.before_insert = cancel_after_first
        stream = make_stream(HEADER, "Ozon,CN,Acme,Widget,T1,,", "Ozon,CN,Acme,Widget,T2,,")

        result = pipeline.ingest(stream, uploader_id=UPLOADER_ID, cancel_event=cancel)

        assert result.cancelled is True
        assert result.inserted == 1
        assert set(parcel_store.units) == {"T1"}
        assert "CANCELLED" in result.summary()

    def test_run_logs_summary(self, pipeline, make_stream, caplog):
        with caplog.at_level(logging.INFO, logger="ats_verify.ingest.parcel_intake"):
            result = pipeline.ingest(
                make_stream(HEADER, "Ozon,CN,Acme,Widget,T1,,"),
                uploader_id=UPLOADER_ID,
                run_id="run-123",
            )
        assert result.run_id == "run-123"
        assert any("1 inserted" in r.getMessage() for r in caplog.records)


class TestIngestionResult:
    def test_summary(self):
        result = IngestionResult(run_id="r", total_processed=3, inserted=1, updated=1, skipped=1)
        assert result.summary() == (
            "Ingestion COMPLETED: 3 processed, 1 inserted, 1 updated, 1 skipped, 0 diagnostics"
        )
