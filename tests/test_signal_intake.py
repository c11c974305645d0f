"""
tests/test_signal_intake.py
===========================
Risk registry ingestion: filtering, diagnostics and the single ledger load.
"""

from __future__ import annotations

import io

import pytest

from ats_verify.core.errors import HeaderReadError, LedgerLoadError, NoValidRowsError
from ats_verify.ingest.normalizer import RecordNormalizer
from ats_verify.ingest.signal_intake import load_signal_stream
from ats_verify.repositories.ledger import LedgerRepository

HEADER = "date;application;iin_bin;document;user;org;status;reject;reason"


@pytest.fixture
def normalizer(fixed_clock) -> RecordNormalizer:
    return RecordNormalizer(clock=fixed_clock)


class TestLoadSignalStream:
    def test_valid_rows_loaded_in_one_transaction(self, make_stream, normalizer, ledger_conn_factory):
        conn = ledger_conn_factory()
        stream = make_stream(
            HEADER,
            "2024-01-01;A1;900101300123;D1;u;o;NEW;0;",
            "02.01.2024;A2;900101300123;D1;u;o;REJECTED;1;bad photo",
        )

        result = load_signal_stream(stream, LedgerRepository(conn), normalizer)

        assert result.persisted == 2
        assert result.rejected == 0
        assert len(conn.executed) == 1
        assert [row[6] for row in conn.committed_rows] == ["NEW", "REJECTED"]

    def test_sentinel_and_short_rows_filtered(self, make_stream, normalizer, ledger_conn_factory):
        conn = ledger_conn_factory()
        stream = make_stream(
            HEADER,
            "2024-01-01;A1;0;D1;u;o;NEW;0;",
            "2024-01-01;A2;;D1;u;o;NEW;0;",
            "2024-01-01;A3;K1",
            "2024-01-01;A4;K2;D2;u;o;NEW;0;<nil>",
        )

        result = load_signal_stream(stream, LedgerRepository(conn), normalizer)

        assert result.persisted == 1
        assert result.rejected == 3
        assert [d.row_index for d in result.diagnostics] == [1, 2, 3]
        assert conn.committed_rows[0][2] == "K2"
        assert conn.committed_rows[0][8] == ""
        assert result.to_dict()["errors"][2] == "row 3: expected 9 columns, got 3"

    def test_no_valid_rows_is_an_error(self, make_stream, normalizer, ledger_conn_factory):
        conn = ledger_conn_factory()
        stream = make_stream(HEADER, "2024-01-01;A1;0;D1;u;o;NEW;0;")

        with pytest.raises(NoValidRowsError) as exc_info:
            load_signal_stream(stream, LedgerRepository(conn), normalizer)

        assert exc_info.value.context["rejected"] == 1
        assert conn.executed == []

    def test_header_only_is_no_valid_rows(self, make_stream, normalizer, ledger_conn_factory):
        with pytest.raises(NoValidRowsError):
            load_signal_stream(make_stream(HEADER), LedgerRepository(ledger_conn_factory()), normalizer)

    def test_empty_stream_is_header_error(self, normalizer, ledger_conn_factory):
        with pytest.raises(HeaderReadError):
            load_signal_stream(io.BytesIO(b""), LedgerRepository(ledger_conn_factory()), normalizer)

    def test_load_failure_persists_nothing(self, make_stream, normalizer, ledger_conn_factory):
        conn = ledger_conn_factory(fail_on_execute=2)
        lines = [HEADER] + [f"2024-01-01;A{i};K{i};D{i};u;o;NEW;0;" for i in range(5)]

        with pytest.raises(LedgerLoadError):
            load_signal_stream(
                make_stream(*lines), LedgerRepository(conn, chunk_size=2), normalizer
            )

        assert conn.committed_rows == []
