"""
ATS Verify command line.

Examples:
    # Create tables
    python -m ats_verify init-db

    # Parcel upload for a Wildberries seller
    python -m ats_verify ingest-parcels --file parcels.csv \\
        --uploader-id 6f1c0e0a-3d4b-4f7a-9a51-0b9f6f0d2c11 --marketplace-prefix wb

    # Risk registry upload, then the fraud reports
    python -m ats_verify load-signals --file registry.csv
    python -m ats_verify analytics

    # Parcel checks
    python -m ats_verify lookup WB-1001 OZ-2002
    python -m ats_verify mark-used WB-1001

Every command prints JSON on stdout and exits 1 on a fatal error.
"""

from __future__ import annotations

import argparse
import json
import signal
import sys
import threading
import uuid
from typing import Any, Callable, Dict, Optional, Sequence

from .config import get_settings
from .core.errors import AtsVerifyError
from .core.logging import configure_logging, get_logger
from .db import close_pool, connection, ensure_schema
from .ingest.parcel_intake import ParcelIntakePipeline
from .ingest.signal_intake import load_signal_stream
from .repositories.ledger import LedgerRepository
from .repositories.parcels import ParcelRepository
from .services.analytics import AnalyticsAggregator
from .services.parcels import ParcelService

logger = get_logger(__name__)


def _emit(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


# =============================================================================
# Commands
# =============================================================================


def _cmd_init_db(args: argparse.Namespace) -> int:
    with connection() as conn:
        ensure_schema(conn)
    _emit({"status": "ok"})
    return 0


def _cmd_ingest_parcels(args: argparse.Namespace) -> int:
    cancel_event = threading.Event()

    def _handle_signal(signum: int, frame: Any) -> None:
        logger.info("Received %s, stopping after the current row", signal.Signals(signum).name)
        cancel_event.set()

    previous = {sig: signal.signal(sig, _handle_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        with connection() as conn, open(args.file, "rb") as fh:
            pipeline = ParcelIntakePipeline.for_connection(conn)
            result = pipeline.ingest(
                fh,
                uploader_id=args.uploader_id,
                marketplace_prefix=args.marketplace_prefix,
                cancel_event=cancel_event,
            )
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler if handler is not None else signal.SIG_DFL)
    _emit(result.to_dict())
    return 0


def _cmd_load_signals(args: argparse.Namespace) -> int:
    settings = get_settings()
    with connection() as conn, open(args.file, "rb") as fh:
        ledger = LedgerRepository(
            conn,
            chunk_size=settings.ATS_LEDGER_CHUNK_SIZE,
            parameter_limit=settings.ATS_DB_PARAMETER_LIMIT,
        )
        result = load_signal_stream(fh, ledger)
    _emit(result.to_dict())
    return 0


def _cmd_analytics(args: argparse.Namespace) -> int:
    with connection() as conn:
        reports = AnalyticsAggregator(LedgerRepository(conn)).run_all()
    _emit(reports.to_dict())
    return 0


def _cmd_lookup(args: argparse.Namespace) -> int:
    with connection() as conn:
        results = ParcelService(ParcelRepository(conn)).bulk_lookup(args.track_numbers)
    _emit({"results": [r.to_dict() for r in results]})
    return 0


def _cmd_mark_used(args: argparse.Namespace) -> int:
    with connection() as conn:
        changed = ParcelService(ParcelRepository(conn)).mark_used(args.track_number)
    _emit({"track_number": args.track_number.strip(), "changed": changed})
    return 0


# =============================================================================
# Entry point
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ats-verify",
        description="Parcel ingestion and fraud-signal analytics",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init-db", help="Create tables and indexes if absent")
    p.set_defaults(handler=_cmd_init_db)

    p = sub.add_parser("ingest-parcels", help="Ingest a parcel CSV (7 columns)")
    p.add_argument("--file", "-f", required=True, help="Path to the CSV file")
    p.add_argument("--uploader-id", required=True, type=uuid.UUID, help="Uploading user UUID")
    p.add_argument(
        "--marketplace-prefix",
        default=None,
        help="Uploader marketplace prefix (wb, ozon, kaspi, ali, temu, ...)",
    )
    p.set_defaults(handler=_cmd_ingest_parcels)

    p = sub.add_parser("load-signals", help="Load a risk registry CSV (9 columns)")
    p.add_argument("--file", "-f", required=True, help="Path to the CSV file")
    p.set_defaults(handler=_cmd_load_signals)

    p = sub.add_parser("analytics", help="Run the four ledger reports")
    p.set_defaults(handler=_cmd_analytics)

    p = sub.add_parser("lookup", help="Bulk lookup of track numbers")
    p.add_argument("track_numbers", nargs="+", metavar="TRACK")
    p.set_defaults(handler=_cmd_lookup)

    p = sub.add_parser("mark-used", help="Mark a tracked unit as used")
    p.add_argument("track_number", metavar="TRACK")
    p.set_defaults(handler=_cmd_mark_used)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """CLI entrypoint."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = get_settings()
    except ValueError as e:
        # pydantic ValidationError is a ValueError
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        return 1
    configure_logging(
        level="DEBUG" if args.verbose else settings.LOG_LEVEL,
        json_output=settings.LOG_JSON,
    )

    handler: Callable[[argparse.Namespace], int] = args.handler
    try:
        return handler(args)
    except AtsVerifyError as e:
        logger.error("%s failed: %s", args.command, e.message, extra={"error_code": e.code})
        print(json.dumps(e.to_dict(), default=str), file=sys.stderr)
        return 1
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        close_pool()


if __name__ == "__main__":
    sys.exit(main())
