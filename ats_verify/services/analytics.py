"""
Risk ledger analytics.

Runs the four ledger reports independently. A report that fails does not
stop the others (fail-open): its rows come back empty and its error is kept
alongside, so callers can tell "no matches" from "query failed".

Payload shape (AnalyticsReports.to_dict()):
    {
        "document_reuse": [{"document_ref": ..., "count": ...}],
        "document_identity_reuse": [{"document_ref": ..., "count": ...}],
        "identity_frequency": [{"identity_key": ..., "count": ...}],
        "flip_flop_status": [{"document_ref": ..., "identity_key": ..., "statuses": ...}],
        "errors": {"<report>": "<message>"},
    }
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from pydantic import BaseModel

from ..core.errors import AtsVerifyError
from ..core.logging import Timer, get_logger
from ..core.models import DocumentReuseFlag, FlipFlopFlag, FrequencyFlag

logger = get_logger(__name__)

REPORT_NAMES: tuple[str, ...] = (
    "document_reuse",
    "document_identity_reuse",
    "identity_frequency",
    "flip_flop_status",
)


class ReportSource(Protocol):
    def document_reuse(self) -> List[DocumentReuseFlag]: ...

    def document_identity_reuse(self) -> List[DocumentReuseFlag]: ...

    def identity_frequency(self) -> List[FrequencyFlag]: ...

    def flip_flop_status(self) -> List[FlipFlopFlag]: ...


@dataclass(slots=True)
class ReportOutcome:
    """Rows of one report, or the error that prevented it."""

    name: str
    rows: List[BaseModel] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class AnalyticsReports:
    document_reuse: ReportOutcome
    document_identity_reuse: ReportOutcome
    identity_frequency: ReportOutcome
    flip_flop_status: ReportOutcome

    def outcomes(self) -> Sequence[ReportOutcome]:
        return (
            self.document_reuse,
            self.document_identity_reuse,
            self.identity_frequency,
            self.flip_flop_status,
        )

    @property
    def errors(self) -> Dict[str, str]:
        return {o.name: o.error for o in self.outcomes() if o.error is not None}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            o.name: [row.model_dump(mode="json") for row in o.rows] for o in self.outcomes()
        }
        payload["errors"] = self.errors
        return payload


class AnalyticsAggregator:
    """Runs every ledger report against a ReportSource."""

    def __init__(self, source: ReportSource) -> None:
        self._source = source

    def _run(self, name: str, query: Callable[[], Sequence[BaseModel]]) -> ReportOutcome:
        try:
            with Timer() as timer:
                rows = list(query())
        except AtsVerifyError as exc:
            logger.warning(
                "Report failed, returning empty result",
                extra={"report": name, "error_code": exc.code, "duration_ms": timer.elapsed_ms},
            )
            return ReportOutcome(name=name, error=exc.message)
        logger.debug(
            "Report complete",
            extra={"report": name, "count": len(rows), "duration_ms": timer.elapsed_ms},
        )
        return ReportOutcome(name=name, rows=rows)

    def run_all(self) -> AnalyticsReports:
        reports = AnalyticsReports(
            document_reuse=self._run("document_reuse", self._source.document_reuse),
            document_identity_reuse=self._run(
                "document_identity_reuse", self._source.document_identity_reuse
            ),
            identity_frequency=self._run("identity_frequency", self._source.identity_frequency),
            flip_flop_status=self._run("flip_flop_status", self._source.flip_flop_status),
        )
        logger.info(
            "Analytics complete",
            extra={
                "count": sum(len(o.rows) for o in reports.outcomes()),
                "failed": len(reports.errors),
            },
        )
        return reports
