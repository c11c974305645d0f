"""
ats_verify/ingest/row_reader.py
===============================
Lenient, single-pass CSV row reader over an uploaded byte stream.

Marketplace and registry exports arrive with BOMs, mixed delimiters,
ragged rows, stray quotes and `<nil>` placeholders. This reader never
aborts the stream because of one bad row:

- The delimiter is sniffed from the header line (`,` `;` `\\t` `|`).
- Undecodable bytes are replaced, not fatal.
- Rows with any field count are passed through as-is.
- Blank lines are skipped without consuming a row index.
- A row the csv module cannot parse comes back as a RawRow with `error`
  set; reading resumes on the next line.
- A quote that is never closed would swallow every following line into one
  field. When a record spans several physical lines and then has the wrong
  column count (or runs into end of file), only its first line is reported
  as an error and the remaining lines are read again as ordinary rows.
- Only a failure of the underlying stream itself (OSError) is fatal.

Usage:
    reader = TolerantRowReader(upload.file)
    header = reader.read_header()
    for row in reader:
        if row.error:
            ...  # record and continue
"""

from __future__ import annotations

import codecs
import csv
import itertools
from dataclasses import dataclass, field
from typing import BinaryIO, Iterable, Iterator, List, Optional

from ..core.errors import HeaderReadError, StreamReadError
from ..core.logging import get_logger

logger = get_logger(__name__)

CANDIDATE_DELIMITERS = ",;\t|"
DEFAULT_ENCODING = "utf-8-sig"
_READ_CHUNK = 65536


@dataclass(slots=True)
class RawRow:
    """One physical record from the stream."""

    row_index: int  # 1-based, header excluded
    line_number: int
    fields: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def sniff_delimiter(sample: str) -> str:
    """Guess the delimiter of a header line; falls back to comma."""
    if not sample.strip():
        return ","
    try:
        return csv.Sniffer().sniff(sample, delimiters=CANDIDATE_DELIMITERS).delimiter
    except csv.Error:
        pass
    # Sniffer gives up on single-column or irregular headers; count instead
    counts = {d: sample.count(d) for d in CANDIDATE_DELIMITERS}
    best = max(counts, key=lambda d: counts[d])
    return best if counts[best] else ","


def _decode_lines(stream: BinaryIO, encoding: str) -> Iterator[str]:
    """
    Yield text lines from a byte stream, keeping line terminators.

    Decoding is incremental so the stream is read exactly once.
    """
    decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
    pending = ""
    while True:
        try:
            chunk = stream.read(_READ_CHUNK)
        except OSError as exc:
            raise StreamReadError("reading upload stream failed", cause=str(exc)) from exc
        final = not chunk
        # Split on \n only; str.splitlines() also breaks on \x1c and \u2028
        parts = (pending + decoder.decode(chunk or b"", final=final)).split("\n")
        pending = parts.pop()
        for part in parts:
            yield part + "\n"
        if final:
            if pending:
                yield pending
            return


class TolerantRowReader:
    """
    Lazy, non-restartable iterator of RawRow over one byte stream.

    Args:
        stream: Binary file-like object (read() -> bytes)
        delimiter: Force a delimiter instead of sniffing the header line
        encoding: Text encoding (BOM-tolerant UTF-8 by default)
    """

    def __init__(
        self,
        stream: BinaryIO,
        delimiter: Optional[str] = None,
        encoding: str = DEFAULT_ENCODING,
    ) -> None:
        self._lines = _decode_lines(stream, encoding)
        self._delimiter = delimiter
        self._reader: Optional[Iterator[List[str]]] = None
        self._source: Optional[_LineSource] = None
        self._width: Optional[int] = None
        self._row_index = 0
        self._header_read = False
        self._exhausted = False

    @property
    def delimiter(self) -> Optional[str]:
        return self._delimiter

    def _ensure_reader(self) -> None:
        if self._reader is not None:
            return
        first = next(self._lines, None)
        if first is None:
            self._source = _LineSource(iter(()))
            self._reader = iter(())
            return
        if self._delimiter is None:
            self._delimiter = sniff_delimiter(first)
            logger.debug("Delimiter sniffed: %r", self._delimiter)
        self._source = _LineSource(itertools.chain([first], self._lines))
        self._reader = csv.reader(
            self._source,
            delimiter=self._delimiter,
            quotechar='"',
            skipinitialspace=True,
            strict=False,
        )

    def read_header(self) -> List[str]:
        """
        Consume the header row.

        Raises:
            HeaderReadError: Stream is empty or the header cannot be parsed
        """
        if self._header_read:
            raise HeaderReadError("header already consumed")
        self._header_read = True
        self._ensure_reader()
        assert self._reader is not None
        try:
            while True:
                header = next(self._reader)
                if header:
                    self._width = len(header)
                    return [cell.strip() for cell in header]
        except StopIteration:
            self._exhausted = True
            raise HeaderReadError("stream is empty; expected a header row") from None
        except csv.Error as exc:
            raise HeaderReadError(f"header row is malformed: {exc}") from exc

    def __iter__(self) -> Iterator[RawRow]:
        return self

    def __next__(self) -> RawRow:
        if self._exhausted:
            raise StopIteration
        self._ensure_reader()
        assert self._reader is not None and self._source is not None
        while True:
            self._source.taken.clear()
            try:
                fields = next(self._reader)
            except StopIteration:
                self._exhausted = True
                raise
            except csv.Error as exc:
                # csv.reader resets its state and continues on the next line
                self._row_index += 1
                logger.debug(
                    "Malformed row skipped by reader",
                    extra={"row_index": self._row_index},
                )
                return RawRow(
                    row_index=self._row_index,
                    line_number=self._source.line_number,
                    error=f"malformed row: {exc}",
                )
            taken = self._source.taken
            if len(taken) > 1 and self._runaway_quote(fields):
                first_line = self._source.line_number - len(taken) + 1
                self._source.push_back(taken[1:])
                self._row_index += 1
                logger.debug(
                    "Unterminated quote on line %d, re-reading %d lines",
                    first_line,
                    len(taken) - 1,
                    extra={"row_index": self._row_index},
                )
                return RawRow(
                    row_index=self._row_index,
                    line_number=first_line,
                    error=f"unterminated quoted field on line {first_line}",
                )
            if not fields or all(not cell.strip() for cell in fields):
                continue
            self._row_index += 1
            return RawRow(
                row_index=self._row_index,
                line_number=self._source.line_number,
                fields=fields,
            )

    def _runaway_quote(self, fields: List[str]) -> bool:
        """
        Whether a multi-line record came from a quote that was never closed.

        True when the record ran into end of file, has the wrong width, or
        swallowed a line that is a complete row on its own (a later quote
        closed the stray one).
        """
        assert self._source is not None
        if self._source.exhausted:
            return True
        if self._width is None:
            return False
        if len(fields) != self._width:
            return True
        return self._width > 1 and any(
            self._field_count(line) >= self._width for line in self._source.taken[1:]
        )

    def _field_count(self, line: str) -> int:
        parsed = csv.reader([line], delimiter=self._delimiter or ",", strict=False)
        try:
            return len(next(parsed, []))
        except csv.Error:
            return 0


class _LineSource:
    """
    Line iterator for csv.reader that counts physical lines, remembers the
    lines taken for the current record, and accepts lines pushed back.
    """

    def __init__(self, lines: Iterable[str]) -> None:
        self._lines = iter(lines)
        self._pushed: List[str] = []
        self.taken: List[str] = []
        self.line_number = 0
        self.exhausted = False

    def __iter__(self) -> "_LineSource":
        return self

    def __next__(self) -> str:
        if self._pushed:
            line = self._pushed.pop()
        else:
            try:
                line = next(self._lines)
            except StopIteration:
                self.exhausted = True
                raise
        self.line_number += 1
        self.taken.append(line)
        return line

    def push_back(self, lines: List[str]) -> None:
        self._pushed.extend(reversed(lines))
        self.line_number -= len(lines)
        self.exhausted = False
