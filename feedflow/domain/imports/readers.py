"""
Streaming readers producing ordered header -> value records.

Each reader is single-pass: it locates the header row once, then hands out
rows in file order through ``read_chunk``. ``has_more_rows`` answers from a
one-row prefetch buffer so it never consumes data.
"""
from __future__ import annotations

import csv
import logging
import os
from abc import ABC, abstractmethod
from datetime import date, datetime, time
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Sequence

import openpyxl
import xlrd

from feedflow.core.config import settings
from feedflow.core.exceptions import DetectionError, MissingHeaders
from feedflow.domain.imports.detector import SourceFile, SourceFormat
from feedflow.domain.imports.options import FileReadingOptions

logger = logging.getLogger(__name__)

RawRecord = Dict[str, str]

BOM = "\ufeff"


class ReaderState(str, Enum):
    CREATED = "created"
    READING = "reading"
    EXHAUSTED = "exhausted"


def _is_blank_row(values: Sequence[Any]) -> bool:
    for value in values:
        if value is None:
            continue
        if isinstance(value, str) and value.strip() == "":
            continue
        return False
    return True


class ChunkedReader(ABC):
    """Uniform streaming interface over delimited-text and spreadsheet sources."""

    def __init__(self, source: SourceFile, options: Optional[FileReadingOptions] = None):
        self.source = source
        self.options = options or FileReadingOptions()
        self.state = ReaderState.CREATED
        self._rows: Optional[Iterator[List[Any]]] = None
        self._headers: Optional[List[str]] = None
        self._next_row: Optional[List[Any]] = None
        self._row_index = -1  # zero-based index of the last physical row pulled
        self._header_index = -1
        self._position = 0
        self._skip_empty = self.options.should_skip_empty_rows(source.format.is_spreadsheet)

    # -- format specific hooks -------------------------------------------------

    @abstractmethod
    def _open_rows(self) -> Iterator[List[Any]]:
        """Return an iterator over physical rows as lists of cell values."""

    @abstractmethod
    def _estimate_physical_rows(self) -> int:
        """Estimate the total number of physical rows in the source."""

    def _cell_to_text(self, value: Any) -> str:
        if value is None:
            return ""
        return str(value)

    def close(self) -> None:
        self._rows = None

    # -- public contract -------------------------------------------------------

    def __enter__(self) -> "ChunkedReader":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def current_position(self) -> int:
        """Number of data records handed out so far."""
        return self._position

    def headers(self) -> List[str]:
        if self._headers is None:
            self._headers = self._read_headers()
            self.state = ReaderState.READING
        return list(self._headers)

    def has_more_rows(self) -> bool:
        self.headers()
        if self._next_row is not None:
            return True
        self._next_row = self._pull_data_row()
        if self._next_row is None:
            self.state = ReaderState.EXHAUSTED
            return False
        return True

    def read_chunk(self, size: int) -> List[RawRecord]:
        """Return up to ``size`` records; fewer only when the input is exhausted."""
        headers = self.headers()
        chunk: List[RawRecord] = []
        while len(chunk) < size and self.has_more_rows():
            row = self._next_row
            self._next_row = None
            chunk.append(self._row_to_record(headers, row))
        self._position += len(chunk)
        return chunk

    def estimate_row_count(self) -> int:
        """Estimated number of data records (header excluded)."""
        physical = self._estimate_physical_rows()
        return max(0, physical - max(self.options.first_data_row, self._header_index + 1))

    # -- shared machinery ------------------------------------------------------

    def _physical_rows(self) -> Iterator[List[Any]]:
        if self._rows is None:
            self._rows = self._open_rows()
        return self._rows

    def _pull_physical_row(self) -> Optional[List[Any]]:
        row = next(self._physical_rows(), None)
        if row is not None:
            self._row_index += 1
        return row

    def _read_headers(self) -> List[str]:
        explicit_header_row = "header_row" in self.options.model_fields_set
        header_values: Optional[List[Any]] = None

        if not self.options.has_header:
            first = self._pull_physical_row()
            if first is None:
                return []
            self._next_row = first
            return [f"col_{i}" for i in range(len(first))]

        if explicit_header_row:
            while self._row_index < self.options.header_row:
                header_values = self._pull_physical_row()
                if header_values is None:
                    raise MissingHeaders(self.options.header_row + 1)
        else:
            lookahead = settings.header_lookahead_rows
            while self._row_index + 1 < lookahead:
                candidate = self._pull_physical_row()
                if candidate is None:
                    break
                if not _is_blank_row(candidate):
                    header_values = candidate
                    break
            if header_values is None:
                raise MissingHeaders(lookahead)

        self._header_index = self._row_index
        headers = [self._cell_to_text(value).strip() for value in header_values]
        if headers and headers[0].startswith(BOM):
            headers[0] = headers[0].lstrip(BOM)
        while headers and headers[-1] == "":
            headers.pop()
        if not headers:
            raise MissingHeaders(self._row_index + 1)

        logger.info("Read %d headers from '%s': %s", len(headers), self.source.filename, headers)
        return headers

    def _pull_data_row(self) -> Optional[List[Any]]:
        first_data_row = max(self.options.first_data_row, self._header_index + 1)
        while True:
            row = self._pull_physical_row()
            if row is None:
                return None
            if self._row_index < first_data_row:
                continue
            if self._skip_empty and _is_blank_row(row):
                continue
            return row

    def _row_to_record(self, headers: List[str], row: List[Any]) -> RawRecord:
        record: RawRecord = {}
        trim = self.options.trim_whitespace
        for index, header in enumerate(headers):
            value = self._cell_to_text(row[index]) if index < len(row) else ""
            record[header] = value.strip() if trim else value
        return record


class DelimitedTextReader(ChunkedReader):
    """CSV/TXT reader built on :mod:`csv` over a decoded text stream."""

    def __init__(self, source: SourceFile, options: Optional[FileReadingOptions] = None):
        super().__init__(source, options)
        self.delimiter = self.options.resolved_delimiter(source)
        self.charset = self.options.resolved_charset(source)
        self.quote_char = self.options.resolved_quote_char()
        self._handle = open(source.path, "r", encoding=self.charset, errors="replace", newline="")

    def _open_rows(self) -> Iterator[List[Any]]:
        reader_kwargs = {"delimiter": self.delimiter, "quotechar": self.quote_char}
        if self.options.escape_char:
            reader_kwargs["escapechar"] = self.options.escape_char
        return iter(csv.reader(self._handle, **reader_kwargs))

    def _estimate_physical_rows(self) -> int:
        sample_lines = settings.delimiter_sample_lines
        total_bytes = 0
        lines = 0
        with open(self.source.path, "rb") as handle:
            for raw_line in handle:
                total_bytes += len(raw_line)
                lines += 1
                if lines >= sample_lines:
                    break
        if lines == 0:
            return 0
        if lines < sample_lines:
            # The whole file fit in the sample.
            return lines
        average = total_bytes / lines
        return max(lines, int(round(self.source.size / average)))

    def close(self) -> None:
        super().close()
        if self._handle is not None and not self._handle.closed:
            self._handle.close()


class SpreadsheetReader(ChunkedReader):
    """Shared cell formatting for workbook readers."""

    def _cell_to_text(self, value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, float):
            if value.is_integer():
                return "%.0f" % value
            return repr(value)
        if isinstance(value, datetime):
            if value.time() == time(0, 0):
                return value.strftime("%d.%m.%Y")
            return value.strftime("%d.%m.%Y %H:%M:%S")
        if isinstance(value, date):
            return value.strftime("%d.%m.%Y")
        if isinstance(value, time):
            return value.strftime("%H:%M:%S")
        return str(value)


class XlsxReader(SpreadsheetReader):
    """Modern workbooks via openpyxl's read-only streaming mode."""

    def __init__(self, source: SourceFile, options: Optional[FileReadingOptions] = None):
        super().__init__(source, options)
        try:
            self._workbook = openpyxl.load_workbook(source.path, read_only=True, data_only=True)
        except (OSError, KeyError, ValueError) as exc:
            raise DetectionError(f"Unable to open workbook '{source.filename}': {exc}") from exc
        self._sheet = self._select_sheet()

    def _select_sheet(self):
        names = self._workbook.sheetnames
        if self.options.sheet_name:
            if self.options.sheet_name not in names:
                self._workbook.close()
                raise DetectionError(f"Sheet '{self.options.sheet_name}' not found in '{self.source.filename}'")
            return self._workbook[self.options.sheet_name]
        if self.options.sheet_index >= len(names):
            self._workbook.close()
            raise DetectionError(f"Sheet index {self.options.sheet_index} out of range for '{self.source.filename}'")
        return self._workbook[names[self.options.sheet_index]]

    def _open_rows(self) -> Iterator[List[Any]]:
        return (list(row) for row in self._sheet.iter_rows(values_only=True))

    def _estimate_physical_rows(self) -> int:
        max_row = self._sheet.max_row
        if max_row is None:
            # Sheet without a stored dimension; count with a separate iterator.
            max_row = sum(1 for _ in self._sheet.iter_rows(values_only=True))
        return max_row

    def close(self) -> None:
        super().close()
        self._workbook.close()


class XlsReader(SpreadsheetReader):
    """Legacy OLE2 workbooks via xlrd."""

    def __init__(self, source: SourceFile, options: Optional[FileReadingOptions] = None):
        super().__init__(source, options)
        try:
            self._book = xlrd.open_workbook(str(source.path), on_demand=True)
        except xlrd.XLRDError as exc:
            raise DetectionError(f"Unable to open workbook '{source.filename}': {exc}") from exc
        try:
            if self.options.sheet_name:
                self._sheet = self._book.sheet_by_name(self.options.sheet_name)
            else:
                self._sheet = self._book.sheet_by_index(self.options.sheet_index)
        except xlrd.XLRDError as exc:
            self._book.release_resources()
            raise DetectionError(f"Sheet '{self.options.sheet_name}' not found in '{source.filename}'") from exc
        except IndexError as exc:
            self._book.release_resources()
            raise DetectionError(
                f"Sheet index {self.options.sheet_index} out of range for '{source.filename}'"
            ) from exc

    def _convert_cell(self, cell) -> Any:
        if cell.ctype == xlrd.XL_CELL_DATE:
            return xlrd.xldate.xldate_as_datetime(cell.value, self._book.datemode)
        if cell.ctype == xlrd.XL_CELL_BOOLEAN:
            return bool(cell.value)
        if cell.ctype in (xlrd.XL_CELL_EMPTY, xlrd.XL_CELL_BLANK, xlrd.XL_CELL_ERROR):
            return None
        return cell.value

    def _open_rows(self) -> Iterator[List[Any]]:
        for row_index in range(self._sheet.nrows):
            yield [self._convert_cell(cell) for cell in self._sheet.row(row_index)]

    def _estimate_physical_rows(self) -> int:
        return self._sheet.nrows

    def close(self) -> None:
        super().close()
        self._book.release_resources()


def open_reader(source: SourceFile, options: Optional[FileReadingOptions] = None) -> ChunkedReader:
    """Construct the reader matching the detected format; the source is opened immediately."""
    if not os.path.exists(source.path):
        raise FileNotFoundError(f"Source file not found: {source.path}")
    if source.format is SourceFormat.DELIMITED_TEXT:
        return DelimitedTextReader(source, options)
    if source.format is SourceFormat.SPREADSHEET_XML:
        return XlsxReader(source, options)
    return XlsReader(source, options)
