"""
Format writers for exported records.

Writers receive typed record dicts (field name -> value) in a fixed field
order and write them as they arrive. CSV output is text produced by a value
formatter; XLSX output keeps numbers and dates as native cell values.
"""
import csv
import logging
from abc import ABC, abstractmethod
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from openpyxl import Workbook
from openpyxl.cell import WriteOnlyCell
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

from feedflow.domain.imports.options import FileWritingOptions

logger = logging.getLogger(__name__)

ValueFormatter = Callable[[str, Any], str]

MEDIA_TYPES = {
    "csv": "text/csv",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}

HEADER_FONT = Font(bold=True)
HEADER_FILL = PatternFill(start_color="D9D9D9", end_color="D9D9D9", fill_type="solid")
THIN_SIDE = Side(style="thin")
HEADER_BORDER = Border(left=THIN_SIDE, right=THIN_SIDE, top=THIN_SIDE, bottom=THIN_SIDE)
HEADER_ALIGNMENT = Alignment(horizontal="center", vertical="center")
MAX_COLUMN_WIDTH = 60


def _default_formatter(field_name: str, value: Any) -> str:
    return "" if value is None else str(value)


class FormatWriter(ABC):
    """Writes a header (optional) followed by rows to ``path``."""

    def __init__(
        self,
        path: Path,
        fields: Sequence[str],
        labels: Optional[Dict[str, str]] = None,
        options: Optional[FileWritingOptions] = None,
        formatter: Optional[ValueFormatter] = None,
    ):
        self.path = Path(path)
        self.fields = list(fields)
        self.labels = labels or {}
        self.options = options or FileWritingOptions()
        self.formatter = formatter or _default_formatter
        self.rows_written = 0
        self._header_written = False

    @property
    def header(self) -> List[str]:
        return [self.labels.get(name, name) for name in self.fields]

    def write_header(self) -> None:
        if self._header_written or not self.options.include_header:
            return
        self._write_header_row(self.header)
        self._header_written = True

    def write_rows(self, rows: Iterable[Dict[str, Any]]) -> int:
        self.write_header()
        count = 0
        for row in rows:
            self._write_row(row)
            count += 1
        self.rows_written += count
        return count

    @abstractmethod
    def _write_header_row(self, header: List[str]) -> None:
        ...

    @abstractmethod
    def _write_row(self, row: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def close(self) -> None:
        ...

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class CsvFormatWriter(FormatWriter):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        encoding = self.options.charset
        if self.options.write_bom and encoding.lower().replace("-", "") == "utf8":
            encoding = "utf-8-sig"
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._handle = self.path.open("w", encoding=encoding, errors="replace", newline="")
        self._writer = csv.writer(
            self._handle,
            delimiter=self.options.delimiter,
            quotechar=self.options.quote_char or '"',
            quoting=csv.QUOTE_MINIMAL,
        )

    def _write_header_row(self, header: List[str]) -> None:
        self._writer.writerow(header)

    def _write_row(self, row: Dict[str, Any]) -> None:
        self._writer.writerow([self.formatter(name, row.get(name)) for name in self.fields])

    def close(self) -> None:
        if not self._handle.closed:
            self._handle.close()


class XlsxFormatWriter(FormatWriter):
    """
    Single-sheet write-only workbook with a bold grey bordered header row.

    Rows are streamed to the sheet as they arrive. Column widths have to be
    fixed before the first row is written, so they are sized from the header
    and the first batch of rows.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._workbook = Workbook(write_only=True)
        self._sheet = self._workbook.create_sheet((self.options.sheet_name or "Data")[:31])
        self._started = False
        self._closed = False

    @staticmethod
    def _text_width(value: Any) -> int:
        if isinstance(value, datetime):
            return len("00.00.0000 00:00:00")
        if isinstance(value, date):
            return len("00.00.0000")
        if value is None:
            return 0
        return max((len(line) for line in str(value).splitlines()), default=0)

    def _start(self, rows: List[Dict[str, Any]]) -> None:
        self._started = True
        if not self.options.auto_size_columns:
            return
        for index, name in enumerate(self.fields):
            width = len(self.header[index]) if self.options.include_header else 0
            for row in rows:
                width = max(width, self._text_width(self._cell_value(name, row.get(name))))
            self._sheet.column_dimensions[get_column_letter(index + 1)].width = min(width + 2, MAX_COLUMN_WIDTH)

    def write_header(self) -> None:
        if not self._started:
            self._start([])
        super().write_header()

    def write_rows(self, rows: Iterable[Dict[str, Any]]) -> int:
        rows = list(rows)
        if not rows:
            return 0
        if not self._started:
            self._start(rows)
        return super().write_rows(rows)

    def _write_header_row(self, header: List[str]) -> None:
        cells = []
        for label in header:
            cell = WriteOnlyCell(self._sheet, value=label)
            cell.font = HEADER_FONT
            cell.fill = HEADER_FILL
            cell.border = HEADER_BORDER
            cell.alignment = HEADER_ALIGNMENT
            cells.append(cell)
        self._sheet.append(cells)

    def _cell_value(self, name: str, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, bool):
            return self.formatter(name, value)
        if isinstance(value, (int, float, datetime, date)):
            return value
        return self.formatter(name, value)

    def _write_row(self, row: Dict[str, Any]) -> None:
        cells = []
        for name in self.fields:
            value = self._cell_value(name, row.get(name))
            if isinstance(value, datetime):
                cell = WriteOnlyCell(self._sheet, value=value)
                cell.number_format = "dd.mm.yyyy hh:mm:ss"
                value = cell
            elif isinstance(value, date):
                cell = WriteOnlyCell(self._sheet, value=value)
                cell.number_format = "dd.mm.yyyy"
                value = cell
            cells.append(value)
        self._sheet.append(cells)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._workbook.save(self.path)
        self._workbook.close()
        logger.debug("Saved workbook %s (%d rows)", self.path, self.rows_written)


def open_writer(
    path: Path,
    fields: Sequence[str],
    labels: Optional[Dict[str, str]] = None,
    options: Optional[FileWritingOptions] = None,
    formatter: Optional[ValueFormatter] = None,
) -> FormatWriter:
    options = options or FileWritingOptions()
    writer_cls = XlsxFormatWriter if options.file_type == "xlsx" else CsvFormatWriter
    return writer_cls(path, fields, labels, options, formatter)
