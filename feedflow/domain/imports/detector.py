"""
Container format, character encoding and delimiter detection for uploaded files.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Union

import chardet

from feedflow.core.config import settings
from feedflow.core.exceptions import DetectionError, UnsupportedFormat

logger = logging.getLogger(__name__)

OLE2_SIGNATURE = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"
ZIP_SIGNATURE = b"PK\x03\x04"
UTF8_BOM = b"\xef\xbb\xbf"

DEFAULT_CHARSET = "utf-8"
DEFAULT_DELIMITER = ","
CANDIDATE_DELIMITERS = (",", ";", "\t")
MIN_CHARSET_CONFIDENCE = 0.5

TEXT_EXTENSIONS = {"csv", "txt"}
SPREADSHEET_EXTENSIONS = {"xls", "xlsx"}
SUPPORTED_EXTENSIONS = TEXT_EXTENSIONS | SPREADSHEET_EXTENSIONS


class SourceFormat(str, Enum):
    DELIMITED_TEXT = "delimited_text"
    SPREADSHEET_BINARY = "spreadsheet_binary"  # legacy .xls (OLE2 container)
    SPREADSHEET_XML = "spreadsheet_xml"  # .xlsx (zipped XML)

    @property
    def is_spreadsheet(self) -> bool:
        return self is not SourceFormat.DELIMITED_TEXT


@dataclass(frozen=True)
class SourceFile:
    """An accepted upload after detection. Immutable for the operation's lifetime."""
    path: Path
    filename: str
    format: SourceFormat
    size: int
    charset: Optional[str] = None
    delimiter: Optional[str] = None

    @property
    def extension(self) -> str:
        return file_extension(self.filename)


def file_extension(filename: str) -> str:
    _, ext = os.path.splitext(filename or "")
    return ext.lstrip(".").lower()


def detect_file_type(filename: str) -> str:
    """Return the normalized extension, raising ``UnsupportedFormat`` for anything else."""
    ext = file_extension(filename)
    if ext not in SUPPORTED_EXTENSIONS:
        raise UnsupportedFormat(filename, ext or None)
    return ext


def detect_charset(sample: bytes) -> str:
    """Guess the text encoding of ``sample``; UTF-8 when the detector is not confident."""
    if not sample:
        return DEFAULT_CHARSET
    if sample.startswith(UTF8_BOM):
        return "utf-8-sig"

    result = chardet.detect(sample)
    encoding = (result.get("encoding") or "").lower()
    confidence = result.get("confidence") or 0.0

    if not encoding or confidence < MIN_CHARSET_CONFIDENCE:
        logger.debug("Charset detection inconclusive (%s, %.2f); assuming UTF-8", encoding or None, confidence)
        return DEFAULT_CHARSET
    if encoding == "ascii":
        return DEFAULT_CHARSET
    return encoding


def detect_delimiter(line: str) -> str:
    """
    Pick the delimiter by raw occurrence counts in ``line``.

    The most frequent of comma, semicolon and tab wins; ties and lines with
    none of them fall back to comma.
    """
    if not line:
        return DEFAULT_DELIMITER
    counts = {candidate: line.count(candidate) for candidate in CANDIDATE_DELIMITERS}
    best = max(counts.values())
    if best == 0:
        return DEFAULT_DELIMITER
    winners = [candidate for candidate, count in counts.items() if count == best]
    if len(winners) > 1:
        return DEFAULT_DELIMITER
    return winners[0]


def first_non_empty_line(sample: bytes, charset: str) -> str:
    text_sample = sample.decode(charset, errors="replace").lstrip("\ufeff")
    for line in text_sample.splitlines():
        if line.strip():
            return line
    return ""


def sniff_spreadsheet_format(head: bytes, extension: str, filename: str) -> SourceFormat:
    """Use the container signature to tell legacy binary from zipped XML workbooks."""
    if head.startswith(OLE2_SIGNATURE):
        if extension == "xlsx":
            logger.info("File '%s' has .xlsx extension but an OLE2 signature; reading as legacy .xls", filename)
        return SourceFormat.SPREADSHEET_BINARY
    if head.startswith(ZIP_SIGNATURE):
        if extension == "xls":
            logger.info("File '%s' has .xls extension but a ZIP signature; reading as .xlsx", filename)
        return SourceFormat.SPREADSHEET_XML
    raise DetectionError(f"File '{filename}' is not a valid spreadsheet (unrecognised container signature)")


def detect_source_file(path: Union[str, Path], filename: Optional[str] = None) -> SourceFile:
    """
    Inspect a stored file and describe how it should be read.

    Args:
        path: Location of the stored upload.
        filename: Declared (original) filename; defaults to the path's name.

    Raises:
        UnsupportedFormat: extension outside csv/txt/xls/xlsx.
        DetectionError: spreadsheet with an unrecognised container signature.
        OSError: the file cannot be read.
    """
    path = Path(path)
    declared_name = filename or path.name
    extension = detect_file_type(declared_name)
    size = path.stat().st_size

    with open(path, "rb") as handle:
        sample = handle.read(settings.charset_sample_bytes)

    if extension in SPREADSHEET_EXTENSIONS:
        source_format = sniff_spreadsheet_format(sample[:8], extension, declared_name)
        detected = SourceFile(path=path, filename=declared_name, format=source_format, size=size)
    else:
        charset = detect_charset(sample)
        delimiter = detect_delimiter(first_non_empty_line(sample, charset))
        detected = SourceFile(
            path=path,
            filename=declared_name,
            format=SourceFormat.DELIMITED_TEXT,
            size=size,
            charset=charset,
            delimiter=delimiter,
        )

    logger.info(
        "Detected '%s': format=%s charset=%s delimiter=%r size=%d",
        declared_name,
        detected.format.value,
        detected.charset,
        detected.delimiter,
        size,
    )
    return detected
