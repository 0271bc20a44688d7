"""
Reading and writing options recognised by the pipelines.

Options arrive either as JSON payloads or as flat form dictionaries whose keys
look like ``params[delimiter]``; both shapes end up as the pydantic models below.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from feedflow.core.config import settings
from feedflow.domain.imports.detector import DEFAULT_CHARSET, DEFAULT_DELIMITER, SourceFile
from feedflow.domain.imports.persistence import DuplicateStrategy

logger = logging.getLogger(__name__)

AUTO = "auto"

_PARAM_KEY_PATTERN = re.compile(r"^params\[(.+)\]$")
_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")

_DELIMITER_ALIASES = {"\\t": "\t", "tab": "\t", "TAB": "\t"}


def clean_param_key(key: str) -> str:
    """Normalize ``params[headerRow]`` / ``headerRow`` / ``header_row`` to ``header_row``."""
    match = _PARAM_KEY_PATTERN.match(key.strip())
    if match:
        key = match.group(1)
    return _CAMEL_BOUNDARY.sub("_", key).lower()


def _normalize_params(params: Dict[str, Any]) -> Dict[str, Any]:
    normalized: Dict[str, Any] = {}
    for key, value in (params or {}).items():
        if value is None or (isinstance(value, str) and value.strip() == ""):
            continue
        normalized[clean_param_key(key)] = value
    return normalized


def _split_known(model: type, params: Dict[str, Any]):
    known = {}
    extra = {}
    for key, value in params.items():
        if key in model.model_fields:
            known[key] = value
        else:
            extra[key] = value
    return known, extra


class FileReadingOptions(BaseModel):
    """How a source file is read and how its rows are persisted."""
    model_config = ConfigDict(validate_assignment=True)

    header_row: int = Field(0, ge=0)
    data_start_row: Optional[int] = None  # Defaults to header_row + 1
    has_header: bool = True
    skip_empty_rows: Optional[bool] = None  # None: spreadsheets skip, delimited text keeps
    trim_whitespace: bool = True
    batch_size: int = Field(default_factory=lambda: settings.import_batch_size)
    delimiter: str = AUTO
    quote_char: str = '"'
    escape_char: Optional[str] = None
    charset: str = AUTO
    sheet_name: Optional[str] = None
    sheet_index: int = Field(0, ge=0)
    duplicate_strategy: DuplicateStrategy = DuplicateStrategy.SKIP
    client_id: Optional[int] = None
    additional_params: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("batch_size", mode="before")
    @classmethod
    def _clamp_batch_size(cls, value: Any) -> int:
        try:
            size = int(value)
        except (TypeError, ValueError):
            return settings.import_batch_size
        return max(1, min(size, settings.import_batch_size_max))

    @field_validator("delimiter", mode="before")
    @classmethod
    def _normalize_delimiter(cls, value: Any) -> str:
        if value is None:
            return AUTO
        value = str(value)
        return _DELIMITER_ALIASES.get(value, value)

    @field_validator("duplicate_strategy", mode="before")
    @classmethod
    def _normalize_strategy(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @property
    def first_data_row(self) -> int:
        if self.data_start_row is not None:
            return self.data_start_row
        return self.header_row + 1 if self.has_header else self.header_row

    def resolved_delimiter(self, source: Optional[SourceFile] = None) -> str:
        if self.delimiter and self.delimiter != AUTO:
            return self.delimiter
        if source is not None and source.delimiter:
            return source.delimiter
        return DEFAULT_DELIMITER

    def resolved_charset(self, source: Optional[SourceFile] = None) -> str:
        if self.charset and self.charset.lower() != AUTO:
            return self.charset
        if source is not None and source.charset:
            return source.charset
        return DEFAULT_CHARSET

    def resolved_quote_char(self) -> str:
        if not self.quote_char or self.quote_char == AUTO:
            return '"'
        return self.quote_char

    def should_skip_empty_rows(self, is_spreadsheet: bool) -> bool:
        if self.skip_empty_rows is None:
            return is_spreadsheet
        return self.skip_empty_rows

    @classmethod
    def from_params(cls, params: Optional[Dict[str, Any]]) -> "FileReadingOptions":
        """Build options from a flat form/query dictionary; unknown keys go to ``additional_params``."""
        known, extra = _split_known(cls, _normalize_params(params or {}))
        if extra:
            logger.debug("Unrecognised reading params kept as additional params: %s", sorted(extra))
        known.setdefault("additional_params", {}).update(extra)
        return cls(**known)


class FileWritingOptions(BaseModel):
    """How exported records are written."""

    file_type: str = "csv"
    include_header: bool = True
    batch_size: int = Field(default_factory=lambda: settings.import_batch_size)
    delimiter: str = ","
    quote_char: str = '"'
    charset: str = "utf-8"
    write_bom: bool = False  # Lets Excel open UTF-8 CSV files with Cyrillic headers
    sheet_name: str = "Data"
    auto_size_columns: bool = True
    field_order: List[str] = Field(default_factory=list)
    header_labels: Dict[str, str] = Field(default_factory=dict)
    date_format: str = "%d.%m.%Y"
    datetime_format: str = "%d.%m.%Y %H:%M:%S"

    @field_validator("file_type", mode="before")
    @classmethod
    def _normalize_file_type(cls, value: Any) -> str:
        normalized = str(value or "csv").strip().lower().lstrip(".")
        if normalized in ("excel", "xls"):
            normalized = "xlsx"
        if normalized not in ("csv", "xlsx"):
            raise ValueError(f"Unsupported export format '{value}'. Supported formats: csv, xlsx.")
        return normalized

    @field_validator("delimiter", mode="before")
    @classmethod
    def _normalize_delimiter(cls, value: Any) -> str:
        value = str(value or ",")
        return _DELIMITER_ALIASES.get(value, value)

    @field_validator("batch_size", mode="before")
    @classmethod
    def _clamp_batch_size(cls, value: Any) -> int:
        try:
            size = int(value)
        except (TypeError, ValueError):
            return settings.import_batch_size
        return max(1, min(size, settings.import_batch_size_max))

    @property
    def extension(self) -> str:
        return self.file_type

    @classmethod
    def from_params(cls, params: Optional[Dict[str, Any]]) -> "FileWritingOptions":
        known, _ = _split_known(cls, _normalize_params(params or {}))
        return cls(**known)
