"""
Date and time parsing for feed values.

Values are tried against a fixed list of explicit patterns first (the formats
price feeds actually use), then handed to pandas for inference. Day-first vs
month-first ambiguity is resolved per value where the digits allow it and by
``settings.date_default_dayfirst`` otherwise.
"""

import re
import logging
from datetime import date, datetime, time
from typing import Any, List, Optional, Sequence

import pandas as pd

from feedflow.core.config import settings

logger = logging.getLogger(__name__)

FAILED_SAMPLE_LIMIT = 5
SUPPRESSION_NOTICE_EVERY = 100

DATE_PATTERNS_DAYFIRST = ["%d.%m.%Y", "%Y-%m-%d", "%d/%m/%Y", "%m/%d/%Y", "%Y/%m/%d"]
DATE_PATTERNS_MONTHFIRST = ["%d.%m.%Y", "%Y-%m-%d", "%m/%d/%Y", "%d/%m/%Y", "%Y/%m/%d"]

TIME_PATTERNS = ["%H:%M:%S", "%H:%M", "%I:%M:%S %p", "%I:%M %p"]

DATETIME_PATTERNS_DAYFIRST = [
    "%d.%m.%Y %H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%d.%m.%Y %H:%M",
    "%Y-%m-%d %H:%M",
    "%d/%m/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M:%S",
]
DATETIME_PATTERNS_MONTHFIRST = [
    "%d.%m.%Y %H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%d.%m.%Y %H:%M",
    "%Y-%m-%d %H:%M",
    "%m/%d/%Y %H:%M:%S",
    "%d/%m/%Y %H:%M:%S",
]

# Longest tokens first so "yyyy" is not consumed as two "yy".
_JAVA_TOKENS = [
    ("yyyy", "%Y"),
    ("yy", "%y"),
    ("MM", "%m"),
    ("dd", "%d"),
    ("HH", "%H"),
    ("hh", "%I"),
    ("mm", "%M"),
    ("ss", "%S"),
    ("a", "%p"),
]

_failure_stats: dict = {}


def _record_parse_failure(value: Any, context: Optional[str], error: Exception) -> None:
    """
    Collect failure stats and emit limited logs (sampled warnings + periodic summaries).
    """
    key = context or "default"
    stats = _failure_stats.setdefault(key, {"count": 0, "samples": []})
    stats["count"] += 1
    count = stats["count"]

    if len(stats["samples"]) < FAILED_SAMPLE_LIMIT:
        stats["samples"].append(value)
        logger.warning("Failed to parse date%s value '%s': %s", f" ({key})" if context else "", value, error)
        return

    if count == FAILED_SAMPLE_LIMIT + 1 or count % SUPPRESSION_NOTICE_EVERY == 0:
        logger.info(
            "Suppressed additional date parse warnings after %d failures%s; sample values=%s",
            count,
            f" ({key})" if context else "",
            stats["samples"],
        )


def to_strftime_pattern(pattern: str) -> str:
    """Accept either a strftime pattern or a ``dd.MM.yyyy``-style one."""
    if "%" in pattern:
        return pattern
    result = []
    i = 0
    while i < len(pattern):
        for token, directive in _JAVA_TOKENS:
            if pattern.startswith(token, i):
                result.append(directive)
                i += len(token)
                break
        else:
            result.append(pattern[i])
            i += 1
    return "".join(result)


def _prefers_dayfirst(value: str) -> bool:
    numeric_match = re.match(r'^(\d{1,2})[/.-](\d{1,2})[/.-]\d{2,4}', value)
    if not numeric_match:
        return settings.date_default_dayfirst
    first, second = int(numeric_match.group(1)), int(numeric_match.group(2))
    if first > 12 and second <= 12:
        return True
    if second > 12 and first <= 12:
        return False
    return settings.date_default_dayfirst


def _try_patterns(value: str, patterns: Sequence[str]) -> Optional[datetime]:
    for pattern in patterns:
        try:
            return datetime.strptime(value, pattern)
        except ValueError:
            continue
    return None


def _pandas_fallback(value: str, dayfirst: bool) -> datetime:
    parsed = pd.to_datetime(value, dayfirst=dayfirst, errors="raise")
    if parsed.tzinfo is not None:
        parsed = parsed.tz_convert("UTC").tz_localize(None)
    return parsed.to_pydatetime()


def parse_datetime_value(
    value: Any,
    patterns: Optional[List[str]] = None,
    *,
    log_context: Optional[str] = None,
    log_failures: bool = True,
) -> Optional[datetime]:
    """
    Parse a date-time value and return a naive ``datetime``, or None when it cannot be parsed.

    ``patterns`` restricts parsing to the given formats (no inference).
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)

    text_value = str(value).strip()
    if text_value == "":
        return None

    if patterns:
        parsed = _try_patterns(text_value, [to_strftime_pattern(p) for p in patterns])
        if parsed is None and log_failures:
            _record_parse_failure(text_value, log_context, ValueError(f"does not match {patterns}"))
        return parsed

    dayfirst = _prefers_dayfirst(text_value)
    explicit = DATETIME_PATTERNS_DAYFIRST if dayfirst else DATETIME_PATTERNS_MONTHFIRST
    parsed = _try_patterns(text_value, explicit)
    if parsed is None:
        parsed = _try_patterns(text_value, DATE_PATTERNS_DAYFIRST if dayfirst else DATE_PATTERNS_MONTHFIRST)
    if parsed is not None:
        return parsed

    try:
        return _pandas_fallback(text_value, dayfirst)
    except (ValueError, OverflowError, TypeError) as exc:
        if log_failures:
            _record_parse_failure(text_value, log_context, exc)
        return None


def parse_date_value(value: Any, patterns: Optional[List[str]] = None, **kwargs) -> Optional[date]:
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    if patterns is None and value is not None and not isinstance(value, datetime):
        text_value = str(value).strip()
        dayfirst = _prefers_dayfirst(text_value)
        parsed = _try_patterns(text_value, DATE_PATTERNS_DAYFIRST if dayfirst else DATE_PATTERNS_MONTHFIRST)
        if parsed is not None:
            return parsed.date()
    parsed = parse_datetime_value(value, patterns, **kwargs)
    return parsed.date() if parsed is not None else None


def parse_time_value(value: Any, patterns: Optional[List[str]] = None) -> Optional[time]:
    if value is None:
        return None
    if isinstance(value, time):
        return value
    if isinstance(value, datetime):
        return value.time()
    text_value = str(value).strip()
    if not text_value:
        return None
    candidates = [to_strftime_pattern(p) for p in patterns] if patterns else TIME_PATTERNS
    parsed = _try_patterns(text_value.upper() if not patterns else text_value, candidates)
    return parsed.time() if parsed is not None else None
