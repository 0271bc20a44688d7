import json
from enum import Enum
from pathlib import PurePath
from typing import Any, Optional
from decimal import Decimal
from datetime import datetime, date, time


def make_json_safe(value: Any) -> Any:
    """
    Convert typed record values, enums and paths into JSON-serialisable
    structures for the operation's params/stages/error-sample columns.
    """
    if isinstance(value, dict):
        return {str(key): make_json_safe(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [make_json_safe(item) for item in value]
    if isinstance(value, Enum):
        return make_json_safe(value.value)
    if isinstance(value, Decimal):
        # Keep integers as ints, otherwise convert to string to avoid precision loss
        if value == value.to_integral():
            return int(value)
        return str(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, PurePath):
        return str(value)
    if isinstance(value, bytes):
        return value.decode(errors="ignore")
    if isinstance(value, (int, float, str, bool)) or value is None:
        return value
    return str(value)


def dump_json(value: Any) -> str:
    return json.dumps(make_json_safe(value), ensure_ascii=False)


def load_json(raw: Optional[str], default: Any = None) -> Any:
    if raw is None or raw == "":
        return default
    if isinstance(raw, (dict, list)):
        return raw
    return json.loads(raw)
