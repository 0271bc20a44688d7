"""
String -> typed value coercion (and the reverse, for export).

Transformers are looked up by name in an immutable registry. A field's
declared type picks the default transformer; a stored mapping template may
override the transformer and its parameters per field. Parameters use the
``key=value|key2=value2`` form.
"""
from __future__ import annotations

import logging
import re
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from feedflow.core.exceptions import CoercionError
from feedflow.domain.imports.schema import FieldSpec, FieldTransformation, FieldType
from feedflow.utils.date import parse_date_value, parse_datetime_value, parse_time_value, to_strftime_pattern

logger = logging.getLogger(__name__)

_CURRENCY_PATTERN = re.compile(r"(руб\.?|р\.|₽|\$|€|£|usd|eur|rub)", re.IGNORECASE)
_SPACES_PATTERN = re.compile(r"\s+")

TRUE_VALUES = frozenset({"true", "yes", "y", "1", "on", "+", "да", "д", "истина", "вкл", "включено"})
FALSE_VALUES = frozenset({"false", "no", "n", "0", "off", "-", "нет", "н", "ложь", "выкл", "выключено"})


def parse_params(raw: Optional[str]) -> Dict[str, str]:
    """Parse ``key=value|key2=value2``; a bare token becomes ``{token: ""}``."""
    params: Dict[str, str] = {}
    if not raw:
        return params
    for part in raw.split("|"):
        if not part.strip():
            continue
        key, sep, value = part.partition("=")
        params[key.strip()] = value.strip() if sep else ""
    return params


def _normalize_number_text(value: str) -> str:
    normalized = _CURRENCY_PATTERN.sub("", value)
    normalized = _SPACES_PATTERN.sub("", normalized)
    negative = False
    if normalized.startswith("(") and normalized.endswith(")"):
        negative = True
        normalized = normalized[1:-1]

    if "," in normalized and "." in normalized:
        # The right-most separator is the decimal one.
        if normalized.rfind(",") > normalized.rfind("."):
            normalized = normalized.replace(".", "").replace(",", ".")
        else:
            normalized = normalized.replace(",", "")
    elif "," in normalized:
        normalized = normalized.replace(",", ".")
        if normalized.count(".") > 1:
            head, _, tail = normalized.rpartition(".")
            normalized = head.replace(".", "") + "." + tail

    return f"-{normalized}" if negative else normalized


class ValueTransformer:
    """Base transformer: passthrough for strings."""

    name = "string"

    def transform(self, value: Any, params: Mapping[str, str]) -> Any:
        if value is None:
            return params.get("default") or None
        text_value = str(value)
        if params.get("trim", "true").lower() != "false":
            text_value = text_value.strip()
        if text_value == "" and params.get("default"):
            return params["default"]
        case = params.get("case", "").lower()
        if case == "upper":
            text_value = text_value.upper()
        elif case == "lower":
            text_value = text_value.lower()
        max_length = params.get("maxLength")
        if max_length and max_length.isdigit():
            text_value = text_value[: int(max_length)]
        return text_value

    def to_text(self, value: Any, params: Mapping[str, str]) -> str:
        if value is None:
            return ""
        return str(value)


StringTransformer = ValueTransformer


class NumberTransformer(ValueTransformer):
    name = "number"

    def _to_decimal(self, value: Any) -> Decimal:
        if isinstance(value, bool):
            raise CoercionError(value, self.name)
        if isinstance(value, (int, float, Decimal)):
            return Decimal(str(value))
        normalized = _normalize_number_text(str(value))
        try:
            return Decimal(normalized)
        except InvalidOperation as exc:
            raise CoercionError(value, self.name) from exc

    def transform(self, value: Any, params: Mapping[str, str]) -> Any:
        number = self._to_decimal(value)
        if not number.is_finite():
            raise CoercionError(value, self.name)
        scale = params.get("scale")
        if scale and scale.isdigit():
            number = round(number, int(scale))
        return float(number)

    def to_text(self, value: Any, params: Mapping[str, str]) -> str:
        if value is None:
            return ""
        if isinstance(value, float) and value.is_integer():
            return str(int(value))
        return str(value)


class IntegerTransformer(NumberTransformer):
    name = "integer"

    def transform(self, value: Any, params: Mapping[str, str]) -> Any:
        number = self._to_decimal(value)
        if not number.is_finite():
            raise CoercionError(value, self.name)
        if number != number.to_integral_value() and params.get("truncate", "").lower() != "true":
            raise CoercionError(value, self.name, message=f"Cannot convert '{value}' to integer without losing precision")
        return int(number)


class BooleanTransformer(ValueTransformer):
    name = "boolean"

    def transform(self, value: Any, params: Mapping[str, str]) -> Any:
        if isinstance(value, bool):
            return value
        normalized = str(value).strip().lower()
        true_values = {params["trueValue"].lower()} if params.get("trueValue") else TRUE_VALUES
        false_values = {params["falseValue"].lower()} if params.get("falseValue") else FALSE_VALUES
        if normalized in true_values:
            return True
        if normalized in false_values:
            return False
        raise CoercionError(value, self.name)

    def to_text(self, value: Any, params: Mapping[str, str]) -> str:
        if value is None:
            return ""
        if value:
            return params.get("trueValue", "true")
        return params.get("falseValue", "false")


class DateTimeTransformer(ValueTransformer):
    name = "datetime"
    default_output = "%d.%m.%Y %H:%M:%S"

    def _patterns(self, params: Mapping[str, str]):
        pattern = params.get("pattern") or params.get("format")
        return [pattern] if pattern else None

    def transform(self, value: Any, params: Mapping[str, str]) -> Any:
        parsed = parse_datetime_value(value, self._patterns(params), log_context=self.name)
        if parsed is None:
            raise CoercionError(value, self.name)
        return parsed

    def to_text(self, value: Any, params: Mapping[str, str]) -> str:
        if value is None:
            return ""
        if not isinstance(value, (datetime, date, time)):
            return str(value)
        pattern = params.get("pattern") or params.get("format")
        return value.strftime(to_strftime_pattern(pattern) if pattern else self.default_output)


class DateTransformer(DateTimeTransformer):
    name = "date"
    default_output = "%d.%m.%Y"

    def transform(self, value: Any, params: Mapping[str, str]) -> Any:
        parsed = parse_date_value(value, self._patterns(params), log_context=self.name)
        if parsed is None:
            raise CoercionError(value, self.name)
        return parsed


class TimeTransformer(DateTimeTransformer):
    name = "time"
    default_output = "%H:%M:%S"

    def transform(self, value: Any, params: Mapping[str, str]) -> Any:
        parsed = parse_time_value(value, self._patterns(params))
        if parsed is None:
            raise CoercionError(value, self.name)
        return parsed


class EnumTransformer(ValueTransformer):
    """Translate source codes through ``mapping=src:target,src2:target2``."""

    name = "enum"

    def _mapping(self, params: Mapping[str, str]) -> Dict[str, str]:
        mapping: Dict[str, str] = {}
        for pair in (params.get("mapping") or "").split(","):
            source, sep, target = pair.partition(":")
            if sep and source.strip():
                mapping[source.strip().lower()] = target.strip()
        return mapping

    def transform(self, value: Any, params: Mapping[str, str]) -> Any:
        text_value = str(value).strip()
        mapping = self._mapping(params)
        mapped = mapping.get(text_value.lower())
        if mapped is not None:
            return mapped
        if params.get("default"):
            return params["default"]
        if params.get("strict", "").lower() == "true":
            raise CoercionError(value, self.name, message=f"Value '{value}' is not one of {sorted(mapping)}")
        return text_value


class TransformerRegistry:
    """Immutable name -> transformer registry."""

    TYPE_DEFAULTS = MappingProxyType({
        FieldType.STRING: "string",
        FieldType.INTEGER: "integer",
        FieldType.NUMBER: "number",
        FieldType.BOOLEAN: "boolean",
        FieldType.DATE: "date",
        FieldType.TIME: "time",
        FieldType.DATETIME: "datetime",
        FieldType.ENUM: "enum",
    })

    def __init__(self, transformers=None):
        instances = transformers or (
            ValueTransformer(),
            NumberTransformer(),
            IntegerTransformer(),
            BooleanTransformer(),
            DateTransformer(),
            TimeTransformer(),
            DateTimeTransformer(),
            EnumTransformer(),
        )
        self._transformers = MappingProxyType({t.name: t for t in instances})

    @property
    def names(self):
        return tuple(self._transformers)

    def get(self, name: str) -> ValueTransformer:
        try:
            return self._transformers[name.lower()]
        except KeyError:
            raise ValueError(f"Unknown transformer '{name}'. Available: {', '.join(self._transformers)}") from None

    def _resolve(self, spec: FieldSpec, override: Optional[FieldTransformation]):
        if override is not None and override.transformer:
            return self.get(override.transformer), parse_params(override.params or spec.params)
        return self.get(self.TYPE_DEFAULTS[spec.field_type]), parse_params(spec.params)

    def coerce(self, spec: FieldSpec, value: Any, override: Optional[FieldTransformation] = None) -> Any:
        """Convert ``value`` for ``spec``; raises :class:`CoercionError` tagged with the field name."""
        transformer, params = self._resolve(spec, override)
        try:
            return transformer.transform(value, params)
        except CoercionError as exc:
            exc.field = spec.name
            raise

    def to_text(self, spec: FieldSpec, value: Any, override: Optional[FieldTransformation] = None) -> str:
        transformer, params = self._resolve(spec, override)
        return transformer.to_text(value, params)


DEFAULT_REGISTRY = TransformerRegistry()
