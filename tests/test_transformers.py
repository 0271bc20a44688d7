from datetime import date, datetime

import pytest

from feedflow.core.exceptions import CoercionError
from feedflow.domain.imports.schema import FieldSpec, FieldTransformation, FieldType
from feedflow.domain.imports.transformers import DEFAULT_REGISTRY, parse_params


def _spec(field_type, params=""):
    return FieldSpec(name="value", label="Value", column="value", field_type=field_type, params=params)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("19.99", 19.99),
        ("19,99", 19.99),
        ("1 234,50", 1234.5),
        ("1,234.50", 1234.5),
        ("1.234,50", 1234.5),
        ("99 руб.", 99.0),
        ("$12.5", 12.5),
        ("(15)", -15.0),
        (7, 7.0),
    ],
)
def test_number_coercion_accepts_feed_formats(raw, expected):
    assert DEFAULT_REGISTRY.coerce(_spec(FieldType.NUMBER), raw) == pytest.approx(expected)


def test_number_coercion_failure_names_the_field():
    with pytest.raises(CoercionError) as exc_info:
        DEFAULT_REGISTRY.coerce(_spec(FieldType.NUMBER), "call us")

    assert exc_info.value.field == "value"
    assert exc_info.value.target_type == "number"


def test_integer_rejects_fraction_unless_truncating():
    with pytest.raises(CoercionError):
        DEFAULT_REGISTRY.coerce(_spec(FieldType.INTEGER), "3.5")

    assert DEFAULT_REGISTRY.coerce(_spec(FieldType.INTEGER), "3.0") == 3
    assert DEFAULT_REGISTRY.coerce(_spec(FieldType.INTEGER, "truncate=true"), "3.5") == 3


@pytest.mark.parametrize("raw, expected", [("да", True), ("Yes", True), ("0", False), ("нет", False)])
def test_boolean_coercion(raw, expected):
    assert DEFAULT_REGISTRY.coerce(_spec(FieldType.BOOLEAN), raw) is expected


def test_boolean_custom_values():
    spec = _spec(FieldType.BOOLEAN, "trueValue=В наличии|falseValue=Нет в наличии")
    assert DEFAULT_REGISTRY.coerce(spec, "в наличии") is True
    assert DEFAULT_REGISTRY.coerce(spec, "Нет в наличии") is False
    with pytest.raises(CoercionError):
        DEFAULT_REGISTRY.coerce(spec, "yes")


def test_date_and_datetime_coercion():
    assert DEFAULT_REGISTRY.coerce(_spec(FieldType.DATE), "05.03.2024") == date(2024, 3, 5)
    assert DEFAULT_REGISTRY.coerce(_spec(FieldType.DATETIME), "05.03.2024 10:15:00") == datetime(2024, 3, 5, 10, 15)
    assert DEFAULT_REGISTRY.coerce(_spec(FieldType.DATE, "pattern=yyyy/MM/dd"), "2024/03/05") == date(2024, 3, 5)


def test_datetime_to_text_uses_pattern():
    spec = _spec(FieldType.DATETIME, "pattern=yyyy-MM-dd HH:mm")
    assert DEFAULT_REGISTRY.to_text(spec, datetime(2024, 3, 5, 10, 15)) == "2024-03-05 10:15"
    assert DEFAULT_REGISTRY.to_text(_spec(FieldType.DATE), date(2024, 3, 5)) == "05.03.2024"


def test_string_transformer_params():
    spec = _spec(FieldType.STRING, "case=upper|maxLength=3")
    assert DEFAULT_REGISTRY.coerce(spec, "  abcdef ") == "ABC"


def test_enum_override_translates_codes():
    override = FieldTransformation("enum", "mapping=1:В наличии,0:Нет|strict=true")
    spec = _spec(FieldType.STRING)

    assert DEFAULT_REGISTRY.coerce(spec, "1", override) == "В наличии"
    with pytest.raises(CoercionError):
        DEFAULT_REGISTRY.coerce(spec, "7", override)


def test_parse_params():
    assert parse_params("scale=2|strict") == {"scale": "2", "strict": ""}
    assert parse_params(None) == {}


def test_unknown_transformer_is_rejected():
    with pytest.raises(ValueError):
        DEFAULT_REGISTRY.get("currency")
