"""
Declarative field schemas for importable entity types.

Each entity type is described once: its internal field names, the
human-readable labels feeds use as headers, the storage column, the value
type and the minimal validation rule. The schemas and the label tables built
from them are immutable and shared by every import and export.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Callable, Dict, Mapping, Optional, Tuple

ENTITY_PRODUCT = "product"
ENTITY_MARKET_DATA = "market_data"
ENTITY_COMBINED = "combined"

# Legacy entity names that now resolve to the unified market data table.
ENTITY_ALIASES = MappingProxyType({
    "competitor": ENTITY_MARKET_DATA,
    "competitor_data": ENTITY_MARKET_DATA,
    "region": ENTITY_MARKET_DATA,
    "region_data": ENTITY_MARKET_DATA,
    "marketdata": ENTITY_MARKET_DATA,
})


class FieldType(str, Enum):
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    TIME = "time"
    DATETIME = "datetime"
    ENUM = "enum"


@dataclass(frozen=True)
class FieldSpec:
    name: str
    label: str
    column: str
    field_type: FieldType = FieldType.STRING
    required: bool = False
    params: str = ""  # Default transformer params, "key=value|key2=value2"


def _is_blank(value) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


@dataclass(frozen=True)
class EntitySchema:
    entity_type: str
    table: str
    fields: Tuple[FieldSpec, ...]
    key_fields: Tuple[str, ...] = ()
    validator: Optional[Callable[[Mapping[str, object]], Optional[str]]] = None
    _by_name: Mapping[str, FieldSpec] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "_by_name", MappingProxyType({spec.name: spec for spec in self.fields}))

    @property
    def field_names(self) -> Tuple[str, ...]:
        return tuple(spec.name for spec in self.fields)

    def has_field(self, name: str) -> bool:
        return name in self._by_name

    def get_field(self, name: str) -> FieldSpec:
        return self._by_name[name]

    def column_for(self, name: str) -> str:
        return self._by_name[name].column

    def validate(self, record: Mapping[str, object]) -> Optional[str]:
        """Return a rejection message, or None when the record is acceptable."""
        for spec in self.fields:
            if spec.required and _is_blank(record.get(spec.name)):
                return f"Required field '{spec.name}' ({spec.label}) is missing"
        if self.validator is not None:
            return self.validator(record)
        return None


def _validate_product(record: Mapping[str, object]) -> Optional[str]:
    if _is_blank(record.get("productName")):
        return "Product name is missing"
    return None


def _validate_market_data(record: Mapping[str, object]) -> Optional[str]:
    if _is_blank(record.get("region")) and _is_blank(record.get("competitorName")):
        return "Either region or competitor site name must be present"
    return None


def _text(name: str, label: str, column: str) -> FieldSpec:
    return FieldSpec(name=name, label=label, column=column)


PRODUCT_SCHEMA = EntitySchema(
    entity_type=ENTITY_PRODUCT,
    table="products",
    key_fields=("productId",),
    validator=_validate_product,
    fields=(
        _text("productId", "ID товара", "product_id"),
        _text("productName", "Модель", "product_name"),
        _text("productBrand", "Бренд", "product_brand"),
        _text("productBar", "Штрихкод", "product_bar"),
        _text("productDescription", "Описание", "product_description"),
        _text("productUrl", "Ссылка", "product_url"),
        _text("productCategory1", "Категория товара 1", "product_category1"),
        _text("productCategory2", "Категория товара 2", "product_category2"),
        _text("productCategory3", "Категория товара 3", "product_category3"),
        FieldSpec("productPrice", "Цена", "product_price", FieldType.NUMBER),
        _text("productAnalog", "Аналог", "product_analog"),
        _text("productAdditional1", "Дополнительное поле 1", "product_additional1"),
        _text("productAdditional2", "Дополнительное поле 2", "product_additional2"),
        _text("productAdditional3", "Дополнительное поле 3", "product_additional3"),
        _text("productAdditional4", "Дополнительное поле 4", "product_additional4"),
        _text("productAdditional5", "Дополнительное поле 5", "product_additional5"),
    ),
)

MARKET_DATA_SCHEMA = EntitySchema(
    entity_type=ENTITY_MARKET_DATA,
    table="market_data",
    validator=_validate_market_data,
    fields=(
        _text("productId", "ID товара", "product_id"),
        _text("region", "Город", "region"),
        _text("regionAddress", "Адрес", "region_address"),
        _text("competitorName", "Сайт", "competitor_name"),
        _text("competitorPrice", "Цена конкурента", "competitor_price"),
        _text("competitorPromotionalPrice", "Акционная цена", "competitor_promotional_price"),
        _text("competitorTime", "Время", "competitor_time"),
        _text("competitorDate", "Дата", "competitor_date"),
        FieldSpec("competitorLocalDateTime", "Дата:Время", "competitor_local_date_time", FieldType.DATETIME),
        _text("competitorStockStatus", "Статус", "competitor_stock_status"),
        _text("competitorAdditionalPrice", "Дополнительная цена конкурента", "competitor_additional_price"),
        _text("competitorCommentary", "Комментарий", "competitor_commentary"),
        _text("competitorProductName", "Наименование товара конкурента", "competitor_product_name"),
        _text("competitorAdditional", "Дополнительное поле", "competitor_additional"),
        _text("competitorAdditional2", "Дополнительное поле 2", "competitor_additional2"),
        _text("competitorUrl", "Ссылка", "competitor_url"),
        _text("competitorWebCacheUrl", "Скриншот", "competitor_web_cache_url"),
    ),
)

ENTITY_SCHEMAS: Mapping[str, EntitySchema] = MappingProxyType({
    ENTITY_PRODUCT: PRODUCT_SCHEMA,
    ENTITY_MARKET_DATA: MARKET_DATA_SCHEMA,
})

IMPORT_ENTITY_TYPES = (ENTITY_PRODUCT, ENTITY_MARKET_DATA, ENTITY_COMBINED)


def normalize_entity_type(entity_type: str) -> str:
    """Return the canonical entity type name, raising ValueError for unknown ones."""
    normalized = (entity_type or "").strip().lower()
    normalized = ENTITY_ALIASES.get(normalized, normalized)
    if normalized not in IMPORT_ENTITY_TYPES:
        raise ValueError(
            f"Unknown entity type '{entity_type}'. Supported types: {', '.join(IMPORT_ENTITY_TYPES)}"
        )
    return normalized


def get_schema(entity_type: str) -> EntitySchema:
    normalized = normalize_entity_type(entity_type)
    if normalized == ENTITY_COMBINED:
        raise ValueError("The combined entity type has no single schema; use schemas_for()")
    return ENTITY_SCHEMAS[normalized]


def schemas_for(entity_type: str) -> Tuple[EntitySchema, ...]:
    """Schemas populated by one source row, in persistence order."""
    normalized = normalize_entity_type(entity_type)
    if normalized == ENTITY_COMBINED:
        return (PRODUCT_SCHEMA, MARKET_DATA_SCHEMA)
    return (ENTITY_SCHEMAS[normalized],)


@dataclass(frozen=True)
class FieldTransformation:
    transformer: str
    params: str = ""


class FieldMappingTable:
    """
    Read-only association between source headers / labels and internal field names.

    Built from the schema's default labels, optionally extended by a stored
    mapping template (source header -> target field, plus per-field
    transformer overrides). Never mutated after construction.
    """

    def __init__(
        self,
        schema: EntitySchema,
        overrides: Optional[Mapping[str, str]] = None,
        transformations: Optional[Mapping[str, FieldTransformation]] = None,
    ):
        self.schema = schema
        labels: Dict[str, str] = {spec.label: spec.name for spec in schema.fields}
        for header, target in (overrides or {}).items():
            if not schema.has_field(target):
                raise ValueError(f"Field '{target}' does not exist on entity type '{schema.entity_type}'")
            labels[header.strip()] = target
        self._label_to_field = MappingProxyType(labels)
        self._lower_to_field = MappingProxyType(
            {**{name.lower(): name for name in schema.field_names},
             **{label.lower(): target for label, target in labels.items()}}
        )
        self._field_to_label = MappingProxyType({spec.name: spec.label for spec in schema.fields})
        self._transformations = MappingProxyType(dict(transformations or {}))

    @property
    def entity_type(self) -> str:
        return self.schema.entity_type

    @property
    def label_to_field(self) -> Mapping[str, str]:
        return self._label_to_field

    def resolve(self, header: str) -> Optional[str]:
        """Resolve a raw header: exact field name, exact label, then case-insensitive."""
        if header is None:
            return None
        if self.schema.has_field(header):
            return header
        target = self._label_to_field.get(header)
        if target is not None:
            return target
        stripped = header.strip()
        target = self._label_to_field.get(stripped)
        if target is not None:
            return target
        return self._lower_to_field.get(stripped.lower())

    def label_for(self, field_name: str) -> str:
        return self._field_to_label.get(field_name, field_name)

    def transformation_for(self, field_name: str) -> Optional[FieldTransformation]:
        return self._transformations.get(field_name)


_DEFAULT_TABLES: Mapping[str, FieldMappingTable] = MappingProxyType(
    {entity_type: FieldMappingTable(schema) for entity_type, schema in ENTITY_SCHEMAS.items()}
)


def default_mapping_table(entity_type: str) -> FieldMappingTable:
    return _DEFAULT_TABLES[get_schema(entity_type).entity_type]
