from dataclasses import dataclass, field
from typing import List, Dict, Any, Iterable, Optional, Tuple
import logging

from feedflow.core.exceptions import CoercionError
from feedflow.domain.imports.schema import EntitySchema, FieldMappingTable
from feedflow.domain.imports.transformers import DEFAULT_REGISTRY, TransformerRegistry

logger = logging.getLogger(__name__)

_UNRESOLVED = object()


def _build_mapping_error(
    *,
    error_type: str,
    message: str,
    column: Optional[str] = None,
    field_name: Optional[str] = None,
    expected_type: Optional[str] = None,
    value: Optional[Any] = None,
    record_number: Optional[int] = None,
    entity_type: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a structured error payload for downstream processing."""
    error_payload: Dict[str, Any] = {
        "type": error_type,
        "message": message
    }
    if entity_type is not None:
        error_payload["entity_type"] = entity_type
    if column is not None:
        error_payload["column"] = column
    if field_name is not None:
        error_payload["field"] = field_name
    if expected_type is not None:
        error_payload["expected_type"] = expected_type
    if record_number is not None:
        error_payload["record_number"] = record_number
    if value is not None:
        if isinstance(value, (int, float, str, bool)):
            error_payload["value"] = value
        else:
            error_payload["value"] = str(value)
    return error_payload


@dataclass
class MappedRecord:
    """Typed field values for one entity, tagged with its entity type and source row."""
    entity_type: str
    values: Dict[str, Any]
    record_number: Optional[int] = None
    complete: bool = True  # False when at least one field failed coercion
    links: Dict[str, Any] = field(default_factory=dict)  # storage-only columns such as product_ref

    def get(self, name: str, default: Any = None) -> Any:
        return self.values.get(name, default)


@dataclass
class MappingStats:
    records_in: int = 0
    records_mapped: int = 0
    records_rejected: int = 0
    records_empty: int = 0
    fields_failed: int = 0
    unmapped_headers: List[str] = field(default_factory=list)


class FieldMapper:
    """
    Translates raw header -> string records into typed records of one entity type.

    Header resolution is cached per instance; the mapping table itself is
    shared and read-only.
    """

    def __init__(self, table: FieldMappingTable, registry: TransformerRegistry = DEFAULT_REGISTRY):
        self.table = table
        self.registry = registry
        self._resolved: Dict[str, Any] = {}

    @property
    def schema(self) -> EntitySchema:
        return self.table.schema

    @property
    def entity_type(self) -> str:
        return self.table.entity_type

    def resolve_header(self, header: str) -> Optional[str]:
        cached = self._resolved.get(header, _UNRESOLVED)
        if cached is _UNRESOLVED:
            cached = self.table.resolve(header)
            self._resolved[header] = cached
        return cached

    def unmapped_headers(self, headers: Iterable[str]) -> List[str]:
        return [header for header in headers if self.resolve_header(header) is None]

    def fill_from_map(
        self,
        raw: Dict[str, Any],
        *,
        record_number: Optional[int] = None,
    ) -> Tuple[MappedRecord, List[Dict[str, Any]]]:
        """
        Map one raw record. Blank values and unknown headers are skipped; a
        field whose value cannot be coerced is left unset and reported.

        Returns:
            Tuple of (mapped_record, coercion_errors). ``mapped_record.complete``
            is the AND of every individual field assignment.
        """
        values: Dict[str, Any] = {}
        errors: List[Dict[str, Any]] = []
        complete = True

        for header, raw_value in raw.items():
            if raw_value is None:
                continue
            if isinstance(raw_value, str) and raw_value.strip() == "":
                continue

            field_name = self.resolve_header(header)
            if field_name is None:
                continue

            spec = self.schema.get_field(field_name)
            try:
                values[field_name] = self.registry.coerce(
                    spec, raw_value, self.table.transformation_for(field_name)
                )
            except CoercionError as exc:
                complete = False
                errors.append(
                    _build_mapping_error(
                        error_type="coercion",
                        message=exc.message,
                        column=header,
                        field_name=field_name,
                        expected_type=exc.target_type,
                        value=raw_value,
                        record_number=record_number,
                        entity_type=self.entity_type,
                    )
                )

        return MappedRecord(self.entity_type, values, record_number, complete), errors

    def validate(self, record: MappedRecord) -> Optional[str]:
        return self.schema.validate(record.values)

    def map_records(
        self,
        raw_records: List[Dict[str, Any]],
        *,
        row_offset: int = 0,
        stats: Optional[MappingStats] = None,
        link_fields: Optional[Iterable[str]] = None,
    ) -> Tuple[List[MappedRecord], List[Dict[str, Any]]]:
        """
        Map and validate a chunk of raw records.

        ``row_offset`` is the number of data records that precede this chunk,
        so reported record numbers stay 1-based across chunks. When
        ``link_fields`` is given, records with values for nothing but those
        fields are dropped without a validation error.

        Returns:
            Tuple of (accepted_records, list_of_all_errors). Records failing
            validation are excluded and reported with type ``validation``.
        """
        accepted: List[MappedRecord] = []
        all_errors: List[Dict[str, Any]] = []
        if link_fields is not None:
            link_fields = frozenset(link_fields)

        for index, raw in enumerate(raw_records, start=1):
            record_number = row_offset + index
            record, errors = self.fill_from_map(raw, record_number=record_number)
            all_errors.extend(errors)
            if stats is not None:
                stats.records_in += 1
                stats.fields_failed += len(errors)

            if link_fields is not None and set(record.values) <= link_fields:
                if stats is not None:
                    stats.records_empty += 1
                continue

            rejection = self.validate(record)
            if rejection:
                all_errors.append(
                    _build_mapping_error(
                        error_type="validation",
                        message=rejection,
                        record_number=record_number,
                        entity_type=self.entity_type,
                    )
                )
                if stats is not None:
                    stats.records_rejected += 1
                continue

            accepted.append(record)
            if stats is not None:
                stats.records_mapped += 1

        if all_errors:
            logger.debug(
                "Mapped %d/%d %s records (%d errors) starting at record %d",
                len(accepted),
                len(raw_records),
                self.entity_type,
                len(all_errors),
                row_offset + 1,
            )
        return accepted, all_errors