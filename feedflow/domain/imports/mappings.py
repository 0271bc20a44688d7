"""
Stored field-mapping templates and header-based mapping suggestions.
"""
from __future__ import annotations

import logging
from difflib import get_close_matches
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.engine import Engine

from feedflow.db.models import field_mapping_details, field_mappings
from feedflow.db.session import get_engine
from feedflow.domain.imports.schema import (
    FieldMappingTable,
    FieldTransformation,
    default_mapping_table,
    normalize_entity_type,
    schemas_for,
)
from feedflow.domain.imports.transformers import DEFAULT_REGISTRY

logger = logging.getLogger(__name__)

CLOSE_MATCH_CUTOFF = 0.8


def _split_target(target: str) -> tuple:
    """``"product.productName"`` -> ("product", "productName"); bare names have no entity."""
    entity, sep, field_name = target.partition(".")
    if sep:
        return entity.strip().lower(), field_name.strip()
    return None, target.strip()


def _validate_details(entity_type: str, details: Sequence[Dict[str, Any]]) -> None:
    schemas = schemas_for(entity_type)
    for detail in details:
        source = (detail.get("source_field") or "").strip()
        target = (detail.get("target_field") or "").strip()
        if not source or not target:
            raise ValueError("Mapping details need both source_field and target_field")
        target_entity, field_name = _split_target(target)
        candidates = [s for s in schemas if target_entity in (None, s.entity_type)]
        if not any(schema.has_field(field_name) for schema in candidates):
            raise ValueError(f"Unknown target field '{target}' for entity type '{entity_type}'")
        transformer = detail.get("transformation_type")
        if transformer:
            DEFAULT_REGISTRY.get(transformer)


def create_field_mapping(
    *,
    name: str,
    entity_type: str,
    details: Sequence[Dict[str, Any]],
    client_id: Optional[int] = None,
    is_active: bool = True,
    engine: Optional[Engine] = None,
) -> Dict[str, Any]:
    """Persist a mapping template with its details and return it."""
    engine = engine or get_engine()
    entity_type = normalize_entity_type(entity_type)
    _validate_details(entity_type, details)

    with engine.begin() as conn:
        result = conn.execute(
            field_mappings.insert().values(
                name=name,
                entity_type=entity_type,
                client_id=client_id,
                is_active=is_active,
            )
        )
        mapping_id = result.inserted_primary_key[0]
        rows = [
            {
                "field_mapping_id": mapping_id,
                "source_field": detail["source_field"].strip(),
                "target_field": detail["target_field"].strip(),
                "required": bool(detail.get("required", False)),
                "transformation_type": detail.get("transformation_type"),
                "transformation_params": detail.get("transformation_params"),
                "order_index": index if detail.get("order_index") is None else detail["order_index"],
            }
            for index, detail in enumerate(details)
        ]
        if rows:
            conn.execute(field_mapping_details.insert(), rows)

    logger.info("Created field mapping %s '%s' (%s, %d details)", mapping_id, name, entity_type, len(details))
    return get_field_mapping(mapping_id, engine=engine)


def get_field_mapping(mapping_id: int, *, engine: Optional[Engine] = None) -> Optional[Dict[str, Any]]:
    engine = engine or get_engine()
    with engine.connect() as conn:
        mapping = conn.execute(
            select(field_mappings).where(field_mappings.c.id == mapping_id)
        ).mappings().first()
        if mapping is None:
            return None
        details = conn.execute(
            select(field_mapping_details)
            .where(field_mapping_details.c.field_mapping_id == mapping_id)
            .order_by(field_mapping_details.c.order_index, field_mapping_details.c.id)
        ).mappings().all()

    return {
        "id": mapping["id"],
        "name": mapping["name"],
        "entity_type": mapping["entity_type"],
        "client_id": mapping["client_id"],
        "is_active": bool(mapping["is_active"]),
        "created_at": mapping["created_at"],
        "details": [
            {
                "source_field": detail["source_field"],
                "target_field": detail["target_field"],
                "required": bool(detail["required"]),
                "transformation_type": detail["transformation_type"],
                "transformation_params": detail["transformation_params"],
                "order_index": detail["order_index"],
            }
            for detail in details
        ],
    }


def set_field_mapping_active(mapping_id: int, is_active: bool, *, engine: Optional[Engine] = None) -> bool:
    engine = engine or get_engine()
    with engine.begin() as conn:
        result = conn.execute(
            field_mappings.update().where(field_mappings.c.id == mapping_id).values(is_active=is_active)
        )
    return result.rowcount > 0


def build_mapping_tables(entity_type: str, mapping: Optional[Dict[str, Any]] = None) -> Dict[str, FieldMappingTable]:
    """
    Build one read-only FieldMappingTable per schema populated by ``entity_type``.

    Without a template the schema's default labels are used.
    """
    tables: Dict[str, FieldMappingTable] = {}
    details = (mapping or {}).get("details") or []
    for schema in schemas_for(entity_type):
        if not details:
            tables[schema.entity_type] = default_mapping_table(schema.entity_type)
            continue
        overrides: Dict[str, str] = {}
        transformations: Dict[str, FieldTransformation] = {}
        for detail in details:
            target_entity, field_name = _split_target(detail["target_field"])
            if target_entity not in (None, schema.entity_type) or not schema.has_field(field_name):
                continue
            overrides[detail["source_field"]] = field_name
            if detail.get("transformation_type"):
                transformations[field_name] = FieldTransformation(
                    detail["transformation_type"], detail.get("transformation_params") or ""
                )
        tables[schema.entity_type] = FieldMappingTable(schema, overrides, transformations)
    return tables


def required_source_fields(mapping: Optional[Dict[str, Any]]) -> List[str]:
    if not mapping:
        return []
    return [detail["source_field"] for detail in mapping.get("details", []) if detail.get("required")]


def suggest_mapping(headers: Sequence[str], entity_type: str) -> List[Dict[str, Any]]:
    """
    Propose ``header -> field`` pairs for ``entity_type``.

    Exact field names and labels (case-insensitive) are taken as-is; other
    headers fall back to the closest label or field name above a similarity
    cutoff. Headers with no plausible match are returned with ``target_field``
    set to None.
    """
    suggestions: List[Dict[str, Any]] = []
    schemas = schemas_for(entity_type)
    for header in headers:
        suggestion: Dict[str, Any] = {"source_field": header, "target_field": None, "entity_type": None, "match": None}
        for schema in schemas:
            table = default_mapping_table(schema.entity_type)
            resolved = table.resolve(header)
            if resolved is not None:
                suggestion.update(target_field=resolved, entity_type=schema.entity_type, match="exact")
                break
        else:
            for schema in schemas:
                table = default_mapping_table(schema.entity_type)
                candidates = {label.lower(): target for label, target in table.label_to_field.items()}
                candidates.update({name.lower(): name for name in schema.field_names})
                close = get_close_matches(header.strip().lower(), list(candidates), n=1, cutoff=CLOSE_MATCH_CUTOFF)
                if close:
                    suggestion.update(target_field=candidates[close[0]], entity_type=schema.entity_type, match="close")
                    break
        suggestions.append(suggestion)
    return suggestions


def mapping_from_suggestions(entity_type: str, suggestions: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    """Turn accepted suggestions into an unsaved template usable by ``build_mapping_tables``."""
    multi_schema = len(schemas_for(entity_type)) > 1
    details = []
    for index, suggestion in enumerate(suggestions):
        if not suggestion.get("target_field"):
            continue
        target = suggestion["target_field"]
        if multi_schema and suggestion.get("entity_type"):
            target = f"{suggestion['entity_type']}.{target}"
        details.append({
            "source_field": suggestion["source_field"],
            "target_field": target,
            "required": False,
            "transformation_type": None,
            "transformation_params": None,
            "order_index": index,
        })
    return {"id": None, "name": "auto-suggested", "entity_type": entity_type, "is_active": True, "details": details}
