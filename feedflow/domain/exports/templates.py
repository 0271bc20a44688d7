"""
Saved export templates.

A template names the columns of an export (with optional header labels),
the writer options and the export strategy, so a recurring export can be
started by ``template_id`` alone.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence, Union

from sqlalchemy import select
from sqlalchemy.engine import Engine

from feedflow.db.models import export_templates
from feedflow.db.session import get_engine
from feedflow.domain.exports.strategies import get_strategy
from feedflow.domain.imports.options import FileWritingOptions
from feedflow.domain.imports.schema import normalize_entity_type, schemas_for
from feedflow.utils.serialization import dump_json, load_json

logger = logging.getLogger(__name__)

# Column selection is stored in the template's own field list.
_COLUMN_OPTIONS = {"field_order", "header_labels"}


def _normalize_columns(entity_type: str, fields: Sequence[Union[str, Dict[str, Any]]]) -> List[Dict[str, Any]]:
    known = {spec.name for schema in schemas_for(entity_type) for spec in schema.fields}
    columns: List[Dict[str, Any]] = []
    seen = set()
    for item in fields:
        if isinstance(item, str):
            item = {"field": item}
        name = (item.get("field") or "").strip()
        if name not in known:
            raise ValueError(f"Unknown export field '{name}' for entity type '{entity_type}'")
        if name in seen:
            raise ValueError(f"Export field '{name}' is listed twice")
        seen.add(name)
        columns.append({"field": name, "label": (item.get("label") or "").strip() or None})
    return columns


def _row_to_dict(row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "name": row["name"],
        "description": row["description"],
        "client_id": row["client_id"],
        "entity_type": row["entity_type"],
        "strategy": row["strategy"],
        "strategy_params": load_json(row["strategy_params"], {}),
        "fields": load_json(row["fields"], []),
        "options": load_json(row["options"], {}),
        "created_at": row["created_at"],
    }


def create_export_template(
    *,
    name: str,
    entity_type: str,
    fields: Sequence[Union[str, Dict[str, Any]]] = (),
    options: Optional[Union[FileWritingOptions, Dict[str, Any]]] = None,
    strategy: Optional[str] = None,
    strategy_params: Optional[Dict[str, Any]] = None,
    client_id: Optional[int] = None,
    description: Optional[str] = None,
    engine: Optional[Engine] = None,
) -> Dict[str, Any]:
    """
    Validate and store an export template.

    ``fields`` lists field names or ``{"field": ..., "label": ...}`` dicts in
    output order; an empty list exports every field of the entity type.
    Column order and labels inside ``options`` are ignored in favour of
    ``fields``.
    """
    engine = engine or get_engine()
    if not (name or "").strip():
        raise ValueError("Export template name must not be empty")
    entity_type = normalize_entity_type(entity_type)
    columns = _normalize_columns(entity_type, fields)
    if not isinstance(options, FileWritingOptions):
        options = FileWritingOptions.from_params(options)
    strategy_id = get_strategy(strategy).strategy_id

    with engine.begin() as conn:
        result = conn.execute(
            export_templates.insert().values(
                name=name.strip(),
                description=description,
                client_id=client_id,
                entity_type=entity_type,
                strategy=strategy_id,
                strategy_params=dump_json(strategy_params or {}),
                fields=dump_json(columns),
                options=dump_json(options.model_dump(mode="json", exclude=_COLUMN_OPTIONS)),
            )
        )
        template_id = result.inserted_primary_key[0]

    logger.info("Created export template %s '%s' (%s, %d columns)", template_id, name, entity_type, len(columns))
    return get_export_template(template_id, engine=engine)


def get_export_template(template_id: int, *, engine: Optional[Engine] = None) -> Optional[Dict[str, Any]]:
    engine = engine or get_engine()
    with engine.connect() as conn:
        row = conn.execute(
            select(export_templates).where(export_templates.c.id == template_id)
        ).mappings().first()
    return _row_to_dict(row) if row is not None else None


def list_export_templates(
    *,
    entity_type: Optional[str] = None,
    client_id: Optional[int] = None,
    engine: Optional[Engine] = None,
) -> List[Dict[str, Any]]:
    """Templates in creation order, optionally narrowed to one entity type and client."""
    engine = engine or get_engine()
    query = select(export_templates).order_by(export_templates.c.id)
    if entity_type:
        query = query.where(export_templates.c.entity_type == normalize_entity_type(entity_type))
    if client_id is not None:
        query = query.where(export_templates.c.client_id == client_id)
    with engine.connect() as conn:
        rows = conn.execute(query).mappings().all()
    return [_row_to_dict(row) for row in rows]


def delete_export_template(template_id: int, *, engine: Optional[Engine] = None) -> bool:
    engine = engine or get_engine()
    with engine.begin() as conn:
        result = conn.execute(export_templates.delete().where(export_templates.c.id == template_id))
    return result.rowcount > 0
