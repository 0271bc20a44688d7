"""
Export orchestration: fetch -> process -> write.

Exports run on the same worker pool, progress tracker and cancellation
registry as imports. Rows are streamed from the entity tables in
partitions of ``batch_size``; each partition goes through the export
strategy and straight into a CSV or XLSX writer in ``export_dir``, so
no stage holds the full result in memory.

* ``fetch``: count the matching rows, open the writer and the cursor.
* ``process``: filter and write each partition, reporting progress.
* ``write``: finish the file (header of an empty export, workbook save).
"""
from __future__ import annotations

import logging
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field, field_validator
from sqlalchemy import func, select
from sqlalchemy.engine import Connection, Engine

from feedflow.core.config import settings
from feedflow.core.exceptions import OperationCancelled, OperationNotFound, OperationStateError, StageFailed
from feedflow.db.models import market_data, products
from feedflow.db.session import get_engine
from feedflow.domain.exports.strategies import OPERATION_ID_FIELD, get_strategy
from feedflow.domain.exports.templates import get_export_template
from feedflow.domain.exports.writers import MEDIA_TYPES, FormatWriter, open_writer
from feedflow.domain.imports.options import FileWritingOptions
from feedflow.domain.imports.schema import (
    ENTITY_COMBINED,
    ENTITY_PRODUCT,
    FieldSpec,
    normalize_entity_type,
    schemas_for,
)
from feedflow.domain.imports.transformers import DEFAULT_REGISTRY
from feedflow.domain.operations import (
    EXPORT_STAGES,
    OperationKind,
    OperationStatus,
    complete_operation,
    create_operation,
    fail_operation,
    get_operation,
    progress_persister,
    tracked_stage,
    update_operation,
)
from feedflow.domain.progress import cancellation_registry, progress_tracker
from feedflow.domain.worker_pool import WorkerPool, get_worker_pool

logger = logging.getLogger(__name__)

STAGE_FETCH, STAGE_PROCESS, STAGE_WRITE = EXPORT_STAGES


class ExportParameters(BaseModel):
    """What to export and how to write it."""

    entity_type: str = ENTITY_PRODUCT
    strategy: str = "simple"
    strategy_params: Dict[str, Any] = Field(default_factory=dict)
    operation_ids: List[str] = Field(default_factory=list)
    client_id: Optional[int] = None
    template_id: Optional[int] = None
    options: FileWritingOptions = Field(default_factory=FileWritingOptions)

    @field_validator("entity_type", mode="before")
    @classmethod
    def _normalize_entity(cls, value: Any) -> str:
        return normalize_entity_type(value or ENTITY_PRODUCT)

    @field_validator("strategy", mode="before")
    @classmethod
    def _known_strategy(cls, value: Any) -> str:
        return get_strategy(value).strategy_id


def export_fields(entity_type: str) -> Dict[str, FieldSpec]:
    """Ordered field name -> spec for every exportable field of ``entity_type``."""
    specs: Dict[str, FieldSpec] = {}
    for schema in schemas_for(entity_type):
        for spec in schema.fields:
            specs.setdefault(spec.name, spec)
    return specs


def resolve_columns(entity_type: str, options: FileWritingOptions) -> Tuple[List[str], Dict[str, str]]:
    """
    Field order and header labels for an export.

    Default headers are the schema labels; a label shared by two selected
    fields falls back to the field names so the header stays unambiguous.
    """
    specs = export_fields(entity_type)
    if options.field_order:
        unknown = [name for name in options.field_order if name not in specs]
        if unknown:
            raise ValueError(f"Unknown export fields for '{entity_type}': {', '.join(unknown)}")
        fields = list(options.field_order)
    else:
        fields = list(specs)

    label_counts: Dict[str, int] = {}
    for name in fields:
        label_counts[specs[name].label] = label_counts.get(specs[name].label, 0) + 1

    labels = {}
    for name in fields:
        label = specs[name].label
        labels[name] = options.header_labels.get(name) or (label if label_counts[label] == 1 else name)
    return fields, labels


def _value_formatter(specs: Dict[str, FieldSpec], options: FileWritingOptions):
    def format_value(name: str, value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, datetime):
            return value.strftime(options.datetime_format)
        if isinstance(value, date):
            return value.strftime(options.date_format)
        spec = specs.get(name)
        if spec is None:
            return str(value)
        return DEFAULT_REGISTRY.to_text(spec, value)
    return format_value


def _build_query(params: ExportParameters):
    if params.entity_type == ENTITY_COMBINED:
        product_schema, market_schema = schemas_for(ENTITY_COMBINED)
        columns = [products.c[spec.column].label(spec.name) for spec in product_schema.fields]
        columns += [
            market_data.c[spec.column].label(spec.name)
            for spec in market_schema.fields
            if not product_schema.has_field(spec.name)
        ]
        columns.append(products.c.file_operation_id.label(OPERATION_ID_FIELD))
        base_table = products
        query = select(*columns).select_from(
            products.outerjoin(market_data, market_data.c.product_ref == products.c.id)
        ).order_by(products.c.id, market_data.c.id)
    else:
        schema = schemas_for(params.entity_type)[0]
        base_table = products if schema.table == products.name else market_data
        columns = [base_table.c[spec.column].label(spec.name) for spec in schema.fields]
        columns.append(base_table.c.file_operation_id.label(OPERATION_ID_FIELD))
        query = select(*columns).order_by(base_table.c.id)

    if params.client_id is not None:
        query = query.where(base_table.c.client_id == params.client_id)
    if params.operation_ids:
        query = query.where(base_table.c.file_operation_id.in_(params.operation_ids))
    return query.limit(settings.export_row_limit)


def count_records(conn: Connection, params: ExportParameters) -> int:
    """Rows the export query yields, capped by ``export_row_limit``."""
    query = _build_query(params).subquery()
    return conn.execute(select(func.count()).select_from(query)).scalar_one()


def stream_partitions(conn: Connection, params: ExportParameters) -> Iterator[Sequence[Any]]:
    """Execute the export query on a streaming cursor and return its partitions."""
    result = conn.execution_options(stream_results=True).execute(_build_query(params)).mappings()
    return result.partitions(params.options.batch_size)


def apply_template(params: ExportParameters, *, engine: Optional[Engine] = None) -> ExportParameters:
    """
    Fill ``params`` from its saved export template.

    The template supplies the entity type, the column selection with labels,
    the writer options and the strategy. Anything set explicitly on the
    request wins over the template.
    """
    if params.template_id is None:
        return params
    template = get_export_template(params.template_id, engine=engine)
    if template is None:
        raise ValueError(f"Export template {params.template_id} not found")
    if "entity_type" in params.model_fields_set and params.entity_type != template["entity_type"]:
        raise ValueError(
            f"Export template {params.template_id} exports '{template['entity_type']}', not '{params.entity_type}'"
        )

    option_values = dict(template["options"])
    option_values["field_order"] = [column["field"] for column in template["fields"]]
    option_values["header_labels"] = {
        column["field"]: column["label"] for column in template["fields"] if column.get("label")
    }
    option_values.update(params.options.model_dump(include=params.options.model_fields_set))

    update: Dict[str, Any] = {
        "entity_type": template["entity_type"],
        "options": FileWritingOptions(**option_values),
    }
    if "strategy" not in params.model_fields_set:
        update["strategy"] = template["strategy"]
        update["strategy_params"] = {**template["strategy_params"], **params.strategy_params}
    logger.debug("Applied export template %s to export of %s", params.template_id, template["entity_type"])
    return params.model_copy(update=update)


def export_path(operation_id: str, params: ExportParameters) -> Path:
    return Path(settings.export_dir) / f"{params.entity_type}_{operation_id}.{params.options.extension}"


def start_export(
    params: ExportParameters,
    *,
    engine: Optional[Engine] = None,
    pool: Optional[WorkerPool] = None,
) -> Dict[str, Any]:
    """Validate ``params``, create a PENDING export operation and queue it."""
    engine = engine or get_engine()
    pool = pool or get_worker_pool()
    params = apply_template(params, engine=engine)
    resolve_columns(params.entity_type, params.options)

    operation = create_operation(
        kind=OperationKind.EXPORT,
        entity_type=params.entity_type,
        file_type=params.options.file_type,
        client_id=params.client_id,
        stages=EXPORT_STAGES,
        params=params.model_dump(mode="json"),
        engine=engine,
    )
    pool.submit(operation["id"], run_export, operation["id"], params, engine=engine)
    logger.info("Queued %s export %s (%s)", params.options.file_type, operation["id"], params.entity_type)
    return operation


def run_export(
    operation_id: str,
    params: ExportParameters,
    *,
    engine: Optional[Engine] = None,
) -> Optional[Dict[str, Any]]:
    """
    Execute a queued export to a terminal status and return the final operation.

    ``params`` must already have its template applied, as done by :func:`start_export`.
    """
    engine = engine or get_engine()
    options = params.options
    specs = export_fields(params.entity_type)
    fields, labels = resolve_columns(params.entity_type, options)
    strategy = get_strategy(params.strategy)
    path = export_path(operation_id, params)
    writer: Optional[FormatWriter] = None
    stage: Optional[str] = None
    fetched = 0
    written = 0

    progress_tracker.start(operation_id, persist=progress_persister(engine, stage_progress_for=(STAGE_PROCESS,)))
    try:
        cancellation_registry.check(operation_id)

        with engine.connect() as conn:
            stage = STAGE_FETCH
            with tracked_stage(operation_id, STAGE_FETCH, engine=engine):
                update_operation(operation_id, status=OperationStatus.PROCESSING, engine=engine)
                total = count_records(conn, params)
                progress_tracker.set_total(operation_id, total)
                update_operation(operation_id, total_records=total, engine=engine)
                writer = open_writer(path, fields, labels, options, _value_formatter(specs, options))
                partitions = stream_partitions(conn, params)
                logger.info("Exporting up to %d %s rows for %s", total, params.entity_type, operation_id)

            stage = STAGE_PROCESS
            with tracked_stage(operation_id, STAGE_PROCESS, engine=engine):
                for partition in partitions:
                    cancellation_registry.check(operation_id)
                    records = [dict(row) for row in partition]
                    fetched += len(records)
                    written += writer.write_rows(strategy.process(records, fields, params.strategy_params))
                    progress_tracker.update(operation_id, fetched)

        stage = STAGE_WRITE
        with tracked_stage(operation_id, STAGE_WRITE, engine=engine):
            writer.write_header()
            writer.close()

        operation = complete_operation(
            operation_id,
            processed_records=fetched,
            total_records=fetched,
            counters={"saved_records": written, "skipped_records": fetched - written},
            result_path=str(path),
            engine=engine,
        )
        progress_tracker.finish(operation_id, OperationStatus.COMPLETED.value, "Completed")
        logger.info("Export %s completed: %d of %d rows written to %s", operation_id, written, fetched, path)
        return operation

    except OperationCancelled as exc:
        logger.info("Export %s cancelled after %d rows", operation_id, written)
        message = exc.message
    except StageFailed as exc:
        logger.error("Export %s failed at stage '%s': %s", operation_id, exc.stage, exc.cause)
        message = exc.message
    except Exception as exc:
        logger.exception("Export %s failed unexpectedly", operation_id)
        message = f"Export failed: {exc}"
    finally:
        cancellation_registry.clear(operation_id)

    if writer is not None:
        writer.close()
    path.unlink(missing_ok=True)
    operation = fail_operation(operation_id, message, stage=stage, processed_records=fetched, engine=engine)
    progress_tracker.finish(operation_id, OperationStatus.FAILED.value, message)
    return operation


def get_export_file(operation_id: str, *, engine: Optional[Engine] = None) -> Tuple[Path, str, str]:
    """
    Locate a finished export.

    Returns:
        Tuple of (path, media_type, download_filename).
    """
    engine = engine or get_engine()
    operation = get_operation(operation_id, engine=engine)
    if operation is None or operation["kind"] != OperationKind.EXPORT.value:
        raise OperationNotFound(operation_id)
    if operation["status"] != OperationStatus.COMPLETED.value or not operation["result_path"]:
        raise OperationStateError(operation_id, operation["status"])
    path = Path(operation["result_path"])
    if not path.exists():
        raise OperationNotFound(operation_id)
    file_type = operation["file_type"] or path.suffix.lstrip(".")
    started = operation["started_at"] or datetime.now()
    download_name = f"{operation['entity_type']}_export_{started:%Y%m%d_%H%M%S}.{file_type}"
    return path, MEDIA_TYPES.get(file_type, "application/octet-stream"), download_name
