"""
Import orchestration.

An import is submitted with :func:`start_import`, which validates the upload,
records a PENDING operation and hands the work to the shared worker pool. The
worker runs :func:`run_import` through three stages:

* ``read``: detect the format, open a chunked reader, locate headers, check
  required mapped headers and estimate the row count.
* ``process``: read -> map -> validate -> persist, one chunk at a time, with
  cancellation checked between chunks.
* ``finalize``: flush held relationships, record final counters and dispose
  of the source file.

Row and field errors are aggregated and never abort the import; any stage
failure fails the operation with the stage recorded.
"""
from __future__ import annotations

import logging
import shutil
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, BinaryIO, Dict, List, Optional, Sequence, Set, Union

from sqlalchemy.engine import Engine

from feedflow.core.config import settings
from feedflow.core.exceptions import (
    FileValidationError,
    OperationCancelled,
    OperationNotFound,
    OperationStateError,
    StageFailed,
)
from feedflow.db.models import calculate_file_hash
from feedflow.db.session import get_engine
from feedflow.domain.imports.detector import detect_file_type, detect_source_file
from feedflow.domain.imports.mapper import FieldMapper, MappingStats, _build_mapping_error
from feedflow.domain.imports.mappings import (
    build_mapping_tables,
    get_field_mapping,
    mapping_from_suggestions,
    required_source_fields,
    suggest_mapping,
)
from feedflow.domain.imports.options import FileReadingOptions
from feedflow.domain.imports.persistence import BatchPersistenceEngine, BatchResult, DuplicateStrategy
from feedflow.domain.imports.readers import ChunkedReader, open_reader
from feedflow.domain.imports.relationships import RelationshipHolder
from feedflow.domain.imports.schema import ENTITY_COMBINED, ENTITY_MARKET_DATA, ENTITY_PRODUCT, get_schema, normalize_entity_type
from feedflow.domain.operations import (
    IMPORT_STAGES,
    OperationKind,
    OperationStatus,
    complete_operation,
    create_operation,
    current_stage,
    fail_operation,
    get_operation,
    progress_persister,
    tracked_stage,
    update_operation,
)
from feedflow.domain.progress import cancellation_registry, progress_tracker
from feedflow.domain.worker_pool import WorkerPool, get_worker_pool

logger = logging.getLogger(__name__)

STAGE_READ, STAGE_PROCESS, STAGE_FINALIZE = IMPORT_STAGES


@dataclass
class ImportState:
    """Mutable bookkeeping for one running import."""
    operation_id: str
    stage: Optional[str] = None
    processed: int = 0
    total: Optional[int] = None
    rejected: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    error_count: int = 0
    results: Dict[str, BatchResult] = field(default_factory=dict)
    # External product key -> database id, and keys of products another operation already held.
    product_ids: Dict[str, int] = field(default_factory=dict)
    skipped_product_keys: Set[str] = field(default_factory=set)

    def record_errors(self, errors: Sequence[Dict[str, Any]]) -> None:
        self.error_count += len(errors)
        room = settings.mapping_error_sample_limit - len(self.errors)
        if room > 0:
            self.errors.extend(errors[:room])

    def merge_result(self, result: BatchResult) -> None:
        current = self.results.setdefault(result.entity_type, BatchResult(entity_type=result.entity_type))
        current.merge(result)
        self.record_errors([
            _build_mapping_error(error_type="persistence", message=message, entity_type=result.entity_type)
            for message in result.errors
        ])

    @property
    def row_errors(self) -> int:
        return self.rejected + sum(result.failed for result in self.results.values())

    def counters(self) -> Dict[str, int]:
        return {
            "saved_records": sum(r.saved for r in self.results.values()),
            "updated_records": sum(r.updated for r in self.results.values()),
            "skipped_records": sum(r.skipped for r in self.results.values()),
            "failed_records": self.row_errors,
        }


# -- upload handling -----------------------------------------------------------


def validate_upload(filename: str, size: int, mapping: Optional[Dict[str, Any]] = None) -> str:
    """
    Reject uploads that cannot be imported before any operation is created.

    Returns:
        The normalised file extension.

    Raises:
        UnsupportedFormat: extension outside csv/txt/xls/xlsx.
        FileValidationError: empty or oversized file, inactive or empty mapping.
    """
    extension = detect_file_type(filename)
    if not size:
        raise FileValidationError(f"File '{filename}' is empty")
    max_bytes = settings.upload_max_file_size_mb * 1024 * 1024
    if size > max_bytes:
        raise FileValidationError(
            f"File '{filename}' exceeds the maximum upload size of {settings.upload_max_file_size_mb}MB"
        )
    if mapping is not None:
        if not mapping.get("is_active", True):
            raise FileValidationError(f"Field mapping {mapping.get('id')} is not active")
        if not mapping.get("details"):
            raise FileValidationError(f"Field mapping {mapping.get('id')} has no field details")
    return extension


def check_required_headers(headers: Sequence[str], mapping: Optional[Dict[str, Any]]) -> None:
    """Raise FileValidationError listing required mapped headers absent from ``headers``."""
    present = {header.strip().lower() for header in headers}
    missing = [name for name in required_source_fields(mapping) if name.strip().lower() not in present]
    if missing:
        raise FileValidationError(
            f"Required columns missing from file: {', '.join(missing)}",
            missing_headers=missing,
        )


def store_upload(stream: BinaryIO, filename: str) -> Path:
    """Copy an uploaded stream into ``upload_dir`` under a unique name."""
    upload_dir = Path(settings.upload_dir)
    upload_dir.mkdir(parents=True, exist_ok=True)
    target = upload_dir / f"{uuid.uuid4().hex}_{Path(filename).name}"
    with target.open("wb") as handle:
        shutil.copyfileobj(stream, handle)
    logger.info("Stored upload '%s' at %s (%d bytes)", filename, target, target.stat().st_size)
    return target


def dispose_source(path: Union[str, Path]) -> None:
    """Delete the accepted file, or move it to ``upload_dir/archive`` when archiving is enabled."""
    path = Path(path)
    if not path.exists():
        return
    try:
        if settings.archive_processed_files:
            archive_dir = Path(settings.upload_dir) / "archive"
            archive_dir.mkdir(parents=True, exist_ok=True)
            shutil.move(str(path), str(archive_dir / path.name))
            logger.info("Archived source file %s", path.name)
        else:
            path.unlink()
            logger.debug("Deleted source file %s", path)
    except OSError as exc:
        logger.warning("Unable to dispose of source file %s: %s", path, exc)


# -- submission ----------------------------------------------------------------


def _resolve_mapping(mapping_id: Optional[int], engine: Engine) -> Optional[Dict[str, Any]]:
    if mapping_id is None:
        return None
    mapping = get_field_mapping(mapping_id, engine=engine)
    if mapping is None:
        raise FileValidationError(f"Field mapping {mapping_id} not found")
    return mapping


def start_import(
    path: Union[str, Path],
    *,
    filename: Optional[str] = None,
    entity_type: str,
    mapping_id: Optional[int] = None,
    auto_suggest: bool = False,
    options: Optional[FileReadingOptions] = None,
    engine: Optional[Engine] = None,
    pool: Optional[WorkerPool] = None,
) -> Dict[str, Any]:
    """
    Validate an accepted file, create its operation and queue it.

    Returns the PENDING operation immediately; the import itself runs on the
    worker pool. The file at ``path`` is owned by the operation from here on.
    """
    engine = engine or get_engine()
    pool = pool or get_worker_pool()
    options = options or FileReadingOptions()
    path = Path(path)
    filename = filename or path.name

    try:
        entity_type = normalize_entity_type(entity_type)
        mapping = _resolve_mapping(mapping_id, engine)
        if mapping is not None and mapping["entity_type"] != entity_type:
            raise FileValidationError(
                f"Field mapping {mapping_id} targets '{mapping['entity_type']}', not '{entity_type}'"
            )
        file_type = validate_upload(filename, path.stat().st_size if path.exists() else 0, mapping)
        file_hash = calculate_file_hash(path)
    except Exception:
        dispose_source(path)
        raise

    operation = create_operation(
        kind=OperationKind.IMPORT,
        entity_type=entity_type,
        file_name=filename,
        file_type=file_type,
        file_hash=file_hash,
        file_size=path.stat().st_size,
        client_id=options.client_id,
        field_mapping_id=mapping_id,
        stages=IMPORT_STAGES,
        params={
            "options": options.model_dump(mode="json"),
            "auto_suggest": auto_suggest and mapping is None,
        },
        engine=engine,
    )
    pool.submit(
        operation["id"],
        run_import,
        operation["id"],
        path,
        filename=filename,
        entity_type=entity_type,
        mapping=mapping,
        auto_suggest=auto_suggest,
        options=options,
        engine=engine,
    )
    logger.info("Queued import %s for '%s' (%s)", operation["id"], filename, entity_type)
    return operation


# -- execution -----------------------------------------------------------------


def _build_mappers(
    entity_type: str,
    headers: Sequence[str],
    mapping: Optional[Dict[str, Any]],
    auto_suggest: bool,
) -> Dict[str, FieldMapper]:
    if mapping is None and auto_suggest:
        suggestions = suggest_mapping(headers, entity_type)
        mapping = mapping_from_suggestions(entity_type, suggestions)
        logger.info(
            "Auto-suggested mapping for %s: %s",
            entity_type,
            {s["source_field"]: s["target_field"] for s in suggestions if s["target_field"]},
        )
    tables = build_mapping_tables(entity_type, mapping)
    mappers = {name: FieldMapper(table) for name, table in tables.items()}
    for name, mapper in mappers.items():
        unmapped = mapper.unmapped_headers(headers)
        if unmapped:
            logger.info("Headers not mapped to %s fields: %s", name, unmapped)
    return mappers


def _process_chunk(
    chunk: List[Dict[str, Any]],
    *,
    state: ImportState,
    mappers: Dict[str, FieldMapper],
    persistence: BatchPersistenceEngine,
    strategy: DuplicateStrategy,
    holder: Optional[RelationshipHolder],
    stats: MappingStats,
) -> None:
    row_offset = state.processed
    mapped_rows = set()
    for entity_type, mapper in mappers.items():
        link_fields = None
        if holder is not None and entity_type != ENTITY_PRODUCT:
            link_fields = (holder.key_field,)
        accepted, errors = mapper.map_records(chunk, row_offset=row_offset, stats=stats, link_fields=link_fields)
        mapped_rows.update(record.record_number for record in accepted)
        state.record_errors(errors)

        if holder is not None and entity_type != ENTITY_PRODUCT:
            for record in accepted:
                holder.hold(record)
            continue

        replace_related = get_schema(ENTITY_MARKET_DATA) if holder is not None else None
        result = persistence.save_batch(accepted, mapper.schema, strategy, replace_related=replace_related)
        if entity_type == ENTITY_PRODUCT:
            state.product_ids.update(result.key_ids)
            state.skipped_product_keys.update(result.skipped_keys)
        state.merge_result(result)

    # A source row is a row error only when no entity type accepted it.
    state.rejected += len(chunk) - len(mapped_rows)

    if holder is not None:
        _flush_related(state, holder, persistence)


def _flush_related(state: ImportState, holder: RelationshipHolder, persistence: BatchPersistenceEngine) -> None:
    """Write held market rows linked to their products; rows of skipped products are skipped too."""
    if not len(holder):
        return
    related, excluded = holder.release(state.product_ids, exclude_keys=state.skipped_product_keys)
    if excluded:
        state.merge_result(BatchResult(entity_type=ENTITY_MARKET_DATA, skipped=excluded))
    state.merge_result(persistence.save_batch(related, get_schema(ENTITY_MARKET_DATA), DuplicateStrategy.IGNORE))


def run_import(
    operation_id: str,
    path: Union[str, Path],
    *,
    filename: Optional[str] = None,
    entity_type: str,
    mapping: Optional[Dict[str, Any]] = None,
    auto_suggest: bool = False,
    options: Optional[FileReadingOptions] = None,
    engine: Optional[Engine] = None,
) -> Optional[Dict[str, Any]]:
    """
    Execute a queued import to a terminal status and return the final operation.

    Never raises for pipeline failures; they are recorded on the operation.
    """
    engine = engine or get_engine()
    options = options or FileReadingOptions()
    path = Path(path)
    filename = filename or path.name
    entity_type = normalize_entity_type(entity_type)
    strategy = DuplicateStrategy(options.duplicate_strategy)
    state = ImportState(operation_id=operation_id)
    stats = MappingStats()
    reader: Optional[ChunkedReader] = None

    progress_tracker.start(
        operation_id, persist=progress_persister(engine, stage_progress_for=(STAGE_PROCESS,))
    )
    try:
        cancellation_registry.check(operation_id)

        state.stage = STAGE_READ
        with tracked_stage(operation_id, STAGE_READ, engine=engine):
            source = detect_source_file(path, filename)
            reader = open_reader(source, options)
            update_operation(operation_id, status=OperationStatus.PROCESSING, engine=engine)
            headers = reader.headers()
            check_required_headers(headers, mapping)
            mappers = _build_mappers(entity_type, headers, mapping, auto_suggest)
            stats.unmapped_headers = [
                header for header in headers
                if all(mapper.resolve_header(header) is None for mapper in mappers.values())
            ]
            state.total = reader.estimate_row_count()
            progress_tracker.set_total(operation_id, state.total)
            update_operation(operation_id, total_records=state.total, engine=engine)
            logger.info(
                "Import %s: %s '%s' with %d headers, ~%d rows, strategy %s",
                operation_id, source.format.value, filename, len(headers), state.total, strategy.value,
            )

        state.stage = STAGE_PROCESS
        with tracked_stage(operation_id, STAGE_PROCESS, engine=engine):
            persistence = BatchPersistenceEngine(
                engine,
                batch_size=options.batch_size,
                client_id=options.client_id,
                file_operation_id=operation_id,
            )
            holder = RelationshipHolder() if entity_type == ENTITY_COMBINED else None
            while True:
                cancellation_registry.check(operation_id)
                chunk = reader.read_chunk(options.batch_size)
                if not chunk:
                    break
                _process_chunk(
                    chunk,
                    state=state,
                    mappers=mappers,
                    persistence=persistence,
                    strategy=strategy,
                    holder=holder,
                    stats=stats,
                )
                state.processed += len(chunk)
                info = progress_tracker.update(operation_id, state.processed)
                if info is not None:
                    state.total = info.total

        state.stage = STAGE_FINALIZE
        with tracked_stage(operation_id, STAGE_FINALIZE, engine=engine):
            reader.close()
            if holder is not None:
                _flush_related(state, holder, persistence)
            update_operation(
                operation_id,
                processed_records=state.processed,
                counters=state.counters(),
                error_samples=state.errors,
                engine=engine,
            )
            dispose_source(path)

        message = f"Completed with {state.row_errors} row errors" if state.row_errors else "Completed"
        operation = complete_operation(
            operation_id,
            processed_records=state.processed,
            total_records=state.processed,
            counters=state.counters(),
            message=message if state.row_errors else None,
            error_samples=state.errors,
            engine=engine,
        )
        progress_tracker.finish(operation_id, OperationStatus.COMPLETED.value, message)
        logger.info(
            "Import %s %s: processed=%d %s unmapped=%s",
            operation_id, message.lower(), state.processed, state.counters(), stats.unmapped_headers,
        )
        return operation

    except OperationCancelled as exc:
        logger.info("Import %s cancelled after %d records", operation_id, state.processed)
        return _fail(state, exc.message, engine)
    except StageFailed as exc:
        logger.error("Import %s failed at stage '%s': %s", operation_id, exc.stage, exc.cause)
        return _fail(state, exc.message, engine)
    except Exception as exc:
        logger.exception("Import %s failed unexpectedly", operation_id)
        return _fail(state, f"Import failed: {exc}", engine)
    finally:
        if reader is not None:
            reader.close()
        cancellation_registry.clear(operation_id)
        dispose_source(path)


def _fail(state: ImportState, message: str, engine: Engine) -> Optional[Dict[str, Any]]:
    operation = fail_operation(
        state.operation_id,
        message,
        stage=state.stage,
        processed_records=state.processed,
        counters=state.counters(),
        error_samples=state.errors,
        engine=engine,
    )
    progress_tracker.finish(state.operation_id, OperationStatus.FAILED.value, message)
    return operation


# -- control and status --------------------------------------------------------


def cancel_operation(
    operation_id: str,
    *,
    engine: Optional[Engine] = None,
    pool: Optional[WorkerPool] = None,
) -> Dict[str, Any]:
    """
    Request cancellation. A running operation stops at its next chunk boundary;
    one that no worker owns is failed directly.
    """
    engine = engine or get_engine()
    pool = pool or get_worker_pool()
    operation = get_operation(operation_id, engine=engine)
    if operation is None:
        raise OperationNotFound(operation_id)
    if OperationStatus(operation["status"]).is_terminal:
        raise OperationStateError(operation_id, operation["status"])

    cancellation_registry.request(operation_id)
    if not pool.is_running(operation_id) and progress_tracker.get(operation_id) is None:
        cancellation_registry.clear(operation_id)
        fail_operation(
            operation_id,
            OperationCancelled(operation_id).message,
            stage=current_stage(operation),
            engine=engine,
        )
    return get_status(operation_id, engine=engine)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def get_status(operation_id: str, *, engine: Optional[Engine] = None) -> Dict[str, Any]:
    """
    Status object for one operation.

    In-memory progress, when present, takes precedence over the throttled
    durable values.
    """
    engine = engine or get_engine()
    operation = get_operation(operation_id, engine=engine)
    if operation is None:
        raise OperationNotFound(operation_id)

    processed = operation["processed_records"]
    total = operation["total_records"]
    percent = operation["processing_progress"]
    stage = current_stage(operation)
    eta = None
    rate = None

    live = progress_tracker.get(operation_id)
    if live is not None and not OperationStatus(operation["status"]).is_terminal:
        processed = max(processed, live.processed)
        total = live.total if live.total is not None else total
        percent = live.percent
        stage = live.stage or stage
        eta = live.eta_seconds
        rate = live.records_per_second

    return {
        "operationId": operation["id"],
        "kind": operation["kind"],
        "status": operation["status"],
        "entityType": operation["entity_type"],
        "fileName": operation["file_name"],
        "stage": stage,
        "stagePercent": percent,
        "processedRecords": processed,
        "totalRecords": total,
        "errorMessage": operation["error_message"],
        "startedAt": _iso(operation["started_at"]),
        "completedAt": _iso(operation["completed_at"]),
        "stages": operation["stages"],
        "counters": {
            "saved": operation["saved_records"],
            "updated": operation["updated_records"],
            "skipped": operation["skipped_records"],
            "failed": operation["failed_records"],
        },
        "errors": operation["error_samples"],
        "recordsPerSecond": rate,
        "etaSeconds": eta,
    }
