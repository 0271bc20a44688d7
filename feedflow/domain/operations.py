"""
Durable tracking for import and export operations.

One row in ``file_operations`` per operation. Rows move
PENDING -> PROCESSING -> COMPLETED | FAILED and are frozen once terminal.
Each operation declares named stages that are tracked independently inside
the ``stages`` JSON column.
"""
from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.engine import Connection, Engine

from feedflow.core.exceptions import OperationCancelled, OperationNotFound, OperationStateError, StageFailed
from feedflow.db.models import file_operations
from feedflow.db.session import get_engine
from feedflow.domain.progress import progress_tracker
from feedflow.utils.serialization import dump_json, load_json

logger = logging.getLogger(__name__)


class OperationKind(str, Enum):
    IMPORT = "IMPORT"
    EXPORT = "EXPORT"


class OperationStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (OperationStatus.COMPLETED, OperationStatus.FAILED)


class StageState(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


IMPORT_STAGES = ("read", "process", "finalize")
EXPORT_STAGES = ("fetch", "process", "write")

TERMINAL_STATUSES = (OperationStatus.COMPLETED.value, OperationStatus.FAILED.value)

_COUNTER_COLUMNS = ("saved_records", "updated_records", "skipped_records", "failed_records")


def _initial_stages(names: Iterable[str]) -> Dict[str, Dict[str, Any]]:
    return {name: {"status": StageState.NOT_STARTED.value, "progress": 0, "error": None} for name in names}


def _row_to_operation(row: Any) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "client_id": row["client_id"],
        "kind": row["kind"],
        "status": row["status"],
        "entity_type": row["entity_type"],
        "file_name": row["file_name"],
        "file_type": row["file_type"],
        "file_hash": row["file_hash"],
        "file_size": row["file_size"],
        "field_mapping_id": row["field_mapping_id"],
        "stages": load_json(row["stages"], {}),
        "processed_records": row["processed_records"] or 0,
        "total_records": row["total_records"],
        "processing_progress": row["processing_progress"] or 0,
        "saved_records": row["saved_records"] or 0,
        "updated_records": row["updated_records"] or 0,
        "skipped_records": row["skipped_records"] or 0,
        "failed_records": row["failed_records"] or 0,
        "error_message": row["error_message"],
        "error_samples": load_json(row["error_samples"], []),
        "params": load_json(row["params"], {}),
        "result_path": row["result_path"],
        "started_at": row["started_at"],
        "completed_at": row["completed_at"],
    }


def _fetch_row(conn: Connection, operation_id: str):
    statement = select(file_operations).where(file_operations.c.id == operation_id)
    return conn.execute(statement).mappings().first()


def create_operation(
    *,
    kind: OperationKind,
    entity_type: Optional[str] = None,
    file_name: Optional[str] = None,
    file_type: Optional[str] = None,
    file_hash: Optional[str] = None,
    file_size: Optional[int] = None,
    client_id: Optional[int] = None,
    field_mapping_id: Optional[int] = None,
    stages: Optional[Iterable[str]] = None,
    params: Optional[Dict[str, Any]] = None,
    engine: Optional[Engine] = None,
) -> Dict[str, Any]:
    """Create and persist a new PENDING operation."""
    engine = engine or get_engine()
    kind = OperationKind(kind)
    stage_names = stages if stages is not None else (IMPORT_STAGES if kind is OperationKind.IMPORT else EXPORT_STAGES)
    operation_id = str(uuid.uuid4())

    values = {
        "id": operation_id,
        "client_id": client_id,
        "kind": kind.value,
        "status": OperationStatus.PENDING.value,
        "entity_type": entity_type,
        "file_name": file_name,
        "file_type": file_type,
        "file_hash": file_hash,
        "file_size": file_size,
        "field_mapping_id": field_mapping_id,
        "stages": dump_json(_initial_stages(stage_names)),
        "processed_records": 0,
        "total_records": None,
        "processing_progress": 0,
        "saved_records": 0,
        "updated_records": 0,
        "skipped_records": 0,
        "failed_records": 0,
        "error_samples": dump_json([]),
        "params": dump_json(params or {}),
        "started_at": datetime.now(),
    }

    with engine.begin() as conn:
        conn.execute(file_operations.insert().values(**values))
        row = _fetch_row(conn, operation_id)

    logger.info("Created %s operation %s for '%s'", kind.value, operation_id, file_name)
    return _row_to_operation(row)


def update_operation(
    operation_id: str,
    *,
    status: Optional[OperationStatus] = None,
    processed_records: Optional[int] = None,
    total_records: Optional[int] = None,
    progress: Optional[int] = None,
    counters: Optional[Dict[str, int]] = None,
    error_message: Optional[str] = None,
    error_samples: Optional[List[Dict[str, Any]]] = None,
    stage: Optional[str] = None,
    stage_state: Optional[StageState] = None,
    stage_progress: Optional[int] = None,
    stage_error: Optional[str] = None,
    result_path: Optional[str] = None,
    completed: bool = False,
    engine: Optional[Engine] = None,
) -> Dict[str, Any]:
    """
    Apply a partial update.

    Raises:
        OperationNotFound: unknown id.
        OperationStateError: the operation is already COMPLETED or FAILED.
    """
    engine = engine or get_engine()

    values: Dict[str, Any] = {}
    if status is not None:
        values["status"] = OperationStatus(status).value
    if processed_records is not None:
        values["processed_records"] = processed_records
    if total_records is not None:
        values["total_records"] = total_records
    if progress is not None:
        values["processing_progress"] = max(0, min(100, int(progress)))
    for column, value in (counters or {}).items():
        if column not in _COUNTER_COLUMNS:
            raise ValueError(f"Unknown counter column '{column}'")
        values[column] = value
    if error_message is not None:
        values["error_message"] = error_message
    if error_samples is not None:
        values["error_samples"] = dump_json(error_samples)
    if result_path is not None:
        values["result_path"] = result_path
    if completed:
        values["completed_at"] = datetime.now()

    with engine.begin() as conn:
        row = _fetch_row(conn, operation_id)
        if row is None:
            raise OperationNotFound(operation_id)
        if row["status"] in TERMINAL_STATUSES:
            raise OperationStateError(operation_id, row["status"])

        if stage is not None:
            stages = load_json(row["stages"], {})
            entry = stages.setdefault(stage, _initial_stages([stage])[stage])
            if stage_state is not None:
                entry["status"] = StageState(stage_state).value
                if entry["status"] == StageState.COMPLETED.value:
                    entry["progress"] = 100
            if stage_progress is not None:
                entry["progress"] = max(0, min(100, int(stage_progress)))
            if stage_error is not None:
                entry["error"] = stage_error
            values["stages"] = dump_json(stages)

        if values:
            statement = (
                file_operations.update()
                .where(file_operations.c.id == operation_id)
                .where(file_operations.c.status.notin_(TERMINAL_STATUSES))
                .values(**values)
            )
            result = conn.execute(statement)
            if result.rowcount == 0:
                current = _fetch_row(conn, operation_id)
                raise OperationStateError(operation_id, current["status"] if current else "missing")
        row = _fetch_row(conn, operation_id)

    return _row_to_operation(row)


def set_stage(
    operation_id: str,
    stage: str,
    state: StageState,
    *,
    progress: Optional[int] = None,
    error: Optional[str] = None,
    engine: Optional[Engine] = None,
) -> Dict[str, Any]:
    return update_operation(
        operation_id,
        stage=stage,
        stage_state=state,
        stage_progress=progress,
        stage_error=error,
        engine=engine,
    )


def complete_operation(
    operation_id: str,
    *,
    processed_records: int,
    total_records: int,
    counters: Optional[Dict[str, int]] = None,
    message: Optional[str] = None,
    error_samples: Optional[List[Dict[str, Any]]] = None,
    result_path: Optional[str] = None,
    engine: Optional[Engine] = None,
) -> Dict[str, Any]:
    """Mark an operation COMPLETED. Every declared stage must already be completed."""
    engine = engine or get_engine()
    current = get_operation(operation_id, engine=engine)
    if current is None:
        raise OperationNotFound(operation_id)
    unfinished = [
        name for name, entry in current["stages"].items()
        if entry.get("status") != StageState.COMPLETED.value
    ]
    if unfinished:
        raise OperationStateError(operation_id, f"not ready (unfinished stages: {', '.join(unfinished)})")

    return update_operation(
        operation_id,
        status=OperationStatus.COMPLETED,
        processed_records=processed_records,
        total_records=total_records,
        progress=100,
        counters=counters,
        error_message=message,
        error_samples=error_samples,
        result_path=result_path,
        completed=True,
        engine=engine,
    )


def fail_operation(
    operation_id: str,
    error_message: str,
    *,
    stage: Optional[str] = None,
    processed_records: Optional[int] = None,
    counters: Optional[Dict[str, int]] = None,
    error_samples: Optional[List[Dict[str, Any]]] = None,
    engine: Optional[Engine] = None,
) -> Optional[Dict[str, Any]]:
    """Mark an operation FAILED, recording the failing stage when known."""
    try:
        return update_operation(
            operation_id,
            status=OperationStatus.FAILED,
            processed_records=processed_records,
            counters=counters,
            error_message=error_message,
            error_samples=error_samples,
            stage=stage,
            stage_state=StageState.FAILED if stage else None,
            stage_error=error_message if stage else None,
            completed=True,
            engine=engine,
        )
    except OperationStateError as exc:
        logger.warning("Operation %s already terminal; failure '%s' not recorded (%s)", operation_id, error_message, exc.status)
        return None


def get_operation(operation_id: str, *, engine: Optional[Engine] = None) -> Optional[Dict[str, Any]]:
    engine = engine or get_engine()
    with engine.connect() as conn:
        row = _fetch_row(conn, operation_id)
        return _row_to_operation(row) if row else None


def list_operations(
    *,
    kind: Optional[OperationKind] = None,
    status: Optional[OperationStatus] = None,
    client_id: Optional[int] = None,
    limit: int = 50,
    offset: int = 0,
    engine: Optional[Engine] = None,
) -> Tuple[List[Dict[str, Any]], int]:
    """List operations newest first, optionally filtered."""
    engine = engine or get_engine()

    conditions = []
    if kind is not None:
        conditions.append(file_operations.c.kind == OperationKind(kind).value)
    if status is not None:
        conditions.append(file_operations.c.status == OperationStatus(status).value)
    if client_id is not None:
        conditions.append(file_operations.c.client_id == client_id)

    query = select(file_operations).where(*conditions).order_by(file_operations.c.started_at.desc())
    count_query = select(func.count()).select_from(file_operations).where(*conditions)

    with engine.connect() as conn:
        rows = conn.execute(query.limit(limit).offset(offset)).mappings().all()
        total = conn.execute(count_query).scalar() or 0
    return [_row_to_operation(row) for row in rows], total


def current_stage(operation: Dict[str, Any]) -> Optional[str]:
    for name, entry in operation.get("stages", {}).items():
        if entry.get("status") == StageState.IN_PROGRESS.value:
            return name
    return None


def progress_persister(engine: Optional[Engine] = None, *, stage_progress_for: Iterable[str] = ()):
    """
    Build the durable-write callback used by the progress tracker.

    Stages named in ``stage_progress_for`` also mirror the record percent
    into their own stage progress.
    """
    tracked = frozenset(stage_progress_for)

    def persist(info) -> None:
        update_operation(
            info.operation_id,
            processed_records=info.processed,
            total_records=info.total,
            progress=info.percent,
            stage=info.stage,
            stage_progress=info.percent if info.stage in tracked else None,
            engine=engine,
        )

    return persist


@contextmanager
def tracked_stage(operation_id: str, name: str, *, engine: Optional[Engine] = None) -> Iterator[None]:
    """
    Run one named stage: in_progress on entry, completed on success.

    Unexpected errors are re-raised as :class:`StageFailed`; cancellation and
    already-wrapped stage failures pass through untouched.
    """
    set_stage(operation_id, name, StageState.IN_PROGRESS, progress=0, engine=engine)
    progress_tracker.set_stage(operation_id, name)
    logger.info("Operation %s: stage '%s' started", operation_id, name)
    try:
        yield
    except (OperationCancelled, StageFailed):
        raise
    except Exception as exc:
        raise StageFailed(name, exc) from exc
    set_stage(operation_id, name, StageState.COMPLETED, engine=engine)
    logger.info("Operation %s: stage '%s' completed", operation_id, name)
