"""
Tests for durable operation tracking and stage bookkeeping.
"""
import pytest

from feedflow.core.exceptions import OperationCancelled, OperationNotFound, OperationStateError, StageFailed
from feedflow.domain.operations import (
    EXPORT_STAGES,
    IMPORT_STAGES,
    OperationKind,
    OperationStatus,
    StageState,
    complete_operation,
    create_operation,
    current_stage,
    fail_operation,
    get_operation,
    list_operations,
    progress_persister,
    set_stage,
    tracked_stage,
    update_operation,
)
from feedflow.domain.progress import ProgressInfo


def _new_import(engine, **kwargs):
    return create_operation(kind=OperationKind.IMPORT, entity_type="product", file_name="feed.csv", engine=engine, **kwargs)


def test_create_operation_starts_pending_with_declared_stages(engine):
    operation = _new_import(engine)

    assert operation["status"] == OperationStatus.PENDING.value
    assert list(operation["stages"]) == list(IMPORT_STAGES)
    assert all(stage["status"] == StageState.NOT_STARTED.value for stage in operation["stages"].values())
    assert operation["processed_records"] == 0
    assert operation["started_at"] is not None

    export = create_operation(kind=OperationKind.EXPORT, engine=engine)
    assert list(export["stages"]) == list(EXPORT_STAGES)


def test_complete_requires_every_stage_completed(engine):
    operation = _new_import(engine)
    set_stage(operation["id"], "read", StageState.COMPLETED, engine=engine)

    with pytest.raises(OperationStateError):
        complete_operation(operation["id"], processed_records=0, total_records=0, engine=engine)

    for name in ("process", "finalize"):
        set_stage(operation["id"], name, StageState.COMPLETED, engine=engine)
    completed = complete_operation(
        operation["id"],
        processed_records=3,
        total_records=3,
        counters={"saved_records": 3},
        engine=engine,
    )

    assert completed["status"] == OperationStatus.COMPLETED.value
    assert completed["processing_progress"] == 100
    assert completed["saved_records"] == 3
    assert completed["completed_at"] is not None


def test_terminal_operations_are_frozen(engine):
    operation = _new_import(engine)
    failed = fail_operation(operation["id"], "boom", stage="read", engine=engine)

    assert failed["status"] == OperationStatus.FAILED.value
    assert failed["stages"]["read"] == {"status": "failed", "progress": 0, "error": "boom"}

    with pytest.raises(OperationStateError):
        update_operation(operation["id"], processed_records=10, engine=engine)
    # A second failure is logged, not raised.
    assert fail_operation(operation["id"], "again", engine=engine) is None
    assert get_operation(operation["id"], engine=engine)["error_message"] == "boom"


def test_unknown_operation(engine):
    assert get_operation("missing", engine=engine) is None
    with pytest.raises(OperationNotFound):
        update_operation("missing", processed_records=1, engine=engine)


def test_unknown_counter_is_rejected(engine):
    operation = _new_import(engine)
    with pytest.raises(ValueError):
        update_operation(operation["id"], counters={"deleted_records": 1}, engine=engine)


def test_tracked_stage_marks_progress_and_wraps_failures(engine):
    operation = _new_import(engine)

    with tracked_stage(operation["id"], "read", engine=engine):
        assert current_stage(get_operation(operation["id"], engine=engine)) == "read"
    assert get_operation(operation["id"], engine=engine)["stages"]["read"]["status"] == "completed"

    with pytest.raises(StageFailed) as exc_info:
        with tracked_stage(operation["id"], "process", engine=engine):
            raise KeyError("column")
    assert exc_info.value.stage == "process"
    assert exc_info.value.message.startswith("Failed at stage process")

    with pytest.raises(OperationCancelled):
        with tracked_stage(operation["id"], "finalize", engine=engine):
            raise OperationCancelled(operation["id"])


def test_progress_persister_mirrors_stage_percent(engine):
    operation = _new_import(engine)
    persist = progress_persister(engine, stage_progress_for=("process",))

    persist(ProgressInfo(operation_id=operation["id"], processed=40, total=80, percent=50, stage="process"))
    stored = get_operation(operation["id"], engine=engine)

    assert (stored["processed_records"], stored["total_records"], stored["processing_progress"]) == (40, 80, 50)
    assert stored["stages"]["process"]["progress"] == 50

    persist(ProgressInfo(operation_id=operation["id"], processed=60, total=80, percent=75, stage="read"))
    assert get_operation(operation["id"], engine=engine)["stages"]["read"]["progress"] == 0


def test_list_operations_filters(engine):
    first = _new_import(engine, client_id=1)
    _new_import(engine, client_id=2)
    create_operation(kind=OperationKind.EXPORT, client_id=1, engine=engine)
    fail_operation(first["id"], "boom", engine=engine)

    imports, total = list_operations(kind=OperationKind.IMPORT, engine=engine)
    assert total == 2
    assert {operation["kind"] for operation in imports} == {"IMPORT"}

    failed, total = list_operations(status=OperationStatus.FAILED, engine=engine)
    assert total == 1
    assert failed[0]["id"] == first["id"]

    page, total = list_operations(client_id=1, limit=1, engine=engine)
    assert total == 2
    assert len(page) == 1
