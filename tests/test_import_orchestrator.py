"""
End-to-end tests for queued imports: validation, stages, counters,
cancellation and source file disposal.
"""
from pathlib import Path

import pandas as pd
import pytest
from sqlalchemy import select

from feedflow.core.config import settings
from feedflow.core.exceptions import FileValidationError, OperationNotFound, OperationStateError, UnsupportedFormat
from feedflow.db.models import market_data, products
from feedflow.domain.imports.mappings import create_field_mapping
from feedflow.domain.imports.options import FileReadingOptions
from feedflow.domain.imports.orchestrator import (
    cancel_operation,
    check_required_headers,
    dispose_source,
    get_status,
    run_import,
    start_import,
    validate_upload,
)
from feedflow.domain.operations import OperationKind, OperationStatus, create_operation
from feedflow.domain.progress import cancellation_registry, progress_tracker


def _upload(name, content, encoding="utf-8"):
    path = Path(settings.upload_dir) / name
    if isinstance(content, str):
        content = content.encode(encoding)
    path.write_bytes(content)
    return path


def _run(engine, pool, path, entity_type="product", **kwargs):
    operation = start_import(path, entity_type=entity_type, engine=engine, pool=pool, **kwargs)
    pool.shutdown(wait=True)
    return get_status(operation["id"], engine=engine)


def _products(engine):
    with engine.connect() as conn:
        return conn.execute(select(products).order_by(products.c.id)).mappings().all()


def test_cyrillic_csv_import_completes(engine, workdirs, pool):
    path = _upload("products.csv", "Модель;Бренд;Цена\nX1;Acme;19.99\nX2;Acme;5,50\n")

    status = _run(engine, pool, path)

    assert status["status"] == OperationStatus.COMPLETED.value
    assert status["kind"] == OperationKind.IMPORT.value
    assert status["fileName"] == "products.csv"
    assert status["processedRecords"] == 2
    assert status["totalRecords"] == 2
    assert status["stagePercent"] == 100
    assert status["errorMessage"] is None
    assert status["counters"] == {"saved": 2, "updated": 0, "skipped": 0, "failed": 0}
    assert all(stage["status"] == "completed" for stage in status["stages"].values())
    assert status["completedAt"] is not None
    assert not path.exists()

    rows = _products(engine)
    assert [(row["product_name"], row["product_brand"], row["product_price"]) for row in rows] == [
        ("X1", "Acme", 19.99),
        ("X2", "Acme", 5.5),
    ]
    assert {row["file_operation_id"] for row in rows} == {status["operationId"]}


def test_header_only_file_completes_with_zero_total(engine, workdirs, pool):
    path = _upload("empty.csv", "Модель;Бренд;Цена\n")

    status = _run(engine, pool, path)

    assert status["status"] == OperationStatus.COMPLETED.value
    assert status["totalRecords"] == 0
    assert status["processedRecords"] == 0
    assert status["counters"]["saved"] == 0


def test_row_errors_do_not_fail_the_import(engine, workdirs, pool):
    path = _upload("products.csv", "Модель;Цена\nA;1\n;2\nC;abc\n")

    status = _run(engine, pool, path)

    assert status["status"] == OperationStatus.COMPLETED.value
    assert status["errorMessage"] == "Completed with 1 row errors"
    assert status["counters"]["saved"] == 2
    assert status["counters"]["failed"] == 1
    assert sorted(error["type"] for error in status["errors"]) == ["coercion", "validation"]
    assert [row["product_price"] for row in _products(engine)] == [1.0, None]


def test_skip_strategy_on_reimport(engine, workdirs, pool):
    content = "ID товара,Модель\n1,A\n2,B\n3,C\n"
    first = start_import(_upload("first.csv", content), entity_type="product", engine=engine, pool=pool)
    second = start_import(
        _upload("second.csv", content),
        entity_type="product",
        options=FileReadingOptions(duplicate_strategy="skip"),
        engine=engine,
        pool=pool,
    )
    pool.shutdown(wait=True)

    assert get_status(first["id"], engine=engine)["counters"]["saved"] == 3
    status = get_status(second["id"], engine=engine)
    assert status["counters"] == {"saved": 0, "updated": 0, "skipped": 3, "failed": 0}
    assert len(_products(engine)) == 3


def test_override_strategy_updates_existing_rows(engine, workdirs, pool):
    start_import(_upload("first.csv", "ID товара,Модель\n1,A\n"), entity_type="product", engine=engine, pool=pool)
    second = start_import(
        _upload("second.csv", "ID товара,Модель\n1,A2\n"),
        entity_type="product",
        options=FileReadingOptions(duplicate_strategy="OVERRIDE"),
        engine=engine,
        pool=pool,
    )
    pool.shutdown(wait=True)

    assert get_status(second["id"], engine=engine)["counters"]["updated"] == 1
    assert [row["product_name"] for row in _products(engine)] == ["A2"]


def test_combined_import_links_market_rows_to_products(engine, workdirs, pool):
    path = _upload(
        "combined.csv",
        "ID товара;Модель;Город;Сайт\n"
        "P1;Lamp;Москва;shop.ru\n"
        "P1;Lamp;Казань;shop.ru\n"
        "P2;Desk;Москва;other.ru\n",
    )

    status = _run(engine, pool, path, entity_type="combined")

    assert status["status"] == OperationStatus.COMPLETED.value
    assert status["counters"]["saved"] == 5
    assert status["counters"]["skipped"] == 1
    product_ids = {row["product_id"]: row["id"] for row in _products(engine)}
    with engine.connect() as conn:
        links = conn.execute(
            select(market_data.c.product_id, market_data.c.region, market_data.c.product_ref).order_by(market_data.c.id)
        ).all()
    assert [(row.region, row.product_ref) for row in links] == [
        ("Москва", product_ids["P1"]),
        ("Казань", product_ids["P1"]),
        ("Москва", product_ids["P2"]),
    ]


def test_xlsx_import(engine, workdirs, pool):
    path = Path(settings.upload_dir) / "prices.xlsx"
    pd.DataFrame({"Модель": ["X1", "X2"], "Цена": [19.99, 7]}).to_excel(path, index=False)

    status = _run(engine, pool, path)

    assert status["status"] == OperationStatus.COMPLETED.value
    assert [row["product_price"] for row in _products(engine)] == [19.99, 7.0]


def test_auto_suggest_maps_close_headers(engine, workdirs, pool):
    path = _upload("feed.csv", "product_name,product_price\nLamp,10\n")

    status = _run(engine, pool, path, auto_suggest=True)

    assert status["status"] == OperationStatus.COMPLETED.value
    rows = _products(engine)
    assert (rows[0]["product_name"], rows[0]["product_price"]) == ("Lamp", 10.0)


def test_stored_mapping_is_applied(engine, workdirs, pool):
    mapping = create_field_mapping(
        name="supplier feed",
        entity_type="product",
        details=[
            {"source_field": "Title", "target_field": "productName", "required": True},
            {"source_field": "Cost", "target_field": "productPrice"},
        ],
        engine=engine,
    )
    path = _upload("feed.csv", "Title,Cost\nLamp,12.5\n")

    status = _run(engine, pool, path, mapping_id=mapping["id"])

    assert status["status"] == OperationStatus.COMPLETED.value
    assert (_products(engine)[0]["product_name"], _products(engine)[0]["product_price"]) == ("Lamp", 12.5)


def test_missing_required_header_fails_read_stage(engine, workdirs, pool):
    mapping = create_field_mapping(
        name="supplier feed",
        entity_type="product",
        details=[{"source_field": "SKU", "target_field": "productId", "required": True}],
        engine=engine,
    )
    path = _upload("feed.csv", "Title,Cost\nLamp,12.5\n")

    status = _run(engine, pool, path, mapping_id=mapping["id"])

    assert status["status"] == OperationStatus.FAILED.value
    assert status["errorMessage"].startswith("Failed at stage read")
    assert "SKU" in status["errorMessage"]
    assert status["stages"]["read"]["status"] == "failed"
    assert status["stages"]["process"]["status"] == "not_started"
    assert _products(engine) == []
    assert not path.exists()


def test_check_required_headers_is_case_insensitive():
    mapping = {"details": [{"source_field": "SKU", "required": True}, {"source_field": "Name", "required": False}]}

    check_required_headers([" sku ", "Price"], mapping)
    with pytest.raises(FileValidationError) as exc_info:
        check_required_headers(["Price"], mapping)
    assert exc_info.value.missing_headers == ["SKU"]


def test_invalid_uploads_are_rejected_before_an_operation_exists(engine, workdirs, pool):
    empty = _upload("empty.csv", b"")
    with pytest.raises(FileValidationError):
        start_import(empty, entity_type="product", engine=engine, pool=pool)
    assert not empty.exists()

    with pytest.raises(UnsupportedFormat):
        validate_upload("catalogue.pdf", 10)

    with pytest.raises(FileValidationError):
        validate_upload("feed.csv", 10, {"id": 1, "is_active": False, "details": [{}]})


def test_cancellation_before_run_never_completes(engine, workdirs):
    path = _upload("products.csv", "Модель;Цена\nA;1\n")
    operation = create_operation(kind=OperationKind.IMPORT, entity_type="product", engine=engine)
    cancellation_registry.request(operation["id"])

    final = run_import(operation["id"], path, entity_type="product", engine=engine)

    assert final["status"] == OperationStatus.FAILED.value
    assert final["error_message"] == "Operation cancelled by user"
    assert final["saved_records"] == 0
    assert _products(engine) == []
    assert not cancellation_registry.is_cancelled(operation["id"])
    assert progress_tracker.get(operation["id"]) is None
    assert not path.exists()


def test_cancel_operation_without_worker_fails_directly(engine, pool):
    operation = create_operation(kind=OperationKind.IMPORT, entity_type="product", engine=engine)

    status = cancel_operation(operation["id"], engine=engine, pool=pool)

    assert status["status"] == OperationStatus.FAILED.value
    assert status["errorMessage"] == "Operation cancelled by user"
    with pytest.raises(OperationStateError):
        cancel_operation(operation["id"], engine=engine, pool=pool)
    with pytest.raises(OperationNotFound):
        cancel_operation("missing", engine=engine, pool=pool)


def test_dispose_source_archives_when_enabled(workdirs, monkeypatch):
    monkeypatch.setattr(settings, "archive_processed_files", True)
    path = _upload("done.csv", "a\n")

    dispose_source(path)

    assert not path.exists()
    assert (Path(settings.upload_dir) / "archive" / "done.csv").exists()


COMBINED_FEED = "ID товара;Модель;Город\nP1;Lamp;Москва\nP2;Desk;Казань\n"


def _market_rows(engine):
    with engine.connect() as conn:
        return conn.execute(
            select(market_data.c.region, market_data.c.product_ref).order_by(market_data.c.id)
        ).all()


def test_combined_skip_reimport_skips_related_rows(engine, workdirs, pool):
    first = start_import(_upload("first.csv", COMBINED_FEED), entity_type="combined", engine=engine, pool=pool)
    second = start_import(
        _upload("second.csv", COMBINED_FEED),
        entity_type="combined",
        options=FileReadingOptions(duplicate_strategy="SKIP"),
        engine=engine,
        pool=pool,
    )
    pool.shutdown(wait=True)

    assert get_status(first["id"], engine=engine)["counters"]["saved"] == 4
    status = get_status(second["id"], engine=engine)
    assert status["status"] == OperationStatus.COMPLETED.value
    assert status["counters"] == {"saved": 0, "updated": 0, "skipped": 4, "failed": 0}
    assert len(_products(engine)) == 2
    assert len(_market_rows(engine)) == 2


def test_combined_override_replaces_related_rows(engine, workdirs, pool):
    start_import(_upload("first.csv", COMBINED_FEED), entity_type="combined", engine=engine, pool=pool)
    second = start_import(
        _upload("second.csv", "ID товара;Модель;Город\nP1;Lamp v2;Самара\nP2;Desk v2;Казань\n"),
        entity_type="combined",
        options=FileReadingOptions(duplicate_strategy="OVERRIDE"),
        engine=engine,
        pool=pool,
    )
    pool.shutdown(wait=True)

    status = get_status(second["id"], engine=engine)
    assert status["counters"] == {"saved": 2, "updated": 2, "skipped": 0, "failed": 0}
    product_ids = {row["product_id"]: row["id"] for row in _products(engine)}
    assert [row["product_name"] for row in _products(engine)] == ["Lamp v2", "Desk v2"]
    assert _market_rows(engine) == [("Самара", product_ids["P1"]), ("Казань", product_ids["P2"])]


def test_combined_rows_without_market_fields_are_not_row_errors(engine, workdirs, pool):
    status = _run(engine, pool, _upload("products.csv", "ID товара;Модель\nP1;Lamp\nP2;Desk\n"), entity_type="combined")

    assert status["status"] == OperationStatus.COMPLETED.value
    assert status["errorMessage"] is None
    assert status["counters"] == {"saved": 2, "updated": 0, "skipped": 0, "failed": 0}
    assert _market_rows(engine) == []


def test_combined_row_rejected_by_every_entity_counts_once(engine, workdirs, pool):
    status = _run(engine, pool, _upload("broken.csv", "ID товара;Модель;Город\nP1;;\n"), entity_type="combined")

    assert status["status"] == OperationStatus.COMPLETED.value
    assert status["processedRecords"] == 1
    assert status["counters"]["failed"] == 1
    assert status["errorMessage"] == "Completed with 1 row errors"


def test_cancellation_takes_effect_at_next_chunk_boundary(engine, workdirs):
    path = _upload("products.csv", "ID товара;Модель\n1;A\n2;B\n3;C\n4;D\n")
    operation = create_operation(kind=OperationKind.IMPORT, entity_type="product", engine=engine)
    seen = []

    def cancel_after_first_chunk(info):
        if info.operation_id != operation["id"]:
            return
        seen.append(info.processed)
        if info.processed >= 1:
            cancellation_registry.request(operation["id"])

    progress_tracker.subscribe(cancel_after_first_chunk)
    try:
        final = run_import(
            operation["id"],
            path,
            entity_type="product",
            options=FileReadingOptions(batch_size=1),
            engine=engine,
        )
    finally:
        progress_tracker.unsubscribe(cancel_after_first_chunk)

    assert final["status"] == OperationStatus.FAILED.value
    assert final["error_message"] == "Operation cancelled by user"
    assert final["processed_records"] == 1
    assert seen == sorted(seen)
    assert [row["product_id"] for row in _products(engine)] == ["1"]
    assert final["stages"]["process"]["status"] != "completed"
