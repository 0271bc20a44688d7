"""
API tests: uploads, operation polling and cancellation, exports and mappings.
"""
import inspect
import io
import json

import pytest
from fastapi.testclient import TestClient

from feedflow.api.dependencies import get_pool
from feedflow.api.routers import exports, imports, mappings, operations
from feedflow.domain.imports.mapper import MappedRecord
from feedflow.domain.imports.persistence import BatchPersistenceEngine, DuplicateStrategy
from feedflow.domain.imports.schema import PRODUCT_SCHEMA
from feedflow.domain.operations import OperationKind, create_operation
from feedflow.main import app

PRODUCTS_CSV = "Модель;Бренд;Цена\nX1;Acme;19.99\nX2;Acme;5\n".encode("utf-8")


@pytest.fixture
def client(engine, workdirs, pool):
    app.dependency_overrides[get_pool] = lambda: pool
    yield TestClient(app)
    app.dependency_overrides.clear()


def _upload(client, content=PRODUCTS_CSV, filename="products.csv", **form):
    form.setdefault("entity_type", "product")
    return client.post(
        "/api/imports",
        files={"file": (filename, io.BytesIO(content), "text/csv")},
        data=form,
    )


def test_root_and_health(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json() == {"message": "Feedflow API", "version": "1.0.0"}

    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_import_upload_is_queued_and_completes(client, pool):
    response = _upload(client, duplicate_strategy="skip", options_json=json.dumps({"batchSize": 1}))

    assert response.status_code == 202
    data = response.json()
    assert data["success"] is True
    operation_id = data["operation"]["operationId"]
    assert data["operation"]["kind"] == "IMPORT"
    assert data["operation"]["fileName"] == "products.csv"

    pool.shutdown(wait=True)

    response = client.get(f"/api/operations/{operation_id}")
    assert response.status_code == 200
    operation = response.json()["operation"]
    assert operation["status"] == "COMPLETED"
    assert operation["processedRecords"] == 2
    assert operation["counters"]["saved"] == 2
    assert operation["stagePercent"] == 100


def test_import_rejects_unsupported_file(client):
    response = _upload(client, content=b"%PDF-1.4", filename="catalogue.pdf")

    assert response.status_code == 400
    assert "Unsupported file format" in response.json()["detail"]


def test_import_rejects_bad_options(client):
    response = _upload(client, options_json="[1, 2]")
    assert response.status_code == 400

    response = _upload(client, duplicate_strategy="MERGE")
    assert response.status_code == 400


def test_import_rejects_unknown_entity_and_mapping(client):
    response = _upload(client, entity_type="supplier")
    assert response.status_code == 400

    response = _upload(client, mapping_id="999")
    assert response.status_code == 400
    assert response.json()["detail"]["message"] == "Field mapping 999 not found"


def test_import_with_mapping_missing_required_header_fails(client, pool):
    mapping = client.post(
        "/api/mappings",
        json={
            "name": "sku feed",
            "entity_type": "product",
            "details": [{"source_field": "SKU", "target_field": "productId", "required": True}],
        },
    ).json()["mapping"]

    response = _upload(client, mapping_id=str(mapping["id"]))
    assert response.status_code == 202
    operation_id = response.json()["operation"]["operationId"]
    pool.shutdown(wait=True)

    operation = client.get(f"/api/operations/{operation_id}").json()["operation"]
    assert operation["status"] == "FAILED"
    assert "SKU" in operation["errorMessage"]
    assert operation["stages"]["read"]["status"] == "failed"


def test_unknown_operation_returns_404(client):
    assert client.get("/api/operations/does-not-exist").status_code == 404
    assert client.post("/api/operations/does-not-exist/cancel").status_code == 404


def test_cancel_pending_operation(client, engine):
    operation = create_operation(kind=OperationKind.IMPORT, entity_type="product", engine=engine)

    response = client.post(f"/api/operations/{operation['id']}/cancel")
    assert response.status_code == 200
    cancelled = response.json()["operation"]
    assert cancelled["status"] == "FAILED"
    assert cancelled["errorMessage"] == "Operation cancelled by user"

    response = client.post(f"/api/operations/{operation['id']}/cancel")
    assert response.status_code == 409


def test_list_operations(client, engine):
    create_operation(kind=OperationKind.IMPORT, entity_type="product", client_id=3, engine=engine)
    create_operation(kind=OperationKind.EXPORT, entity_type="product", client_id=3, engine=engine)

    response = client.get("/api/operations", params={"kind": "EXPORT"})
    assert response.status_code == 200
    data = response.json()
    assert data["total_count"] == 1
    assert data["operations"][0]["kind"] == "EXPORT"

    response = client.get("/api/operations", params={"client_id": 3, "limit": 1})
    data = response.json()
    assert data["total_count"] == 2
    assert len(data["operations"]) == 1

    assert client.get("/api/operations", params={"status": "DONE"}).status_code == 422


def test_export_and_download(client, engine, pool):
    BatchPersistenceEngine(engine).save_batch(
        [MappedRecord("product", {"productId": "1", "productName": "Lamp", "productPrice": 19.99})],
        PRODUCT_SCHEMA,
        DuplicateStrategy.IGNORE,
    )

    response = client.post(
        "/api/exports",
        json={"entity_type": "product", "options": {"file_type": "csv", "field_order": ["productName", "productPrice"]}},
    )
    assert response.status_code == 202
    operation_id = response.json()["operation"]["operationId"]
    pool.shutdown(wait=True)

    response = client.get(f"/api/exports/{operation_id}/download")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert "attachment; filename=" in response.headers["content-disposition"]
    assert response.content.decode("utf-8").splitlines() == ["Модель,Цена", "Lamp,19.99"]


def test_export_request_validation(client):
    response = client.post("/api/exports", json={"strategy": "sorted"})
    assert response.status_code == 422

    response = client.post("/api/exports", json={"options": {"field_order": ["colour"]}})
    assert response.status_code == 400


def test_export_template_endpoints_and_templated_export(client, engine, pool):
    BatchPersistenceEngine(engine).save_batch(
        [MappedRecord("product", {"productId": "1", "productName": "Lamp", "productPrice": 19.99})],
        PRODUCT_SCHEMA,
        DuplicateStrategy.IGNORE,
    )

    response = client.post(
        "/api/export-templates",
        json={
            "name": "Names only",
            "entity_type": "product",
            "fields": [{"field": "productName", "label": "Name"}],
            "options": {"delimiter": ";"},
        },
    )
    assert response.status_code == 201
    template = response.json()["template"]
    assert template["strategy"] == "simple"
    assert template["fields"] == [{"field": "productName", "label": "Name"}]

    assert client.get(f"/api/export-templates/{template['id']}").json()["template"]["name"] == "Names only"
    assert client.get("/api/export-templates/999").status_code == 404
    listed = client.get("/api/export-templates", params={"entity_type": "product"}).json()["templates"]
    assert [item["id"] for item in listed] == [template["id"]]

    response = client.post(
        "/api/export-templates",
        json={"name": "Bad", "entity_type": "product", "fields": [{"field": "colour"}]},
    )
    assert response.status_code == 400
    assert client.post("/api/exports", json={"template_id": 999}).status_code == 400

    response = client.post("/api/exports", json={"template_id": template["id"]})
    assert response.status_code == 202
    operation_id = response.json()["operation"]["operationId"]
    pool.shutdown(wait=True)

    response = client.get(f"/api/exports/{operation_id}/download")
    assert response.content.decode("utf-8").splitlines() == ["Name", "Lamp"]


def test_download_requires_completed_export(client, engine):
    pending = create_operation(kind=OperationKind.EXPORT, entity_type="product", engine=engine)

    assert client.get(f"/api/exports/{pending['id']}/download").status_code == 409
    assert client.get("/api/exports/missing/download").status_code == 404


def test_mapping_endpoints(client):
    response = client.post(
        "/api/mappings",
        json={
            "name": "Supplier A",
            "entity_type": "region",
            "details": [
                {"source_field": "City", "target_field": "region", "required": True},
                {"source_field": "Shop", "target_field": "competitorName"},
            ],
        },
    )
    assert response.status_code == 201
    mapping = response.json()["mapping"]
    assert mapping["entity_type"] == "market_data"
    assert [detail["order_index"] for detail in mapping["details"]] == [0, 1]

    response = client.get(f"/api/mappings/{mapping['id']}")
    assert response.status_code == 200
    assert response.json()["mapping"]["name"] == "Supplier A"

    assert client.get("/api/mappings/999").status_code == 404

    response = client.post(
        "/api/mappings",
        json={"name": "bad", "entity_type": "product", "details": [{"source_field": "A", "target_field": "region"}]},
    )
    assert response.status_code == 400

    response = client.post("/api/mappings", json={"name": "empty", "entity_type": "product", "details": []})
    assert response.status_code == 422


def test_suggest_mapping_endpoint(client):
    response = client.post("/api/mappings/suggest", json={"headers": ["Модель", "Mystery"], "entity_type": "product"})

    assert response.status_code == 200
    suggestions = response.json()["suggestions"]
    assert suggestions[0] == {"source_field": "Модель", "target_field": "productName", "entity_type": "product", "match": "exact"}
    assert suggestions[1]["target_field"] is None


def test_database_endpoints_run_in_threadpool():
    # Blocking database work must not run on the event loop.
    blocking = [
        imports.create_import_endpoint,
        exports.create_export_endpoint,
        exports.download_export_endpoint,
        exports.create_export_template_endpoint,
        exports.list_export_templates_endpoint,
        exports.get_export_template_endpoint,
        mappings.create_mapping_endpoint,
        mappings.get_mapping_endpoint,
        operations.get_operation_endpoint,
        operations.list_operations_endpoint,
        operations.cancel_operation_endpoint,
    ]
    assert [endpoint.__name__ for endpoint in blocking if inspect.iscoroutinefunction(endpoint)] == []
