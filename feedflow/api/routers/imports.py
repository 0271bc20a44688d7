"""
Upload endpoint that queues a file import.
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile

from feedflow.api.dependencies import get_pool, to_http_error
from feedflow.api.schemas.shared import OperationInfo, OperationResponse
from feedflow.domain.imports.options import FileReadingOptions
from feedflow.domain.imports.orchestrator import get_status, start_import, store_upload
from feedflow.domain.worker_pool import WorkerPool

router = APIRouter(prefix="/api", tags=["imports"])

logger = logging.getLogger(__name__)


@router.post("/imports", response_model=OperationResponse, status_code=202)
def create_import_endpoint(
    file: UploadFile = File(...),
    entity_type: str = Form(...),
    mapping_id: Optional[int] = Form(None),
    auto_suggest: bool = Form(False),
    duplicate_strategy: Optional[str] = Form(None),
    options_json: Optional[str] = Form(None),
    pool: WorkerPool = Depends(get_pool),
):
    """
    Accept an upload and queue its import.

    Parameters:
    - file: CSV, TXT, XLS or XLSX file
    - entity_type: product, market_data (alias competitor/region) or combined
    - mapping_id: stored field mapping to apply
    - auto_suggest: derive a mapping from the detected headers when no mapping_id is given
    - duplicate_strategy: SKIP, OVERRIDE or IGNORE
    - options_json: JSON object of reading options (delimiter, charset, header_row, batch_size...)

    Returns the PENDING operation; poll /api/operations/{id} for progress.
    """
    try:
        params = json.loads(options_json) if options_json else {}
        if not isinstance(params, dict):
            raise ValueError("options_json must be a JSON object")
        if duplicate_strategy:
            params["duplicate_strategy"] = duplicate_strategy
        options = FileReadingOptions.from_params(params)
    except (ValueError, TypeError) as exc:
        raise HTTPException(status_code=400, detail=f"Invalid import options: {exc}")

    filename = file.filename or "upload"
    logger.info("Received import upload '%s' for %s", filename, entity_type)
    try:
        path = store_upload(file.file, filename)
        operation = start_import(
            path,
            filename=filename,
            entity_type=entity_type,
            mapping_id=mapping_id,
            auto_suggest=auto_suggest,
            options=options,
            pool=pool,
        )
        return OperationResponse(success=True, operation=OperationInfo(**get_status(operation["id"])))
    except Exception as exc:
        raise to_http_error(exc)
