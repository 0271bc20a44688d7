"""
Export endpoints: queue an export, download the written file and manage
saved export templates.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from feedflow.api.dependencies import get_pool, to_http_error
from feedflow.api.schemas.shared import (
    CreateExportTemplateRequest,
    ExportTemplateInfo,
    ExportTemplateListResponse,
    ExportTemplateResponse,
    OperationInfo,
    OperationResponse,
)
from feedflow.domain.exports.orchestrator import ExportParameters, get_export_file, start_export
from feedflow.domain.exports.templates import create_export_template, get_export_template, list_export_templates
from feedflow.domain.imports.orchestrator import get_status
from feedflow.domain.worker_pool import WorkerPool

router = APIRouter(prefix="/api", tags=["exports"])

logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK_SIZE = 64 * 1024


def generate_file_stream(path):
    """Yield the file in fixed-size chunks."""
    with open(path, "rb") as handle:
        while True:
            chunk = handle.read(DOWNLOAD_CHUNK_SIZE)
            if not chunk:
                break
            yield chunk


@router.post("/exports", response_model=OperationResponse, status_code=202)
def create_export_endpoint(request: ExportParameters, pool: WorkerPool = Depends(get_pool)):
    try:
        operation = start_export(request, pool=pool)
        return OperationResponse(success=True, operation=OperationInfo(**get_status(operation["id"])))
    except Exception as exc:
        raise to_http_error(exc)


@router.get("/exports/{operation_id}/download")
def download_export_endpoint(operation_id: str):
    try:
        path, media_type, download_name = get_export_file(operation_id)
    except Exception as exc:
        raise to_http_error(exc)

    logger.info("Streaming export %s as %s", operation_id, download_name)
    return StreamingResponse(
        generate_file_stream(path),
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{download_name}"'},
    )


@router.post("/export-templates", response_model=ExportTemplateResponse, status_code=201)
def create_export_template_endpoint(request: CreateExportTemplateRequest):
    try:
        template = create_export_template(
            name=request.name,
            entity_type=request.entity_type,
            description=request.description,
            client_id=request.client_id,
            fields=[column.model_dump() for column in request.fields],
            options=request.options,
            strategy=request.strategy,
            strategy_params=request.strategy_params,
        )
    except Exception as exc:
        raise to_http_error(exc)
    return ExportTemplateResponse(success=True, template=ExportTemplateInfo(**template))


@router.get("/export-templates", response_model=ExportTemplateListResponse)
def list_export_templates_endpoint(entity_type: Optional[str] = None, client_id: Optional[int] = None):
    try:
        templates = list_export_templates(entity_type=entity_type, client_id=client_id)
    except Exception as exc:
        raise to_http_error(exc)
    return ExportTemplateListResponse(
        success=True,
        templates=[ExportTemplateInfo(**template) for template in templates],
    )


@router.get("/export-templates/{template_id}", response_model=ExportTemplateResponse)
def get_export_template_endpoint(template_id: int):
    template = get_export_template(template_id)
    if template is None:
        raise HTTPException(status_code=404, detail=f"Export template {template_id} not found")
    return ExportTemplateResponse(success=True, template=ExportTemplateInfo(**template))
