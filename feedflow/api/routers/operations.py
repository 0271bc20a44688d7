"""
Endpoints for polling, listing and cancelling operations.
"""
from typing import Optional

from fastapi import APIRouter, Depends

from feedflow.api.dependencies import get_pool, to_http_error
from feedflow.api.schemas.shared import (
    OperationInfo,
    OperationListResponse,
    OperationResponse,
    OperationSummary,
)
from feedflow.domain.imports.orchestrator import cancel_operation, get_status
from feedflow.domain.operations import OperationKind, OperationStatus, list_operations
from feedflow.domain.worker_pool import WorkerPool

router = APIRouter(prefix="/api", tags=["operations"])


@router.get("/operations/{operation_id}", response_model=OperationResponse)
def get_operation_endpoint(operation_id: str):
    try:
        return OperationResponse(success=True, operation=OperationInfo(**get_status(operation_id)))
    except Exception as exc:
        raise to_http_error(exc)


@router.get("/operations", response_model=OperationListResponse)
def list_operations_endpoint(
    kind: Optional[OperationKind] = None,
    status: Optional[OperationStatus] = None,
    client_id: Optional[int] = None,
    limit: int = 50,
    offset: int = 0,
):
    operations, total = list_operations(kind=kind, status=status, client_id=client_id, limit=limit, offset=offset)
    return OperationListResponse(
        success=True,
        operations=[OperationSummary(**operation) for operation in operations],
        total_count=total,
        limit=limit,
        offset=offset,
    )


@router.post("/operations/{operation_id}/cancel", response_model=OperationResponse)
def cancel_operation_endpoint(operation_id: str, pool: WorkerPool = Depends(get_pool)):
    try:
        return OperationResponse(success=True, operation=OperationInfo(**cancel_operation(operation_id, pool=pool)))
    except Exception as exc:
        raise to_http_error(exc)
