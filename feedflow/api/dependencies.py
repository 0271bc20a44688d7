"""
Shared dependencies and error translation for the API routers.
"""
import logging

from fastapi import HTTPException

from feedflow.core.exceptions import (
    DetectionError,
    FeedflowError,
    FileValidationError,
    OperationNotFound,
    OperationStateError,
)
from feedflow.domain.worker_pool import WorkerPool, get_worker_pool

logger = logging.getLogger(__name__)


def get_pool() -> WorkerPool:
    """Worker pool used by the routers; overridden in tests."""
    return get_worker_pool()


def to_http_error(exc: Exception) -> HTTPException:
    """Translate a domain exception into the matching HTTP error."""
    if isinstance(exc, FileValidationError):
        detail = {"message": exc.message}
        if exc.missing_headers:
            detail["missing_headers"] = exc.missing_headers
        return HTTPException(status_code=400, detail=detail)
    if isinstance(exc, DetectionError):
        return HTTPException(status_code=400, detail=exc.message)
    if isinstance(exc, ValueError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, OperationNotFound):
        return HTTPException(status_code=404, detail=exc.message)
    if isinstance(exc, OperationStateError):
        return HTTPException(status_code=409, detail=exc.message)
    if isinstance(exc, FeedflowError):
        logger.error("Request failed: %s", exc.message)
        return HTTPException(status_code=500, detail=exc.message)
    logger.exception("Unexpected request failure: %s", exc)
    return HTTPException(status_code=500, detail=str(exc))
