"""
Error taxonomy for the ingestion and export pipelines.

Detection and validation errors abort an operation before or while it starts.
Mapping and coercion errors are per-record/per-field and are collected rather
than propagated. Persistence errors fail a single batch. Cancellation is
terminal but is reported separately from failures.
"""
from typing import List, Optional


class FeedflowError(Exception):
    """Base class for all pipeline errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class DetectionError(FeedflowError):
    """The file could not be identified or opened as a supported format."""


class UnsupportedFormat(DetectionError):
    """Raised when the file extension is not one of the supported formats."""

    def __init__(self, filename: str, extension: Optional[str] = None, message: str = None):
        self.filename = filename
        self.extension = extension
        super().__init__(
            message or f"Unsupported file format '{extension or '(none)'}' for file '{filename}'. "
            "Supported formats: csv, txt, xls, xlsx."
        )


class MissingHeaders(DetectionError):
    """Raised when no header row can be located at the start of the file."""

    def __init__(self, lookahead: int, message: str = None):
        self.lookahead = lookahead
        super().__init__(message or f"No header row found within the first {lookahead} rows.")


class FileValidationError(FeedflowError):
    """The upload or its mapping is unusable; raised before processing starts."""

    def __init__(self, message: str, missing_headers: Optional[List[str]] = None):
        self.missing_headers = list(missing_headers or [])
        super().__init__(message)


class MappingError(FeedflowError):
    """A record could not be mapped or failed entity validation."""

    def __init__(self, message: str, record_number: Optional[int] = None, entity_type: Optional[str] = None):
        self.record_number = record_number
        self.entity_type = entity_type
        super().__init__(message)


class CoercionError(ValueError):
    """A raw value could not be converted to the field's declared type."""

    def __init__(self, value, target_type: str, field: Optional[str] = None, message: str = None):
        self.value = value
        self.target_type = target_type
        self.field = field
        self.message = message or f"Cannot convert '{value}' to {target_type}"
        super().__init__(self.message)


class PersistenceError(FeedflowError):
    """Writing a batch to storage failed; every row in the batch counts as failed."""

    def __init__(self, entity_type: str, batch_size: int, message: str = None):
        self.entity_type = entity_type
        self.batch_size = batch_size
        super().__init__(message or f"Batch save failed for {batch_size} {entity_type} records")


class OperationCancelled(FeedflowError):
    """Raised inside a worker when the operation was cancelled by the user."""

    def __init__(self, operation_id: str, message: str = "Operation cancelled by user"):
        self.operation_id = operation_id
        super().__init__(message)


class StageFailed(FeedflowError):
    """A named pipeline stage failed; the whole operation fails with it."""

    def __init__(self, stage: str, cause: Exception):
        self.stage = stage
        self.cause = cause
        detail = getattr(cause, "message", None) or str(cause) or type(cause).__name__
        super().__init__(f"Failed at stage {stage}: {detail}")


class OperationNotFound(FeedflowError):
    def __init__(self, operation_id: str):
        self.operation_id = operation_id
        super().__init__(f"Operation '{operation_id}' not found")


class OperationStateError(FeedflowError):
    """Raised on attempts to mutate an operation that already reached a terminal status."""

    def __init__(self, operation_id: str, status: str):
        self.operation_id = operation_id
        self.status = status
        super().__init__(f"Operation '{operation_id}' is already {status} and cannot be modified")
