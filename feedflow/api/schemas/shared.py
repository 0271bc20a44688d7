from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from feedflow.domain.imports.schema import normalize_entity_type


class OperationInfo(BaseModel):
    """Status object for one import or export operation."""
    operationId: str
    kind: str
    status: str
    entityType: Optional[str] = None
    fileName: Optional[str] = None
    stage: Optional[str] = None
    stagePercent: int = 0
    processedRecords: int = 0
    totalRecords: Optional[int] = None
    errorMessage: Optional[str] = None
    startedAt: Optional[str] = None
    completedAt: Optional[str] = None
    stages: Dict[str, Dict[str, Any]] = {}
    counters: Dict[str, int] = {}
    errors: List[Dict[str, Any]] = []
    recordsPerSecond: Optional[float] = None
    etaSeconds: Optional[float] = None


class OperationResponse(BaseModel):
    success: bool
    operation: OperationInfo


class OperationSummary(BaseModel):
    id: str
    kind: str
    status: str
    entity_type: Optional[str] = None
    file_name: Optional[str] = None
    processed_records: int = 0
    total_records: Optional[int] = None
    processing_progress: int = 0
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class OperationListResponse(BaseModel):
    success: bool
    operations: List[OperationSummary]
    total_count: int
    limit: int
    offset: int


class MappingDetail(BaseModel):
    source_field: str
    target_field: str
    required: bool = False
    transformation_type: Optional[str] = None
    transformation_params: Optional[str] = None
    order_index: Optional[int] = None


class CreateMappingRequest(BaseModel):
    name: str = Field(..., min_length=1)
    entity_type: str
    client_id: Optional[int] = None
    is_active: bool = True
    details: List[MappingDetail] = Field(..., min_length=1)

    @field_validator("entity_type")
    def validate_entity_type(cls, value: str) -> str:
        return normalize_entity_type(value)


class MappingInfo(BaseModel):
    id: int
    name: str
    entity_type: str
    client_id: Optional[int] = None
    is_active: bool
    created_at: Optional[datetime] = None
    details: List[MappingDetail]


class MappingResponse(BaseModel):
    success: bool
    mapping: MappingInfo


class SuggestMappingRequest(BaseModel):
    headers: List[str]
    entity_type: str

    @field_validator("entity_type")
    def validate_entity_type(cls, value: str) -> str:
        return normalize_entity_type(value)


class MappingSuggestion(BaseModel):
    source_field: str
    target_field: Optional[str] = None
    entity_type: Optional[str] = None
    match: Optional[str] = None


class SuggestMappingResponse(BaseModel):
    success: bool
    suggestions: List[MappingSuggestion]


class ExportTemplateColumn(BaseModel):
    field: str
    label: Optional[str] = None


class CreateExportTemplateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    entity_type: str
    description: Optional[str] = None
    client_id: Optional[int] = None
    fields: List[ExportTemplateColumn] = []
    options: Dict[str, Any] = {}
    strategy: Optional[str] = None
    strategy_params: Dict[str, Any] = {}

    @field_validator("entity_type")
    def validate_entity_type(cls, value: str) -> str:
        return normalize_entity_type(value)


class ExportTemplateInfo(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    client_id: Optional[int] = None
    entity_type: str
    strategy: str
    strategy_params: Dict[str, Any] = {}
    fields: List[ExportTemplateColumn]
    options: Dict[str, Any] = {}
    created_at: Optional[datetime] = None


class ExportTemplateResponse(BaseModel):
    success: bool
    template: ExportTemplateInfo


class ExportTemplateListResponse(BaseModel):
    success: bool
    templates: List[ExportTemplateInfo]
