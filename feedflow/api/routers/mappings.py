"""
Stored field mapping templates and header-based suggestions.
"""
from fastapi import APIRouter, HTTPException

from feedflow.api.dependencies import to_http_error
from feedflow.api.schemas.shared import (
    CreateMappingRequest,
    MappingInfo,
    MappingResponse,
    MappingSuggestion,
    SuggestMappingRequest,
    SuggestMappingResponse,
)
from feedflow.domain.imports.mappings import create_field_mapping, get_field_mapping, suggest_mapping

router = APIRouter(prefix="/api", tags=["mappings"])


@router.post("/mappings", response_model=MappingResponse, status_code=201)
def create_mapping_endpoint(request: CreateMappingRequest):
    try:
        mapping = create_field_mapping(
            name=request.name,
            entity_type=request.entity_type,
            client_id=request.client_id,
            is_active=request.is_active,
            details=[detail.model_dump() for detail in request.details],
        )
    except Exception as exc:
        raise to_http_error(exc)
    return MappingResponse(success=True, mapping=MappingInfo(**mapping))


@router.get("/mappings/{mapping_id}", response_model=MappingResponse)
def get_mapping_endpoint(mapping_id: int):
    mapping = get_field_mapping(mapping_id)
    if mapping is None:
        raise HTTPException(status_code=404, detail=f"Field mapping {mapping_id} not found")
    return MappingResponse(success=True, mapping=MappingInfo(**mapping))


@router.post("/mappings/suggest", response_model=SuggestMappingResponse)
async def suggest_mapping_endpoint(request: SuggestMappingRequest):
    suggestions = suggest_mapping(request.headers, request.entity_type)
    return SuggestMappingResponse(
        success=True,
        suggestions=[MappingSuggestion(**suggestion) for suggestion in suggestions],
    )
