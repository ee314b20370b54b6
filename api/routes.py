"""
FastAPI routes for Visual Match.

Thin routes that delegate to the service layer.
"""

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException

from api.schemas import (
    BatchItem,
    BatchResponse,
    InitiateSearchRequest,
    InitiateSearchResponse,
    StatusResponse,
)
from config import get_settings
from services.search_service import SearchService, get_search_service

logger = structlog.get_logger()

router = APIRouter()


@router.post("/initiateSearch", response_model=InitiateSearchResponse, status_code=202)
async def initiate_search(
    body: InitiateSearchRequest,
    background_tasks: BackgroundTasks,
    service: SearchService = Depends(get_search_service)
):
    """Accept a probe image and start processing it asynchronously."""
    try:
        request = await service.initiate(
            image=body.image,
            identity=body.identityMetadata.model_dump() if body.identityMetadata else None,
            background_tasks=background_tasks,
        )
    except Exception as e:
        logger.error("Failed to initiate search", error=str(e))
        raise HTTPException(status_code=503, detail="Could not accept the search request")

    return InitiateSearchResponse(requestId=request.request_id)


@router.post("/initiateBatch", response_model=BatchResponse, status_code=202)
async def initiate_batch(
    items: list[BatchItem],
    background_tasks: BackgroundTasks,
    service: SearchService = Depends(get_search_service)
):
    """Accept several images; each becomes an independent request."""
    if not items:
        raise HTTPException(status_code=400, detail="At least one image is required")

    request_ids, failed_indexes = await service.initiate_batch(
        [item.model_dump() for item in items],
        background_tasks=background_tasks,
    )
    if not request_ids:
        raise HTTPException(status_code=503, detail="Could not accept the batch")

    return BatchResponse(requestIds=request_ids, totalImages=len(request_ids), failedIndexes=failed_indexes)


@router.get("/status/{request_id}", response_model=StatusResponse, response_model_exclude_none=True)
async def get_status(request_id: str, service: SearchService = Depends(get_search_service)):
    """Current status of a request."""
    try:
        status = await service.get_status(request_id)
    except Exception as e:
        logger.error("Failed to read status", request_id=request_id, error=str(e))
        raise HTTPException(status_code=503, detail="Status temporarily unavailable")

    if status is None:
        raise HTTPException(status_code=404, detail="Request not found")
    return status


@router.get("/health")
async def health():
    settings = get_settings()
    return {"status": "ok", "app": settings.app_name, "version": settings.app_version}
