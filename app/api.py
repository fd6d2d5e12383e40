"""HTTP route definitions for the service."""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, status

from app.schemas import BatchAcceptedResponse, BatchRecord, BatchRequest
from errors import StoreFault
from services.processor import InboundMessage, IngestionService, build_default_service

router = APIRouter()


def get_service() -> IngestionService:
    return build_default_service()


@router.post(
    "/batches",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=BatchAcceptedResponse,
    summary="Submit a batch of telemetry events for asynchronous processing.",
)
async def submit_batch(
    request: BatchRequest,
    service: IngestionService = Depends(get_service),
) -> BatchAcceptedResponse:
    messages = [InboundMessage(event.device_id, event.payload) for event in request.events]
    try:
        batch_id = service.enqueue_batch(messages)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    return BatchAcceptedResponse(batch_id=batch_id)


@router.get(
    "/batches/{batch_id}",
    response_model=BatchRecord,
    summary="Fetch the processing record of a batch.",
)
async def get_batch_result(
    batch_id: str,
    service: IngestionService = Depends(get_service),
) -> BatchRecord:
    try:
        return service.fetch_result(batch_id)
    except KeyError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=exc.args[0],
        ) from exc


@router.get(
    "/twins/{dt_id}",
    summary="Fetch the current snapshot of a twin.",
)
def get_twin(
    dt_id: str,
    service: IngestionService = Depends(get_service),
) -> Dict[str, Any]:
    try:
        return service.get_twin(dt_id)
    except KeyError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=exc.args[0],
        ) from exc
    except StoreFault as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
        ) from exc


@router.get(
    "/health",
    summary="Health check endpoint.",
    status_code=status.HTTP_200_OK,
)
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@router.get(
    "/",
    summary="Root endpoint mirrors health information.",
    status_code=status.HTTP_200_OK,
)
async def root() -> dict[str, str]:
    return {"status": "ok", "detail": "See /health for service status."}
