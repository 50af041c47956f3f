"""Webhook ingestion and operation lookup endpoints."""

from typing import Any

import structlog
from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["Webhooks"])


@router.post("/hooks/{source_name}")
async def receive_webhook(source_name: str, request: Request) -> JSONResponse:
    """Receive one webhook delivery.

    The body is read as raw bytes so the signature is checked over exactly
    what the sender signed.
    """
    raw_body = await request.body()
    result = await request.app.state.pipeline.processor.ingest(
        source_name,
        raw_body,
        dict(request.headers),
    )
    return JSONResponse(status_code=result.status_code, content=result.body)


@router.get("/operations/{operation_id}")
async def get_operation(operation_id: str, request: Request) -> dict[str, Any]:
    """Get the recorded outcome of an operation."""
    record = await request.app.state.pipeline.outcomes.get(operation_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Operation {operation_id} not found")
    return record.to_dict()
