from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from comfyflow.api.dependencies import get_queue_controller
from comfyflow.models.execution import InterruptReport
from comfyflow.services.engine_client import EngineTransportError
from comfyflow.services.queue_controller import QueueController

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/queue", tags=["queue"])


class QueueResponse(BaseModel):
    running: list[str]
    pending: list[str]
    raw: dict[str, list[Any]] | None = None


class InterruptRequest(BaseModel):
    job_id: str | None = None
    cleanup: bool = False
    wait_seconds: float | None = Field(default=None, ge=0, le=60)


class DeleteRequest(BaseModel):
    job_ids: list[str] = Field(..., min_length=1)


class OkResponse(BaseModel):
    ok: bool = True


@router.get("", response_model=QueueResponse)
async def list_queue(include_raw: bool = False, controller: QueueController = Depends(get_queue_controller)):
    try:
        snapshot = await controller.list_queue()
    except EngineTransportError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return QueueResponse(
        running=snapshot.running_ids(),
        pending=snapshot.pending_ids(),
        raw={"running": snapshot.running, "pending": snapshot.pending} if include_raw else None,
    )


@router.post("/interrupt", response_model=InterruptReport)
async def interrupt(request: InterruptRequest, controller: QueueController = Depends(get_queue_controller)):
    if request.cleanup and not request.job_id:
        raise HTTPException(status_code=422, detail="cleanup requires job_id")
    try:
        return await controller.interrupt(
            request.job_id,
            cleanup=request.cleanup,
            wait_seconds=request.wait_seconds,
        )
    except EngineTransportError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


@router.post("/clear", response_model=OkResponse)
async def clear(controller: QueueController = Depends(get_queue_controller)):
    try:
        await controller.clear()
    except EngineTransportError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return OkResponse()


@router.post("/delete", response_model=OkResponse)
async def delete(request: DeleteRequest, controller: QueueController = Depends(get_queue_controller)):
    try:
        await controller.delete(request.job_ids)
    except EngineTransportError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    logger.info("Deleted %d job(s) from the queue", len(request.job_ids))
    return OkResponse()
