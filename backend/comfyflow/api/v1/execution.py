"""
Execution endpoints: submit, run to completion, stream progress, query
status, and the chain/batch orchestrators.

Requests name their graph the same way chain steps do: an inline ``graph``,
a ``workflow_id`` of a graph session, or a ``template`` with params.
Graphs that fail validation are rejected with 422 before submission.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from comfyflow.api.dependencies import get_app_settings, get_graph_store, get_monitor
from comfyflow.config import Settings
from comfyflow.models.execution import (
    BatchExecutionResult,
    BatchItem,
    ChainExecutionResult,
    ChainStep,
    ExecutionProgress,
    ExecutionResult,
    ExecutionStatusReport,
    GraphRef,
    NodeOverrides,
)
from comfyflow.models.graph import GraphContext
from comfyflow.services.batch_runner import run_batch
from comfyflow.services.chain_runner import run_chain
from comfyflow.services.engine_client import EngineTransportError
from comfyflow.services.execution_monitor import ExecutionMonitor
from comfyflow.services.graph_builder import NotFoundError
from comfyflow.services.graph_sources import (
    GraphSourceError,
    InvalidGraphError,
    ensure_valid,
    prepare_context,
)
from comfyflow.services.graph_store import GraphStore

router = APIRouter(prefix="/execution", tags=["execution"])


class ExecutionRequest(GraphRef):
    params: NodeOverrides = Field(default_factory=dict)
    timeout: float | None = Field(default=None, gt=0)


class RunRequest(ExecutionRequest):
    capture_events: bool = False


class SubmitResponse(BaseModel):
    job_id: str


class RunResponse(BaseModel):
    result: ExecutionResult
    events: list[ExecutionProgress] | None = None


class ChainRequest(BaseModel):
    steps: list[ChainStep] = Field(..., min_length=1)
    stop_on_error: bool = True
    timeout: float | None = Field(default=None, gt=0)


class BatchRequest(BaseModel):
    items: list[BatchItem] = Field(..., min_length=1)
    concurrency: int | None = Field(default=None, ge=1)
    timeout: float | None = Field(default=None, gt=0)
    stop_on_error: bool = False


def _prepare(request: ExecutionRequest, store: GraphStore) -> GraphContext:
    try:
        return ensure_valid(prepare_context(request, request.params, store))
    except InvalidGraphError as exc:
        raise HTTPException(
            status_code=422,
            detail={"message": "Graph validation failed", "errors": exc.errors},
        ) from exc
    except GraphSourceError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.post("/submit", response_model=SubmitResponse)
async def submit(
    request: ExecutionRequest,
    store: GraphStore = Depends(get_graph_store),
    monitor: ExecutionMonitor = Depends(get_monitor),
):
    ctx = _prepare(request, store)
    try:
        job_id = await monitor.submit(ctx.graph)
    except EngineTransportError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return SubmitResponse(job_id=job_id)


@router.post("/run", response_model=RunResponse)
async def run(
    request: RunRequest,
    store: GraphStore = Depends(get_graph_store),
    monitor: ExecutionMonitor = Depends(get_monitor),
):
    ctx = _prepare(request, store)
    if request.capture_events:
        captured = await monitor.submit_and_capture(ctx.graph, request.timeout)
        return RunResponse(result=captured.result, events=captured.events)
    result = await monitor.submit_and_wait(ctx.graph, request.timeout)
    return RunResponse(result=result)


@router.post("/stream")
async def stream(
    request: ExecutionRequest,
    store: GraphStore = Depends(get_graph_store),
    monitor: ExecutionMonitor = Depends(get_monitor),
):
    ctx = _prepare(request, store)
    return StreamingResponse(
        monitor.stream(ctx.graph, request.timeout),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )


@router.post("/chain", response_model=ChainExecutionResult)
async def chain(
    request: ChainRequest,
    store: GraphStore = Depends(get_graph_store),
    monitor: ExecutionMonitor = Depends(get_monitor),
):
    return await run_chain(
        monitor,
        request.steps,
        stop_on_error=request.stop_on_error,
        timeout=request.timeout,
        store=store,
    )


@router.post("/batch", response_model=BatchExecutionResult)
async def batch(
    request: BatchRequest,
    store: GraphStore = Depends(get_graph_store),
    monitor: ExecutionMonitor = Depends(get_monitor),
    settings: Settings = Depends(get_app_settings),
):
    return await run_batch(
        monitor,
        request.items,
        concurrency=request.concurrency or settings.batch_concurrency,
        timeout=request.timeout,
        stop_on_error=request.stop_on_error,
        store=store,
    )


@router.get("/{job_id}", response_model=ExecutionStatusReport)
async def get_status(job_id: str, monitor: ExecutionMonitor = Depends(get_monitor)):
    try:
        return await monitor.get_status(job_id)
    except EngineTransportError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
