"""
Graph construction endpoints.

A session is created with POST /graphs and then built up node by node
across calls. Sessions live in memory and expire after the configured TTL.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import AliasChoices, BaseModel, Field

from comfyflow.api.dependencies import get_graph_store
from comfyflow.models.graph import GraphContext, ValidationResult
from comfyflow.services import graph_builder
from comfyflow.services.graph_builder import NotFoundError
from comfyflow.services.graph_store import GraphStore

router = APIRouter(prefix="/graphs", tags=["graphs"])


class GraphCreatedResponse(BaseModel):
    workflow_id: str


class AddNodeRequest(BaseModel):
    operator: str = Field(..., min_length=1, validation_alias=AliasChoices("operator", "class_type"))
    inputs: dict[str, Any] = Field(default_factory=dict)


class AddNodeResponse(BaseModel):
    node_id: str


class ConnectRequest(BaseModel):
    from_node: str
    output_index: int = Field(default=0, ge=0)
    to_node: str
    input_name: str = Field(..., min_length=1)


class SetInputRequest(BaseModel):
    value: Any


class GraphResponse(BaseModel):
    workflow_id: str
    node_count: int
    graph: dict[str, Any]


class FinalizeResponse(GraphResponse):
    valid: bool
    errors: list[str] = Field(default_factory=list)


class OkResponse(BaseModel):
    ok: bool = True


def _require(store: GraphStore, workflow_id: str) -> GraphContext:
    try:
        return store.require(workflow_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


def _graph_response(ctx: GraphContext) -> GraphResponse:
    return GraphResponse(
        workflow_id=ctx.id,
        node_count=len(ctx.graph),
        graph=graph_builder.graph_to_wire(ctx.graph),
    )


@router.post("", response_model=GraphCreatedResponse, status_code=201)
def create_graph(store: GraphStore = Depends(get_graph_store)):
    ctx = store.create()
    store.cleanup()
    return GraphCreatedResponse(workflow_id=ctx.id)


@router.post("/{workflow_id}/nodes", response_model=AddNodeResponse, status_code=201)
def add_node(
    workflow_id: str,
    request: AddNodeRequest,
    store: GraphStore = Depends(get_graph_store),
):
    ctx = _require(store, workflow_id)
    node_id = graph_builder.add_node(ctx, request.operator, request.inputs)
    return AddNodeResponse(node_id=node_id)


@router.post("/{workflow_id}/connections", response_model=OkResponse)
def connect_nodes(
    workflow_id: str,
    request: ConnectRequest,
    store: GraphStore = Depends(get_graph_store),
):
    ctx = _require(store, workflow_id)
    try:
        graph_builder.connect(ctx, request.from_node, request.output_index, request.to_node, request.input_name)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return OkResponse()


@router.delete("/{workflow_id}/nodes/{node_id}", response_model=OkResponse)
def remove_node(workflow_id: str, node_id: str, store: GraphStore = Depends(get_graph_store)):
    ctx = _require(store, workflow_id)
    try:
        graph_builder.remove_node(ctx, node_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return OkResponse()


@router.put("/{workflow_id}/nodes/{node_id}/inputs/{input_name}", response_model=OkResponse)
def set_node_input(
    workflow_id: str,
    node_id: str,
    input_name: str,
    request: SetInputRequest,
    store: GraphStore = Depends(get_graph_store),
):
    ctx = _require(store, workflow_id)
    try:
        graph_builder.set_input(ctx, node_id, input_name, request.value)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return OkResponse()


@router.get("/{workflow_id}", response_model=GraphResponse)
def get_graph(workflow_id: str, store: GraphStore = Depends(get_graph_store)):
    return _graph_response(_require(store, workflow_id))


@router.get("/{workflow_id}/validate", response_model=ValidationResult)
def validate_graph(workflow_id: str, store: GraphStore = Depends(get_graph_store)):
    return graph_builder.validate(_require(store, workflow_id))


@router.post("/{workflow_id}/finalize", response_model=FinalizeResponse)
def finalize_graph(workflow_id: str, store: GraphStore = Depends(get_graph_store)):
    """Return the graph ready for submission together with its validation report."""
    ctx = _require(store, workflow_id)
    check = graph_builder.validate(ctx)
    return FinalizeResponse(
        **_graph_response(ctx).model_dump(),
        valid=check.valid,
        errors=check.errors,
    )


@router.delete("/{workflow_id}", response_model=OkResponse)
def delete_graph(workflow_id: str, store: GraphStore = Depends(get_graph_store)):
    if not store.delete(workflow_id):
        raise HTTPException(status_code=404, detail=f'Workflow "{workflow_id}" not found or expired')
    return OkResponse()
