from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from comfyflow.api.dependencies import get_graph_store
from comfyflow.services.graph_builder import context_from_graph, graph_to_wire
from comfyflow.services.graph_store import GraphStore
from comfyflow.services.templates import (
    UnknownTemplateError,
    build_from_template,
    list_templates,
)

router = APIRouter(prefix="/templates", tags=["templates"])


class TemplateListResponse(BaseModel):
    templates: list[str]


class BuildTemplateRequest(BaseModel):
    params: dict[str, Any] = Field(default_factory=dict)
    # Also open a graph session seeded with the result.
    create_session: bool = False


class BuildTemplateResponse(BaseModel):
    template: str
    graph: dict[str, Any]
    workflow_id: str | None = None


@router.get("", response_model=TemplateListResponse)
def get_templates():
    return TemplateListResponse(templates=list_templates())


@router.post("/{name}/build", response_model=BuildTemplateResponse)
def build_template(
    name: str,
    request: BuildTemplateRequest,
    store: GraphStore = Depends(get_graph_store),
):
    try:
        graph = build_from_template(name, request.params)
    except UnknownTemplateError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    workflow_id = None
    if request.create_session:
        ctx = context_from_graph(graph)
        store.update(ctx.id, ctx)
        store.cleanup()
        workflow_id = ctx.id

    return BuildTemplateResponse(template=name, graph=graph_to_wire(graph), workflow_id=workflow_id)
