"""
Resolve a GraphRef (inline graph, live session, or template) into a
detached graph that callers may modify freely.
"""

from __future__ import annotations

from pydantic import ValidationError

from comfyflow.models.execution import GraphRef, NodeOverrides
from comfyflow.models.graph import Graph, GraphContext
from comfyflow.services.graph_builder import (
    context_from_graph,
    copy_graph,
    graph_from_wire,
    set_input,
    validate,
)
from comfyflow.services.graph_store import GraphStore
from comfyflow.services.templates import build_from_template


class GraphSourceError(ValueError):
    """A graph reference names no source, or more than one."""


class InvalidGraphError(ValueError):
    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("Graph failed validation: " + "; ".join(errors))


def resolve_graph(ref: GraphRef, store: GraphStore | None = None) -> Graph:
    sources = [
        name
        for name, present in (
            ("graph", ref.graph is not None),
            ("workflow_id", ref.workflow_id is not None),
            ("template", ref.template is not None),
        )
        if present
    ]
    if len(sources) != 1:
        if not sources:
            raise GraphSourceError("Provide one of 'graph', 'workflow_id' or 'template'")
        raise GraphSourceError(f"Provide only one graph source, got: {', '.join(sources)}")

    if ref.graph is not None:
        try:
            return copy_graph(graph_from_wire(ref.graph))
        except ValidationError as exc:
            raise GraphSourceError(f"Inline graph is malformed: {exc}") from exc
    if ref.workflow_id is not None:
        if store is None:
            raise GraphSourceError("Workflow sessions are not available here")
        return copy_graph(store.require(ref.workflow_id).graph)
    return build_from_template(ref.template, ref.template_params)


def prepare_context(
    ref: GraphRef,
    overrides: NodeOverrides | None = None,
    store: GraphStore | None = None,
) -> GraphContext:
    """Resolve ``ref`` and apply per-node literal overrides to a fresh context."""
    ctx = context_from_graph(resolve_graph(ref, store))
    for node_id, inputs in (overrides or {}).items():
        for input_name, value in inputs.items():
            set_input(ctx, node_id, input_name, value)
    return ctx


def ensure_valid(ctx: GraphContext) -> GraphContext:
    """Raise InvalidGraphError unless every reference in ``ctx`` resolves."""
    check = validate(ctx)
    if not check.valid:
        raise InvalidGraphError(check.errors)
    return ctx
