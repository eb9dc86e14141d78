"""
Graph builder: create and mutate workflow graphs in memory.

All mutating operations work on a GraphContext in place. A failing call
raises before touching the graph, so the graph is left unchanged.
Removing a node does not repair references to it; ``validate`` reports
those afterwards.
"""

from __future__ import annotations

import copy
from typing import Any

from comfyflow.models.graph import (
    Graph,
    GraphContext,
    GraphNode,
    ValidationResult,
    is_reference,
)


class NotFoundError(LookupError):
    """An operation referenced a context, node or template that does not exist."""


class NodeNotFoundError(NotFoundError):
    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f'Node "{node_id}" not found')


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def create_graph() -> GraphContext:
    """Return a fresh, empty context with its counter at 0."""
    return GraphContext()


def add_node(ctx: GraphContext, operator: str, inputs: dict[str, Any] | None = None) -> str:
    """Add a node and return its id ("1", "2", ...)."""
    ctx.node_counter += 1
    node_id = str(ctx.node_counter)
    ctx.graph[node_id] = GraphNode(operator=operator, inputs=dict(inputs or {}))
    return node_id


def connect(
    ctx: GraphContext,
    from_id: str,
    output_index: int,
    to_id: str,
    input_name: str,
) -> None:
    """Wire output ``output_index`` of ``from_id`` into ``to_id.inputs[input_name]``."""
    target = ctx.graph.get(to_id)
    if target is None:
        raise NodeNotFoundError(to_id)
    if from_id not in ctx.graph:
        raise NodeNotFoundError(from_id)
    target.inputs[input_name] = [from_id, output_index]


def set_input(ctx: GraphContext, node_id: str, input_name: str, value: Any) -> None:
    """Overwrite an input with a literal or a reference."""
    node = ctx.graph.get(node_id)
    if node is None:
        raise NodeNotFoundError(node_id)
    node.inputs[input_name] = value


def remove_node(ctx: GraphContext, node_id: str) -> None:
    if node_id not in ctx.graph:
        raise NodeNotFoundError(node_id)
    del ctx.graph[node_id]


def get_graph(ctx: GraphContext) -> Graph:
    """Return the live graph. Later mutations of ``ctx`` are visible through it."""
    return ctx.graph


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_graph(graph: Graph) -> ValidationResult:
    """Check every reference-shaped input and collect all violations."""
    errors: list[str] = []
    node_ids = set(graph.keys())

    for node_id, node in graph.items():
        for input_name, value in node.inputs.items():
            if not is_reference(value):
                continue
            ref_node_id, output_index = value
            if ref_node_id not in node_ids:
                errors.append(
                    f'Node "{node_id}" input "{input_name}" references '
                    f'non-existent node "{ref_node_id}"'
                )
            if output_index < 0:
                errors.append(
                    f'Node "{node_id}" input "{input_name}" has invalid '
                    f"output index {output_index}"
                )

    return ValidationResult(valid=not errors, errors=errors)


def validate(ctx: GraphContext) -> ValidationResult:
    return validate_graph(ctx.graph)


# ---------------------------------------------------------------------------
# Wire format
# ---------------------------------------------------------------------------


def graph_to_wire(graph: Graph, *, operator_key: str = "operator") -> dict[str, Any]:
    """
    Serialize a graph to its JSON wire object.

    ComfyUI expects ``class_type``; the tool boundary uses ``operator``.
    """
    return {
        node_id: {operator_key: node.operator, "inputs": copy.deepcopy(node.inputs)}
        for node_id, node in graph.items()
    }


def graph_from_wire(data: dict[str, Any]) -> Graph:
    """Parse a wire object keyed by node id (``operator`` or ``class_type``)."""
    return {str(node_id): GraphNode.model_validate(node) for node_id, node in data.items()}


def copy_graph(graph: Graph) -> Graph:
    return {node_id: node.model_copy(deep=True) for node_id, node in graph.items()}


def context_from_graph(graph: Graph) -> GraphContext:
    """
    Wrap a detached copy of ``graph`` in a new context.

    The counter continues after the largest numeric node id so new nodes
    never collide with existing ones.
    """
    numeric_ids = [int(node_id) for node_id in graph if node_id.isdigit()]
    return GraphContext(
        graph=copy_graph(graph),
        node_counter=max(numeric_ids, default=0),
    )
