"""
Graph models: the mutable, id-keyed representation of a ComfyUI workflow.

A graph maps node ids ("1", "2", ...) to nodes. Node inputs are either
literals or references to another node's output slot. References are kept
in their wire shape, ``[node_id, output_index]``, so a graph can be sent to
the engine without translation of its inputs.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, Field


class GraphNode(BaseModel):
    operator: str = Field(validation_alias=AliasChoices("operator", "class_type"))
    inputs: dict[str, Any] = Field(default_factory=dict)


Graph = dict[str, GraphNode]


def _new_graph_id() -> str:
    return f"wf_{uuid4().hex[:16]}"


class GraphContext(BaseModel):
    """One graph-construction session: the graph, its id counter and its age."""

    id: str = Field(default_factory=_new_graph_id)
    graph: Graph = Field(default_factory=dict)
    node_counter: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ValidationResult(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)


def is_reference(value: Any) -> bool:
    """True when ``value`` has the ``[node_id, output_index]`` shape."""
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        return False
    node_id, output_index = value
    return (
        isinstance(node_id, str)
        and isinstance(output_index, int)
        and not isinstance(output_index, bool)
    )
