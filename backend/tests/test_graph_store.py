from datetime import datetime, timedelta, timezone

import pytest

import sys
from pathlib import Path

backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from comfyflow.models.execution import GraphRef
from comfyflow.services.graph_builder import NodeNotFoundError, add_node, connect
from comfyflow.services.graph_sources import (
    GraphSourceError,
    InvalidGraphError,
    ensure_valid,
    prepare_context,
    resolve_graph,
)
from comfyflow.services.graph_store import GraphNotFoundError, GraphStore
from comfyflow.services.templates import UnknownTemplateError


class TestGraphStore:
    def test_create_and_lookup(self):
        store = GraphStore()
        ctx = store.create()
        assert ctx.id in store
        assert store.get(ctx.id) is ctx
        assert store.require(ctx.id) is ctx
        assert len(store) == 1

    def test_require_missing(self):
        store = GraphStore()
        with pytest.raises(GraphNotFoundError, match='Workflow "wf_nope" not found or expired'):
            store.require("wf_nope")
        assert store.get("wf_nope") is None

    def test_delete(self):
        store = GraphStore()
        ctx = store.create()
        assert store.delete(ctx.id) is True
        assert store.delete(ctx.id) is False
        assert ctx.id not in store

    def test_cleanup_evicts_only_expired(self):
        store = GraphStore(ttl_seconds=60)
        old = store.create()
        fresh = store.create()
        old.created_at = datetime.now(timezone.utc) - timedelta(seconds=120)

        removed = store.cleanup()

        assert removed == 1
        assert old.id not in store
        assert fresh.id in store

    def test_cleanup_with_explicit_clock(self):
        store = GraphStore(ttl_seconds=10)
        ctx = store.create()
        assert store.cleanup(now=ctx.created_at + timedelta(seconds=5)) == 0
        assert store.cleanup(now=ctx.created_at + timedelta(seconds=11)) == 1
        assert len(store) == 0


class TestGraphSources:
    def test_requires_exactly_one_source(self):
        with pytest.raises(GraphSourceError, match="Provide one of"):
            resolve_graph(GraphRef())
        with pytest.raises(GraphSourceError, match="only one"):
            resolve_graph(GraphRef(template="txt2img", workflow_id="wf_x"))

    def test_session_graph_is_copied(self):
        store = GraphStore()
        ctx = store.create()
        add_node(ctx, "LoadImage", {"image": "a.png"})

        graph = resolve_graph(GraphRef(workflow_id=ctx.id), store)
        graph["1"].inputs["image"] = "b.png"

        assert ctx.graph["1"].inputs["image"] == "a.png"

    def test_session_without_store(self):
        with pytest.raises(GraphSourceError):
            resolve_graph(GraphRef(workflow_id="wf_x"))

    def test_unknown_session(self):
        with pytest.raises(GraphNotFoundError):
            resolve_graph(GraphRef(workflow_id="wf_x"), GraphStore())

    def test_unknown_template(self):
        with pytest.raises(UnknownTemplateError):
            resolve_graph(GraphRef(template="nope"))

    def test_inline_graph_accepts_class_type(self):
        ref = GraphRef.model_validate({"graph": {"1": {"class_type": "LoadImage", "inputs": {"image": "a.png"}}}})
        graph = resolve_graph(ref)
        assert graph["1"].operator == "LoadImage"

    def test_malformed_inline_graph(self):
        ref = GraphRef.model_validate({"graph": {"1": {"inputs": {"image": "a.png"}}, "2": "SaveImage"}})
        with pytest.raises(GraphSourceError, match="Inline graph is malformed"):
            resolve_graph(ref)

    def test_inline_graph_is_detached_from_the_request(self):
        ref = GraphRef.model_validate({"graph": {"1": {"operator": "LoadImage", "inputs": {"image": "a.png"}}}})
        graph = resolve_graph(ref)
        graph["1"].inputs["image"] = "b.png"
        assert ref.graph["1"]["inputs"]["image"] == "a.png"
        assert resolve_graph(ref)["1"].inputs["image"] == "a.png"

    def test_prepare_context_applies_overrides(self):
        ctx = prepare_context(
            GraphRef(template="txt2img", template_params={"prompt": "a cat"}),
            {"5": {"seed": 1234}, "2": {"text": "a dog"}},
        )
        assert ctx.graph["5"].inputs["seed"] == 1234
        assert ctx.graph["2"].inputs["text"] == "a dog"
        assert ctx.node_counter == 7

    def test_prepare_context_override_unknown_node(self):
        with pytest.raises(NodeNotFoundError):
            prepare_context(GraphRef(template="upscale"), {"42": {"x": 1}})

    def test_ensure_valid(self):
        store = GraphStore()
        ctx = store.create()
        a = add_node(ctx, "A")
        b = add_node(ctx, "B")
        connect(ctx, a, 0, b, "in")
        assert ensure_valid(ctx) is ctx

        ctx.graph[b].inputs["other"] = ["99", 0]
        with pytest.raises(InvalidGraphError) as exc_info:
            ensure_valid(ctx)
        assert exc_info.value.errors == ['Node "2" input "other" references non-existent node "99"']
