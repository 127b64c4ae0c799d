"""Tests für den GraphBuilder und die Graph-Templates."""

from __future__ import annotations

import pytest

from adaptgraph.graph.builder import GraphBuilder, linear_graph, reflective_graph
from adaptgraph.graph.engine import AdaptiveExecutor
from adaptgraph.graph.reflection import (
    HierarchicalReflector,
    ReflectionLevel,
    ReflectionPolicy,
    ReflectionResult,
)
from adaptgraph.graph.state import NEXT_NODE
from adaptgraph.graph.types import (
    END,
    START,
    KeyedDynamicEdge,
    KeyedEdge,
    LinearEdge,
    ParallelEdge,
)


async def noop(state, context):
    return {}


class TestGraphBuilder:
    def test_chain_sets_entry(self, node_factory):
        graph = (
            GraphBuilder("pipeline")
            .add_node(node_factory("a"))
            .add_node(node_factory("b"))
            .chain(START, "a", "b", END)
            .build()
        )
        assert graph.name == "pipeline"
        assert graph.entry_node == "a"
        assert graph.edges == (LinearEdge(START, "a"), LinearEdge("a", "b"), LinearEdge("b", END))

    def test_entry_defaults_to_first_node(self, node_factory):
        graph = GraphBuilder().add_nodes([node_factory("x"), node_factory("y")]).build()
        assert graph.entry_node == "x"

    def test_set_entry_wins(self, node_factory):
        graph = (
            GraphBuilder()
            .add_nodes([node_factory("x"), node_factory("y")])
            .set_entry("y")
            .chain("x", "y")
            .build()
        )
        assert graph.entry_node == "y"

    def test_add_function(self):
        builder = GraphBuilder().add_function(
            "fetch", noop, inputs=["user_request"], outputs=["data"], description="Fetch data"
        )
        node = builder.build().get_node("fetch")
        assert node.input_requirements == ("user_request",)
        assert node.output_keys == ("data",)
        assert node.description == "Fetch data"

    def test_edge_kinds(self, node_factory):
        builder = (
            GraphBuilder()
            .add_nodes([node_factory(n) for n in ("r", "a", "b")])
            .add_parallel("r", ["a", "b"])
            .add_keyed("a", NEXT_NODE, {"b": "b"}, fallback=END)
            .add_keyed("b", "choice", {"a": "a"}, fallback=END)
        )
        assert builder.node_count == 3
        assert builder.edge_count == 3
        graph = builder.build()
        assert isinstance(graph.edges[0], ParallelEdge)
        assert isinstance(graph.edges[1], KeyedEdge)
        assert isinstance(graph.edges[2], KeyedDynamicEdge)

    def test_invalid_graph_raises(self, node_factory):
        builder = GraphBuilder().add_node(node_factory("a")).add_edge("a", "ghost")
        with pytest.raises(ValueError, match="Invalid graph"):
            builder.build()

    def test_duplicate_ids_raise(self, node_factory):
        builder = GraphBuilder().add_node(node_factory("a")).add_node(node_factory("a"))
        with pytest.raises(ValueError, match="Duplicate node id"):
            builder.build()

    def test_build_twice_raises(self, node_factory):
        builder = GraphBuilder().add_node(node_factory("a"))
        builder.build()
        with pytest.raises(ValueError, match="already built"):
            builder.build()

    def test_build_unchecked(self, node_factory):
        graph = GraphBuilder().add_node(node_factory("a")).add_edge("a", "ghost").build_unchecked()
        assert graph.dangling_edges() == [LinearEdge("a", "ghost")]

    def test_reflection_point_validated(self, node_factory):
        policy = ReflectionPolicy(lambda s: ReflectionResult.success())
        builder = GraphBuilder().add_node(node_factory("a")).add_reflection("ghost", policy)
        with pytest.raises(ValueError, match="Reflection point"):
            builder.build()


# ============================================================================
# Templates
# ============================================================================


class TestTemplates:
    @pytest.mark.asyncio
    async def test_linear_graph_runs(self):
        async def fetch(state, context):
            return {"data": [1, 2, 3]}

        async def total(state, context):
            return {"total": sum(state["data"])}

        graph = linear_graph("sum", [("fetch", fetch), ("total", total)])
        state = await AdaptiveExecutor().execute(graph)
        assert state.action_path == ["fetch", "total"]
        assert state["total"] == 6

    def test_reflective_graph_shape(self, node_factory):
        graph = reflective_graph(
            "drafts",
            [node_factory("load_messages"), node_factory("draft_email")],
            HierarchicalReflector({}),
            retry_targets=["draft_email"],
        )
        assert graph.node_ids == ["load_messages", "draft_email", "reflect"]
        keyed = graph.get_outgoing_edges("reflect")[0]
        assert keyed.mapping == {"draft_email": "draft_email"}
        assert keyed.fallback == END
        assert graph.validate() == []

    @pytest.mark.asyncio
    async def test_reflective_graph_executes(self, node_factory):
        tactical = ReflectionPolicy(
            lambda s: ReflectionResult.success() if s.get("drafted_replies")
            else ReflectionResult.refine("draft_email", "Email drafts missing"),
        )
        graph = reflective_graph(
            "drafts",
            [node_factory("draft_email", {"drafted_replies": ["Hi Bob"]})],
            HierarchicalReflector({ReflectionLevel.TACTICAL: tactical}),
        )
        state = await AdaptiveExecutor().execute(graph)
        assert state.action_path == ["draft_email", "reflect"]
        assert state["reflection_action"] == "success"
        assert state["next_node"] == END
