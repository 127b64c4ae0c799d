"""Tests für den Graph Mutator (Inject, Prune, Reroute)."""

from __future__ import annotations

import pytest

from adaptgraph.graph.mutation import (
    NO_MUTATION,
    GraphMutator,
    Inject,
    Prune,
    Reroute,
    is_mutation,
)
from adaptgraph.graph.state import NEXT_NODE
from adaptgraph.graph.types import (
    END,
    START,
    GraphDefinition,
    KeyedEdge,
    LinearEdge,
    ParallelEdge,
)


@pytest.fixture
def ab_graph(node_factory) -> GraphDefinition:
    return GraphDefinition(
        nodes=(node_factory("a"), node_factory("b")),
        edges=(LinearEdge(START, "a"), LinearEdge("a", "b"), LinearEdge("b", END)),
        entry_node="a",
    )


def assert_no_dangling(graph: GraphDefinition) -> None:
    assert graph.dangling_edges() == []


# ============================================================================
# Mutation Records
# ============================================================================


class TestMutationRecords:
    def test_descriptions(self, node_factory):
        inject = Inject("a", (node_factory("n1"), node_factory("n2")), "low finance")
        assert str(inject) == "Injected nodes after a: [n1, n2] (low finance)"
        assert str(Prune(("x", "y"), "unused")) == "Pruned nodes ['x', 'y'] (unused)"
        assert str(Reroute("a", "c", "skip")) == "Rerouted from a to c (skip)"
        assert str(NO_MUTATION) == "No mutation"

    def test_inject_equality_by_node_id(self, node_factory):
        assert Inject("a", (node_factory("n"),), "r") == Inject("a", (node_factory("n"),), "r")
        assert Inject("a", (node_factory("n"),), "r") != Inject("a", (node_factory("m"),), "r")

    def test_prune_equality_is_set_based(self):
        assert Prune(("x", "y"), "r") == Prune(("y", "x"), "r")

    def test_is_mutation(self):
        assert not is_mutation(None)
        assert not is_mutation(NO_MUTATION)
        assert is_mutation(Reroute("a", "b"))


# ============================================================================
# Inject
# ============================================================================


class TestInject:
    def test_splices_chain(self, ab_graph, node_factory):
        mutator = GraphMutator()
        g = mutator.inject(ab_graph, "a", [node_factory("n1"), node_factory("n2")], "why")
        assert LinearEdge("a", "b") not in g.edges
        assert LinearEdge("a", "n1") in g.edges
        assert LinearEdge("n1", "n2") in g.edges
        assert LinearEdge("n2", "b") in g.edges
        assert g.get_outgoing_edges("a") == [LinearEdge("a", "n1")]
        assert_no_dangling(g)

    def test_original_unchanged(self, ab_graph, node_factory):
        GraphMutator().inject(ab_graph, "a", [node_factory("n1")])
        assert ab_graph.node_ids == ["a", "b"]
        assert LinearEdge("a", "b") in ab_graph.edges

    def test_no_outgoing_appends_chain(self, ab_graph, node_factory):
        g = GraphMutator().inject(ab_graph.replace(edges=(LinearEdge(START, "a"),)), "a",
                                  [node_factory("n1"), node_factory("n2")])
        assert g.get_successors("a") == ["n1"]
        assert g.get_successors("n1") == ["n2"]
        assert g.get_successors("n2") == []

    def test_parallel_and_keyed_are_resourced(self, node_factory):
        g = GraphDefinition(
            nodes=tuple(node_factory(n) for n in ("a", "b", "c")),
            edges=(
                ParallelEdge("a", ("b", "c")),
                KeyedEdge("a", {"go": "b"}, "c", NEXT_NODE),
            ),
            entry_node="a",
        )
        out = GraphMutator().inject(g, "a", [node_factory("n")])
        assert out.get_outgoing_edges("a") == [LinearEdge("a", "n")]
        assert ParallelEdge("n", ("b", "c")) in out.edges
        assert KeyedEdge("n", {"go": "b"}, "c", NEXT_NODE) in out.edges
        assert_no_dangling(out)

    def test_existing_node_not_duplicated(self, ab_graph, node_factory):
        g = GraphMutator().inject(ab_graph, "a", [node_factory("b")])
        assert g.node_ids.count("b") == 1
        assert LinearEdge("b", "b") not in g.edges

    def test_reinject_existing_successor_has_no_self_loop(self, node_factory):
        """Erneutes Injizieren eines bereits verketteten Nodes erzeugt keine Schleife f → f."""
        f = node_factory("f")
        g = GraphDefinition(
            nodes=(node_factory("a"), f, node_factory("b")),
            edges=(LinearEdge(START, "a"), LinearEdge("a", "f"),
                   LinearEdge("f", "b"), LinearEdge("b", END)),
            entry_node="a",
        )
        out = GraphMutator().inject(g, "a", [f])
        assert LinearEdge("f", "f") not in out.edges
        assert LinearEdge("a", "f") in out.edges
        assert LinearEdge("f", "b") in out.edges
        assert out.node_ids.count("f") == 1
        assert_no_dangling(out)

    def test_resourced_branches_skip_chain_nodes(self, node_factory):
        g = GraphDefinition(
            nodes=tuple(node_factory(n) for n in ("a", "b", "n")),
            edges=(
                ParallelEdge("a", ("n", "b")),
                KeyedEdge("a", {"go": "n", "stay": "b"}, "n", NEXT_NODE),
            ),
            entry_node="a",
        )
        out = GraphMutator().inject(g, "a", [node_factory("n")])
        assert ParallelEdge("n", ("b",)) in out.edges
        assert KeyedEdge("n", {"stay": "b"}, END, NEXT_NODE) in out.edges
        assert "n" not in out.get_successors("n")

    def test_empty_nodes_is_noop(self, ab_graph):
        mutator = GraphMutator()
        assert mutator.inject(ab_graph, "a", []) is ab_graph
        assert mutator.mutation_log == []

    def test_unknown_anchor_is_noop(self, ab_graph, node_factory):
        assert GraphMutator().inject(ab_graph, "ghost", [node_factory("n")]) is ab_graph

    def test_logs_description(self, ab_graph, node_factory):
        mutator = GraphMutator()
        mutator.inject(ab_graph, "a", [node_factory("n")], "reason")
        assert mutator.mutation_log == ["Injected nodes after a: [n] (reason)"]


# ============================================================================
# Prune & Reroute
# ============================================================================


class TestPrune:
    def test_removes_all_mentions(self, node_factory):
        g = GraphDefinition(
            nodes=tuple(node_factory(n) for n in ("a", "b", "x")),
            edges=(
                LinearEdge("a", "x"),
                LinearEdge("x", "b"),
                ParallelEdge("a", ("b", "x")),
                KeyedEdge("a", {"k": "x"}, "b", NEXT_NODE),
                KeyedEdge("b", {"k": "a"}, "x", NEXT_NODE),
                LinearEdge("a", "b"),
            ),
            entry_node="a",
        )
        out = GraphMutator().prune(g, ["x"], "unused")
        assert out.node_ids == ["a", "b"]
        assert out.edges == (LinearEdge("a", "b"),)
        assert_no_dangling(out)

    def test_drops_reflection_point(self, ab_graph):
        g = ab_graph.replace(reflection_points={"b": object()})
        assert GraphMutator().prune(g, ["b"]).reflection_points == {}


class TestReroute:
    def test_replaces_all_outgoing(self, node_factory):
        g = GraphDefinition(
            nodes=tuple(node_factory(n) for n in ("a", "b", "c")),
            edges=(
                ParallelEdge("a", ("b", "c")),
                KeyedEdge("a", {"k": "b"}, "c", NEXT_NODE),
                LinearEdge("b", "c"),
            ),
            entry_node="a",
        )
        out = GraphMutator().reroute(g, "a", "c", "skip b")
        assert out.get_outgoing_edges("a") == [LinearEdge("a", "c")]
        assert LinearEdge("b", "c") in out.edges

    def test_reroute_to_end(self, ab_graph):
        out = GraphMutator().reroute(ab_graph, "a", END)
        assert out.get_successors("a") == [END]

    def test_unknown_target_is_noop(self, ab_graph):
        assert GraphMutator().reroute(ab_graph, "a", "ghost") is ab_graph


class TestNoDanglingProperty:
    @pytest.mark.parametrize("mutation_kind", ["inject", "prune", "reroute"])
    def test_mutations_keep_edges_valid(self, ab_graph, node_factory, mutation_kind):
        mutation = {
            "inject": Inject("a", (node_factory("n1"), node_factory("n2")), "r"),
            "prune": Prune(("a",), "r"),
            "reroute": Reroute("a", END, "r"),
        }[mutation_kind]
        assert_no_dangling(GraphMutator().apply(ab_graph, mutation))

    def test_apply_no_mutation(self, ab_graph):
        assert GraphMutator().apply(ab_graph, NO_MUTATION) is ab_graph
