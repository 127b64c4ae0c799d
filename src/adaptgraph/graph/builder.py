"""Graph Builder -- Fluent API zum Erstellen von GraphDefinitions.

    graph = (
        GraphBuilder("trip_planner")
        .add_function("load_messages", load_messages, outputs=["messages"])
        .add_function("plan_trip", plan_trip, inputs=[USER_REQUEST], outputs=["trip_plan"])
        .add_node(ReflectionNode(reflector, default_next=END))
        .chain(START, "load_messages", "plan_trip", "reflect")
        .add_keyed("reflect", NEXT_NODE, {"plan_trip": "plan_trip"}, fallback=END)
        .add_reflection("plan_trip", trip_policy)
        .build()
    )

Kompakt-Syntax:

    graph = linear_graph("pipeline", [("fetch", fetch), ("store", store)])
"""

from __future__ import annotations

from typing import Iterable, Mapping, Sequence

from adaptgraph.graph.reflection import HierarchicalReflector, ReflectionNode, ReflectionPolicy
from adaptgraph.graph.state import NEXT_NODE, KeyLike, StateKey
from adaptgraph.graph.types import (
    END,
    START,
    Edge,
    FunctionNode,
    GraphDefinition,
    KeyedDynamicEdge,
    KeyedEdge,
    LinearEdge,
    Node,
    NodeHandler,
    ParallelEdge,
)


class GraphBuilder:
    """Fluent Builder für GraphDefinitions."""

    def __init__(self, name: str = "") -> None:
        self._name = name
        self._nodes: list[Node] = []
        self._edges: list[Edge] = []
        self._reflection_points: dict[str, ReflectionPolicy] = {}
        self._entry: str = ""
        self._built = False

    # ── Node Methods ─────────────────────────────────────────────

    def add_node(self, node: Node) -> GraphBuilder:
        """Fügt einen Node hinzu (Ids müssen eindeutig sein)."""
        self._nodes.append(node)
        return self

    def add_nodes(self, nodes: Iterable[Node]) -> GraphBuilder:
        for node in nodes:
            self.add_node(node)
        return self

    def add_function(
        self,
        node_id: str,
        handler: NodeHandler,
        *,
        inputs: Sequence[KeyLike] = (),
        outputs: Sequence[KeyLike] = (),
        description: str = "",
    ) -> GraphBuilder:
        """Fügt einen FunctionNode aus einer async-Funktion hinzu."""
        return self.add_node(
            FunctionNode(node_id, handler, tuple(inputs), tuple(outputs), description)
        )

    def add_reflection(self, node_id: str, policy: ReflectionPolicy) -> GraphBuilder:
        """Hängt eine Reflection-Policy an einen Node."""
        self._reflection_points[node_id] = policy
        return self

    # ── Edge Methods ─────────────────────────────────────────────

    def add_edge(self, source: str, target: str) -> GraphBuilder:
        self._edges.append(LinearEdge(source, target))
        return self

    def add_parallel(self, source: str, targets: Sequence[str]) -> GraphBuilder:
        self._edges.append(ParallelEdge(source, tuple(targets)))
        return self

    def add_keyed(
        self,
        source: str,
        key: KeyLike,
        mapping: Mapping[str, str],
        *,
        fallback: str,
    ) -> GraphBuilder:
        """Keyed-Dispatch: StateKey → KeyedEdge, Rohname → KeyedDynamicEdge."""
        if isinstance(key, StateKey):
            self._edges.append(KeyedEdge(source, dict(mapping), fallback, key))
        else:
            self._edges.append(KeyedDynamicEdge(source, dict(mapping), fallback, key))
        return self

    # ── Convenience Methods ──────────────────────────────────────

    def chain(self, *node_ids: str) -> GraphBuilder:
        """Verkettet Nodes linear (A → B → C → ...).

        Beginnt die Kette mit START, wird der zweite Eintrag Entry-Node,
        sofern noch keiner gesetzt ist.
        """
        for source, target in zip(node_ids, node_ids[1:]):
            self.add_edge(source, target)

        if not self._entry:
            first = next((n for n in node_ids if n not in (START, END)), "")
            if first:
                self._entry = first
        return self

    def set_entry(self, node_id: str) -> GraphBuilder:
        self._entry = node_id
        return self

    # ── Build ────────────────────────────────────────────────────

    def _definition(self) -> GraphDefinition:
        entry = self._entry or (self._nodes[0].id if self._nodes else START)
        return GraphDefinition(
            nodes=tuple(self._nodes),
            edges=tuple(self._edges),
            reflection_points=dict(self._reflection_points),
            entry_node=entry,
            name=self._name,
        )

    def build(self) -> GraphDefinition:
        """Erstellt und validiert die GraphDefinition.

        Raises:
            ValueError: Wenn der Graph ungültig ist
        """
        if self._built:
            raise ValueError("GraphBuilder already built -- create a new builder")

        graph = self._definition()
        errors = graph.validate()
        if errors:
            raise ValueError(f"Invalid graph: {'; '.join(errors)}")

        self._built = True
        return graph

    def build_unchecked(self) -> GraphDefinition:
        """Erstellt GraphDefinition ohne Validierung (für Tests)."""
        self._built = True
        return self._definition()

    # ── Inspection ───────────────────────────────────────────────

    @property
    def node_count(self) -> int:
        return len(self._nodes)

    @property
    def edge_count(self) -> int:
        return len(self._edges)


# ── Prebuilt Graph Templates ────────────────────────────────────

def linear_graph(name: str, steps: list[tuple[str, NodeHandler]]) -> GraphDefinition:
    """Erstellt einen linearen Graphen (START → A → B → C → END)."""
    builder = GraphBuilder(name)
    for node_id, handler in steps:
        builder.add_function(node_id, handler)
    builder.chain(START, *[n for n, _ in steps], END)
    return builder.build()


def reflective_graph(
    name: str,
    nodes: Sequence[Node],
    reflector: HierarchicalReflector,
    *,
    retry_targets: Sequence[str] | None = None,
    finish: str = END,
) -> GraphDefinition:
    """Linearer Graph mit abschließendem Reflection-Node.

    START → n1 → … → reflect, danach Keyed-Dispatch über ``next_node``:
    refine springt zurück auf ein Ziel aus ``retry_targets`` (Default: alle
    Nodes), sonst weiter nach ``finish``.
    """
    reflect = ReflectionNode(reflector, default_next=finish)
    ids = [n.id for n in nodes]
    targets = list(retry_targets) if retry_targets is not None else ids
    return (
        GraphBuilder(name)
        .add_nodes(nodes)
        .add_node(reflect)
        .chain(START, *ids, reflect.id)
        .add_keyed(
            reflect.id,
            NEXT_NODE,
            {target: target for target in targets},
            fallback=finish,
        )
        .build()
    )
