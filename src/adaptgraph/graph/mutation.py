"""Graph Mutator -- reine Graph → Graph Transformationen.

Mutationen:
  - Inject:   neue Nodes direkt hinter einem Anker-Node einspleißen
  - Prune:    Nodes samt aller referenzierenden Kanten entfernen
  - Reroute:  alle ausgehenden Kanten eines Nodes durch eine lineare ersetzen
  - NO_MUTATION

Der Mutator führt nie Nodes aus und verändert nie den übergebenen Graphen.
Jeder Aufruf hängt eine lesbare Zeile an ``mutation_log`` an.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Union

from adaptgraph.graph.types import (
    END,
    START,
    Edge,
    GraphDefinition,
    KeyedDynamicEdge,
    KeyedEdge,
    LinearEdge,
    Node,
    ParallelEdge,
    edge_mentions,
)
from adaptgraph.utils.logging import get_logger

log = get_logger(__name__)


# ── Mutation Records ─────────────────────────────────────────────


@dataclass(frozen=True, eq=False)
class Inject:
    after: str
    nodes: tuple[Node, ...]
    reason: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "nodes", tuple(self.nodes))

    @property
    def node_ids(self) -> list[str]:
        return [n.id for n in self.nodes]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Inject):
            return NotImplemented
        return (self.after, self.node_ids, self.reason) == (other.after, other.node_ids, other.reason)

    def __str__(self) -> str:
        return f"Injected nodes after {self.after}: [{', '.join(self.node_ids)}] ({self.reason})"


@dataclass(frozen=True, eq=False)
class Prune:
    node_ids: tuple[str, ...]
    reason: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "node_ids", tuple(self.node_ids))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Prune):
            return NotImplemented
        return set(self.node_ids) == set(other.node_ids) and self.reason == other.reason

    def __str__(self) -> str:
        return f"Pruned nodes {list(self.node_ids)} ({self.reason})"


@dataclass(frozen=True)
class Reroute:
    source: str
    target: str
    reason: str = ""

    def __str__(self) -> str:
        return f"Rerouted from {self.source} to {self.target} ({self.reason})"


@dataclass(frozen=True)
class NoMutation:
    def __str__(self) -> str:
        return "No mutation"


NO_MUTATION = NoMutation()

Mutation = Union[Inject, Prune, Reroute, NoMutation]


def is_mutation(value: Mutation | None) -> bool:
    """True für alles außer None und NO_MUTATION."""
    return value is not None and not isinstance(value, NoMutation)


# ── Mutator ──────────────────────────────────────────────────────


class GraphMutator:
    """Wendet Mutationen auf GraphDefinitions an.

    Alle Operationen sind total: nicht wohlgeformte Eingaben (unbekannter
    Anker, leere Node-Liste) liefern den Graphen unverändert zurück.
    """

    def __init__(self) -> None:
        self.mutation_log: list[str] = []

    def apply(self, graph: GraphDefinition, mutation: Mutation) -> GraphDefinition:
        if isinstance(mutation, Inject):
            return self.inject(graph, mutation.after, mutation.nodes, mutation.reason)
        if isinstance(mutation, Prune):
            return self.prune(graph, mutation.node_ids, mutation.reason)
        if isinstance(mutation, Reroute):
            return self.reroute(graph, mutation.source, mutation.target, mutation.reason)
        return graph

    # ── Inject ───────────────────────────────────────────────────

    def inject(
        self,
        graph: GraphDefinition,
        after: str,
        nodes: Iterable[Node],
        reason: str = "",
    ) -> GraphDefinition:
        """Spleißt ``nodes`` als Kette hinter ``after`` ein.

        A → B wird zu A → N1 → … → Nk → B. Alle bisherigen ausgehenden
        Kanten von A starten danach bei Nk. Hat A keine ausgehenden Kanten,
        wird nur die Kette A → N1 → … → Nk angehängt.
        """
        new_nodes = list(nodes)
        if not new_nodes:
            return graph
        if after != START and not graph.has_node(after):
            log.warning("inject_unknown_anchor", after=after)
            return graph

        self._log(Inject(after, tuple(new_nodes), reason))

        existing = set(graph.node_ids)
        merged_nodes = list(graph.nodes)
        for node in new_nodes:
            if node.id not in existing:
                merged_nodes.append(node)
                existing.add(node.id)

        first, last = new_nodes[0].id, new_nodes[-1].id
        chain: list[Edge] = [LinearEdge(after, first)]
        chain += [LinearEdge(a.id, b.id) for a, b in zip(new_nodes, new_nodes[1:])]

        chain_ids = {node.id for node in new_nodes}
        edges: list[Edge] = []
        spliced = False
        for edge in graph.edges:
            if edge.source == after:
                if not spliced:
                    edges.extend(chain)
                    spliced = True
                moved = _with_source(edge, last, exclude=chain_ids)
                if moved is not None:
                    edges.append(moved)
            else:
                edges.append(edge)
        if not spliced:
            edges.extend(chain)

        return graph.replace(nodes=tuple(merged_nodes), edges=tuple(_dedupe(edges)))

    # ── Prune ────────────────────────────────────────────────────

    def prune(
        self,
        graph: GraphDefinition,
        node_ids: Iterable[str],
        reason: str = "",
    ) -> GraphDefinition:
        """Entfernt Nodes und jede Kante, die sie als Quelle, Ziel, Mapping-Wert oder Fallback nennt."""
        prune_set = frozenset(node_ids)
        self._log(Prune(tuple(sorted(prune_set)), reason))
        return graph.replace(
            nodes=tuple(n for n in graph.nodes if n.id not in prune_set),
            edges=tuple(e for e in graph.edges if not edge_mentions(e, prune_set)),
            reflection_points={
                k: v for k, v in graph.reflection_points.items() if k not in prune_set
            },
        )

    # ── Reroute ──────────────────────────────────────────────────

    def reroute(
        self,
        graph: GraphDefinition,
        source: str,
        target: str,
        reason: str = "",
    ) -> GraphDefinition:
        """Ersetzt alle ausgehenden Kanten von ``source`` durch source → target."""
        known = set(graph.node_ids) | {START, END}
        if source not in known or target not in known:
            log.warning("reroute_unknown_node", source=source, target=target)
            return graph

        self._log(Reroute(source, target, reason))
        edges = [e for e in graph.edges if e.source != source]
        edges.append(LinearEdge(source, target))
        return graph.replace(edges=tuple(edges))

    def _log(self, mutation: Mutation) -> None:
        entry = str(mutation)
        self.mutation_log.append(entry)
        log.info("graph_mutation", description=entry)


def _with_source(edge: Edge, source: str, exclude: set[str]) -> Edge | None:
    """Verschiebt ``edge`` auf ``source``; Ziele aus ``exclude`` fallen weg.

    Die eingespleißten Nodes sind bereits über die Kette erreichbar, eine
    Kante zurück in die Kette wäre eine Schleife (z. B. f → f).
    """
    if isinstance(edge, LinearEdge):
        if edge.target in exclude:
            return None
        return LinearEdge(source, edge.target)
    if isinstance(edge, ParallelEdge):
        destinations = tuple(d for d in edge.destinations if d not in exclude)
        if not destinations:
            return None
        return ParallelEdge(source, destinations)
    mapping = {k: v for k, v in edge.mapping.items() if v not in exclude}
    fallback = END if edge.fallback in exclude else edge.fallback
    if isinstance(edge, KeyedEdge):
        return KeyedEdge(source, mapping, fallback, edge.key)
    return KeyedDynamicEdge(source, mapping, fallback, edge.key)


def _dedupe(edges: list[Edge]) -> list[Edge]:
    result: list[Edge] = []
    for edge in edges:
        if edge not in result:
            result.append(edge)
    return result
