"""Graph Model -- unveränderliche Beschreibung eines adaptiven Task-Graphen.

Kern-Konzepte:
  - Node:             Opake Arbeitseinheit (execute(snapshot, context) → Delta)
  - Edge:             linear, parallel, keyed (typisiert), keyed-dynamic (Rohname)
  - GraphDefinition:  Nodes + Edges + Reflection-Policies + Entry-Node
  - ExecutionContext: Geteilte Services + Queue für Node-angeforderte Mutationen

GraphDefinition ist ein Wert: Mutationen erzeugen eine neue Instanz,
der Executor bindet nur seine Referenz auf "aktuellen Graphen" neu.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Iterable,
    Mapping,
    Protocol,
    Sequence,
    Union,
    runtime_checkable,
)

from adaptgraph.graph.state import GraphState, KeyLike, StateKey, key_name

if TYPE_CHECKING:
    from adaptgraph.core.llm import CompletionClient
    from adaptgraph.graph.mutation import Mutation
    from adaptgraph.graph.reflection import ReflectionPolicy


# ── Constants ────────────────────────────────────────────────────

START = "__start__"
END = "__end__"
SENTINELS = frozenset({START, END})


# ── Node ─────────────────────────────────────────────────────────


@runtime_checkable
class Node(Protocol):
    """Vertrag für Domain-Nodes. Das Verhalten ist für den Kern opak."""

    @property
    def id(self) -> str: ...

    @property
    def input_requirements(self) -> Sequence[KeyLike]: ...

    @property
    def output_keys(self) -> Sequence[KeyLike]: ...

    async def execute(self, state: GraphState, context: ExecutionContext) -> Mapping[str, Any]: ...


NodeHandler = Callable[[GraphState, "ExecutionContext"], Awaitable[Mapping[str, Any]]]


@dataclass(frozen=True, eq=False)
class FunctionNode:
    """Node aus einer async-Funktion (handler(snapshot, context) → Delta)."""

    id: str
    handler: NodeHandler
    input_requirements: tuple[KeyLike, ...] = ()
    output_keys: tuple[KeyLike, ...] = ()
    description: str = ""

    async def execute(self, state: GraphState, context: ExecutionContext) -> Mapping[str, Any]:
        return await self.handler(state, context)

    def __repr__(self) -> str:
        return f"FunctionNode({self.id!r})"


def input_names(node: Node) -> list[str]:
    return [key_name(k) for k in node.input_requirements]


def output_names(node: Node) -> list[str]:
    return [key_name(k) for k in node.output_keys]


# ── Execution Context ────────────────────────────────────────────


@dataclass
class ExecutionContext:
    """Für Nodes sichtbarer Kontext.

    ``services`` enthält beliebige Domain-Clients (calendar, finance, ...),
    die der Kern nie interpretiert.
    """

    llm: CompletionClient | None = None
    services: dict[str, Any] = field(default_factory=dict)
    pending_mutations: list[Mutation] = field(default_factory=list)

    def service(self, name: str) -> Any:
        return self.services.get(name)

    def request_mutation(self, mutation: Mutation) -> None:
        """Bittet den Executor, den Graphen nach diesem Node zu verändern."""
        self.pending_mutations.append(mutation)

    def drain_mutations(self) -> list[Mutation]:
        drained = list(self.pending_mutations)
        self.pending_mutations.clear()
        return drained


# ── Edges ────────────────────────────────────────────────────────


class EdgeKind(str, Enum):
    """Typ einer Graph-Kante."""
    LINEAR = "linear"
    PARALLEL = "parallel"
    KEYED = "keyed"
    KEYED_DYNAMIC = "keyed_dynamic"


@dataclass(frozen=True)
class LinearEdge:
    """Unbedingter einzelner Nachfolger."""
    source: str
    target: str

    kind = EdgeKind.LINEAR

    @property
    def targets(self) -> tuple[str, ...]:
        return (self.target,)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind.value, "from": self.source, "to": self.target}


@dataclass(frozen=True)
class ParallelEdge:
    """Fan-out auf mehrere Nachfolger (Scheduling-Reihenfolge, keine Nebenläufigkeit)."""
    source: str
    destinations: tuple[str, ...]

    kind = EdgeKind.PARALLEL

    def __post_init__(self) -> None:
        object.__setattr__(self, "destinations", tuple(self.destinations))

    @property
    def targets(self) -> tuple[str, ...]:
        return self.destinations

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind.value, "from": self.source, "to": list(self.destinations)}


@dataclass(frozen=True, eq=False)
class _KeyedBase:
    source: str
    mapping: Mapping[str, str]
    fallback: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "mapping", dict(self.mapping))

    @property
    def targets(self) -> tuple[str, ...]:
        """Alle möglichen Ziele: Mapping-Werte plus Fallback (ohne Duplikate)."""
        return tuple(dict.fromkeys([*self.mapping.values(), self.fallback]))

    @property
    def key_name(self) -> str:
        raise NotImplementedError

    def resolve(self, state: GraphState) -> str:
        """Laufzeit-Dispatch: Wert des Keys im Mapping nachschlagen, sonst Fallback."""
        value = state.get(self.key_name)
        if not isinstance(value, str):
            return self.fallback
        return self.mapping.get(value, self.fallback)

    def __eq__(self, other: object) -> bool:
        if type(other) is not type(self):
            return NotImplemented
        return (
            self.source == other.source
            and self.key_name == other.key_name
            and dict(self.mapping) == dict(other.mapping)
            and self.fallback == other.fallback
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind.value,  # type: ignore[attr-defined]
            "from": self.source,
            "key": self.key_name,
            "branches": dict(self.mapping),
            "fallback": self.fallback,
        }


@dataclass(frozen=True, eq=False)
class KeyedEdge(_KeyedBase):
    """Nachfolger über einen typisierten State-Key."""
    key: StateKey[str]

    kind = EdgeKind.KEYED

    @property
    def key_name(self) -> str:
        return self.key.name


@dataclass(frozen=True, eq=False)
class KeyedDynamicEdge(_KeyedBase):
    """Wie KeyedEdge, Key aber nur per Name bekannt (synthetisierte Graphen)."""
    key: str

    kind = EdgeKind.KEYED_DYNAMIC

    @property
    def key_name(self) -> str:
        return self.key


Edge = Union[LinearEdge, ParallelEdge, KeyedEdge, KeyedDynamicEdge]


def edge_mentions(edge: Edge, node_ids: set[str] | frozenset[str]) -> bool:
    """True wenn die Kante einen der Nodes als Quelle, Ziel, Mapping-Wert oder Fallback nennt."""
    if edge.source in node_ids:
        return True
    return any(t in node_ids for t in edge.targets)


# ── Graph Definition ─────────────────────────────────────────────


@dataclass(frozen=True, eq=False)
class GraphDefinition:
    """Unveränderlicher Graph: Nodes, Edges, Reflection-Policies, Entry-Node."""

    nodes: tuple[Node, ...] = ()
    edges: tuple[Edge, ...] = ()
    reflection_points: Mapping[str, ReflectionPolicy] = field(default_factory=dict)
    entry_node: str = START
    name: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "nodes", tuple(self.nodes))
        object.__setattr__(self, "edges", tuple(self.edges))
        object.__setattr__(self, "reflection_points", dict(self.reflection_points))

    # ── Lookup ───────────────────────────────────────────────────

    @property
    def node_ids(self) -> list[str]:
        return [n.id for n in self.nodes]

    def has_node(self, node_id: str) -> bool:
        return any(n.id == node_id for n in self.nodes)

    def get_node(self, node_id: str) -> Node | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def get_outgoing_edges(self, node_id: str) -> list[Edge]:
        return [e for e in self.edges if e.source == node_id]

    def get_successors(self, node_id: str) -> list[str]:
        """Alle deklarierten Nachfolger (Keyed-Edges komplett expandiert)."""
        successors: list[str] = []
        for edge in self.get_outgoing_edges(node_id):
            for target in edge.targets:
                if target not in successors:
                    successors.append(target)
        return successors

    def replace(self, **changes: Any) -> GraphDefinition:
        return dataclasses.replace(self, **changes)

    # ── Validation ───────────────────────────────────────────────

    def dangling_edges(self) -> list[Edge]:
        """Kanten deren Endpunkte weder Node noch Sentinel sind."""
        allowed = set(self.node_ids) | SENTINELS
        return [
            e for e in self.edges
            if e.source not in allowed or any(t not in allowed for t in e.targets)
        ]

    def validate(self) -> list[str]:
        """Validiert den Graphen und gibt Fehler zurück."""
        errors: list[str] = []
        seen: set[str] = set()
        for node_id in self.node_ids:
            if node_id in seen:
                errors.append(f"Duplicate node id '{node_id}'")
            seen.add(node_id)
        if self.nodes and not self.has_node(self.entry_node):
            errors.append(f"Entry node '{self.entry_node}' not found in nodes")
        for edge in self.dangling_edges():
            errors.append(f"Edge {edge.to_dict()} references unknown node")
        for node_id in self.reflection_points:
            if not self.has_node(node_id):
                errors.append(f"Reflection point '{node_id}' not found in nodes")
        return errors

    # ── Export ───────────────────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "entry_node": self.entry_node,
            "nodes": self.node_ids,
            "edges": [e.to_dict() for e in self.edges],
            "reflection_points": sorted(self.reflection_points),
        }

    def to_mermaid(self) -> str:
        """Generiert Mermaid-Diagramm des Graphen."""
        lines = ["graph TD"]
        for node_id in self.node_ids:
            shape = f"{{{{{node_id}}}}}" if node_id in self.reflection_points else f"[{node_id}]"
            lines.append(f"    {node_id}{shape}")

        def label(name: str) -> str:
            return {START: "START((Start))", END: "END((End))"}.get(name, name)

        for edge in self.edges:
            src = label(edge.source)
            if isinstance(edge, (KeyedEdge, KeyedDynamicEdge)):
                for value, target in edge.mapping.items():
                    lines.append(f"    {src} -->|{value}| {label(target)}")
                lines.append(f"    {src} -.->|fallback| {label(edge.fallback)}")
            else:
                for target in edge.targets:
                    lines.append(f"    {src} --> {label(target)}")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"GraphDefinition(name={self.name!r}, nodes={self.node_ids}, entry={self.entry_node!r})"


def chain_edges(node_ids: Iterable[str]) -> list[Edge]:
    """Lineare Kette a → b → c als Edge-Liste."""
    ids = list(node_ids)
    return [LinearEdge(a, b) for a, b in zip(ids, ids[1:])]
