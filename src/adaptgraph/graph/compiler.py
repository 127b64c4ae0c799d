"""Graph Compiler -- macht aus einer GraphDefinition einen ausführbaren Graphen.

Aufgaben:
  - Precondition-Check pro Node (alle Input-Keys müssen vorhanden sein)
  - Node-Fehler in NodeExecutionError verpacken
  - Per-Node Reflection-Policy nach der Ausführung auswerten und ins Delta falten
  - Kanten verdrahten: Duplikate zusammenfassen, Kanten zu unbekannten
    Nodes verwerfen, Keyed-Dispatch inklusive Fallback
  - START → Entry-Node sicherstellen
"""

from __future__ import annotations

import time
from collections import deque
from typing import Any

from adaptgraph.core.errors import (
    AdaptGraphError,
    MissingRequiredInputError,
    NodeExecutionError,
)
from adaptgraph.graph.reflection import ReflectionLevel, reflection_updates
from adaptgraph.graph.state import GraphState
from adaptgraph.graph.types import (
    END,
    SENTINELS,
    START,
    ExecutionContext,
    GraphDefinition,
    KeyedDynamicEdge,
    KeyedEdge,
    Node,
    input_names,
)
from adaptgraph.utils.logging import get_logger

log = get_logger(__name__)

MAX_STEPS = 200

_Keyed = (KeyedEdge, KeyedDynamicEdge)


class CompiledGraph:
    """Ausführbare Form eines Graphen.

    Usage:
        compiled = GraphCompiler().compile(graph, ExecutionContext(llm=client))
        state = await compiled.invoke({"user_request": "..."})
    """

    def __init__(
        self,
        graph: GraphDefinition,
        context: ExecutionContext,
        static_edges: dict[str, list[str]],
        dispatchers: dict[str, list[KeyedEdge | KeyedDynamicEdge]],
        discarded: list[dict[str, Any]],
    ) -> None:
        self.graph = graph
        self.context = context
        self._static = static_edges
        self._dispatchers = dispatchers
        self.discarded_edges = discarded

    # ── Node Execution ───────────────────────────────────────────

    def check_preconditions(self, node: Node, state: GraphState) -> None:
        for key in input_names(node):
            if key not in state:
                raise MissingRequiredInputError(node.id, key)

    async def run_node(self, node_id: str, state: GraphState) -> dict[str, Any]:
        """Führt einen Node auf einem Snapshot aus und liefert sein Delta.

        Der übergebene State wird nicht verändert.
        """
        node = self.graph.get_node(node_id)
        if node is None:
            raise AdaptGraphError(
                f"Node '{node_id}' not found in graph",
                error_code="NODE_NOT_FOUND",
                details={"node": node_id},
            )
        self.check_preconditions(node, state)

        snapshot = state.snapshot()
        try:
            result = await node.execute(snapshot, self.context)
        except AdaptGraphError:
            raise
        except Exception as exc:
            log.error("node_execution_failed", node=node_id, error=str(exc))
            raise NodeExecutionError(node_id, exc) from exc

        delta = dict(result or {})

        policy = self.graph.reflection_points.get(node_id)
        if policy is not None:
            merged = state.snapshot()
            merged.merge(delta)
            outcome = policy.assess(merged, f"node:{node_id}")
            delta.update(
                reflection_updates(merged, outcome.result, ReflectionLevel.EXECUTION, [outcome])
            )
            log.debug(
                "node_reflection",
                node=node_id,
                action=outcome.result.kind.value,
                reason=outcome.result.reason,
            )
        return delta

    # ── Traversal ────────────────────────────────────────────────

    def successors(self, node_id: str, state: GraphState) -> list[str]:
        """Laufzeit-Nachfolger: statische Ziele plus aufgelöste Keyed-Dispatches."""
        result = list(self._static.get(node_id, []))
        for edge in self._dispatchers.get(node_id, []):
            target = edge.resolve(state)
            if target not in result:
                result.append(target)
        return result

    async def invoke(self, inputs: dict[str, Any] | GraphState | None = None,
                     *, max_steps: int = MAX_STEPS) -> GraphState:
        """Traversiert den Graphen ab START bis keine Nachfolger mehr offen sind."""
        state = inputs.snapshot() if isinstance(inputs, GraphState) else GraphState(inputs or {})
        frontier: deque[str] = deque(self.successors(START, state))
        steps = 0

        while frontier:
            node_id = frontier.popleft()
            if node_id == END:
                continue
            steps += 1
            if steps > max_steps:
                raise AdaptGraphError(
                    f"Max steps ({max_steps}) exceeded at node '{node_id}'",
                    error_code="MAX_STEPS_EXCEEDED",
                    details={"node": node_id, "max_steps": max_steps},
                )
            start = time.monotonic()
            delta = await self.run_node(node_id, state)
            state.merge(delta, node_id=node_id)
            log.debug("node_completed", node=node_id,
                      duration_ms=int((time.monotonic() - start) * 1000))
            for nxt in self.successors(node_id, state):
                if nxt not in frontier:
                    frontier.append(nxt)

        return state


class GraphCompiler:
    """Übersetzt GraphDefinitions in CompiledGraphs."""

    def compile(self, graph: GraphDefinition,
                context: ExecutionContext | None = None) -> CompiledGraph:
        allowed = set(graph.node_ids) | SENTINELS
        static: dict[str, list[str]] = {}
        dispatchers: dict[str, list[KeyedEdge | KeyedDynamicEdge]] = {}
        discarded: list[dict[str, Any]] = []

        def add_static(source: str, target: str) -> None:
            targets = static.setdefault(source, [])
            if target not in targets:
                targets.append(target)

        for edge in graph.edges:
            if edge.source not in allowed:
                discarded.append(edge.to_dict())
                continue

            if isinstance(edge, _Keyed):
                if edge.fallback not in allowed:
                    discarded.append(edge.to_dict())
                    continue
                mapping = {k: v for k, v in edge.mapping.items() if v in allowed}
                if len(mapping) != len(edge.mapping):
                    discarded.append(edge.to_dict())
                wired = type(edge)(edge.source, mapping, edge.fallback, edge.key)
                existing = dispatchers.setdefault(edge.source, [])
                if wired not in existing:
                    existing.append(wired)
                continue

            for target in edge.targets:
                if target in allowed:
                    add_static(edge.source, target)
                else:
                    discarded.append({"from": edge.source, "to": target})

        if graph.entry_node not in SENTINELS and graph.has_node(graph.entry_node):
            if graph.entry_node not in static.get(START, []):
                add_static(START, graph.entry_node)

        if discarded:
            log.warning("compile_discarded_edges", graph=graph.name, edges=discarded)

        return CompiledGraph(
            graph,
            context or ExecutionContext(),
            static,
            dispatchers,
            discarded,
        )
