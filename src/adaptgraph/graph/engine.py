"""Adaptive Executor -- führt einen Graphen aus, der sich während des Laufs verändert.

Zustandsmaschine pro Iteration:
  Scheduling → Running(node) → Merging → DecidingMutation → (Mutated | Stable)

DecidingMutation, in Prioritätsreihenfolge:
  a. externer Mutation-Decider (node, state, graph)
  b. Mutationen, die der Node über den ExecutionContext angefordert hat
  c. Uncertainty Router für den nächsten geplanten Node

Nach einer Mutation wird die Reihenfolge neu berechnet. Bereits besuchte
Nodes laufen nie ein zweites Mal. Ohne Mutation in einer ganzen Runde
ist der Lauf stabil und endet.

Node-Fehler brechen den gesamten Lauf ab (kein partieller State).
"""

from __future__ import annotations

import inspect
import time
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, Union

from adaptgraph.core.errors import AdaptGraphError
from adaptgraph.graph.compiler import CompiledGraph, GraphCompiler
from adaptgraph.graph.mutation import GraphMutator, Inject, Mutation, is_mutation
from adaptgraph.graph.state import (
    REFLECTION_ACTION,
    REFLECTION_LEVEL,
    REFLECTION_REASON,
    GraphState,
)
from adaptgraph.graph.types import (
    ExecutionContext,
    GraphDefinition,
    Node,
)
from adaptgraph.graph.uncertainty import RoutingKind, UncertaintyRouter
from adaptgraph.utils.logging import get_logger

if TYPE_CHECKING:
    from adaptgraph.config import ExecutorConfig

log = get_logger(__name__)

MAX_ITERATIONS = 100

MutationDecider = Callable[
    [Node, GraphState, GraphDefinition],
    Union[Mutation, None, Awaitable[Union[Mutation, None]]],
]


# ── Scheduling ───────────────────────────────────────────────────


def execution_order(graph: GraphDefinition) -> list[str]:
    """Breitensuche-basierte topologische Reihenfolge ab dem Entry-Node.

    Keyed-Edges werden vollständig expandiert (alle Mapping-Ziele plus
    Fallback), da vor der Ausführung noch kein State existiert. Zyklen
    werden aufgebrochen, indem der früheste entdeckte offene Node zuerst
    kommt. START/END und nicht vorhandene Nodes tauchen nicht auf.
    """
    present = set(graph.node_ids)

    # Erreichbarkeit in Entdeckungsreihenfolge
    start = graph.entry_node
    discovered: list[str] = []
    seen = {start}
    queue: deque[str] = deque([start])
    while queue:
        current = queue.popleft()
        if current in present:
            discovered.append(current)
        for nxt in graph.get_successors(current):
            if nxt not in seen:
                seen.add(nxt)
                queue.append(nxt)

    reachable = set(discovered)
    rank = {node_id: i for i, node_id in enumerate(discovered)}
    indegree = {node_id: 0 for node_id in discovered}
    adjacency: dict[str, list[str]] = {}
    for node_id in discovered:
        targets = [t for t in graph.get_successors(node_id) if t in reachable and t != node_id]
        adjacency[node_id] = targets
        for t in targets:
            indegree[t] += 1

    order: list[str] = []
    done: set[str] = set()
    ready: deque[str] = deque(n for n in discovered if indegree[n] == 0)
    while len(order) < len(discovered):
        if not ready:
            # Zyklus: frühesten offenen Node erzwingen
            forced = min((n for n in discovered if n not in done), key=rank.__getitem__)
            ready.append(forced)
        node_id = ready.popleft()
        if node_id in done:
            continue
        done.add(node_id)
        order.append(node_id)
        for t in adjacency[node_id]:
            indegree[t] -= 1
            if indegree[t] == 0 and t not in done:
                ready.append(t)
    return order


# ── Observability ────────────────────────────────────────────────


@dataclass(frozen=True)
class MutationEvent:
    """Wird an ``on_mutation`` übergeben (before/after für Visualisierung)."""

    mutation: Mutation
    before: GraphDefinition
    after: GraphDefinition
    source: str  # decider | node | router

    @property
    def description(self) -> str:
        return str(self.mutation)


@dataclass
class RunReport:
    """Audit eines Laufs, Rohmaterial für ExecutionTraces."""

    graph: GraphDefinition
    mutations: list[MutationEvent] = field(default_factory=list)
    interventions: list[str] = field(default_factory=list)
    user_questions: list[str] = field(default_factory=list)
    execution_times: dict[str, float] = field(default_factory=dict)
    reflection_events: list[dict[str, Any]] = field(default_factory=list)
    iterations: int = 0


# ── Executor ─────────────────────────────────────────────────────


class AdaptiveExecutor:
    """Führt GraphDefinitions adaptiv aus.

    Usage:
        executor = AdaptiveExecutor(context, router=UncertaintyRouter(registry=reg))
        state = await executor.execute(graph, {"user_request": "..."})
    """

    def __init__(
        self,
        context: ExecutionContext | None = None,
        *,
        mutator: GraphMutator | None = None,
        compiler: GraphCompiler | None = None,
        decider: MutationDecider | None = None,
        router: UncertaintyRouter | None = None,
        on_mutation: Callable[[MutationEvent], None] | None = None,
        on_uncertainty_intervention: Callable[[str], None] | None = None,
        config: ExecutorConfig | None = None,
        max_iterations: int = MAX_ITERATIONS,
    ) -> None:
        self.context = context or ExecutionContext()
        self.mutator = mutator or GraphMutator()
        self.compiler = compiler or GraphCompiler()
        self.decider = decider
        self.router = router
        self.on_mutation = on_mutation
        self.on_uncertainty_intervention = on_uncertainty_intervention
        self._max_iterations = config.max_iterations if config is not None else max_iterations
        self.last_run: RunReport | None = None
        self._execution_count = 0
        self._total_nodes_executed = 0

    async def execute(
        self,
        graph: GraphDefinition,
        inputs: Mapping[str, Any] | GraphState | None = None,
    ) -> GraphState:
        """Führt den Graphen bis zur Stabilität aus und liefert den finalen State."""
        current = graph
        state = inputs.snapshot() if isinstance(inputs, GraphState) else GraphState(inputs or {})
        visited: set[str] = set()
        report = RunReport(graph=current)
        self.last_run = report
        self._execution_count += 1
        self.context.drain_mutations()

        log.info("graph_execution_start", graph=graph.name, nodes=len(graph.nodes))

        while True:
            report.iterations += 1
            if report.iterations > self._max_iterations:
                raise AdaptGraphError(
                    f"Max iterations ({self._max_iterations}) exceeded",
                    error_code="MAX_ITERATIONS_EXCEEDED",
                    details={"graph": graph.name, "visited": sorted(visited)},
                )

            compiled = self.compiler.compile(current, self.context)
            order = execution_order(current)
            mutated = False

            for node_id in order:
                if node_id in visited:
                    continue
                node = current.get_node(node_id)
                if node is None:
                    continue

                await self._run(compiled, node_id, state, report)
                visited.add(node_id)

                new_graph = await self._decide(node, state, current, order, visited, report)
                if new_graph is not None:
                    current = new_graph
                    mutated = True
                    break

            if not mutated:
                break

        report.graph = current
        log.info(
            "graph_execution_complete",
            graph=graph.name,
            path=state.action_path,
            iterations=report.iterations,
            mutations=len(report.mutations),
        )
        return state

    # ── Running & Merging ────────────────────────────────────────

    async def _run(self, compiled: CompiledGraph, node_id: str,
                   state: GraphState, report: RunReport) -> None:
        start = time.monotonic()
        delta = await compiled.run_node(node_id, state)
        state.merge(delta, node_id=node_id)
        duration_ms = (time.monotonic() - start) * 1000
        report.execution_times[node_id] = round(duration_ms, 3)
        self._total_nodes_executed += 1

        if REFLECTION_ACTION.name in delta:
            report.reflection_events.append({
                "node": node_id,
                "level": delta.get(REFLECTION_LEVEL.name, ""),
                "action": delta[REFLECTION_ACTION.name],
                "reason": delta.get(REFLECTION_REASON.name, ""),
            })
        log.debug("node_completed", node=node_id, duration_ms=int(duration_ms))

    # ── Deciding Mutation ────────────────────────────────────────

    async def _decide(
        self,
        node: Node,
        state: GraphState,
        graph: GraphDefinition,
        order: list[str],
        visited: set[str],
        report: RunReport,
    ) -> GraphDefinition | None:
        """Liefert den mutierten Graphen oder None (stabil)."""
        requested = self.context.drain_mutations()

        # a. Externer Decider
        if self.decider is not None:
            decision = self.decider(node, state, graph)
            if inspect.isawaitable(decision):
                decision = await decision
            if is_mutation(decision):
                if requested:
                    log.warning(
                        "node_mutations_discarded",
                        node=node.id,
                        count=len(requested),
                    )
                return self._apply(graph, decision, state, "decider", report)

        # b. Vom Node angeforderte Mutationen (alle, in Reihenfolge)
        requested = [m for m in requested if is_mutation(m)]
        if requested:
            current = graph
            for mutation in requested:
                current = self._apply(current, mutation, state, "node", report) or current
            return current if current is not graph else None

        # c. Uncertainty Router für den nächsten offenen Node
        if self.router is None:
            return None
        next_id = next((n for n in order if n not in visited and graph.has_node(n)), None)
        if next_id is None:
            return None
        next_node = graph.get_node(next_id)
        if next_node is None:
            return None

        routing = await self.router.route(state, next_node)
        if routing.kind == RoutingKind.MUTATE and is_mutation(routing.mutation):
            mutated = self._apply(graph, routing.mutation, state, "router", report)
            if mutated is not None:
                self._intervene(f"Applied uncertainty mutation for {next_id}", report)
            return mutated
        if routing.kind == RoutingKind.ASK_USER:
            report.user_questions.append(routing.message)
            self._intervene(f"Ask user: {routing.message}", report)
        elif routing.kind == RoutingKind.PROCEED_WITH_CAVEAT:
            self._intervene(f"Proceed with caveat: {routing.message}", report)
        return None

    def _apply(
        self,
        graph: GraphDefinition,
        mutation: Mutation,
        state: GraphState,
        source: str,
        report: RunReport,
    ) -> GraphDefinition | None:
        """Wendet die Mutation an; None, wenn sie den Graphen nicht verändert."""
        after = self.mutator.apply(graph, mutation)
        if after is graph:
            log.debug("graph_mutation_noop", source=source, description=str(mutation))
            return None
        if isinstance(mutation, Inject):
            for node_id in mutation.node_ids:
                state.record_injection(node_id)
        event = MutationEvent(mutation, graph, after, source)
        report.mutations.append(event)
        log.info("graph_mutation_applied", source=source, description=event.description)
        if self.on_mutation is not None:
            self.on_mutation(event)
        return after

    def _intervene(self, message: str, report: RunReport) -> None:
        report.interventions.append(message)
        log.info("uncertainty_intervention", message=message)
        if self.on_uncertainty_intervention is not None:
            self.on_uncertainty_intervention(message)

    # ── Stats ────────────────────────────────────────────────────

    def stats(self) -> dict[str, Any]:
        return {
            "total_executions": self._execution_count,
            "total_nodes_executed": self._total_nodes_executed,
            "max_iterations": self._max_iterations,
            "mutation_log": list(self.mutator.mutation_log),
        }
