"""Execution Memory & Graph Evolver -- vergangene Läufe beeinflussen neue Graphen.

  - ExecutionTrace:       Aufgabe, Graph, tatsächlicher Pfad, Outcome eines Laufs
  - ExecutionMemory:      In-Memory Log + Jaccard-Ähnlichkeitssuche (keine Eviction)
  - GraphEvolver:         Synthese + Überarbeitung anhand des ähnlichsten Laufs
  - LearningGraphBuilder: Synthese mit bis zu N ähnlichen Läufen im Prompt

Die Memory wird nie im heißen Ausführungspfad gelesen.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Mapping

from adaptgraph.core.errors import (
    GraphSynthesisParseError,
    LLMError,
    UnknownNodeReferenceError,
)
from adaptgraph.core.llm import CompletionClient
from adaptgraph.graph.registry import NodeRegistry
from adaptgraph.graph.state import GraphState
from adaptgraph.graph.synthesis import GraphSynthesisResult, GraphSynthesizer
from adaptgraph.graph.types import GraphDefinition
from adaptgraph.utils.logging import get_logger

if TYPE_CHECKING:
    from adaptgraph.config import MemoryConfig
    from adaptgraph.graph.engine import RunReport

log = get_logger(__name__)

_RECOVERABLE = (GraphSynthesisParseError, UnknownNodeReferenceError, LLMError)


# ── Traces ───────────────────────────────────────────────────────


class Outcome(str, Enum):
    FAILED = "failed"
    PARTIAL = "partial"
    SUCCESS = "success"


@dataclass
class ExecutionTrace:
    task_description: str
    graph: GraphDefinition
    actual_path: list[str] = field(default_factory=list)
    execution_times: dict[str, float] = field(default_factory=dict)
    reflection_events: list[dict[str, Any]] = field(default_factory=list)
    user_interventions: list[str] = field(default_factory=list)
    outcome: Outcome = Outcome.SUCCESS
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_run(
        cls,
        task_description: str,
        state: GraphState,
        report: RunReport,
        outcome: Outcome = Outcome.SUCCESS,
    ) -> ExecutionTrace:
        """Baut einen Trace aus finalem State und dem RunReport des Executors."""
        return cls(
            task_description=task_description,
            graph=report.graph,
            actual_path=state.action_path,
            execution_times=dict(report.execution_times),
            reflection_events=list(report.reflection_events),
            user_interventions=list(report.user_questions),
            outcome=outcome,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_description": self.task_description,
            "graph": self.graph.to_dict(),
            "actual_path": list(self.actual_path),
            "execution_times": dict(self.execution_times),
            "reflection_events": list(self.reflection_events),
            "user_interventions": list(self.user_interventions),
            "outcome": self.outcome.value,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class ExecutionRecord:
    """Zusammenfassung eines Traces für Synthese-Prompts."""

    task: str
    summary: str
    outcome: str
    improvements: str


def format_execution_history(records: list[ExecutionRecord]) -> str:
    if not records:
        return "None"
    return "\n".join(
        f'- Task: "{r.task}"\n  Outcome: {r.outcome}\n'
        f"  Summary: {r.summary}\n  Improvement: {r.improvements}"
        for r in records
    )


def jaccard_similarity(a: str, b: str) -> float:
    tokens_a = set(a.lower().split())
    tokens_b = set(b.lower().split())
    union = len(tokens_a | tokens_b)
    if union == 0:
        return 0.0
    return len(tokens_a & tokens_b) / union


# ── Memory ───────────────────────────────────────────────────────


class ExecutionMemory:
    """Geordnetes In-Memory-Log aller Traces."""

    def __init__(self) -> None:
        self.traces: list[ExecutionTrace] = []

    def record(self, trace: ExecutionTrace) -> None:
        self.traces.append(trace)
        log.debug("execution_trace_recorded", task=trace.task_description[:80],
                  outcome=trace.outcome.value)

    def find_similar(self, task: str, limit: int = 3) -> list[ExecutionRecord]:
        """Traces absteigend nach Token-Jaccard-Ähnlichkeit (stabil bei Gleichstand)."""
        scored = sorted(
            self.traces,
            key=lambda trace: jaccard_similarity(trace.task_description, task),
            reverse=True,
        )
        return [
            ExecutionRecord(
                task=trace.task_description,
                summary=" -> ".join(trace.actual_path),
                outcome=trace.outcome.value,
                improvements=f"Used graph with {len(trace.graph.nodes)} nodes",
            )
            for trace in scored[:max(limit, 0)]
        ]

    def __len__(self) -> int:
        return len(self.traces)


# ── Evolver ──────────────────────────────────────────────────────


class GraphEvolver:
    """Überarbeitet synthetisierte Graphen anhand des ähnlichsten vergangenen Laufs.

    Best-effort: schlägt die Überarbeitung fehl, bleibt der Basis-Graph.
    """

    def __init__(
        self,
        llm: CompletionClient,
        registry: NodeRegistry,
        memory: ExecutionMemory,
        *,
        synthesizer: GraphSynthesizer | None = None,
    ) -> None:
        self.llm = llm
        self.registry = registry
        self.memory = memory
        self.synthesizer = synthesizer or GraphSynthesizer(llm, registry)

    async def build_graph_for_task(
        self, task: str, context: Mapping[str, Any] | None = None
    ) -> GraphSynthesisResult:
        base = await self.synthesizer.build_graph_for_task(task, context)
        similar = self.memory.find_similar(task, limit=1)
        if not similar:
            return base

        past = similar[0]
        prompt = (
            f"Task: {task}\n"
            f"Initial graph: {json.dumps(base.graph.to_dict())}\n\n"
            "Similar past execution:\n"
            f"Task: {past.task}\n"
            f"Outcome: {past.outcome}\n"
            f"Summary: {past.summary}\n"
            f"Improvements: {past.improvements}\n\n"
            "Modify the initial graph to avoid past mistakes:\n"
            "- Remove nodes that weren't needed\n"
            "- Add missing nodes\n"
            "- Reorder to satisfy dependencies seen in execution\n"
            "- Add reflection after nodes that needed user intervention\n\n"
            "Return JSON with a graph matching the schema "
            "(nodes, edges, reflection_points, entry_node)."
        )
        try:
            response = await self.llm.complete(prompt)
            evolved = self.synthesizer.parse(response)
        except _RECOVERABLE as exc:
            log.info("graph_evolution_skipped", error=str(exc))
            return base
        log.info("graph_evolved", task=task[:80], nodes=evolved.graph.node_ids)
        return evolved

    def record_execution(self, trace: ExecutionTrace) -> None:
        self.memory.record(trace)


# ── Learning Builder ─────────────────────────────────────────────

LEARNINGS = (
    "- Identify failure points and add missing preconditions before generation.\n"
    "- Add style/validation nodes before any user-facing output if past runs "
    "retried for tone/accuracy.\n"
    "- Prefer parallel fetch of independent data (calendar, files, finance) when "
    "past runs were slow."
)


class LearningGraphBuilder:
    """Synthese mit ähnlichen vergangenen Läufen und festen Learnings im Prompt."""

    def __init__(
        self,
        llm: CompletionClient,
        registry: NodeRegistry,
        memory: ExecutionMemory,
        *,
        similar_limit: int = 3,
        synthesizer: GraphSynthesizer | None = None,
    ) -> None:
        self.llm = llm
        self.memory = memory
        self.similar_limit = similar_limit
        self.synthesizer = synthesizer or GraphSynthesizer(llm, registry)

    @classmethod
    def from_config(
        cls,
        config: MemoryConfig,
        llm: CompletionClient,
        registry: NodeRegistry,
        memory: ExecutionMemory,
    ) -> LearningGraphBuilder:
        return cls(llm, registry, memory, similar_limit=config.similar_limit)

    def make_prompt(self, task: str) -> str:
        history = self.memory.find_similar(task, limit=self.similar_limit)
        return (
            f"TASK: {task}\n\n"
            f"SIMILAR PAST EXECUTIONS:\n{format_execution_history(history)}\n\n"
            f"LEARNINGS FROM PAST EXECUTIONS:\n{LEARNINGS}\n\n"
            "Use these learnings to construct a better initial graph.\n"
            "Avoid patterns that failed. Adopt patterns that succeeded.\n\n"
            f"{self.synthesizer.make_prompt(task)}"
        )

    async def build_graph_for_task(self, task: str) -> GraphSynthesisResult:
        try:
            response = await self.llm.complete(self.make_prompt(task))
            return self.synthesizer.parse(response)
        except _RECOVERABLE as exc:
            return self.synthesizer.fallback_result(exc)
