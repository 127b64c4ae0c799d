"""Graph Synthesis -- lässt den Completion-Service einen Graphen für eine Aufgabe planen.

Ablauf:
  1. Prompt aus Node-Katalog, Aufgabe, Kontext und Konstruktionsregeln
  2. Antwort als JSON parsen (Markdown-Fences erlaubt)
  3. Node-Ids gegen die Registry auflösen, Kanten und Reflection-Points bauen

Jeder Parse- oder Referenzfehler führt in ``build_graph_for_task`` zum
statischen Fallback-Graphen. Synthese ist nie fatal.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Mapping

from adaptgraph.core.errors import (
    GraphSynthesisParseError,
    LLMError,
    UnknownNodeReferenceError,
)
from adaptgraph.core.llm import CompletionClient, extract_json
from adaptgraph.graph.reflection import ReflectionPolicy, ReflectionResult
from adaptgraph.graph.registry import NodeRegistry
from adaptgraph.graph.state import GraphState
from adaptgraph.graph.types import (
    END,
    SENTINELS,
    START,
    Edge,
    GraphDefinition,
    KeyedDynamicEdge,
    LinearEdge,
    Node,
    ParallelEdge,
    chain_edges,
    output_names,
)
from adaptgraph.utils.logging import get_logger

if TYPE_CHECKING:
    from adaptgraph.config import ReflectionConfig

log = get_logger(__name__)

_SENTINEL_NAMES = {"START": START, "END": END, START: START, END: END}


# ── Result Types ─────────────────────────────────────────────────


class GraphTemplate(str, Enum):
    SIMPLE_QUERY = "simple_query"
    DATA_AGGREGATION = "data_aggregation"
    ITERATIVE_REFINEMENT = "iterative_refinement"
    DECISION_SUPPORT = "decision_support"
    MULTI_STEP_WORKFLOW = "multi_step_workflow"

    @classmethod
    def parse(cls, value: str) -> GraphTemplate:
        """Akzeptiert snake_case und camelCase, Unbekanntes → decision_support."""
        normalized = re.sub(r"(?<!^)(?=[A-Z])", "_", value.strip()).lower()
        try:
            return cls(normalized)
        except ValueError:
            return cls.DECISION_SUPPORT


@dataclass(frozen=True)
class EstimatedCost:
    time_seconds: float | None = None
    api_calls: int | None = None
    confidence: float | None = None


@dataclass(frozen=True)
class GraphSynthesisResult:
    graph: GraphDefinition
    reasoning: str = ""
    estimated_cost: EstimatedCost = EstimatedCost()
    fallback_used: bool = False


# ── Fallback ─────────────────────────────────────────────────────


def minimal_graph(registry: NodeRegistry) -> GraphDefinition:
    """Alle registrierten Nodes linear verkettet: START → n1 → … → END."""
    nodes = registry.nodes()
    if not nodes:
        return GraphDefinition(name="minimal")
    ids = [n.id for n in nodes]
    return GraphDefinition(
        nodes=tuple(nodes),
        edges=tuple(chain_edges([START, *ids, END])),
        entry_node=ids[0],
        name="minimal",
    )


# ── Formatting ───────────────────────────────────────────────────


def format_context(context: Mapping[str, Any] | None) -> str:
    if not context:
        return "None"
    return "\n".join(f"{key}: {value}" for key, value in context.items())


GRAPH_RULES = """\
GRAPH CONSTRUCTION RULES:

1. DEPENDENCY ANALYSIS
   - Identify what information the task needs
   - Determine which nodes provide that information
   - Order nodes so dependencies are satisfied before consumers

2. PARALLELIZATION OPPORTUNITIES
   - Nodes with no shared dependencies can run in parallel
   - Use "parallel" edges for independent branches

3. REFLECTION PLACEMENT
   - Add reflection after nodes that produce user-facing output
   - Add reflection after nodes with high uncertainty
   - Add reflection before irreversible actions (sending emails, making purchases)

4. CONDITIONAL ROUTING
   - Use "conditional" edges when the execution path depends on intermediate results
   - Use "keyed" edges when reflection determines the next node

5. OPTIMIZATION
   - Minimize total nodes (avoid redundant work)
   - Maximize parallelism (reduce wall-clock time)
   - Front-load cheap validation nodes (fail fast)"""

OUTPUT_SCHEMA = """\
OUTPUT FORMAT (JSON):
{
  "reasoning": {
    "task_decomposition": "...",
    "selected_nodes": [{"node_id": "scan_calendar", "reason": "..."}],
    "execution_strategy": "parallel vs sequential, with justification",
    "reflection_points": [{"after_node": "draft_email", "reason": "..."}]
  },
  "graph": {
    "nodes": ["node_id_1", "node_id_2"],
    "edges": [
      {"type": "linear", "from": "START", "to": "node_id_1"},
      {"type": "parallel", "from": "node_id_1", "to": ["node_id_2", "node_id_3"]},
      {"type": "conditional", "from": "node_id_4", "key": "decision_key",
       "branches": {"value": "node_id_5"}, "fallback": "node_id_5"},
      {"type": "linear", "from": "node_id_5", "to": "END"}
    ],
    "reflection_points": {
      "node_id": {"criteria": "What to check", "max_retries": 3, "fallback_node": "node_id"}
    },
    "entry_node": "node_id_1"
  },
  "estimated_cost": {"time_seconds": 12.5, "api_calls": 4, "confidence": 0.72}
}"""


# ── Synthesizer ──────────────────────────────────────────────────


class GraphSynthesizer:
    """Baut GraphDefinitions aus Completion-Antworten.

    Usage:
        synth = GraphSynthesizer(llm, registry, fallback=static_graph)
        result = await synth.build_graph_for_task("Plan my trip to Mexico")
    """

    def __init__(
        self,
        llm: CompletionClient,
        registry: NodeRegistry,
        *,
        fallback: GraphDefinition | Callable[[], GraphDefinition] | None = None,
        default_max_retries: int = 3,
    ) -> None:
        self.llm = llm
        self.registry = registry
        self._fallback = fallback
        self.default_max_retries = default_max_retries

    @classmethod
    def from_config(
        cls,
        config: ReflectionConfig,
        llm: CompletionClient,
        registry: NodeRegistry,
        *,
        fallback: GraphDefinition | Callable[[], GraphDefinition] | None = None,
    ) -> GraphSynthesizer:
        return cls(llm, registry, fallback=fallback, default_max_retries=config.default_max_retries)

    def fallback_graph(self) -> GraphDefinition:
        if self._fallback is None:
            return minimal_graph(self.registry)
        if isinstance(self._fallback, GraphDefinition):
            return self._fallback
        return self._fallback()

    def fallback_result(self, error: Exception) -> GraphSynthesisResult:
        log.warning("graph_synthesis_fallback", error=str(error), error_type=type(error).__name__)
        return GraphSynthesisResult(
            graph=self.fallback_graph(),
            reasoning=f"Fallback graph because synthesis failed: {error}",
            fallback_used=True,
        )

    # ── Prompt ───────────────────────────────────────────────────

    def make_prompt(self, task: str, context: Mapping[str, Any] | None = None) -> str:
        return (
            "You are a graph planner for an LLM agent system. Given a user task, you must\n"
            "construct an optimal execution graph using available nodes.\n\n"
            f"AVAILABLE NODES:\n{self.registry.format_catalog()}\n\n"
            f"USER TASK:\n{task}\n\n"
            f"CONTEXT:\n{format_context(context)}\n\n"
            f"{GRAPH_RULES}\n\n"
            f"{OUTPUT_SCHEMA}\n\n"
            "Respond with JSON only."
        )

    # ── Public API ───────────────────────────────────────────────

    async def synthesize(
        self, task: str, context: Mapping[str, Any] | None = None
    ) -> GraphSynthesisResult:
        """Wie build_graph_for_task, aber Fehler werden durchgereicht."""
        response = await self.llm.complete(self.make_prompt(task, context))
        return self.parse(response)

    async def build_graph_for_task(
        self, task: str, context: Mapping[str, Any] | None = None
    ) -> GraphSynthesisResult:
        try:
            result = await self.synthesize(task, context)
        except (GraphSynthesisParseError, UnknownNodeReferenceError, LLMError) as exc:
            return self.fallback_result(exc)
        log.info("graph_synthesized", task=task[:80], nodes=result.graph.node_ids)
        return result

    async def select_template(self, task: str) -> GraphTemplate:
        prompt = (
            "Classify this task into a graph template:\n\n"
            f"Task: {task}\n\n"
            "Templates:\n"
            "- simple_query: Single straightforward action (e.g., \"What's on my calendar today?\")\n"
            "- data_aggregation: Needs to gather info from multiple sources (e.g., \"Summarize my finances\")\n"
            "- iterative_refinement: Creative task that needs refinement (e.g., \"Write a blog post\")\n"
            "- decision_support: Complex decision with tradeoffs (e.g., \"Should I buy this house?\")\n"
            "- multi_step_workflow: Multiple sequential tasks (e.g., \"Book trip then notify team\")\n\n"
            'Output JSON: {"template": "...", "confidence": 0.9, "reasoning": "..."}'
        )
        response = await self.llm.complete(prompt)
        data = extract_json(response)
        if data is None or not isinstance(data.get("template"), str):
            raise GraphSynthesisParseError(
                "Template classification response is not valid JSON",
                details={"response": response[:200]},
            )
        return GraphTemplate.parse(data["template"])

    # ── Parsing ──────────────────────────────────────────────────

    def parse(self, response: str) -> GraphSynthesisResult:
        """Parst eine Synthese-Antwort.

        Raises:
            GraphSynthesisParseError: Kein JSON, kein ``graph`` oder keine Nodes.
            UnknownNodeReferenceError: Node-Id oder Kanten-Endpunkt unbekannt.
        """
        data = extract_json(response)
        if data is None:
            raise GraphSynthesisParseError(
                "Synthesis response is not valid JSON",
                details={"response": response[:200]},
            )
        graph_json = data.get("graph")
        if not isinstance(graph_json, dict):
            raise GraphSynthesisParseError("Synthesis response has no 'graph' object")
        node_ids = graph_json.get("nodes")
        if not isinstance(node_ids, list) or not node_ids:
            raise GraphSynthesisParseError("Synthesized graph has no nodes")

        nodes = [self.registry.resolve(str(nid)) for nid in node_ids]
        ids = [n.id for n in nodes]

        requested_entry = graph_json.get("entry_node")
        entry = requested_entry if requested_entry in ids else ids[0]

        edges = [
            edge for edge in (
                _parse_edge(item, entry) for item in graph_json.get("edges") or []
            )
            if edge is not None
        ]
        allowed = set(ids) | SENTINELS
        for edge in edges:
            for endpoint in (edge.source, *edge.targets):
                if endpoint not in allowed:
                    raise UnknownNodeReferenceError(endpoint)

        reflection_points = self._parse_reflection_points(
            graph_json.get("reflection_points"), nodes, entry
        )

        return GraphSynthesisResult(
            graph=GraphDefinition(
                nodes=tuple(nodes),
                edges=tuple(edges),
                reflection_points=reflection_points,
                entry_node=entry,
                name="synthesized",
            ),
            reasoning=_parse_reasoning(data.get("reasoning")),
            estimated_cost=_parse_cost(data.get("estimated_cost")),
        )

    def _parse_reflection_points(
        self,
        raw: Any,
        nodes: list[Node],
        entry: str,
    ) -> dict[str, ReflectionPolicy]:
        if not isinstance(raw, dict):
            return {}
        by_id = {n.id: n for n in nodes}
        points: dict[str, ReflectionPolicy] = {}
        for node_id, details in raw.items():
            node = by_id.get(node_id)
            if node is None or not isinstance(details, dict):
                log.debug("reflection_point_skipped", node=node_id)
                continue
            max_retries = details.get("max_retries")
            if not isinstance(max_retries, int) or isinstance(max_retries, bool):
                max_retries = self.default_max_retries
            fallback_node = details.get("fallback_node")
            if not isinstance(fallback_node, str):
                fallback_node = entry
            criteria = str(details.get("criteria") or "validate output")
            points[node_id] = output_policy(node, criteria, max_retries, fallback_node)
        return points


# ── Parse Helpers ────────────────────────────────────────────────


def _endpoint(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    return _SENTINEL_NAMES.get(value, value)


def _parse_edge(item: Any, entry: str) -> Edge | None:
    if not isinstance(item, dict):
        return None
    kind = item.get("type")
    source = _endpoint(item.get("from"))
    if source is None:
        return None

    if kind == "linear":
        target = _endpoint(item.get("to"))
        return LinearEdge(source, target) if target is not None else None

    if kind == "parallel":
        targets = item.get("to")
        if not isinstance(targets, list):
            return None
        resolved = [t for t in (_endpoint(v) for v in targets) if t is not None]
        return ParallelEdge(source, tuple(resolved)) if resolved else None

    if kind in ("conditional", "keyed"):
        key = item.get("key")
        branches = item.get("branches")
        if not isinstance(key, str) or not isinstance(branches, dict):
            return None
        mapping = {
            str(value): target
            for value, target in ((v, _endpoint(t)) for v, t in branches.items())
            if target is not None
        }
        fallback = _endpoint(item.get("fallback"))
        if fallback is None:
            fallback = next(iter(mapping.values()), entry)
        return KeyedDynamicEdge(source, mapping, fallback, key)

    log.debug("synthesis_edge_skipped", edge_type=kind)
    return None


def _parse_reasoning(raw: Any) -> str:
    if isinstance(raw, str):
        return raw
    if isinstance(raw, dict):
        return "\n".join(
            f"{key}: {value if isinstance(value, str) else json.dumps(value)}"
            for key, value in raw.items()
        )
    return ""


def _number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


def _parse_cost(raw: Any) -> EstimatedCost:
    if not isinstance(raw, dict):
        return EstimatedCost()
    api_calls = raw.get("api_calls")
    return EstimatedCost(
        time_seconds=_number(raw.get("time_seconds")),
        api_calls=api_calls if isinstance(api_calls, int) and not isinstance(api_calls, bool) else None,
        confidence=_number(raw.get("confidence")),
    )


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, list, tuple, dict, set)):
        return len(value) == 0
    return False


def output_policy(
    node: Node,
    criteria: str,
    max_retries: int,
    fallback_node: str,
) -> ReflectionPolicy:
    """Reflection-Policy für synthetisierte Graphen.

    Refine auf ``fallback_node``, solange eine deklarierte Ausgabe des
    Nodes fehlt oder leer ist.
    """
    outputs = output_names(node)

    def evaluate(state: GraphState) -> ReflectionResult:
        for key in outputs:
            if _is_empty(state.get(key)):
                return ReflectionResult.refine(fallback_node, criteria)
        return ReflectionResult.success()

    return ReflectionPolicy(evaluate, max_retries=max_retries, description=criteria)
