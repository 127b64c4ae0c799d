"""Tests für die Graph-Synthese (Prompt, Parsing, Fallback)."""

from __future__ import annotations

import json

import httpx
import pytest

from adaptgraph.config import LLMConfig
from adaptgraph.core.errors import (
    GraphSynthesisParseError,
    LLMError,
    UnknownNodeReferenceError,
)
from adaptgraph.core.llm import OllamaCompletionClient
from adaptgraph.graph.registry import NodeRegistry
from adaptgraph.graph.state import GraphState
from adaptgraph.graph.synthesis import (
    GraphSynthesizer,
    GraphTemplate,
    minimal_graph,
)
from adaptgraph.graph.types import (
    END,
    START,
    GraphDefinition,
    KeyedDynamicEdge,
    LinearEdge,
    ParallelEdge,
)


@pytest.fixture
def trip_registry(node_factory) -> NodeRegistry:
    reg = NodeRegistry()
    reg.register(node_factory("scan_calendar", output_keys=["calendar_overview"]), cost=0.1, latency_ms=150)
    reg.register(node_factory("scan_finances", output_keys=["finance_overview"]), cost=0.2, latency_ms=300)
    reg.register(node_factory("plan_trip", output_keys=["trip_plan"]), cost=0.6, latency_ms=2000)
    return reg


def synthesis_response(**graph_overrides) -> str:
    graph = {
        "nodes": ["scan_calendar", "scan_finances", "plan_trip"],
        "edges": [
            {"type": "linear", "from": "START", "to": "scan_calendar"},
            {"type": "parallel", "from": "scan_calendar", "to": ["scan_finances", "plan_trip"]},
            {"type": "linear", "from": "plan_trip", "to": "END"},
        ],
        "reflection_points": {
            "plan_trip": {"criteria": "Plan covers budget", "max_retries": 2, "fallback_node": "scan_finances"},
        },
        "entry_node": "scan_calendar",
    }
    graph.update(graph_overrides)
    return json.dumps({
        "reasoning": {"task_decomposition": "calendar, money, plan", "selected_nodes": []},
        "graph": graph,
        "estimated_cost": {"time_seconds": 12.5, "api_calls": 4, "confidence": 0.72},
    })


# ============================================================================
# Prompt
# ============================================================================


class TestPrompt:
    def test_prompt_contains_catalog_and_task(self, trip_registry, scripted_llm):
        synth = GraphSynthesizer(scripted_llm, trip_registry)
        prompt = synth.make_prompt("Plan my trip to Mexico", {"budget": "2000 USD"})
        assert "- plan_trip\n  inputs: []\n  outputs: [trip_plan]\n  cost: 0.60\n  latency: 2000ms" in prompt
        assert "USER TASK:\nPlan my trip to Mexico" in prompt
        assert "budget: 2000 USD" in prompt
        assert "GRAPH CONSTRUCTION RULES" in prompt
        assert prompt.endswith("Respond with JSON only.")

    def test_prompt_without_context(self, trip_registry, scripted_llm):
        prompt = GraphSynthesizer(scripted_llm, trip_registry).make_prompt("x")
        assert "CONTEXT:\nNone" in prompt


# ============================================================================
# Parsing
# ============================================================================


class TestParse:
    def test_full_response(self, trip_registry, scripted_llm):
        result = GraphSynthesizer(scripted_llm, trip_registry).parse(synthesis_response())
        graph = result.graph
        assert graph.node_ids == ["scan_calendar", "scan_finances", "plan_trip"]
        assert graph.entry_node == "scan_calendar"
        assert LinearEdge(START, "scan_calendar") in graph.edges
        assert ParallelEdge("scan_calendar", ("scan_finances", "plan_trip")) in graph.edges
        assert LinearEdge("plan_trip", END) in graph.edges
        assert graph.validate() == []
        assert not result.fallback_used

    def test_reasoning_and_cost(self, trip_registry, scripted_llm):
        result = GraphSynthesizer(scripted_llm, trip_registry).parse(synthesis_response())
        assert "task_decomposition: calendar, money, plan" in result.reasoning
        assert result.estimated_cost.time_seconds == 12.5
        assert result.estimated_cost.api_calls == 4
        assert result.estimated_cost.confidence == 0.72

    def test_markdown_fences(self, trip_registry, scripted_llm):
        text = f"```json\n{synthesis_response()}\n```"
        result = GraphSynthesizer(scripted_llm, trip_registry).parse(text)
        assert len(result.graph.nodes) == 3

    def test_conditional_edge(self, trip_registry, scripted_llm):
        response = synthesis_response(edges=[{
            "type": "conditional",
            "from": "scan_calendar",
            "key": "trip_mode",
            "branches": {"budget": "scan_finances", "direct": "plan_trip"},
        }])
        edge = GraphSynthesizer(scripted_llm, trip_registry).parse(response).graph.edges[0]
        assert isinstance(edge, KeyedDynamicEdge)
        assert edge.mapping == {"budget": "scan_finances", "direct": "plan_trip"}
        assert edge.fallback == "scan_finances"
        assert edge.key == "trip_mode"

    def test_entry_defaults_to_first_node(self, trip_registry, scripted_llm):
        result = GraphSynthesizer(scripted_llm, trip_registry).parse(
            synthesis_response(entry_node="nowhere")
        )
        assert result.graph.entry_node == "scan_calendar"

    def test_unknown_node_raises(self, trip_registry, scripted_llm):
        with pytest.raises(UnknownNodeReferenceError):
            GraphSynthesizer(scripted_llm, trip_registry).parse(
                synthesis_response(nodes=["scan_calendar", "book_flight"])
            )

    def test_unknown_edge_endpoint_raises(self, trip_registry, scripted_llm):
        response = synthesis_response(edges=[{"type": "linear", "from": "scan_calendar", "to": "ghost"}])
        with pytest.raises(UnknownNodeReferenceError):
            GraphSynthesizer(scripted_llm, trip_registry).parse(response)

    @pytest.mark.parametrize("text", [
        "Sorry, I cannot help with that.",
        json.dumps({"reasoning": "no graph"}),
        json.dumps({"graph": {"nodes": []}}),
    ])
    def test_malformed_raises(self, trip_registry, scripted_llm, text):
        with pytest.raises(GraphSynthesisParseError):
            GraphSynthesizer(scripted_llm, trip_registry).parse(text)

    def test_reflection_point_policy(self, trip_registry, scripted_llm):
        graph = GraphSynthesizer(scripted_llm, trip_registry).parse(synthesis_response()).graph
        policy = graph.reflection_points["plan_trip"]
        assert policy.max_retries == 2
        refine = policy.evaluate(GraphState(trip_plan=""))
        assert refine.target_node == "scan_finances"
        assert refine.reason == "Plan covers budget"
        assert policy.evaluate(GraphState(trip_plan="Cancun, 5 days")).is_success

    def test_reflection_point_defaults(self, trip_registry, scripted_llm):
        response = synthesis_response(reflection_points={"plan_trip": {"criteria": "ok"}})
        synth = GraphSynthesizer(scripted_llm, trip_registry, default_max_retries=4)
        policy = synth.parse(response).graph.reflection_points["plan_trip"]
        assert policy.max_retries == 4
        assert policy.evaluate(GraphState()).target_node == "scan_calendar"


# ============================================================================
# build_graph_for_task
# ============================================================================


class TestBuildGraph:
    @pytest.mark.asyncio
    async def test_success(self, trip_registry, llm_factory):
        llm = llm_factory([synthesis_response()])
        result = await GraphSynthesizer(llm, trip_registry).build_graph_for_task("Plan my trip")
        assert result.graph.name == "synthesized"
        assert "Plan my trip" in llm.prompts[0]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", [
        "not json at all",
        synthesis_response(nodes=["book_flight"]),
        LLMError("offline"),
    ])
    async def test_falls_back_to_minimal(self, trip_registry, llm_factory, response):
        result = await GraphSynthesizer(llm_factory([response]), trip_registry).build_graph_for_task("x")
        assert result.fallback_used
        assert result.graph.name == "minimal"
        assert result.graph.node_ids == ["scan_calendar", "scan_finances", "plan_trip"]
        assert "Fallback graph" in result.reasoning

    @pytest.mark.asyncio
    async def test_custom_fallback(self, trip_registry, llm_factory, node_factory):
        static = GraphDefinition(nodes=(node_factory("only"),), entry_node="only", name="static")
        synth = GraphSynthesizer(llm_factory(["nope"]), trip_registry, fallback=lambda: static)
        result = await synth.build_graph_for_task("x")
        assert result.graph is static

    @pytest.mark.asyncio
    async def test_invalid_http_body_falls_back(self, trip_registry):
        """Nicht-JSON-Antwort des Completion-Service führt zum Fallback-Graphen."""
        llm = OllamaCompletionClient(
            LLMConfig(base_url="http://ollama.test:11434"),
            transport=httpx.MockTransport(lambda r: httpx.Response(200, text="<html>proxy</html>")),
        )
        try:
            result = await GraphSynthesizer(llm, trip_registry).build_graph_for_task("plan my trip")
        finally:
            await llm.close()
        assert result.fallback_used
        assert result.graph.name == "minimal"

    @pytest.mark.asyncio
    async def test_synthesize_propagates(self, trip_registry, llm_factory):
        with pytest.raises(GraphSynthesisParseError):
            await GraphSynthesizer(llm_factory(["nope"]), trip_registry).synthesize("x")


class TestMinimalGraph:
    def test_chains_registry(self, trip_registry):
        graph = minimal_graph(trip_registry)
        assert graph.get_successors(START) == ["scan_calendar"]
        assert graph.get_successors("plan_trip") == [END]
        assert graph.validate() == []

    def test_empty_registry(self):
        assert minimal_graph(NodeRegistry()).nodes == ()


# ============================================================================
# Templates
# ============================================================================


class TestTemplates:
    @pytest.mark.parametrize("raw,expected", [
        ("simple_query", GraphTemplate.SIMPLE_QUERY),
        ("dataAggregation", GraphTemplate.DATA_AGGREGATION),
        ("iterativeRefinement", GraphTemplate.ITERATIVE_REFINEMENT),
        ("multi_step_workflow", GraphTemplate.MULTI_STEP_WORKFLOW),
        ("something_else", GraphTemplate.DECISION_SUPPORT),
    ])
    def test_parse(self, raw, expected):
        assert GraphTemplate.parse(raw) == expected

    @pytest.mark.asyncio
    async def test_select_template(self, trip_registry, llm_factory):
        llm = llm_factory(['{"template": "dataAggregation", "confidence": 0.9}'])
        template = await GraphSynthesizer(llm, trip_registry).select_template("Summarize my finances")
        assert template == GraphTemplate.DATA_AGGREGATION

    @pytest.mark.asyncio
    async def test_select_template_bad_json(self, trip_registry, llm_factory):
        with pytest.raises(GraphSynthesisParseError):
            await GraphSynthesizer(llm_factory(["hmm"]), trip_registry).select_template("x")
