"""
AdaptGraph · Shared Test-Fixtures.

Kein Netzwerk, kein echtes LLM: ScriptedLLM liefert vorbereitete Antworten
und protokolliert alle Prompts.
"""

from __future__ import annotations

from typing import Any, Mapping, Sequence

import pytest

from adaptgraph.core.errors import LLMError
from adaptgraph.graph.registry import NodeRegistry
from adaptgraph.graph.state import GraphState, KeyLike
from adaptgraph.graph.types import ExecutionContext, FunctionNode


class ScriptedLLM:
    """Completion-Client, der Antworten der Reihe nach zurückgibt.

    Eine Exception in der Liste wird geworfen statt zurückgegeben.
    Ist die Liste leer, wird LLMError geworfen.
    """

    def __init__(self, responses: Sequence[str | Exception] = ()) -> None:
        self.responses = list(responses)
        self.prompts: list[str] = []

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if not self.responses:
            raise LLMError("no scripted response left")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def make_node(
    node_id: str,
    outputs: Mapping[str, Any] | None = None,
    *,
    inputs: Sequence[KeyLike] = (),
    output_keys: Sequence[KeyLike] | None = None,
    calls: list[str] | None = None,
) -> FunctionNode:
    """Node, der ein festes Delta liefert und seinen Aufruf protokolliert."""
    delta = dict(outputs or {})

    async def handler(state: GraphState, context: ExecutionContext) -> dict[str, Any]:
        if calls is not None:
            calls.append(node_id)
        return dict(delta)

    keys = tuple(output_keys) if output_keys is not None else tuple(delta)
    return FunctionNode(node_id, handler, tuple(inputs), keys)


@pytest.fixture
def scripted_llm() -> ScriptedLLM:
    return ScriptedLLM()


@pytest.fixture
def context() -> ExecutionContext:
    return ExecutionContext()


@pytest.fixture
def registry() -> NodeRegistry:
    """Registry mit den Remediation-Nodes des Uncertainty Routers."""
    reg = NodeRegistry()
    reg.register(make_node("scan_finances", {"finance_overview": "refreshed"}), cost=0.1, latency_ms=150)
    reg.register(make_node("scan_calendar", {"calendar_overview": "refreshed"}), cost=0.1, latency_ms=150)
    reg.register(make_node("load_messages", {"selected_messages": ["hi"]}), cost=0.1, latency_ms=150)
    return reg


@pytest.fixture
def node_factory():
    """Factory für Test-Nodes (siehe make_node)."""
    return make_node


@pytest.fixture
def llm_factory():
    """Factory für ScriptedLLM-Instanzen mit vorbereiteten Antworten."""
    return ScriptedLLM
