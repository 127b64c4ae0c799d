"""AdaptGraph Graph -- adaptive, selbst-modifizierende Task-Graphen.

  - Typed State mit Confidence-Records und Action-Path
  - Unveränderliche GraphDefinitions (linear, parallel, keyed Edges)
  - Pure Graph-Mutationen (Inject, Prune, Reroute)
  - Adaptive Executor mit Uncertainty-Routing und Loop-Prevention
  - Hierarchische Reflection mit Retry-Budget und Eskalation
  - LLM-Graph-Synthese mit statischem Fallback
  - Execution Memory als Feedback für neue Graphen
  - Mermaid-Diagramm-Export

Usage:
    from adaptgraph.graph import AdaptiveExecutor, GraphBuilder, START, END

    graph = (
        GraphBuilder("my_flow")
        .add_function("step1", my_handler)
        .add_function("step2", my_handler2, inputs=["step1_out"])
        .chain(START, "step1", "step2", END)
        .build()
    )

    state = await AdaptiveExecutor().execute(graph, {"user_request": "..."})
"""

from adaptgraph.graph.builder import GraphBuilder, linear_graph, reflective_graph
from adaptgraph.graph.compiler import CompiledGraph, GraphCompiler
from adaptgraph.graph.engine import (
    AdaptiveExecutor,
    MutationEvent,
    RunReport,
    execution_order,
)
from adaptgraph.graph.memory import (
    ExecutionMemory,
    ExecutionRecord,
    ExecutionTrace,
    GraphEvolver,
    LearningGraphBuilder,
    Outcome,
)
from adaptgraph.graph.mutation import (
    NO_MUTATION,
    GraphMutator,
    Inject,
    Mutation,
    NoMutation,
    Prune,
    Reroute,
)
from adaptgraph.graph.reflection import (
    REQUEST_USER_INPUT,
    EscalationStrategy,
    HierarchicalReflector,
    ReflectionAction,
    ReflectionKind,
    ReflectionLevel,
    ReflectionNode,
    ReflectionPolicy,
    ReflectionResult,
)
from adaptgraph.graph.registry import NodeDescriptor, NodeRegistry
from adaptgraph.graph.state import (
    ConfidenceRecord,
    GraphState,
    StateDelta,
    StateKey,
)
from adaptgraph.graph.synthesis import (
    EstimatedCost,
    GraphSynthesisResult,
    GraphSynthesizer,
    GraphTemplate,
    minimal_graph,
)
from adaptgraph.graph.types import (
    END,
    START,
    EdgeKind,
    ExecutionContext,
    FunctionNode,
    GraphDefinition,
    KeyedDynamicEdge,
    KeyedEdge,
    LinearEdge,
    Node,
    ParallelEdge,
)
from adaptgraph.graph.uncertainty import (
    ConditionalRemediation,
    RemediationRule,
    RoutingDecision,
    RoutingKind,
    UncertaintyRouter,
)

__all__ = [
    # Constants
    "START", "END", "NO_MUTATION", "REQUEST_USER_INPUT",
    # State
    "StateKey", "ConfidenceRecord", "GraphState", "StateDelta",
    # Graph Model
    "Node", "FunctionNode", "ExecutionContext", "EdgeKind",
    "LinearEdge", "ParallelEdge", "KeyedEdge", "KeyedDynamicEdge",
    "GraphDefinition",
    # Builder & Compiler
    "GraphBuilder", "linear_graph", "reflective_graph",
    "GraphCompiler", "CompiledGraph",
    # Mutation
    "Mutation", "Inject", "Prune", "Reroute", "NoMutation", "GraphMutator",
    # Execution
    "AdaptiveExecutor", "MutationEvent", "RunReport", "execution_order",
    # Uncertainty
    "UncertaintyRouter", "RoutingDecision", "RoutingKind",
    "RemediationRule", "ConditionalRemediation",
    # Reflection
    "ReflectionPolicy", "ReflectionResult", "ReflectionKind", "ReflectionLevel",
    "ReflectionAction", "EscalationStrategy", "HierarchicalReflector", "ReflectionNode",
    # Registry & Synthesis
    "NodeRegistry", "NodeDescriptor",
    "GraphSynthesizer", "GraphSynthesisResult", "EstimatedCost", "GraphTemplate",
    "minimal_graph",
    # Memory
    "ExecutionTrace", "ExecutionRecord", "ExecutionMemory", "Outcome",
    "GraphEvolver", "LearningGraphBuilder",
]
