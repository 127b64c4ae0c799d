"""Node Registry -- verfügbare Nodes plus Kosten-/Latenz-Metadaten.

Der Katalog speist zwei Stellen:
  - Graph-Synthese: ``format_catalog()`` landet im Prompt
  - Uncertainty Router: ``is_high_cost()`` für kostenbewusstes Routing
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from adaptgraph.core.errors import UnknownNodeReferenceError
from adaptgraph.graph.types import Node, input_names, output_names
from adaptgraph.utils.logging import get_logger

log = get_logger(__name__)

HIGH_COST_THRESHOLD = 0.5


@dataclass(frozen=True)
class NodeDescriptor:
    id: str
    inputs: tuple[str, ...] = ()
    outputs: tuple[str, ...] = ()
    cost: float | None = None
    latency_ms: int | None = None
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "inputs": list(self.inputs),
            "outputs": list(self.outputs),
            "cost": self.cost,
            "latency_ms": self.latency_ms,
        }

    def render(self) -> str:
        cost = f"{self.cost:.2f}" if self.cost is not None else "n/a"
        latency = f"{self.latency_ms}ms" if self.latency_ms is not None else "n/a"
        lines = [
            f"- {self.id}",
            f"  inputs: [{', '.join(self.inputs)}]",
            f"  outputs: [{', '.join(self.outputs)}]",
            f"  cost: {cost}",
            f"  latency: {latency}",
        ]
        if self.description:
            lines.append(f"  description: {self.description}")
        return "\n".join(lines)


class NodeRegistry:
    """Registrierte Nodes in Registrierungsreihenfolge."""

    def __init__(self) -> None:
        self._nodes: dict[str, Node] = {}
        self._descriptors: dict[str, NodeDescriptor] = {}

    def register(
        self,
        node: Node,
        cost: float | None = None,
        latency_ms: int | None = None,
    ) -> NodeRegistry:
        if node.id in self._nodes:
            log.debug("node_reregistered", node=node.id)
        self._nodes[node.id] = node
        self._descriptors[node.id] = NodeDescriptor(
            id=node.id,
            inputs=tuple(input_names(node)),
            outputs=tuple(output_names(node)),
            cost=cost,
            latency_ms=latency_ms,
            description=getattr(node, "description", "") or "",
        )
        return self

    def resolve(self, node_id: str) -> Node:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise UnknownNodeReferenceError(node_id) from None

    def get(self, node_id: str) -> Node | None:
        return self._nodes.get(node_id)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def node_ids(self) -> list[str]:
        return list(self._nodes)

    def nodes(self) -> list[Node]:
        return list(self._nodes.values())

    def catalog(self) -> list[NodeDescriptor]:
        return list(self._descriptors.values())

    def descriptors(self) -> dict[str, NodeDescriptor]:
        return dict(self._descriptors)

    def descriptor(self, node_id: str) -> NodeDescriptor | None:
        return self._descriptors.get(node_id)

    def is_high_cost(self, node_id: str, threshold: float = HIGH_COST_THRESHOLD) -> bool:
        """Unbekannte Nodes und Nodes ohne Kostenangabe gelten als günstig."""
        desc = self._descriptors.get(node_id)
        return desc is not None and desc.cost is not None and desc.cost > threshold

    def format_catalog(self) -> str:
        if not self._descriptors:
            return "- none -"
        return "\n".join(d.render() for d in self.catalog())
