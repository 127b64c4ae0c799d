"""Uncertainty Router -- konfidenzgesteuerte Entscheidungen vor dem nächsten Node.

Ablauf von ``route(state, next_node)``:
  1. Input-Konfidenz ≥ Threshold → proceed (Grenze inklusiv)
  2. Generische Remediation: für jede beobachtete Datenquelle mit niedriger
     Konfidenz einen Re-Fetch-Node einplanen, solange ihr Injection-Cap
     nicht erreicht ist
  3. Kostenbewusst: knapp unter Threshold und nur teure Remediation → ask_user
  4. Bedingte Remediation (z.B. schwache Firmenrecherche → Kontext sammeln)
  5. Optional: Strategie-Wahl durch den Completion-Service
  6. Fallback-Frage der ersten betroffenen Quelle, sonst proceed_with_caveat

Der Router injiziert nie einen Node, dessen Cap erschöpft ist.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from adaptgraph.core.errors import LLMError
from adaptgraph.core.llm import CompletionClient, extract_json
from adaptgraph.graph.mutation import Inject, Mutation
from adaptgraph.graph.registry import NodeRegistry
from adaptgraph.graph.state import (
    CALENDAR_OVERVIEW,
    COMPANY_RESEARCH,
    FINANCE_OVERVIEW,
    SELECTED_MESSAGES,
    GraphState,
    KeyLike,
    key_name,
)
from adaptgraph.graph.types import Node
from adaptgraph.utils.logging import get_logger

if TYPE_CHECKING:
    from adaptgraph.config import RouterConfig

log = get_logger(__name__)


# ── Decisions ────────────────────────────────────────────────────


class RoutingKind(str, Enum):
    PROCEED = "proceed"
    MUTATE = "mutate"
    ASK_USER = "ask_user"
    PROCEED_WITH_CAVEAT = "proceed_with_caveat"


@dataclass(frozen=True)
class RoutingDecision:
    kind: RoutingKind
    mutation: Mutation | None = None
    message: str = ""

    @classmethod
    def proceed(cls) -> RoutingDecision:
        return cls(RoutingKind.PROCEED)

    @classmethod
    def mutate(cls, mutation: Mutation) -> RoutingDecision:
        return cls(RoutingKind.MUTATE, mutation=mutation)

    @classmethod
    def ask_user(cls, question: str) -> RoutingDecision:
        return cls(RoutingKind.ASK_USER, message=question)

    @classmethod
    def proceed_with_caveat(cls, reason: str) -> RoutingDecision:
        return cls(RoutingKind.PROCEED_WITH_CAVEAT, message=reason)


# ── Remediation Rules ────────────────────────────────────────────


@dataclass(frozen=True)
class RemediationRule:
    """Beobachteter State-Key und der Node, der ihn neu beschafft."""

    key: KeyLike
    node_id: str
    label: str
    fallback_question: str = ""


@dataclass(frozen=True)
class ConditionalRemediation:
    """Spezifische Regel: niedrige Konfidenz auf ``key`` → ``node_ids`` hinter ``anchor``."""

    key: KeyLike
    anchor: str
    node_ids: tuple[str, ...]
    reason: str


DEFAULT_RULES: tuple[RemediationRule, ...] = (
    RemediationRule(
        FINANCE_OVERVIEW,
        "scan_finances",
        "finance",
        fallback_question="Please provide recent financial data or grant access to accounts.",
    ),
    RemediationRule(CALENDAR_OVERVIEW, "scan_calendar", "calendar"),
    RemediationRule(SELECTED_MESSAGES, "load_messages", "messages"),
)

DEFAULT_CONDITIONAL_RULES: tuple[ConditionalRemediation, ...] = (
    ConditionalRemediation(
        COMPANY_RESEARCH,
        "research_company",
        ("scan_emails", "scan_messages"),
        "Low confidence on company, scan emails",
    ),
)

STRATEGIES = ("gather_more_info", "proceed_with_caveat", "ask_user", "conservative")


# ── Router ───────────────────────────────────────────────────────


class UncertaintyRouter:
    """Entscheidet vor jedem Node, ob Konfidenz-Lücken behoben werden müssen.

    Usage:
        router = UncertaintyRouter(registry=registry, threshold=0.6)
        decision = await router.route(state, next_node)
    """

    def __init__(
        self,
        *,
        registry: NodeRegistry | None = None,
        threshold: float = 0.6,
        max_injection_attempts: int = 2,
        cost_awareness: bool = False,
        cost_margin: float = 0.05,
        high_cost_threshold: float = 0.5,
        rules: tuple[RemediationRule, ...] = DEFAULT_RULES,
        conditional_rules: tuple[ConditionalRemediation, ...] = DEFAULT_CONDITIONAL_RULES,
        llm: CompletionClient | None = None,
    ) -> None:
        self.registry = registry or NodeRegistry()
        self.threshold = threshold
        self.max_injection_attempts = max_injection_attempts
        self.cost_awareness = cost_awareness
        self.cost_margin = cost_margin
        self.high_cost_threshold = high_cost_threshold
        self.rules = rules
        self.conditional_rules = conditional_rules
        self.llm = llm

    @classmethod
    def from_config(
        cls,
        config: RouterConfig,
        *,
        registry: NodeRegistry | None = None,
        llm: CompletionClient | None = None,
    ) -> UncertaintyRouter:
        return cls(
            registry=registry,
            threshold=config.confidence_threshold,
            max_injection_attempts=config.max_injection_attempts,
            cost_awareness=config.cost_awareness,
            cost_margin=config.cost_margin,
            high_cost_threshold=config.high_cost_threshold,
            llm=llm,
        )

    def _confidence(self, state: GraphState, key: KeyLike) -> float:
        record = state.confidence_of(key)
        return record.score if record is not None else 1.0

    def _under_cap(self, state: GraphState, node_id: str) -> bool:
        return state.injection_count(node_id) < self.max_injection_attempts

    async def route(self, state: GraphState, next_node: Node) -> RoutingDecision:
        input_confidence = state.minimum_confidence(next_node.input_requirements)
        if input_confidence >= self.threshold:
            return RoutingDecision.proceed()

        # Generische Remediation pro Datenquelle
        queued: list[Node] = []
        labels: list[str] = []
        for rule in self.rules:
            if self._confidence(state, rule.key) >= self.threshold:
                continue
            if not self._under_cap(state, rule.node_id):
                continue
            node = self.registry.get(rule.node_id)
            if node is None:
                log.debug("remediation_node_unregistered", node=rule.node_id)
                continue
            queued.append(node)
            labels.append(rule.label)

        if queued:
            if (
                self.cost_awareness
                and input_confidence >= self.threshold - self.cost_margin
                and all(self.registry.is_high_cost(n.id, self.high_cost_threshold) for n in queued)
            ):
                return RoutingDecision.ask_user(
                    f"Provide missing data to improve confidence for {', '.join(labels)}."
                )
            log.info("uncertainty_remediation", next_node=next_node.id, sources=labels)
            return RoutingDecision.mutate(
                Inject(next_node.id, tuple(queued), f"Low confidence: {', '.join(labels)}")
            )

        # Bedingte Remediation
        for cond in self.conditional_rules:
            if self._confidence(state, cond.key) >= self.threshold:
                continue
            nodes = [
                node for node in (self.registry.get(nid) for nid in cond.node_ids)
                if node is not None and self._under_cap(state, node.id)
            ]
            if nodes:
                log.info("uncertainty_conditional_remediation",
                         key=key_name(cond.key), anchor=cond.anchor)
                return RoutingDecision.mutate(Inject(cond.anchor, tuple(nodes), cond.reason))

        if self.llm is not None:
            decision = await self._llm_strategy(state, next_node, input_confidence)
            if decision is not None:
                return decision

        for rule in self.rules:
            if rule.fallback_question and self._confidence(state, rule.key) < self.threshold:
                return RoutingDecision.ask_user(rule.fallback_question)

        return RoutingDecision.proceed_with_caveat(
            f"Proceeding with low confidence inputs ({input_confidence:.2f})."
        )

    # ── LLM Strategy ─────────────────────────────────────────────

    async def _llm_strategy(
        self,
        state: GraphState,
        next_node: Node,
        input_confidence: float,
    ) -> RoutingDecision | None:
        sources = ", ".join(
            f"{rule.label}: {self._confidence(state, rule.key):.2f}" for rule in self.rules
        )
        prompt = (
            f"Node {next_node.id} requires inputs with confidence {input_confidence:.2f}.\n"
            f"Source confidence: {sources}.\n\n"
            "Options:\n"
            "1. gather_more_info: suggest nodes to run\n"
            "2. proceed_with_caveat: continue but flag output as uncertain\n"
            "3. ask_user: ask a specific question\n"
            "4. conservative: recommend conservative estimate\n\n"
            'Respond as JSON: {"strategy":"gather_more_info|proceed_with_caveat|ask_user|conservative",'
            '"reason":"...","nodes":["node_id"]}'
        )
        try:
            response = await self.llm.complete(prompt)  # type: ignore[union-attr]
        except LLMError as exc:
            log.warning("uncertainty_llm_failed", error=str(exc))
            return None

        data = extract_json(response)
        if data is None or data.get("strategy") not in STRATEGIES:
            log.debug("uncertainty_llm_unparseable", response=response[:200])
            return None

        strategy = data["strategy"]
        reason = str(data.get("reason") or "")
        if strategy == "gather_more_info":
            allowed = {rule.node_id for rule in self.rules}
            nodes = [
                node for node in (
                    self.registry.get(str(nid)) for nid in data.get("nodes") or []
                    if str(nid) in allowed
                )
                if node is not None and self._under_cap(state, node.id)
            ]
            if nodes:
                return RoutingDecision.mutate(
                    Inject(next_node.id, tuple(nodes), reason or "LLM suggested")
                )
            return None
        if strategy == "ask_user":
            return RoutingDecision.ask_user(reason or "Provide missing data.")
        if strategy == "conservative":
            return RoutingDecision.proceed_with_caveat(reason or "Using conservative assumptions.")
        return RoutingDecision.proceed_with_caveat(reason or "Proceeding with uncertain inputs.")
