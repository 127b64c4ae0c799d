"""Hierarchical Reflection -- Erfolgskriterien mit Retry-Budget und Eskalation.

Ebenen werden in fester Priorität ausgewertet:
    strategic → tactical → execution

Die erste Ebene, die nicht ``success`` liefert, gewinnt. Jede Ebene
verwaltet ein eigenes Retry-Budget (``reflection_retries`` im State).
Ist das Budget erschöpft, wird ein ``refine`` zwangsweise in ``success``
umgewandelt; der Grund landet in ``reflection_forced_reason``.

Beispiel:
    tactical = ReflectionPolicy(
        lambda s: ReflectionResult.refine("draft_email", "no drafts")
        if not s.get("drafted_replies") else ReflectionResult.success(),
        max_retries=2,
    )
    reflector = HierarchicalReflector({ReflectionLevel.TACTICAL: tactical})
    action = reflector.reflect(state)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping

from adaptgraph.graph.state import (
    NEXT_NODE,
    REFLECTION_ACTION,
    REFLECTION_COUNT,
    REFLECTION_FORCED_REASON,
    REFLECTION_LEVEL,
    REFLECTION_REASON,
    REFLECTION_RETRIES,
    GraphState,
)
from adaptgraph.graph.types import END, ExecutionContext
from adaptgraph.utils.logging import get_logger

log = get_logger(__name__)

REQUEST_USER_INPUT = "request_user_input"
"""Routing-Ziel für Eskalationen und Rückfragen an den Nutzer."""


# ── Results ──────────────────────────────────────────────────────


class ReflectionKind(str, Enum):
    """Ergebnis-Typ, gleichzeitig der Wert von ``reflection_action``."""
    SUCCESS = "success"
    REFINE = "refine"
    ESCALATE = "escalate"
    NEED_INPUT = "need_input"


class ReflectionLevel(str, Enum):
    STRATEGIC = "strategic"
    TACTICAL = "tactical"
    EXECUTION = "execution"


LEVEL_ORDER: tuple[ReflectionLevel, ...] = (
    ReflectionLevel.STRATEGIC,
    ReflectionLevel.TACTICAL,
    ReflectionLevel.EXECUTION,
)


@dataclass(frozen=True)
class ReflectionResult:
    kind: ReflectionKind
    target_node: str = ""
    reason: str = ""

    @classmethod
    def success(cls) -> ReflectionResult:
        return cls(ReflectionKind.SUCCESS)

    @classmethod
    def refine(cls, target_node: str, reason: str = "") -> ReflectionResult:
        return cls(ReflectionKind.REFINE, target_node, reason)

    @classmethod
    def escalate(cls, reason: str = "") -> ReflectionResult:
        return cls(ReflectionKind.ESCALATE, reason=reason)

    @classmethod
    def request_user_input(cls, question: str) -> ReflectionResult:
        return cls(ReflectionKind.NEED_INPUT, reason=question)

    @property
    def is_success(self) -> bool:
        return self.kind == ReflectionKind.SUCCESS

    def route(self, default_next: str | None = None) -> str | None:
        """Nächster Node für diesen Ausgang (None = keine Vorgabe, Fallback greift)."""
        if self.kind == ReflectionKind.SUCCESS:
            return default_next
        if self.kind == ReflectionKind.REFINE:
            return self.target_node
        return REQUEST_USER_INPUT


# ── Escalation ───────────────────────────────────────────────────


class EscalationKind(str, Enum):
    ESCALATE_AFTER_MAX = "escalate_after_max"
    IMMEDIATE = "immediate"
    ASK_USER = "ask_user"


@dataclass(frozen=True)
class EscalationStrategy:
    """Was passiert mit ``refine``-Ergebnissen.

    - escalate_after_max: bis max_retries wiederholen, dann forced success
    - immediate: jedes refine wird sofort zu escalate
    - ask_user: nach max_retries wird eine Rückfrage gestellt statt forced success
    """

    kind: EscalationKind = EscalationKind.ESCALATE_AFTER_MAX
    question: str = ""

    @classmethod
    def escalate_after_max(cls) -> EscalationStrategy:
        return cls(EscalationKind.ESCALATE_AFTER_MAX)

    @classmethod
    def immediate(cls) -> EscalationStrategy:
        return cls(EscalationKind.IMMEDIATE)

    @classmethod
    def ask_user(cls, question: str) -> EscalationStrategy:
        return cls(EscalationKind.ASK_USER, question)


# ── Policy ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class PolicyOutcome:
    """Ergebnis einer Policy-Auswertung inklusive Budget-Buchhaltung."""

    result: ReflectionResult
    scope: str
    attempts: int
    forced_reason: str = ""


@dataclass(frozen=True)
class ReflectionPolicy:
    evaluate: Callable[[GraphState], ReflectionResult]
    max_retries: int = 3
    escalation: EscalationStrategy = field(default_factory=EscalationStrategy)
    description: str = ""

    def assess(self, state: GraphState, scope: str) -> PolicyOutcome:
        """Wertet die Policy aus und wendet Budget und Eskalation an.

        ``scope`` identifiziert das Budget (z.B. ``node:plan_trip`` oder
        ``level:tactical``).
        """
        result = self.evaluate(state)
        used = int(state.get(REFLECTION_RETRIES, {}).get(scope, 0))

        if result.kind != ReflectionKind.REFINE:
            return PolicyOutcome(result, scope, used)

        if self.escalation.kind == EscalationKind.IMMEDIATE:
            return PolicyOutcome(ReflectionResult.escalate(result.reason), scope, used)

        if used >= self.max_retries:
            if self.escalation.kind == EscalationKind.ASK_USER:
                question = self.escalation.question or result.reason
                return PolicyOutcome(ReflectionResult.request_user_input(question), scope, used)
            forced = (
                f"Retry budget exhausted for {scope} after {used} attempts: {result.reason}"
            )
            log.warning("reflection_forced_success", scope=scope, attempts=used, reason=result.reason)
            return PolicyOutcome(ReflectionResult.success(), scope, used, forced)

        return PolicyOutcome(result, scope, used + 1)


# ── Hierarchical Reflector ───────────────────────────────────────


@dataclass(frozen=True)
class ReflectionAction:
    result: ReflectionResult
    level: ReflectionLevel
    outcomes: tuple[PolicyOutcome, ...] = ()

    @property
    def forced_reasons(self) -> list[str]:
        return [o.forced_reason for o in self.outcomes if o.forced_reason]


class HierarchicalReflector:
    """Wertet Policies pro Ebene in fester Reihenfolge aus."""

    def __init__(self, levels: Mapping[ReflectionLevel, ReflectionPolicy]) -> None:
        self.levels = dict(levels)

    def reflect(self, state: GraphState) -> ReflectionAction:
        outcomes: list[PolicyOutcome] = []
        for level in LEVEL_ORDER:
            policy = self.levels.get(level)
            if policy is None:
                continue
            outcome = policy.assess(state, f"level:{level.value}")
            outcomes.append(outcome)
            if not outcome.result.is_success:
                log.debug("reflection_level_failed", level=level.value, action=outcome.result.kind.value)
                return ReflectionAction(outcome.result, level, tuple(outcomes))
        return ReflectionAction(ReflectionResult.success(), ReflectionLevel.EXECUTION, tuple(outcomes))


def reflection_updates(
    state: GraphState,
    result: ReflectionResult,
    level: ReflectionLevel,
    outcomes: tuple[PolicyOutcome, ...] | list[PolicyOutcome] = (),
    *,
    default_next: str | None = None,
) -> dict[str, Any]:
    """Delta mit den Reflection-Bookkeeping-Keys für einen Ausgang."""
    updates: dict[str, Any] = {
        REFLECTION_LEVEL.name: level.value,
        REFLECTION_COUNT.name: state.get(REFLECTION_COUNT, 0) + 1,
        REFLECTION_ACTION.name: result.kind.value,
    }
    if result.reason:
        updates[REFLECTION_REASON.name] = result.reason
    # Leerer next_node lässt Keyed-Dispatch auf den Fallback laufen
    updates[NEXT_NODE.name] = result.route(default_next) or ""

    retries = dict(state.get(REFLECTION_RETRIES, {}))
    for outcome in outcomes:
        retries[outcome.scope] = outcome.attempts
    if outcomes:
        updates[REFLECTION_RETRIES.name] = retries

    forced = [o.forced_reason for o in outcomes if o.forced_reason]
    if forced:
        updates[REFLECTION_FORCED_REASON.name] = "; ".join(forced)
    return updates


# ── Reflection Node ──────────────────────────────────────────────


@dataclass(frozen=True, eq=False)
class ReflectionNode:
    """Generischer Node, der einen HierarchicalReflector ausführt.

    Routet über ``next_node``: bei Erfolg nach ``default_next``, bei
    refine zum Ziel-Node, sonst nach ``request_user_input``.
    """

    reflector: HierarchicalReflector
    default_next: str = END
    id: str = "reflect"
    input_requirements: tuple = ()
    output_keys: tuple = (
        REFLECTION_ACTION,
        REFLECTION_REASON,
        REFLECTION_COUNT,
        NEXT_NODE,
    )

    async def execute(self, state: GraphState, context: ExecutionContext) -> dict[str, Any]:
        action = self.reflector.reflect(state)
        log.info(
            "reflection",
            level=action.level.value,
            action=action.result.kind.value,
            reason=action.result.reason,
        )
        return reflection_updates(
            state,
            action.result,
            action.level,
            action.outcomes,
            default_next=self.default_next,
        )

    def __repr__(self) -> str:
        return f"ReflectionNode({self.id!r}, default_next={self.default_next!r})"
