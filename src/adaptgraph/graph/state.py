"""Typed State Store -- Zustand der durch den adaptiven Graphen fließt.

Heterogener Key/Value-Container:
  - StateKey[T]:      Typisierter Schlüssel, Typ-Rückgewinnung beim Zugriff
  - ConfidenceRecord: Score + Begründung + Quellen pro State-Key
  - GraphState:       Last-Writer-Wins-Merge, Action-Path, Confidence-Map,
                      Injection-History (Loop-Prevention)

Die abgeleiteten Projektionen (Action-Path, Confidence-Map, Injection-History)
liegen selbst als normale Keys im State. Dadurch sind sie Teil jedes
Snapshots und werden beim Merge wie jeder andere Key behandelt.
"""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from typing import Any, Generic, Iterable, Iterator, Mapping, TypeVar, Union

T = TypeVar("T")


# ── Keys ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class StateKey(Generic[T]):
    """Typisierter Schlüssel in den State.

    ``value_type`` dient der Typ-Rückgewinnung: ``GraphState.get(key)``
    liefert None, wenn der gespeicherte Wert nicht vom erwarteten Typ ist.
    """

    name: str
    value_type: type = object

    def __str__(self) -> str:
        return self.name


KeyLike = Union[StateKey[Any], str]


def key_name(key: KeyLike) -> str:
    """Normalisiert StateKey oder Rohnamen auf den Namen."""
    return key.name if isinstance(key, StateKey) else str(key)


# ── Confidence ───────────────────────────────────────────────────


@dataclass(frozen=True)
class ConfidenceRecord:
    """Konfidenz eines State-Werts (score ∈ [0, 1])."""

    score: float
    reason: str = ""
    sources: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not 0.0 <= self.score <= 1.0:
            raise ValueError(f"confidence score out of range: {self.score}")
        object.__setattr__(self, "sources", tuple(self.sources))

    def to_dict(self) -> dict[str, Any]:
        return {"score": self.score, "reason": self.reason, "sources": list(self.sources)}

    @classmethod
    def from_value(cls, value: Any) -> ConfidenceRecord | None:
        """Akzeptiert Records oder serialisierte Dicts (z.B. aus JSON)."""
        if isinstance(value, ConfidenceRecord):
            return value
        if isinstance(value, Mapping) and "score" in value:
            try:
                return cls(
                    score=float(value["score"]),
                    reason=str(value.get("reason", "")),
                    sources=tuple(value.get("sources", ())),
                )
            except (TypeError, ValueError):
                return None
        return None


# ── Well-known Keys ──────────────────────────────────────────────

USER_REQUEST: StateKey[str] = StateKey("user_request", str)
ACTION_PATH: StateKey[list] = StateKey("action_path", list)
CONFIDENCE_MAP: StateKey[dict] = StateKey("confidence_map", dict)
INJECTION_HISTORY: StateKey[dict] = StateKey("injection_history", dict)

# Reflection-Bookkeeping
REFLECTION_COUNT: StateKey[int] = StateKey("reflection_count", int)
REFLECTION_ACTION: StateKey[str] = StateKey("reflection_action", str)
REFLECTION_REASON: StateKey[str] = StateKey("reflection_reason", str)
REFLECTION_LEVEL: StateKey[str] = StateKey("reflection_level", str)
REFLECTION_RETRIES: StateKey[dict] = StateKey("reflection_retries", dict)
REFLECTION_FORCED_REASON: StateKey[str] = StateKey("reflection_forced_reason", str)
NEXT_NODE: StateKey[str] = StateKey("next_node", str)

# Domain-Quellen, die der UncertaintyRouter standardmäßig beobachtet
FINANCE_OVERVIEW: StateKey[str] = StateKey("finance_overview", str)
CALENDAR_OVERVIEW: StateKey[str] = StateKey("calendar_overview", str)
SELECTED_MESSAGES: StateKey[list] = StateKey("selected_messages", list)
COMPANY_RESEARCH: StateKey[dict] = StateKey("company_research", dict)


# ── GraphState ───────────────────────────────────────────────────


class GraphState:
    """Geordnete Akkumulation typisierter Key/Value-Paare.

    Beispiel:
        state = GraphState({"user_request": "plan my trip"})
        state.merge({"trip_plan": "..."}, node_id="plan_trip")
        state.get(USER_REQUEST)          # "plan my trip"
        state.action_path                # ["plan_trip"]
    """

    def __init__(self, initial: Mapping[str, Any] | None = None, **kwargs: Any) -> None:
        self._data: dict[str, Any] = dict(initial or {})
        self._data.update(kwargs)

    # ── Typed access ─────────────────────────────────────────────

    def get(self, key: KeyLike, default: Any = None) -> Any:
        name = key_name(key)
        if name not in self._data:
            return default
        value = self._data[name]
        if isinstance(key, StateKey) and not isinstance(value, key.value_type):
            return default
        return value

    def set(self, key: KeyLike, value: Any) -> None:
        self._data[key_name(key)] = value

    def merge(self, delta: Mapping[str, Any], *, node_id: str | None = None) -> None:
        """Last-Writer-Wins über alle Keys im Delta (kein partielles Mergen).

        Mit ``node_id`` wird der ausführende Node an den Action-Path gehängt.
        """
        for name, value in delta.items():
            self._data[key_name(name)] = value
        if node_id is not None:
            self._data[ACTION_PATH.name] = [*self.action_path, node_id]

    def __getitem__(self, key: KeyLike) -> Any:
        return self._data[key_name(key)]

    def __contains__(self, key: object) -> bool:
        if isinstance(key, (StateKey, str)):
            return key_name(key) in self._data
        return False

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, GraphState):
            return NotImplemented
        return self._data == other._data

    def keys(self) -> Any:
        return self._data.keys()

    def items(self) -> Any:
        return self._data.items()

    # ── Projections ──────────────────────────────────────────────

    @property
    def action_path(self) -> list[str]:
        return list(self.get(ACTION_PATH, []))

    @property
    def user_request(self) -> str:
        return self.get(USER_REQUEST, "")

    @property
    def confidence_map(self) -> dict[str, Any]:
        return dict(self.get(CONFIDENCE_MAP, {}))

    def confidence_of(self, key: KeyLike) -> ConfidenceRecord | None:
        return ConfidenceRecord.from_value(self.confidence_map.get(key_name(key)))

    def minimum_confidence(self, keys: Iterable[KeyLike]) -> float:
        """Minimum über alle Keys mit Confidence-Record.

        Keys ohne Record zählen nicht. Ohne einen einzigen Record (insbesondere
        bei leerer Key-Liste) ist das Ergebnis 1.0.
        """
        scores = [
            record.score
            for record in (self.confidence_of(k) for k in keys)
            if record is not None
        ]
        return min(scores) if scores else 1.0

    def set_confidence(self, key: KeyLike, record: ConfidenceRecord) -> None:
        self._data[CONFIDENCE_MAP.name] = {**self.confidence_map, key_name(key): record}

    def confidence_update(self, key: KeyLike, record: ConfidenceRecord) -> dict[str, Any]:
        """Delta-Fragment für Nodes: aktuelle Confidence-Map plus neuer Record."""
        return {CONFIDENCE_MAP.name: {**self.confidence_map, key_name(key): record}}

    @property
    def injection_history(self) -> dict[str, int]:
        return dict(self.get(INJECTION_HISTORY, {}))

    def injection_count(self, node_id: str) -> int:
        return int(self.injection_history.get(node_id, 0))

    def record_injection(self, node_id: str) -> None:
        history = self.injection_history
        history[node_id] = history.get(node_id, 0) + 1
        self._data[INJECTION_HISTORY.name] = history

    # ── Snapshots & Serialization ────────────────────────────────

    def snapshot(self) -> GraphState:
        """Tiefe Kopie -- Nodes bekommen nie den Original-State."""
        return GraphState(copy.deepcopy(self._data))

    def copy(self) -> GraphState:
        return self.snapshot()

    def to_dict(self) -> dict[str, Any]:
        return copy.deepcopy(self._data)

    def to_json(self) -> str:
        return json.dumps(self._data, default=_json_default, ensure_ascii=False)

    def __repr__(self) -> str:
        keys = ", ".join(self._data.keys())
        return f"GraphState({keys})"


def _json_default(value: Any) -> Any:
    if isinstance(value, ConfidenceRecord):
        return value.to_dict()
    return str(value)


@dataclass
class StateDelta:
    """Hilfs-Builder für Node-Deltas mit Confidence-Annotationen.

    Beispiel:
        delta = StateDelta(state)
        delta.put(FINANCE_OVERVIEW, summary, confidence=0.4, reason="stale feed")
        return delta.values
    """

    base: GraphState
    values: dict[str, Any] = field(default_factory=dict)

    def put(
        self,
        key: KeyLike,
        value: Any,
        *,
        confidence: float | None = None,
        reason: str = "",
        sources: Iterable[str] = (),
    ) -> StateDelta:
        self.values[key_name(key)] = value
        if confidence is not None:
            current = self.values.get(CONFIDENCE_MAP.name, self.base.confidence_map)
            self.values[CONFIDENCE_MAP.name] = {
                **current,
                key_name(key): ConfidenceRecord(confidence, reason, tuple(sources)),
            }
        return self
