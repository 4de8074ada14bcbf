"""Project context owned by the phase state machine, plus its collaborators.

``ProjectContext`` is the single-owner aggregate of accumulated project
knowledge. Everything outside the phase machine reads it through
``snapshot()``, which returns a detached deep copy.
"""

import copy
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

import structlog

from models.schemas import LaneDecision
from workflow.phases import Phase, canonical_phase, coerce_phase

logger = structlog.get_logger()


def utc_now() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class ProjectContext:
    """Accumulated knowledge for one project.

    Attributes:
        phase_history: Append-only log of ``{phase, completed_at, deliverables}``.
        phase_data: Free-form per-phase namespaces (keyed by phase id) that
            requirements and decisions are folded from.
        deliverables: Saved deliverables, keyed by phase id then name.
        all_requirements: Derived; recomputed on every transition.
        all_decisions: Derived; recomputed on every transition.
    """

    project_id: str
    current_phase: str | None = None
    previous_phase: str | None = None
    transitioned_at: str | None = None
    current_lane: str | None = None
    phase_history: list[dict[str, Any]] = field(default_factory=list)
    lane_history: list[dict[str, Any]] = field(default_factory=list)
    phase_data: dict[str, dict[str, Any]] = field(default_factory=dict)
    deliverables: dict[str, dict[str, Any]] = field(default_factory=dict)
    decisions: dict[str, dict[str, Any]] = field(default_factory=dict)
    all_requirements: dict[str, list[Any]] = field(default_factory=dict)
    all_decisions: dict[str, list[Any]] = field(default_factory=dict)

    def snapshot(self) -> dict[str, Any]:
        """Detached deep copy for readers outside the phase machine."""
        return asdict(self)

    def _bucket(self, phase: str | None) -> str:
        if phase:
            return canonical_phase(phase)
        return self.current_phase or "unassigned"

    def namespace(self, phase: str | None = None) -> dict[str, Any]:
        """Mutable namespace for ``phase`` (current phase by default).

        Phase aliases share the namespace of the phase they name.
        """
        return self.phase_data.setdefault(self._bucket(phase), {})

    def record(self, key: str, value: Any, phase: str | None = None) -> None:
        self.namespace(phase)[key] = value

    def store_deliverable(self, key: str, value: Any, phase: str | None = None) -> None:
        self.deliverables.setdefault(self._bucket(phase), {})[key] = copy.deepcopy(value)

    def record_decision(self, key: str, value: Any, rationale: str = "") -> None:
        self.decisions[key] = {
            "value": value,
            "rationale": rationale,
            "timestamp": utc_now(),
            "phase": self.current_phase,
        }
        self.namespace().setdefault("decisions", []).append({key: value})

    def record_lane_decision(self, decision: LaneDecision, description: str = "") -> dict[str, Any]:
        entry = {
            "lane": decision.lane.value,
            "rationale": decision.rationale,
            "confidence": decision.confidence,
            "description": description,
            "timestamp": utc_now(),
            "phase": self.current_phase,
        }
        self.lane_history.append(entry)
        self.current_lane = decision.lane.value
        return entry

    def summary(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "current_phase": self.current_phase,
            "current_lane": self.current_lane,
            "phase_count": len(self.phase_history),
            "deliverable_count": sum(len(items) for items in self.deliverables.values()),
            "transitioned_at": self.transitioned_at,
        }


# -----------------------------------------------------------------------------
# Collaborators
# -----------------------------------------------------------------------------


class ContextPreserver(Protocol):
    """Loads incoming-phase context and folds per-phase knowledge.

    Implementations may be sync or async.
    """

    def load(self, to_phase: str, context: Mapping[str, Any]) -> Any: ...

    def consolidate(self, context: Mapping[str, Any]) -> Any: ...


class DeliverableStore(Protocol):
    def save(self, key: str, value: Any) -> Any: ...


# consolidated key -> (source phase namespace, field)
REQUIREMENT_SOURCES: Mapping[str, tuple[Phase, str]] = {
    "user_needs": (Phase.ANALYSIS, "user_needs"),
    "business_requirements": (Phase.PLANNING, "business_requirements"),
    "technical_requirements": (Phase.ARCHITECTURE, "technical_requirements"),
    "functional_requirements": (Phase.STORY_MANAGEMENT, "functional_requirements"),
}

DECISION_SOURCES: Mapping[str, tuple[Phase, str]] = {
    "marketing_decisions": (Phase.ANALYSIS, "decisions"),
    "planning_decisions": (Phase.PLANNING, "decisions"),
    "architectural_decisions": (Phase.ARCHITECTURE, "decisions"),
    "implementation_decisions": (Phase.DEVELOPMENT, "decisions"),
}


def _phase_namespace(context: Mapping[str, Any], phase: Phase) -> Mapping[str, Any]:
    phase_data = context.get("phase_data") or {}
    namespace = phase_data.get(phase.value)
    if namespace is None:
        namespace = context.get(phase.value)
    return namespace if isinstance(namespace, Mapping) else {}


def _fold(context: Mapping[str, Any], sources: Mapping[str, tuple[Phase, str]]) -> dict[str, list[Any]]:
    folded: dict[str, list[Any]] = {}
    for target, (phase, key) in sources.items():
        value = _phase_namespace(context, phase).get(key) or []
        folded[target] = list(value) if isinstance(value, list | tuple) else [value]
    return folded


class DefaultContextPreserver:
    """Folds requirements and decisions from the per-phase namespaces."""

    def consolidate(self, context: Mapping[str, Any]) -> dict[str, dict[str, list[Any]]]:
        return {
            "requirements": _fold(context, REQUIREMENT_SOURCES),
            "decisions": _fold(context, DECISION_SOURCES),
        }

    def load(self, to_phase: str, context: Mapping[str, Any]) -> dict[str, Any]:
        loaded = copy.deepcopy(dict(context))
        folded = self.consolidate(loaded)
        loaded["current_phase"] = to_phase
        loaded["all_requirements"] = folded["requirements"]
        loaded["all_decisions"] = folded["decisions"]
        phase = coerce_phase(to_phase)
        loaded["phase_context"] = dict(_phase_namespace(loaded, phase)) if phase else {}
        return loaded


class InMemoryDeliverableStore:
    """Keeps saved deliverables in a dict, last write wins."""

    def __init__(self) -> None:
        self.items: dict[str, Any] = {}

    def save(self, key: str, value: Any) -> None:
        self.items[key] = copy.deepcopy(value)
        logger.debug("deliverable_saved", key=key)
