"""Lane Router: classify a work item and attach its phase blueprint.

The router is a pure function of its inputs. Classification is delegated to
a ``LaneClassifier``; the default ``KeywordLaneClassifier`` scores the
description against keyword lists and scope patterns. The chosen lane's
static blueprint is annotated with a 1-based order and entry criteria.

Usage:
    >>> router = LaneRouter()
    >>> decision = router.route("Fix typo in README.md")
    >>> decision.lane, [p.id for p in decision.phases]
    ('quick', ['analysis', 'development'])
"""

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import structlog

from models.schemas import Lane, LaneDecision, PhaseSpec

logger = structlog.get_logger()


QUICK_FIX_KEYWORDS: tuple[str, ...] = (
    "typo",
    "fix typo",
    "spelling",
    "add flag",
    "add option",
    "add config",
    "update config",
    "change flag",
    "toggle",
    "enable",
    "disable",
    "remove console",
    "comment",
    "rename variable",
    "fix import",
    "update import",
    "small bugfix",
    "quick fix",
    "minor fix",
)

COMPLEX_KEYWORDS: tuple[str, ...] = (
    "new feature",
    "add feature",
    "implement",
    "build",
    "create system",
    "architecture",
    "refactor",
    "redesign",
    "integrate",
    "authentication",
    "authorization",
    "database",
    "api",
    "security",
    "multi-component",
    "cross-cutting",
    "performance",
    "scalability",
)

ACTION_WORDS: tuple[str, ...] = ("add", "remove", "fix", "update", "change")

SINGLE_FILE_PATTERN = re.compile(r"single file|one file|this file|in \w+\.(js|ts|md|json|yaml)", re.I)
MULTI_FILE_PATTERN = re.compile(r"across|multiple files|several files|throughout|entire", re.I)

SHORT_MESSAGE_CHARS = 100
LONG_MESSAGE_CHARS = 200
MAX_CONFIDENCE = 0.95


@dataclass(frozen=True)
class BlueprintPhase:
    """Unannotated blueprint entry."""

    id: str
    variant: str
    focus: str


QUICK_BLUEPRINT: tuple[BlueprintPhase, ...] = (
    BlueprintPhase("analysis", "lite", "Clarify request and confirm scope without full research sprint."),
    BlueprintPhase("development", "single-pass-story", "Implement change directly with lightweight validation."),
)

COMPLEX_BLUEPRINT: tuple[BlueprintPhase, ...] = (
    BlueprintPhase("analysis", "deep-dive", "Full research, brainstorming, and product brief generation."),
    BlueprintPhase("planning", "full-stack", "Produce PRD, architecture, and tech spec artifacts."),
    BlueprintPhase("development", "iterative-epic-cycle", "Story-by-story development with dedicated review steps."),
)

# (phase id, lane) -> entry criterion; lane None matches either lane.
ENTRY_CRITERIA: Mapping[tuple[str, Lane | None], str] = {
    ("analysis", Lane.QUICK): "Confirm intent and dependencies in under one cycle.",
    ("analysis", Lane.COMPLEX): "Complete research artifacts and validate problem framing.",
    ("planning", None): "PRD.md, Architecture.md, and tech spec ready for next epic.",
    ("development", Lane.QUICK): "Single implement-and-verify pass with optional reviewer.",
    ("development", Lane.COMPLEX): "Story backlog prepared; review agent assigned for each story.",
}
DEFAULT_ENTRY_CRITERIA = "Follow the standard entry checklist."


def entry_criteria_for(phase_id: str, lane: Lane) -> str:
    return (
        ENTRY_CRITERIA.get((phase_id, lane))
        or ENTRY_CRITERIA.get((phase_id, None))
        or DEFAULT_ENTRY_CRITERIA
    )


def annotate_blueprint(phases: Sequence[BlueprintPhase], lane: Lane) -> list[PhaseSpec]:
    """Attach 1-based order and entry criteria to a blueprint."""
    return [
        PhaseSpec(
            id=phase.id,
            variant=phase.variant,
            focus=phase.focus,
            order=index,
            entry_criteria=entry_criteria_for(phase.id, lane),
        )
        for index, phase in enumerate(phases, start=1)
    ]


# -----------------------------------------------------------------------------
# Classification
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class LaneClassification:
    """What a classifier reports for one work item."""

    lane: Lane
    confidence: float
    rationale: str
    signals: dict[str, Any] = field(default_factory=dict)
    scores: dict[str, int] = field(default_factory=dict)


class LaneClassifier(Protocol):
    def classify(self, description: str, context: Mapping[str, Any]) -> LaneClassification: ...


class KeywordLaneClassifier:
    """Heuristic classifier over keywords, scope phrases and context hints.

    Quick-fix keywords, single-file scope and short imperative requests
    score toward the quick lane; complex keywords, multi-file scope, long or
    exploratory requests and an in-flight complex workflow score toward the
    complex lane. With no signal at all the complex lane is chosen.
    """

    def classify(self, description: str, context: Mapping[str, Any]) -> LaneClassification:
        message = description.lower()

        quick_matches = [kw for kw in QUICK_FIX_KEYWORDS if kw in message]
        complex_matches = [kw for kw in COMPLEX_KEYWORDS if kw in message]
        signals: dict[str, Any] = {
            "quick_fix_keywords": len(quick_matches),
            "complex_keywords": len(complex_matches),
            "single_file_scope": bool(SINGLE_FILE_PATTERN.search(message)),
            "multi_file_scope": bool(MULTI_FILE_PATTERN.search(message)),
            "message_length": len(description),
            "is_short_message": len(description) < SHORT_MESSAGE_CHARS,
            "is_question": "?" in message,
            "has_action_words": any(word in message for word in ACTION_WORDS),
        }

        quick_score = 3 * len(quick_matches)
        complex_score = 3 * len(complex_matches)
        if signals["single_file_scope"]:
            quick_score += 2
        if signals["multi_file_scope"]:
            complex_score += 3
        if signals["is_short_message"] and signals["has_action_words"]:
            quick_score += 2
        if len(description) > LONG_MESSAGE_CHARS:
            complex_score += 1
        if signals["is_question"]:
            complex_score += 1

        if context.get("previous_phase"):
            complex_score += 3
            signals["in_complex_flow"] = True
        if context.get("has_existing_prd"):
            complex_score += 3
            signals["has_existing_prd"] = True
        if context.get("project_complexity") == "high":
            complex_score += 3
            signals["high_complexity"] = True

        scores = {"quick": quick_score, "complex": complex_score}
        total = quick_score + complex_score

        if total == 0:
            return LaneClassification(
                lane=Lane.COMPLEX,
                confidence=0.5,
                rationale=(
                    "No clear classification signals detected. "
                    "Defaulting to complex lane for comprehensive approach."
                ),
                signals=signals,
                scores=scores,
            )

        if quick_score > complex_score * 1.5:
            return LaneClassification(
                lane=Lane.QUICK,
                confidence=min(quick_score / total, MAX_CONFIDENCE),
                rationale=_rationale(Lane.QUICK, signals, quick_score, complex_score),
                signals=signals,
                scores=scores,
            )

        if complex_score > quick_score:
            boost = 0.1 if len(complex_matches) > 2 else 0.0
            return LaneClassification(
                lane=Lane.COMPLEX,
                confidence=min(complex_score / total + boost, MAX_CONFIDENCE),
                rationale=_rationale(Lane.COMPLEX, signals, quick_score, complex_score),
                signals=signals,
                scores=scores,
            )

        return LaneClassification(
            lane=Lane.QUICK,
            confidence=0.6,
            rationale="Task appears small enough for quick lane. Can escalate to complex if needed.",
            signals=signals,
            scores=scores,
        )


def _rationale(lane: Lane, signals: Mapping[str, Any], quick: int, complex_: int) -> str:
    reasons: list[str] = []
    if lane == Lane.QUICK:
        if signals["quick_fix_keywords"]:
            reasons.append("detected quick fix keywords")
        if signals["single_file_scope"]:
            reasons.append("single file scope")
        if signals["is_short_message"]:
            reasons.append("concise request")
        return f"Quick lane selected: {', '.join(reasons)}. (Score: Quick {quick} vs Complex {complex_})"

    if signals["complex_keywords"]:
        reasons.append("complex feature indicators")
    if signals["multi_file_scope"]:
        reasons.append("multi-file/cross-cutting scope")
    if signals["message_length"] > LONG_MESSAGE_CHARS:
        reasons.append("detailed requirements")
    if signals.get("in_complex_flow"):
        reasons.append("already in complex workflow")
    if signals["is_question"]:
        reasons.append("exploratory question")
    return f"Complex lane selected: {', '.join(reasons)}. (Score: Complex {complex_} vs Quick {quick})"


# -----------------------------------------------------------------------------
# Router
# -----------------------------------------------------------------------------


class LaneRouter:
    """Routes work items to a lane and its annotated phase blueprint.

    Attributes:
        classifier: Decides the lane for a description.
    """

    def __init__(
        self,
        classifier: LaneClassifier | None = None,
        quick_blueprint: Sequence[BlueprintPhase] | None = None,
        complex_blueprint: Sequence[BlueprintPhase] | None = None,
    ) -> None:
        self.classifier = classifier or KeywordLaneClassifier()
        self._blueprints: dict[Lane, list[PhaseSpec]] = {
            Lane.QUICK: annotate_blueprint(quick_blueprint or QUICK_BLUEPRINT, Lane.QUICK),
            Lane.COMPLEX: annotate_blueprint(complex_blueprint or COMPLEX_BLUEPRINT, Lane.COMPLEX),
        }
        for lane, phases in self._blueprints.items():
            if not phases:
                raise ValueError(f"Blueprint for lane {lane} must have at least one phase")

    def blueprint(self, lane: Lane | str) -> list[PhaseSpec]:
        """Annotated blueprint for ``lane``."""
        return list(self._blueprints[Lane(lane)])

    def route(self, description: str, context: Mapping[str, Any] | None = None) -> LaneDecision:
        """Classify a work item and attach its blueprint.

        Args:
            description: Free-text work item description.
            context: Optional hints (``force_lane``, ``previous_phase``,
                ``has_existing_prd``, ``project_complexity``).

        Raises:
            ValueError: If the description is empty.
        """
        if not isinstance(description, str) or not description.strip():
            raise ValueError("A work item description is required to plan phases")
        context = context or {}

        forced = context.get("force_lane")
        if forced:
            lane = Lane(forced)
            classification = LaneClassification(
                lane=lane,
                confidence=1.0,
                rationale=f"Manual override to {lane} lane",
                signals={"override": True},
            )
        else:
            classification = self.classifier.classify(description, context)

        decision = LaneDecision(
            lane=classification.lane,
            confidence=classification.confidence,
            rationale=classification.rationale,
            signals=classification.signals,
            scores=classification.scores,
            phases=self.blueprint(classification.lane),
        )
        logger.info(
            "lane_selected",
            lane=decision.lane.value,
            confidence=round(decision.confidence, 3),
            scores=decision.scores,
        )
        return decision
