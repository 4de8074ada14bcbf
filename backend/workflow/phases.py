"""Closed set of workflow phases and the per-phase lookup tables.

Blueprint phase ids are free-form strings; the tables here are keyed by the
``Phase`` enum and every lookup by raw string falls back to a default arm.
Adding a member to ``Phase`` without extending every table fails at import.
"""

from collections.abc import Mapping
from enum import StrEnum
from types import MappingProxyType


class Phase(StrEnum):
    """Known workflow phases."""

    ANALYSIS = "analysis"
    PLANNING = "planning"
    ARCHITECTURE = "architecture"
    STORY_MANAGEMENT = "story_management"
    DEVELOPMENT = "development"
    QA = "qa"
    UX = "ux"
    REVIEW = "review"


# Role-style names used by detectors and agent documents.
PHASE_ALIASES: Mapping[str, Phase] = MappingProxyType(
    {
        "analyst": Phase.ANALYSIS,
        "pm": Phase.PLANNING,
        "architect": Phase.ARCHITECTURE,
        "sm": Phase.STORY_MANAGEMENT,
        "dev": Phase.DEVELOPMENT,
        "ux-expert": Phase.UX,
        "po": Phase.REVIEW,
    }
)

PHASE_DELIVERABLES: Mapping[Phase, tuple[str, ...]] = MappingProxyType(
    {
        Phase.ANALYSIS: ("user_personas", "market_research", "requirements"),
        Phase.PLANNING: ("project_plan", "timeline", "milestones"),
        Phase.ARCHITECTURE: ("tech_stack", "system_design", "architecture"),
        Phase.STORY_MANAGEMENT: ("user_stories", "epics", "sprint_plan"),
        Phase.DEVELOPMENT: ("implementation_notes", "code_guidelines"),
        Phase.QA: ("test_results", "quality_metrics"),
        Phase.UX: ("ux_feedback", "design_improvements"),
        Phase.REVIEW: ("final_review", "launch_plan"),
    }
)
DEFAULT_DELIVERABLES: tuple[str, ...] = ()

PHASE_INTRODUCTIONS: Mapping[Phase, str] = MappingProxyType(
    {
        Phase.ANALYSIS: "Let me understand your requirements better...",
        Phase.PLANNING: "Now let me create a plan for this...",
        Phase.ARCHITECTURE: "Let me think about the technical approach...",
        Phase.STORY_MANAGEMENT: "Let me break this down into actionable steps...",
        Phase.DEVELOPMENT: "Time to focus on implementation details...",
        Phase.QA: "Let me help you test and validate this...",
        Phase.UX: "Let's make sure this works well for users...",
        Phase.REVIEW: "Let's do a final review and plan next steps...",
    }
)
DEFAULT_INTRODUCTION = "Continuing with your project..."

PHASE_AGENTS: Mapping[Phase, str] = MappingProxyType(
    {
        Phase.ANALYSIS: "analyst",
        Phase.PLANNING: "pm",
        Phase.ARCHITECTURE: "architect",
        Phase.STORY_MANAGEMENT: "sm",
        Phase.DEVELOPMENT: "dev",
        Phase.QA: "qa",
        Phase.UX: "ux-expert",
        Phase.REVIEW: "po",
    }
)

# Phases a user-requested transition may only enter once the user confirmed.
GATED_PHASES: frozenset[Phase] = frozenset(
    {Phase.PLANNING, Phase.ARCHITECTURE, Phase.DEVELOPMENT}
)


def _check_tables() -> None:
    tables = {
        "PHASE_DELIVERABLES": PHASE_DELIVERABLES,
        "PHASE_INTRODUCTIONS": PHASE_INTRODUCTIONS,
        "PHASE_AGENTS": PHASE_AGENTS,
    }
    for name, table in tables.items():
        missing = [phase.value for phase in Phase if phase not in table]
        if missing:
            raise RuntimeError(f"{name} is missing entries for: {', '.join(missing)}")


_check_tables()


def coerce_phase(value: Phase | str | None) -> Phase | None:
    """Map a phase id or alias to a known ``Phase``; None when unknown."""
    if value is None:
        return None
    if isinstance(value, Phase):
        return value
    key = value.strip().lower()
    try:
        return Phase(key)
    except ValueError:
        return PHASE_ALIASES.get(key)


def canonical_phase(phase: str) -> str:
    """Known phases and their aliases map to the enum value; others pass through."""
    known = coerce_phase(phase)
    return known.value if known else phase


def deliverables_for(phase: Phase | str | None) -> tuple[str, ...]:
    known = coerce_phase(phase)
    return PHASE_DELIVERABLES[known] if known else DEFAULT_DELIVERABLES


def introduction_for(phase: Phase | str | None) -> str:
    known = coerce_phase(phase)
    return PHASE_INTRODUCTIONS[known] if known else DEFAULT_INTRODUCTION


def agent_for(phase: Phase | str | None) -> str | None:
    """Agent id that materializes ``phase``, or None for unknown phases."""
    known = coerce_phase(phase)
    return PHASE_AGENTS[known] if known else None


def requires_validation(phase: Phase | str | None) -> bool:
    known = coerce_phase(phase)
    return known in GATED_PHASES
