"""Phase State Machine.

Holds the current phase of one project, decides whether a detector's
proposal becomes a transition, and runs the transition side effects in a
fixed order:

    1. save the outgoing phase's deliverables
    2. load context for the incoming phase and fold requirements/decisions
    3. trigger the incoming phase's workflow entry point (``auto-<phase>``)
    4. update the project state
    5. return a result carrying the phase introduction message

All collaborators are injected through ``PhaseMachineDependencies`` and are
validated at construction. The machine is not safe for concurrent use on
one project; callers serialize transitions per project.

Usage:
    >>> machine = PhaseStateMachine(PhaseMachineDependencies(
    ...     detector=detector,
    ...     deliverable_store=store,
    ...     context_preserver=DefaultContextPreserver(),
    ...     workflow_trigger=trigger,
    ... ))
    >>> result = await machine.check_transition("Let's plan the sprint")
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

import structlog

from agents.utils import maybe_await
from config import settings
from events.bus import EventBus
from events.types import EventType, WorkflowEvent
from models.schemas import PhaseSpec, ResolvedDependencies
from workflow.context import ContextPreserver, DeliverableStore, ProjectContext, utc_now
from workflow.detector import (
    DetectorParseError,
    PhaseDetection,
    PhaseDetector,
    parse_detector_payload,
)
from workflow.phases import (
    agent_for,
    canonical_phase,
    deliverables_for,
    introduction_for,
    requires_validation,
)

logger = structlog.get_logger()

REQUIRED_DEPENDENCIES = ("detector", "deliverable_store", "context_preserver", "workflow_trigger")


class MissingDependencyError(TypeError):
    """A required collaborator was not supplied."""

    def __init__(self, missing: list[str]) -> None:
        super().__init__(f"Missing required dependencies for phase transition: {', '.join(missing)}")
        self.missing = missing


class PhaseTransitionError(RuntimeError):
    """A collaborator failed while an accepted transition was running."""

    def __init__(self, from_phase: str | None, to_phase: str, cause: BaseException) -> None:
        super().__init__(f"Phase transition from {from_phase} to {to_phase} failed: {cause}")
        self.from_phase = from_phase
        self.to_phase = to_phase


class ValidationRequiredError(RuntimeError):
    """A user-requested transition into a gated phase was not confirmed."""


class WorkflowTrigger(Protocol):
    def trigger(self, command: str, context: Mapping[str, Any]) -> Any: ...


@dataclass
class PhaseMachineDependencies:
    """Collaborators of the phase state machine.

    ``agent_loader`` (agent id -> ResolvedDependencies) and ``state_listener``
    (receives each committed state update) are optional. Collaborators may be
    sync or async.
    """

    detector: PhaseDetector | None = None
    deliverable_store: DeliverableStore | None = None
    context_preserver: ContextPreserver | None = None
    workflow_trigger: WorkflowTrigger | None = None
    agent_loader: Callable[[str], Any] | None = None
    state_listener: Callable[[dict[str, Any]], Any] | None = None

    def validate(self) -> None:
        missing = [name for name in REQUIRED_DEPENDENCIES if getattr(self, name) is None]
        if missing:
            raise MissingDependencyError(missing)


@dataclass(frozen=True)
class TransitionResult:
    from_phase: str | None
    to_phase: str
    context: dict[str, Any]
    workflow_result: Any
    message: str
    saved_deliverables: list[str] = field(default_factory=list)
    agent: ResolvedDependencies | None = None
    phase_spec: PhaseSpec | None = None


@dataclass(frozen=True)
class TransitionAborted:
    """The detector payload was invalid; the machine stayed put."""

    error: DetectorParseError
    should_transition: bool = False


class PhaseStateMachine:
    """Drives one project's phase through detector proposals or a blueprint.

    No phase is terminal; a phase may be revisited whenever it differs from
    the current one.

    Attributes:
        context: The project context this machine exclusively owns.
        confidence_threshold: Minimum detector confidence to transition.
    """

    def __init__(
        self,
        dependencies: PhaseMachineDependencies,
        context: ProjectContext | None = None,
        *,
        project_id: str = "default",
        confidence_threshold: float | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        dependencies.validate()
        self.deps = dependencies
        self.context = context or ProjectContext(project_id=project_id)
        self.confidence_threshold = (
            settings.phase_confidence_threshold
            if confidence_threshold is None
            else confidence_threshold
        )
        self.event_bus = event_bus
        self._blueprint: list[PhaseSpec] = []

    @property
    def current_phase(self) -> str | None:
        return self.context.current_phase

    @property
    def blueprint(self) -> list[PhaseSpec]:
        return list(self._blueprint)

    def start(self, blueprint: list[PhaseSpec]) -> None:
        """Install a lane blueprint to walk with ``advance()``."""
        if not blueprint:
            raise ValueError("A blueprint requires at least one phase")
        self._blueprint = sorted(blueprint, key=lambda phase: phase.order)
        logger.info(
            "phase_blueprint_installed",
            project_id=self.context.project_id,
            phases=[phase.id for phase in self._blueprint],
        )

    def _spec_for(self, phase: str) -> PhaseSpec | None:
        for spec in self._blueprint:
            if canonical_phase(spec.id) == phase:
                return spec
        return None

    async def _publish(self, event_type: EventType, data: dict[str, Any]) -> None:
        if self.event_bus is None:
            return
        await self.event_bus.publish(
            WorkflowEvent(
                type=event_type,
                session_id=self.context.project_id,
                agent_id="phase_machine",
                agent_role="Phase State Machine",
                data=data,
            )
        )

    # -------------------------------------------------------------------------
    # Detection
    # -------------------------------------------------------------------------

    async def check_transition(
        self,
        user_message: str,
        conversation_context: Mapping[str, Any] | None = None,
    ) -> TransitionResult | TransitionAborted | None:
        """Ask the detector for a phase and transition if the guard accepts it.

        Returns:
            TransitionResult when a transition ran, TransitionAborted when the
            detector payload was invalid, None when the proposal was rejected.
        """
        conversation_context = dict(conversation_context or {})
        current = self.current_phase
        detector_context = {**self.context.snapshot(), **conversation_context}

        raw = await maybe_await(self.deps.detector.detect, detector_context, user_message, current)
        outcome = parse_detector_payload(raw)

        if isinstance(outcome, DetectorParseError):
            logger.warning(
                "phase_detector_parse_error",
                project_id=self.context.project_id,
                agent_id=outcome.agent_id,
                snippet=outcome.raw_snippet,
                guidance=outcome.guidance,
            )
            await self._publish(
                EventType.DETECTOR_PARSE_ERROR,
                {"agent_id": outcome.agent_id, "raw_snippet": outcome.raw_snippet},
            )
            return TransitionAborted(error=outcome)

        if outcome is None or not self._accepts(outcome, current):
            return None
        return await self.execute_transition(outcome.detected_phase, conversation_context)

    def _accepts(self, detection: PhaseDetection, current: str | None) -> bool:
        if detection.confidence is not None and detection.confidence < self.confidence_threshold:
            logger.debug(
                "phase_detection_rejected",
                reason="low_confidence",
                detected_phase=detection.detected_phase,
                confidence=detection.confidence,
            )
            return False
        if current is not None and canonical_phase(detection.detected_phase) == canonical_phase(current):
            logger.debug("phase_detection_rejected", reason="same_phase", detected_phase=current)
            return False
        return True

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def execute_transition(
        self,
        to_phase: str | None,
        conversation_context: Mapping[str, Any] | None = None,
    ) -> TransitionResult | None:
        """Run an accepted transition into ``to_phase``.

        Returns None when ``to_phase`` is empty.

        Raises:
            NotFoundError: The incoming phase's agent could not be resolved;
                nothing was changed.
            PhaseTransitionError: A collaborator failed; the in-memory
                project state was not changed.
        """
        if not to_phase:
            return None
        to_phase = canonical_phase(to_phase)
        from_phase = self.current_phase
        conversation_context = dict(conversation_context or {})

        agent: ResolvedDependencies | None = None
        agent_id = agent_for(to_phase)
        if self.deps.agent_loader is not None and agent_id is not None:
            agent = await maybe_await(self.deps.agent_loader, agent_id)

        outgoing = dict(self.context.phase_data.get(from_phase, {})) if from_phase else {}
        outgoing.update(conversation_context)
        transitioned_at = utc_now()

        try:
            saved: dict[str, Any] = {}
            for key in deliverables_for(from_phase):
                value = outgoing.get(key)
                if value:
                    await maybe_await(self.deps.deliverable_store.save, key, value)
                    saved[key] = value

            base = self.context.snapshot()
            base.update(conversation_context)
            enriched = await maybe_await(self.deps.context_preserver.load, to_phase, base)
            folded = await maybe_await(self.deps.context_preserver.consolidate, enriched)

            workflow_result = await maybe_await(
                self.deps.workflow_trigger.trigger, f"auto-{to_phase}", enriched
            )

            if self.deps.state_listener is not None:
                await maybe_await(
                    self.deps.state_listener,
                    {
                        "current_phase": to_phase,
                        "previous_phase": from_phase,
                        "transition_time": transitioned_at,
                        "context": enriched,
                    },
                )
        except Exception as e:
            logger.error(
                "phase_transition_failed",
                project_id=self.context.project_id,
                from_phase=from_phase,
                to_phase=to_phase,
                error=str(e),
                exc_info=True,
            )
            raise PhaseTransitionError(from_phase, to_phase, e) from e

        if from_phase is not None:
            for key, value in saved.items():
                self.context.store_deliverable(key, value, phase=from_phase)
            self.context.phase_history.append(
                {"phase": from_phase, "completed_at": transitioned_at, "deliverables": list(saved)}
            )
        self.context.previous_phase = from_phase
        self.context.current_phase = to_phase
        self.context.transitioned_at = transitioned_at
        self.context.all_requirements = dict(folded.get("requirements") or {})
        self.context.all_decisions = dict(folded.get("decisions") or {})

        logger.info(
            "phase_transition_executed",
            project_id=self.context.project_id,
            from_phase=from_phase,
            to_phase=to_phase,
            saved_deliverables=list(saved),
        )
        await self._publish(
            EventType.PHASE_TRANSITION,
            {"from_phase": from_phase, "to_phase": to_phase, "saved_deliverables": list(saved)},
        )

        return TransitionResult(
            from_phase=from_phase,
            to_phase=to_phase,
            context=enriched,
            workflow_result=workflow_result,
            message=introduction_for(to_phase),
            saved_deliverables=list(saved),
            agent=agent,
            phase_spec=self._spec_for(to_phase),
        )

    async def handle_transition(
        self,
        to_phase: str,
        conversation_context: Mapping[str, Any] | None = None,
        *,
        validated: bool = False,
    ) -> TransitionResult | None:
        """User-requested transition. Gated phases need explicit confirmation.

        Raises:
            ValidationRequiredError: ``to_phase`` is gated and not validated.
        """
        if requires_validation(to_phase) and not validated:
            raise ValidationRequiredError(f"Transition to {to_phase} requires user validation")
        if self.current_phase is not None and canonical_phase(to_phase) == canonical_phase(self.current_phase):
            return None
        return await self.execute_transition(to_phase, conversation_context)

    async def advance(
        self,
        conversation_context: Mapping[str, Any] | None = None,
    ) -> TransitionResult | None:
        """Transition to the blueprint phase after the current one.

        Starts at the first blueprint phase when no phase is active or the
        current phase is not part of the blueprint. Returns None at the end
        of the blueprint.

        Raises:
            RuntimeError: If no blueprint was installed.
        """
        if not self._blueprint:
            raise RuntimeError("No blueprint installed; call start() first")

        current = self.current_phase
        current_spec = self._spec_for(current) if current else None
        if current_spec is None:
            following = self._blueprint
        else:
            following = [spec for spec in self._blueprint if spec.order > current_spec.order]

        if not following:
            logger.info("phase_blueprint_completed", project_id=self.context.project_id)
            return None
        return await self.execute_transition(following[0].id, conversation_context)
