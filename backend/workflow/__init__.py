"""Lane routing and phase progression for project workflows."""

from workflow.context import (
    ContextPreserver,
    DefaultContextPreserver,
    DeliverableStore,
    InMemoryDeliverableStore,
    ProjectContext,
)
from workflow.detector import (
    DetectorParseError,
    PhaseDetection,
    PhaseDetector,
    parse_detector_payload,
)
from workflow.lane_router import KeywordLaneClassifier, LaneClassification, LaneClassifier, LaneRouter
from workflow.phase_machine import (
    MissingDependencyError,
    PhaseMachineDependencies,
    PhaseStateMachine,
    PhaseTransitionError,
    TransitionAborted,
    TransitionResult,
    ValidationRequiredError,
)
from workflow.phases import Phase

__all__ = [
    "ContextPreserver",
    "DefaultContextPreserver",
    "DeliverableStore",
    "DetectorParseError",
    "InMemoryDeliverableStore",
    "KeywordLaneClassifier",
    "LaneClassification",
    "LaneClassifier",
    "LaneRouter",
    "MissingDependencyError",
    "Phase",
    "PhaseDetection",
    "PhaseDetector",
    "PhaseMachineDependencies",
    "PhaseStateMachine",
    "PhaseTransitionError",
    "ProjectContext",
    "TransitionAborted",
    "TransitionResult",
    "ValidationRequiredError",
    "parse_detector_payload",
]
