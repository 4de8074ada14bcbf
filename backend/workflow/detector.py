"""Phase-detector collaborator interface and tagged outcome types.

A detector returns one of three outcomes, which callers match on:

- ``PhaseDetection``: a candidate phase with an optional confidence.
- ``DetectorParseError``: the detector's payload was structurally invalid.
- ``None``: no detection.

``parse_detector_payload`` converts whatever a detector implementation
produced (mapping, free text with embedded JSON, or an already tagged
outcome) into one of those.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from numbers import Real
from typing import Any, Protocol

from agents.utils import extract_json_from_response, snippet

PHASE_DETECTOR_AGENT_ID = "phase-detector"
PARSE_ERROR_TYPE = "agent_parse_error"
DEFAULT_GUIDANCE = "Phase detector must return a JSON object with detected_phase and confidence."


@dataclass(frozen=True)
class PhaseDetection:
    detected_phase: str
    confidence: float | None = None


@dataclass(frozen=True)
class DetectorParseError:
    """Structurally invalid detector payload.

    Attributes:
        agent_id: Detector agent that produced the payload.
        raw_snippet: Offending payload, truncated for logs.
        guidance: Hint on the expected shape.
    """

    agent_id: str
    raw_snippet: str
    guidance: str = DEFAULT_GUIDANCE


DetectorOutcome = PhaseDetection | DetectorParseError | None


class PhaseDetector(Protocol):
    async def detect(
        self,
        context: Mapping[str, Any],
        user_message: str,
        current_phase: str | None,
    ) -> Any:
        """Return a detector payload (any shape accepted by parse_detector_payload)."""
        ...


def _parse_error(raw: Any, agent_id: str = PHASE_DETECTOR_AGENT_ID, guidance: str | None = None) -> DetectorParseError:
    return DetectorParseError(
        agent_id=agent_id,
        raw_snippet=snippet(raw),
        guidance=guidance or DEFAULT_GUIDANCE,
    )


def parse_detector_payload(payload: Any, agent_id: str = PHASE_DETECTOR_AGENT_ID) -> DetectorOutcome:
    """Normalize a raw detector payload into a tagged outcome.

    Missing or null ``detected_phase`` means no detection. A present but
    non-string phase, a non-numeric confidence, unparsable text, or an error
    object (complete or partial) yields a DetectorParseError.
    """
    if payload is None or isinstance(payload, PhaseDetection | DetectorParseError):
        return payload

    if isinstance(payload, str):
        if not payload.strip():
            return None
        parsed = extract_json_from_response(payload)
        if parsed is None:
            return _parse_error(payload, agent_id)
        return parse_detector_payload(parsed, agent_id)

    if not isinstance(payload, Mapping):
        return _parse_error(payload, agent_id)

    if payload.get("errorType") == PARSE_ERROR_TYPE or payload.get("ok") is False:
        return DetectorParseError(
            agent_id=str(payload.get("agentId") or agent_id),
            raw_snippet=snippet(payload.get("rawSnippet", payload)),
            guidance=str(payload.get("guidance") or DEFAULT_GUIDANCE),
        )

    phase = payload.get("detected_phase")
    if phase is None:
        return None
    if not isinstance(phase, str):
        return _parse_error(payload, agent_id, "detected_phase must be a string.")
    if not phase.strip():
        return None

    confidence = payload.get("confidence")
    if confidence is not None:
        if isinstance(confidence, bool) or not isinstance(confidence, Real):
            return _parse_error(payload, agent_id, "confidence must be a number between 0 and 1.")
        confidence = float(confidence)

    return PhaseDetection(detected_phase=phase.strip(), confidence=confidence)
