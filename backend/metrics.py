"""In-memory metrics collection for active workflow sessions.

This module provides the MetricsCollector class that accumulates counters
and timing data for running sessions: phase transitions, rejected or
unparseable detections, tool calls, approval denials, and mission outcomes.

Usage:
    >>> from metrics import MetricsCollector
    >>> collector = MetricsCollector()
    >>> collector.start("proj-1")
    >>> collector.record_transition("proj-1")
    >>> collector.record_tool_call("proj-1")
    >>> final = collector.finish("proj-1")
    >>> print(final)  # SessionMetricsData(...)
"""

import time
from dataclasses import asdict, dataclass, field

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class SessionMetricsData:
    """Accumulated metrics for a single session.

    Attributes:
        transitions: Committed phase transitions.
        rejected_detections: Detections dropped by the confidence or same-phase guard.
        detector_parse_errors: Detector outputs that could not be parsed.
        tool_calls: Tool handler invocations.
        approvals_denied: Tool calls rejected by the approval checker.
        tasks_completed: Missions that finished successfully.
        tasks_failed: Missions that failed, timed out, or were cancelled.
        duration_ms: Total session time in milliseconds (set by finish()).
        started_at: Unix timestamp when tracking began.
    """

    transitions: int = 0
    rejected_detections: int = 0
    detector_parse_errors: int = 0
    tool_calls: int = 0
    approvals_denied: int = 0
    tasks_completed: int = 0
    tasks_failed: int = 0
    duration_ms: int = 0
    started_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, int]:
        data = asdict(self)
        data.pop("started_at")
        return data


class MetricsCollector:
    """In-memory collector that tracks per-session metrics.

    Recording against an untracked session is a no-op with a warning.

    Attributes:
        _sessions: Mapping from session_id to its metrics data.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, SessionMetricsData] = {}
        logger.info("metrics_collector_initialized")

    def start(self, session_id: str) -> None:
        """Begin tracking metrics for a session. Already tracked is a no-op."""
        if session_id in self._sessions:
            logger.debug("metrics_already_tracking", session_id=session_id)
            return

        self._sessions[session_id] = SessionMetricsData()
        logger.debug("metrics_tracking_started", session_id=session_id)

    def _increment(self, session_id: str, counter: str, amount: int = 1) -> None:
        data = self._sessions.get(session_id)
        if data is None:
            logger.warning("metrics_record_no_session", session_id=session_id, counter=counter)
            return
        setattr(data, counter, getattr(data, counter) + amount)

    def record_transition(self, session_id: str) -> None:
        self._increment(session_id, "transitions")

    def record_rejected_detection(self, session_id: str) -> None:
        self._increment(session_id, "rejected_detections")

    def record_detector_parse_error(self, session_id: str) -> None:
        self._increment(session_id, "detector_parse_errors")

    def record_tool_call(self, session_id: str) -> None:
        self._increment(session_id, "tool_calls")

    def record_approval_denied(self, session_id: str) -> None:
        self._increment(session_id, "approvals_denied")

    def record_tasks(self, session_id: str, completed: int, failed: int) -> None:
        """Record the outcome counts of one mission run."""
        self._increment(session_id, "tasks_completed", completed)
        self._increment(session_id, "tasks_failed", failed)

    def finish(self, session_id: str) -> SessionMetricsData | None:
        """Finalize metrics for a session, calculating duration.

        The session's metrics data is removed from the collector after
        this call.

        Returns:
            The final SessionMetricsData, or None if not tracked.
        """
        data = self._sessions.pop(session_id, None)
        if data is None:
            logger.warning("metrics_finish_no_session", session_id=session_id)
            return None

        data.duration_ms = int((time.time() - data.started_at) * 1000)

        logger.info(
            "metrics_session_finished",
            session_id=session_id,
            transitions=data.transitions,
            tool_calls=data.tool_calls,
            tasks_failed=data.tasks_failed,
            duration_ms=data.duration_ms,
        )

        return data

    def get(self, session_id: str) -> SessionMetricsData | None:
        """Current (in-progress) metrics for a session, without removing it."""
        return self._sessions.get(session_id)
