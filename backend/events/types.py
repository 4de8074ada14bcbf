"""Event type definitions for the workflow event system.

Every meaningful state change in the orchestration engine (lane routing,
phase transitions, mission task lifecycle, tool dispatch) produces an event
that hosts can stream to observers.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class EventType(StrEnum):
    """All event types emitted by the engine.

    Events are categorized by:
    - Session lifecycle: Start and close of a project workflow session
    - Routing: Lane decisions for incoming work items
    - Phases: Accepted transitions and detector diagnostics
    - Task graph: Mission task lifecycle and aggregated results
    - Tools: Dispatch, results, and approval outcomes
    """

    # Session lifecycle
    SESSION_STARTED = "session_started"
    SESSION_CLOSED = "session_closed"

    # Routing
    LANE_SELECTED = "lane_selected"

    # Phases
    PHASE_TRANSITION = "phase_transition"
    DETECTOR_PARSE_ERROR = "detector_parse_error"

    # Task graph
    GRAPH_INITIALIZED = "graph_initialized"
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    HANDOFF_READY = "handoff_ready"
    QA_REPORT_READY = "qa_report_ready"

    # Tools
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    TOOL_APPROVAL_DENIED = "tool_approval_denied"


class WorkflowEvent(BaseModel):
    """An event emitted while a workflow session runs.

    Each event includes:
    - type: The category of event (from EventType enum)
    - timestamp: Unix timestamp when the event occurred
    - session_id: Which project session this event belongs to
    - agent_id: Which agent or component produced this event (if applicable)
    - agent_role: Human-readable role name (e.g., "Task Graph", "analyst")
    - data: Event-specific payload

    Payload schemas by event type:

    LANE_SELECTED:
        - lane: str - "quick" or "complex"
        - confidence: float - Classifier confidence
        - phases: list[str] - Blueprint phase ids in order

    PHASE_TRANSITION:
        - from_phase: str | None - Outgoing phase
        - to_phase: str - Incoming phase
        - saved_deliverables: list[str] - Deliverable keys persisted

    DETECTOR_PARSE_ERROR:
        - agent_id: str - Detector that produced the payload
        - raw_snippet: str - Truncated raw payload

    GRAPH_INITIALIZED:
        - tasks: list[str] - Registered task ids
        - edges: list[dict] - Declared edges

    TASK_STARTED / TASK_COMPLETED / TASK_FAILED:
        - task_id: str
        - wave: int - Ready-wave index the task ran in
        - error: str - Failure reason (TASK_FAILED only)
        - failure_kind: str - error | dependency | cancelled | timeout

    TOOL_CALL / TOOL_RESULT / TOOL_APPROVAL_DENIED:
        - tool: str - Tool name
        - args: dict - Summarized arguments (TOOL_CALL only)
        - success: bool - Outcome (TOOL_RESULT only)
        - message: str - Checker message (TOOL_APPROVAL_DENIED only)
    """

    type: EventType
    timestamp: float = Field(default_factory=time.time)
    session_id: str
    agent_id: str | None = None
    agent_role: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "type": "phase_transition",
                    "timestamp": 1699876543.123,
                    "session_id": "proj_abc123",
                    "agent_id": "phase_machine",
                    "agent_role": "Phase State Machine",
                    "data": {
                        "from_phase": "analysis",
                        "to_phase": "planning",
                        "saved_deliverables": ["requirements"],
                    },
                }
            ]
        }
    }
