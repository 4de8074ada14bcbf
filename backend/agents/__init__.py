"""Mission execution, QA aggregation, and tool dispatch.

This module exports the key components needed for agent execution:
- Task graph executor that runs missions in dependency waves
- QA plan generation and report aggregation over a handoff
- Tool runtime with routing, approval, and state-bridge hooks
"""

from agents.quality import (
    build_qa_plan,
    compose_summary,
    render_quality_report,
    resolve_overall_status,
    run_qa_plan,
)
from agents.task_graph import (
    CancellationToken,
    DependencyCycleError,
    DuplicateTaskError,
    EmptyTaskGraphError,
    MalformedEdgeError,
    TaskCancelledError,
    TaskContext,
    TaskGraphError,
    TaskGraphExecutor,
    UnknownDependencyError,
    build_task_graph,
    render_handoff_document,
)
from agents.tools import (
    ApprovalDecision,
    StateBridge,
    ToolArgumentError,
    ToolInvocation,
    ToolResult,
    ToolRuntime,
)
from agents.utils import extract_json_from_response, topological_sort

__all__ = [
    # Task graph
    "CancellationToken",
    "DependencyCycleError",
    "DuplicateTaskError",
    "EmptyTaskGraphError",
    "MalformedEdgeError",
    "TaskCancelledError",
    "TaskContext",
    "TaskGraphError",
    "TaskGraphExecutor",
    "UnknownDependencyError",
    "build_task_graph",
    "render_handoff_document",
    # Quality
    "build_qa_plan",
    "compose_summary",
    "render_quality_report",
    "resolve_overall_status",
    "run_qa_plan",
    # Tools
    "ApprovalDecision",
    "StateBridge",
    "ToolArgumentError",
    "ToolInvocation",
    "ToolResult",
    "ToolRuntime",
    # Utils
    "extract_json_from_response",
    "topological_sort",
]
