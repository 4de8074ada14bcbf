"""Data models for the orchestration engine."""

from models.schemas import (
    AgentConfig,
    EdgeKind,
    Handoff,
    Lane,
    LaneDecision,
    MissionTask,
    OverallStatus,
    PhaseSpec,
    QAItemResult,
    QAPlan,
    QAPlanItem,
    QAReport,
    QAStatus,
    ResolvedDependencies,
    Resource,
    TaskEdge,
    TaskOutput,
    TaskRecord,
    TaskStatus,
    TeamConfig,
    VerifierReport,
)

__all__ = [
    "AgentConfig",
    "EdgeKind",
    "Handoff",
    "Lane",
    "LaneDecision",
    "MissionTask",
    "OverallStatus",
    "PhaseSpec",
    "QAItemResult",
    "QAPlan",
    "QAPlanItem",
    "QAReport",
    "QAStatus",
    "ResolvedDependencies",
    "Resource",
    "TaskEdge",
    "TaskOutput",
    "TaskRecord",
    "TaskStatus",
    "TeamConfig",
    "VerifierReport",
]
