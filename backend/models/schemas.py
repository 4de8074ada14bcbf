"""Pydantic models for the orchestration engine's data model.

This module defines the value types that flow between the lane router, the
phase state machine, the dependency resolver and the task graph executor.
All models use Pydantic v2; loaded artifacts and routing results are frozen.
"""

from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Lane(StrEnum):
    """Coarse execution strategies for a work item."""

    QUICK = "quick"
    COMPLEX = "complex"


class PhaseSpec(BaseModel):
    """One phase of a lane blueprint.

    Attributes:
        id: Phase tag (e.g. "analysis"). Not restricted to known phases.
        variant: Flavour of the phase for this lane (e.g. "lite", "deep-dive").
        focus: What the phase concentrates on.
        order: 1-based position within the active blueprint.
        entry_criteria: Human-readable precondition for entering the phase.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    variant: str
    focus: str
    order: int = Field(ge=1)
    entry_criteria: str = Field(min_length=1)


class LaneDecision(BaseModel):
    """Result of routing a work item to a lane."""

    model_config = ConfigDict(frozen=True)

    lane: Lane
    confidence: float = Field(ge=0.0, le=1.0)
    rationale: str
    signals: dict[str, Any] = Field(default_factory=dict)
    scores: dict[str, int] = Field(default_factory=dict)
    phases: list[PhaseSpec]

    @model_validator(mode="after")
    def _check_blueprint_order(self) -> "LaneDecision":
        if not self.phases:
            raise ValueError("A lane decision requires at least one phase")
        orders = [phase.order for phase in self.phases]
        if orders[0] != 1 or any(b <= a for a, b in zip(orders, orders[1:], strict=False)):
            raise ValueError(f"Phase order must start at 1 and strictly increase, got {orders}")
        return self


# -----------------------------------------------------------------------------
# Dependency Resolver
# -----------------------------------------------------------------------------


class Resource(BaseModel):
    """An opaque loaded artifact (task spec, template, checklist, data, utility)."""

    model_config = ConfigDict(frozen=True)

    type: str
    id: str
    path: str
    content: str


class AgentConfig(BaseModel):
    """Parsed declarative bundle for one agent.

    Attributes:
        id: Agent identifier (file stem of the agent document).
        path: Absolute path of the document the agent was loaded from.
        content: Raw document text.
        config: Structured configuration parsed from the embedded YAML block.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    path: str
    content: str
    config: dict[str, Any]

    @property
    def dependencies(self) -> dict[str, list[str]]:
        raw = self.config.get("dependencies") or {}
        if not isinstance(raw, dict):
            return {}
        return {
            str(kind): [str(item) for item in (ids or [])]
            for kind, ids in raw.items()
            if isinstance(ids, list | tuple)
        }


class TeamConfig(BaseModel):
    """Parsed team definition document."""

    model_config = ConfigDict(frozen=True)

    id: str
    path: str
    content: str
    config: dict[str, Any]

    @property
    def agent_ids(self) -> list[str]:
        return [str(agent) for agent in self.config.get("agents") or []]

    @property
    def workflow_ids(self) -> list[str]:
        return [str(workflow) for workflow in self.config.get("workflows") or []]


class ResolvedDependencies(BaseModel):
    """Materialized bundle for an agent or a team.

    For an agent, ``agent`` is set and ``agents`` is empty. For a team,
    ``team`` is set and ``agents`` lists every member, orchestrator first.
    """

    model_config = ConfigDict(frozen=True)

    agent: AgentConfig | None = None
    team: TeamConfig | None = None
    agents: list[AgentConfig] = Field(default_factory=list)
    resources: list[Resource] = Field(default_factory=list)


# -----------------------------------------------------------------------------
# Task Graph Executor
# -----------------------------------------------------------------------------


class TaskStatus(StrEnum):
    """Mission task lifecycle status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class EdgeKind(StrEnum):
    """Relationship between two mission tasks. Only BLOCKS affects scheduling."""

    BLOCKS = "blocks"
    SUPPORTS = "supports"
    RELATES_TO = "relates_to"


FailureKind = Literal["error", "dependency", "cancelled", "timeout"]


class MissionTask(BaseModel):
    """A node in the mission dependency graph."""

    id: str = Field(min_length=1)
    title: str
    mission: str
    persona: str | None = None
    dependencies: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("dependencies")
    @classmethod
    def _dedupe_dependencies(cls, v: list[str]) -> list[str]:
        return list(dict.fromkeys(v))


class TaskEdge(BaseModel):
    """Directed relationship ``from -> to`` between two tasks."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    from_task: str = Field(alias="from")
    to_task: str = Field(alias="to")
    kind: EdgeKind = EdgeKind.BLOCKS


class TaskOutput(BaseModel):
    """What a task executor reports back. A non-blank summary is required."""

    summary: str
    details: str | None = None
    files_touched: list[str] = Field(default_factory=list)
    artifacts: dict[str, str] = Field(default_factory=dict)
    notes: str | None = None

    @field_validator("summary")
    @classmethod
    def _summary_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("A task output requires a non-empty summary")
        return v

    @field_validator("files_touched")
    @classmethod
    def _dedupe_files(cls, v: list[str]) -> list[str]:
        return list(dict.fromkeys(v))


class TaskRecord(BaseModel):
    """Terminal snapshot of one mission task after a graph run.

    Attributes:
        sequence: Position in execution (completion) order, starting at 0.
        wave: Index of the ready wave the task ran in; None when the task
            never started.
    """

    task_id: str
    title: str
    mission: str
    persona: str | None = None
    dependencies: list[str] = Field(default_factory=list)
    status: TaskStatus
    sequence: int
    wave: int | None = None
    started_at: float | None = None
    finished_at: float | None = None
    output: TaskOutput | None = None
    error: str | None = None
    failure_kind: FailureKind | None = None


class Handoff(BaseModel):
    """Aggregate of a completed task graph run."""

    run_id: str
    feature_request: str
    tasks: list[TaskRecord]
    files_touched: list[str]
    edges: list[TaskEdge] = Field(default_factory=list)
    handoff_document: str

    @property
    def failed_tasks(self) -> list[TaskRecord]:
        return [task for task in self.tasks if task.status == TaskStatus.FAILED]

    @property
    def succeeded(self) -> bool:
        return not self.failed_tasks


# -----------------------------------------------------------------------------
# QA pass
# -----------------------------------------------------------------------------


class QAStatus(StrEnum):
    """Verdict a verifier reports for one plan item."""

    PASS = "pass"
    FAIL = "fail"
    SKIPPED = "skipped"


class OverallStatus(StrEnum):
    """Aggregate QA verdict."""

    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    PARTIAL = "PARTIAL"


class QAPlanItem(BaseModel):
    """One verification item generated for one handoff task."""

    id: str
    title: str
    mission: str
    target_task_id: str
    related_files: list[str] = Field(default_factory=list)
    focus_areas: list[str] = Field(default_factory=list)


class QAPlan(BaseModel):
    feature_request: str
    run_id: str
    items: list[QAPlanItem]


class VerifierReport(BaseModel):
    """What a caller-supplied verifier returns for a plan item."""

    status: QAStatus
    findings: str = ""
    defects: list[str] = Field(default_factory=list)
    evidence: str | None = None


class QAItemResult(BaseModel):
    plan_item_id: str
    title: str
    mission: str
    status: QAStatus
    findings: str = ""
    defects: list[str] = Field(default_factory=list)
    evidence: str | None = None


class QAReport(BaseModel):
    """Outcome of running a QA plan.

    Attributes:
        overall_status: FAILURE if any item failed, PARTIAL if none failed
            but some were skipped, SUCCESS when every item passed.
        body: Markdown report; failing items' defect notes are concatenated
            into its aggregated-defects section.
    """

    overall_status: OverallStatus
    summary: str
    feature_request: str
    plan: QAPlan
    results: list[QAItemResult]
    body: str
