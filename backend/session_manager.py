"""Session manager for orchestrating project workflows.

This module provides the SessionManager class that owns one WorkflowSession
per project id and wires the engine's control flow:

    work item -> LaneRouter -> blueprint -> PhaseStateMachine
    phase boundary -> DependencyResolver materializes the phase's agent
    decomposed phase -> TaskGraphExecutor -> Handoff -> QA pass
    every tool call -> ToolRuntime

Usage:
    >>> from events import get_event_bus
    >>> from session_manager import SessionManager
    >>>
    >>> manager = SessionManager(detector=my_detector, event_bus=get_event_bus())
    >>> session = await manager.create_session("proj-1", "Fix typo in README.md")
    >>> result = await manager.advance("proj-1")
    >>> handoff = await manager.run_missions("proj-1", plan, executor_factory)
    >>> report = await manager.run_quality_pass("proj-1", verifier)
    >>> await manager.close_session("proj-1")
"""

import asyncio
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog

from agents.quality import Verifier, build_qa_plan, run_qa_plan
from agents.task_graph import CancellationToken, TaskExecutor, build_task_graph
from agents.tools import ToolResult, ToolRuntime
from events import EventBus
from events.types import EventType, WorkflowEvent
from metrics import MetricsCollector
from models.schemas import Handoff, LaneDecision, MissionTask, QAReport
from resolver import DependencyResolver
from workflow.context import (
    ContextPreserver,
    DefaultContextPreserver,
    DeliverableStore,
    InMemoryDeliverableStore,
    ProjectContext,
    utc_now,
)
from workflow.detector import PhaseDetector
from workflow.lane_router import LaneRouter
from workflow.phase_machine import (
    PhaseMachineDependencies,
    PhaseStateMachine,
    TransitionAborted,
    TransitionResult,
    WorkflowTrigger,
)

logger = structlog.get_logger()

DEFAULT_CONVERSATION_LIMIT = 10


class RecordingWorkflowTrigger:
    """Workflow trigger that records each entry-point command it receives."""

    def __init__(self) -> None:
        self.commands: list[dict[str, Any]] = []

    def trigger(self, command: str, context: Mapping[str, Any]) -> dict[str, Any]:
        entry = {"command": command, "phase": context.get("current_phase"), "triggered_at": utc_now()}
        self.commands.append(entry)
        return {"status": "triggered", **entry}


@dataclass
class WorkflowSession:
    """State for one project's workflow.

    Attributes:
        project_id: Unique identifier for the project
        description: The work item the session was created for
        decision: Lane decision made at creation
        machine: Phase state machine owning the project context
        created_at: Unix timestamp when the session was created
        conversation: User messages seen by ``handle_message``
        handoffs: Handoffs produced by mission runs, oldest first
        qa_reports: QA reports produced by quality passes, oldest first
    """

    project_id: str
    description: str
    decision: LaneDecision
    machine: PhaseStateMachine
    created_at: float = field(default_factory=time.time)
    conversation: list[dict[str, Any]] = field(default_factory=list)
    handoffs: list[Handoff] = field(default_factory=list)
    qa_reports: list[QAReport] = field(default_factory=list)
    closed: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def context(self) -> ProjectContext:
        return self.machine.context

    @property
    def last_handoff(self) -> Handoff | None:
        return self.handoffs[-1] if self.handoffs else None

    def snapshot(self) -> dict[str, Any]:
        """Project context snapshot plus the session's conversation."""
        data = self.context.snapshot()
        data["conversation"] = [dict(message) for message in self.conversation]
        return data


class SessionManager:
    """Manages one workflow session per project.

    Mutating operations on a session are serialized by that session's lock;
    different projects proceed independently.

    Attributes:
        router: Lane router used when a session is created
        resolver: Dependency resolver for agent/team bundles
        tool_runtime: Runtime every tool call is dispatched through
        event_bus: Optional event bus for workflow events
        metrics_collector: Optional per-session counters
    """

    def __init__(
        self,
        detector: PhaseDetector,
        resolver: DependencyResolver | None = None,
        router: LaneRouter | None = None,
        event_bus: EventBus | None = None,
        metrics_collector: MetricsCollector | None = None,
        tool_runtime: ToolRuntime | None = None,
        context_preserver: ContextPreserver | None = None,
        workflow_trigger: WorkflowTrigger | None = None,
        deliverable_store_factory: Callable[[str], DeliverableStore] | None = None,
        load_agents_on_transition: bool = True,
        confidence_threshold: float | None = None,
    ) -> None:
        """Initialize the SessionManager.

        Args:
            detector: Phase-detection collaborator shared by all sessions.
            resolver: Resolver for agent bundles; built from settings when omitted.
            router: Lane router; the keyword classifier router when omitted.
            event_bus: Event bus for emitting events.
            metrics_collector: Optional collector for session counters.
            tool_runtime: Tool runtime; a fresh one with the built-in tools
                when omitted.
            context_preserver: Context-preservation collaborator.
            workflow_trigger: Receives ``auto-<phase>`` commands.
            deliverable_store_factory: Builds a deliverable store per project.
            load_agents_on_transition: Resolve the incoming phase's agent on
                every transition.
            confidence_threshold: Detector confidence threshold override.
        """
        self.detector = detector
        self.resolver = resolver or DependencyResolver()
        self.router = router or LaneRouter()
        self.event_bus = event_bus
        self.metrics_collector = metrics_collector
        self.context_preserver = context_preserver or DefaultContextPreserver()
        self.workflow_trigger = workflow_trigger or RecordingWorkflowTrigger()
        self.deliverable_store_factory = deliverable_store_factory or (lambda _project_id: InMemoryDeliverableStore())
        self.load_agents_on_transition = load_agents_on_transition
        self.confidence_threshold = confidence_threshold

        self.tool_runtime = tool_runtime or ToolRuntime(
            event_bus=event_bus, metrics_collector=metrics_collector
        )
        self._register_builtin_tools()

        self._sessions: dict[str, WorkflowSession] = {}
        self._lock = asyncio.Lock()
        logger.info("session_manager_initialized")

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _publish(self, project_id: str, event_type: EventType, data: dict[str, Any]) -> None:
        if self.event_bus is None:
            return
        await self.event_bus.publish(
            WorkflowEvent(
                type=event_type,
                session_id=project_id,
                agent_id="session_manager",
                agent_role="Session Manager",
                data=data,
            )
        )

    def _require(self, project_id: str) -> WorkflowSession:
        session = self._sessions.get(project_id)
        if session is None:
            raise KeyError(f"Session '{project_id}' not found")
        if session.closed:
            raise RuntimeError(f"Session '{project_id}' is closed")
        return session

    def _record_transition_outcome(self, project_id: str, outcome: Any) -> None:
        if self.metrics_collector is None:
            return
        if isinstance(outcome, TransitionResult):
            self.metrics_collector.record_transition(project_id)
        elif isinstance(outcome, TransitionAborted):
            self.metrics_collector.record_detector_parse_error(project_id)
        else:
            self.metrics_collector.record_rejected_detection(project_id)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def create_session(
        self,
        project_id: str,
        description: str,
        context: Mapping[str, Any] | None = None,
    ) -> WorkflowSession:
        """Route a work item and start a session walking its blueprint.

        Raises:
            ValueError: If a session for ``project_id`` already exists or the
                description is empty.
        """
        async with self._lock:
            if project_id in self._sessions:
                raise ValueError(f"Session '{project_id}' already exists")

            decision = self.router.route(description, context)
            machine = PhaseStateMachine(
                PhaseMachineDependencies(
                    detector=self.detector,
                    deliverable_store=self.deliverable_store_factory(project_id),
                    context_preserver=self.context_preserver,
                    workflow_trigger=self.workflow_trigger,
                    agent_loader=self.resolver.resolve_agent if self.load_agents_on_transition else None,
                ),
                project_id=project_id,
                confidence_threshold=self.confidence_threshold,
                event_bus=self.event_bus,
            )
            machine.start(decision.phases)
            machine.context.record_lane_decision(decision, description)

            session = WorkflowSession(
                project_id=project_id,
                description=description,
                decision=decision,
                machine=machine,
            )
            self._sessions[project_id] = session

        if self.metrics_collector is not None:
            self.metrics_collector.start(project_id)

        logger.info(
            "session_created",
            project_id=project_id,
            lane=decision.lane.value,
            phases=[phase.id for phase in decision.phases],
        )
        await self._publish(project_id, EventType.SESSION_STARTED, {"description": description})
        await self._publish(
            project_id,
            EventType.LANE_SELECTED,
            {
                "lane": decision.lane.value,
                "confidence": decision.confidence,
                "rationale": decision.rationale,
                "phases": [phase.model_dump() for phase in decision.phases],
            },
        )
        return session

    def get_session(self, project_id: str) -> WorkflowSession | None:
        return self._sessions.get(project_id)

    def get_all_sessions(self) -> list[WorkflowSession]:
        return list(self._sessions.values())

    async def close_session(self, project_id: str) -> dict[str, Any] | None:
        """Close a session and finalize its metrics.

        Returns:
            The session's final metrics, or None when metrics are not collected.

        Raises:
            KeyError: If the session doesn't exist.
        """
        async with self._lock:
            session = self._sessions.pop(project_id, None)
        if session is None:
            raise KeyError(f"Session '{project_id}' not found")

        async with session.lock:
            session.closed = True

        final = self.metrics_collector.finish(project_id) if self.metrics_collector else None
        logger.info("session_closed", project_id=project_id, current_phase=session.context.current_phase)
        await self._publish(
            project_id,
            EventType.SESSION_CLOSED,
            {"current_phase": session.context.current_phase, "metrics": final.to_dict() if final else None},
        )
        if self.event_bus is not None:
            await self.event_bus.close_session(project_id)
        return final.to_dict() if final else None

    async def cleanup_all(self) -> None:
        """Close every open session."""
        for project_id in list(self._sessions):
            try:
                await self.close_session(project_id)
            except KeyError:
                logger.debug("cleanup_session_already_closed", project_id=project_id)

    # -------------------------------------------------------------------------
    # Phase progression
    # -------------------------------------------------------------------------

    async def handle_message(
        self,
        project_id: str,
        message: str,
        conversation_context: Mapping[str, Any] | None = None,
    ) -> TransitionResult | TransitionAborted | None:
        """Record a user message and let the detector propose a transition."""
        session = self._require(project_id)
        async with session.lock:
            session.conversation.append({"role": "user", "content": message, "timestamp": utc_now()})
            outcome = await session.machine.check_transition(message, conversation_context)
        self._record_transition_outcome(project_id, outcome)
        return outcome

    async def advance(
        self,
        project_id: str,
        conversation_context: Mapping[str, Any] | None = None,
    ) -> TransitionResult | None:
        """Move to the next phase of the session's blueprint."""
        session = self._require(project_id)
        async with session.lock:
            result = await session.machine.advance(conversation_context)
        if result is not None and self.metrics_collector is not None:
            self.metrics_collector.record_transition(project_id)
        return result

    async def request_transition(
        self,
        project_id: str,
        phase: str,
        conversation_context: Mapping[str, Any] | None = None,
        *,
        validated: bool = False,
    ) -> TransitionResult | None:
        """User-requested jump to ``phase``; gated phases need ``validated``."""
        session = self._require(project_id)
        async with session.lock:
            result = await session.machine.handle_transition(
                phase, conversation_context, validated=validated
            )
        if result is not None and self.metrics_collector is not None:
            self.metrics_collector.record_transition(project_id)
        return result

    async def record(self, project_id: str, key: str, value: Any, phase: str | None = None) -> None:
        """Store a value in a phase namespace (the current phase by default)."""
        session = self._require(project_id)
        async with session.lock:
            session.context.record(key, value, phase)

    # -------------------------------------------------------------------------
    # Missions and QA
    # -------------------------------------------------------------------------

    async def run_missions(
        self,
        project_id: str,
        plan: Mapping[str, Any],
        executor_factory: Callable[[MissionTask], TaskExecutor],
        token: CancellationToken | None = None,
    ) -> Handoff:
        """Execute a decomposition plan and keep its handoff on the session.

        The handoff document is recorded as ``implementation_notes`` in the
        current phase namespace.
        """
        session = self._require(project_id)
        async with session.lock:
            graph = build_task_graph(
                plan,
                executor_factory,
                event_bus=self.event_bus,
                session_id=project_id,
                project_snapshot=session.context.snapshot(),
                token=token,
            )
            handoff = await graph.execute()
            session.handoffs.append(handoff)
            session.context.record("implementation_notes", handoff.handoff_document)

        failed = len(handoff.failed_tasks)
        if self.metrics_collector is not None:
            self.metrics_collector.record_tasks(project_id, completed=len(handoff.tasks) - failed, failed=failed)
        logger.info("missions_completed", project_id=project_id, run_id=handoff.run_id, failed=failed)
        return handoff

    async def run_quality_pass(
        self,
        project_id: str,
        verifier: Verifier,
        handoff: Handoff | None = None,
    ) -> QAReport:
        """Generate a QA plan over a handoff (the latest by default) and run it.

        Raises:
            ValueError: If the session has no handoff to verify.
        """
        session = self._require(project_id)
        async with session.lock:
            handoff = handoff or session.last_handoff
            if handoff is None:
                raise ValueError(f"Session '{project_id}' has no handoff to verify")
            plan = build_qa_plan(handoff)
            report = await run_qa_plan(
                plan, handoff, verifier, event_bus=self.event_bus, session_id=project_id
            )
            session.qa_reports.append(report)
            session.context.record("test_results", report.body)
            session.context.record("quality_metrics", {"overall_status": report.overall_status.value})
        return report

    # -------------------------------------------------------------------------
    # Tools
    # -------------------------------------------------------------------------

    async def call_tool(
        self,
        project_id: str,
        name: str,
        args: dict[str, Any] | None = None,
        **hooks: Any,
    ) -> ToolResult:
        """Dispatch a tool call with a snapshot of the project's context.

        ``hooks`` are passed through to ``ToolRuntime.call_tool`` (``meta``,
        ``model_router``, ``approval_checker``, ``state_bridge``).
        """
        session = self._require(project_id)
        return await self.tool_runtime.call_tool(
            name,
            args,
            context=session.snapshot(),
            session_id=project_id,
            **hooks,
        )

    def _register_builtin_tools(self) -> None:
        runtime = self.tool_runtime
        if runtime.has_tool("get_project_context"):
            return

        def get_project_context(args: dict[str, Any], invocation: Any) -> dict[str, Any]:
            context = invocation.context
            data = {
                "projectId": context.get("project_id"),
                "currentPhase": context.get("current_phase"),
                "currentLane": context.get("current_lane"),
                "requirements": context.get("all_requirements", {}),
                "decisions": context.get("decisions", {}),
                "phaseHistory": context.get("phase_history", []),
            }
            if args.get("include_conversation", True):
                limit = args.get("conversation_limit")
                limit = DEFAULT_CONVERSATION_LIMIT if limit is None else max(int(limit), 0)
                conversation = context.get("conversation", [])
                data["recentConversation"] = conversation[max(len(conversation) - limit, 0) :]
            return data

        def select_lane(args: dict[str, Any], invocation: Any) -> dict[str, Any]:
            decision = self.router.route(args["description"], args.get("context") or {})
            return decision.model_dump(mode="json")

        def load_agent_bundle(args: dict[str, Any], invocation: Any) -> dict[str, Any]:
            if args.get("team_id"):
                bundle = self.resolver.resolve_team(args["team_id"])
            elif args.get("agent_id"):
                bundle = self.resolver.resolve_agent(args["agent_id"])
            else:
                raise ValueError("Either agent_id or team_id is required")
            return bundle.model_dump(mode="json")

        runtime.register(
            "get_project_context",
            get_project_context,
            description="Get the project context: phase, lane, requirements, decisions, and recent conversation",
            parameters={
                "type": "object",
                "properties": {
                    "include_conversation": {"type": "boolean", "default": True},
                    "conversation_limit": {"type": "integer", "default": DEFAULT_CONVERSATION_LIMIT},
                },
                "required": [],
            },
        )
        runtime.register(
            "select_lane",
            select_lane,
            description="Classify a work item into the quick or complex lane with its phase blueprint",
            parameters={
                "type": "object",
                "properties": {
                    "description": {"type": "string"},
                    "context": {"type": "object"},
                },
                "required": ["description"],
            },
        )
        runtime.register(
            "load_agent_bundle",
            load_agent_bundle,
            description="Resolve an agent or team into its configuration and resources",
            parameters={
                "type": "object",
                "properties": {
                    "agent_id": {"type": "string"},
                    "team_id": {"type": "string"},
                },
                "required": [],
            },
        )
        runtime.register(
            "list_agents",
            lambda args, invocation: self.resolver.list_agents(),
            description="List the ids of all known agents",
        )
        runtime.register(
            "list_teams",
            lambda args, invocation: self.resolver.list_teams(),
            description="List the ids of all known teams",
        )
