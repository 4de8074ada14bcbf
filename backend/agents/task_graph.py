"""Task Graph Executor LangGraph implementation.

Executes a DAG of mission tasks in dependency order. Every ready wave (all
pending tasks whose dependencies completed) fans out concurrently; a task
whose dependency failed is marked failed by propagation and its executor is
never invoked. The run aggregates into a Handoff.

Graph structure:
    START -> schedule_wave -> run_task(×ready wave) -> schedule_wave -> ... -> END
                  |
                  |_ no ready tasks -> END

Events emitted:
- GRAPH_INITIALIZED: Registered tasks and edges, before the first wave
- TASK_STARTED, TASK_COMPLETED, TASK_FAILED: Per task
- HANDOFF_READY: When the handoff has been aggregated

Usage:
    >>> graph = TaskGraphExecutor("Add login", event_bus=bus, session_id="proj_1")
    >>> graph.register_task(MissionTask(id="api", title="API", mission="..."), run_api)
    >>> graph.register_task(MissionTask(id="ui", title="UI", mission="...", dependencies=["api"]), run_ui)
    >>> handoff = await graph.execute()
"""

import asyncio
import operator
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Annotated, Any, TypedDict
from uuid import uuid4

import structlog
from langgraph.graph import END, START, StateGraph
from langgraph.types import Send
from pydantic import ValidationError

from agents.utils import maybe_await, topological_sort
from config import settings
from events.bus import EventBus
from events.types import EventType, WorkflowEvent
from models.schemas import (
    EdgeKind,
    FailureKind,
    Handoff,
    MissionTask,
    TaskEdge,
    TaskOutput,
    TaskRecord,
    TaskStatus,
)

logger = structlog.get_logger()


# -----------------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------------


class TaskGraphError(ValueError):
    """Invalid task graph construction."""


class DuplicateTaskError(TaskGraphError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f'Task "{task_id}" is already registered')
        self.task_id = task_id


class UnknownDependencyError(TaskGraphError):
    def __init__(self, task_id: str, dependency: str) -> None:
        super().__init__(f'Task "{task_id}" depends on unknown task "{dependency}"')
        self.task_id = task_id
        self.dependency = dependency


class DependencyCycleError(TaskGraphError):
    def __init__(self, message: str, task_ids: list[str]) -> None:
        super().__init__(message)
        self.task_ids = task_ids


class MalformedEdgeError(TaskGraphError):
    def __init__(self, index: int, edge: Any, reason: str) -> None:
        super().__init__(f"Plan edge #{index} is malformed ({reason}): {edge!r}")
        self.index = index
        self.edge = edge


class EmptyTaskGraphError(TaskGraphError):
    """execute() was called with no registered tasks."""


class TaskCancelledError(Exception):
    """Raised inside an executor when its cancellation token fired."""


# -----------------------------------------------------------------------------
# Cancellation & executor context
# -----------------------------------------------------------------------------


class CancellationToken:
    """Caller-issued cancellation shared by every task of one run."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Cancelled by caller") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise TaskCancelledError(self.reason)

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(frozen=True)
class TaskContext:
    """What an executor receives alongside its task."""

    run_id: str
    feature_request: str
    token: CancellationToken
    dependency_outputs: dict[str, TaskOutput]
    project_snapshot: dict[str, Any]


TaskExecutor = Callable[[MissionTask, TaskContext], Any]

VALID_TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.FAILED}),
    TaskStatus.RUNNING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
}


@dataclass
class _TaskState:
    task: MissionTask
    executor: TaskExecutor
    status: TaskStatus = TaskStatus.PENDING
    wave: int | None = None
    sequence: int | None = None
    started_at: float | None = None
    finished_at: float | None = None
    output: TaskOutput | None = None
    error: str | None = None
    failure_kind: FailureKind | None = None


class TaskGraphState(TypedDict):
    """State flowing through the executor graph.

    Attributes:
        run_id: Identifier of this run
        session_id: Session identifier for events
        wave: Index of the most recently scheduled ready wave
        ready: Task ids scheduled in the current wave
        finished: Task ids in terminal order (fan-in via operator.add)
    """

    run_id: str
    session_id: str
    wave: int
    ready: list[str]
    finished: Annotated[list[str], operator.add]


def normalize_edge_kind(raw: Any) -> EdgeKind:
    """Map free-text relationship labels onto an EdgeKind."""
    text = str(raw or "").lower()
    if "relate" in text:
        return EdgeKind.RELATES_TO
    if "support" in text:
        return EdgeKind.SUPPORTS
    return EdgeKind.BLOCKS


# -----------------------------------------------------------------------------
# TaskGraphExecutor Class
# -----------------------------------------------------------------------------


class TaskGraphExecutor:
    """Dependency-ordered executor for mission tasks.

    Registration enforces that dependencies already exist, so the graph is
    acyclic by construction; ``add_edge`` re-checks reachability. A graph is
    executed once.

    Attributes:
        feature_request: What the run is delivering; heads the handoff.
        token: Cancellation token propagated into every executor.
        max_parallel: Upper bound on concurrently running executors.
        task_timeout: Per-task timeout in seconds; 0 disables it.
    """

    def __init__(
        self,
        feature_request: str,
        event_bus: EventBus | None = None,
        session_id: str = "default",
        project_snapshot: Mapping[str, Any] | None = None,
        token: CancellationToken | None = None,
        max_parallel: int | None = None,
        task_timeout: float | None = None,
    ) -> None:
        self.feature_request = feature_request
        self.event_bus = event_bus
        self.session_id = session_id
        self.project_snapshot = dict(project_snapshot or {})
        self.token = token or CancellationToken()
        self.max_parallel = max(1, max_parallel or settings.max_parallel_tasks)
        self.task_timeout = settings.task_timeout_seconds if task_timeout is None else task_timeout
        self.run_id = f"run_{uuid4().hex[:8]}"

        self._states: dict[str, _TaskState] = {}
        self._edges: list[TaskEdge] = []
        self._sequence = 0
        self._executed = False
        self._semaphore = asyncio.Semaphore(self.max_parallel)
        self._compiled_graph = self._build_graph()

    def _build_graph(self) -> Any:
        graph = StateGraph(TaskGraphState)

        graph.add_node("schedule_wave", self._schedule_wave)
        graph.add_node("run_task", self._run_task)

        graph.add_edge(START, "schedule_wave")
        graph.add_conditional_edges("schedule_wave", self._fan_out_ready, ["run_task", END])
        graph.add_edge("run_task", "schedule_wave")

        return graph.compile()

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    def register_task(self, task: MissionTask | Mapping[str, Any], executor: TaskExecutor) -> MissionTask:
        """Add a task. Every dependency must already be registered.

        Raises:
            DuplicateTaskError: The id is taken.
            DependencyCycleError: The task depends on itself.
            UnknownDependencyError: A dependency is not registered.
        """
        if self._executed:
            raise RuntimeError("Cannot register tasks after execution started")
        if not callable(executor):
            raise TypeError("Mission tasks require an executor function")
        task = MissionTask.model_validate(task).model_copy(deep=True)

        if task.id in self._states:
            raise DuplicateTaskError(task.id)
        for dep in task.dependencies:
            if dep == task.id:
                raise DependencyCycleError(f'Task "{task.id}" cannot depend on itself', [task.id])
            if dep not in self._states:
                raise UnknownDependencyError(task.id, dep)

        self._states[task.id] = _TaskState(task=task, executor=executor)
        logger.debug("task_registered", run_id=self.run_id, task_id=task.id, dependencies=task.dependencies)
        return task

    def _depends_on(self, task_id: str, ancestor: str) -> bool:
        stack = list(self._states[task_id].task.dependencies)
        seen: set[str] = set()
        while stack:
            current = stack.pop()
            if current == ancestor:
                return True
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._states[current].task.dependencies)
        return False

    def add_edge(self, edge: TaskEdge | Mapping[str, Any]) -> TaskEdge:
        """Record a relationship; ``blocks`` edges add a scheduling dependency.

        Raises:
            UnknownDependencyError: Either endpoint is not registered.
            DependencyCycleError: A blocks edge would close a cycle.
        """
        if self._executed:
            raise RuntimeError("Cannot add edges after execution started")
        if isinstance(edge, Mapping):
            raw = dict(edge)
            raw["kind"] = normalize_edge_kind(raw.get("kind") or raw.get("type"))
            edge = TaskEdge.model_validate(raw)

        for endpoint in (edge.from_task, edge.to_task):
            if endpoint not in self._states:
                raise UnknownDependencyError(edge.to_task, endpoint)

        if edge.kind == EdgeKind.BLOCKS:
            target = self._states[edge.to_task].task
            if edge.from_task not in target.dependencies:
                if edge.from_task == edge.to_task or self._depends_on(edge.from_task, edge.to_task):
                    raise DependencyCycleError(
                        f'Edge {edge.from_task} -> {edge.to_task} would create a cycle',
                        [edge.from_task, edge.to_task],
                    )
                target.dependencies.append(edge.from_task)

        self._edges.append(edge)
        return edge

    def get_task_states(self) -> dict[str, TaskStatus]:
        return {task_id: state.status for task_id, state in self._states.items()}

    # -------------------------------------------------------------------------
    # State transitions
    # -------------------------------------------------------------------------

    def _transition(self, state: _TaskState, status: TaskStatus) -> None:
        if status not in VALID_TASK_TRANSITIONS[state.status]:
            raise RuntimeError(
                f'Invalid task transition for "{state.task.id}": {state.status} -> {status}'
            )
        state.status = status

    def _finish(
        self,
        state: _TaskState,
        status: TaskStatus,
        *,
        output: TaskOutput | None = None,
        error: str | None = None,
        failure_kind: FailureKind | None = None,
    ) -> None:
        self._transition(state, status)
        state.finished_at = time.time()
        state.sequence = self._sequence
        self._sequence += 1
        state.output = output
        state.error = error
        state.failure_kind = failure_kind

    async def _publish(self, event_type: EventType, data: dict[str, Any]) -> None:
        if self.event_bus is None:
            return
        await self.event_bus.publish(
            WorkflowEvent(
                type=event_type,
                session_id=self.session_id,
                agent_id="task_graph",
                agent_role="Task Graph",
                data=data,
            )
        )

    async def _fail_pending(self, state: _TaskState, error: str, kind: FailureKind) -> None:
        self._finish(state, TaskStatus.FAILED, error=error, failure_kind=kind)
        logger.warning("task_failed", run_id=self.run_id, task_id=state.task.id, error=error, failure_kind=kind)
        await self._publish(
            EventType.TASK_FAILED,
            {"task_id": state.task.id, "wave": state.wave, "error": error, "failure_kind": kind},
        )

    # -------------------------------------------------------------------------
    # Nodes
    # -------------------------------------------------------------------------

    async def _schedule_wave(self, state: TaskGraphState) -> dict[str, Any]:
        """Propagate failures, then pick every pending task whose deps completed."""
        finished: list[str] = []
        pending = [s for s in self._states.values() if s.status == TaskStatus.PENDING]

        if self.token.cancelled:
            for task_state in pending:
                await self._fail_pending(task_state, self.token.reason or "Cancelled", "cancelled")
                finished.append(task_state.task.id)
            return {"ready": [], "finished": finished}

        changed = True
        while changed:
            changed = False
            for task_state in self._states.values():
                if task_state.status != TaskStatus.PENDING:
                    continue
                failed_dep = next(
                    (
                        dep
                        for dep in task_state.task.dependencies
                        if self._states[dep].status == TaskStatus.FAILED
                    ),
                    None,
                )
                if failed_dep is not None:
                    await self._fail_pending(
                        task_state, f'Dependency "{failed_dep}" failed', "dependency"
                    )
                    finished.append(task_state.task.id)
                    changed = True

        ready = [
            task_id
            for task_id, task_state in self._states.items()
            if task_state.status == TaskStatus.PENDING
            and all(
                self._states[dep].status == TaskStatus.COMPLETED
                for dep in task_state.task.dependencies
            )
        ]

        if not ready:
            # Unreachable for graphs built through register_task/add_edge.
            for task_state in self._states.values():
                if task_state.status == TaskStatus.PENDING:
                    await self._fail_pending(task_state, "Dependencies can never complete", "dependency")
                    finished.append(task_state.task.id)
            return {"ready": [], "finished": finished}

        wave = state["wave"] + 1
        logger.info("task_wave_scheduled", run_id=self.run_id, wave=wave, task_ids=ready)
        return {"ready": ready, "wave": wave, "finished": finished}

    def _fan_out_ready(self, state: TaskGraphState) -> list[Send] | str:
        ready = state.get("ready", [])
        if not ready:
            return END
        return [
            Send("run_task", {"task_id": task_id, "wave": state["wave"]})
            for task_id in ready
        ]

    async def _invoke(self, task_state: _TaskState, context: TaskContext) -> Any:
        """Run one executor, racing it against cancellation and the timeout."""
        runner = asyncio.ensure_future(maybe_await(task_state.executor, task_state.task, context))
        waiter = asyncio.ensure_future(self.token.wait())
        timeout = self.task_timeout if self.task_timeout and self.task_timeout > 0 else None

        done, _ = await asyncio.wait(
            {runner, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
        if runner in done:
            waiter.cancel()
            return runner.result()

        runner.cancel()
        waiter.cancel()
        await asyncio.gather(runner, waiter, return_exceptions=True)
        if waiter in done:
            raise TaskCancelledError(self.token.reason)
        raise TimeoutError(f'Task "{task_state.task.id}" timed out after {timeout}s')

    async def _run_task(self, payload: dict[str, Any]) -> dict[str, Any]:
        task_id = payload["task_id"]
        task_state = self._states[task_id]
        task_state.wave = payload["wave"]

        async with self._semaphore:
            if self.token.cancelled:
                await self._fail_pending(task_state, self.token.reason or "Cancelled", "cancelled")
                return {"finished": [task_id]}

            self._transition(task_state, TaskStatus.RUNNING)
            task_state.started_at = time.time()
            logger.info("task_started", run_id=self.run_id, task_id=task_id, wave=task_state.wave)
            await self._publish(EventType.TASK_STARTED, {"task_id": task_id, "wave": task_state.wave})

            context = TaskContext(
                run_id=self.run_id,
                feature_request=self.feature_request,
                token=self.token,
                dependency_outputs={
                    dep: self._states[dep].output
                    for dep in task_state.task.dependencies
                    if self._states[dep].output is not None
                },
                project_snapshot=self.project_snapshot,
            )

            error: str | None = None
            kind: FailureKind | None = None
            output: TaskOutput | None = None
            try:
                raw = await self._invoke(task_state, context)
                output = raw if isinstance(raw, TaskOutput) else TaskOutput.model_validate(raw)
            except TaskCancelledError as e:
                error, kind = str(e) or "Cancelled", "cancelled"
            except TimeoutError as e:
                error, kind = str(e), "timeout"
            except ValidationError:
                error, kind = f'Task "{task_id}" returned an invalid output. A summary is required.', "error"
            except Exception as e:
                error, kind = str(e) or type(e).__name__, "error"

        if kind is not None:
            self._finish(task_state, TaskStatus.FAILED, error=error, failure_kind=kind)
            logger.warning("task_failed", run_id=self.run_id, task_id=task_id, error=error, failure_kind=kind)
            await self._publish(
                EventType.TASK_FAILED,
                {"task_id": task_id, "wave": task_state.wave, "error": error, "failure_kind": kind},
            )
        else:
            self._finish(task_state, TaskStatus.COMPLETED, output=output)
            logger.info("task_completed", run_id=self.run_id, task_id=task_id, wave=task_state.wave)
            await self._publish(
                EventType.TASK_COMPLETED,
                {"task_id": task_id, "wave": task_state.wave, "summary": output.summary},
            )
        return {"finished": [task_id]}

    # -------------------------------------------------------------------------
    # Run & aggregate
    # -------------------------------------------------------------------------

    def _records(self) -> list[TaskRecord]:
        ordered = sorted(self._states.values(), key=lambda s: s.sequence if s.sequence is not None else len(self._states))
        return [
            TaskRecord(
                task_id=s.task.id,
                title=s.task.title,
                mission=s.task.mission,
                persona=s.task.persona,
                dependencies=list(s.task.dependencies),
                status=s.status,
                sequence=s.sequence if s.sequence is not None else -1,
                wave=s.wave,
                started_at=s.started_at,
                finished_at=s.finished_at,
                output=s.output,
                error=s.error,
                failure_kind=s.failure_kind,
            )
            for s in ordered
        ]

    async def execute(self) -> Handoff:
        """Run every task to a terminal state and aggregate the handoff.

        Raises:
            EmptyTaskGraphError: No tasks are registered.
            RuntimeError: The graph was already executed.
        """
        if not self._states:
            raise EmptyTaskGraphError("Cannot execute an empty task graph")
        if self._executed:
            raise RuntimeError("Task graph has already been executed")
        self._executed = True

        await self._publish(
            EventType.GRAPH_INITIALIZED,
            {
                "tasks": list(self._states),
                "edges": [edge.model_dump(by_alias=True) for edge in self._edges],
            },
        )

        started = time.monotonic()
        initial_state = TaskGraphState(
            run_id=self.run_id,
            session_id=self.session_id,
            wave=-1,
            ready=[],
            finished=[],
        )
        await self._compiled_graph.ainvoke(
            initial_state, config={"recursion_limit": 2 * len(self._states) + 5}
        )

        records = self._records()
        files = sorted({path for r in records if r.output for path in r.output.files_touched})
        handoff = Handoff(
            run_id=self.run_id,
            feature_request=self.feature_request,
            tasks=records,
            files_touched=files,
            edges=list(self._edges),
            handoff_document=render_handoff_document(self.feature_request, records, files, self._edges),
        )

        logger.info(
            "task_graph_completed",
            run_id=self.run_id,
            tasks=len(records),
            failed=len(handoff.failed_tasks),
            files=len(files),
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        await self._publish(
            EventType.HANDOFF_READY,
            {"run_id": self.run_id, "failed_tasks": [t.task_id for t in handoff.failed_tasks]},
        )
        return handoff


# -----------------------------------------------------------------------------
# Handoff document
# -----------------------------------------------------------------------------


def render_handoff_document(
    feature_request: str,
    records: list[TaskRecord],
    files: list[str],
    edges: list[TaskEdge] | None = None,
) -> str:
    """Markdown summary: missions, per-task results in execution order, files."""
    lines = ["# Development Summary & Handoff", "", f"**Feature Request:** {feature_request}", ""]

    lines.append("## Missions")
    for record in records:
        lines.append(f"- **{record.title}** (`{record.task_id}`): {record.mission}")
    lines.append("")

    lines.append("## Execution Results")
    for record in records:
        lines.append(f"### {record.title} (`{record.task_id}`)")
        lines.append(f"- Status: {record.status.value.upper()}")
        output = record.output
        if output is not None:
            lines.append(f"- Summary: {output.summary}")
            if output.details:
                lines.append(f"- Details: {output.details}")
            if output.files_touched:
                lines.append(f"- Files: {', '.join(output.files_touched)}")
            if output.artifacts:
                lines.append("- Artifacts:")
                for name, description in output.artifacts.items():
                    lines.append(f"  - {name}: {description}")
            if output.notes:
                lines.append(f"- Notes: {output.notes}")
        if record.error:
            lines.append(f"- Error: {record.error}")
        lines.append("")

    lines.append("## Files Modified")
    if files:
        lines.extend(f"- {path}" for path in files)
    else:
        lines.append("- (none reported)")
    lines.append("")

    informational = [edge for edge in edges or [] if edge.kind != EdgeKind.BLOCKS]
    if informational:
        lines.append("## Related Work")
        for edge in informational:
            lines.append(f"- `{edge.from_task}` {edge.kind.value.replace('_', ' ')} `{edge.to_task}`")
        lines.append("")

    return "\n".join(lines)


# -----------------------------------------------------------------------------
# Plan ingestion
# -----------------------------------------------------------------------------

DEPENDENCY_ALIASES = ("dependencies", "depends_on", "dependsOn", "blockedBy")


def _normalize_plan_task(raw: Mapping[str, Any]) -> dict[str, Any]:
    task_id = str(raw.get("id") or "").strip()
    if not task_id:
        raise TaskGraphError(f"Plan task is missing an id: {dict(raw)!r}")
    dependencies: list[str] = []
    for alias in DEPENDENCY_ALIASES:
        value = raw.get(alias)
        if isinstance(value, str):
            value = [value]
        for dep in value or []:
            dependencies.append(str(dep))
    return {
        "id": task_id,
        "title": str(raw.get("title") or task_id),
        "mission": str(raw.get("mission") or raw.get("description") or raw.get("directive") or ""),
        "persona": raw.get("persona"),
        "dependencies": list(dict.fromkeys(dependencies)),
        "metadata": dict(raw.get("metadata") or {}),
    }


def build_task_graph(
    plan: Mapping[str, Any],
    executor_factory: Callable[[MissionTask], TaskExecutor],
    **executor_kwargs: Any,
) -> TaskGraphExecutor:
    """Build an executor from a decomposition payload.

    ``plan`` holds ``tasks`` (in any order) and optional ``edges``. Tasks are
    registered dependency layer by layer.

    Raises:
        UnknownDependencyError: A task or edge references a missing task.
        DependencyCycleError: The plan contains a cycle.
        MalformedEdgeError: An edge lacks its endpoints or is not a mapping.
    """
    tasks = [_normalize_plan_task(raw) for raw in plan.get("tasks") or []]
    by_id = {task["id"]: task for task in tasks}

    edges: list[TaskEdge] = []
    for index, raw in enumerate(plan.get("edges") or []):
        if not isinstance(raw, Mapping):
            raise MalformedEdgeError(index, raw, "not a mapping")
        from_task = raw.get("from") or raw.get("from_task")
        to_task = raw.get("to") or raw.get("to_task")
        if not from_task or not to_task:
            raise MalformedEdgeError(index, raw, "missing from/to")
        try:
            edge = TaskEdge.model_validate(
                {
                    "from": str(from_task),
                    "to": str(to_task),
                    "kind": normalize_edge_kind(raw.get("kind") or raw.get("type")),
                }
            )
        except ValidationError as exc:
            raise MalformedEdgeError(index, raw, str(exc)) from exc
        for endpoint in (edge.from_task, edge.to_task):
            if endpoint not in by_id:
                raise UnknownDependencyError(edge.to_task, endpoint)
        if edge.kind == EdgeKind.BLOCKS and edge.from_task not in by_id[edge.to_task]["dependencies"]:
            by_id[edge.to_task]["dependencies"].append(edge.from_task)
        edges.append(edge)

    for task in tasks:
        for dep in task["dependencies"]:
            if dep == task["id"]:
                raise DependencyCycleError(f'Task "{dep}" cannot depend on itself', [dep])
            if dep not in by_id:
                raise UnknownDependencyError(task["id"], dep)

    try:
        layers = topological_sort(tasks)
    except ValueError as e:
        raise DependencyCycleError(str(e), list(by_id)) from e

    graph = TaskGraphExecutor(str(plan.get("feature_request") or plan.get("title") or ""), **executor_kwargs)
    for layer in layers:
        for raw in layer:
            task = MissionTask.model_validate(raw)
            graph.register_task(task, executor_factory(task))
    for edge in edges:
        graph.add_edge(edge)
    return graph
