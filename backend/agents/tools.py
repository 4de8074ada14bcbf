"""Tool dispatch runtime.

Every tool invocation passes through ``ToolRuntime.call_tool``, which applies
the per-call hooks in a fixed order:

    1. model_router        may name a model/agent override for this call
    2. state_bridge.before_call   inspects the call, cannot veto it
    3. approval_checker    may reject; the call short-circuits with a
                           "not approved" result (not an error)
    4. the tool handler    exceptions become an error ToolResult
    5. state_bridge.after_call    sees the result

Every hook is optional. Exceptions raised by hooks propagate to the caller.
"""

import json
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

import structlog

from agents.utils import maybe_await
from events.bus import EventBus
from events.types import EventType, WorkflowEvent

if TYPE_CHECKING:
    from metrics import MetricsCollector

logger = structlog.get_logger()

MAX_EVENT_RESULT_CHARS = 2000
MAX_EVENT_ARG_CHARS = 500

_JSON_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "number": (int, float),
    "integer": (int,),
    "boolean": (bool,),
    "object": (dict,),
    "array": (list,),
}


class ToolArgumentError(ValueError):
    """Raised when a tool call has invalid or unsupported arguments."""


@dataclass
class ToolInvocation:
    """What hooks and handlers see for one call.

    Attributes:
        tool: Name of the tool being called
        args: Arguments as supplied by the caller
        meta: Opaque caller metadata
        context: Immutable project context snapshot for this call
        runtime: The dispatching runtime
        model: Override chosen by the model router, if any
    """

    tool: str
    args: dict[str, Any]
    meta: Any
    context: dict[str, Any]
    runtime: "ToolRuntime"
    model: str | None = None


@dataclass
class ToolResult:
    """Result of dispatching a tool.

    Attributes:
        tool_call_id: ID of the call this result corresponds to
        content: The result content as a string
        success: Whether the tool handler ran and succeeded
        error: Error message if the handler failed
        approved: False when the approval checker rejected the call
        model: Model/agent override that handled the call
        data: Structured handler output, when it was not plain text
    """

    tool_call_id: str
    content: str
    success: bool
    error: str | None = None
    approved: bool = True
    model: str | None = None
    data: Any = None


@dataclass(frozen=True)
class ApprovalDecision:
    approved: bool
    message: str | None = None


@dataclass
class StateBridge:
    """Bookkeeping hooks around a call."""

    before_call: Callable[[ToolInvocation], Any] | None = None
    after_call: Callable[[ToolInvocation, ToolResult], Any] | None = None


ToolHandler = Callable[[dict[str, Any], ToolInvocation], Any]
ModelRouter = Callable[[ToolInvocation], Any]
ApprovalChecker = Callable[[ToolInvocation], Any]


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    handler: ToolHandler
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )


def _coerce_approval(raw: Any) -> ApprovalDecision:
    if isinstance(raw, ApprovalDecision):
        return raw
    if isinstance(raw, bool):
        return ApprovalDecision(approved=raw)
    if isinstance(raw, Mapping):
        return ApprovalDecision(approved=bool(raw.get("approved")), message=raw.get("message"))
    raise TypeError(f"Approval checker returned unsupported value: {raw!r}")


class ToolRuntime:
    """Registry of tool handlers plus the single dispatch choke point.

    Calls are independent; hooks supplied by the host must tolerate
    concurrent invocation if the host parallelizes across projects.

    Attributes:
        event_bus: Optional bus for tool events.
        metrics_collector: Optional collector for tool-call metrics.
        context_provider: Returns a context snapshot when a call supplies none.
    """

    def __init__(
        self,
        event_bus: EventBus | None = None,
        metrics_collector: Optional["MetricsCollector"] = None,
        context_provider: Callable[[], dict[str, Any]] | None = None,
        session_id: str = "default",
    ) -> None:
        self.event_bus = event_bus
        self.metrics_collector = metrics_collector
        self.context_provider = context_provider
        self.session_id = session_id
        self._tools: dict[str, ToolDefinition] = {}

    # -------------------------------------------------------------------------
    # Registry
    # -------------------------------------------------------------------------

    def register(
        self,
        name: str,
        handler: ToolHandler,
        description: str = "",
        parameters: dict[str, Any] | None = None,
    ) -> ToolDefinition:
        if name in self._tools:
            raise ValueError(f"Tool already registered: {name}")
        definition = ToolDefinition(
            name=name,
            description=description,
            handler=handler,
            parameters=parameters or {"type": "object", "properties": {}, "required": []},
        )
        self._tools[name] = definition
        return definition

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def get_tool_definitions(self) -> list[dict[str, Any]]:
        """Tool definitions in function-calling format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters,
                },
            }
            for tool in self._tools.values()
        ]

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _summarize_args_for_event(self, args: Any) -> dict[str, Any]:
        """Create a lightweight args payload for event emission."""
        if not isinstance(args, dict):
            return {"raw": str(args)[:MAX_EVENT_ARG_CHARS]}

        summarized: dict[str, Any] = {}
        for key, value in args.items():
            if isinstance(value, str) and len(value) > MAX_EVENT_ARG_CHARS:
                summarized[key] = f"{value[:MAX_EVENT_ARG_CHARS]}... [truncated]"
            else:
                summarized[key] = value
        return summarized

    def _normalize_tool_args(self, tool_name: str, args: Any) -> dict[str, Any]:
        """Validate and normalize tool arguments against the parameter spec."""
        tool_def = self._tools.get(tool_name)
        if tool_def is None:
            raise ToolArgumentError(f"Unknown tool: {tool_name}")

        if args is None:
            args = {}
        if not isinstance(args, dict):
            raise ToolArgumentError(f"Invalid arguments for {tool_name}: expected an object")

        properties = tool_def.parameters.get("properties", {})
        required = tool_def.parameters.get("required", [])

        normalized: dict[str, Any] = {}
        for key, spec in properties.items():
            if key in args:
                value = args[key]
            elif "default" in spec:
                value = spec["default"]
            else:
                continue

            expected = _JSON_TYPES.get(spec.get("type", ""))
            if expected is not None and value is not None:
                is_bool = isinstance(value, bool)
                if not isinstance(value, expected) or (is_bool and bool not in expected):
                    raise ToolArgumentError(
                        f"Invalid type for '{key}': expected {spec['type']}"
                    )
            normalized[key] = value

        missing = [
            req
            for req in required
            if normalized.get(req) is None or (isinstance(normalized[req], str) and not normalized[req])
        ]
        if missing:
            raise ToolArgumentError(f"Missing required arguments: {', '.join(sorted(missing))}")

        return normalized

    @staticmethod
    def _to_result(call_id: str, raw: Any, model: str | None) -> ToolResult:
        if isinstance(raw, ToolResult):
            raw.tool_call_id = raw.tool_call_id or call_id
            raw.model = raw.model or model
            return raw
        if isinstance(raw, str):
            return ToolResult(tool_call_id=call_id, content=raw, success=True, model=model)
        return ToolResult(
            tool_call_id=call_id,
            content=json.dumps(raw, indent=2, default=str),
            success=True,
            model=model,
            data=raw,
        )

    async def _publish(self, session_id: str, event_type: EventType, data: dict[str, Any]) -> None:
        if self.event_bus is None:
            return
        await self.event_bus.publish(
            WorkflowEvent(
                type=event_type,
                session_id=session_id,
                agent_id="tool_runtime",
                agent_role="Tool Runtime",
                data=data,
            )
        )

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    async def call_tool(
        self,
        name: str,
        args: dict[str, Any] | None = None,
        *,
        meta: Any = None,
        model_router: ModelRouter | None = None,
        approval_checker: ApprovalChecker | None = None,
        state_bridge: StateBridge | None = None,
        context: dict[str, Any] | None = None,
        session_id: str | None = None,
        tool_call_id: str | None = None,
    ) -> ToolResult:
        """Dispatch one tool call through the hook sequence.

        Returns:
            ToolResult. A rejected call has ``approved=False`` and the
            checker's message as content; a failed handler has
            ``success=False`` and ``error`` set.
        """
        session_id = session_id or self.session_id
        start_time = time.time()
        call_id = tool_call_id or f"tool_{int(start_time * 1000)}"
        if context is None:
            context = self.context_provider() if self.context_provider else {}

        invocation = ToolInvocation(
            tool=name,
            args=dict(args or {}),
            meta=meta,
            context=context,
            runtime=self,
        )

        if model_router is not None:
            override = await maybe_await(model_router, invocation)
            invocation.model = str(override) if override else None

        if state_bridge is not None and state_bridge.before_call is not None:
            await maybe_await(state_bridge.before_call, invocation)

        if approval_checker is not None:
            decision = _coerce_approval(await maybe_await(approval_checker, invocation))
            if not decision.approved:
                message = decision.message or f'The action "{name}" requires approval before execution.'
                logger.info("tool_approval_denied", tool_name=name, session_id=session_id, message=message)
                if self.metrics_collector is not None:
                    self.metrics_collector.record_approval_denied(session_id)
                await self._publish(
                    session_id, EventType.TOOL_APPROVAL_DENIED, {"tool": name, "message": message}
                )
                return ToolResult(
                    tool_call_id=call_id,
                    content=message,
                    success=False,
                    approved=False,
                    model=invocation.model,
                )

        await self._publish(
            session_id,
            EventType.TOOL_CALL,
            {
                "tool": name,
                "args": self._summarize_args_for_event(args),
                "tool_call_id": call_id,
                "model": invocation.model,
            },
        )
        if self.metrics_collector is not None:
            self.metrics_collector.record_tool_call(session_id)

        try:
            normalized_args = self._normalize_tool_args(name, args)
            raw = await maybe_await(self._tools[name].handler, normalized_args, invocation)
            result = self._to_result(call_id, raw, invocation.model)
        except Exception as e:
            logger.error("tool_execution_failed", tool_name=name, session_id=session_id, error=str(e))
            result = ToolResult(
                tool_call_id=call_id,
                content=f"Error: {e}",
                success=False,
                error=str(e),
                model=invocation.model,
            )

        duration_ms = int((time.time() - start_time) * 1000)
        await self._publish(
            session_id,
            EventType.TOOL_RESULT,
            {
                "tool": name,
                "result": result.content[:MAX_EVENT_RESULT_CHARS],
                "success": result.success,
                "tool_call_id": call_id,
                "duration_ms": duration_ms,
            },
        )
        logger.debug(
            "tool_executed",
            tool_name=name,
            session_id=session_id,
            success=result.success,
            duration_ms=duration_ms,
        )

        if state_bridge is not None and state_bridge.after_call is not None:
            await maybe_await(state_bridge.after_call, invocation, result)

        return result
