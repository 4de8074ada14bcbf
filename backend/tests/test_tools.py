"""Tests for agents/tools.py -- the tool dispatch runtime.

Covers registration, argument normalization, the fixed hook order,
approval rejection, handler failures, event emission and metrics.
"""

from typing import Any

import pytest

from agents.tools import (
    ApprovalDecision,
    StateBridge,
    ToolArgumentError,
    ToolInvocation,
    ToolResult,
    ToolRuntime,
)
from events.bus import EventBus
from events.types import EventType
from metrics import MetricsCollector
from tests.conftest import collect_events

ECHO_PARAMETERS = {
    "type": "object",
    "properties": {
        "text": {"type": "string"},
        "times": {"type": "integer", "default": 1},
        "loud": {"type": "boolean"},
    },
    "required": ["text"],
}

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _runtime(**kwargs: Any) -> tuple[ToolRuntime, list[dict[str, Any]]]:
    """Runtime with an ``echo`` tool that records the args it received."""
    received: list[dict[str, Any]] = []

    def echo(args: dict[str, Any], invocation: ToolInvocation) -> str:
        received.append(args)
        return args["text"] * args["times"]

    runtime = ToolRuntime(**kwargs)
    runtime.register("echo", echo, "Repeat text", ECHO_PARAMETERS)
    return runtime, received


class HookLog:
    """Hooks that append their name to a shared log."""

    def __init__(self, approve: Any = True, model: str | None = None) -> None:
        self.log: list[str] = []
        self.approve = approve
        self.model = model
        self.after_result: ToolResult | None = None

    def router(self, invocation: ToolInvocation) -> str | None:
        self.log.append("model_router")
        return self.model

    async def before(self, invocation: ToolInvocation) -> None:
        self.log.append("before_call")

    def approval(self, invocation: ToolInvocation) -> Any:
        self.log.append("approval_checker")
        return self.approve

    def after(self, invocation: ToolInvocation, result: ToolResult) -> None:
        self.log.append("after_call")
        self.after_result = result

    def kwargs(self) -> dict[str, Any]:
        return {
            "model_router": self.router,
            "approval_checker": self.approval,
            "state_bridge": StateBridge(before_call=self.before, after_call=self.after),
        }


# =========================================================================
# Registry
# =========================================================================


class TestRegistry:
    def test_duplicate_rejected(self) -> None:
        runtime, _ = _runtime()
        with pytest.raises(ValueError, match="already registered"):
            runtime.register("echo", lambda args, inv: "x")

    def test_definitions_format(self) -> None:
        runtime, _ = _runtime()
        assert runtime.has_tool("echo")
        assert not runtime.has_tool("missing")
        assert runtime.get_tool_definitions() == [
            {
                "type": "function",
                "function": {"name": "echo", "description": "Repeat text", "parameters": ECHO_PARAMETERS},
            }
        ]

    def test_default_parameters(self) -> None:
        runtime = ToolRuntime()
        definition = runtime.register("noop", lambda args, inv: "")
        assert definition.parameters == {"type": "object", "properties": {}, "required": []}


# =========================================================================
# Argument normalization
# =========================================================================


class TestArguments:
    def test_defaults_applied(self) -> None:
        runtime, _ = _runtime()
        assert runtime._normalize_tool_args("echo", {"text": "a"}) == {"text": "a", "times": 1}

    def test_unknown_args_dropped(self) -> None:
        runtime, _ = _runtime()
        assert runtime._normalize_tool_args("echo", {"text": "a", "extra": 1}) == {"text": "a", "times": 1}

    @pytest.mark.parametrize(
        ("args", "message"),
        [
            ({}, "Missing required arguments: text"),
            ({"text": ""}, "Missing required arguments: text"),
            ({"text": 3}, "Invalid type for 'text': expected string"),
            ({"text": "a", "times": True}, "Invalid type for 'times': expected integer"),
            ({"text": "a", "loud": "yes"}, "Invalid type for 'loud': expected boolean"),
        ],
    )
    def test_invalid(self, args: dict[str, Any], message: str) -> None:
        runtime, _ = _runtime()
        with pytest.raises(ToolArgumentError, match=message):
            runtime._normalize_tool_args("echo", args)

    def test_unknown_tool(self) -> None:
        runtime, _ = _runtime()
        with pytest.raises(ToolArgumentError, match="Unknown tool: nope"):
            runtime._normalize_tool_args("nope", {})

    def test_args_must_be_object(self) -> None:
        runtime, _ = _runtime()
        with pytest.raises(ToolArgumentError):
            runtime._normalize_tool_args("echo", ["text"])

    def test_event_summary_truncates(self) -> None:
        runtime, _ = _runtime()
        summary = runtime._summarize_args_for_event({"text": "x" * 600, "n": 1})
        assert summary["text"].endswith("... [truncated]")
        assert len(summary["text"]) == 500 + len("... [truncated]")
        assert summary["n"] == 1


# =========================================================================
# Dispatch
# =========================================================================


class TestDispatch:
    async def test_plain_call(self) -> None:
        runtime, received = _runtime()
        result = await runtime.call_tool("echo", {"text": "hi", "times": 2}, tool_call_id="call_1")
        assert result == ToolResult(tool_call_id="call_1", content="hihi", success=True)
        assert received == [{"text": "hi", "times": 2}]

    async def test_hook_order(self) -> None:
        runtime, _ = _runtime()
        hooks = HookLog()
        result = await runtime.call_tool("echo", {"text": "a"}, **hooks.kwargs())
        assert hooks.log == ["model_router", "before_call", "approval_checker", "after_call"]
        assert hooks.after_result is result

    async def test_model_override(self) -> None:
        seen: list[str | None] = []

        def handler(args: dict[str, Any], invocation: ToolInvocation) -> str:
            seen.append(invocation.model)
            return "ok"

        runtime = ToolRuntime()
        runtime.register("work", handler)
        result = await runtime.call_tool("work", model_router=lambda inv: "dev-agent")
        assert seen == ["dev-agent"]
        assert result.model == "dev-agent"

    @pytest.mark.parametrize(
        "decision",
        [False, ApprovalDecision(approved=False), {"approved": False}],
    )
    async def test_rejected_call_skips_handler(self, decision: Any) -> None:
        runtime, received = _runtime()
        hooks = HookLog(approve=decision)
        result = await runtime.call_tool("echo", {"text": "a"}, **hooks.kwargs())

        assert received == []
        assert result.approved is False
        assert result.success is False
        assert result.error is None
        assert result.content == 'The action "echo" requires approval before execution.'
        assert hooks.log == ["model_router", "before_call", "approval_checker"]

    async def test_rejection_message(self) -> None:
        runtime, _ = _runtime()
        result = await runtime.call_tool(
            "echo",
            {"text": "a"},
            approval_checker=lambda inv: ApprovalDecision(approved=False, message="Ask the PO first"),
        )
        assert result.content == "Ask the PO first"

    async def test_approved_mapping(self) -> None:
        runtime, received = _runtime()
        result = await runtime.call_tool("echo", {"text": "a"}, approval_checker=lambda inv: {"approved": True})
        assert result.success
        assert received

    async def test_unsupported_approval_value(self) -> None:
        runtime, _ = _runtime()
        with pytest.raises(TypeError):
            await runtime.call_tool("echo", {"text": "a"}, approval_checker=lambda inv: "yes")

    async def test_handler_failure_becomes_result(self) -> None:
        hooks = HookLog()

        def boom(args: dict[str, Any], invocation: ToolInvocation) -> str:
            raise RuntimeError("disk full")

        runtime = ToolRuntime()
        runtime.register("boom", boom)
        result = await runtime.call_tool("boom", **hooks.kwargs())

        assert result.success is False
        assert result.approved is True
        assert result.error == "disk full"
        assert result.content == "Error: disk full"
        assert hooks.log[-1] == "after_call"

    async def test_invalid_args_become_result(self) -> None:
        runtime, received = _runtime()
        result = await runtime.call_tool("echo", {})
        assert result.success is False
        assert result.error == "Missing required arguments: text"
        assert received == []

    async def test_unknown_tool_becomes_result(self) -> None:
        runtime = ToolRuntime()
        result = await runtime.call_tool("ghost")
        assert result.error == "Unknown tool: ghost"

    async def test_hook_exceptions_propagate(self) -> None:
        runtime, received = _runtime()

        def broken_bridge(invocation: ToolInvocation) -> None:
            raise KeyError("bookkeeping")

        with pytest.raises(KeyError):
            await runtime.call_tool("echo", {"text": "a"}, state_bridge=StateBridge(before_call=broken_bridge))
        assert received == []

    async def test_structured_output(self) -> None:
        runtime = ToolRuntime()
        runtime.register("info", lambda args, inv: {"phase": "qa", "count": 2})
        result = await runtime.call_tool("info")
        assert result.data == {"phase": "qa", "count": 2}
        assert '"phase": "qa"' in result.content

    async def test_async_handler_returning_tool_result(self) -> None:
        async def handler(args: dict[str, Any], invocation: ToolInvocation) -> ToolResult:
            return ToolResult(tool_call_id="", content="custom", success=True)

        runtime = ToolRuntime()
        runtime.register("custom", handler)
        result = await runtime.call_tool("custom", tool_call_id="call_9")
        assert result.tool_call_id == "call_9"
        assert result.content == "custom"

    async def test_context_provider(self) -> None:
        contexts: list[dict[str, Any]] = []

        def handler(args: dict[str, Any], invocation: ToolInvocation) -> str:
            contexts.append(invocation.context)
            return "ok"

        runtime = ToolRuntime(context_provider=lambda: {"currentPhase": "planning"})
        runtime.register("ctx", handler)
        await runtime.call_tool("ctx")
        await runtime.call_tool("ctx", context={"currentPhase": "qa"})
        assert contexts == [{"currentPhase": "planning"}, {"currentPhase": "qa"}]


# =========================================================================
# Events & metrics
# =========================================================================


class TestObservability:
    async def test_events_for_successful_call(self, event_bus: EventBus) -> None:
        runtime, _ = _runtime(event_bus=event_bus)
        await runtime.call_tool("echo", {"text": "a"}, session_id="proj", tool_call_id="call_1")

        events = collect_events(event_bus, "proj")
        assert [e.type for e in events] == [EventType.TOOL_CALL, EventType.TOOL_RESULT]
        assert events[0].data["args"] == {"text": "a"}
        assert events[1].data["success"] is True
        assert events[1].data["result"] == "a"
        assert "duration_ms" in events[1].data

    async def test_events_for_rejection(self, event_bus: EventBus) -> None:
        runtime, _ = _runtime(event_bus=event_bus, session_id="proj")
        await runtime.call_tool("echo", {"text": "a"}, approval_checker=lambda inv: False)

        events = collect_events(event_bus, "proj")
        assert [e.type for e in events] == [EventType.TOOL_APPROVAL_DENIED]
        assert events[0].data["tool"] == "echo"

    async def test_metrics(self) -> None:
        collector = MetricsCollector()
        collector.start("proj")
        runtime, _ = _runtime(metrics_collector=collector, session_id="proj")

        await runtime.call_tool("echo", {"text": "a"})
        await runtime.call_tool("echo", {"text": "a"}, approval_checker=lambda inv: False)

        data = collector.get("proj")
        assert data.tool_calls == 1
        assert data.approvals_denied == 1
