"""Shared test fixtures for backend tests.

Provides a fresh EventBus, a layered core-directory tree on disk, and a
scripted phase detector so tests never depend on real agent bundles or a
real classifier.
"""

import sys
from pathlib import Path
from typing import Any

import pytest
import yaml

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from workflow.phases import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from events.bus import EventBus, reset_event_bus  # noqa: E402
from events.types import WorkflowEvent  # noqa: E402
from resolver import DependencyResolver, reset_legacy_notices  # noqa: E402

# ---------------------------------------------------------------------------
# Event Bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    reset_event_bus()
    bus = EventBus()
    return bus


def collect_events(event_bus: EventBus, session_id: str) -> list[WorkflowEvent]:
    """Subscribe to a session and drain all buffered events."""
    queue = event_bus.subscribe(session_id)
    events: list[WorkflowEvent] = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


@pytest.fixture(autouse=True)
def _reset_legacy_notices() -> None:
    """The legacy-directory notice is process-wide; isolate it per test."""
    reset_legacy_notices()


# ---------------------------------------------------------------------------
# Core directory tree
# ---------------------------------------------------------------------------


def write_agent(core: Path, agent_id: str, dependencies: dict[str, list[str]] | None = None) -> Path:
    """Write an agent document with an embedded YAML configuration block."""
    config = {
        "agent": {"id": agent_id, "name": agent_id.title()},
        "persona": {"role": f"{agent_id} role"},
        "dependencies": dependencies or {},
    }
    path = core / "agents" / f"{agent_id}.md"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        f"# {agent_id}\n\nActivation notice.\n\n```yaml\n{yaml.safe_dump(config)}```\n",
        encoding="utf-8",
    )
    return path


def write_resource(base: Path, kind: str, resource_id: str, content: str | None = None) -> Path:
    path = base / kind / resource_id
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content or f"{kind}:{resource_id}", encoding="utf-8")
    return path


def write_team(core: Path, team_id: str, agents: list[str], workflows: list[str] | None = None) -> Path:
    path = core / "agent-teams" / f"{team_id}.yaml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        yaml.safe_dump({"bundle": {"name": team_id}, "agents": agents, "workflows": workflows or []}),
        encoding="utf-8",
    )
    return path


@pytest.fixture()
def core_root(tmp_path: Path) -> Path:
    """Layered tree: conductor-core (current), bmad-core (legacy), common.

    conductor-core/agents: analyst, dev, master, orchestrator, pm
    bmad-core/agents:      architect (legacy only)
    """
    current = tmp_path / "conductor-core"
    legacy = tmp_path / "bmad-core"
    common = tmp_path / "common"

    write_agent(current, "orchestrator", {"tasks": ["create-doc.md"]})
    write_agent(current, "master", {"tasks": ["create-doc.md"]})
    write_agent(
        current,
        "analyst",
        {"tasks": ["create-doc.md", "missing-task.md"], "templates": ["brief.yaml"]},
    )
    write_agent(current, "dev", {"checklists": ["story-dod.md"], "utils": ["helper.md"]})
    write_agent(current, "pm", {"templates": ["prd.yaml"], "tasks": ["create-doc.md"]})

    write_resource(current, "tasks", "create-doc.md")
    write_resource(current, "templates", "brief.yaml")
    write_resource(current, "templates", "prd.yaml")
    write_resource(current, "checklists", "story-dod.md")
    write_resource(current, "workflows", "greenfield.yaml")

    write_team(current, "team-all", ["*"], ["greenfield.yaml"])
    write_team(current, "team-dev", ["dev", "orchestrator", "pm", "dev"])

    write_agent(legacy, "architect", {"data": ["kb.md"]})
    write_resource(legacy, "data", "kb.md")

    write_resource(common, "utils", "helper.md")
    return tmp_path


@pytest.fixture()
def resolver(core_root: Path) -> DependencyResolver:
    return DependencyResolver(
        root_dir=core_root,
        core_directories=["conductor-core", "bmad-core"],
        common_directory="common",
    )


# ---------------------------------------------------------------------------
# Phase detector
# ---------------------------------------------------------------------------


class ScriptedDetector:
    """Returns queued payloads in order, then None."""

    def __init__(self, *payloads: Any) -> None:
        self.payloads = list(payloads)
        self.calls: list[dict[str, Any]] = []

    def queue(self, *payloads: Any) -> None:
        self.payloads.extend(payloads)

    async def detect(self, context: Any, user_message: str, current_phase: str | None) -> Any:
        self.calls.append(
            {"context": context, "user_message": user_message, "current_phase": current_phase}
        )
        if not self.payloads:
            return None
        return self.payloads.pop(0)


@pytest.fixture()
def detector() -> ScriptedDetector:
    return ScriptedDetector()
