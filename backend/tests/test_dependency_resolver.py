"""Tests for resolver/ -- layered agent/team resolution and the resource cache.

Covers probe order, the once-per-process legacy notice, soft resource
misses, team orchestrator/wildcard handling, path-based deduplication,
and the read-through cache.
"""

from pathlib import Path

import pytest

from resolver import (
    AgentConfigError,
    AgentNotFoundError,
    DependencyResolver,
    ResourceKey,
    TeamNotFoundError,
    UnboundedResourceCache,
)
from resolver.cache import read_through
from resolver.documents import extract_yaml_block, parse_agent_document, parse_team_document
from tests.conftest import write_agent, write_resource, write_team

# =========================================================================
# Documents
# =========================================================================


class TestDocuments:
    """Embedded YAML extraction and parsing."""

    def test_extract_yaml_block(self) -> None:
        content = "# Agent\n\n```yaml\nagent:\n  id: x\n```\n"
        assert extract_yaml_block(content) == "agent:\n  id: x"

    def test_extract_yml_fence(self) -> None:
        assert extract_yaml_block("```yml\na: 1\n```") == "a: 1"

    def test_extract_missing_block(self) -> None:
        assert extract_yaml_block("no config here") is None

    def test_parse_agent_requires_block(self) -> None:
        with pytest.raises(AgentConfigError, match="No YAML configuration"):
            parse_agent_document("x", "plain markdown")

    def test_parse_agent_requires_mapping(self) -> None:
        with pytest.raises(AgentConfigError, match="must be a mapping"):
            parse_agent_document("x", "```yaml\n- a\n- b\n```")

    def test_parse_agent_invalid_yaml(self) -> None:
        with pytest.raises(AgentConfigError, match="Invalid YAML"):
            parse_agent_document("x", "```yaml\na: [unclosed\n```")

    def test_parse_empty_team(self) -> None:
        assert parse_team_document("t", "") == {}

    def test_parse_team_requires_mapping(self) -> None:
        with pytest.raises(AgentConfigError):
            parse_team_document("t", "- a\n- b\n")


# =========================================================================
# Agents
# =========================================================================


class TestResolveAgent:
    """Agent resolution across layered core directories."""

    def test_resolves_agent_with_resources(self, resolver: DependencyResolver) -> None:
        bundle = resolver.resolve_agent("pm")
        assert bundle.agent is not None
        assert bundle.agent.id == "pm"
        assert bundle.agent.config["agent"]["id"] == "pm"
        assert [(r.type, r.id) for r in bundle.resources] == [
            ("tasks", "create-doc.md"),
            ("templates", "prd.yaml"),
        ]
        assert bundle.team is None
        assert bundle.agents == []

    def test_missing_resource_is_soft(self, resolver: DependencyResolver) -> None:
        bundle = resolver.resolve_agent("analyst")
        ids = [r.id for r in bundle.resources]
        assert "missing-task.md" not in ids
        assert ids == ["create-doc.md", "brief.yaml"]

    def test_missing_agent_is_hard_failure(self, resolver: DependencyResolver, core_root: Path) -> None:
        with pytest.raises(AgentNotFoundError) as exc_info:
            resolver.resolve_agent("ghost")
        err = exc_info.value
        assert err.relative_path == "agents/ghost.md"
        assert err.candidates == [
            core_root / "conductor-core" / "agents" / "ghost.md",
            core_root / "bmad-core" / "agents" / "ghost.md",
        ]
        assert "agents/ghost.md" in str(err)

    def test_rejects_path_traversal(self, resolver: DependencyResolver) -> None:
        with pytest.raises(ValueError):
            resolver.resolve_agent("../secrets")

    def test_newest_directory_wins(self, resolver: DependencyResolver, core_root: Path) -> None:
        write_agent(core_root / "bmad-core", "pm", {})
        bundle = resolver.resolve_agent("pm")
        assert Path(bundle.agent.path) == core_root / "conductor-core" / "agents" / "pm.md"

    def test_falls_back_to_legacy_directory(self, resolver: DependencyResolver, core_root: Path) -> None:
        bundle = resolver.resolve_agent("architect")
        assert Path(bundle.agent.path) == core_root / "bmad-core" / "agents" / "architect.md"
        assert [r.id for r in bundle.resources] == ["kb.md"]

    def test_common_directory_fallback_for_resources(self, resolver: DependencyResolver, core_root: Path) -> None:
        bundle = resolver.resolve_agent("dev")
        helper = next(r for r in bundle.resources if r.id == "helper.md")
        assert Path(helper.path) == core_root / "common" / "utils" / "helper.md"

    def test_agent_without_yaml_block(self, resolver: DependencyResolver, core_root: Path) -> None:
        (core_root / "conductor-core" / "agents" / "broken.md").write_text("# Broken\n", encoding="utf-8")
        with pytest.raises(AgentConfigError):
            resolver.resolve_agent("broken")


class TestLegacyNotice:
    """The legacy-directory notice is emitted once per process."""

    def test_notice_logged_once(self, resolver: DependencyResolver, monkeypatch: pytest.MonkeyPatch) -> None:
        from resolver import dependency_resolver

        warnings: list[str] = []
        monkeypatch.setattr(
            dependency_resolver.logger,
            "warning",
            lambda event, **kw: warnings.append(event),
        )
        resolver.resolve_agent("architect")
        resolver.resolve_agent("architect")
        other = DependencyResolver(
            root_dir=resolver.root_dir,
            core_directories=["conductor-core", "bmad-core"],
        )
        other.resolve_agent("architect")
        assert warnings.count("legacy_core_directory_in_use") == 1

    def test_single_directory_is_never_legacy(self, core_root: Path) -> None:
        resolver = DependencyResolver(root_dir=core_root, core_directories=["bmad-core"])
        assert resolver.core_directories[0].legacy is False

    def test_requires_a_core_directory(self, core_root: Path) -> None:
        with pytest.raises(ValueError):
            DependencyResolver(root_dir=core_root, core_directories=[])


# =========================================================================
# Teams
# =========================================================================


class TestResolveTeam:
    """Orchestrator handling, wildcard expansion and deduplication."""

    def test_wildcard_expands_without_excluded_agent(self, resolver: DependencyResolver) -> None:
        bundle = resolver.resolve_team("team-all")
        ids = [agent.id for agent in bundle.agents]
        assert ids == ["orchestrator", "analyst", "dev", "pm"]
        assert "master" not in ids

    def test_explicit_empty_excluded_agent_is_kept(self, core_root: Path) -> None:
        resolver = DependencyResolver(
            root_dir=core_root,
            core_directories=["conductor-core", "bmad-core"],
            excluded_agent="",
        )
        ids = [agent.id for agent in resolver.resolve_team("team-all").agents]
        assert ids == ["orchestrator", "analyst", "dev", "master", "pm"]

    def test_orchestrator_exactly_once(self, resolver: DependencyResolver) -> None:
        bundle = resolver.resolve_team("team-dev")
        ids = [agent.id for agent in bundle.agents]
        assert ids == ["orchestrator", "dev", "pm"]
        assert ids.count("orchestrator") == 1

    def test_orchestrator_prepended_when_not_listed(self, resolver: DependencyResolver, core_root: Path) -> None:
        write_team(core_root / "conductor-core", "team-solo", ["analyst"])
        bundle = resolver.resolve_team("team-solo")
        assert [agent.id for agent in bundle.agents] == ["orchestrator", "analyst"]

    def test_resources_deduplicated_by_path(self, resolver: DependencyResolver) -> None:
        bundle = resolver.resolve_team("team-all")
        paths = [r.path for r in bundle.resources]
        assert len(paths) == len(set(paths))
        # create-doc.md is shared by orchestrator, analyst and pm
        assert sum(1 for r in bundle.resources if r.id == "create-doc.md") == 1

    def test_same_id_under_two_kinds_yields_two_entries(self, resolver: DependencyResolver, core_root: Path) -> None:
        current = core_root / "conductor-core"
        write_resource(current, "tasks", "shared.md")
        write_resource(current, "checklists", "shared.md")
        write_agent(current, "qa", {"tasks": ["shared.md"], "checklists": ["shared.md"]})
        write_team(current, "team-qa", ["qa"])

        bundle = resolver.resolve_team("team-qa")
        shared = [r for r in bundle.resources if r.id == "shared.md"]
        assert sorted(r.type for r in shared) == ["checklists", "tasks"]

    def test_workflows_loaded_as_resources(self, resolver: DependencyResolver) -> None:
        bundle = resolver.resolve_team("team-all")
        assert any(r.type == "workflows" and r.id == "greenfield.yaml" for r in bundle.resources)

    def test_missing_team(self, resolver: DependencyResolver) -> None:
        with pytest.raises(TeamNotFoundError) as exc_info:
            resolver.resolve_team("team-ghost")
        assert exc_info.value.relative_path == "agent-teams/team-ghost.yaml"

    def test_missing_member_agent_is_hard_failure(self, resolver: DependencyResolver, core_root: Path) -> None:
        write_team(core_root / "conductor-core", "team-broken", ["ghost"])
        with pytest.raises(AgentNotFoundError):
            resolver.resolve_team("team-broken")


class TestListing:
    def test_list_agents(self, resolver: DependencyResolver) -> None:
        assert resolver.list_agents() == ["analyst", "dev", "master", "orchestrator", "pm"]

    def test_list_teams(self, resolver: DependencyResolver) -> None:
        assert resolver.list_teams() == ["team-all", "team-dev"]

    def test_list_empty_tree(self, tmp_path: Path) -> None:
        resolver = DependencyResolver(root_dir=tmp_path, core_directories=["a", "b"])
        assert resolver.list_agents() == []
        assert resolver.list_teams() == []


# =========================================================================
# Cache
# =========================================================================


class TestResourceCache:
    """Read-through memoization keyed by (kind, id)."""

    def test_read_through_memoizes_hits(self) -> None:
        cache = UnboundedResourceCache()
        calls: list[int] = []

        def load() -> str:
            calls.append(1)
            return "value"

        key = ResourceKey("tasks", "a.md")
        assert read_through(cache, key, load) == "value"
        assert read_through(cache, key, load) == "value"
        assert len(calls) == 1

    def test_misses_are_not_cached(self) -> None:
        cache = UnboundedResourceCache()
        calls: list[int] = []

        def load() -> None:
            calls.append(1)
            return None

        key = ResourceKey("tasks", "missing.md")
        assert read_through(cache, key, load) is None
        assert read_through(cache, key, load) is None
        assert len(calls) == 2

    def test_resolver_cache_never_invalidated(self, resolver: DependencyResolver, core_root: Path) -> None:
        first = resolver.load_resource("tasks", "create-doc.md")
        write_resource(core_root / "conductor-core", "tasks", "create-doc.md", "changed")
        second = resolver.load_resource("tasks", "create-doc.md")
        assert first is second
        assert second.content == "tasks:create-doc.md"

    def test_cache_shared_between_resolvers(self, core_root: Path) -> None:
        cache = UnboundedResourceCache()
        a = DependencyResolver(root_dir=core_root, core_directories=["conductor-core"], cache=cache)
        b = DependencyResolver(root_dir=core_root, core_directories=["conductor-core"], cache=cache)
        assert a.load_resource("tasks", "create-doc.md") is b.load_resource("tasks", "create-doc.md")

    def test_rejected_resource_id(self, resolver: DependencyResolver) -> None:
        assert resolver.load_resource("tasks", "../escape.md") is None
