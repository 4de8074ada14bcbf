"""Dependency Resolver for declarative agent and team bundles.

Agents and teams are declared as documents inside a layered set of core
directories. The resolver probes each directory in order (newest naming
convention first, legacy last), parses the document, and materializes every
declared resource into a ResolvedDependencies bundle.

Layout under each core directory:
    agents/<agent id>.md            Markdown with an embedded ``yaml`` block
    agent-teams/<team id>.yaml      Team definition
    <kind>/<resource id>            One file per resource (tasks, templates, ...)

Resources are additionally looked up in ``<root>/<common_directory>/<kind>/``.

Usage:
    >>> resolver = DependencyResolver("/srv/project")
    >>> bundle = resolver.resolve_agent("architect")
    >>> [r.id for r in bundle.resources]
"""

import threading
from dataclasses import dataclass
from pathlib import Path

import structlog

from config import settings
from models.schemas import AgentConfig, ResolvedDependencies, Resource, TeamConfig
from resolver.cache import ResourceCache, ResourceKey, UnboundedResourceCache, read_through
from resolver.documents import parse_agent_document, parse_team_document

logger = structlog.get_logger()

DEPENDENCY_KINDS: tuple[str, ...] = ("tasks", "templates", "checklists", "data", "utils")
TEAM_WILDCARD = "*"

# Legacy-directory notices already emitted in this process.
_legacy_notices: set[str] = set()
_legacy_lock = threading.Lock()


def reset_legacy_notices() -> None:
    """Forget which legacy notices were emitted (used by tests)."""
    with _legacy_lock:
        _legacy_notices.clear()


class NotFoundError(LookupError):
    """Raised when a required agent or team document is absent.

    Attributes:
        relative_path: The path probed under each core directory.
        candidates: Every absolute path that was tried.
    """

    def __init__(self, message: str, relative_path: str, candidates: list[Path]) -> None:
        super().__init__(message)
        self.relative_path = relative_path
        self.candidates = candidates


class AgentNotFoundError(NotFoundError):
    """The agent document does not exist in any core directory."""


class TeamNotFoundError(NotFoundError):
    """The team document does not exist in any core directory."""


@dataclass(frozen=True)
class CoreDirectory:
    label: str
    path: Path
    legacy: bool


def _check_identifier(kind: str, identifier: str) -> None:
    parts = Path(identifier).parts
    if not identifier or Path(identifier).is_absolute() or ".." in parts:
        raise ValueError(f"Invalid {kind} identifier: {identifier!r}")


class DependencyResolver:
    """Loads and merges agent/team bundles from layered core directories.

    Not safe for concurrent mutation of the same instance; the resource
    cache itself may be shared read-mostly between resolvers.

    Attributes:
        root_dir: Base directory holding the core and common directories.
        core_directories: Probe order, newest convention first.
        cache: Read-through resource cache keyed by (kind, id).
    """

    def __init__(
        self,
        root_dir: str | Path | None = None,
        core_directories: list[str] | None = None,
        common_directory: str | None = None,
        cache: ResourceCache | None = None,
        orchestrator_agent: str | None = None,
        excluded_agent: str | None = None,
    ) -> None:
        """Initialize the resolver.

        Args:
            root_dir: Base directory. Defaults to settings.core_root.
            core_directories: Directory names in probe order; the last one is
                the legacy convention. Defaults to settings.core_directories.
            common_directory: Resource fallback directory name.
            cache: Resource cache; a fresh unbounded cache when omitted.
            orchestrator_agent: Agent prepended to every team.
            excluded_agent: Agent never included by a team wildcard.
        """
        self.root_dir = Path(root_dir if root_dir is not None else settings.core_root)
        labels = list(settings.core_directories if core_directories is None else core_directories)
        if not labels:
            raise ValueError("At least one core directory is required")
        self.core_directories = [
            CoreDirectory(
                label=label,
                path=self.root_dir / label,
                legacy=len(labels) > 1 and index == len(labels) - 1,
            )
            for index, label in enumerate(labels)
        ]
        self.common_dir = self.root_dir / (
            settings.common_directory if common_directory is None else common_directory
        )
        self.cache: ResourceCache = cache if cache is not None else UnboundedResourceCache()
        self.orchestrator_agent = (
            settings.team_orchestrator_agent if orchestrator_agent is None else orchestrator_agent
        )
        self.excluded_agent = settings.team_excluded_agent if excluded_agent is None else excluded_agent

    # -------------------------------------------------------------------------
    # File probing
    # -------------------------------------------------------------------------

    def _warn_if_legacy(self, entry: CoreDirectory) -> None:
        if not entry.legacy:
            return
        with _legacy_lock:
            if entry.label in _legacy_notices:
                return
            _legacy_notices.add(entry.label)
        logger.warning(
            "legacy_core_directory_in_use",
            directory=entry.label,
            preferred=self.core_directories[0].label,
        )

    def _read_core_file(self, *segments: str) -> tuple[str, Path] | None:
        """Read the first matching file across core directories."""
        for entry in self.core_directories:
            candidate = entry.path.joinpath(*segments)
            try:
                content = candidate.read_text(encoding="utf-8")
            except (FileNotFoundError, NotADirectoryError, IsADirectoryError):
                continue
            self._warn_if_legacy(entry)
            return content, candidate
        return None

    def _candidates(self, *segments: str) -> list[Path]:
        return [entry.path.joinpath(*segments) for entry in self.core_directories]

    # -------------------------------------------------------------------------
    # Resources
    # -------------------------------------------------------------------------

    def load_resource(self, kind: str, resource_id: str) -> Resource | None:
        """Load one resource, memoized by (kind, id).

        Returns None (after logging a warning) when the resource is absent.
        """
        try:
            _check_identifier(kind, kind)
            _check_identifier(kind, resource_id)
        except ValueError as e:
            logger.warning("resource_id_rejected", kind=kind, resource_id=resource_id, error=str(e))
            return None

        def load() -> Resource | None:
            found = self._read_core_file(kind, resource_id)
            if found is None:
                common_path = self.common_dir / kind / resource_id
                try:
                    found = (common_path.read_text(encoding="utf-8"), common_path)
                except (FileNotFoundError, NotADirectoryError, IsADirectoryError):
                    return None
            content, path = found
            return Resource(type=kind, id=resource_id, path=str(path), content=content)

        resource = read_through(self.cache, ResourceKey(kind, resource_id), load)
        if resource is None:
            logger.warning("resource_not_found", kind=kind, resource_id=resource_id)
        return resource

    # -------------------------------------------------------------------------
    # Agents & Teams
    # -------------------------------------------------------------------------

    def _load_agent(self, agent_id: str) -> tuple[AgentConfig, list[Resource]]:
        _check_identifier("agent", agent_id)
        relative = f"agents/{agent_id}.md"
        found = self._read_core_file("agents", f"{agent_id}.md")
        if found is None:
            candidates = self._candidates("agents", f"{agent_id}.md")
            raise AgentNotFoundError(
                f"Agent not found: {relative} (searched {', '.join(str(c) for c in candidates)})",
                relative,
                candidates,
            )

        content, path = found
        agent = AgentConfig(
            id=agent_id,
            path=str(path),
            content=content,
            config=parse_agent_document(agent_id, content),
        )

        declared = agent.dependencies
        unknown_kinds = sorted(set(declared) - set(DEPENDENCY_KINDS))
        if unknown_kinds:
            logger.debug("agent_dependency_kinds_ignored", agent_id=agent_id, kinds=unknown_kinds)

        resources: list[Resource] = []
        for kind in DEPENDENCY_KINDS:
            for resource_id in declared.get(kind, []):
                resource = self.load_resource(kind, resource_id)
                if resource is not None:
                    resources.append(resource)
        return agent, resources

    def resolve_agent(self, agent_id: str) -> ResolvedDependencies:
        """Resolve an agent and its declared resources.

        Raises:
            AgentNotFoundError: If no core directory holds the agent document.
            AgentConfigError: If the document has no usable YAML block.
        """
        agent, resources = self._load_agent(agent_id)
        logger.info(
            "agent_resolved",
            agent_id=agent_id,
            path=agent.path,
            resource_count=len(resources),
        )
        return ResolvedDependencies(agent=agent, resources=resources)

    def resolve_team(self, team_id: str) -> ResolvedDependencies:
        """Resolve a team, its member agents and workflows.

        The orchestrator agent is always first and appears exactly once. A
        ``*`` entry expands to every known agent except the excluded one.
        Resources are deduplicated by resolved path.

        Raises:
            TeamNotFoundError: If no core directory holds the team document.
            AgentNotFoundError: If a member agent is missing.
        """
        _check_identifier("team", team_id)
        relative = f"agent-teams/{team_id}.yaml"
        found = self._read_core_file("agent-teams", f"{team_id}.yaml")
        if found is None:
            candidates = self._candidates("agent-teams", f"{team_id}.yaml")
            raise TeamNotFoundError(
                f"Team not found: {relative} (searched {', '.join(str(c) for c in candidates)})",
                relative,
                candidates,
            )

        content, path = found
        team = TeamConfig(
            id=team_id,
            path=str(path),
            content=content,
            config=parse_team_document(team_id, content),
        )

        resources: dict[str, Resource] = {}
        orchestrator, orchestrator_resources = self._load_agent(self.orchestrator_agent)
        agents = [orchestrator]
        for resource in orchestrator_resources:
            resources[resource.path] = resource

        requested = team.agent_ids
        if TEAM_WILDCARD in requested:
            requested = [agent for agent in requested if agent != TEAM_WILDCARD]
            requested.extend(
                agent
                for agent in self.list_agents()
                if agent not in requested and agent != self.excluded_agent
            )

        seen = {self.orchestrator_agent, self.excluded_agent}
        for agent_id in requested:
            if agent_id in seen:
                continue
            seen.add(agent_id)
            agent, agent_resources = self._load_agent(agent_id)
            agents.append(agent)
            for resource in agent_resources:
                resources[resource.path] = resource

        for workflow_id in team.workflow_ids:
            resource = self.load_resource("workflows", workflow_id)
            if resource is not None:
                resources[resource.path] = resource

        logger.info(
            "team_resolved",
            team_id=team_id,
            agents=[agent.id for agent in agents],
            resource_count=len(resources),
        )
        return ResolvedDependencies(team=team, agents=agents, resources=list(resources.values()))

    def _list_documents(self, subdirectory: str, suffix: str) -> list[str]:
        for entry in self.core_directories:
            directory = entry.path / subdirectory
            if not directory.is_dir():
                continue
            names = sorted(p.stem for p in directory.iterdir() if p.is_file() and p.suffix == suffix)
            if names:
                self._warn_if_legacy(entry)
            return names
        return []

    def list_agents(self) -> list[str]:
        """Agent ids from the first core directory that has an agents/ folder."""
        return self._list_documents("agents", ".md")

    def list_teams(self) -> list[str]:
        """Team ids from the first core directory that has an agent-teams/ folder."""
        return self._list_documents("agent-teams", ".yaml")
