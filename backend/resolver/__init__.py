"""Dependency resolution for declarative agent and team bundles."""

from resolver.cache import ResourceCache, ResourceKey, UnboundedResourceCache
from resolver.dependency_resolver import (
    DEPENDENCY_KINDS,
    AgentNotFoundError,
    DependencyResolver,
    NotFoundError,
    TeamNotFoundError,
    reset_legacy_notices,
)
from resolver.documents import AgentConfigError

__all__ = [
    "DEPENDENCY_KINDS",
    "AgentConfigError",
    "AgentNotFoundError",
    "DependencyResolver",
    "NotFoundError",
    "ResourceCache",
    "ResourceKey",
    "TeamNotFoundError",
    "UnboundedResourceCache",
    "reset_legacy_notices",
]
