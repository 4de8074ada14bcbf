"""Parsing of agent and team definition documents.

Agent documents are Markdown with an embedded fenced YAML block holding the
structured configuration. Team documents are plain YAML.
"""

import re
from typing import Any

import yaml

_YAML_FENCE = re.compile(r"```ya?ml[^\n]*\n([\s\S]*?)```", re.IGNORECASE)


class AgentConfigError(ValueError):
    """Raised when an agent document has no usable configuration block."""


def extract_yaml_block(content: str) -> str | None:
    """Return the body of the first fenced ``yaml`` block, or None."""
    match = _YAML_FENCE.search(content)
    if match is None:
        return None
    body = match.group(1).strip()
    return body or None


def parse_agent_document(agent_id: str, content: str) -> dict[str, Any]:
    """Parse the structured configuration embedded in an agent document.

    Raises:
        AgentConfigError: If there is no YAML block, it does not parse, or it
            is not a mapping.
    """
    block = extract_yaml_block(content)
    if block is None:
        raise AgentConfigError(f"No YAML configuration found in agent {agent_id}")
    try:
        parsed = yaml.safe_load(block)
    except yaml.YAMLError as e:
        raise AgentConfigError(f"Invalid YAML configuration in agent {agent_id}: {e}") from e
    if not isinstance(parsed, dict):
        raise AgentConfigError(
            f"YAML configuration in agent {agent_id} must be a mapping, "
            f"got {type(parsed).__name__}"
        )
    return parsed


def parse_team_document(team_id: str, content: str) -> dict[str, Any]:
    """Parse a team definition. An empty document is an empty team."""
    try:
        parsed = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise AgentConfigError(f"Invalid team definition {team_id}: {e}") from e
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        raise AgentConfigError(f"Team definition {team_id} must be a mapping")
    return parsed
