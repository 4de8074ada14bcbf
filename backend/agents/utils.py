"""Helper functions shared by the workflow and task graph components.

This module provides:
- extract_json_from_response: Pull a JSON object out of free-form text
- topological_sort: Group task dicts into dependency layers
- snippet: Bounded excerpt of a raw payload for diagnostics
- maybe_await: Call a collaborator that may be sync or async
"""

import inspect
import json
import re
from collections.abc import Callable
from typing import Any

import structlog

logger = structlog.get_logger()

SNIPPET_LIMIT = 500


def snippet(value: Any, limit: int = SNIPPET_LIMIT) -> str:
    """Render ``value`` as text truncated to ``limit`` characters."""
    if isinstance(value, str):
        text = value
    else:
        try:
            text = json.dumps(value, default=str)
        except (TypeError, ValueError):
            text = repr(value)
    if len(text) <= limit:
        return text
    return text[:limit]


async def maybe_await(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Call ``func`` and await the result when it is awaitable."""
    result = func(*args, **kwargs)
    if inspect.isawaitable(result):
        return await result
    return result


def topological_sort(tasks: list[dict[str, Any]]) -> list[list[dict[str, Any]]]:
    """Sort task dicts into dependency layers.

    Groups tasks so that all dependencies in layer N are resolved before
    layer N+1 begins. Layer 0 has no dependencies. Within a layer the input
    order is preserved.

    Args:
        tasks: List of task dicts, each with 'id' and 'dependencies' fields.
            Every dependency must name another task in the list.

    Returns:
        List of layers, where each layer is a list of tasks that can
        run in parallel

    Raises:
        KeyError: If a dependency names a task that is not in the list
        ValueError: If a circular dependency is detected
    """
    task_map: dict[str, dict[str, Any]] = {task["id"]: task for task in tasks}
    for task in tasks:
        for dep in task.get("dependencies", []):
            if dep not in task_map:
                raise KeyError(dep)

    resolved: set[str] = set()
    remaining = [task["id"] for task in tasks]
    layers: list[list[dict[str, Any]]] = []

    while remaining:
        ready = [
            task_id
            for task_id in remaining
            if all(dep in resolved for dep in task_map[task_id].get("dependencies", []))
        ]
        if not ready:
            logger.warning("topological_sort_cycle_detected", remaining=remaining)
            raise ValueError(f"Circular dependency among tasks: {', '.join(remaining)}")

        layers.append([task_map[task_id] for task_id in ready])
        resolved.update(ready)
        remaining = [task_id for task_id in remaining if task_id not in resolved]

    return layers


def _extract_balanced_json_objects(text: str) -> list[str]:
    """Extract balanced JSON object candidates from arbitrary text."""
    candidates: list[str] = []
    n = len(text)

    for start in range(n):
        if text[start] != "{":
            continue

        depth = 0
        in_string = False
        escaped = False

        for end in range(start, n):
            ch = text[end]

            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue

            if ch == '"':
                in_string = True
                continue

            if ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    candidates.append(text[start : end + 1])
                    break

    return candidates


def extract_json_from_response(response: str) -> dict[str, Any] | None:
    """Extract a JSON object from text that may contain extra prose.

    Tries, in order: the whole text, fenced blocks, then balanced ``{...}``
    spans anywhere in the text.

    Returns:
        Parsed JSON dict if found, None otherwise
    """
    def try_parse(candidate: str) -> dict[str, Any] | None:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, dict) else None

    parsed = try_parse(response.strip())
    if parsed is not None:
        return parsed

    fence_pattern = r"```(?:json)?\s*([\s\S]*?)\s*```"
    for match in re.finditer(fence_pattern, response, re.IGNORECASE):
        fenced_body = match.group(1).strip()
        parsed = try_parse(fenced_body)
        if parsed is not None:
            return parsed
        for candidate in _extract_balanced_json_objects(fenced_body):
            parsed = try_parse(candidate)
            if parsed is not None:
                return parsed

    for candidate in _extract_balanced_json_objects(response):
        parsed = try_parse(candidate)
        if parsed is not None:
            return parsed

    return None
