"""Application configuration using Pydantic Settings.

This module provides centralized configuration for the workflow orchestration
engine. All settings can be overridden via environment variables or a .env file.
"""

import json
import logging
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables.

    Attributes:
        core_root: Base directory holding the layered core directories.
        core_directories: Candidate core directory names, newest convention
            first. The last entry is the legacy convention.
        common_directory: Secondary lookup directory for resources only.
        team_orchestrator_agent: Agent prepended to every resolved team.
        team_excluded_agent: Agent never pulled in by a team wildcard.
        phase_confidence_threshold: Minimum detector confidence for a transition.
        max_parallel_tasks: Upper bound on concurrently running mission tasks.
        task_timeout_seconds: Per-task timeout; 0 disables it.
        max_events_per_session: Event history retained per session for replay.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # Dependency Resolver
    core_root: str = "."
    core_directories: str | list[str] = ["conductor-core", "bmad-core"]
    common_directory: str = "common"
    team_orchestrator_agent: str = "orchestrator"
    team_excluded_agent: str = "master"

    # Phase State Machine
    phase_confidence_threshold: float = 0.6

    # Task Graph Executor
    max_parallel_tasks: int = 8
    task_timeout_seconds: float = 0.0

    # Events
    max_events_per_session: int = 5000

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("core_directories", mode="before")
    @classmethod
    def parse_core_directories(cls, v: Any) -> list[str]:
        """Parse core directory candidates from string or list.

        Accepts:
        - JSON array: '["conductor-core", "bmad-core"]'
        - Comma-separated: 'conductor-core,bmad-core'
        - Single value: 'conductor-core'
        - Already a list: ["conductor-core", "bmad-core"]
        """
        if isinstance(v, list):
            return [str(entry) for entry in v if str(entry).strip()]
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("["):
                try:
                    return [str(entry) for entry in json.loads(v)]
                except json.JSONDecodeError:
                    pass
            return [entry.strip() for entry in v.split(",") if entry.strip()]
        return ["conductor-core", "bmad-core"]

    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the engine.

    Sets up structlog with appropriate processors for either JSON or console output.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)
