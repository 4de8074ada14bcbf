"""Tests for config.py -- environment-driven settings."""

import pytest

from config import Settings


class TestSettings:
    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for name in ("CORE_DIRECTORIES", "PHASE_CONFIDENCE_THRESHOLD", "MAX_PARALLEL_TASKS"):
            monkeypatch.delenv(name, raising=False)
        settings = Settings(_env_file=None)
        assert settings.core_directories == ["conductor-core", "bmad-core"]
        assert settings.phase_confidence_threshold == 0.6
        assert settings.team_orchestrator_agent == "orchestrator"
        assert settings.team_excluded_agent == "master"
        assert settings.task_timeout_seconds == 0.0

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PHASE_CONFIDENCE_THRESHOLD", "0.75")
        monkeypatch.setenv("MAX_PARALLEL_TASKS", "2")
        settings = Settings(_env_file=None)
        assert settings.phase_confidence_threshold == 0.75
        assert settings.max_parallel_tasks == 2

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ('["next-core", "old-core"]', ["next-core", "old-core"]),
            ("next-core, old-core", ["next-core", "old-core"]),
            ("next-core", ["next-core"]),
            (["a", " "], ["a"]),
        ],
    )
    def test_core_directories_parsing(self, raw: object, expected: list[str]) -> None:
        assert Settings(_env_file=None, core_directories=raw).core_directories == expected
