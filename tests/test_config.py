"""
Tests for environment-driven settings.
"""

import pytest
from pathlib import Path

from tabletop_engine.config import EngineSettings


class TestEngineSettings:

    def test_defaults(self) -> None:
        settings = EngineSettings.from_env({})
        assert settings.storage_dir == Path("tabletop_data")
        assert settings.default_grid_size == 100
        assert settings.log_level == "DEBUG"
        assert settings.history_limit == 20

    def test_overrides(self) -> None:
        settings = EngineSettings.from_env({
            "TABLETOP_STORAGE_DIR": "/tmp/encounters",
            "TABLETOP_DEFAULT_GRID_SIZE": "40",
            "TABLETOP_LOG_LEVEL": "info",
            "TABLETOP_HISTORY_LIMIT": "5",
        })
        assert settings.storage_dir == Path("/tmp/encounters")
        assert settings.default_grid_size == 40
        assert settings.log_level == "INFO"
        assert settings.history_limit == 5

    def test_empty_values_use_defaults(self) -> None:
        settings = EngineSettings.from_env({"TABLETOP_DEFAULT_GRID_SIZE": "", "TABLETOP_LOG_LEVEL": ""})
        assert settings.default_grid_size == 100
        assert settings.log_level == "DEBUG"

    def test_unprefixed_ignored(self) -> None:
        assert EngineSettings.from_env({"LOG_LEVEL": "ERROR"}).log_level == "DEBUG"

    def test_invalid_log_level(self) -> None:
        with pytest.raises(ValueError):
            EngineSettings.from_env({"TABLETOP_LOG_LEVEL": "loud"})

    def test_grid_size_bounds(self) -> None:
        with pytest.raises(ValueError):
            EngineSettings.from_env({"TABLETOP_DEFAULT_GRID_SIZE": "0"})
