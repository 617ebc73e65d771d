"""Tests for Settings loading and validation."""

import pytest
from pydantic import ValidationError

from ideaflow.config import Settings
from tests.conftest import make_settings


class TestSettings:
    def test_defaults(self, monkeypatch):
        for name in ("IDEAFLOW_DB_URL", "IDEAFLOW_MAX_TOOL_ROUNDS", "IDEAFLOW_MAX_ERROR_FIX_ROUNDS"):
            monkeypatch.delenv(name, raising=False)
        s = Settings(_env_file=None)
        assert s.max_tool_rounds == 1000
        assert s.max_error_fix_rounds == 3
        assert s.max_transient_retries == 2
        assert s.tool_server_name == "fw"
        assert not s.is_sqlite

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("IDEAFLOW_MAX_ERROR_FIX_ROUNDS", "1")
        assert Settings(_env_file=None).max_error_fix_rounds == 1

    def test_unprefixed_api_keys(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
        monkeypatch.setenv("FIRECRAWL_API_KEY", "fc-test")
        s = Settings(_env_file=None)
        assert s.anthropic_api_key == "sk-test"
        assert s.firecrawl_api_key == "fc-test"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"max_tool_rounds": 0},
            {"max_transient_retries": -1},
            {"max_error_fix_rounds": -1},
            {"error_check_delay": -0.5},
        ],
    )
    def test_invalid_limits(self, overrides):
        with pytest.raises(ValidationError):
            make_settings(**overrides)

    def test_sqlite_detection(self):
        assert make_settings().is_sqlite
