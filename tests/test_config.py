"""Tests for config.py -- list-valued settings parsing."""

import os

from intentgraph.config import Settings


class TestListSettings:
    def test_comma_separated_roots(self, monkeypatch) -> None:
        monkeypatch.setenv("SANDBOX_ROOTS", "/srv/a, /srv/b")
        assert Settings(_env_file=None).sandbox_roots == ["/srv/a", "/srv/b"]

    def test_json_array_origins(self, monkeypatch) -> None:
        monkeypatch.setenv("CORS_ORIGINS", '["http://a", "http://b"]')
        assert Settings(_env_file=None).cors_origins == ["http://a", "http://b"]

    def test_roots_default_to_cwd(self, monkeypatch) -> None:
        monkeypatch.delenv("SANDBOX_ROOTS", raising=False)
        assert Settings(_env_file=None).sandbox_roots == [os.getcwd()]

    def test_numeric_bounds_from_env(self, monkeypatch) -> None:
        monkeypatch.setenv("MAX_TOOL_ITERATIONS", "3")
        monkeypatch.setenv("MAX_SUB_AGENTS", "1")
        settings = Settings(_env_file=None)
        assert settings.max_tool_iterations == 3
        assert settings.max_sub_agents == 1
