"""
Tests for environment-driven configuration.
"""

import os

import pytest

from local_llm_mcp.config import LLMConfig, ServerConfig, get_config


class TestLLMConfig:
    """Tests for LLMConfig defaults and environment parsing."""

    def test_defaults(self, monkeypatch):
        for name in ("LM_STUDIO_URL", "LM_STUDIO_MODEL", "LLM_MCP_TIMEOUT", "LLM_MCP_ALLOWED_DIRS"):
            monkeypatch.delenv(name, raising=False)

        config = LLMConfig()

        assert config.base_url == "http://localhost:1234/v1"
        assert config.model == "auto"
        assert config.request_timeout_seconds == 120
        assert config.allowed_directories == [os.getcwd()]
        assert config.fallback_context_length == 23832
        assert config.validate() == []

    def test_environment_overrides(self, monkeypatch, tmp_path):
        other = tmp_path / "other"
        other.mkdir()
        monkeypatch.setenv("LM_STUDIO_URL", "http://gpu-box:1234/v1")
        monkeypatch.setenv("LM_STUDIO_MODEL", "qwen2.5-coder-7b")
        monkeypatch.setenv("LLM_MCP_TIMEOUT", "30")
        monkeypatch.setenv("LLM_MCP_ALLOWED_DIRS", f"{tmp_path}, {other} ,")
        monkeypatch.setenv("LLM_MCP_CASE_INSENSITIVE_PATHS", "yes")
        monkeypatch.setenv("LLM_MCP_CACHE_TTL", "60")
        monkeypatch.setenv("LLM_MCP_BATCH_CONCURRENCY", "2")

        config = LLMConfig()

        assert config.base_url == "http://gpu-box:1234/v1"
        assert config.model == "qwen2.5-coder-7b"
        assert config.request_timeout_seconds == 30.0
        assert config.allowed_directories == [str(tmp_path), str(other)]
        assert config.case_insensitive_paths is True
        assert config.cache_ttl_seconds == 60
        assert config.batch_concurrency == 2

    def test_content_security_settings(self, monkeypatch):
        monkeypatch.setenv("LLM_MCP_INJECTION_DETECTION", "false")
        monkeypatch.setenv("LLM_MCP_INJECTION_THRESHOLD", "0.8")
        monkeypatch.setenv("LLM_MCP_OUTPUT_ENCODING", "no")

        config = LLMConfig()

        assert config.injection_detection is False
        assert config.injection_threshold == 0.8
        assert config.output_encoding is False

    @pytest.mark.parametrize("overrides, fragment", [
        ({"base_url": "localhost:1234"}, "http(s) URL"),
        ({"request_timeout_seconds": 0}, "timeout"),
        ({"allowed_directories": []}, "allowed directory"),
        ({"allowed_directories": ["relative"]}, "absolute"),
        ({"cache_max_entries": 0}, "cache_max_entries"),
        ({"batch_concurrency": 0}, "batch_concurrency"),
        ({"max_files": 0}, "max_files"),
        ({"injection_threshold": 0}, "injection_threshold"),
        ({"injection_threshold": 1.5}, "injection_threshold"),
    ])
    def test_validate_errors(self, overrides: dict, fragment: str):
        config = LLMConfig(**{"allowed_directories": ["/"], **overrides})

        errors = config.validate()

        assert len(errors) == 1
        assert fragment in errors[0]


class TestServerConfig:
    def test_log_level_from_environment(self, monkeypatch):
        monkeypatch.setenv("LLM_MCP_LOG_LEVEL", "DEBUG")

        llm_config, server_config = get_config()

        assert isinstance(llm_config, LLMConfig)
        assert server_config.log_level == "DEBUG"
        assert ServerConfig().name == "local-llm-mcp"
