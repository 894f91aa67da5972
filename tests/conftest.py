"""
Pytest configuration and fixtures for Local LLM MCP tests.
"""

import asyncio
import os
import tempfile
from pathlib import Path
from typing import Callable, Generator

import pytest

from local_llm_mcp.analysis_cache import AnalysisCache
from local_llm_mcp.config import LLMConfig
from local_llm_mcp.exceptions import ModelCallError
from local_llm_mcp.llm_client import ModelHandle, ResponseOptions
from local_llm_mcp.path_security import PathSecurityGuard


class ManualClock:
    """Clock for TTL tests; advance() moves time forward."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBackend:
    """
    Scripted ModelBackend.

    responses is either a list of strings returned in order (the last one
    repeats) or a callable receiving the messages.
    """

    def __init__(
        self,
        responses: list[str] | Callable[[list[dict]], str] | None = None,
        models: list[ModelHandle] | None = None,
        fail_with: Exception | None = None,
        delay: float = 0.0,
    ):
        self.responses = responses if responses is not None else ['{"ok": true}']
        self.models = models if models is not None else [
            ModelHandle(identifier="test-model", path="test/model", context_length=8000)
        ]
        self.fail_with = fail_with
        self.delay = delay
        self.calls: list[dict] = []
        self.list_calls = 0

    async def list_loaded_models(self) -> list[ModelHandle]:
        self.list_calls += 1
        return list(self.models)

    async def get_context_length(self, model: ModelHandle) -> int | None:
        return model.context_length

    def _next_response(self, messages: list[dict]) -> str:
        if callable(self.responses):
            return self.responses(messages)
        index = min(len(self.calls) - 1, len(self.responses) - 1)
        return self.responses[index]

    async def respond(self, model: ModelHandle, messages: list[dict], options: ResponseOptions):
        self.calls.append({"model": model, "messages": messages, "options": options})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        text = self._next_response(messages)
        third = max(1, len(text) // 3)
        for i in range(0, len(text), third):
            yield text[i:i + third]


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files (symlinks resolved)."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(os.path.realpath(tmpdir))


@pytest.fixture
def llm_config(temp_dir: Path) -> LLMConfig:
    """Create a test configuration confined to temp_dir."""
    return LLMConfig(
        base_url="http://localhost:1234/v1",
        api_key="test-key",
        model="auto",
        allowed_directories=[str(temp_dir)],
        case_insensitive_paths=False,
        request_timeout_seconds=5,
    )


@pytest.fixture
def guard(llm_config: LLMConfig) -> PathSecurityGuard:
    return PathSecurityGuard.from_config(llm_config)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def analysis_cache(clock: ManualClock) -> AnalysisCache:
    return AnalysisCache(ttl_seconds=3600, max_entries=50, clock=clock)


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def sample_project(temp_dir: Path) -> Path:
    """A small project tree with files that should and shouldn't be discovered."""
    project = temp_dir / "project"
    (project / "src" / "pkg").mkdir(parents=True)
    (project / "node_modules" / "dep").mkdir(parents=True)
    (project / ".git").mkdir()

    (project / "README.md").write_text("# Sample\n\nA sample project.\n")
    (project / "main.py").write_text("def main():\n    return 42\n")
    (project / "src" / "app.ts").write_text("export const app = () => 'app';\n")
    (project / "src" / "pkg" / "util.py").write_text("def helper(x):\n    return x * 2\n")
    (project / "src" / "image.png").write_bytes(b"\x89PNG\r\n")
    (project / "node_modules" / "dep" / "index.js").write_text("module.exports = 1;\n")
    (project / ".git" / "config.txt").write_text("[core]\n")

    return project
