"""
Configuration for the Local LLM MCP Server

Environment Variables:
- LM_STUDIO_URL: OpenAI-compatible endpoint of LM Studio (default: http://localhost:1234/v1)
- LM_STUDIO_API_KEY: API key sent to LM Studio (default: lm-studio, ignored by LM Studio)
- LM_STUDIO_MODEL: Model id to use, or "auto" for the first loaded model
- LLM_MCP_TIMEOUT: Per-call model timeout in seconds (default: 120)
- LLM_MCP_ALLOWED_DIRS: Comma-separated absolute directories file access is confined to
  (default: current working directory)
- LLM_MCP_CASE_INSENSITIVE_PATHS: "true"/"false" (default: true on Windows only)
- LLM_MCP_CACHE_TTL: Analysis cache TTL in seconds (default: 3600)
- LLM_MCP_CACHE_MAX_ENTRIES: Analysis cache capacity (default: 50)
- LLM_MCP_BATCH_CONCURRENCY: Concurrent per-file analyses (default: 4)
- LLM_MCP_MAX_FILES / LLM_MCP_MAX_DEPTH: Project discovery bounds (default: 500 / 3)
- LLM_MCP_INJECTION_DETECTION: Screen free-text parameters for prompt injection (default: true)
- LLM_MCP_INJECTION_THRESHOLD: Confidence at which critical injections are blocked (default: 0.5)
- LLM_MCP_OUTPUT_ENCODING: Encode model output for its display context (default: true)
- LLM_MCP_LOG_LEVEL: Logging level for the server (default: INFO)
"""

import os
from dataclasses import dataclass, field
from typing import Set
from dotenv import load_dotenv

load_dotenv()


DEFAULT_BASE_URL = "http://localhost:1234/v1"

# Used when the backend cannot report a context length for the loaded model
FALLBACK_CONTEXT_LENGTH = 23_832


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_dirs(name: str) -> list[str]:
    raw = os.getenv(name, "")
    dirs = [d.strip() for d in raw.split(",") if d.strip()]
    return dirs or [os.getcwd()]


@dataclass
class LLMConfig:
    """Configuration for local model orchestration."""

    # Backend (LM Studio)
    base_url: str = field(default_factory=lambda: os.getenv("LM_STUDIO_URL", DEFAULT_BASE_URL))
    api_key: str = field(default_factory=lambda: os.getenv("LM_STUDIO_API_KEY", "lm-studio"))
    model: str = field(default_factory=lambda: os.getenv("LM_STUDIO_MODEL", "auto"))

    # Sampling
    temperature: float = 0.1
    top_p: float = 0.95

    request_timeout_seconds: float = field(
        default_factory=lambda: float(os.getenv("LLM_MCP_TIMEOUT", "120"))
    )
    fallback_context_length: int = FALLBACK_CONTEXT_LENGTH

    # Minimum response budgets for single-shot and chunked calls
    min_direct_response_tokens: int = 1000
    min_chunked_response_tokens: int = 1500

    # Security
    allowed_directories: list[str] = field(
        default_factory=lambda: _env_dirs("LLM_MCP_ALLOWED_DIRS")
    )
    case_insensitive_paths: bool = field(
        default_factory=lambda: _env_bool("LLM_MCP_CASE_INSENSITIVE_PATHS", os.name == "nt")
    )

    # Content security
    injection_detection: bool = field(
        default_factory=lambda: _env_bool("LLM_MCP_INJECTION_DETECTION", True)
    )
    injection_threshold: float = field(
        default_factory=lambda: float(os.getenv("LLM_MCP_INJECTION_THRESHOLD", "0.5"))
    )
    output_encoding: bool = field(
        default_factory=lambda: _env_bool("LLM_MCP_OUTPUT_ENCODING", True)
    )

    # Analysis cache
    cache_ttl_seconds: int = field(
        default_factory=lambda: int(os.getenv("LLM_MCP_CACHE_TTL", "3600"))
    )
    cache_max_entries: int = field(
        default_factory=lambda: int(os.getenv("LLM_MCP_CACHE_MAX_ENTRIES", "50"))
    )

    # Batch analysis and discovery
    batch_concurrency: int = field(
        default_factory=lambda: int(os.getenv("LLM_MCP_BATCH_CONCURRENCY", "4"))
    )
    max_files: int = field(default_factory=lambda: int(os.getenv("LLM_MCP_MAX_FILES", "500")))
    max_depth: int = field(default_factory=lambda: int(os.getenv("LLM_MCP_MAX_DEPTH", "3")))

    # File Collection Configuration
    supported_extensions: Set[str] = field(default_factory=lambda: {
        # Code files
        ".py", ".js", ".ts", ".jsx", ".tsx", ".mjs", ".cjs", ".go", ".rs", ".java",
        ".c", ".cpp", ".cc", ".h", ".hpp", ".rb", ".php", ".swift", ".kt",
        ".scala", ".cs", ".vue", ".svelte", ".dart", ".lua", ".r",
        # Web
        ".html", ".htm", ".css", ".scss", ".sass", ".less",
        # Config files
        ".json", ".yaml", ".yml", ".toml", ".ini", ".cfg", ".xml", ".env",
        # Documentation
        ".md", ".txt", ".rst", ".csv", ".log",
        # Other
        ".sql", ".graphql", ".proto", ".sh", ".bash", ".zsh", ".ps1", ".bat",
    })

    skipped_directories: Set[str] = field(default_factory=lambda: {
        ".git", ".svn", ".hg", "node_modules", "__pycache__", "venv", ".venv", "env",
        "dist", "build", ".next", "target", "vendor", ".cache", "out",
        ".idea", ".vscode", "coverage", ".nyc_output", "eggs",
        "*.egg-info", ".tox", ".pytest_cache", ".mypy_cache",
        ".ruff_cache", "htmlcov",
    })

    max_file_size_bytes: int = 200 * 1024 * 1024  # 200MB per file

    # Maximum characters accepted per parameter, by context
    input_size_limits: dict[str, int] = field(default_factory=lambda: {
        "file-path": 1_000,
        "code": 100_000,
        "general": 50_000,
        "prompt": 20_000,
    })

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors."""
        errors = []

        if not self.base_url.startswith(("http://", "https://")):
            errors.append(f"LM_STUDIO_URL must be an http(s) URL, got {self.base_url!r}")

        if self.request_timeout_seconds <= 0:
            errors.append("request timeout must be positive")

        if not self.allowed_directories:
            errors.append("at least one allowed directory is required")
        for directory in self.allowed_directories:
            if not os.path.isabs(directory):
                errors.append(f"allowed directory must be absolute: {directory}")

        if self.cache_ttl_seconds <= 0:
            errors.append("cache TTL must be positive")

        if self.cache_max_entries < 1:
            errors.append("cache_max_entries must be at least 1")

        if self.batch_concurrency < 1:
            errors.append("batch_concurrency must be at least 1")

        if self.max_files < 1 or self.max_depth < 0:
            errors.append("max_files must be >= 1 and max_depth >= 0")

        if not 0 < self.injection_threshold <= 1:
            errors.append("injection_threshold must be in (0, 1]")

        return errors


@dataclass
class ServerConfig:
    """Configuration for the MCP server."""

    name: str = "local-llm-mcp"
    version: str = "1.0.0"
    description: str = (
        "MCP server that offloads code analysis and generation tasks "
        "to a model running locally in LM Studio"
    )

    log_level: str = field(default_factory=lambda: os.getenv("LLM_MCP_LOG_LEVEL", "INFO"))


def get_config() -> tuple[LLMConfig, ServerConfig]:
    """Get configuration instances."""
    return LLMConfig(), ServerConfig()
