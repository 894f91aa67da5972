#!/usr/bin/env python3
"""
Local LLM MCP Server

An MCP server that offloads code analysis and generation tasks to a model
running locally in LM Studio.

- File access is confined to LLM_MCP_ALLOWED_DIRS
- Prompts that exceed the model's context window are chunked into a
  multi-message conversation
- Results are cached in memory by (task, parameters, files)
- Project-wide runs analyze each file separately and tolerate per-file failures

Tools provided:
- custom_prompt: Run any prompt with optional file or project context
- health_check: Check LM Studio connectivity and loaded models
- get_cache_statistics: Analysis cache statistics
- clear_analysis_cache: Clear one or all cached analyses
"""

import asyncio
import logging
import signal
import sys
from typing import Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import (
    Tool,
    TextContent,
)

from .analysis_cache import AnalysisCache
from .config import get_config, LLMConfig, ServerConfig
from .exceptions import ConfigurationError
from .executor import TaskExecutor
from .handlers import (
    HEALTH_CHECK_PARAMS,
    CLEAR_CACHE_PARAMS,
    envelope_content,
    handle_custom_prompt,
    handle_health_check,
    handle_cache_statistics,
    handle_clear_cache,
)
from .llm_client import LMStudioBackend
from .path_security import PathSecurityGuard
from .plugins import CustomPromptPlugin
from .profiling import LatencyTracker, configure_logging
from .response_assembler import ResponseAssembler
from .validation import build_input_schema

logger = logging.getLogger(__name__)


# Global instances (lazy initialization)
_llm_config: LLMConfig | None = None
_server_config: ServerConfig | None = None
_backend: LMStudioBackend | None = None
_executor: TaskExecutor | None = None

# Shutdown flag for graceful termination
_shutdown_event: asyncio.Event | None = None


def build_executor(config: LLMConfig, backend: LMStudioBackend | None = None) -> TaskExecutor:
    """
    Wire the core services from configuration.

    Raises:
        ConfigurationError: if the configuration is invalid
    """
    errors = config.validate()
    if errors:
        raise ConfigurationError("Invalid configuration: " + "; ".join(errors), {"errors": errors})

    guard = PathSecurityGuard.from_config(config)
    cache = AnalysisCache(ttl_seconds=config.cache_ttl_seconds, max_entries=config.cache_max_entries)
    return TaskExecutor(backend or LMStudioBackend(config), guard, cache, config)


def get_instances() -> tuple[LLMConfig, ServerConfig, TaskExecutor]:
    """Get or create singleton instances."""
    global _llm_config, _server_config, _backend, _executor

    if _executor is None:
        llm_config, server_config = get_config()
        # Raises before any backend exists when the configuration is invalid
        executor = build_executor(llm_config)
        _llm_config, _server_config = llm_config, server_config
        _backend = executor.backend
        _executor = executor
        logger.info(
            f"[SERVER] LM Studio at {llm_config.base_url}, "
            f"allowed roots: {list(executor.guard.roots)}"
        )

    return _llm_config, _server_config, _executor


async def cleanup_resources() -> None:
    """Cleanup resources on shutdown."""
    global _backend

    if _backend is not None:
        try:
            await _backend.close()
        except Exception as e:
            logger.warning(f"Error closing LM Studio client: {e}")
        _backend = None


def create_server(executor: TaskExecutor | None = None) -> Server:
    """Create and configure the MCP server."""
    _, server_config = get_config()
    server = Server(server_config.name)
    custom_prompt = CustomPromptPlugin()

    def current_executor() -> TaskExecutor:
        return executor if executor is not None else get_instances()[2]

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        """List available tools."""
        return [
            custom_prompt.get_tool_definition(),
            Tool(
                name="health_check",
                description="Check if LM Studio is running and responding, and list loaded models.",
                inputSchema=build_input_schema(HEALTH_CHECK_PARAMS),
            ),
            Tool(
                name="get_cache_statistics",
                description="Get statistics for the in-memory analysis cache.",
                inputSchema=build_input_schema(()),
            ),
            Tool(
                name="clear_analysis_cache",
                description="Clear the analysis cache, or a single entry when 'key' is given.",
                inputSchema=build_input_schema(CLEAR_CACHE_PARAMS),
            ),
        ]

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
        """Handle tool calls."""
        arguments = arguments or {}
        with LatencyTracker(f"tool:{name}"):
            try:
                active = current_executor()
            except ConfigurationError as e:
                logger.error(f"[SERVER] {e.message}")
                return envelope_content(ResponseAssembler().create_error_response(
                    name, e.code, e.message, e.details
                ))

            if name == custom_prompt.name:
                return await handle_custom_prompt(arguments, active, custom_prompt)
            elif name == "health_check":
                return await handle_health_check(arguments, active)
            elif name == "get_cache_statistics":
                return await handle_cache_statistics(arguments, active)
            elif name == "clear_analysis_cache":
                return await handle_clear_cache(arguments, active)

            return envelope_content(active.assembler.create_error_response(
                name, "VALIDATION_ERROR", f"Unknown tool: {name}"
            ))

    return server


async def run_server():
    """Run the MCP server with graceful shutdown."""
    global _shutdown_event
    _shutdown_event = asyncio.Event()

    server = create_server()

    # Setup signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def handle_shutdown(sig):
        logger.info(f"Received {sig.name}, shutting down gracefully...")
        _shutdown_event.set()

    # Register signal handlers (Unix only)
    if sys.platform != "win32":
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: handle_shutdown(s))

    try:
        async with stdio_server() as (read_stream, write_stream):
            server_task = asyncio.create_task(
                server.run(
                    read_stream,
                    write_stream,
                    server.create_initialization_options(),
                )
            )

            # Wait for either server completion or shutdown signal
            done, pending = await asyncio.wait(
                [server_task, asyncio.create_task(_shutdown_event.wait())],
                return_when=asyncio.FIRST_COMPLETED,
            )

            for task in pending:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    finally:
        await cleanup_resources()


def main():
    """Main entry point."""
    _, server_config = get_config()
    configure_logging(server_config.log_level)
    try:
        asyncio.run(run_server())
    except KeyboardInterrupt:
        pass
    except Exception as e:
        logger.error(f"Server error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
