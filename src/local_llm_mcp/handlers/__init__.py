"""
Request Handlers for the Local LLM MCP Server.

This package contains the tool handlers used by server.py:
- tasks: Model-backed task handlers (custom_prompt)
- system: Health check and analysis cache handlers
"""

from .tasks import (
    envelope_content,
    handle_task,
    handle_custom_prompt,
)
from .system import (
    HEALTH_CHECK_PARAMS,
    CLEAR_CACHE_PARAMS,
    handle_health_check,
    handle_cache_statistics,
    handle_clear_cache,
)

__all__ = [
    # Task handlers
    "envelope_content",
    "handle_task",
    "handle_custom_prompt",
    # System handlers
    "HEALTH_CHECK_PARAMS",
    "CLEAR_CACHE_PARAMS",
    "handle_health_check",
    "handle_cache_statistics",
    "handle_clear_cache",
]
