"""
System Handlers for the Local LLM MCP Server.

Tools that don't call the model:
- health_check: Is LM Studio reachable, which models are loaded
- get_cache_statistics: Analysis cache statistics
- clear_analysis_cache: Remove one cache entry or all of them
"""

from typing import Any

from mcp.types import TextContent

from ..exceptions import ParameterValidationError
from ..executor import TaskExecutor
from ..validation import BooleanParam, SchemaStage, StringParam, ValidatorChain
from .tasks import envelope_content


HEALTH_CHECK_PARAMS = (
    BooleanParam(
        "detailed",
        "Include detailed information about the loaded models",
        default=False,
    ),
)

CLEAR_CACHE_PARAMS = (
    StringParam("key", "Cache key to remove; omit to clear the whole cache"),
)


async def handle_health_check(arguments: dict[str, Any], executor: TaskExecutor) -> list[TextContent]:
    """Handle health_check tool call."""
    try:
        params = ValidatorChain(HEALTH_CHECK_PARAMS, [SchemaStage()]).run(arguments)
    except ParameterValidationError as e:
        return envelope_content(executor.assembler.from_exception("health_check", e))
    envelope = await executor.health_check(detailed=params.get("detailed", False))
    return envelope_content(envelope)


async def handle_cache_statistics(arguments: dict[str, Any], executor: TaskExecutor) -> list[TextContent]:
    """Handle get_cache_statistics tool call."""
    return envelope_content(executor.get_cache_statistics())


async def handle_clear_cache(arguments: dict[str, Any], executor: TaskExecutor) -> list[TextContent]:
    """Handle clear_analysis_cache tool call."""
    try:
        params = ValidatorChain(CLEAR_CACHE_PARAMS, [SchemaStage()]).run(arguments)
    except ParameterValidationError as e:
        return envelope_content(executor.assembler.from_exception("clear_analysis_cache", e))
    return envelope_content(executor.clear_cache(params.get("key")))
