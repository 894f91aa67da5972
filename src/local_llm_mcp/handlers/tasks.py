"""
Task Handlers for the Local LLM MCP Server.

- handle_custom_prompt: Run a custom prompt (optionally over files or a whole project)
"""

from typing import Any

from mcp.types import TextContent

from ..executor import TaskExecutor
from ..plugins import CustomPromptPlugin, TaskPlugin
from ..response_assembler import ResultEnvelope


def envelope_content(envelope: ResultEnvelope) -> list[TextContent]:
    """Wrap an envelope as MCP tool output."""
    return [TextContent(type="text", text=envelope.to_json())]


async def handle_task(
    plugin: TaskPlugin,
    arguments: dict[str, Any],
    executor: TaskExecutor,
) -> list[TextContent]:
    """Run any task plugin and return its envelope."""
    envelope = await executor.execute(plugin, arguments)
    return envelope_content(envelope)


async def handle_custom_prompt(
    arguments: dict[str, Any],
    executor: TaskExecutor,
    plugin: CustomPromptPlugin | None = None,
) -> list[TextContent]:
    """Handle custom_prompt tool call."""
    return await handle_task(plugin or CustomPromptPlugin(), arguments, executor)
