"""
Task plugins.

A plugin declares its parameters and turns (parameters, file contents) into
PromptStages. Everything else (validation, caching, chunking, the model
call, envelopes) is handled by TaskExecutor, so a plugin stays a pure prompt
builder.
"""

from abc import ABC, abstractmethod
from typing import Any, Sequence

from mcp.types import Tool

from .chunking import PromptStages
from .config import LLMConfig
from .content_security import PromptInjectionGuard
from .file_collector import SourceFile, build_data_payload
from .path_security import PathSecurityGuard
from .validation import (
    ArrayParam,
    IntegerParam,
    ObjectParam,
    ParamSpec,
    PathParam,
    StringParam,
    ValidatorChain,
    build_input_schema,
)


class TaskPlugin(ABC):
    """Base class for tasks executed on the local model."""

    name: str = ""
    category: str = "custom"
    description: str = ""
    parameters: Sequence[ParamSpec] = ()
    # OutputEncoder context applied to this task's model output
    output_context: str = "json"

    @abstractmethod
    def get_prompt_stages(self, params: dict[str, Any], files: Sequence[SourceFile]) -> PromptStages:
        """Build the three prompt stages from validated parameters and file contents."""

    def get_file_prompt_stages(self, params: dict[str, Any], file: SourceFile) -> PromptStages:
        """Prompt for analyzing a single file of a project-wide run."""
        return self.get_prompt_stages(params, [file])

    def build_validator_chain(self, guard: PathSecurityGuard, config: LLMConfig) -> ValidatorChain:
        injection_guard = PromptInjectionGuard(config.injection_threshold) if config.injection_detection else None
        return ValidatorChain.standard(self.parameters, guard, config.input_size_limits, injection_guard)

    def get_tool_definition(self) -> Tool:
        return Tool(
            name=self.name,
            description=self.description,
            inputSchema=build_input_schema(self.parameters),
        )


class CustomPromptPlugin(TaskPlugin):
    """Runs an arbitrary prompt, optionally with file or project context."""

    name = "custom_prompt"
    category = "custom"
    output_context = "code"
    description = (
        "Execute any custom prompt on the local LLM with optional file context. "
        "Pass 'files' for specific files or 'project_path' to analyze each file "
        "of a project. Large inputs are chunked to fit the model's context window "
        "and results are cached."
    )
    parameters = (
        StringParam(
            "prompt",
            "The custom prompt/task to send to the local LLM",
            required=True,
            size_context="prompt",
        ),
        ArrayParam(
            "files",
            "Absolute paths of files to include as context",
            items=PathParam("file", kind="file"),
            max_items=100,
        ),
        PathParam(
            "project_path",
            "Absolute path of a project directory; each discovered file is analyzed separately",
            kind="directory",
        ),
        ArrayParam(
            "extensions",
            "File extensions to include when discovering project files (e.g. ['.py', '.ts'])",
            items=StringParam("extension"),
        ),
        IntegerParam("max_depth", "Maximum directory depth for project discovery", minimum=0, maximum=10),
        IntegerParam("max_files", "Maximum number of project files to analyze", minimum=1, maximum=500),
        StringParam("working_directory", "Working directory context for the task"),
        ObjectParam(
            "context",
            "Optional structured context for the task",
            properties=(
                StringParam("task_type"),
                ArrayParam("requirements", items=StringParam("requirement")),
                ArrayParam("constraints", items=StringParam("constraint")),
                StringParam("output_format"),
            ),
        ),
        IntegerParam(
            "max_tokens",
            "Maximum tokens for the LLM response (default: computed from the context window)",
            minimum=1,
        ),
    )

    def _system_and_context(self, params: dict[str, Any]) -> str:
        text = "You are a helpful AI assistant executing a custom task."

        working_directory = params.get("working_directory")
        if working_directory:
            text += f"\n\nWorking Directory: {working_directory}"

        context = params.get("context") or {}
        if context:
            text += "\n\nContext:"
            if context.get("task_type"):
                text += f"\n- Task Type: {context['task_type']}"
            if context.get("requirements"):
                text += f"\n- Requirements: {', '.join(context['requirements'])}"
            if context.get("constraints"):
                text += f"\n- Constraints: {', '.join(context['constraints'])}"
            if context.get("output_format"):
                text += f"\n- Output Format: {context['output_format']}"
        return text

    def _output_instructions(self, params: dict[str, Any]) -> str:
        return (
            f"Task to execute:\n{params['prompt']}\n\n"
            "Provide clear, actionable results that directly address the task requirements."
        )

    def get_prompt_stages(self, params: dict[str, Any], files: Sequence[SourceFile]) -> PromptStages:
        if files:
            payload = "Files for context:\n" + build_data_payload(files)
        else:
            payload = "No files provided for context."
        return PromptStages(
            system_and_context=self._system_and_context(params),
            data_payload=payload,
            output_instructions=self._output_instructions(params),
        )

    def get_file_prompt_stages(self, params: dict[str, Any], file: SourceFile) -> PromptStages:
        stages = self.get_prompt_stages(params, [file])
        return PromptStages(
            system_and_context=stages.system_and_context,
            data_payload=stages.data_payload,
            output_instructions=(
                f"{stages.output_instructions}\n\n"
                f"Answer for this file only: {file.relative_path}"
            ),
        )
