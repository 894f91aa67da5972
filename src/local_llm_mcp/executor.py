"""
Task execution for the Local LLM MCP Server.

TaskExecutor wires the core together for one request:

    parameters
      -> validator chain (schema, input size, injection, path security)
      -> analysis cache lookup
      -> read files / discover project files
      -> prompt stages (plugin)
      -> direct call, or chunked conversation when the prompt doesn't fit
      -> streamed response -> envelope (output encoded)
      -> analysis cache store

Every public operation returns a ResultEnvelope; errors never escape as
exceptions.
"""

import asyncio
import logging
from typing import Any

from .analysis_cache import AnalysisCache
from .batch_analyzer import BatchAnalyzer
from .chunking import ContextWindowChunker, PromptStages
from .config import LLMConfig
from .content_security import OutputEncoder, PromptInjectionGuard
from .exceptions import (
    CANCELLED,
    LocalLLMError,
    ModelUnavailableError,
    ParameterValidationError,
    ResponseParsingError,
)
from .file_collector import FileCollector, MultiFileDiscovery, SourceFile
from .llm_client import ModelBackend, ModelHandle, ResponseOptions
from .path_security import PathSecurityGuard, ValidatedPath
from .plugins import TaskPlugin
from .profiling import LatencyTracker
from .response_assembler import ResponseAssembler, ResultEnvelope
from .streaming import collect_stream
from .validation import SECURITY_WARNINGS_KEY

logger = logging.getLogger(__name__)

# Parameters that name inputs; they reach cache keys only through the sorted files argument
_PATH_PARAMS = ("files", "project_path")


def cache_key_params(params: dict[str, Any]) -> dict[str, Any]:
    """Parameters as they enter a cache key, independent of input ordering."""
    result = {k: v for k, v in params.items() if k not in _PATH_PARAMS}
    if result.get("extensions"):
        result["extensions"] = sorted(set(result["extensions"]))
    return result


class TaskExecutor:
    """Runs task plugins against the model backend."""

    def __init__(
        self,
        backend: ModelBackend,
        guard: PathSecurityGuard,
        cache: AnalysisCache,
        config: LLMConfig | None = None,
        chunker: ContextWindowChunker | None = None,
        assembler: ResponseAssembler | None = None,
        discovery: MultiFileDiscovery | None = None,
        collector: FileCollector | None = None,
        batch_analyzer: BatchAnalyzer | None = None,
    ):
        self.config = config or LLMConfig()
        self.backend = backend
        self.guard = guard
        self.cache = cache
        self.chunker = chunker or ContextWindowChunker()
        self.assembler = assembler or ResponseAssembler()
        self.discovery = discovery or MultiFileDiscovery(guard, self.config)
        self.collector = collector or FileCollector(self.config)
        self.batch_analyzer = batch_analyzer or BatchAnalyzer(
            cache, max_concurrency=self.config.batch_concurrency
        )
        self.injection_guard = PromptInjectionGuard(self.config.injection_threshold)
        self.encoder = OutputEncoder()

    # -------------------------------------------------------------------------
    # Model access
    # -------------------------------------------------------------------------

    async def get_ready_model(self) -> tuple[ModelHandle, int]:
        """
        Pick the model to use and its context length.

        Raises:
            ModelUnavailableError: if no (matching) model is loaded
        """
        models = await self.backend.list_loaded_models()
        if not models:
            raise ModelUnavailableError("No model loaded in LM Studio. Please load a model first.")

        model = models[0]
        if self.config.model and self.config.model != "auto":
            matches = [m for m in models if m.identifier == self.config.model]
            if not matches:
                raise ModelUnavailableError(
                    f"Configured model {self.config.model!r} is not loaded",
                    {"loaded": [m.identifier for m in models]},
                )
            model = matches[0]

        context_length = await self.backend.get_context_length(model)
        if not context_length:
            logger.debug(
                f"[MODEL] No context length for {model.identifier}, "
                f"using {self.config.fallback_context_length}"
            )
            context_length = self.config.fallback_context_length
        return model, context_length

    async def run_stages(
        self,
        task_name: str,
        stages: PromptStages,
        model: ModelHandle,
        context_length: int,
        max_tokens: int | None = None,
    ) -> str:
        """Send the prompt, chunked if needed, and return the model's full text."""
        if self.chunker.needs_chunking(stages, context_length):
            conversation = self.chunker.plan_conversation(stages, context_length)
            messages = conversation.to_messages()
            min_tokens = self.config.min_chunked_response_tokens
            logger.info(
                f"[CHUNK] {task_name}: payload split into "
                f"{len(conversation.data_messages)} chunks for a {context_length}-token window"
            )
        else:
            messages = stages.to_messages()
            min_tokens = self.config.min_direct_response_tokens

        budget = self.chunker.calculate_max_tokens(messages, context_length, min_tokens)
        if max_tokens is not None:
            budget = min(budget, max_tokens)

        options = ResponseOptions(
            max_tokens=budget,
            temperature=self.config.temperature,
            top_p=self.config.top_p,
        )
        result = await collect_stream(
            self.backend.respond(model, messages, options),
            timeout=self.config.request_timeout_seconds,
        )
        return result.text

    # -------------------------------------------------------------------------
    # Tasks
    # -------------------------------------------------------------------------

    def _screen_files(self, sources: list[SourceFile]) -> list[dict[str, Any]]:
        """Flag file content that looks like an injection attempt; file content is never blocked."""
        if not self.config.injection_detection:
            return []
        warnings = []
        for source in sources:
            analysis = self.injection_guard.analyze(source.content, "file-content")
            if analysis.detected:
                warnings.append({"file": source.path.path, **analysis.to_dict()})
        return warnings

    def _finish(self, plugin: TaskPlugin, envelope: ResultEnvelope) -> ResultEnvelope:
        if envelope.success and self.config.output_encoding:
            envelope.data = self.encoder.encode_data(envelope.data, plugin.output_context)
        return envelope

    def _cancelled(self, task_name: str, model_used: str, tracker: LatencyTracker) -> ResultEnvelope:
        return self.assembler.create_error_response(
            task_name, CANCELLED, "Request cancelled", None, model_used, tracker.elapsed_ms
        )

    def _from_cache(self, key: str, tracker: LatencyTracker) -> ResultEnvelope | None:
        entry = self.cache.get_entry(key)
        if entry is None:
            return None
        logger.info(f"[CACHE] Hit {key}")
        return ResultEnvelope(
            success=True,
            model_used=entry.model_used,
            execution_time_ms=tracker.elapsed_ms,
            data=entry.value,
        )

    async def execute(
        self,
        plugin: TaskPlugin,
        params: dict[str, Any] | None,
        cancel_event: asyncio.Event | None = None,
    ) -> ResultEnvelope:
        """Validate, consult the cache, run the task and cache the result."""
        model_used = "none"
        with LatencyTracker(plugin.name) as tracker:
            try:
                clean = plugin.build_validator_chain(self.guard, self.config).run(params)
                if clean.get("project_path") is not None:
                    return await self._run_project(plugin, clean, tracker, cancel_event)

                files: list[ValidatedPath] = clean.get("files") or []
                key = self.cache.generate_key(plugin.name, cache_key_params(clean), files)
                cached = self._from_cache(key, tracker)
                if cached is not None:
                    return cached

                model, context_length = await self.get_ready_model()
                model_used = model.identifier

                sources = await self.collector.read_files(files)
                if cancel_event is not None and cancel_event.is_set():
                    return self._cancelled(plugin.name, model_used, tracker)
                warnings = clean.get(SECURITY_WARNINGS_KEY, []) + self._screen_files(sources)

                stages = plugin.get_prompt_stages(clean, sources)
                raw = await self.run_stages(
                    plugin.name, stages, model, context_length, clean.get("max_tokens")
                )

                envelope = self._finish(plugin, self.assembler.parse_and_create_response(
                    plugin.name, raw, model_used, tracker.elapsed_ms
                ))
                envelope.security_warnings = warnings
                if envelope.success:
                    self.cache.cache_analysis(key, envelope.data, model_used, tracker.elapsed_ms)
                return envelope

            except LocalLLMError as e:
                logger.warning(f"[TASK] {plugin.name} failed: {e.code} {e.message}")
                return self.assembler.from_exception(plugin.name, e, model_used, tracker.elapsed_ms)
            except Exception as e:
                logger.exception(f"[TASK] {plugin.name} failed unexpectedly")
                return self.assembler.from_exception(plugin.name, e, model_used, tracker.elapsed_ms)

    async def execute_project(
        self,
        plugin: TaskPlugin,
        params: dict[str, Any] | None,
        cancel_event: asyncio.Event | None = None,
    ) -> ResultEnvelope:
        """Analyze every discovered file of project_path separately."""
        with LatencyTracker(f"{plugin.name}:project") as tracker:
            try:
                clean = plugin.build_validator_chain(self.guard, self.config).run(params)
                if clean.get("project_path") is None:
                    raise ParameterValidationError(
                        "Invalid parameter 'project_path': is required", {"parameter": "project_path"}
                    )
                return await self._run_project(plugin, clean, tracker, cancel_event)
            except LocalLLMError as e:
                logger.warning(f"[TASK] {plugin.name} failed: {e.code} {e.message}")
                return self.assembler.from_exception(plugin.name, e, "none", tracker.elapsed_ms)
            except Exception as e:
                logger.exception(f"[TASK] {plugin.name} failed unexpectedly")
                return self.assembler.from_exception(plugin.name, e, "none", tracker.elapsed_ms)

    async def _run_project(
        self,
        plugin: TaskPlugin,
        clean: dict[str, Any],
        tracker: LatencyTracker,
        cancel_event: asyncio.Event | None,
    ) -> ResultEnvelope:
        root: ValidatedPath = clean["project_path"]
        key_params = cache_key_params(clean)
        key = self.cache.generate_key(plugin.name, key_params, [root])
        cached = self._from_cache(key, tracker)
        if cached is not None:
            return cached

        model, context_length = await self.get_ready_model()
        discovered = await self.discovery.discover_files_async(
            root, clean.get("extensions"), clean.get("max_depth"), clean.get("max_files")
        )
        file_warnings: list[dict[str, Any]] = []

        async def analyze_one(path: ValidatedPath) -> Any:
            source = await self.collector.read_file(path)
            file_warnings.extend(self._screen_files([source]))
            stages = plugin.get_file_prompt_stages(clean, source)
            raw = await self.run_stages(
                plugin.name, stages, model, context_length, clean.get("max_tokens")
            )
            envelope = self._finish(
                plugin, self.assembler.parse_and_create_response(plugin.name, raw, model.identifier)
            )
            if not envelope.success:
                raise ResponseParsingError(envelope.error.message, envelope.error.details)
            return envelope.data

        batch = await self.batch_analyzer.analyze_batch(
            discovered.files,
            analyze_one,
            context_length,
            task_name=plugin.name,
            params=key_params,
            model_used=model.identifier,
            cancel_event=cancel_event,
        )

        data = {
            "projectPath": root.path,
            "files": [o.to_dict() for o in batch.outcomes],
            "summary": {
                **batch.summary(),
                "truncated": discovered.truncated,
                "skipped": len(discovered.skipped),
                "discoveryErrors": len(discovered.errors),
            },
        }
        if batch.failed == 0 and not batch.cancelled:
            self.cache.cache_analysis(key, data, model.identifier, tracker.elapsed_ms)

        return ResultEnvelope(
            success=True,
            model_used=model.identifier,
            execution_time_ms=tracker.elapsed_ms,
            data=data,
            security_warnings=clean.get(SECURITY_WARNINGS_KEY, []) + file_warnings,
        )

    # -------------------------------------------------------------------------
    # System operations
    # -------------------------------------------------------------------------

    async def health_check(self, detailed: bool = False) -> ResultEnvelope:
        """Check that LM Studio is reachable and report loaded models."""
        with LatencyTracker("health_check", log=False) as tracker:
            try:
                models = await self.backend.list_loaded_models()
            except LocalLLMError as e:
                return self.assembler.create_error_response(
                    "health_check",
                    e.code,
                    e.message,
                    {
                        "status": "unhealthy",
                        "connection": "failed",
                        "url": self.config.base_url,
                        "suggestion": "Please ensure LM Studio is running and a model is loaded",
                    },
                    execution_time_ms=tracker.elapsed_ms,
                )

            data: dict[str, Any] = {
                "status": "healthy",
                "connection": "established",
                "url": self.config.base_url,
                "modelCount": len(models),
                "hasActiveModel": bool(models),
            }
            if detailed:
                data["loadedModels"] = [m.to_dict() for m in models]
                try:
                    model, context_length = await self.get_ready_model()
                except ModelUnavailableError as e:
                    data["activeModel"] = None
                    data["warning"] = e.message
                else:
                    data["activeModel"] = {**model.to_dict(), "contextLength": context_length}
            model_used = models[0].identifier if models else "none"
            return self.assembler.create_system_response(data, model_used, tracker.elapsed_ms)

    def get_cache_statistics(self) -> ResultEnvelope:
        return self.assembler.create_system_response(self.cache.get_statistics())

    def clear_cache(self, key: str | None = None) -> ResultEnvelope:
        removed = self.cache.clear(key)
        return self.assembler.create_system_response({"cleared": removed, "key": key})
