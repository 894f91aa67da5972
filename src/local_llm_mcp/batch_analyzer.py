"""
Batch analysis across many files.

Each file is one unit of work. Units run with bounded concurrency and their
outcomes are written back by input index, so the result order always matches
the input order no matter which unit finishes first.

Per unit:
1. If the batch was cancelled, record CANCELLED without dispatching
2. Look the unit up in the AnalysisCache
3. On a miss, await the analysis callback (with optional timeout)
4. Cache successful results; failures are recorded for that file only
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Sequence

from .analysis_cache import AnalysisCache
from .exceptions import CANCELLED, EXECUTION_ERROR, LocalLLMError, ModelTimeoutError
from .response_assembler import ErrorInfo

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 4

AnalyzeOne = Callable[[Any], Awaitable[Any]]


@dataclass
class FileOutcome:
    """Result of analyzing one file: data on success, error otherwise."""

    file: str
    data: Any = None
    error: ErrorInfo | None = None
    cached: bool = False

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        if self.success:
            return {"file": self.file, "success": True, "cached": self.cached, "data": self.data}
        return {"file": self.file, "success": False, "error": self.error.to_dict()}


@dataclass
class BatchResult:
    """Ordered per-file outcomes of a batch."""

    outcomes: list[FileOutcome] = field(default_factory=list)
    cancelled: bool = False
    context_length: int = 0

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.success)

    @property
    def failed(self) -> int:
        return len(self.outcomes) - self.succeeded

    @property
    def cached(self) -> int:
        return sum(1 for o in self.outcomes if o.cached)

    def summary(self) -> dict[str, Any]:
        return {
            "total": len(self.outcomes),
            "succeeded": self.succeeded,
            "failed": self.failed,
            "cached": self.cached,
            "cancelled": self.cancelled,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "files": [o.to_dict() for o in self.outcomes],
            "summary": self.summary(),
        }


class BatchAnalyzer:
    """Runs per-file analyses through the cache with bounded concurrency."""

    def __init__(
        self,
        cache: AnalysisCache,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        per_file_timeout: float | None = None,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.cache = cache
        self.max_concurrency = max_concurrency
        self.per_file_timeout = per_file_timeout

    async def analyze_batch(
        self,
        files: Sequence[Any],
        analyze_one: AnalyzeOne,
        context_length: int,
        *,
        task_name: str,
        params: dict[str, Any],
        model_used: str = "",
        cancel_event: asyncio.Event | None = None,
    ) -> BatchResult:
        """
        Analyze every file, returning outcomes in input order.

        Args:
            files: Units of work (ValidatedPath or str)
            analyze_one: Coroutine function producing the data for one file
            context_length: Context window the analysis ran with (part of the cache key)
            task_name: Task name for cache keys
            params: Task parameters for cache keys
            model_used: Recorded alongside cached results
            cancel_event: When set, units not yet started are reported as CANCELLED
        """
        semaphore = asyncio.Semaphore(self.max_concurrency)
        outcomes: list[FileOutcome | None] = [None] * len(files)
        key_params = {**params, "context_length": context_length}

        async def run(index: int, file: Any) -> None:
            name = str(file)
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    outcomes[index] = FileOutcome(
                        name, error=ErrorInfo(CANCELLED, "Batch cancelled before this file started")
                    )
                    return

                key = self.cache.generate_key(task_name, key_params, [name])
                entry = self.cache.get_entry(key)
                if entry is not None:
                    outcomes[index] = FileOutcome(name, data=entry.value, cached=True)
                    return

                loop = asyncio.get_running_loop()
                start = loop.time()
                try:
                    if self.per_file_timeout is not None:
                        data = await asyncio.wait_for(analyze_one(file), timeout=self.per_file_timeout)
                    else:
                        data = await analyze_one(file)
                except asyncio.TimeoutError:
                    error = ModelTimeoutError(
                        f"Analysis timed out after {self.per_file_timeout}s",
                        {"timeout_seconds": self.per_file_timeout},
                    )
                    outcomes[index] = FileOutcome(name, error=ErrorInfo(error.code, error.message, error.details))
                except LocalLLMError as e:
                    logger.warning(f"[BATCH] {name} failed: {e.code} {e.message}")
                    outcomes[index] = FileOutcome(name, error=ErrorInfo(e.code, e.message, e.details))
                except Exception as e:
                    logger.warning(f"[BATCH] {name} failed: {type(e).__name__}: {e}")
                    outcomes[index] = FileOutcome(
                        name, error=ErrorInfo(EXECUTION_ERROR, f"{type(e).__name__}: {e}")
                    )
                else:
                    elapsed_ms = (loop.time() - start) * 1000
                    self.cache.cache_analysis(key, data, model_used=model_used, execution_time_ms=elapsed_ms)
                    outcomes[index] = FileOutcome(name, data=data)

        await asyncio.gather(*(run(i, f) for i, f in enumerate(files)))

        result = BatchResult(
            outcomes=[o for o in outcomes if o is not None],
            cancelled=cancel_event is not None and cancel_event.is_set(),
            context_length=context_length,
        )
        logger.info(
            f"[BATCH] {task_name}: {result.succeeded}/{len(files)} succeeded, "
            f"{result.cached} cached, {result.failed} failed"
        )
        return result
