"""
Streaming response collection.

A producer task pulls text fragments from the backend stream into a bounded
queue and the consumer joins them. When the consumer falls behind, the
producer blocks on the full queue instead of buffering without limit.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator

from .exceptions import LocalLLMError, ModelCallError, ModelTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 64


@dataclass
class StreamingResult:
    """Collected text of a streamed response."""

    text: str
    fragment_count: int
    elapsed_ms: float


class _EndOfStream:
    pass


_END = _EndOfStream()


async def _produce(fragments: AsyncIterator[str], queue: asyncio.Queue) -> None:
    try:
        async for fragment in fragments:
            if fragment:
                await queue.put(fragment)
    except LocalLLMError as e:
        await queue.put(e)
        return
    except Exception as e:
        await queue.put(ModelCallError(f"Model stream failed: {e}", {"type": type(e).__name__}))
        return
    await queue.put(_END)


async def collect_stream(
    fragments: AsyncIterator[str],
    timeout: float | None = None,
    buffer_size: int = DEFAULT_BUFFER_SIZE,
) -> StreamingResult:
    """
    Collect a fragment stream into one string.

    Args:
        fragments: Async iterator of text fragments from the backend
        timeout: Seconds allowed for the whole stream (None for no limit)
        buffer_size: Maximum fragments buffered between producer and consumer

    Raises:
        ModelTimeoutError: if the stream doesn't finish within timeout
        ModelCallError: if the backend fails mid-stream
    """
    loop = asyncio.get_running_loop()
    start = loop.time()
    queue: asyncio.Queue = asyncio.Queue(maxsize=buffer_size)
    producer = asyncio.create_task(_produce(fragments, queue))
    parts: list[str] = []

    async def consume() -> None:
        while True:
            item = await queue.get()
            if item is _END:
                return
            if isinstance(item, LocalLLMError):
                raise item
            parts.append(item)

    try:
        await asyncio.wait_for(consume(), timeout=timeout)
    except asyncio.TimeoutError:
        raise ModelTimeoutError(
            f"Model response timed out after {timeout}s",
            {"timeout_seconds": timeout, "fragments_received": len(parts)},
        )
    finally:
        if not producer.done():
            producer.cancel()
            try:
                await producer
            except asyncio.CancelledError:
                pass

    elapsed_ms = (loop.time() - start) * 1000
    logger.debug(f"[STREAM] Collected {len(parts)} fragments in {elapsed_ms:.1f}ms")
    return StreamingResult(text="".join(parts), fragment_count=len(parts), elapsed_ms=elapsed_ms)
