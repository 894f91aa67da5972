"""
Timing and logging setup.

LatencyTracker measures a block and logs "[LATENCY] phase: 45.3ms". Every
envelope's executionTimeMs comes from one.
"""

import logging
import sys
import time

logger = logging.getLogger(__name__)


class LatencyTracker:
    """
    Context manager to track latency for a code block.

    Usage:
        with LatencyTracker("custom_prompt") as tracker:
            ...
        tracker.elapsed_ms
    """
    def __init__(self, phase_name: str = "operation", log: bool = True):
        self.phase_name = phase_name
        self.log = log
        self.start_time: float | None = None
        self.end_time: float | None = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.end_time = time.perf_counter()
        if self.log:
            logger.info(f"[LATENCY] {self.phase_name}: {self.elapsed_ms:.1f}ms")

    @property
    def elapsed_ms(self) -> float:
        """Milliseconds since entry; frozen once the block exits."""
        if self.start_time is None:
            return 0.0
        end = self.end_time if self.end_time is not None else time.perf_counter()
        return (end - self.start_time) * 1000


def configure_logging(level: str | int = logging.INFO) -> None:
    """Send log output to stderr; stdout carries the MCP stdio transport."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(
        level=level,
        stream=sys.stderr,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
