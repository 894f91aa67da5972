"""
Context-window chunking for three-stage prompts.

A prompt is split into three stages:
- system_and_context: role, task and analysis context
- data_payload: the (possibly huge) file contents
- output_instructions: the requested output format

When the stages don't fit the model's context window, the data payload is
split into chunks that each fit next to the fixed overhead, and the prompt is
rebuilt as a multi-message conversation:

    system:  context + "N chunks follow"
    user:    Data chunk 1/N
    ...
    user:    Data chunk N/N
    user:    output instructions + "synthesize across all N chunks"

Splitting is lossless: "".join(plan.fragments) == payload. Boundaries are
preferred in this order: file-section separators, line breaks, and only as a
last resort the middle of an over-long line.
"""

import logging
import math
from dataclasses import dataclass
from typing import Iterator

from .exceptions import ChunkingImpossibleError
from .token_estimator import TokenEstimator

logger = logging.getLogger(__name__)

# Line that separates file sections in a multi-file data payload
SECTION_SEPARATOR = "=" * 80

# Share of the context window kept free for the response and for estimate error
DEFAULT_RESPONSE_RESERVE_RATIO = 0.15
DEFAULT_SAFETY_MARGIN_RATIO = 0.05


@dataclass(frozen=True)
class PromptStages:
    """The three parts of a task prompt."""

    system_and_context: str
    data_payload: str
    output_instructions: str

    def to_messages(self) -> list[dict[str, str]]:
        """Single-shot chat messages, skipping an empty data payload."""
        messages = [{"role": "system", "content": self.system_and_context}]
        if self.data_payload:
            messages.append({"role": "user", "content": self.data_payload})
        messages.append({"role": "user", "content": self.output_instructions})
        return messages


@dataclass(frozen=True)
class ChunkPlan:
    """Ordered payload fragments whose concatenation is the original payload."""

    fragments: tuple[str, ...]

    @property
    def total(self) -> int:
        return len(self.fragments)

    def __iter__(self) -> Iterator[tuple[int, str]]:
        return iter(enumerate(self.fragments, start=1))

    def __len__(self) -> int:
        return len(self.fragments)

    def join(self) -> str:
        return "".join(self.fragments)


@dataclass(frozen=True)
class ConversationPlan:
    """A chunked prompt rebuilt as a multi-message conversation."""

    system_message: str
    data_messages: tuple[str, ...]
    analysis_message: str

    def to_messages(self) -> list[dict[str, str]]:
        messages = [{"role": "system", "content": self.system_message}]
        messages.extend({"role": "user", "content": m} for m in self.data_messages)
        messages.append({"role": "user", "content": self.analysis_message})
        return messages


class ContextWindowChunker:
    """
    Decides whether a prompt needs chunking and builds the chunked conversation.

    response_reserve_tokens and safety_margin_tokens default to 15% and 5% of
    the context window, leaving 80% of it for the prompt.
    """

    def __init__(
        self,
        estimator: TokenEstimator | None = None,
        response_reserve_tokens: int | None = None,
        safety_margin_tokens: int | None = None,
        section_separator: str = SECTION_SEPARATOR,
    ):
        self.estimator = estimator or TokenEstimator()
        self.response_reserve_tokens = response_reserve_tokens
        self.safety_margin_tokens = safety_margin_tokens
        self.section_separator = section_separator

    def response_reserve(self, context_window: int) -> int:
        if self.response_reserve_tokens is not None:
            return self.response_reserve_tokens
        return math.floor(context_window * DEFAULT_RESPONSE_RESERVE_RATIO)

    def safety_margin(self, context_window: int) -> int:
        if self.safety_margin_tokens is not None:
            return self.safety_margin_tokens
        return math.floor(context_window * DEFAULT_SAFETY_MARGIN_RATIO)

    def _overhead(self, stages: PromptStages) -> int:
        return (
            self.estimator.estimate(stages.system_and_context)
            + self.estimator.estimate(stages.output_instructions)
        )

    def needs_chunking(self, stages: PromptStages, context_window: int) -> bool:
        total = self._overhead(stages) + self.estimator.estimate(stages.data_payload)
        return total + self.response_reserve(context_window) > context_window

    def calculate_optimal_chunk_size(self, stages: PromptStages, context_window: int) -> int:
        """
        Token budget for each data chunk.

        Raises:
            ChunkingImpossibleError: if the fixed overhead leaves no room for data
        """
        size = (
            context_window
            - self._overhead(stages)
            - self.response_reserve(context_window)
            - self.safety_margin(context_window)
        )
        if size <= 0:
            raise ChunkingImpossibleError(
                f"Prompt overhead leaves no room for data in a {context_window}-token window",
                {
                    "context_window": context_window,
                    "overhead_tokens": self._overhead(stages),
                    "response_reserve": self.response_reserve(context_window),
                    "safety_margin": self.safety_margin(context_window),
                },
            )
        return size

    # -------------------------------------------------------------------------
    # Payload splitting
    # -------------------------------------------------------------------------

    def _is_separator(self, line: str) -> bool:
        return line.rstrip("\r\n") == self.section_separator

    def _split_records(self, payload: str) -> list[str]:
        """Split at section separator lines; each separator opens a new record."""
        records: list[str] = []
        current: list[str] = []
        for line in payload.splitlines(keepends=True):
            if self._is_separator(line) and current:
                records.append("".join(current))
                current = []
            current.append(line)
        if current:
            records.append("".join(current))
        return records

    @staticmethod
    def _hard_split(text: str, max_chars: int) -> list[str]:
        return [text[i:i + max_chars] for i in range(0, len(text), max_chars)]

    def _units(self, payload: str, max_chars: int) -> Iterator[str]:
        """Yield the smallest pieces that each fit, preferring coarse boundaries."""
        for record in self._split_records(payload):
            if len(record) <= max_chars:
                yield record
                continue
            for line in record.splitlines(keepends=True):
                if len(line) <= max_chars:
                    yield line
                else:
                    yield from self._hard_split(line, max_chars)

    def chunk_data_payload(self, payload: str, chunk_size_tokens: int) -> ChunkPlan:
        """
        Split payload into fragments that each fit chunk_size_tokens.

        Raises:
            ChunkingImpossibleError: if chunk_size_tokens is not positive
        """
        if chunk_size_tokens <= 0:
            raise ChunkingImpossibleError(
                f"Chunk size must be positive, got {chunk_size_tokens}",
                {"chunk_size_tokens": chunk_size_tokens},
            )

        max_chars = self.estimator.max_chars(chunk_size_tokens)
        if len(payload) <= max_chars:
            return ChunkPlan((payload,))

        fragments: list[str] = []
        buffer: list[str] = []
        buffered = 0
        for unit in self._units(payload, max_chars):
            if buffered + len(unit) > max_chars and buffer:
                fragments.append("".join(buffer))
                buffer, buffered = [], 0
            buffer.append(unit)
            buffered += len(unit)
        if buffer:
            fragments.append("".join(buffer))

        logger.debug(
            f"[CHUNK] Split {len(payload):,} chars into {len(fragments)} chunks "
            f"(budget {chunk_size_tokens} tokens)"
        )
        return ChunkPlan(tuple(fragments))

    def create_chunked_conversation(self, stages: PromptStages, plan: ChunkPlan) -> ConversationPlan:
        total = plan.total
        system_message = (
            f"{stages.system_and_context}\n\n"
            f"The data for this task is too large for a single message. "
            f"It follows in {total} chunks. Read every chunk before answering."
        )
        data_messages = tuple(
            f"Data chunk {index}/{total}:\n\n{fragment}" for index, fragment in plan
        )
        analysis_message = (
            f"{stages.output_instructions}\n\n"
            f"Analyze all {total} data chunks provided above and synthesize "
            f"a single response that covers every chunk."
        )
        return ConversationPlan(system_message, data_messages, analysis_message)

    def plan_conversation(self, stages: PromptStages, context_window: int) -> ConversationPlan:
        """Chunk the payload to the optimal size and build the conversation."""
        chunk_size = self.calculate_optimal_chunk_size(stages, context_window)
        plan = self.chunk_data_payload(stages.data_payload, chunk_size)
        return self.create_chunked_conversation(stages, plan)

    # -------------------------------------------------------------------------
    # Response budgets
    # -------------------------------------------------------------------------

    def calculate_max_tokens(
        self,
        messages: list[dict[str, str]],
        context_window: int,
        min_tokens: int = 1000,
    ) -> int:
        """Response token budget: what the prompt leaves free, never below min_tokens."""
        prompt_tokens = self.estimator.estimate_messages(messages)
        available = context_window - prompt_tokens - self.safety_margin(context_window)
        return max(min_tokens, available)
