"""
Unit tests for token estimation and context-window chunking.

Tests cover:
- The character-based token estimate
- needs_chunking / optimal chunk size arithmetic
- Lossless payload splitting and per-chunk budgets
- Boundary preference (sections, lines, hard splits)
- Chunked conversation layout
- Response token budgets
"""

import pytest

from local_llm_mcp.chunking import (
    SECTION_SEPARATOR,
    ChunkPlan,
    ContextWindowChunker,
    PromptStages,
)
from local_llm_mcp.exceptions import ChunkingImpossibleError
from local_llm_mcp.token_estimator import TokenEstimator, estimate_tokens


class TestTokenEstimator:
    """The estimate is ceil(len / 4), an approximation only."""

    def test_empty_text_is_zero(self):
        assert estimate_tokens("") == 0
        assert TokenEstimator().estimate("") == 0

    def test_rounds_up(self):
        assert estimate_tokens("a") == 1
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_messages_sum(self):
        estimator = TokenEstimator()
        messages = [{"role": "system", "content": "abcd"}, {"role": "user", "content": "abcdefgh"}]
        assert estimator.estimate_messages(messages) == 3

    def test_max_chars_inverts_estimate(self):
        estimator = TokenEstimator()
        assert estimator.estimate("x" * estimator.max_chars(10)) == 10


def _stages(system: str = "sys", payload: str = "", instructions: str = "do it") -> PromptStages:
    return PromptStages(system, payload, instructions)


class TestNeedsChunking:
    """Tests for the fit decision and chunk size."""

    def test_small_prompt_fits(self):
        chunker = ContextWindowChunker(response_reserve_tokens=100, safety_margin_tokens=0)
        assert not chunker.needs_chunking(_stages(payload="x" * 400), 1000)

    def test_exact_fit_boundary(self):
        chunker = ContextWindowChunker(response_reserve_tokens=100, safety_margin_tokens=0)
        # 1 (sys) + 2 (instructions) + payload + 100 reserve
        payload_tokens = 1000 - 100 - 1 - 2
        fits = _stages(payload="x" * (payload_tokens * 4))
        over = _stages(payload="x" * (payload_tokens * 4 + 1))

        assert not chunker.needs_chunking(fits, 1000)
        assert chunker.needs_chunking(over, 1000)

    def test_default_reserves_are_fractions_of_window(self):
        chunker = ContextWindowChunker()
        assert chunker.response_reserve(10000) == 1500
        assert chunker.safety_margin(10000) == 500

    def test_optimal_chunk_size(self):
        chunker = ContextWindowChunker(response_reserve_tokens=100, safety_margin_tokens=50)
        stages = _stages(system="s" * 400, instructions="i" * 200)
        assert chunker.calculate_optimal_chunk_size(stages, 1000) == 1000 - 100 - 50 - 100 - 50

    def test_overhead_larger_than_window_is_impossible(self):
        chunker = ContextWindowChunker(response_reserve_tokens=100, safety_margin_tokens=50)
        stages = _stages(system="s" * 4000)

        with pytest.raises(ChunkingImpossibleError) as exc:
            chunker.calculate_optimal_chunk_size(stages, 1000)

        assert exc.value.code == "CHUNKING_IMPOSSIBLE"


class TestChunkDataPayload:
    """Splitting must be lossless and respect the budget."""

    def _multi_file_payload(self, files: int, lines_per_file: int) -> str:
        parts = []
        for f in range(files):
            parts.append(f"{SECTION_SEPARATOR}\nFile: /p/file_{f}.py\n\n")
            parts.extend(f"line {i} of file {f}\n" for i in range(lines_per_file))
        return "".join(parts)

    def test_payload_that_fits_is_single_chunk(self):
        plan = ContextWindowChunker().chunk_data_payload("small payload", 100)
        assert plan.fragments == ("small payload",)
        assert plan.total == 1

    @pytest.mark.parametrize("budget", [7, 50, 333])
    def test_round_trip_and_budget(self, budget: int):
        chunker = ContextWindowChunker()
        payload = self._multi_file_payload(files=12, lines_per_file=40)

        plan = chunker.chunk_data_payload(payload, budget)

        assert plan.join() == payload
        assert plan.total > 1
        assert all(chunker.estimator.estimate(f) <= budget for f in plan.fragments)

    def test_prefers_section_boundaries(self):
        chunker = ContextWindowChunker()
        payload = self._multi_file_payload(files=4, lines_per_file=5)
        section_tokens = chunker.estimator.estimate(payload) // 4

        plan = chunker.chunk_data_payload(payload, section_tokens + 5)

        assert plan.join() == payload
        for fragment in plan.fragments:
            assert fragment.startswith(SECTION_SEPARATOR)

    def test_line_boundaries_inside_oversized_section(self):
        chunker = ContextWindowChunker()
        payload = "".join(f"row {i:04d}\n" for i in range(200))

        plan = chunker.chunk_data_payload(payload, 10)

        assert plan.join() == payload
        assert all(f.endswith("\n") for f in plan.fragments)

    def test_hard_split_of_single_long_line(self):
        chunker = ContextWindowChunker()
        payload = "x" * 1000

        plan = chunker.chunk_data_payload(payload, 10)

        assert plan.join() == payload
        assert all(len(f) <= 40 for f in plan.fragments)
        assert plan.total == 25

    def test_crlf_is_preserved(self):
        chunker = ContextWindowChunker()
        payload = "".join(f"line {i}\r\n" for i in range(100))

        plan = chunker.chunk_data_payload(payload, 5)

        assert plan.join() == payload

    def test_non_positive_budget_is_impossible(self):
        with pytest.raises(ChunkingImpossibleError):
            ContextWindowChunker().chunk_data_payload("abc", 0)

    def test_iteration_is_one_based(self):
        plan = ChunkPlan(("a", "b"))
        assert list(plan) == [(1, "a"), (2, "b")]


class TestChunkedConversation:
    """Layout of the multi-message conversation."""

    def test_conversation_layout(self):
        chunker = ContextWindowChunker()
        stages = PromptStages("You are a reviewer.", "payload", "Return JSON.")
        plan = ChunkPlan(("part one ", "part two ", "part three"))

        conversation = chunker.create_chunked_conversation(stages, plan)

        assert conversation.system_message.startswith("You are a reviewer.")
        assert "3 chunks" in conversation.system_message
        assert conversation.data_messages[0].startswith("Data chunk 1/3")
        assert conversation.data_messages[2].startswith("Data chunk 3/3")
        assert conversation.data_messages[1].endswith("part two ")
        assert conversation.analysis_message.startswith("Return JSON.")
        assert "all 3 data chunks" in conversation.analysis_message

        messages = conversation.to_messages()
        assert [m["role"] for m in messages] == ["system", "user", "user", "user", "user"]

    def test_plan_conversation_fits_each_message(self):
        chunker = ContextWindowChunker()
        stages = PromptStages("system", "".join(f"line {i}\n" for i in range(5000)), "instructions")
        window = 2000

        conversation = chunker.plan_conversation(stages, window)
        chunk_size = chunker.calculate_optimal_chunk_size(stages, window)

        assert len(conversation.data_messages) > 1
        for message in conversation.data_messages:
            body = message.split("\n\n", 1)[1]
            assert chunker.estimator.estimate(body) <= chunk_size


class TestMaxTokens:
    """Response budgets."""

    def test_uses_remaining_window(self):
        chunker = ContextWindowChunker(safety_margin_tokens=100)
        messages = [{"role": "user", "content": "x" * 4000}]
        assert chunker.calculate_max_tokens(messages, 10000, min_tokens=500) == 10000 - 1000 - 100

    def test_never_below_minimum(self):
        chunker = ContextWindowChunker(safety_margin_tokens=0)
        messages = [{"role": "user", "content": "x" * 40000}]
        assert chunker.calculate_max_tokens(messages, 5000, min_tokens=1500) == 1500

    def test_direct_messages_skip_empty_payload(self):
        messages = PromptStages("s", "", "i").to_messages()
        assert [m["content"] for m in messages] == ["s", "i"]
