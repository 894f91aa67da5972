"""
Token estimation for context budgeting.

The estimate is ceil(characters / 4). It is NOT tokenizer-accurate: real
token counts vary by model and by content (code with many symbols tends to
run higher). It is used only to decide whether a prompt fits the context
window and how large each data chunk may be, so the chunker leaves a safety
margin on top of it.
"""

import math
from typing import Iterable

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Approximate token count of text."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


class TokenEstimator:
    """Character-based token estimator."""

    def __init__(self, chars_per_token: int = CHARS_PER_TOKEN):
        if chars_per_token < 1:
            raise ValueError("chars_per_token must be at least 1")
        self.chars_per_token = chars_per_token

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / self.chars_per_token)

    def estimate_messages(self, messages: Iterable[dict]) -> int:
        """Sum the estimates of each chat message's content."""
        return sum(self.estimate(m.get("content") or "") for m in messages)

    def max_chars(self, tokens: int) -> int:
        """Largest character count whose estimate does not exceed tokens."""
        return max(0, tokens) * self.chars_per_token
