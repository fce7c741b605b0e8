"""
Heuristic token estimation.

~4 characters per token for prose; code-like text is inflated by 20%
to mirror real tokenizer behaviour on braces, keywords and symbols.
"""

import math
import re
from typing import Iterable, Optional

CHARS_PER_TOKEN = 4
CODE_MULTIPLIER = 1.2

CODE_PATTERNS = [
    re.compile(r'```[\s\S]*```'),
    re.compile(r'\bfunction\s+\w+'),
    re.compile(r'\bclass\s+\w+'),
    re.compile(r'\bconst\s+\w+\s*='),
    re.compile(r'\bimport\s+.*\bfrom\b'),
    re.compile(r'\{[\s\S]*\}'),
]


class TokenEstimator:
    """Deterministic, pure token counter."""

    def __init__(self, chars_per_token: int = CHARS_PER_TOKEN, code_multiplier: float = CODE_MULTIPLIER):
        self.chars_per_token = chars_per_token
        self.code_multiplier = code_multiplier

    def looks_like_code(self, text: str) -> bool:
        return any(pattern.search(text) for pattern in CODE_PATTERNS)

    def estimate(self, text: Optional[str]) -> int:
        """
        Estimate tokens for text.

        Returns 0 for empty text and at least 1 for anything else.
        """
        if not text:
            return 0

        estimate = len(text) / self.chars_per_token
        if self.looks_like_code(text):
            estimate *= self.code_multiplier
        return max(1, math.ceil(estimate))

    def count(self, messages: Iterable) -> int:
        """Sum token counts of messages, estimating where a count is missing."""
        total = 0
        for message in messages:
            if message.token_count is None:
                total += self.estimate(message.content)
            else:
                total += message.token_count
        return total

    def fit(self, text: str, max_tokens: int) -> str:
        """
        Trim text from the end until it fits within max_tokens.

        Drops whole words first, then characters if a single word is still too long.
        """
        if max_tokens <= 0:
            return ""
        if self.estimate(text) <= max_tokens:
            return text

        words = text.split()
        # Binary search on the word prefix length
        lo, hi = 0, len(words)
        while lo < hi:
            mid = (lo + hi + 1) // 2
            if self.estimate(" ".join(words[:mid])) <= max_tokens:
                lo = mid
            else:
                hi = mid - 1
        trimmed = " ".join(words[:lo])
        if trimmed:
            return trimmed

        max_chars = int(max_tokens * self.chars_per_token / self.code_multiplier)
        return text.strip()[:max_chars]


_default_estimator = TokenEstimator()


def estimate_tokens(text: Optional[str]) -> int:
    """Estimate tokens with the default estimator."""
    return _default_estimator.estimate(text)
