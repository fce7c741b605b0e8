"""
Summarize: abstractive LLM summary with an extractive fallback.
"""

import logging
from typing import List, Tuple

from ..models import CompressionOptions, ContextMessage, StrategyName
from .base import CompressionStrategy, SegmentOutput
from .extractive import extractive_summary

logger = logging.getLogger(__name__)

LLM_LOSS = 0.3


class SummarizeStrategy(CompressionStrategy):
    """Collapse the segment into one summary entry."""

    name = StrategyName.SUMMARIZE
    ratio_estimate = 0.3

    async def summarize_text(
        self,
        segment: List[ContextMessage],
        target_tokens: int,
        options: CompressionOptions,
    ) -> Tuple[str, float, bool]:
        """
        Summary text for a segment, already fitted to target_tokens.

        Returns:
            (text, loss_estimate, used_fallback)
        """
        max_tokens = max(1, min(options.max_summary_tokens, target_tokens))
        prompt = (
            f"Summarize the following conversation in at most {max_tokens} tokens. "
            "Keep names, preferences, decisions, facts and open questions. "
            "Write plain prose without a preamble.\n\n"
            f"{self.format_transcript(segment)}"
        )

        response = await self._complete(prompt, options, max_tokens)
        if response is not None:
            return self.fitted(response, target_tokens), LLM_LOSS, False

        text, loss = extractive_summary(self.plain_text(segment), target_tokens)
        return self.fitted(text, target_tokens), loss, True

    async def _compress_segment(self, segment, target_tokens, options) -> SegmentOutput:
        text, loss, used_fallback = await self.summarize_text(segment, target_tokens, options)
        messages = [self.summary_entry(text, segment, options)] if text else []
        return SegmentOutput(
            messages=messages,
            loss_estimate=loss,
            used_fallback=used_fallback,
            content=text,
        )
