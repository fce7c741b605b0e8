"""
KeywordExtract: reduce the segment to its key concepts.
"""

from ..models import StrategyName
from .base import CompressionStrategy, SegmentOutput
from .extractive import KEYWORD_FALLBACK_LOSS, keyword_digest

LLM_LOSS = 0.6


class KeywordExtractStrategy(CompressionStrategy):
    """Bullet list of key concepts (LLM) or keyword-bearing sentences (fallback)."""

    name = StrategyName.KEYWORD_EXTRACT
    ratio_estimate = 0.2

    async def _compress_segment(self, segment, target_tokens, options) -> SegmentOutput:
        prompt = (
            "Extract the key concepts, entities, preferences and facts from this "
            "conversation as a short bullet list.\n\n"
            f"{self.format_transcript(segment)}"
        )
        response = await self._complete(prompt, options, target_tokens)

        if response is not None:
            text = self.fitted(response, target_tokens)
            loss, used_fallback, keywords = LLM_LOSS, False, []
        else:
            digest, keywords = keyword_digest(self.plain_text(segment), target_tokens, self.estimator)
            text = self.fitted(digest, target_tokens)
            loss, used_fallback = KEYWORD_FALLBACK_LOSS, True

        messages = [self.summary_entry(text, segment, options)] if text else []
        return SegmentOutput(
            messages=messages,
            loss_estimate=loss,
            used_fallback=used_fallback,
            content=text,
            details={"keywords": keywords} if keywords else {},
        )
