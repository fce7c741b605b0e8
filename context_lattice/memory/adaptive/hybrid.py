"""
Hybrid (default): Selective on the head of the segment, Summarize on the tail.

Long segments (more than `hybrid_entry_threshold` entries) and segments that
already contain a summary go straight to Summarize.
"""

import logging
import math

from ..models import StrategyName
from .base import CompressionStrategy, SegmentOutput
from .selective import SelectiveStrategy
from .summarize import SummarizeStrategy

logger = logging.getLogger(__name__)


class HybridStrategy(CompressionStrategy):
    """Selective head + summarized tail."""

    name = StrategyName.HYBRID
    ratio_estimate = 0.3

    def __init__(self, llm=None, estimator=None, options=None):
        super().__init__(llm, estimator, options)
        self.summarizer = SummarizeStrategy(llm, self.estimator, self.options)
        self.selector = SelectiveStrategy(llm, self.estimator, self.options)

    async def _compress_segment(self, segment, target_tokens, options) -> SegmentOutput:
        has_summary = any(entry.is_summary for entry in segment)
        head_size = math.floor(len(segment) * options.hybrid_selective_share)

        if len(segment) > options.hybrid_entry_threshold or has_summary or head_size == 0:
            output = await self.summarizer._compress_segment(segment, target_tokens, options)
            output.details["mode"] = "summarize"
            return output

        head, tail = segment[:head_size], segment[head_size:]
        tail_budget = int(target_tokens * (1 - options.hybrid_selective_share))
        head_budget = target_tokens - tail_budget

        selected = await self.selector._compress_segment(head, head_budget, options)
        # Unused selective budget rolls over to the summary
        tail_budget = target_tokens - self.estimator.count(selected.messages)

        if tail:
            summarized = await self.summarizer._compress_segment(tail, tail_budget, options)
        else:
            summarized = SegmentOutput(messages=[], loss_estimate=0.0)

        loss = (selected.loss_estimate * len(head) + summarized.loss_estimate * len(tail)) / len(segment)
        logger.debug(f"Hybrid: kept {len(selected.messages)}/{len(head)} head entries, summarized {len(tail)}")

        return SegmentOutput(
            messages=selected.messages + summarized.messages,
            loss_estimate=loss,
            used_fallback=selected.used_fallback or summarized.used_fallback,
            content="\n".join(m.content for m in selected.messages + summarized.messages),
            details={
                "mode": "selective+summarize",
                "head": len(head),
                "tail": len(tail),
                "kept_indices": selected.details.get("kept_indices", []),
            },
        )
