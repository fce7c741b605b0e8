"""
Selective: keep a subset of messages verbatim.

The LLM names the indices worth keeping; the fallback keeps every third
message (index % 3 == 0). Kept messages are the original entries,
unchanged and in order.
"""

import logging
import re
from typing import List, Optional

from ..models import ContextMessage, StrategyName
from .base import CompressionStrategy, SegmentOutput

logger = logging.getLogger(__name__)

INDEX_RE = re.compile(r'\d+')
FALLBACK_STRIDE = 3


class SelectiveStrategy(CompressionStrategy):
    """Verbatim subset of the segment."""

    name = StrategyName.SELECTIVE
    ratio_estimate = 0.4

    @staticmethod
    def parse_indices(response: str, count: int) -> List[int]:
        """Sorted, de-duplicated, in-range indices from a comma separated reply."""
        found = {int(match) for match in INDEX_RE.findall(response or "")}
        return sorted(i for i in found if 0 <= i < count)

    async def select_indices(self, segment, options) -> Optional[List[int]]:
        listing = "\n".join(
            f"[{index}] {entry.role.value.upper()}: {entry.content}"
            for index, entry in enumerate(segment)
        )
        prompt = (
            "Which of these messages must be kept verbatim to preserve important "
            "context (facts, preferences, decisions)? Reply only with their indices, "
            "comma separated.\n\n"
            f"{listing}"
        )
        response = await self._complete(prompt, options, 100)
        if response is None:
            return None

        indices = self.parse_indices(response, len(segment))
        if not indices:
            logger.warning(f"Selective: no usable indices in LLM reply {response!r}, using fallback")
            return None
        return indices

    async def _compress_segment(self, segment, target_tokens, options) -> SegmentOutput:
        indices = await self.select_indices(segment, options)
        used_fallback = indices is None
        if used_fallback:
            indices = [i for i in range(len(segment)) if i % FALLBACK_STRIDE == 0]

        kept: List[ContextMessage] = [segment[i] for i in indices]

        # Drop the oldest kept entries until the selection fits
        while kept and self.estimator.count(kept) > target_tokens:
            kept.pop(0)

        return SegmentOutput(
            messages=kept,
            loss_estimate=1 - len(kept) / len(segment),
            used_fallback=used_fallback,
            details={"kept_indices": [i for i in indices if any(segment[i] is k for k in kept)]},
        )
