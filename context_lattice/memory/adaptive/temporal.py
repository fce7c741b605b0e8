"""
TemporalCompress: summarize by age bucket, spending more budget on recent history.

Buckets (age relative to options.now):
    recent  < 1 hour     40% of target
    today   < 24 hours   30%
    week    < 168 hours  20%
    older                10%

Empty buckets are skipped. Each bucket is summarized with Summarize
(including its fallback) and fitted to its own allocation, so no bucket
can borrow from another.
"""

import logging
from datetime import datetime
from typing import Dict, List, Tuple

from ..models import ContextMessage, StrategyName
from .base import CompressionStrategy, SegmentOutput
from .summarize import SummarizeStrategy

logger = logging.getLogger(__name__)

TEMPORAL_LOSS = 0.3

# (name, upper age bound in hours, share of target)
TIME_BUCKETS: List[Tuple[str, float, float]] = [
    ("recent", 1, 0.40),
    ("today", 24, 0.30),
    ("week", 168, 0.20),
    ("older", float("inf"), 0.10),
]


class TemporalCompressStrategy(CompressionStrategy):
    """One summary entry per non-empty age bucket."""

    name = StrategyName.TEMPORAL_COMPRESS
    ratio_estimate = 0.35

    def __init__(self, llm=None, estimator=None, options=None):
        super().__init__(llm, estimator, options)
        self.summarizer = SummarizeStrategy(llm, self.estimator, self.options)

    def bucket(self, segment: List[ContextMessage], now: datetime) -> Dict[str, List[ContextMessage]]:
        buckets: Dict[str, List[ContextMessage]] = {name: [] for name, _, _ in TIME_BUCKETS}
        for entry in segment:
            age_hours = max(0.0, (now - entry.timestamp).total_seconds() / 3600)
            for name, limit, _ in TIME_BUCKETS:
                if age_hours < limit:
                    buckets[name].append(entry)
                    break
        return buckets

    async def _compress_segment(self, segment, target_tokens, options) -> SegmentOutput:
        now = options.now or datetime.now()
        buckets = self.bucket(segment, now)

        # Oldest first keeps the output chronological
        messages: List[ContextMessage] = []
        parts: List[str] = []
        details: Dict[str, Dict[str, int]] = {}
        used_fallback = False

        for name, _, share in reversed(TIME_BUCKETS):
            members = buckets[name]
            allocation = int(target_tokens * share)
            if not members or allocation <= 0:
                continue

            text, _, fell_back = await self.summarizer.summarize_text(members, allocation, options)
            used_fallback = used_fallback or fell_back
            if not text:
                continue

            entry = self.summary_entry(text, members, options, period=name)
            messages.append(entry)
            parts.append(f"{name}: {text}")
            details[name] = {
                "entries": len(members),
                "allocation": allocation,
                "tokens": entry.token_count,
            }

        logger.debug(f"Temporal buckets: {details}")
        return SegmentOutput(
            messages=messages,
            loss_estimate=TEMPORAL_LOSS,
            used_fallback=used_fallback,
            content="\n".join(parts),
            details={"buckets": details},
        )
