"""
SemanticCluster: group the segment by theme and summarize each theme.

The fallback buckets entries by their dominant word (the most frequent
word longer than 4 characters) and runs the extractive summary per bucket.
"""

import logging
from typing import Dict, List

from ..models import ContextMessage, StrategyName
from .base import CompressionStrategy, SegmentOutput
from .extractive import dominant_topic, extractive_summary

logger = logging.getLogger(__name__)

CLUSTER_LOSS = 0.5


class SemanticClusterStrategy(CompressionStrategy):
    """'topic: summary' digest of the segment."""

    name = StrategyName.SEMANTIC_CLUSTER
    ratio_estimate = 0.4

    def cluster(self, segment: List[ContextMessage]) -> Dict[str, List[ContextMessage]]:
        """Bucket entries by dominant topic, in order of first appearance."""
        clusters: Dict[str, List[ContextMessage]] = {}
        for entry in segment:
            clusters.setdefault(dominant_topic(entry.content), []).append(entry)
        return clusters

    async def _compress_segment(self, segment, target_tokens, options) -> SegmentOutput:
        prompt = (
            "Group this conversation into themes. For each theme write one line "
            "formatted as 'theme: summary'.\n\n"
            f"{self.format_transcript(segment)}"
        )
        response = await self._complete(prompt, options, target_tokens)

        if response is not None:
            text = self.fitted(response, target_tokens)
            return SegmentOutput(
                messages=[self.summary_entry(text, segment, options)] if text else [],
                loss_estimate=CLUSTER_LOSS,
                content=text,
            )

        clusters = self.cluster(segment)
        per_cluster = max(1, target_tokens // len(clusters))
        parts = []
        for topic, members in clusters.items():
            summary, _ = extractive_summary(self.plain_text(members), per_cluster)
            if summary:
                parts.append(f"{topic}: {summary}")

        text = self.fitted(" ".join(parts), target_tokens)
        logger.debug(f"Clustered {len(segment)} entries into {len(clusters)} topics")
        return SegmentOutput(
            messages=[self.summary_entry(text, segment, options)] if text else [],
            loss_estimate=CLUSTER_LOSS,
            used_fallback=True,
            content=text,
            details={"clusters": {topic: len(members) for topic, members in clusters.items()}},
        )
