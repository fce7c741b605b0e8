"""
Compression strategies for the context window.

Every strategy is total: an unavailable, failing, slow or incoherent LLM
makes it take a deterministic local fallback instead of raising.

- Summarize: abstractive summary / extractive sentence selection
- KeywordExtract: key concepts / keyword-bearing sentences
- SemanticCluster: per-theme summaries
- TemporalCompress: per-age-bucket summaries, more budget for recent history
- Selective: verbatim subset
- Hybrid: Selective head + Summarize tail (default)
"""

from .base import CompressionStrategy, SegmentOutput
from .summarize import SummarizeStrategy
from .keywords import KeywordExtractStrategy
from .clustering import SemanticClusterStrategy
from .temporal import TemporalCompressStrategy, TIME_BUCKETS
from .selective import SelectiveStrategy
from .hybrid import HybridStrategy
from .registry import (
    AUTO,
    STRATEGY_REGISTRY,
    build_strategies,
    get_recommended_strategy,
    resolve_strategy_name,
)

__all__ = [
    'CompressionStrategy',
    'SegmentOutput',
    'SummarizeStrategy',
    'KeywordExtractStrategy',
    'SemanticClusterStrategy',
    'TemporalCompressStrategy',
    'TIME_BUCKETS',
    'SelectiveStrategy',
    'HybridStrategy',
    'AUTO',
    'STRATEGY_REGISTRY',
    'build_strategies',
    'get_recommended_strategy',
    'resolve_strategy_name',
]
