"""
Strategy registry and selection policy.

Strategies are resolved once, when the window manager is built; an
unknown name fails there (or at an explicit compress() call) with
UnknownStrategyError.
"""

from typing import Dict, Optional, Type, Union

from ...errors import UnknownStrategyError
from ..models import CompressionOptions, ContentType, StrategyName
from ..tokens import TokenEstimator
from .base import CompressionStrategy
from .clustering import SemanticClusterStrategy
from .hybrid import HybridStrategy
from .keywords import KeywordExtractStrategy
from .selective import SelectiveStrategy
from .summarize import SummarizeStrategy
from .temporal import TemporalCompressStrategy

STRATEGY_REGISTRY: Dict[StrategyName, Type[CompressionStrategy]] = {
    StrategyName.SUMMARIZE: SummarizeStrategy,
    StrategyName.KEYWORD_EXTRACT: KeywordExtractStrategy,
    StrategyName.SEMANTIC_CLUSTER: SemanticClusterStrategy,
    StrategyName.TEMPORAL_COMPRESS: TemporalCompressStrategy,
    StrategyName.SELECTIVE: SelectiveStrategy,
    StrategyName.HYBRID: HybridStrategy,
}

AUTO = "auto"


def resolve_strategy_name(name: Union[str, StrategyName]) -> StrategyName:
    try:
        return StrategyName(name)
    except ValueError:
        raise UnknownStrategyError(name) from None


def build_strategies(
    llm=None,
    estimator: Optional[TokenEstimator] = None,
    options: Optional[CompressionOptions] = None,
) -> Dict[StrategyName, CompressionStrategy]:
    """Instantiate every registered strategy with shared collaborators."""
    estimator = estimator or TokenEstimator()
    return {
        name: strategy_cls(llm=llm, estimator=estimator, options=options)
        for name, strategy_cls in STRATEGY_REGISTRY.items()
    }


def get_recommended_strategy(
    content_type: Union[str, ContentType],
    original_tokens: int,
    target_tokens: int,
) -> StrategyName:
    """
    Pick a strategy from the required ratio (target / original) and content type.

    ratio < 0.3  -> keyword_extract
    ratio < 0.6  -> conversation: temporal_compress, facts: summarize,
                    preferences: keyword_extract, otherwise semantic_cluster
    otherwise    -> summarize
    """
    ratio = target_tokens / original_tokens if original_tokens > 0 else 1.0

    if ratio < 0.3:
        return StrategyName.KEYWORD_EXTRACT

    if ratio < 0.6:
        try:
            content_type = ContentType(content_type)
        except ValueError:
            content_type = ContentType.GENERAL
        if content_type == ContentType.CONVERSATION:
            return StrategyName.TEMPORAL_COMPRESS
        if content_type == ContentType.FACTS:
            return StrategyName.SUMMARIZE
        if content_type == ContentType.PREFERENCES:
            return StrategyName.KEYWORD_EXTRACT
        return StrategyName.SEMANTIC_CLUSTER

    return StrategyName.SUMMARIZE
