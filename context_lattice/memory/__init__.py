"""
Context Window Memory Engine

Tiered context window for LLM agents:
- Token estimation and layer budgets (immediate / summarized / persistent)
- Priority-weighted eviction
- Multi-strategy compression with deterministic fallbacks

The window manager, storage adapter and session registry live in
`window_manager`, `storage` and `sessions`; they depend on core.config
and are exported from the top-level package.
"""

from .models import (
    # Enums
    Role,
    LayerName,
    StrategyName,
    ContentType,
    SessionState,

    # Core structures
    ContextMessage,
    ContextLayer,
    TokenBudget,
    PriorityWeights,

    # Compression
    CompressionOptions,
    CompressionResult,

    # Analysis
    ContextAnalysis,
    ContextSummary,
)

from .tokens import TokenEstimator, estimate_tokens
from .priority import PriorityScorer, PriorityBreakdown
from .layers import LayeredContextStore

__all__ = [
    'Role',
    'LayerName',
    'StrategyName',
    'ContentType',
    'SessionState',
    'ContextMessage',
    'ContextLayer',
    'TokenBudget',
    'PriorityWeights',
    'CompressionOptions',
    'CompressionResult',
    'ContextAnalysis',
    'ContextSummary',
    'TokenEstimator',
    'estimate_tokens',
    'PriorityScorer',
    'PriorityBreakdown',
    'LayeredContextStore',
]
