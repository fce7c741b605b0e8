"""
Context Lattice - Adaptive Tiered Context Window Manager

Keeps an LLM agent's conversation context under a token budget by
compressing older turns into summaries and evicting low-priority entries,
with deterministic fallbacks whenever the LLM is unavailable.
"""

__version__ = "0.1.0"

from .errors import (
    ContextLatticeError,
    ProviderError,
    PersistenceError,
    ContextValidationError,
    UnknownStrategyError,
    ConfigurationError,
    EncryptionError,
)
from .core.config import ContextConfig
from .core.logging_config import setup_logging
from .core.llm_client import LLMProvider, OpenAIChatClient
from .memory.models import (
    Role,
    LayerName,
    StrategyName,
    ContentType,
    ContextMessage,
    TokenBudget,
    PriorityWeights,
    CompressionOptions,
    CompressionResult,
    ContextAnalysis,
    ContextSummary,
)
from .memory.tokens import TokenEstimator, estimate_tokens
from .memory.priority import PriorityScorer
from .memory.adaptive import build_strategies, get_recommended_strategy
from .memory.window_manager import ContextWindowManager, BackgroundError
from .memory.storage import ContextStorage, SQLiteSnapshotStore, JsonFileSnapshotStore
from .memory.encryption import EncryptionService
from .memory.sessions import SessionRegistry
from .core.component_factory import ComponentFactory, ComponentBundle

__all__ = [
    'ContextLatticeError',
    'ProviderError',
    'PersistenceError',
    'ContextValidationError',
    'UnknownStrategyError',
    'ConfigurationError',
    'EncryptionError',
    'ContextConfig',
    'setup_logging',
    'LLMProvider',
    'OpenAIChatClient',
    'Role',
    'LayerName',
    'StrategyName',
    'ContentType',
    'ContextMessage',
    'TokenBudget',
    'PriorityWeights',
    'CompressionOptions',
    'CompressionResult',
    'ContextAnalysis',
    'ContextSummary',
    'TokenEstimator',
    'estimate_tokens',
    'PriorityScorer',
    'build_strategies',
    'get_recommended_strategy',
    'ContextWindowManager',
    'BackgroundError',
    'ContextStorage',
    'SQLiteSnapshotStore',
    'JsonFileSnapshotStore',
    'EncryptionService',
    'SessionRegistry',
    'ComponentFactory',
    'ComponentBundle',
]
