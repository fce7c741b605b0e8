"""
Configuration for the context window manager.

Values come from environment variables (prefix CONTEXT_LATTICE_), after
loading a local .env file with python-dotenv. Everything can also be passed
directly to ContextConfig for tests and embedding.
"""

import os
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from ..errors import ConfigurationError
from ..memory.models import (
    CompressionOptions,
    ContentType,
    PriorityWeights,
    StrategyName,
    TokenBudget,
)

ENV_PREFIX = "CONTEXT_LATTICE_"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def _env(name: str) -> Optional[str]:
    return os.getenv(ENV_PREFIX + name)


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from None


def _env_bool(name: str, default: bool) -> bool:
    raw = _env(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigurationError(f"{ENV_PREFIX}{name} must be a boolean, got {raw!r}")


@dataclass
class ContextConfig:
    """Settings for one ContextWindowManager (and the registry that owns it)."""
    max_context_length: int = 8000
    preserve_last_n: int = 5
    compression_model: str = "gpt-4o-mini"
    compression_strategy: str = StrategyName.HYBRID.value   # a StrategyName value or "auto"
    compression_enabled: bool = True
    auto_compress: bool = True
    min_messages_for_compression: int = 5
    compression_target_ratio: float = 0.8
    content_type: str = ContentType.CONVERSATION.value      # used by "auto" selection

    # Strategy knobs
    temperature: float = 0.3
    max_summary_tokens: int = 500
    hybrid_entry_threshold: int = 20
    hybrid_selective_share: float = 0.6
    llm_timeout_seconds: float = 30.0

    # Priority scoring
    priority_weights: PriorityWeights = field(default_factory=PriorityWeights)
    recency_half_life_hours: float = 12.0

    # Sessions & persistence
    session_idle_timeout: int = 3600
    db_path: str = "context_lattice.db"
    encryption_enabled: bool = False
    encryption_master_key: Optional[str] = None

    # Observability
    log_level: str = "INFO"
    log_file: Optional[str] = None
    debug_log_dir: Optional[str] = None
    use_embeddings: bool = False

    budget: Optional[TokenBudget] = None

    def __post_init__(self):
        if self.max_context_length <= 0:
            raise ConfigurationError("max_context_length must be positive")
        if self.preserve_last_n < 0:
            raise ConfigurationError("preserve_last_n must be non-negative")
        if self.min_messages_for_compression < 0:
            raise ConfigurationError("min_messages_for_compression must be non-negative")
        if not 0 < self.compression_target_ratio <= 1:
            raise ConfigurationError("compression_target_ratio must be in (0, 1]")
        if not 0 <= self.hybrid_selective_share <= 1:
            raise ConfigurationError("hybrid_selective_share must be in [0, 1]")
        if self.budget is None:
            self.budget = TokenBudget.from_total(self.max_context_length)
        elif self.budget.total != self.max_context_length:
            raise ConfigurationError(
                f"budget.total ({self.budget.total}) must equal max_context_length ({self.max_context_length})"
            )

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None, **overrides) -> 'ContextConfig':
        """Build a config from CONTEXT_LATTICE_* environment variables."""
        load_dotenv(dotenv_path)

        values: Dict[str, Any] = {
            "max_context_length": _env_int("MAX_CONTEXT_LENGTH", 8000),
            "preserve_last_n": _env_int("PRESERVE_LAST_N", 5),
            "compression_model": _env("COMPRESSION_MODEL") or "gpt-4o-mini",
            "compression_strategy": _env("COMPRESSION_STRATEGY") or StrategyName.HYBRID.value,
            "compression_enabled": _env_bool("COMPRESSION_ENABLED", True),
            "auto_compress": _env_bool("AUTO_COMPRESS", True),
            "min_messages_for_compression": _env_int("MIN_MESSAGES_FOR_COMPRESSION", 5),
            "content_type": _env("CONTENT_TYPE") or ContentType.CONVERSATION.value,
            "llm_timeout_seconds": _env_float("LLM_TIMEOUT", 30.0),
            "recency_half_life_hours": _env_float("RECENCY_HALF_LIFE_HOURS", 12.0),
            "session_idle_timeout": _env_int("SESSION_IDLE_TIMEOUT", 3600),
            "db_path": _env("DB_PATH") or "context_lattice.db",
            "encryption_enabled": _env_bool("ENCRYPTION_ENABLED", False),
            "encryption_master_key": _env("ENCRYPTION_MASTER_KEY"),
            "log_level": _env("LOG_LEVEL") or "INFO",
            "log_file": _env("LOG_FILE"),
            "debug_log_dir": _env("DEBUG_LOG_DIR"),
            "use_embeddings": _env_bool("USE_EMBEDDINGS", False),
        }
        values.update(overrides)
        return cls(**values)

    def compression_options(self, **overrides) -> CompressionOptions:
        options = CompressionOptions(
            preserve_last_n=self.preserve_last_n,
            temperature=self.temperature,
            max_summary_tokens=self.max_summary_tokens,
            hybrid_entry_threshold=self.hybrid_entry_threshold,
            hybrid_selective_share=self.hybrid_selective_share,
            llm_timeout_seconds=self.llm_timeout_seconds,
        )
        return replace(options, **overrides) if overrides else options

    def with_updates(self, **changes) -> 'ContextConfig':
        """Copy with changes; the budget follows a new max_context_length."""
        if "max_context_length" in changes and "budget" not in changes:
            changes["budget"] = None
        return replace(self, **changes)
