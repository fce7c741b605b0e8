"""
Context Window - Data Models

This module defines the data contracts for the tiered context window:
- Messages and the three context layers (immediate / summarized / persistent)
- Token budgets and priority weights
- Compression options and results
- Context analysis and structured summaries
"""

from dataclasses import dataclass, field, asdict
from typing import List, Dict, Optional, Any
from datetime import datetime
from enum import Enum

from ..errors import ContextValidationError


# ============================================================================
# ENUMS & TYPE DEFINITIONS
# ============================================================================

class Role(str, Enum):
    """Author of a context message"""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class LayerName(str, Enum):
    """Partitions of the context window by recency/durability"""
    IMMEDIATE = "immediate"      # Raw recent turns
    SUMMARIZED = "summarized"    # Compacted history
    PERSISTENT = "persistent"    # Long-lived facts/preferences, never auto-evicted


class StrategyName(str, Enum):
    """Registered compression strategies"""
    SUMMARIZE = "summarize"
    KEYWORD_EXTRACT = "keyword_extract"
    SEMANTIC_CLUSTER = "semantic_cluster"
    TEMPORAL_COMPRESS = "temporal_compress"
    SELECTIVE = "selective"
    HYBRID = "hybrid"


class ContentType(str, Enum):
    """Content categories used when recommending a strategy"""
    CONVERSATION = "conversation"
    FACTS = "facts"
    PREFERENCES = "preferences"
    GENERAL = "general"


class SessionState(str, Enum):
    """Window manager state machine"""
    IDLE = "idle"
    INGESTING = "ingesting"
    COMPRESSING = "compressing"
    EVICTING = "evicting"


SUMMARY_TYPE = "summary"


def parse_timestamp(value: Any, default: Optional[datetime] = None) -> datetime:
    """
    Coerce a stored timestamp into a naive local datetime.

    Accepts datetime objects and ISO strings (including a trailing 'Z').
    Falls back to `default` (or now) when the value is missing.
    """
    if value is None or value == "":
        return default or datetime.now()

    if isinstance(value, datetime):
        timestamp = value
    elif isinstance(value, str):
        try:
            timestamp = datetime.fromisoformat(value.replace('Z', '+00:00'))
        except ValueError as e:
            raise ContextValidationError(f"Invalid timestamp: {value!r}") from e
    else:
        raise ContextValidationError(f"Invalid timestamp: {value!r}")

    if timestamp.tzinfo is not None:
        timestamp = timestamp.astimezone().replace(tzinfo=None)
    return timestamp


def parse_role(value: Any) -> Role:
    """Validate a role value (str or Role)."""
    try:
        return Role(value)
    except (ValueError, TypeError) as e:
        raise ContextValidationError(f"Invalid role: {value!r}") from e


# ============================================================================
# CORE STRUCTURES
# ============================================================================

@dataclass
class ContextMessage:
    """
    One entry of the context window.

    Entries are never edited after they have been folded into a summary;
    the summary becomes a new entry with metadata["type"] == "summary".
    """
    role: Role
    content: str
    timestamp: datetime = field(default_factory=datetime.now)
    token_count: Optional[int] = None        # Filled by the TokenEstimator on ingest
    metadata: Dict[str, Any] = field(default_factory=dict)
    priority: float = 0.0                    # Ordering hint for the persistent layer

    @property
    def is_summary(self) -> bool:
        return self.metadata.get("type") == SUMMARY_TYPE

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-safe dictionary"""
        return {
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "tokens": self.token_count,
            "metadata": self.metadata,
            "priority": self.priority,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ContextMessage':
        """
        Rebuild a message, defaulting unknown fields.

        role -> "user", content -> "", timestamp -> now.
        """
        if not isinstance(data, dict):
            raise ContextValidationError(f"Message must be an object, got {type(data).__name__}")

        tokens = data.get("tokens", data.get("token_count"))
        if tokens is not None:
            if isinstance(tokens, bool) or not isinstance(tokens, (int, float)) or tokens < 0:
                raise ContextValidationError(f"Invalid token count: {tokens!r}")
            tokens = int(tokens)

        content = data.get("content")
        if content is None:
            content = ""
        elif not isinstance(content, str):
            raise ContextValidationError(f"Message content must be a string, got {type(content).__name__}")

        metadata = data.get("metadata")
        if metadata is None:
            metadata = {}
        elif not isinstance(metadata, dict):
            raise ContextValidationError(f"Message metadata must be an object, got {type(metadata).__name__}")

        priority = data.get("priority")
        if priority is None:
            priority = 0.0
        elif isinstance(priority, bool) or not isinstance(priority, (int, float)):
            raise ContextValidationError(f"Invalid priority: {priority!r}")

        return cls(
            role=parse_role(data.get("role") or Role.USER.value),
            content=content,
            timestamp=parse_timestamp(data.get("timestamp")),
            token_count=tokens,
            metadata=dict(metadata),
            priority=float(priority),
        )


@dataclass
class ContextLayer:
    """
    One tier of the window.

    token_count is always the exact sum of its entries' token counts;
    only LayeredContextStore mutates layers and recomputes it.
    """
    name: LayerName
    entries: List[ContextMessage] = field(default_factory=list)
    token_count: int = 0
    last_updated: datetime = field(default_factory=datetime.now)

    def recompute(self, now: Optional[datetime] = None) -> None:
        self.token_count = sum(entry.token_count or 0 for entry in self.entries)
        self.last_updated = now or datetime.now()

    def __len__(self) -> int:
        return len(self.entries)


@dataclass
class TokenBudget:
    """
    Token allotment for the whole window and each layer.
    Layer shares must sum to no more than the total.
    """
    total: int
    immediate: int
    summarized: int
    persistent: int

    DEFAULT_SHARES = (0.40, 0.35, 0.25)

    def __post_init__(self):
        for name in ("total", "immediate", "summarized", "persistent"):
            if getattr(self, name) < 0:
                raise ContextValidationError(f"Token budget '{name}' must be non-negative")
        if self.immediate + self.summarized + self.persistent > self.total:
            raise ContextValidationError(
                f"Layer budgets ({self.immediate}+{self.summarized}+{self.persistent}) "
                f"exceed total {self.total}"
            )

    @classmethod
    def from_total(cls, total: int, shares=None) -> 'TokenBudget':
        immediate, summarized, persistent = shares or cls.DEFAULT_SHARES
        return cls(
            total=total,
            immediate=int(total * immediate),
            summarized=int(total * summarized),
            persistent=int(total * persistent),
        )

    def for_layer(self, layer: LayerName) -> int:
        return getattr(self, LayerName(layer).value)


@dataclass
class PriorityWeights:
    """
    Weights of the five priority sub-scores.
    Expected to sum to 1.0; scores are only comparable within one session.
    """
    recency: float = 0.30
    frequency: float = 0.20
    importance: float = 0.25
    user_interaction: float = 0.15
    sentiment: float = 0.10

    def __post_init__(self):
        for name, value in asdict(self).items():
            if value < 0:
                raise ContextValidationError(f"Priority weight '{name}' must be non-negative")

    def total(self) -> float:
        return sum(asdict(self).values())

    def is_normalized(self, tolerance: float = 1e-6) -> bool:
        return abs(self.total() - 1.0) <= tolerance


# ============================================================================
# COMPRESSION
# ============================================================================

@dataclass
class CompressionOptions:
    """Per-call knobs shared by all strategies"""
    preserve_last_n: int = 5
    temperature: float = 0.3
    max_summary_tokens: int = 500
    hybrid_entry_threshold: int = 20     # Segments longer than this go straight to Summarize
    hybrid_selective_share: float = 0.6  # Head share handled by Selective in Hybrid
    llm_timeout_seconds: float = 30.0
    now: Optional[datetime] = None       # Reference time for temporal bucketing


@dataclass
class CompressionResult:
    """Outcome of one compression run"""
    success: bool
    strategy: StrategyName
    compressed_content: str = ""
    compressed_messages: List[ContextMessage] = field(default_factory=list)
    original_tokens: int = 0
    compressed_tokens: int = 0
    compression_ratio: float = 1.0       # compressed_tokens / original_tokens
    loss_estimate: float = 0.0
    preserved_count: int = 0             # Trailing entries of compressed_messages left untouched
    used_fallback: bool = False
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def tokens_reduced(self) -> int:
        return self.original_tokens - self.compressed_tokens

    @property
    def output_messages(self) -> List[ContextMessage]:
        """Compressed output without the preserved tail"""
        if self.preserved_count == 0:
            return list(self.compressed_messages)
        return list(self.compressed_messages[:-self.preserved_count])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "strategy": self.strategy.value,
            "compressed_content": self.compressed_content,
            "compressed_messages": [m.to_dict() for m in self.compressed_messages],
            "original_tokens": self.original_tokens,
            "compressed_tokens": self.compressed_tokens,
            "compression_ratio": self.compression_ratio,
            "loss_estimate": self.loss_estimate,
            "preserved_count": self.preserved_count,
            "used_fallback": self.used_fallback,
            "error": self.error,
            "details": self.details,
        }


# ============================================================================
# ANALYSIS
# ============================================================================

@dataclass
class ContextAnalysis:
    """Read-only view of the window's size against its ceiling"""
    total_tokens: int
    message_count: int
    average_tokens_per_message: float
    context_utilization: float           # Percent of max_tokens
    compression_needed: bool
    suggested_compression_ratio: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ContextSummary:
    """Structured digest of a conversation"""
    main_topics: List[str] = field(default_factory=list)
    key_entities: List[str] = field(default_factory=list)
    conversation_flow: str = ""
    important_facts: List[str] = field(default_factory=list)
    action_items: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
