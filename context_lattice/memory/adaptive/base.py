"""
Common machinery for compression strategies.

A strategy receives a chronological list of entries and a token target.
The last `preserve_last_n` entries are passed through untouched; the rest
(the segment) are reduced by `_compress_segment`. Provider failures never
escape: `_complete` returns None and the strategy takes its fallback path.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from ..models import (
    CompressionOptions,
    CompressionResult,
    ContextMessage,
    Role,
    StrategyName,
    SUMMARY_TYPE,
)
from ..tokens import TokenEstimator

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You compress conversation history for an AI assistant's context window."


@dataclass
class SegmentOutput:
    """What a strategy produced for the non-preserved part of its input"""
    messages: List[ContextMessage]
    loss_estimate: float
    used_fallback: bool = False
    content: str = ""
    details: Dict[str, Any] = field(default_factory=dict)


class CompressionStrategy(ABC):
    """
    Base class for all strategies.

    Args:
        llm: LLMProvider (optional; strategies fall back when it is None or fails)
        estimator: TokenEstimator shared with the window
        options: Default CompressionOptions when compress() gets none
    """

    name: StrategyName
    ratio_estimate: float = 0.5

    def __init__(
        self,
        llm=None,
        estimator: Optional[TokenEstimator] = None,
        options: Optional[CompressionOptions] = None,
    ):
        self.llm = llm
        self.estimator = estimator or TokenEstimator()
        self.options = options or CompressionOptions()

    def estimate_compression_ratio(self) -> float:
        return self.ratio_estimate

    async def compress(
        self,
        entries: Sequence[ContextMessage],
        target_tokens: int,
        options: Optional[CompressionOptions] = None,
    ) -> CompressionResult:
        """
        Compress entries toward target_tokens.

        target_tokens budgets the compressed output; the preserved tail is extra.
        """
        options = options or self.options
        entries = list(entries)
        for entry in entries:
            if entry.token_count is None:
                entry.token_count = self.estimator.estimate(entry.content)

        keep = min(max(0, options.preserve_last_n), len(entries))
        segment = entries[:len(entries) - keep]
        preserved = entries[len(entries) - keep:]
        original_tokens = self.estimator.count(entries)

        if not segment:
            return CompressionResult(
                success=True,
                strategy=self.name,
                compressed_messages=list(entries),
                original_tokens=original_tokens,
                compressed_tokens=original_tokens,
                compression_ratio=1.0,
                preserved_count=len(preserved),
            )

        segment_tokens = self.estimator.count(segment)
        cap = max(0, min(target_tokens, segment_tokens))

        output = await self._compress_segment(segment, cap, options)
        messages = self._enforce_budget(output.messages, cap)

        compressed_tokens = self.estimator.count(messages) + self.estimator.count(preserved)
        ratio = compressed_tokens / original_tokens if original_tokens else 1.0
        content = output.content or "\n".join(m.content for m in messages)

        logger.info(
            f"🗜️  {self.name.value}: {len(segment)} entries, "
            f"{original_tokens} → {compressed_tokens} tokens"
            f"{' (fallback)' if output.used_fallback else ''}"
        )

        return CompressionResult(
            success=True,
            strategy=self.name,
            compressed_content=content,
            compressed_messages=messages + preserved,
            original_tokens=original_tokens,
            compressed_tokens=compressed_tokens,
            compression_ratio=min(ratio, 1.0),
            loss_estimate=min(max(output.loss_estimate, 0.0), 1.0),
            preserved_count=len(preserved),
            used_fallback=output.used_fallback,
            details=output.details,
        )

    @abstractmethod
    async def _compress_segment(
        self,
        segment: List[ContextMessage],
        target_tokens: int,
        options: CompressionOptions,
    ) -> SegmentOutput:
        """Reduce the segment; must not raise for provider failures."""

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    async def _complete(self, prompt: str, options: CompressionOptions, max_tokens: int) -> Optional[str]:
        """Single LLM call. Returns None on any failure or empty output."""
        if self.llm is None:
            return None

        try:
            response = await asyncio.wait_for(
                self.llm.complete(
                    [
                        {"role": "system", "content": SYSTEM_PROMPT},
                        {"role": "user", "content": prompt},
                    ],
                    temperature=options.temperature,
                    max_tokens=max(1, max_tokens),
                ),
                timeout=options.llm_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"{self.name.value}: LLM call timed out after {options.llm_timeout_seconds}s, using fallback")
            return None
        except Exception as e:
            logger.warning(f"{self.name.value}: LLM call failed, using fallback: {e}")
            return None

        if not isinstance(response, str) or not response.strip():
            logger.warning(f"{self.name.value}: LLM returned empty output, using fallback")
            return None
        return response.strip()

    @staticmethod
    def format_transcript(segment: Sequence[ContextMessage]) -> str:
        """ROLE: content lines; prior summaries are folded in as raw text."""
        lines = []
        for entry in segment:
            if entry.is_summary:
                lines.append(f"Previous summary: {entry.content}")
            else:
                lines.append(f"{entry.role.value.upper()}: {entry.content}")
        return "\n".join(lines)

    @staticmethod
    def plain_text(segment: Sequence[ContextMessage]) -> str:
        return " ".join(entry.content.strip() for entry in segment if entry.content.strip())

    def summary_entry(
        self,
        content: str,
        segment: Sequence[ContextMessage],
        options: CompressionOptions,
        **extra_metadata,
    ) -> ContextMessage:
        """New system entry standing in for `segment`."""
        metadata = {
            "type": SUMMARY_TYPE,
            "strategy": self.name.value,
            "original_message_count": len(segment),
            "compression_timestamp": (options.now or datetime.now()).isoformat(),
        }
        metadata.update(extra_metadata)
        return ContextMessage(
            role=Role.SYSTEM,
            content=content,
            timestamp=segment[-1].timestamp if segment else (options.now or datetime.now()),
            token_count=self.estimator.estimate(content),
            metadata=metadata,
        )

    def fitted(self, text: str, max_tokens: int) -> str:
        return self.estimator.fit(text.strip(), max_tokens)

    def _enforce_budget(self, messages: List[ContextMessage], cap: int) -> List[ContextMessage]:
        """
        Bring output under cap: drop the oldest verbatim entries first,
        then trim summary entries in order.
        """
        if self.estimator.count(messages) <= cap:
            return messages

        verbatim = [m for m in messages if not m.is_summary]
        verbatim_tokens = self.estimator.count(verbatim)
        dropped = set()
        for entry in verbatim:
            if verbatim_tokens <= cap:
                break
            dropped.add(id(entry))
            verbatim_tokens -= entry.token_count or 0

        remaining = cap - verbatim_tokens
        result = []
        for entry in messages:
            if id(entry) in dropped:
                continue
            if entry.is_summary:
                if (entry.token_count or 0) > remaining:
                    content = self.estimator.fit(entry.content, remaining)
                    if not content:
                        continue
                    entry = ContextMessage(
                        role=entry.role,
                        content=content,
                        timestamp=entry.timestamp,
                        token_count=self.estimator.estimate(content),
                        metadata=dict(entry.metadata),
                    )
                remaining -= entry.token_count or 0
            result.append(entry)

        logger.debug(f"{self.name.value}: trimmed output to {self.estimator.count(result)}/{cap} tokens")
        return result
