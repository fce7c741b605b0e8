"""
Context Window Manager

Keeps one session's conversational context under its token ceiling.

Flow per message:
    add_message → estimate tokens → append to immediate → schedule persist
    → over max_tokens? → compress older immediate entries into summarized
    → still over target? → evict lowest-priority entries → persist

State machine: idle → ingesting → compressing → evicting → idle.
Persistent-layer entries are only added or removed by explicit calls.
"""

import asyncio
import json
import logging
import re
from collections import Counter, deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Union

from ..core.config import ContextConfig
from ..errors import ContextValidationError, UnknownStrategyError
from .adaptive import AUTO, build_strategies, get_recommended_strategy, resolve_strategy_name
from .adaptive.extractive import split_sentences, top_keywords
from .debug_logger import CompressionDebugLogger
from .layers import LayeredContextStore
from .models import (
    CompressionResult,
    ContextAnalysis,
    ContextMessage,
    ContextSummary,
    LayerName,
    Role,
    SessionState,
    StrategyName,
    parse_role,
    parse_timestamp,
)
from .priority import HIGH_IMPORTANCE_KEYWORDS, PriorityScorer
from .storage import ContextStorage
from .tokens import TokenEstimator

logger = logging.getLogger(__name__)

EXPORT_VERSION = "1.0"
MAX_BACKGROUND_ERRORS = 50
FORMATTED_RECENT_LIMIT = 10

NAME_PATTERN = re.compile(r'\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\b')
ACTION_PATTERN = re.compile(r'\b(todo|to do|need to|needs to|should|will|must|remind me|follow up)\b', re.IGNORECASE)


@dataclass
class BackgroundError:
    """A failure in work the caller did not await (persistence)"""
    operation: str
    message: str
    timestamp: datetime = field(default_factory=datetime.now)
    exception: Optional[BaseException] = field(default=None, repr=False)


class ContextWindowManager:
    """
    Adaptive tiered context window for one session.

    Args:
        session_key: Identifier used for storage
        config: ContextConfig (defaults when omitted)
        llm: LLMProvider for compression and summaries (optional)
        storage: ContextStorage adapter (optional; in-memory only without it)
        estimator: TokenEstimator
        scorer: PriorityScorer for eviction order
        clock: Callable returning the current datetime
        debug_logger: CompressionDebugLogger
        on_error: Called with a BackgroundError for every background failure
    """

    def __init__(
        self,
        session_key: str = "default",
        config: Optional[ContextConfig] = None,
        llm=None,
        storage: Optional[ContextStorage] = None,
        estimator: Optional[TokenEstimator] = None,
        scorer: Optional[PriorityScorer] = None,
        clock: Optional[Callable[[], datetime]] = None,
        debug_logger: Optional[CompressionDebugLogger] = None,
        on_error: Optional[Callable[[BackgroundError], None]] = None,
    ):
        self.session_key = session_key
        self.config = config or ContextConfig()
        self.llm = llm
        self.storage = storage
        self.estimator = estimator or TokenEstimator()
        self.clock = clock or datetime.now
        self.scorer = scorer or PriorityScorer(
            weights=self.config.priority_weights,
            half_life_hours=self.config.recency_half_life_hours,
            llm=llm,
            llm_timeout_seconds=self.config.llm_timeout_seconds,
        )
        self.debug_logger = debug_logger or CompressionDebugLogger(enabled=False)
        self.on_error = on_error

        self.store = LayeredContextStore(self.config.budget, self.estimator, self.clock)
        self._configure_strategies()

        self.state = SessionState.IDLE
        self.dirty = False
        self.background_errors: Deque[BackgroundError] = deque(maxlen=MAX_BACKGROUND_ERRORS)
        self.last_compression: Optional[CompressionResult] = None
        self.last_activity = self.clock()

        self._version = 0
        self._pending: Set[asyncio.Task] = set()
        self._compress_lock = asyncio.Lock()
        self._persist_lock = asyncio.Lock()
        self._saved_version = 0

    def _configure_strategies(self) -> None:
        self.options = self.config.compression_options()
        self.strategies = build_strategies(self.llm, self.estimator, self.options)
        if self.config.compression_strategy == AUTO:
            self.default_strategy: Optional[StrategyName] = None
        else:
            self.default_strategy = resolve_strategy_name(self.config.compression_strategy)

    @property
    def max_tokens(self) -> int:
        return self.config.max_context_length

    def compression_target(self) -> int:
        return int(self.max_tokens * self.config.compression_target_ratio)

    def _touch(self) -> None:
        self.last_activity = self.clock()

    # ========================================================================
    # LIFECYCLE & PERSISTENCE
    # ========================================================================

    async def initialize(self) -> 'ContextWindowManager':
        """Load the stored snapshot for this session; start fresh if absent or unreadable."""
        if self.storage is None:
            return self

        try:
            stored = await self.storage.load_context(self.session_key)
            if stored is not None:
                self.store.load_snapshot(stored.context_data)
                logger.info(
                    f"📂 Loaded context for {self.session_key}: "
                    f"{len(self.store)} entries, {self.store.total_tokens()} tokens"
                )
            else:
                logger.debug(f"No stored context for {self.session_key} - starting fresh")
        except Exception as e:
            logger.warning(f"Failed to load context for {self.session_key}, starting fresh: {e}")
            self.store.clear()

        self.dirty = False
        return self

    def _mark_dirty(self) -> None:
        self._version += 1
        self.dirty = True
        self._touch()
        self._schedule_persist()

    def _schedule_persist(self) -> None:
        if self.storage is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (sync caller); stays dirty until save_to_storage()/flush()
            return

        snapshot = self.store.to_snapshot()
        tokens = self.store.total_tokens()
        task = loop.create_task(self._persist(snapshot, tokens, self._version))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _persist(self, snapshot: Dict[str, Any], tokens: int, version: int,
                       compression_version: Optional[str] = None) -> bool:
        # Writes are serialized and a snapshot never overwrites a newer one
        async with self._persist_lock:
            if version < self._saved_version:
                return True
            try:
                await self.storage.save_context(
                    self.session_key,
                    snapshot,
                    summary=self._summary_text(snapshot),
                    tokens_used=tokens,
                    compression_version=compression_version,
                )
            except Exception as e:
                self._record_error("persist", e)
                return False
            self._saved_version = version

        if version == self._version:
            self.dirty = False
        return True

    @staticmethod
    def _summary_text(snapshot: Dict[str, Any]) -> Optional[str]:
        entries = snapshot.get("layers", {}).get(LayerName.SUMMARIZED.value) or []
        text = "\n".join(entry.get("content", "") for entry in entries)
        return text or None

    def _record_error(self, operation: str, error: BaseException) -> None:
        logger.warning(f"⚠️  Background {operation} failed for {self.session_key}: {error}")
        record = BackgroundError(operation=operation, message=str(error), timestamp=self.clock(), exception=error)
        self.background_errors.append(record)
        if self.on_error is not None:
            try:
                self.on_error(record)
            except Exception as callback_error:
                logger.error(f"Error callback raised: {callback_error}")

    async def save_to_storage(self, compression_version: Optional[str] = None) -> bool:
        """Persist the current state now. Failures are recorded, not raised."""
        if self.storage is None:
            return False
        return await self._persist(
            self.store.to_snapshot(),
            self.store.total_tokens(),
            self._version,
            compression_version=compression_version,
        )

    async def flush(self) -> None:
        """Wait for background persists, then save anything still dirty."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        if self.dirty and self.storage is not None:
            await self.save_to_storage()

    async def close(self) -> None:
        await self.flush()

    # ========================================================================
    # INGEST
    # ========================================================================

    async def add_message(
        self,
        role: Union[str, Role],
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
        token_count: Optional[int] = None,
    ) -> ContextMessage:
        """Append a message to the immediate layer, compressing if the window overflows."""
        if not isinstance(content, str):
            raise ContextValidationError("Message content must be a string")

        self.state = SessionState.INGESTING
        try:
            entry = ContextMessage(
                role=parse_role(role),
                content=content,
                timestamp=parse_timestamp(timestamp, default=self.clock()),
                token_count=token_count,
                metadata=dict(metadata or {}),
            )
            immediate = self.store.layer(LayerName.IMMEDIATE).entries
            if immediate and entry.timestamp < immediate[-1].timestamp:
                self.store.merge(LayerName.IMMEDIATE, [entry])
            else:
                self.store.append(LayerName.IMMEDIATE, entry)
            self._mark_dirty()
            logger.debug(f"Added {entry.role.value} message ({entry.token_count} tokens) to {self.session_key}")
        finally:
            self.state = SessionState.IDLE

        if self.config.auto_compress and self.should_compress():
            await self.compress()
        return entry

    def add_persistent(
        self,
        content: str,
        priority: float = 0.0,
        metadata: Optional[Dict[str, Any]] = None,
        role: Union[str, Role] = Role.SYSTEM,
    ) -> ContextMessage:
        """Add a long-lived fact/preference. Never evicted automatically."""
        entry = ContextMessage(
            role=parse_role(role),
            content=content,
            timestamp=self.clock(),
            metadata=dict(metadata or {}),
            priority=priority,
        )
        self.store.append(LayerName.PERSISTENT, entry)
        self._mark_dirty()
        return entry

    def remove_persistent(self, entry: ContextMessage) -> bool:
        removed = self.store.remove(LayerName.PERSISTENT, entry)
        if removed:
            self._mark_dirty()
        return removed

    def clear_context(self, layer: Optional[Union[str, LayerName]] = None) -> int:
        """Clear one layer or the whole window. Returns the number of entries removed."""
        before = len(self.store)
        self.store.clear(layer)
        removed = before - len(self.store)
        self._mark_dirty()
        logger.info(f"Context cleared for {self.session_key}: {removed} entries removed")
        return removed

    async def judge_importance(self, entry: ContextMessage) -> float:
        """Store an LLM (or heuristic) importance rating on the entry's metadata."""
        score = await self.scorer.judge_importance(entry)
        entry.metadata["importance"] = score
        self._mark_dirty()
        return score

    # ========================================================================
    # READS
    # ========================================================================

    def get_messages(self) -> List[ContextMessage]:
        """All entries: persistent, then summarized, then immediate."""
        return self.store.entries()

    def get_recent_messages(self, count: int) -> List[ContextMessage]:
        if count <= 0:
            return []
        return self.get_messages()[-count:]

    def get_messages_by_role(self, role: Union[str, Role]) -> List[ContextMessage]:
        role = parse_role(role)
        return [entry for entry in self.get_messages() if entry.role == role]

    def should_compress(self) -> bool:
        return self.store.total_tokens() > self.max_tokens

    def analyze_context(self) -> ContextAnalysis:
        total = self.store.total_tokens()
        count = len(self.store)
        needed = total > self.max_tokens
        suggested = None
        if needed:
            suggested = 1 - self.compression_target() / total

        return ContextAnalysis(
            total_tokens=total,
            message_count=count,
            average_tokens_per_message=total / count if count else 0.0,
            context_utilization=total / self.max_tokens * 100,
            compression_needed=needed,
            suggested_compression_ratio=suggested,
        )

    def get_context_window(self) -> Dict[str, Any]:
        total = self.store.total_tokens()
        return {
            "messages": [entry.to_dict() for entry in self.get_messages()],
            "total_tokens": total,
            "max_tokens": self.max_tokens,
            "utilization_percentage": total / self.max_tokens * 100,
        }

    def get_context_stats(self) -> Dict[str, Any]:
        return {
            "session_key": self.session_key,
            "state": self.state.value,
            "total_tokens": self.store.total_tokens(),
            "max_tokens": self.max_tokens,
            "layers": self.store.usage(),
            "dirty": self.dirty,
            "background_errors": len(self.background_errors),
            "last_activity": self.last_activity.isoformat(),
            "last_compression": self.last_compression.strategy.value if self.last_compression else None,
        }

    def get_formatted_context(self, max_tokens: Optional[int] = None) -> str:
        """
        Prompt-ready context: important information, previous summaries
        (newest first), then the last 10 immediate messages in order.
        Lines are dropped once max_tokens would be exceeded.
        """
        sections = []

        persistent = sorted(self.store.entries(LayerName.PERSISTENT), key=lambda e: -e.priority)
        if persistent:
            sections.append(("=== Important Information ===", [e.content for e in persistent]))

        summarized = sorted(self.store.entries(LayerName.SUMMARIZED), key=lambda e: e.timestamp, reverse=True)
        if summarized:
            sections.append(("=== Previous Context Summary ===", [e.content for e in summarized]))

        immediate = self.store.entries(LayerName.IMMEDIATE)[-FORMATTED_RECENT_LIMIT:]
        if immediate:
            sections.append(("=== Recent Messages ===", [f"{e.role.value}: {e.content}" for e in immediate]))

        lines: List[str] = []
        for header, body in sections:
            block = [header] + body + [""]
            for line in block:
                candidate = "\n".join(lines + [line]).strip()
                if max_tokens is not None and self.estimator.estimate(candidate) > max_tokens:
                    return "\n".join(lines).strip()
                lines.append(line)

        return "\n".join(lines).strip()

    # ========================================================================
    # COMPRESSION & EVICTION
    # ========================================================================

    def _choose_strategy(self, strategy, segment: List[ContextMessage], target: int) -> StrategyName:
        if strategy is not None and strategy != AUTO:
            return resolve_strategy_name(strategy)
        if strategy is None and self.default_strategy is not None:
            return self.default_strategy
        return get_recommended_strategy(
            self.config.content_type,
            self.estimator.count(segment),
            target,
        )

    async def compress(self, strategy: Optional[Union[str, StrategyName]] = None) -> CompressionResult:
        """
        Bring the window back under its target (max_tokens × 0.8).

        No-op when the window is not over max_tokens. Raises UnknownStrategyError
        for unregistered strategy names; any other failure returns success=False
        and leaves the layers as they were.
        """
        if strategy is not None and strategy != AUTO:
            resolve_strategy_name(strategy)

        total_before = self.store.total_tokens()
        fallback_name = (
            resolve_strategy_name(strategy) if strategy not in (None, AUTO)
            else self.default_strategy or StrategyName.HYBRID
        )

        if not self.should_compress():
            return CompressionResult(
                success=True,
                strategy=fallback_name,
                original_tokens=total_before,
                compressed_tokens=total_before,
                compression_ratio=1.0,
                details={"skipped": "under_limit"},
            )

        async with self._compress_lock:
            saved_layers = {name: self.store.entries(name) for name in LayerName}
            self.debug_logger.start_run(self.session_key)
            self.debug_logger.log_before(self.store.to_snapshot())

            try:
                result = await self._compress_and_evict(strategy, fallback_name, total_before)
            except UnknownStrategyError:
                self._restore(saved_layers)
                raise
            except Exception as e:
                logger.error(f"Compression failed for {self.session_key}: {e}")
                self._restore(saved_layers)
                # Supersedes any persist scheduled before the failure
                self._mark_dirty()
                result = CompressionResult(
                    success=False,
                    strategy=fallback_name,
                    original_tokens=total_before,
                    compressed_tokens=total_before,
                    compression_ratio=1.0,
                    error=str(e),
                )
                self.debug_logger.log_result(result)
                return result
            finally:
                self.state = SessionState.IDLE
                self.debug_logger.end_run()

        self.last_compression = result
        self._version += 1
        self.dirty = True
        self._touch()
        await self.save_to_storage(compression_version=result.strategy.value)
        return result

    def _restore(self, saved_layers: Dict[LayerName, List[ContextMessage]]) -> None:
        for name, entries in saved_layers.items():
            self.store.replace(name, entries)

    async def _compress_and_evict(self, strategy, fallback_name: StrategyName, total_before: int) -> CompressionResult:
        self.state = SessionState.COMPRESSING
        target = self.compression_target()
        immediate = self.store.entries(LayerName.IMMEDIATE)
        result: Optional[CompressionResult] = None
        skipped_reason = None

        if not self.config.compression_enabled:
            skipped_reason = "compression_disabled"
        elif len(immediate) < self.config.min_messages_for_compression:
            skipped_reason = "too_few_messages"
        else:
            keep = min(self.config.preserve_last_n, len(immediate))
            segment = immediate[:len(immediate) - keep]
            preserved_tokens = self.estimator.count(immediate[len(immediate) - keep:])
            other_tokens = total_before - self.store.layer_tokens(LayerName.IMMEDIATE)
            segment_target = max(1, target - other_tokens - preserved_tokens)

            if not segment:
                skipped_reason = "nothing_to_compress"
            else:
                name = self._choose_strategy(strategy, segment, segment_target)
                options = replace(self.options, now=self.clock())
                result = await self.strategies[name].compress(immediate, segment_target, options)

                if result.success:
                    self.store.remove_many(LayerName.IMMEDIATE, segment)
                    self.store.merge(LayerName.SUMMARIZED, result.output_messages)
                    logger.info(
                        f"🗜️  Compressed {len(segment)} entries with {name.value} for {self.session_key}: "
                        f"{result.tokens_reduced} tokens saved (ratio {result.compression_ratio:.2f})"
                    )

        if skipped_reason:
            logger.info(f"Compression skipped for {self.session_key} ({skipped_reason}), evicting only")

        condensed = 0
        if self.config.compression_enabled:
            condensed = await self._condense_summaries()

        self.state = SessionState.EVICTING
        evicted = self.evict(target)
        total_after = self.store.total_tokens()

        if result is None:
            result = CompressionResult(
                success=True,
                strategy=fallback_name,
                original_tokens=total_before,
                compressed_tokens=total_after,
                compression_ratio=total_after / total_before if total_before else 1.0,
                details={"skipped": skipped_reason},
            )

        result.details.update({
            "summaries_condensed": condensed,
            "evicted": len(evicted),
            "total_tokens_before": total_before,
            "total_tokens_after": total_after,
        })

        self.debug_logger.log_after(self.store.to_snapshot())
        self.debug_logger.log_result(result, evicted)
        return result

    async def _condense_summaries(self) -> int:
        """
        Fold the summarized layer into one summary when it exceeds its budget share.

        Returns the number of entries folded (0 when the layer fits).
        """
        if not self.store.over_budget(LayerName.SUMMARIZED):
            return 0

        entries = self.store.entries(LayerName.SUMMARIZED)
        budget = self.store.budget.summarized
        options = replace(self.options, now=self.clock(), preserve_last_n=0)
        result = await self.strategies[StrategyName.SUMMARIZE].compress(entries, budget, options)

        represented = sum(
            entry.metadata.get("original_message_count", 1) if entry.is_summary else 1
            for entry in entries
        )
        for summary in result.compressed_messages:
            summary.metadata["original_message_count"] = represented
            summary.metadata["condensed_entries"] = len(entries)

        self.store.replace(LayerName.SUMMARIZED, result.compressed_messages)
        logger.info(
            f"🗜️  Condensed {len(entries)} summarized entries for {self.session_key}: "
            f"{result.original_tokens} → {self.store.layer_tokens(LayerName.SUMMARIZED)} tokens "
            f"(budget {budget})"
        )
        return len(entries)

    async def compress_context(self, strategy: Optional[Union[str, StrategyName]] = None) -> CompressionResult:
        return await self.compress(strategy)

    def evict(self, target_tokens: Optional[int] = None) -> List[ContextMessage]:
        """
        Remove lowest-priority entries until total tokens ≤ target.

        Immediate entries go first (the preserved tail is never evicted),
        then summarized ones. Persistent entries are never evicted.
        """
        target = self.compression_target() if target_tokens is None else target_tokens
        evicted: List[ContextMessage] = []

        while self.store.total_tokens() > target:
            immediate = self.store.entries(LayerName.IMMEDIATE)
            keep = min(self.config.preserve_last_n, len(immediate))
            layer = LayerName.IMMEDIATE
            candidates = immediate[:len(immediate) - keep]
            if not candidates:
                layer = LayerName.SUMMARIZED
                candidates = self.store.entries(LayerName.SUMMARIZED)
            if not candidates:
                logger.warning(
                    f"Cannot reach {target} tokens for {self.session_key}: "
                    f"only preserved and persistent entries remain ({self.store.total_tokens()} tokens)"
                )
                break

            ranked = self.scorer.rank(candidates, now=self.clock(), corpus=self.store.entries())
            score, victim = ranked[0]
            self.store.remove(layer, victim)
            evicted.append(victim)
            logger.debug(f"Evicted {layer.value} entry (score {score:.3f}, {victim.token_count} tokens)")

        if evicted:
            self._mark_dirty()
            logger.info(f"Evicted {len(evicted)} entries from {self.session_key}")
        return evicted

    # ========================================================================
    # EXPORT / IMPORT
    # ========================================================================

    def export_context(self) -> str:
        messages = []
        for name in (LayerName.PERSISTENT, LayerName.SUMMARIZED, LayerName.IMMEDIATE):
            for entry in self.store.entries(name):
                data = entry.to_dict()
                data["layer"] = name.value
                messages.append(data)

        export_data = {
            "version": EXPORT_VERSION,
            "timestamp": self.clock().isoformat(),
            "messages": messages,
            "metadata": {
                "totalMessages": len(messages),
                "totalTokens": self.store.total_tokens(),
            },
        }
        return json.dumps(export_data, indent=2)

    def import_context(self, data: Union[str, Dict[str, Any]]) -> int:
        """
        Replace the window with exported data.

        Missing fields default (role user, empty content, timestamp now);
        `layer` defaults to immediate. Raises ContextValidationError on bad input.
        """
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except json.JSONDecodeError as e:
                raise ContextValidationError(f"Invalid context data: {e}") from e

        if not isinstance(data, dict) or not isinstance(data.get("messages"), list):
            raise ContextValidationError("Invalid context data: missing messages array")

        layers: Dict[LayerName, List[ContextMessage]] = {name: [] for name in LayerName}
        for item in data["messages"]:
            if not isinstance(item, dict):
                raise ContextValidationError("Invalid context data: messages must be objects")
            try:
                layer = LayerName(item.get("layer") or LayerName.IMMEDIATE.value)
            except (ValueError, TypeError):
                raise ContextValidationError(f"Invalid layer: {item.get('layer')!r}") from None
            entry = ContextMessage.from_dict(item)
            if entry.token_count is None:
                entry.token_count = self.estimator.estimate(entry.content)
            layers[layer].append(entry)

        saved_layers = {name: self.store.entries(name) for name in LayerName}
        try:
            for name, entries in layers.items():
                if name != LayerName.PERSISTENT:
                    entries = sorted(entries, key=lambda e: e.timestamp)
                self.store.replace(name, entries)
        except Exception:
            self._restore(saved_layers)
            raise
        self._mark_dirty()

        count = sum(len(entries) for entries in layers.values())
        logger.info(f"Context imported for {self.session_key}: {count} messages")
        return count

    # ========================================================================
    # OPTIONS & SUMMARY
    # ========================================================================

    def update_options(self, **changes) -> ContextConfig:
        """Update config fields (e.g. max_context_length, compression_strategy, preserve_last_n)."""
        new_config = self.config.with_updates(**changes)
        if new_config.compression_strategy != AUTO:
            resolve_strategy_name(new_config.compression_strategy)

        self.config = new_config
        self.store.budget = new_config.budget
        self.scorer.weights = new_config.priority_weights
        self.scorer.half_life_hours = new_config.recency_half_life_hours
        self._configure_strategies()
        logger.debug(f"Context options updated for {self.session_key}: {sorted(changes)}")
        return new_config

    async def generate_summary(self) -> ContextSummary:
        """Structured summary via the LLM, or a heuristic digest when it is unavailable."""
        messages = self.get_messages()
        if not messages:
            return ContextSummary(conversation_flow="No conversation yet")

        if self.llm is not None:
            conversation_text = "\n\n".join(f"{m.role.value.upper()}: {m.content}" for m in messages)
            prompt = (
                "Analyze the following conversation and provide a structured summary:\n\n"
                f"{conversation_text}\n\n"
                "Provide a JSON summary with:\n"
                "1. mainTopics: Array of main topics discussed\n"
                "2. keyEntities: Array of important entities mentioned (people, places, concepts)\n"
                "3. conversationFlow: Brief description of how the conversation progressed\n"
                "4. importantFacts: Array of key facts or decisions\n"
                "5. actionItems: Array of any action items or tasks mentioned\n\n"
                "Return only valid JSON."
            )
            try:
                response = await asyncio.wait_for(
                    self.llm.complete(
                        [{"role": "user", "content": prompt}],
                        temperature=0.3,
                        max_tokens=500,
                    ),
                    timeout=self.config.llm_timeout_seconds,
                )
                json_match = re.search(r'\{.*\}', response or "", re.DOTALL)
                if not json_match:
                    raise ValueError("no JSON object in response")
                data = json.loads(json_match.group(0))
                return ContextSummary(
                    main_topics=list(data.get("mainTopics") or []),
                    key_entities=list(data.get("keyEntities") or []),
                    conversation_flow=str(data.get("conversationFlow") or ""),
                    important_facts=list(data.get("importantFacts") or []),
                    action_items=list(data.get("actionItems") or []),
                )
            except Exception as e:
                logger.warning(f"LLM summary failed for {self.session_key}, using heuristic summary: {e}")

        return heuristic_summary(messages)


def heuristic_summary(messages: List[ContextMessage]) -> ContextSummary:
    """Keyword/entity/fact digest of a conversation without an LLM."""
    text = " ".join(m.content for m in messages)

    entities = []
    for name in NAME_PATTERN.findall(text):
        if name not in entities:
            entities.append(name)

    sentences = split_sentences(text)
    facts = [s for s in sentences if any(k in s.lower() for k in HIGH_IMPORTANCE_KEYWORDS)]
    actions = [s for s in sentences if ACTION_PATTERN.search(s)]

    roles = Counter(m.role.value for m in messages)
    flow = (
        f"{len(messages)} messages "
        f"({roles.get('user', 0)} user, {roles.get('assistant', 0)} assistant, {roles.get('system', 0)} system)"
    )

    return ContextSummary(
        main_topics=top_keywords(text, 5, min_length=5),
        key_entities=entities[:10],
        conversation_flow=flow,
        important_facts=facts[:10],
        action_items=actions[:10],
    )
