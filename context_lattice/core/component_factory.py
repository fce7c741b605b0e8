"""
Component Factory for context_lattice

Centralized component initialization with dependency injection. Every
entry point (library use, CLI demo, tests) gets a consistently wired
set of components from here instead of building them ad hoc.
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .config import ContextConfig
from .llm_client import OpenAIChatClient
from .logging_config import setup_logging
from ..memory.debug_logger import CompressionDebugLogger
from ..memory.encryption import EncryptionService
from ..memory.priority import PriorityScorer
from ..memory.sessions import SessionRegistry
from ..memory.storage import ContextStorage, SQLiteSnapshotStore, SnapshotStore
from ..memory.tokens import TokenEstimator
from ..memory.window_manager import BackgroundError, ContextWindowManager

logger = logging.getLogger(__name__)


@dataclass
class ComponentBundle:
    """
    Container for all initialized context_lattice components.

    Shared by every session created through the registry.
    """
    config: ContextConfig
    llm: Optional[object]
    encryption: EncryptionService
    snapshot_store: SnapshotStore
    storage: ContextStorage
    estimator: TokenEstimator
    debug_logger: CompressionDebugLogger
    registry: Optional[SessionRegistry]
    embedder: Optional[Callable] = None


class ComponentFactory:
    """
    Factory for creating and wiring context_lattice components.

    Usage:
        components = ComponentFactory.create_all_components()
        manager = await components.registry.get_or_create("user-42")
        await manager.add_message("user", "Hello!")
    """

    @staticmethod
    def create_llm(config: ContextConfig):
        """OpenAI client when OPENAI_API_KEY is set, else None (strategies use their fallbacks)."""
        if not os.getenv("OPENAI_API_KEY"):
            logger.info("OPENAI_API_KEY not set - compression will use local fallbacks")
            return None
        return OpenAIChatClient(model=config.compression_model)

    @staticmethod
    def create_embedder(config: ContextConfig):
        if not config.use_embeddings:
            return None
        from ..memory.embeddings import EmbeddingManager
        return EmbeddingManager().encode

    @staticmethod
    def create_manager(
        components: ComponentBundle,
        session_id: str,
        clock: Optional[Callable[[], datetime]] = None,
        on_error: Optional[Callable[[BackgroundError], None]] = None,
    ) -> ContextWindowManager:
        config = components.config
        scorer = PriorityScorer(
            weights=config.priority_weights,
            half_life_hours=config.recency_half_life_hours,
            embedder=components.embedder,
            llm=components.llm,
            llm_timeout_seconds=config.llm_timeout_seconds,
        )
        return ContextWindowManager(
            session_key=session_id,
            config=config,
            llm=components.llm,
            storage=components.storage,
            estimator=components.estimator,
            scorer=scorer,
            clock=clock,
            debug_logger=components.debug_logger,
            on_error=on_error,
        )

    @staticmethod
    def create_all_components(
        config: Optional[ContextConfig] = None,
        llm=None,
        snapshot_store: Optional[SnapshotStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
        on_error: Optional[Callable[[BackgroundError], None]] = None,
        configure_logging: bool = True,
    ) -> ComponentBundle:
        """
        Create and wire all components.

        Args:
            config: ContextConfig (ContextConfig.from_env() when omitted)
            llm: LLMProvider; built from the environment when omitted
            snapshot_store: SnapshotStore; SQLite at config.db_path when omitted
            clock: Shared clock for sessions and the registry
            on_error: Background error callback for every session
            configure_logging: Install console/file handlers from the config
        """
        config = config or ContextConfig.from_env()
        if configure_logging:
            setup_logging(config.log_level, config.log_file)

        logger.info("🏗️  Initializing context_lattice components...")

        encryption = EncryptionService.from_config(config)
        snapshot_store = snapshot_store or SQLiteSnapshotStore(config.db_path)
        storage = ContextStorage(snapshot_store, encryption)
        logger.info(f"   💾 Snapshot store: {type(snapshot_store).__name__} (encryption {'on' if encryption.enabled else 'off'})")

        if llm is None:
            llm = ComponentFactory.create_llm(config)

        debug_logger = CompressionDebugLogger(
            base_dir=config.debug_log_dir or "debug_logs",
            enabled=bool(config.debug_log_dir),
        )

        components = ComponentBundle(
            config=config,
            llm=llm,
            encryption=encryption,
            snapshot_store=snapshot_store,
            storage=storage,
            estimator=TokenEstimator(),
            debug_logger=debug_logger,
            registry=None,
            embedder=ComponentFactory.create_embedder(config),
        )
        components.registry = SessionRegistry(
            factory=lambda session_id: ComponentFactory.create_manager(components, session_id, clock, on_error),
            idle_timeout=config.session_idle_timeout,
            clock=clock,
        )

        logger.info(
            f"✅ Components ready (max {config.max_context_length} tokens, "
            f"strategy {config.compression_strategy}, LLM {'on' if llm else 'off'})"
        )
        return components
