"""
Session registry: one ContextWindowManager per session id.

Sessions idle longer than the timeout are flushed and dropped from memory;
their persisted snapshots stay in storage and are reloaded on next use.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .window_manager import ContextWindowManager

logger = logging.getLogger(__name__)

DEFAULT_IDLE_SECONDS = 3600


class SessionRegistry:
    """
    Explicit arena of window managers.

    Args:
        factory: Callable(session_id) -> ContextWindowManager (not yet initialized)
        idle_timeout: Seconds of inactivity before cleanup_idle drops a session
        clock: Callable returning the current datetime
    """

    def __init__(
        self,
        factory: Callable[[str], ContextWindowManager],
        idle_timeout: float = DEFAULT_IDLE_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.factory = factory
        self.idle_timeout = idle_timeout
        self.clock = clock or datetime.now
        self.sessions: Dict[str, ContextWindowManager] = {}
        self._lock = asyncio.Lock()
        self._cleanup_task: Optional[asyncio.Task] = None

    async def get_or_create(self, session_id: str) -> ContextWindowManager:
        """Return the live manager, loading it from storage on first use."""
        async with self._lock:
            manager = self.sessions.get(session_id)
            if manager is None:
                manager = self.factory(session_id)
                await manager.initialize()
                self.sessions[session_id] = manager
                logger.debug(f"Session {session_id} opened ({len(self.sessions)} active)")
            manager.last_activity = self.clock()
            return manager

    def get(self, session_id: str) -> Optional[ContextWindowManager]:
        return self.sessions.get(session_id)

    async def remove(self, session_id: str) -> bool:
        """Flush and drop one session. Stored data is kept."""
        async with self._lock:
            manager = self.sessions.pop(session_id, None)
        if manager is None:
            return False
        await manager.flush()
        return True

    def idle_sessions(self, max_idle_seconds: Optional[float] = None) -> List[str]:
        limit = self.idle_timeout if max_idle_seconds is None else max_idle_seconds
        now = self.clock()
        return [
            session_id
            for session_id, manager in self.sessions.items()
            if (now - manager.last_activity).total_seconds() > limit
        ]

    async def cleanup_idle(self, max_idle_seconds: Optional[float] = None) -> List[str]:
        """Drop sessions idle longer than the limit (default: idle_timeout). Returns their ids."""
        async with self._lock:
            stale = {sid: self.sessions.pop(sid) for sid in self.idle_sessions(max_idle_seconds)}

        for session_id, manager in stale.items():
            await manager.flush()

        if stale:
            logger.info(f"🧹 Dropped {len(stale)} idle sessions ({len(self.sessions)} active)")
        return list(stale)

    async def _cleanup_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.cleanup_idle()
            except Exception as e:
                logger.error(f"Idle session cleanup failed: {e}")

    def start_cleanup_task(self, interval: float = 300.0) -> asyncio.Task:
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop(interval))
        return self._cleanup_task

    async def stop_cleanup_task(self) -> None:
        if self._cleanup_task is None:
            return
        self._cleanup_task.cancel()
        try:
            await self._cleanup_task
        except asyncio.CancelledError:
            pass
        self._cleanup_task = None

    async def close(self) -> None:
        """Stop the cleanup loop and flush every session."""
        await self.stop_cleanup_task()
        async with self._lock:
            managers = list(self.sessions.values())
            self.sessions.clear()
        for manager in managers:
            await manager.flush()

    def __len__(self) -> int:
        return len(self.sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self.sessions
