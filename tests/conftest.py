"""Shared fixtures for the context_lattice test suite.

Provides fake LLM providers (scripted, failing, empty, slow), a fixed clock,
and in-memory / failing snapshot stores so tests never touch the network.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest

from context_lattice.core.config import ContextConfig
from context_lattice.errors import ProviderError
from context_lattice.memory.models import ContextMessage, Role
from context_lattice.memory.storage import ContextStorage
from context_lattice.memory.tokens import TokenEstimator
from context_lattice.memory.window_manager import ContextWindowManager

BASE_TIME = datetime(2025, 1, 15, 12, 0, 0)


class FakeLLM:
    """Returns a scripted reply (or a short canned summary) and records prompts."""

    def __init__(self, reply: Optional[str] = None):
        self.reply = reply
        self.calls: List[List[Dict[str, str]]] = []

    async def complete(self, messages, temperature=0.3, max_tokens=500):
        self.calls.append(messages)
        if self.reply is not None:
            return self.reply
        return "User and assistant discussed project planning and agreed on next steps."


class FailingLLM:
    async def complete(self, messages, temperature=0.3, max_tokens=500):
        raise ProviderError("provider unavailable")


class EmptyLLM:
    async def complete(self, messages, temperature=0.3, max_tokens=500):
        return "   "


class SlowLLM:
    async def complete(self, messages, temperature=0.3, max_tokens=500):
        await asyncio.sleep(5)
        return "too late"


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = BASE_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class InMemorySnapshotStore:
    def __init__(self):
        self.records: Dict[str, Dict[str, Any]] = {}
        self.saves = 0

    async def load(self, session_key):
        record = self.records.get(session_key)
        return dict(record) if record is not None else None

    async def save(self, session_key, record):
        self.saves += 1
        self.records[session_key] = dict(record)

    async def delete(self, session_key):
        return self.records.pop(session_key, None) is not None


class FailingSnapshotStore:
    async def load(self, session_key):
        raise OSError("disk on fire")

    async def save(self, session_key, record):
        raise OSError("disk on fire")

    async def delete(self, session_key):
        raise OSError("disk on fire")


def make_message(content: str, role: Role = Role.USER, minutes_ago: float = 0, tokens: Optional[int] = None,
                 now: datetime = BASE_TIME, **metadata) -> ContextMessage:
    estimator = TokenEstimator()
    return ContextMessage(
        role=role,
        content=content,
        timestamp=now - timedelta(minutes=minutes_ago),
        token_count=tokens if tokens is not None else estimator.estimate(content),
        metadata=metadata,
    )


def sentence_block(index: int, sentences: int = 3) -> str:
    """Prose with a distinct topic word per message (~55 tokens at 3 sentences)."""
    return " ".join(
        f"Message {index} sentence {s} talks about planning details for milestone number {index}."
        for s in range(sentences)
    )


@pytest.fixture()
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture()
def memory_store() -> InMemorySnapshotStore:
    return InMemorySnapshotStore()


@pytest.fixture()
def storage(memory_store) -> ContextStorage:
    return ContextStorage(memory_store)


@pytest.fixture()
def small_config() -> ContextConfig:
    return ContextConfig(max_context_length=1000, preserve_last_n=5)


@pytest.fixture()
def make_manager(clock, storage, small_config):
    """Build a manager with fixed clock and in-memory storage; kwargs override."""

    def _make(**kwargs) -> ContextWindowManager:
        options = {
            "session_key": "test-session",
            "config": small_config,
            "llm": None,
            "storage": storage,
            "clock": clock,
        }
        options.update(kwargs)
        return ContextWindowManager(**options)

    return _make
