"""Tests for the session registry and the component factory wiring."""

import asyncio

from conftest import FakeLLM, InMemorySnapshotStore
from context_lattice.core.component_factory import ComponentFactory
from context_lattice.core.config import ContextConfig
from context_lattice.memory.sessions import SessionRegistry
from context_lattice.memory.window_manager import ContextWindowManager


def registry_for(clock, storage, idle_timeout=3600):
    config = ContextConfig(max_context_length=1000, auto_compress=False)
    return SessionRegistry(
        factory=lambda sid: ContextWindowManager(session_key=sid, config=config, storage=storage, clock=clock),
        idle_timeout=idle_timeout,
        clock=clock,
    )


def test_get_or_create_reuses_live_sessions(clock, storage):
    registry = registry_for(clock, storage)

    async def scenario():
        first = await registry.get_or_create("alice")
        again = await registry.get_or_create("alice")
        other = await registry.get_or_create("bob")
        return first, again, other

    first, again, other = asyncio.run(scenario())

    assert first is again
    assert first is not other
    assert len(registry) == 2
    assert "alice" in registry
    assert registry.get("carol") is None


def test_cleanup_idle_drops_stale_sessions_and_keeps_their_data(clock, storage, memory_store):
    registry = registry_for(clock, storage, idle_timeout=3600)

    async def scenario():
        alice = await registry.get_or_create("alice")
        await alice.add_message("user", "My name is Alice")
        await registry.get_or_create("bob")

        clock.advance(minutes=50)
        await registry.get_or_create("bob")
        clock.advance(minutes=20)

        dropped = await registry.cleanup_idle()
        reloaded = await registry.get_or_create("alice")
        return dropped, alice, reloaded

    dropped, alice, reloaded = asyncio.run(scenario())

    assert dropped == ["alice"]
    assert "alice" in memory_store.records
    assert reloaded is not alice
    assert [e.content for e in reloaded.get_messages()] == ["My name is Alice"]


def test_cleanup_idle_with_explicit_limit(clock, storage):
    registry = registry_for(clock, storage)

    async def scenario():
        await registry.get_or_create("alice")
        clock.advance(seconds=61)
        return registry.idle_sessions(60), await registry.cleanup_idle(max_idle_seconds=60)

    idle, dropped = asyncio.run(scenario())
    assert idle == ["alice"]
    assert dropped == ["alice"]
    assert len(registry) == 0


def test_remove_and_close_flush_sessions(clock, storage, memory_store):
    registry = registry_for(clock, storage)

    async def scenario():
        alice = await registry.get_or_create("alice")
        await alice.add_message("user", "hello")
        bob = await registry.get_or_create("bob")
        await bob.add_message("user", "hi")
        removed = await registry.remove("alice")
        missing = await registry.remove("nobody")
        await registry.close()
        return removed, missing

    removed, missing = asyncio.run(scenario())
    assert removed and not missing
    assert len(registry) == 0
    assert set(memory_store.records) == {"alice", "bob"}


def test_cleanup_task_lifecycle(clock, storage):
    registry = registry_for(clock, storage)

    async def scenario():
        task = registry.start_cleanup_task(interval=0.01)
        same = registry.start_cleanup_task(interval=0.01)
        await asyncio.sleep(0.03)
        await registry.stop_cleanup_task()
        return task, same

    task, same = asyncio.run(scenario())
    assert task is same
    assert task.cancelled()


def test_component_factory_wires_sessions(clock):
    config = ContextConfig(max_context_length=1000, auto_compress=False)
    snapshot_store = InMemorySnapshotStore()
    components = ComponentFactory.create_all_components(
        config=config,
        llm=FakeLLM(),
        snapshot_store=snapshot_store,
        clock=clock,
        configure_logging=False,
    )

    async def scenario():
        manager = await components.registry.get_or_create("user-42")
        await manager.add_message("user", "Hello!")
        await components.registry.close()
        return manager

    manager = asyncio.run(scenario())

    assert manager.llm is components.llm
    assert manager.storage is components.storage
    assert manager.scorer.llm is components.llm
    assert "user-42" in snapshot_store.records
    assert components.embedder is None


def test_factory_without_api_key_has_no_llm(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    assert ComponentFactory.create_llm(ContextConfig()) is None
