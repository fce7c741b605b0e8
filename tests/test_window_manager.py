"""Tests for ContextWindowManager: triggers, compression, eviction, persistence, export."""

import asyncio
import json
from datetime import timedelta

import pytest

from conftest import FailingSnapshotStore, FakeLLM, make_message, sentence_block
from context_lattice.core.config import ContextConfig
from context_lattice.errors import ContextValidationError, UnknownStrategyError
from context_lattice.memory.debug_logger import CompressionDebugLogger
from context_lattice.memory.models import LayerName, PriorityWeights, Role, StrategyName
from context_lattice.memory.priority import PriorityScorer
from context_lattice.memory.storage import ContextStorage

ZERO_WEIGHTS = PriorityWeights(recency=0, frequency=0, importance=0, user_interaction=0, sentiment=0)


def manual_config(**overrides):
    values = {"max_context_length": 1000, "preserve_last_n": 5, "auto_compress": False}
    values.update(overrides)
    return ContextConfig(**values)


async def add_conversation(manager, clock, count, **kwargs):
    added = []
    for i in range(count):
        role = "user" if i % 2 == 0 else "assistant"
        added.append(await manager.add_message(role, sentence_block(i), **kwargs))
        clock.advance(minutes=1)
    return added


# ----------------------------------------------------------------------
# Ingest and triggers
# ----------------------------------------------------------------------

def test_backdated_message_is_merged_in_order(make_manager, clock):
    manager = make_manager(config=manual_config())

    async def scenario():
        await manager.add_message("user", "first")
        clock.advance(minutes=10)
        await manager.add_message("user", "third")
        await manager.add_message("user", "second", timestamp=clock() - timedelta(minutes=5))

    asyncio.run(scenario())

    immediate = manager.store.entries(LayerName.IMMEDIATE)
    assert [e.content for e in immediate] == ["first", "second", "third"]
    assert [e.timestamp for e in immediate] == sorted(e.timestamp for e in immediate)
    manager.store.check_invariants()


def test_add_message_sizes_and_stores(make_manager):
    manager = make_manager(config=manual_config())

    async def scenario():
        entry = await manager.add_message("user", "abcd" * 10, metadata={"topic": "x"})
        await manager.flush()
        return entry

    entry = asyncio.run(scenario())

    assert entry.token_count == 10
    assert entry.role == Role.USER
    assert manager.store.entries(LayerName.IMMEDIATE) == [entry]
    assert manager.get_context_stats()["total_tokens"] == 10
    assert not manager.dirty


@pytest.mark.parametrize("content", [None, 42, ["list"]])
def test_add_message_rejects_non_string_content(make_manager, content):
    manager = make_manager()
    with pytest.raises(ContextValidationError):
        asyncio.run(manager.add_message("user", content))


def test_add_message_rejects_unknown_role(make_manager):
    manager = make_manager()
    with pytest.raises(ContextValidationError):
        asyncio.run(manager.add_message("robot", "beep"))


def test_should_compress_only_when_over_max(make_manager):
    manager = make_manager(config=manual_config())

    async def scenario():
        await manager.add_message("user", "first", token_count=1000)
        at_limit = manager.should_compress()
        await manager.add_message("user", "second", token_count=1)
        return at_limit, manager.should_compress()

    at_limit, over_limit = asyncio.run(scenario())
    assert not at_limit
    assert over_limit


def test_compress_under_limit_is_a_no_op(make_manager, clock):
    manager = make_manager(config=manual_config())

    async def scenario():
        await add_conversation(manager, clock, 6)
        before = manager.store.to_snapshot()
        result = await manager.compress()
        return before, result

    before, result = asyncio.run(scenario())

    assert result.success
    assert result.compression_ratio == 1.0
    assert result.details["skipped"] == "under_limit"
    assert manager.store.to_snapshot() == before


# ----------------------------------------------------------------------
# Compression
# ----------------------------------------------------------------------

@pytest.mark.parametrize("llm", [None, FakeLLM()], ids=["fallback", "llm"])
def test_hybrid_compression_keeps_recent_tail_and_reaches_target(make_manager, clock, llm):
    manager = make_manager(config=manual_config(), llm=llm)

    async def scenario():
        added = await add_conversation(manager, clock, 30)
        result = await manager.compress()
        return added, result

    added, result = asyncio.run(scenario())

    assert result.success
    assert result.strategy == StrategyName.HYBRID
    immediate = manager.store.entries(LayerName.IMMEDIATE)
    assert len(immediate) == 5
    assert all(a is b for a, b in zip(immediate, added[-5:]))
    summaries = [e for e in manager.store.entries(LayerName.SUMMARIZED) if e.is_summary]
    assert len(summaries) >= 1
    assert manager.store.total_tokens() <= 800
    assert result.details["total_tokens_after"] == manager.store.total_tokens()
    manager.store.check_invariants()


def test_auto_compress_keeps_window_under_max(make_manager, clock):
    manager = make_manager()

    async def scenario():
        await add_conversation(manager, clock, 40)
        await manager.flush()

    asyncio.run(scenario())

    assert manager.last_compression is not None
    assert manager.store.total_tokens() <= 1000
    assert len(manager.store.entries(LayerName.IMMEDIATE)) >= 5
    manager.store.check_invariants()


def test_auto_strategy_follows_recommendation(make_manager, clock):
    manager = make_manager(config=manual_config(compression_strategy="auto"))

    async def scenario():
        await add_conversation(manager, clock, 30)
        return await manager.compress()

    result = asyncio.run(scenario())
    assert result.strategy == StrategyName.TEMPORAL_COMPRESS
    assert manager.store.total_tokens() <= 800


def test_explicit_strategy_overrides_default(make_manager, clock):
    manager = make_manager(config=manual_config())

    async def scenario():
        await add_conversation(manager, clock, 30)
        return await manager.compress("summarize")

    result = asyncio.run(scenario())
    assert result.strategy == StrategyName.SUMMARIZE
    summaries = manager.store.entries(LayerName.SUMMARIZED)
    assert len(summaries) == 1
    assert summaries[0].metadata["original_message_count"] == 25


def test_unknown_strategy_raises(make_manager, clock):
    manager = make_manager(config=manual_config())

    async def scenario():
        await add_conversation(manager, clock, 30)
        await manager.compress("zip_it")

    with pytest.raises(UnknownStrategyError):
        asyncio.run(scenario())
    assert len(manager.store.entries(LayerName.IMMEDIATE)) == 30


def test_unknown_configured_strategy_fails_at_construction(make_manager):
    with pytest.raises(UnknownStrategyError):
        make_manager(config=manual_config(compression_strategy="zip_it"))


class ExplodingStrategy:
    async def compress(self, entries, target_tokens, options=None):
        raise RuntimeError("boom")


def test_failed_compression_leaves_layers_untouched(make_manager, clock):
    manager = make_manager(config=manual_config())
    manager.strategies[StrategyName.HYBRID] = ExplodingStrategy()

    async def scenario():
        await add_conversation(manager, clock, 30)
        before = manager.store.to_snapshot()
        result = await manager.compress()
        return before, result

    before, result = asyncio.run(scenario())

    assert not result.success
    assert result.error == "boom"
    assert manager.store.to_snapshot() == before
    assert manager.state.value == "idle"


def test_compression_records_version_in_storage(make_manager, clock, memory_store):
    manager = make_manager(config=manual_config())

    async def scenario():
        await add_conversation(manager, clock, 30)
        await manager.compress()
        await manager.flush()

    asyncio.run(scenario())
    record = memory_store.records["test-session"]
    assert record["tokens_used"] == manager.store.total_tokens()
    assert record["summary"]


def test_debug_logger_writes_compression_files(make_manager, clock, tmp_path):
    debug_logger = CompressionDebugLogger(base_dir=str(tmp_path), enabled=True)
    manager = make_manager(config=manual_config(), debug_logger=debug_logger)

    async def scenario():
        await add_conversation(manager, clock, 30)
        await manager.compress()

    asyncio.run(scenario())

    names = sorted(path.name for path in tmp_path.iterdir())
    assert [name.split("_test-session")[0] for name in names] == ["01_before", "02_after", "03_result"]


def test_deleted_debug_directory_is_recreated(make_manager, clock, tmp_path):
    debug_dir = tmp_path / "dbg"
    debug_logger = CompressionDebugLogger(base_dir=str(debug_dir), enabled=True)
    debug_dir.rmdir()
    manager = make_manager(config=manual_config(), debug_logger=debug_logger)

    async def scenario():
        await add_conversation(manager, clock, 30)
        return await manager.compress()

    result = asyncio.run(scenario())
    assert result.success
    assert len(list(debug_dir.iterdir())) == 3


def test_unwritable_debug_directory_does_not_fail_compression(make_manager, clock, tmp_path):
    debug_dir = tmp_path / "dbg"
    debug_logger = CompressionDebugLogger(base_dir=str(debug_dir), enabled=True)
    debug_dir.rmdir()
    debug_dir.write_text("not a directory", encoding="utf-8")
    manager = make_manager(config=manual_config(), debug_logger=debug_logger)

    async def scenario():
        await add_conversation(manager, clock, 30)
        return await manager.compress()

    result = asyncio.run(scenario())
    assert result.success
    assert manager.store.total_tokens() <= 800
    assert debug_dir.read_text(encoding="utf-8") == "not a directory"


class FailingAfterLog(CompressionDebugLogger):
    def log_after(self, snapshot):
        raise RuntimeError("debug sink closed")


def test_failure_after_eviction_persists_restored_layers(make_manager, clock, storage):
    manager = make_manager(
        config=manual_config(compression_enabled=False),
        debug_logger=FailingAfterLog(enabled=False),
    )

    async def scenario():
        await add_conversation(manager, clock, 30)
        result = await manager.compress()
        await manager.flush()
        return result, await storage.load_context("test-session")

    result, stored = asyncio.run(scenario())

    assert not result.success
    assert result.error == "debug sink closed"
    assert len(manager.store.entries(LayerName.IMMEDIATE)) == 30
    assert len(stored.context_data["layers"]["immediate"]) == 30
    assert stored.tokens_used == manager.store.total_tokens()
    assert not manager.dirty


# ----------------------------------------------------------------------
# Summarized layer budget
# ----------------------------------------------------------------------

def test_oversized_summarized_layer_is_condensed(make_manager, clock):
    manager = make_manager(config=manual_config())
    for minutes_ago, count in ((90, 4), (60, 6)):
        manager.store.append(LayerName.SUMMARIZED, make_message(
            sentence_block(minutes_ago, sentences=12), role=Role.SYSTEM, minutes_ago=minutes_ago,
            type="summary", original_message_count=count,
        ))
    assert manager.store.over_budget(LayerName.SUMMARIZED)

    async def scenario():
        await add_conversation(manager, clock, 30)
        return await manager.compress("summarize")

    result = asyncio.run(scenario())

    summaries = manager.store.entries(LayerName.SUMMARIZED)
    assert result.success
    assert result.details["summaries_condensed"] == 3
    assert result.details["evicted"] == 0
    assert len(summaries) == 1
    assert summaries[0].metadata["original_message_count"] == 35
    assert manager.store.layer_tokens(LayerName.SUMMARIZED) <= manager.store.budget.summarized
    manager.store.check_invariants()


def test_summarized_layer_stays_within_budget_across_compressions(make_manager, clock):
    manager = make_manager()
    budget = manager.store.budget.summarized
    sizes = []

    async def scenario():
        for i in range(80):
            await manager.add_message("user" if i % 2 == 0 else "assistant", sentence_block(i))
            sizes.append(manager.store.layer_tokens(LayerName.SUMMARIZED))
            clock.advance(minutes=1)
        await manager.flush()

    asyncio.run(scenario())

    assert manager.last_compression is not None
    assert max(sizes) <= budget
    assert manager.store.total_tokens() <= 1000


# ----------------------------------------------------------------------
# Eviction
# ----------------------------------------------------------------------

def test_eviction_ties_remove_oldest_first(make_manager, clock):
    config = manual_config(preserve_last_n=2, compression_enabled=False)
    manager = make_manager(config=config, scorer=PriorityScorer(weights=ZERO_WEIGHTS))

    async def scenario():
        for i in range(8):
            await manager.add_message("user", f"message {i}", token_count=200)
            clock.advance(minutes=1)
        return await manager.compress()

    result = asyncio.run(scenario())

    assert result.success
    assert result.details["skipped"] == "compression_disabled"
    assert result.details["evicted"] == 4
    assert [e.content for e in manager.get_messages()] == [f"message {i}" for i in range(4, 8)]
    assert manager.store.total_tokens() == 800


def test_eviction_prefers_low_importance_entries(make_manager):
    manager = make_manager(config=manual_config(preserve_last_n=1))
    chatter = make_message("ok thanks", tokens=300)
    fact = make_message("Remember my name is Alice and the deadline is Friday", tokens=300)
    tail = make_message("latest question", tokens=300)
    manager.store.extend(LayerName.IMMEDIATE, [chatter, fact, tail])

    evicted = manager.evict(700)

    assert evicted == [chatter]
    assert manager.store.entries(LayerName.IMMEDIATE) == [fact, tail]


def test_eviction_never_touches_persistent_or_preserved_entries(make_manager, clock):
    manager = make_manager(config=manual_config(preserve_last_n=2, compression_enabled=False))

    async def scenario():
        fact = manager.add_persistent("fact " * 1000, priority=1.0)
        await manager.add_message("user", "hello", token_count=10)
        await manager.add_message("assistant", "hi", token_count=10)
        result = await manager.compress()
        return fact, result

    fact, result = asyncio.run(scenario())

    assert result.success
    assert result.details["evicted"] == 0
    assert manager.store.entries(LayerName.PERSISTENT) == [fact]
    assert len(manager.store.entries(LayerName.IMMEDIATE)) == 2


def test_summaries_are_evicted_after_immediate_candidates(make_manager):
    manager = make_manager(config=manual_config(preserve_last_n=1))
    summary = make_message("old summary", role=Role.SYSTEM, minutes_ago=60, tokens=400, type="summary")
    manager.store.append(LayerName.SUMMARIZED, summary)
    manager.store.extend(LayerName.IMMEDIATE, [make_message("a", tokens=400), make_message("b", tokens=400)])

    evicted = manager.evict(400)

    assert [e.content for e in evicted] == ["a", "old summary"]
    assert [e.content for e in manager.get_messages()] == ["b"]


# ----------------------------------------------------------------------
# Persistence
# ----------------------------------------------------------------------

def test_state_survives_reload(make_manager, clock, storage):
    manager = make_manager(config=manual_config())

    async def scenario():
        manager.add_persistent("User prefers metric units", priority=0.9)
        await add_conversation(manager, clock, 3)
        await manager.flush()

        reloaded = make_manager(config=manual_config())
        await reloaded.initialize()
        return reloaded

    reloaded = asyncio.run(scenario())

    assert [e.to_dict() for e in reloaded.get_messages()] == [e.to_dict() for e in manager.get_messages()]
    assert not reloaded.dirty


def test_persistence_failures_are_recorded_not_raised(make_manager, clock):
    errors = []
    manager = make_manager(
        config=manual_config(),
        storage=ContextStorage(FailingSnapshotStore()),
        on_error=errors.append,
    )

    async def scenario():
        await manager.initialize()
        await manager.add_message("user", "hello")
        await manager.flush()

    asyncio.run(scenario())

    assert manager.get_messages()[0].content == "hello"
    assert manager.dirty
    assert len(manager.background_errors) >= 1
    assert errors and errors[0].operation == "persist"
    assert "disk on fire" in errors[0].message


def test_manager_without_storage_works_in_memory(make_manager, clock):
    manager = make_manager(config=manual_config(), storage=None)

    async def scenario():
        await manager.initialize()
        await add_conversation(manager, clock, 30)
        return await manager.compress(), await manager.save_to_storage()

    result, saved = asyncio.run(scenario())
    assert result.success
    assert saved is False


# ----------------------------------------------------------------------
# Reads, export and import
# ----------------------------------------------------------------------

def test_recent_and_role_queries(make_manager, clock):
    manager = make_manager(config=manual_config())
    asyncio.run(add_conversation(manager, clock, 6))

    assert [e.content for e in manager.get_recent_messages(2)] == [sentence_block(4), sentence_block(5)]
    assert manager.get_recent_messages(0) == []
    assert len(manager.get_messages_by_role("assistant")) == 3


def test_persistent_facts_and_context_window(make_manager, clock):
    manager = make_manager(config=manual_config())
    fact = manager.add_persistent("User prefers metric units", priority=1.0)
    asyncio.run(add_conversation(manager, clock, 2))

    window = manager.get_context_window()
    assert window["messages"][0]["content"] == "User prefers metric units"
    assert window["total_tokens"] == manager.store.total_tokens()
    assert window["utilization_percentage"] == pytest.approx(window["total_tokens"] / 10)

    assert manager.remove_persistent(fact)
    assert not manager.remove_persistent(fact)
    assert manager.store.entries(LayerName.PERSISTENT) == []


def test_analyze_context(make_manager):
    manager = make_manager(config=manual_config())
    asyncio.run(manager.add_message("user", "big", token_count=1200))

    analysis = manager.analyze_context()

    assert analysis.compression_needed
    assert analysis.context_utilization == pytest.approx(120.0)
    assert analysis.suggested_compression_ratio == pytest.approx(1 - 800 / 1200)


def test_formatted_context_sections(make_manager, clock):
    manager = make_manager(config=manual_config())
    manager.add_persistent("Low priority fact", priority=0.1)
    manager.add_persistent("User name is Alice", priority=0.9)
    manager.store.append(LayerName.SUMMARIZED, make_message("older summary", role=Role.SYSTEM, minutes_ago=50, type="summary"))
    manager.store.append(LayerName.SUMMARIZED, make_message("newer summary", role=Role.SYSTEM, minutes_ago=5, type="summary"))
    asyncio.run(manager.add_message("user", "What's next?"))

    text = manager.get_formatted_context()

    order = [
        "=== Important Information ===",
        "User name is Alice",
        "Low priority fact",
        "=== Previous Context Summary ===",
        "newer summary",
        "older summary",
        "=== Recent Messages ===",
        "user: What's next?",
    ]
    positions = [text.index(fragment) for fragment in order]
    assert positions == sorted(positions)


def test_formatted_context_respects_token_limit(make_manager, clock):
    manager = make_manager(config=manual_config())
    asyncio.run(add_conversation(manager, clock, 8))

    text = manager.get_formatted_context(max_tokens=60)

    assert manager.estimator.estimate(text) <= 60
    assert text.startswith("=== Recent Messages ===")


def test_export_import_round_trip(make_manager, clock):
    source = make_manager(config=manual_config())
    source.add_persistent("User prefers metric units", priority=0.9)
    source.store.append(LayerName.SUMMARIZED, make_message("Earlier summary", role=Role.SYSTEM, minutes_ago=30, type="summary"))
    asyncio.run(add_conversation(source, clock, 3))

    exported = source.export_context()
    data = json.loads(exported)
    assert data["version"] == "1.0"
    assert data["metadata"] == {"totalMessages": 5, "totalTokens": source.store.total_tokens()}

    target = make_manager(session_key="other", config=manual_config())
    assert target.import_context(exported) == 5

    for name in LayerName:
        assert [e.to_dict() for e in target.store.entries(name)] == [e.to_dict() for e in source.store.entries(name)]
    target.store.check_invariants()


def test_import_defaults_missing_fields(make_manager):
    manager = make_manager()
    manager.import_context({"messages": [{}]})

    entry = manager.get_messages()[0]
    assert entry.role == Role.USER
    assert entry.content == ""
    assert entry.token_count == 0


@pytest.mark.parametrize("payload", [
    "not json",
    json.dumps({"messages": "nope"}),
    {"nothing": []},
    {"messages": ["string entry"]},
    {"messages": [{"content": "x", "layer": "attic"}]},
    {"messages": [{"content": "x", "role": "robot"}]},
])
def test_import_rejects_invalid_data(make_manager, payload):
    manager = make_manager()
    manager.add_persistent("keep me")
    with pytest.raises(ContextValidationError):
        manager.import_context(payload)
    assert [e.content for e in manager.get_messages()] == ["keep me"]


@pytest.mark.parametrize("bad_field", [
    {"content": 123},
    {"content": "x", "metadata": "not an object"},
    {"content": "x", "priority": "high"},
    {"content": "x", "role": ["user"]},
])
def test_import_is_all_or_nothing(make_manager, bad_field):
    manager = make_manager(config=manual_config())
    manager.add_persistent("original fact")
    asyncio.run(manager.add_message("user", "original message"))
    before = manager.store.to_snapshot()

    payload = {"messages": [
        {"layer": "immediate", "role": "user", "content": "new immediate"},
        dict({"layer": "persistent", "role": "system"}, **bad_field),
    ]}
    with pytest.raises(ContextValidationError):
        manager.import_context(payload)

    assert manager.store.to_snapshot() == before
    assert [e.content for e in manager.get_messages()] == ["original fact", "original message"]


def test_clear_context(make_manager, clock):
    manager = make_manager(config=manual_config())
    manager.add_persistent("fact")
    asyncio.run(add_conversation(manager, clock, 3))

    assert manager.clear_context(LayerName.IMMEDIATE) == 3
    assert [e.content for e in manager.get_messages()] == ["fact"]
    assert manager.clear_context() == 1
    assert manager.get_messages() == []


def test_update_options_rebuilds_budget(make_manager):
    manager = make_manager(config=manual_config())
    manager.update_options(max_context_length=2000, compression_strategy="selective")

    assert manager.max_tokens == 2000
    assert manager.store.budget.total == 2000
    assert manager.default_strategy == StrategyName.SELECTIVE

    with pytest.raises(UnknownStrategyError):
        manager.update_options(compression_strategy="zip_it")
    assert manager.default_strategy == StrategyName.SELECTIVE


def test_judge_importance_stores_rating(make_manager):
    manager = make_manager(config=manual_config(), llm=FakeLLM("0.8"))

    async def scenario():
        entry = await manager.add_message("user", "My favourite editor is vim")
        return entry, await manager.judge_importance(entry)

    entry, score = asyncio.run(scenario())
    assert score == pytest.approx(0.8)
    assert entry.metadata["importance"] == pytest.approx(0.8)


# ----------------------------------------------------------------------
# Summary
# ----------------------------------------------------------------------

def test_generate_summary_of_empty_window(make_manager):
    summary = asyncio.run(make_manager().generate_summary())
    assert summary.conversation_flow == "No conversation yet"
    assert summary.main_topics == []


def test_generate_summary_heuristic_without_llm(make_manager):
    manager = make_manager()

    async def scenario():
        await manager.add_message("user", "Alice decided we must ship on Friday. Remember the deadline.")
        return await manager.generate_summary()

    summary = asyncio.run(scenario())

    assert "Alice" in summary.key_entities
    assert summary.important_facts == ["Alice decided we must ship on Friday", "Remember the deadline"]
    assert summary.action_items == ["Alice decided we must ship on Friday"]
    assert summary.conversation_flow.startswith("1 messages")


def test_generate_summary_parses_llm_json(make_manager):
    reply = (
        "Here you go:\n```json\n"
        '{"mainTopics": ["shipping"], "keyEntities": ["Alice"], "conversationFlow": "planning", '
        '"importantFacts": ["ship Friday"], "actionItems": ["prepare release"]}\n```'
    )
    manager = make_manager(llm=FakeLLM(reply))

    async def scenario():
        await manager.add_message("user", "Alice wants to ship on Friday.")
        return await manager.generate_summary()

    summary = asyncio.run(scenario())
    assert summary.main_topics == ["shipping"]
    assert summary.conversation_flow == "planning"
    assert summary.action_items == ["prepare release"]


def test_generate_summary_falls_back_on_bad_llm_output(make_manager):
    manager = make_manager(llm=FakeLLM("I cannot produce JSON today"))

    async def scenario():
        await manager.add_message("user", "Alice decided to use Postgres.")
        return await manager.generate_summary()

    summary = asyncio.run(scenario())
    assert summary.important_facts == ["Alice decided to use Postgres"]
