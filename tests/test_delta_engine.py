"""Tests for DeltaSyncEngine: cursor handling, expiry recovery, persistence."""

from __future__ import annotations

import asyncio
import json
from datetime import timedelta

import pytest

from src.leadsync.cache.engine import DeltaSyncEngine
from src.leadsync.cache.schemas import LeadFields, PersistedSyncState
from src.leadsync.cache.store import MemoryStore
from src.leadsync.errors import (
    CursorExpiredError,
    ResyncFailedError,
    TransientTransportError,
)
from tests.fakes import (
    INITIAL_URL,
    ScriptedFeed,
    UnavailableStore,
    continuation,
    make_lead,
    removal,
    terminal,
    upsert,
)


# ── Helpers ──────────────────────────────────────────────────────────────────


def make_engine(feed, store, clock=None, **kwargs) -> DeltaSyncEngine[LeadFields]:
    extra = {"clock": clock} if clock is not None else {}
    return DeltaSyncEngine(
        name="leads",
        feed=feed,
        store=store,
        storage_key="CRMLeadsData",
        fields_model=LeadFields,
        **extra,
        **kwargs,
    )


async def seed(store: MemoryStore, items, cursor: str | None) -> None:
    state = PersistedSyncState[LeadFields](items=items, cursor=cursor)
    await store.set("CRMLeadsData", state.model_dump_json(by_alias=True))


async def stored_state(store: MemoryStore) -> PersistedSyncState[LeadFields]:
    raw = await store.get("CRMLeadsData")
    assert raw is not None
    return PersistedSyncState[LeadFields].model_validate_json(raw)


# ── Delta passes ─────────────────────────────────────────────────────────────


class TestDeltaPass:
    """Incremental passes driven by the stored cursor."""

    @pytest.mark.asyncio
    async def test_update_from_stored_cursor(self, feed, store, clock):
        """An upsert for a known item replaces it and advances the cursor."""
        await seed(store, [make_lead("A", Status="New")], cursor="c0")
        feed.push(terminal([upsert("A", Status="Open")], cursor="c1"))
        engine = make_engine(feed, store, clock)

        snapshot = await engine.sync()

        assert feed.requested == ["c0"]
        assert snapshot.get("A").fields.status == "Open"
        assert engine.cursor == "c1"
        assert engine.last_synced_at == clock.now

        state = await stored_state(store)
        assert state.cursor == "c1"
        assert [i.fields.status for i in state.items] == ["Open"]

    @pytest.mark.asyncio
    async def test_first_sync_uses_initial_url(self, feed, store):
        feed.push(terminal([upsert("A", Status="New")], cursor="c1"))
        engine = make_engine(feed, store)

        await engine.sync()

        assert feed.requested == [INITIAL_URL]
        assert "A" in engine.snapshot

    @pytest.mark.asyncio
    async def test_multi_page_pass_applies_in_feed_order(self, feed, store):
        feed.push(
            continuation([upsert("A", Status="New")], next_link="page-2"),
            continuation([upsert("B", Status="New"), upsert("A", Status="Open")], "page-3"),
            terminal([removal("B")], cursor="c2"),
        )
        engine = make_engine(feed, store)

        await engine.sync()

        assert feed.requested == [INITIAL_URL, "page-2", "page-3"]
        assert [i.item_id for i in engine.snapshot] == ["A"]
        assert engine.snapshot.get("A").fields.status == "Open"
        assert engine.cursor == "c2"

    @pytest.mark.asyncio
    async def test_empty_pass_does_not_persist(self, feed, store):
        await seed(store, [make_lead("A")], cursor="c0")
        before = await store.get("CRMLeadsData")
        feed.push(terminal([], cursor="c0"))
        engine = make_engine(feed, store)

        await engine.sync()

        assert await store.get("CRMLeadsData") == before
        assert len(engine.snapshot) == 1

    @pytest.mark.asyncio
    async def test_removal_of_unknown_item_still_persists(self, feed, store):
        feed.push(terminal([removal("ghost")], cursor="c1"))
        engine = make_engine(feed, store)

        await engine.sync()

        state = await stored_state(store)
        assert state.items == []
        assert state.cursor == "c1"

    @pytest.mark.asyncio
    async def test_page_without_cursor_keeps_previous(self, feed, store):
        await seed(store, [], cursor="c0")
        feed.push(continuation([upsert("A")], next_link="c0"))
        engine = make_engine(feed, store)

        await engine.sync()

        assert feed.requested == ["c0"]
        assert "A" in engine.snapshot
        assert engine.cursor == "c0"

    @pytest.mark.asyncio
    async def test_timeout_forwarded_to_every_page(self, feed, store):
        feed.push(continuation([], "page-2"), terminal([], cursor="c1"))
        engine = make_engine(feed, store)

        await engine.sync(timeout=5.0)

        assert feed.timeouts == [5.0, 5.0]


# ── Failures ─────────────────────────────────────────────────────────────────


class TestFailures:
    """Expiry recovery and all-or-nothing commits."""

    @pytest.mark.asyncio
    async def test_expired_cursor_triggers_full_resync(self, feed, store):
        await seed(
            store,
            [make_lead("A", Status="Open"), make_lead("B", Status="New")],
            cursor="old",
        )
        feed.push(
            CursorExpiredError("410 Gone"),
            terminal([upsert("B", Status="Quoted")], cursor="fresh"),
        )
        engine = make_engine(feed, store)

        await engine.sync()

        assert feed.requested == ["old", INITIAL_URL]
        assert [i.item_id for i in engine.snapshot] == ["B"]
        assert engine.cursor == "fresh"

        state = await stored_state(store)
        assert state.cursor == "fresh"
        assert [i.item_id for i in state.items] == ["B"]

    @pytest.mark.asyncio
    async def test_double_expiry_raises_without_third_attempt(self, feed, store):
        await seed(store, [make_lead("A")], cursor="old")
        feed.push(CursorExpiredError("410"), CursorExpiredError("410"))
        engine = make_engine(feed, store)

        with pytest.raises(ResyncFailedError):
            await engine.sync()

        assert feed.requested == ["old", INITIAL_URL]
        assert len(engine.snapshot) == 0
        assert engine.cursor is None

    @pytest.mark.asyncio
    async def test_expiry_retries_are_configurable(self, store):
        feed = ScriptedFeed(
            [
                CursorExpiredError("410"),
                CursorExpiredError("410"),
                terminal([upsert("A")], cursor="c1"),
            ]
        )
        engine = make_engine(feed, store, max_expiry_retries=2)

        await engine.sync()

        assert feed.requested == [INITIAL_URL, INITIAL_URL, INITIAL_URL]
        assert engine.cursor == "c1"

    @pytest.mark.asyncio
    async def test_transient_failure_mid_pass_commits_nothing(self, feed, store):
        """Page 3 fails: pages 1 and 2 must not be applied and the cursor stays."""
        await seed(store, [make_lead("A", Status="New")], cursor="c0")
        before = await store.get("CRMLeadsData")
        feed.push(
            continuation([upsert("A", Status="Open")], "page-2"),
            continuation([upsert("B")], "page-3"),
            TransientTransportError("Service unavailable", status_code=503),
        )
        engine = make_engine(feed, store)

        with pytest.raises(TransientTransportError):
            await engine.sync()

        assert engine.snapshot.get("A").fields.status == "New"
        assert "B" not in engine.snapshot
        assert engine.cursor == "c0"
        assert await store.get("CRMLeadsData") == before

    @pytest.mark.asyncio
    async def test_odd_column_values_do_not_block_the_pass(self, feed, store):
        """A numeric Title and an unreadable Status still land every row."""
        feed.push(
            terminal(
                [
                    upsert("1", Title="ok"),
                    upsert("2", Title=123),
                    upsert("3", Title="c", Status=["Open"]),
                ],
                cursor="c1",
            )
        )
        engine = make_engine(feed, store)

        await engine.sync()

        assert len(engine.snapshot) == 3
        assert engine.snapshot.get("2").fields.title == "123"
        assert engine.snapshot.get("3").fields.title == "c"
        assert engine.snapshot.get("3").fields.status is None
        assert engine.cursor == "c1"
        assert (await stored_state(store)).cursor == "c1"

    @pytest.mark.asyncio
    async def test_failed_pass_can_be_retried(self, feed, store):
        await seed(store, [], cursor="c0")
        feed.push(
            TransientTransportError("timeout"),
            terminal([upsert("A")], cursor="c1"),
        )
        engine = make_engine(feed, store)

        with pytest.raises(TransientTransportError):
            await engine.sync()
        await engine.sync()

        assert feed.requested == ["c0", "c0"]
        assert engine.cursor == "c1"

    @pytest.mark.asyncio
    async def test_persist_failure_keeps_memory_state(self, feed):
        store = UnavailableStore()
        feed.push(terminal([upsert("A", Status="New")], cursor="c1"))
        engine = make_engine(feed, store)

        await engine.sync()

        assert store.set_calls == 1
        assert engine.snapshot.get("A").fields.status == "New"
        assert engine.cursor == "c1"


# ── Load ─────────────────────────────────────────────────────────────────────


class TestLoad:
    """Warm start from the persistent store."""

    @pytest.mark.asyncio
    async def test_load_restores_items_cursor_and_timestamp(self, feed, store, clock):
        state = PersistedSyncState[LeadFields](
            items=[make_lead("A", Status="Open", Region="EMEA")],
            cursor="c5",
            timestamp=clock.now - timedelta(hours=1),
        )
        await store.set("CRMLeadsData", state.model_dump_json(by_alias=True))
        engine = make_engine(feed, store)

        snapshot = await engine.load()

        item = snapshot.get("A")
        assert engine.is_loaded
        assert engine.cursor == "c5"
        assert engine.last_synced_at == clock.now - timedelta(hours=1)
        assert item.fields.status == "Open"
        assert item.fields.model_extra == {"Region": "EMEA"}

    @pytest.mark.asyncio
    async def test_load_runs_once(self, feed, store):
        await seed(store, [make_lead("A")], cursor="c0")
        engine = make_engine(feed, store)

        await engine.load()
        await seed(store, [make_lead("A"), make_lead("B")], cursor="c9")
        await engine.load()

        assert len(engine.snapshot) == 1
        assert engine.cursor == "c0"

    @pytest.mark.asyncio
    async def test_unavailable_store_starts_empty(self, feed):
        engine = make_engine(feed, UnavailableStore())

        snapshot = await engine.load()

        assert len(snapshot) == 0
        assert engine.cursor is None
        assert engine.is_loaded

    @pytest.mark.asyncio
    async def test_corrupt_payload_starts_empty(self, feed, store):
        await store.set("CRMLeadsData", json.dumps({"items": "nope", "cursor": 3}))
        engine = make_engine(feed, store)

        snapshot = await engine.load()

        assert len(snapshot) == 0
        assert engine.cursor is None

    @pytest.mark.asyncio
    async def test_sync_loads_before_first_pass(self, feed, store):
        await seed(store, [make_lead("A")], cursor="c0")
        feed.push(terminal([upsert("B")], cursor="c1"))
        engine = make_engine(feed, store)

        await engine.sync()

        assert sorted(i.item_id for i in engine.snapshot) == ["A", "B"]


# ── Concurrency ──────────────────────────────────────────────────────────────


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_syncs_are_serialized(self, store):
        """The second pass starts from the cursor the first pass produced."""
        gate = asyncio.Event()

        class GatedFeed(ScriptedFeed):
            async def fetch_page(self, url, timeout=None):
                if not self.requested:
                    await gate.wait()
                return await super().fetch_page(url, timeout)

        feed = GatedFeed(
            [
                terminal([upsert("A")], cursor="c1"),
                terminal([upsert("B")], cursor="c2"),
            ]
        )
        engine = make_engine(feed, store)

        first = asyncio.create_task(engine.sync())
        second = asyncio.create_task(engine.sync())
        await asyncio.sleep(0)
        assert engine.is_syncing
        gate.set()
        await asyncio.gather(first, second)

        assert feed.requested == [INITIAL_URL, "c1"]
        assert engine.cursor == "c2"
        assert sorted(i.item_id for i in engine.snapshot) == ["A", "B"]
