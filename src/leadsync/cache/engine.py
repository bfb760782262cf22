"""Delta sync engine -- keeps one Snapshot consistent with one remote list.

Flow of a sync pass:
1. Warm start from the persistent store (once per engine).
2. Pull delta pages sequentially from the stored cursor, or from the
   feed's initial full-delta URL when there is no cursor.
3. Apply the collected records to the snapshot in feed order, only after
   every page of the pass has arrived (no partial commits).
4. Persist ``{items, cursor, timestamp}`` when anything changed.

Cursor expiry (HTTP 410) discards the snapshot and cursor and triggers a
bounded number of full resyncs (default 1). Any other failure leaves the
snapshot and cursor untouched and propagates to the caller.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Generic, Protocol

import structlog
from pydantic import ValidationError

from src.leadsync.cache.schemas import (
    ChangeRecord,
    FeedPage,
    FieldsT,
    PersistedSyncState,
)
from src.leadsync.cache.snapshot import Snapshot
from src.leadsync.cache.store import PersistentStore
from src.leadsync.errors import (
    CursorExpiredError,
    ResyncFailedError,
    StorageUnavailableError,
)

logger = structlog.get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ChangeFeed(Protocol):
    """Remote change feed for one list (see SharePointDeltaFeed)."""

    def initial_url(self) -> str: ...

    async def fetch_page(self, url: str, timeout: float | None = None) -> FeedPage: ...


class DeltaSyncEngine(Generic[FieldsT]):
    """Owns the snapshot and cursor of one remote list.

    The snapshot is mutated only by sync passes and by the write-back
    methods of this class (and its subclasses). Concurrent ``sync()`` calls
    on the same engine are queued behind an asyncio.Lock.

    Args:
        name: List name used in logs and reports (e.g. "leads").
        feed: Remote change feed for the list.
        store: Persistent store shared by all engines.
        storage_key: Key of this list's PersistedSyncState in the store.
        fields_model: ListFields subclass typing the list's columns.
        max_expiry_retries: Full resyncs allowed per pass after cursor expiry.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        name: str,
        feed: ChangeFeed,
        store: PersistentStore,
        storage_key: str,
        fields_model: type[FieldsT],
        max_expiry_retries: int = 1,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._name = name
        self._feed = feed
        self._store = store
        self._storage_key = storage_key
        self._fields_model = fields_model
        self._max_expiry_retries = max_expiry_retries
        self._clock = clock

        self._snapshot: Snapshot[FieldsT] = Snapshot(fields_model)
        self._cursor: str | None = None
        self._last_synced_at: datetime | None = None
        self._loaded = False
        self._lock = asyncio.Lock()

    # ── Introspection ───────────────────────────────────────────────────

    @property
    def name(self) -> str:
        return self._name

    @property
    def snapshot(self) -> Snapshot[FieldsT]:
        return self._snapshot

    @property
    def cursor(self) -> str | None:
        return self._cursor

    @property
    def last_synced_at(self) -> datetime | None:
        """Timestamp of the last successful pass (or of the loaded state)."""
        return self._last_synced_at

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    @property
    def is_syncing(self) -> bool:
        return self._lock.locked()

    # ── Storage ─────────────────────────────────────────────────────────

    async def load(self) -> Snapshot[FieldsT]:
        """Populate snapshot and cursor from the store once.

        Subsequent calls are no-ops. Storage failures and undecodable
        payloads degrade to an empty snapshot with no cursor.
        """
        async with self._lock:
            await self._load_unlocked()
        return self._snapshot

    async def _load_unlocked(self) -> None:
        if self._loaded:
            return
        self._loaded = True

        try:
            raw = await self._store.get(self._storage_key)
        except StorageUnavailableError as exc:
            logger.warning("sync.load_unavailable", list=self._name, error=str(exc))
            return

        if not raw:
            logger.debug("sync.load_empty", list=self._name)
            return

        try:
            state = PersistedSyncState[self._fields_model].model_validate_json(raw)
        except ValidationError as exc:
            logger.warning(
                "sync.load_corrupt",
                list=self._name,
                errors=exc.error_count(),
            )
            return

        self._snapshot.clear()
        for item in state.items:
            self._snapshot.upsert(item)
        self._cursor = state.cursor
        self._last_synced_at = state.timestamp

        logger.info(
            "sync.loaded",
            list=self._name,
            items=len(self._snapshot),
            has_cursor=self._cursor is not None,
        )

    async def persist(self) -> bool:
        """Write the current snapshot and cursor to the store.

        Returns:
            True if the write succeeded. Failures are logged, not raised;
            the in-memory snapshot stays authoritative for the session.
        """
        state = PersistedSyncState[self._fields_model](
            items=self._snapshot.values(),
            cursor=self._cursor,
            timestamp=self._clock(),
        )
        try:
            await self._store.set(self._storage_key, state.model_dump_json(by_alias=True))
        except StorageUnavailableError as exc:
            logger.error("sync.persist_failed", list=self._name, error=str(exc))
            return False

        logger.debug("sync.persisted", list=self._name, items=len(state.items))
        return True

    # ── Sync ────────────────────────────────────────────────────────────

    async def sync(self, timeout: float | None = None) -> Snapshot[FieldsT]:
        """Run one delta sync pass.

        Args:
            timeout: Per-page request timeout in seconds.

        Returns:
            The updated snapshot.

        Raises:
            ResyncFailedError: The cursor expired again during the resync.
            TransientTransportError: Any other feed failure (nothing committed).
        """
        async with self._lock:
            await self._load_unlocked()

            records, new_cursor, reset = await self._collect_with_recovery(timeout)

            applied = self._snapshot.apply(records)
            if new_cursor is not None:
                self._cursor = new_cursor
            self._last_synced_at = self._clock()

            logger.info(
                "sync.pass_complete",
                list=self._name,
                applied=applied,
                items=len(self._snapshot),
                full_resync=reset,
            )

            if applied or reset:
                await self.persist()

            return self._snapshot

    async def _collect_with_recovery(
        self, timeout: float | None
    ) -> tuple[list[ChangeRecord], str | None, bool]:
        """Collect all pages, recovering from cursor expiry a bounded number of times.

        Returns:
            (records, new cursor or None, whether the state was reset)
        """
        url = self._cursor or self._feed.initial_url()
        reset = False
        retries = 0

        while True:
            try:
                records, new_cursor = await self._collect(url, timeout)
                return records, new_cursor, reset
            except CursorExpiredError as exc:
                if retries >= self._max_expiry_retries:
                    logger.error(
                        "sync.resync_failed",
                        list=self._name,
                        retries=retries,
                    )
                    raise ResyncFailedError(
                        f"Cursor for list '{self._name}' expired again during full resync"
                    ) from exc

                retries += 1
                logger.warning(
                    "sync.cursor_expired",
                    list=self._name,
                    discarded_items=len(self._snapshot),
                )
                self._snapshot.clear()
                self._cursor = None
                reset = True
                url = self._feed.initial_url()

    async def _collect(
        self, url: str, timeout: float | None
    ) -> tuple[list[ChangeRecord], str | None]:
        """Fetch pages sequentially until the feed yields a terminal cursor."""
        records: list[ChangeRecord] = []
        pages = 0

        while True:
            page = await self._feed.fetch_page(url, timeout=timeout)
            pages += 1
            records.extend(page.records)

            if page.delta_link:
                return records, page.delta_link
            if page.next_link and page.next_link != url:
                url = page.next_link
                continue

            logger.debug("sync.feed_ended_without_cursor", list=self._name, pages=pages)
            return records, None
