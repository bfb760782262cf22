"""Test doubles and builders for the CRM list cache tests.

- ScriptedFeed: a change feed that replays scripted pages / errors
- UnavailableStore: a persistent store whose every call fails
- FrozenClock: controllable UTC clock
- FakeGraph: recording stand-in for GraphTransport
- make_lead / make_anchor / mail: builders with sensible defaults
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any

from src.leadsync.cache.schemas import (
    AnchorFields,
    ChangeRecord,
    FeedPage,
    LeadFields,
    SyncedItem,
)
from src.leadsync.cache.store import PersistentStore
from src.leadsync.errors import StorageUnavailableError
from src.leadsync.graph.transport import BatchRequest, BatchResponse

INITIAL_URL = "https://graph.test/lists/leads/items/delta?expand=fields"


class ScriptedFeed:
    """Change feed that returns scripted pages (or raises scripted errors) in order."""

    def __init__(self, script: list[FeedPage | Exception] | None = None) -> None:
        self.script: list[FeedPage | Exception] = list(script or [])
        self.requested: list[str] = []
        self.timeouts: list[float | None] = []

    def initial_url(self) -> str:
        return INITIAL_URL

    def push(self, *steps: FeedPage | Exception) -> None:
        self.script.extend(steps)

    async def fetch_page(self, url: str, timeout: float | None = None) -> FeedPage:
        self.requested.append(url)
        self.timeouts.append(timeout)
        if not self.script:
            raise AssertionError(f"Unexpected page request: {url}")
        step = self.script.pop(0)
        if isinstance(step, Exception):
            raise step
        return step


class UnavailableStore(PersistentStore):
    """Store whose reads and writes always fail."""

    def __init__(self) -> None:
        self.set_calls = 0

    async def get(self, key: str) -> str | None:
        raise StorageUnavailableError("store offline")

    async def set(self, key: str, value: str) -> None:
        self.set_calls += 1
        raise StorageUnavailableError("store offline")


class FrozenClock:
    """Callable clock returning a settable instant."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def upsert(item_id: str, **fields: Any) -> ChangeRecord:
    return ChangeRecord(id=item_id, fields=fields)


def removal(item_id: str) -> ChangeRecord:
    return ChangeRecord(id=item_id, removed=True)


def terminal(records: list[ChangeRecord], cursor: str = "c1") -> FeedPage:
    return FeedPage(records=records, delta_link=cursor)


def continuation(records: list[ChangeRecord], next_link: str) -> FeedPage:
    return FeedPage(records=records, next_link=next_link)


def make_lead(item_id: str = "1", **fields: Any) -> SyncedItem[LeadFields]:
    defaults: dict[str, Any] = {"LeadId": f"lead-{item_id}", "Title": f"Lead {item_id}"}
    defaults.update(fields)
    return SyncedItem[LeadFields](item_id=item_id, fields=LeadFields.model_validate(defaults))


def make_anchor(item_id: str, lead_id: str, email: str | None) -> SyncedItem[AnchorFields]:
    return SyncedItem[AnchorFields](
        item_id=item_id,
        fields=AnchorFields.model_validate({"LeadId": lead_id, "Email": email}),
    )


class FakeGraph:
    """In-memory stand-in for GraphTransport.

    Records every call. ``$batch`` sub-requests are answered by
    ``batch_handler`` (default: 200 with no messages); GET requests by
    ``get_handler`` (default: empty ``value``). Entries in ``batch_errors``
    are raised by the matching (0-based) batch call.
    """

    def __init__(self) -> None:
        self.batches: list[list[BatchRequest]] = []
        self.batch_timeouts: list[float | None] = []
        self.batch_errors: dict[int, Exception] = {}
        self.batch_handler: Callable[[BatchRequest], BatchResponse] = (
            lambda request: BatchResponse(id=request.id, status=200, body={"value": []})
        )
        self.get_handler: Callable[[str], dict[str, Any]] = lambda url: {"value": []}
        self.gets: list[tuple[str, dict[str, str] | None]] = []
        self.posts: list[tuple[str, dict[str, Any]]] = []
        self.patches: list[tuple[str, dict[str, Any]]] = []
        self.closed = False

    async def batch(
        self, requests: list[BatchRequest], *, timeout: float | None = None
    ) -> list[BatchResponse]:
        index = len(self.batches)
        self.batches.append(list(requests))
        self.batch_timeouts.append(timeout)
        if index in self.batch_errors:
            raise self.batch_errors[index]
        return [self.batch_handler(request) for request in requests]

    async def get(
        self, url: str, *, headers: dict[str, str] | None = None, timeout: float | None = None
    ) -> dict[str, Any]:
        self.gets.append((url, headers))
        return self.get_handler(url)

    async def post(self, url: str, body: dict[str, Any], *, timeout: float | None = None) -> dict[str, Any]:
        self.posts.append((url, body))
        return {"id": str(len(self.posts))}

    async def patch(self, url: str, body: dict[str, Any], *, timeout: float | None = None) -> dict[str, Any]:
        self.patches.append((url, body))
        return {}

    async def aclose(self) -> None:
        self.closed = True


def mail(
    received: datetime,
    sender: str,
    *,
    message_id: str | None = None,
    is_draft: bool = False,
    **extra: Any,
) -> dict[str, Any]:
    """Raw Graph message payload."""
    return {
        "id": message_id or f"msg-{sender}-{received.isoformat()}",
        "receivedDateTime": received.isoformat().replace("+00:00", "Z"),
        "from": {"emailAddress": {"address": sender, "name": sender.split("@")[0]}},
        "isDraft": is_draft,
        **extra,
    }
