"""SharePoint list delta feed.

Turns Graph ``items/delta`` pages into FeedPage objects. Each page carries
either ``@odata.nextLink`` (more pages follow) or ``@odata.deltaLink`` (the
cursor to resume from next time). Items annotated with ``@removed`` are
deletions.
"""

from __future__ import annotations

from typing import Any

import structlog

from src.leadsync.cache.schemas import ChangeRecord, FeedPage
from src.leadsync.graph.transport import GraphTransport

logger = structlog.get_logger(__name__)


def parse_delta_page(data: dict[str, Any]) -> FeedPage:
    """Convert one raw Graph delta response into a FeedPage."""
    records: list[ChangeRecord] = []
    for item in data.get("value", []):
        item_id = str(item.get("id", ""))
        if not item_id:
            continue
        if "@removed" in item:
            records.append(ChangeRecord(id=item_id, removed=True))
        else:
            records.append(ChangeRecord(id=item_id, fields=item.get("fields") or {}))

    return FeedPage(
        records=records,
        next_link=data.get("@odata.nextLink"),
        delta_link=data.get("@odata.deltaLink"),
    )


class SharePointDeltaFeed:
    """Remote change feed for one SharePoint list.

    Args:
        transport: Authenticated Graph transport.
        list_url: Graph URL of the list, e.g.
            ``https://graph.microsoft.com/v1.0/sites/{site}/lists/{list}``.
    """

    def __init__(self, transport: GraphTransport, list_url: str) -> None:
        self._transport = transport
        self._list_url = list_url.rstrip("/")

    @property
    def list_url(self) -> str:
        return self._list_url

    def initial_url(self) -> str:
        """URL of a full (cursor-less) delta request."""
        return f"{self._list_url}/items/delta?expand=fields"

    async def fetch_page(self, url: str, timeout: float | None = None) -> FeedPage:
        """Fetch and parse one delta page.

        Raises:
            CursorExpiredError: When the server no longer honours ``url``.
            TransientTransportError: On any other failure.
        """
        data = await self._transport.get(url, timeout=timeout)
        page = parse_delta_page(data)
        logger.debug(
            "feed.page_fetched",
            list_url=self._list_url,
            records=len(page.records),
            terminal=page.delta_link is not None,
        )
        return page
