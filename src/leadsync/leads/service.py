"""Lead service -- explicit user writes and timeline reads for CRM leads.

Every write is accepted by the remote SharePoint list first, then applied to
the local snapshot through LeadSyncEngine so provenance rules stay with the
snapshot's owner. Status and field edits also append a "System" event to the
Events list so the timeline shows who changed what.

Unknown lead ids are a no-op (the lead may have been deleted remotely since
the last sync).
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog

from src.leadsync.cache.coordinator import MultiListCoordinator
from src.leadsync.cache.engine import DeltaSyncEngine, utc_now
from src.leadsync.cache.schemas import AnchorFields, EventFields, LeadFields, SyncedItem
from src.leadsync.errors import LeadCreationError, TransientTransportError
from src.leadsync.graph.transport import BatchRequest, GraphTransport
from src.leadsync.leads.engine import LeadSyncEngine
from src.leadsync.leads.schemas import LeadDraft, TimelineEntry
from src.leadsync.status.schemas import MailMessage

logger = structlog.get_logger(__name__)

NO_CONTENT_HTML = "<p>No content available.</p>"


class LeadService:
    """User-facing lead operations backed by Graph and the local cache.

    Args:
        transport: Authenticated Graph transport.
        site_id: SharePoint site id.
        leads_list_id: Leads list id.
        events_list_id: Events list id.
        anchors_list_id: Anchors list id.
        leads: Engine owning the leads snapshot.
        anchors: Engine owning the anchors snapshot.
        coordinator: Used to resync after creating a lead; if None, the
            leads and anchors engines are synced directly.
        owner: Display name stamped as Owner on new leads.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        transport: GraphTransport,
        site_id: str,
        leads_list_id: str,
        events_list_id: str,
        anchors_list_id: str,
        leads: LeadSyncEngine,
        anchors: DeltaSyncEngine[AnchorFields],
        coordinator: MultiListCoordinator | None = None,
        owner: str = "Unknown",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._transport = transport
        self._site_id = site_id
        self._leads_list_id = leads_list_id
        self._events_list_id = events_list_id
        self._anchors_list_id = anchors_list_id
        self._leads = leads
        self._anchors = anchors
        self._coordinator = coordinator
        self._owner = owner
        self._clock = clock

    def _items_path(self, list_id: str) -> str:
        return f"/sites/{self._site_id}/lists/{list_id}/items"

    def _now_iso(self) -> str:
        return self._clock().isoformat()

    # ── Events ──────────────────────────────────────────────────────────

    async def add_event(
        self,
        lead_id: str,
        event_type: str,
        summary: str,
        details: str | None = None,
    ) -> None:
        """Append an event row for a lead to the Events list."""
        fields = EventFields(
            lead_id=lead_id,
            event_type=event_type,
            summary=summary,
            details=details or "",
            event_at=self._clock(),
        )
        await self._transport.post(
            self._items_path(self._events_list_id),
            {"fields": fields.to_columns()},
        )
        logger.info("lead.event_added", lead_id=lead_id, event_type=event_type, summary=summary)

    # ── Writes ──────────────────────────────────────────────────────────

    async def _patch_lead(self, item: SyncedItem[LeadFields], columns: dict[str, Any]) -> None:
        await self._transport.patch(
            f"{self._items_path(self._leads_list_id)}/{item.item_id}",
            {"fields": columns},
        )

    async def touch_activity(self, lead_id: str) -> SyncedItem[LeadFields] | None:
        """Set a lead's LastActivityAt to now so it floats to the top."""
        item = self._leads.find_by_lead_id(lead_id)
        if item is None:
            return None

        columns = {"LastActivityAt": self._now_iso()}
        await self._patch_lead(item, columns)
        updated = self._leads.record_user_write(item.item_id, columns)
        await self._leads.persist()
        return updated

    async def update_fields(
        self, lead_id: str, fields: dict[str, Any]
    ) -> SyncedItem[LeadFields] | None:
        """Write arbitrary lead columns (SharePoint names) and log a system event."""
        item = self._leads.find_by_lead_id(lead_id)
        if item is None:
            return None

        await self._patch_lead(item, dict(fields))
        summary = ", ".join(f"{key}: {value}" for key, value in fields.items())
        await self.add_event(lead_id, "System", "Lead Updated", f"Updated fields: {summary}")

        updated = self._leads.record_user_write(item.item_id, dict(fields))
        await self._leads.persist()
        return updated

    async def update_status(self, lead_id: str, status: str) -> SyncedItem[LeadFields] | None:
        """Explicitly set a lead's status.

        Clears the system-calculated flag and records the write time so the
        status evaluator will not override it with an older mailbox signal.
        """
        item = self._leads.find_by_lead_id(lead_id)
        if item is None:
            return None

        now = self._clock()
        columns = {"Status": status, "LastActivityAt": now.isoformat()}
        await self._patch_lead(item, columns)
        await self.add_event(lead_id, "System", "Status Update", f"Status changed to: {status}")

        updated = self._leads.record_user_write(item.item_id, columns, at=now)
        await self._leads.persist()
        logger.info("lead.status_updated", lead_id=lead_id, status=status)
        return updated

    async def create_lead(self, draft: LeadDraft) -> str:
        """Create a lead, its "Lead Created" event and (optionally) its anchor.

        All rows are created in one Graph ``$batch``. The lists are resynced
        afterwards so the new lead appears in the cache immediately.

        Returns:
            The generated LeadId.

        Raises:
            LeadCreationError: If any sub-request failed.
        """
        lead_id = str(uuid.uuid4())
        now = self._clock()

        requests = [
            BatchRequest(
                id="1",
                method="POST",
                url=self._items_path(self._leads_list_id),
                body={
                    "fields": LeadFields(
                        title=draft.subject,
                        lead_id=lead_id,
                        owner=self._owner,
                        company=draft.company,
                        part_number=draft.part_number,
                        quantity=draft.quantity,
                        status=draft.status,
                        created_at=now,
                        last_activity_at=now,
                    ).to_columns()
                },
            ),
            BatchRequest(
                id="2",
                method="POST",
                url=self._items_path(self._events_list_id),
                body={
                    "fields": EventFields(
                        lead_id=lead_id,
                        event_type="System",
                        event_at=now,
                        summary="Lead Created",
                        details=draft.message or f"Manual Entry via App (Status: {draft.status})",
                    ).to_columns()
                },
            ),
        ]
        if draft.email:
            requests.append(
                BatchRequest(
                    id="3",
                    method="POST",
                    url=self._items_path(self._anchors_list_id),
                    body={
                        "fields": AnchorFields.model_validate(
                            {
                                "Title": draft.email,
                                "LeadId": lead_id,
                                "Email": draft.email,
                                "FirstName": draft.first_name or "",
                                "LastName": draft.last_name or "",
                                "StartTrackingFrom": now,
                            }
                        ).to_columns()
                    },
                )
            )

        responses = await self._transport.batch(requests)
        failed = [r.id for r in responses if r.status >= 400]
        if failed:
            logger.error("lead.create_failed", lead_id=lead_id, failed=failed)
            raise LeadCreationError("Failed to create lead records.", failed_ids=failed)

        logger.info("lead.created", lead_id=lead_id, with_anchor=bool(draft.email))
        await self._refresh()
        return lead_id

    async def _refresh(self) -> None:
        if self._coordinator is not None:
            await self._coordinator.sync_all()
            return
        results = await asyncio.gather(
            self._leads.sync(), self._anchors.sync(), return_exceptions=True
        )
        for result in results:
            if isinstance(result, Exception):
                logger.warning("lead.refresh_failed", error=str(result))

    # ── Reads ───────────────────────────────────────────────────────────

    async def get_message_body(self, message_id: str) -> str:
        """Return the HTML body of a mailbox message."""
        data = await self._transport.get(f"/me/messages/{message_id}?$select=body")
        return (data.get("body") or {}).get("content") or NO_CONTENT_HTML

    async def _events_for(self, lead_id: str) -> list[TimelineEntry]:
        data = await self._transport.get(
            f"{self._items_path(self._events_list_id)}"
            f"?expand=fields&$filter=fields/LeadId eq '{lead_id}'",
            headers={"Prefer": "HonorNonIndexedQueriesWarningMayFailRandomly"},
        )
        entries: list[TimelineEntry] = []
        for row in data.get("value", []):
            fields = EventFields.model_validate(row.get("fields") or {})
            entries.append(
                TimelineEntry(
                    type="event",
                    id=str(row.get("id", "")),
                    date=fields.event_at,
                    event_type=fields.event_type,
                    summary=fields.summary,
                    details=fields.details,
                )
            )
        return entries

    async def _emails_for(self, email: str) -> list[TimelineEntry]:
        url = (
            f'/me/messages?$search="participants:{email}"&$top=20'
            "&$select=id,subject,receivedDateTime,bodyPreview,from,isRead,conversationId,isDraft"
        )
        try:
            data = await self._transport.get(url)
        except TransientTransportError as exc:
            logger.warning("lead.timeline_email_failed", email=email, error=str(exc))
            return []

        entries: list[TimelineEntry] = []
        for raw in data.get("value", []):
            message = MailMessage.model_validate(raw)
            if message.is_draft is True or not message.id:
                continue
            entries.append(
                TimelineEntry(
                    type="email",
                    id=message.id,
                    date=message.received_at,
                    subject=message.subject,
                    preview=message.body_preview,
                    sender=message.sender_display,
                    is_read=message.is_read,
                    conversation_id=message.conversation_id,
                )
            )
        return entries

    async def get_timeline(self, lead_id: str) -> list[TimelineEntry]:
        """Events and correlated emails for a lead, deduplicated, newest first.

        Event and per-anchor email requests run concurrently. A failed email
        search contributes nothing; a failed events request raises.
        """
        emails: list[str] = []
        for anchor in self._anchors.snapshot:
            address = anchor.fields.usable_email()
            if anchor.fields.lead_id == lead_id and address and address not in emails:
                emails.append(address)

        events, *email_results = await asyncio.gather(
            self._events_for(lead_id),
            *(self._emails_for(email) for email in emails),
        )

        unique: dict[str, TimelineEntry] = {}
        for entry in [*events, *(e for batch in email_results for e in batch)]:
            unique[entry.id] = entry

        return sorted(
            unique.values(),
            key=lambda entry: entry.date.timestamp() if entry.date else float("-inf"),
            reverse=True,
        )
