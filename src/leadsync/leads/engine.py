"""Leads list engine with the write paths that touch lead status.

Status is the one field with two writers: the user (explicit edits) and the
smart status evaluator (derived from mailbox activity). Both go through this
engine so the snapshot keeps a single owner and the provenance rules hold:

- a user write clears ``is_calculated`` and stamps ``status_set_by_user_at``
- a derived write sets ``is_calculated`` when it changes the status
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog

from src.leadsync.cache.engine import ChangeFeed, DeltaSyncEngine, utc_now
from src.leadsync.cache.schemas import LeadFields, SyncedItem
from src.leadsync.cache.store import PersistentStore

logger = structlog.get_logger(__name__)


class LeadSyncEngine(DeltaSyncEngine[LeadFields]):
    """DeltaSyncEngine for the Leads list."""

    def __init__(
        self,
        feed: ChangeFeed,
        store: PersistentStore,
        storage_key: str = "CRMLeadsData",
        name: str = "leads",
        max_expiry_retries: int = 1,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(
            name=name,
            feed=feed,
            store=store,
            storage_key=storage_key,
            fields_model=LeadFields,
            max_expiry_retries=max_expiry_retries,
            clock=clock,
        )

    def find_by_lead_id(self, lead_id: str) -> SyncedItem[LeadFields] | None:
        """Return the lead whose LeadId column matches, if cached."""
        for item in self._snapshot:
            if item.fields.lead_id == lead_id:
                return item
        return None

    def apply_derived_status(
        self,
        item_id: str,
        *,
        status: str | None = None,
        last_activity_at: datetime | None = None,
    ) -> bool:
        """Write evaluator results back onto a lead.

        Only fields that differ are written. A status change marks the item
        as system-calculated.

        Args:
            item_id: Remote item id of the lead.
            status: New derived status, or None to leave it.
            last_activity_at: New last-activity time, or None to leave it.

        Returns:
            True if any field changed.
        """
        item = self._snapshot.get(item_id)
        if item is None:
            return False

        updates: dict[str, Any] = {}
        if last_activity_at is not None and last_activity_at != item.fields.last_activity_at:
            updates["last_activity_at"] = last_activity_at
        status_changed = status is not None and status != item.fields.status
        if status_changed:
            updates["status"] = status

        if not updates:
            return False

        self._snapshot.upsert(
            item.model_copy(
                update={
                    "fields": item.fields.model_copy(update=updates),
                    "is_calculated": item.is_calculated or status_changed,
                }
            )
        )
        if status_changed:
            logger.info(
                "status.derived",
                item_id=item_id,
                title=item.fields.title,
                old_status=item.fields.status,
                new_status=status,
            )
        return True

    def record_user_write(
        self,
        item_id: str,
        columns: dict[str, Any],
        *,
        at: datetime | None = None,
    ) -> SyncedItem[LeadFields] | None:
        """Apply an explicit user edit (already accepted by the remote list).

        Args:
            item_id: Remote item id of the lead.
            columns: Changed columns keyed by SharePoint column name.
            at: Time of the write; defaults to now.

        Returns:
            The updated item, or None if the lead is not cached.
        """
        item = self._snapshot.get(item_id)
        if item is None:
            return None

        merged = {**item.fields.model_dump(by_alias=True), **columns}
        fields = LeadFields.from_columns(merged)
        status_written = "Status" in columns

        updated = item.model_copy(
            update={
                "fields": fields,
                "is_calculated": False if status_written else item.is_calculated,
                "status_set_by_user_at": (
                    (at or self._clock()) if status_written else item.status_set_by_user_at
                ),
            }
        )
        self._snapshot.upsert(updated)
        return updated
