"""Pydantic schemas for the delta-synchronized list cache.

Defines:
- ChangeRecord: one upsert/removal entry from a remote change feed
- ListFields and its per-list subclasses (LeadFields, AnchorFields, EventFields):
  typed SharePoint columns plus a passthrough bag for unmodeled columns
- SyncedItem: the reconciled local copy of one remote row
- PersistedSyncState: the unit written to the persistent store per list
- FeedPage: one page of a delta feed
- ListSyncOutcome / SyncReport: per-list results of a coordinated sync
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Generic, Self, TypeVar

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = structlog.get_logger(__name__)


def coerce_datetime(value: Any) -> datetime | None:
    """Parse SharePoint date columns leniently.

    Blank or unparseable values become None; naive values are taken as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if isinstance(value, datetime) and value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


# ── Feed records ────────────────────────────────────────────────────────────


class ChangeRecord(BaseModel):
    """One entry from the remote change feed.

    ``removed`` records carry no meaningful fields.
    """

    id: str
    removed: bool = False
    fields: dict[str, Any] = Field(default_factory=dict)


class FeedPage(BaseModel):
    """One page of a delta feed.

    Exactly one of ``next_link`` (continuation) or ``delta_link`` (terminal
    cursor) is normally set. A page with neither ends the pass without
    producing a new cursor.
    """

    records: list[ChangeRecord] = Field(default_factory=list)
    next_link: str | None = None
    delta_link: str | None = None


# ── Typed field sets ────────────────────────────────────────────────────────


class ListFields(BaseModel):
    """Base for per-list typed columns.

    Unmodeled columns are kept in ``model_extra`` so they survive a
    persist/load round trip and are dumped back under their original names.
    Numbers sent for text columns are coerced to strings.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True, coerce_numbers_to_str=True)

    @classmethod
    def from_columns(cls, columns: dict[str, Any]) -> Self:
        """Validate remote columns leniently.

        Typed columns whose values cannot be coerced are dropped (and logged)
        instead of failing the whole row.
        """
        try:
            return cls.model_validate(columns)
        except ValidationError as exc:
            rejected = {str(error["loc"][0]) for error in exc.errors() if error["loc"]}

        for name, info in cls.model_fields.items():
            if name in rejected or info.alias in rejected:
                rejected.update({name, info.alias or name})

        logger.warning("fields.columns_rejected", model=cls.__name__, columns=sorted(rejected))
        return cls.model_validate({k: v for k, v in columns.items() if k not in rejected})

    def to_columns(self) -> dict[str, Any]:
        """Dump to SharePoint column names, JSON-compatible."""
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class LeadFields(ListFields):
    """Columns of the Leads list."""

    lead_id: str | None = Field(default=None, alias="LeadId")
    title: str | None = Field(default=None, alias="Title")
    status: str | None = Field(default=None, alias="Status")
    owner: str | None = Field(default=None, alias="Owner")
    company: str | None = Field(default=None, alias="Company")
    part_number: str | None = Field(default=None, alias="PartNumber")
    quantity: float | str | None = Field(default=None, alias="Quantity")
    created_at: datetime | None = Field(default=None, alias="CreatedAt")
    last_activity_at: datetime | None = Field(default=None, alias="LastActivityAt")

    @field_validator("created_at", "last_activity_at", mode="before")
    @classmethod
    def parse_dates(cls, value: Any) -> datetime | None:
        return coerce_datetime(value)


class AnchorFields(ListFields):
    """Columns of the contact Anchors list (lead to email address links)."""

    lead_id: str | None = Field(default=None, alias="LeadId")
    email: str | None = Field(default=None, alias="Email")
    first_name: str | None = Field(default=None, alias="FirstName")
    last_name: str | None = Field(default=None, alias="LastName")
    start_tracking_from: datetime | None = Field(default=None, alias="StartTrackingFrom")
    conversation_id: str | None = Field(default=None, alias="ConversationId")

    @field_validator("start_tracking_from", mode="before")
    @classmethod
    def parse_dates(cls, value: Any) -> datetime | None:
        return coerce_datetime(value)

    def usable_email(self) -> str | None:
        """Return the lowercased address if it looks like one, else None."""
        if self.email and "@" in self.email:
            return self.email.strip().lower()
        return None


class EventFields(ListFields):
    """Columns of the lead Events list (notes, status changes, system events)."""

    lead_id: str | None = Field(default=None, alias="LeadId")
    event_type: str | None = Field(default=None, alias="EventType")
    summary: str | None = Field(default=None, alias="Summary")
    details: str | None = Field(default=None, alias="Details")
    event_at: datetime | None = Field(default=None, alias="EventAt")

    @field_validator("event_at", mode="before")
    @classmethod
    def parse_dates(cls, value: Any) -> datetime | None:
        return coerce_datetime(value)


FieldsT = TypeVar("FieldsT", bound=ListFields)


# ── Local replica ───────────────────────────────────────────────────────────


class SyncedItem(BaseModel, Generic[FieldsT]):
    """Reconciled local representation of one remote row.

    Attributes:
        item_id: Remote list item id (unique within a snapshot).
        fields: Typed columns of the row.
        is_calculated: True when the status was set by the status evaluator
            rather than a user or the remote list.
        status_set_by_user_at: When the user last explicitly wrote the status.
    """

    item_id: str
    fields: FieldsT
    is_calculated: bool = False
    status_set_by_user_at: datetime | None = None


class PersistedSyncState(BaseModel, Generic[FieldsT]):
    """Snapshot + cursor pair written to the persistent store for one list."""

    items: list[SyncedItem[FieldsT]] = Field(default_factory=list)
    cursor: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ── Coordinated sync results ────────────────────────────────────────────────


class ListSyncOutcome(BaseModel):
    """Result of one list's sync pass inside a coordinated run."""

    name: str
    ok: bool
    error: str | None = None
    item_count: int = 0
    last_synced_at: datetime | None = None


class SyncReport(BaseModel):
    """Aggregate result of ``MultiListCoordinator.sync_all``."""

    outcomes: list[ListSyncOutcome] = Field(default_factory=list)
    evaluated: bool = False
    status_changes: int = 0
    evaluation_error: str | None = None

    @property
    def failed(self) -> list[str]:
        """Names of lists whose sync pass failed."""
        return [o.name for o in self.outcomes if not o.ok]
