"""Pydantic schemas for lead write paths and the lead timeline."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel


class LeadDraft(BaseModel):
    """Input for creating a lead (with its first event and optional anchor)."""

    subject: str
    company: str | None = None
    part_number: str | None = None
    quantity: float | str | None = None
    status: str = "New Lead"
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    message: str | None = None


class TimelineEntry(BaseModel):
    """One row of a lead's timeline: a list event or a correlated email."""

    type: Literal["event", "email"]
    id: str
    date: datetime | None = None

    # Events
    event_type: str | None = None
    summary: str | None = None
    details: str | None = None

    # Emails
    subject: str | None = None
    preview: str | None = None
    sender: str | None = None
    is_read: bool | None = None
    conversation_id: str | None = None
