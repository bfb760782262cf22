"""Pydantic schemas for smart status evaluation.

Defines:
- SmartStatus: statuses the evaluator can assign
- CandidateMode: which leads are re-evaluated on each pass
- StatusPolicy: evaluator configuration (batching, thresholds, candidates)
- MailMessage: the subset of a Graph message the evaluator and timeline read
- EvaluationResult: counters for one evaluate() call
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.leadsync.cache.schemas import coerce_datetime


class SmartStatus(str, Enum):
    """Derived lead statuses."""

    AWAITING_OUR_REPLY = "Waiting On You"
    AWAITING_THEIR_REPLY = "Waiting On Contact"
    ACTION_REQUIRED = "Action Required"


class CandidateMode(str, Enum):
    """Which leads are rechecked on every evaluation pass.

    ALL rechecks every cached lead. NON_TERMINAL skips leads whose status
    is in ``StatusPolicy.terminal_statuses``.
    """

    ALL = "all"
    NON_TERMINAL = "non_terminal"


def _default_escalation() -> dict[str, float]:
    return {
        SmartStatus.AWAITING_OUR_REPLY.value: 2.0,
        SmartStatus.AWAITING_THEIR_REPLY.value: 7.0,
    }


class StatusPolicy(BaseModel):
    """Configuration of the smart status evaluator.

    Attributes:
        candidate_mode: Candidate selection policy.
        terminal_statuses: Statuses skipped in NON_TERMINAL mode.
        batch_size: Leads per Graph $batch call (Graph caps this at 20).
        messages_per_lead: ``$top`` for each lead's mailbox search.
        escalation_days: Status -> days without activity after which the
            lead is forced to "Action Required" (strictly greater than).
    """

    candidate_mode: CandidateMode = CandidateMode.ALL
    terminal_statuses: frozenset[str] = frozenset({"Closed"})
    batch_size: int = Field(default=20, ge=1, le=20)
    messages_per_lead: int = Field(default=10, ge=1)
    escalation_days: dict[str, float] = Field(default_factory=_default_escalation)


class MailMessage(BaseModel):
    """A mailbox message as returned by Graph ``/me/messages``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str | None = None
    subject: str | None = None
    body_preview: str | None = Field(default=None, alias="bodyPreview")
    received_at: datetime | None = Field(default=None, alias="receivedDateTime")
    is_draft: bool | None = Field(default=None, alias="isDraft")
    is_read: bool | None = Field(default=None, alias="isRead")
    conversation_id: str | None = Field(default=None, alias="conversationId")
    sender: dict[str, Any] | None = Field(default=None, alias="from")

    @field_validator("received_at", mode="before")
    @classmethod
    def parse_received(cls, value: Any) -> datetime | None:
        return coerce_datetime(value)

    @property
    def sender_address(self) -> str:
        """Lowercased sender address, or "" if absent."""
        address = ((self.sender or {}).get("emailAddress") or {}).get("address") or ""
        return address.lower()

    @property
    def sender_display(self) -> str:
        email_address = (self.sender or {}).get("emailAddress") or {}
        return email_address.get("name") or email_address.get("address") or "Unknown"


class EvaluationResult(BaseModel):
    """Counters for one evaluation pass."""

    candidates: int = 0
    batches: int = 0
    queried: int = 0
    skipped_no_anchor: int = 0
    failed_responses: int = 0
    activity_updates: int = 0
    status_changes: int = 0
    notified: bool = False
