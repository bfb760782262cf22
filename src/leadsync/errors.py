"""Exception hierarchy for the CRM list cache.

Sync-pass errors (transport, expiry) propagate to the caller of ``sync()``
and are isolated per list by the coordinator. Storage errors are soft:
engines catch them and fall back to in-memory state.
"""

from __future__ import annotations


class LeadSyncError(Exception):
    """Base class for all leadsync errors."""


class TransientTransportError(LeadSyncError):
    """Network or HTTP failure talking to the remote list or mailbox."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CursorExpiredError(LeadSyncError):
    """The remote feed rejected a delta cursor (HTTP 410 Gone)."""


class ResyncFailedError(LeadSyncError):
    """The cursor expired again during the full resync that followed an expiry."""


class StorageUnavailableError(LeadSyncError):
    """The persistent store could not be read or written."""


class LeadCreationError(LeadSyncError):
    """One or more sub-requests of a lead creation batch failed."""

    def __init__(self, message: str, failed_ids: list[str] | None = None) -> None:
        super().__init__(message)
        self.failed_ids = failed_ids or []
