"""Leads list: status-aware sync engine and user-facing lead operations."""

from src.leadsync.leads.engine import LeadSyncEngine
from src.leadsync.leads.schemas import LeadDraft, TimelineEntry
from src.leadsync.leads.service import LeadService

__all__ = [
    "LeadDraft",
    "LeadService",
    "LeadSyncEngine",
    "TimelineEntry",
]
