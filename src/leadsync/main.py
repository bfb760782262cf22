"""Wiring for the CRM list cache.

Builds the store, Graph transport, per-list feeds and engines, the smart
status evaluator, the coordinator and the lead service from Settings.
Nothing is global: every collaborator is passed by reference at
construction, and callers own the returned objects' lifetimes.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from src.leadsync.cache.coordinator import MultiListCoordinator
from src.leadsync.cache.engine import DeltaSyncEngine
from src.leadsync.cache.schemas import AnchorFields
from src.leadsync.cache.store import (
    PersistentStore,
    close_redis,
    get_redis_pool,
    get_redis_store,
)
from src.leadsync.config import Settings, get_settings
from src.leadsync.events.notifier import ChangeNotifier, RedisStreamNotifier
from src.leadsync.graph.feed import SharePointDeltaFeed
from src.leadsync.graph.transport import GraphTransport, TokenProvider
from src.leadsync.leads.engine import LeadSyncEngine
from src.leadsync.leads.service import LeadService
from src.leadsync.observability.logging import configure_structlog
from src.leadsync.status.evaluator import DerivedStatusEvaluator
from src.leadsync.status.schemas import CandidateMode, StatusPolicy

logger = structlog.get_logger(__name__)


@dataclass
class CRMCache:
    """Assembled cache components for one authenticated user session."""

    transport: GraphTransport
    leads: LeadSyncEngine
    anchors: DeltaSyncEngine[AnchorFields]
    evaluator: DerivedStatusEvaluator
    coordinator: MultiListCoordinator
    service: LeadService
    owns_redis: bool = False

    async def aclose(self) -> None:
        """Close the transport, and the shared Redis pool if this cache opened it."""
        await self.transport.aclose()
        if self.owns_redis:
            await close_redis()


def build_status_policy(settings: Settings) -> StatusPolicy:
    """Translate flat settings into the evaluator policy."""
    return StatusPolicy(
        candidate_mode=CandidateMode(settings.STATUS_CANDIDATE_MODE),
        terminal_statuses=frozenset(settings.STATUS_TERMINAL_STATUSES),
        batch_size=settings.STATUS_BATCH_SIZE,
        messages_per_lead=settings.STATUS_MESSAGES_PER_LEAD,
        escalation_days={
            "Waiting On You": settings.AWAITING_OUR_REPLY_DAYS,
            "Waiting On Contact": settings.AWAITING_THEIR_REPLY_DAYS,
        },
    )


def create_crm_cache(
    token_provider: TokenProvider,
    settings: Settings | None = None,
    store: PersistentStore | None = None,
    notifier: ChangeNotifier | None = None,
    transport: GraphTransport | None = None,
    owner: str = "Unknown",
) -> CRMCache:
    """Assemble the cache for one user.

    Args:
        token_provider: Source of Graph bearer tokens.
        settings: Settings; defaults to the cached environment settings.
        store: Persistent store; defaults to the Redis store.
        notifier: Change sink; defaults to the configured Redis stream.
        transport: Pre-built transport (tests); built from settings otherwise.
        owner: Display name of the user, stamped on leads they create.
    """
    settings = settings or get_settings()
    configure_structlog(settings)

    owns_redis = store is None or notifier is None
    store = store or get_redis_store()
    notifier = notifier or RedisStreamNotifier(get_redis_pool(), settings.NOTIFY_STREAM)
    transport = transport or GraphTransport(
        token_provider,
        base_url=settings.GRAPH_BASE_URL,
        timeout=settings.GRAPH_TIMEOUT,
        max_attempts=settings.GRAPH_MAX_RETRIES,
    )

    leads = LeadSyncEngine(
        feed=SharePointDeltaFeed(transport, settings.sharepoint_list_url(settings.LEADS_LIST_ID)),
        store=store,
        storage_key=settings.LEADS_STORAGE_KEY,
    )
    anchors = DeltaSyncEngine(
        name="anchors",
        feed=SharePointDeltaFeed(transport, settings.sharepoint_list_url(settings.ANCHORS_LIST_ID)),
        store=store,
        storage_key=settings.ANCHORS_STORAGE_KEY,
        fields_model=AnchorFields,
    )

    evaluator = DerivedStatusEvaluator(
        transport,
        own_email=settings.OWN_EMAIL,
        policy=build_status_policy(settings),
        notifier=notifier,
    )
    coordinator = MultiListCoordinator(
        engines=[leads, anchors],
        post_sync=evaluator.post_sync_hook(leads, anchors),
    )
    service = LeadService(
        transport,
        site_id=settings.SHAREPOINT_SITE_ID,
        leads_list_id=settings.LEADS_LIST_ID,
        events_list_id=settings.EVENTS_LIST_ID,
        anchors_list_id=settings.ANCHORS_LIST_ID,
        leads=leads,
        anchors=anchors,
        coordinator=coordinator,
        owner=owner,
    )

    logger.info(
        "crm_cache.created",
        lists=coordinator.names,
        candidate_mode=evaluator.policy.candidate_mode.value,
    )
    return CRMCache(
        transport=transport,
        leads=leads,
        anchors=anchors,
        evaluator=evaluator,
        coordinator=coordinator,
        service=service,
        owns_redis=owns_redis,
    )
