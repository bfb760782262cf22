"""Smart status evaluator -- derives lead status from mailbox activity.

For each candidate lead, searches the authenticated user's mailbox for
messages involving any of the lead's anchor addresses, then:

- newest non-draft message newer than the lead's last activity:
  update last activity; sent by us -> "Waiting On Contact",
  sent by them -> "Waiting On You"
- too long without activity for the (possibly new) status:
  escalate to "Action Required"

Searches are multiplexed through Graph ``$batch`` (at most 20 per call).
A failed or unreadable sub-response skips that lead only. Results are
written back through the leads engine, and a single change notification is
emitted per pass.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from datetime import datetime, timezone

import structlog
from pydantic import ValidationError

from src.leadsync.cache.coordinator import PostSyncHook
from src.leadsync.cache.engine import DeltaSyncEngine, utc_now
from src.leadsync.cache.schemas import AnchorFields, LeadFields, SyncedItem
from src.leadsync.cache.snapshot import Snapshot
from src.leadsync.events.notifier import ChangeNotifier, NullNotifier
from src.leadsync.graph.transport import BatchRequest, BatchResponse, GraphTransport
from src.leadsync.leads.engine import LeadSyncEngine
from src.leadsync.status.schemas import (
    CandidateMode,
    EvaluationResult,
    MailMessage,
    SmartStatus,
    StatusPolicy,
)

logger = structlog.get_logger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

NOTIFY_REASON = "smart_status"


def chunked(items: list, size: int) -> list[list]:
    """Split a list into consecutive chunks of at most ``size`` items."""
    return [items[i : i + size] for i in range(0, len(items), size)]


def elapsed_days(since: datetime, now: datetime) -> float:
    """Wall-clock days between two instants (hours / 24)."""
    hours = (now - since).total_seconds() / 3600
    return hours / 24


class DerivedStatusEvaluator:
    """Computes derived lead statuses from correlated mailbox messages.

    Args:
        transport: Graph transport used for ``$batch`` searches.
        own_email: Address of the authenticated user; messages from it
            count as "our" replies.
        policy: Candidate selection, batching and escalation settings.
        notifier: Sink for the per-pass change notification.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        transport: GraphTransport,
        own_email: str,
        policy: StatusPolicy | None = None,
        notifier: ChangeNotifier | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._transport = transport
        self._own_email = own_email.strip().lower()
        self._policy = policy or StatusPolicy()
        self._notifier = notifier or NullNotifier()
        self._clock = clock

    @property
    def policy(self) -> StatusPolicy:
        return self._policy

    # ── Candidate selection and request building ────────────────────────

    def select_candidates(self, leads: Snapshot[LeadFields]) -> list[SyncedItem[LeadFields]]:
        """Return the leads to evaluate under the configured candidate mode."""
        if self._policy.candidate_mode == CandidateMode.ALL:
            return leads.values()
        return [
            lead for lead in leads
            if lead.fields.status not in self._policy.terminal_statuses
        ]

    @staticmethod
    def index_anchor_emails(anchors: Snapshot[AnchorFields]) -> dict[str, list[str]]:
        """Map LeadId -> usable anchor addresses (deduplicated, in anchor order)."""
        by_lead: dict[str, list[str]] = defaultdict(list)
        for anchor in anchors:
            email = anchor.fields.usable_email()
            lead_id = anchor.fields.lead_id
            if email and lead_id and email not in by_lead[lead_id]:
                by_lead[lead_id].append(email)
        return by_lead

    def build_request(self, lead: SyncedItem[LeadFields], emails: list[str]) -> BatchRequest | None:
        """Build the mailbox search sub-request for one lead, or None without addresses."""
        if not emails:
            return None
        search = " OR ".join(f"participants:{email}" for email in emails)
        return BatchRequest(
            id=lead.item_id,
            url=(
                f'/me/messages?$search="{search}"'
                f"&$top={self._policy.messages_per_lead}"
                "&$select=receivedDateTime,from,toRecipients,sender,isDraft"
            ),
        )

    # ── Evaluation ──────────────────────────────────────────────────────

    async def evaluate(
        self,
        leads: LeadSyncEngine,
        anchors: Snapshot[AnchorFields],
        timeout: float | None = None,
    ) -> EvaluationResult:
        """Run one evaluation pass over the leads engine's snapshot.

        Args:
            leads: Engine owning the lead snapshot (write-back goes through it).
            anchors: Snapshot of contact anchors.
            timeout: Per-batch request timeout in seconds.

        Returns:
            EvaluationResult counters.

        Raises:
            TransientTransportError: If a whole batch call fails. Changes from
                earlier batches are still persisted and notified.
        """
        result = EvaluationResult()
        candidates = self.select_candidates(leads.snapshot)
        result.candidates = len(candidates)
        emails_by_lead = self.index_anchor_emails(anchors)
        changed = False

        logger.info(
            "status.evaluation_started",
            candidates=len(candidates),
            mode=self._policy.candidate_mode.value,
        )

        try:
            for batch in chunked(candidates, self._policy.batch_size):
                requests: list[BatchRequest] = []
                for lead in batch:
                    request = self.build_request(
                        lead, emails_by_lead.get(lead.fields.lead_id or "", [])
                    )
                    if request is None:
                        result.skipped_no_anchor += 1
                        continue
                    requests.append(request)

                if not requests:
                    continue

                responses = await self._transport.batch(requests, timeout=timeout)
                result.batches += 1
                result.queried += len(requests)

                for response in responses:
                    outcome = self._apply_response(leads, response)
                    if outcome is None:
                        result.failed_responses += 1
                        continue
                    activity_changed, status_changed = outcome
                    result.activity_updates += int(activity_changed)
                    result.status_changes += int(status_changed)
                    changed = changed or activity_changed or status_changed
        finally:
            if changed:
                await leads.persist()
            if result.status_changes:
                await self._notifier.notify(NOTIFY_REASON)
                result.notified = True

            logger.info("status.evaluation_complete", **result.model_dump())

        return result

    def _apply_response(
        self,
        leads: LeadSyncEngine,
        response: BatchResponse,
    ) -> tuple[bool, bool] | None:
        """Process one sub-response.

        Returns:
            (last activity changed, status changed), or None if the
            sub-request failed or its body could not be read.
        """
        if response.status != 200:
            logger.warning(
                "status.subrequest_failed",
                item_id=response.id,
                status=response.status,
            )
            return None

        lead = leads.snapshot.get(response.id)
        if lead is None:
            return False, False

        messages = self._parse_messages(response)
        if messages is None:
            return None
        valid = [m for m in messages if m.is_draft is not True and m.received_at is not None]
        if not valid:
            return False, False

        latest = max(valid, key=lambda m: m.received_at)
        new_status, new_activity = self.derive(lead, latest)

        status_changed = new_status != lead.fields.status
        activity_changed = (
            new_activity is not None and new_activity != lead.fields.last_activity_at
        )
        if not status_changed and not activity_changed:
            return False, False

        leads.apply_derived_status(
            lead.item_id,
            status=new_status if status_changed else None,
            last_activity_at=new_activity if activity_changed else None,
        )
        return activity_changed, status_changed

    @staticmethod
    def _parse_messages(response: BatchResponse) -> list[MailMessage] | None:
        """Decode a search sub-response body, or None if it is malformed."""
        body = response.body if response.body is not None else {}
        raw_messages = (body.get("value") or []) if isinstance(body, dict) else None
        if not isinstance(raw_messages, list):
            logger.warning(
                "status.malformed_response",
                item_id=response.id,
                body_type=type(body).__name__,
            )
            return None
        try:
            return [MailMessage.model_validate(m) for m in raw_messages]
        except ValidationError as exc:
            logger.warning(
                "status.malformed_response",
                item_id=response.id,
                errors=exc.error_count(),
            )
            return None

    def derive(
        self,
        lead: SyncedItem[LeadFields],
        latest: MailMessage,
    ) -> tuple[str | None, datetime | None]:
        """Compute (status, new last activity) for a lead from its latest message.

        The returned last activity is None when the message is not newer than
        the lead's current last activity.
        """
        now = self._clock()
        status = lead.fields.status
        last_activity = lead.fields.last_activity_at
        message_at = latest.received_at
        new_activity: datetime | None = None

        if message_at is not None and message_at > (last_activity or _EPOCH):
            user_set_at = lead.status_set_by_user_at
            if user_set_at is not None and message_at <= user_set_at:
                logger.debug(
                    "status.user_status_kept",
                    item_id=lead.item_id,
                    status=status,
                )
            else:
                new_activity = message_at
                if latest.sender_address and latest.sender_address == self._own_email:
                    status = SmartStatus.AWAITING_THEIR_REPLY.value
                else:
                    status = SmartStatus.AWAITING_OUR_REPLY.value

        effective = new_activity or last_activity
        threshold = self._policy.escalation_days.get(status or "")
        if effective is not None and threshold is not None:
            if elapsed_days(effective, now) > threshold:
                logger.info(
                    "status.escalated",
                    item_id=lead.item_id,
                    from_status=status,
                    threshold_days=threshold,
                )
                status = SmartStatus.ACTION_REQUIRED.value

        return status, new_activity

    def post_sync_hook(
        self, leads: LeadSyncEngine, anchors: DeltaSyncEngine[AnchorFields]
    ) -> PostSyncHook:
        """Bind this evaluator to the leads and anchors engines for a coordinator.

        The returned coroutine function reads the anchors snapshot at call
        time, so it sees whatever state the last sync pass left behind.
        """

        async def _run(timeout: float | None = None) -> int:
            result = await self.evaluate(leads, anchors.snapshot, timeout=timeout)
            return result.status_changes

        return _run
