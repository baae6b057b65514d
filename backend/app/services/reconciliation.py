from __future__ import annotations

import logging
from typing import Optional

from backend.app.ledger import DuplicateTransactionError, LedgerStore
from backend.app.models import (
    BatchCallLink,
    BatchRecipientSnapshot,
    BatchSnapshot,
    BatchStatusOutcome,
    CampaignStatus,
    CampaignTransition,
    ConversationEvent,
    ConversationRecord,
    PhoneCallInfo,
    SettlementResult,
    SettlementStatus,
    SnapshotOutcome,
)
from backend.app.observability import MetricsRegistry
from backend.app.persistence import PersistenceError
from backend.app.services.usage import is_final_status, minutes_used
from backend.app.store import CampaignStateStore, StoreConflictError, StoreNotFoundError

logger = logging.getLogger("campaign_minutes.reconciliation")

COMPLETED_PROVIDER_STATUSES = {"completed", "successful", "success"}
FAILED_PROVIDER_STATUSES = {"failed", "error", "cancelled"}

_TRANSITION_TARGETS = {
    CampaignTransition.completed: CampaignStatus.completed,
    CampaignTransition.failed: CampaignStatus.failed,
}


class OwnerResolutionError(Exception):
    pass


class NoDeductionFoundError(Exception):
    pass


def map_batch_status(status: Optional[str]) -> CampaignTransition:
    if not isinstance(status, str):
        return CampaignTransition.no_change
    normalized = status.strip().lower()
    if normalized in COMPLETED_PROVIDER_STATUSES:
        return CampaignTransition.completed
    if normalized in FAILED_PROVIDER_STATUSES:
        return CampaignTransition.failed
    return CampaignTransition.no_change


class ReconciliationEngine:
    """
    Applies provider events to campaign state and settles minutes.

    Webhook deliveries and poll snapshots both land here. Every write is
    idempotent: conversations are upserted by id, campaign moves are a
    compare-and-swap, and the refund for a batch is unique in the ledger.
    """

    def __init__(
        self,
        state_store: CampaignStateStore,
        ledger: LedgerStore,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self.state_store = state_store
        self.ledger = ledger
        self.metrics = metrics

    map_batch_status = staticmethod(map_batch_status)

    def _count(self, name: str, amount: int = 1) -> None:
        if self.metrics is not None:
            self.metrics.increment(name, amount)

    def resolve_owner(self, event: ConversationEvent) -> str:
        recipient_id = event.provider_recipient_id
        batch_id = event.batch_id
        if recipient_id:
            recipient = self.state_store.find_recipient(recipient_id, batch_id)
            if recipient:
                return recipient.user_id
        if batch_id:
            batch = self.state_store.find_batch_call(batch_id)
            if batch:
                return batch.user_id
        self._count("owner_resolution_failures")
        raise OwnerResolutionError(
            f"no owner for conversation={event.conversation_id} "
            f"recipient={recipient_id} batch={batch_id}"
        )

    def ingest_conversation_event(self, event: ConversationEvent) -> ConversationRecord:
        user_id = self.resolve_owner(event)
        batch = self.state_store.find_batch_call(event.batch_id) if event.batch_id else None
        campaign_id = batch.campaign_id if batch else None
        conversation = self.state_store.upsert_conversation(
            event, user_id=user_id, campaign_id=campaign_id
        )
        if event.provider_recipient_id and event.batch_id:
            try:
                self.state_store.upsert_recipient(
                    provider_recipient_id=event.provider_recipient_id,
                    batch_id=event.batch_id,
                    user_id=user_id,
                    phone_number=event.phone_number,
                    status=event.status,
                    conversation_id=event.conversation_id,
                )
            except (PersistenceError, StoreNotFoundError) as exc:
                logger.warning(
                    "recipient_update_failed conversation_id=%s recipient_id=%s error=%s",
                    event.conversation_id,
                    event.provider_recipient_id,
                    exc,
                )
        logger.info(
            "conversation_ingested conversation_id=%s user_id=%s campaign_id=%s status=%s",
            event.conversation_id,
            user_id,
            campaign_id,
            conversation.status,
        )
        return conversation

    def ingest_batch_status_event(
        self,
        batch_id: str,
        provider_status: Optional[str],
        dispatched_count: Optional[int] = None,
        last_updated_unix: Optional[int] = None,
        *,
        total_calls_scheduled: Optional[int] = None,
    ) -> BatchStatusOutcome:
        if not self.state_store.find_batch_call(batch_id):
            self._count("owner_resolution_failures")
            raise OwnerResolutionError(f"unknown batch: {batch_id}")
        batch = self.state_store.update_batch_status(
            batch_id,
            status=provider_status,
            total_calls_dispatched=dispatched_count,
            last_updated_at_unix=last_updated_unix,
            total_calls_scheduled=total_calls_scheduled,
        )
        transition = map_batch_status(provider_status)
        outcome = BatchStatusOutcome(
            batch_id=batch_id,
            provider_status=provider_status,
            transition=transition,
            campaign_id=batch.campaign_id,
        )
        if transition == CampaignTransition.no_change:
            return outcome

        failed = transition == CampaignTransition.failed
        if batch.campaign_id:
            target = _TRANSITION_TARGETS[transition]
            try:
                campaign, changed = self.state_store.transition_campaign(batch.campaign_id, target)
                if changed:
                    logger.info(
                        "campaign_transition campaign_id=%s batch_id=%s status=%s",
                        campaign.id,
                        batch_id,
                        campaign.status.value,
                    )
            except StoreConflictError as exc:
                campaign = self.state_store.get_campaign(batch.campaign_id)
                logger.warning(
                    "campaign_transition_skipped campaign_id=%s batch_id=%s current=%s error=%s",
                    campaign.id,
                    batch_id,
                    campaign.status.value,
                    exc,
                )
            outcome.campaign_status = campaign.status
            # Settle against the status the campaign actually holds.
            if campaign.status in (CampaignStatus.completed, CampaignStatus.failed):
                failed = campaign.status == CampaignStatus.failed

        try:
            outcome.settlement = self.settle_campaign_minutes(batch_id, batch.user_id, failed=failed)
        except NoDeductionFoundError as exc:
            logger.warning("settlement_skipped batch_id=%s reason=%s", batch_id, exc)
            outcome.settlement = SettlementResult(
                batch_id=batch_id,
                user_id=batch.user_id,
                status=SettlementStatus.no_deduction,
                failed=failed,
            )
        return outcome

    def settle_campaign_minutes(
        self, batch_id: str, user_id: str, failed: bool = False
    ) -> SettlementResult:
        """Refund the unused part of a batch's launch deduction, exactly once.

        A failed batch gets the whole deduction back. Otherwise the refund is the
        deduction minus the minutes used by billable conversations, never below
        zero. Calling this again after a refund exists changes nothing.
        """
        deduction = self.ledger.find_deduction(user_id, batch_id)
        if deduction is None:
            raise NoDeductionFoundError(f"no deduction for user={user_id} batch={batch_id}")
        original = deduction.minutes

        existing = self.ledger.find_refund(user_id, batch_id)
        if existing is not None:
            return SettlementResult(
                batch_id=batch_id,
                user_id=user_id,
                status=SettlementStatus.already_settled,
                failed=failed,
                original_minutes=original,
                refund_minutes=existing.minutes,
                transaction_id=existing.id,
            )

        if deduction.campaign_id:
            conversations = self.state_store.list_campaign_conversations(deduction.campaign_id)
        else:
            conversations = self.state_store.list_batch_conversations(batch_id)
        used = minutes_used(conversations)
        refund = original if failed else max(0, original - used)

        result = SettlementResult(
            batch_id=batch_id,
            user_id=user_id,
            status=SettlementStatus.nothing_to_refund,
            failed=failed,
            original_minutes=original,
            minutes_used=used,
        )
        if refund <= 0:
            logger.info(
                "settlement_nothing_to_refund batch_id=%s user_id=%s original=%s used=%s",
                batch_id,
                user_id,
                original,
                used,
            )
            return result

        try:
            transaction = self.ledger.apply_refund_once(
                user_id=user_id,
                batch_id=batch_id,
                minutes=refund,
                campaign_id=deduction.campaign_id,
                description=(
                    f"Refund for failed batch {batch_id}"
                    if failed
                    else f"Refund of unused minutes for batch {batch_id} ({used} used)"
                ),
            )
        except DuplicateTransactionError:
            logger.info("settlement_lost_race batch_id=%s user_id=%s", batch_id, user_id)
            result.status = SettlementStatus.already_settled
            return result

        self._count("refunds_issued")
        self._count("refund_minutes", refund)
        logger.info(
            "settlement_refunded batch_id=%s user_id=%s original=%s used=%s refund=%s failed=%s",
            batch_id,
            user_id,
            original,
            used,
            refund,
            failed,
        )
        result.status = SettlementStatus.refunded
        result.refund_minutes = refund
        result.transaction_id = transaction.id
        return result

    def reconcile_batch_snapshot(self, snapshot: BatchSnapshot, user_id: str) -> SnapshotOutcome:
        processed = 0
        errors = 0
        ingested = 0
        for recipient in snapshot.recipients:
            try:
                self.state_store.upsert_recipient(
                    provider_recipient_id=recipient.id,
                    batch_id=snapshot.id,
                    user_id=user_id,
                    phone_number=recipient.phone_number,
                    contact_name=recipient.contact_name,
                    status=recipient.status,
                    conversation_id=recipient.conversation_id,
                    client_data=recipient.conversation_initiation_client_data,
                )
                processed += 1
                if recipient.conversation_id:
                    self.ingest_conversation_event(self._poll_event(snapshot.id, recipient))
                    ingested += 1
            except (PersistenceError, OwnerResolutionError, StoreNotFoundError) as exc:
                errors += 1
                logger.warning(
                    "snapshot_recipient_failed batch_id=%s recipient_id=%s error=%s",
                    snapshot.id,
                    recipient.id,
                    exc,
                )
        batch_outcome = self.ingest_batch_status_event(
            snapshot.id,
            snapshot.status,
            snapshot.total_calls_dispatched,
            snapshot.last_updated_at_unix,
            total_calls_scheduled=snapshot.total_calls_scheduled,
        )
        return SnapshotOutcome(
            batch=batch_outcome,
            recipients_processed=processed,
            recipient_errors=errors,
            conversations_ingested=ingested,
        )

    def _poll_event(self, batch_id: str, recipient: BatchRecipientSnapshot) -> ConversationEvent:
        status = recipient.status
        existing = self.state_store.find_conversation(recipient.conversation_id)
        # A stale poll must not reopen a conversation that already finished.
        if existing is not None and is_final_status(existing.status):
            status = None
        client_data = recipient.conversation_initiation_client_data or {}
        dynamic_variables = client_data.get("dynamic_variables")
        return ConversationEvent(
            conversation_id=recipient.conversation_id,
            status=status,
            contact_name=recipient.contact_name,
            batch_call=BatchCallLink(
                batch_call_id=batch_id, batch_call_recipient_id=recipient.id
            ),
            phone_call=PhoneCallInfo(external_number=recipient.phone_number),
            dynamic_variables=dynamic_variables if isinstance(dynamic_variables, dict) else None,
        )
