from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from backend.app.ledger import DuplicateTransactionError, LedgerStore
from backend.app.models import (
    CampaignRecord,
    CleanupCampaignDetail,
    CleanupReport,
    utc_now,
)
from backend.app.observability import MetricsRegistry
from backend.app.persistence import PersistenceError
from backend.app.services.usage import is_billable_status, minutes_used
from backend.app.store import CampaignStateStore

logger = logging.getLogger("campaign_minutes.cleanup")


class CleanupSweeper:
    """
    Backstop for batches the live paths never settled.

    Completed campaigns older than the grace period are refunded a fixed
    amount per failed call, capped by what the launch deduction left unused.
    The refund goes through the same once-per-batch ledger entry settlement
    uses, so a batch is never refunded twice.
    """

    def __init__(
        self,
        state_store: CampaignStateStore,
        ledger: LedgerStore,
        *,
        grace: timedelta = timedelta(hours=4),
        minutes_per_call: int = 2,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self.state_store = state_store
        self.ledger = ledger
        self.grace = grace
        self.minutes_per_call = minutes_per_call
        self.metrics = metrics

    def sweep(
        self, campaign_id: Optional[str] = None, now: Optional[datetime] = None
    ) -> CleanupReport:
        cutoff = (now or utc_now()) - self.grace
        campaigns = self.state_store.list_stale_completed_campaigns(
            launched_before=cutoff, campaign_id=campaign_id
        )
        details: list[CleanupCampaignDetail] = []
        total_refunded = 0
        refunded_campaigns = 0
        for campaign in campaigns:
            try:
                detail = self._sweep_campaign(campaign)
            except PersistenceError as exc:
                logger.error("cleanup_campaign_failed campaign_id=%s error=%s", campaign.id, exc)
                continue
            if detail is None:
                continue
            details.append(detail)
            if detail.refunded_minutes > 0:
                total_refunded += detail.refunded_minutes
                refunded_campaigns += 1
        logger.info(
            "cleanup_finished examined=%s refunded_campaigns=%s total_refunded=%s",
            len(campaigns),
            refunded_campaigns,
            total_refunded,
        )
        return CleanupReport(
            total_refunded=total_refunded,
            processed_campaigns=refunded_campaigns,
            details=details,
        )

    def _sweep_campaign(self, campaign: CampaignRecord) -> Optional[CleanupCampaignDetail]:
        batch = self.state_store.find_batch_for_campaign(campaign.id)
        if batch is None:
            return None
        conversations = self.state_store.list_campaign_conversations(campaign.id)
        expected = batch.total_calls_scheduled
        successful = sum(1 for conversation in conversations if is_billable_status(conversation.status))
        failed = max(0, expected - successful)

        def _detail(refunded: int, outcome: str) -> CleanupCampaignDetail:
            return CleanupCampaignDetail(
                campaign_id=campaign.id,
                campaign_name=campaign.name,
                batch_id=batch.batch_id,
                expected_calls=expected,
                successful_calls=successful,
                failed_calls=failed,
                refunded_minutes=refunded,
                outcome=outcome,
            )

        if failed == 0:
            return _detail(0, "no_failed_calls")
        if self.ledger.find_refund(campaign.user_id, batch.batch_id):
            return _detail(0, "already_settled")
        deduction = self.ledger.find_deduction(campaign.user_id, batch.batch_id)
        if deduction is None:
            logger.warning(
                "cleanup_no_deduction campaign_id=%s batch_id=%s", campaign.id, batch.batch_id
            )
            return _detail(0, "no_deduction")

        used = minutes_used(conversations)
        refund = min(failed * self.minutes_per_call, max(0, deduction.minutes - used))
        if refund <= 0:
            return _detail(0, "nothing_to_refund")
        try:
            self.ledger.apply_refund_once(
                user_id=campaign.user_id,
                batch_id=batch.batch_id,
                minutes=refund,
                campaign_id=campaign.id,
                description=f"Batch cleanup - {failed} failed calls refund",
            )
        except DuplicateTransactionError:
            return _detail(0, "already_settled")
        if self.metrics is not None:
            self.metrics.increment("sweep_refunds")
            self.metrics.increment("sweep_refund_minutes", refund)
        logger.info(
            "cleanup_refunded campaign_id=%s batch_id=%s failed_calls=%s refund=%s",
            campaign.id,
            batch.batch_id,
            failed,
            refund,
        )
        return _detail(refund, "refunded")
