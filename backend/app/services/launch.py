from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from backend.app.ledger import InsufficientMinutesError, LedgerStore
from backend.app.models import (
    BatchCallRecord,
    CampaignLaunchRequest,
    CampaignLaunchResponse,
    CampaignRecord,
    CampaignStatus,
)
from backend.app.persistence import PersistenceError
from backend.app.services.provider import ProviderClient, ProviderConfigError, ProviderIOError
from backend.app.services.usage import estimate_campaign_minutes
from backend.app.store import CampaignStateStore, StoreConflictError

logger = logging.getLogger("campaign_minutes.launch")


def _abandon_batch(
    provider: ProviderClient, batch_id: str, campaign_id: str, reason: Exception
) -> None:
    try:
        provider.cancel_batch(batch_id)
    except (ProviderConfigError, ProviderIOError) as exc:
        logger.error(
            "launch_orphan_batch campaign_id=%s batch_id=%s reason=%s cancel_error=%s",
            campaign_id,
            batch_id,
            reason,
            exc,
        )
        return
    logger.warning(
        "launch_batch_cancelled campaign_id=%s batch_id=%s reason=%s",
        campaign_id,
        batch_id,
        reason,
    )


def _finish_launch(
    state_store: CampaignStateStore,
    campaign: CampaignRecord,
    batch: BatchCallRecord,
    minutes: int,
) -> CampaignLaunchResponse:
    campaign, _ = state_store.transition_campaign(campaign.id, CampaignStatus.launched)
    logger.info(
        "campaign_launched campaign_id=%s batch_id=%s user_id=%s minutes=%s",
        campaign.id,
        batch.batch_id,
        campaign.user_id,
        minutes,
    )
    return CampaignLaunchResponse(
        campaign_id=campaign.id,
        batch_id=batch.batch_id,
        status=campaign.status,
        minutes_deducted=minutes,
        polling=False,
    )


def launch_campaign(
    campaign_id: str,
    request: CampaignLaunchRequest,
    *,
    state_store: CampaignStateStore,
    ledger: LedgerStore,
    provider: ProviderClient,
    minutes_per_recipient: int = 2,
) -> CampaignLaunchResponse:
    """Submit a draft campaign to the provider and charge the launch estimate.

    An under-funded owner is turned away before the provider is called. The
    batch row and the deduction are then written in one transaction whose
    balance update only matches while the owner can still pay, so parallel
    launches cannot overdraw the balance. If that transaction fails the
    provider batch is cancelled and nothing is recorded, leaving the campaign
    in Draft for a clean retry. A campaign whose charge committed but whose
    status change did not is finished on the next launch without a second
    submission.
    """
    campaign = state_store.get_campaign(campaign_id)
    if campaign.status != CampaignStatus.draft:
        raise StoreConflictError(
            f"campaign {campaign_id} is {campaign.status.value}, only Draft campaigns launch"
        )

    linked = state_store.find_batch_for_campaign(campaign.id)
    if linked is not None:
        deduction = ledger.find_deduction(campaign.user_id, linked.batch_id)
        if deduction is None:
            raise StoreConflictError(
                f"campaign {campaign_id} has batch {linked.batch_id} without a deduction"
            )
        logger.info(
            "launch_resumed campaign_id=%s batch_id=%s", campaign.id, linked.batch_id
        )
        return _finish_launch(state_store, campaign, linked, deduction.minutes)

    estimate = estimate_campaign_minutes(len(request.recipients), minutes_per_recipient)
    available = ledger.get_balance(campaign.user_id)
    if available < estimate:
        raise InsufficientMinutesError(campaign.user_id, estimate, available)

    call_name = request.call_name or campaign.name
    result = provider.submit_batch(request, call_name=call_name)
    batch_id = str(result["id"])
    try:
        with state_store.database.transaction() as conn:
            state_store.insert_batch_call(
                conn,
                batch_id=batch_id,
                user_id=campaign.user_id,
                campaign_id=campaign.id,
                name=result.get("name") or call_name,
                status=result.get("status"),
                total_calls_scheduled=int(
                    result.get("total_calls_scheduled") or len(request.recipients)
                ),
            )
            ledger.charge_minutes(
                conn,
                user_id=campaign.user_id,
                batch_id=batch_id,
                minutes=estimate,
                campaign_id=campaign.id,
                description=f"Campaign launch - {len(request.recipients)} recipients",
            )
    except IntegrityError as exc:
        # Another launch of this campaign linked its batch first.
        _abandon_batch(provider, batch_id, campaign.id, exc)
        raise StoreConflictError(f"campaign {campaign_id} already has a batch") from exc
    except (InsufficientMinutesError, PersistenceError) as exc:
        _abandon_batch(provider, batch_id, campaign.id, exc)
        raise

    return _finish_launch(state_store, campaign, state_store.get_batch_call(batch_id), estimate)
