from __future__ import annotations

import pytest

from backend.app.models import (
    BatchSnapshot,
    CampaignStatus,
    CampaignTransition,
    ConversationEvent,
    SettlementStatus,
    TransactionType,
)
from backend.app.persistence import PersistenceError
from backend.app.services.reconciliation import NoDeductionFoundError, OwnerResolutionError


def conversation(
    batch_id: str,
    index: int,
    *,
    status: str = "done",
    duration: int = 50,
    recipient_prefix: str = "rcpt",
) -> ConversationEvent:
    return ConversationEvent.model_validate(
        {
            "conversation_id": f"conv_{batch_id}_{index}",
            "agent_id": "agent_1",
            "status": status,
            "batch_call": {
                "batch_call_id": batch_id,
                "batch_call_recipient_id": f"{recipient_prefix}_{index}",
            },
            "phone_call": {"external_number": f"+1555000{index:04d}"},
            "metadata": {"call_duration_secs": duration, "cost": 120.5},
            "analysis": {"call_successful": "success", "transcript_summary": "Booked a demo."},
            "transcript": [{"role": "agent", "message": "Hi"}],
        }
    )


def test_ten_recipients_eight_done_two_failed_refunds_twelve(
    engine, state_store, ledger, launched_batch
) -> None:
    campaign_id, batch_id = launched_batch(recipients=10, opening_balance=100)
    assert ledger.get_balance("user_1") == 80

    for index in range(8):
        engine.ingest_conversation_event(conversation(batch_id, index, duration=50))
    for index in range(8, 10):
        engine.ingest_conversation_event(conversation(batch_id, index, status="failed", duration=0))

    outcome = engine.ingest_batch_status_event(batch_id, "completed", 10, 1_700_000_000)

    assert outcome.transition == CampaignTransition.completed
    assert outcome.campaign_status == CampaignStatus.completed
    assert outcome.settlement.status == SettlementStatus.refunded
    assert outcome.settlement.minutes_used == 8
    assert outcome.settlement.refund_minutes == 12
    assert ledger.get_balance("user_1") == 92
    assert ledger.derived_balance("user_1") == 92
    assert state_store.get_campaign(campaign_id).status == CampaignStatus.completed


def test_duplicate_conversation_event_is_idempotent_and_never_touches_ledger(
    engine, state_store, ledger, launched_batch
) -> None:
    _, batch_id = launched_batch()
    before = ledger.list_transactions("user_1")
    event = conversation(batch_id, 1, duration=95)

    first = engine.ingest_conversation_event(event)
    second = engine.ingest_conversation_event(event)

    assert first.conversation_id == second.conversation_id
    assert second.call_duration_secs == 95
    assert second.summary == "Booked a demo."
    assert len(state_store.list_batch_conversations(batch_id)) == 1
    assert ledger.list_transactions("user_1") == before
    recipient = state_store.find_recipient("rcpt_1", batch_id)
    assert recipient.conversation_id == event.conversation_id
    assert recipient.status == "done"


def test_double_settle_writes_one_refund(engine, ledger, launched_batch) -> None:
    _, batch_id = launched_batch(recipients=5, opening_balance=10)

    first = engine.settle_campaign_minutes(batch_id, "user_1")
    second = engine.settle_campaign_minutes(batch_id, "user_1")

    assert first.status == SettlementStatus.refunded
    assert first.refund_minutes == 10
    assert second.status == SettlementStatus.already_settled
    refunds = [
        t for t in ledger.list_transactions("user_1") if t.transaction_type == TransactionType.refund
    ]
    assert len(refunds) == 1
    assert ledger.get_balance("user_1") == 10


def test_repeated_terminal_status_settles_once(engine, ledger, launched_batch) -> None:
    _, batch_id = launched_batch(recipients=4, opening_balance=8)

    engine.ingest_batch_status_event(batch_id, "completed")
    outcome = engine.ingest_batch_status_event(batch_id, "completed")

    assert outcome.settlement.status == SettlementStatus.already_settled
    assert ledger.get_balance("user_1") == 8


def test_failed_batch_refunds_whole_deduction(engine, state_store, ledger, launched_batch) -> None:
    campaign_id, batch_id = launched_batch(recipients=3, opening_balance=6)
    engine.ingest_conversation_event(conversation(batch_id, 0, duration=200))

    outcome = engine.ingest_batch_status_event(batch_id, "cancelled")

    assert outcome.campaign_status == CampaignStatus.failed
    assert outcome.settlement.failed is True
    assert outcome.settlement.refund_minutes == 6
    assert ledger.get_balance("user_1") == 6
    assert state_store.get_campaign(campaign_id).status == CampaignStatus.failed


def test_refund_never_exceeds_deduction_when_usage_overruns(engine, ledger, launched_batch) -> None:
    _, batch_id = launched_batch(recipients=2, opening_balance=4)
    engine.ingest_conversation_event(conversation(batch_id, 0, duration=600))

    result = engine.settle_campaign_minutes(batch_id, "user_1")

    assert result.status == SettlementStatus.nothing_to_refund
    assert result.refund_minutes == 0
    assert ledger.find_refund("user_1", batch_id) is None
    assert ledger.get_balance("user_1") == 0


def test_settle_without_deduction_raises(engine, state_store) -> None:
    state_store.create_batch_call(batch_id="orphan", user_id="user_1", campaign_id=None)
    with pytest.raises(NoDeductionFoundError):
        engine.settle_campaign_minutes("orphan", "user_1")


def test_terminal_status_without_deduction_is_reported_not_raised(engine, state_store) -> None:
    state_store.create_batch_call(batch_id="orphan", user_id="user_1", campaign_id=None)
    outcome = engine.ingest_batch_status_event("orphan", "completed")
    assert outcome.settlement.status == SettlementStatus.no_deduction


def test_non_terminal_status_only_updates_batch(engine, state_store, ledger, launched_batch) -> None:
    campaign_id, batch_id = launched_batch()
    outcome = engine.ingest_batch_status_event(batch_id, "in_progress", 3, 1_700_000_100)

    assert outcome.transition == CampaignTransition.no_change
    assert outcome.settlement is None
    batch = state_store.get_batch_call(batch_id)
    assert batch.status == "in_progress"
    assert batch.total_calls_dispatched == 3
    assert state_store.get_campaign(campaign_id).status == CampaignStatus.launched


def test_completed_campaign_is_not_moved_to_failed(engine, state_store, launched_batch) -> None:
    campaign_id, batch_id = launched_batch()
    engine.ingest_batch_status_event(batch_id, "completed")
    outcome = engine.ingest_batch_status_event(batch_id, "failed")

    assert outcome.campaign_status == CampaignStatus.completed
    assert outcome.settlement.status == SettlementStatus.already_settled
    assert state_store.get_campaign(campaign_id).status == CampaignStatus.completed


def test_owner_falls_back_to_batch_when_recipient_unknown(engine, launched_batch) -> None:
    _, batch_id = launched_batch(user_id="owner_9")
    event = conversation(batch_id, 3, recipient_prefix="unseen")
    assert engine.resolve_owner(event) == "owner_9"


def test_unresolvable_owner_raises(engine) -> None:
    with pytest.raises(OwnerResolutionError):
        engine.ingest_conversation_event(conversation("unknown_batch", 1))
    with pytest.raises(OwnerResolutionError):
        engine.ingest_batch_status_event("unknown_batch", "completed")


def test_recipient_failure_does_not_fail_conversation(
    engine, state_store, launched_batch, monkeypatch
) -> None:
    _, batch_id = launched_batch()

    def broken_upsert(**_kwargs):
        raise PersistenceError("database is locked")

    monkeypatch.setattr(state_store, "upsert_recipient", broken_upsert)
    record = engine.ingest_conversation_event(conversation(batch_id, 1))

    assert record.status == "done"
    assert state_store.find_conversation(record.conversation_id) is not None


def test_snapshot_reconciles_recipients_then_settles(
    engine, state_store, ledger, launched_batch
) -> None:
    campaign_id, batch_id = launched_batch(recipients=3, opening_balance=6)
    snapshot = BatchSnapshot.model_validate(
        {
            "id": batch_id,
            "status": "completed",
            "total_calls_scheduled": 3,
            "total_calls_dispatched": 3,
            "last_updated_at_unix": 1_700_000_200,
            "recipients": [
                {
                    "id": "rcpt_a",
                    "phone_number": "+15550001",
                    "status": "completed",
                    "conversation_id": "conv_a",
                    "conversation_initiation_client_data": {
                        "dynamic_variables": {"first_name": "Ana"}
                    },
                },
                {"id": "rcpt_b", "phone_number": "+15550002", "status": "failed"},
                {"id": "rcpt_c", "phone_number": "+15550003", "status": "pending"},
            ],
        }
    )

    outcome = engine.reconcile_batch_snapshot(snapshot, "user_1")

    assert outcome.recipients_processed == 3
    assert outcome.recipient_errors == 0
    assert outcome.conversations_ingested == 1
    assert len(state_store.list_recipients(batch_id)) == 3
    placeholder = state_store.get_conversation("conv_a")
    assert placeholder.campaign_id == campaign_id
    assert placeholder.dynamic_variables == {"first_name": "Ana"}
    assert placeholder.call_duration_secs == 0
    # conv_a is billable but has no duration yet, so the whole deduction comes back.
    assert outcome.batch.settlement.refund_minutes == 6
    assert ledger.get_balance("user_1") == 6


def test_poll_placeholder_does_not_erase_webhook_data(engine, state_store, launched_batch) -> None:
    _, batch_id = launched_batch(recipients=1)
    event = conversation(batch_id, 0, duration=130)
    engine.ingest_conversation_event(event)
    snapshot = BatchSnapshot.model_validate(
        {
            "id": batch_id,
            "status": "in_progress",
            "recipients": [
                {"id": "rcpt_0", "status": "in_progress", "conversation_id": event.conversation_id}
            ],
        }
    )

    engine.reconcile_batch_snapshot(snapshot, "user_1")

    stored = state_store.get_conversation(event.conversation_id)
    assert stored.call_duration_secs == 130
    assert stored.status == "done"
    assert stored.summary == "Booked a demo."


def test_poll_does_not_reopen_a_failed_conversation(engine, state_store, launched_batch) -> None:
    _, batch_id = launched_batch(recipients=1)
    event = conversation(batch_id, 0, status="failed", duration=0)
    engine.ingest_conversation_event(event)
    snapshot = BatchSnapshot.model_validate(
        {
            "id": batch_id,
            "status": "in_progress",
            "recipients": [
                {"id": "rcpt_0", "status": "in_progress", "conversation_id": event.conversation_id}
            ],
        }
    )

    engine.reconcile_batch_snapshot(snapshot, "user_1")

    assert state_store.get_conversation(event.conversation_id).status == "failed"


def test_snapshot_recipient_failure_does_not_stop_siblings(
    engine, state_store, launched_batch, monkeypatch
) -> None:
    campaign_id, batch_id = launched_batch(recipients=3, opening_balance=6)
    upsert_recipient = state_store.upsert_recipient

    def upsert_or_fail(**kwargs):
        if kwargs["provider_recipient_id"] == "rcpt_b":
            raise PersistenceError("database is locked")
        return upsert_recipient(**kwargs)

    monkeypatch.setattr(state_store, "upsert_recipient", upsert_or_fail)
    snapshot = BatchSnapshot.model_validate(
        {
            "id": batch_id,
            "status": "completed",
            "total_calls_dispatched": 3,
            "recipients": [
                {"id": "rcpt_a", "status": "completed", "conversation_id": "conv_a"},
                {"id": "rcpt_b", "status": "failed"},
                {"id": "rcpt_c", "status": "failed"},
            ],
        }
    )

    outcome = engine.reconcile_batch_snapshot(snapshot, "user_1")

    assert outcome.recipient_errors == 1
    assert outcome.recipients_processed == 2
    stored = {recipient.provider_recipient_id for recipient in state_store.list_recipients(batch_id)}
    assert stored == {"rcpt_a", "rcpt_c"}
    assert outcome.batch.transition == CampaignTransition.completed
    assert state_store.get_batch_call(batch_id).status == "completed"
    assert state_store.get_campaign(campaign_id).status == CampaignStatus.completed
