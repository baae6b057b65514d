from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

from backend.app.ledger import LedgerStore
from backend.app.models import ConversationEvent, SettlementStatus, TransactionType
from backend.app.persistence import Database
from backend.app.services.reconciliation import ReconciliationEngine
from backend.app.store import CampaignStateStore


def sqlite_url(path) -> str:
    return f"sqlite:///{str(path).replace(chr(92), '/')}"


def test_concurrent_settlement_from_independent_engines_refunds_once(
    db_path, launched_batch, ledger
) -> None:
    _, batch_id = launched_batch(recipients=10, opening_balance=20)
    assert ledger.get_balance("user_1") == 0

    databases = [Database(sqlite_url(db_path)) for _ in range(4)]
    engines = [
        ReconciliationEngine(CampaignStateStore(db), LedgerStore(db)) for db in databases
    ]

    def settle(index: int):
        return engines[index % len(engines)].settle_campaign_minutes(batch_id, "user_1")

    try:
        with ThreadPoolExecutor(max_workers=8) as executor:
            results = list(executor.map(settle, range(16)))
    finally:
        for db in databases:
            db.dispose()

    statuses = [result.status for result in results]
    assert statuses.count(SettlementStatus.refunded) == 1
    assert all(
        status in (SettlementStatus.refunded, SettlementStatus.already_settled)
        for status in statuses
    )
    refunds = [
        t for t in ledger.list_transactions("user_1") if t.transaction_type == TransactionType.refund
    ]
    assert len(refunds) == 1
    assert refunds[0].minutes == 20
    assert ledger.get_balance("user_1") == 20
    assert ledger.derived_balance("user_1") == 20


def test_parallel_settlement_of_two_batches_keeps_both_refunds(
    db_path, launched_batch, ledger
) -> None:
    _, first_batch = launched_batch(batch_id="batch_a", recipients=5, opening_balance=10)
    _, second_batch = launched_batch(batch_id="batch_b", recipients=3, opening_balance=6)
    assert ledger.get_balance("user_1") == 0

    databases = [Database(sqlite_url(db_path)) for _ in range(4)]
    engines = [
        ReconciliationEngine(CampaignStateStore(db), LedgerStore(db)) for db in databases
    ]
    batches = [first_batch, second_batch]

    def settle(index: int):
        return engines[index % len(engines)].settle_campaign_minutes(
            batches[index % 2], "user_1"
        )

    try:
        with ThreadPoolExecutor(max_workers=8) as executor:
            results = list(executor.map(settle, range(16)))
    finally:
        for db in databases:
            db.dispose()

    refunded = {result.batch_id for result in results if result.status == SettlementStatus.refunded}
    assert refunded == {first_batch, second_batch}
    assert ledger.get_balance("user_1") == 16
    assert ledger.derived_balance("user_1") == ledger.get_balance("user_1")


def test_concurrent_duplicate_webhooks_store_one_conversation(
    db_path, launched_batch, state_store
) -> None:
    _, batch_id = launched_batch(recipients=1)
    databases = [Database(sqlite_url(db_path)) for _ in range(3)]
    engines = [
        ReconciliationEngine(CampaignStateStore(db), LedgerStore(db)) for db in databases
    ]
    event = ConversationEvent.model_validate(
        {
            "conversation_id": "conv_dup",
            "status": "done",
            "batch_call": {"batch_call_id": batch_id, "batch_call_recipient_id": "rcpt_0"},
            "metadata": {"call_duration_secs": 75},
        }
    )

    try:
        with ThreadPoolExecutor(max_workers=6) as executor:
            list(executor.map(lambda i: engines[i % 3].ingest_conversation_event(event), range(12)))
    finally:
        for db in databases:
            db.dispose()

    stored = state_store.list_batch_conversations(batch_id)
    assert len(stored) == 1
    assert stored[0].call_duration_secs == 75
    assert len(state_store.list_recipients(batch_id)) == 1
