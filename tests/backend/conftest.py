from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

import pytest
from fastapi.testclient import TestClient

from backend.app.ledger import LedgerStore
from backend.app.main import create_app
from backend.app.models import CampaignStatus, TransactionType
from backend.app.persistence import Database
from backend.app.services.reconciliation import ReconciliationEngine
from backend.app.store import CampaignStateStore

WEBHOOK_SECRET = "whsec_test"


def sqlite_url(path: Path) -> str:
    return f"sqlite:///{str(path).replace(chr(92), '/')}"


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "campaign_minutes.sqlite3"


@pytest.fixture()
def database(db_path: Path):
    db = Database(sqlite_url(db_path))
    yield db
    db.dispose()


@pytest.fixture()
def state_store(database: Database) -> CampaignStateStore:
    return CampaignStateStore(database)


@pytest.fixture()
def ledger(database: Database) -> LedgerStore:
    return LedgerStore(database)


@pytest.fixture()
def engine(state_store: CampaignStateStore, ledger: LedgerStore) -> ReconciliationEngine:
    return ReconciliationEngine(state_store, ledger)


@pytest.fixture()
def launched_batch(
    state_store: CampaignStateStore, ledger: LedgerStore
) -> Callable[..., tuple[str, str]]:
    """Seed a Launched campaign linked to a batch with its launch deduction."""

    def _seed(
        *,
        user_id: str = "user_1",
        batch_id: str = "batch_1",
        recipients: int = 10,
        deducted: Optional[int] = None,
        opening_balance: int = 100,
    ) -> tuple[str, str]:
        deducted = recipients * 2 if deducted is None else deducted
        if opening_balance:
            ledger.apply_transaction(
                user_id=user_id,
                transaction_type=TransactionType.purchase,
                minutes=opening_balance,
            )
        campaign = state_store.create_campaign(user_id=user_id, name=f"Campaign {batch_id}")
        state_store.create_batch_call(
            batch_id=batch_id,
            user_id=user_id,
            campaign_id=campaign.id,
            name=campaign.name,
            status="pending",
            total_calls_scheduled=recipients,
        )
        ledger.apply_transaction(
            user_id=user_id,
            transaction_type=TransactionType.deduction,
            minutes=deducted,
            campaign_id=campaign.id,
            batch_id=batch_id,
        )
        state_store.transition_campaign(campaign.id, CampaignStatus.launched)
        return campaign.id, batch_id

    return _seed


@pytest.fixture()
def app_env(monkeypatch: pytest.MonkeyPatch, db_path: Path) -> Path:
    monkeypatch.setenv("PERSISTENCE_DB_PATH", str(db_path))
    monkeypatch.setenv("DATABASE_URL", sqlite_url(db_path))
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.setenv("WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setenv("POLL_ON_LAUNCH", "false")
    monkeypatch.setenv("PROVIDER_API_KEY", "xi_test")
    return db_path


@pytest.fixture()
def client(app_env: Path) -> TestClient:
    app = create_app()
    return TestClient(app)
