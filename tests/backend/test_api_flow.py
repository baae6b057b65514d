from __future__ import annotations

from backend.app.models import BatchSnapshot
from backend.app.services.provider import ProviderConfigError, ProviderIOError


class StubProvider:
    def __init__(self, batch_id: str = "batch_api_1") -> None:
        self.batch_id = batch_id
        self.submitted = []
        self.snapshot = {"status": "completed", "recipients": []}

    def submit_batch(self, launch, *, call_name):
        self.submitted.append((launch, call_name))
        return {"id": self.batch_id, "name": call_name, "status": "pending"}

    def get_batch(self, batch_id):
        return BatchSnapshot.model_validate({"id": batch_id, **self.snapshot})

    def get_conversation_audio(self, conversation_id):
        if conversation_id == "missing":
            raise ProviderIOError("not found", status_code=404)
        return b"ID3-fake-audio"

    def cancel_batch(self, batch_id):
        return {"id": batch_id, "status": "cancelled"}


class UnconfiguredProvider(StubProvider):
    def get_batch(self, batch_id):
        raise ProviderConfigError("provider api key is not configured")


def _launch_payload(count: int = 3) -> dict:
    return {
        "agent_id": "agent_1",
        "phone_number_id": "phone_1",
        "recipients": [
            {"phone_number": f"+1555000{index:04d}", "dynamic_variables": {"n": index}}
            for index in range(count)
        ],
    }


def _create_campaign(client, user_id: str = "user_api") -> str:
    response = client.post("/campaigns", json={"user_id": user_id, "name": "Spring outreach"})
    assert response.status_code == 201
    assert response.json()["status"] == "Draft"
    return response.json()["id"]


def _credit(client, user_id: str = "user_api", minutes: int = 10) -> None:
    response = client.post(
        f"/users/{user_id}/minutes/transactions",
        json={"transaction_type": "purchase", "minutes": minutes},
    )
    assert response.status_code == 201


def test_launch_poll_and_balance_flow(client) -> None:
    provider = StubProvider()
    client.app.state.provider = provider
    campaign_id = _create_campaign(client)
    _credit(client, minutes=10)

    launch = client.post(f"/campaigns/{campaign_id}/launch", json=_launch_payload(3))
    assert launch.status_code == 200
    body = launch.json()
    assert body["batch_id"] == "batch_api_1"
    assert body["status"] == "Launched"
    assert body["minutes_deducted"] == 6
    assert body["polling"] is False
    assert provider.submitted[0][1] == "Spring outreach"

    balance = client.get("/users/user_api/minutes").json()
    assert balance["available_minutes"] == 4

    provider.snapshot = {
        "status": "completed",
        "total_calls_scheduled": 3,
        "recipients": [{"id": "r1", "status": "completed", "conversation_id": "c1"}],
    }
    poll = client.post("/batches/batch_api_1/poll", json={"wait": True})
    assert poll.status_code == 200
    assert poll.json()["completed"] is True
    assert poll.json()["iterations"] == 1

    summary = client.get(f"/campaigns/{campaign_id}").json()
    assert summary["campaign"]["status"] == "Completed"
    assert summary["recipients"] == 1
    assert summary["conversations"] == 1
    assert summary["billable_conversations"] == 1

    balance = client.get("/users/user_api/minutes").json()
    assert balance["available_minutes"] == 10
    assert balance["derived_minutes"] == 10
    assert [t["transaction_type"] for t in balance["transactions"]] == [
        "purchase",
        "deduction",
        "refund",
    ]

    settle = client.post("/batches/batch_api_1/settle", json={})
    assert settle.status_code == 200
    assert settle.json()["status"] == "already_settled"


def test_launch_requires_enough_minutes(client) -> None:
    client.app.state.provider = StubProvider()
    campaign_id = _create_campaign(client)
    _credit(client, minutes=3)

    response = client.post(f"/campaigns/{campaign_id}/launch", json=_launch_payload(2))

    assert response.status_code == 402
    assert client.app.state.provider.submitted == []
    assert client.get(f"/campaigns/{campaign_id}").json()["campaign"]["status"] == "Draft"


def test_launch_twice_conflicts(client) -> None:
    client.app.state.provider = StubProvider()
    campaign_id = _create_campaign(client)
    _credit(client, minutes=20)

    assert client.post(f"/campaigns/{campaign_id}/launch", json=_launch_payload(1)).status_code == 200
    second = client.post(f"/campaigns/{campaign_id}/launch", json=_launch_payload(1))

    assert second.status_code == 409
    assert client.get("/users/user_api/minutes").json()["available_minutes"] == 18


def test_launch_unknown_campaign_returns_404(client) -> None:
    response = client.post("/campaigns/cmp_missing/launch", json=_launch_payload(1))
    assert response.status_code == 404


def test_direct_credits_only_accept_purchase_or_bonus(client) -> None:
    response = client.post(
        "/users/user_api/minutes/transactions",
        json={"transaction_type": "refund", "minutes": 5},
    )
    assert response.status_code == 400


def test_settle_unknown_batch_returns_404(client) -> None:
    assert client.post("/batches/nope/settle", json={}).status_code == 404


def test_settle_without_deduction_conflicts(client) -> None:
    client.app.state.state_store.create_batch_call(
        batch_id="batch_free", user_id="user_api", campaign_id=None
    )
    assert client.post("/batches/batch_free/settle", json={}).status_code == 409


def test_cleanup_endpoint_returns_report(client) -> None:
    response = client.post("/maintenance/cleanup-minutes", json={})
    assert response.status_code == 200
    assert response.json() == {"total_refunded": 0, "processed_campaigns": 0, "details": []}


def test_conversation_audio_is_proxied(client) -> None:
    client.app.state.provider = StubProvider()

    response = client.get("/conversations/conv_1/audio")
    assert response.status_code == 200
    assert response.headers["content-type"] == "audio/mpeg"
    assert response.content == b"ID3-fake-audio"

    missing = client.get("/conversations/missing/audio")
    assert missing.status_code == 502


def test_waiting_poll_reports_provider_configuration_error(client) -> None:
    client.app.state.provider = UnconfiguredProvider()

    response = client.post("/batches/batch_cfg/poll", json={"wait": True, "user_id": "user_api"})

    assert response.status_code == 500
    assert "not configured" in response.json()["detail"]
