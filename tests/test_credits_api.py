import json
import sys
import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from scripts import issue_token
from toolcredits.auth import decode_access_token
from toolcredits.config import settings
from toolcredits.services import credits as ledger
from toolcredits.services.realtime import publish_balance, stream_balance_events


class ClientRequest:
    """Reports the client as connected for a fixed number of checks."""

    def __init__(self, connected_checks: int):
        self.connected_checks = connected_checks

    async def is_disconnected(self) -> bool:
        self.connected_checks -= 1
        return self.connected_checks < 0


@pytest.fixture
def stream_pubsub():
    pubsub = MagicMock()
    pubsub.subscribe = AsyncMock()
    pubsub.aclose = AsyncMock()
    pubsub.get_message = AsyncMock(side_effect=[
        {"type": "message", "data": json.dumps({"user_id": "abc", "credit_balance": 7})},
        None,
    ])
    client = MagicMock()
    client.pubsub.return_value = pubsub
    with patch("toolcredits.services.realtime.get_async_redis", return_value=client):
        yield pubsub


class TestAuthRoutes:

    def test_signup_grants_welcome_credits_and_login_returns_token(self, test_client: TestClient, db_session):
        response = test_client.post("/auth/signup", json={"email": "new.user@example.com", "full_name": "New"})
        assert response.status_code == 200
        user_id = uuid.UUID(response.json()["id"])
        assert ledger.get_balance(db_session, user_id) == 10

        response = test_client.post("/auth/login", json={"email": "new.user@example.com"})
        assert response.status_code == 200
        token = response.json()["access_token"]

        response = test_client.get("/credits/balance", headers={"Authorization": f"Bearer {token}"})
        assert response.json() == {"credits": 10}

    def test_login_unknown_email(self, test_client: TestClient):
        response = test_client.post("/auth/login", json={"email": "ghost@example.com"})
        assert response.status_code == 401
        assert response.json()["error"] == "Invalid credentials"

    def test_admin_email_login_refused_in_production(self, test_client: TestClient, admin_user, monkeypatch):
        response = test_client.post("/auth/login", json={"email": admin_user.email})
        assert response.status_code == 200

        monkeypatch.setattr(settings, "environment", "production")
        response = test_client.post("/auth/login", json={"email": admin_user.email})
        assert response.status_code == 403
        assert response.json()["error"] == "Admin login is disabled"

    def test_issue_token_script(self, admin_user, monkeypatch, capsys):
        monkeypatch.setattr(sys, "argv", ["issue_token.py", admin_user.email, "--minutes", "5"])
        issue_token.main()
        token = capsys.readouterr().out.strip()
        assert decode_access_token(token) == admin_user.id


class TestCreditRoutes:

    def test_balance_requires_token(self, test_client: TestClient):
        response = test_client.get("/credits/balance")
        assert response.status_code == 401
        assert response.json()["error"] == "Authentication required"

        response = test_client.get("/credits/balance", headers={"Authorization": "Bearer garbage"})
        assert response.status_code == 401
        assert response.json()["error_type"] == "InvalidTokenError"

    def test_deduct(self, test_client: TestClient, test_user, headers_for):
        response = test_client.post(
            "/credits/deduct", json={"amount": 4, "action": "ai_chat"}, headers=headers_for(test_user)
        )
        assert response.status_code == 200
        assert response.json() == {"success": True, "new_balance": 96, "low_balance": False}

    def test_deduct_insufficient_returns_402(self, test_client: TestClient, user_factory, headers_for):
        user = user_factory(credits=2)
        response = test_client.post(
            "/credits/deduct", json={"amount": 5, "action": "face_swap"}, headers=headers_for(user)
        )
        assert response.status_code == 402
        body = response.json()
        assert body["error"].startswith("Insufficient credits")
        assert body["required"] == 5
        assert body["balance"] == 2

    def test_deduct_rejects_zero_amount(self, test_client: TestClient, test_user, headers_for):
        response = test_client.post(
            "/credits/deduct", json={"amount": 0, "action": "ai_chat"}, headers=headers_for(test_user)
        )
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid request"

    def test_transfer(self, test_client: TestClient, user_factory, headers_for, db_session: Session):
        sender, receiver = user_factory(credits=20), user_factory(credits=0, full_name="Friend")
        response = test_client.post(
            "/credits/transfer",
            json={"receiver_id": str(receiver.id), "amount": 8},
            headers=headers_for(sender),
        )
        assert response.status_code == 200
        assert response.json()["receiver_name"] == "Friend"
        assert ledger.get_balance(db_session, receiver.id) == 8

    def test_history_lists_own_entries(self, test_client: TestClient, test_user, headers_for):
        test_client.post("/credits/deduct", json={"amount": 1, "action": "upscale"}, headers=headers_for(test_user))
        response = test_client.get("/credits/history", headers=headers_for(test_user))
        assert response.status_code == 200
        types = {entry["credit_type"] for entry in response.json()}
        assert types == {"signup_bonus", "deduction"}

    def test_costs_is_public(self, test_client: TestClient):
        response = test_client.get("/credits/costs")
        assert response.status_code == 200
        body = response.json()
        assert body["profit_margin"] == 40
        assert body["costs"]["speech_to_text"] == 7

    def test_admin_add_requires_admin(self, test_client: TestClient, test_user, admin_user, headers_for,
                                      db_session: Session):
        url = f"/credits/admin/{test_user.id}/add"
        response = test_client.post(url, json={"amount": 10}, headers=headers_for(test_user))
        assert response.status_code == 403

        response = test_client.post(url, json={"amount": 10}, headers=headers_for(admin_user))
        assert response.status_code == 200
        assert response.json() == {"credits": 110}


class TestRealtime:

    def test_publish_balance_message(self, fake_redis):
        assert publish_balance("abc", 42) is True
        channel, message = fake_redis.publish.call_args.args
        assert channel == "profile-credits-abc"
        assert json.loads(message) == {"user_id": "abc", "credit_balance": 42}

    def test_publish_balance_survives_redis_outage(self, fake_redis):
        fake_redis.publish.side_effect = ConnectionError("redis down")
        assert publish_balance("abc", 1) is False

    @pytest.mark.asyncio
    async def test_stream_stops_when_client_disconnects(self, stream_pubsub):
        request = ClientRequest(connected_checks=2)

        events = [event async for event in stream_balance_events("abc", 9, request, poll_seconds=0)]

        assert events[0] == 'data: {"user_id": "abc", "credit_balance": 9}\n\n'
        assert json.loads(events[1][len("data: "):]) == {"user_id": "abc", "credit_balance": 7}
        assert len(events) == 2
        stream_pubsub.subscribe.assert_awaited_once_with("profile-credits-abc")
        stream_pubsub.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stream_closes_subscription_when_abandoned(self, stream_pubsub):
        events = stream_balance_events("abc", 9, ClientRequest(connected_checks=100), poll_seconds=0)

        assert (await events.__anext__()).startswith("data: ")
        await events.aclose()

        stream_pubsub.aclose.assert_awaited_once()
        stream_pubsub.get_message.assert_not_awaited()

