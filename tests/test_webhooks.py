"""HTTP-level tests for the webhook and notification routes."""

from unittest.mock import AsyncMock, patch

import httpx
import pytest
import pytest_asyncio

from agenda.core.database import get_db
from agenda.main import app

from conftest import INSTANCE_NAME, evolution_message
from test_chat_service import summary_text


@pytest_asyncio.fixture
async def client(session_factory, messaging, broadcaster, guard, gateway_factory):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    saved = dict(app.state._state)
    app.dependency_overrides[get_db] = override_get_db
    app.state.messaging = messaging
    app.state.broadcaster = broadcaster
    app.state.commit_guard = guard
    app.state.payment_gateway_factory = gateway_factory

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client

    app.dependency_overrides.clear()
    app.state._state.clear()
    app.state._state.update(saved)


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


class TestMessagingWebhook:

    @pytest.mark.asyncio
    async def test_verification_get(self, client):
        response = await client.get(f"/api/v1/webhook/messaging/{INSTANCE_NAME}")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    @pytest.mark.asyncio
    async def test_invalid_json_is_rejected(self, client):
        response = await client.post(
            f"/api/v1/webhook/messaging/{INSTANCE_NAME}",
            content=b"not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_payload_without_event_is_rejected(self, client):
        response = await client.post(f"/api/v1/webhook/messaging/{INSTANCE_NAME}", json={"foo": "bar"})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_other_events_are_acknowledged(self, client, seed):
        response = await client.post(
            f"/api/v1/webhook/messaging/{INSTANCE_NAME}",
            json={"event": "connection.update", "data": {"state": "open"}},
        )
        assert response.status_code == 200
        assert response.json()["action"] == "ignored"

    @pytest.mark.asyncio
    async def test_text_message_gets_a_reply(self, client, seed, messaging):
        with patch("agenda.services.chat_nodes.complete_chat", AsyncMock(return_value="Olá! Como posso ajudar?")):
            response = await client.post(
                f"/api/v1/webhook/messaging/{INSTANCE_NAME}", json=evolution_message("oi")
            )

        assert response.status_code == 200
        assert response.json()["action"] == "replied"
        assert messaging.texts == ["Olá! Como posso ajudar?"]


class TestPaymentWebhook:

    @pytest.mark.asyncio
    async def test_unrecognized_body_is_rejected(self, client, seed):
        response = await client.post(
            f"/api/v1/webhook/payment?business_id={seed.business.id}", json={"hello": "world"}
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_non_payment_topic_is_ignored(self, client, seed):
        response = await client.post(
            f"/api/v1/webhook/payment?business_id={seed.business.id}",
            json={"type": "merchant_order", "data": {"id": 123}},
        )
        assert response.status_code == 200
        assert response.json()["action"] == "ignored"

    @pytest.mark.asyncio
    async def test_conversation_to_booking_over_http(self, client, seed, messaging):
        url = f"/api/v1/webhook/messaging/{INSTANCE_NAME}"
        with patch("agenda.services.chat_nodes.complete_chat", AsyncMock(return_value=summary_text())):
            await client.post(url, json=evolution_message(
                "Quero agendar corte com Magnus sábado às 14:00, sou João Silva", message_id="h1"
            ))
            response = await client.post(url, json=evolution_message("sim", message_id="h2"))

        ack = response.json()
        assert ack["action"] == "payment_requested"
        reference = ack["payment_reference"]

        payment_url = f"/api/v1/webhook/payment?business_id={seed.business.id}"
        first = await client.post(payment_url, json={"status": "approved", "reference": reference})
        second = await client.post(payment_url, json={"status": "approved", "reference": reference})

        assert first.status_code == 200
        assert first.json()["action"] == "booking_created"
        assert first.json()["booking_id"]
        assert second.json()["action"] == "duplicate"
        assert "Pagamento aprovado" in messaging.texts[-1]
