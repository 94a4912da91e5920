import json

import pytest
from conftest import FakeProvider
from fastapi.testclient import TestClient

from app.main import app
from app.routers.webhook import normalize_gateway_payload
from app.services.bot_manager import Principal

CLIENT_JID = "33611111111@s.whatsapp.net"


@pytest.fixture
def client(bot_manager):
    app.state.bot_manager = bot_manager
    yield TestClient(app)
    app.state.bot_manager = None


@pytest.fixture
def bot(bot_manager):
    bot_id = bot_manager.create_bot(Principal.superadmin())["id"]
    instance = bot_manager.get_instance(bot_id)
    instance.enabled = True
    instance.phone_number = "33600000000"
    return instance


class TestNormalize:
    def test_flat_payload_passes_through(self):
        payload = {"remoteJid": CLIENT_JID, "message": "Bonjour", "messageId": "1"}
        assert normalize_gateway_payload(payload) == payload

    def test_envelope_with_key_and_audio(self):
        payload = {
            "event": "messages.upsert",
            "data": {
                "key": {"remoteJid": CLIENT_JID, "fromMe": False, "id": "ABC"},
                "message": {"audioMessage": {"url": "https://mmg/1.enc", "mimetype": "audio/ogg; codecs=opus"}},
            },
        }

        normalized = normalize_gateway_payload(payload)

        assert normalized["remoteJid"] == CLIENT_JID
        assert normalized["messageId"] == "ABC"
        assert normalized["messageType"] == "audio"
        assert normalized["mediaData"]["url"] == "https://mmg/1.enc"
        assert "message" not in normalized

    def test_extended_text_and_metadata(self):
        payload = {
            "body": {
                "message": {"extendedTextMessage": {"text": "Facture Dupont"}},
                "metadata": {"remoteJid": CLIENT_JID, "messageId": "X1"},
            }
        }
        normalized = normalize_gateway_payload(payload)
        assert normalized["message"] == "Facture Dupont"
        assert normalized["remoteJid"] == CLIENT_JID


class TestMessageWebhook:
    def test_text_message_processed(self, client, bot, fake_transport):
        bot.provider = FakeProvider(
            [json.dumps({"coherenceScore": 90, "isInvoiceIntent": True, "data": {"clientName": "Dupont"}})]
        )

        response = client.post(
            f"/webhook/{bot.bot_id}",
            json={"remoteJid": CLIENT_JID, "messageId": "w1", "message": "Facture pour Dupont"},
        )

        assert response.status_code == 200
        assert response.json()["action"] == "text_incoming"
        assert bot.store.get("33611111111") is not None
        fake_transport.send_text.assert_awaited_once()

    def test_duplicate_delivery(self, client, bot):
        payload = {"remoteJid": "1203630@g.us", "messageId": "w2", "message": "Salut"}
        assert client.post(f"/webhook/{bot.bot_id}", json=payload).json()["action"] == "drop_group"
        assert client.post(f"/webhook/{bot.bot_id}", json=payload).json()["action"] == "drop_duplicate"

    def test_unknown_bot(self, client):
        body = client.post("/webhook/bot-missing", json={"remoteJid": CLIENT_JID}).json()
        assert body["success"] is False

    def test_invalid_json(self, client, bot):
        response = client.post(
            f"/webhook/{bot.bot_id}", content=b"{not json", headers={"Content-Type": "application/json"}
        )
        assert response.json() == {"success": False, "message": "Invalid JSON payload", "action": None}

    def test_empty_body(self, client, bot):
        response = client.post(f"/webhook/{bot.bot_id}", content=b"", headers={"Content-Type": "application/json"})
        assert response.json()["success"] is True

    def test_missing_chat_id(self, client, bot):
        body = client.post(f"/webhook/{bot.bot_id}", json={"message": "hello"}).json()
        assert body == {"success": False, "message": "Invalid webhook payload", "action": None}

    def test_secret_required_when_configured(self, client, bot, bot_manager):
        bot_manager.app_settings = bot_manager.app_settings.model_copy(update={"webhook_secret": "s3cret"})
        payload = {"remoteJid": "1203630@g.us", "messageId": "w3"}

        assert client.post(f"/webhook/{bot.bot_id}", json=payload).status_code == 401
        response = client.post(f"/webhook/{bot.bot_id}", json=payload, headers={"X-Webhook-Secret": "s3cret"})
        assert response.status_code == 200

    def test_probe(self, client):
        assert client.get("/webhook/bot-1").json()["bot_id"] == "bot-1"


class TestConnectionWebhook:
    def test_qr_then_open(self, client, bot):
        response = client.post(f"/webhook/{bot.bot_id}/connection", json={"qr": "2@xyz"})
        assert response.json()["action"] == "waiting_qr"

        response = client.post(
            f"/webhook/{bot.bot_id}/connection", json={"connection": "open", "phoneNumber": "33600000001"}
        )

        assert response.json()["action"] == "connected"
        assert bot.phone_number == "33600000001"

    def test_logged_out(self, client, bot):
        response = client.post(f"/webhook/{bot.bot_id}/connection", json={"connection": "close", "statusCode": 401})
        assert response.json()["action"] == "logged_out"
