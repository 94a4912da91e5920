import asyncio
import base64
import json
from unittest.mock import AsyncMock, Mock

import pytest
from conftest import FakeProvider

from app.schemas.webhook import InboundMessage
from app.services.bot_runtime import (
    MSG_AUDIO_ERROR,
    MSG_BOT_OFF,
    MSG_BOT_ON,
    MSG_NOT_UNDERSTOOD,
    MSG_TEXT_ERROR,
    BotInstance,
    BotStatus,
)
from app.services.message_classifier import Route
from app.services.order_service import MSG_GENERATING
from app.services.session_store import InvoiceFields, PendingOrder
from app.services.state_machine import OrderState

OWN = "33600000000"
CLIENT = "33611111111"
OWN_JID = f"{OWN}@s.whatsapp.net"
CLIENT_JID = f"{CLIENT}@s.whatsapp.net"


def _complete_reply():
    return json.dumps(
        {
            "coherenceScore": 95,
            "isGibberish": False,
            "isInvoiceIntent": True,
            "data": {"clientName": "Jean Dupont", "description": "création site web", "amount": 1500},
            "aiQuestion": None,
        }
    )


def _message(message_id="m1", remote=CLIENT_JID, from_me=False, message_type="text", text=None, media=None):
    payload = {"messageId": message_id, "remoteJid": remote, "fromMe": from_me, "messageType": message_type}
    if text is not None:
        payload["message"] = text
    if media is not None:
        payload["mediaData"] = media
    return InboundMessage.model_validate(payload)


def _sent(transport):
    return [(call.args[0], call.args[1]) for call in transport.send_text.await_args_list]


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def bot(test_settings, fake_transport, provider, tmp_path):
    instance = BotInstance(
        {"id": "bot-test", "name": "Test", "enabled": True, "settings": {"activate_on_send": True}},
        transport=fake_transport,
        app_settings=test_settings,
        provider=provider,
        data_dir=tmp_path,
    )
    instance.phone_number = OWN
    instance.status = BotStatus.CONNECTED
    return instance


class TestRouting:
    def test_group_messages_dropped(self, bot, fake_transport):
        route = asyncio.run(bot.handle_message(_message(remote="1203630@g.us", text="Facture Dupont")))
        assert route == Route.DROP_GROUP
        fake_transport.send_text.assert_not_awaited()

    def test_duplicate_dropped(self, bot, provider, fake_transport):
        provider.replies = [_complete_reply()]
        asyncio.run(bot.handle_message(_message(message_id="dup", text="Facture Dupont site 1500")))
        route = asyncio.run(bot.handle_message(_message(message_id="dup", text="Facture Dupont site 1500")))
        assert route == Route.DROP_DUPLICATE
        assert len(provider.calls) == 1
        assert fake_transport.send_text.await_count == 1

    def test_disabled_bot_ignores_clients(self, bot, fake_transport):
        bot.enabled = False
        route = asyncio.run(bot.handle_message(_message(text="Facture Dupont")))
        assert route == Route.DROP_DISABLED
        fake_transport.send_text.assert_not_awaited()


class TestAdminCommands:
    def test_bot_on_while_disabled(self, bot, fake_transport):
        bot.enabled = False
        callback = Mock()
        bot.on_enabled_change = callback

        route = asyncio.run(bot.handle_message(_message(remote=OWN_JID, from_me=True, text="Bot On")))

        assert route == Route.ADMIN_COMMAND
        assert bot.enabled is True
        callback.assert_called_once_with("bot-test", True)
        assert _sent(fake_transport) == [(OWN_JID, MSG_BOT_ON)]

    def test_bot_off(self, bot, fake_transport):
        asyncio.run(bot.handle_message(_message(remote=OWN_JID, from_me=True, text="bot off")))
        assert bot.enabled is False
        assert _sent(fake_transport) == [(OWN_JID, MSG_BOT_OFF)]

    def test_bot_status(self, bot, fake_transport):
        asyncio.run(bot.handle_message(_message(remote=OWN_JID, from_me=True, text="bot status")))
        text = _sent(fake_transport)[0][1]
        assert "✅ Actif" in text
        assert "📥 Réception" in text
        assert "📤 Envoi" in text

    def test_command_text_from_client_is_not_admin(self, bot, provider):
        provider.replies = [json.dumps({"coherenceScore": 80, "isInvoiceIntent": False})]
        route = asyncio.run(bot.handle_message(_message(text="bot off")))
        assert route == Route.TEXT_INCOMING
        assert bot.enabled is True


class TestTextTurns:
    def test_text_order_gets_recap(self, bot, provider, fake_transport):
        provider.replies = [_complete_reply()]

        route = asyncio.run(bot.handle_message(_message(text="Facture Jean Dupont, création site web, 1500 euros")))

        assert route == Route.TEXT_INCOMING
        chat, text = _sent(fake_transport)[0]
        assert chat == CLIENT_JID
        assert "Récapitulatif" in text
        assert bot.store.get(CLIENT).state == OrderState.PENDING_CONFIRMATION

    def test_confirmation_generates_invoice(self, bot, fake_transport):
        bot.store.set(
            PendingOrder(CLIENT, OrderState.PENDING_CONFIRMATION, InvoiceFields("Jean Dupont", "site", 1500))
        )

        asyncio.run(bot.handle_message(_message(text="oui")))

        texts = [text for _, text in _sent(fake_transport)]
        assert texts[0] == MSG_GENERATING
        assert "🎉 *Facture créée!*" in texts[1]
        assert bot.store.get(CLIENT) is None
        assert list((bot.data_dir / "invoices").glob("*.pdf"))

    def test_unexpected_failure_sends_fallback(self, bot, fake_transport):
        bot.controller.handle_utterance = AsyncMock(side_effect=RuntimeError("boom"))

        route = asyncio.run(bot.handle_message(_message(text="Facture Dupont")))

        assert route == Route.TEXT_INCOMING
        assert _sent(fake_transport) == [(CLIENT_JID, MSG_TEXT_ERROR)]

    def test_send_failure_is_swallowed(self, bot, provider, fake_transport):
        provider.replies = [_complete_reply()]
        fake_transport.send_text.side_effect = RuntimeError("gateway down")
        route = asyncio.run(bot.handle_message(_message(text="Facture Dupont site 1500")))
        assert route == Route.TEXT_INCOMING


class TestAudioTurns:
    def test_incoming_audio_from_url(self, bot, provider, fake_transport):
        provider.transcript = "Facture pour Jean Dupont, création site web, 1500 euros"
        provider.replies = [_complete_reply()]

        route = asyncio.run(
            bot.handle_message(
                _message(message_type="audio", media={"url": "https://media/1.ogg", "mimetype": "audio/ogg; codecs=opus"})
            )
        )

        assert route == Route.AUDIO_INCOMING
        fake_transport.download_media.assert_awaited_once_with("https://media/1.ogg")
        assert provider.transcribe_calls[0]["bytes"] == b"OggS-audio"
        assert provider.transcribe_calls[0]["language"] == "fr"
        chat, text = _sent(fake_transport)[0]
        assert chat == CLIENT_JID
        assert text.startswith('📝 *Transcription:*\n"Facture pour Jean Dupont')
        assert "Récapitulatif" in text

    def test_base64_data_url_audio(self, bot, provider, fake_transport):
        provider.transcript = "Facture Dupont"
        provider.replies = [json.dumps({"coherenceScore": 90, "isInvoiceIntent": True, "data": {"clientName": "Dupont"}})]
        encoded = "data:audio/ogg;base64," + base64.b64encode(b"voice-bytes").decode()

        asyncio.run(bot.handle_message(_message(message_type="ptt", media={"base64": encoded})))

        fake_transport.download_media.assert_not_awaited()
        assert provider.transcribe_calls[0]["bytes"] == b"voice-bytes"

    def test_outgoing_audio_replies_to_own_number(self, bot, provider, fake_transport):
        provider.transcript = "Facture pour Jean Dupont, création site web, 1500 euros"
        provider.replies = [_complete_reply()]

        route = asyncio.run(
            bot.handle_message(_message(from_me=True, message_type="audio", media={"url": "https://media/2.ogg"}))
        )

        assert route == Route.AUDIO_OUTGOING
        chat, text = _sent(fake_transport)[0]
        assert chat == OWN_JID
        assert text.startswith(f"📤 *Envoyé à {CLIENT}*\n")
        assert bot.store.get(CLIENT) is not None

    def test_outgoing_audio_needs_send_mode(self, bot, fake_transport):
        bot.config["settings"] = {"activate_on_send": False}
        route = asyncio.run(
            bot.handle_message(_message(from_me=True, message_type="audio", media={"url": "https://media/2.ogg"}))
        )
        assert route == Route.DROP_INELIGIBLE
        fake_transport.download_media.assert_not_awaited()

    def test_short_transcript(self, bot, provider, fake_transport):
        provider.transcript = "eh"
        asyncio.run(bot.handle_message(_message(message_type="audio", media={"url": "https://media/3.ogg"})))
        assert _sent(fake_transport) == [(CLIENT_JID, MSG_NOT_UNDERSTOOD)]
        assert provider.calls == []

    def test_download_failure(self, bot, fake_transport):
        fake_transport.download_media.side_effect = RuntimeError("404")
        asyncio.run(bot.handle_message(_message(message_type="audio", media={"url": "https://media/4.ogg"})))
        assert _sent(fake_transport) == [(CLIENT_JID, MSG_AUDIO_ERROR)]

    def test_audio_without_media(self, bot, fake_transport):
        asyncio.run(bot.handle_message(_message(message_type="audio")))
        assert _sent(fake_transport) == [(CLIENT_JID, MSG_AUDIO_ERROR)]


class TestConnection:
    def test_qr_then_open(self, bot):
        bot.phone_number = None
        assert bot.handle_connection_update(qr="qr-data") == BotStatus.WAITING_QR
        assert bot.get_status()["has_qr"] is True

        status = bot.handle_connection_update(connection="open", phone_number="33600000000:12@s.whatsapp.net")

        assert status == BotStatus.CONNECTED
        assert bot.phone_number == OWN
        assert bot.qr_code is None

    def test_close_logged_out(self, bot):
        assert bot.handle_connection_update(connection="close", status_code=401) == BotStatus.LOGGED_OUT
        assert bot.phone_number is None

    def test_close_keeps_session(self, bot):
        assert bot.handle_connection_update(connection="close", status_code=428) == BotStatus.DISCONNECTED
        assert bot.phone_number == OWN


class TestLifecycle:
    def test_start_failure_sets_error(self, bot, fake_transport):
        bot.status = BotStatus.CREATED
        fake_transport.connect.side_effect = RuntimeError("gateway offline")

        with pytest.raises(RuntimeError):
            asyncio.run(bot.start())

        assert bot.status == BotStatus.ERROR
        assert bot.get_status()["last_error"] == "gateway offline"

    def test_start_is_idempotent(self, bot, fake_transport):
        asyncio.run(bot.start())
        fake_transport.connect.assert_not_awaited()

    def test_stop_and_logout(self, bot, fake_transport):
        fake_transport.disconnect.side_effect = RuntimeError("already closed")
        asyncio.run(bot.stop())
        assert bot.status == BotStatus.DISCONNECTED

        asyncio.run(bot.logout())
        fake_transport.logout.assert_awaited_once()
        assert bot.status == BotStatus.LOGGED_OUT
        assert bot.phone_number is None
