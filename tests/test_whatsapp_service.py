import asyncio
import json
from unittest.mock import patch

import httpx
import pytest

from app.services.whatsapp_service import WhatsAppGateway, WhatsAppGatewayError, to_chat_id

RealAsyncClient = httpx.AsyncClient


def _patched(handler, captured):
    def factory(**kwargs):
        def recording(request):
            captured.append(request)
            return handler(request)

        return RealAsyncClient(transport=httpx.MockTransport(recording), **kwargs)

    return patch("app.services.whatsapp_service.httpx.AsyncClient", side_effect=factory)


def test_to_chat_id():
    assert to_chat_id("+33 6 11 11 11 11") == "33611111111@s.whatsapp.net"
    assert to_chat_id("1203630@g.us") == "1203630@g.us"


class TestGateway:
    def test_send_text(self):
        captured = []
        gateway = WhatsAppGateway("bot-1", "http://gateway:3000/", token="tok")

        with _patched(lambda request: httpx.Response(200, json={"ok": True}), captured):
            asyncio.run(gateway.send_text("33611111111", "Bonjour"))

        request = captured[0]
        assert str(request.url) == "http://gateway:3000/sessions/bot-1/messages/text"
        assert request.headers["Authorization"] == "Bearer tok"
        assert json.loads(request.content) == {"chatId": "33611111111@s.whatsapp.net", "text": "Bonjour"}

    def test_empty_text_not_sent(self):
        captured = []
        with _patched(lambda request: httpx.Response(200), captured):
            asyncio.run(WhatsAppGateway("bot-1", "http://gateway").send_text("336", ""))
        assert captured == []

    def test_connect_registers_webhook(self):
        captured = []
        with _patched(lambda request: httpx.Response(200), captured):
            asyncio.run(WhatsAppGateway("bot-1", "http://gateway").connect("https://api/webhook/bot-1"))
        assert captured[0].url.path == "/sessions/bot-1/start"
        assert json.loads(captured[0].content) == {"webhookUrl": "https://api/webhook/bot-1"}

    def test_error_status_raises(self):
        with _patched(lambda request: httpx.Response(500, text="boom"), []):
            with pytest.raises(WhatsAppGatewayError) as exc_info:
                asyncio.run(WhatsAppGateway("bot-1", "http://gateway").logout())
        assert exc_info.value.status_code == 500

    def test_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with _patched(handler, []):
            with pytest.raises(WhatsAppGatewayError):
                asyncio.run(WhatsAppGateway("bot-1", "http://gateway").disconnect())

    def test_download_relative_media(self):
        captured = []
        with _patched(lambda request: httpx.Response(200, content=b"OggS"), captured):
            data = asyncio.run(WhatsAppGateway("bot-1", "http://gateway").download_media("/media/abc.ogg"))
        assert data == b"OggS"
        assert str(captured[0].url) == "http://gateway/media/abc.ogg"

    def test_token_sent_for_gateway_media(self):
        captured = []
        gateway = WhatsAppGateway("bot-1", "http://gateway.local:3000", token="gw-token")
        with _patched(lambda request: httpx.Response(200, content=b"OggS"), captured):
            asyncio.run(gateway.download_media("http://gateway.local:3000/media/abc.ogg"))
            asyncio.run(gateway.download_media("media/def.ogg"))
        assert [request.headers.get("Authorization") for request in captured] == ["Bearer gw-token"] * 2

    def test_token_withheld_from_external_media(self):
        captured = []
        gateway = WhatsAppGateway("bot-1", "http://gateway.local:3000", token="gw-token")
        with _patched(lambda request: httpx.Response(200, content=b"OggS"), captured):
            asyncio.run(gateway.download_media("https://media.example/steal"))
            asyncio.run(gateway.download_media("http://gateway.local:4000/other"))
        assert [request.headers.get("Authorization") for request in captured] == [None, None]
