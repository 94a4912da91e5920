"""WhatsApp transport: the HTTP gateway that owns the WhatsApp session."""

from abc import ABC, abstractmethod
from typing import Optional

import httpx

from app.logging_config import get_logger

logger = get_logger("whatsapp_service")

USER_SUFFIX = "@s.whatsapp.net"


class WhatsAppGatewayError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


def to_chat_id(number_or_jid: str) -> str:
    """Bare numbers become user JIDs; JIDs pass through."""
    value = (number_or_jid or "").strip()
    if "@" in value:
        return value
    return f"{''.join(ch for ch in value if ch.isdigit())}{USER_SUFFIX}"


class WhatsAppTransport(ABC):
    """What a bot runtime needs from the WhatsApp side."""

    @abstractmethod
    async def send_text(self, chat_id: str, text: str) -> None:
        pass

    @abstractmethod
    async def download_media(self, url: str) -> bytes:
        pass

    @abstractmethod
    async def connect(self, webhook_url: Optional[str] = None) -> None:
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        pass

    @abstractmethod
    async def logout(self) -> None:
        pass


class WhatsAppGateway(WhatsAppTransport):
    """One gateway session per bot, addressed by the bot id."""

    def __init__(
        self,
        session_id: str,
        base_url: str,
        token: Optional[str] = None,
        timeout_seconds: float = 15.0,
    ):
        self.session_id = session_id
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout_seconds = timeout_seconds

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _session_url(self, action: str) -> str:
        return f"{self.base_url}/sessions/{self.session_id}/{action}"

    def _is_gateway_url(self, url: str) -> bool:
        """Same scheme, host and port as the gateway; only those may see the token."""
        target = httpx.URL(url)
        gateway = httpx.URL(self.base_url)
        return (target.scheme, target.host, target.port) == (gateway.scheme, gateway.host, gateway.port)

    async def _post(self, url: str, payload: Optional[dict] = None) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(url, headers=self._headers(), json=payload or {})
        except httpx.HTTPError as exc:
            raise WhatsAppGatewayError(f"gateway unreachable: {exc}") from exc
        if response.status_code >= 400:
            logger.warning(
                "Gateway error",
                extra={
                    "context": {
                        "session": self.session_id,
                        "url": url,
                        "status_code": response.status_code,
                        "body": response.text[:200],
                    }
                },
            )
            raise WhatsAppGatewayError(f"gateway returned {response.status_code}", status_code=response.status_code)
        return response

    async def send_text(self, chat_id: str, text: str) -> None:
        if not text:
            return
        await self._post(self._session_url("messages/text"), {"chatId": to_chat_id(chat_id), "text": text})
        logger.debug("Message sent", extra={"context": {"session": self.session_id, "chars": len(text)}})

    async def download_media(self, url: str) -> bytes:
        if not url:
            raise WhatsAppGatewayError("media url is empty")
        target = url if url.startswith(("http://", "https://")) else f"{self.base_url}/{url.lstrip('/')}"
        headers = {"Authorization": f"Bearer {self.token}"} if self.token and self._is_gateway_url(target) else {}
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, follow_redirects=True) as client:
                response = await client.get(target, headers=headers)
        except httpx.HTTPError as exc:
            raise WhatsAppGatewayError(f"media download failed: {exc}") from exc
        if response.status_code != 200:
            raise WhatsAppGatewayError(
                f"media download returned {response.status_code}", status_code=response.status_code
            )
        return response.content

    async def connect(self, webhook_url: Optional[str] = None) -> None:
        payload = {"webhookUrl": webhook_url} if webhook_url else {}
        await self._post(self._session_url("start"), payload)
        logger.info("Gateway session started", extra={"context": {"session": self.session_id}})

    async def disconnect(self) -> None:
        await self._post(self._session_url("stop"))
        logger.info("Gateway session stopped", extra={"context": {"session": self.session_id}})

    async def logout(self) -> None:
        await self._post(self._session_url("logout"))
        logger.info("Gateway session logged out", extra={"context": {"session": self.session_id}})
