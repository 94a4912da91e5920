"""One running WhatsApp bot: connection status, routing and conversational turns."""

import base64
import binascii
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from app.config import Settings
from app.logging_config import get_bot_logger
from app.schemas.webhook import InboundMessage
from app.services.email_service import EmailSender
from app.services.extraction_service import InvoiceAnalyzer
from app.services.llm.base import LLMProvider
from app.services.message_classifier import (
    ActivationPolicy,
    Classification,
    MessageDeduplicator,
    Route,
    classify_message,
    normalize_number,
)
from app.services.order_service import OrderController
from app.services.session_store import InMemorySessionStore, SenderLocks
from app.services.transcription_service import Transcriber, TranscriptionError
from app.services.whatsapp_service import WhatsAppTransport, to_chat_id

MIN_TRANSCRIPT_CHARS = 3
LOGGED_OUT_CODE = 401

MSG_BOT_ON = "✅ *Bot activé!* Je répondrai maintenant aux messages."
MSG_BOT_OFF = "⛔ *Bot désactivé!* Je ne répondrai plus aux messages (sauf commandes admin)."
MSG_NOT_UNDERSTOOD = "⚠️ Message non compris. Réessayez."
MSG_AUDIO_ERROR = "❌ Erreur de traitement audio."
MSG_TEXT_ERROR = "❌ Une erreur s'est produite."
MSG_UNSUPPORTED = "ℹ️ Envoyez un message vocal ou un texte pour créer une facture."


class BotStatus(str, Enum):
    CREATED = "created"
    CONNECTING = "connecting"
    WAITING_QR = "waiting_qr"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    LOGGED_OUT = "logged_out"
    ERROR = "error"


RUNNING_STATUSES = {BotStatus.CONNECTING, BotStatus.WAITING_QR, BotStatus.CONNECTED}


def format_status_message(enabled: bool, policy: ActivationPolicy) -> str:
    modes = []
    if policy.activate_on_receive:
        modes.append("📥 Réception")
    if policy.activate_on_send:
        modes.append("📤 Envoi")
    state = "✅ Actif" if enabled else "⛔ Désactivé"
    return f"🤖 *Statut:* {state}\n📋 *Modes:* {', '.join(modes) or 'Aucun'}"


class BotInstance:
    def __init__(
        self,
        config: dict,
        *,
        transport: WhatsAppTransport,
        app_settings: Settings,
        provider: Optional[LLMProvider] = None,
        email_sender: Optional[EmailSender] = None,
        data_dir: Optional[Path] = None,
        on_enabled_change: Optional[Callable[[str, bool], None]] = None,
        webhook_url: Optional[str] = None,
    ):
        self.bot_id = config["id"]
        self.config = config
        self.transport = transport
        self.app_settings = app_settings
        self.provider = provider
        self.on_enabled_change = on_enabled_change
        self.webhook_url = webhook_url
        self.data_dir = Path(data_dir or app_settings.data_dir) / self.bot_id

        self.status = BotStatus.CREATED
        self.enabled = bool(config.get("enabled", False))
        self.phone_number: Optional[str] = None
        self.qr_code: Optional[str] = None
        self.last_error: Optional[str] = None

        self.store = InMemorySessionStore(ttl_minutes=app_settings.pending_order_ttl_minutes)
        self.dedup = MessageDeduplicator(max_ids=app_settings.dedup_max_ids)
        self.locks = SenderLocks()
        self.controller = OrderController(
            self.store,
            output_dir=self.data_dir / "invoices",
            email_sender=email_sender,
            bot_id=self.bot_id,
        )
        self.transcriber = Transcriber(
            provider,
            model=app_settings.transcription_model,
            timeout_seconds=app_settings.transcription_timeout_seconds,
        )
        self.logger = get_bot_logger("bot_runtime", self.bot_id)

    @property
    def settings(self) -> dict:
        return self.config.get("settings") or {}

    @property
    def policy(self) -> ActivationPolicy:
        return ActivationPolicy.from_settings(self.settings)

    def update_config(self, config: dict, provider: Optional[LLMProvider] = None) -> None:
        self.config = config
        self.enabled = bool(config.get("enabled", self.enabled))
        if provider is not None:
            self.provider = provider
            self.transcriber.provider = provider

    # Lifecycle

    async def start(self) -> None:
        if self.status in RUNNING_STATUSES:
            self.logger.info("Already running", extra={"context": {"status": self.status.value}})
            return
        self.status = BotStatus.CONNECTING
        self.last_error = None
        try:
            await self.transport.connect(self.webhook_url)
        except Exception as exc:
            self.status = BotStatus.ERROR
            self.last_error = str(exc)
            self.logger.error("Start failed", extra={"context": {"error": str(exc)}})
            raise
        self.logger.info("Starting")

    async def stop(self) -> None:
        try:
            await self.transport.disconnect()
        except Exception as exc:
            self.logger.warning("Gateway stop failed", extra={"context": {"error": str(exc)}})
        self.status = BotStatus.DISCONNECTED
        self.qr_code = None
        self.logger.info("Stopped (session preserved)")

    async def logout(self) -> None:
        try:
            await self.transport.logout()
        except Exception as exc:
            self.logger.warning("Gateway logout failed", extra={"context": {"error": str(exc)}})
        self.status = BotStatus.LOGGED_OUT
        self.qr_code = None
        self.phone_number = None
        self.logger.info("Logged out (session cleared)")

    async def set_enabled(self, enabled: bool, notify_chat: Optional[str] = None) -> None:
        self.enabled = enabled
        self.config["enabled"] = enabled
        if self.on_enabled_change is not None:
            self.on_enabled_change(self.bot_id, enabled)
        self.logger.info("Enabled" if enabled else "Disabled")
        if notify_chat:
            await self._send(notify_chat, MSG_BOT_ON if enabled else MSG_BOT_OFF)

    def handle_connection_update(
        self,
        connection: Optional[str] = None,
        qr: Optional[str] = None,
        phone_number: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> BotStatus:
        if qr:
            self.qr_code = qr
            self.status = BotStatus.WAITING_QR
            self.logger.info("QR code received")

        if connection == "open":
            self.status = BotStatus.CONNECTED
            self.qr_code = None
            if phone_number:
                self.phone_number = normalize_number(phone_number)
            self.logger.info("Connected", extra={"context": {"phone_number": self.phone_number}})
        elif connection == "close":
            if status_code == LOGGED_OUT_CODE:
                self.status = BotStatus.LOGGED_OUT
                self.phone_number = None
            else:
                self.status = BotStatus.DISCONNECTED
            self.qr_code = None
            self.logger.info("Disconnected", extra={"context": {"status_code": status_code}})
        elif connection == "connecting" and not qr:
            self.status = BotStatus.CONNECTING
        return self.status

    def get_status(self) -> dict:
        return {
            "id": self.bot_id,
            "name": self.config.get("name"),
            "owner_id": self.config.get("owner_id"),
            "status": self.status.value,
            "enabled": self.enabled,
            "auto_start": bool(self.config.get("auto_start", False)),
            "phone_number": self.phone_number,
            "has_qr": bool(self.qr_code),
            "pending_orders": len(self.store),
            "last_error": self.last_error,
        }

    # Messages

    async def handle_message(self, message: InboundMessage) -> Route:
        """Process one delivered message; never raises."""
        if self.dedup.seen(message.message_id):
            self.logger.debug("Duplicate message dropped", extra={"context": {"message_id": message.message_id}})
            return Route.DROP_DUPLICATE

        classification = classify_message(
            message, own_number=self.phone_number, enabled=self.enabled, policy=self.policy
        )
        self.logger.debug(
            "Message classified",
            extra={"context": {"route": classification.route.value, "message_id": message.message_id}},
        )

        try:
            if classification.route == Route.ADMIN_COMMAND:
                await self._handle_admin_command(message, classification)
            elif classification.route in (Route.AUDIO_INCOMING, Route.AUDIO_OUTGOING):
                await self._handle_audio(message, classification)
            elif classification.route == Route.TEXT_INCOMING:
                await self._handle_text(message, classification)
            elif classification.route == Route.DROP_UNSUPPORTED:
                if not message.from_me and self.settings.get("acknowledge_unsupported"):
                    await self._send(message.remote_jid, MSG_UNSUPPORTED)
        except Exception as exc:
            self.logger.error(
                "Message handling failed",
                extra={
                    "context": {
                        "route": classification.route.value,
                        "error": str(exc),
                        "error_type": type(exc).__name__,
                    }
                },
                exc_info=True,
            )
            fallback = MSG_AUDIO_ERROR if classification.route in (Route.AUDIO_INCOMING, Route.AUDIO_OUTGOING) else MSG_TEXT_ERROR
            target = self._reply_target(message, classification)
            if target:
                await self._send(target, fallback)
        return classification.route

    def _reply_target(self, message: InboundMessage, classification: Classification) -> Optional[str]:
        if classification.route == Route.AUDIO_OUTGOING or classification.is_self_message:
            return to_chat_id(self.phone_number) if self.phone_number else None
        return message.remote_jid

    async def _handle_admin_command(self, message: InboundMessage, classification: Classification) -> None:
        self.logger.info("Admin command", extra={"context": {"command": classification.command}})
        if classification.command == "bot_on":
            await self.set_enabled(True, notify_chat=message.remote_jid)
        elif classification.command == "bot_off":
            await self.set_enabled(False, notify_chat=message.remote_jid)
        elif classification.command == "bot_status":
            await self._send(message.remote_jid, format_status_message(self.enabled, self.policy))

    async def _handle_text(self, message: InboundMessage, classification: Classification) -> None:
        sender = classification.remote_number
        chat_id = message.remote_jid

        async def reply(text: str) -> None:
            await self._send(chat_id, text)

        async with self.locks.hold(sender):
            outcome = await self.controller.handle_utterance(sender, message.text, self._analyzer())
            if outcome.message:
                await reply(outcome.message)
            if outcome.confirmed_fields is not None:
                await self.controller.generate_invoice(
                    sender, outcome.confirmed_fields, settings=self.settings, templates=self._templates(), reply=reply
                )

    async def _handle_audio(self, message: InboundMessage, classification: Classification) -> None:
        outgoing = classification.route == Route.AUDIO_OUTGOING
        number = classification.remote_number
        chat_id = self._reply_target(message, classification)
        if not chat_id:
            self.logger.warning("Own number unknown, outgoing audio ignored")
            return

        async def reply(text: str) -> None:
            await self._send(chat_id, text)

        async with self.locks.hold(number):
            try:
                audio = await self._load_audio(message)
                transcript = await self.transcriber.transcribe(
                    audio,
                    language_hint=self.settings.get("transcription_language") or self.app_settings.transcription_language,
                    mime_type=message.media.mimetype if message.media else None,
                )
            except Exception as exc:
                self.logger.warning(
                    "Audio processing failed",
                    extra={"context": {"error": str(exc), "error_type": type(exc).__name__}},
                )
                await reply(MSG_AUDIO_ERROR)
                return

            if len(transcript.strip()) < MIN_TRANSCRIPT_CHARS:
                await reply(MSG_NOT_UNDERSTOOD)
                return

            outcome = await self.controller.handle_utterance(number, transcript, self._analyzer())
            prefix = f"📤 *Envoyé à {number}*\n" if outgoing else ""
            response = f'{prefix}📝 *Transcription:*\n"{transcript.strip()}"'
            if outcome.message:
                response += f"\n\n{outcome.message}"
            await reply(response)

            if outcome.confirmed_fields is not None:
                await self.controller.generate_invoice(
                    number, outcome.confirmed_fields, settings=self.settings, templates=self._templates(), reply=reply
                )

    async def _load_audio(self, message: InboundMessage) -> bytes:
        media = message.media
        if media is None:
            raise TranscriptionError("audio message without media")
        if media.base64:
            payload = media.base64.split(",", 1)[1] if media.base64.startswith("data:") else media.base64
            try:
                return base64.b64decode(payload)
            except (binascii.Error, ValueError) as exc:
                raise TranscriptionError("invalid base64 media") from exc
        if media.url:
            return await self.transport.download_media(media.url)
        raise TranscriptionError("audio message without media")

    def _analyzer(self) -> InvoiceAnalyzer:
        settings = self.settings
        prompt = self.config.get("prompt") or {}
        knowledge = self.config.get("knowledge") or {}
        return InvoiceAnalyzer(
            self.provider,
            model=settings.get("llm_model") or self.app_settings.llm_model,
            timeout_seconds=self.app_settings.llm_timeout_seconds,
            profile_prompt=prompt.get("system"),
            knowledge_entries=knowledge.get("entries") or [],
            default_tax_rate_pct=float(settings.get("tax_rate_pct") or self.app_settings.default_tax_rate_pct),
        )

    def _templates(self) -> dict:
        return self.config.get("emails") or {}

    async def _send(self, chat_id: str, text: str) -> bool:
        try:
            await self.transport.send_text(chat_id, text)
            return True
        except Exception as exc:
            self.logger.error(
                "Send failed",
                extra={"context": {"chat_id": chat_id, "error": str(exc), "error_type": type(exc).__name__}},
            )
            return False
