from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from starlette.requests import ClientDisconnect

from app.dependencies import get_bot_manager
from app.logging_config import get_logger
from app.schemas.webhook import ConnectionUpdate, InboundMessage, WebhookResponse
from app.services.bot_manager import BotManager, BotNotFoundError

logger = get_logger("webhook")

router = APIRouter()


def _get_request_webhook_secret(request: Request) -> Optional[str]:
    header_secret = request.headers.get("X-Webhook-Secret")
    if header_secret:
        return header_secret.strip()
    query_secret = request.query_params.get("webhook_secret")
    if query_secret:
        return query_secret.strip()
    return None


def _check_secret(request: Request, manager: BotManager) -> None:
    expected = manager.app_settings.webhook_secret
    if not expected:
        return
    if _get_request_webhook_secret(request) != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook secret")


def normalize_gateway_payload(payload: dict) -> dict:
    """Flatten the envelope shapes gateways use into InboundMessage fields."""
    body = payload.get("body") or payload.get("data")
    if not isinstance(body, dict):
        body = payload
    body = dict(body)

    metadata = body.pop("metadata", None)
    if isinstance(metadata, dict):
        for key, value in metadata.items():
            body.setdefault(key, value)

    key = body.get("key")
    if isinstance(key, dict):
        body.setdefault("remoteJid", key.get("remoteJid"))
        body.setdefault("fromMe", key.get("fromMe", False))
        body.setdefault("messageId", key.get("id"))

    message = body.get("message")
    if isinstance(message, dict):
        text = message.get("conversation") or (message.get("extendedTextMessage") or {}).get("text")
        if "audioMessage" in message:
            body.setdefault("messageType", "audio")
            audio = message.get("audioMessage") or {}
            body.setdefault("mediaData", {"url": audio.get("url"), "mimetype": audio.get("mimetype")})
        body["message"] = text

    return {k: v for k, v in body.items() if v is not None}


async def _read_json(request: Request, bot_id: str) -> dict | WebhookResponse:
    try:
        payload = await request.json()
    except ClientDisconnect:
        logger.info("Webhook client disconnected during read", extra={"context": {"bot_id": bot_id}})
        return WebhookResponse(success=True, message="Client disconnected")
    except Exception as exc:
        raw = await request.body()
        if not raw or not raw.strip():
            return WebhookResponse(success=True, message="Empty payload")
        logger.warning(
            "Webhook payload is not valid JSON",
            extra={"context": {"bot_id": bot_id, "error": str(exc), "body_preview": raw[:200].decode("utf-8", "ignore")}},
        )
        return WebhookResponse(success=False, message="Invalid JSON payload")

    if not isinstance(payload, dict):
        return WebhookResponse(success=False, message="Invalid payload format")
    return payload


@router.post("/webhook/{bot_id}", response_model=WebhookResponse)
async def handle_message_webhook(bot_id: str, request: Request, manager: BotManager = Depends(get_bot_manager)):
    """One message envelope from the WhatsApp gateway."""
    _check_secret(request, manager)
    payload = await _read_json(request, bot_id)
    if isinstance(payload, WebhookResponse):
        return payload

    try:
        bot = manager.get_instance(bot_id)
    except BotNotFoundError:
        return WebhookResponse(success=False, message=f"Bot '{bot_id}' not found")

    normalized = normalize_gateway_payload(payload)
    try:
        message = InboundMessage.model_validate(normalized)
    except Exception as exc:
        logger.warning(
            "Webhook payload validation failed",
            extra={"context": {"bot_id": bot_id, "error": str(exc), "payload_keys": list(normalized.keys())[:20]}},
        )
        return WebhookResponse(success=False, message="Invalid webhook payload")

    route = await bot.handle_message(message)
    return WebhookResponse(success=True, message="Processed", action=route.value)


@router.post("/webhook/{bot_id}/connection", response_model=WebhookResponse)
async def handle_connection_webhook(
    bot_id: str,
    update: ConnectionUpdate,
    request: Request,
    manager: BotManager = Depends(get_bot_manager),
):
    """Connection / QR signals for the bot's gateway session."""
    _check_secret(request, manager)
    try:
        bot = manager.get_instance(bot_id)
    except BotNotFoundError:
        return WebhookResponse(success=False, message=f"Bot '{bot_id}' not found")

    new_status = bot.handle_connection_update(
        connection=update.connection,
        qr=update.qr,
        phone_number=update.phone_number,
        status_code=update.status_code,
    )
    return WebhookResponse(success=True, message="Connection updated", action=new_status.value)


@router.get("/webhook/{bot_id}")
async def handle_webhook_probe(bot_id: str):
    """Health probe for gateway UI checks; real webhooks must use POST."""
    return {"ok": True, "message": "Use POST with JSON payload", "bot_id": bot_id}
