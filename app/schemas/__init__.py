from app.schemas.bot import (
    BotConfigResponse,
    BotConfigUpdate,
    BotCreateRequest,
    BotEnableRequest,
    BotQRResponse,
    BotStatusResponse,
)
from app.schemas.webhook import ConnectionUpdate, InboundMessage, WebhookResponse

__all__ = [
    "BotConfigResponse",
    "BotConfigUpdate",
    "BotCreateRequest",
    "BotEnableRequest",
    "BotQRResponse",
    "BotStatusResponse",
    "ConnectionUpdate",
    "InboundMessage",
    "WebhookResponse",
]
