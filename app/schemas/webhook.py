from typing import Optional

from pydantic import AliasChoices, BaseModel, Field


class MediaData(BaseModel):
    url: Optional[str] = None
    base64: Optional[str] = Field(default=None, validation_alias=AliasChoices("base64", "data"))
    mimetype: Optional[str] = Field(default=None, validation_alias=AliasChoices("mimetype", "mimeType", "mime"))
    seconds: Optional[float] = None


class InboundMessage(BaseModel):
    """One message envelope delivered by the WhatsApp gateway."""

    message_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("messageId", "message_id", "id"))
    remote_jid: str = Field(validation_alias=AliasChoices("remoteJid", "remote_jid", "chatId", "chat_id"))
    from_me: bool = Field(default=False, validation_alias=AliasChoices("fromMe", "from_me"))
    message_type: str = Field(default="text", validation_alias=AliasChoices("messageType", "message_type", "type"))
    message: Optional[str] = Field(default=None, validation_alias=AliasChoices("message", "text", "body"))
    media: Optional[MediaData] = Field(default=None, validation_alias=AliasChoices("mediaData", "media"))
    push_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("pushName", "push_name", "sender"))

    @property
    def text(self) -> str:
        return self.message or ""


class ConnectionUpdate(BaseModel):
    connection: Optional[str] = None
    qr: Optional[str] = None
    phone_number: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("phoneNumber", "phone_number", "me")
    )
    status_code: Optional[int] = Field(default=None, validation_alias=AliasChoices("statusCode", "status_code"))


class WebhookResponse(BaseModel):
    success: bool
    message: str
    action: Optional[str] = None
