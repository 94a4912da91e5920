from typing import Optional

from pydantic import AliasChoices, BaseModel, Field


class BotCreateRequest(BaseModel):
    name: Optional[str] = None
    settings: dict = Field(default_factory=dict)
    owner_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("ownerId", "owner_id"))


class BotEnableRequest(BaseModel):
    enabled: bool


class BotConfigPatch(BaseModel):
    name: Optional[str] = None
    auto_start: Optional[bool] = Field(default=None, validation_alias=AliasChoices("autoStart", "auto_start"))
    settings: Optional[dict] = None


class BotConfigUpdate(BaseModel):
    config: Optional[BotConfigPatch] = None
    prompt: Optional[dict] = None
    knowledge: Optional[dict] = None
    emails: Optional[dict] = None


class BotStatusResponse(BaseModel):
    id: str
    name: Optional[str] = None
    owner_id: Optional[str] = None
    status: str
    enabled: bool
    auto_start: bool = False
    phone_number: Optional[str] = None
    has_qr: bool = False
    pending_orders: int = 0
    last_error: Optional[str] = None


class BotQRResponse(BaseModel):
    id: str
    status: str
    qr: Optional[str] = None
    message: Optional[str] = None


class BotConfigResponse(BaseModel):
    config: dict
    prompt: dict
    knowledge: dict
    emails: dict


class DeleteResponse(BaseModel):
    success: bool
    id: str
