"""Admin API endpoints for managing bots."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from app.dependencies import get_bot_manager, require_principal
from app.logging_config import get_logger
from app.schemas.bot import (
    BotConfigResponse,
    BotConfigUpdate,
    BotCreateRequest,
    BotEnableRequest,
    BotStatusResponse,
    DeleteResponse,
)
from app.services.bot_manager import (
    BotAccessDeniedError,
    BotManager,
    BotNotFoundError,
    BotQuotaExceededError,
    Principal,
)
from app.services.whatsapp_service import WhatsAppGatewayError

logger = get_logger("admin")

router = APIRouter(prefix="/api/admin/bots", tags=["admin"])


def _raise_http(exc: Exception) -> None:
    if isinstance(exc, BotNotFoundError):
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if isinstance(exc, BotAccessDeniedError):
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    if isinstance(exc, BotQuotaExceededError):
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if isinstance(exc, WhatsAppGatewayError):
        raise HTTPException(status_code=502, detail="WhatsApp gateway unavailable") from exc
    raise exc


MANAGER_ERRORS = (BotNotFoundError, BotAccessDeniedError, BotQuotaExceededError, WhatsAppGatewayError)


@router.get("")
async def list_bots(
    owner_id: Optional[str] = None,
    principal: Principal = Depends(require_principal),
    manager: BotManager = Depends(get_bot_manager),
) -> dict:
    return {"bots": manager.list_bots(principal, owner_id=owner_id)}


@router.post("", response_model=BotStatusResponse)
async def create_bot(
    data: BotCreateRequest,
    principal: Principal = Depends(require_principal),
    manager: BotManager = Depends(get_bot_manager),
):
    try:
        return manager.create_bot(principal, name=data.name, settings=data.settings, owner_id=data.owner_id)
    except MANAGER_ERRORS as exc:
        _raise_http(exc)


@router.get("/{bot_id}")
async def get_bot(
    bot_id: str,
    principal: Principal = Depends(require_principal),
    manager: BotManager = Depends(get_bot_manager),
) -> dict:
    try:
        config = manager.get_bot_config(bot_id, principal)
        return {**config, "status": manager.get_bot(bot_id, principal).get_status()}
    except MANAGER_ERRORS as exc:
        _raise_http(exc)


@router.put("/{bot_id}", response_model=BotConfigResponse)
async def update_bot(
    bot_id: str,
    data: BotConfigUpdate,
    principal: Principal = Depends(require_principal),
    manager: BotManager = Depends(get_bot_manager),
):
    try:
        return manager.update_bot_config(bot_id, data.model_dump(exclude_none=True), principal)
    except MANAGER_ERRORS as exc:
        _raise_http(exc)


@router.delete("/{bot_id}", response_model=DeleteResponse)
async def delete_bot(
    bot_id: str,
    principal: Principal = Depends(require_principal),
    manager: BotManager = Depends(get_bot_manager),
):
    try:
        await manager.delete_bot(bot_id, principal)
    except MANAGER_ERRORS as exc:
        _raise_http(exc)
    return DeleteResponse(success=True, id=bot_id)


@router.post("/{bot_id}/start", response_model=BotStatusResponse)
async def start_bot(
    bot_id: str,
    principal: Principal = Depends(require_principal),
    manager: BotManager = Depends(get_bot_manager),
):
    try:
        return await manager.start_bot(bot_id, principal)
    except MANAGER_ERRORS as exc:
        _raise_http(exc)


@router.post("/{bot_id}/stop", response_model=BotStatusResponse)
async def stop_bot(
    bot_id: str,
    principal: Principal = Depends(require_principal),
    manager: BotManager = Depends(get_bot_manager),
):
    try:
        return await manager.stop_bot(bot_id, principal)
    except MANAGER_ERRORS as exc:
        _raise_http(exc)


@router.post("/{bot_id}/logout", response_model=BotStatusResponse)
async def logout_bot(
    bot_id: str,
    principal: Principal = Depends(require_principal),
    manager: BotManager = Depends(get_bot_manager),
):
    try:
        return await manager.logout_bot(bot_id, principal)
    except MANAGER_ERRORS as exc:
        _raise_http(exc)


@router.post("/{bot_id}/enable", response_model=BotStatusResponse)
async def enable_bot(
    bot_id: str,
    data: BotEnableRequest,
    principal: Principal = Depends(require_principal),
    manager: BotManager = Depends(get_bot_manager),
):
    try:
        return await manager.set_enabled(bot_id, data.enabled, principal)
    except MANAGER_ERRORS as exc:
        _raise_http(exc)
