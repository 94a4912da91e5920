"""Public bot endpoints used by the QR pairing page."""

from fastapi import APIRouter, Depends, HTTPException

from app.dependencies import get_bot_manager
from app.schemas.bot import BotQRResponse, BotStatusResponse
from app.services.bot_manager import BotManager, BotNotFoundError

router = APIRouter(prefix="/api/bots", tags=["bots"])


@router.get("/{bot_id}/status", response_model=BotStatusResponse)
async def get_bot_status(bot_id: str, manager: BotManager = Depends(get_bot_manager)):
    try:
        return manager.get_instance(bot_id).get_status()
    except BotNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Bot not found") from exc


@router.get("/{bot_id}/qr", response_model=BotQRResponse)
async def get_bot_qr(bot_id: str, manager: BotManager = Depends(get_bot_manager)):
    try:
        bot = manager.get_instance(bot_id)
    except BotNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Bot not found") from exc
    if bot.qr_code:
        return BotQRResponse(id=bot_id, status=bot.status.value, qr=bot.qr_code)
    return BotQRResponse(id=bot_id, status=bot.status.value, message="No QR code available")
