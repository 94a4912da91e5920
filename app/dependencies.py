"""Request dependencies shared by the routers."""

import hashlib
import hmac
import time
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from app.logging_config import get_logger
from app.services.bot_manager import BotManager, Principal

logger = get_logger("auth")


def get_bot_manager(request: Request) -> BotManager:
    manager = getattr(request.app.state, "bot_manager", None)
    if manager is None:
        raise HTTPException(status_code=503, detail="Bot manager not ready")
    return manager


def sign_owner_request(owner_id: str, timestamp: str, secret: str) -> str:
    """hex HMAC-SHA256 over "<owner_id>:<timestamp>"."""
    payload = f"{owner_id}:{timestamp}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_owner_signature(
    owner_id: str,
    timestamp: str,
    signature: str,
    secret: str,
    *,
    max_age_seconds: int = 300,
    now: Optional[float] = None,
) -> bool:
    if not (owner_id and timestamp and signature and secret):
        return False
    try:
        ts = int(timestamp)
    except (TypeError, ValueError):
        return False
    now_ts = int(now if now is not None else time.time())
    if abs(now_ts - ts) > max_age_seconds:
        return False
    expected = sign_owner_request(owner_id, timestamp, secret)
    return hmac.compare_digest(expected, signature.lower())


def require_principal(
    manager: BotManager = Depends(get_bot_manager),
    authorization: Optional[str] = Header(default=None),
    x_owner_id: Optional[str] = Header(default=None, alias="X-Owner-Id"),
    x_timestamp: Optional[str] = Header(default=None, alias="X-Timestamp"),
    x_signature: Optional[str] = Header(default=None, alias="X-Signature"),
) -> Principal:
    """Bearer ADMIN_SECRET is a superadmin; signed owner headers are an owner."""
    current = manager.app_settings

    if authorization and current.admin_secret:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer" and hmac.compare_digest(token.strip(), current.admin_secret):
            return Principal.superadmin()

    if x_owner_id and current.owner_signing_secret:
        if verify_owner_signature(
            x_owner_id,
            x_timestamp or "",
            x_signature or "",
            current.owner_signing_secret,
            max_age_seconds=current.signature_max_age_seconds,
        ):
            return Principal.owner(x_owner_id)
        logger.warning("Invalid owner signature", extra={"context": {"owner_id": x_owner_id}})

    raise HTTPException(status_code=401, detail="Unauthorized")
