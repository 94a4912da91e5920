from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from app.config import settings, validate_startup_settings
from app.database import Base, engine, get_db
from app.logging_config import get_logger, setup_logging
from app.models import Bot
from app.routers import admin, bots, webhook
from app.services.bot_manager import BotManager

setup_logging(settings.log_level)
logger = get_logger("main")

app = FastAPI(
    title="VoiceBill API",
    description="WhatsApp voice-to-invoice bots",
    version="0.1.0",
)

cors_origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(bots.router)
app.include_router(admin.router)
app.include_router(webhook.router)


@app.on_event("startup")
async def start_bot_manager() -> None:
    validate_startup_settings(settings)
    Base.metadata.create_all(bind=engine)
    manager = getattr(app.state, "bot_manager", None)
    if manager is None:
        manager = BotManager(settings)
        app.state.bot_manager = manager
    await manager.initialize()
    logger.info("Startup complete", extra={"context": {"mode": settings.deployment_mode}})


@app.on_event("shutdown")
async def stop_bot_manager() -> None:
    manager = getattr(app.state, "bot_manager", None)
    if manager is not None:
        await manager.shutdown()


@app.get("/health")
async def health():
    manager = getattr(app.state, "bot_manager", None)
    return {"status": "ok", "bots": len(manager.bots) if manager else 0}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    bots_count = db.query(Bot).count()
    enabled_count = db.query(Bot).filter(Bot.enabled.is_(True)).count()
    return {"status": "ok", "bots": bots_count, "enabled": enabled_count}
