"""Registry of bot runtimes backed by the `bots` table."""

import shutil
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from app.config import Settings
from app.database import SessionLocal
from app.logging_config import get_logger
from app.models import Bot
from app.services.bot_runtime import BotInstance
from app.services.email_service import DEFAULT_TEMPLATES, EmailSender
from app.services.extraction_service import DEFAULT_PROFILE_PROMPT
from app.services.llm import LLMProvider, OpenAIProvider
from app.services.whatsapp_service import WhatsAppGateway, WhatsAppTransport

logger = get_logger("bot_manager")

REPLACED_SECTIONS = ("prompt", "knowledge", "emails")


class BotNotFoundError(Exception):
    def __init__(self, bot_id: str):
        self.bot_id = bot_id
        super().__init__(f"Bot {bot_id} not found")


class BotAccessDeniedError(Exception):
    def __init__(self, bot_id: str):
        self.bot_id = bot_id
        super().__init__(f"Access to bot {bot_id} denied")


class BotQuotaExceededError(Exception):
    def __init__(self, owner_id: str, limit: int):
        self.owner_id = owner_id
        self.limit = limit
        super().__init__(f"Owner {owner_id} already has {limit} bots")


@dataclass(frozen=True)
class Principal:
    """Who is calling the admin surface."""

    owner_id: Optional[str] = None
    is_superadmin: bool = False

    @classmethod
    def superadmin(cls) -> "Principal":
        return cls(owner_id=None, is_superadmin=True)

    @classmethod
    def owner(cls, owner_id: str) -> "Principal":
        return cls(owner_id=owner_id, is_superadmin=False)

    def can_access(self, owner_id: Optional[str]) -> bool:
        return self.is_superadmin or (owner_id is not None and owner_id == self.owner_id)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_bot_id() -> str:
    return f"bot-{uuid.uuid4().hex[:8]}"


class BotManager:
    def __init__(
        self,
        app_settings: Settings,
        *,
        session_factory: Callable[[], Session] = SessionLocal,
        transport_factory: Optional[Callable[[str], WhatsAppTransport]] = None,
        provider_factory: Optional[Callable[[dict], Optional[LLMProvider]]] = None,
        email_sender: Optional[EmailSender] = None,
    ):
        self.app_settings = app_settings
        self.session_factory = session_factory
        self.transport_factory = transport_factory or self._default_transport
        self.provider_factory = provider_factory or self._default_provider
        self.email_sender = email_sender or EmailSender(
            app_settings.resend_api_key,
            default_from=app_settings.email_from_default,
            timeout_seconds=app_settings.email_timeout_seconds,
        )
        self.bots: Dict[str, BotInstance] = {}
        self.initialized = False

    # Collaborator factories

    def _default_transport(self, bot_id: str) -> WhatsAppTransport:
        return WhatsAppGateway(
            bot_id,
            self.app_settings.whatsapp_gateway_url,
            token=self.app_settings.whatsapp_gateway_token,
            timeout_seconds=self.app_settings.whatsapp_send_timeout_seconds,
        )

    def _default_provider(self, bot_settings: dict) -> Optional[LLMProvider]:
        api_key = bot_settings.get("llm_api_key") or self.app_settings.llm_api_key
        if not api_key:
            return None
        return OpenAIProvider(
            api_key=api_key,
            default_model=self.app_settings.llm_model,
            base_url=self.app_settings.llm_base_url,
            transcription_model=self.app_settings.transcription_model,
        )

    def _webhook_url(self, bot_id: str) -> Optional[str]:
        base = self.app_settings.public_base_url
        if not base:
            return None
        return f"{base.rstrip('/')}/webhook/{bot_id}"

    @contextmanager
    def _session(self):
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()

    def _build_instance(self, config: dict) -> BotInstance:
        return BotInstance(
            config,
            transport=self.transport_factory(config["id"]),
            app_settings=self.app_settings,
            provider=self.provider_factory(config.get("settings") or {}),
            email_sender=self.email_sender,
            data_dir=self.app_settings.data_dir,
            on_enabled_change=self._persist_enabled,
            webhook_url=self._webhook_url(config["id"]),
        )

    def default_settings(self, overrides: Optional[dict] = None) -> dict:
        defaults = {
            "company_name": self.app_settings.company_name_default,
            "company_email": self.app_settings.company_email_default,
            "invoice_prefix": self.app_settings.invoice_prefix_default,
            "tax_rate_pct": self.app_settings.default_tax_rate_pct,
            "email_recipients": [],
            "confirmation_recipients": [],
            "activate_on_receive": True,
            "activate_on_send": False,
            "receive_from_numbers": [],
            "send_to_numbers": [],
        }
        return {**defaults, **(overrides or {})}

    # Lifecycle

    async def initialize(self) -> None:
        if self.initialized:
            return
        with self._session() as db:
            if self.app_settings.deployment_mode == "single":
                self._ensure_default_bot(db)
            rows = db.query(Bot).all()
            configs = [row.to_config() for row in rows]

        for config in configs:
            self.bots[config["id"]] = self._build_instance(config)

        for config in configs:
            if not config.get("auto_start"):
                continue
            try:
                await self.bots[config["id"]].start()
            except Exception as exc:
                logger.error(
                    "Auto-start failed",
                    extra={"context": {"bot_id": config["id"], "error": str(exc)}},
                )

        self.initialized = True
        logger.info(
            "Bot manager initialized",
            extra={"context": {"bots": len(self.bots), "mode": self.app_settings.deployment_mode}},
        )

    def _ensure_default_bot(self, db: Session) -> None:
        bot_id = self.app_settings.default_bot_id
        if db.query(Bot).filter(Bot.id == bot_id).first():
            return
        now = _now()
        db.add(
            Bot(
                id=bot_id,
                name=self.app_settings.default_bot_name,
                owner_id=None,
                enabled=True,
                auto_start=True,
                settings=self.default_settings(),
                prompt={"system": DEFAULT_PROFILE_PROMPT},
                knowledge={"entries": []},
                emails=DEFAULT_TEMPLATES,
                created_at=now,
                updated_at=now,
            )
        )
        db.commit()
        logger.info("Default bot created", extra={"context": {"bot_id": bot_id}})

    async def shutdown(self) -> None:
        for bot in list(self.bots.values()):
            await bot.stop()

    # Lookup

    def get_instance(self, bot_id: str) -> BotInstance:
        bot = self.bots.get(bot_id)
        if bot is None:
            raise BotNotFoundError(bot_id)
        return bot

    def get_bot(self, bot_id: str, principal: Principal) -> BotInstance:
        bot = self.get_instance(bot_id)
        if not principal.can_access(bot.config.get("owner_id")):
            raise BotAccessDeniedError(bot_id)
        return bot

    def list_bots(self, principal: Principal, owner_id: Optional[str] = None) -> list[dict]:
        statuses = []
        for bot in self.bots.values():
            bot_owner = bot.config.get("owner_id")
            if not principal.can_access(bot_owner):
                continue
            if owner_id is not None and bot_owner != owner_id:
                continue
            statuses.append(bot.get_status())
        return statuses

    # CRUD

    def create_bot(
        self,
        principal: Principal,
        name: Optional[str] = None,
        settings: Optional[dict] = None,
        owner_id: Optional[str] = None,
    ) -> dict:
        owner = owner_id if principal.is_superadmin else principal.owner_id
        with self._session() as db:
            if not principal.is_superadmin:
                count = db.query(Bot).filter(Bot.owner_id == owner).count()
                if count >= self.app_settings.max_bots_per_owner:
                    raise BotQuotaExceededError(owner, self.app_settings.max_bots_per_owner)

            bot_id = new_bot_id()
            now = _now()
            row = Bot(
                id=bot_id,
                name=name or f"Bot {len(self.bots) + 1}",
                owner_id=owner,
                enabled=False,
                auto_start=False,
                settings=self.default_settings(settings),
                prompt={"system": DEFAULT_PROFILE_PROMPT, "created_at": now.isoformat()},
                knowledge={"entries": [], "last_updated": None},
                emails=DEFAULT_TEMPLATES,
                created_at=now,
                updated_at=now,
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            config = row.to_config()

        (Path(self.app_settings.data_dir) / bot_id).mkdir(parents=True, exist_ok=True)
        bot = self._build_instance(config)
        self.bots[bot_id] = bot
        logger.info("Bot created", extra={"context": {"bot_id": bot_id, "owner_id": owner}})
        return bot.get_status()

    async def start_bot(self, bot_id: str, principal: Principal) -> dict:
        bot = self.get_bot(bot_id, principal)
        await bot.start()
        self._update_row(bot_id, auto_start=True)
        bot.config["auto_start"] = True
        return bot.get_status()

    async def stop_bot(self, bot_id: str, principal: Principal) -> dict:
        bot = self.get_bot(bot_id, principal)
        await bot.stop()
        self._update_row(bot_id, auto_start=False)
        bot.config["auto_start"] = False
        return bot.get_status()

    async def logout_bot(self, bot_id: str, principal: Principal) -> dict:
        bot = self.get_bot(bot_id, principal)
        await bot.logout()
        return bot.get_status()

    async def set_enabled(self, bot_id: str, enabled: bool, principal: Principal) -> dict:
        bot = self.get_bot(bot_id, principal)
        await bot.set_enabled(enabled)
        return bot.get_status()

    async def delete_bot(self, bot_id: str, principal: Principal) -> None:
        bot = self.get_bot(bot_id, principal)
        await bot.stop()
        self.bots.pop(bot_id, None)

        with self._session() as db:
            db.query(Bot).filter(Bot.id == bot_id).delete()
            db.commit()

        bot_path = Path(self.app_settings.data_dir) / bot_id
        if bot_path.exists():
            shutil.rmtree(bot_path, ignore_errors=True)
        logger.info("Bot deleted", extra={"context": {"bot_id": bot_id}})

    def get_bot_config(self, bot_id: str, principal: Principal) -> dict:
        self.get_bot(bot_id, principal)
        with self._session() as db:
            row = db.query(Bot).filter(Bot.id == bot_id).first()
            if row is None:
                raise BotNotFoundError(bot_id)
            config = row.to_config()
        return {
            "config": {key: config[key] for key in ("id", "name", "owner_id", "enabled", "auto_start", "settings")},
            "prompt": config["prompt"],
            "knowledge": config["knowledge"],
            "emails": config["emails"],
        }

    def update_bot_config(self, bot_id: str, updates: dict, principal: Principal) -> dict:
        """Merge settings key by key; prompt, knowledge and emails are replaced whole."""
        bot = self.get_bot(bot_id, principal)
        with self._session() as db:
            row = db.query(Bot).filter(Bot.id == bot_id).first()
            if row is None:
                raise BotNotFoundError(bot_id)

            config_updates = updates.get("config") or {}
            if config_updates.get("name"):
                row.name = config_updates["name"]
            if config_updates.get("auto_start") is not None:
                row.auto_start = bool(config_updates["auto_start"])
            if config_updates.get("settings"):
                row.settings = {**(row.settings or {}), **config_updates["settings"]}

            for section in REPLACED_SECTIONS:
                if updates.get(section) is not None:
                    setattr(row, section, updates[section])

            row.updated_at = _now()
            db.commit()
            db.refresh(row)
            config = row.to_config()

        settings_changed = bool((updates.get("config") or {}).get("settings"))
        provider = self.provider_factory(config["settings"]) if settings_changed else None
        bot.update_config(config, provider=provider)
        logger.info(
            "Bot config updated",
            extra={"context": {"bot_id": bot_id, "sections": sorted(k for k in updates if updates[k] is not None)}},
        )
        return self.get_bot_config(bot_id, principal)

    # Persistence hooks

    def _update_row(self, bot_id: str, **values) -> None:
        with self._session() as db:
            row = db.query(Bot).filter(Bot.id == bot_id).first()
            if row is None:
                return
            for key, value in values.items():
                setattr(row, key, value)
            row.updated_at = _now()
            db.commit()

    def _persist_enabled(self, bot_id: str, enabled: bool) -> None:
        self._update_row(bot_id, enabled=enabled)
