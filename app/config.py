from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./data/voicebill.db"
    debug: bool = False
    log_level: str = "INFO"

    # Admin API
    admin_secret: str = ""
    owner_signing_secret: str = ""
    signature_max_age_seconds: int = 300
    cors_allow_origins: str = "*"

    # "single" keeps one default bot, "multi" serves every bot stored in the database
    deployment_mode: str = "multi"
    default_bot_id: str = "main-bot"
    default_bot_name: str = "WhatsApp Bot"
    max_bots_per_owner: int = 5
    data_dir: Path = Path("./data/bots")

    # LLM + speech-to-text (OpenAI-compatible endpoints, Groq by default)
    llm_api_key: Optional[str] = None
    llm_base_url: str = "https://api.groq.com/openai/v1"
    llm_model: str = "llama-3.3-70b-versatile"
    llm_timeout_seconds: float = 15.0
    transcription_model: str = "whisper-large-v3-turbo"
    transcription_language: str = "fr"
    transcription_timeout_seconds: float = 30.0

    # Email (resend)
    resend_api_key: Optional[str] = None
    email_from_default: str = ""
    email_timeout_seconds: float = 10.0

    # WhatsApp gateway
    whatsapp_gateway_url: str = "http://localhost:3000"
    whatsapp_gateway_token: Optional[str] = None
    whatsapp_send_timeout_seconds: float = 15.0
    # Base URL the gateway calls back; webhooks land on {public_base_url}/webhook/{bot_id}
    public_base_url: Optional[str] = None
    webhook_secret: Optional[str] = None

    # Bot defaults
    company_name_default: str = "Entreprise"
    company_email_default: str = ""
    invoice_prefix_default: str = "FAC-"
    default_tax_rate_pct: float = 20.0

    # Conversation
    dedup_max_ids: int = 500
    pending_order_ttl_minutes: int = 1440

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()


def validate_startup_settings(current: Settings) -> None:
    """Fail fast on configuration the service cannot run without."""
    missing = []
    if not current.admin_secret:
        missing.append("ADMIN_SECRET")
    if current.deployment_mode == "single" and not current.llm_api_key:
        missing.append("LLM_API_KEY")
    if current.deployment_mode not in {"single", "multi"}:
        raise RuntimeError(f"Unknown DEPLOYMENT_MODE: {current.deployment_mode}")
    if missing:
        raise RuntimeError("Missing required configuration: " + ", ".join(missing))
