import os

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("ADMIN_SECRET", "test-admin-secret")
os.environ.setdefault("OWNER_SIGNING_SECRET", "test-owner-secret")
os.environ.setdefault("DEPLOYMENT_MODE", "multi")

from unittest.mock import AsyncMock, Mock  # noqa: E402

import pytest  # noqa: E402

from app.config import Settings  # noqa: E402
from app.database import Base, SessionLocal, engine  # noqa: E402
from app.models import Bot  # noqa: E402
from app.services.bot_manager import BotManager  # noqa: E402
from app.services.llm.base import LLMProvider, LLMResponse  # noqa: E402


class FakeProvider(LLMProvider):
    """Returns queued replies; records every call."""

    def __init__(self, replies=None, transcript: str = ""):
        self.replies = list(replies or [])
        self.transcript = transcript
        self.calls = []
        self.transcribe_calls = []

    def generate(self, messages, model=None, temperature=0.7, max_tokens=1000, timeout_seconds=None, json_mode=False):
        self.calls.append(messages)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return LLMResponse(content=reply, model=model or "fake-model")

    def transcribe_audio(self, *, audio_bytes, filename, mime_type=None, model=None, language=None, timeout_seconds=None):
        self.transcribe_calls.append({"bytes": audio_bytes, "language": language})
        return self.transcript


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        database_url="sqlite:///:memory:",
        admin_secret="test-admin-secret",
        owner_signing_secret="test-owner-secret",
        deployment_mode="multi",
        data_dir=tmp_path / "bots",
        llm_api_key="test-key",
        max_bots_per_owner=2,
    )


@pytest.fixture
def fake_transport():
    transport = Mock()
    transport.send_text = AsyncMock()
    transport.download_media = AsyncMock(return_value=b"OggS-audio")
    transport.connect = AsyncMock()
    transport.disconnect = AsyncMock()
    transport.logout = AsyncMock()
    return transport


@pytest.fixture
def db_tables():
    Base.metadata.create_all(bind=engine)
    yield
    db = SessionLocal()
    try:
        db.query(Bot).delete()
        db.commit()
    finally:
        db.close()


@pytest.fixture
def bot_manager(test_settings, fake_transport, db_tables):
    return BotManager(
        test_settings,
        session_factory=SessionLocal,
        transport_factory=lambda bot_id: fake_transport,
        provider_factory=lambda bot_settings: FakeProvider(),
        email_sender=Mock(send_invoice_emails=AsyncMock()),
    )
