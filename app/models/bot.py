from sqlalchemy import JSON, Boolean, Column, DateTime, Text

from app.database import Base


class Bot(Base):
    __tablename__ = "bots"

    id = Column(Text, primary_key=True)
    name = Column(Text, nullable=False)
    owner_id = Column(Text, nullable=True, index=True)
    enabled = Column(Boolean, nullable=False, default=False)
    auto_start = Column(Boolean, nullable=False, default=False)
    settings = Column(JSON, nullable=False, default=dict)
    prompt = Column(JSON, nullable=False, default=dict)
    knowledge = Column(JSON, nullable=False, default=dict)
    emails = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    def to_config(self) -> dict:
        """Snapshot of everything a running instance needs."""
        return {
            "id": self.id,
            "name": self.name,
            "owner_id": self.owner_id,
            "enabled": bool(self.enabled),
            "auto_start": bool(self.auto_start),
            "settings": dict(self.settings or {}),
            "prompt": dict(self.prompt or {}),
            "knowledge": dict(self.knowledge or {}),
            "emails": dict(self.emails or {}),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
