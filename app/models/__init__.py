from app.models.bot import Bot

__all__ = ["Bot"]
