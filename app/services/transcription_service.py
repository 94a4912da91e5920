import asyncio
import time
from typing import Optional

from app.logging_config import get_logger
from app.services.llm.base import LLMProvider

logger = get_logger("transcription_service")

MIME_EXTENSIONS = {
    "audio/ogg": "ogg",
    "audio/mpeg": "mp3",
    "audio/mp4": "m4a",
    "audio/aac": "aac",
    "audio/wav": "wav",
    "audio/webm": "webm",
}


class TranscriptionError(Exception):
    """Speech-to-text failed or produced nothing."""


def filename_for_mime(mime_type: Optional[str]) -> str:
    base = (mime_type or "").split(";", 1)[0].strip().lower()
    return f"voice.{MIME_EXTENSIONS.get(base, 'ogg')}"


class Transcriber:
    """Speech-to-text through the provider's audio endpoint."""

    def __init__(
        self,
        provider: Optional[LLMProvider],
        *,
        model: Optional[str] = None,
        timeout_seconds: float = 30.0,
    ):
        self.provider = provider
        self.model = model
        self.timeout_seconds = timeout_seconds

    async def transcribe(
        self,
        audio_bytes: bytes,
        language_hint: Optional[str] = "fr",
        mime_type: Optional[str] = None,
    ) -> str:
        if self.provider is None:
            raise TranscriptionError("transcription provider is not configured")
        if not audio_bytes:
            raise TranscriptionError("empty audio payload")

        started = time.monotonic()
        try:
            text = await asyncio.wait_for(
                asyncio.to_thread(
                    self.provider.transcribe_audio,
                    audio_bytes=audio_bytes,
                    filename=filename_for_mime(mime_type),
                    mime_type=mime_type,
                    model=self.model,
                    language=language_hint or None,
                    timeout_seconds=self.timeout_seconds,
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise TranscriptionError(f"transcription timed out after {self.timeout_seconds}s") from exc
        except TranscriptionError:
            raise
        except Exception as exc:
            raise TranscriptionError(str(exc)) from exc

        logger.info(
            "Timing",
            extra={
                "context": {
                    "stage": "transcription_ms",
                    "elapsed_ms": round((time.monotonic() - started) * 1000, 2),
                    "audio_bytes": len(audio_bytes),
                    "chars": len(text or ""),
                }
            },
        )
        return (text or "").strip()
