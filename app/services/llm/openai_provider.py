from typing import List, Optional

import httpx

from app.logging_config import get_logger
from app.services.llm.base import LLMProvider, LLMProviderError, LLMResponse

logger = get_logger("llm.openai")


class OpenAIProvider(LLMProvider):
    """Any OpenAI-compatible API (OpenAI, Groq, local gateways)."""

    def __init__(
        self,
        api_key: str,
        default_model: str = "llama-3.3-70b-versatile",
        base_url: str = "https://api.groq.com/openai/v1",
        transcription_model: str = "whisper-large-v3-turbo",
    ):
        if not api_key:
            raise ValueError("api_key is required")
        self.api_key = api_key
        self.default_model = default_model
        self.transcription_model = transcription_model
        root = base_url.rstrip("/")
        self.base_url = f"{root}/chat/completions"
        self.audio_url = f"{root}/audio/transcriptions"

    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        timeout_seconds: Optional[float] = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        model = model or self.default_model

        timeout = timeout_seconds if timeout_seconds is not None else 60.0
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}
        logger.debug(f"LLM request: model={model}, messages_count={len(messages)}")

        with httpx.Client(timeout=timeout) as client:
            response = client.post(
                self.base_url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json=payload,
            )

        logger.debug(f"LLM response status: {response.status_code}")

        if response.status_code != 200:
            logger.error(f"LLM error: {response.text[:500]}")
            raise LLMProviderError(f"LLM API error: {response.status_code}", status_code=response.status_code)

        data = response.json()

        content = ""
        if data.get("choices"):
            message = data["choices"][0].get("message") or {}
            content = message.get("content") or ""
        logger.debug(f"LLM content: {content[:100] if content else 'EMPTY'}")

        return LLMResponse(
            content=content,
            model=data.get("model", model),
            usage=data.get("usage"),
        )

    def transcribe_audio(
        self,
        *,
        audio_bytes: bytes,
        filename: str,
        mime_type: Optional[str] = None,
        model: Optional[str] = None,
        language: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ) -> str:
        model = model or self.transcription_model
        if not audio_bytes:
            raise ValueError("audio_bytes is empty")

        files = {"file": (filename or "audio.ogg", audio_bytes, mime_type or "application/octet-stream")}
        data = {"model": model, "response_format": "text"}
        if language:
            data["language"] = language

        timeout = timeout_seconds if timeout_seconds is not None else 30.0
        with httpx.Client(timeout=timeout) as client:
            response = client.post(
                self.audio_url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                files=files,
                data=data,
            )

        logger.debug(f"Transcription status: {response.status_code}")
        if response.status_code != 200:
            logger.error(f"Transcription error: {response.text[:500]}")
            raise LLMProviderError(
                f"Transcription API error: {response.status_code}", status_code=response.status_code
            )

        transcript = (response.text or "").strip()
        if not transcript:
            logger.warning("Transcription returned empty text")
        return transcript
