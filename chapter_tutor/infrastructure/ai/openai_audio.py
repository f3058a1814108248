"""OpenAI speech-to-text and text-to-speech adapters."""

from __future__ import annotations

from typing import Optional

import structlog
from openai import AsyncOpenAI

from chapter_tutor.core.settings import settings
from chapter_tutor.domain.exceptions import SynthesisFailedError, TranscriptionFailedError
from chapter_tutor.domain.models import SpeechQuality, Transcription

logger = structlog.get_logger(__name__)

_shared_client: Optional[AsyncOpenAI] = None


def get_openai_client() -> AsyncOpenAI:
    global _shared_client
    if _shared_client is None:
        if not settings.OPENAI_API_KEY:
            raise ValueError("OPENAI_API_KEY must be set to use OpenAI audio backends.")
        _shared_client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY, max_retries=0)
    return _shared_client


class OpenAITranscriber:
    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        model: str = settings.WHISPER_MODEL,
        language: str = settings.WHISPER_LANGUAGE,
    ):
        self._client = client
        self._model = model
        self._language = language

    async def transcribe(self, audio: bytes, filename: str) -> Transcription:
        try:
            client = self._client or get_openai_client()
            response = await client.audio.transcriptions.create(
                model=self._model,
                file=(filename or "audio.webm", audio),
                language=self._language,
                response_format="verbose_json",
            )
        except Exception as exc:
            logger.error("whisper_transcription_failed", model=self._model, error=str(exc))
            raise TranscriptionFailedError(details=str(exc)) from exc

        duration = float(getattr(response, "duration", 0.0) or 0.0)
        text = str(getattr(response, "text", "") or "").strip()
        logger.info("whisper_transcription_done", duration_seconds=duration, characters=len(text))
        return Transcription(text=text, duration_seconds=duration, language=getattr(response, "language", None))


class OpenAISpeechBackend:
    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        standard_model: str = settings.TTS_MODEL_STANDARD,
        hd_model: str = settings.TTS_MODEL_HD,
        speed: float = settings.TTS_SPEED,
    ):
        self._client = client
        self._models = {"standard": standard_model, "hd": hd_model}
        self._speed = speed

    async def synthesize(self, text: str, voice_id: str, quality: SpeechQuality) -> bytes:
        model = self._models.get(quality, self._models["standard"])
        try:
            client = self._client or get_openai_client()
            response = await client.audio.speech.create(
                model=model,
                voice=voice_id,
                input=text,
                speed=self._speed,
                response_format="mp3",
            )
        except Exception as exc:
            logger.error("tts_backend_failed", model=model, voice_id=voice_id, error=str(exc))
            raise SynthesisFailedError(details=str(exc)) from exc
        return response.content
