from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncIterator, Protocol

from chapter_tutor.domain.models import ConversationTurn, SpeechQuality, TokenUsage, Transcription


@dataclass(frozen=True)
class LanguageModelRequest:
    system_instruction: str
    history: tuple[ConversationTurn, ...]
    question: str
    cache_system: bool = True


@dataclass(frozen=True)
class LanguageModelCompletion:
    text: str
    usage: TokenUsage


@dataclass(frozen=True)
class LanguageModelChunk:
    text: str = ""
    usage: TokenUsage | None = None


class DocumentStorePort(Protocol):
    async def find_one(self, collection: str, filters: dict[str, Any]) -> dict[str, Any] | None:
        ...

    async def insert_one(self, collection: str, document: dict[str, Any]) -> None:
        ...

    async def update_one(
        self,
        collection: str,
        filters: dict[str, Any],
        update: dict[str, Any],
        upsert: bool = False,
    ) -> bool:
        ...

    async def delete_many(self, collection: str, filters: dict[str, Any]) -> int:
        ...


class TranscriptionPort(Protocol):
    async def transcribe(self, audio: bytes, filename: str) -> Transcription:
        ...


class LanguageModelPort(Protocol):
    async def complete(self, request: LanguageModelRequest) -> LanguageModelCompletion:
        ...

    def stream(self, request: LanguageModelRequest) -> AsyncIterator[LanguageModelChunk]:
        ...


class SpeechBackendPort(Protocol):
    async def synthesize(self, text: str, voice_id: str, quality: SpeechQuality) -> bytes:
        ...
