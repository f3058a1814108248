from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass
from typing import Any, AsyncIterator, Union

import structlog

from chapter_tutor.domain.models import TokenUsage, TurnCosts

logger = structlog.get_logger(__name__)


def costs_payload(costs: TurnCosts) -> dict[str, float]:
    return {
        "whisper": round(costs.transcription, 6),
        "claude": round(costs.generation, 6),
        "tts": round(costs.synthesis, 6),
        "total": round(costs.total, 6),
    }


def tokens_payload(tokens: TokenUsage) -> dict[str, int]:
    return {
        "inputTokens": tokens.input_tokens,
        "outputTokens": tokens.output_tokens,
        "cachedInputTokens": tokens.cached_input_tokens,
    }


@dataclass(frozen=True)
class TextEvent:
    data: str
    terminal = False

    def to_payload(self) -> dict[str, Any]:
        return {"type": "text", "data": self.data}


@dataclass(frozen=True)
class AudioEvent:
    audio: bytes
    text: str
    terminal = False

    def to_payload(self) -> dict[str, Any]:
        return {"type": "audio", "data": base64.b64encode(self.audio).decode("ascii"), "text": self.text}


@dataclass(frozen=True)
class CompleteEvent:
    session_id: str
    costs: TurnCosts
    tokens: TokenUsage
    latency_ms: int
    in_scope: bool
    scope_confidence: float
    was_filtered: bool
    terminal = True

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": "complete",
            "sessionId": self.session_id,
            "costs": costs_payload(self.costs),
            "tokens": tokens_payload(self.tokens),
            "latencyMs": self.latency_ms,
            "inScope": self.in_scope,
            "scopeConfidence": self.scope_confidence,
            "wasFiltered": self.was_filtered,
        }


@dataclass(frozen=True)
class ErrorEvent:
    error: str
    code: str = "TUTOR_ERROR"
    terminal = True

    def to_payload(self) -> dict[str, Any]:
        return {"type": "error", "error": self.error, "code": self.code}


TurnEvent = Union[TextEvent, AudioEvent, CompleteEvent, ErrorEvent]

_END = object()


class TurnEventChannel:
    """
    Single-producer, single-consumer channel for one turn.

    Nothing is delivered after a terminal event. `cancel()` is called by the transport
    when the client goes away; the producer polls `cancelled` between suspension points.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self._cancelled = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def emit(self, event: TurnEvent) -> bool:
        if self._closed:
            logger.debug("turn_event_dropped", event_type=event.to_payload()["type"])
            return False
        self._queue.put_nowait(event)
        if event.terminal:
            self.close()
        return True

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_END)

    def cancel(self) -> None:
        self._cancelled = True
        self.close()

    async def __aiter__(self) -> AsyncIterator[TurnEvent]:
        while True:
            item = await self._queue.get()
            if item is _END:
                return
            yield item
