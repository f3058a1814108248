from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional
from uuid import uuid4

import structlog

from chapter_tutor.application.collections import CHAPTER_PROGRESS, SESSIONS
from chapter_tutor.application.ports import DocumentStorePort
from chapter_tutor.core.observability.timing import to_iso, utc_now
from chapter_tutor.domain.models import ConversationTurn, TurnUsage

logger = structlog.get_logger(__name__)

HISTORY_WINDOW = 20


@dataclass(frozen=True)
class SessionSnapshot:
    session_id: str
    history: tuple[ConversationTurn, ...]
    consecutive_off_topic: int
    off_topic_attempts: int
    created: bool


def _new_session_document(session_id: str, user_id: str, chapter_id: str, subject: str | None, now: str) -> dict[str, Any]:
    return {
        "sessionId": session_id,
        "userId": user_id,
        "chapterId": chapter_id,
        "subject": subject,
        "startTime": now,
        "messages": [],
        "offTopicAttempts": 0,
        "consecutiveOffTopic": 0,
        "costs": {"whisperCost": 0.0, "claudeCost": 0.0, "ttsCost": 0.0, "totalCost": 0.0},
        "tokens": {
            "inputTokens": 0,
            "outputTokens": 0,
            "cachedInputTokens": 0,
            "cacheCreationTokens": 0,
        },
        "tts": {"charactersGenerated": 0, "cacheHits": 0, "cacheMisses": 0},
        "audio": {"totalAudioMinutes": 0.0},
        "metrics": {"turns": 0, "totalLatencyMs": 0},
        "createdAt": now,
        "updatedAt": now,
    }


def usage_increments(usage: TurnUsage) -> dict[str, float | int]:
    """Additive session counters for one turn's usage, keyed by dotted document path."""
    return {
        "costs.whisperCost": usage.costs.transcription,
        "costs.claudeCost": usage.costs.generation,
        "costs.ttsCost": usage.costs.synthesis,
        "costs.totalCost": usage.costs.total,
        "tokens.inputTokens": usage.tokens.input_tokens,
        "tokens.outputTokens": usage.tokens.output_tokens,
        "tokens.cachedInputTokens": usage.tokens.cached_input_tokens,
        "tokens.cacheCreationTokens": usage.tokens.cache_creation_tokens,
        "tts.charactersGenerated": usage.synthesis_characters,
        "tts.cacheHits": usage.synthesis_cache_hits,
        "tts.cacheMisses": usage.synthesis_cache_misses,
        "audio.totalAudioMinutes": usage.audio_seconds / 60,
    }


class SessionService:
    """Session and chapter-progress bookkeeping. All counters are updated additively."""

    def __init__(self, store: DocumentStorePort, clock: Callable = utc_now):
        self._store = store
        self._clock = clock

    async def open_session(
        self,
        user_id: str,
        chapter_id: str,
        session_id: Optional[str] = None,
        subject: Optional[str] = None,
    ) -> SessionSnapshot:
        if session_id:
            row = await self._store.find_one(SESSIONS, {"sessionId": session_id})
            if row is not None and str(row.get("userId")) == str(user_id):
                return self._snapshot(row)
            logger.warning(
                "session_not_resumable",
                requested_session_id=session_id,
                found=row is not None,
            )

        new_id = str(uuid4())
        now = to_iso(self._clock())
        await self._store.insert_one(
            SESSIONS, _new_session_document(new_id, user_id, chapter_id, subject, now)
        )
        logger.info("session_created", session_id=new_id, chapter_id=chapter_id)
        return SessionSnapshot(
            session_id=new_id,
            history=(),
            consecutive_off_topic=0,
            off_topic_attempts=0,
            created=True,
        )

    async def record_turn(
        self,
        session_id: str,
        messages: list[dict[str, Any]],
        usage: TurnUsage,
        *,
        off_topic: bool,
        consecutive_off_topic: int,
        latency_ms: int,
    ) -> None:
        increments = usage_increments(usage)
        increments["offTopicAttempts"] = 1 if off_topic else 0
        increments["metrics.turns"] = 1
        increments["metrics.totalLatencyMs"] = int(latency_ms)
        await self._store.update_one(
            SESSIONS,
            {"sessionId": session_id},
            {
                "$push": {"messages": {"$each": messages}},
                "$inc": increments,
                "$set": {
                    "consecutiveOffTopic": consecutive_off_topic,
                    "updatedAt": to_iso(self._clock()),
                },
            },
        )

    async def record_usage(self, session_id: str, usage: TurnUsage) -> None:
        """Flushes costs already incurred by a turn that did not finish."""
        if usage.is_empty:
            return
        await self._store.update_one(
            SESSIONS,
            {"sessionId": session_id},
            {"$inc": usage_increments(usage), "$set": {"updatedAt": to_iso(self._clock())}},
        )

    async def record_progress(self, user_id: str, chapter_id: str) -> None:
        now = to_iso(self._clock())
        await self._store.update_one(
            CHAPTER_PROGRESS,
            {"userId": user_id, "chapterId": chapter_id},
            {
                "$inc": {"questionsAsked": 1},
                "$set": {"status": "in_progress", "lastAccessedAt": now},
                "$setOnInsert": {"startedAt": now},
            },
            upsert=True,
        )

    @staticmethod
    def _snapshot(row: dict[str, Any]) -> SessionSnapshot:
        history = tuple(
            ConversationTurn(role=m["role"], content=str(m.get("content") or ""))
            for m in (row.get("messages") or [])[-HISTORY_WINDOW:]
            if isinstance(m, dict) and m.get("role") in {"user", "assistant"}
        )
        return SessionSnapshot(
            session_id=str(row["sessionId"]),
            history=history,
            consecutive_off_topic=int(row.get("consecutiveOffTopic") or 0),
            off_topic_attempts=int(row.get("offTopicAttempts") or 0),
            created=False,
        )
