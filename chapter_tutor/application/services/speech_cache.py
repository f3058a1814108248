"""Content-addressed cache for synthesized speech."""

from __future__ import annotations

import base64
import binascii
import hashlib
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import structlog

from chapter_tutor.application.collections import CACHED_TTS
from chapter_tutor.application.ports import DocumentStorePort
from chapter_tutor.core.observability.timing import parse_iso, to_iso, utc_now
from chapter_tutor.domain.exceptions import CacheUnavailableError
from chapter_tutor.domain.models import SpeechCacheEntry, SpeechQuality
from chapter_tutor.domain.speech.segmentation import normalize_text

logger = structlog.get_logger(__name__)


def speech_cache_key(text: str, voice_id: str, quality: str) -> str:
    """SHA-256 over normalized text, voice and quality tier."""
    material = "\x1f".join([normalize_text(text), str(voice_id).strip(), str(quality).strip().lower()])
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


class SpeechCache:
    """
    Cache-aside store for speech audio.

    Expired entries are misses even while they still exist physically. Lookups and
    writes are best-effort: read failures degrade to a miss and write failures to a
    no-op. Only the maintenance operations report an unavailable store.
    """

    def __init__(
        self,
        store: DocumentStorePort,
        ttl_days: int = 30,
        enabled: bool = True,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._ttl = timedelta(days=ttl_days)
        self._clock = clock
        self.enabled = enabled

    async def lookup(self, text: str, voice_id: str, quality: SpeechQuality) -> Optional[SpeechCacheEntry]:
        if not self.enabled:
            return None
        key = speech_cache_key(text, voice_id, quality)
        now = self._clock()
        try:
            row = await self._store.find_one(CACHED_TTS, {"textHash": key})
        except Exception as exc:
            logger.warning("speech_cache_lookup_failed", key=key, error=str(exc))
            return None

        if row is None:
            logger.debug("speech_cache_miss", key=key)
            return None

        entry = self._entry_from_row(key, row)
        if entry is None:
            logger.warning("speech_cache_row_invalid", key=key)
            return None
        if entry.expires_at <= now:
            logger.info("speech_cache_expired", key=key, expires_at=to_iso(entry.expires_at))
            return None

        try:
            await self._store.update_one(
                CACHED_TTS,
                {"textHash": key},
                {"$inc": {"hitCount": 1}, "$set": {"lastUsed": to_iso(now)}},
            )
        except Exception as exc:
            logger.warning("speech_cache_hit_update_failed", key=key, error=str(exc))

        logger.info("speech_cache_hit", key=key, hit_count=entry.hit_count + 1, characters=entry.characters)
        return SpeechCacheEntry(
            key=entry.key,
            text=entry.text,
            voice_id=entry.voice_id,
            quality=entry.quality,
            audio=entry.audio,
            characters=entry.characters,
            hit_count=entry.hit_count + 1,
            last_used=now,
            created_at=entry.created_at,
            expires_at=entry.expires_at,
        )

    async def store(
        self,
        text: str,
        voice_id: str,
        quality: SpeechQuality,
        audio: bytes,
        characters: int,
    ) -> None:
        if not self.enabled or not audio:
            return
        key = speech_cache_key(text, voice_id, quality)
        now = self._clock()
        document = {
            "textHash": key,
            "text": normalize_text(text),
            "voiceId": voice_id,
            "quality": quality,
            "audioData": base64.b64encode(audio).decode("ascii"),
            "characters": int(characters),
            "hitCount": 0,
            "lastUsed": to_iso(now),
            "createdAt": to_iso(now),
            "expiresAt": to_iso(now + self._ttl),
        }
        try:
            await self._store.update_one(CACHED_TTS, {"textHash": key}, {"$set": document}, upsert=True)
            logger.info("speech_cache_stored", key=key, characters=characters, voice_id=voice_id, quality=quality)
        except Exception as exc:
            logger.warning("speech_cache_store_failed", key=key, error=str(exc))

    async def sweep_expired(self) -> int:
        """Physically deletes expired entries. Returns the number removed."""
        cutoff = to_iso(self._clock())
        try:
            removed = await self._store.delete_many(CACHED_TTS, {"expiresAt": {"$lte": cutoff}})
        except Exception as exc:
            logger.error("speech_cache_sweep_failed", error=str(exc))
            raise CacheUnavailableError(details=str(exc)) from exc
        logger.info("speech_cache_swept", removed=removed)
        return removed

    async def clear(self) -> int:
        try:
            removed = await self._store.delete_many(CACHED_TTS, {})
        except Exception as exc:
            logger.error("speech_cache_clear_failed", error=str(exc))
            raise CacheUnavailableError(details=str(exc)) from exc
        logger.info("speech_cache_cleared", removed=removed)
        return removed

    @staticmethod
    def _entry_from_row(key: str, row: dict[str, Any]) -> Optional[SpeechCacheEntry]:
        try:
            audio = base64.b64decode(str(row.get("audioData") or ""), validate=True)
        except (binascii.Error, ValueError):
            return None
        expires_at = parse_iso(row.get("expiresAt"))
        created_at = parse_iso(row.get("createdAt"))
        if not audio or expires_at is None:
            return None
        return SpeechCacheEntry(
            key=key,
            text=str(row.get("text") or ""),
            voice_id=str(row.get("voiceId") or ""),
            quality="hd" if row.get("quality") == "hd" else "standard",
            audio=audio,
            characters=int(row.get("characters") or 0),
            hit_count=int(row.get("hitCount") or 0),
            last_used=parse_iso(row.get("lastUsed")) or created_at or expires_at,
            created_at=created_at or expires_at,
            expires_at=expires_at,
        )
