from __future__ import annotations

import time
from typing import Callable, Optional

import structlog
from pydantic import ValidationError

from chapter_tutor.application.collections import CHAPTERS
from chapter_tutor.application.ports import DocumentStorePort
from chapter_tutor.application.services.keyed_locks import KeyedLocks
from chapter_tutor.domain.models import Chapter

logger = structlog.get_logger(__name__)


class CurriculumCache:
    """
    TTL-bound in-memory cache of chapter documents in front of the document store.

    Concurrent misses for the same chapter share a single store read. Store failures
    propagate; a stored document that fails validation is reported as not found.
    """

    def __init__(
        self,
        store: DocumentStorePort,
        ttl_seconds: float = 3600,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, Chapter]] = {}
        self._locks = KeyedLocks()

    async def get(self, chapter_id: str) -> Optional[Chapter]:
        cached = self._fresh(chapter_id)
        if cached is not None:
            return cached

        async with self._locks.hold(chapter_id):
            cached = self._fresh(chapter_id)
            if cached is not None:
                return cached

            document = await self._store.find_one(CHAPTERS, {"chapterId": chapter_id})
            if document is None:
                logger.info("chapter_cache_miss_not_found", chapter_id=chapter_id)
                return None
            try:
                chapter = Chapter.model_validate(document)
            except ValidationError as exc:
                logger.error("chapter_document_invalid", chapter_id=chapter_id, errors=exc.errors())
                return None

            self._entries[chapter_id] = (self._clock(), chapter)
            logger.info("chapter_cache_filled", chapter_id=chapter_id, token_count=chapter.token_count)
            return chapter

    def invalidate(self, chapter_id: str) -> None:
        self._entries.pop(chapter_id, None)

    def clear(self) -> int:
        evicted = len(self._entries)
        self._entries.clear()
        logger.info("chapter_cache_cleared", evicted=evicted)
        return evicted

    def __len__(self) -> int:
        return len(self._entries)

    def _fresh(self, chapter_id: str) -> Optional[Chapter]:
        row = self._entries.get(chapter_id)
        if row is None:
            return None
        captured_at, chapter = row
        if self._clock() - captured_at >= self._ttl_seconds:
            self._entries.pop(chapter_id, None)
            return None
        return chapter
