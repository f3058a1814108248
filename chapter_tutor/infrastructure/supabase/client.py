import asyncio
from typing import Optional

import structlog
from supabase import AsyncClient, create_async_client

from chapter_tutor.core.settings import settings

logger = structlog.get_logger(__name__)


class SupabaseClientProvider:
    """
    Lazily creates one async Supabase client and hands it out until it is reset.
    Concurrent first calls share a single connection attempt.
    """

    def __init__(self, url: Optional[str] = None, key: Optional[str] = None):
        self._url = url or settings.SUPABASE_URL
        self._key = key or settings.SUPABASE_SERVICE_KEY
        self._client: Optional[AsyncClient] = None
        self._lock = asyncio.Lock()

    async def get(self) -> AsyncClient:
        if self._client is not None:
            return self._client
        async with self._lock:
            if self._client is None:
                if not self._url or not self._key:
                    raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set to use the supabase store.")
                self._client = await create_async_client(self._url, self._key)
                logger.info("supabase_client_created")
        return self._client

    def reset(self) -> None:
        """Drops the client so the next call reconnects. Used after transport errors."""
        if self._client is not None:
            logger.info("supabase_client_reset")
        self._client = None
