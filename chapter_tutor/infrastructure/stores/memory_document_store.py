from __future__ import annotations

import asyncio
import copy
from typing import Any, Optional

import structlog

from chapter_tutor.infrastructure.stores.document_updates import apply_update, matches_filter, seed_from_filter

logger = structlog.get_logger(__name__)


class InMemoryDocumentStore:
    """Process-local document store for development and tests."""

    def __init__(self, seed: Optional[dict[str, list[dict[str, Any]]]] = None):
        self._lock = asyncio.Lock()
        self._collections: dict[str, list[dict[str, Any]]] = {
            name: [copy.deepcopy(doc) for doc in docs] for name, docs in (seed or {}).items()
        }

    async def find_one(self, collection: str, filters: dict[str, Any]) -> Optional[dict[str, Any]]:
        async with self._lock:
            for document in self._collections.get(collection, []):
                if matches_filter(document, filters):
                    return copy.deepcopy(document)
        return None

    async def insert_one(self, collection: str, document: dict[str, Any]) -> None:
        async with self._lock:
            self._collections.setdefault(collection, []).append(copy.deepcopy(document))

    async def update_one(
        self,
        collection: str,
        filters: dict[str, Any],
        update: dict[str, Any],
        upsert: bool = False,
    ) -> bool:
        async with self._lock:
            documents = self._collections.setdefault(collection, [])
            for index, document in enumerate(documents):
                if matches_filter(document, filters):
                    documents[index] = apply_update(document, update)
                    return True
            if not upsert:
                return False
            documents.append(apply_update(seed_from_filter(filters), update, inserting=True))
            return True

    async def delete_many(self, collection: str, filters: dict[str, Any]) -> int:
        async with self._lock:
            documents = self._collections.get(collection, [])
            kept = [doc for doc in documents if not matches_filter(doc, filters)]
            removed = len(documents) - len(kept)
            self._collections[collection] = kept
        if removed:
            logger.debug("memory_store_deleted", collection=collection, removed=removed)
        return removed

    async def count(self, collection: str, filters: Optional[dict[str, Any]] = None) -> int:
        async with self._lock:
            return sum(1 for doc in self._collections.get(collection, []) if matches_filter(doc, filters or {}))

    async def close(self) -> None:
        return None
