import asyncio

import pytest

from chapter_tutor.application.services.curriculum_cache import CurriculumCache
from tests.fakes import GRAMMAR_CHAPTER_ID, CountingStore, grammar_chapter_document


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _cache(store: CountingStore, clock: _Clock, ttl: float = 3600) -> CurriculumCache:
    return CurriculumCache(store, ttl_seconds=ttl, clock=clock)


def test_two_gets_within_ttl_read_the_store_once() -> None:
    store = CountingStore(seed={"chapters": [grammar_chapter_document()]})
    clock = _Clock()
    cache = _cache(store, clock)

    async def _run():
        first = await cache.get(GRAMMAR_CHAPTER_ID)
        clock.now += 3599
        second = await cache.get(GRAMMAR_CHAPTER_ID)
        return first, second

    first, second = asyncio.run(_run())

    assert first is not None and second is not None
    assert first.title == "Grammar Basics: Parts of Speech"
    assert store.find_calls == 1


def test_expired_entry_is_refreshed_from_the_store() -> None:
    store = CountingStore(seed={"chapters": [grammar_chapter_document()]})
    clock = _Clock()
    cache = _cache(store, clock, ttl=60)

    async def _run():
        await cache.get(GRAMMAR_CHAPTER_ID)
        clock.now += 60
        await cache.get(GRAMMAR_CHAPTER_ID)

    asyncio.run(_run())

    assert store.find_calls == 2


def test_concurrent_misses_share_one_store_read() -> None:
    store = CountingStore(seed={"chapters": [grammar_chapter_document()]})
    cache = _cache(store, _Clock())

    async def _run():
        return await asyncio.gather(*(cache.get(GRAMMAR_CHAPTER_ID) for _ in range(5)))

    chapters = asyncio.run(_run())

    assert all(chapter is not None for chapter in chapters)
    assert store.find_calls == 1


def test_unknown_chapter_is_not_cached() -> None:
    store = CountingStore(seed={"chapters": [grammar_chapter_document()]})
    cache = _cache(store, _Clock())

    async def _run():
        return await cache.get("missing"), await cache.get("missing")

    assert asyncio.run(_run()) == (None, None)
    assert store.find_calls == 2


def test_clear_and_invalidate_force_a_reload() -> None:
    store = CountingStore(seed={"chapters": [grammar_chapter_document()]})
    cache = _cache(store, _Clock())

    async def _run():
        await cache.get(GRAMMAR_CHAPTER_ID)
        cache.invalidate(GRAMMAR_CHAPTER_ID)
        await cache.get(GRAMMAR_CHAPTER_ID)
        evicted = cache.clear()
        await cache.get(GRAMMAR_CHAPTER_ID)
        return evicted

    evicted = asyncio.run(_run())

    assert evicted == 1
    assert store.find_calls == 3


def test_malformed_chapter_document_is_reported_as_missing() -> None:
    document = grammar_chapter_document()
    del document["title"]
    store = CountingStore(seed={"chapters": [document]})
    cache = _cache(store, _Clock())

    assert asyncio.run(cache.get(GRAMMAR_CHAPTER_ID)) is None
    assert len(cache) == 0


def test_store_failures_propagate() -> None:
    store = CountingStore(seed={"chapters": [grammar_chapter_document()]})
    store.failing = True
    cache = _cache(store, _Clock())

    with pytest.raises(ConnectionError):
        asyncio.run(cache.get(GRAMMAR_CHAPTER_ID))
