import asyncio
import copy
from dataclasses import dataclass, field
from typing import Any

import pytest

from chapter_tutor.application.services.speech_cache import SpeechCache
from chapter_tutor.domain.exceptions import DocumentStoreError
from chapter_tutor.infrastructure.stores.document_updates import apply_update
from chapter_tutor.infrastructure.supabase.document_store import SupabaseDocumentStore, is_transient_supabase_error


@dataclass
class _Response:
    data: Any


@dataclass
class _FakeTable:
    """Minimal PostgREST builder: applies row-level filters, records doc pushdowns."""

    rows: list[dict[str, Any]]
    log: list[tuple]
    failures: list[Exception]
    op: str = "select"
    payload: Any = None
    row_filters: list = field(default_factory=list)

    def select(self, _columns):
        self.op = "select"
        return self

    def insert(self, payload):
        self.op, self.payload = "insert", payload
        return self

    def update(self, payload):
        self.op, self.payload = "update", payload
        return self

    def delete(self):
        self.op = "delete"
        return self

    def eq(self, column, value):
        if column.startswith("doc"):
            self.log.append(("eq", column, value))
        else:
            self.row_filters.append(lambda row: row[column] == value)
        return self

    def in_(self, column, values):
        self.row_filters.append(lambda row: row[column] in values)
        return self

    def lte(self, column, value):
        self.log.append(("lte", column, value))
        return self

    lt = gt = gte = lte

    async def execute(self):
        await asyncio.sleep(0)
        if self.failures:
            raise self.failures.pop(0)
        matched = [row for row in self.rows if all(check(row) for check in self.row_filters)]
        if self.op == "insert":
            self.rows.append({"id": f"row-{len(self.rows) + 1}", **copy.deepcopy(self.payload)})
            return _Response(data=[])
        if self.op == "update":
            for row in matched:
                row.update(copy.deepcopy(self.payload))
            return _Response(data=matched)
        if self.op == "delete":
            for row in matched:
                self.rows.remove(row)
            return _Response(data=matched)
        return _Response(data=copy.deepcopy(matched))


@dataclass
class _FakeRpc:
    """Applies the update function's arguments in one step, like the row-locked SQL function."""

    rows: list[dict[str, Any]]
    log: list[tuple]
    name: str
    params: dict[str, Any]

    async def execute(self):
        await asyncio.sleep(0)
        self.log.append(("rpc", self.name, self.params["p_table"]))
        row = next((r for r in self.rows if r["id"] == self.params["p_id"]), None)
        if row is None:
            return _Response(data=None)
        update = {
            "$set": self.params["p_set"],
            "$inc": self.params["p_inc"],
            "$push": {path: {"$each": items} for path, items in self.params["p_push"].items()},
        }
        row["doc"] = apply_update(row["doc"], update)
        return _Response(data=copy.deepcopy(row["doc"]))


@dataclass
class _FakeClient:
    rows: list[dict[str, Any]] = field(default_factory=list)
    log: list[tuple] = field(default_factory=list)
    failures: list[Exception] = field(default_factory=list)

    def table(self, _name):
        return _FakeTable(rows=self.rows, log=self.log, failures=self.failures)

    def rpc(self, name, params):
        return _FakeRpc(rows=self.rows, log=self.log, name=name, params=params)


@dataclass
class _FakeProvider:
    client: _FakeClient
    resets: int = 0

    async def get(self):
        return self.client

    def reset(self) -> None:
        self.resets += 1


def _store(client: _FakeClient, provider: _FakeProvider | None = None) -> SupabaseDocumentStore:
    return SupabaseDocumentStore(
        table="tutor_documents",
        max_retries=2,
        base_delay_seconds=0.01,
        clients=provider or _FakeProvider(client),
    )


def test_documents_round_trip_through_the_jsonb_column() -> None:
    client = _FakeClient()
    store = _store(client)

    async def _run():
        await store.insert_one("sessions", {"sessionId": "s1", "userId": "u1", "metrics": {"turns": 0}})
        await store.insert_one("chapters", {"chapterId": "c1"})
        updated = await store.update_one("sessions", {"sessionId": "s1"}, {"$inc": {"metrics.turns": 1}})
        return updated, await store.find_one("sessions", {"sessionId": "s1"})

    updated, row = asyncio.run(_run())

    assert updated is True
    assert row["metrics"]["turns"] == 1
    assert ("eq", "doc->>sessionId", "s1") in client.log
    assert [r["collection"] for r in client.rows] == ["sessions", "chapters"]


def test_range_filters_are_pushed_down_and_rechecked() -> None:
    client = _FakeClient(
        rows=[
            {"id": "a", "collection": "cached_tts_responses", "doc": {"expiresAt": "2026-01-01T00:00:00.000000+00:00"}},
            {"id": "b", "collection": "cached_tts_responses", "doc": {"expiresAt": "2026-12-01T00:00:00.000000+00:00"}},
        ]
    )
    store = _store(client)

    removed = asyncio.run(
        store.delete_many("cached_tts_responses", {"expiresAt": {"$lte": "2026-06-01T00:00:00.000000+00:00"}})
    )

    assert removed == 1
    assert [row["id"] for row in client.rows] == ["b"]
    assert ("lte", "doc->>expiresAt", "2026-06-01T00:00:00.000000+00:00") in client.log


def test_upsert_seeds_from_equality_filters() -> None:
    client = _FakeClient()
    store = _store(client)

    asyncio.run(
        store.update_one(
            "chapter_progress",
            {"userId": "u1", "chapterId": "c1"},
            {"$inc": {"questionsAsked": 1}, "$setOnInsert": {"startedAt": "t0"}},
            upsert=True,
        )
    )

    assert client.rows[0]["doc"] == {"userId": "u1", "chapterId": "c1", "questionsAsked": 1, "startedAt": "t0"}


def test_transient_errors_are_retried_with_a_fresh_client() -> None:
    client = _FakeClient(failures=[RuntimeError("httpx.ReadError: connection reset by peer")])
    provider = _FakeProvider(client)
    store = _store(client, provider)

    asyncio.run(store.insert_one("sessions", {"sessionId": "s1"}))

    assert provider.resets == 1
    assert len(client.rows) == 1


def test_concurrent_increments_on_one_document_are_all_applied() -> None:
    client = _FakeClient()
    store = _store(client)

    async def _run():
        await store.insert_one("chapter_progress", {"userId": "u1", "chapterId": "c1", "questionsAsked": 0})
        await asyncio.gather(
            *[
                store.update_one(
                    "chapter_progress",
                    {"userId": "u1", "chapterId": "c1"},
                    {"$inc": {"questionsAsked": 1}, "$push": {"log": {"$each": [index]}}},
                )
                for index in range(5)
            ]
        )
        return await store.find_one("chapter_progress", {"userId": "u1"})

    row = asyncio.run(_run())

    assert row["questionsAsked"] == 5
    assert sorted(row["log"]) == [0, 1, 2, 3, 4]
    assert ("rpc", "tutor_apply_document_update", "tutor_documents") in client.log


def test_concurrent_speech_cache_hits_are_all_counted() -> None:
    client = _FakeClient()
    cache = SpeechCache(_store(client), ttl_days=30)

    async def _run():
        await cache.store("Great question!", "alloy", "standard", b"mp3-bytes", 15)
        hits = await asyncio.gather(*[cache.lookup("Great question!", "alloy", "standard") for _ in range(5)])
        return hits, await cache.lookup("Great question!", "alloy", "standard")

    hits, last = asyncio.run(_run())

    assert all(hit is not None for hit in hits)
    assert last.hit_count == 6
    assert client.rows[0]["doc"]["hitCount"] == 6


def test_update_of_a_row_deleted_meanwhile_reports_no_match() -> None:
    client = _FakeClient()
    store = _store(client)

    async def _run():
        await store.insert_one("sessions", {"sessionId": "s1"})
        original_rpc = client.rpc

        def _rpc_after_delete(name, params):
            client.rows.clear()
            return original_rpc(name, params)

        client.rpc = _rpc_after_delete
        return await store.update_one("sessions", {"sessionId": "s1"}, {"$inc": {"metrics.turns": 1}})

    assert asyncio.run(_run()) is False


def test_permanent_errors_surface_as_store_errors() -> None:
    client = _FakeClient(failures=[RuntimeError("permission denied for table tutor_documents")])
    provider = _FakeProvider(client)
    store = _store(client, provider)

    with pytest.raises(DocumentStoreError):
        asyncio.run(store.find_one("chapters", {"chapterId": "c1"}))
    assert provider.resets == 0


def test_transient_classification() -> None:
    assert is_transient_supabase_error(RuntimeError("502 Bad Gateway"))
    assert not is_transient_supabase_error(ValueError("invalid input syntax for type uuid"))
