"""
Document store on a single Supabase table.

Expected schema:

    create table tutor_documents (
        id uuid primary key default gen_random_uuid(),
        collection text not null,
        doc jsonb not null
    );
    create index on tutor_documents (collection);

    create or replace function tutor_jsonb_set_path(target jsonb, path text[], value jsonb)
    returns jsonb language plpgsql immutable as $$
    begin
        if target is null or jsonb_typeof(target) <> 'object' then
            target := '{}'::jsonb;
        end if;
        if array_length(path, 1) = 1 then
            return target || jsonb_build_object(path[1], value);
        end if;
        return target || jsonb_build_object(
            path[1], tutor_jsonb_set_path(target -> path[1], path[2:], value)
        );
    end;
    $$;

    create or replace function tutor_apply_document_update(
        p_table text, p_id uuid, p_set jsonb, p_inc jsonb, p_push jsonb
    ) returns jsonb language plpgsql as $$
    declare
        current_doc jsonb;
        entry record;
        path text[];
        existing jsonb;
    begin
        execute format('select doc from %I where id = $1 for update', p_table)
            into current_doc using p_id;
        if current_doc is null then
            return null;
        end if;
        for entry in select key, value from jsonb_each(coalesce(p_set, '{}')) loop
            current_doc := tutor_jsonb_set_path(current_doc, string_to_array(entry.key, '.'), entry.value);
        end loop;
        for entry in select key, value from jsonb_each(coalesce(p_inc, '{}')) loop
            path := string_to_array(entry.key, '.');
            existing := current_doc #> path;
            current_doc := tutor_jsonb_set_path(current_doc, path, to_jsonb(
                coalesce(case when jsonb_typeof(existing) = 'number' then existing::text::numeric end, 0)
                + entry.value::text::numeric
            ));
        end loop;
        for entry in select key, value from jsonb_each(coalesce(p_push, '{}')) loop
            path := string_to_array(entry.key, '.');
            existing := current_doc #> path;
            if existing is null or jsonb_typeof(existing) <> 'array' then
                existing := '[]'::jsonb;
            end if;
            current_doc := tutor_jsonb_set_path(current_doc, path, existing || entry.value);
        end loop;
        execute format('update %I set doc = $1 where id = $2', p_table) using current_doc, p_id;
        return current_doc;
    end;
    $$;

Simple conditions are pushed down to PostgREST (`doc->>field`) and the final match is
evaluated in Python. Updates to an existing row run inside `tutor_apply_document_update`,
which locks the row, so concurrent `$inc`/`$push` on the same document never lose writes.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from chapter_tutor.core.settings import settings
from chapter_tutor.domain.exceptions import DocumentStoreError
from chapter_tutor.infrastructure.stores.document_updates import (
    apply_update,
    is_operator_condition,
    matches_filter,
    seed_from_filter,
    split_update,
)
from chapter_tutor.infrastructure.supabase.client import SupabaseClientProvider

logger = structlog.get_logger(__name__)

T = TypeVar("T")

ATOMIC_UPDATE_FUNCTION = "tutor_apply_document_update"

_PUSHDOWN_OPERATORS = {"$lt": "lt", "$lte": "lte", "$gt": "gt", "$gte": "gte"}
_TRANSIENT_MARKERS = (
    "readerror",
    "connecterror",
    "remoteprotocolerror",
    "timeouterror",
    "pooltimeout",
    "temporarily unavailable",
    "connection reset",
    "broken pipe",
    "502",
    "503",
    "504",
    "bad gateway",
)


def is_transient_supabase_error(exc: BaseException) -> bool:
    name = exc.__class__.__name__.lower()
    text = str(exc or "").lower()
    return any(marker in name or marker in text for marker in _TRANSIENT_MARKERS)


def _json_column(path: str) -> str:
    parts = path.split(".")
    if len(parts) == 1:
        return f"doc->>{parts[0]}"
    return "doc->" + "->".join(parts[:-1]) + f"->>{parts[-1]}"


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class SupabaseDocumentStore:
    def __init__(
        self,
        table: str = settings.SUPABASE_DOCUMENTS_TABLE,
        max_retries: int = settings.STORE_TRANSIENT_MAX_RETRIES,
        base_delay_seconds: float = settings.STORE_TRANSIENT_BASE_DELAY_SECONDS,
        clients: Optional[SupabaseClientProvider] = None,
    ):
        self._clients = clients or SupabaseClientProvider()
        self._table = table
        self._max_retries = max(0, int(max_retries))
        self._base_delay = max(0.05, float(base_delay_seconds))

    async def find_one(self, collection: str, filters: dict[str, Any]) -> Optional[dict[str, Any]]:
        rows = await self._select(collection, filters)
        return rows[0]["doc"] if rows else None

    async def insert_one(self, collection: str, document: dict[str, Any]) -> None:
        async def _insert(client):
            return await client.table(self._table).insert({"collection": collection, "doc": document}).execute()

        await self._execute("insert_one", collection, _insert)

    async def update_one(
        self,
        collection: str,
        filters: dict[str, Any],
        update: dict[str, Any],
        upsert: bool = False,
    ) -> bool:
        rows = await self._select(collection, filters, limit=1)
        if rows:
            row_id = rows[0]["id"]
            arguments = split_update(update)

            async def _update(client):
                return await client.rpc(
                    ATOMIC_UPDATE_FUNCTION,
                    {
                        "p_table": self._table,
                        "p_id": row_id,
                        "p_set": arguments["set"],
                        "p_inc": arguments["inc"],
                        "p_push": arguments["push"],
                    },
                ).execute()

            response = await self._execute("update_one", collection, _update)
            if response is not None and response.data is not None:
                return True
            # Deleted between the lookup and the update.
            logger.info("supabase_store_update_missed", collection=collection, row_id=row_id)

        if not upsert:
            return False
        await self.insert_one(collection, apply_update(seed_from_filter(filters), update, inserting=True))
        return True

    async def delete_many(self, collection: str, filters: dict[str, Any]) -> int:
        rows = await self._select(collection, filters)
        ids = [row["id"] for row in rows]
        if not ids:
            return 0

        async def _delete(client):
            return await client.table(self._table).delete().in_("id", ids).execute()

        await self._execute("delete_many", collection, _delete)
        return len(ids)

    async def close(self) -> None:
        self._clients.reset()

    async def _select(
        self, collection: str, filters: dict[str, Any], limit: Optional[int] = None
    ) -> list[dict[str, Any]]:
        async def _query(client):
            query = client.table(self._table).select("id, doc").eq("collection", collection)
            for path, condition in (filters or {}).items():
                column = _json_column(path)
                if is_operator_condition(condition):
                    for operator, operand in condition.items():
                        method = _PUSHDOWN_OPERATORS.get(operator)
                        if method and isinstance(operand, str):
                            query = getattr(query, method)(column, operand)
                elif isinstance(condition, (str, int, float, bool)):
                    query = query.eq(column, _as_text(condition))
            return await query.execute()

        response = await self._execute("select", collection, _query)
        rows = response.data if response is not None and isinstance(response.data, list) else []
        matched = [
            row for row in rows if isinstance(row.get("doc"), dict) and matches_filter(row["doc"], filters)
        ]
        return matched[:limit] if limit else matched

    async def _execute(self, operation: str, collection: str, call: Callable[[Any], Awaitable[T]]) -> T:
        def _before_sleep(retry_state) -> None:
            logger.warning(
                "supabase_store_transient_error",
                operation=operation,
                collection=collection,
                attempt=retry_state.attempt_number,
                error=str(retry_state.outcome.exception()),
            )
            self._clients.reset()

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._max_retries + 1),
                wait=wait_exponential(multiplier=self._base_delay, max=3),
                retry=retry_if_exception(is_transient_supabase_error),
                before_sleep=_before_sleep,
                reraise=True,
            ):
                with attempt:
                    client = await self._clients.get()
                    return await call(client)
        except Exception as exc:
            logger.error("supabase_store_failed", operation=operation, collection=collection, error=str(exc))
            raise DocumentStoreError(details=str(exc)) from exc
        raise DocumentStoreError(details=f"{operation} did not run")
