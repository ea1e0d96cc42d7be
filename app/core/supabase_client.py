import asyncio
import logging
import uuid
from typing import List, Optional

import httpx
from postgrest.exceptions import APIError
from supabase import AsyncClient, acreate_client

from app.core.config import settings
from app.core.exceptions import ConflictError, NotFoundError, TransientStoreError
from app.core.store import (
    ChangeEvent,
    ChangeFeed,
    EventHandler,
    Filters,
    Order,
    Row,
    RowStore,
    StatusHandler,
)

logger = logging.getLogger(__name__)

# Postgres SQLSTATE for a unique index violation.
UNIQUE_VIOLATION = "23505"

_client: Optional[AsyncClient] = None


async def get_supabase() -> AsyncClient:
    global _client
    if _client is None:
        _client = await acreate_client(settings.supabase_url, settings.supabase_key)
    return _client


def _is_many(value) -> bool:
    return isinstance(value, (list, tuple, set, frozenset))


def _or_clause(filters: Filters) -> str:
    parts = [f"{column}.eq.{value}" for column, value in filters.items()]
    if len(parts) == 1:
        return parts[0]
    return f"and({','.join(parts)})"


class SupabaseRowStore(RowStore):
    """Row CRUD over PostgREST through the async supabase client."""

    def __init__(self, client: AsyncClient):
        self.client = client

    def _filtered(self, query, filters: Optional[Filters], any_of=None):
        for column, value in (filters or {}).items():
            if _is_many(value):
                query = query.in_(column, list(value))
            else:
                query = query.eq(column, value)
        if any_of:
            query = query.or_(",".join(_or_clause(f) for f in any_of))
        return query

    async def _execute(self, query, action: str, table: str):
        try:
            return await query.execute()
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                logger.warning(f"store_conflict action={action} table={table} error={e.message}")
                raise ConflictError(f"Row already exists in {table}.") from e
            logger.error(f"store_error action={action} table={table} error={e}")
            raise TransientStoreError(f"Database error while running {action} on {table}.") from e
        except httpx.HTTPError as e:
            logger.error(f"store_error action={action} table={table} error={e}")
            raise TransientStoreError(f"Database error while running {action} on {table}.") from e

    async def insert(self, table: str, row: Row) -> Row:
        response = await self._execute(
            self.client.table(table).insert(row), "insert", table
        )
        return response.data[0]

    async def insert_many(self, table: str, rows: List[Row]) -> List[Row]:
        response = await self._execute(
            self.client.table(table).insert(rows), "insert", table
        )
        return response.data

    async def get(self, table: str, key: Filters) -> Optional[Row]:
        rows = await self.list(table, filters=key, limit=1)
        return rows[0] if rows else None

    async def update(self, table: str, key: Filters, patch: Row) -> Row:
        query = self._filtered(self.client.table(table).update(patch), key)
        response = await self._execute(query, "update", table)
        if not response.data:
            raise NotFoundError(f"No row in {table} matches {key}.")
        return response.data[0]

    async def delete(self, table: str, key: Filters) -> None:
        query = self._filtered(self.client.table(table).delete(), key)
        await self._execute(query, "delete", table)

    async def list(
        self,
        table: str,
        filters: Optional[Filters] = None,
        any_of=None,
        order: Optional[Order] = None,
        limit: Optional[int] = None,
    ) -> List[Row]:
        query = self._filtered(self.client.table(table).select("*"), filters, any_of)
        for column, descending in order or []:
            query = query.order(column, desc=descending)
        if limit is not None:
            query = query.limit(limit)
        response = await self._execute(query, "select", table)
        return response.data or []


class SupabaseChangeFeed(ChangeFeed):
    """Realtime ``postgres_changes`` channels, one channel per subscription."""

    def __init__(self, client: AsyncClient, schema: str = "public"):
        self.client = client
        self.schema = schema
        self._tasks = set()

    async def subscribe(
        self,
        table: str,
        filter: str,
        on_event: EventHandler,
        on_status: Optional[StatusHandler] = None,
    ):
        channel = self.client.channel(f"{table}-changes-{uuid.uuid4().hex[:8]}")

        # Realtime invokes callbacks synchronously; handlers are coroutines.
        def dispatch(payload):
            event = ChangeEvent.from_realtime(table, payload)
            task = asyncio.create_task(on_event(event))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        def report(state, error=None):
            value = str(getattr(state, "value", state))
            if error:
                logger.warning(f"realtime_status table={table} status={value} error={error}")
            else:
                logger.info(f"realtime_status table={table} status={value}")
            if on_status:
                on_status(value)

        channel.on_postgres_changes(
            "*", schema=self.schema, table=table, filter=filter, callback=dispatch
        )
        try:
            await channel.subscribe(report)
        except Exception as e:
            raise TransientStoreError(f"Could not subscribe to {table} changes.") from e
        return channel

    async def unsubscribe(self, handle) -> None:
        try:
            await self.client.remove_channel(handle)
        except Exception as e:
            raise TransientStoreError("Could not close realtime channel.") from e
