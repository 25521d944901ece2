"""
Record storage used by job handlers.

Records are plain dicts keyed by ``id`` within a named table.
"""

import asyncio
import copy
from functools import lru_cache
from typing import Any, Dict, Optional, Protocol

from supabase import Client, create_client

from journalq.config import AppConfig, config as default_config
from journalq.utils.logging import get_logger

logger = get_logger("storage")


class StorageError(Exception):
    """Raised when the storage client cannot be initialized."""
    pass


class Storage(Protocol):
    async def get(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        ...

    async def upsert(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """Insert or merge ``record`` (must carry ``id``). Returns the stored row."""
        ...


@lru_cache(maxsize=4)
def get_supabase_admin_client(url: Optional[str], service_key: Optional[str]) -> Client:
    """
    Supabase client with the service role key.

    Background workers have no user context, so they use the admin client.
    This client bypasses Row Level Security.
    """
    if not url:
        raise StorageError(
            "SUPABASE_URL is not configured. "
            "Set it in your .env file or environment variables."
        )

    if not service_key:
        raise StorageError(
            "SUPABASE_SERVICE_KEY is not configured. "
            "Set it in your .env file or environment variables."
        )

    return create_client(url, service_key)


class SupabaseStorage:
    """Storage backed by Supabase tables."""

    def __init__(self, client: Optional[Client] = None, settings: Optional[AppConfig] = None):
        self._client = client
        self.settings = settings or default_config

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = get_supabase_admin_client(
                self.settings.SUPABASE_URL,
                self.settings.SUPABASE_SERVICE_KEY,
            )
        return self._client

    async def get(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        def query():
            return (
                self.client.table(table)
                .select("*")
                .eq("id", record_id)
                .limit(1)
                .execute()
            )

        # supabase-py is synchronous; keep it off the event loop
        result = await asyncio.to_thread(query)
        return result.data[0] if result.data else None

    async def upsert(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        if "id" not in record:
            raise ValueError("record must include 'id'")

        def query():
            return self.client.table(table).upsert(record).execute()

        result = await asyncio.to_thread(query)
        logger.debug("Record upserted", table=table, id=record["id"])
        return result.data[0] if result.data else record


class InMemoryStorage:
    """Dict-backed storage for development and tests."""

    def __init__(self):
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    async def get(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        row = self.tables.get(table, {}).get(record_id)
        return copy.deepcopy(row) if row is not None else None

    async def upsert(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        if "id" not in record:
            raise ValueError("record must include 'id'")

        async with self._lock:
            rows = self.tables.setdefault(table, {})
            merged = {**rows.get(record["id"], {}), **copy.deepcopy(record)}
            rows[record["id"]] = merged
            return copy.deepcopy(merged)


def build_storage(settings: Optional[AppConfig] = None) -> Storage:
    """Supabase when configured, otherwise process-local storage."""
    settings = settings or default_config
    if settings.supabase_configured:
        return SupabaseStorage(settings=settings)

    logger.warning("Supabase not configured - handler results kept in memory only")
    return InMemoryStorage()
