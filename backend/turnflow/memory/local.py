from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from turnflow.memory.base import MemoryProvider, MemoryRecord
from turnflow.utils.time_utils import utc_now


@dataclass
class _Entry:
    payload: str
    expires_at: datetime


class LocalMemoryStore:
    """Process-local TTL map shared by local memory providers."""

    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[tuple[str, datetime]]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= utc_now():
                del self._entries[key]
                return None
            return entry.payload, entry.expires_at

    async def set(self, key: str, payload: str, ttl: timedelta) -> None:
        async with self._lock:
            now = utc_now()
            self._drop_expired(now)
            self._entries[key] = _Entry(payload=payload, expires_at=now + ttl)

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._entries.pop(key, None) is not None

    async def clear_expired(self) -> int:
        """Remove expired entries and return how many were dropped."""

        async with self._lock:
            return self._drop_expired(utc_now())

    def _drop_expired(self, now: datetime) -> int:
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)


class LocalMemoryProvider(MemoryProvider):
    """Memory kept in process; lost on restart."""

    name = "local"

    def __init__(self, store: Optional[LocalMemoryStore] = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self.store = store if store is not None else LocalMemoryStore()

    async def load(self, memory_id: str) -> Optional[MemoryRecord]:
        found = await self.store.get(memory_id)
        if found is None:
            return None
        payload, expires_at = found
        return self._record_from_payload(payload, expires_at)

    async def persist(
        self, memory_id: str, record: MemoryRecord, ttl: Optional[timedelta] = None
    ) -> None:
        await self.store.set(memory_id, record.to_json(), ttl or self.ttl)

    async def drop(self, memory_id: str) -> None:
        await self.store.delete(memory_id)
