from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Optional

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from turnflow.core.errors import MemoryBackendError
from turnflow.memory.base import MemoryProvider, MemoryRecord
from turnflow.utils.time_utils import utc_now

logger = logging.getLogger(__name__)


class RedisMemoryProvider(MemoryProvider):
    """Memory stored on a Redis server, one string key per memory id."""

    name = "redis"

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        client: Optional[Any] = None,
        key_prefix: str = "",
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self._url = url
        self._client = client
        self._owns_client = client is None
        self._key_prefix = key_prefix

    def _key(self, memory_id: str) -> str:
        return f"{self._key_prefix}{memory_id}"

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = aioredis.from_url(self._url, decode_responses=True)
        return self._client

    async def load(self, memory_id: str) -> Optional[MemoryRecord]:
        client = self._get_client()
        key = self._key(memory_id)
        try:
            payload = await client.get(key)
            if payload is None:
                return None
            ttl_seconds = await client.ttl(key)
        except RedisError as exc:
            raise MemoryBackendError("MEMORY_BACKEND_ERROR", "Failed to read memory from Redis.") from exc
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        expires_at = None
        if isinstance(ttl_seconds, int) and ttl_seconds > 0:
            expires_at = utc_now() + timedelta(seconds=ttl_seconds)
        return self._record_from_payload(payload, expires_at)

    async def persist(
        self, memory_id: str, record: MemoryRecord, ttl: Optional[timedelta] = None
    ) -> None:
        client = self._get_client()
        key = self._key(memory_id)
        seconds = max(1, int((ttl or self.ttl).total_seconds()))
        try:
            current = await client.get(key)
            if isinstance(current, bytes):
                current = current.decode("utf-8")
            self._warn_if_changed(memory_id, record, current)
            await client.setex(key, seconds, record.to_json())
        except RedisError as exc:
            raise MemoryBackendError("MEMORY_BACKEND_ERROR", "Failed to write memory to Redis.") from exc

    async def drop(self, memory_id: str) -> None:
        try:
            await self._get_client().delete(self._key(memory_id))
        except RedisError as exc:
            raise MemoryBackendError(
                "MEMORY_BACKEND_ERROR", "Failed to delete memory from Redis."
            ) from exc

    async def close(self) -> None:
        if self._client is None or not self._owns_client:
            return
        client, self._client = self._client, None
        await client.aclose()
