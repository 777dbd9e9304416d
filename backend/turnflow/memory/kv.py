from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from turnflow.core.errors import MemoryBackendError
from turnflow.memory.base import MemoryProvider, MemoryRecord
from turnflow.repos.kv_repo import KVRepo
from turnflow.utils.time_utils import as_utc, utc_now

logger = logging.getLogger(__name__)


class KVMemoryProvider(MemoryProvider):
    """Memory stored as entries of the SQL key/value table."""

    name = "kv"

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        key_prefix: str = "memory:",
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self._sessionmaker = sessionmaker
        self._key_prefix = key_prefix

    def _key(self, memory_id: str) -> str:
        return f"{self._key_prefix}{memory_id}"

    async def load(self, memory_id: str) -> Optional[MemoryRecord]:
        try:
            async with self._sessionmaker() as db:
                entry = await KVRepo(db).get(self._key(memory_id))
        except SQLAlchemyError as exc:
            raise MemoryBackendError("MEMORY_BACKEND_ERROR", "Failed to read memory entry.") from exc
        if entry is None:
            return None
        expires_at = as_utc(entry.expires_at) if entry.expires_at else None
        return self._record_from_payload(entry.value, expires_at)

    async def persist(
        self, memory_id: str, record: MemoryRecord, ttl: Optional[timedelta] = None
    ) -> None:
        key = self._key(memory_id)
        try:
            async with self._sessionmaker() as db:
                async with db.begin():
                    repo = KVRepo(db)
                    current = await repo.get(key)
                    self._warn_if_changed(memory_id, record, current.value if current else None)
                    await repo.put(
                        key=key,
                        value=record.to_json(),
                        expires_at=utc_now() + (ttl or self.ttl),
                        description=f"Conversation memory {memory_id}",
                    )
        except SQLAlchemyError as exc:
            raise MemoryBackendError("MEMORY_BACKEND_ERROR", "Failed to write memory entry.") from exc

    async def drop(self, memory_id: str) -> None:
        try:
            async with self._sessionmaker() as db:
                async with db.begin():
                    deleted = await KVRepo(db).delete(self._key(memory_id))
        except SQLAlchemyError as exc:
            raise MemoryBackendError(
                "MEMORY_BACKEND_ERROR", "Failed to delete memory entry."
            ) from exc
        if deleted:
            logger.debug("Dropped memory %s", memory_id)
