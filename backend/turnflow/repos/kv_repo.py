from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from turnflow.db.models import KVEntry
from turnflow.utils.time_utils import as_utc, utc_now


class KVRepo:
    """Repository for key/value entries."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def get(self, key: str, now: Optional[datetime] = None) -> Optional[KVEntry]:
        """Return a live entry; expired entries read as missing."""

        entry = await self._db.get(KVEntry, key)
        if entry is None:
            return None
        if entry.expires_at is not None and as_utc(entry.expires_at) <= (now or utc_now()):
            return None
        return entry

    async def put(
        self,
        *,
        key: str,
        value: str,
        expires_at: Optional[datetime],
        description: Optional[str] = None,
    ) -> KVEntry:
        """Insert or overwrite an entry."""

        entry = await self._db.get(KVEntry, key)
        if entry is None:
            entry = KVEntry(
                key=key,
                value=value,
                description=description,
                expires_at=expires_at,
                updated_at=utc_now(),
            )
            self._db.add(entry)
        else:
            entry.value = value
            entry.description = description
            entry.expires_at = expires_at
        await self._db.flush()
        return entry

    async def delete(self, key: str) -> bool:
        """Delete an entry; return whether one existed."""

        result = await self._db.execute(delete(KVEntry).where(KVEntry.key == key))
        return bool(result.rowcount)

    async def list_keys(self, prefix: str = "") -> list[str]:
        stmt = select(KVEntry.key).order_by(KVEntry.key)
        if prefix:
            stmt = stmt.where(KVEntry.key.startswith(prefix))
        result = await self._db.execute(stmt)
        return list(result.scalars())
