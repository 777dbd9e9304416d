from __future__ import annotations

from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from turnflow.db.models import VectorEntry
from turnflow.utils.time_utils import utc_now


class VectorRepo:
    """Repository for embedded segments."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def upsert(
        self,
        *,
        entry_id: str,
        collection: str,
        text: str,
        metadata_json: str,
        dim: int,
        vector_json: str,
        vector_norm: float,
    ) -> VectorEntry:
        """Insert or update one embedded segment."""

        existing = await self._get(collection, entry_id)
        if existing:
            existing.text = text
            existing.metadata_json = metadata_json
            existing.dim = dim
            existing.vector_json = vector_json
            existing.vector_norm = vector_norm
            await self._db.flush()
            return existing

        entry = VectorEntry(
            id=entry_id,
            collection=collection,
            text=text,
            metadata_json=metadata_json,
            dim=dim,
            vector_json=vector_json,
            vector_norm=vector_norm,
            created_at=utc_now(),
        )
        self._db.add(entry)
        await self._db.flush()
        return entry

    async def list_vectors(self, collection: str, dim: int) -> list[VectorEntry]:
        """List entries of one collection with a matching dimension."""

        result = await self._db.execute(
            select(VectorEntry)
            .where(VectorEntry.collection == collection, VectorEntry.dim == dim)
            .order_by(VectorEntry.created_at)
        )
        return list(result.scalars())

    async def clear(self, collection: str) -> int:
        result = await self._db.execute(
            delete(VectorEntry).where(VectorEntry.collection == collection)
        )
        return int(result.rowcount or 0)

    async def _get(self, collection: str, entry_id: str) -> Optional[VectorEntry]:
        result = await self._db.execute(
            select(VectorEntry).where(
                VectorEntry.collection == collection, VectorEntry.id == entry_id
            )
        )
        return result.scalar_one_or_none()
