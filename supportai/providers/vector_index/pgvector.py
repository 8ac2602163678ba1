from __future__ import annotations

from typing import Sequence

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from supportai.core.config import EMBED_DIM
from supportai.core.errors import VectorIndexError
from supportai.domain.models import VectorRecord
from supportai.providers.vector_index.base import VectorMatch, VectorRecordIn


class PgVectorIndex:
    """Vector index stored in Postgres through pgvector, namespaced by tenant id."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        if session_factory is None:
            from supportai.persistence.db import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory

    async def upsert(self, namespace: str, records: Sequence[VectorRecordIn]) -> int:
        if not namespace:
            raise VectorIndexError("namespace is required")
        async with self._session_factory() as session:
            try:
                for record in records:
                    if len(record.vector) != EMBED_DIM:
                        raise VectorIndexError("vector dimension mismatch")
                    # merge() gives insert-or-replace semantics on the record id.
                    await session.merge(
                        VectorRecord(
                            id=record.id,
                            namespace=namespace,
                            source_id=str(record.metadata.get("source_id") or ""),
                            text=record.text,
                            embedding=record.vector,
                            metadata_json=dict(record.metadata),
                        )
                    )
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                raise VectorIndexError("pgvector upsert failed") from exc
        return len(records)

    async def query(self, namespace: str, vector: list[float], top_k: int) -> list[VectorMatch]:
        if not namespace:
            raise VectorIndexError("namespace is required")
        top_k = max(1, min(int(top_k), 50))
        # Cosine distance; lower is more similar.
        distance_expr = VectorRecord.embedding.cosine_distance(vector)
        stmt = (
            select(VectorRecord, distance_expr.label("distance"))
            .where(VectorRecord.namespace == namespace)
            .order_by(distance_expr.asc(), VectorRecord.id.asc())
            .limit(top_k)
        )
        async with self._session_factory() as session:
            try:
                rows = (await session.execute(stmt)).all()
            except SQLAlchemyError as exc:
                raise VectorIndexError("pgvector query failed") from exc
        matches: list[VectorMatch] = []
        for record, distance in rows:
            score = max(0.0, min(1.0, 1.0 - float(distance)))
            matches.append(
                VectorMatch(id=record.id, text=record.text, score=score, metadata=record.metadata_json or {})
            )
        return matches

    async def delete_source(self, namespace: str, source_id: str) -> int:
        async with self._session_factory() as session:
            try:
                result = await session.execute(
                    delete(VectorRecord).where(
                        VectorRecord.namespace == namespace,
                        VectorRecord.source_id == source_id,
                    )
                )
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                raise VectorIndexError("pgvector delete failed") from exc
        return int(result.rowcount or 0)

    async def delete_namespace(self, namespace: str) -> int:
        async with self._session_factory() as session:
            try:
                result = await session.execute(delete(VectorRecord).where(VectorRecord.namespace == namespace))
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                raise VectorIndexError("pgvector delete failed") from exc
        return int(result.rowcount or 0)
