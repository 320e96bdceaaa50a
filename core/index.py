"""Hot tier: the relational metadata index.

Each category has one narrow table keyed by the envelope id. Writes go through
``upsert`` only, which is a single ``INSERT ... ON CONFLICT (id) DO UPDATE``
plus tag maintenance inside one transaction. Re-applying an identical record
matches no row in the ``DO UPDATE ... WHERE`` clause, so the stored row
(``updated_at`` included) is left untouched.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

import asyncpg

from core.categories import CATEGORIES, CategoryConfig, get_category
from core.envelope import IndexRecord
from core.errors import ConflictError, DependencyError, RejectedRecordError

logger = logging.getLogger(__name__)

# Client-side argument encoding errors subclass both InterfaceError and
# ValueError, so _REJECTED must be matched before _UNAVAILABLE.
_REJECTED = (
    asyncpg.DataError,
    asyncpg.IntegrityConstraintViolationError,
    ValueError,
)

_UNAVAILABLE = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.InterfaceError,
    asyncpg.PostgresConnectionError,
    asyncpg.InsufficientResourcesError,
    asyncpg.OperatorInterventionError,
    asyncpg.TransactionRollbackError,
)

# Anything else the server reports is treated as an outage too.
_INDEX_FAILURE = (*_UNAVAILABLE, asyncpg.PostgresError)


def build_upsert_sql(config: CategoryConfig) -> str:
    cols = config.columns
    placeholders = ", ".join(f"${i}" for i in range(1, len(cols) + 1))
    mutable = [c for c in cols if c != "id"]
    assignments = ", ".join(f"{c} = EXCLUDED.{c}" for c in mutable)
    current = ", ".join(f"t.{c}" for c in mutable)
    incoming = ", ".join(f"EXCLUDED.{c}" for c in mutable)
    return (
        f"INSERT INTO {config.table} AS t ({', '.join(cols)}) VALUES ({placeholders}) "
        f"ON CONFLICT (id) DO UPDATE SET {assignments}, updated_at = CURRENT_TIMESTAMP "
        f"WHERE ({current}) IS DISTINCT FROM ({incoming}) "
        f"RETURNING id"
    )


class MetadataIndex:
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool
        self._sql = {name: build_upsert_sql(cfg) for name, cfg in CATEGORIES.items()}

    @classmethod
    async def connect(cls, dsn: str, *, min_size: int = 1, max_size: int = 10) -> MetadataIndex:
        try:
            pool = await asyncpg.create_pool(dsn=dsn, min_size=min_size, max_size=max_size)
        except _INDEX_FAILURE as exc:
            raise DependencyError(f"Metadata index unavailable: {exc}") from exc
        logger.info("Connected to metadata index")
        return cls(pool)

    async def close(self) -> None:
        await self.pool.close()
        logger.info("Disconnected from metadata index")

    async def upsert(self, record: IndexRecord) -> bool:
        """
        Insert or update the row for ``record``.

        Returns:
            True if a row was inserted or changed, False for a no-op.

        Raises:
            ConflictError: a secondary UNIQUE constraint (slug) rejected the row.
            RejectedRecordError: a value the table cannot store; retrying will not help.
            DependencyError: the database could not be reached or failed.
        """
        config = record.category
        row = record.row()
        args = [row[c] for c in config.columns]
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    changed = await conn.fetchval(self._sql[config.name], *args)
                    if config.tags:
                        await self._sync_tags(conn, config, record.id, record.tags)
        except asyncpg.UniqueViolationError as exc:
            constraint = exc.constraint_name or "unique"
            raise ConflictError(constraint, f"{config.table}: {exc.detail or exc}") from exc
        except _REJECTED as exc:
            raise RejectedRecordError(f"{config.table} rejected {record.id}: {exc}") from exc
        except _INDEX_FAILURE as exc:
            raise DependencyError(f"Metadata index write failed for {record.id}: {exc}") from exc
        return changed is not None

    async def _sync_tags(self, conn, config: CategoryConfig, item_id: str, tags: list[str]) -> None:
        if tags:
            await conn.execute(
                "INSERT INTO tags (name) SELECT unnest($1::text[]) ON CONFLICT (name) DO NOTHING",
                tags,
            )
        await conn.execute(
            f"""
            DELETE FROM {config.tag_table} jt
            USING tags tg
            WHERE jt.item_id = $1 AND jt.tag_id = tg.id AND NOT (tg.name = ANY($2::text[]))
            """,
            item_id,
            tags,
        )
        if tags:
            await conn.execute(
                f"""
                INSERT INTO {config.tag_table} (item_id, tag_id)
                SELECT $1, id FROM tags WHERE name = ANY($2::text[])
                ON CONFLICT DO NOTHING
                """,
                item_id,
                tags,
            )

    async def exists(self, category: str, item_id: str) -> bool:
        config = get_category(category)
        try:
            async with self.pool.acquire() as conn:
                found = await conn.fetchval(f"SELECT 1 FROM {config.table} WHERE id = $1", item_id)
        except _INDEX_FAILURE as exc:
            raise DependencyError(f"Metadata index lookup failed: {exc}") from exc
        return found is not None

    async def get(self, category: str, item_id: str) -> dict[str, Any] | None:
        config = get_category(category)
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(f"SELECT * FROM {config.table} WHERE id = $1", item_id)
                if row is None:
                    return None
                out = dict(row)
                if config.tags:
                    out["tags"] = [
                        r["name"]
                        for r in await conn.fetch(
                            f"""
                            SELECT tg.name FROM {config.tag_table} jt
                            JOIN tags tg ON tg.id = jt.tag_id
                            WHERE jt.item_id = $1
                            ORDER BY tg.name
                            """,
                            item_id,
                        )
                    ]
        except _INDEX_FAILURE as exc:
            raise DependencyError(f"Metadata index lookup failed: {exc}") from exc
        return out

    async def count(self, category: str) -> int:
        config = get_category(category)
        try:
            async with self.pool.acquire() as conn:
                return int(await conn.fetchval(f"SELECT COUNT(*) FROM {config.table}"))
        except _INDEX_FAILURE as exc:
            raise DependencyError(f"Metadata index count failed: {exc}") from exc

    async def counts(self) -> dict[str, int]:
        return {name: await self.count(name) for name in CATEGORIES}

    async def truncate(self, category: str | None = None) -> None:
        """Drop index rows so they can be rebuilt from the blob store."""
        configs = [get_category(category)] if category else list(CATEGORIES.values())
        tables = [c.table for c in configs]
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(f"TRUNCATE {', '.join(tables)} CASCADE")
        except _INDEX_FAILURE as exc:
            raise DependencyError(f"Metadata index truncate failed: {exc}") from exc
        logger.info(f"Truncated index tables: {', '.join(tables)}")


__all__ = ["MetadataIndex", "build_upsert_sql"]
