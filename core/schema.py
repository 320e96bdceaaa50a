"""Schema management for the metadata index.

Applies the ordered SQL files under ``db/`` and optionally creates the target
database first. Every statement is idempotent (``IF NOT EXISTS``) so the
schema can be re-applied before a full re-index.
"""
from __future__ import annotations

import logging
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

import asyncpg

logger = logging.getLogger(__name__)


def get_schema_dir() -> Path:
    """Path to the ``db/`` schema directory."""
    return Path(__file__).parent.parent / "db"


def get_schema_files() -> list[Path]:
    """Sorted list of schema SQL files."""
    schema_dir = get_schema_dir()
    if not schema_dir.exists():
        raise FileNotFoundError(f"Schema directory not found: {schema_dir}")
    files = sorted(schema_dir.glob("*.sql"))
    if not files:
        raise FileNotFoundError(f"No schema files found in {schema_dir}")
    return files


def database_name(dsn: str) -> str:
    path = urlsplit(dsn).path.lstrip("/")
    if not path:
        raise ValueError(f"DSN has no database name: {dsn}")
    return path


def get_admin_dsn(dsn: str) -> str:
    """Same server and credentials, pointed at the ``postgres`` database."""
    parts = urlsplit(dsn)
    return urlunsplit((parts.scheme, parts.netloc, "/postgres", parts.query, parts.fragment))


async def create_database(db_name: str, admin_dsn: str) -> bool:
    """
    Create ``db_name`` if missing.

    Returns:
        True when the database was created, False when it already existed.
    """
    conn = await asyncpg.connect(admin_dsn)
    try:
        exists = await conn.fetchval("SELECT 1 FROM pg_database WHERE datname = $1", db_name)
        if exists:
            return False
        # DDL cannot take parameters; quote the identifier instead
        quoted = '"' + db_name.replace('"', '""') + '"'
        await conn.execute(f"CREATE DATABASE {quoted}")
        logger.info(f"Created database: {db_name}")
        return True
    finally:
        await conn.close()


async def apply_schema(dsn: str) -> int:
    """Apply all schema files to the database behind ``dsn``; returns the file count."""
    schema_files = get_schema_files()
    conn = await asyncpg.connect(dsn)
    try:
        for sql_file in schema_files:
            logger.info(f"Applying {sql_file.name}...")
            try:
                await conn.execute(sql_file.read_text())
            except Exception as e:
                logger.error(f"Error applying {sql_file.name}: {e}")
                raise
        logger.info(f"Applied {len(schema_files)} schema files")
        return len(schema_files)
    finally:
        await conn.close()


async def init_database(dsn: str, *, create: bool = False) -> int:
    if create:
        await create_database(database_name(dsn), get_admin_dsn(dsn))
    return await apply_schema(dsn)


__all__ = [
    "apply_schema",
    "create_database",
    "database_name",
    "get_admin_dsn",
    "get_schema_dir",
    "get_schema_files",
    "init_database",
]
