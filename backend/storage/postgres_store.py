# storage/postgres_store.py
# ============================================================================
# TLANGAU SERVER - POSTGRES LEDGER STORE
# ============================================================================
# asyncpg-backed implementation of the ledger store contract. All
# collections share one JSONB `documents` table keyed by
# (collection, key). Conditional writes and counters are single SQL
# statements so they stay atomic across server processes.
# ============================================================================

import json
import os
import re
from contextlib import asynccontextmanager
from typing import Any, Dict, Iterable, List, Optional, Tuple

import asyncpg
import structlog

from storage.ledger_store import ILedgerStore, field_candidates, normalize_record

logger = structlog.get_logger().bind(component="database")


# ============================================================================
# CONFIGURATION
# ============================================================================

class DatabaseConfig:
    """Database configuration from environment"""

    DATABASE_URL = os.getenv("DATABASE_URL")
    MIN_POOL_SIZE = int(os.getenv("DB_MIN_POOL_SIZE", "2"))
    MAX_POOL_SIZE = int(os.getenv("DB_MAX_POOL_SIZE", "10"))


config = DatabaseConfig()


# ============================================================================
# CONNECTION POOL
# ============================================================================

async def _init_connection(conn: asyncpg.Connection):
    await conn.set_type_codec(
        "jsonb",
        encoder=json.dumps,
        decoder=json.loads,
        schema="pg_catalog",
    )


class Database:
    """Async database connection pool manager"""

    _pool: Optional[asyncpg.Pool] = None
    _initialized: bool = False

    @classmethod
    async def initialize(cls, dsn: Optional[str] = None):
        """Initialize the connection pool"""
        if cls._initialized:
            return

        try:
            cls._pool = await asyncpg.create_pool(
                dsn or config.DATABASE_URL,
                min_size=config.MIN_POOL_SIZE,
                max_size=config.MAX_POOL_SIZE,
                init=_init_connection,
            )
            cls._initialized = True
            logger.info("database_pool_initialized")

            await cls._run_migrations()

        except Exception as e:
            logger.error("database_init_failed", error=str(e))
            raise

    @classmethod
    async def close(cls):
        """Close the connection pool"""
        if cls._pool:
            await cls._pool.close()
            cls._pool = None
            cls._initialized = False
            logger.info("database_pool_closed")

    @classmethod
    @asynccontextmanager
    async def acquire(cls):
        """Acquire a connection from the pool"""
        if not cls._pool:
            await cls.initialize()

        async with cls._pool.acquire() as conn:
            yield conn

    @classmethod
    async def execute(cls, query: str, *args) -> str:
        async with cls.acquire() as conn:
            return await conn.execute(query, *args)

    @classmethod
    async def fetch_one(cls, query: str, *args) -> Optional[asyncpg.Record]:
        async with cls.acquire() as conn:
            return await conn.fetchrow(query, *args)

    @classmethod
    async def fetch_all(cls, query: str, *args) -> List[asyncpg.Record]:
        async with cls.acquire() as conn:
            return await conn.fetch(query, *args)

    @classmethod
    async def _run_migrations(cls):
        """Create the documents table and the lookup indexes"""
        migrations = [
            """
            CREATE TABLE IF NOT EXISTS documents (
                collection VARCHAR(64) NOT NULL,
                key TEXT NOT NULL,
                data JSONB NOT NULL DEFAULT '{}',
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW(),
                PRIMARY KEY (collection, key)
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_documents_email ON documents (collection, (data->>'email'))",
            "CREATE INDEX IF NOT EXISTS idx_documents_status ON documents (collection, (data->>'status'))",
            "CREATE INDEX IF NOT EXISTS idx_documents_payment_request ON documents (collection, (data->>'payment_request_id'))",
            "CREATE INDEX IF NOT EXISTS idx_documents_order ON documents (collection, (data->>'order_id'))",
            "CREATE INDEX IF NOT EXISTS idx_documents_used_by_account ON documents (collection, (data->>'used_by_account'))",
        ]

        async with cls.acquire() as conn:
            for migration in migrations:
                try:
                    await conn.execute(migration)
                except asyncpg.PostgresError as e:
                    if "already exists" not in str(e):
                        logger.warning("migration_warning", error=str(e))
                        raise

        logger.info("database_migrations_complete")


# ============================================================================
# STORE
# ============================================================================

_FIELD_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _field_expr(field: str) -> str:
    """SQL text for a JSONB field lookup, covering legacy spellings."""
    names = field_candidates(field)
    for name in names:
        if not _FIELD_NAME.match(name):
            raise ValueError(f"Invalid field name: {name!r}")
    parts = [f"data->>'{name}'" for name in names]
    return parts[0] if len(parts) == 1 else f"COALESCE({', '.join(parts)})"


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class PostgresLedgerStore(ILedgerStore):
    """Ledger store on the shared asyncpg pool."""

    def __init__(self, database=Database):
        self._db = database

    async def put(self, collection: str, key: str, value: Dict[str, Any]) -> None:
        await self._db.execute(
            """
            INSERT INTO documents (collection, key, data)
            VALUES ($1, $2, $3)
            ON CONFLICT (collection, key)
            DO UPDATE SET data = EXCLUDED.data, updated_at = NOW()
            """,
            collection, key, value,
        )

    async def put_if_absent(self, collection: str, key: str, value: Dict[str, Any]) -> bool:
        row = await self._db.fetch_one(
            """
            INSERT INTO documents (collection, key, data)
            VALUES ($1, $2, $3)
            ON CONFLICT (collection, key) DO NOTHING
            RETURNING key
            """,
            collection, key, value,
        )
        return row is not None

    async def patch(self, collection: str, key: str, partial: Dict[str, Any]) -> None:
        await self._db.execute(
            """
            INSERT INTO documents (collection, key, data)
            VALUES ($1, $2, $3)
            ON CONFLICT (collection, key)
            DO UPDATE SET data = documents.data || EXCLUDED.data, updated_at = NOW()
            """,
            collection, key, partial,
        )

    async def compare_and_patch(
        self,
        collection: str,
        key: str,
        expected: Dict[str, Any],
        partial: Dict[str, Any],
        unless: Optional[Dict[str, Any]] = None,
    ) -> bool:
        args: List[Any] = [collection, key, partial, expected]
        guards = ""
        for field, value in (unless or {}).items():
            args.append({field: value})
            guards += f" AND NOT (data @> ${len(args)})"

        row = await self._db.fetch_one(
            f"""
            UPDATE documents
            SET data = data || $3, updated_at = NOW()
            WHERE collection = $1 AND key = $2 AND data @> $4{guards}
            RETURNING key
            """,
            *args,
        )
        return row is not None

    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        row = await self._db.fetch_one(
            "SELECT data FROM documents WHERE collection = $1 AND key = $2",
            collection, key,
        )
        return normalize_record(row["data"]) if row else None

    async def find_one_by(self, collection: str, field: str, value: Any) -> Optional[Dict[str, Any]]:
        row = await self._db.fetch_one(
            f"""
            SELECT data FROM documents
            WHERE collection = $1 AND {_field_expr(field)} = $2
            ORDER BY key
            LIMIT 1
            """,
            collection, _as_text(value),
        )
        return normalize_record(row["data"]) if row else None

    async def find_all_by(self, collection: str, field: str, value: Any) -> List[Dict[str, Any]]:
        rows = await self._db.fetch_all(
            f"""
            SELECT data FROM documents
            WHERE collection = $1 AND {_field_expr(field)} = $2
            ORDER BY key
            """,
            collection, _as_text(value),
        )
        return [normalize_record(row["data"]) for row in rows]

    async def all(self, collection: str) -> List[Dict[str, Any]]:
        rows = await self._db.fetch_all(
            "SELECT data FROM documents WHERE collection = $1 ORDER BY key",
            collection,
        )
        return [normalize_record(row["data"]) for row in rows]

    async def delete(self, collection: str, key: str) -> bool:
        row = await self._db.fetch_one(
            "DELETE FROM documents WHERE collection = $1 AND key = $2 RETURNING key",
            collection, key,
        )
        return row is not None

    async def bulk_delete_paths(self, paths: Iterable[Tuple[str, str]]) -> int:
        grouped: Dict[str, List[str]] = {}
        for collection, key in paths:
            grouped.setdefault(collection, []).append(key)
        if not grouped:
            return 0

        removed = 0
        async with self._db.acquire() as conn:
            async with conn.transaction():
                for collection, keys in grouped.items():
                    rows = await conn.fetch(
                        """
                        DELETE FROM documents
                        WHERE collection = $1 AND key = ANY($2::text[])
                        RETURNING key
                        """,
                        collection, keys,
                    )
                    removed += len(rows)
        return removed

    async def increment(
        self, collection: str, key: str, field: str, delta: int = 1, create: bool = True
    ) -> Optional[int]:
        if not create:
            row = await self._db.fetch_one(
                """
                UPDATE documents
                SET data = jsonb_set(
                        data,
                        ARRAY[$3::text],
                        to_jsonb(COALESCE((data->>$3::text)::bigint, 0) + $4::bigint)
                    ),
                    updated_at = NOW()
                WHERE collection = $1 AND key = $2
                RETURNING (data->>$3::text)::bigint AS value
                """,
                collection, key, field, delta,
            )
            return int(row["value"]) if row else None

        row = await self._db.fetch_one(
            """
            INSERT INTO documents (collection, key, data)
            VALUES ($1, $2, jsonb_build_object($3::text, $4::bigint))
            ON CONFLICT (collection, key) DO UPDATE
            SET data = jsonb_set(
                    documents.data,
                    ARRAY[$3::text],
                    to_jsonb(COALESCE((documents.data->>$3::text)::bigint, 0) + $4::bigint)
                ),
                updated_at = NOW()
            RETURNING (data->>$3::text)::bigint AS value
            """,
            collection, key, field, delta,
        )
        return int(row["value"])

    async def close(self) -> None:
        await self._db.close()
