# agrimarket/database/database.py
import asyncpg
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional
from ..config import Config

class Database:
    """Owns the asyncpg pool and the schema migrations"""

    def __init__(self, dsn: Optional[str] = None):
        self.dsn = dsn or Config.DATABASE_URL
        self.pool: Optional[asyncpg.Pool] = None
        self.logger = logging.getLogger(__name__)

    async def connect(self):
        """Open the pool and bring the schema up to date"""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=Config.DB_POOL_MIN_SIZE,
                max_size=Config.DB_POOL_MAX_SIZE,
                init=self._init_connection
            )

            await self._run_migrations()

            self.logger.info("Database connection established")
        except Exception as e:
            self.logger.error(f"Failed to connect to database: {e}")
            raise

    async def close(self):
        """Close the pool"""
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("Database connection closed")

    @asynccontextmanager
    async def connection(self, conn: Optional[asyncpg.Connection] = None):
        """Yield ``conn`` if given, otherwise a pooled connection"""
        if conn is not None:
            yield conn
            return

        async with self.pool.acquire() as new_conn:
            yield new_conn

    @asynccontextmanager
    async def transaction(self, conn: Optional[asyncpg.Connection] = None):
        """Yield a connection inside a transaction.

        When ``conn`` is given the block joins the caller's transaction as a
        savepoint, so primitives can be enlisted in a larger atomic write.
        """
        if conn is not None:
            async with conn.transaction():
                yield conn
            return

        async with self.pool.acquire() as new_conn:
            async with new_conn.transaction():
                yield new_conn

    async def _run_migrations(self):
        """Apply pending migrations"""
        try:
            migrations_path = Path(__file__).parent / "migrations"

            async with self.pool.acquire() as conn:
                await conn.execute("""
                    CREATE TABLE IF NOT EXISTS migrations (
                        id SERIAL PRIMARY KEY,
                        name VARCHAR(255) NOT NULL,
                        applied_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
                    )
                """)

                for migration_file in sorted(migrations_path.glob("*.sql")):
                    migration_name = migration_file.name

                    is_applied = await conn.fetchval(
                        "SELECT COUNT(*) FROM migrations WHERE name = $1",
                        migration_name
                    )

                    if not is_applied:
                        async with conn.transaction():
                            await conn.execute(migration_file.read_text())
                            await conn.execute(
                                "INSERT INTO migrations (name) VALUES ($1)",
                                migration_name
                            )

                        self.logger.info(f"Migration {migration_name} applied")

        except Exception as e:
            self.logger.error(f"Failed to run migrations: {e}")
            raise

    @staticmethod
    async def _init_connection(conn):
        """Decode JSONB columns to Python objects"""
        await conn.set_type_codec(
            "jsonb",
            encoder=json.dumps,
            decoder=json.loads,
            schema="pg_catalog"
        )
