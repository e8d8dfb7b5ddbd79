"""
PostgreSQL persistence layer for broker sessions.
"""

import json
from typing import Optional

import asyncpg

from shared.logging import get_logger, mask_key
from shared.errors import ServiceError
from .base import SessionRepository
from ..cookies import CookieJar
from ..sessions.models import Session


class PostgresSessionRepository(SessionRepository):
    """PostgreSQL persistence layer for upstream sessions."""

    def __init__(self, dsn: str):
        self.dsn = dsn
        self.logger = get_logger("broker.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Start the persistence layer."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=2,
                max_size=10,
                command_timeout=30
            )

            await self._create_tables()

            self.logger.info("PostgreSQL persistence started")

        except Exception as e:
            self.logger.error("Failed to start PostgreSQL persistence", error=str(e))
            raise ServiceError("Failed to start PostgreSQL persistence", details={"error": str(e)})

    async def stop(self):
        """Stop the persistence layer."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL persistence stopped")

    async def _create_tables(self):
        """Create database tables."""
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS upstream_sessions (
                    session_key VARCHAR(64) PRIMARY KEY,
                    owner_user_id VARCHAR(255) NOT NULL,
                    upstream_token VARCHAR(255) NOT NULL,
                    cookies JSONB NOT NULL DEFAULT '[]',
                    display_name VARCHAR(100),
                    avatar_url VARCHAR(500),
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    expires_at TIMESTAMP WITH TIME ZONE NOT NULL
                );
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_upstream_sessions_owner ON upstream_sessions(owner_user_id);
            """)

    async def fetch(self, session_key: str) -> Optional[Session]:
        """Load a session row."""
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow("""
                    SELECT * FROM upstream_sessions WHERE session_key = $1
                """, session_key)

                if not row:
                    return None

                return self._row_to_session(row)

        except Exception as e:
            self.logger.error("Error loading session", session_key=mask_key(session_key), error=str(e))
            return None

    async def upsert(self, session: Session) -> bool:
        """Insert or replace a session row."""
        try:
            async with self.pool.acquire() as conn:
                await conn.execute("""
                    INSERT INTO upstream_sessions (
                        session_key, owner_user_id, upstream_token, cookies,
                        display_name, avatar_url, created_at, expires_at
                    ) VALUES ($1, $2, $3, $4::jsonb, $5, $6, $7, $8)
                    -- display_name, avatar_url and created_at keep the existing row's values
                    ON CONFLICT (session_key) DO UPDATE SET
                        owner_user_id = EXCLUDED.owner_user_id,
                        upstream_token = EXCLUDED.upstream_token,
                        cookies = EXCLUDED.cookies,
                        expires_at = EXCLUDED.expires_at
                """,
                    session.session_key, session.owner_user_id, session.upstream_token,
                    json.dumps(session.cookie_jar.to_records()), session.display_name,
                    session.avatar_url, session.created_at, session.expires_at
                )

                self.logger.info(
                    "Session saved",
                    session_key=mask_key(session.session_key),
                    owner_user_id=session.owner_user_id
                )
                return True

        except Exception as e:
            self.logger.error("Error saving session", session_key=mask_key(session.session_key), error=str(e))
            return False

    async def delete(self, session_key: str) -> bool:
        """Delete a session row."""
        try:
            async with self.pool.acquire() as conn:
                result = await conn.execute("""
                    DELETE FROM upstream_sessions WHERE session_key = $1
                """, session_key)

                if result == "DELETE 1":
                    self.logger.info("Session deleted", session_key=mask_key(session_key))
                    return True
                else:
                    self.logger.warning("Session not found for deletion", session_key=mask_key(session_key))
                    return False

        except Exception as e:
            self.logger.error("Error deleting session", session_key=mask_key(session_key), error=str(e))
            return False

    async def update_display_info(self, session_key: str, display_name: str, avatar_url: str) -> bool:
        """Patch display metadata."""
        try:
            async with self.pool.acquire() as conn:
                result = await conn.execute("""
                    UPDATE upstream_sessions SET display_name = $2, avatar_url = $3
                    WHERE session_key = $1
                """, session_key, display_name, avatar_url)
                return result == "UPDATE 1"

        except Exception as e:
            self.logger.error("Error updating session display info", session_key=mask_key(session_key), error=str(e))
            return False

    def _row_to_session(self, row) -> Session:
        """Convert database row to Session object."""
        cookies = row['cookies']
        if isinstance(cookies, str):
            cookies = json.loads(cookies)

        return Session(
            session_key=row['session_key'],
            owner_user_id=row['owner_user_id'],
            upstream_token=row['upstream_token'],
            cookie_jar=CookieJar.from_records(cookies),
            created_at=row['created_at'],
            expires_at=row['expires_at'],
            display_name=row['display_name'],
            avatar_url=row['avatar_url']
        )

    async def health_check(self) -> bool:
        """Check database health."""
        if self.pool is None:
            return False
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception:
            return False
