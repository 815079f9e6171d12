"""Durable sandbox session expiry backed by aiosqlite.

The container label written at creation cannot change afterwards, so every
idle-timeout reset is recorded here. A restarted process reads the latest
expiry instead of the stale creation label.
"""

import time
from pathlib import Path

import aiosqlite
import structlog

logger = structlog.get_logger(__name__)


class SandboxSessionStore:
    """Async SQLite store of sandbox session expiry times.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    async def init(self) -> None:
        """Create the sandbox_sessions table if it does not exist."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS sandbox_sessions (
                    session_id TEXT PRIMARY KEY,
                    expires_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                )
            """)
            await db.commit()
        logger.info("sandbox_session_store_initialized", db_path=self.db_path)

    async def set_expiry(self, session_id: str, expires_at: float) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO sandbox_sessions (session_id, expires_at, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(session_id) DO UPDATE SET
                    expires_at = excluded.expires_at,
                    updated_at = excluded.updated_at
                """,
                (session_id, expires_at, time.time()),
            )
            await db.commit()

    async def get_expiry(self, session_id: str) -> float | None:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "SELECT expires_at FROM sandbox_sessions WHERE session_id = ?",
                (session_id,),
            )
            row = await cursor.fetchone()
        return row[0] if row else None

    async def delete(self, session_id: str) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "DELETE FROM sandbox_sessions WHERE session_id = ?", (session_id,)
            )
            await db.commit()
