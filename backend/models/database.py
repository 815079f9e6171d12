"""SQLite-based project conversation persistence using aiosqlite.

This module provides the ProjectStore class that keeps each project's
conversation: the user's instructions and the terminal record that closes
every workflow run, with its fragment (sandbox URL, title, files).

Tables:
    messages: One row per user instruction or terminal record. Terminal
        records carry the run_id that produced them (unique), which makes
        the write idempotent under retries.
    fragments: Artifact bundle for RESULT records.

Unlike best-effort metadata, a failed write here must fail the caller: the
workflow step that persists the terminal record relies on the exception to
retry.

Usage:
    >>> from models.database import ProjectStore
    >>> store = ProjectStore("./data/lovibe.db")
    >>> await store.init()
    >>> await store.save_user_message("proj_1", "Build a todo app")
"""

import json
import time
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from models.schemas import Fragment, RecordKind, TerminalRecord

logger = structlog.get_logger(__name__)


class ProjectStore:
    """Async SQLite store for project messages and fragments.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        """Initialize the project store.

        Args:
            db_path: Filesystem path to the SQLite database file.
                     Parent directories are created automatically on init().
        """
        self.db_path = db_path

    async def init(self) -> None:
        """Create database tables if they do not exist."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS messages (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        project_id TEXT NOT NULL,
                        run_id TEXT UNIQUE,
                        role TEXT NOT NULL,
                        type TEXT NOT NULL,
                        content TEXT NOT NULL,
                        created_at REAL NOT NULL
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS fragments (
                        message_id INTEGER PRIMARY KEY,
                        sandbox_url TEXT NOT NULL,
                        title TEXT NOT NULL,
                        files TEXT NOT NULL,
                        created_at REAL NOT NULL,
                        FOREIGN KEY (message_id) REFERENCES messages(id)
                    )
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_messages_project
                    ON messages(project_id, created_at)
                """)
                await db.commit()
            logger.info("project_store_initialized", db_path=self.db_path)
        except Exception as e:
            logger.error(
                "project_store_init_failed",
                db_path=self.db_path,
                error=str(e),
            )
            raise

    # -----------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------

    async def save_user_message(self, project_id: str, content: str) -> int:
        """Append a user instruction to the project's conversation.

        Returns:
            The new message id.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO messages (project_id, role, type, content, created_at)
                VALUES (?, 'USER', ?, ?, ?)
                """,
                (project_id, RecordKind.RESULT.value, content, time.time()),
            )
            await db.commit()
            message_id = cursor.lastrowid
        logger.debug("user_message_saved", project_id=project_id, message_id=message_id)
        return message_id

    async def save_terminal_record(self, run_id: str, record: TerminalRecord) -> int:
        """Persist the terminal record of a run, at most once per run.

        The message row and its fragment are written in one transaction. A
        second call for the same run returns the id of the existing record
        without writing anything.

        Returns:
            Id of the (new or existing) message row.
        """
        now = time.time()
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    """
                    INSERT OR IGNORE INTO messages
                        (project_id, run_id, role, type, content, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.project_id,
                        run_id,
                        record.role,
                        record.type.value,
                        record.content,
                        now,
                    ),
                )
                if cursor.rowcount == 0:
                    existing = await db.execute(
                        "SELECT id FROM messages WHERE run_id = ?", (run_id,)
                    )
                    row = await existing.fetchone()
                    logger.info("terminal_record_exists", run_id=run_id)
                    return int(row[0])

                message_id = cursor.lastrowid
                if record.fragment is not None:
                    await db.execute(
                        """
                        INSERT INTO fragments
                            (message_id, sandbox_url, title, files, created_at)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        (
                            message_id,
                            record.fragment.sandbox_url,
                            record.fragment.title,
                            json.dumps(record.fragment.files),
                            now,
                        ),
                    )
                await db.commit()
        except Exception as e:
            logger.error("terminal_record_save_failed", run_id=run_id, error=str(e))
            raise

        logger.info(
            "terminal_record_saved",
            run_id=run_id,
            project_id=record.project_id,
            type=record.type.value,
            message_id=message_id,
        )
        return message_id

    # -----------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------

    async def list_messages(
        self, project_id: str, limit: int | None = None
    ) -> list[dict[str, Any]]:
        """Return a project's messages in chronological order.

        Args:
            project_id: Project to read.
            limit: Keep only the most recent ``limit`` messages.

        Returns:
            Message dicts; RESULT records carry a ``fragment`` dict.
        """
        query = """
            SELECT m.id, m.project_id, m.run_id, m.role, m.type, m.content,
                   m.created_at, f.sandbox_url, f.title, f.files
            FROM messages m
            LEFT JOIN fragments f ON f.message_id = m.id
            WHERE m.project_id = ?
            ORDER BY m.created_at DESC, m.id DESC
        """
        params: tuple[Any, ...] = (project_id,)
        if limit is not None:
            query += " LIMIT ?"
            params = (project_id, limit)

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()

        messages = [self._row_to_message(row) for row in rows]
        messages.reverse()
        return messages

    async def get_terminal_record(self, run_id: str) -> dict[str, Any] | None:
        """Return the terminal record written by a run, if any."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                SELECT m.id, m.project_id, m.run_id, m.role, m.type, m.content,
                       m.created_at, f.sandbox_url, f.title, f.files
                FROM messages m
                LEFT JOIN fragments f ON f.message_id = m.id
                WHERE m.run_id = ?
                """,
                (run_id,),
            )
            row = await cursor.fetchone()
        return self._row_to_message(row) if row is not None else None

    async def latest_fragment_files(self, project_id: str) -> dict[str, str]:
        """Files of the project's most recent fragment, or an empty mapping."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                SELECT f.files FROM fragments f
                JOIN messages m ON m.id = f.message_id
                WHERE m.project_id = ?
                ORDER BY m.created_at DESC, m.id DESC
                LIMIT 1
                """,
                (project_id,),
            )
            row = await cursor.fetchone()
        if row is None:
            return {}
        try:
            files = json.loads(row[0])
        except json.JSONDecodeError:
            logger.warning("fragment_files_corrupt", project_id=project_id)
            return {}
        return files if isinstance(files, dict) else {}

    @staticmethod
    def _row_to_message(row: aiosqlite.Row) -> dict[str, Any]:
        message = {
            "id": row["id"],
            "project_id": row["project_id"],
            "run_id": row["run_id"],
            "role": row["role"],
            "type": row["type"],
            "content": row["content"],
            "created_at": row["created_at"],
            "fragment": None,
        }
        if row["sandbox_url"] is not None:
            message["fragment"] = Fragment(
                sandbox_url=row["sandbox_url"],
                title=row["title"],
                files=json.loads(row["files"]),
            ).model_dump()
        return message
