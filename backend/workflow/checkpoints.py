"""Durable step checkpoints and run registry backed by aiosqlite.

Tables:
    runs: One row per workflow run with its trigger payload and status.
        Runs left ``running`` by a crashed process are picked up again on
        startup.
    step_checkpoints: JSON output of each completed step, keyed by
        (run_id, step_name). A row is committed before the step's value is
        handed back to the workflow, so a restart never re-executes it.
"""

import json
import time
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from models.schemas import RunStatus

logger = structlog.get_logger(__name__)


class CheckpointStore:
    """Async SQLite store for workflow runs and step checkpoints.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    async def init(self) -> None:
        """Create tables if they do not exist."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS runs (
                    run_id TEXT PRIMARY KEY,
                    function_id TEXT NOT NULL,
                    project_id TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    status TEXT NOT NULL,
                    error TEXT,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                )
            """)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS step_checkpoints (
                    run_id TEXT NOT NULL,
                    step_name TEXT NOT NULL,
                    output TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    PRIMARY KEY (run_id, step_name)
                )
            """)
            await db.commit()
        logger.info("checkpoint_store_initialized", db_path=self.db_path)

    # -----------------------------------------------------------------
    # Step checkpoints
    # -----------------------------------------------------------------

    async def load(self, run_id: str, step_name: str) -> tuple[bool, Any]:
        """Look up a memoized step output.

        Returns:
            ``(True, value)`` if the step completed before, else ``(False, None)``.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "SELECT output FROM step_checkpoints WHERE run_id = ? AND step_name = ?",
                (run_id, step_name),
            )
            row = await cursor.fetchone()
        if row is None:
            return False, None
        return True, json.loads(row[0])

    async def save(self, run_id: str, step_name: str, value: Any) -> Any:
        """Record a step output and return the value that is now durable.

        If a checkpoint already exists for the step, the stored value wins so
        that every reader of the run observes a single outcome.

        Raises:
            TypeError: If ``value`` is not JSON-serialisable.
        """
        encoded = json.dumps(value)
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT OR IGNORE INTO step_checkpoints
                    (run_id, step_name, output, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (run_id, step_name, encoded, time.time()),
            )
            await db.commit()
            if cursor.rowcount == 1:
                return json.loads(encoded)

        logger.warning("step_checkpoint_exists", run_id=run_id, step=step_name)
        _, stored = await self.load(run_id, step_name)
        return stored

    async def steps_for_run(self, run_id: str) -> list[str]:
        """Names of the completed steps of a run, in completion order."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                SELECT step_name FROM step_checkpoints
                WHERE run_id = ? ORDER BY created_at, rowid
                """,
                (run_id,),
            )
            rows = await cursor.fetchall()
        return [row[0] for row in rows]

    # -----------------------------------------------------------------
    # Runs
    # -----------------------------------------------------------------

    async def create_run(
        self,
        run_id: str,
        function_id: str,
        project_id: str,
        payload: dict[str, Any],
    ) -> None:
        """Register a new run in the ``running`` state."""
        now = time.time()
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO runs
                    (run_id, function_id, project_id, payload, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run_id,
                    function_id,
                    project_id,
                    json.dumps(payload),
                    RunStatus.RUNNING.value,
                    now,
                    now,
                ),
            )
            await db.commit()

    async def set_run_status(
        self, run_id: str, status: RunStatus, error: str | None = None
    ) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "UPDATE runs SET status = ?, error = ?, updated_at = ? WHERE run_id = ?",
                (status.value, error, time.time(), run_id),
            )
            await db.commit()

    async def get_run(self, run_id: str) -> dict[str, Any] | None:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,))
            row = await cursor.fetchone()
        if row is None:
            return None
        run = dict(row)
        run["payload"] = json.loads(run["payload"])
        return run

    async def incomplete_runs(self) -> list[dict[str, Any]]:
        """Runs still marked ``running``, oldest first."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM runs WHERE status = ? ORDER BY created_at",
                (RunStatus.RUNNING.value,),
            )
            rows = await cursor.fetchall()
        runs = []
        for row in rows:
            run = dict(row)
            run["payload"] = json.loads(run["payload"])
            runs.append(run)
        return runs
