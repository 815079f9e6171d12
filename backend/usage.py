"""Per-user credit window that gates workflow runs.

Each user has a budget of points per window (free or pro plan). The first
consumption opens a window of ``credit_window_days``; when the window expires
the consumed count starts again from zero. Consumption is checked and
recorded atomically, so concurrent requests cannot overspend.

Usage:
    >>> tracker = UsageTracker("./data/lovibe.db")
    >>> await tracker.init()
    >>> status = await tracker.consume("user_1", Plan.FREE)
    >>> status.remaining_points
    9
"""

import asyncio
import time
from dataclasses import dataclass
from pathlib import Path

import aiosqlite
import structlog

from config import settings
from models.schemas import Plan

logger = structlog.get_logger(__name__)


class InsufficientCreditsError(Exception):
    """Raised when a user's credit window is exhausted.

    Attributes:
        retry_after_seconds: Seconds until the window resets.
    """

    def __init__(self, retry_after_seconds: float) -> None:
        super().__init__(f"Out of credits, resets in {int(retry_after_seconds)}s")
        self.retry_after_seconds = retry_after_seconds


@dataclass
class CreditStatus:
    """Snapshot of a user's credit window."""

    remaining_points: int
    consumed_points: int
    reset_at: float | None


class UsageTracker:
    """Async SQLite-backed credit windows.

    Attributes:
        db_path: Path to the SQLite database file.
        cost: Points consumed by one run.
    """

    def __init__(
        self,
        db_path: str,
        free_points: int | None = None,
        pro_points: int | None = None,
        window_days: int | None = None,
        cost: int | None = None,
    ) -> None:
        self.db_path = db_path
        self.free_points = free_points if free_points is not None else settings.free_points
        self.pro_points = pro_points if pro_points is not None else settings.pro_points
        self.window_seconds = (
            window_days if window_days is not None else settings.credit_window_days
        ) * 24 * 60 * 60
        self.cost = cost if cost is not None else settings.generation_cost
        self._lock = asyncio.Lock()

    async def init(self) -> None:
        """Create the usage table if it does not exist."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS usage (
                    key TEXT PRIMARY KEY,
                    points INTEGER NOT NULL,
                    expire_at REAL NOT NULL
                )
            """)
            await db.commit()
        logger.info("usage_tracker_initialized", db_path=self.db_path)

    def points_for(self, plan: Plan) -> int:
        return self.pro_points if plan == Plan.PRO else self.free_points

    async def _read(self, db: aiosqlite.Connection, user_id: str, now: float) -> tuple[int, float | None]:
        cursor = await db.execute(
            "SELECT points, expire_at FROM usage WHERE key = ?", (user_id,)
        )
        row = await cursor.fetchone()
        if row is None or row[1] <= now:
            return 0, None
        return row[0], row[1]

    async def consume(self, user_id: str, plan: Plan = Plan.FREE) -> CreditStatus:
        """Consume one run's worth of points.

        Raises:
            InsufficientCreditsError: If the window has no points left.
        """
        limit = self.points_for(plan)
        async with self._lock:
            now = time.time()
            async with aiosqlite.connect(self.db_path) as db:
                consumed, expire_at = await self._read(db, user_id, now)
                if consumed + self.cost > limit:
                    retry_after = (expire_at or now) - now
                    logger.info(
                        "credits_exhausted",
                        user_id=user_id,
                        plan=plan.value,
                        retry_after_seconds=int(retry_after),
                    )
                    raise InsufficientCreditsError(retry_after)

                if expire_at is None:
                    expire_at = now + self.window_seconds
                consumed += self.cost
                await db.execute(
                    """
                    INSERT INTO usage (key, points, expire_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        points = excluded.points,
                        expire_at = excluded.expire_at
                    """,
                    (user_id, consumed, expire_at),
                )
                await db.commit()

        logger.debug("credits_consumed", user_id=user_id, consumed=consumed, limit=limit)
        return CreditStatus(
            remaining_points=limit - consumed,
            consumed_points=consumed,
            reset_at=expire_at,
        )

    async def refund(self, user_id: str) -> None:
        """Give back one run's worth of points within the current window."""
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    UPDATE usage SET points = MAX(points - ?, 0)
                    WHERE key = ? AND expire_at > ?
                    """,
                    (self.cost, user_id, time.time()),
                )
                await db.commit()
        logger.info("credits_refunded", user_id=user_id, points=self.cost)

    async def get_status(self, user_id: str, plan: Plan = Plan.FREE) -> CreditStatus:
        """Report the user's current window without consuming."""
        limit = self.points_for(plan)
        async with aiosqlite.connect(self.db_path) as db:
            consumed, expire_at = await self._read(db, user_id, time.time())
        return CreditStatus(
            remaining_points=max(limit - consumed, 0),
            consumed_points=consumed,
            reset_at=expire_at,
        )
