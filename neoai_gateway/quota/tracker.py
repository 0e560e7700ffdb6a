"""Per-caller request quota across fixed hourly and daily windows.

Counters live in the relational store's ``rate_limits`` table, one row per
``(user_id, window)``.  A request is admitted when both the hourly and the
daily counter are below their ceilings; the two counters are then
incremented by an upsert batch handed to the background runner, so the
caller never waits on the write.

Design notes
------------
* Check-then-increment is not atomic: concurrent requests from one caller
  can both pass the check, so the ceiling is a soft upper bound.
* Stale windows are swept at most once per UTC day per process, guarded by
  a ``cleanup:<day>`` flag in the key-value store so replicas skip a sweep
  another replica already ran.  Sweep failures are logged and dropped.
"""

import asyncio
import logging
import math
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from neoai_gateway.services.background import BackgroundTaskRunner
from neoai_gateway.storage.database import Database, DatabaseError, Statement
from neoai_gateway.storage.kv import KeyValueStore, KVBackendError

logger = logging.getLogger("neoai.quota")

_UPSERT_SQL = (
    "INSERT INTO rate_limits (user_id, window, count) VALUES (?, ?, 1) "
    "ON CONFLICT (user_id, window) DO UPDATE SET count = count + 1"
)
_COUNT_SQL = "SELECT count FROM rate_limits WHERE user_id = ? AND window = ?"
CLEANUP_FLAG_TTL_SECONDS = 86_400


class QuotaExceededError(Exception):
    """Raised when a caller has reached the ceiling of a quota window."""

    def __init__(self, window: str, count: int, limit: int, retry_after_seconds: int):
        self.window = window
        self.count = count
        self.limit = limit
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            f"Quota exceeded for {window} window: {count}/{limit}, "
            f"retry after {retry_after_seconds}s"
        )


class QuotaBackendError(Exception):
    """Raised when the counter store cannot be read."""


def _utcnow() -> datetime:
    return datetime.now(UTC)


def hourly_window_key(now: datetime) -> str:
    return "h:" + now.astimezone(UTC).strftime("%Y-%m-%dT%H")


def daily_window_key(now: datetime) -> str:
    return "d:" + now.astimezone(UTC).strftime("%Y-%m-%d")


def seconds_until_next_hour(now: datetime) -> int:
    now = now.astimezone(UTC)
    top_of_hour = now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
    return max(1, math.ceil((top_of_hour - now).total_seconds()))


def seconds_until_end_of_day(now: datetime) -> int:
    now = now.astimezone(UTC)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(days=1)
    return max(1, math.ceil((midnight - now).total_seconds()))


class QuotaTracker:
    """Hourly and daily request ceilings per caller.

    Parameters
    ----------
    database : Database
        Store holding the ``rate_limits`` table.
    kv_store : KeyValueStore
        Store for the daily cleanup flag.
    runner : BackgroundTaskRunner
        Runner for the increment batch and the cleanup sweep.
    per_hour, per_day : int
        Ceilings for the two windows.
    cleanup_timeout_s : float
        Time box for one cleanup sweep.
    clock : callable
        Returns the current aware datetime.
    """

    def __init__(
        self,
        database: Database,
        kv_store: KeyValueStore,
        runner: BackgroundTaskRunner,
        per_hour: int = 50,
        per_day: int = 500,
        cleanup_timeout_s: float = 5.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._database = database
        self._kv_store = kv_store
        self._runner = runner
        self._per_hour = per_hour
        self._per_day = per_day
        self._cleanup_timeout_s = cleanup_timeout_s
        self._clock = clock
        self._last_cleanup_day: str | None = None

    @property
    def per_hour(self) -> int:
        return self._per_hour

    @property
    def per_day(self) -> int:
        return self._per_day

    async def check_and_increment(self, caller_id: str) -> None:
        """Raise ``QuotaExceededError`` if either window is full, else count the request."""
        now = self._clock()
        hourly_window = hourly_window_key(now)
        daily_window = daily_window_key(now)

        try:
            results = await self._database.batch(
                [
                    Statement(_COUNT_SQL, (caller_id, hourly_window)),
                    Statement(_COUNT_SQL, (caller_id, daily_window)),
                ]
            )
        except DatabaseError as exc:
            raise QuotaBackendError(f"Quota counters unavailable: {exc}") from exc

        hourly_count = int(results[0].rows[0]["count"]) if results[0].rows else 0
        daily_count = int(results[1].rows[0]["count"]) if results[1].rows else 0

        if hourly_count >= self._per_hour:
            self._reject("hourly", hourly_count, self._per_hour, seconds_until_next_hour(now))
        if daily_count >= self._per_day:
            self._reject("daily", daily_count, self._per_day, seconds_until_end_of_day(now))

        self._runner.submit(
            self._database.batch(
                [
                    Statement(_UPSERT_SQL, (caller_id, hourly_window)),
                    Statement(_UPSERT_SQL, (caller_id, daily_window)),
                ]
            ),
            name="quota_increment",
        )
        self._schedule_cleanup(now)

    def _reject(self, window: str, count: int, limit: int, retry_after: int) -> None:
        logger.warning(
            "quota_exceeded",
            extra={"window": window, "count": count, "limit": limit, "retry_after": retry_after},
        )
        raise QuotaExceededError(
            window=window, count=count, limit=limit, retry_after_seconds=retry_after
        )

    # ---- Stale window cleanup ----

    def _schedule_cleanup(self, now: datetime) -> None:
        day = now.astimezone(UTC).strftime("%Y-%m-%d")
        if self._last_cleanup_day == day:
            return
        self._last_cleanup_day = day
        self._runner.submit(self._cleanup(day, now), name="quota_cleanup")

    async def _cleanup(self, day: str, now: datetime) -> None:
        try:
            await asyncio.wait_for(self._sweep(day, now), timeout=self._cleanup_timeout_s)
        except (DatabaseError, KVBackendError, TimeoutError) as exc:
            logger.warning("quota_cleanup_failed", extra={"error": str(exc) or type(exc).__name__})

    async def _sweep(self, day: str, now: datetime) -> None:
        flag_key = f"cleanup:{day}"
        if await self._kv_store.get(flag_key):
            return
        hour_cutoff = hourly_window_key(now - timedelta(hours=2))
        day_cutoff = daily_window_key(now - timedelta(days=2))
        results = await self._database.batch(
            [
                Statement(
                    "DELETE FROM rate_limits WHERE window < ? AND window NOT LIKE 'd:%'",
                    (hour_cutoff,),
                ),
                Statement(
                    "DELETE FROM rate_limits WHERE window < ? AND window LIKE 'd:%'",
                    (day_cutoff,),
                ),
            ]
        )
        await self._kv_store.put(flag_key, "1", ttl_seconds=CLEANUP_FLAG_TTL_SECONDS)
        logger.info(
            "quota_cleanup_completed",
            extra={"count": sum(result.rows_affected for result in results)},
        )
