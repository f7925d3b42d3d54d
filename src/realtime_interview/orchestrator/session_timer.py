"""
Wall-clock time limit for one interview session.

The timer record lives in the cache backend so any server instance can read
the remaining time; the warning and expiry tasks live on the instance that
owns the connection.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from realtime_interview.cache.backends import CacheBackend
from realtime_interview.orchestrator.schemas import now_ms

logger = logging.getLogger(__name__)

TIMER_KEY_PREFIX = "timer:"
TIMER_TTL_PADDING_SECONDS = 60

WarningCallback = Callable[[int], Awaitable[None]]
ExpiredCallback = Callable[[], Awaitable[None]]


def timer_key(token: str) -> str:
    return f"{TIMER_KEY_PREFIX}{token}"


class TimerRecord(BaseModel):
    """Stored as `{startTime, timeLimitMs, warningAt}` in epoch milliseconds."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    start_time: int
    time_limit_ms: int
    warning_at: int | None = None

    @property
    def expires_at(self) -> int:
        return self.start_time + self.time_limit_ms


class SessionTimer:
    """Schedules the time warning and expiry callbacks for one session."""

    def __init__(
        self,
        backend: CacheBackend,
        token: str,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._backend = backend
        self._token = token
        self._clock = clock
        self._warning_task: asyncio.Task[None] | None = None
        self._expiry_task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._expiry_task is not None and not self._expiry_task.done()

    async def start(
        self,
        time_limit_minutes: float,
        warning_minutes: float,
        on_warning: WarningCallback,
        on_expired: ExpiredCallback,
    ) -> TimerRecord:
        """
        Store the timer record and schedule its callbacks.

        Args:
            time_limit_minutes: Session length.
            warning_minutes: How long before the end the warning fires.
            on_warning: Called with the remaining milliseconds.
            on_expired: Called once when the limit is reached.

        Returns:
            The stored record.
        """
        self._cancel_tasks()
        start = self._clock()
        limit_ms = int(time_limit_minutes * 60_000)
        warning_offset_ms = limit_ms - int(warning_minutes * 60_000)
        record = TimerRecord(
            start_time=start,
            time_limit_ms=limit_ms,
            warning_at=start + warning_offset_ms if warning_offset_ms > 0 else None,
        )
        ttl = int(limit_ms / 1000) + TIMER_TTL_PADDING_SECONDS
        await self._backend.setex(timer_key(self._token), ttl, record.model_dump_json(by_alias=True))

        self._schedule(record, on_warning, on_expired)
        logger.info(f"[Timer] Started for session {self._token}: {time_limit_minutes} minutes")
        return record

    async def restore(self, on_warning: WarningCallback, on_expired: ExpiredCallback) -> bool:
        """
        Resume from a record written before a restart.

        A session that expired while no server owned it is ended immediately.

        Returns:
            False if there is no stored record.
        """
        record = await self._load()
        if record is None:
            return False

        if record.expires_at - self._clock() <= 0:
            logger.info(f"[Timer] Session {self._token} expired during downtime, ending")
            await self._backend.delete(timer_key(self._token))
            await on_expired()
            return True

        self._cancel_tasks()
        self._schedule(record, on_warning, on_expired)
        logger.info(f"[Timer] Restored for session {self._token}")
        return True

    async def stop(self) -> None:
        self._cancel_tasks()
        await self._backend.delete(timer_key(self._token))

    async def remaining_ms(self) -> int | None:
        record = await self._load()
        if record is None:
            return None
        return max(0, record.expires_at - self._clock())

    async def is_expired(self) -> bool:
        remaining = await self.remaining_ms()
        return remaining is not None and remaining <= 0

    async def _load(self) -> TimerRecord | None:
        raw = await self._backend.get(timer_key(self._token))
        if raw is None:
            return None
        try:
            return TimerRecord.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"[Timer] Unreadable timer record for {self._token}: {e}")
            return None

    def _schedule(self, record: TimerRecord, on_warning: WarningCallback, on_expired: ExpiredCallback) -> None:
        now = self._clock()
        if record.warning_at is not None and record.warning_at > now:
            self._warning_task = asyncio.create_task(
                self._fire_warning((record.warning_at - now) / 1000, record, on_warning)
            )
        self._expiry_task = asyncio.create_task(self._fire_expiry((record.expires_at - now) / 1000, on_expired))

    async def _fire_warning(self, delay: float, record: TimerRecord, on_warning: WarningCallback) -> None:
        await asyncio.sleep(delay)
        remaining = max(0, record.expires_at - self._clock())
        logger.info(f"[Timer] Time warning for session {self._token}: {remaining}ms left")
        try:
            await on_warning(remaining)
        except Exception as e:
            logger.error(f"[Timer] Warning callback failed for {self._token}: {e}")

    async def _fire_expiry(self, delay: float, on_expired: ExpiredCallback) -> None:
        await asyncio.sleep(delay)
        logger.info(f"[Timer] Time expired for session {self._token}")
        if self._warning_task is not None and not self._warning_task.done():
            self._warning_task.cancel()
        try:
            await on_expired()
        except Exception as e:
            logger.error(f"[Timer] Expiry callback failed for {self._token}: {e}")
        finally:
            await self._backend.delete(timer_key(self._token))

    def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        for task in (self._warning_task, self._expiry_task):
            # The expiry callback may stop its own timer.
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._warning_task = None
        self._expiry_task = None


async def pending_timer_tokens(backend: CacheBackend) -> list[str]:
    """Tokens with a stored timer record, used to restore timers at startup."""
    keys = await backend.keys(TIMER_KEY_PREFIX)
    return [key[len(TIMER_KEY_PREFIX) :] for key in keys]
