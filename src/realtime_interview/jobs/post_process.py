"""
Post-interview job queue.

Finished sessions are handed to background workers (summary generation and
similar) as small JSON envelopes. Nothing here executes the jobs.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from realtime_interview.orchestrator.schemas import now_ms

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)

POST_PROCESS_QUEUE = "queue:post-process"


def job_envelope(name: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {"name": name, "payload": payload, "enqueuedAt": now_ms()}


class RedisJobQueue:
    """Pushes jobs onto a Redis list for workers to pop."""

    def __init__(self, client: Redis, queue_key: str = POST_PROCESS_QUEUE) -> None:
        self._client = client
        self._queue_key = queue_key

    @classmethod
    def from_url(cls, url: str, queue_key: str = POST_PROCESS_QUEUE) -> RedisJobQueue:
        from redis.asyncio import Redis

        return cls(Redis.from_url(url, decode_responses=True), queue_key)

    async def enqueue(self, name: str, payload: dict[str, Any]) -> None:
        """
        Queue a job.

        Args:
            name: Job name, e.g. "generate-summary".
            payload: JSON-serializable job arguments.

        Raises:
            RedisConnectionError, RedisTimeoutError: If Redis is unreachable.
        """
        body = json.dumps(job_envelope(name, payload))
        try:
            await self._client.lpush(self._queue_key, body)
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.error(f"Failed to enqueue {name} on {self._queue_key}: {e}")
            raise
        logger.info(f"Enqueued {name} on {self._queue_key}")

    async def close(self) -> None:
        await self._client.aclose()


class InMemoryJobQueue:
    """Keeps enqueued jobs in a list; for tests and local runs."""

    def __init__(self) -> None:
        self.jobs: list[dict[str, Any]] = []

    async def enqueue(self, name: str, payload: dict[str, Any]) -> None:
        self.jobs.append(job_envelope(name, payload))
