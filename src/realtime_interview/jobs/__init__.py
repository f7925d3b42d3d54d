"""
Background job hand-off.

Completed interviews are queued for post-processing here.
"""

from realtime_interview.jobs.post_process import (
    POST_PROCESS_QUEUE,
    InMemoryJobQueue,
    RedisJobQueue,
)

__all__ = [
    "POST_PROCESS_QUEUE",
    "InMemoryJobQueue",
    "RedisJobQueue",
]
