"""Per-job run locks so two scheduler firings of one job never overlap."""
import logging
from collections.abc import Iterator
from contextlib import contextmanager

import redis as redis_lib
from redis.exceptions import LockError, RedisError

from app.config import settings

logger = logging.getLogger(__name__)

_KEY_PREFIX = "billing:job-lock:"


def _get_redis() -> redis_lib.Redis:
    return redis_lib.Redis.from_url(
        settings.redis_url, decode_responses=True, socket_timeout=2
    )


@contextmanager
def job_lock(
    job: str, ttl_seconds: int | None = None, client: redis_lib.Redis | None = None
) -> Iterator[bool]:
    """Yield True when this process holds the lock for ``job``.

    The lock expires after ``ttl_seconds`` so a crashed worker cannot block
    the job forever. An unreachable Redis counts as "not acquired".
    """
    ttl = ttl_seconds or settings.job_lock_ttl_seconds
    client = client or _get_redis()
    lock = client.lock(f"{_KEY_PREFIX}{job}", timeout=ttl, blocking=False)
    try:
        acquired = bool(lock.acquire())
    except RedisError as exc:
        logger.error("Job lock for %s unavailable: %s", job, exc, extra={"job": job})
        acquired = False
    if not acquired:
        logger.info("Job %s already running, skipping", job, extra={"job": job})
    try:
        yield acquired
    finally:
        if acquired:
            try:
                lock.release()
            except LockError:
                logger.warning(
                    "Job lock for %s expired before release", job, extra={"job": job}
                )
            except RedisError as exc:
                logger.error(
                    "Failed to release job lock for %s: %s", job, exc, extra={"job": job}
                )
