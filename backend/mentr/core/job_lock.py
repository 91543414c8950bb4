from __future__ import annotations

from contextlib import contextmanager
import logging
import threading
import time
from typing import Dict, Iterator, Optional, Tuple
from uuid import uuid4

from redis import Redis

from mentr.core.config import settings
from mentr.monitoring.prometheus_metrics import prometheus_metrics

logger = logging.getLogger(__name__)

_SYNC_REDIS: Optional[Redis] = None
_SYNC_REDIS_LOCK = threading.Lock()


def _lock_key(job_name: str) -> str:
    return f"mentr:scheduler:{job_name}:mutex"


def _get_sync_redis() -> Optional[Redis]:
    global _SYNC_REDIS
    if _SYNC_REDIS is not None:
        return _SYNC_REDIS
    with _SYNC_REDIS_LOCK:
        if _SYNC_REDIS is not None:
            return _SYNC_REDIS
        try:
            client = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
            client.ping()
        except Exception as exc:
            logger.warning("job_lock_redis_unavailable: %s", exc)
            return None
        _SYNC_REDIS = client
        return _SYNC_REDIS


class LocalJobLock:
    """In-process single-flight lock keyed by job name and owned by the acquiring thread."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._held: Dict[str, Tuple[float, int]] = {}

    def acquire(self, job_name: str, ttl_s: int) -> bool:
        now = time.monotonic()
        with self._guard:
            held = self._held.get(job_name)
            if held is not None and held[0] > now:
                return False
            self._held[job_name] = (now + ttl_s, threading.get_ident())
            return True

    def release(self, job_name: str) -> None:
        with self._guard:
            held = self._held.get(job_name)
            # An expired hold may have been taken over by another thread
            if held is not None and held[1] == threading.get_ident():
                del self._held[job_name]


# Deletes the key only while it still holds the caller's token
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class RedisJobLock:
    """
    Cross-process single-flight lock using ``SET NX EX``.

    Each acquire stores a fresh token as the key's value and release deletes
    the key only if it still holds that token, so a pass that outlived its TTL
    cannot free a lock another worker has since taken.

    When Redis is unreachable the lock degrades to the in-process fallback so a
    single worker still refuses overlapping passes of the same job.
    """

    def __init__(self, client: Optional[Redis] = None, fallback: Optional[LocalJobLock] = None):
        self._client = client
        self._fallback = fallback or LocalJobLock()
        self._fallback_held: set[Tuple[str, int]] = set()
        self._tokens: Dict[Tuple[str, int], str] = {}

    def _redis(self) -> Optional[Redis]:
        return self._client if self._client is not None else _get_sync_redis()

    @staticmethod
    def _owner(job_name: str) -> Tuple[str, int]:
        return job_name, threading.get_ident()

    def acquire(self, job_name: str, ttl_s: int) -> bool:
        client = self._redis()
        if client is None:
            prometheus_metrics.record_scheduler_lock("acquire", "redis_unavailable")
            return self._acquire_fallback(job_name, ttl_s)
        token = uuid4().hex
        try:
            acquired = bool(client.set(_lock_key(job_name), token, nx=True, ex=ttl_s))
        except Exception as exc:
            prometheus_metrics.record_scheduler_lock("acquire", "error")
            logger.warning(
                "job_lock_acquire_failed",
                extra={
                    "job": job_name,
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                },
            )
            return self._acquire_fallback(job_name, ttl_s)
        if acquired:
            self._tokens[self._owner(job_name)] = token
        prometheus_metrics.record_scheduler_lock("acquire", "success" if acquired else "blocked")
        return acquired

    def _acquire_fallback(self, job_name: str, ttl_s: int) -> bool:
        acquired = self._fallback.acquire(job_name, ttl_s)
        if acquired:
            self._fallback_held.add(self._owner(job_name))
        return acquired

    def release(self, job_name: str) -> None:
        owner = self._owner(job_name)
        if owner in self._fallback_held:
            self._fallback_held.discard(owner)
            self._fallback.release(job_name)
            return
        token = self._tokens.pop(owner, None)
        if token is None:
            return
        client = self._redis()
        if client is None:
            return
        try:
            deleted = client.eval(_RELEASE_SCRIPT, 1, _lock_key(job_name), token)
            prometheus_metrics.record_scheduler_lock("release", "success" if deleted else "not_owner")
            if not deleted:
                logger.warning("job_lock_expired_before_release", extra={"job": job_name})
        except Exception as exc:
            prometheus_metrics.record_scheduler_lock("release", "error")
            logger.warning(
                "job_lock_release_failed",
                extra={
                    "job": job_name,
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                },
            )


def build_job_lock(backend: Optional[str] = None) -> LocalJobLock | RedisJobLock:
    backend = backend or settings.scheduler_lock_backend
    if backend == "local":
        return LocalJobLock()
    return RedisJobLock()


@contextmanager
def job_lock(
    lock: LocalJobLock | RedisJobLock, job_name: str, ttl_s: Optional[int] = None
) -> Iterator[bool]:
    ttl = ttl_s or settings.scheduler_lock_ttl_seconds
    acquired = lock.acquire(job_name, ttl)
    try:
        yield acquired
    finally:
        if acquired:
            lock.release(job_name)
