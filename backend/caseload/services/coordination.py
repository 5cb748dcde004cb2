"""Cross-process coordination for import jobs, backed by Redis.

The pipeline never talks to Redis directly: it receives a ``Coordinator``
and calls the operations below. ``RedisCoordinator`` is the production
implementation; tests pass an in-memory double with the same methods.
"""
from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Iterator, Protocol

import redis
from redis.exceptions import LockError

from caseload.core.config import settings
from caseload.core.logging import logger


class LockTimeout(RuntimeError):
    pass


class Coordinator(Protocol):
    def claim_checksum(self, checksum: str, batch_id: str, ttl: int) -> bool: ...

    def checksum_owner(self, checksum: str) -> str | None: ...

    def release_checksum(self, checksum: str, batch_id: str | None = None) -> None: ...

    def case_lock(self, name: str, timeout: float): ...

    def request_cancel(self, batch_id: str) -> None: ...

    def is_cancelled(self, batch_id: str) -> bool: ...

    def mark_active(self, batch_id: str) -> None: ...

    def heartbeat(self, batch_id: str) -> None: ...

    def is_active(self, batch_id: str) -> bool: ...

    def mark_idle(self, batch_id: str) -> None: ...

    def active_count(self) -> int: ...

    def queue_depth(self, queue_name: str) -> int: ...

    def ping(self) -> bool: ...


def make_redis_client(url: str | None = None) -> redis.Redis:
    return redis.Redis.from_url(
        url or settings.REDIS_URL,
        decode_responses=True,
        socket_connect_timeout=0.5,
        socket_timeout=2.0,
    )


class RedisCoordinator:
    def __init__(
        self,
        client: redis.Redis,
        prefix: str = "caseload",
        heartbeat_ttl: int | None = None,
        clock=time.time,
    ):
        self.client = client
        self.prefix = prefix
        self.heartbeat_ttl = heartbeat_ttl or settings.IMPORT_WORKER_HEARTBEAT_TTL_SECONDS
        self.clock = clock

    def _k(self, *parts: str) -> str:
        return ":".join((self.prefix, *parts))

    # -----------------------------
    # duplicate-submission guard
    # -----------------------------
    def claim_checksum(self, checksum: str, batch_id: str, ttl: int) -> bool:
        # SET NX is the single atomic decision point between concurrent submitters
        ok = self.client.set(self._k("checksum", checksum), batch_id, nx=True, ex=ttl)
        return bool(ok)

    def checksum_owner(self, checksum: str) -> str | None:
        return self.client.get(self._k("checksum", checksum))

    def release_checksum(self, checksum: str, batch_id: str | None = None) -> None:
        key = self._k("checksum", checksum)
        if batch_id is not None and self.client.get(key) != batch_id:
            # guard was re-claimed by a newer batch after ours expired
            return
        self.client.delete(key)

    # -----------------------------
    # per natural key lock
    # -----------------------------
    @contextmanager
    def case_lock(self, name: str, timeout: float) -> Iterator[None]:
        lock = self.client.lock(self._k("case", name), timeout=max(timeout, 1.0) * 2, blocking_timeout=timeout)
        if not lock.acquire():
            raise LockTimeout(f"Timed out waiting for lock on {name}")
        try:
            yield
        finally:
            try:
                lock.release()
            except LockError:
                # expired while held; the unique constraint still protects the write
                logger.warning("case_lock_expired", name=name)

    # -----------------------------
    # cancellation
    # -----------------------------
    def request_cancel(self, batch_id: str) -> None:
        self.client.set(self._k("cancel", batch_id), "1", ex=settings.IMPORT_CHECKSUM_GUARD_TTL_SECONDS)

    def is_cancelled(self, batch_id: str) -> bool:
        return self.client.exists(self._k("cancel", batch_id)) > 0

    # -----------------------------
    # worker liveness / stats
    # -----------------------------
    # member = batch id, score = last heartbeat; a crashed worker stops refreshing its score
    def mark_active(self, batch_id: str) -> None:
        self.heartbeat(batch_id)

    def heartbeat(self, batch_id: str) -> None:
        self.client.zadd(self._k("active"), {batch_id: self.clock()})

    def mark_idle(self, batch_id: str) -> None:
        self.client.zrem(self._k("active"), batch_id)

    def is_active(self, batch_id: str) -> bool:
        seen = self.client.zscore(self._k("active"), batch_id)
        return seen is not None and float(seen) >= self.clock() - self.heartbeat_ttl

    def active_count(self) -> int:
        return int(self.client.zcount(self._k("active"), self.clock() - self.heartbeat_ttl, "+inf"))

    def queue_depth(self, queue_name: str) -> int:
        # the Celery redis transport keeps each queue as a plain list
        return int(self.client.llen(queue_name))

    def ping(self) -> bool:
        return bool(self.client.ping())
