from __future__ import annotations

from collections import deque
import math
from threading import Condition
import time
from typing import Protocol

import redis

from shipyard.errors import InfraError
from shipyard.observability import get_logger

_log = get_logger('shipyard.job_queue')

PRIORITY_HIGH = 'high'
PRIORITY_LOW = 'low'
PRIORITIES = (PRIORITY_HIGH, PRIORITY_LOW)


def _check_priority(priority: str) -> str:
    value = str(priority or PRIORITY_LOW).strip().lower()
    if value not in PRIORITIES:
        raise ValueError(f'unknown priority: {priority}')
    return value


class JobQueue(Protocol):
    backend: str

    def enqueue(self, deployment_id: str, *, priority: str = PRIORITY_LOW) -> bool:
        """Queue a deployment. Returns ``False`` if it is already queued or running."""
        ...

    def dequeue(self, timeout: float = 1.0) -> str | None:
        ...

    def ack(self, deployment_id: str) -> None:
        ...

    def size(self) -> int:
        ...

    def active_count(self) -> int:
        ...

    def check(self) -> bool:
        ...

    def close(self) -> None:
        ...


class InMemoryJobQueue:
    backend = 'memory'

    def __init__(self):
        self._cond = Condition()
        self._queues: dict[str, deque[str]] = {p: deque() for p in PRIORITIES}
        self._pending: set[str] = set()
        self._active: set[str] = set()
        self._closed = False

    def enqueue(self, deployment_id: str, *, priority: str = PRIORITY_LOW) -> bool:
        priority = _check_priority(priority)
        with self._cond:
            if self._closed:
                raise InfraError('job queue is closed')
            if deployment_id in self._pending or deployment_id in self._active:
                return False
            self._queues[priority].append(deployment_id)
            self._pending.add(deployment_id)
            self._cond.notify()
        return True

    def _pop(self) -> str | None:
        for priority in PRIORITIES:
            if self._queues[priority]:
                return self._queues[priority].popleft()
        return None

    def dequeue(self, timeout: float = 1.0) -> str | None:
        deadline = time.monotonic() + max(0.0, float(timeout))
        with self._cond:
            while True:
                job_id = self._pop()
                if job_id is not None:
                    self._pending.discard(job_id)
                    self._active.add(job_id)
                    return job_id
                remaining = deadline - time.monotonic()
                if self._closed or remaining <= 0:
                    return None
                self._cond.wait(remaining)

    def ack(self, deployment_id: str) -> None:
        with self._cond:
            self._active.discard(deployment_id)

    def size(self) -> int:
        with self._cond:
            return sum(len(items) for items in self._queues.values())

    def active_count(self) -> int:
        with self._cond:
            return len(self._active)

    def check(self) -> bool:
        return not self._closed

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()


class RedisJobQueue:
    """Two Redis lists popped with ``BRPOP`` in priority order.

    ``shipyard:job:<id>`` is set with NX before the push, which makes
    enqueue idempotent while the job is queued or running.
    """

    backend = 'redis'
    JOB_TTL_SECONDS = 1800

    def __init__(self, client: redis.Redis, *, prefix: str = 'shipyard'):
        self.client = client
        self.prefix = prefix
        self.lists = {p: f'{prefix}:queue:{p}' for p in PRIORITIES}
        self.active_key = f'{prefix}:active'

    @classmethod
    def from_url(cls, redis_url: str, **kwargs) -> 'RedisJobQueue':
        return cls(redis.Redis.from_url(redis_url), **kwargs)

    def _job_key(self, deployment_id: str) -> str:
        return f'{self.prefix}:job:{deployment_id}'

    def enqueue(self, deployment_id: str, *, priority: str = PRIORITY_LOW) -> bool:
        priority = _check_priority(priority)
        try:
            fresh = self.client.set(self._job_key(deployment_id), priority, nx=True, ex=self.JOB_TTL_SECONDS)
            if not fresh:
                return False
            self.client.lpush(self.lists[priority], deployment_id)
        except redis.RedisError as exc:
            raise InfraError(f'queue unreachable: {exc}') from exc
        return True

    def dequeue(self, timeout: float = 1.0) -> str | None:
        try:
            item = self.client.brpop([self.lists[p] for p in PRIORITIES], timeout=max(1, math.ceil(timeout)))
            if item is None:
                return None
            _, raw = item
            deployment_id = raw.decode('utf-8') if isinstance(raw, bytes) else str(raw)
            self.client.sadd(self.active_key, deployment_id)
            self.client.expire(self._job_key(deployment_id), self.JOB_TTL_SECONDS)
        except redis.RedisError as exc:
            raise InfraError(f'queue unreachable: {exc}') from exc
        return deployment_id

    def ack(self, deployment_id: str) -> None:
        try:
            self.client.srem(self.active_key, deployment_id)
            self.client.delete(self._job_key(deployment_id))
        except redis.RedisError:
            _log.warning('queue_ack_failed deployment_id=%s', deployment_id, exc_info=True)

    def size(self) -> int:
        try:
            return sum(int(self.client.llen(name)) for name in self.lists.values())
        except redis.RedisError as exc:
            raise InfraError(f'queue unreachable: {exc}') from exc

    def active_count(self) -> int:
        try:
            return int(self.client.scard(self.active_key))
        except redis.RedisError as exc:
            raise InfraError(f'queue unreachable: {exc}') from exc

    def check(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False

    def close(self) -> None:
        self.client.close()
