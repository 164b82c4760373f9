from __future__ import annotations

import redis
import pytest

from shipyard.errors import InfraError
from shipyard.job_queue import PRIORITY_HIGH, PRIORITY_LOW, InMemoryJobQueue, RedisJobQueue


class FakeRedis:
    def __init__(self, *, broken: bool = False):
        self.broken = broken
        self.strings: dict[str, str] = {}
        self.lists: dict[str, list[str]] = {}
        self.sets: dict[str, set[str]] = {}
        self.closed = False

    def _guard(self):
        if self.broken:
            raise redis.ConnectionError('connection refused')

    def set(self, key, value, nx=False, ex=None):
        self._guard()
        if nx and key in self.strings:
            return None
        self.strings[key] = value
        return True

    def lpush(self, key, value):
        self._guard()
        self.lists.setdefault(key, []).insert(0, value)

    def brpop(self, keys, timeout=0):
        self._guard()
        for key in keys:
            items = self.lists.get(key) or []
            if items:
                return key.encode('utf-8'), items.pop().encode('utf-8')
        return None

    def sadd(self, key, value):
        self.sets.setdefault(key, set()).add(value)

    def srem(self, key, value):
        self.sets.get(key, set()).discard(value)

    def scard(self, key):
        self._guard()
        return len(self.sets.get(key, set()))

    def expire(self, key, seconds):
        return True

    def delete(self, key):
        self.strings.pop(key, None)

    def llen(self, key):
        self._guard()
        return len(self.lists.get(key) or [])

    def ping(self):
        self._guard()
        return True

    def close(self):
        self.closed = True


@pytest.fixture(params=['memory', 'redis'])
def job_queue(request):
    if request.param == 'memory':
        return InMemoryJobQueue()
    return RedisJobQueue(FakeRedis())


def test_high_priority_is_dequeued_first_and_fifo_within_priority(job_queue):
    assert job_queue.enqueue('dpl-preview-1', priority=PRIORITY_LOW)
    assert job_queue.enqueue('dpl-preview-2', priority=PRIORITY_LOW)
    assert job_queue.enqueue('dpl-prod-1', priority=PRIORITY_HIGH)
    assert job_queue.size() == 3
    assert [job_queue.dequeue(timeout=0.01) for _ in range(3)] == ['dpl-prod-1', 'dpl-preview-1', 'dpl-preview-2']
    assert job_queue.dequeue(timeout=0.01) is None


def test_enqueue_is_idempotent_until_acked(job_queue):
    assert job_queue.enqueue('dpl-1') is True
    assert job_queue.enqueue('dpl-1') is False
    assert job_queue.dequeue(timeout=0.01) == 'dpl-1'
    assert job_queue.active_count() == 1
    assert job_queue.enqueue('dpl-1') is False
    job_queue.ack('dpl-1')
    assert job_queue.active_count() == 0
    assert job_queue.enqueue('dpl-1') is True


def test_unknown_priority_is_rejected(job_queue):
    with pytest.raises(ValueError):
        job_queue.enqueue('dpl-1', priority='urgent')


def test_closed_memory_queue_refuses_work():
    job_queue = InMemoryJobQueue()
    job_queue.close()
    assert job_queue.check() is False
    assert job_queue.dequeue(timeout=0.01) is None
    with pytest.raises(InfraError):
        job_queue.enqueue('dpl-1')


def test_redis_outage_is_infra_error():
    job_queue = RedisJobQueue(FakeRedis(broken=True))
    with pytest.raises(InfraError):
        job_queue.enqueue('dpl-1')
    with pytest.raises(InfraError):
        job_queue.dequeue(timeout=0.01)
    with pytest.raises(InfraError):
        job_queue.size()
    assert job_queue.check() is False
