from __future__ import annotations

import time

from shipyard.errors import InfraError
from shipyard.job_queue import InMemoryJobQueue
from shipyard.workers import DeploymentWorkerPool


class FakeService:
    def __init__(self, *, missing: set[str] | None = None, crash: set[str] | None = None):
        self.missing = missing or set()
        self.crash = crash or set()
        self.ran: list[str] = []

    def run_deployment(self, deployment_id: str) -> dict:
        self.ran.append(deployment_id)
        if deployment_id in self.missing:
            raise KeyError(deployment_id)
        if deployment_id in self.crash:
            raise RuntimeError('unexpected')
        return {'deployment_id': deployment_id, 'status': 'ready'}


def test_process_acks_even_when_the_job_fails():
    queue = InMemoryJobQueue()
    service = FakeService(missing={'dpl-gone'}, crash={'dpl-bad'})
    pool = DeploymentWorkerPool(service=service, queue=queue)
    for job in ('dpl-ok', 'dpl-gone', 'dpl-bad'):
        queue.enqueue(job)
        assert queue.dequeue(timeout=0.01) == job
        result = pool.process(job)
        assert (result is not None) == (job == 'dpl-ok')
    assert queue.active_count() == 0


def test_pool_drains_the_queue_and_stops():
    queue = InMemoryJobQueue()
    service = FakeService()
    pool = DeploymentWorkerPool(service=service, queue=queue, concurrency=2, poll_timeout=0.05)
    for index in range(5):
        queue.enqueue(f'dpl-{index}')
    pool.start()
    deadline = time.monotonic() + 5
    while len(service.ran) < 5 and time.monotonic() < deadline:
        time.sleep(0.01)
    pool.stop(timeout=5)

    assert sorted(service.ran) == [f'dpl-{index}' for index in range(5)]
    assert pool.is_running() is False
    assert queue.size() == 0


def test_dequeue_errors_back_off_instead_of_crashing():
    class BrokenQueue:
        calls = 0

        def dequeue(self, timeout: float):
            BrokenQueue.calls += 1
            raise InfraError('redis unreachable')

    pool = DeploymentWorkerPool(service=FakeService(), queue=BrokenQueue(), concurrency=1, error_backoff_seconds=0.01)
    pool.start()
    deadline = time.monotonic() + 5
    while BrokenQueue.calls < 3 and time.monotonic() < deadline:
        time.sleep(0.01)
    assert pool.is_running() is True
    pool.stop(timeout=5)
    assert BrokenQueue.calls >= 3
