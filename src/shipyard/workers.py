from __future__ import annotations

from threading import Event, Thread

from shipyard.errors import InfraError
from shipyard.job_queue import JobQueue
from shipyard.observability import get_logger
from shipyard.service import OrchestratorService

_log = get_logger('shipyard.workers')


class DeploymentWorkerPool:
    """Fixed number of threads draining the job queue into ``run_deployment``."""

    def __init__(
        self,
        *,
        service: OrchestratorService,
        queue: JobQueue,
        concurrency: int = 3,
        poll_timeout: float = 1.0,
        error_backoff_seconds: float = 2.0,
    ):
        self.service = service
        self.queue = queue
        self.concurrency = max(1, int(concurrency))
        self.poll_timeout = max(0.05, float(poll_timeout))
        self.error_backoff_seconds = max(0.0, float(error_backoff_seconds))
        self._stop = Event()
        self._threads: list[Thread] = []

    def start(self) -> None:
        if self.is_running():
            return
        self._stop.clear()
        self._threads = [
            Thread(target=self._loop, name=f'shipyard-worker-{index}', daemon=True)
            for index in range(1, self.concurrency + 1)
        ]
        for thread in self._threads:
            thread.start()
        _log.info('worker_pool_started concurrency=%d backend=%s', self.concurrency, getattr(self.queue, 'backend', '?'))

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                deployment_id = self.queue.dequeue(timeout=self.poll_timeout)
            except InfraError:
                _log.warning('worker_dequeue_failed', exc_info=True)
                self._stop.wait(self.error_backoff_seconds)
                continue
            if deployment_id is None:
                continue
            self.process(deployment_id)

    def process(self, deployment_id: str) -> dict | None:
        try:
            return self.service.run_deployment(deployment_id)
        except KeyError:
            _log.warning('worker_deployment_missing deployment_id=%s', deployment_id)
        except Exception:
            _log.error('worker_job_failed deployment_id=%s', deployment_id, exc_info=True)
        finally:
            self.queue.ack(deployment_id)
        return None

    def stop(self, *, timeout: float = 30.0) -> None:
        """Stop taking jobs and wait for in-flight builds up to *timeout* each."""
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        still_running = [t.name for t in self._threads if t.is_alive()]
        if still_running:
            _log.warning('worker_pool_stop_timeout threads=%s', ','.join(still_running))
        self._threads = []
        _log.info('worker_pool_stopped')

    def is_running(self) -> bool:
        return any(t.is_alive() for t in self._threads)
