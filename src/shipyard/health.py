from __future__ import annotations

from dataclasses import dataclass
import time
from typing import Callable

from shipyard.observability import get_logger

_log = get_logger('shipyard.health')

STATUS_HEALTHY = 'healthy'
STATUS_DEGRADED = 'degraded'
STATUS_UNHEALTHY = 'unhealthy'


@dataclass(frozen=True)
class CheckResult:
    name: str
    ok: bool
    detail: str
    duration_ms: int


class HealthChecker:
    """Runs each named probe independently; one failing probe never masks another."""

    def __init__(self, checks: dict[str, Callable[[], bool]]):
        self.checks = dict(checks)

    def _run_one(self, name: str, probe: Callable[[], bool]) -> CheckResult:
        started = time.monotonic()
        try:
            ok = bool(probe())
            detail = 'ok' if ok else 'check returned false'
        except Exception as exc:
            _log.warning('health_check_failed check=%s', name, exc_info=True)
            ok = False
            detail = f'{type(exc).__name__}: {exc}'
        return CheckResult(name=name, ok=ok, detail=detail, duration_ms=int((time.monotonic() - started) * 1000))

    def run(self) -> dict:
        results = [self._run_one(name, probe) for name, probe in self.checks.items()]
        passed = sum(1 for r in results if r.ok)
        if results and passed == len(results):
            status = STATUS_HEALTHY
        elif passed:
            status = STATUS_DEGRADED
        else:
            status = STATUS_UNHEALTHY
        return {
            'status': status,
            'checks': {
                r.name: {'ok': r.ok, 'detail': r.detail, 'duration_ms': r.duration_ms}
                for r in results
            },
        }


def build_health_checker(*, repository, queue, publisher, pipeline) -> HealthChecker:
    def pipeline_ready() -> bool:
        if not pipeline.cloner.available():
            raise RuntimeError(f'{pipeline.cloner.git_command} not found on PATH')
        if not pipeline.workspaces.check_writable():
            raise RuntimeError(f'workspace not writable: {pipeline.workspaces.builds_root}')
        return True

    return HealthChecker(
        {
            'store': repository.ping,
            'queue': queue.check,
            'artifacts': publisher.check,
            'pipeline': pipeline_ready,
            'sandbox': pipeline.executor.check,
        }
    )
