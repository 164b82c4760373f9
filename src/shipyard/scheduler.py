from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
import shlex
from threading import Event, Lock, Thread
import time
from typing import Callable

from shipyard.cron import next_run, parse_cron, resolve_timezone, upcoming_runs
from shipyard.domain.models import CronExecutionStatus, deployment_url
from shipyard.errors import InfraError, InputValidationError, SandboxCancelled, SandboxTimeout
from shipyard.observability import get_logger, get_tracer, job_context, span
from shipyard.repository import (
    CronExecutionCreateRecord,
    CronJobCreateRecord,
    DeploymentRepository,
    iso_utc,
    utc_now,
)
from shipyard.sandbox.base import SandboxExecutor, SandboxSpec, sandbox_name

_log = get_logger('shipyard.scheduler')

MAX_OUTPUT_CHARS = 10_000
MAX_TIMEOUT_SECONDS = 900
MAX_RETRY_COUNT = 10
_EDITABLE_FIELDS = frozenset({'schedule', 'path', 'timezone', 'timeout_seconds', 'retry_count', 'enabled'})


@dataclass(frozen=True)
class CronJobInput:
    project_id: str
    schedule: str
    path: str = '/'
    timezone: str = 'UTC'
    timeout_seconds: int = 60
    retry_count: int = 0
    enabled: bool = True


def _validate_path(path: str) -> str:
    text = str(path or '/').strip() or '/'
    if not text.startswith('/') or any(ch.isspace() for ch in text):
        raise InputValidationError(f'cron path must start with "/": {path!r}', field='path')
    return text


def _validate_int(value, *, field: str, minimum: int, maximum: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise InputValidationError(f'{field} must be an integer', field=field) from exc
    if number < minimum or number > maximum:
        raise InputValidationError(f'{field} must be between {minimum} and {maximum}', field=field)
    return number


def _clip_output(text: str) -> str:
    value = str(text or '')
    if len(value) <= MAX_OUTPUT_CHARS:
        return value
    return value[-MAX_OUTPUT_CHARS:]


def curl_command(url: str, *, timeout_seconds: int, job_id: str, execution_id: str) -> str:
    argv = [
        'curl',
        '--silent',
        '--show-error',
        '--fail-with-body',
        '--request',
        'POST',
        '--max-time',
        str(int(timeout_seconds)),
        '--header',
        'X-Shipyard-Cron: 1',
        '--header',
        f'X-Shipyard-Job-Id: {job_id}',
        '--header',
        f'X-Shipyard-Execution-Id: {execution_id}',
        url,
    ]
    return ' '.join(shlex.quote(part) for part in argv)


class CronScheduler:
    """Claims due cron jobs and runs each attempt in its own sandbox.

    ``tick`` is the unit of work; ``start`` runs it on a background thread.
    Scheduled and manual runs go through ``run_job``, so timeout and retry
    rules are identical for both.
    """

    def __init__(
        self,
        *,
        repository: DeploymentRepository,
        executor: SandboxExecutor,
        base_domain: str,
        image: str = 'curlimages/curl:8.10.1',
        poll_seconds: float = 30.0,
        retry_backoff_seconds: float = 5.0,
        max_workers: int = 4,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.executor = executor
        self.base_domain = base_domain
        self.image = image
        self.poll_seconds = max(0.05, float(poll_seconds))
        self.retry_backoff_seconds = max(0.0, float(retry_backoff_seconds))
        self.max_workers = max(1, int(max_workers))
        self._sleep = sleep
        self._clock = clock
        self._pool: ThreadPoolExecutor | None = None
        self._pool_lock = Lock()
        self._trigger_lock = Lock()
        self._stop = Event()
        self._thread: Thread | None = None

    # --- job CRUD -----------------------------------------------------

    def _compute_next_run(self, schedule: str, tz: str, enabled: bool) -> datetime | None:
        cron = parse_cron(schedule)
        resolve_timezone(tz)
        if not enabled:
            return None
        upcoming = next_run(cron, self._clock(), tz)
        if upcoming is None:
            raise InputValidationError(f'schedule never fires within a year: {schedule}', field='schedule', code='invalid_cron')
        return upcoming

    def create_job(self, payload: CronJobInput) -> dict:
        schedule = ' '.join(str(payload.schedule or '').split())
        tz = str(payload.timezone or 'UTC').strip() or 'UTC'
        enabled = bool(payload.enabled)
        next_run_at = self._compute_next_run(schedule, tz, enabled)
        row = self.repository.create_cron_job(
            CronJobCreateRecord(
                project_id=payload.project_id,
                schedule=schedule,
                path=_validate_path(payload.path),
                timezone=tz,
                timeout_seconds=_validate_int(payload.timeout_seconds, field='timeout_seconds', minimum=1, maximum=MAX_TIMEOUT_SECONDS),
                retry_count=_validate_int(payload.retry_count, field='retry_count', minimum=0, maximum=MAX_RETRY_COUNT),
                enabled=enabled,
                next_run_at=next_run_at,
            )
        )
        _log.info('cron_job_created cron_job_id=%s schedule=%s next_run_at=%s', row['cron_job_id'], schedule, row['next_run_at'])
        return self.job_view(row)

    def update_job(self, job_id: str, **changes) -> dict:
        current = self.repository.get_cron_job(job_id)
        if current is None:
            raise KeyError(job_id)
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise InputValidationError(f'unsupported fields: {sorted(unknown)}', field=sorted(unknown)[0])
        changes = {k: v for k, v in changes.items() if v is not None}
        updates: dict = {}
        if 'path' in changes:
            updates['path'] = _validate_path(changes['path'])
        if 'timeout_seconds' in changes:
            updates['timeout_seconds'] = _validate_int(
                changes['timeout_seconds'], field='timeout_seconds', minimum=1, maximum=MAX_TIMEOUT_SECONDS
            )
        if 'retry_count' in changes:
            updates['retry_count'] = _validate_int(changes['retry_count'], field='retry_count', minimum=0, maximum=MAX_RETRY_COUNT)
        if {'schedule', 'timezone', 'enabled'} & set(changes):
            schedule = ' '.join(str(changes.get('schedule', current['schedule']) or '').split())
            tz = str(changes.get('timezone', current['timezone']) or 'UTC').strip() or 'UTC'
            enabled = bool(changes.get('enabled', current['enabled']))
            updates.update(
                schedule=schedule,
                timezone=tz,
                enabled=enabled,
                next_run_at=self._compute_next_run(schedule, tz, enabled),
            )
        if not updates:
            return self.job_view(current)
        row = self.repository.update_cron_job(job_id, **updates)
        _log.info('cron_job_updated cron_job_id=%s fields=%s', job_id, ','.join(sorted(updates)))
        return self.job_view(row)

    def delete_job(self, job_id: str) -> bool:
        deleted = self.repository.delete_cron_job(job_id)
        if deleted:
            _log.info('cron_job_deleted cron_job_id=%s', job_id)
        return deleted

    def get_job(self, job_id: str) -> dict:
        row = self.repository.get_cron_job(job_id)
        if row is None:
            raise KeyError(job_id)
        return self.job_view(row)

    def list_jobs(self, project_id: str) -> list[dict]:
        return [self.job_view(row) for row in self.repository.list_cron_jobs(project_id=project_id)]

    def list_executions(self, job_id: str, *, limit: int = 50) -> list[dict]:
        return self.repository.list_cron_executions(job_id, limit=max(1, min(500, int(limit))))

    def job_view(self, row: dict) -> dict:
        recent = self.repository.list_cron_executions(row['cron_job_id'], limit=50)
        finished = [r for r in recent if r['status'] != CronExecutionStatus.RUNNING.value]
        success = sum(1 for r in finished if r['status'] == CronExecutionStatus.SUCCESS.value)
        return {
            **row,
            'success_rate_50': (success / len(finished)) if finished else None,
            'executions_50': len(finished),
        }

    @staticmethod
    def preview(schedule: str, *, tz: str = 'UTC', count: int = 5, after: datetime | None = None) -> dict:
        runs = upcoming_runs(schedule, count=count, tz=tz, after=after)
        return {
            'schedule': ' '.join(str(schedule or '').split()),
            'timezone': tz,
            'runs': [iso_utc(run) for run in runs],
        }

    # --- execution ----------------------------------------------------

    def _submit(self, fn, *args, **kwargs) -> Future:
        with self._pool_lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix='shipyard-cron')
            return self._pool.submit(fn, *args, **kwargs)

    def trigger(self, job_id: str, *, external_trigger_id: str | None = None, wait: bool = False) -> dict:
        """Manual run through the same path as scheduled runs.

        With *external_trigger_id*, a repeated trigger returns the executions
        already recorded for that id instead of starting another run.
        """
        job = self.repository.get_cron_job(job_id)
        if job is None:
            raise KeyError(job_id)
        trigger_id = str(external_trigger_id or '').strip() or None
        with self._trigger_lock:
            if trigger_id:
                existing = self.repository.find_cron_executions_by_trigger(job_id, trigger_id)
                if existing:
                    _log.info('cron_trigger_deduped cron_job_id=%s external_trigger_id=%s', job_id, trigger_id)
                    return {'deduped': True, 'execution': existing[0], 'executions': existing}
            first = self.repository.create_cron_execution(
                CronExecutionCreateRecord(
                    cron_job_id=job_id,
                    attempt=1,
                    trigger='manual',
                    external_trigger_id=trigger_id,
                )
            )
        if wait:
            last = self.run_job(job, trigger='manual', external_trigger_id=trigger_id, first_execution=first)
            return {'deduped': False, 'execution': last, 'executions': [last]}
        self._submit(self._run_logged, job, trigger='manual', external_trigger_id=trigger_id, first_execution=first)
        return {'deduped': False, 'execution': first, 'executions': [first]}

    def _run_logged(self, job: dict, **kwargs) -> dict | None:
        try:
            return self.run_job(job, **kwargs)
        except Exception:
            _log.error('cron_run_failed cron_job_id=%s', job.get('cron_job_id'), exc_info=True)
            return None

    def _target_url(self, job: dict) -> str | None:
        project = self.repository.get_project(job['project_id'])
        active = self.repository.get_active_deployment(job['project_id'])
        if project is None or active is None:
            return None
        return deployment_url(project['slug'], active['deployment_id'], self.base_domain) + job['path']

    def run_job(
        self,
        job: dict,
        *,
        trigger: str = 'schedule',
        external_trigger_id: str | None = None,
        first_execution: dict | None = None,
    ) -> dict:
        """Run up to ``retry_count + 1`` attempts and return the last execution."""
        with job_context(cron_job_id=job['cron_job_id']):
            return self._run_attempts(
                job,
                trigger=trigger,
                external_trigger_id=external_trigger_id,
                first_execution=first_execution,
            )

    def _run_attempts(self, job: dict, *, trigger: str, external_trigger_id: str | None, first_execution: dict | None) -> dict:
        job_id = job['cron_job_id']
        tracer = get_tracer('shipyard.scheduler')
        attempts = int(job.get('retry_count') or 0) + 1
        execution: dict = {}
        try:
            for attempt in range(1, attempts + 1):
                if attempt == 1 and first_execution is not None:
                    execution = first_execution
                else:
                    execution = self.repository.create_cron_execution(
                        CronExecutionCreateRecord(
                            cron_job_id=job_id,
                            attempt=attempt,
                            trigger=trigger,
                            external_trigger_id=external_trigger_id,
                        )
                    )
                url = self._target_url(job)
                if url is None:
                    execution = self.repository.finish_cron_execution(
                        execution['execution_id'],
                        status=CronExecutionStatus.ERROR.value,
                        output='',
                        error_text='no active deployment',
                        duration_ms=0,
                    )
                    break
                with span(tracer, 'cron.attempt', {'attempt': attempt}):
                    execution = self._run_attempt(job, execution, url)
                if execution['status'] == CronExecutionStatus.SUCCESS.value or attempt >= attempts:
                    break
                backoff = self.retry_backoff_seconds * (2 ** (attempt - 1))
                _log.warning(
                    'cron_retry cron_job_id=%s attempt=%d status=%s backoff=%.1f',
                    job_id,
                    attempt,
                    execution['status'],
                    backoff,
                )
                self._sleep(backoff)
            self.repository.update_cron_job(job_id, last_run_at=utc_now(), last_status=execution.get('status'))
        except KeyError:
            _log.info('cron_job_gone cron_job_id=%s', job_id)
        return execution

    def _run_attempt(self, job: dict, execution: dict, url: str) -> dict:
        execution_id = execution['execution_id']
        timeout_seconds = int(job['timeout_seconds'])
        spec = SandboxSpec(
            name=sandbox_name('cron', execution_id),
            image=self.image,
            command=curl_command(url, timeout_seconds=timeout_seconds, job_id=job['cron_job_id'], execution_id=execution_id),
            cpus=0.25,
            memory_mb=128,
            pids_limit=64,
            timeout_seconds=timeout_seconds + 5,
            network='bridge',
            labels={'shipyard.io/cron-job-id': job['cron_job_id']},
        )
        started = time.monotonic()
        status = CronExecutionStatus.ERROR.value
        output = ''
        error_text: str | None = None
        try:
            result = self.executor.run_sandboxed(spec)
        except SandboxTimeout as exc:
            status = CronExecutionStatus.TIMEOUT.value
            output = exc.log_tail
            error_text = f'timed out after {timeout_seconds}s'
        except (InfraError, SandboxCancelled) as exc:
            error_text = f'infra: {exc}'
        else:
            output = result.stdout_tail
            if result.exit_code == 0:
                status = CronExecutionStatus.SUCCESS.value
            elif result.exit_code == 28:
                # curl exit 28: its own --max-time fired first
                status = CronExecutionStatus.TIMEOUT.value
                error_text = f'timed out after {timeout_seconds}s'
            else:
                error_text = f'exit code {result.exit_code}'
        duration_ms = int((time.monotonic() - started) * 1000)
        _log.info(
            'cron_attempt_finished cron_job_id=%s execution_id=%s status=%s duration_ms=%d',
            job['cron_job_id'],
            execution_id,
            status,
            duration_ms,
        )
        return self.repository.finish_cron_execution(
            execution_id,
            status=status,
            output=_clip_output(output),
            error_text=error_text,
            duration_ms=duration_ms,
        )

    # --- loop ---------------------------------------------------------

    def tick(self, now: datetime | None = None) -> list[str]:
        """Claim every due job once and submit it. Returns the claimed job ids."""
        current = now or self._clock()
        claimed: list[str] = []
        for job in self.repository.list_due_cron_jobs(current):
            expected = job['next_run_at']
            expected_dt = datetime.fromisoformat(expected) if isinstance(expected, str) else expected
            try:
                upcoming = next_run(job['schedule'], current, job['timezone'])
            except InputValidationError:
                _log.warning('cron_schedule_invalid cron_job_id=%s schedule=%s', job['cron_job_id'], job['schedule'])
                upcoming = None
            row = self.repository.claim_cron_run(job['cron_job_id'], expected_next_run_at=expected_dt, next_run_at=upcoming)
            if row is None:
                continue
            claimed.append(job['cron_job_id'])
            _log.info('cron_job_claimed cron_job_id=%s slot=%s next_run_at=%s', job['cron_job_id'], expected, iso_utc(upcoming))
            self._submit(self._run_logged, row, trigger='schedule')
        return claimed

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                _log.error('cron_tick_failed', exc_info=True)
            self._stop.wait(self.poll_seconds)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = Thread(target=self._loop, name='shipyard-cron-scheduler', daemon=True)
        self._thread.start()
        _log.info('cron_scheduler_started poll_seconds=%.1f workers=%d', self.poll_seconds, self.max_workers)

    def stop(self, *, wait: bool = True) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.poll_seconds + 5)
            self._thread = None
        with self._pool_lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=wait)
        _log.info('cron_scheduler_stopped')

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
