from __future__ import annotations

from datetime import datetime, timezone
import threading

import pytest

from shipyard.domain.models import deployment_url
from shipyard.errors import InfraError, InputValidationError, SandboxTimeout
from shipyard.repository import DeploymentCreateRecord, InMemoryDeploymentRepository, ProjectCreateRecord
from shipyard.sandbox.base import SandboxResult
from shipyard.scheduler import CronJobInput, CronScheduler

NOW = datetime(2026, 1, 1, 10, 0, tzinfo=timezone.utc)


class FakeExecutor:
    backend = 'fake'

    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [0])
        self.specs = []

    def run_sandboxed(self, spec, *, should_cancel=None):
        self.specs.append(spec)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return SandboxResult(exit_code=outcome, stdout_tail=f'exit {outcome}', artifact_path=None, duration_seconds=0.01)


def _repo_with_live_site() -> tuple[InMemoryDeploymentRepository, dict, dict]:
    repo = InMemoryDeploymentRepository()
    project = repo.create_project(
        ProjectCreateRecord(name='Site', slug='site', repo_url='https://x/y.git', owner_id='alice')
    )
    deployment, _ = repo.create_deployment(
        DeploymentCreateRecord(
            project_id=project['project_id'],
            branch='main',
            commit_sha='a' * 40,
            commit_message='',
            is_preview=False,
        )
    )
    repo.update_deployment_if(deployment['deployment_id'], expected_status='queued', status='building')
    repo.update_deployment_if(deployment['deployment_id'], expected_status='building', status='deploying')
    repo.finalize_deployment(deployment['deployment_id'], promote=True)
    return repo, project, deployment


def _scheduler(repo, executor, sleeps=None) -> CronScheduler:
    return CronScheduler(
        repository=repo,
        executor=executor,
        base_domain='shipyard.test',
        retry_backoff_seconds=2.0,
        sleep=(sleeps.append if sleeps is not None else (lambda _: None)),
        clock=lambda: NOW,
    )


def test_create_job_computes_next_run():
    repo, project, _ = _repo_with_live_site()
    job = _scheduler(repo, FakeExecutor()).create_job(
        CronJobInput(project_id=project['project_id'], schedule=' */5  * * * * ', path='/api/cron')
    )
    assert job['schedule'] == '*/5 * * * *'
    assert job['next_run_at'] == '2026-01-01T10:05:00+00:00'
    assert job['success_rate_50'] is None


def test_disabled_job_has_no_next_run():
    repo, project, _ = _repo_with_live_site()
    job = _scheduler(repo, FakeExecutor()).create_job(
        CronJobInput(project_id=project['project_id'], schedule='@daily', enabled=False)
    )
    assert job['next_run_at'] is None


@pytest.mark.parametrize(
    'overrides, field',
    [
        ({'schedule': '0 0 30 2 *'}, 'schedule'),
        ({'schedule': 'every minute'}, 'schedule'),
        ({'path': 'api/cron'}, 'path'),
        ({'timeout_seconds': 0}, 'timeout_seconds'),
        ({'retry_count': 11}, 'retry_count'),
        ({'timezone': 'Nowhere/City'}, 'timezone'),
    ],
)
def test_create_job_validation(overrides, field):
    repo, project, _ = _repo_with_live_site()
    values = {'project_id': project['project_id'], 'schedule': '*/5 * * * *'}
    values.update(overrides)
    with pytest.raises(InputValidationError) as exc:
        _scheduler(repo, FakeExecutor()).create_job(CronJobInput(**values))
    assert exc.value.field == field


def test_update_job_recomputes_next_run():
    repo, project, _ = _repo_with_live_site()
    scheduler = _scheduler(repo, FakeExecutor())
    job = scheduler.create_job(CronJobInput(project_id=project['project_id'], schedule='*/5 * * * *'))
    updated = scheduler.update_job(job['cron_job_id'], schedule='0 12 * * *', retry_count=2)
    assert updated['next_run_at'] == '2026-01-01T12:00:00+00:00'
    assert updated['retry_count'] == 2
    paused = scheduler.update_job(job['cron_job_id'], enabled=False)
    assert paused['next_run_at'] is None
    with pytest.raises(KeyError):
        scheduler.update_job('cron-missing', path='/x')


def test_tick_claims_due_jobs_once_and_runs_them():
    repo, project, deployment = _repo_with_live_site()
    executor = FakeExecutor([0])
    scheduler = _scheduler(repo, executor)
    job = scheduler.create_job(CronJobInput(project_id=project['project_id'], schedule='*/5 * * * *', path='/api/ping'))

    due = datetime(2026, 1, 1, 10, 5, tzinfo=timezone.utc)
    assert scheduler.tick(now=due) == [job['cron_job_id']]
    assert scheduler.tick(now=due) == []
    scheduler.stop(wait=True)

    stored = repo.get_cron_job(job['cron_job_id'])
    assert stored['next_run_at'] == '2026-01-01T10:10:00+00:00'
    assert stored['last_status'] == 'success'
    executions = repo.list_cron_executions(job['cron_job_id'])
    assert [e['status'] for e in executions] == ['success']
    assert executions[0]['trigger'] == 'schedule'

    command = executor.specs[0].command
    assert deployment_url('site', deployment['deployment_id'], 'shipyard.test') + '/api/ping' in command
    assert executor.specs[0].network == 'bridge'


def test_competing_schedulers_claim_a_slot_once():
    repo, project, _ = _repo_with_live_site()
    first = _scheduler(repo, FakeExecutor())
    second = _scheduler(repo, FakeExecutor())
    first.create_job(CronJobInput(project_id=project['project_id'], schedule='*/5 * * * *'))
    due = datetime(2026, 1, 1, 10, 5, tzinfo=timezone.utc)
    claimed = first.tick(now=due) + second.tick(now=due)
    first.stop(wait=True)
    second.stop(wait=True)
    assert len(claimed) == 1


def test_retries_with_backoff_until_success():
    repo, project, _ = _repo_with_live_site()
    sleeps: list[float] = []
    scheduler = _scheduler(repo, FakeExecutor([22, InfraError('no docker'), 0]), sleeps)
    job = scheduler.create_job(CronJobInput(project_id=project['project_id'], schedule='@hourly', retry_count=3))

    result = scheduler.trigger(job['cron_job_id'], wait=True)

    assert result['execution']['status'] == 'success'
    assert sleeps == [2.0, 4.0]
    executions = repo.list_cron_executions(job['cron_job_id'])
    assert sorted(e['attempt'] for e in executions) == [1, 2, 3]
    assert {e['trigger'] for e in executions} == {'manual'}


def test_timeouts_are_recorded():
    repo, project, _ = _repo_with_live_site()
    scheduler = _scheduler(repo, FakeExecutor([28]))
    job = scheduler.create_job(CronJobInput(project_id=project['project_id'], schedule='@hourly', timeout_seconds=5))
    result = scheduler.trigger(job['cron_job_id'], wait=True)
    assert result['execution']['status'] == 'timeout'

    scheduler = _scheduler(repo, FakeExecutor([SandboxTimeout('slow', timeout_seconds=10, log_tail='partial')]))
    result = scheduler.trigger(job['cron_job_id'], wait=True)
    assert result['execution']['status'] == 'timeout'
    assert result['execution']['output'] == 'partial'


def test_trigger_without_active_deployment_records_error():
    repo = InMemoryDeploymentRepository()
    project = repo.create_project(ProjectCreateRecord(name='New', slug='new', repo_url='https://x/y.git', owner_id='alice'))
    executor = FakeExecutor()
    scheduler = _scheduler(repo, executor)
    job = scheduler.create_job(CronJobInput(project_id=project['project_id'], schedule='@hourly'))
    result = scheduler.trigger(job['cron_job_id'], wait=True)
    assert result['execution']['status'] == 'error'
    assert result['execution']['error_text'] == 'no active deployment'
    assert executor.specs == []


def test_trigger_deduplicates_by_external_id():
    repo, project, _ = _repo_with_live_site()
    executor = FakeExecutor()
    scheduler = _scheduler(repo, executor)
    job = scheduler.create_job(CronJobInput(project_id=project['project_id'], schedule='@hourly'))

    first = scheduler.trigger(job['cron_job_id'], external_trigger_id='evt-1', wait=True)
    again = scheduler.trigger(job['cron_job_id'], external_trigger_id='evt-1', wait=True)

    assert first['deduped'] is False
    assert again['deduped'] is True
    assert len(executor.specs) == 1
    with pytest.raises(KeyError):
        scheduler.trigger('cron-missing')


def test_preview_lists_upcoming_runs():
    preview = CronScheduler.preview('0 */12 * * *', count=2, after=NOW)
    assert preview['runs'] == ['2026-01-01T12:00:00+00:00', '2026-01-02T00:00:00+00:00']


def test_delete_job_removes_history():
    repo, project, _ = _repo_with_live_site()
    scheduler = _scheduler(repo, FakeExecutor())
    job = scheduler.create_job(CronJobInput(project_id=project['project_id'], schedule='@hourly'))
    scheduler.trigger(job['cron_job_id'], wait=True)
    assert scheduler.delete_job(job['cron_job_id']) is True
    assert scheduler.delete_job(job['cron_job_id']) is False
    with pytest.raises(KeyError):
        repo.list_cron_executions(job['cron_job_id'])


class HeldFirstRunExecutor(FakeExecutor):
    """Blocks the first sandbox run until released; later runs finish at once."""

    def __init__(self):
        super().__init__([0])
        self.first_started = threading.Event()
        self.release = threading.Event()
        self._calls = 0
        self._lock = threading.Lock()

    def run_sandboxed(self, spec, *, should_cancel=None):
        with self._lock:
            self._calls += 1
            first = self._calls == 1
        if first:
            self.first_started.set()
            assert self.release.wait(timeout=10)
        return super().run_sandboxed(spec, should_cancel=should_cancel)


def test_manual_trigger_while_a_run_is_in_flight_starts_a_second_execution():
    repo, project, _ = _repo_with_live_site()
    executor = HeldFirstRunExecutor()
    scheduler = _scheduler(repo, executor)
    job = scheduler.create_job(CronJobInput(project_id=project['project_id'], schedule='@hourly'))

    try:
        running = scheduler.trigger(job['cron_job_id'])
        assert executor.first_started.wait(timeout=5)

        second = scheduler.trigger(job['cron_job_id'], wait=True)

        assert second['deduped'] is False
        assert second['execution']['status'] == 'success'
        assert second['execution']['execution_id'] != running['execution']['execution_id']
        held = [e for e in repo.list_cron_executions(job['cron_job_id']) if e['execution_id'] == running['execution']['execution_id']]
        assert held[0]['status'] == 'running'
    finally:
        executor.release.set()
        scheduler.stop(wait=True)

    executions = repo.list_cron_executions(job['cron_job_id'])
    assert len({e['execution_id'] for e in executions}) == 2
    assert [e['status'] for e in executions] == ['success', 'success']
    assert len(executor.specs) == 2
