from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from itertools import count
from threading import RLock
from typing import Protocol
from uuid import uuid4

from shipyard.domain.events import EventType, normalize_event_type
from shipyard.domain.models import CronExecutionStatus, DeploymentStatus

DEPLOYMENT_MUTABLE_FIELDS = frozenset(
    {
        'status',
        'started_at',
        'ready_at',
        'build_duration_ms',
        'artifact_location',
        'error_reason',
        'error_kind',
        'log_tail',
        'framework',
        'cancel_requested',
    }
)
CRON_MUTABLE_FIELDS = frozenset(
    {
        'schedule',
        'path',
        'enabled',
        'timezone',
        'timeout_seconds',
        'retry_count',
        'next_run_at',
        'last_run_at',
        'last_status',
    }
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_utc(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.isoformat()


def new_id(prefix: str) -> str:
    return f'{prefix}-{uuid4().hex[:12]}'


@dataclass(frozen=True)
class ProjectCreateRecord:
    name: str
    slug: str
    repo_url: str
    owner_id: str
    production_branch: str | None = None
    member_ids: list[str] = field(default_factory=list)
    env_vars: dict[str, str] = field(default_factory=dict)
    install_command: str | None = None
    build_command: str | None = None
    output_directory: str | None = None
    framework: str | None = None
    webhook_secrets: dict[str, str] = field(default_factory=dict)
    tier: str = 'hobby'


@dataclass(frozen=True)
class DeploymentCreateRecord:
    project_id: str
    branch: str
    commit_sha: str
    commit_message: str
    is_preview: bool
    pr_number: int | None = None
    trigger: str = 'manual'
    idempotency_key: str | None = None


@dataclass(frozen=True)
class CronJobCreateRecord:
    project_id: str
    schedule: str
    path: str
    timezone: str
    timeout_seconds: int
    retry_count: int
    enabled: bool
    next_run_at: datetime | None


@dataclass(frozen=True)
class CronExecutionCreateRecord:
    cron_job_id: str
    attempt: int
    trigger: str
    external_trigger_id: str | None = None


class DeploymentRepository(Protocol):
    def ping(self) -> bool:
        ...

    def create_project(self, record: ProjectCreateRecord) -> dict:
        ...

    def get_project(self, project_id: str) -> dict | None:
        ...

    def list_projects(self, *, limit: int = 100) -> list[dict]:
        ...

    def create_deployment(self, record: DeploymentCreateRecord) -> tuple[dict, bool]:
        """Insert a QUEUED deployment.

        Returns ``(row, created)``. When *record.idempotency_key* was already
        used within the same project, the existing row is returned with ``created=False``.
        """
        ...

    def get_deployment(self, deployment_id: str) -> dict | None:
        ...

    def list_deployments(self, *, project_id: str | None = None, limit: int = 100) -> list[dict]:
        ...

    def update_deployment_if(self, deployment_id: str, *, expected_status: str, **changes) -> dict | None:
        """Apply *changes* only if the current status equals *expected_status*.

        Returns ``None`` when a concurrent transition already happened.
        """
        ...

    def set_cancel_requested(self, deployment_id: str, *, requested: bool) -> dict:
        ...

    def is_cancel_requested(self, deployment_id: str) -> bool:
        ...

    def finalize_deployment(self, deployment_id: str, *, promote: bool, **changes) -> dict | None:
        """Move DEPLOYING to READY and, when *promote*, swap the production alias.

        Demotion of the previously active deployment happens in the same
        transaction. A deployment that arrived before the currently active
        one is left inactive. Returns ``{'deployment', 'promoted',
        'demoted_id', 'superseded_by'}`` or ``None`` if the status CAS failed.
        """
        ...

    def activate_deployment(self, deployment_id: str) -> dict | None:
        """Make a READY production deployment the active one, ignoring arrival order."""
        ...

    def get_active_deployment(self, project_id: str) -> dict | None:
        ...

    def append_event(self, deployment_id: str, *, event_type: str | EventType, payload: dict) -> dict:
        ...

    def list_events(self, deployment_id: str, *, after_id: int = 0, limit: int = 1000) -> list[dict]:
        ...

    def list_project_events(self, project_id: str, *, after_id: int = 0, limit: int = 1000) -> list[dict]:
        ...

    def create_cron_job(self, record: CronJobCreateRecord) -> dict:
        ...

    def get_cron_job(self, job_id: str) -> dict | None:
        ...

    def list_cron_jobs(self, *, project_id: str | None = None) -> list[dict]:
        ...

    def update_cron_job(self, job_id: str, **changes) -> dict:
        ...

    def delete_cron_job(self, job_id: str) -> bool:
        ...

    def list_due_cron_jobs(self, now: datetime, *, limit: int = 100) -> list[dict]:
        ...

    def claim_cron_run(self, job_id: str, *, expected_next_run_at: datetime, next_run_at: datetime | None) -> dict | None:
        ...

    def create_cron_execution(self, record: CronExecutionCreateRecord) -> dict:
        ...

    def finish_cron_execution(
        self,
        execution_id: str,
        *,
        status: str,
        output: str,
        error_text: str | None,
        duration_ms: int,
    ) -> dict:
        ...

    def list_cron_executions(self, job_id: str, *, limit: int = 50) -> list[dict]:
        ...

    def find_cron_executions_by_trigger(self, job_id: str, external_trigger_id: str) -> list[dict]:
        ...


def _public(row: dict) -> dict:
    out = {}
    for key, value in row.items():
        if isinstance(value, datetime):
            out[key] = iso_utc(value)
        elif isinstance(value, list):
            out[key] = list(value)
        elif isinstance(value, dict):
            out[key] = dict(value)
        else:
            out[key] = value
    return out


def _check_fields(changes: dict, allowed: frozenset[str]) -> None:
    unknown = set(changes) - allowed
    if unknown:
        raise ValueError(f'unsupported fields: {sorted(unknown)}')


class InMemoryDeploymentRepository:
    def __init__(self):
        self._lock = RLock()
        self.projects: dict[str, dict] = {}
        self.deployments: dict[str, dict] = {}
        self.idempotency_keys: dict[tuple[str, str], str] = {}
        self.events: list[dict] = []
        self.cron_jobs: dict[str, dict] = {}
        self.cron_executions: list[dict] = []
        self._deployment_seq = count(1)
        self._event_ids = count(1)

    def ping(self) -> bool:
        return True

    def create_project(self, record: ProjectCreateRecord) -> dict:
        now = utc_now()
        row = {
            'project_id': new_id('prj'),
            'name': record.name,
            'slug': record.slug,
            'repo_url': record.repo_url,
            'production_branch': record.production_branch,
            'owner_id': record.owner_id,
            'member_ids': list(record.member_ids),
            'env_vars': dict(record.env_vars),
            'install_command': record.install_command,
            'build_command': record.build_command,
            'output_directory': record.output_directory,
            'framework': record.framework,
            'webhook_secrets': dict(record.webhook_secrets),
            'tier': record.tier,
            'created_at': now,
        }
        with self._lock:
            if any(p['slug'] == record.slug for p in self.projects.values()):
                raise ValueError(f'project slug already exists: {record.slug}')
            self.projects[row['project_id']] = row
            return _public(row)

    def get_project(self, project_id: str) -> dict | None:
        with self._lock:
            row = self.projects.get(project_id)
            return _public(row) if row else None

    def list_projects(self, *, limit: int = 100) -> list[dict]:
        with self._lock:
            rows = sorted(self.projects.values(), key=lambda r: r['created_at'], reverse=True)
            return [_public(r) for r in rows[:limit]]

    def create_deployment(self, record: DeploymentCreateRecord) -> tuple[dict, bool]:
        with self._lock:
            if record.project_id not in self.projects:
                raise KeyError(record.project_id)
            key = (record.project_id, record.idempotency_key)
            if record.idempotency_key and key in self.idempotency_keys:
                existing = self.deployments[self.idempotency_keys[key]]
                return _public(existing), False
            now = utc_now()
            row = {
                'deployment_id': new_id('dpl'),
                'seq': next(self._deployment_seq),
                'project_id': record.project_id,
                'status': DeploymentStatus.QUEUED.value,
                'branch': record.branch,
                'commit_sha': record.commit_sha,
                'commit_message': record.commit_message,
                'is_preview': bool(record.is_preview),
                'pr_number': record.pr_number,
                'trigger': record.trigger,
                'idempotency_key': record.idempotency_key,
                'queued_at': now,
                'started_at': None,
                'ready_at': None,
                'build_duration_ms': None,
                'artifact_location': None,
                'is_active': False,
                'error_reason': None,
                'error_kind': None,
                'log_tail': None,
                'framework': None,
                'cancel_requested': False,
                'updated_at': now,
            }
            self.deployments[row['deployment_id']] = row
            if record.idempotency_key:
                self.idempotency_keys[key] = row['deployment_id']
            return _public(row), True

    def get_deployment(self, deployment_id: str) -> dict | None:
        with self._lock:
            row = self.deployments.get(deployment_id)
            return _public(row) if row else None

    def list_deployments(self, *, project_id: str | None = None, limit: int = 100) -> list[dict]:
        with self._lock:
            rows = [r for r in self.deployments.values() if project_id is None or r['project_id'] == project_id]
            rows.sort(key=lambda r: r['seq'], reverse=True)
            return [_public(r) for r in rows[:limit]]

    def update_deployment_if(self, deployment_id: str, *, expected_status: str, **changes) -> dict | None:
        _check_fields(changes, DEPLOYMENT_MUTABLE_FIELDS)
        with self._lock:
            row = self.deployments.get(deployment_id)
            if row is None:
                raise KeyError(deployment_id)
            if row['status'] != expected_status:
                return None
            row.update(changes)
            row['updated_at'] = utc_now()
            return _public(row)

    def set_cancel_requested(self, deployment_id: str, *, requested: bool) -> dict:
        with self._lock:
            row = self.deployments.get(deployment_id)
            if row is None:
                raise KeyError(deployment_id)
            row['cancel_requested'] = bool(requested)
            row['updated_at'] = utc_now()
            return _public(row)

    def is_cancel_requested(self, deployment_id: str) -> bool:
        with self._lock:
            row = self.deployments.get(deployment_id)
            if row is None:
                raise KeyError(deployment_id)
            return bool(row['cancel_requested'])

    def _active_row(self, project_id: str) -> dict | None:
        for row in self.deployments.values():
            if row['project_id'] == project_id and row['is_active']:
                return row
        return None

    def finalize_deployment(self, deployment_id: str, *, promote: bool, **changes) -> dict | None:
        _check_fields(changes, DEPLOYMENT_MUTABLE_FIELDS)
        with self._lock:
            row = self.deployments.get(deployment_id)
            if row is None:
                raise KeyError(deployment_id)
            if row['status'] != DeploymentStatus.DEPLOYING.value:
                return None
            now = utc_now()
            demoted_id = None
            superseded_by = None
            promoted = False
            if promote:
                current = self._active_row(row['project_id'])
                if current is not None and current['seq'] > row['seq']:
                    superseded_by = current['deployment_id']
                else:
                    if current is not None:
                        current['is_active'] = False
                        current['updated_at'] = now
                        demoted_id = current['deployment_id']
                    row['is_active'] = True
                    promoted = True
            row.update(changes)
            row['status'] = DeploymentStatus.READY.value
            row['updated_at'] = now
            return {
                'deployment': _public(row),
                'promoted': promoted,
                'demoted_id': demoted_id,
                'superseded_by': superseded_by,
            }

    def activate_deployment(self, deployment_id: str) -> dict | None:
        with self._lock:
            row = self.deployments.get(deployment_id)
            if row is None:
                raise KeyError(deployment_id)
            if row['status'] != DeploymentStatus.READY.value or row['is_active'] or row['is_preview']:
                return None
            now = utc_now()
            current = self._active_row(row['project_id'])
            demoted_id = None
            if current is not None:
                current['is_active'] = False
                current['updated_at'] = now
                demoted_id = current['deployment_id']
            row['is_active'] = True
            row['updated_at'] = now
            return {'deployment': _public(row), 'promoted': True, 'demoted_id': demoted_id, 'superseded_by': None}

    def get_active_deployment(self, project_id: str) -> dict | None:
        with self._lock:
            row = self._active_row(project_id)
            return _public(row) if row else None

    def append_event(self, deployment_id: str, *, event_type: str | EventType, payload: dict) -> dict:
        with self._lock:
            deployment = self.deployments.get(deployment_id)
            if deployment is None:
                raise KeyError(deployment_id)
            seq = 1 + sum(1 for e in self.events if e['deployment_id'] == deployment_id)
            event = {
                'id': next(self._event_ids),
                'deployment_id': deployment_id,
                'project_id': deployment['project_id'],
                'seq': seq,
                'type': normalize_event_type(event_type),
                'payload': dict(payload),
                'created_at': utc_now(),
            }
            self.events.append(event)
            return _public(event)

    def list_events(self, deployment_id: str, *, after_id: int = 0, limit: int = 1000) -> list[dict]:
        with self._lock:
            if deployment_id not in self.deployments:
                raise KeyError(deployment_id)
            rows = [e for e in self.events if e['deployment_id'] == deployment_id and e['id'] > after_id]
            return [_public(e) for e in rows[:limit]]

    def list_project_events(self, project_id: str, *, after_id: int = 0, limit: int = 1000) -> list[dict]:
        with self._lock:
            if project_id not in self.projects:
                raise KeyError(project_id)
            rows = [e for e in self.events if e['project_id'] == project_id and e['id'] > after_id]
            return [_public(e) for e in rows[:limit]]

    def create_cron_job(self, record: CronJobCreateRecord) -> dict:
        with self._lock:
            if record.project_id not in self.projects:
                raise KeyError(record.project_id)
            now = utc_now()
            row = {
                'cron_job_id': new_id('cron'),
                'project_id': record.project_id,
                'schedule': record.schedule,
                'path': record.path,
                'enabled': bool(record.enabled),
                'timezone': record.timezone,
                'timeout_seconds': int(record.timeout_seconds),
                'retry_count': int(record.retry_count),
                'next_run_at': record.next_run_at,
                'last_run_at': None,
                'last_status': None,
                'created_at': now,
                'updated_at': now,
            }
            self.cron_jobs[row['cron_job_id']] = row
            return _public(row)

    def get_cron_job(self, job_id: str) -> dict | None:
        with self._lock:
            row = self.cron_jobs.get(job_id)
            return _public(row) if row else None

    def list_cron_jobs(self, *, project_id: str | None = None) -> list[dict]:
        with self._lock:
            rows = [r for r in self.cron_jobs.values() if project_id is None or r['project_id'] == project_id]
            rows.sort(key=lambda r: r['created_at'])
            return [_public(r) for r in rows]

    def update_cron_job(self, job_id: str, **changes) -> dict:
        _check_fields(changes, CRON_MUTABLE_FIELDS)
        with self._lock:
            row = self.cron_jobs.get(job_id)
            if row is None:
                raise KeyError(job_id)
            row.update(changes)
            row['updated_at'] = utc_now()
            return _public(row)

    def delete_cron_job(self, job_id: str) -> bool:
        with self._lock:
            if self.cron_jobs.pop(job_id, None) is None:
                return False
            self.cron_executions = [e for e in self.cron_executions if e['cron_job_id'] != job_id]
            return True

    def list_due_cron_jobs(self, now: datetime, *, limit: int = 100) -> list[dict]:
        with self._lock:
            rows = [
                r for r in self.cron_jobs.values()
                if r['enabled'] and r['next_run_at'] is not None and r['next_run_at'] <= now
            ]
            rows.sort(key=lambda r: r['next_run_at'])
            return [_public(r) for r in rows[:limit]]

    def claim_cron_run(self, job_id: str, *, expected_next_run_at: datetime, next_run_at: datetime | None) -> dict | None:
        with self._lock:
            row = self.cron_jobs.get(job_id)
            if row is None:
                raise KeyError(job_id)
            if row['next_run_at'] != expected_next_run_at:
                return None
            row['next_run_at'] = next_run_at
            row['updated_at'] = utc_now()
            return _public(row)

    def create_cron_execution(self, record: CronExecutionCreateRecord) -> dict:
        with self._lock:
            if record.cron_job_id not in self.cron_jobs:
                raise KeyError(record.cron_job_id)
            row = {
                'execution_id': new_id('cexe'),
                'cron_job_id': record.cron_job_id,
                'attempt': int(record.attempt),
                'trigger': record.trigger,
                'external_trigger_id': record.external_trigger_id,
                'status': CronExecutionStatus.RUNNING.value,
                'started_at': utc_now(),
                'finished_at': None,
                'duration_ms': None,
                'output': '',
                'error_text': None,
            }
            self.cron_executions.append(row)
            return _public(row)

    def finish_cron_execution(
        self,
        execution_id: str,
        *,
        status: str,
        output: str,
        error_text: str | None,
        duration_ms: int,
    ) -> dict:
        with self._lock:
            for row in self.cron_executions:
                if row['execution_id'] == execution_id:
                    row.update(
                        status=status,
                        output=output,
                        error_text=error_text,
                        duration_ms=int(duration_ms),
                        finished_at=utc_now(),
                    )
                    return _public(row)
        raise KeyError(execution_id)

    def list_cron_executions(self, job_id: str, *, limit: int = 50) -> list[dict]:
        with self._lock:
            if job_id not in self.cron_jobs:
                raise KeyError(job_id)
            rows = [r for r in self.cron_executions if r['cron_job_id'] == job_id]
            rows.sort(key=lambda r: r['started_at'], reverse=True)
            return [_public(r) for r in rows[:limit]]

    def find_cron_executions_by_trigger(self, job_id: str, external_trigger_id: str) -> list[dict]:
        with self._lock:
            return [
                _public(r) for r in self.cron_executions
                if r['cron_job_id'] == job_id and r['external_trigger_id'] == external_trigger_id
            ]
