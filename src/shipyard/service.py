from __future__ import annotations

from dataclasses import dataclass, field
import re
import secrets
from threading import Lock
import time
from typing import Mapping

from shipyard.broadcast import StatusBroadcaster
from shipyard.buildplan import (
    FRAMEWORKS,
    validate_branch,
    validate_commit_sha,
    validate_env_vars,
    validate_output_directory,
    validate_repo_url,
)
from shipyard.domain.events import EventType
from shipyard.domain.models import (
    DatabaseTier,
    DeploymentStatus,
    FailureKind,
    IN_FLIGHT_STATUSES,
    TERMINAL_STATUSES,
    can_access_project,
    can_transition,
    deployment_url,
    is_cancellable,
)
from shipyard.errors import (
    AuthError,
    BuildError,
    InfraError,
    InputValidationError,
    NotConfiguredError,
    SandboxCancelled,
    SandboxTimeout,
)
from shipyard.job_queue import PRIORITY_HIGH, PRIORITY_LOW, JobQueue
from shipyard.observability import get_logger, get_tracer, job_context, span
from shipyard.pipeline import PROGRESS_PUBLISHING, PROGRESS_READY, BuildPipeline, BuildRequest
from shipyard.repository import DeploymentCreateRecord, DeploymentRepository, ProjectCreateRecord, utc_now
from shipyard.sandbox.base import sandbox_name
from shipyard.sandbox.provisioning import DatabaseProvisioner
from shipyard.scheduler import CronJobInput, CronScheduler
from shipyard.storage.artifacts import ArtifactPublisher
from shipyard.webhooks import PullRequestEvent, PushEvent, normalize_webhook

_log = get_logger('shipyard.service')

_SLUG_UNSAFE_RE = re.compile(r'[^a-z0-9]+')
_TERMINAL = {s.value for s in TERMINAL_STATUSES}
_IN_FLIGHT = {s.value for s in IN_FLIGHT_STATUSES}
_TRIGGER_REDEPLOY = 'redeploy'


@dataclass(frozen=True)
class CreateProjectInput:
    name: str
    repo_url: str
    owner_id: str
    slug: str | None = None
    production_branch: str | None = None
    member_ids: list[str] = field(default_factory=list)
    env_vars: dict[str, str] = field(default_factory=dict)
    install_command: str | None = None
    build_command: str | None = None
    output_directory: str | None = None
    framework: str | None = None
    webhook_secrets: dict[str, str] = field(default_factory=dict)
    tier: str = DatabaseTier.HOBBY.value


@dataclass(frozen=True)
class CreateDeploymentInput:
    project_id: str
    ref: str
    commit_sha: str
    is_production: bool = False
    commit_message: str = ''
    idempotency_key: str | None = None


@dataclass(frozen=True)
class WebhookResult:
    accepted: bool
    deduped: bool = False
    ignored: bool = False
    deployment_id: str | None = None
    status: str | None = None
    reason: str | None = None


@dataclass(frozen=True)
class StatsView:
    total_deployments: int
    status_counts: dict[str, int]
    in_flight: int
    active_builds: int
    queue_depth: int
    error_kind_counts: dict[str, int]
    recent_terminal_total: int
    success_rate_50: float
    mean_build_duration_ms_50: float
    build_durations_ms: list[int]


def slugify(value: str) -> str:
    return _SLUG_UNSAFE_RE.sub('-', str(value or '').strip().lower()).strip('-')[:40].rstrip('-')


class OrchestratorService:
    """Owns the deployment state machine.

    Every transition is a compare-and-swap on the stored status, so a cancel
    racing a worker, or two workers racing one job, can only ever produce one
    winner. The per-project lock guards nothing but the production alias swap.
    """

    def __init__(
        self,
        *,
        repository: DeploymentRepository,
        broadcaster: StatusBroadcaster,
        queue: JobQueue,
        pipeline: BuildPipeline,
        publisher: ArtifactPublisher,
        base_domain: str = 'shipyard.local',
        webhook_secrets: Mapping[str, str | None] | None = None,
        scheduler: CronScheduler | None = None,
        provisioner: DatabaseProvisioner | None = None,
    ):
        self.repository = repository
        self.broadcaster = broadcaster
        self.queue = queue
        self.pipeline = pipeline
        self.publisher = publisher
        self.base_domain = base_domain
        self.webhook_secrets = {k: v for k, v in dict(webhook_secrets or {}).items() if v}
        self.scheduler = scheduler
        self.provisioner = provisioner
        self._locks_guard = Lock()
        self._project_locks: dict[str, Lock] = {}
        self._sandbox_guard = Lock()
        self._sandboxes: dict[str, str] = {}

    # --- projects -----------------------------------------------------

    def create_project(self, payload: CreateProjectInput) -> dict:
        name = str(payload.name or '').strip()
        if not name:
            raise InputValidationError('name is required', field='name')
        owner_id = str(payload.owner_id or '').strip()
        if not owner_id:
            raise InputValidationError('owner is required', field='owner_id')
        slug = slugify(payload.slug or name)
        if not slug:
            raise InputValidationError(f'cannot derive a slug from {name!r}', field='slug')
        tier = str(payload.tier or DatabaseTier.HOBBY.value).strip().lower()
        if tier not in {t.value for t in DatabaseTier}:
            raise InputValidationError(f'unsupported tier: {payload.tier}', field='tier')
        framework = str(payload.framework or '').strip().lower() or None
        if framework is not None and framework not in FRAMEWORKS:
            raise InputValidationError(f'unknown framework: {payload.framework}', field='framework')
        secrets_by_provider = {str(k).strip().lower(): str(v) for k, v in dict(payload.webhook_secrets or {}).items() if v}
        record = ProjectCreateRecord(
            name=name,
            slug=slug,
            repo_url=validate_repo_url(payload.repo_url),
            owner_id=owner_id,
            production_branch=validate_branch(payload.production_branch) if payload.production_branch else None,
            member_ids=[str(m).strip() for m in payload.member_ids or [] if str(m).strip()],
            env_vars=validate_env_vars(payload.env_vars),
            install_command=(payload.install_command or '').strip() or None,
            build_command=(payload.build_command or '').strip() or None,
            output_directory=validate_output_directory(payload.output_directory) if payload.output_directory else None,
            framework=framework,
            webhook_secrets=secrets_by_provider,
            tier=tier,
        )
        try:
            row = self.repository.create_project(record)
        except ValueError as exc:
            raise InputValidationError(str(exc), field='slug', code='slug_taken') from exc
        _log.info('project_created project_id=%s slug=%s owner=%s', row['project_id'], slug, owner_id)
        return self._project_view(row)

    def _project_view(self, row: dict) -> dict:
        view = {k: v for k, v in row.items() if k not in {'webhook_secrets', 'env_vars'}}
        view['env_var_keys'] = sorted(row.get('env_vars') or {})
        view['webhook_providers'] = sorted(row.get('webhook_secrets') or {})
        return view

    def _require_project(self, project_id: str, user_id: str | None) -> dict:
        project = self.repository.get_project(project_id)
        if project is None:
            raise KeyError(project_id)
        if not can_access_project(project, user_id):
            raise AuthError(f'user is not allowed to access project {project_id}', status_code=403, code='forbidden')
        return project

    def get_project(self, project_id: str, *, user_id: str | None) -> dict:
        return self._project_view(self._require_project(project_id, user_id))

    def list_projects(self, *, user_id: str | None, limit: int = 100) -> list[dict]:
        rows = self.repository.list_projects(limit=10_000)
        return [self._project_view(r) for r in rows if can_access_project(r, user_id)][:limit]

    # --- deployments --------------------------------------------------

    def _deployment_view(self, row: dict, project: dict | None = None) -> dict:
        project = project or self.repository.get_project(row['project_id'])
        view = dict(row)
        view['url'] = deployment_url(project['slug'], row['deployment_id'], self.base_domain) if project else None
        return view

    def _require_deployment(self, deployment_id: str, user_id: str | None) -> tuple[dict, dict]:
        row = self.repository.get_deployment(deployment_id)
        if row is None:
            raise KeyError(deployment_id)
        project = self._require_project(row['project_id'], user_id)
        return row, project

    def _enqueue_new(self, record: DeploymentCreateRecord) -> tuple[dict, bool]:
        row, created = self.repository.create_deployment(record)
        if not created:
            _log.info('deployment_deduped deployment_id=%s key=%s', row['deployment_id'], record.idempotency_key)
            return row, False
        deployment_id = row['deployment_id']
        self.broadcaster.emit(
            deployment_id,
            EventType.DEPLOYMENT_QUEUED,
            {'trigger': record.trigger, 'branch': record.branch, 'commit_sha': record.commit_sha},
        )
        self.broadcaster.emit(
            deployment_id,
            EventType.STATUS_CHANGE,
            {'from': None, 'to': DeploymentStatus.QUEUED.value},
        )
        priority = PRIORITY_LOW if record.is_preview else PRIORITY_HIGH
        try:
            self.queue.enqueue(deployment_id, priority=priority)
        except InfraError as exc:
            _log.error('deployment_enqueue_failed deployment_id=%s', deployment_id, exc_info=True)
            self._fail(deployment_id, kind=FailureKind.INFRA, reason=f'infra: {exc}')
            raise
        _log.info(
            'deployment_queued deployment_id=%s project_id=%s branch=%s preview=%s trigger=%s',
            deployment_id,
            record.project_id,
            record.branch,
            record.is_preview,
            record.trigger,
        )
        return row, True

    def ingest_webhook(self, provider: str, project_id: str, headers: Mapping[str, str], body: bytes) -> WebhookResult:
        """Verify, normalize and enqueue. Never blocks on the build."""
        project = self.repository.get_project(project_id)
        if project is None:
            raise KeyError(project_id)
        provider_key = str(provider or '').strip().lower()
        secret = (project.get('webhook_secrets') or {}).get(provider_key) or self.webhook_secrets.get(provider_key)
        delivery = normalize_webhook(
            provider_key,
            headers,
            body,
            secret=secret,
            production_branch=project.get('production_branch'),
        )
        event = delivery.event
        if event is None:
            _log.info('webhook_ignored provider=%s event=%s project_id=%s', delivery.provider, delivery.event_name, project_id)
            return WebhookResult(accepted=True, ignored=True, reason=f'unsupported event: {delivery.event_name}')

        if isinstance(event, PullRequestEvent):
            if event.state != 'open':
                return WebhookResult(accepted=True, ignored=True, reason='pull_request_closed')
            record = DeploymentCreateRecord(
                project_id=project_id,
                branch=validate_branch(event.source_branch),
                commit_sha=validate_commit_sha(event.commit_sha),
                commit_message=f'PR #{event.pr_number}',
                is_preview=True,
                pr_number=event.pr_number,
                trigger='webhook',
                idempotency_key=delivery.delivery_id,
            )
        elif isinstance(event, PushEvent):
            record = DeploymentCreateRecord(
                project_id=project_id,
                branch=validate_branch(event.branch),
                commit_sha=validate_commit_sha(event.commit_sha),
                commit_message=event.commit_message,
                is_preview=not event.is_production_branch,
                trigger='webhook',
                idempotency_key=delivery.delivery_id,
            )
        else:
            return WebhookResult(accepted=True, ignored=True, reason='unsupported event')

        row, created = self._enqueue_new(record)
        return WebhookResult(
            accepted=True,
            deduped=not created,
            deployment_id=row['deployment_id'],
            status=row['status'],
        )

    def create_deployment(self, payload: CreateDeploymentInput, *, user_id: str | None) -> dict:
        project = self._require_project(payload.project_id, user_id)
        record = DeploymentCreateRecord(
            project_id=project['project_id'],
            branch=validate_branch(payload.ref),
            commit_sha=validate_commit_sha(payload.commit_sha),
            commit_message=str(payload.commit_message or ''),
            is_preview=not bool(payload.is_production),
            trigger='manual',
            idempotency_key=(str(payload.idempotency_key or '').strip() or None),
        )
        row, _ = self._enqueue_new(record)
        return self._deployment_view(row, project)

    def get_deployment(self, deployment_id: str, *, user_id: str | None) -> dict:
        row, project = self._require_deployment(deployment_id, user_id)
        return self._deployment_view(row, project)

    def list_deployments(self, project_id: str, *, user_id: str | None, limit: int = 100) -> list[dict]:
        project = self._require_project(project_id, user_id)
        rows = self.repository.list_deployments(project_id=project_id, limit=max(1, min(1000, int(limit))))
        return [self._deployment_view(r, project) for r in rows]

    def redeploy(self, deployment_id: str, *, user_id: str | None) -> dict:
        source, project = self._require_deployment(deployment_id, user_id)
        row, _ = self._enqueue_new(
            DeploymentCreateRecord(
                project_id=source['project_id'],
                branch=source['branch'],
                commit_sha=source['commit_sha'],
                commit_message=source['commit_message'],
                is_preview=bool(source['is_preview']),
                pr_number=source.get('pr_number'),
                trigger=_TRIGGER_REDEPLOY,
            )
        )
        return self._deployment_view(row, project)

    def cancel_deployment(self, deployment_id: str, *, user_id: str | None) -> dict:
        row, project = self._require_deployment(deployment_id, user_id)
        changes = {
            'error_kind': FailureKind.CANCELLED.value,
            'error_reason': f'cancelled by {user_id}',
        }
        status = DeploymentStatus(row['status'])
        if not is_cancellable(status):
            raise InputValidationError(
                f'cannot cancel a deployment in status {status.value}',
                field='status',
                code='invalid_transition',
            )
        updated = None
        if status is DeploymentStatus.QUEUED:
            updated = self._transition(deployment_id, status, DeploymentStatus.CANCELLED, **changes)
            if updated is None:
                # a worker claimed it in the meantime
                row = self.repository.get_deployment(deployment_id) or row
                status = DeploymentStatus(row['status'])
        if updated is None and status is DeploymentStatus.BUILDING:
            self.repository.set_cancel_requested(deployment_id, requested=True)
            self.broadcaster.emit(deployment_id, EventType.CANCEL_REQUESTED, {'user_id': user_id})
            updated = self._transition(deployment_id, status, DeploymentStatus.CANCELLED, **changes)
            if updated is not None:
                self._teardown_build_sandboxes(deployment_id)
        if updated is None:
            current = self.repository.get_deployment(deployment_id) or row
            raise InputValidationError(
                f'cannot cancel a deployment in status {current["status"]}',
                field='status',
                code='invalid_transition',
            )
        self.broadcaster.emit(
            deployment_id,
            EventType.STATUS_CHANGE,
            {'from': status.value, 'to': DeploymentStatus.CANCELLED.value, 'reason': changes['error_reason']},
        )
        _log.info('deployment_cancelled deployment_id=%s from=%s user=%s', deployment_id, status.value, user_id)
        return self._deployment_view(updated, project)

    def _teardown_build_sandboxes(self, deployment_id: str) -> None:
        with self._sandbox_guard:
            registered = self._sandboxes.get(deployment_id)
        if registered:
            names = [registered]
        else:
            # the build may run in another process; attempt names are deterministic
            names = [
                sandbox_name('build', f'{deployment_id}-{attempt}')
                for attempt in range(1, self.pipeline.infra_retries + 2)
            ]
        for name in names:
            try:
                self.pipeline.executor.teardown(name)
            except InfraError:
                _log.warning('cancel_teardown_failed deployment_id=%s sandbox=%s', deployment_id, name, exc_info=True)

    def _project_lock(self, project_id: str) -> Lock:
        with self._locks_guard:
            lock = self._project_locks.get(project_id)
            if lock is None:
                lock = Lock()
                self._project_locks[project_id] = lock
            return lock

    def _emit_alias_change(self, result: dict, *, reason: str) -> None:
        deployment = result['deployment']
        if result['promoted']:
            self.broadcaster.emit(
                deployment['deployment_id'],
                EventType.PROMOTED,
                {'reason': reason, 'demoted_id': result['demoted_id']},
            )
            if result['demoted_id']:
                self.broadcaster.emit(
                    result['demoted_id'],
                    EventType.DEMOTED,
                    {'reason': reason, 'promoted_id': deployment['deployment_id']},
                )
        elif result.get('superseded_by'):
            self.broadcaster.emit(
                deployment['deployment_id'],
                EventType.PROMOTION_SKIPPED,
                {'reason': 'superseded', 'active_id': result['superseded_by']},
            )

    def rollback(self, deployment_id: str, *, user_id: str | None) -> dict:
        row, project = self._require_deployment(deployment_id, user_id)
        if row['is_preview'] or row['status'] != DeploymentStatus.READY.value or row['is_active']:
            raise InputValidationError(
                'rollback target must be a ready, inactive production deployment',
                field='deployment_id',
                code='invalid_transition',
            )
        with self._project_lock(row['project_id']):
            result = self.repository.activate_deployment(deployment_id)
        if result is None:
            raise InputValidationError(
                'rollback target is no longer eligible',
                field='deployment_id',
                code='invalid_transition',
            )
        self._emit_alias_change(result, reason='rollback')
        _log.info(
            'deployment_rolled_back deployment_id=%s demoted_id=%s user=%s',
            deployment_id,
            result['demoted_id'],
            user_id,
        )
        return self._deployment_view(result['deployment'], project)

    def rollback_project(self, project_id: str, *, user_id: str | None) -> dict:
        """Roll back to the most recent ready production deployment before the active one."""
        self._require_project(project_id, user_id)
        active = self.repository.get_active_deployment(project_id)
        candidates = [
            r for r in self.repository.list_deployments(project_id=project_id, limit=10_000)
            if r['status'] == DeploymentStatus.READY.value
            and not r['is_active']
            and not r['is_preview']
            and (active is None or r['seq'] < active['seq'])
        ]
        if not candidates:
            raise InputValidationError('no previous deployment to roll back to', field='project_id', code='no_rollback_target')
        target = max(candidates, key=lambda r: r['seq'])
        return self.rollback(target['deployment_id'], user_id=user_id)

    # --- worker entry point -------------------------------------------

    def _register_sandbox(self, deployment_id: str, name: str | None) -> None:
        with self._sandbox_guard:
            if name:
                self._sandboxes[deployment_id] = name
            else:
                self._sandboxes.pop(deployment_id, None)

    def _transition(self, deployment_id: str, current: DeploymentStatus, target: DeploymentStatus, **changes) -> dict | None:
        """Compare-and-swap *current* to *target*. None when another writer moved the row first."""
        if not can_transition(current, target):
            raise ValueError(f'illegal transition {current.value} -> {target.value}')
        return self.repository.update_deployment_if(
            deployment_id, expected_status=current.value, status=target.value, **changes
        )

    def _fail(self, deployment_id: str, *, kind: FailureKind, reason: str, log_tail: str | None = None) -> dict:
        _log.warning('deployment_failed deployment_id=%s kind=%s reason=%s', deployment_id, kind.value, reason)
        for expected in (DeploymentStatus.BUILDING, DeploymentStatus.DEPLOYING, DeploymentStatus.QUEUED):
            updated = self._transition(
                deployment_id,
                expected,
                DeploymentStatus.ERROR,
                error_kind=kind.value,
                error_reason=reason,
                log_tail=log_tail or None,
            )
            if updated is not None:
                self.broadcaster.emit(
                    deployment_id,
                    EventType.STATUS_CHANGE,
                    {'from': expected.value, 'to': DeploymentStatus.ERROR.value, 'reason': reason, 'error_kind': kind.value},
                )
                return updated
        current = self.repository.get_deployment(deployment_id)
        if current is None:
            raise KeyError(deployment_id)
        return current

    def run_deployment(self, deployment_id: str) -> dict:
        """Claim a queued deployment and drive it to a terminal state.

        Returns the latest row. A deployment that is no longer QUEUED (already
        claimed, or cancelled while waiting) is returned untouched.
        """
        row = self.repository.get_deployment(deployment_id)
        if row is None:
            raise KeyError(deployment_id)
        claimed = self._transition(
            deployment_id,
            DeploymentStatus.QUEUED,
            DeploymentStatus.BUILDING,
            started_at=utc_now(),
        )
        if claimed is None:
            _log.info('deployment_claim_skipped deployment_id=%s status=%s', deployment_id, row['status'])
            return row
        project = self.repository.get_project(claimed['project_id'])
        if project is None:
            raise KeyError(claimed['project_id'])

        with job_context(deployment_id=deployment_id):
            return self._drive(claimed, project)

    def _drive(self, claimed: dict, project: dict) -> dict:
        deployment_id = claimed['deployment_id']
        started = time.monotonic()
        _log.info('deployment_started deployment_id=%s project_id=%s branch=%s', deployment_id, project['project_id'], claimed['branch'])

        def on_event(event_type: str, payload: dict) -> None:
            self.broadcaster.emit(deployment_id, event_type, payload)

        def should_cancel() -> bool:
            return self.repository.is_cancel_requested(deployment_id)

        def on_sandbox(name: str | None) -> None:
            self._register_sandbox(deployment_id, name)

        tracer = get_tracer('shipyard.service')
        try:
            self.broadcaster.emit(
                deployment_id,
                EventType.STATUS_CHANGE,
                {'from': DeploymentStatus.QUEUED.value, 'to': DeploymentStatus.BUILDING.value},
            )
            with span(tracer, 'deployment.run', {'project.id': project['project_id']}):
                return self._build_and_release(
                    claimed,
                    project,
                    started=started,
                    on_event=on_event,
                    should_cancel=should_cancel,
                    on_sandbox=on_sandbox,
                )
        except SandboxCancelled:
            _log.info('deployment_build_cancelled deployment_id=%s', deployment_id)
            current = self._transition(
                deployment_id,
                DeploymentStatus.BUILDING,
                DeploymentStatus.CANCELLED,
                error_kind=FailureKind.CANCELLED.value,
                error_reason='cancelled',
            )
            if current is not None:
                self.broadcaster.emit(
                    deployment_id,
                    EventType.STATUS_CHANGE,
                    {'from': DeploymentStatus.BUILDING.value, 'to': DeploymentStatus.CANCELLED.value},
                )
                return current
            return self.repository.get_deployment(deployment_id) or claimed
        except BuildError as exc:
            if exc.exit_code is None:
                reason = f'build: {exc.step}: {exc.message}'
            else:
                reason = f'build: {exc.step} exited {exc.exit_code}'
            return self._fail(deployment_id, kind=FailureKind.BUILD, reason=reason, log_tail=exc.log_tail)
        except SandboxTimeout as exc:
            return self._fail(
                deployment_id,
                kind=FailureKind.TIMEOUT,
                reason=f'timeout: build exceeded {int(exc.timeout_seconds)}s',
                log_tail=exc.log_tail,
            )
        except InfraError as exc:
            return self._fail(deployment_id, kind=FailureKind.INFRA, reason=f'infra: {exc}')
        except Exception as exc:
            _log.error('deployment_unexpected_error deployment_id=%s', deployment_id, exc_info=True)
            return self._fail(deployment_id, kind=FailureKind.INFRA, reason=f'infra: unexpected {type(exc).__name__}: {exc}')
        finally:
            self._register_sandbox(deployment_id, None)
            self.pipeline.cleanup(deployment_id)

    def _build_and_release(self, row: dict, project: dict, *, started: float, on_event, should_cancel, on_sandbox) -> dict:
        deployment_id = row['deployment_id']
        outcome = self.pipeline.build(
            BuildRequest(
                deployment_id=deployment_id,
                project_id=project['project_id'],
                repo_url=project['repo_url'],
                branch=row['branch'],
                commit_sha=row['commit_sha'],
                env=dict(project.get('env_vars') or {}),
                overrides={
                    'framework': project.get('framework'),
                    'install_command': project.get('install_command'),
                    'build_command': project.get('build_command'),
                    'output_directory': project.get('output_directory'),
                },
            ),
            on_event=on_event,
            should_cancel=should_cancel,
            on_sandbox=on_sandbox,
        )

        deploying = self._transition(
            deployment_id,
            DeploymentStatus.BUILDING,
            DeploymentStatus.DEPLOYING,
            framework=outcome.plan.framework,
            log_tail=outcome.log_tail or None,
        )
        if deploying is None:
            _log.info('deployment_superseded_before_publish deployment_id=%s', deployment_id)
            return self.repository.get_deployment(deployment_id) or row
        on_event(
            EventType.STATUS_CHANGE.value,
            {'from': DeploymentStatus.BUILDING.value, 'to': DeploymentStatus.DEPLOYING.value},
        )
        on_event(EventType.PROGRESS.value, {'step': 'publishing', 'percent': PROGRESS_PUBLISHING})
        location = self.publisher.publish(deployment_id, outcome.artifact_path)
        on_event(EventType.ARTIFACT_PUBLISHED.value, {'location': location, 'backend': self.publisher.backend})

        with self._project_lock(project['project_id']):
            result = self.repository.finalize_deployment(
                deployment_id,
                promote=not bool(row['is_preview']),
                artifact_location=location,
                ready_at=utc_now(),
                build_duration_ms=int((time.monotonic() - started) * 1000),
            )
        if result is None:
            return self.repository.get_deployment(deployment_id) or deploying
        on_event(
            EventType.STATUS_CHANGE.value,
            {'from': DeploymentStatus.DEPLOYING.value, 'to': DeploymentStatus.READY.value},
        )
        self._emit_alias_change(result, reason='deploy')
        on_event(EventType.PROGRESS.value, {'step': 'ready', 'percent': PROGRESS_READY})
        ready = result['deployment']
        _log.info(
            'deployment_ready deployment_id=%s active=%s duration_ms=%s attempts=%d',
            deployment_id,
            ready['is_active'],
            ready['build_duration_ms'],
            outcome.attempts,
        )
        return ready

    def recover_interrupted(self) -> dict[str, int]:
        """Requeue QUEUED rows and fail BUILDING/DEPLOYING rows left by a previous process."""
        requeued = 0
        failed = 0
        for row in self.repository.list_deployments(limit=10_000):
            status = row['status']
            if status == DeploymentStatus.QUEUED.value:
                priority = PRIORITY_LOW if row['is_preview'] else PRIORITY_HIGH
                if self.queue.enqueue(row['deployment_id'], priority=priority):
                    requeued += 1
            elif status in {DeploymentStatus.BUILDING.value, DeploymentStatus.DEPLOYING.value}:
                self._fail(row['deployment_id'], kind=FailureKind.INFRA, reason='infra: interrupted by orchestrator restart')
                failed += 1
        if requeued or failed:
            _log.warning('deployments_recovered requeued=%d failed=%d', requeued, failed)
        return {'requeued': requeued, 'failed': failed}

    # --- events -------------------------------------------------------

    def list_events(self, deployment_id: str, *, user_id: str | None, after_id: int = 0, limit: int = 1000) -> list[dict]:
        self._require_deployment(deployment_id, user_id)
        return self.repository.list_events(deployment_id, after_id=max(0, int(after_id)), limit=max(1, min(5000, int(limit))))

    def list_project_events(self, project_id: str, *, user_id: str | None, after_id: int = 0, limit: int = 1000) -> list[dict]:
        self._require_project(project_id, user_id)
        return self.repository.list_project_events(
            project_id, after_id=max(0, int(after_id)), limit=max(1, min(5000, int(limit)))
        )

    # --- cron ---------------------------------------------------------

    def _require_scheduler(self) -> CronScheduler:
        if self.scheduler is None:
            raise NotConfiguredError('cron scheduler is not configured')
        return self.scheduler

    def _require_cron_job(self, job_id: str, user_id: str | None) -> dict:
        job = self.repository.get_cron_job(job_id)
        if job is None:
            raise KeyError(job_id)
        self._require_project(job['project_id'], user_id)
        return job

    def create_cron_job(self, payload: CronJobInput, *, user_id: str | None) -> dict:
        self._require_project(payload.project_id, user_id)
        return self._require_scheduler().create_job(payload)

    def list_cron_jobs(self, project_id: str, *, user_id: str | None) -> list[dict]:
        self._require_project(project_id, user_id)
        return self._require_scheduler().list_jobs(project_id)

    def get_cron_job(self, job_id: str, *, user_id: str | None) -> dict:
        self._require_cron_job(job_id, user_id)
        return self._require_scheduler().get_job(job_id)

    def update_cron_job(self, job_id: str, *, user_id: str | None, **changes) -> dict:
        self._require_cron_job(job_id, user_id)
        return self._require_scheduler().update_job(job_id, **changes)

    def delete_cron_job(self, job_id: str, *, user_id: str | None) -> bool:
        self._require_cron_job(job_id, user_id)
        return self._require_scheduler().delete_job(job_id)

    def trigger_cron_job(self, job_id: str, *, user_id: str | None, external_trigger_id: str | None = None) -> dict:
        self._require_cron_job(job_id, user_id)
        return self._require_scheduler().trigger(job_id, external_trigger_id=external_trigger_id)

    def list_cron_executions(self, job_id: str, *, user_id: str | None, limit: int = 50) -> list[dict]:
        self._require_cron_job(job_id, user_id)
        return self._require_scheduler().list_executions(job_id, limit=limit)

    # --- managed databases --------------------------------------------

    def _database_prefix(self, project_id: str) -> str:
        return str(project_id).rpartition('-')[2][:8].lower()

    def provision_database(
        self,
        project_id: str,
        *,
        user_id: str | None,
        engine: str = 'postgresql',
        tier: str | None = None,
    ) -> dict:
        project = self._require_project(project_id, user_id)
        if self.provisioner is None:
            raise NotConfiguredError('database provisioning is not configured')
        database_id = f'{self._database_prefix(project_id)}-{secrets.token_hex(3)}'
        return self.provisioner.provision(
            project_id=project_id,
            database_id=database_id,
            engine=engine,
            tier=tier or project.get('tier') or DatabaseTier.HOBBY.value,
        )

    def deprovision_database(self, project_id: str, name: str, *, user_id: str | None) -> None:
        self._require_project(project_id, user_id)
        if self.provisioner is None:
            raise NotConfiguredError('database provisioning is not configured')
        if not str(name or '').startswith(sandbox_name('shipyard-db', self._database_prefix(project_id)) + '-'):
            raise KeyError(name)
        self.provisioner.deprovision(name)

    # --- stats --------------------------------------------------------

    def get_stats(self) -> StatsView:
        rows = self.repository.list_deployments(limit=10_000)
        counts: dict[str, int] = {}
        error_kind_counts: dict[str, int] = {}
        for row in rows:
            status = str(row.get('status', 'unknown'))
            counts[status] = counts.get(status, 0) + 1
            kind = row.get('error_kind')
            if status == DeploymentStatus.ERROR.value and kind:
                error_kind_counts[kind] = error_kind_counts.get(kind, 0) + 1

        in_flight = sum(counts.get(s, 0) for s in _IN_FLIGHT)
        recent_terminal = [r for r in rows[:50] if str(r.get('status', '')) in _TERMINAL]
        recent_terminal_total = len(recent_terminal)
        if recent_terminal_total > 0:
            ready = sum(1 for r in recent_terminal if r['status'] == DeploymentStatus.READY.value)
            success_rate_50 = ready / recent_terminal_total
        else:
            success_rate_50 = 0.0
        recent_durations = [int(r['build_duration_ms']) for r in recent_terminal if r.get('build_duration_ms') is not None]
        mean_build_duration_ms_50 = (sum(recent_durations) / len(recent_durations)) if recent_durations else 0.0

        try:
            queue_depth = self.queue.size()
            active_builds = self.queue.active_count()
        except InfraError:
            queue_depth = -1
            active_builds = -1

        return StatsView(
            total_deployments=len(rows),
            status_counts=counts,
            in_flight=in_flight,
            active_builds=active_builds,
            queue_depth=queue_depth,
            error_kind_counts=error_kind_counts,
            recent_terminal_total=recent_terminal_total,
            success_rate_50=success_rate_50,
            mean_build_duration_ms_50=mean_build_duration_ms_50,
            build_durations_ms=[
                int(r['build_duration_ms']) for r in rows if r.get('build_duration_ms') is not None
            ],
        )
