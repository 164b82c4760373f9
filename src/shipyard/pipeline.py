from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import time
from typing import Callable

from shipyard.buildplan import BuildPlan, GitCloner, build_script, failed_step, resolve_build_plan
from shipyard.domain.events import EventType
from shipyard.errors import BuildError, InfraError, SandboxCancelled
from shipyard.observability import get_logger, get_tracer, span
from shipyard.sandbox.base import SandboxExecutor, SandboxSpec, sandbox_name
from shipyard.storage.artifacts import BuildWorkspaces, collect_files

_log = get_logger('shipyard.pipeline')

PROGRESS_CLONING = 10
PROGRESS_DETECTING = 20
PROGRESS_BUILDING = 40
PROGRESS_COLLECTING = 70
PROGRESS_PUBLISHING = 85
PROGRESS_READY = 100

EventSink = Callable[[str, dict], None]


@dataclass(frozen=True)
class BuildRequest:
    deployment_id: str
    project_id: str
    repo_url: str
    branch: str
    commit_sha: str | None
    env: dict[str, str] = field(default_factory=dict)
    overrides: dict = field(default_factory=dict)


@dataclass(frozen=True)
class BuildOutcome:
    artifact_path: Path
    plan: BuildPlan
    head_sha: str
    log_tail: str
    duration_seconds: float
    attempts: int


@dataclass(frozen=True)
class SandboxLimits:
    image: str = 'node:20-alpine'
    timeout_seconds: float = 600.0
    cpus: float = 1.0
    memory_mb: int = 2048
    disk_mb: int = 0
    pids_limit: int = 512
    network: str = 'bridge'


class BuildPipeline:
    """Clone, detect, install+build in one sandbox, collect.

    Publication and alias promotion belong to the orchestrator; this class
    stops once a non-empty output directory exists on the host.
    """

    def __init__(
        self,
        *,
        executor: SandboxExecutor,
        cloner: GitCloner,
        workspaces: BuildWorkspaces,
        limits: SandboxLimits | None = None,
        infra_retries: int = 2,
        infra_retry_backoff_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.executor = executor
        self.cloner = cloner
        self.workspaces = workspaces
        self.limits = limits or SandboxLimits()
        self.infra_retries = max(0, int(infra_retries))
        self.infra_retry_backoff_seconds = max(0.0, float(infra_retry_backoff_seconds))
        self._sleep = sleep

    def build(
        self,
        request: BuildRequest,
        *,
        on_event: EventSink | None = None,
        should_cancel: Callable[[], bool] | None = None,
        on_sandbox: Callable[[str | None], None] | None = None,
    ) -> BuildOutcome:
        emit = on_event or (lambda event_type, payload: None)
        check_cancel = should_cancel or (lambda: False)
        register = on_sandbox or (lambda name: None)
        attempts = self.infra_retries + 1
        tracer = get_tracer('shipyard.pipeline')

        for attempt in range(1, attempts + 1):
            try:
                with span(tracer, 'pipeline.build', {'attempt': attempt}):
                    return self._attempt(
                        request,
                        attempt=attempt,
                        emit=emit,
                        check_cancel=check_cancel,
                        register=register,
                        tracer=tracer,
                    )
            except InfraError as exc:
                if attempt >= attempts or check_cancel():
                    raise
                backoff = self.infra_retry_backoff_seconds * (2 ** (attempt - 1))
                _log.warning(
                    'infra_retry deployment_id=%s attempt=%d backoff=%.1f error=%s',
                    request.deployment_id,
                    attempt,
                    backoff,
                    exc,
                )
                emit(EventType.INFRA_RETRY.value, {'attempt': attempt, 'reason': str(exc), 'backoff_seconds': backoff})
                self._sleep(backoff)
        raise InfraError('build attempts exhausted')

    def _attempt(self, request: BuildRequest, *, attempt: int, emit, check_cancel, register, tracer) -> BuildOutcome:
        started = time.monotonic()

        def checkpoint() -> None:
            if check_cancel():
                raise SandboxCancelled(f'deployment {request.deployment_id} cancelled')

        workspace = self.workspaces.create(request.deployment_id)

        checkpoint()
        emit(EventType.PROGRESS.value, {'step': 'cloning', 'percent': PROGRESS_CLONING})
        emit(EventType.STEP_STARTED.value, {'step': 'clone', 'attempt': attempt})
        with span(tracer, 'pipeline.clone', {'branch': request.branch}):
            head_sha = self.cloner.clone(
                repo_url=request.repo_url,
                branch=request.branch,
                commit_sha=request.commit_sha,
                target_dir=workspace.source_dir,
            )
        emit(EventType.STEP_FINISHED.value, {'step': 'clone', 'head_sha': head_sha})

        checkpoint()
        emit(EventType.PROGRESS.value, {'step': 'detecting', 'percent': PROGRESS_DETECTING})
        plan = resolve_build_plan(workspace.source_dir, overrides=request.overrides)
        emit(EventType.BUILD_PLAN_RESOLVED.value, plan.as_dict())

        checkpoint()
        emit(EventType.PROGRESS.value, {'step': 'building', 'percent': PROGRESS_BUILDING})
        log_tail = ''
        artifact_path: Path | None = None
        if plan.install_command or plan.build_command:
            name = sandbox_name('build', f'{request.deployment_id}-{attempt}')
            spec = SandboxSpec(
                name=name,
                image=self.limits.image,
                command=build_script(plan),
                workdir=workspace.source_dir.resolve(),
                env={**request.env, 'CI': '1', 'SHIPYARD': '1', 'SHIPYARD_DEPLOYMENT_ID': request.deployment_id},
                cpus=self.limits.cpus,
                memory_mb=self.limits.memory_mb,
                disk_mb=self.limits.disk_mb,
                pids_limit=self.limits.pids_limit,
                timeout_seconds=self.limits.timeout_seconds,
                network=self.limits.network,
                labels={'shipyard.io/deployment-id': request.deployment_id},
                output_dir=plan.output_directory,
            )
            register(name)
            emit(EventType.SANDBOX_STARTED.value, {'sandbox': name, 'backend': self.executor.backend})
            emit(EventType.STEP_STARTED.value, {'step': 'build', 'attempt': attempt})
            try:
                with span(tracer, 'pipeline.sandbox', {'sandbox': name}):
                    result = self.executor.run_sandboxed(spec, should_cancel=check_cancel)
            finally:
                register(None)
                emit(EventType.SANDBOX_TORN_DOWN.value, {'sandbox': name})
            log_tail = result.stdout_tail
            if log_tail:
                emit(EventType.LOG.value, {'stream': 'sandbox', 'text': log_tail})
            if result.exit_code != 0:
                step = failed_step(log_tail)
                raise BuildError(
                    f'{step} exited {result.exit_code}',
                    step=step,
                    exit_code=result.exit_code,
                    log_tail=log_tail,
                )
            emit(EventType.STEP_FINISHED.value, {'step': 'build', 'exit_code': 0})
            artifact_path = result.artifact_path

        checkpoint()
        emit(EventType.PROGRESS.value, {'step': 'collecting', 'percent': PROGRESS_COLLECTING})
        if artifact_path is None:
            artifact_path = (workspace.source_dir / plan.output_directory).resolve()
        files = collect_files(artifact_path)
        emit(EventType.STEP_FINISHED.value, {'step': 'collect', 'files': len(files)})

        return BuildOutcome(
            artifact_path=artifact_path,
            plan=plan,
            head_sha=head_sha,
            log_tail=log_tail,
            duration_seconds=time.monotonic() - started,
            attempts=attempt,
        )

    def cleanup(self, deployment_id: str) -> None:
        try:
            self.workspaces.remove(deployment_id)
        except OSError:
            _log.warning('workspace_cleanup_failed deployment_id=%s', deployment_id, exc_info=True)
