from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import asdict

from fastapi import Depends, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import BaseModel, ConfigDict, Field

from shipyard.errors import AuthError, InfraError, InputValidationError, NotConfiguredError
from shipyard.health import STATUS_UNHEALTHY, HealthChecker, build_health_checker
from shipyard.metrics import CONTENT_TYPE, render_metrics
from shipyard.observability import get_logger
from shipyard.scheduler import CronJobInput, CronScheduler
from shipyard.service import CreateDeploymentInput, CreateProjectInput, OrchestratorService
from shipyard.workers import DeploymentWorkerPool

_log = get_logger('shipyard.api')

_CONFLICT_CODES = frozenset({'invalid_transition', 'slug_taken', 'no_rollback_target'})
WS_CLOSE_UNAUTHORIZED = 4401
WS_CLOSE_FORBIDDEN = 4403
WS_CLOSE_NOT_FOUND = 4404


class CreateProjectRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    repo_url: str = Field(min_length=1, max_length=2000)
    slug: str | None = Field(default=None, max_length=64)
    production_branch: str | None = Field(default=None, max_length=255)
    member_ids: list[str] = Field(default_factory=list)
    env_vars: dict[str, str] = Field(default_factory=dict)
    install_command: str | None = Field(default=None, max_length=2000)
    build_command: str | None = Field(default=None, max_length=2000)
    output_directory: str | None = Field(default=None, max_length=400)
    framework: str | None = Field(default=None, max_length=64)
    webhook_secrets: dict[str, str] = Field(default_factory=dict)
    tier: str = Field(default='hobby', max_length=32)


class ProjectResponse(BaseModel):
    project_id: str
    name: str
    slug: str
    repo_url: str
    production_branch: str | None
    owner_id: str
    member_ids: list[str]
    env_var_keys: list[str]
    webhook_providers: list[str]
    install_command: str | None
    build_command: str | None
    output_directory: str | None
    framework: str | None
    tier: str
    created_at: str


class CreateDeploymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project_id: str = Field(alias='projectId', min_length=1)
    ref: str = Field(min_length=1, max_length=255)
    commit_sha: str = Field(alias='commitSha', min_length=4, max_length=40)
    is_production: bool = Field(default=False, alias='isProduction')
    commit_message: str = Field(default='', alias='commitMessage', max_length=4000)
    idempotency_key: str | None = Field(default=None, alias='idempotencyKey', max_length=255)


class DeploymentResponse(BaseModel):
    deployment_id: str
    project_id: str
    seq: int
    status: str
    branch: str
    commit_sha: str
    commit_message: str
    is_preview: bool
    pr_number: int | None
    trigger: str
    queued_at: str
    started_at: str | None
    ready_at: str | None
    build_duration_ms: int | None
    artifact_location: str | None
    is_active: bool
    error_reason: str | None
    error_kind: str | None
    log_tail: str | None
    framework: str | None
    cancel_requested: bool
    url: str | None
    updated_at: str


class WebhookResponse(BaseModel):
    accepted: bool
    deduped: bool
    ignored: bool
    deployment_id: str | None = None
    status: str | None = None
    reason: str | None = None


class EventResponse(BaseModel):
    id: int
    deployment_id: str
    project_id: str
    seq: int
    type: str
    payload: dict
    created_at: str


class CronJobRequest(BaseModel):
    schedule: str = Field(min_length=1, max_length=128)
    path: str = Field(default='/', max_length=2000)
    timezone: str = Field(default='UTC', max_length=64)
    timeout_seconds: int = Field(default=60, ge=1, le=900)
    retry_count: int = Field(default=0, ge=0, le=10)
    enabled: bool = Field(default=True)


class CronJobUpdateRequest(BaseModel):
    schedule: str | None = Field(default=None, max_length=128)
    path: str | None = Field(default=None, max_length=2000)
    timezone: str | None = Field(default=None, max_length=64)
    timeout_seconds: int | None = Field(default=None, ge=1, le=900)
    retry_count: int | None = Field(default=None, ge=0, le=10)
    enabled: bool | None = None


class CronJobResponse(BaseModel):
    cron_job_id: str
    project_id: str
    schedule: str
    path: str
    enabled: bool
    timezone: str
    timeout_seconds: int
    retry_count: int
    next_run_at: str | None
    last_run_at: str | None
    last_status: str | None
    created_at: str
    updated_at: str
    success_rate_50: float | None
    executions_50: int


class CronExecutionResponse(BaseModel):
    execution_id: str
    cron_job_id: str
    attempt: int
    trigger: str
    external_trigger_id: str | None
    status: str
    started_at: str
    finished_at: str | None
    duration_ms: int | None
    output: str
    error_text: str | None


class CronTriggerRequest(BaseModel):
    external_trigger_id: str | None = Field(default=None, max_length=255)


class CronTriggerResponse(BaseModel):
    deduped: bool
    execution: CronExecutionResponse
    executions: list[CronExecutionResponse]


class CronPreviewRequest(BaseModel):
    schedule: str = Field(min_length=1, max_length=128)
    timezone: str = Field(default='UTC', max_length=64)
    count: int = Field(default=5, ge=1, le=100)


class CronPreviewResponse(BaseModel):
    schedule: str
    timezone: str
    runs: list[str]


class DatabaseRequest(BaseModel):
    engine: str = Field(default='postgresql', max_length=32)
    tier: str | None = Field(default=None, max_length=32)


class DatabaseResponse(BaseModel):
    database_id: str
    name: str
    project_id: str
    engine: str
    tier: str
    host: str
    port: int
    database: str
    username: str
    password: str
    connection_url: str
    backend: str
    resources: dict


class StatsResponse(BaseModel):
    total_deployments: int
    status_counts: dict[str, int]
    in_flight: int
    active_builds: int
    queue_depth: int
    error_kind_counts: dict[str, int]
    recent_terminal_total: int
    success_rate_50: float
    mean_build_duration_ms_50: float


class AppState:
    def __init__(
        self,
        *,
        service: OrchestratorService,
        health: HealthChecker,
        workers: DeploymentWorkerPool | None = None,
        scheduler: CronScheduler | None = None,
    ):
        self.service = service
        self.health = health
        self.workers = workers
        self.scheduler = scheduler


def _error_payload(*, message: str, code: str, field: str | None = None) -> dict:
    payload: dict[str, str] = {'code': code, 'message': message}
    if field:
        payload['field'] = field
    return payload


def _field_from_loc(loc: tuple | list | None) -> str | None:
    if not loc:
        return None
    parts = list(loc)
    if parts and str(parts[0]) in {'body', 'query', 'path', 'header', 'cookie'}:
        parts = parts[1:]
    field = ''
    for part in parts:
        if isinstance(part, int):
            field += f'[{part}]'
        else:
            field = f'{field}.{part}' if field else str(part)
    return field or None


def create_app(
    *,
    service: OrchestratorService,
    health: HealthChecker | None = None,
    workers: DeploymentWorkerPool | None = None,
    scheduler: CronScheduler | None = None,
    api_access_token: str | None = None,
    api_access_token_header: str = 'x-shipyard-api-token',
    user_header: str = 'x-shipyard-user',
    recover_on_startup: bool = True,
) -> FastAPI:
    """Build the HTTP surface around an already-wired service.

    Workers and the scheduler are started and stopped by the lifespan, so a
    ``TestClient`` used without a ``with`` block never runs background jobs.
    """
    if health is None:
        health = build_health_checker(
            repository=service.repository,
            queue=service.queue,
            publisher=service.publisher,
            pipeline=service.pipeline,
        )
    token = str(api_access_token or '').strip() or None
    token_header = api_access_token_header.strip().lower()
    user_header = user_header.strip().lower()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        container: AppState = app.state.container
        if recover_on_startup:
            await run_in_threadpool(container.service.recover_interrupted)
        if container.workers is not None:
            container.workers.start()
        if container.scheduler is not None:
            container.scheduler.start()
        try:
            yield
        finally:
            if container.scheduler is not None:
                await run_in_threadpool(container.scheduler.stop)
            if container.workers is not None:
                await run_in_threadpool(container.workers.stop)
            container.service.broadcaster.close()
            container.service.queue.close()
            _log.info('shutdown_complete')

    app = FastAPI(title='shipyard api', version='0.1.0', lifespan=lifespan)
    app.state.container = AppState(service=service, health=health, workers=workers, scheduler=scheduler)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError):  # noqa: ARG001
        details = exc.errors()
        first = details[0] if details else {}
        return JSONResponse(
            status_code=400,
            content=_error_payload(
                message=str(first.get('msg') or 'invalid request body'),
                field=_field_from_loc(first.get('loc')),
                code='validation_error',
            ),
        )

    @app.exception_handler(InputValidationError)
    async def handle_input_validation_error(request: Request, exc: InputValidationError):  # noqa: ARG001
        return JSONResponse(
            status_code=409 if exc.code in _CONFLICT_CODES else 400,
            content=_error_payload(message=exc.message, field=exc.field, code=exc.code),
        )

    @app.exception_handler(AuthError)
    async def handle_auth_error(request: Request, exc: AuthError):  # noqa: ARG001
        return JSONResponse(status_code=exc.status_code, content=_error_payload(message=exc.message, code=exc.code))

    @app.exception_handler(NotConfiguredError)
    async def handle_not_configured(request: Request, exc: NotConfiguredError):  # noqa: ARG001
        return JSONResponse(
            status_code=503,
            content=_error_payload(message=f'service not configured: {exc.message}', code=exc.code),
        )

    @app.exception_handler(InfraError)
    async def handle_infra_error(request: Request, exc: InfraError):  # noqa: ARG001
        return JSONResponse(status_code=503, content=_error_payload(message=exc.message, code=exc.code))

    @app.exception_handler(KeyError)
    async def handle_not_found(request: Request, exc: KeyError):  # noqa: ARG001
        missing = exc.args[0] if exc.args else 'resource'
        return JSONResponse(status_code=404, content=_error_payload(message=f'not found: {missing}', code='not_found'))

    @app.middleware('http')
    async def enforce_api_token(request: Request, call_next):
        path = request.url.path
        if token and path.startswith('/api/') and not path.startswith('/api/webhooks/'):
            if request.headers.get(token_header) != token:
                return JSONResponse(
                    status_code=401,
                    content=_error_payload(code='unauthorized', message='invalid api token'),
                )
        return await call_next(request)

    def get_service() -> OrchestratorService:
        return app.state.container.service

    def require_user(request: Request) -> str:
        user = str(request.headers.get(user_header) or '').strip()
        if not user:
            raise AuthError(f'missing {user_header} header')
        return user

    @app.get('/healthz')
    def healthz() -> dict[str, str]:
        return {'status': 'ok'}

    @app.get('/api/health')
    def health_report() -> JSONResponse:
        report = app.state.container.health.run()
        return JSONResponse(status_code=503 if report['status'] == STATUS_UNHEALTHY else 200, content=report)

    @app.get('/metrics')
    def metrics(service: OrchestratorService = Depends(get_service)) -> Response:
        body = render_metrics(service.get_stats(), subscribers=service.broadcaster.subscriber_count())
        return PlainTextResponse(body, media_type=CONTENT_TYPE)

    @app.get('/api/stats', response_model=StatsResponse)
    def get_stats(service: OrchestratorService = Depends(get_service)) -> StatsResponse:
        stats = asdict(service.get_stats())
        stats.pop('build_durations_ms', None)
        return StatsResponse(**stats)

    @app.post('/api/webhooks/{provider}/{project_id}', response_model=WebhookResponse, status_code=202)
    async def receive_webhook(
        provider: str,
        project_id: str,
        request: Request,
        service: OrchestratorService = Depends(get_service),
    ) -> WebhookResponse:
        body = await request.body()
        result = await run_in_threadpool(service.ingest_webhook, provider, project_id, dict(request.headers), body)
        return WebhookResponse(**asdict(result))

    # --- projects ---------------------------------------------------------

    @app.post('/api/projects', response_model=ProjectResponse, status_code=201)
    def create_project(
        payload: CreateProjectRequest,
        user: str = Depends(require_user),
        service: OrchestratorService = Depends(get_service),
    ) -> ProjectResponse:
        row = service.create_project(CreateProjectInput(owner_id=user, **payload.model_dump()))
        return ProjectResponse(**row)

    @app.get('/api/projects', response_model=list[ProjectResponse])
    def list_projects(
        user: str = Depends(require_user),
        service: OrchestratorService = Depends(get_service),
        limit: int = Query(default=100, ge=1, le=500),
    ) -> list[ProjectResponse]:
        return [ProjectResponse(**row) for row in service.list_projects(user_id=user, limit=limit)]

    @app.get('/api/projects/{project_id}', response_model=ProjectResponse)
    def get_project(
        project_id: str,
        user: str = Depends(require_user),
        service: OrchestratorService = Depends(get_service),
    ) -> ProjectResponse:
        return ProjectResponse(**service.get_project(project_id, user_id=user))

    @app.get('/api/projects/{project_id}/deployments', response_model=list[DeploymentResponse])
    def list_deployments(
        project_id: str,
        user: str = Depends(require_user),
        service: OrchestratorService = Depends(get_service),
        limit: int = Query(default=100, ge=1, le=1000),
    ) -> list[DeploymentResponse]:
        return [DeploymentResponse(**row) for row in service.list_deployments(project_id, user_id=user, limit=limit)]

    @app.post('/api/projects/{project_id}/rollback', response_model=DeploymentResponse)
    def rollback_project(
        project_id: str,
        user: str = Depends(require_user),
        service: OrchestratorService = Depends(get_service),
    ) -> DeploymentResponse:
        return DeploymentResponse(**service.rollback_project(project_id, user_id=user))

    @app.get('/api/projects/{project_id}/events', response_model=list[EventResponse])
    def list_project_events(
        project_id: str,
        user: str = Depends(require_user),
        service: OrchestratorService = Depends(get_service),
        after_id: int = Query(default=0, ge=0),
        limit: int = Query(default=1000, ge=1, le=5000),
    ) -> list[EventResponse]:
        rows = service.list_project_events(project_id, user_id=user, after_id=after_id, limit=limit)
        return [EventResponse(**row) for row in rows]

    # --- deployments ------------------------------------------------------

    @app.post('/api/deployments', response_model=DeploymentResponse, status_code=201)
    def create_deployment(
        payload: CreateDeploymentRequest,
        user: str = Depends(require_user),
        service: OrchestratorService = Depends(get_service),
    ) -> DeploymentResponse:
        row = service.create_deployment(
            CreateDeploymentInput(
                project_id=payload.project_id,
                ref=payload.ref,
                commit_sha=payload.commit_sha,
                is_production=payload.is_production,
                commit_message=payload.commit_message,
                idempotency_key=payload.idempotency_key,
            ),
            user_id=user,
        )
        return DeploymentResponse(**row)

    @app.get('/api/deployments/{deployment_id}', response_model=DeploymentResponse)
    def get_deployment(
        deployment_id: str,
        user: str = Depends(require_user),
        service: OrchestratorService = Depends(get_service),
    ) -> DeploymentResponse:
        return DeploymentResponse(**service.get_deployment(deployment_id, user_id=user))

    @app.post('/api/deployments/{deployment_id}/cancel', response_model=DeploymentResponse)
    def cancel_deployment(
        deployment_id: str,
        user: str = Depends(require_user),
        service: OrchestratorService = Depends(get_service),
    ) -> DeploymentResponse:
        return DeploymentResponse(**service.cancel_deployment(deployment_id, user_id=user))

    @app.post('/api/deployments/{deployment_id}/redeploy', response_model=DeploymentResponse, status_code=201)
    def redeploy(
        deployment_id: str,
        user: str = Depends(require_user),
        service: OrchestratorService = Depends(get_service),
    ) -> DeploymentResponse:
        return DeploymentResponse(**service.redeploy(deployment_id, user_id=user))

    @app.post('/api/deployments/{deployment_id}/rollback', response_model=DeploymentResponse)
    def rollback(
        deployment_id: str,
        user: str = Depends(require_user),
        service: OrchestratorService = Depends(get_service),
    ) -> DeploymentResponse:
        return DeploymentResponse(**service.rollback(deployment_id, user_id=user))

    @app.get('/api/deployments/{deployment_id}/events', response_model=list[EventResponse])
    def list_events(
        deployment_id: str,
        user: str = Depends(require_user),
        service: OrchestratorService = Depends(get_service),
        after_id: int = Query(default=0, ge=0),
        limit: int = Query(default=1000, ge=1, le=5000),
    ) -> list[EventResponse]:
        rows = service.list_events(deployment_id, user_id=user, after_id=after_id, limit=limit)
        return [EventResponse(**row) for row in rows]

    # --- cron -------------------------------------------------------------

    @app.post('/api/projects/{project_id}/cron', response_model=CronJobResponse, status_code=201)
    def create_cron_job(
        project_id: str,
        payload: CronJobRequest,
        user: str = Depends(require_user),
        service: OrchestratorService = Depends(get_service),
    ) -> CronJobResponse:
        row = service.create_cron_job(CronJobInput(project_id=project_id, **payload.model_dump()), user_id=user)
        return CronJobResponse(**row)

    @app.get('/api/projects/{project_id}/cron', response_model=list[CronJobResponse])
    def list_cron_jobs(
        project_id: str,
        user: str = Depends(require_user),
        service: OrchestratorService = Depends(get_service),
    ) -> list[CronJobResponse]:
        return [CronJobResponse(**row) for row in service.list_cron_jobs(project_id, user_id=user)]

    @app.post('/api/cron/preview', response_model=CronPreviewResponse)
    def preview_cron(payload: CronPreviewRequest) -> CronPreviewResponse:
        return CronPreviewResponse(**CronScheduler.preview(payload.schedule, tz=payload.timezone, count=payload.count))

    @app.get('/api/cron/{job_id}', response_model=CronJobResponse)
    def get_cron_job(
        job_id: str,
        user: str = Depends(require_user),
        service: OrchestratorService = Depends(get_service),
    ) -> CronJobResponse:
        return CronJobResponse(**service.get_cron_job(job_id, user_id=user))

    @app.patch('/api/cron/{job_id}', response_model=CronJobResponse)
    def update_cron_job(
        job_id: str,
        payload: CronJobUpdateRequest,
        user: str = Depends(require_user),
        service: OrchestratorService = Depends(get_service),
    ) -> CronJobResponse:
        changes = payload.model_dump(exclude_none=True)
        return CronJobResponse(**service.update_cron_job(job_id, user_id=user, **changes))

    @app.delete('/api/cron/{job_id}', status_code=204)
    def delete_cron_job(
        job_id: str,
        user: str = Depends(require_user),
        service: OrchestratorService = Depends(get_service),
    ) -> Response:
        if not service.delete_cron_job(job_id, user_id=user):
            raise KeyError(job_id)
        return Response(status_code=204)

    @app.post('/api/cron/{job_id}/trigger', response_model=CronTriggerResponse, status_code=202)
    def trigger_cron_job(
        job_id: str,
        payload: CronTriggerRequest | None = None,
        user: str = Depends(require_user),
        service: OrchestratorService = Depends(get_service),
    ) -> CronTriggerResponse:
        external_trigger_id = payload.external_trigger_id if payload is not None else None
        result = service.trigger_cron_job(job_id, user_id=user, external_trigger_id=external_trigger_id)
        return CronTriggerResponse(**result)

    @app.get('/api/cron/{job_id}/executions', response_model=list[CronExecutionResponse])
    def list_cron_executions(
        job_id: str,
        user: str = Depends(require_user),
        service: OrchestratorService = Depends(get_service),
        limit: int = Query(default=50, ge=1, le=500),
    ) -> list[CronExecutionResponse]:
        return [CronExecutionResponse(**row) for row in service.list_cron_executions(job_id, user_id=user, limit=limit)]

    # --- databases --------------------------------------------------------

    @app.post('/api/projects/{project_id}/databases', response_model=DatabaseResponse, status_code=201)
    def provision_database(
        project_id: str,
        payload: DatabaseRequest,
        user: str = Depends(require_user),
        service: OrchestratorService = Depends(get_service),
    ) -> DatabaseResponse:
        row = service.provision_database(project_id, user_id=user, engine=payload.engine, tier=payload.tier)
        return DatabaseResponse(**row)

    @app.delete('/api/projects/{project_id}/databases/{name}', status_code=204)
    def deprovision_database(
        project_id: str,
        name: str,
        user: str = Depends(require_user),
        service: OrchestratorService = Depends(get_service),
    ) -> Response:
        service.deprovision_database(project_id, name, user_id=user)
        return Response(status_code=204)

    # --- realtime ---------------------------------------------------------

    @app.websocket('/api/realtime/{channel}')
    async def realtime(
        websocket: WebSocket,
        channel: str,
        user: str | None = Query(default=None),
        after_id: int = Query(default=0, ge=0),
    ) -> None:
        service: OrchestratorService = app.state.container.service
        broadcaster = service.broadcaster
        await websocket.accept()
        if token and websocket.headers.get(token_header) != token:
            await websocket.close(code=WS_CLOSE_UNAUTHORIZED)
            return
        user_id = user or websocket.headers.get(user_header)
        try:
            subscription = await run_in_threadpool(broadcaster.subscribe, user_id, channel)
        except AuthError:
            _log.info('realtime_forbidden channel=%s user=%s', channel, user_id)
            await websocket.close(code=WS_CLOSE_FORBIDDEN)
            return
        except (KeyError, InputValidationError):
            await websocket.close(code=WS_CLOSE_NOT_FOUND)
            return

        async def watch_disconnect() -> None:
            try:
                while True:
                    message = await websocket.receive()
                    if message.get('type') == 'websocket.disconnect':
                        return
            except (WebSocketDisconnect, RuntimeError):
                return

        watcher = asyncio.create_task(watch_disconnect())
        last_id = after_id
        try:
            history = await run_in_threadpool(broadcaster.history, channel, after_id=after_id)
            for event in history:
                await websocket.send_json(event)
                last_id = max(last_id, int(event['id']))
            while not watcher.done():
                event = await run_in_threadpool(subscription.get, 1.0)
                if event is None:
                    if subscription.closed:
                        break
                    continue
                if int(event['id']) <= last_id:
                    continue
                await websocket.send_json(event)
                last_id = int(event['id'])
        except WebSocketDisconnect:
            pass
        finally:
            disconnected = watcher.done()
            watcher.cancel()
            broadcaster.unsubscribe(subscription)
        if not disconnected:
            await websocket.close()

    return app
