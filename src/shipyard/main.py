from __future__ import annotations

from dataclasses import dataclass
import logging

from shipyard.api import create_app
from shipyard.broadcast import RedisEventTransport, StatusBroadcaster
from shipyard.buildplan import GitCloner
from shipyard.config import Settings, load_settings
from shipyard.db import Database, SqlDeploymentRepository
from shipyard.health import HealthChecker, build_health_checker
from shipyard.job_queue import InMemoryJobQueue, JobQueue, RedisJobQueue
from shipyard.observability import configure_observability
from shipyard.pipeline import BuildPipeline, SandboxLimits
from shipyard.repository import DeploymentRepository, InMemoryDeploymentRepository
from shipyard.sandbox.factory import ExecutorFactory
from shipyard.sandbox.provisioning import DatabaseProvisioner
from shipyard.scheduler import CronScheduler
from shipyard.service import OrchestratorService
from shipyard.storage.artifacts import BuildWorkspaces, create_publisher
from shipyard.workers import DeploymentWorkerPool

_log = logging.getLogger(__name__)

_WEBHOOK_PROVIDERS = ('github', 'gitlab', 'bitbucket')


@dataclass(frozen=True)
class Container:
    service: OrchestratorService
    health: HealthChecker
    workers: DeploymentWorkerPool
    scheduler: CronScheduler


def _build_repository(settings: Settings) -> DeploymentRepository:
    try:
        db = Database(settings.database_url)
        db.create_schema()
        return SqlDeploymentRepository(db)
    except Exception:
        _log.exception('database bootstrap failed; falling back to in-memory repository')
        return InMemoryDeploymentRepository()


def _build_queue(settings: Settings) -> JobQueue:
    if settings.queue_backend == 'redis':
        return RedisJobQueue.from_url(settings.redis_url)
    return InMemoryJobQueue()


def build_container(settings: Settings) -> Container:
    repo = _build_repository(settings)
    transport = RedisEventTransport.from_url(settings.redis_url) if settings.queue_backend == 'redis' else None
    broadcaster = StatusBroadcaster(repo, transport=transport)
    queue = _build_queue(settings)
    executor = ExecutorFactory.from_settings(settings)

    pipeline = BuildPipeline(
        executor=executor,
        cloner=GitCloner(timeout_seconds=settings.clone_timeout_seconds),
        workspaces=BuildWorkspaces(settings.workspace_root),
        limits=SandboxLimits(
            image=settings.build_image,
            timeout_seconds=settings.build_timeout_seconds,
            cpus=settings.sandbox_cpus,
            memory_mb=settings.sandbox_memory_mb,
            disk_mb=settings.sandbox_disk_mb,
            pids_limit=settings.sandbox_pids_limit,
            network=settings.sandbox_network,
        ),
        infra_retries=settings.infra_retries,
        infra_retry_backoff_seconds=settings.infra_retry_backoff_seconds,
    )
    publisher = create_publisher(settings)
    scheduler = CronScheduler(
        repository=repo,
        executor=executor,
        base_domain=settings.base_domain,
        image=settings.cron_image,
        poll_seconds=settings.cron_poll_seconds,
        retry_backoff_seconds=settings.cron_retry_backoff_seconds,
        max_workers=settings.cron_max_workers,
    )
    service = OrchestratorService(
        repository=repo,
        broadcaster=broadcaster,
        queue=queue,
        pipeline=pipeline,
        publisher=publisher,
        base_domain=settings.base_domain,
        webhook_secrets={provider: settings.webhook_secret(provider) for provider in _WEBHOOK_PROVIDERS},
        scheduler=scheduler,
        provisioner=DatabaseProvisioner(executor),
    )
    workers = DeploymentWorkerPool(service=service, queue=queue, concurrency=settings.build_concurrency)
    health = build_health_checker(repository=repo, queue=queue, publisher=publisher, pipeline=pipeline)
    return Container(service=service, health=health, workers=workers, scheduler=scheduler)


def build_app():
    settings = load_settings()
    configure_observability(
        service_name=settings.service_name,
        otlp_endpoint=settings.otel_endpoint,
    )
    container = build_container(settings)
    return create_app(
        service=container.service,
        health=container.health,
        workers=container.workers,
        scheduler=container.scheduler,
        api_access_token=settings.api_token,
    )


app = build_app()
