from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path

from shipyard.observability import get_logger

_log = get_logger('shipyard.config')

SANDBOX_BACKENDS = {'docker', 'kubernetes'}
QUEUE_BACKENDS = {'memory', 'redis'}
ARTIFACT_BACKENDS = {'local', 's3'}


@dataclass(frozen=True)
class Settings:
    database_url: str
    workspace_root: Path
    service_name: str
    otel_endpoint: str | None
    sandbox_backend: str
    build_image: str
    cron_image: str
    build_timeout_seconds: int
    clone_timeout_seconds: int
    sandbox_cpus: float
    sandbox_memory_mb: int
    sandbox_disk_mb: int
    sandbox_pids_limit: int
    sandbox_storage_opt: bool
    sandbox_network: str
    infra_retries: int
    infra_retry_backoff_seconds: float
    build_concurrency: int
    queue_backend: str
    redis_url: str
    artifact_backend: str
    artifact_root: Path
    s3_bucket: str
    s3_prefix: str
    s3_endpoint_url: str | None
    s3_region: str | None
    base_domain: str
    github_webhook_secret: str | None
    gitlab_webhook_secret: str | None
    bitbucket_webhook_secret: str | None
    k8s_namespace: str
    kubectl_command: str
    cron_poll_seconds: int
    cron_retry_backoff_seconds: float
    cron_max_workers: int
    api_token: str | None

    def webhook_secret(self, provider: str) -> str | None:
        return {
            'github': self.github_webhook_secret,
            'gitlab': self.gitlab_webhook_secret,
            'bitbucket': self.bitbucket_webhook_secret,
        }.get(str(provider or '').strip().lower())


def _env_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = (os.getenv(name, '') or '').strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = (os.getenv(name, '') or '').strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name, '') or '').strip().lower()
    if not raw:
        return default
    return raw in {'1', 'true', 'yes', 'on'}


def _env_text(name: str) -> str | None:
    return (os.getenv(name, '') or '').strip() or None


def _env_choice(name: str, default: str, choices: set[str]) -> str:
    value = str(os.getenv(name, default) or default).strip().lower()
    if value not in choices:
        _log.warning('config_invalid_choice name=%s value=%s fallback=%s', name, value, default)
        return default
    return value


def load_settings() -> Settings:
    workspace_root = Path(os.getenv('SHIPYARD_WORKSPACE_ROOT', '.shipyard')).resolve()
    database_url = os.getenv('SHIPYARD_DATABASE_URL', f'sqlite:///{(workspace_root / "shipyard.db").as_posix()}')
    artifact_root = Path(os.getenv('SHIPYARD_ARTIFACT_ROOT', str(workspace_root / 'artifacts'))).resolve()
    sandbox_network = str(os.getenv('SHIPYARD_SANDBOX_NETWORK', 'bridge') or 'bridge').strip().lower()
    return Settings(
        database_url=database_url,
        workspace_root=workspace_root,
        service_name=os.getenv('SHIPYARD_SERVICE_NAME', 'shipyard'),
        otel_endpoint=_env_text('SHIPYARD_OTEL_EXPORTER_OTLP_ENDPOINT'),
        sandbox_backend=_env_choice('SHIPYARD_SANDBOX_BACKEND', 'docker', SANDBOX_BACKENDS),
        build_image=os.getenv('SHIPYARD_BUILD_IMAGE', 'node:20-alpine'),
        cron_image=os.getenv('SHIPYARD_CRON_IMAGE', 'curlimages/curl:8.10.1'),
        build_timeout_seconds=_env_int('SHIPYARD_BUILD_TIMEOUT_SECONDS', 600, minimum=10),
        clone_timeout_seconds=_env_int('SHIPYARD_CLONE_TIMEOUT_SECONDS', 120, minimum=5),
        sandbox_cpus=_env_float('SHIPYARD_SANDBOX_CPUS', 1.0, minimum=0.1),
        sandbox_memory_mb=_env_int('SHIPYARD_SANDBOX_MEMORY_MB', 2048, minimum=64),
        sandbox_disk_mb=_env_int('SHIPYARD_SANDBOX_DISK_MB', 5120, minimum=0),
        sandbox_pids_limit=_env_int('SHIPYARD_SANDBOX_PIDS_LIMIT', 512, minimum=16),
        sandbox_storage_opt=_env_bool('SHIPYARD_SANDBOX_STORAGE_OPT', False),
        sandbox_network='none' if sandbox_network == 'none' else 'bridge',
        infra_retries=_env_int('SHIPYARD_INFRA_RETRIES', 2, minimum=0),
        infra_retry_backoff_seconds=_env_float('SHIPYARD_INFRA_RETRY_BACKOFF_SECONDS', 2.0),
        build_concurrency=_env_int('SHIPYARD_BUILD_CONCURRENCY', 3, minimum=1),
        queue_backend=_env_choice('SHIPYARD_QUEUE_BACKEND', 'memory', QUEUE_BACKENDS),
        redis_url=os.getenv('SHIPYARD_REDIS_URL', 'redis://localhost:6379/0'),
        artifact_backend=_env_choice('SHIPYARD_ARTIFACT_BACKEND', 'local', ARTIFACT_BACKENDS),
        artifact_root=artifact_root,
        s3_bucket=os.getenv('SHIPYARD_S3_BUCKET', 'shipyard-builds'),
        s3_prefix=str(os.getenv('SHIPYARD_S3_PREFIX', 'deployments') or 'deployments').strip('/'),
        s3_endpoint_url=_env_text('SHIPYARD_S3_ENDPOINT_URL'),
        s3_region=_env_text('SHIPYARD_S3_REGION'),
        base_domain=os.getenv('SHIPYARD_BASE_DOMAIN', 'shipyard.local'),
        github_webhook_secret=_env_text('SHIPYARD_GITHUB_WEBHOOK_SECRET'),
        gitlab_webhook_secret=_env_text('SHIPYARD_GITLAB_WEBHOOK_SECRET'),
        bitbucket_webhook_secret=_env_text('SHIPYARD_BITBUCKET_WEBHOOK_SECRET'),
        k8s_namespace=os.getenv('SHIPYARD_K8S_NAMESPACE', 'shipyard-builds'),
        kubectl_command=os.getenv('SHIPYARD_KUBECTL_COMMAND', 'kubectl'),
        cron_poll_seconds=_env_int('SHIPYARD_CRON_POLL_SECONDS', 30, minimum=1),
        cron_retry_backoff_seconds=_env_float('SHIPYARD_CRON_RETRY_BACKOFF_SECONDS', 5.0),
        cron_max_workers=_env_int('SHIPYARD_CRON_MAX_WORKERS', 4, minimum=1),
        api_token=_env_text('SHIPYARD_API_TOKEN'),
    )
