"""Managed database provisioning on top of the sandbox executor.

A database is a long-lived workload: the same executor that runs build
sandboxes applies it, with resource ceilings taken from the owning project's
tier and freshly generated credentials.
"""

from __future__ import annotations

from dataclasses import dataclass
import re
import secrets
from typing import Callable

from shipyard.domain.models import DatabaseTier
from shipyard.errors import InputValidationError
from shipyard.observability import get_logger
from shipyard.sandbox.base import SandboxExecutor, WorkloadSpec, sandbox_name

_log = get_logger('shipyard.sandbox.provisioning')

_PLACEHOLDER_RE = re.compile(r'\{\{\s*([A-Za-z0-9_]+)\s*\}\}')
_DATABASE_ID_RE = re.compile(r'^[A-Za-z0-9_-]{1,128}$')


@dataclass(frozen=True)
class TierResources:
    storage_gb: int
    memory_mb: int
    cpus: float


TIER_RESOURCES: dict[str, TierResources] = {
    DatabaseTier.HOBBY.value: TierResources(storage_gb=1, memory_mb=256, cpus=0.25),
    DatabaseTier.PRO.value: TierResources(storage_gb=10, memory_mb=512, cpus=0.5),
    DatabaseTier.ENTERPRISE.value: TierResources(storage_gb=50, memory_mb=2048, cpus=1.0),
}


_STATEFUL_TEMPLATE = """\
apiVersion: v1
kind: Secret
metadata:
  name: {{RESOURCE_NAME}}-env
  labels:
    app.kubernetes.io/managed-by: shipyard
    shipyard.io/workload: {{RESOURCE_NAME}}
    shipyard.io/database-id: {{DATABASE_ID}}
type: Opaque
stringData:
{{ENV_BLOCK}}
---
apiVersion: v1
kind: Service
metadata:
  name: {{RESOURCE_NAME}}
  labels:
    app.kubernetes.io/managed-by: shipyard
    shipyard.io/workload: {{RESOURCE_NAME}}
spec:
  selector:
    shipyard.io/workload: {{RESOURCE_NAME}}
  ports:
    - port: {{PORT}}
      targetPort: {{PORT}}
---
apiVersion: apps/v1
kind: StatefulSet
metadata:
  name: {{RESOURCE_NAME}}
  labels:
    app.kubernetes.io/managed-by: shipyard
    shipyard.io/workload: {{RESOURCE_NAME}}
    shipyard.io/database-id: {{DATABASE_ID}}
spec:
  serviceName: {{RESOURCE_NAME}}
  replicas: 1
  selector:
    matchLabels:
      shipyard.io/workload: {{RESOURCE_NAME}}
  template:
    metadata:
      labels:
        app.kubernetes.io/managed-by: shipyard
        shipyard.io/workload: {{RESOURCE_NAME}}
    spec:
      containers:
        - name: database
          image: {{IMAGE}}
          args: {{ARGS}}
          envFrom:
            - secretRef:
                name: {{RESOURCE_NAME}}-env
          ports:
            - containerPort: {{PORT}}
          resources:
            requests:
              cpu: "{{CPU_LIMIT}}"
              memory: "{{MEMORY_LIMIT}}"
            limits:
              cpu: "{{CPU_LIMIT}}"
              memory: "{{MEMORY_LIMIT}}"
          volumeMounts:
            - name: data
              mountPath: {{DATA_PATH}}
  volumeClaimTemplates:
    - metadata:
        name: data
        labels:
          shipyard.io/workload: {{RESOURCE_NAME}}
      spec:
        accessModes: ["ReadWriteOnce"]
        resources:
          requests:
            storage: "{{STORAGE_SIZE}}"
"""


@dataclass(frozen=True)
class EngineSpec:
    image: str
    port: int
    data_path: str
    scheme: str
    env: Callable[[str, str, str], dict[str, str]]
    args: Callable[[str, TierResources], list[str]]


def _postgres_env(database: str, username: str, password: str) -> dict[str, str]:
    return {'POSTGRES_DB': database, 'POSTGRES_USER': username, 'POSTGRES_PASSWORD': password}


def _mysql_env(database: str, username: str, password: str) -> dict[str, str]:
    return {
        'MYSQL_DATABASE': database,
        'MYSQL_USER': username,
        'MYSQL_PASSWORD': password,
        'MYSQL_ROOT_PASSWORD': password,
    }


def _redis_args(password: str, resources: TierResources) -> list[str]:
    maxmemory = max(16, int(resources.memory_mb * 0.8))
    return [
        '--requirepass',
        password,
        '--maxmemory',
        f'{maxmemory}mb',
        '--maxmemory-policy',
        'allkeys-lru',
        '--appendonly',
        'yes',
    ]


ENGINES: dict[str, EngineSpec] = {
    'postgresql': EngineSpec(
        image='postgres:16-alpine',
        port=5432,
        data_path='/var/lib/postgresql/data',
        scheme='postgresql',
        env=_postgres_env,
        args=lambda password, resources: [],
    ),
    'mysql': EngineSpec(
        image='mysql:8.4',
        port=3306,
        data_path='/var/lib/mysql',
        scheme='mysql',
        env=_mysql_env,
        args=lambda password, resources: [],
    ),
    'redis': EngineSpec(
        image='redis:7-alpine',
        port=6379,
        data_path='/data',
        scheme='redis',
        env=lambda database, username, password: {},
        args=_redis_args,
    ),
}


def render_template(template: str, values: dict[str, str]) -> str:
    """Substitute ``{{NAME}}`` placeholders. Unknown placeholders are an error."""

    def _replace(match: re.Match) -> str:
        key = match.group(1)
        if key not in values:
            raise InputValidationError(f'unknown template placeholder: {key}', field='template', code='template_error')
        return str(values[key])

    return _PLACEHOLDER_RE.sub(_replace, template)


def generate_credentials() -> tuple[str, str]:
    return f'shipyard_{secrets.token_hex(4)}', secrets.token_hex(32)


def _yaml_env_block(env: dict[str, str]) -> str:
    if not env:
        return '  {}'
    return '\n'.join(f'  {key}: "{value}"' for key, value in sorted(env.items()))


def _yaml_inline_list(items: list[str]) -> str:
    return '[' + ', '.join(f'"{item}"' for item in items) + ']'


class DatabaseProvisioner:
    def __init__(self, executor: SandboxExecutor):
        self.executor = executor

    def provision(
        self,
        *,
        project_id: str,
        database_id: str | None = None,
        engine: str = 'postgresql',
        tier: str = DatabaseTier.HOBBY.value,
    ) -> dict:
        engine_key = str(engine or '').strip().lower()
        engine_spec = ENGINES.get(engine_key)
        if engine_spec is None:
            raise InputValidationError(f'unsupported database engine: {engine}', field='engine')
        tier_key = str(tier or '').strip().lower()
        resources = TIER_RESOURCES.get(tier_key)
        if resources is None:
            raise InputValidationError(f'unsupported tier: {tier}', field='tier')
        database_id = database_id or secrets.token_hex(6)
        if not _DATABASE_ID_RE.match(database_id):
            raise InputValidationError(f'invalid database id: {database_id}', field='database_id')

        resource_name = sandbox_name('shipyard-db', database_id)
        username, password = generate_credentials()
        database = f'db_{database_id.replace("-", "_")}'
        env = engine_spec.env(database, username, password)
        args = engine_spec.args(password, resources)
        manifest = render_template(
            _STATEFUL_TEMPLATE,
            {
                'DATABASE_ID': database_id,
                'RESOURCE_NAME': resource_name,
                'IMAGE': engine_spec.image,
                'ARGS': _yaml_inline_list(args),
                'ENV_BLOCK': _yaml_env_block(env),
                'PORT': str(engine_spec.port),
                'DATA_PATH': engine_spec.data_path,
                'STORAGE_SIZE': f'{resources.storage_gb}Gi',
                'MEMORY_LIMIT': f'{resources.memory_mb}Mi',
                'CPU_LIMIT': f'{int(resources.cpus * 1000)}m',
            },
        )
        workload = WorkloadSpec(
            name=resource_name,
            image=engine_spec.image,
            env=env,
            port=engine_spec.port,
            cpus=resources.cpus,
            memory_mb=resources.memory_mb,
            storage_gb=resources.storage_gb,
            data_path=engine_spec.data_path,
            args=args,
            labels={'shipyard.io/project-id': project_id, 'shipyard.io/database-id': database_id},
            manifest=manifest,
        )
        handle = self.executor.provision(workload)
        _log.info(
            'database_provisioned project_id=%s name=%s engine=%s tier=%s backend=%s',
            project_id,
            resource_name,
            engine_key,
            tier_key,
            handle.backend,
        )
        if engine_key == 'redis':
            connection_url = f'redis://:{password}@{handle.host}:{handle.port}/0'
            username = ''
        else:
            connection_url = f'{engine_spec.scheme}://{username}:{password}@{handle.host}:{handle.port}/{database}'
        return {
            'database_id': database_id,
            'name': resource_name,
            'project_id': project_id,
            'engine': engine_key,
            'tier': tier_key,
            'host': handle.host,
            'port': handle.port,
            'database': database,
            'username': username,
            'password': password,
            'connection_url': connection_url,
            'backend': handle.backend,
            'resources': {
                'storage_gb': resources.storage_gb,
                'memory_mb': resources.memory_mb,
                'cpus': resources.cpus,
            },
        }

    def deprovision(self, name: str) -> None:
        if not str(name or '').startswith('shipyard-db-'):
            raise InputValidationError(f'not a managed database: {name}', field='name')
        self.executor.deprovision(name)
        _log.info('database_deprovisioned name=%s', name)
