from __future__ import annotations

import json
import shutil
import subprocess
import time
from typing import Callable

import yaml

from shipyard.errors import InfraError, SandboxCancelled, SandboxTimeout
from shipyard.observability import get_logger
from shipyard.sandbox.base import (
    CommandRunner,
    SandboxResult,
    SandboxSpec,
    WorkloadHandle,
    WorkloadSpec,
    resolve_artifact_path,
    run_command,
    tail_text,
)

_log = get_logger('shipyard.sandbox.kubernetes')

SANDBOX_MOUNT = '/workspace'
JOB_TTL_SECONDS = 3600


def _cpu_quantity(cpus: float) -> str:
    return f'{max(1, int(round(float(cpus) * 1000)))}m'


def _is_not_found(completed: subprocess.CompletedProcess) -> bool:
    return 'notfound' in str(completed.stderr or '').replace(' ', '').lower()


class KubernetesSandboxExecutor:
    """One ``batch/v1`` Job per sandbox, driven through ``kubectl``."""

    backend = 'kubernetes'

    def __init__(
        self,
        *,
        namespace: str = 'shipyard-builds',
        kubectl_command: str = 'kubectl',
        runner: CommandRunner | None = None,
        poll_interval_seconds: float = 2.0,
        log_tail_lines: int = 200,
        command_timeout_seconds: float = 30.0,
        deadline_grace_seconds: float = 30.0,
    ):
        self.namespace = namespace
        self.kubectl_command = kubectl_command
        self.runner = runner or run_command
        self.poll_interval_seconds = max(0.01, float(poll_interval_seconds))
        self.log_tail_lines = max(1, int(log_tail_lines))
        self.command_timeout_seconds = max(1.0, float(command_timeout_seconds))
        self.deadline_grace_seconds = max(0.0, float(deadline_grace_seconds))

    def _argv(self, *args: str) -> list[str]:
        executable = shutil.which(self.kubectl_command) or self.kubectl_command
        return [executable, '--namespace', self.namespace, *args]

    def _kubectl(self, *args: str, input_text: str | None = None, check: bool = True) -> subprocess.CompletedProcess:
        argv = self._argv(*args)
        try:
            completed = self.runner(argv, input_text=input_text, timeout=self.command_timeout_seconds)
        except FileNotFoundError as exc:
            raise InfraError(f'kubectl not found: {self.kubectl_command}') from exc
        except subprocess.TimeoutExpired as exc:
            raise InfraError(f'kubectl {args[0]} timed out after {self.command_timeout_seconds}s') from exc
        if check and completed.returncode != 0:
            stderr = str(completed.stderr or '').strip()
            raise InfraError(f'kubectl {args[0]} failed: {stderr or completed.returncode}')
        return completed

    def _apply(self, documents: list[dict]) -> None:
        self._kubectl('apply', '-f', '-', input_text=yaml.safe_dump_all(documents, sort_keys=False))

    def render_job_manifest(self, spec: SandboxSpec) -> list[dict]:
        labels = {
            'app.kubernetes.io/managed-by': 'shipyard',
            'shipyard.io/job-id': spec.name,
            **spec.labels,
        }
        resources = {'cpu': _cpu_quantity(spec.cpus), 'memory': f'{int(spec.memory_mb)}Mi'}
        if spec.disk_mb:
            resources['ephemeral-storage'] = f'{int(spec.disk_mb)}Mi'
        container: dict = {
            'name': 'sandbox',
            'image': spec.image,
            'command': ['sh', '-c', spec.command],
            'envFrom': [{'secretRef': {'name': f'env-{spec.name}'}}],
            'resources': {'requests': dict(resources), 'limits': dict(resources)},
            'securityContext': {'allowPrivilegeEscalation': False},
        }
        pod_spec: dict = {
            'restartPolicy': 'Never',
            'automountServiceAccountToken': False,
            'containers': [container],
        }
        if spec.workdir is not None:
            container['workingDir'] = SANDBOX_MOUNT
            container['volumeMounts'] = [{'name': 'workspace', 'mountPath': SANDBOX_MOUNT}]
            pod_spec['volumes'] = [
                {'name': 'workspace', 'hostPath': {'path': str(spec.workdir), 'type': 'Directory'}},
            ]

        documents: list[dict] = [
            {
                'apiVersion': 'v1',
                'kind': 'Secret',
                'metadata': {'name': f'env-{spec.name}', 'labels': labels},
                'type': 'Opaque',
                'stringData': {str(k): str(v) for k, v in spec.env.items()},
            },
            {
                'apiVersion': 'batch/v1',
                'kind': 'Job',
                'metadata': {'name': spec.name, 'labels': labels},
                'spec': {
                    'backoffLimit': 0,
                    'activeDeadlineSeconds': max(1, int(spec.timeout_seconds)),
                    'ttlSecondsAfterFinished': JOB_TTL_SECONDS,
                    'template': {'metadata': {'labels': labels}, 'spec': pod_spec},
                },
            },
        ]
        if spec.network == 'none':
            documents.append(
                {
                    'apiVersion': 'networking.k8s.io/v1',
                    'kind': 'NetworkPolicy',
                    'metadata': {'name': f'net-{spec.name}', 'labels': labels},
                    'spec': {
                        'podSelector': {'matchLabels': {'shipyard.io/job-id': spec.name}},
                        'policyTypes': ['Ingress', 'Egress'],
                        'ingress': [],
                        'egress': [],
                    },
                }
            )
        return documents

    def run_sandboxed(
        self,
        spec: SandboxSpec,
        *,
        should_cancel: Callable[[], bool] | None = None,
    ) -> SandboxResult:
        started = time.monotonic()
        deadline = started + max(0.05, float(spec.timeout_seconds)) + self.deadline_grace_seconds
        try:
            self._apply(self.render_job_manifest(spec))
            _log.info('sandbox_started backend=kubernetes name=%s image=%s', spec.name, spec.image)
            while True:
                if should_cancel is not None and should_cancel():
                    raise SandboxCancelled(f'sandbox {spec.name} cancelled')
                status = self._job_status(spec.name, should_cancel=should_cancel)
                if self._deadline_exceeded(status) or time.monotonic() >= deadline:
                    raise SandboxTimeout(
                        f'sandbox {spec.name} exceeded {spec.timeout_seconds}s',
                        timeout_seconds=spec.timeout_seconds,
                        log_tail=self._logs(spec.name),
                    )
                if int(status.get('succeeded') or 0) > 0:
                    exit_code = 0
                    break
                if int(status.get('failed') or 0) > 0:
                    exit_code = self._pod_exit_code(spec.name)
                    break
                time.sleep(self.poll_interval_seconds)
            return SandboxResult(
                exit_code=exit_code,
                stdout_tail=self._logs(spec.name),
                artifact_path=resolve_artifact_path(spec),
                duration_seconds=time.monotonic() - started,
            )
        finally:
            self.teardown(spec.name)

    def _job_status(self, name: str, *, should_cancel: Callable[[], bool] | None) -> dict:
        completed = self._kubectl('get', 'job', name, '-o', 'json', check=False)
        if completed.returncode != 0:
            if _is_not_found(completed):
                if should_cancel is not None and should_cancel():
                    raise SandboxCancelled(f'sandbox {name} cancelled')
                raise InfraError(f'sandbox {name} disappeared')
            raise InfraError(f'kubectl get job failed: {str(completed.stderr or "").strip()}')
        try:
            return dict(json.loads(completed.stdout or '{}').get('status') or {})
        except json.JSONDecodeError as exc:
            raise InfraError(f'unreadable job status for {name}') from exc

    @staticmethod
    def _deadline_exceeded(status: dict) -> bool:
        for condition in status.get('conditions') or []:
            if condition.get('type') == 'Failed' and condition.get('reason') == 'DeadlineExceeded':
                return str(condition.get('status', 'True')) == 'True'
        return False

    def _pod_exit_code(self, name: str) -> int:
        completed = self._kubectl('get', 'pods', '-l', f'job-name={name}', '-o', 'json', check=False)
        if completed.returncode != 0:
            return -1
        try:
            items = json.loads(completed.stdout or '{}').get('items') or []
        except json.JSONDecodeError:
            return -1
        for pod in items:
            for status in (pod.get('status') or {}).get('containerStatuses') or []:
                terminated = (status.get('state') or {}).get('terminated')
                if terminated is not None:
                    return int(terminated.get('exitCode', -1))
        return -1

    def _logs(self, name: str) -> str:
        try:
            completed = self._kubectl('logs', f'job/{name}', f'--tail={self.log_tail_lines}', check=False)
        except InfraError:
            _log.warning('sandbox_logs_unavailable name=%s', name, exc_info=True)
            return ''
        return tail_text(completed.stdout or '', max_lines=self.log_tail_lines)

    def teardown(self, name: str) -> None:
        try:
            self._kubectl(
                'delete',
                'job,secret,networkpolicy',
                '-l',
                f'shipyard.io/job-id={name}',
                '--ignore-not-found',
                '--wait=false',
            )
        except InfraError:
            _log.warning('sandbox_teardown_failed name=%s', name, exc_info=True)
            return
        _log.info('sandbox_torn_down backend=kubernetes name=%s', name)

    def render_workload_manifest(self, workload: WorkloadSpec) -> list[dict]:
        labels = {
            'app.kubernetes.io/managed-by': 'shipyard',
            'shipyard.io/workload': workload.name,
            **workload.labels,
        }
        resources = {'cpu': _cpu_quantity(workload.cpus), 'memory': f'{int(workload.memory_mb)}Mi'}
        return [
            {
                'apiVersion': 'v1',
                'kind': 'Secret',
                'metadata': {'name': f'{workload.name}-env', 'labels': labels},
                'type': 'Opaque',
                'stringData': {str(k): str(v) for k, v in workload.env.items()},
            },
            {
                'apiVersion': 'v1',
                'kind': 'Service',
                'metadata': {'name': workload.name, 'labels': labels},
                'spec': {
                    'selector': {'shipyard.io/workload': workload.name},
                    'ports': [{'port': int(workload.port), 'targetPort': int(workload.port)}],
                },
            },
            {
                'apiVersion': 'apps/v1',
                'kind': 'StatefulSet',
                'metadata': {'name': workload.name, 'labels': labels},
                'spec': {
                    'serviceName': workload.name,
                    'replicas': 1,
                    'selector': {'matchLabels': {'shipyard.io/workload': workload.name}},
                    'template': {
                        'metadata': {'labels': labels},
                        'spec': {
                            'containers': [
                                {
                                    'name': 'workload',
                                    'image': workload.image,
                                    'args': list(workload.args),
                                    'envFrom': [{'secretRef': {'name': f'{workload.name}-env'}}],
                                    'ports': [{'containerPort': int(workload.port)}],
                                    'resources': {'requests': dict(resources), 'limits': dict(resources)},
                                    'volumeMounts': [{'name': 'data', 'mountPath': workload.data_path}],
                                }
                            ],
                        },
                    },
                    'volumeClaimTemplates': [
                        {
                            'metadata': {'name': 'data', 'labels': labels},
                            'spec': {
                                'accessModes': ['ReadWriteOnce'],
                                'resources': {'requests': {'storage': f'{int(workload.storage_gb)}Gi'}},
                            },
                        }
                    ],
                },
            },
        ]

    def provision(self, workload: WorkloadSpec) -> WorkloadHandle:
        if workload.manifest:
            documents = [doc for doc in yaml.safe_load_all(workload.manifest) if doc]
        else:
            documents = self.render_workload_manifest(workload)
        try:
            self._apply(documents)
            self._kubectl('rollout', 'status', f'statefulset/{workload.name}', '--timeout=120s')
        except InfraError:
            self.deprovision(workload.name)
            raise
        _log.info('workload_provisioned backend=kubernetes name=%s', workload.name)
        return WorkloadHandle(
            name=workload.name,
            host=f'{workload.name}.{self.namespace}.svc.cluster.local',
            port=int(workload.port),
            backend=self.backend,
        )

    def deprovision(self, name: str) -> None:
        try:
            self._kubectl(
                'delete',
                'statefulset,service,secret,pvc',
                '-l',
                f'shipyard.io/workload={name}',
                '--ignore-not-found',
                '--wait=false',
            )
        except InfraError:
            _log.warning('workload_deprovision_failed name=%s', name, exc_info=True)

    def check(self) -> bool:
        try:
            completed = self._kubectl('auth', 'can-i', 'create', 'jobs', check=False)
        except InfraError:
            return False
        return completed.returncode == 0
