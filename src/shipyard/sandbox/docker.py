from __future__ import annotations

import time
from typing import Callable

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from shipyard.errors import InfraError, SandboxCancelled, SandboxTimeout
from shipyard.observability import get_logger
from shipyard.sandbox.base import (
    SandboxResult,
    SandboxSpec,
    WorkloadHandle,
    WorkloadSpec,
    resolve_artifact_path,
    tail_text,
)

_log = get_logger('shipyard.sandbox.docker')

_FINISHED_STATES = {'exited', 'dead'}
SANDBOX_MOUNT = '/workspace'


class DockerSandboxExecutor:
    """One ephemeral container per job on the local Docker engine."""

    backend = 'docker'

    def __init__(
        self,
        *,
        client=None,
        poll_interval_seconds: float = 1.0,
        log_tail_lines: int = 200,
        storage_opt_supported: bool = False,
    ):
        self._client = client
        self.poll_interval_seconds = max(0.01, float(poll_interval_seconds))
        self.log_tail_lines = max(1, int(log_tail_lines))
        self.storage_opt_supported = bool(storage_opt_supported)

    @property
    def client(self):
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as exc:
                raise InfraError(f'docker engine unreachable: {exc}') from exc
        return self._client

    def _run_kwargs(self, spec: SandboxSpec) -> dict:
        kwargs: dict = {
            'image': spec.image,
            'entrypoint': ['sh', '-c'],
            'command': [spec.command],
            'name': spec.name,
            'detach': True,
            'environment': dict(spec.env),
            'labels': {'shipyard.io/sandbox': spec.name, **spec.labels},
            'network_mode': 'none' if spec.network == 'none' else 'bridge',
            'mem_limit': f'{int(spec.memory_mb)}m',
            'memswap_limit': f'{int(spec.memory_mb)}m',
            'nano_cpus': int(float(spec.cpus) * 1_000_000_000),
            'pids_limit': int(spec.pids_limit),
            'security_opt': ['no-new-privileges'],
        }
        if spec.workdir is not None:
            kwargs['volumes'] = {str(spec.workdir): {'bind': SANDBOX_MOUNT, 'mode': 'rw'}}
            kwargs['working_dir'] = SANDBOX_MOUNT
        if spec.disk_mb and self.storage_opt_supported:
            kwargs['storage_opt'] = {'size': f'{int(spec.disk_mb)}M'}
        return kwargs

    def run_sandboxed(
        self,
        spec: SandboxSpec,
        *,
        should_cancel: Callable[[], bool] | None = None,
    ) -> SandboxResult:
        started = time.monotonic()
        deadline = started + max(0.05, float(spec.timeout_seconds))
        try:
            container = self.client.containers.run(**self._run_kwargs(spec))
        except ImageNotFound as exc:
            self.teardown(spec.name)
            raise InfraError(f'sandbox image not found: {spec.image}') from exc
        except DockerException as exc:
            self.teardown(spec.name)
            raise InfraError(f'sandbox failed to start: {exc}') from exc
        _log.info('sandbox_started backend=docker name=%s image=%s', spec.name, spec.image)

        try:
            while True:
                if should_cancel is not None and should_cancel():
                    raise SandboxCancelled(f'sandbox {spec.name} cancelled')
                try:
                    container.reload()
                except NotFound as exc:
                    if should_cancel is not None and should_cancel():
                        raise SandboxCancelled(f'sandbox {spec.name} cancelled') from exc
                    raise InfraError(f'sandbox {spec.name} disappeared') from exc
                except DockerException as exc:
                    raise InfraError(f'docker engine unreachable: {exc}') from exc
                if container.status in _FINISHED_STATES:
                    break
                now = time.monotonic()
                if now >= deadline:
                    raise SandboxTimeout(
                        f'sandbox {spec.name} exceeded {spec.timeout_seconds}s',
                        timeout_seconds=spec.timeout_seconds,
                        log_tail=self._logs(container),
                    )
                time.sleep(min(self.poll_interval_seconds, max(0.01, deadline - now)))

            state = dict(container.attrs.get('State') or {})
            exit_code = int(state.get('ExitCode', -1))
            if state.get('OOMKilled'):
                _log.warning('sandbox_oom_killed name=%s', spec.name)
            return SandboxResult(
                exit_code=exit_code,
                stdout_tail=self._logs(container),
                artifact_path=resolve_artifact_path(spec),
                duration_seconds=time.monotonic() - started,
            )
        finally:
            self.teardown(spec.name)

    def _logs(self, container) -> str:
        try:
            raw = container.logs(stdout=True, stderr=True, tail=self.log_tail_lines)
        except DockerException:
            _log.warning('sandbox_logs_unavailable name=%s', getattr(container, 'name', '?'), exc_info=True)
            return ''
        if isinstance(raw, bytes):
            raw = raw.decode('utf-8', errors='replace')
        return tail_text(raw, max_lines=self.log_tail_lines)

    def teardown(self, name: str) -> None:
        try:
            self.client.containers.get(name).remove(force=True)
        except NotFound:
            return
        except (APIError, DockerException, InfraError):
            _log.warning('sandbox_teardown_failed name=%s', name, exc_info=True)
            return
        _log.info('sandbox_torn_down backend=docker name=%s', name)

    def provision(self, workload: WorkloadSpec) -> WorkloadHandle:
        port_key = f'{int(workload.port)}/tcp'
        try:
            container = self.client.containers.run(
                image=workload.image,
                name=workload.name,
                detach=True,
                environment=dict(workload.env),
                labels={'shipyard.io/workload': workload.name, **workload.labels},
                mem_limit=f'{int(workload.memory_mb)}m',
                nano_cpus=int(float(workload.cpus) * 1_000_000_000),
                ports={port_key: None},
                volumes={f'{workload.name}-data': {'bind': workload.data_path, 'mode': 'rw'}},
                restart_policy={'Name': 'unless-stopped'},
                command=list(workload.args) or None,
            )
            container.reload()
        except DockerException as exc:
            self.deprovision(workload.name)
            raise InfraError(f'workload {workload.name} failed to start: {exc}') from exc

        bindings = ((container.attrs.get('NetworkSettings') or {}).get('Ports') or {}).get(port_key) or []
        host_port = int(bindings[0]['HostPort']) if bindings else int(workload.port)
        _log.info('workload_provisioned backend=docker name=%s port=%s', workload.name, host_port)
        return WorkloadHandle(name=workload.name, host='127.0.0.1', port=host_port, backend=self.backend)

    def deprovision(self, name: str) -> None:
        self.teardown(name)
        try:
            self.client.volumes.get(f'{name}-data').remove(force=True)
        except NotFound:
            pass
        except DockerException:
            _log.warning('workload_volume_remove_failed name=%s', name, exc_info=True)

    def check(self) -> bool:
        try:
            return bool(self.client.ping())
        except (DockerException, InfraError):
            return False
