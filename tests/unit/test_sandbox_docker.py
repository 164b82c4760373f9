from __future__ import annotations

from pathlib import Path

from docker.errors import APIError, ImageNotFound, NotFound
import pytest

from shipyard.errors import InfraError, SandboxCancelled, SandboxTimeout
from shipyard.sandbox.base import SandboxSpec, WorkloadSpec, sandbox_name, tail_text
from shipyard.sandbox.docker import SANDBOX_MOUNT, DockerSandboxExecutor


class FakeContainer:
    def __init__(self, name: str, *, statuses: list[str], exit_code: int = 0, logs: bytes = b'', ports=None):
        self.name = name
        self._statuses = list(statuses)
        self.status = 'created'
        self.attrs = {'State': {'ExitCode': exit_code}, 'NetworkSettings': {'Ports': ports or {}}}
        self._logs = logs
        self.removed = False

    def reload(self):
        if self._statuses:
            self.status = self._statuses.pop(0)

    def logs(self, **kwargs):
        return self._logs

    def remove(self, force=False):
        self.removed = True


class FakeContainers:
    def __init__(self, container: FakeContainer | None = None, *, run_error: Exception | None = None):
        self.container = container
        self.run_error = run_error
        self.run_kwargs: dict | None = None
        self.by_name: dict[str, FakeContainer] = {}

    def run(self, **kwargs):
        self.run_kwargs = kwargs
        if self.run_error is not None:
            raise self.run_error
        self.by_name[kwargs['name']] = self.container
        return self.container

    def get(self, name):
        container = self.by_name.get(name)
        if container is None or container.removed:
            raise NotFound(f'no such container: {name}')
        return container


class FakeVolume:
    def __init__(self):
        self.removed = False

    def remove(self, force=False):
        self.removed = True


class FakeVolumes:
    def __init__(self):
        self.volumes: dict[str, FakeVolume] = {}

    def get(self, name):
        if name not in self.volumes:
            raise NotFound(name)
        return self.volumes[name]


class FakeDockerClient:
    def __init__(self, containers: FakeContainers, *, ping_ok: bool = True):
        self.containers = containers
        self.volumes = FakeVolumes()
        self.ping_ok = ping_ok

    def ping(self):
        if not self.ping_ok:
            raise APIError('engine down')
        return True


def _spec(tmp_path: Path, **kwargs) -> SandboxSpec:
    defaults = dict(
        name='build-dpl-1-a1',
        image='node:20-alpine',
        command='npm ci && npm run build',
        workdir=tmp_path,
        cpus=0.5,
        memory_mb=512,
        pids_limit=128,
        timeout_seconds=5,
        network='none',
        output_dir='dist',
    )
    defaults.update(kwargs)
    return SandboxSpec(**defaults)


def test_run_sandboxed_applies_limits_and_tears_down(tmp_path: Path):
    container = FakeContainer('build-dpl-1-a1', statuses=['running', 'exited'], logs=b'built ok\n')
    containers = FakeContainers(container)
    executor = DockerSandboxExecutor(client=FakeDockerClient(containers), poll_interval_seconds=0.01)

    result = executor.run_sandboxed(_spec(tmp_path))

    assert result.exit_code == 0
    assert result.stdout_tail == 'built ok'
    assert result.artifact_path == (tmp_path / 'dist').resolve()
    kwargs = containers.run_kwargs
    assert kwargs['entrypoint'] == ['sh', '-c']
    assert kwargs['command'] == ['npm ci && npm run build']
    assert kwargs['network_mode'] == 'none'
    assert kwargs['mem_limit'] == '512m'
    assert kwargs['nano_cpus'] == 500_000_000
    assert kwargs['pids_limit'] == 128
    assert kwargs['working_dir'] == SANDBOX_MOUNT
    assert 'storage_opt' not in kwargs
    assert container.removed is True


def test_storage_opt_only_when_supported(tmp_path: Path):
    containers = FakeContainers(FakeContainer('x', statuses=['exited']))
    executor = DockerSandboxExecutor(client=FakeDockerClient(containers), storage_opt_supported=True)
    executor.run_sandboxed(_spec(tmp_path, disk_mb=1024))
    assert containers.run_kwargs['storage_opt'] == {'size': '1024M'}


def test_nonzero_exit_is_returned_not_raised(tmp_path: Path):
    containers = FakeContainers(FakeContainer('x', statuses=['exited'], exit_code=2, logs=b'boom'))
    executor = DockerSandboxExecutor(client=FakeDockerClient(containers))
    result = executor.run_sandboxed(_spec(tmp_path))
    assert result.exit_code == 2
    assert result.stdout_tail == 'boom'


def test_timeout_raises_with_log_tail(tmp_path: Path):
    container = FakeContainer('x', statuses=['running'] * 1000, logs=b'still building')
    executor = DockerSandboxExecutor(client=FakeDockerClient(FakeContainers(container)), poll_interval_seconds=0.01)
    with pytest.raises(SandboxTimeout) as exc:
        executor.run_sandboxed(_spec(tmp_path, timeout_seconds=0.05))
    assert exc.value.log_tail == 'still building'
    assert container.removed is True


def test_cancel_stops_the_container(tmp_path: Path):
    container = FakeContainer('x', statuses=['running'] * 1000)
    executor = DockerSandboxExecutor(client=FakeDockerClient(FakeContainers(container)), poll_interval_seconds=0.01)
    polls = {'n': 0}

    def should_cancel() -> bool:
        polls['n'] += 1
        return polls['n'] > 2

    with pytest.raises(SandboxCancelled):
        executor.run_sandboxed(_spec(tmp_path), should_cancel=should_cancel)
    assert container.removed is True


def test_start_failures_are_infra_errors(tmp_path: Path):
    executor = DockerSandboxExecutor(client=FakeDockerClient(FakeContainers(run_error=ImageNotFound('nope'))))
    with pytest.raises(InfraError, match='image not found'):
        executor.run_sandboxed(_spec(tmp_path))

    executor = DockerSandboxExecutor(client=FakeDockerClient(FakeContainers(run_error=APIError('daemon busy'))))
    with pytest.raises(InfraError, match='failed to start'):
        executor.run_sandboxed(_spec(tmp_path))


def test_provision_maps_published_port_and_deprovision_removes_volume():
    ports = {'5432/tcp': [{'HostIp': '0.0.0.0', 'HostPort': '49153'}]}
    container = FakeContainer('shipyard-db-1', statuses=['running'], ports=ports)
    client = FakeDockerClient(FakeContainers(container))
    volume = FakeVolume()
    client.volumes.volumes['shipyard-db-1-data'] = volume
    executor = DockerSandboxExecutor(client=client)

    handle = executor.provision(
        WorkloadSpec(
            name='shipyard-db-1',
            image='postgres:16-alpine',
            env={'POSTGRES_PASSWORD': 'pw'},
            port=5432,
            cpus=0.5,
            memory_mb=256,
            storage_gb=1,
        )
    )
    assert handle.port == 49153
    assert handle.backend == 'docker'

    executor.deprovision('shipyard-db-1')
    assert container.removed is True
    assert volume.removed is True


def test_check_reports_engine_health():
    assert DockerSandboxExecutor(client=FakeDockerClient(FakeContainers())).check() is True
    assert DockerSandboxExecutor(client=FakeDockerClient(FakeContainers(), ping_ok=False)).check() is False


def test_sandbox_name_is_dns_safe_and_bounded():
    name = sandbox_name('build', 'DPL_abc/123' + 'x' * 80)
    assert name.startswith('build-dpl-abc-123')
    assert len(name) <= 52
    assert not name.endswith('-')


def test_tail_text_keeps_last_lines():
    assert tail_text('a\nb\nc', max_lines=2) == 'b\nc'
    assert tail_text('x' * 50, max_chars=10) == 'x' * 10
