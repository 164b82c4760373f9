from __future__ import annotations

import json
from pathlib import Path
import subprocess

import pytest
import yaml

from shipyard.errors import InfraError, SandboxCancelled, SandboxTimeout
from shipyard.sandbox.base import SandboxSpec, WorkloadSpec
from shipyard.sandbox.kubernetes import KubernetesSandboxExecutor


class FakeKubectl:
    """Scripted kubectl: answers by verb, records every call."""

    def __init__(self, *, job_statuses: list[dict] | None = None, pod_exit_code: int = 1, logs: str = ''):
        self.job_statuses = list(job_statuses or [])
        self.pod_exit_code = pod_exit_code
        self.logs = logs
        self.calls: list[list[str]] = []
        self.applied: list[dict] = []
        self.job_missing = False

    def __call__(self, argv, *, input_text=None, timeout=None, **kwargs):
        args = list(argv[3:])
        self.calls.append(args)
        verb = args[0]
        if verb == 'apply':
            self.applied.extend(doc for doc in yaml.safe_load_all(input_text) if doc)
            return subprocess.CompletedProcess(argv, 0, stdout='applied', stderr='')
        if verb == 'get' and args[1] == 'job':
            if self.job_missing:
                return subprocess.CompletedProcess(argv, 1, stdout='', stderr='Error from server (NotFound): jobs "x" not found')
            status = self.job_statuses.pop(0) if len(self.job_statuses) > 1 else self.job_statuses[0]
            return subprocess.CompletedProcess(argv, 0, stdout=json.dumps({'status': status}), stderr='')
        if verb == 'get' and args[1] == 'pods':
            pods = {'items': [{'status': {'containerStatuses': [{'state': {'terminated': {'exitCode': self.pod_exit_code}}}]}}]}
            return subprocess.CompletedProcess(argv, 0, stdout=json.dumps(pods), stderr='')
        if verb == 'logs':
            return subprocess.CompletedProcess(argv, 0, stdout=self.logs, stderr='')
        return subprocess.CompletedProcess(argv, 0, stdout='', stderr='')

    def verbs(self) -> list[str]:
        return [call[0] for call in self.calls]


def _executor(runner: FakeKubectl) -> KubernetesSandboxExecutor:
    return KubernetesSandboxExecutor(
        namespace='builds',
        kubectl_command='kubectl-for-tests',
        runner=runner,
        poll_interval_seconds=0.01,
        deadline_grace_seconds=0.0,
    )


def _spec(tmp_path: Path, **kwargs) -> SandboxSpec:
    defaults = dict(
        name='build-dpl-1-a1',
        image='node:20-alpine',
        command='npm run build',
        workdir=tmp_path,
        env={'NODE_ENV': 'production'},
        cpus=0.5,
        memory_mb=1024,
        disk_mb=2048,
        timeout_seconds=30,
        network='none',
        output_dir='dist',
    )
    defaults.update(kwargs)
    return SandboxSpec(**defaults)


def test_job_manifest_carries_limits_deadline_and_network_policy(tmp_path: Path):
    executor = _executor(FakeKubectl())
    docs = executor.render_job_manifest(_spec(tmp_path))
    kinds = [d['kind'] for d in docs]
    assert kinds == ['Secret', 'Job', 'NetworkPolicy']

    secret, job, policy = docs
    assert secret['stringData'] == {'NODE_ENV': 'production'}
    assert job['spec']['backoffLimit'] == 0
    assert job['spec']['activeDeadlineSeconds'] == 30
    container = job['spec']['template']['spec']['containers'][0]
    assert container['command'] == ['sh', '-c', 'npm run build']
    assert container['resources']['limits'] == {'cpu': '500m', 'memory': '1024Mi', 'ephemeral-storage': '2048Mi'}
    assert job['spec']['template']['spec']['automountServiceAccountToken'] is False
    assert policy['spec']['egress'] == []


def test_bridge_network_has_no_policy(tmp_path: Path):
    docs = _executor(FakeKubectl()).render_job_manifest(_spec(tmp_path, network='bridge'))
    assert [d['kind'] for d in docs] == ['Secret', 'Job']


def test_successful_job_returns_zero_and_tears_down(tmp_path: Path):
    runner = FakeKubectl(job_statuses=[{'active': 1}, {'succeeded': 1}], logs='done\n')
    result = _executor(runner).run_sandboxed(_spec(tmp_path))
    assert result.exit_code == 0
    assert result.stdout_tail == 'done'
    assert runner.verbs()[0] == 'apply'
    assert runner.verbs()[-1] == 'delete'
    assert runner.calls[-1][1] == 'job,secret,networkpolicy'


def test_failed_job_reports_container_exit_code(tmp_path: Path):
    runner = FakeKubectl(job_statuses=[{'failed': 1}], pod_exit_code=2)
    result = _executor(runner).run_sandboxed(_spec(tmp_path))
    assert result.exit_code == 2


def test_deadline_exceeded_condition_is_timeout(tmp_path: Path):
    status = {'failed': 1, 'conditions': [{'type': 'Failed', 'reason': 'DeadlineExceeded', 'status': 'True'}]}
    runner = FakeKubectl(job_statuses=[status], logs='slow build')
    with pytest.raises(SandboxTimeout) as exc:
        _executor(runner).run_sandboxed(_spec(tmp_path))
    assert exc.value.log_tail == 'slow build'
    assert runner.verbs()[-1] == 'delete'


def test_job_deleted_under_cancel_is_cancelled(tmp_path: Path):
    runner = FakeKubectl(job_statuses=[{'active': 1}])
    runner.job_missing = True
    answers = iter([False, True])
    with pytest.raises(SandboxCancelled):
        _executor(runner).run_sandboxed(_spec(tmp_path), should_cancel=lambda: next(answers, True))


def test_missing_job_without_cancel_is_infra_error(tmp_path: Path):
    runner = FakeKubectl(job_statuses=[{'active': 1}])
    runner.job_missing = True
    with pytest.raises(InfraError):
        _executor(runner).run_sandboxed(_spec(tmp_path))


def test_kubectl_missing_is_infra_error(tmp_path: Path):
    def runner(argv, **kwargs):
        raise FileNotFoundError(argv[0])

    executor = KubernetesSandboxExecutor(kubectl_command='kubectl-for-tests', runner=runner)
    with pytest.raises(InfraError):
        executor.run_sandboxed(_spec(tmp_path))
    assert executor.check() is False


def test_provision_workload_applies_statefulset_and_waits_for_rollout():
    runner = FakeKubectl()
    handle = _executor(runner).provision(
        WorkloadSpec(
            name='shipyard-db-abc',
            image='postgres:16-alpine',
            env={'POSTGRES_PASSWORD': 'pw'},
            port=5432,
            cpus=0.25,
            memory_mb=256,
            storage_gb=1,
        )
    )
    assert handle.host == 'shipyard-db-abc.builds.svc.cluster.local'
    assert [d['kind'] for d in runner.applied] == ['Secret', 'Service', 'StatefulSet']
    assert runner.verbs() == ['apply', 'rollout']
