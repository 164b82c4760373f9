from __future__ import annotations

import json
from pathlib import Path

import pytest

from shipyard.errors import BuildError, InfraError, SandboxCancelled
from shipyard.pipeline import BuildPipeline, BuildRequest, SandboxLimits
from shipyard.sandbox.base import SandboxResult, resolve_artifact_path
from shipyard.storage.artifacts import BuildWorkspaces


class FakeCloner:
    git_command = 'git'

    def __init__(self, files: dict[str, str]):
        self.files = files
        self.calls: list[dict] = []

    def available(self) -> bool:
        return True

    def clone(self, *, repo_url: str, branch: str, commit_sha: str | None, target_dir: Path) -> str:
        self.calls.append({'repo_url': repo_url, 'branch': branch, 'commit_sha': commit_sha})
        target_dir.mkdir(parents=True, exist_ok=True)
        for rel, text in self.files.items():
            path = target_dir / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(text, encoding='utf-8')
        return commit_sha or 'f' * 40


class FakeExecutor:
    backend = 'fake'

    def __init__(self, *, exit_code: int = 0, log: str = '', infra_failures: int = 0, write_output: bool = True):
        self.exit_code = exit_code
        self.log = log
        self.infra_failures = infra_failures
        self.write_output = write_output
        self.specs = []

    def run_sandboxed(self, spec, *, should_cancel=None):
        self.specs.append(spec)
        if self.infra_failures:
            self.infra_failures -= 1
            raise InfraError('docker daemon unreachable')
        if should_cancel is not None and should_cancel():
            raise SandboxCancelled('cancelled')
        artifact = resolve_artifact_path(spec)
        if self.write_output and self.exit_code == 0:
            artifact.mkdir(parents=True, exist_ok=True)
            (artifact / 'index.html').write_text('<h1>built</h1>', encoding='utf-8')
        return SandboxResult(exit_code=self.exit_code, stdout_tail=self.log, artifact_path=artifact, duration_seconds=0.1)

    def check(self) -> bool:
        return True


VITE_REPO = {
    'package.json': json.dumps({'devDependencies': {'vite': '^5.0.0'}}),
    'package-lock.json': '{}',
    'src/main.js': 'console.log(1)',
}


def _request(**overrides) -> BuildRequest:
    values = {
        'deployment_id': 'dpl-abc123',
        'project_id': 'prj-1',
        'repo_url': 'https://git.example.com/site.git',
        'branch': 'main',
        'commit_sha': 'a' * 40,
        'env': {'API_URL': 'https://api.example.com'},
    }
    values.update(overrides)
    return BuildRequest(**values)


def _pipeline(tmp_path: Path, executor, cloner, **kwargs) -> BuildPipeline:
    return BuildPipeline(
        executor=executor,
        cloner=cloner,
        workspaces=BuildWorkspaces(tmp_path / 'work'),
        limits=SandboxLimits(image='node:20-alpine', timeout_seconds=30, network='none'),
        sleep=lambda _: None,
        **kwargs,
    )


def test_build_runs_install_and_build_in_one_sandbox(tmp_path: Path):
    executor = FakeExecutor()
    cloner = FakeCloner(VITE_REPO)
    events: list[tuple[str, dict]] = []
    registered: list[str | None] = []

    outcome = _pipeline(tmp_path, executor, cloner).build(
        _request(),
        on_event=lambda kind, payload: events.append((kind, payload)),
        on_sandbox=registered.append,
    )

    assert outcome.plan.framework == 'vite'
    assert outcome.plan.install_command == 'npm ci'
    assert outcome.head_sha == 'a' * 40
    assert outcome.attempts == 1
    assert (outcome.artifact_path / 'index.html').is_file()

    assert len(executor.specs) == 1
    spec = executor.specs[0]
    assert 'npm ci' in spec.command and 'npm run build' in spec.command
    assert spec.env['API_URL'] == 'https://api.example.com'
    assert spec.env['SHIPYARD_DEPLOYMENT_ID'] == 'dpl-abc123'
    assert spec.network == 'none'
    assert spec.output_dir == 'dist'
    assert registered == [spec.name, None]

    kinds = [kind for kind, _ in events]
    assert kinds.index('sandbox_started') < kinds.index('sandbox_torn_down')
    percents = [payload['percent'] for kind, payload in events if kind == 'progress']
    assert percents == sorted(percents)


def test_static_site_skips_the_sandbox(tmp_path: Path):
    executor = FakeExecutor()
    outcome = _pipeline(tmp_path, executor, FakeCloner({'index.html': '<p>hi</p>'})).build(_request())
    assert executor.specs == []
    assert outcome.plan.framework == 'static'
    assert (outcome.artifact_path / 'index.html').is_file()


def test_failed_build_reports_the_failing_step(tmp_path: Path):
    executor = FakeExecutor(exit_code=1, log="::shipyard-step::install\nadded 10 packages\n::shipyard-step::build\nerror TS2304")
    with pytest.raises(BuildError) as exc:
        _pipeline(tmp_path, executor, FakeCloner(VITE_REPO)).build(_request())
    assert exc.value.step == 'build'
    assert exc.value.exit_code == 1
    assert 'TS2304' in exc.value.log_tail
    assert len(executor.specs) == 1


def test_empty_output_is_a_build_error(tmp_path: Path):
    executor = FakeExecutor(write_output=False)
    with pytest.raises(BuildError) as exc:
        _pipeline(tmp_path, executor, FakeCloner(VITE_REPO)).build(_request())
    assert exc.value.step == 'collect'


def test_infra_errors_are_retried_with_backoff(tmp_path: Path):
    executor = FakeExecutor(infra_failures=1)
    sleeps: list[float] = []
    pipeline = BuildPipeline(
        executor=executor,
        cloner=FakeCloner(VITE_REPO),
        workspaces=BuildWorkspaces(tmp_path / 'work'),
        infra_retries=2,
        infra_retry_backoff_seconds=1.5,
        sleep=sleeps.append,
    )
    events: list[str] = []
    outcome = pipeline.build(_request(), on_event=lambda kind, payload: events.append(kind))
    assert outcome.attempts == 2
    assert sleeps == [1.5]
    assert events.count('infra_retry') == 1
    assert executor.specs[0].name != executor.specs[1].name


def test_infra_errors_surface_after_retries_are_exhausted(tmp_path: Path):
    executor = FakeExecutor(infra_failures=5)
    with pytest.raises(InfraError):
        _pipeline(tmp_path, executor, FakeCloner(VITE_REPO), infra_retries=1).build(_request())
    assert len(executor.specs) == 2


def test_cancel_before_clone_stops_the_build(tmp_path: Path):
    cloner = FakeCloner(VITE_REPO)
    with pytest.raises(SandboxCancelled):
        _pipeline(tmp_path, FakeExecutor(), cloner).build(_request(), should_cancel=lambda: True)
    assert cloner.calls == []


def test_cleanup_removes_the_workspace(tmp_path: Path):
    pipeline = _pipeline(tmp_path, FakeExecutor(), FakeCloner(VITE_REPO))
    pipeline.build(_request())
    assert (tmp_path / 'work' / 'builds' / 'dpl-abc123').is_dir()
    pipeline.cleanup('dpl-abc123')
    assert not (tmp_path / 'work' / 'builds' / 'dpl-abc123').exists()
