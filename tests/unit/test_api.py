from __future__ import annotations

import hashlib
import hmac
import json
from pathlib import Path

from fastapi.testclient import TestClient
import pytest
from starlette.websockets import WebSocketDisconnect

from shipyard.api import create_app
from shipyard.broadcast import StatusBroadcaster
from shipyard.buildplan import BuildPlan
from shipyard.health import HealthChecker
from shipyard.job_queue import InMemoryJobQueue
from shipyard.pipeline import BuildOutcome
from shipyard.repository import InMemoryDeploymentRepository
from shipyard.sandbox.base import SandboxResult, WorkloadHandle
from shipyard.sandbox.provisioning import DatabaseProvisioner
from shipyard.scheduler import CronScheduler
from shipyard.service import OrchestratorService
from shipyard.storage.artifacts import LocalArtifactPublisher

ALICE = {'X-Shipyard-User': 'alice'}
MALLORY = {'X-Shipyard-User': 'mallory'}


class FakeExecutor:
    backend = 'fake'

    def __init__(self):
        self.deprovisioned: list[str] = []

    def run_sandboxed(self, spec, *, should_cancel=None):
        return SandboxResult(exit_code=0, stdout_tail='200 OK', artifact_path=None, duration_seconds=0.01)

    def teardown(self, name: str) -> None:
        return None

    def provision(self, workload):
        return WorkloadHandle(name=workload.name, host='db.internal', port=workload.port, backend=self.backend)

    def deprovision(self, name: str) -> None:
        self.deprovisioned.append(name)

    def check(self) -> bool:
        return True


class FakePipeline:
    infra_retries = 0

    def __init__(self, root: Path):
        self.root = root
        self.executor = FakeExecutor()

    def build(self, request, *, on_event=None, should_cancel=None, on_sandbox=None):
        out = self.root / request.deployment_id
        out.mkdir(parents=True, exist_ok=True)
        (out / 'index.html').write_text('ok', encoding='utf-8')
        return BuildOutcome(
            artifact_path=out,
            plan=BuildPlan('static', 'npm', None, None, '.'),
            head_sha=request.commit_sha,
            log_tail='',
            duration_seconds=0.01,
            attempts=1,
        )

    def cleanup(self, deployment_id: str) -> None:
        return None


def build_client(
    tmp_path: Path,
    *,
    api_access_token: str | None = None,
    health: HealthChecker | None = None,
    with_scheduler: bool = True,
) -> TestClient:
    repo = InMemoryDeploymentRepository()
    pipeline = FakePipeline(tmp_path / 'out')
    scheduler = (
        CronScheduler(repository=repo, executor=pipeline.executor, base_domain='shipyard.test', sleep=lambda _: None)
        if with_scheduler
        else None
    )
    service = OrchestratorService(
        repository=repo,
        broadcaster=StatusBroadcaster(repo),
        queue=InMemoryJobQueue(),
        pipeline=pipeline,
        publisher=LocalArtifactPublisher(tmp_path / 'artifacts'),
        base_domain='shipyard.test',
        webhook_secrets={'github': 'hook-secret'},
        scheduler=scheduler,
        provisioner=DatabaseProvisioner(pipeline.executor),
    )
    app = create_app(
        service=service,
        health=health or HealthChecker({'store': repo.ping}),
        api_access_token=api_access_token,
    )
    return TestClient(app)


def _service(client: TestClient) -> OrchestratorService:
    return client.app.state.container.service


def _create_project(client: TestClient, **overrides) -> dict:
    body = {'name': 'Docs Site', 'repo_url': 'https://git.example.com/docs.git', 'member_ids': ['bob']}
    body.update(overrides)
    response = client.post('/api/projects', json=body, headers=ALICE)
    assert response.status_code == 201, response.text
    return response.json()


def _deploy(client: TestClient, project_id: str, sha: str = 'a' * 40, **overrides) -> dict:
    body = {'projectId': project_id, 'ref': 'main', 'commitSha': sha, 'isProduction': True}
    body.update(overrides)
    response = client.post('/api/deployments', json=body, headers=ALICE)
    assert response.status_code == 201, response.text
    return response.json()


def test_api_project_and_deployment_roundtrip(tmp_path: Path):
    client = build_client(tmp_path)
    project = _create_project(client, env_vars={'TOKEN': 'secret'})
    assert project['slug'] == 'docs-site'
    assert project['owner_id'] == 'alice'
    assert project['env_var_keys'] == ['TOKEN']
    assert 'env_vars' not in project

    deployment = _deploy(client, project['project_id'], commitMessage='first')
    assert deployment['status'] == 'queued'
    assert deployment['is_preview'] is False
    assert deployment['url'].startswith('https://docs-site-')

    _service(client).run_deployment(deployment['deployment_id'])

    fetched = client.get(f"/api/deployments/{deployment['deployment_id']}", headers={'X-Shipyard-User': 'bob'})
    assert fetched.status_code == 200
    assert fetched.json()['status'] == 'ready'
    assert fetched.json()['is_active'] is True

    listed = client.get(f"/api/projects/{project['project_id']}/deployments", headers=ALICE)
    assert [d['deployment_id'] for d in listed.json()] == [deployment['deployment_id']]
    assert [p['project_id'] for p in client.get('/api/projects', headers=ALICE).json()] == [project['project_id']]


def test_api_deployment_accepts_snake_case_fields(tmp_path: Path):
    client = build_client(tmp_path)
    project = _create_project(client)
    response = client.post(
        '/api/deployments',
        json={'project_id': project['project_id'], 'ref': 'feature/x', 'commit_sha': 'abc1234'},
        headers=ALICE,
    )
    assert response.status_code == 201
    assert response.json()['is_preview'] is True


def test_api_events_filter_by_after_id(tmp_path: Path):
    client = build_client(tmp_path)
    project = _create_project(client)
    deployment = _deploy(client, project['project_id'])
    _service(client).run_deployment(deployment['deployment_id'])

    events = client.get(f"/api/deployments/{deployment['deployment_id']}/events", headers=ALICE).json()
    assert events[0]['type'] == 'deployment_queued'
    assert [e['seq'] for e in events] == list(range(1, len(events) + 1))

    later = client.get(
        f"/api/deployments/{deployment['deployment_id']}/events",
        params={'after_id': events[1]['id']},
        headers=ALICE,
    ).json()
    assert len(later) == len(events) - 2

    project_events = client.get(f"/api/projects/{project['project_id']}/events", headers=ALICE).json()
    assert len(project_events) == len(events)


def test_api_cancel_and_conflicts(tmp_path: Path):
    client = build_client(tmp_path)
    project = _create_project(client)
    deployment = _deploy(client, project['project_id'])

    cancelled = client.post(f"/api/deployments/{deployment['deployment_id']}/cancel", headers=ALICE)
    assert cancelled.status_code == 200
    assert cancelled.json()['status'] == 'cancelled'

    again = client.post(f"/api/deployments/{deployment['deployment_id']}/cancel", headers=ALICE)
    assert again.status_code == 409
    assert again.json()['code'] == 'invalid_transition'

    duplicate = client.post('/api/projects', json={'name': 'Docs Site', 'repo_url': 'https://x/y.git'}, headers=ALICE)
    assert duplicate.status_code == 409
    assert duplicate.json()['code'] == 'slug_taken'

    no_target = client.post(f"/api/projects/{project['project_id']}/rollback", headers=ALICE)
    assert no_target.status_code == 409
    assert no_target.json()['code'] == 'no_rollback_target'


def test_api_rollback_and_redeploy(tmp_path: Path):
    client = build_client(tmp_path)
    project = _create_project(client)
    first = _deploy(client, project['project_id'], 'a' * 40)
    _service(client).run_deployment(first['deployment_id'])
    second = _deploy(client, project['project_id'], 'b' * 40)
    _service(client).run_deployment(second['deployment_id'])

    rolled = client.post(f"/api/projects/{project['project_id']}/rollback", headers=ALICE)
    assert rolled.status_code == 200
    assert rolled.json()['deployment_id'] == first['deployment_id']

    forward = client.post(f"/api/deployments/{second['deployment_id']}/rollback", headers=ALICE)
    assert forward.status_code == 200
    assert forward.json()['is_active'] is True

    redeployed = client.post(f"/api/deployments/{first['deployment_id']}/redeploy", headers=ALICE)
    assert redeployed.status_code == 201
    assert redeployed.json()['trigger'] == 'redeploy'
    assert redeployed.json()['commit_sha'] == 'a' * 40


def test_api_requires_user_and_enforces_access(tmp_path: Path):
    client = build_client(tmp_path)
    project = _create_project(client)

    anonymous = client.get(f"/api/projects/{project['project_id']}")
    assert anonymous.status_code == 401

    forbidden = client.get(f"/api/projects/{project['project_id']}", headers=MALLORY)
    assert forbidden.status_code == 403
    assert forbidden.json()['code'] == 'forbidden'

    missing = client.get('/api/deployments/dpl-missing', headers=ALICE)
    assert missing.status_code == 404
    assert missing.json()['code'] == 'not_found'


def test_api_body_validation_returns_stable_400_schema(tmp_path: Path):
    client = build_client(tmp_path)
    project = _create_project(client)

    missing = client.post('/api/deployments', json={'projectId': project['project_id'], 'ref': 'main'}, headers=ALICE)
    assert missing.status_code == 400
    assert missing.json()['code'] == 'validation_error'
    assert missing.json()['field'] == 'commitSha'

    bad_sha = client.post(
        '/api/deployments',
        json={'projectId': project['project_id'], 'ref': 'main', 'commitSha': 'zzzzzzz'},
        headers=ALICE,
    )
    assert bad_sha.status_code == 400
    assert bad_sha.json()['field'] == 'commit_sha'

    bad_branch = client.post(
        '/api/deployments',
        json={'projectId': project['project_id'], 'ref': '../etc', 'commitSha': 'a' * 40},
        headers=ALICE,
    )
    assert bad_branch.status_code == 400
    assert bad_branch.json()['field'] == 'branch'


def test_api_token_mode_blocks_missing_and_invalid_token(tmp_path: Path):
    client = build_client(tmp_path, api_access_token='s3cret')
    assert client.get('/api/projects', headers=ALICE).status_code == 401
    assert client.get('/api/projects', headers={**ALICE, 'X-Shipyard-Api-Token': 'wrong'}).status_code == 401
    assert client.get('/api/projects', headers={**ALICE, 'X-Shipyard-Api-Token': 's3cret'}).status_code == 200
    assert client.get('/healthz').status_code == 200


def test_api_webhook_bypasses_token_and_deduplicates(tmp_path: Path):
    client = build_client(tmp_path, api_access_token='s3cret')
    created = client.post(
        '/api/projects',
        json={'name': 'Hooked', 'repo_url': 'https://x/y.git'},
        headers={**ALICE, 'X-Shipyard-Api-Token': 's3cret'},
    )
    project_id = created.json()['project_id']
    body = json.dumps(
        {'ref': 'refs/heads/main', 'after': 'c' * 40, 'head_commit': {'id': 'c' * 40, 'message': 'm'}, 'repository': {'default_branch': 'main'}}
    ).encode('utf-8')
    signature = hmac.new(b'hook-secret', body, hashlib.sha256).hexdigest()
    headers = {
        'X-GitHub-Event': 'push',
        'X-GitHub-Delivery': 'delivery-1',
        'X-Hub-Signature-256': f'sha256={signature}',
        'Content-Type': 'application/json',
    }

    first = client.post(f'/api/webhooks/github/{project_id}', content=body, headers=headers)
    assert first.status_code == 202
    assert first.json()['deduped'] is False
    assert first.json()['status'] == 'queued'

    again = client.post(f'/api/webhooks/github/{project_id}', content=body, headers=headers)
    assert again.json() == {**first.json(), 'deduped': True}

    bad = client.post(
        f'/api/webhooks/github/{project_id}',
        content=body,
        headers={**headers, 'X-Hub-Signature-256': 'sha256=' + '0' * 64},
    )
    assert bad.status_code == 401

    unknown = client.post(f'/api/webhooks/svn/{project_id}', content=body, headers=headers)
    assert unknown.status_code == 400
    assert unknown.json()['code'] == 'unsupported_provider'


def test_api_cron_lifecycle(tmp_path: Path):
    client = build_client(tmp_path)
    project = _create_project(client)
    deployment = _deploy(client, project['project_id'])
    _service(client).run_deployment(deployment['deployment_id'])

    created = client.post(
        f"/api/projects/{project['project_id']}/cron",
        json={'schedule': '*/10 * * * *', 'path': '/api/cleanup', 'retry_count': 1},
        headers=ALICE,
    )
    assert created.status_code == 201
    job = created.json()
    assert job['next_run_at'] is not None
    assert job['success_rate_50'] is None

    invalid = client.post(f"/api/projects/{project['project_id']}/cron", json={'schedule': '61 * * * *'}, headers=ALICE)
    assert invalid.status_code == 400
    assert invalid.json()['code'] == 'invalid_cron'

    patched = client.patch(f"/api/cron/{job['cron_job_id']}", json={'enabled': False}, headers=ALICE)
    assert patched.status_code == 200
    assert patched.json()['next_run_at'] is None

    triggered = client.post(
        f"/api/cron/{job['cron_job_id']}/trigger",
        json={'external_trigger_id': 'evt-9'},
        headers=ALICE,
    )
    assert triggered.status_code == 202
    assert triggered.json()['deduped'] is False
    _service(client).scheduler.stop(wait=True)

    deduped = client.post(f"/api/cron/{job['cron_job_id']}/trigger", json={'external_trigger_id': 'evt-9'}, headers=ALICE)
    assert deduped.json()['deduped'] is True

    executions = client.get(f"/api/cron/{job['cron_job_id']}/executions", headers=ALICE).json()
    assert [e['status'] for e in executions] == ['success']
    assert executions[0]['external_trigger_id'] == 'evt-9'

    assert client.get(f"/api/cron/{job['cron_job_id']}", headers=MALLORY).status_code == 403
    assert client.delete(f"/api/cron/{job['cron_job_id']}", headers=ALICE).status_code == 204
    assert client.delete(f"/api/cron/{job['cron_job_id']}", headers=ALICE).status_code == 404


def test_api_cron_preview_and_not_configured(tmp_path: Path):
    client = build_client(tmp_path, with_scheduler=False)
    preview = client.post('/api/cron/preview', json={'schedule': '@daily', 'count': 3})
    assert preview.status_code == 200
    assert len(preview.json()['runs']) == 3

    project = _create_project(client)
    response = client.get(f"/api/projects/{project['project_id']}/cron", headers=ALICE)
    assert response.status_code == 503
    assert response.json()['code'] == 'not_configured'


def test_api_database_provision_and_deprovision(tmp_path: Path):
    client = build_client(tmp_path)
    project = _create_project(client, tier='pro')
    created = client.post(f"/api/projects/{project['project_id']}/databases", json={'engine': 'redis'}, headers=ALICE)
    assert created.status_code == 201
    body = created.json()
    assert body['tier'] == 'pro'
    assert body['connection_url'].startswith('redis://:')

    foreign = client.delete(f"/api/projects/{project['project_id']}/databases/shipyard-db-other-123456", headers=ALICE)
    assert foreign.status_code == 404

    removed = client.delete(f"/api/projects/{project['project_id']}/databases/{body['name']}", headers=ALICE)
    assert removed.status_code == 204
    assert _service(client).provisioner.executor.deprovisioned == [body['name']]

    bad_engine = client.post(f"/api/projects/{project['project_id']}/databases", json={'engine': 'oracle'}, headers=ALICE)
    assert bad_engine.status_code == 400


def test_api_health_stats_and_metrics(tmp_path: Path):
    client = build_client(tmp_path, health=HealthChecker({'store': lambda: False}))
    assert client.get('/api/health').status_code == 503

    client = build_client(tmp_path)
    health = client.get('/api/health')
    assert health.status_code == 200
    assert health.json()['status'] == 'healthy'

    project = _create_project(client)
    _deploy(client, project['project_id'])
    stats = client.get('/api/stats').json()
    assert stats['total_deployments'] == 1
    assert stats['queue_depth'] == 1
    assert 'build_durations_ms' not in stats

    metrics = client.get('/metrics')
    assert metrics.headers['content-type'].startswith('text/plain')
    assert 'shipyard_deployments{status="queued"} 1' in metrics.text


def test_api_realtime_replays_history_and_checks_access(tmp_path: Path):
    client = build_client(tmp_path)
    project = _create_project(client)
    deployment = _deploy(client, project['project_id'])
    channel = f"deployment:{deployment['deployment_id']}"

    with client.websocket_connect(f'/api/realtime/{channel}?user=bob') as ws:
        first = ws.receive_json()
        second = ws.receive_json()
    assert [first['type'], second['type']] == ['deployment_queued', 'status_change']

    with client.websocket_connect(f'/api/realtime/{channel}?user=mallory') as ws:
        with pytest.raises(WebSocketDisconnect) as exc:
            ws.receive_json()
    assert exc.value.code == 4403

    with client.websocket_connect('/api/realtime/deployment:dpl-missing?user=alice') as ws:
        with pytest.raises(WebSocketDisconnect) as exc:
            ws.receive_json()
    assert exc.value.code == 4404
