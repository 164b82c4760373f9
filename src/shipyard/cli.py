from __future__ import annotations

import argparse
import json
import os
import sys

import httpx


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='shipyard', description='Drive the shipyard build and release API')
    parser.add_argument('--api-base', default=os.getenv('SHIPYARD_API_BASE', 'http://127.0.0.1:8000'), help='API base URL')
    parser.add_argument('--user', default=os.getenv('SHIPYARD_USER', ''), help='Acting user id (X-Shipyard-User)')
    parser.add_argument('--token', default=os.getenv('SHIPYARD_API_TOKEN', ''), help='API access token')

    sub = parser.add_subparsers(dest='command', required=True)

    project = sub.add_parser('projects-create', help='Create a project')
    project.add_argument('--name', required=True)
    project.add_argument('--repo-url', required=True)
    project.add_argument('--slug', default='')
    project.add_argument('--production-branch', default='')
    project.add_argument('--member', action='append', default=[], help='Member user id (repeatable)')
    project.add_argument('--env', action='append', default=[], help='Build env var in KEY=VALUE format (repeatable)')
    project.add_argument('--install-command', default='')
    project.add_argument('--build-command', default='')
    project.add_argument('--output-directory', default='')
    project.add_argument('--framework', default='')
    project.add_argument('--tier', default='hobby', choices=['hobby', 'pro', 'enterprise'])

    sub.add_parser('projects', help='List projects visible to the user')

    deploy = sub.add_parser('deploy', help='Queue a deployment')
    deploy.add_argument('project_id')
    deploy.add_argument('--ref', required=True, help='Branch to build')
    deploy.add_argument('--commit', required=True, help='Commit sha')
    deploy.add_argument('--production', action='store_true', help='Promote to the production alias when ready')
    deploy.add_argument('--message', default='')
    deploy.add_argument('--idempotency-key', default='')

    status = sub.add_parser('status', help='Show one deployment')
    status.add_argument('deployment_id')

    deployments = sub.add_parser('deployments', help='List deployments of a project')
    deployments.add_argument('project_id')
    deployments.add_argument('--limit', type=int, default=20)

    for name, help_text in (
        ('cancel', 'Cancel a queued or building deployment'),
        ('redeploy', 'Queue a fresh build of the same commit'),
        ('rollback', 'Point the production alias at this deployment'),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument('deployment_id')

    rollback_project = sub.add_parser('rollback-project', help='Roll production back to the previous ready deployment')
    rollback_project.add_argument('project_id')

    events = sub.add_parser('events', help='List deployment events')
    events.add_argument('deployment_id')
    events.add_argument('--after-id', type=int, default=0)

    cron_create = sub.add_parser('cron-create', help='Create a cron job')
    cron_create.add_argument('project_id')
    cron_create.add_argument('--schedule', required=True, help='Five-field cron expression or @macro')
    cron_create.add_argument('--path', default='/')
    cron_create.add_argument('--timezone', default='UTC')
    cron_create.add_argument('--timeout-seconds', type=int, default=60)
    cron_create.add_argument('--retry-count', type=int, default=0)
    cron_create.add_argument('--disabled', action='store_true')

    cron_list = sub.add_parser('cron-list', help='List cron jobs of a project')
    cron_list.add_argument('project_id')

    cron_trigger = sub.add_parser('cron-trigger', help='Run a cron job now')
    cron_trigger.add_argument('job_id')
    cron_trigger.add_argument('--trigger-id', default='', help='External trigger id for deduplication')

    cron_executions = sub.add_parser('cron-executions', help='List recent executions of a cron job')
    cron_executions.add_argument('job_id')
    cron_executions.add_argument('--limit', type=int, default=20)

    cron_preview = sub.add_parser('cron-preview', help='Show the next run times of a schedule')
    cron_preview.add_argument('schedule')
    cron_preview.add_argument('--timezone', default='UTC')
    cron_preview.add_argument('--count', type=int, default=5)

    sub.add_parser('health', help='Run dependency health checks')
    sub.add_parser('stats', help='Show aggregated deployment stats')
    sub.add_parser('metrics', help='Print metrics in Prometheus text format')

    return parser


def _print_json(payload) -> None:
    print(json.dumps(payload, ensure_ascii=True, indent=2))


def _parse_env(values: list[str] | None) -> dict[str, str]:
    out: dict[str, str] = {}
    for raw in values or []:
        text = str(raw or '').strip()
        if not text:
            continue
        if '=' not in text:
            raise ValueError(f'invalid --env value: {text} (expected KEY=VALUE)')
        key, value = text.split('=', 1)
        if not key.strip():
            raise ValueError(f'invalid --env key: {text}')
        out[key.strip()] = value
    return out


def _headers(args) -> dict[str, str]:
    headers: dict[str, str] = {}
    if str(args.user or '').strip():
        headers['X-Shipyard-User'] = args.user.strip()
    if str(args.token or '').strip():
        headers['X-Shipyard-Api-Token'] = args.token.strip()
    return headers


def main(argv: list[str] | None = None, *, transport: httpx.BaseTransport | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    base = args.api_base.rstrip('/')

    with httpx.Client(timeout=60, headers=_headers(args), transport=transport) as client:
        if args.command == 'projects-create':
            try:
                env_vars = _parse_env(args.env)
            except ValueError as exc:
                parser.error(str(exc))
                return 2
            response = client.post(
                f'{base}/api/projects',
                json={
                    'name': args.name,
                    'repo_url': args.repo_url,
                    'slug': (args.slug.strip() or None),
                    'production_branch': (args.production_branch.strip() or None),
                    'member_ids': args.member,
                    'env_vars': env_vars,
                    'install_command': (args.install_command.strip() or None),
                    'build_command': (args.build_command.strip() or None),
                    'output_directory': (args.output_directory.strip() or None),
                    'framework': (args.framework.strip() or None),
                    'tier': args.tier,
                },
            )
        elif args.command == 'projects':
            response = client.get(f'{base}/api/projects')
        elif args.command == 'deploy':
            response = client.post(
                f'{base}/api/deployments',
                json={
                    'projectId': args.project_id,
                    'ref': args.ref,
                    'commitSha': args.commit,
                    'isProduction': bool(args.production),
                    'commitMessage': args.message,
                    'idempotencyKey': (args.idempotency_key.strip() or None),
                },
            )
        elif args.command == 'status':
            response = client.get(f'{base}/api/deployments/{args.deployment_id}')
        elif args.command == 'deployments':
            response = client.get(f'{base}/api/projects/{args.project_id}/deployments', params={'limit': int(args.limit)})
        elif args.command in {'cancel', 'redeploy', 'rollback'}:
            response = client.post(f'{base}/api/deployments/{args.deployment_id}/{args.command}')
        elif args.command == 'rollback-project':
            response = client.post(f'{base}/api/projects/{args.project_id}/rollback')
        elif args.command == 'events':
            response = client.get(
                f'{base}/api/deployments/{args.deployment_id}/events',
                params={'after_id': int(args.after_id)},
            )
        elif args.command == 'cron-create':
            response = client.post(
                f'{base}/api/projects/{args.project_id}/cron',
                json={
                    'schedule': args.schedule,
                    'path': args.path,
                    'timezone': args.timezone,
                    'timeout_seconds': int(args.timeout_seconds),
                    'retry_count': int(args.retry_count),
                    'enabled': not bool(args.disabled),
                },
            )
        elif args.command == 'cron-list':
            response = client.get(f'{base}/api/projects/{args.project_id}/cron')
        elif args.command == 'cron-trigger':
            response = client.post(
                f'{base}/api/cron/{args.job_id}/trigger',
                json={'external_trigger_id': (args.trigger_id.strip() or None)},
            )
        elif args.command == 'cron-executions':
            response = client.get(f'{base}/api/cron/{args.job_id}/executions', params={'limit': int(args.limit)})
        elif args.command == 'cron-preview':
            response = client.post(
                f'{base}/api/cron/preview',
                json={'schedule': args.schedule, 'timezone': args.timezone, 'count': int(args.count)},
            )
        elif args.command == 'health':
            response = client.get(f'{base}/api/health')
        elif args.command == 'stats':
            response = client.get(f'{base}/api/stats')
        elif args.command == 'metrics':
            response = client.get(f'{base}/metrics')
        else:
            parser.error(f'unsupported command: {args.command}')
            return 2

    if response.status_code >= 400:
        print(f'HTTP {response.status_code}: {response.text}', file=sys.stderr)
        return 1

    if args.command == 'metrics':
        print(response.text, end='')
        return 0
    _print_json(response.json())
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
