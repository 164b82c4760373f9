"""Prometheus text exposition (format 0.0.4) over ``OrchestratorService.get_stats``."""

from __future__ import annotations

from shipyard.domain.models import DeploymentStatus

CONTENT_TYPE = 'text/plain; version=0.0.4; charset=utf-8'
BUILD_DURATION_BUCKETS_SECONDS = (5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1200.0, 1800.0)


def _escape_label(value: str) -> str:
    return str(value).replace('\\', '\\\\').replace('\n', '\\n').replace('"', '\\"')


def _format_value(value: float) -> str:
    number = float(value)
    if number == int(number) and abs(number) < 1e15:
        return str(int(number))
    return repr(number)


def _format_bound(bound: float) -> str:
    return '+Inf' if bound == float('inf') else _format_value(bound)


def render_histogram(name: str, values_seconds: list[float], buckets: tuple[float, ...]) -> list[str]:
    lines: list[str] = []
    ordered = sorted(values_seconds)
    for bound in (*buckets, float('inf')):
        count = sum(1 for v in ordered if v <= bound)
        lines.append(f'{name}_bucket{{le="{_format_bound(bound)}"}} {count}')
    lines.append(f'{name}_sum {_format_value(sum(ordered))}')
    lines.append(f'{name}_count {len(ordered)}')
    return lines


def render_metrics(stats, *, subscribers: int | None = None) -> str:
    lines = [
        '# HELP shipyard_deployments Deployments by current status.',
        '# TYPE shipyard_deployments gauge',
    ]
    counts = dict(stats.status_counts)
    for status in DeploymentStatus:
        lines.append(f'shipyard_deployments{{status="{_escape_label(status.value)}"}} {int(counts.pop(status.value, 0))}')
    for status, count in sorted(counts.items()):
        lines.append(f'shipyard_deployments{{status="{_escape_label(status)}"}} {int(count)}')

    lines += [
        '# HELP shipyard_deployments_in_flight Deployments queued, building or deploying.',
        '# TYPE shipyard_deployments_in_flight gauge',
        f'shipyard_deployments_in_flight {int(stats.in_flight)}',
        '# HELP shipyard_queue_depth Jobs waiting in the build queue (-1 when unreachable).',
        '# TYPE shipyard_queue_depth gauge',
        f'shipyard_queue_depth {int(stats.queue_depth)}',
        '# HELP shipyard_builds_active Jobs currently held by workers (-1 when unreachable).',
        '# TYPE shipyard_builds_active gauge',
        f'shipyard_builds_active {int(stats.active_builds)}',
        '# HELP shipyard_deployment_errors Failed deployments by failure kind.',
        '# TYPE shipyard_deployment_errors gauge',
    ]
    for kind, count in sorted(stats.error_kind_counts.items()):
        lines.append(f'shipyard_deployment_errors{{kind="{_escape_label(kind)}"}} {int(count)}')

    lines += [
        '# HELP shipyard_deployment_success_rate Share of READY among the last 50 terminal deployments.',
        '# TYPE shipyard_deployment_success_rate gauge',
        f'shipyard_deployment_success_rate {_format_value(stats.success_rate_50)}',
        '# HELP shipyard_build_duration_seconds Wall time from claim to READY.',
        '# TYPE shipyard_build_duration_seconds histogram',
    ]
    lines += render_histogram(
        'shipyard_build_duration_seconds',
        [ms / 1000.0 for ms in stats.build_durations_ms],
        BUILD_DURATION_BUCKETS_SECONDS,
    )
    if subscribers is not None:
        lines += [
            '# HELP shipyard_live_subscribers Open live status subscriptions in this process.',
            '# TYPE shipyard_live_subscribers gauge',
            f'shipyard_live_subscribers {int(subscribers)}',
        ]
    return '\n'.join(lines) + '\n'
