from __future__ import annotations

from shipyard.metrics import render_histogram, render_metrics
from shipyard.service import StatsView


def _stats(**overrides) -> StatsView:
    values = {
        'total_deployments': 4,
        'status_counts': {'ready': 2, 'error': 1, 'queued': 1},
        'in_flight': 1,
        'active_builds': 0,
        'queue_depth': 1,
        'error_kind_counts': {'build': 1},
        'recent_terminal_total': 3,
        'success_rate_50': 2 / 3,
        'mean_build_duration_ms_50': 45_000.0,
        'build_durations_ms': [20_000, 70_000],
    }
    values.update(overrides)
    return StatsView(**values)


def test_render_metrics_exposes_every_status():
    text = render_metrics(_stats(), subscribers=2)
    lines = text.splitlines()
    assert 'shipyard_deployments{status="ready"} 2' in lines
    assert 'shipyard_deployments{status="cancelled"} 0' in lines
    assert 'shipyard_deployment_errors{kind="build"} 1' in lines
    assert 'shipyard_queue_depth 1' in lines
    assert 'shipyard_live_subscribers 2' in lines
    assert text.endswith('\n')


def test_unreachable_queue_is_reported_as_minus_one():
    text = render_metrics(_stats(queue_depth=-1, active_builds=-1))
    assert 'shipyard_queue_depth -1' in text.splitlines()
    assert 'shipyard_live_subscribers' not in text


def test_histogram_buckets_are_cumulative():
    lines = render_histogram('build_seconds', [20.0, 70.0], (30.0, 60.0, 120.0))
    assert lines == [
        'build_seconds_bucket{le="30"} 1',
        'build_seconds_bucket{le="60"} 1',
        'build_seconds_bucket{le="120"} 2',
        'build_seconds_bucket{le="+Inf"} 2',
        'build_seconds_sum 90',
        'build_seconds_count 2',
    ]
