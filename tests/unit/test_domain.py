from __future__ import annotations

import pytest

from shipyard.domain.events import EventType, normalize_event_type
from shipyard.domain.models import (
    DeploymentStatus,
    can_access_project,
    can_transition,
    deployment_url,
    is_cancellable,
)


def test_transitions_follow_the_state_machine():
    assert can_transition('queued', 'building')
    assert can_transition(DeploymentStatus.BUILDING, DeploymentStatus.DEPLOYING)
    assert can_transition('deploying', 'ready')
    assert not can_transition('queued', 'ready')
    assert not can_transition('deploying', 'cancelled')
    assert not can_transition('ready', 'error')


def test_only_queued_and_building_are_cancellable():
    assert is_cancellable('queued')
    assert is_cancellable('building')
    assert not is_cancellable('deploying')
    assert not is_cancellable('ready')


def test_can_access_project_checks_owner_and_members():
    project = {'owner_id': 'alice', 'member_ids': ['bob']}
    assert can_access_project(project, 'alice')
    assert can_access_project(project, 'bob')
    assert not can_access_project(project, 'mallory')
    assert not can_access_project(project, None)
    assert not can_access_project(None, 'alice')


def test_deployment_url_uses_short_id_suffix():
    assert deployment_url('site', 'dpl-abcdef123456', 'example.dev') == 'https://site-abcdef1.example.dev'


def test_normalize_event_type():
    assert normalize_event_type(EventType.PROMOTED) == 'promoted'
    assert normalize_event_type('  LOG ') == 'log'
    with pytest.raises(ValueError):
        normalize_event_type('')
