from __future__ import annotations

from enum import Enum


class DeploymentStatus(str, Enum):
    QUEUED = 'queued'
    BUILDING = 'building'
    DEPLOYING = 'deploying'
    READY = 'ready'
    ERROR = 'error'
    CANCELLED = 'cancelled'


class FailureKind(str, Enum):
    INFRA = 'infra'
    BUILD = 'build'
    TIMEOUT = 'timeout'
    CANCELLED = 'cancelled'


class CronExecutionStatus(str, Enum):
    RUNNING = 'running'
    SUCCESS = 'success'
    ERROR = 'error'
    TIMEOUT = 'timeout'


class DatabaseTier(str, Enum):
    HOBBY = 'hobby'
    PRO = 'pro'
    ENTERPRISE = 'enterprise'


TERMINAL_STATUSES = frozenset(
    {
        DeploymentStatus.READY,
        DeploymentStatus.ERROR,
        DeploymentStatus.CANCELLED,
    }
)

IN_FLIGHT_STATUSES = frozenset(
    {
        DeploymentStatus.QUEUED,
        DeploymentStatus.BUILDING,
        DeploymentStatus.DEPLOYING,
    }
)

_TRANSITIONS: dict[DeploymentStatus, frozenset[DeploymentStatus]] = {
    DeploymentStatus.QUEUED: frozenset({DeploymentStatus.BUILDING, DeploymentStatus.ERROR, DeploymentStatus.CANCELLED}),
    DeploymentStatus.BUILDING: frozenset({DeploymentStatus.DEPLOYING, DeploymentStatus.ERROR, DeploymentStatus.CANCELLED}),
    DeploymentStatus.DEPLOYING: frozenset({DeploymentStatus.READY, DeploymentStatus.ERROR}),
    DeploymentStatus.READY: frozenset(),
    DeploymentStatus.ERROR: frozenset(),
    DeploymentStatus.CANCELLED: frozenset(),
}


def can_transition(current: DeploymentStatus | str, target: DeploymentStatus | str) -> bool:
    return DeploymentStatus(target) in _TRANSITIONS[DeploymentStatus(current)]


def is_cancellable(status: DeploymentStatus | str) -> bool:
    return can_transition(status, DeploymentStatus.CANCELLED)


def can_access_project(project: dict | None, user_id: str | None) -> bool:
    if not project or not user_id:
        return False
    user = str(user_id)
    return user == str(project.get('owner_id') or '') or user in {str(m) for m in project.get('member_ids') or []}


def deployment_url(project_slug: str, deployment_id: str, base_domain: str) -> str:
    short = str(deployment_id).rpartition('-')[2][:7]
    return f'https://{project_slug}-{short}.{base_domain}'
