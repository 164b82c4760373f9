from shipyard.domain.events import EventType, normalize_event_type
from shipyard.domain.models import (
    CronExecutionStatus,
    DatabaseTier,
    DeploymentStatus,
    FailureKind,
    IN_FLIGHT_STATUSES,
    TERMINAL_STATUSES,
    can_access_project,
    can_transition,
    deployment_url,
    is_cancellable,
)

__all__ = [
    'CronExecutionStatus',
    'DatabaseTier',
    'DeploymentStatus',
    'EventType',
    'FailureKind',
    'IN_FLIGHT_STATUSES',
    'TERMINAL_STATUSES',
    'can_access_project',
    'can_transition',
    'deployment_url',
    'is_cancellable',
    'normalize_event_type',
]
