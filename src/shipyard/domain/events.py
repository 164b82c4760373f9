from __future__ import annotations

from enum import Enum


class EventType(str, Enum):
    ARTIFACT_PUBLISHED = 'artifact_published'
    BUILD_PLAN_RESOLVED = 'build_plan_resolved'
    CANCEL_REQUESTED = 'cancel_requested'
    DEMOTED = 'demoted'
    DEPLOYMENT_QUEUED = 'deployment_queued'
    INFRA_RETRY = 'infra_retry'
    LOG = 'log'
    PROGRESS = 'progress'
    PROMOTED = 'promoted'
    PROMOTION_SKIPPED = 'promotion_skipped'
    SANDBOX_STARTED = 'sandbox_started'
    SANDBOX_TORN_DOWN = 'sandbox_torn_down'
    STATUS_CHANGE = 'status_change'
    STEP_FINISHED = 'step_finished'
    STEP_STARTED = 'step_started'


def normalize_event_type(value: str | EventType) -> str:
    if isinstance(value, EventType):
        return value.value
    text = str(value or '').strip().lower()
    if not text:
        raise ValueError('event_type is required')
    return text

