"""Live status fan-out over the append-only deployment event log.

``emit`` writes to the repository first, so a subscriber that connects
late can always rebuild history with ``history``. Live delivery is
at-most-once: a subscriber whose queue is full misses events.
"""

from __future__ import annotations

import json
import queue
from threading import Event, Lock, Thread

import redis

from shipyard.domain.events import EventType
from shipyard.domain.models import can_access_project
from shipyard.errors import AuthError, InputValidationError
from shipyard.observability import get_logger
from shipyard.repository import DeploymentRepository

_log = get_logger('shipyard.broadcast')

CHANNEL_KINDS = ('project', 'deployment')
_CLOSED = object()


def parse_channel(channel: str) -> tuple[str, str]:
    kind, sep, target = str(channel or '').strip().partition(':')
    if not sep or kind not in CHANNEL_KINDS or not target:
        raise InputValidationError(f'invalid channel: {channel!r}', field='channel')
    return kind, target


def channels_for(event: dict) -> list[str]:
    return [f'deployment:{event["deployment_id"]}', f'project:{event["project_id"]}']


class Subscription:
    def __init__(self, *, channel: str, user_id: str, maxsize: int):
        self.channel = channel
        self.user_id = user_id
        self.dropped = 0
        self._queue: queue.Queue = queue.Queue(maxsize=max(1, int(maxsize)))
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, event: dict) -> bool:
        if self._closed:
            return False
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1
            return False
        return True

    def get(self, timeout: float | None = None) -> dict | None:
        """Next live event, or ``None`` on timeout or once closed."""
        if self._closed and self._queue.empty():
            return None
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            return None
        return item

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        while True:
            try:
                self._queue.put_nowait(_CLOSED)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    pass


class RedisEventTransport:
    """Pub/sub relay so several API processes see the same live events."""

    def __init__(self, client: redis.Redis, *, prefix: str = 'shipyard:events:', poll_timeout: float = 1.0):
        self.client = client
        self.prefix = prefix
        self.poll_timeout = max(0.05, float(poll_timeout))
        self._pubsub = None
        self._thread: Thread | None = None
        self._stop = Event()

    @classmethod
    def from_url(cls, redis_url: str, **kwargs) -> 'RedisEventTransport':
        return cls(redis.Redis.from_url(redis_url), **kwargs)

    def publish(self, channel: str, event: dict) -> None:
        self.client.publish(self.prefix + channel, json.dumps(event, default=str))

    def start(self, deliver) -> None:
        self._pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        self._pubsub.psubscribe(self.prefix + '*')
        self._thread = Thread(target=self._listen, args=(deliver,), name='shipyard-events', daemon=True)
        self._thread.start()

    def _listen(self, deliver) -> None:
        while not self._stop.is_set():
            try:
                message = self._pubsub.get_message(timeout=self.poll_timeout)
            except redis.RedisError:
                _log.warning('event_transport_receive_failed', exc_info=True)
                self._stop.wait(self.poll_timeout)
                continue
            if not message or message.get('type') != 'pmessage':
                continue
            channel = message.get('channel')
            data = message.get('data')
            if isinstance(channel, bytes):
                channel = channel.decode('utf-8')
            if isinstance(data, bytes):
                data = data.decode('utf-8')
            try:
                event = json.loads(data)
            except (TypeError, json.JSONDecodeError):
                _log.warning('event_transport_bad_payload channel=%s', channel)
                continue
            deliver(str(channel)[len(self.prefix):], event)

    def close(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.poll_timeout * 2 + 1)
        if self._pubsub is not None:
            self._pubsub.close()


class StatusBroadcaster:
    def __init__(
        self,
        repository: DeploymentRepository,
        *,
        transport: RedisEventTransport | None = None,
        queue_size: int = 256,
    ):
        self.repository = repository
        self.transport = transport
        self.queue_size = max(1, int(queue_size))
        self._lock = Lock()
        self._subscribers: dict[str, list[Subscription]] = {}
        self._closed = False
        if self.transport is not None:
            self.transport.start(self._deliver)

    def emit(self, deployment_id: str, event_type: str | EventType, payload: dict | None = None) -> dict:
        event = self.repository.append_event(deployment_id, event_type=event_type, payload=dict(payload or {}))
        for channel in channels_for(event):
            if self.transport is not None:
                try:
                    self.transport.publish(channel, event)
                except redis.RedisError:
                    _log.warning('event_publish_failed channel=%s', channel, exc_info=True)
            else:
                self._deliver(channel, event)
        return event

    def _deliver(self, channel: str, event: dict) -> None:
        with self._lock:
            subscribers = list(self._subscribers.get(channel, ()))
        for subscription in subscribers:
            if not subscription.offer(event):
                _log.debug('event_dropped channel=%s user=%s', channel, subscription.user_id)

    def _project_for(self, channel: str) -> dict:
        kind, target = parse_channel(channel)
        if kind == 'project':
            project = self.repository.get_project(target)
        else:
            deployment = self.repository.get_deployment(target)
            if deployment is None:
                raise KeyError(target)
            project = self.repository.get_project(deployment['project_id'])
        if project is None:
            raise KeyError(target)
        return project

    def authorize(self, user_id: str | None, channel: str) -> dict:
        project = self._project_for(channel)
        if not can_access_project(project, user_id):
            raise AuthError(f'user is not allowed to read {channel}', status_code=403, code='forbidden')
        return project

    def subscribe(self, user_id: str | None, channel: str) -> Subscription:
        self.authorize(user_id, channel)
        subscription = Subscription(channel=channel, user_id=str(user_id), maxsize=self.queue_size)
        with self._lock:
            if self._closed:
                subscription.close()
                return subscription
            self._subscribers.setdefault(channel, []).append(subscription)
        _log.info('subscribed channel=%s user=%s', channel, user_id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.channel, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscribers.pop(subscription.channel, None)
        subscription.close()

    def history(self, channel: str, *, after_id: int = 0, limit: int = 1000) -> list[dict]:
        kind, target = parse_channel(channel)
        if kind == 'project':
            return self.repository.list_project_events(target, after_id=after_id, limit=limit)
        return self.repository.list_events(target, after_id=after_id, limit=limit)

    def subscriber_count(self) -> int:
        with self._lock:
            return sum(len(items) for items in self._subscribers.values())

    def close(self) -> None:
        with self._lock:
            self._closed = True
            subscribers = [s for items in self._subscribers.values() for s in items]
            self._subscribers.clear()
        for subscription in subscribers:
            subscription.close()
        if self.transport is not None:
            self.transport.close()
