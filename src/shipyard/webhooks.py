"""Provider webhook verification and normalization.

Each provider parser turns a raw delivery into one of the canonical event
shapes below, or ``None`` for events the pipeline does not act on. Nothing
here touches storage; callers decide what to enqueue.
"""

from __future__ import annotations

from dataclasses import dataclass
import hashlib
import hmac
import json
from typing import Mapping, Protocol, Union

from shipyard.errors import AuthError, InputValidationError, NotConfiguredError


@dataclass(frozen=True)
class PushEvent:
    branch: str
    commit_sha: str
    commit_message: str
    is_production_branch: bool
    kind: str = 'push'


@dataclass(frozen=True)
class PullRequestEvent:
    state: str
    source_branch: str
    commit_sha: str
    pr_number: int
    kind: str = 'pull_request'


NormalizedEvent = Union[PushEvent, PullRequestEvent]


@dataclass(frozen=True)
class WebhookDelivery:
    provider: str
    delivery_id: str
    event_name: str
    event: NormalizedEvent | None


class WebhookParser(Protocol):
    provider: str

    def verify(self, headers: Mapping[str, str], body: bytes, secret: str) -> None:
        ...

    def delivery_id(self, headers: Mapping[str, str]) -> str | None:
        ...

    def event_name(self, headers: Mapping[str, str]) -> str:
        ...

    def parse(
        self,
        event_name: str,
        payload: dict,
        *,
        production_branch: str | None,
    ) -> NormalizedEvent | None:
        ...


def _lower_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {str(k).lower(): str(v) for k, v in dict(headers or {}).items()}


def _hmac_sha256_hex(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode('utf-8'), body, hashlib.sha256).hexdigest()


def _verify_sha256_signature(signature: str | None, *, secret: str, body: bytes, header: str) -> None:
    text = str(signature or '').strip()
    if not text:
        raise AuthError(f'missing {header} signature header')
    if not text.startswith('sha256='):
        raise AuthError(f'unsupported {header} signature format')
    expected = 'sha256=' + _hmac_sha256_hex(secret, body)
    if not hmac.compare_digest(text.encode('utf-8'), expected.encode('utf-8')):
        raise AuthError('invalid webhook signature')


def _require(value, field: str):
    if value is None or (isinstance(value, str) and not value.strip()):
        raise InputValidationError(f'{field} is required', field=field, code='malformed_event')
    return value


def _strip_branch_ref(ref: str) -> str | None:
    if ref.startswith('refs/heads/'):
        return ref[len('refs/heads/'):]
    if ref.startswith('refs/'):
        return None
    return ref


class GitHubParser:
    provider = 'github'

    def verify(self, headers: Mapping[str, str], body: bytes, secret: str) -> None:
        _verify_sha256_signature(
            _lower_headers(headers).get('x-hub-signature-256'),
            secret=secret,
            body=body,
            header='x-hub-signature-256',
        )

    def delivery_id(self, headers: Mapping[str, str]) -> str | None:
        return _lower_headers(headers).get('x-github-delivery')

    def event_name(self, headers: Mapping[str, str]) -> str:
        return _lower_headers(headers).get('x-github-event', '').strip().lower()

    def parse(self, event_name: str, payload: dict, *, production_branch: str | None) -> NormalizedEvent | None:
        if event_name == 'push':
            ref = str(_require(payload.get('ref'), 'ref'))
            branch = _strip_branch_ref(ref)
            if branch is None:
                return None
            head_commit = payload.get('head_commit')
            if not head_commit or payload.get('deleted'):
                return None
            repo = payload.get('repository') or {}
            prod = production_branch or repo.get('default_branch') or 'main'
            return PushEvent(
                branch=branch,
                commit_sha=str(_require(payload.get('after') or head_commit.get('id'), 'after')),
                commit_message=str(head_commit.get('message') or ''),
                is_production_branch=branch == prod,
            )
        if event_name == 'pull_request':
            action = str(payload.get('action') or '').lower()
            pr = _require(payload.get('pull_request'), 'pull_request')
            if action in {'opened', 'synchronize', 'reopened'}:
                state = 'open'
            elif action == 'closed':
                state = 'closed'
            else:
                return None
            head = pr.get('head') or {}
            return PullRequestEvent(
                state=state,
                source_branch=str(_require(head.get('ref'), 'pull_request.head.ref')),
                commit_sha=str(_require(head.get('sha'), 'pull_request.head.sha')),
                pr_number=int(_require(payload.get('number') or pr.get('number'), 'number')),
            )
        return None


class GitLabParser:
    provider = 'gitlab'

    def verify(self, headers: Mapping[str, str], body: bytes, secret: str) -> None:
        token = _lower_headers(headers).get('x-gitlab-token', '').strip()
        if not token:
            raise AuthError('missing x-gitlab-token header')
        if not hmac.compare_digest(token.encode('utf-8'), secret.encode('utf-8')):
            raise AuthError('invalid webhook token')

    def delivery_id(self, headers: Mapping[str, str]) -> str | None:
        return _lower_headers(headers).get('x-gitlab-event-uuid')

    def event_name(self, headers: Mapping[str, str]) -> str:
        return _lower_headers(headers).get('x-gitlab-event', '').strip()

    def parse(self, event_name: str, payload: dict, *, production_branch: str | None) -> NormalizedEvent | None:
        if event_name == 'Push Hook':
            ref = str(_require(payload.get('ref'), 'ref'))
            branch = _strip_branch_ref(ref)
            checkout_sha = payload.get('checkout_sha')
            if branch is None or not checkout_sha:
                return None
            commits = payload.get('commits') or []
            message = ''
            if commits:
                message = str((commits[-1] or {}).get('message') or (commits[0] or {}).get('message') or '')
            project = payload.get('project') or {}
            prod = production_branch or project.get('default_branch') or 'main'
            return PushEvent(
                branch=branch,
                commit_sha=str(checkout_sha),
                commit_message=message,
                is_production_branch=branch == prod,
            )
        if event_name == 'Merge Request Hook':
            attrs = _require(payload.get('object_attributes'), 'object_attributes')
            raw_state = str(attrs.get('state') or '').lower()
            if raw_state == 'opened':
                state = 'open'
            elif raw_state in {'closed', 'merged'}:
                state = 'closed'
            else:
                return None
            last_commit = attrs.get('last_commit') or {}
            return PullRequestEvent(
                state=state,
                source_branch=str(_require(attrs.get('source_branch'), 'object_attributes.source_branch')),
                commit_sha=str(_require(last_commit.get('id'), 'object_attributes.last_commit.id')),
                pr_number=int(_require(attrs.get('iid'), 'object_attributes.iid')),
            )
        return None


class BitbucketParser:
    provider = 'bitbucket'

    def verify(self, headers: Mapping[str, str], body: bytes, secret: str) -> None:
        _verify_sha256_signature(
            _lower_headers(headers).get('x-hub-signature'),
            secret=secret,
            body=body,
            header='x-hub-signature',
        )

    def delivery_id(self, headers: Mapping[str, str]) -> str | None:
        lowered = _lower_headers(headers)
        return lowered.get('x-request-uuid') or lowered.get('x-hook-uuid')

    def event_name(self, headers: Mapping[str, str]) -> str:
        return _lower_headers(headers).get('x-event-key', '').strip().lower()

    def parse(self, event_name: str, payload: dict, *, production_branch: str | None) -> NormalizedEvent | None:
        if event_name == 'repo:push':
            changes = (payload.get('push') or {}).get('changes') or []
            if not changes:
                return None
            new = (changes[0] or {}).get('new')
            if not new or str(new.get('type') or 'branch') != 'branch':
                return None
            target = new.get('target') or {}
            branch = str(_require(new.get('name'), 'push.changes[0].new.name'))
            repo = payload.get('repository') or {}
            prod = production_branch or (repo.get('mainbranch') or {}).get('name') or 'main'
            return PushEvent(
                branch=branch,
                commit_sha=str(_require(target.get('hash'), 'push.changes[0].new.target.hash')),
                commit_message=str(target.get('message') or ''),
                is_production_branch=branch == prod,
            )
        if event_name.startswith('pullrequest:'):
            action = event_name.split(':', 1)[1]
            if action in {'created', 'updated'}:
                state = 'open'
            elif action in {'fulfilled', 'rejected'}:
                state = 'closed'
            else:
                return None
            pr = _require(payload.get('pullrequest'), 'pullrequest')
            source = pr.get('source') or {}
            return PullRequestEvent(
                state=state,
                source_branch=str(_require((source.get('branch') or {}).get('name'), 'pullrequest.source.branch.name')),
                commit_sha=str(_require((source.get('commit') or {}).get('hash'), 'pullrequest.source.commit.hash')),
                pr_number=int(_require(pr.get('id'), 'pullrequest.id')),
            )
        return None


PARSERS: dict[str, WebhookParser] = {
    'github': GitHubParser(),
    'gitlab': GitLabParser(),
    'bitbucket': BitbucketParser(),
}


def get_parser(provider: str) -> WebhookParser:
    key = str(provider or '').strip().lower()
    parser = PARSERS.get(key)
    if parser is None:
        raise InputValidationError(f'unsupported provider: {provider}', field='provider', code='unsupported_provider')
    return parser


def normalize_webhook(
    provider: str,
    headers: Mapping[str, str],
    body: bytes,
    *,
    secret: str | None,
    production_branch: str | None = None,
) -> WebhookDelivery:
    """Verify and parse a raw delivery.

    The signature is checked before the body is decoded. A missing secret is
    reported as a configuration problem rather than silently accepting the
    unsigned delivery.
    """
    parser = get_parser(provider)
    if not secret:
        raise NotConfiguredError(f'{parser.provider} webhook secret is not configured')
    parser.verify(headers, body, secret)

    try:
        payload = json.loads(body.decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise InputValidationError('webhook body is not valid JSON', field='body', code='malformed_event') from exc
    if not isinstance(payload, dict):
        raise InputValidationError('webhook body must be a JSON object', field='body', code='malformed_event')

    event_name = parser.event_name(headers)
    try:
        event = parser.parse(event_name, payload, production_branch=production_branch)
    except (TypeError, ValueError, AttributeError) as exc:
        if isinstance(exc, InputValidationError):
            raise
        raise InputValidationError(f'malformed {event_name or "webhook"} payload: {exc}', code='malformed_event') from exc

    delivery_id = str(parser.delivery_id(headers) or '').strip()
    if not delivery_id:
        delivery_id = 'sha256:' + hashlib.sha256(body).hexdigest()
    return WebhookDelivery(
        provider=parser.provider,
        delivery_id=f'{parser.provider}:{delivery_id}',
        event_name=event_name,
        event=event,
    )
