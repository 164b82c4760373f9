from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
import mimetypes
import os
from pathlib import Path
import shutil
import time
from typing import Protocol
from uuid import uuid4

import boto3
from botocore.exceptions import BotoCoreError, ClientError, ConnectionClosedError, EndpointConnectionError

from shipyard.config import Settings
from shipyard.errors import BuildError, InfraError
from shipyard.observability import get_logger

_log = get_logger('shipyard.storage.artifacts')

EXCLUDED_DIRS = frozenset({'.git', 'node_modules', '.cache', '.turbo'})
EXCLUDED_NESTED = frozenset({('.next', 'cache')})
_TRANSIENT_S3_CODES = frozenset(
    {
        'InternalError',
        'RequestTimeout',
        'ServiceUnavailable',
        'SlowDown',
        'Throttling',
        'ThrottlingException',
    }
)


def _resolve_child(root: Path, name: str, *, label: str) -> Path:
    text = str(name or '').strip()
    if not text:
        raise ValueError(f'{label} is required')
    base = Path(root).resolve()
    child = (base / text).resolve(strict=False)
    try:
        child.relative_to(base)
    except ValueError as exc:
        raise ValueError(f'invalid {label}') from exc
    if child == base:
        raise ValueError(f'invalid {label}')
    return child


@dataclass(frozen=True)
class BuildWorkspace:
    root: Path
    source_dir: Path


class BuildWorkspaces:
    """Per-deployment scratch directories under ``<workspace_root>/builds``."""

    def __init__(self, root: Path):
        self.root = Path(root)

    @property
    def builds_root(self) -> Path:
        return self.root / 'builds'

    def create(self, deployment_id: str) -> BuildWorkspace:
        build_root = _resolve_child(self.builds_root, deployment_id, label='deployment_id')
        if build_root.exists():
            shutil.rmtree(build_root)
        build_root.mkdir(parents=True, exist_ok=True)
        return BuildWorkspace(root=build_root, source_dir=build_root / 'src')

    def remove(self, deployment_id: str) -> bool:
        build_root = _resolve_child(self.builds_root, deployment_id, label='deployment_id')
        if not build_root.is_dir():
            return False
        shutil.rmtree(build_root, ignore_errors=False)
        return True

    def check_writable(self) -> bool:
        try:
            self.builds_root.mkdir(parents=True, exist_ok=True)
            probe = self.builds_root / f'.probe-{uuid4().hex[:8]}'
            probe.write_text('ok', encoding='utf-8')
            probe.unlink()
        except OSError:
            return False
        return True


def collect_files(source_dir: Path) -> list[tuple[Path, str]]:
    """List publishable files as ``(path, relative_posix_path)``.

    Raises ``BuildError`` when the output directory is missing or empty.
    """
    source = Path(source_dir)
    if not source.is_dir():
        raise BuildError(f'output directory not found: {source.name}', step='collect')
    files: list[tuple[Path, str]] = []
    for current, dirs, names in os.walk(source):
        current_path = Path(current)
        rel_dir = current_path.relative_to(source).parts
        dirs[:] = sorted(
            d for d in dirs
            if d not in EXCLUDED_DIRS
            and (rel_dir[-1:] + (d,)) not in EXCLUDED_NESTED
            and not (current_path / d).is_symlink()
        )
        for name in sorted(names):
            path = current_path / name
            if path.is_symlink() or not path.is_file():
                continue
            files.append((path, path.relative_to(source).as_posix()))
    if not files:
        raise BuildError('output directory is empty', step='collect')
    return files


def _manifest(deployment_id: str, files: list[tuple[Path, str]]) -> dict:
    return {
        'deployment_id': deployment_id,
        'created_at': datetime.now(timezone.utc).isoformat(),
        'file_count': len(files),
        'files': [{'path': rel, 'size': path.stat().st_size} for path, rel in files],
    }


class ArtifactPublisher(Protocol):
    backend: str

    def publish(self, deployment_id: str, source_dir: Path) -> str:
        """Store the output tree atomically and return its location handle."""
        ...

    def delete(self, deployment_id: str) -> bool:
        ...

    def check(self) -> bool:
        ...


class LocalArtifactPublisher:
    backend = 'local'

    def __init__(self, root: Path):
        self.root = Path(root)

    def location(self, deployment_id: str) -> Path:
        return _resolve_child(self.root, deployment_id, label='deployment_id')

    def publish(self, deployment_id: str, source_dir: Path) -> str:
        files = collect_files(source_dir)
        final = self.location(deployment_id)
        self.root.mkdir(parents=True, exist_ok=True)
        staging = self.root.resolve() / f'.staging-{deployment_id}-{uuid4().hex[:8]}'
        try:
            for path, rel in files:
                target = staging / rel
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(path, target)
            (staging / 'manifest.json').write_text(
                json.dumps(_manifest(deployment_id, files), ensure_ascii=True, indent=2),
                encoding='utf-8',
            )
            if final.exists():
                shutil.rmtree(final)
            os.replace(staging, final)
        except OSError as exc:
            shutil.rmtree(staging, ignore_errors=True)
            raise InfraError(f'artifact store write failed: {exc}') from exc
        _log.info('artifact_published backend=local deployment_id=%s files=%s', deployment_id, len(files))
        return final.as_uri()

    def delete(self, deployment_id: str) -> bool:
        final = self.location(deployment_id)
        if not final.is_dir():
            return False
        shutil.rmtree(final)
        return True

    def check(self) -> bool:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError:
            return False
        return os.access(self.root, os.W_OK)


def is_transient_s3_error(exc: BaseException) -> bool:
    if isinstance(exc, (EndpointConnectionError, ConnectionClosedError)):
        return True
    if isinstance(exc, ClientError):
        error = exc.response.get('Error') or {}
        status = int((exc.response.get('ResponseMetadata') or {}).get('HTTPStatusCode') or 0)
        return str(error.get('Code') or '') in _TRANSIENT_S3_CODES or status >= 500
    return False


class S3ArtifactPublisher:
    """Uploads files first and ``manifest.json`` last; the manifest marks visibility."""

    backend = 's3'

    def __init__(
        self,
        *,
        bucket: str,
        prefix: str = 'deployments',
        client=None,
        region: str | None = None,
        endpoint_url: str | None = None,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
    ):
        self.bucket = str(bucket or '').strip()
        if not self.bucket:
            raise ValueError('s3 bucket is required')
        self.prefix = str(prefix or '').strip().strip('/')
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_seconds = max(0.0, float(backoff_seconds))
        if client is None:
            kwargs = {}
            if region:
                kwargs['region_name'] = region
            if endpoint_url:
                kwargs['endpoint_url'] = endpoint_url
            client = boto3.client('s3', **kwargs)
        self.client = client

    def _base(self, deployment_id: str) -> str:
        text = str(deployment_id or '').strip()
        if not text or '/' in text or text in {'.', '..'}:
            raise ValueError('invalid deployment_id')
        return f'{self.prefix}/{text}/' if self.prefix else f'{text}/'

    def publish(self, deployment_id: str, source_dir: Path) -> str:
        files = collect_files(source_dir)
        base = self._base(deployment_id)
        for attempt in range(1, self.max_attempts + 1):
            try:
                self._upload(deployment_id, base, files)
            except (BotoCoreError, ClientError) as exc:
                if not is_transient_s3_error(exc):
                    raise InfraError(f'artifact upload failed: {exc}') from exc
                if attempt >= self.max_attempts:
                    raise InfraError(f'artifact upload failed after {attempt} attempts: {exc}') from exc
                _log.warning(
                    'artifact_upload_retry deployment_id=%s attempt=%s error=%s',
                    deployment_id,
                    attempt,
                    exc,
                )
                time.sleep(self.backoff_seconds * (2 ** (attempt - 1)))
                continue
            _log.info('artifact_published backend=s3 deployment_id=%s files=%s', deployment_id, len(files))
            return f's3://{self.bucket}/{base}'
        raise InfraError('artifact upload failed')

    def _upload(self, deployment_id: str, base: str, files: list[tuple[Path, str]]) -> None:
        uploaded: list[str] = []
        try:
            for path, rel in files:
                key = f'{base}files/{rel}'
                content_type = mimetypes.guess_type(rel)[0] or 'application/octet-stream'
                with path.open('rb') as fh:
                    self.client.put_object(Bucket=self.bucket, Key=key, Body=fh, ContentType=content_type)
                uploaded.append(key)
            self.client.put_object(
                Bucket=self.bucket,
                Key=f'{base}manifest.json',
                Body=json.dumps(_manifest(deployment_id, files), ensure_ascii=True).encode('utf-8'),
                ContentType='application/json',
            )
        except (BotoCoreError, ClientError):
            self._delete_keys(uploaded)
            raise

    def _delete_keys(self, keys: list[str]) -> None:
        for start in range(0, len(keys), 1000):
            batch = keys[start:start + 1000]
            try:
                self.client.delete_objects(
                    Bucket=self.bucket,
                    Delete={'Objects': [{'Key': key} for key in batch], 'Quiet': True},
                )
            except (BotoCoreError, ClientError):
                _log.warning('artifact_cleanup_failed keys=%s', len(batch), exc_info=True)

    def delete(self, deployment_id: str) -> bool:
        base = self._base(deployment_id)
        keys: list[str] = []
        paginator = self.client.get_paginator('list_objects_v2')
        for page in paginator.paginate(Bucket=self.bucket, Prefix=base):
            keys.extend(item['Key'] for item in page.get('Contents') or [])
        # manifest.json goes first; it is the visibility marker
        keys.sort(key=lambda key: not key.endswith('manifest.json'))
        self._delete_keys(keys)
        return bool(keys)

    def check(self) -> bool:
        try:
            self.client.head_bucket(Bucket=self.bucket)
        except (BotoCoreError, ClientError):
            return False
        return True


def create_publisher(settings: Settings) -> ArtifactPublisher:
    if settings.artifact_backend == 's3':
        return S3ArtifactPublisher(
            bucket=settings.s3_bucket,
            prefix=settings.s3_prefix,
            region=settings.s3_region,
            endpoint_url=settings.s3_endpoint_url,
        )
    return LocalArtifactPublisher(settings.artifact_root)
