from __future__ import annotations

from shipyard.config import Settings
from shipyard.observability import get_logger
from shipyard.sandbox.base import SandboxExecutor
from shipyard.sandbox.docker import DockerSandboxExecutor
from shipyard.sandbox.kubernetes import KubernetesSandboxExecutor

_log = get_logger('shipyard.sandbox.factory')


class ExecutorFactory:
    _BACKENDS: dict[str, type] = {
        'docker': DockerSandboxExecutor,
        'kubernetes': KubernetesSandboxExecutor,
    }

    @classmethod
    def create(cls, *, backend: str, **options) -> SandboxExecutor:
        key = str(backend or '').strip().lower()
        executor_cls = cls._BACKENDS.get(key)
        if executor_cls is None:
            _log.warning('sandbox_backend_unknown backend=%s fallback=docker', key)
            executor_cls = DockerSandboxExecutor
        return executor_cls(**options)

    @classmethod
    def from_settings(cls, settings: Settings) -> SandboxExecutor:
        if settings.sandbox_backend == 'kubernetes':
            return cls.create(
                backend='kubernetes',
                namespace=settings.k8s_namespace,
                kubectl_command=settings.kubectl_command,
            )
        return cls.create(backend='docker', storage_opt_supported=settings.sandbox_storage_opt)


__all__ = ['ExecutorFactory']
