from shipyard.sandbox.base import (
    CommandRunner,
    SandboxExecutor,
    SandboxResult,
    SandboxSpec,
    WorkloadHandle,
    WorkloadSpec,
    resolve_artifact_path,
    run_command,
    sandbox_name,
    tail_text,
)
from shipyard.sandbox.docker import DockerSandboxExecutor
from shipyard.sandbox.factory import ExecutorFactory
from shipyard.sandbox.kubernetes import KubernetesSandboxExecutor
from shipyard.sandbox.provisioning import DatabaseProvisioner, TIER_RESOURCES

__all__ = [
    'CommandRunner',
    'DatabaseProvisioner',
    'DockerSandboxExecutor',
    'ExecutorFactory',
    'KubernetesSandboxExecutor',
    'SandboxExecutor',
    'SandboxResult',
    'SandboxSpec',
    'TIER_RESOURCES',
    'WorkloadHandle',
    'WorkloadSpec',
    'resolve_artifact_path',
    'run_command',
    'sandbox_name',
    'tail_text',
]
