from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import re
import subprocess
from typing import Callable, Mapping, Protocol

_NAME_UNSAFE_RE = re.compile(r'[^a-z0-9-]+')

CommandRunner = Callable[..., subprocess.CompletedProcess]


@dataclass(frozen=True)
class SandboxSpec:
    name: str
    image: str
    command: str
    workdir: Path | None = None
    env: dict[str, str] = field(default_factory=dict)
    cpus: float = 1.0
    memory_mb: int = 2048
    disk_mb: int = 0
    pids_limit: int = 512
    timeout_seconds: float = 600.0
    network: str = 'none'
    labels: dict[str, str] = field(default_factory=dict)
    output_dir: str | None = None


@dataclass(frozen=True)
class SandboxResult:
    exit_code: int
    stdout_tail: str
    artifact_path: Path | None
    duration_seconds: float


@dataclass(frozen=True)
class WorkloadSpec:
    """A longer-lived stateful workload, e.g. a managed database instance."""

    name: str
    image: str
    env: dict[str, str]
    port: int
    cpus: float
    memory_mb: int
    storage_gb: int
    data_path: str = '/var/lib/postgresql/data'
    args: list[str] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    manifest: str | None = None


@dataclass(frozen=True)
class WorkloadHandle:
    name: str
    host: str
    port: int
    backend: str


class SandboxExecutor(Protocol):
    backend: str

    def run_sandboxed(
        self,
        spec: SandboxSpec,
        *,
        should_cancel: Callable[[], bool] | None = None,
    ) -> SandboxResult:
        """Run one job in a fresh sandbox and always tear it down.

        Raises ``SandboxTimeout`` when the wall clock is exceeded,
        ``SandboxCancelled`` when *should_cancel* turns true, and ``InfraError``
        when the sandbox could not be created or observed.
        """
        ...

    def teardown(self, name: str) -> None:
        ...

    def provision(self, workload: WorkloadSpec) -> WorkloadHandle:
        ...

    def deprovision(self, name: str) -> None:
        ...

    def check(self) -> bool:
        ...


def sandbox_name(prefix: str, job_id: str) -> str:
    """DNS-1123 compatible name, short enough for container and Job names."""
    text = _NAME_UNSAFE_RE.sub('-', f'{prefix}-{job_id}'.lower()).strip('-')
    return text[:52].rstrip('-')


def tail_text(text: str, *, max_lines: int = 200, max_chars: int = 20_000) -> str:
    lines = str(text or '').splitlines()
    clipped = '\n'.join(lines[-max_lines:])
    if len(clipped) > max_chars:
        clipped = clipped[-max_chars:]
    return clipped


def resolve_artifact_path(spec: SandboxSpec) -> Path | None:
    if spec.workdir is None or not spec.output_dir:
        return None
    workdir = Path(spec.workdir).resolve()
    candidate = (workdir / spec.output_dir).resolve()
    try:
        candidate.relative_to(workdir)
    except ValueError:
        return None
    return candidate


def run_command(
    argv: list[str],
    *,
    input_text: str | None = None,
    timeout: float = 30.0,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> subprocess.CompletedProcess:
    return subprocess.run(
        argv,
        input=input_text,
        capture_output=True,
        text=True,
        encoding='utf-8',
        errors='replace',
        timeout=timeout,
        cwd=str(cwd) if cwd is not None else None,
        env=dict(env) if env is not None else None,
        shell=False,
    )
