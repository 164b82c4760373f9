"""Build plan resolution and source checkout.

A build plan is the install command, build command and output directory
for one repository checkout. Explicit project overrides win, then a
``shipyard.json`` (or ``vercel.json``) in the repository, then framework
detection from config files and ``package.json``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import os
from pathlib import Path, PurePosixPath
import re
import shutil
import subprocess

from shipyard.errors import BuildError, InfraError, InputValidationError
from shipyard.observability import get_logger
from shipyard.sandbox.base import CommandRunner, run_command, tail_text

_log = get_logger('shipyard.buildplan')

_BRANCH_RE = re.compile(r'^[A-Za-z0-9._/-]+$')
_COMMIT_SHA_RE = re.compile(r'^[0-9a-fA-F]{4,40}$')
_ENV_KEY_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')
_REPO_URL_PREFIXES = ('https://', 'http://', 'ssh://', 'git@', 'file://')
# network and remote-side failures as git reports them
_TRANSIENT_GIT_ERROR_RE = re.compile(
    r'could not resolve (host|proxy)'
    r'|temporary failure in name resolution'
    r'|connection (timed out|refused|reset)'
    r'|failed to connect to'
    r'|network is unreachable'
    r'|operation timed out'
    r'|early eof'
    r'|remote end hung up unexpectedly'
    r'|rpc failed'
    r'|unexpected disconnect'
    r'|gnutls_handshake'
    r'|ssl_(read|connect|error_syscall)'
    r'|the requested url returned error: 5\d\d',
    re.IGNORECASE,
)

STEP_MARKER = '::shipyard-step::'
REPO_CONFIG_FILES = ('shipyard.json', 'vercel.json')


@dataclass(frozen=True)
class Framework:
    slug: str
    name: str
    output_directory: str
    build_script: str | None = 'build'
    config_files: tuple[str, ...] = ()
    packages: tuple[str, ...] = ()


FRAMEWORKS: dict[str, Framework] = {
    fw.slug: fw
    for fw in (
        Framework('nextjs', 'Next.js', '.next', config_files=('next.config.js', 'next.config.mjs', 'next.config.ts'), packages=('next',)),
        Framework('remix', 'Remix', 'build', config_files=('remix.config.js',), packages=('@remix-run/react', '@remix-run/node')),
        Framework('astro', 'Astro', 'dist', config_files=('astro.config.mjs', 'astro.config.ts'), packages=('astro',)),
        Framework('nuxt', 'Nuxt', '.output', config_files=('nuxt.config.js', 'nuxt.config.ts'), packages=('nuxt',)),
        Framework('sveltekit', 'SvelteKit', 'build', config_files=('svelte.config.js',), packages=('@sveltejs/kit',)),
        Framework('gatsby', 'Gatsby', 'public', config_files=('gatsby-config.js', 'gatsby-config.ts'), packages=('gatsby',)),
        Framework('vite', 'Vite', 'dist', config_files=('vite.config.js', 'vite.config.ts'), packages=('vite',)),
        Framework('vue', 'Vue CLI', 'dist', config_files=('vue.config.js',), packages=('@vue/cli-service',)),
        Framework('angular', 'Angular', 'dist', config_files=('angular.json',), packages=('@angular/core',)),
        Framework('cra', 'Create React App', 'build', packages=('react-scripts',)),
        Framework('static', 'Static HTML', '.', build_script=None),
        Framework('other', 'Other', 'dist'),
    )
}

# Config-file probes run in declaration order, so the more specific
# frameworks are checked before the generic bundlers.
_CONFIG_FILE_ORDER = ('nextjs', 'remix', 'astro', 'nuxt', 'sveltekit', 'gatsby', 'vite', 'angular', 'vue')
_PACKAGE_ORDER = ('nextjs', 'remix', 'astro', 'nuxt', 'sveltekit', 'gatsby', 'vite', 'vue', 'angular', 'cra')


@dataclass(frozen=True)
class BuildPlan:
    framework: str
    package_manager: str
    install_command: str | None
    build_command: str | None
    output_directory: str
    detected_by: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            'framework': self.framework,
            'package_manager': self.package_manager,
            'install_command': self.install_command,
            'build_command': self.build_command,
            'output_directory': self.output_directory,
            'detected_by': list(self.detected_by),
        }


def validate_branch(branch: str) -> str:
    text = str(branch or '').strip()
    if not text or not _BRANCH_RE.match(text) or '..' in text or text.startswith('-'):
        raise InputValidationError(f'invalid branch name: {branch!r}', field='branch')
    return text


def validate_commit_sha(commit_sha: str) -> str:
    text = str(commit_sha or '').strip()
    if not _COMMIT_SHA_RE.match(text):
        raise InputValidationError(f'invalid commit sha: {commit_sha!r}', field='commit_sha')
    return text.lower()


def validate_repo_url(repo_url: str) -> str:
    text = str(repo_url or '').strip()
    if not text.startswith(_REPO_URL_PREFIXES) or any(ch.isspace() for ch in text):
        raise InputValidationError(f'unsupported repository url: {repo_url!r}', field='repo_url')
    return text


def validate_env_vars(env_vars: dict[str, str] | None) -> dict[str, str]:
    out: dict[str, str] = {}
    for key, value in dict(env_vars or {}).items():
        name = str(key)
        if not _ENV_KEY_RE.match(name):
            raise InputValidationError(f'invalid environment variable name: {name!r}', field=f'env_vars.{name}')
        out[name] = str(value)
    return out


def validate_output_directory(value: str) -> str:
    text = str(value or '').strip() or '.'
    path = PurePosixPath(text)
    if path.is_absolute() or '..' in path.parts:
        raise InputValidationError(f'output directory must stay inside the repository: {value!r}', field='output_directory')
    return str(path)


def detect_package_manager(root: Path) -> str:
    if (root / 'pnpm-lock.yaml').is_file():
        return 'pnpm'
    if (root / 'yarn.lock').is_file():
        return 'yarn'
    if (root / 'bun.lockb').is_file():
        return 'bun'
    return 'npm'


def default_install_command(root: Path, package_manager: str) -> str:
    if package_manager == 'pnpm':
        return 'corepack enable && pnpm install --frozen-lockfile'
    if package_manager == 'yarn':
        return 'corepack enable && yarn install --frozen-lockfile'
    if package_manager == 'bun':
        return 'bun install'
    if (root / 'package-lock.json').is_file():
        return 'npm ci'
    return 'npm install'


def _run_script(package_manager: str, script: str) -> str:
    if package_manager == 'yarn':
        return f'yarn {script}'
    return f'{package_manager} run {script}'


def _read_json(path: Path) -> dict | None:
    try:
        data = json.loads(path.read_text(encoding='utf-8'))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError):
        _log.warning('build_config_unreadable path=%s', path.name)
        return None
    return data if isinstance(data, dict) else None


def _read_repo_config(root: Path) -> tuple[dict, str | None]:
    for name in REPO_CONFIG_FILES:
        candidate = root / name
        if candidate.is_file():
            data = _read_json(candidate)
            if data is not None:
                return data, name
    return {}, None


def _detect_from_config_files(root: Path) -> Framework | None:
    for slug in _CONFIG_FILE_ORDER:
        framework = FRAMEWORKS[slug]
        for name in framework.config_files:
            if (root / name).is_file():
                return framework
    return None


def _detect_from_package_json(package_json: dict) -> Framework | None:
    deps: dict = {}
    for key in ('dependencies', 'devDependencies'):
        value = package_json.get(key)
        if isinstance(value, dict):
            deps.update(value)
    for slug in _PACKAGE_ORDER:
        framework = FRAMEWORKS[slug]
        if any(pkg in deps for pkg in framework.packages):
            return framework
    if 'react' in deps:
        return FRAMEWORKS['vite']
    return None


def resolve_build_plan(root: Path, *, overrides: dict | None = None) -> BuildPlan:
    """Resolve install/build/output for a checkout at *root*.

    ``overrides`` keys are ``framework``, ``install_command``,
    ``build_command`` and ``output_directory``; ``None`` values are ignored.
    """
    root = Path(root)
    overrides = {k: v for k, v in dict(overrides or {}).items() if v not in (None, '')}
    repo_config, repo_config_name = _read_repo_config(root)
    detected_by: list[str] = []

    framework: Framework | None = None
    slug = overrides.get('framework') or repo_config.get('framework')
    if slug:
        framework = FRAMEWORKS.get(str(slug).strip().lower())
        if framework is None:
            _log.warning('build_framework_unknown framework=%s', slug)
        else:
            detected_by.append('override' if overrides.get('framework') else f'{repo_config_name}:framework')

    package_json_path = root / 'package.json'
    package_json = _read_json(package_json_path) if package_json_path.is_file() else None
    if framework is None:
        framework = _detect_from_config_files(root)
        if framework is not None:
            detected_by.append('config_file')
    if framework is None and package_json is not None:
        framework = _detect_from_package_json(package_json)
        if framework is not None:
            detected_by.append('package.json')
    if framework is None and package_json is None and (root / 'index.html').is_file():
        framework = FRAMEWORKS['static']
        detected_by.append('index.html')
    if framework is None:
        framework = FRAMEWORKS['other']
        detected_by.append('default')

    package_manager = detect_package_manager(root)
    if framework.build_script is None:
        install_command = None
        build_command = None
    else:
        install_command = default_install_command(root, package_manager)
        build_command = _run_script(package_manager, framework.build_script)
    output_directory = framework.output_directory

    for source, values in ((repo_config_name, repo_config), ('override', overrides)):
        if not source:
            continue
        if values.get('installCommand') or values.get('install_command'):
            install_command = str(values.get('installCommand') or values.get('install_command'))
            detected_by.append(f'{source}:install_command')
        if values.get('buildCommand') or values.get('build_command'):
            build_command = str(values.get('buildCommand') or values.get('build_command'))
            detected_by.append(f'{source}:build_command')
        if values.get('outputDirectory') or values.get('output_directory'):
            output_directory = str(values.get('outputDirectory') or values.get('output_directory'))
            detected_by.append(f'{source}:output_directory')

    try:
        output_directory = validate_output_directory(output_directory)
    except InputValidationError as exc:
        raise BuildError(exc.message, step='detect') from exc

    plan = BuildPlan(
        framework=framework.slug,
        package_manager=package_manager,
        install_command=install_command,
        build_command=build_command,
        output_directory=output_directory,
        detected_by=detected_by,
    )
    _log.info(
        'build_plan_resolved framework=%s package_manager=%s output=%s detected_by=%s',
        plan.framework,
        plan.package_manager,
        plan.output_directory,
        ','.join(detected_by),
    )
    return plan


def build_script(plan: BuildPlan) -> str:
    """Shell script for the sandbox. ``set -e`` stops at the first failing step."""
    lines = ['set -e']
    for step, command in (('install', plan.install_command), ('build', plan.build_command)):
        if not command:
            continue
        lines.append(f"echo '{STEP_MARKER}{step}'")
        lines.append(command)
    lines.append(f"echo '{STEP_MARKER}done'")
    return '\n'.join(lines) + '\n'


def is_transient_git_error(output: str) -> bool:
    return bool(_TRANSIENT_GIT_ERROR_RE.search(str(output or '')))


def failed_step(log_text: str, *, default: str = 'build') -> str:
    step = default
    for line in str(log_text or '').splitlines():
        marker = line.strip()
        if marker.startswith(STEP_MARKER):
            step = marker[len(STEP_MARKER):].strip() or default
    return step


class GitCloner:
    """Shallow clone of one ref, pinned to the requested commit."""

    def __init__(
        self,
        *,
        git_command: str = 'git',
        timeout_seconds: float = 120.0,
        runner: CommandRunner | None = None,
    ):
        self.git_command = git_command
        self.timeout_seconds = max(1.0, float(timeout_seconds))
        self.runner = runner or run_command

    def available(self) -> bool:
        return shutil.which(self.git_command) is not None

    def _git(self, *args: str, step: str = 'clone') -> subprocess.CompletedProcess:
        argv = [self.git_command, *args]
        verb = args[2] if args[0] == '-C' else args[0]
        env = dict(os.environ)
        env['GIT_TERMINAL_PROMPT'] = '0'
        try:
            completed = self.runner(argv, timeout=self.timeout_seconds, env=env)
        except FileNotFoundError as exc:
            raise InfraError(f'git executable not found: {self.git_command}') from exc
        except subprocess.TimeoutExpired as exc:
            raise InfraError(f'git {verb} timed out after {self.timeout_seconds}s') from exc
        if completed.returncode != 0:
            output = '\n'.join(part for part in [completed.stdout, completed.stderr] if part)
            if is_transient_git_error(output):
                last_line = (output.strip().splitlines() or [''])[-1]
                raise InfraError(f'git {verb} failed on the network: {last_line}')
            raise BuildError(
                f'git {verb} exited {completed.returncode}',
                step=step,
                exit_code=completed.returncode,
                log_tail=tail_text(output, max_lines=50),
            )
        return completed

    def clone(self, *, repo_url: str, branch: str, commit_sha: str | None, target_dir: Path) -> str:
        repo_url = validate_repo_url(repo_url)
        branch = validate_branch(branch)
        sha = validate_commit_sha(commit_sha) if commit_sha else None
        target_dir = Path(target_dir)
        if target_dir.exists():
            shutil.rmtree(target_dir)
        target_dir.parent.mkdir(parents=True, exist_ok=True)

        self._git('clone', '--depth', '1', '--branch', branch, '--', repo_url, str(target_dir))
        head = self._git('-C', str(target_dir), 'rev-parse', 'HEAD').stdout.strip().lower()
        if sha and not head.startswith(sha):
            self._git('-C', str(target_dir), 'fetch', '--depth', '1', 'origin', sha)
            self._git('-C', str(target_dir), 'checkout', '--detach', 'FETCH_HEAD')
            head = self._git('-C', str(target_dir), 'rev-parse', 'HEAD').stdout.strip().lower()
        _log.info('source_cloned branch=%s head=%s', branch, head[:12])
        return head
