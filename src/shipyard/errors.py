"""Error taxonomy shared by the pipeline, the scheduler and the API layer."""

from __future__ import annotations


class PipelineError(Exception):
    code = 'pipeline_error'

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InputValidationError(PipelineError, ValueError):
    """Malformed event, invalid cron expression, missing field or illegal transition."""

    def __init__(self, message: str, *, field: str | None = None, code: str = 'validation_error'):
        super().__init__(message)
        self.field = field
        self.code = code


class AuthError(PipelineError):
    code = 'unauthorized'

    def __init__(self, message: str, *, status_code: int = 401, code: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        if code:
            self.code = code


class NotConfiguredError(PipelineError):
    code = 'not_configured'


class InfraError(PipelineError):
    """Sandbox failed to start, executor unreachable or storage unreachable."""

    code = 'infra_error'


class BuildError(PipelineError):
    """Non-zero exit from a build step. Terminal, never retried."""

    code = 'build_error'

    def __init__(self, message: str, *, step: str = 'build', exit_code: int | None = None, log_tail: str = ''):
        super().__init__(message)
        self.step = step
        self.exit_code = exit_code
        self.log_tail = log_tail


class SandboxTimeout(PipelineError):
    code = 'timeout'

    def __init__(self, message: str, *, timeout_seconds: float, log_tail: str = ''):
        super().__init__(message)
        self.timeout_seconds = timeout_seconds
        self.log_tail = log_tail


class SandboxCancelled(PipelineError):
    code = 'cancelled'
