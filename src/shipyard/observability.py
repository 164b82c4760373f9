from __future__ import annotations

from contextlib import contextmanager, nullcontext
from contextvars import ContextVar
import json
import logging
import sys
from threading import Lock
from typing import Iterator

_deployment_id_var: ContextVar[str | None] = ContextVar('deployment_id', default=None)
_cron_job_id_var: ContextVar[str | None] = ContextVar('cron_job_id', default=None)


@contextmanager
def job_context(deployment_id: str | None = None, cron_job_id: str | None = None) -> Iterator[None]:
    """Bind correlation ids for log lines and spans emitted inside the block.

    Previous values are restored on exit.
    """
    tokens = []
    if deployment_id is not None:
        tokens.append((_deployment_id_var, _deployment_id_var.set(deployment_id)))
    if cron_job_id is not None:
        tokens.append((_cron_job_id_var, _cron_job_id_var.set(cron_job_id)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


class _JsonFormatter(logging.Formatter):
    """Emit one JSON object per log line with correlation fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            'ts': self.formatTime(record, self.datefmt),
            'level': record.levelname,
            'logger': record.name,
            'msg': record.getMessage(),
        }
        deployment_id = getattr(record, 'deployment_id', None) or _deployment_id_var.get(None)
        if deployment_id:
            payload['deployment_id'] = deployment_id
        cron_job_id = getattr(record, 'cron_job_id', None) or _cron_job_id_var.get(None)
        if cron_job_id:
            payload['cron_job_id'] = cron_job_id
        if record.exc_info and record.exc_info[1] is not None:
            payload['exc'] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


_configured = False
_configured_otlp_endpoint: str | None = None
_configure_lock = Lock()


def get_logger(name: str) -> logging.Logger:
    """Return a logger. Safe to call before configure_observability."""
    return logging.getLogger(name)


def configure_observability(*, service_name: str, otlp_endpoint: str | None) -> None:
    global _configured
    global _configured_otlp_endpoint
    with _configure_lock:
        if not _configured:
            root = logging.getLogger('shipyard')
            has_json_handler = any(
                isinstance(handler, logging.StreamHandler)
                and isinstance(getattr(handler, 'formatter', None), _JsonFormatter)
                for handler in root.handlers
            )
            if not has_json_handler:
                handler = logging.StreamHandler(sys.stderr)
                handler.setFormatter(_JsonFormatter())
                root.addHandler(handler)
            root.setLevel(logging.INFO)
            _configured = True

    endpoint = str(otlp_endpoint or '').strip()
    if not endpoint:
        return

    with _configure_lock:
        if _configured_otlp_endpoint == endpoint:
            return

    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError:
        logging.getLogger('shipyard.observability').warning(
            'OpenTelemetry import failed; tracing disabled', exc_info=True,
        )
        return

    provider = TracerProvider(resource=Resource.create({'service.name': service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    with _configure_lock:
        _configured_otlp_endpoint = endpoint


def get_tracer(name: str):
    try:
        from opentelemetry import trace
    except ImportError:
        return None
    return trace.get_tracer(name)


def span_attributes(attributes: dict | None = None) -> dict:
    """Job context ids merged under explicit *attributes*; None values dropped."""
    merged = {
        'deployment.id': _deployment_id_var.get(None),
        'cron_job.id': _cron_job_id_var.get(None),
    }
    merged.update(attributes or {})
    return {key: value for key, value in merged.items() if value is not None}


@contextmanager
def _active_span(tracer, name: str, attributes: dict) -> Iterator[object]:
    with tracer.start_as_current_span(name) as span:
        for key, value in attributes.items():
            span.set_attribute(key, value)
        yield span


def span(tracer, name: str, attributes: dict | None = None):
    if tracer is None:
        return nullcontext()
    return _active_span(tracer, name, span_attributes(attributes))
