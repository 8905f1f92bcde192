from __future__ import annotations

from contextlib import contextmanager, nullcontext
from contextvars import ContextVar
from dataclasses import dataclass
import json
import logging
import re
import sys
from threading import Lock
from typing import Iterator

_task_id_var: ContextVar[str | None] = ContextVar('task_id', default=None)
_phase_var: ContextVar[str | None] = ContextVar('phase', default=None)

_EVENT_RE = re.compile(r'^([a-z][a-z0-9_]*_[a-z0-9_]+)(?:\s|$)')


def current_task_id() -> str | None:
    return _task_id_var.get()


def current_phase() -> str | None:
    return _phase_var.get()


@contextmanager
def task_scope(task_id: str | None) -> Iterator[None]:
    """Tag log records emitted inside the block with ``task_id``."""
    token = _task_id_var.set(task_id)
    try:
        yield
    finally:
        _task_id_var.reset(token)


@contextmanager
def phase_scope(tracer, task_id: str, phase: str, attributes: dict | None = None) -> Iterator[None]:
    """Run one pipeline phase under its own span and log correlation fields.

    Both context variables are restored on exit, including when the phase raises.
    """
    task_token = _task_id_var.set(task_id)
    phase_token = _phase_var.set(phase)
    try:
        with span(tracer, f'pipeline.{phase}', {'task_id': task_id, 'phase': phase, **(attributes or {})}):
            yield
    finally:
        _phase_var.reset(phase_token)
        _task_id_var.reset(task_token)


class TaskLogFormatter(logging.Formatter):
    """One JSON object per line: service, event, message and task correlation."""

    def __init__(self, service_name: str = 'taskforge'):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        payload: dict = {
            'ts': self.formatTime(record, self.datefmt),
            'level': record.levelname,
            'service': self.service_name,
            'logger': record.name,
        }
        event = _EVENT_RE.match(message)
        if event:
            payload['event'] = event.group(1)
        payload['msg'] = message
        for key, var in (('task_id', _task_id_var), ('phase', _phase_var)):
            value = getattr(record, key, None) or var.get()
            if value:
                payload[key] = value
        if record.exc_info and record.exc_info[1] is not None:
            payload['exc'] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


@dataclass
class _ObservabilityState:
    log_handler: logging.Handler | None = None
    otlp_endpoint: str | None = None


_state = _ObservabilityState()
_state_lock = Lock()


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def get_tracer(name: str):
    try:
        from opentelemetry import trace
    except ImportError:
        return None
    return trace.get_tracer(name)


def span(tracer, name: str, attributes: dict | None = None):
    if tracer is None:
        return nullcontext()
    return tracer.start_as_current_span(name, attributes=dict(attributes or {}))


def _install_log_handler(service_name: str, level: int) -> None:
    with _state_lock:
        if _state.log_handler is not None:
            return
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(TaskLogFormatter(service_name))
        root = logging.getLogger('taskforge')
        root.addHandler(handler)
        root.setLevel(level)
        _state.log_handler = handler


def _install_tracing(service_name: str, endpoint: str) -> None:
    with _state_lock:
        if _state.otlp_endpoint == endpoint:
            return
    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError:
        logging.getLogger('taskforge.observability').warning(
            'tracing_disabled endpoint=%s reason=opentelemetry not installed', endpoint,
        )
        return
    provider = TracerProvider(resource=Resource.create({'service.name': service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    with _state_lock:
        _state.otlp_endpoint = endpoint


def configure_observability(*, service_name: str, otlp_endpoint: str | None, level: int = logging.INFO) -> None:
    """Install the JSON log handler once and, given an endpoint, an OTLP exporter."""
    _install_log_handler(service_name, level)
    endpoint = str(otlp_endpoint or '').strip()
    if endpoint:
        _install_tracing(service_name, endpoint)
