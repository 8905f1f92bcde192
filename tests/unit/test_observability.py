from __future__ import annotations

import json
import logging
import sys

import pytest

import taskforge.observability as observability
from taskforge.observability import (
    TaskLogFormatter,
    configure_observability,
    current_phase,
    current_task_id,
    get_logger,
    phase_scope,
    span,
    task_scope,
)


def _record(name: str, msg: str, *args, level: int = logging.INFO, exc_info=None, extra=None) -> logging.LogRecord:
    return get_logger(name).makeRecord(name, level, 'test.py', 1, msg, args, exc_info, extra=extra)


def test_configure_observability_installs_one_handler(monkeypatch):
    root = logging.getLogger('taskforge')
    original_handlers = list(root.handlers)
    original_level = root.level
    monkeypatch.setattr(observability, '_state', observability._ObservabilityState())

    try:
        configure_observability(service_name='taskforge-test', otlp_endpoint=None, level=logging.DEBUG)
        configure_observability(service_name='taskforge-test', otlp_endpoint='   ')

        installed = [h for h in root.handlers if isinstance(h.formatter, TaskLogFormatter)]
        assert installed == [observability._state.log_handler]
        assert installed[0].formatter.service_name == 'taskforge-test'
        assert root.level == logging.DEBUG
        assert observability._state.otlp_endpoint is None
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
        for handler in original_handlers:
            root.addHandler(handler)
        root.setLevel(original_level)


def test_task_scope_restores_previous_task():
    with task_scope('outer'):
        with task_scope('inner'):
            assert current_task_id() == 'inner'
        assert current_task_id() == 'outer'
    assert current_task_id() is None


def test_phase_scope_resets_context_when_phase_raises():
    with pytest.raises(RuntimeError):
        with phase_scope(None, 't-1', 'plan'):
            assert current_task_id() == 't-1'
            assert current_phase() == 'plan'
            raise RuntimeError('plan failed')

    assert current_task_id() is None
    assert current_phase() is None


def test_phase_scope_opens_named_span():
    opened = []

    class RecordingTracer:
        def start_as_current_span(self, name, attributes=None):
            opened.append((name, attributes))
            return span(None, name)

    with phase_scope(RecordingTracer(), 't-2', 'validate', {'mode': 'proposal'}):
        pass

    assert opened == [('pipeline.validate', {'task_id': 't-2', 'phase': 'validate', 'mode': 'proposal'})]


def test_formatter_emits_service_event_and_correlation():
    fmt = TaskLogFormatter('taskforge-test')

    with phase_scope(None, 'tid-1', 'execute'):
        parsed = json.loads(fmt.format(_record('taskforge.workflow', 'step_failed task_id=%s', 'tid-1')))

    assert parsed['service'] == 'taskforge-test'
    assert parsed['event'] == 'step_failed'
    assert parsed['msg'] == 'step_failed task_id=tid-1'
    assert parsed['task_id'] == 'tid-1'
    assert parsed['phase'] == 'execute'
    assert parsed['level'] == 'INFO'
    assert parsed['logger'] == 'taskforge.workflow'


def test_formatter_prefers_record_extras_and_omits_missing():
    fmt = TaskLogFormatter()

    bare = json.loads(fmt.format(_record('taskforge.t', 'no context here', level=logging.WARNING)))
    assert 'task_id' not in bare
    assert 'phase' not in bare
    assert 'event' not in bare

    with task_scope('from-context'):
        tagged = _record('taskforge.t', 'tagged', extra={'task_id': 'from-extra'})
        assert json.loads(fmt.format(tagged))['task_id'] == 'from-extra'


def test_formatter_includes_exception():
    try:
        raise ValueError('boom')
    except ValueError:
        exc_info = sys.exc_info()

    parsed = json.loads(TaskLogFormatter().format(_record('taskforge.t', 'failed', level=logging.ERROR, exc_info=exc_info)))

    assert 'boom' in parsed['exc']


def test_span_without_tracer_is_a_plain_context():
    with span(None, 'pipeline.plan', {'task_id': 't'}) as value:
        assert value is None
