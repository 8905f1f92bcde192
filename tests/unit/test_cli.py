from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

import taskforge.observability as observability
from taskforge.cli import _parse_pairs, build_parser, main
from taskforge.errors import InputValidationError


@pytest.fixture
def cli_env(monkeypatch, tmp_path: Path) -> Path:
    repo = tmp_path / 'repo'
    repo.mkdir()
    monkeypatch.setenv('TASKFORGE_DATA_ROOT', str(tmp_path / 'state'))
    monkeypatch.setenv('TASKFORGE_REPOSITORY_ROOT', str(repo))
    monkeypatch.setenv('TASKFORGE_DRY_RUN', '1')
    monkeypatch.setenv('GIT_CEILING_DIRECTORIES', str(tmp_path))
    monkeypatch.delenv('TASKFORGE_COMPLETION_COMMAND', raising=False)
    monkeypatch.setattr(observability, '_state', observability._ObservabilityState(log_handler=logging.NullHandler()))
    return repo


def _run(capsys, argv: list[str]) -> tuple[int, object, str]:
    code = main(argv)
    captured = capsys.readouterr()
    payload = json.loads(captured.out) if captured.out.strip() else None
    return code, payload, captured.err


def _error_payload(stderr: str) -> dict:
    lines = [line for line in stderr.splitlines() if line.strip()]
    return json.loads(lines[-1])


def test_parser_submit_defaults_and_flags():
    parser = build_parser()

    args = parser.parse_args(['submit', 'Add a health endpoint', '--no-enhanced', '--create-pr', '--task-id', 't-9'])

    assert args.command == 'submit'
    assert args.enhanced is False
    assert args.create_pr is True
    assert args.start is False
    assert args.task_id == 't-9'
    assert parser.parse_args(['submit', 'x']).enhanced is True


def test_parser_rejects_text_and_file_together():
    with pytest.raises(SystemExit):
        build_parser().parse_args(['add-doc', 'notes', '--text', 'a', '--file', 'b.md'])


def test_parse_pairs():
    assert _parse_pairs(['type=documentation', ' title = A = B ', ''], flag_name='--meta') == {
        'type': 'documentation',
        'title': 'A = B',
    }
    with pytest.raises(InputValidationError):
        _parse_pairs(['novalue'], flag_name='--meta')
    with pytest.raises(InputValidationError):
        _parse_pairs(['=x'], flag_name='--where')


def test_submit_start_and_status_in_dry_run(cli_env, capsys):
    code, payload, _ = _run(capsys, ['init'])
    assert code == 0
    assert all(item['ok'] for item in payload)

    code, payload, _ = _run(capsys, ['submit', 'Write the project notes', '--task-id', 't-cli', '--start'])
    assert code == 0
    assert payload['id'] == 't-cli'
    assert payload['status'] == 'completed'
    assert payload['validation']['verdict'] == 'Pass'
    assert (cli_env / 'docs' / 'TASK_NOTES.md').exists()

    code, payload, _ = _run(capsys, ['status', 't-cli'])
    assert code == 0
    assert payload['status'] == 'completed'
    assert payload['running'] is False

    code, payload, _ = _run(capsys, ['tasks', '--limit', '5'])
    assert [item['id'] for item in payload] == ['t-cli']

    code, payload, _ = _run(capsys, ['search', 'project notes'])
    assert payload[0]['metadata']['task_id'] == 't-cli'


def test_document_commands(cli_env, capsys):
    code, payload, _ = _run(
        capsys,
        [
            'add-doc', 'project_docs',
            '--text', 'The server exposes a health route for load balancers.',
            '--meta', 'type=documentation',
            '--meta', 'title=Health',
        ],
    )
    assert code == 0
    assert payload['ok'] is True
    doc_id = payload['id']

    code, payload, _ = _run(capsys, ['query', 'project_docs', 'health route', '--where', 'type=documentation'])
    assert [hit['id'] for hit in payload] == [doc_id]

    code, payload, _ = _run(capsys, ['page', 'project_docs', '--limit', '1', '--sort-by', 'timestamp'])
    assert payload['total_count'] == 1
    assert payload['has_more'] is False

    code, payload, _ = _run(capsys, ['collections'])
    assert {'name': 'project_docs', 'count': 1} in payload

    code, payload, _ = _run(capsys, ['delete-doc', 'project_docs', doc_id])
    assert code == 0
    code, payload, _ = _run(capsys, ['delete-doc', 'project_docs', doc_id])
    assert code == 1
    assert payload['ok'] is False


def test_rejected_document_exits_non_zero(cli_env, capsys):
    code, payload, _ = _run(capsys, ['add-doc', 'project_docs', '--text', 'short'])

    assert code == 1
    assert payload['code'] == 'VALIDATION'
    assert payload['errors']


def test_errors_are_reported_as_json_on_stderr(cli_env, capsys):
    code, payload, err = _run(capsys, ['status', 'ghost'])
    assert code == 1
    assert payload is None
    assert _error_payload(err) == {'code': 'NOT_FOUND', 'message': 'Task ghost not found'}

    code, _, err = _run(capsys, ['add-doc', 'project_docs', '--text', 'long enough text', '--meta', 'oops'])
    assert code == 1
    assert _error_payload(err)['code'] == 'VALIDATION'

    _run(capsys, ['submit', 'Cancel me before running', '--task-id', 't-x'])
    code, payload, _ = _run(capsys, ['cancel', 't-x'])
    assert payload['status'] == 'cancelled'
    code, _, err = _run(capsys, ['start', 't-x'])
    assert code == 1
    assert _error_payload(err)['code'] == 'VALIDATION'
