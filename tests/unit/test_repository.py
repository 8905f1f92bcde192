from __future__ import annotations

import asyncio
from datetime import datetime
import re

import pytest

from taskforge.errors import ErrorCode, FilesystemError, InputValidationError, InvalidStateError, NotFoundError
from taskforge.repository import (
    FileTaskRepository,
    InMemoryTaskRepository,
    TaskCreateRecord,
    _TaskRowMutations,
    build_task_row,
    default_title,
    format_log_line,
)
from taskforge.storage.locks import LockManager

_LOG_RE = re.compile(r'^\[\d{2}:\d{2}:\d{2}\] ')


def test_format_log_line_prefixes_clock_time() -> None:
    assert format_log_line('hello', now=datetime(2026, 1, 2, 3, 4, 5)) == '[03:04:05] hello'


def test_default_title_truncates_long_descriptions() -> None:
    assert default_title('short description') == 'short description'
    long_text = 'x' * 61
    assert default_title(long_text) == 'x' * 60 + '...'


def test_build_task_row_defaults() -> None:
    row = build_task_row(TaskCreateRecord(description='  Fix the login bug  '))

    assert row['id'].startswith('task-')
    assert row['title'] == 'Fix the login bug'
    assert row['status'] == 'submitted'
    assert row['use_enhanced'] is True
    assert row['create_pr'] is False
    assert len(row['logs']) == 1 and row['logs'][0].endswith('Task submitted')
    assert row['timestamp'] == row['updated_at']


def test_build_task_row_rejects_bad_explicit_id() -> None:
    with pytest.raises(InputValidationError):
        build_task_row(TaskCreateRecord(description='d', task_id='../evil'))


@pytest.fixture(params=['memory', 'file'])
def repo(request, tmp_path):
    if request.param == 'memory':
        return InMemoryTaskRepository()
    return FileTaskRepository(tmp_path / 'tasks', locks=LockManager())


@pytest.mark.asyncio
async def test_create_get_and_duplicate(repo) -> None:
    row = await repo.create_task(TaskCreateRecord(description='Write docs', task_id='t-1'))

    assert (await repo.get_task('t-1'))['description'] == 'Write docs'
    assert row['id'] == 't-1'
    assert await repo.get_task('missing') is None
    with pytest.raises(InputValidationError):
        await repo.create_task(TaskCreateRecord(description='again', task_id='t-1'))


@pytest.mark.asyncio
async def test_update_status_appends_message_and_enforces_transitions(repo) -> None:
    await repo.create_task(TaskCreateRecord(description='d', task_id='t-2'))

    row = await repo.update_status('t-2', 'analyzing', message='Status: analyzing')
    assert row['status'] == 'analyzing'
    assert row['logs'][-1].endswith('Status: analyzing')
    assert _LOG_RE.match(row['logs'][-1])

    for status in ('planning', 'planning', 'executing', 'validating', 'completed'):
        await repo.update_status('t-2', status)
    with pytest.raises(InvalidStateError) as exc_info:
        await repo.update_status('t-2', 'planning')
    assert exc_info.value.code is ErrorCode.VALIDATION
    assert (await repo.get_task('t-2'))['status'] == 'completed'


@pytest.mark.asyncio
async def test_update_status_refuses_to_skip_stages(repo) -> None:
    await repo.create_task(TaskCreateRecord(description='d', task_id='t-9'))
    before = await repo.get_task('t-9')

    for target in ('completed', 'executing', 'planning'):
        with pytest.raises(InvalidStateError) as exc_info:
            await repo.update_status('t-9', target, message=f'Status: {target}')
        assert exc_info.value.code is ErrorCode.VALIDATION

    after = await repo.get_task('t-9')
    assert after['status'] == 'submitted'
    assert after['logs'] == before['logs']
    assert (await repo.update_status('t-9', 'cancelled'))['status'] == 'cancelled'


def test_row_mutations_require_storage_hooks() -> None:
    class ReadOnlyRepository(_TaskRowMutations):
        async def _read(self, task_id: str) -> dict | None:
            return None

    with pytest.raises(TypeError):
        ReadOnlyRepository()


@pytest.mark.asyncio
async def test_update_task_blocks_managed_fields(repo) -> None:
    await repo.create_task(TaskCreateRecord(description='d', task_id='t-3'))

    updated = await repo.update_task('t-3', pr_url='https://example.test/pr/1', plan={'steps': []})
    assert updated['pr_url'] == 'https://example.test/pr/1'
    assert updated['plan'] == {'steps': []}

    with pytest.raises(InputValidationError):
        await repo.update_task('t-3', status='completed')
    with pytest.raises(NotFoundError):
        await repo.update_task('ghost', error='x')


@pytest.mark.asyncio
async def test_concurrent_log_appends_are_not_lost(repo) -> None:
    await repo.create_task(TaskCreateRecord(description='d', task_id='t-4'))

    await asyncio.gather(*(repo.append_log('t-4', f'line {i}') for i in range(15)))

    logs = (await repo.get_task('t-4'))['logs']
    assert len(logs) == 16
    assert {line.split('] ', 1)[1] for line in logs[1:]} == {f'line {i}' for i in range(15)}


@pytest.mark.asyncio
async def test_returned_rows_are_copies(repo) -> None:
    await repo.create_task(TaskCreateRecord(description='d', task_id='t-5'))

    row = await repo.get_task('t-5')
    row['logs'].append('tampered')

    assert 'tampered' not in (await repo.get_task('t-5'))['logs']


@pytest.mark.asyncio
async def test_list_tasks_newest_first(repo) -> None:
    for index in range(3):
        await repo.create_task(TaskCreateRecord(description=f'task {index}', task_id=f'order-{index}'))
        await asyncio.sleep(0.002)

    listed = await repo.list_tasks(limit=2)

    assert [row['id'] for row in listed] == ['order-2', 'order-1']


@pytest.mark.asyncio
async def test_file_repository_layout_and_corrupt_rows(tmp_path) -> None:
    repo = FileTaskRepository(tmp_path / 'tasks', locks=LockManager())
    await repo.create_task(TaskCreateRecord(description='d', task_id='good'))
    (tmp_path / 'tasks' / 'bad.json').write_text('{oops', encoding='utf-8')

    assert (tmp_path / 'tasks' / 'good.json').exists()
    assert [row['id'] for row in await repo.list_tasks()] == ['good']
    with pytest.raises(FilesystemError):
        await repo.get_task('bad')
    assert await repo.get_task('../escape') is None


@pytest.mark.asyncio
async def test_file_repository_treats_undecodable_row_as_corrupt(tmp_path) -> None:
    repo = FileTaskRepository(tmp_path / 'tasks', locks=LockManager())
    await repo.create_task(TaskCreateRecord(description='d', task_id='good'))
    bad = tmp_path / 'tasks' / 'latin.json'
    bad.write_bytes(b'{"id": "latin", "title": "caf\xe9"}')

    assert [row['id'] for row in await repo.list_tasks()] == ['good']
    with pytest.raises(FilesystemError):
        await repo.get_task('latin')
    with pytest.raises(FilesystemError):
        await repo.append_log('latin', 'never written')
    assert bad.read_bytes() == b'{"id": "latin", "title": "caf\xe9"}'
