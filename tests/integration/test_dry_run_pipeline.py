from __future__ import annotations

import dataclasses
import logging
from pathlib import Path
import shutil

import pytest

import taskforge.observability as observability
from taskforge.config import Settings, load_settings
from taskforge.domain.models import TaskStatus
from taskforge.main import build_service
from taskforge.service import CreateTaskInput
from taskforge.vcs import GitAdapter


@pytest.fixture
def settings(monkeypatch, tmp_path: Path) -> Settings:
    repo = tmp_path / 'repo'
    repo.mkdir()
    monkeypatch.setenv('GIT_CEILING_DIRECTORIES', str(tmp_path))
    monkeypatch.setattr(observability, '_state', observability._ObservabilityState(log_handler=logging.NullHandler()))
    return dataclasses.replace(
        load_settings(),
        data_root=(tmp_path / 'state').resolve(),
        repository_root=repo.resolve(),
        dry_run=True,
        completion_command=None,
        otel_endpoint=None,
        github_token=None,
    )


@pytest.mark.asyncio
async def test_dry_run_task_completes_and_persists(settings: Settings) -> None:
    service = build_service(settings)
    await service.initialize()

    created = await service.create_task(
        CreateTaskInput(description='Write the project notes document', title='Project notes', task_id='t-int')
    )
    assert created.status is TaskStatus.SUBMITTED

    view = await service.start_task('t-int')

    assert view.status is TaskStatus.COMPLETED
    assert view.error is None
    assert view.validation['verdict'] == 'Pass'
    assert [row['state'] for row in view.step_results] == ['completed']
    assert view.step_results[0]['files_modified'] == ['docs/TASK_NOTES.md']
    notes = settings.repository_root / 'docs' / 'TASK_NOTES.md'
    assert notes.read_text(encoding='utf-8').startswith('# Task notes')
    assert any('Warning: no git repository detected' in line for line in view.logs)

    counts = {item['name']: item['count'] for item in await service.store.list_collections()}
    assert counts['tasks'] == 1
    assert counts['agent_Admin'] == 2
    assert counts['agent_Config'] == 1
    assert counts['agent_Docs'] == 1
    assert counts['agent_Validator'] == 1

    restarted = build_service(settings)
    reloaded = await restarted.get_task('t-int')
    assert reloaded.status is TaskStatus.COMPLETED
    assert reloaded.logs == view.logs
    assert (settings.data_root / 'tasks' / 't-int.json').is_file()


@pytest.mark.skipif(shutil.which('git') is None, reason='git is not installed')
@pytest.mark.asyncio
async def test_dry_run_commits_on_task_branch(settings: Settings) -> None:
    git = GitAdapter(settings.repository_root, timeout_seconds=30)
    await git._git('init')
    await git._git('symbolic-ref', 'HEAD', 'refs/heads/main')
    await git._git('config', 'user.email', 'dev@example.test')
    await git._git('config', 'user.name', 'Dev')
    await git._git('config', 'commit.gpgsign', 'false')
    (settings.repository_root / 'README.md').write_text('seed\n', encoding='utf-8')
    await git._git('add', 'README.md')
    await git._git('commit', '-m', 'seed')

    service = build_service(settings)
    await service.create_task(
        CreateTaskInput(description='Write the project notes document', title='Project notes', task_id='t-git', create_pr=True)
    )

    view = await service.start_task('t-git')

    assert view.status is TaskStatus.COMPLETED
    assert view.pr_branch == 'task/t-git_project-notes'
    assert await git.current_branch() == 'task/t-git_project-notes'
    assert await git.is_working_tree_clean()
    log = (await git._git('log', '--format=%s', '-n', '1')).stdout
    assert log == 'Project notes'
    assert any('Committed 1 file(s)' in line for line in view.logs)
    assert view.pr_title == 'Update project notes'
    assert any('Warning: failed to push branch' in line for line in view.logs)
    assert any('Warning: failed to create pull request' in line for line in view.logs)
    assert view.pr_number is None
