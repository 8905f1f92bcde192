from __future__ import annotations

from pathlib import Path
import sys


def _prepend_repo_src_to_syspath() -> None:
    src = Path(__file__).resolve().parents[1] / 'src'
    if not src.is_dir():
        return
    src_text = str(src)
    normalized = src_text.replace('\\', '/').lower()
    rest = [item for item in sys.path if str(item or '').replace('\\', '/').lower() != normalized]
    sys.path[:] = [src_text, *rest]


_prepend_repo_src_to_syspath()

import pytest  # noqa: E402

from taskforge.adapters.base import (  # noqa: E402
    PURPOSE_ANALYSIS,
    PURPOSE_IMPLEMENTATION,
    PURPOSE_PLAN,
    PURPOSE_PULL_REQUEST,
    PURPOSE_VALIDATION,
    CompletionRequest,
    CompletionResult,
)
from taskforge.errors import VcsError  # noqa: E402
from taskforge.executor import StepExecutor  # noqa: E402
from taskforge.knowledge import KnowledgeRecorder  # noqa: E402
from taskforge.repository import InMemoryTaskRepository  # noqa: E402
from taskforge.run_registry import RunRegistry  # noqa: E402
from taskforge.storage.documents import DocumentStore  # noqa: E402
from taskforge.storage.files import WorkspaceFiles  # noqa: E402
from taskforge.storage.locks import LockManager  # noqa: E402
from taskforge.vcs import PullRequestInfo  # noqa: E402
from taskforge.workflow import PipelineOrchestrator  # noqa: E402

DEFAULT_OUTPUTS = {
    PURPOSE_ANALYSIS: 'The task touches src/app/ and src/app/core.py; a Developer should handle it.',
    PURPOSE_PLAN: (
        '# OVERVIEW\n'
        'Small change.\n\n'
        '# IMPLEMENTATION STEPS\n'
        '1. Implement the greeting helper in src/app/core.py\n'
        '2. Write notes in docs/NOTES.md\n\n'
        '# TESTING\n'
        'Run the unit tests.\n\n'
        '# RISKS\n'
        '- None identified\n'
    ),
    PURPOSE_IMPLEMENTATION: '```python\ndef greet():\n    return "hello"\n```',
    PURPOSE_VALIDATION: 'Overall Assessment: Pass\n\nIssues:\n- None\n\nSuggestions:\n- Add docstrings',
    PURPOSE_PULL_REQUEST: '# Add greeting helper\n\nImplements the greeting helper and notes.',
}


class ScriptedCompletion:
    """Completion client returning canned output per purpose.

    A value may be a string, an exception instance to raise, or a callable
    taking the request and returning either.
    """

    def __init__(self, outputs: dict | None = None):
        self.outputs = {**DEFAULT_OUTPUTS, **dict(outputs or {})}
        self.requests: list[CompletionRequest] = []

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        self.requests.append(request)
        value = self.outputs.get(request.purpose, f'output for {request.purpose}')
        if callable(value):
            value = value(request)
        if isinstance(value, BaseException):
            raise value
        return CompletionResult(
            output=str(value),
            provider=request.provider or 'fake',
            model=request.model,
            returncode=0,
            duration_seconds=0.0,
        )

    def purposes(self) -> list[str]:
        return [request.purpose for request in self.requests]


class FakeVcs:
    def __init__(self, *, repository: bool = True, clean: bool = True, fail: set[str] | None = None):
        self.repository = repository
        self.clean = clean
        self.fail = set(fail or ())
        self.calls: list[tuple] = []
        self._staged: list[str] = []

    def _maybe_fail(self, name: str) -> None:
        if name in self.fail:
            raise VcsError(f'{name} failed')

    async def is_repository(self) -> bool:
        self.calls.append(('is_repository',))
        return self.repository

    async def current_branch(self) -> str:
        return 'main'

    async def is_working_tree_clean(self) -> bool:
        self.calls.append(('is_working_tree_clean',))
        return self.clean

    async def create_branch(self, name: str) -> None:
        self.calls.append(('create_branch', name))
        self._maybe_fail('create_branch')

    async def stage_files(self, paths: list[str]) -> None:
        self.calls.append(('stage_files', list(paths)))
        self._maybe_fail('stage_files')
        self._staged.extend(paths)

    async def staged_files(self) -> list[str]:
        return list(self._staged)

    async def commit(self, message: str) -> str:
        self.calls.append(('commit', message))
        self._maybe_fail('commit')
        self._staged = []
        return '0123456789abcdef0123'

    async def push(self, remote: str, branch: str) -> None:
        self.calls.append(('push', remote, branch))
        self._maybe_fail('push')

    async def open_pull_request(self, *, title: str, body: str, head: str, base: str) -> PullRequestInfo:
        self.calls.append(('open_pull_request', title, head, base))
        self._maybe_fail('open_pull_request')
        return PullRequestInfo(number=7, url='https://github.com/acme/widgets/pull/7')

    def names(self) -> list[str]:
        return [call[0] for call in self.calls]


@pytest.fixture
def locks() -> LockManager:
    return LockManager(default_timeout_ms=2000)


@pytest.fixture
def data_root(tmp_path: Path) -> Path:
    return tmp_path / 'data'


@pytest.fixture
def store(data_root: Path, locks: LockManager) -> DocumentStore:
    return DocumentStore(data_root, locks=locks)


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / 'repo'
    root.mkdir()
    return root


@pytest.fixture
def files(workspace: Path, data_root: Path, locks: LockManager) -> WorkspaceFiles:
    return WorkspaceFiles(workspace, locks=locks, backup_dir=data_root / 'backups')


@pytest.fixture
def completion() -> ScriptedCompletion:
    return ScriptedCompletion()


@pytest.fixture
def make_completion():
    return ScriptedCompletion


@pytest.fixture
def make_vcs():
    return FakeVcs


@pytest.fixture
def pipeline(store, files, completion):
    """Wire an orchestrator over in-memory tasks and a real store/workspace."""

    def build(*, completion_client=None, vcs=None, repository=None):
        client = completion_client or completion
        repo = repository or InMemoryTaskRepository()
        recorder = KnowledgeRecorder(store)
        registry = RunRegistry()
        executor = StepExecutor(
            completion=client,
            files=files,
            recorder=recorder,
            repository=repo,
            completion_timeout_seconds=5,
        )
        orchestrator = PipelineOrchestrator(
            repository=repo,
            registry=registry,
            completion=client,
            recorder=recorder,
            executor=executor,
            files=files,
            vcs=vcs,
            completion_timeout_seconds=5,
        )
        return orchestrator, repo, registry

    return build
