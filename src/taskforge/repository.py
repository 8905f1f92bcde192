from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import nullcontext
import copy
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from pathlib import Path
import re
from typing import Callable, Protocol
from uuid import uuid4

from taskforge.domain.models import TaskStatus, can_transition, normalize_status
from taskforge.errors import FilesystemError, InputValidationError, InvalidStateError, NotFoundError
from taskforge.storage.jsonio import CorruptFileError, aread_json, awrite_json_atomic
from taskforge.storage.locks import LockManager

_log = logging.getLogger(__name__)

_TASK_ID_RE = re.compile(r'^[A-Za-z0-9_.-]+$')
_IMMUTABLE_FIELDS = frozenset({'id', 'status', 'logs', 'timestamp'})
TITLE_FROM_DESCRIPTION_CHARS = 60


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def format_log_line(message: str, *, now: datetime | None = None) -> str:
    stamp = (now or datetime.now()).strftime('%H:%M:%S')
    return f'[{stamp}] {message}'


def default_title(description: str) -> str:
    text = str(description or '').strip()
    if len(text) <= TITLE_FROM_DESCRIPTION_CHARS:
        return text
    return text[:TITLE_FROM_DESCRIPTION_CHARS] + '...'


@dataclass(frozen=True)
class TaskCreateRecord:
    description: str
    title: str | None = None
    use_enhanced: bool = True
    create_pr: bool = False
    task_id: str | None = None


def build_task_row(record: TaskCreateRecord) -> dict:
    task_id = str(record.task_id or '').strip() or f'task-{uuid4().hex[:12]}'
    if not _TASK_ID_RE.match(task_id):
        raise InputValidationError(f'invalid task id: {task_id!r}', field='task_id')
    now = _utc_now_iso()
    return {
        'id': task_id,
        'title': (str(record.title or '').strip() or default_title(record.description)),
        'description': str(record.description or '').strip(),
        'status': TaskStatus.SUBMITTED.value,
        'timestamp': now,
        'updated_at': now,
        'logs': [format_log_line('Task submitted')],
        'plan': None,
        'step_results': [],
        'validation': None,
        'pr_branch': None,
        'pr_number': None,
        'pr_url': None,
        'pr_title': None,
        'pr_description': None,
        'use_enhanced': bool(record.use_enhanced),
        'create_pr': bool(record.create_pr),
        'error': None,
    }


class TaskRepository(Protocol):
    async def create_task(self, record: TaskCreateRecord) -> dict:
        ...

    async def get_task(self, task_id: str) -> dict | None:
        ...

    async def list_tasks(self, *, limit: int = 100) -> list[dict]:
        ...

    async def update_task(self, task_id: str, **fields) -> dict:
        ...

    async def append_log(self, task_id: str, message: str) -> dict:
        ...

    async def update_status(self, task_id: str, status: str | TaskStatus, *, message: str | None = None) -> dict:
        ...


class _TaskRowMutations(ABC):
    """Shared row rules; subclasses provide storage and per-task guarding."""

    def _guard(self, task_id: str):
        return nullcontext()

    @abstractmethod
    async def _read(self, task_id: str) -> dict | None:
        ...

    @abstractmethod
    async def _write(self, row: dict) -> None:
        ...

    async def _modify(self, task_id: str, mutate: Callable[[dict], None]) -> dict:
        async with self._guard(task_id):
            row = await self._read(task_id)
            if row is None:
                raise NotFoundError(f'Task {task_id} not found')
            mutate(row)
            row['updated_at'] = _utc_now_iso()
            await self._write(row)
            return copy.deepcopy(row)

    async def update_task(self, task_id: str, **fields) -> dict:
        blocked = sorted(set(fields) & _IMMUTABLE_FIELDS)
        if blocked:
            raise InputValidationError(f'fields cannot be updated directly: {", ".join(blocked)}')

        def apply(row: dict) -> None:
            row.update(copy.deepcopy(fields))

        return await self._modify(task_id, apply)

    async def append_log(self, task_id: str, message: str) -> dict:
        line = format_log_line(message)

        def apply(row: dict) -> None:
            row.setdefault('logs', []).append(line)

        return await self._modify(task_id, apply)

    async def update_status(self, task_id: str, status: str | TaskStatus, *, message: str | None = None) -> dict:
        target = normalize_status(status)

        def apply(row: dict) -> None:
            current = row.get('status') or TaskStatus.SUBMITTED.value
            if not can_transition(current, target):
                raise InvalidStateError(
                    f'illegal status transition {current} -> {target.value}',
                    field='status',
                    details={'task_id': task_id},
                )
            row['status'] = target.value
            if message:
                row.setdefault('logs', []).append(format_log_line(message))

        return await self._modify(task_id, apply)


class InMemoryTaskRepository(_TaskRowMutations):
    def __init__(self):
        self.items: dict[str, dict] = {}

    async def create_task(self, record: TaskCreateRecord) -> dict:
        row = build_task_row(record)
        if row['id'] in self.items:
            raise InputValidationError(f"task {row['id']} already exists", field='task_id')
        self.items[row['id']] = row
        return copy.deepcopy(row)

    async def get_task(self, task_id: str) -> dict | None:
        row = self.items.get(task_id)
        return copy.deepcopy(row) if row else None

    async def list_tasks(self, *, limit: int = 100) -> list[dict]:
        rows = sorted(self.items.values(), key=lambda r: r.get('timestamp', ''), reverse=True)
        return [copy.deepcopy(r) for r in rows[: max(0, int(limit))]]

    async def _read(self, task_id: str) -> dict | None:
        return self.items.get(task_id)

    async def _write(self, row: dict) -> None:
        self.items[row['id']] = row


class FileTaskRepository(_TaskRowMutations):
    """One pretty-printed JSON file per task under ``<root>/<id>.json``."""

    def __init__(self, root: Path, *, locks: LockManager, lock_timeout_ms: int | None = None):
        self.root = Path(root)
        self.locks = locks
        self.lock_timeout_ms = lock_timeout_ms

    def task_path(self, task_id: str) -> Path:
        text = str(task_id or '').strip()
        if not text or text in {'.', '..'} or not _TASK_ID_RE.match(text):
            raise InputValidationError(f'invalid task id: {task_id!r}', field='task_id')
        return self.root / f'{text}.json'

    def _guard(self, task_id: str):
        return self.locks.hold(self.task_path(task_id), timeout_ms=self.lock_timeout_ms)

    async def _read(self, task_id: str) -> dict | None:
        path = self.task_path(task_id)
        try:
            return await aread_json(path)
        except CorruptFileError as exc:
            raise FilesystemError(str(exc), details={'path': str(path)}) from exc

    async def _write(self, row: dict) -> None:
        path = self.task_path(row['id'])
        try:
            await awrite_json_atomic(path, row)
        except OSError as exc:
            raise FilesystemError(f'task write failed: {exc}', details={'path': str(path)}) from exc

    async def create_task(self, record: TaskCreateRecord) -> dict:
        row = build_task_row(record)
        async with self._guard(row['id']):
            if self.task_path(row['id']).exists():
                raise InputValidationError(f"task {row['id']} already exists", field='task_id')
            await self._write(row)
        _log.info('task_created task_id=%s', row['id'])
        return copy.deepcopy(row)

    async def get_task(self, task_id: str) -> dict | None:
        try:
            return await self._read(task_id)
        except InputValidationError:
            return None

    async def list_tasks(self, *, limit: int = 100) -> list[dict]:
        if not self.root.exists():
            return []
        rows: list[dict] = []
        for path in self.root.glob('*.json'):
            try:
                row = await aread_json(path)
            except CorruptFileError as exc:
                _log.warning('task_file_unreadable path=%s reason=%s', path, exc.reason)
                continue
            if row:
                rows.append(row)
        rows.sort(key=lambda r: r.get('timestamp', ''), reverse=True)
        return rows[: max(0, int(limit))]
