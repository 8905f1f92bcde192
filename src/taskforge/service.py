from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from taskforge.domain.knowledge import KnowledgeType
from taskforge.domain.models import TERMINAL_STATUSES, TaskStatus
from taskforge.errors import InputValidationError, InvalidStateError, NotFoundError, TaskRunningError
from taskforge.knowledge import KnowledgeRecorder
from taskforge.observability import get_logger, task_scope
from taskforge.repository import TaskCreateRecord, TaskRepository
from taskforge.roles import RoleRegistry
from taskforge.run_registry import RunRegistry
from taskforge.storage.documents import STANDARD_COLLECTIONS, DocumentStore
from taskforge.workflow import PipelineOrchestrator, RunResult

_log = get_logger('taskforge.service')

TASKS_COLLECTION = 'tasks'


@dataclass(frozen=True)
class CreateTaskInput:
    description: str
    title: str | None = None
    use_enhanced: bool = True
    create_pr: bool = False
    task_id: str | None = None


@dataclass(frozen=True)
class TaskView:
    task_id: str
    title: str
    description: str
    status: TaskStatus
    timestamp: str
    updated_at: str
    use_enhanced: bool
    create_pr: bool
    logs: list[str] = field(default_factory=list)
    plan: dict | None = None
    step_results: list[dict] = field(default_factory=list)
    validation: dict | None = None
    pr_branch: str | None = None
    pr_number: int | None = None
    pr_url: str | None = None
    pr_title: str | None = None
    error: str | None = None
    running: bool = False

    def to_dict(self) -> dict:
        return {
            'id': self.task_id,
            'title': self.title,
            'description': self.description,
            'status': self.status.value,
            'timestamp': self.timestamp,
            'updated_at': self.updated_at,
            'use_enhanced': self.use_enhanced,
            'create_pr': self.create_pr,
            'logs': list(self.logs),
            'plan': self.plan,
            'step_results': list(self.step_results),
            'validation': self.validation,
            'pr_branch': self.pr_branch,
            'pr_number': self.pr_number,
            'pr_url': self.pr_url,
            'pr_title': self.pr_title,
            'error': self.error,
            'running': self.running,
        }


class OrchestratorService:
    def __init__(
        self,
        *,
        repository: TaskRepository,
        store: DocumentStore,
        registry: RunRegistry,
        orchestrator: PipelineOrchestrator,
        recorder: KnowledgeRecorder,
        roles: RoleRegistry | None = None,
    ):
        self.repository = repository
        self.store = store
        self.registry = registry
        self.orchestrator = orchestrator
        self.recorder = recorder
        self.roles = roles or RoleRegistry()
        self._background: dict[str, asyncio.Task] = {}

    async def initialize(self) -> list[dict]:
        results = await self.store.initialize(STANDARD_COLLECTIONS)
        await self.recorder.ensure_collections(self.roles.names())
        _log.info('service_initialized collections=%s roles=%s', len(STANDARD_COLLECTIONS), len(self.roles.names()))
        return [result.to_dict() for result in results]

    async def create_task(self, payload: CreateTaskInput) -> TaskView:
        description = str(payload.description or '').strip()
        if not description:
            raise InputValidationError('Task description is required', field='description')
        row = await self.repository.create_task(
            TaskCreateRecord(
                description=description,
                title=payload.title,
                use_enhanced=payload.use_enhanced,
                create_pr=payload.create_pr,
                task_id=payload.task_id,
            )
        )
        with task_scope(row['id']):
            row = await self._index_new_task(row)
        return self._to_view(row)

    async def _index_new_task(self, row: dict) -> dict:
        task_id = row['id']
        indexed = await self.store.add_document(
            TASKS_COLLECTION,
            {
                'document': f"{row['title']}\n\n{row['description']}",
                'metadata': {
                    'type': KnowledgeType.TASK.value,
                    'task_id': task_id,
                    'title': row['title'],
                    'timestamp': row['timestamp'],
                    'status': row['status'],
                },
            },
        )
        if not indexed.ok:
            _log.warning('task_index_failed task_id=%s message=%s', task_id, indexed.message)
            row = await self.repository.append_log(task_id, f'Warning: could not index task: {indexed.message}')
        recorded = await self.recorder.record(
            role='Admin',
            task_id=task_id,
            kind=KnowledgeType.TASK,
            content=row['description'],
            extra={'title': row['title']},
        )
        if not recorded.ok:
            row = await self.repository.append_log(
                task_id, f'Warning: could not record task knowledge: {recorded.message}',
            )
        _log.info('task_submitted task_id=%s enhanced=%s create_pr=%s', task_id, row['use_enhanced'], row['create_pr'])
        return row

    async def start_task(self, task_id: str) -> TaskView:
        result = await self.orchestrator.start_execution(task_id)
        _log.info('task_finished task_id=%s status=%s', task_id, result.status)
        return await self.get_task(task_id)

    async def start_task_background(self, task_id: str) -> TaskView:
        """Schedule the pipeline on the running loop and return the submitted view.

        Precondition failures (unknown task, already running, wrong status)
        are raised here rather than lost inside the background task.
        """
        row = await self.repository.get_task(task_id)
        if row is None:
            raise NotFoundError(f'Task {task_id} not found', details={'task_id': task_id})
        if self.registry.is_running(task_id) or task_id in self._background:
            raise TaskRunningError(f'Task {task_id} is already running', details={'task_id': task_id})
        if row.get('status') != TaskStatus.SUBMITTED.value:
            raise InvalidStateError(
                f"Task {task_id} cannot be started from status {row.get('status')}",
                field='status',
                details={'task_id': task_id, 'status': row.get('status')},
            )
        job = asyncio.create_task(self._run_background(task_id), name=f'taskforge-{task_id}')
        self._background[task_id] = job
        job.add_done_callback(lambda _: self._background.pop(task_id, None))
        await asyncio.sleep(0)
        return self._to_view(row)

    async def _run_background(self, task_id: str) -> RunResult | None:
        try:
            return await self.orchestrator.start_execution(task_id)
        except Exception:
            _log.error('background_run_failed task_id=%s', task_id, exc_info=True)
            return None

    async def wait_background(self, task_id: str) -> None:
        job = self._background.get(task_id)
        if job is not None:
            await job

    def background_ids(self) -> list[str]:
        return list(self._background)

    async def cancel_task(self, task_id: str) -> TaskView:
        row = await self.repository.get_task(task_id)
        if row is None:
            raise NotFoundError(f'Task {task_id} not found', details={'task_id': task_id})
        if self.registry.request_cancel(task_id):
            row = await self.repository.append_log(task_id, 'Cancellation requested')
            _log.info('task_cancel_requested task_id=%s', task_id)
            return self._to_view(row)
        if TaskStatus(row['status']) in TERMINAL_STATUSES:
            raise InvalidStateError(
                f"Task {task_id} is already {row['status']}",
                field='status',
                details={'task_id': task_id, 'status': row['status']},
            )
        row = await self.repository.update_status(task_id, TaskStatus.CANCELLED, message='Task cancelled')
        _log.info('task_cancelled task_id=%s', task_id)
        return self._to_view(row)

    async def get_task(self, task_id: str) -> TaskView:
        row = await self.repository.get_task(task_id)
        if row is None:
            raise NotFoundError(f'Task {task_id} not found', details={'task_id': task_id})
        return self._to_view(row)

    async def list_tasks(self, *, limit: int = 100) -> list[TaskView]:
        return [self._to_view(row) for row in await self.repository.list_tasks(limit=limit)]

    async def search_tasks(self, query: str, *, limit: int = 10) -> list[dict]:
        hits = await self.store.query_collection(
            TASKS_COLLECTION,
            query,
            limit=limit,
            filters={'type': KnowledgeType.TASK.value},
        )
        return [hit.to_dict() for hit in hits]

    def _to_view(self, row: dict) -> TaskView:
        pr_number = row.get('pr_number')
        return TaskView(
            task_id=str(row['id']),
            title=str(row.get('title') or ''),
            description=str(row.get('description') or ''),
            status=TaskStatus(str(row['status'])),
            timestamp=str(row.get('timestamp') or ''),
            updated_at=str(row.get('updated_at') or row.get('timestamp') or ''),
            use_enhanced=bool(row.get('use_enhanced', True)),
            create_pr=bool(row.get('create_pr', False)),
            logs=[str(line) for line in row.get('logs') or []],
            plan=row.get('plan'),
            step_results=list(row.get('step_results') or []),
            validation=row.get('validation'),
            pr_branch=row.get('pr_branch'),
            pr_number=(int(pr_number) if pr_number is not None else None),
            pr_url=row.get('pr_url'),
            pr_title=row.get('pr_title'),
            error=row.get('error'),
            running=self.registry.is_running(str(row['id'])),
        )
