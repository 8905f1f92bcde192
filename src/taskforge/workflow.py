from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import time
from typing import Awaitable, Callable

from taskforge.adapters.base import (
    PURPOSE_ANALYSIS,
    PURPOSE_PLAN,
    PURPOSE_PULL_REQUEST,
    PURPOSE_VALIDATION,
    CompletionClient,
    CompletionRequest,
    CompletionResult,
    complete_with_timeout,
)
from taskforge.codebase import CodebaseContext, build_codebase_context
from taskforge.domain.knowledge import KnowledgeType
from taskforge.domain.models import Plan, TaskStatus
from taskforge.errors import InvalidStateError, NotFoundError, VcsError
from taskforge.executor import StepExecutor, StepOutcome, modified_files
from taskforge.knowledge import KnowledgeRecorder
from taskforge.observability import get_tracer, phase_scope, task_scope
from taskforge.plan_parsing import (
    ValidationSummary,
    branch_name_for,
    extract_pr_title,
    extract_relevant_paths,
    parse_plan,
    parse_validation,
)
from taskforge.repository import TaskRepository
from taskforge.roles import RoleRegistry, SpecialistRole
from taskforge.run_registry import RunRegistry
from taskforge.storage.files import WorkspaceFiles
from taskforge.vcs import VcsAdapter
from taskforge.workflow_prompting import (
    ANALYSIS_PROMPT,
    PLAN_PROMPT,
    PULL_REQUEST_PROMPT,
    VALIDATION_PROMPT,
    render_prompt,
)

_log = logging.getLogger(__name__)


@dataclass
class RunState:
    task: dict
    analysis: str = ''
    context: CodebaseContext = field(default_factory=CodebaseContext)
    plan: Plan = field(default_factory=Plan)
    outcomes: list[StepOutcome] = field(default_factory=list)
    validation: ValidationSummary | None = None
    branch: str | None = None

    @property
    def task_id(self) -> str:
        return self.task['id']

    @property
    def enhanced(self) -> bool:
        return bool(self.task.get('use_enhanced', True))


@dataclass(frozen=True)
class RunResult:
    task_id: str
    status: str
    error: str | None = None
    verdict: str | None = None
    step_states: list[str] = field(default_factory=list)


class PipelineOrchestrator:
    """Drives one task through Analyze, BuildContext, Plan, Execute, Validate and Publish.

    ``start_execution`` raises only for precondition failures (unknown task,
    already running, not startable). Once a run is registered, every error
    ends the task as ``failed`` and is reported in the returned RunResult.
    """

    def __init__(
        self,
        *,
        repository: TaskRepository,
        registry: RunRegistry,
        completion: CompletionClient,
        recorder: KnowledgeRecorder,
        executor: StepExecutor,
        files: WorkspaceFiles,
        vcs: VcsAdapter | None = None,
        roles: RoleRegistry | None = None,
        completion_timeout_seconds: float = 120.0,
        pr_base_branch: str = 'main',
        git_remote: str = 'origin',
        context_file_limit: int = 20,
    ):
        self.repository = repository
        self.registry = registry
        self.completion = completion
        self.recorder = recorder
        self.executor = executor
        self.files = files
        self.vcs = vcs
        self.roles = roles or RoleRegistry()
        self.completion_timeout_seconds = float(completion_timeout_seconds)
        self.pr_base_branch = pr_base_branch
        self.git_remote = git_remote
        self.context_file_limit = context_file_limit

    async def start_execution(self, task_id: str) -> RunResult:
        task = await self.repository.get_task(task_id)
        if task is None:
            raise NotFoundError(f'Task {task_id} not found', details={'task_id': task_id})
        self.registry.claim(task_id)
        try:
            if task.get('status') != TaskStatus.SUBMITTED.value:
                raise InvalidStateError(
                    f"Task {task_id} cannot be started from status {task.get('status')}",
                    field='status',
                    details={'task_id': task_id, 'status': task.get('status')},
                )
            with task_scope(task_id):
                return await self._run(task)
        finally:
            self.registry.release(task_id)

    def _phases(self) -> list[tuple[str, Callable[[RunState], Awaitable[None]]]]:
        return [
            ('analyze', self._analyze),
            ('build_context', self._build_context),
            ('plan', self._plan),
            ('execute', self._execute),
            ('validate', self._validate),
            ('publish', self._publish),
        ]

    async def _run(self, task: dict) -> RunResult:
        state = RunState(task=task)
        task_id = state.task_id
        tracer = get_tracer('taskforge.workflow')
        mode = 'enhanced' if state.enhanced else 'proposal'
        _log.info('pipeline_started task_id=%s mode=%s', task_id, mode)
        try:
            await self.repository.append_log(task_id, f'Task execution started with {mode} pipeline')
            await self.repository.update_status(task_id, TaskStatus.ANALYZING, message='Status: analyzing')
            for name, phase in self._phases():
                if self.registry.is_cancel_requested(task_id):
                    await self.repository.update_status(
                        task_id, TaskStatus.CANCELLED, message=f'Task cancelled before {name}',
                    )
                    _log.info('pipeline_cancelled task_id=%s before=%s', task_id, name)
                    return self._result(state, TaskStatus.CANCELLED)
                with phase_scope(tracer, task_id, name, {'mode': mode}):
                    await phase(state)
            await self.repository.update_status(task_id, TaskStatus.COMPLETED, message='Task execution completed')
            _log.info('pipeline_completed task_id=%s', task_id)
            return self._result(state, TaskStatus.COMPLETED)
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            _log.error('pipeline_failed task_id=%s error=%s', task_id, message, exc_info=True)
            await self._mark_failed(task_id, message)
            return self._result(state, TaskStatus.FAILED, error=message)

    async def _mark_failed(self, task_id: str, message: str) -> None:
        try:
            await self.repository.update_task(task_id, error=message)
            await self.repository.update_status(task_id, TaskStatus.FAILED, message=f'Error: {message}')
        except Exception:
            _log.error('pipeline_mark_failed_error task_id=%s', task_id, exc_info=True)

    @staticmethod
    def _result(state: RunState, status: TaskStatus, *, error: str | None = None) -> RunResult:
        return RunResult(
            task_id=state.task_id,
            status=status.value,
            error=error,
            verdict=(state.validation.verdict.value if state.validation else None),
            step_states=[outcome.state.value for outcome in state.outcomes],
        )

    async def _complete(self, role: SpecialistRole, prompt: str, *, purpose: str, max_tokens: int = 2000) -> CompletionResult:
        return await complete_with_timeout(
            self.completion,
            CompletionRequest(
                prompt=prompt,
                purpose=purpose,
                provider=role.provider,
                model=role.model,
                temperature=role.temperature,
                max_tokens=max_tokens,
            ),
            timeout_seconds=self.completion_timeout_seconds,
        )

    async def _record(self, state: RunState, role: SpecialistRole, kind: KnowledgeType, content: str, extra: dict | None = None) -> None:
        result = await self.recorder.record(
            role=role.name,
            task_id=state.task_id,
            kind=kind,
            content=content,
            extra=extra,
        )
        if not result.ok:
            await self.repository.append_log(
                state.task_id,
                f'Warning: could not record {kind.value} knowledge: {result.message}',
            )

    async def _analyze(self, state: RunState) -> None:
        role = self.roles.get('Admin')
        await self.repository.append_log(state.task_id, f'{role.name} analyzing task...')
        roster = '\n'.join(f'   - {name}: {self.roles.get(name).title}' for name in self.roles.names())
        prompt = render_prompt(
            ANALYSIS_PROMPT,
            {
                'system_prompt': role.system_prompt,
                'title': state.task.get('title'),
                'description': state.task.get('description'),
                'roster': roster,
            },
        )
        result = await self._complete(role, prompt, purpose=PURPOSE_ANALYSIS)
        state.analysis = result.output
        await self.repository.append_log(
            state.task_id, f'{role.name} completed analysis in {round(result.duration_seconds)} seconds',
        )
        await self._record(state, role, KnowledgeType.TASK_ANALYSIS, result.output)

    async def _build_context(self, state: RunState) -> None:
        if not state.enhanced:
            await self.repository.append_log(state.task_id, 'Skipping codebase context in proposal mode')
            return
        role = self.roles.get('Analyzer')
        await self.repository.update_status(state.task_id, TaskStatus.PLANNING, message='Building codebase context...')
        paths = extract_relevant_paths(state.analysis)
        await self.repository.append_log(
            state.task_id,
            f'Identified {len(paths.directories)} relevant directories and {len(paths.files)} files',
        )
        state.context = await build_codebase_context(self.files, paths, file_limit=self.context_file_limit)
        summary = state.context.summary
        await self.repository.append_log(
            state.task_id,
            f"Built codebase context with {summary['file_count']} files containing "
            f"{summary['class_count']} classes and {summary['function_count']} functions",
        )
        await self._record(state, role, KnowledgeType.CODEBASE_CONTEXT, state.context.describe())

    async def _plan(self, state: RunState) -> None:
        role = self.roles.get('Config')
        await self.repository.update_status(
            state.task_id, TaskStatus.PLANNING, message=f'{role.name} creating implementation plan...',
        )
        prompt = render_prompt(
            PLAN_PROMPT,
            {
                'system_prompt': role.system_prompt,
                'title': state.task.get('title'),
                'description': state.task.get('description'),
                'analysis': state.analysis,
                'context': state.context.describe(),
            },
        )
        result = await self._complete(role, prompt, purpose=PURPOSE_PLAN, max_tokens=4000)
        state.plan = parse_plan(result.output)
        await self.repository.update_task(state.task_id, plan=state.plan.to_dict())
        await self.repository.append_log(
            state.task_id,
            f'{role.name} completed implementation plan with {len(state.plan.steps)} steps '
            f'in {round(result.duration_seconds)} seconds',
        )
        if not state.plan.steps:
            await self.repository.append_log(state.task_id, 'Warning: implementation plan contains no numbered steps')
        await self._record(
            state,
            role,
            KnowledgeType.IMPLEMENTATION_PLAN,
            result.output,
            {'title': state.task.get('title')},
        )

    async def _prepare_branch(self, state: RunState) -> None:
        if self.vcs is None or not await self.vcs.is_repository():
            await self.repository.append_log(
                state.task_id, 'Warning: no git repository detected; skipping branch, commit and pull request',
            )
            return
        try:
            if not await self.vcs.is_working_tree_clean():
                await self.repository.append_log(
                    state.task_id, 'Warning: working tree has uncommitted changes',
                )
            branch = branch_name_for(state.task_id, state.task.get('title'))
            await self.vcs.create_branch(branch)
        except VcsError as exc:
            await self.repository.append_log(state.task_id, f'Warning: git branch setup failed: {exc.message}')
            return
        state.branch = branch
        await self.repository.update_task(state.task_id, pr_branch=branch)
        await self.repository.append_log(state.task_id, f'Created and checked out git branch: {branch}')

    async def _commit(self, state: RunState, paths: list[str]) -> None:
        if self.vcs is None or not state.branch or not paths:
            return
        try:
            await self.vcs.stage_files(paths)
            if not await self.vcs.staged_files():
                await self.repository.append_log(state.task_id, 'No staged changes to commit')
                return
            sha = await self.vcs.commit(
                f"{state.task.get('title') or state.task_id}\n\nImplement changes for task {state.task_id}"
            )
        except VcsError as exc:
            await self.repository.append_log(state.task_id, f'Warning: git commit failed: {exc.message}')
            return
        await self.repository.append_log(state.task_id, f'Committed {len(paths)} file(s): {sha[:12]}')

    async def _execute(self, state: RunState) -> None:
        await self.repository.update_status(
            state.task_id,
            TaskStatus.EXECUTING,
            message=f'Executing implementation plan with {len(state.plan.steps)} steps',
        )
        if state.enhanced:
            await self._prepare_branch(state)
        state.outcomes = await self.executor.execute_plan(state.task, state.plan, write_files=state.enhanced)
        failed = sum(1 for outcome in state.outcomes if outcome.error)
        await self.repository.update_task(
            state.task_id,
            plan=state.plan.to_dict(),
            step_results=[outcome.to_dict() for outcome in state.outcomes],
        )
        await self.repository.append_log(
            state.task_id,
            f'Executed {len(state.outcomes)} steps ({failed} failed)',
        )
        if state.enhanced:
            await self._commit(state, modified_files(state.outcomes))

    async def _validate(self, state: RunState) -> None:
        role = self.roles.get('Validator')
        await self.repository.update_status(
            state.task_id, TaskStatus.VALIDATING, message=f'{role.name} validating implementation...',
        )
        prompt = render_prompt(
            VALIDATION_PROMPT,
            {
                'system_prompt': role.system_prompt,
                'title': state.task.get('title'),
                'description': state.task.get('description'),
                'plan': json.dumps(state.plan.to_dict(), indent=2),
                'results': json.dumps([outcome.to_dict() for outcome in state.outcomes], indent=2),
            },
        )
        result = await self._complete(role, prompt, purpose=PURPOSE_VALIDATION)
        state.validation = parse_validation(result.output)
        await self.repository.update_task(state.task_id, validation=state.validation.to_dict())
        await self.repository.append_log(
            state.task_id,
            f'Validation verdict: {state.validation.verdict.value} '
            f'({len(state.validation.issues)} issues, {len(state.validation.suggestions)} suggestions)',
        )
        await self._record(state, role, KnowledgeType.VALIDATION, result.output)

    async def _publish(self, state: RunState) -> None:
        wants_pr = bool(state.task.get('create_pr'))
        passed = state.validation is not None and state.validation.passed
        if not (wants_pr and passed):
            reason = 'Validation failed' if wants_pr else 'Not requested'
            await self.repository.append_log(state.task_id, f'Pull request creation skipped: {reason}')
            return
        if not state.branch:
            await self.repository.append_log(state.task_id, 'Pull request creation skipped: no task branch')
            return

        role = self.roles.get('Git')
        await self.repository.append_log(state.task_id, f'{role.name} preparing pull request...')
        prompt = render_prompt(
            PULL_REQUEST_PROMPT,
            {
                'system_prompt': role.system_prompt,
                'title': state.task.get('title'),
                'description': state.task.get('description'),
                'files': '\n'.join(f'- {path}' for path in modified_files(state.outcomes)) or '- (none)',
                'validation': json.dumps(state.validation.to_dict(), indent=2),
            },
        )
        result = await self._complete(role, prompt, purpose=PURPOSE_PULL_REQUEST)
        title = extract_pr_title(
            result.output,
            fallback=(state.task.get('title') or f'Implementation for task {state.task_id}'),
        )
        await self.repository.update_task(
            state.task_id, pr_branch=state.branch, pr_title=title, pr_description=result.output,
        )
        await self._record(state, role, KnowledgeType.PULL_REQUEST, result.output, {'title': title})

        started = time.monotonic()
        try:
            await self.vcs.push(self.git_remote, state.branch)
            await self.repository.append_log(state.task_id, f'Pushed branch {state.branch} to {self.git_remote}')
        except VcsError as exc:
            await self.repository.append_log(state.task_id, f'Warning: failed to push branch: {exc.message}')
        try:
            info = await self.vcs.open_pull_request(
                title=title, body=result.output, head=state.branch, base=self.pr_base_branch,
            )
        except VcsError as exc:
            await self.repository.append_log(state.task_id, f'Warning: failed to create pull request: {exc.message}')
            return
        await self.repository.update_task(state.task_id, pr_number=info.number, pr_url=info.url)
        await self.repository.append_log(
            state.task_id,
            f'Created pull request #{info.number}: {info.url} in {round(time.monotonic() - started)} seconds',
        )
