from __future__ import annotations

from dataclasses import dataclass, field
import logging

from taskforge.adapters.base import (
    PURPOSE_IMPLEMENTATION,
    CompletionClient,
    CompletionRequest,
    complete_with_timeout,
)
from taskforge.domain.knowledge import KnowledgeType
from taskforge.domain.models import Plan, PlanStep, StepState
from taskforge.knowledge import KnowledgeRecorder
from taskforge.plan_parsing import unwrap_code
from taskforge.repository import TaskRepository
from taskforge.roles import RoleRegistry, SpecialistRole
from taskforge.storage.files import WorkspaceFiles
from taskforge.workflow_prompting import IMPLEMENTATION_PROMPT, current_file_block, render_prompt

_log = logging.getLogger(__name__)


@dataclass
class StepOutcome:
    index: int
    description: str
    role: str
    state: StepState
    files_modified: list[str] = field(default_factory=list)
    files_proposed: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            'index': self.index,
            'description': self.description,
            'role': self.role,
            'state': self.state.value,
            'files_modified': list(self.files_modified),
            'files_proposed': list(self.files_proposed),
            'error': self.error,
        }


def modified_files(outcomes: list[StepOutcome]) -> list[str]:
    seen: list[str] = []
    for outcome in outcomes:
        if outcome.state is not StepState.COMPLETED:
            continue
        for path in outcome.files_modified:
            if path not in seen:
                seen.append(path)
    return seen


class StepExecutor:
    """Runs plan steps one after another; a failing step does not stop the rest."""

    def __init__(
        self,
        *,
        completion: CompletionClient,
        files: WorkspaceFiles,
        recorder: KnowledgeRecorder,
        repository: TaskRepository,
        roles: RoleRegistry | None = None,
        completion_timeout_seconds: float = 120.0,
    ):
        self.completion = completion
        self.files = files
        self.recorder = recorder
        self.repository = repository
        self.roles = roles or RoleRegistry()
        self.completion_timeout_seconds = float(completion_timeout_seconds)

    async def execute_plan(self, task: dict, plan: Plan, *, write_files: bool = True) -> list[StepOutcome]:
        outcomes: list[StepOutcome] = []
        total = len(plan.steps)
        for index, step in enumerate(plan.steps, start=1):
            outcomes.append(await self.execute_step(task, step, index=index, total=total, write_files=write_files))
        return outcomes

    async def execute_step(
        self,
        task: dict,
        step: PlanStep,
        *,
        index: int,
        total: int,
        write_files: bool = True,
    ) -> StepOutcome:
        role = self.roles.get(step.role) if step.role else self.roles.for_step(step.description)
        step.role = role.name
        outcome = StepOutcome(index=index, description=step.description, role=role.name, state=StepState.PENDING)
        task_id = task['id']
        await self.repository.append_log(task_id, f'Step {index}/{total} ({role.name}): {step.description}')
        try:
            if not step.files:
                await self.repository.append_log(task_id, f'Step {index} has no target files; nothing to generate')
            for path in step.files:
                await self._implement_file(task, step, role, path, outcome, write_files=write_files)
        except Exception as exc:
            step.state = StepState.FAILED
            step.error = str(exc)
            outcome.state = StepState.FAILED
            outcome.error = str(exc)
            _log.warning('step_failed task_id=%s step=%s error=%s', task_id, index, exc)
            await self.repository.append_log(task_id, f'Step {index} failed: {exc}')
            return outcome
        step.state = StepState.COMPLETED
        outcome.state = StepState.COMPLETED
        await self.repository.append_log(task_id, f'Step {index} completed')
        return outcome

    async def _implement_file(
        self,
        task: dict,
        step: PlanStep,
        role: SpecialistRole,
        path: str,
        outcome: StepOutcome,
        *,
        write_files: bool,
    ) -> None:
        current = await self.files.read_text(path) if self.files.exists(path) else None
        prompt = render_prompt(
            IMPLEMENTATION_PROMPT,
            {
                'system_prompt': role.system_prompt,
                'title': task.get('title'),
                'description': task.get('description'),
                'step': step.description,
                'details': '\n'.join(step.details),
                'path': path,
                'file_state': current_file_block(current),
            },
        )
        result = await complete_with_timeout(
            self.completion,
            CompletionRequest(
                prompt=prompt,
                purpose=PURPOSE_IMPLEMENTATION,
                provider=role.provider,
                model=role.model,
                temperature=role.temperature,
                max_tokens=4000,
            ),
            timeout_seconds=self.completion_timeout_seconds,
        )
        content = unwrap_code(result.output)
        if write_files:
            await self.files.write_text(path, content)
            outcome.files_modified.append(self.files.relative(path))
            await self.repository.append_log(task['id'], f'{"Created" if current is None else "Updated"} {path}')
        else:
            outcome.files_proposed.append(path)
        recorded = await self.recorder.record(
            role=role.name,
            task_id=task['id'],
            kind=KnowledgeType.IMPLEMENTATION,
            content=content,
            extra={'filepath': path, 'title': step.description},
        )
        if not recorded.ok:
            await self.repository.append_log(
                task['id'],
                f'Warning: could not record implementation of {path}: {recorded.message}',
            )
