from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class TaskStatus(str, Enum):
    SUBMITTED = 'submitted'
    ANALYZING = 'analyzing'
    PLANNING = 'planning'
    EXECUTING = 'executing'
    VALIDATING = 'validating'
    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


PIPELINE_ORDER: tuple[TaskStatus, ...] = (
    TaskStatus.SUBMITTED,
    TaskStatus.ANALYZING,
    TaskStatus.PLANNING,
    TaskStatus.EXECUTING,
    TaskStatus.VALIDATING,
    TaskStatus.COMPLETED,
)

TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})
_ESCAPE_STATUSES = frozenset({TaskStatus.FAILED, TaskStatus.CANCELLED})


def normalize_status(value: str | TaskStatus) -> TaskStatus:
    if isinstance(value, TaskStatus):
        return value
    return TaskStatus(str(value or '').strip().lower())


def can_transition(current: str | TaskStatus, target: str | TaskStatus) -> bool:
    """Status advances one step along PIPELINE_ORDER or escapes to failed/cancelled.

    Skipping a status is refused. Re-asserting the current non-terminal status
    is allowed (planning is shared by the BuildContext and Plan phases).
    """
    src = normalize_status(current)
    dst = normalize_status(target)
    if src in TERMINAL_STATUSES:
        return False
    if dst in _ESCAPE_STATUSES or dst is src:
        return True
    return PIPELINE_ORDER.index(dst) == PIPELINE_ORDER.index(src) + 1


class StepState(str, Enum):
    PENDING = 'pending'
    COMPLETED = 'completed'
    FAILED = 'failed'


class ValidationVerdict(str, Enum):
    PASS = 'Pass'
    FAIL = 'Fail'
    NEEDS_IMPROVEMENT = 'Needs Improvement'


@dataclass
class PlanStep:
    description: str
    files: list[str] = field(default_factory=list)
    role: str | None = None
    details: list[str] = field(default_factory=list)
    state: StepState = StepState.PENDING
    error: str | None = None

    @property
    def target_files(self) -> frozenset[str]:
        return frozenset(self.files)

    def to_dict(self) -> dict:
        return {
            'description': self.description,
            'files': list(self.files),
            'role': self.role,
            'details': list(self.details),
            'state': self.state.value,
            'error': self.error,
        }

    @classmethod
    def from_dict(cls, payload: dict) -> PlanStep:
        raw_state = str(payload.get('state') or StepState.PENDING.value)
        try:
            state = StepState(raw_state)
        except ValueError:
            state = StepState.PENDING
        return cls(
            description=str(payload.get('description') or ''),
            files=[str(v) for v in (payload.get('files') or [])],
            role=(str(payload['role']) if payload.get('role') else None),
            details=[str(v) for v in (payload.get('details') or [])],
            state=state,
            error=(str(payload['error']) if payload.get('error') else None),
        )


@dataclass
class Plan:
    overview: str = ''
    steps: list[PlanStep] = field(default_factory=list)
    testing: str = ''
    risks: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'overview': self.overview,
            'steps': [step.to_dict() for step in self.steps],
            'testing': self.testing,
            'risks': list(self.risks),
        }

    @classmethod
    def from_dict(cls, payload: dict | None) -> Plan:
        data = dict(payload or {})
        return cls(
            overview=str(data.get('overview') or ''),
            steps=[PlanStep.from_dict(item) for item in (data.get('steps') or []) if isinstance(item, dict)],
            testing=str(data.get('testing') or ''),
            risks=[str(v) for v in (data.get('risks') or [])] if not isinstance(data.get('risks'), str) else [data['risks']],
        )

    def disjoint_batches(self) -> list[list[PlanStep]]:
        """Group consecutive steps whose file sets do not overlap.

        Steps inside one batch could run concurrently without contending for
        the same file. Execution is sequential today; this is informational.
        """
        batches: list[list[PlanStep]] = []
        current: list[PlanStep] = []
        claimed: set[str] = set()
        for step in self.steps:
            files = step.target_files
            if current and (not files or claimed & files):
                batches.append(current)
                current = []
                claimed = set()
            current.append(step)
            claimed |= files
            if not files:
                batches.append(current)
                current = []
                claimed = set()
        if current:
            batches.append(current)
        return batches
