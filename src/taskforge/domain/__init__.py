from taskforge.domain.knowledge import KnowledgeType, PIPELINE_KNOWLEDGE_TYPES, normalize_knowledge_type
from taskforge.domain.models import (
    PIPELINE_ORDER,
    TERMINAL_STATUSES,
    Plan,
    PlanStep,
    StepState,
    TaskStatus,
    ValidationVerdict,
    can_transition,
    normalize_status,
)

__all__ = [
    'KnowledgeType',
    'PIPELINE_KNOWLEDGE_TYPES',
    'PIPELINE_ORDER',
    'Plan',
    'PlanStep',
    'StepState',
    'TERMINAL_STATUSES',
    'TaskStatus',
    'ValidationVerdict',
    'can_transition',
    'normalize_knowledge_type',
    'normalize_status',
]
