from __future__ import annotations

from enum import Enum


class KnowledgeType(str, Enum):
    TASK = 'task'
    TASK_ANALYSIS = 'task_analysis'
    CODEBASE_CONTEXT = 'codebase_context'
    IMPLEMENTATION_PLAN = 'implementation_plan'
    IMPLEMENTATION = 'implementation'
    VALIDATION = 'validation'
    PULL_REQUEST = 'pull_request'


PIPELINE_KNOWLEDGE_TYPES = frozenset(
    {
        KnowledgeType.TASK_ANALYSIS,
        KnowledgeType.CODEBASE_CONTEXT,
        KnowledgeType.IMPLEMENTATION_PLAN,
        KnowledgeType.IMPLEMENTATION,
        KnowledgeType.VALIDATION,
        KnowledgeType.PULL_REQUEST,
    }
)


def normalize_knowledge_type(value: str | KnowledgeType) -> str:
    if isinstance(value, KnowledgeType):
        return value.value
    text = str(value or '').strip().lower().replace('-', '_')
    try:
        return KnowledgeType(text).value
    except ValueError:
        return str(value or '').strip()
