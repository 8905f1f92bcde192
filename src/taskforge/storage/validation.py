from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
import logging
import re

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from taskforge.domain.knowledge import PIPELINE_KNOWLEDGE_TYPES

_log = logging.getLogger(__name__)

ALLOWED_METADATA_FIELDS = (
    'title',
    'type',
    'timestamp',
    'tags',
    'source',
    'author',
    'version',
    'priority',
    'status',
    'category',
    'related',
    'filepath',
    'language',
    'dependencies',
    'task_id',
    'confidence',
)

DOCUMENT_TYPES: dict[str, tuple[str, ...]] = {
    'documentation': ('title',),
    'code-knowledge': ('title', 'filepath'),
    'architecture': ('title',),
    'tutorial': ('title',),
    'api-reference': ('title',),
    'best-practice': ('title',),
    'pattern': ('title',),
    'task': ('task_id',),
    'system-knowledge': (),
    'agent-reflection': ('author',),
    'error-knowledge': ('title',),
    **{kind.value: ('task_id',) for kind in PIPELINE_KNOWLEDGE_TYPES},
}

DEFAULT_DOCUMENT_TYPE = 'documentation'
MAX_DOCUMENT_LENGTH = 1_000_000
MIN_DOCUMENT_LENGTH = 10

TECHNICAL_TERMS = (
    'python',
    'javascript',
    'typescript',
    'react',
    'node',
    'api',
    'component',
    'server',
    'client',
    'database',
    'function',
    'module',
    'class',
    'interface',
    'event',
    'template',
    'style',
    'layout',
    'controller',
    'model',
    'view',
    'router',
    'state',
    'hook',
    'middleware',
    'plugin',
    'render',
    'test',
    'config',
)
_TAGGED_EXTENSIONS = frozenset({'py', 'js', 'ts', 'jsx', 'tsx', 'vue', 'svelte', 'md', 'json'})
_TERM_PATTERNS = {term: re.compile(rf'\b{re.escape(term)}\b', re.IGNORECASE) for term in TECHNICAL_TERMS}


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _split_csv(value):
    if isinstance(value, str):
        return [item.strip() for item in value.split(',') if item.strip()]
    return value


class KnowledgeMetadata(BaseModel):
    """Allow-listed document metadata; unknown keys are ignored on parse."""

    model_config = ConfigDict(extra='ignore')

    title: str | None = None
    type: str = DEFAULT_DOCUMENT_TYPE
    timestamp: str = Field(default_factory=_utc_now_iso)
    tags: list[str] = Field(default_factory=list)
    source: str | None = None
    author: str | None = None
    version: str | None = None
    priority: int | None = Field(default=None, ge=1, le=5)
    status: str | None = None
    category: str | None = None
    related: list[str] | None = None
    filepath: str | None = None
    language: str | None = None
    dependencies: list[str] | None = None
    task_id: str | None = None
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)

    @field_validator('tags', mode='before')
    @classmethod
    def _split_tags(cls, value):
        if value is None:
            return []
        return _split_csv(value)

    @field_validator('dependencies', mode='before')
    @classmethod
    def _split_dependencies(cls, value):
        return _split_csv(value)

    @field_validator('type', mode='before')
    @classmethod
    def _default_type(cls, value):
        text = str(value or '').strip()
        return text or DEFAULT_DOCUMENT_TYPE

    @field_validator('timestamp', mode='before')
    @classmethod
    def _default_timestamp(cls, value):
        if isinstance(value, datetime):
            return value.isoformat()
        text = str(value or '').strip()
        return text or _utc_now_iso()

    @field_validator('task_id', 'version', mode='before')
    @classmethod
    def _coerce_text(cls, value):
        if value is None or isinstance(value, str):
            return value
        if isinstance(value, (int, float)):
            return str(value)
        return value


@dataclass(frozen=True)
class ValidationOutcome:
    ok: bool
    errors: list[str] = field(default_factory=list)
    document: dict | None = None
    dropped_fields: list[str] = field(default_factory=list)


def _format_pydantic_errors(exc: ValidationError) -> list[str]:
    out: list[str] = []
    for item in exc.errors():
        loc = '.'.join(str(part) for part in item.get('loc', ()))
        out.append(f"metadata.{loc}: {item.get('msg', 'invalid value')}")
    return out


def _normalize_content(raw) -> tuple[str | None, list[str]]:
    if raw is None or raw == '':
        return None, ['Document content is required (either document or content field)']
    if isinstance(raw, str):
        text = raw
    else:
        try:
            text = json.dumps(raw, ensure_ascii=False)
        except (TypeError, ValueError):
            return None, ['Invalid document content structure']
    errors: list[str] = []
    if len(text) > MAX_DOCUMENT_LENGTH:
        errors.append(f'Document content exceeds maximum length of {MAX_DOCUMENT_LENGTH} characters')
    if len(text) < MIN_DOCUMENT_LENGTH:
        errors.append(f'Document content is too short (minimum {MIN_DOCUMENT_LENGTH} characters)')
    return text, errors


def validate_document(doc) -> ValidationOutcome:
    """Validate and sanitize a ``{document|content, metadata}`` mapping.

    Returns a new normalized document; the input is never mutated.
    """
    if not doc:
        return ValidationOutcome(ok=False, errors=['Document is required'])
    if not isinstance(doc, dict):
        return ValidationOutcome(ok=False, errors=['Document must be an object'])

    raw_content = doc.get('document')
    if raw_content is None or raw_content == '':
        raw_content = doc.get('content')
    content, errors = _normalize_content(raw_content)

    raw_metadata = doc.get('metadata')
    if raw_metadata is None:
        raw_metadata = {}
    if not isinstance(raw_metadata, dict):
        errors.append('Metadata must be an object')
        return ValidationOutcome(ok=False, errors=errors)

    dropped = sorted(str(key) for key in raw_metadata if key not in ALLOWED_METADATA_FIELDS)
    if dropped:
        _log.debug('metadata_fields_dropped fields=%s', ','.join(dropped))

    try:
        metadata = KnowledgeMetadata.model_validate(raw_metadata)
    except ValidationError as exc:
        errors.extend(_format_pydantic_errors(exc))
        return ValidationOutcome(ok=False, errors=errors, dropped_fields=dropped)

    required = DOCUMENT_TYPES.get(metadata.type)
    if required is None:
        errors.append(
            f"Unknown document type: {metadata.type}. Allowed types: {', '.join(DOCUMENT_TYPES)}"
        )
    else:
        for name in required:
            if not getattr(metadata, name):
                errors.append(f"Field '{name}' is required for document type '{metadata.type}'")

    if errors:
        return ValidationOutcome(ok=False, errors=errors, dropped_fields=dropped)
    return ValidationOutcome(
        ok=True,
        document={'document': content, 'metadata': metadata.model_dump(exclude_none=True)},
        dropped_fields=dropped,
    )


def generate_tags(document: dict) -> list[str]:
    content = str(document.get('document') or '')
    metadata = dict(document.get('metadata') or {})
    found: list[str] = list(metadata.get('tags') or [])

    def add(tag: str) -> None:
        if tag and tag not in found:
            found.append(tag)

    for term, pattern in _TERM_PATTERNS.items():
        if pattern.search(content):
            add(term)
    add(str(metadata.get('type') or ''))

    filepath = str(metadata.get('filepath') or '').replace('\\', '/')
    if filepath:
        for part in filepath.split('/'):
            if part and '.' not in part and len(part) > 3:
                add(part)
        name = filepath.rsplit('/', 1)[-1]
        if '.' in name:
            extension = name.rsplit('.', 1)[-1].lower()
            if extension in _TAGGED_EXTENSIONS:
                add(extension)
    return found


def process_document(doc) -> ValidationOutcome:
    """Validation, sanitization and auto-tagging in one pass."""
    outcome = validate_document(doc)
    if not outcome.ok or outcome.document is None:
        return outcome
    document = outcome.document
    document['metadata']['tags'] = generate_tags(document)
    return ValidationOutcome(ok=True, document=document, dropped_fields=outcome.dropped_fields)
