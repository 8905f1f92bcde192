"""Heuristic parsers for free-text completion output.

None of these raise on unexpected input; a parser that finds nothing returns
``None`` or an empty structure and the caller decides what that means.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import re

from taskforge.domain.models import Plan, PlanStep, ValidationVerdict
from taskforge.roles import resolve_role

_FENCE_RE = re.compile(r'```[ \t]*[A-Za-z0-9_+.-]*[ \t]*\r?\n(.*?)\r?\n?```', re.DOTALL)
_FILE_EXTENSIONS = (
    'py', 'pyi', 'toml', 'cfg', 'ini', 'js', 'jsx', 'ts', 'tsx', 'md', 'json',
    'html', 'css', 'scss', 'yml', 'yaml', 'txt', 'vue', 'svelte',
)
_FILE_REF_RE = re.compile(
    r'(?<![\w/.:-])(/?(?:[A-Za-z0-9_.-]+/)*[A-Za-z0-9_-][A-Za-z0-9_.-]*\.(?:' + '|'.join(_FILE_EXTENSIONS) + r'))(?![\w/])'
)
_DIR_REF_RE = re.compile(r'(?<![\w/.:-])(/?(?:[A-Za-z0-9_-]+/)+)(?![\w.])')
_STEP_RE = re.compile(r'^\s*(?:\*\*)?(\d+)[.)]\s+(?:\*\*)?(.*?)(?:\*\*)?\s*$')
_MD_HEADING_RE = re.compile(r'^\s*#{1,6}\s+(.+?)\s*#*\s*$')
_BARE_HEADING_RE = re.compile(r'^\s*(?:\*\*)?([A-Z][A-Z /&-]{2,})(?:\*\*)?:?\s*$')
_PR_TITLE_RE = re.compile(r'^#\s+(.+?)\s*$', re.MULTILINE)
_BULLET_RE = re.compile(r'^\s*[-*]\s+(.*)$')
_VERDICT_LINE_RE = re.compile(r'(?:overall assessment|overall|verdict|assessment)\s*[:\-]?\s*(.*)$', re.IGNORECASE)

DEFAULT_CONTEXT_DIRECTORIES = ('src',)


def extract_code_block(text: str) -> str | None:
    match = _FENCE_RE.search(str(text or ''))
    if not match:
        return None
    return match.group(1)


def unwrap_code(text: str) -> str:
    """Return the first fenced block's body, or the text unchanged."""
    block = extract_code_block(text)
    if block is None:
        return str(text or '')
    return block if block.endswith('\n') else block + '\n'


@dataclass(frozen=True)
class RelevantPaths:
    directories: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)


def _normalize_ref(value: str) -> str:
    text = value.strip().lstrip('/')
    while text.startswith('./'):
        text = text[2:]
    return text.rstrip('/')


def extract_file_refs(text: str) -> list[str]:
    found: list[str] = []
    for match in _FILE_REF_RE.finditer(str(text or '')):
        ref = _normalize_ref(match.group(1))
        if ref and '..' not in ref.split('/') and ref not in found:
            found.append(ref)
    return found


def extract_relevant_paths(analysis: str, *, default_directories=DEFAULT_CONTEXT_DIRECTORIES) -> RelevantPaths:
    text = str(analysis or '')
    files = extract_file_refs(text)
    directories: list[str] = []
    for match in _DIR_REF_RE.finditer(text):
        ref = _normalize_ref(match.group(1))
        if ref and '..' not in ref.split('/') and ref not in directories:
            directories.append(ref)
    if not directories:
        directories = list(default_directories)
    return RelevantPaths(directories=directories, files=files)


def _heading_of(line: str) -> str | None:
    match = _MD_HEADING_RE.match(line)
    if match:
        return match.group(1).strip().strip('*').strip()
    match = _BARE_HEADING_RE.match(line)
    if match:
        return match.group(1).strip()
    return None


def _section_kind(heading: str) -> str | None:
    lowered = heading.lower()
    if 'overview' in lowered or 'approach' in lowered:
        return 'overview'
    if 'implementation' in lowered or 'steps' in lowered:
        return 'steps'
    if 'test' in lowered or 'validation' in lowered:
        return 'testing'
    if 'risk' in lowered or 'edge' in lowered:
        return 'risks'
    return None


def _split_sections(text: str) -> dict[str, list[str]]:
    sections: dict[str, list[str]] = {}
    current: str | None = None
    for line in str(text or '').splitlines():
        heading = _heading_of(line)
        if heading is not None:
            kind = _section_kind(heading)
            if kind is not None:
                current = kind
                sections.setdefault(current, [])
                continue
        if current is not None:
            sections[current].append(line)
    return sections


def _parse_steps(lines: list[str]) -> list[PlanStep]:
    steps: list[PlanStep] = []
    current: PlanStep | None = None
    for line in lines:
        match = _STEP_RE.match(line)
        if match:
            description = match.group(2).strip()
            current = PlanStep(
                description=description,
                files=extract_file_refs(description),
                role=resolve_role(description),
            )
            steps.append(current)
            continue
        if current is None or not line.strip():
            continue
        refs = extract_file_refs(line)
        if refs:
            for ref in refs:
                if ref not in current.files:
                    current.files.append(ref)
            remainder = _FILE_REF_RE.sub('', line).strip(' -*`:\t')
            if remainder:
                current.details.append(line.strip())
            continue
        current.details.append(line.strip())
    return steps


def parse_plan(text: str) -> Plan:
    sections = _split_sections(text)
    risks = []
    for line in sections.get('risks', []):
        item = line.strip()
        if not item:
            continue
        bullet = _BULLET_RE.match(item)
        risks.append(bullet.group(1).strip() if bullet else item)
    return Plan(
        overview='\n'.join(sections.get('overview', [])).strip(),
        steps=_parse_steps(sections.get('steps', [])),
        testing='\n'.join(sections.get('testing', [])).strip(),
        risks=risks,
    )


@dataclass(frozen=True)
class ValidationSummary:
    verdict: ValidationVerdict = ValidationVerdict.NEEDS_IMPROVEMENT
    issues: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.verdict is ValidationVerdict.PASS

    def to_dict(self) -> dict:
        return {
            'verdict': self.verdict.value,
            'issues': list(self.issues),
            'suggestions': list(self.suggestions),
        }


def _strip_marks(line: str) -> str:
    return line.strip().lstrip('#').strip().strip('*').strip()


def _bullets_after(lines: list[str], headers: tuple[str, ...]) -> list[str]:
    items: list[str] = []
    collecting = False
    for line in lines:
        bare = _strip_marks(line)
        lowered = re.sub(r'^\d+[.)]\s*', '', bare).lower()
        if any(lowered.startswith(header) for header in headers):
            collecting = True
            continue
        if not collecting:
            continue
        if not line.strip():
            continue
        bullet = _BULLET_RE.match(line)
        if bullet is None:
            if items or _heading_of(line) is not None or bare.endswith(':'):
                break
            continue
        item = bullet.group(1).strip()
        if item and item.lower().rstrip('.') not in {'none', 'n/a'}:
            items.append(item)
    return items


def _classify_verdict(text: str) -> ValidationVerdict:
    lowered = text.lower()
    if 'needs improvement' in lowered:
        return ValidationVerdict.NEEDS_IMPROVEMENT
    if 'pass' in lowered or 'successful' in lowered or 'approve' in lowered:
        return ValidationVerdict.PASS
    if 'fail' in lowered or 'reject' in lowered:
        return ValidationVerdict.FAIL
    return ValidationVerdict.NEEDS_IMPROVEMENT


def parse_validation(text: str) -> ValidationSummary:
    lines = str(text or '').splitlines()
    verdict = ValidationVerdict.NEEDS_IMPROVEMENT
    for index, line in enumerate(lines):
        bare = re.sub(r'^\d+[.)]\s*', '', _strip_marks(line))
        match = _VERDICT_LINE_RE.match(bare)
        if not match:
            continue
        rest = match.group(1).strip()
        if not rest:
            following = [item for item in lines[index + 1:] if item.strip()]
            rest = following[0] if following else ''
        if rest:
            verdict = _classify_verdict(rest)
        if bare.lower().startswith('overall'):
            break
    return ValidationSummary(
        verdict=verdict,
        issues=_bullets_after(lines, ('issues found', 'issues', 'problems')),
        suggestions=_bullets_after(lines, ('suggestions', 'improvements', 'recommendations')),
    )


def extract_pr_title(text: str, *, fallback: str) -> str:
    match = _PR_TITLE_RE.search(str(text or ''))
    if match and match.group(1).strip():
        return match.group(1).strip()
    return fallback


def branch_name_for(task_id: str, title: str | None) -> str:
    slug = re.sub(r'[^a-z0-9]+', '-', str(title or '').lower())[:30].strip('-')
    return f'task/{task_id}_{slug or "implementation"}'
