from __future__ import annotations

from taskforge.domain.models import ValidationVerdict
from taskforge.plan_parsing import (
    branch_name_for,
    extract_code_block,
    extract_file_refs,
    extract_pr_title,
    extract_relevant_paths,
    parse_plan,
    parse_validation,
    unwrap_code,
)
from taskforge.roles import RoleRegistry, resolve_role

PLAN_TEXT = """
## Overview
Add a health endpoint and document it.

## Implementation Steps
1. Add the health route to the server in src/server/routes.py
   - Return {"ok": true}
   - Also touch src/server/app.py
2. **Document the endpoint in docs/HEALTH.md**
3. Refactor shared helper functions

## Testing
Call the endpoint with curl.

## Risks
- Route collision
* Missing auth
"""


def test_extract_code_block_returns_none_without_fence() -> None:
    assert extract_code_block('no fences here') is None
    assert extract_code_block('```py\nx = 1\n```') == 'x = 1'


def test_unwrap_code_prefers_first_fence_and_adds_newline() -> None:
    text = 'Here you go:\n```python\nprint(1)\n```\nand\n```\nother\n```'

    assert unwrap_code(text) == 'print(1)\n'
    assert unwrap_code('plain text') == 'plain text'


def test_extract_file_refs_normalizes_and_skips_parent_escapes() -> None:
    text = 'Edit ./src/a.py, /docs/readme.md and ../secret.py; see https://x.test/page.html too. Also src/a.py again.'

    refs = extract_file_refs(text)

    assert refs[:2] == ['src/a.py', 'docs/readme.md']
    assert '../secret.py' not in refs and 'secret.py' not in refs


def test_extract_relevant_paths_defaults_to_src() -> None:
    assert extract_relevant_paths('nothing useful').directories == ['src']

    found = extract_relevant_paths('Look in src/server/ and tests/ plus src/server/app.py')
    assert found.directories == ['src/server', 'tests']
    assert found.files == ['src/server/app.py']


def test_parse_plan_sections_steps_and_roles() -> None:
    plan = parse_plan(PLAN_TEXT)

    assert plan.overview == 'Add a health endpoint and document it.'
    assert plan.testing == 'Call the endpoint with curl.'
    assert plan.risks == ['Route collision', 'Missing auth']
    assert [step.description for step in plan.steps] == [
        'Add the health route to the server in src/server/routes.py',
        'Document the endpoint in docs/HEALTH.md',
        'Refactor shared helper functions',
    ]
    first, second, third = plan.steps
    assert first.files == ['src/server/routes.py', 'src/server/app.py']
    assert first.details == ['- Return {"ok": true}', '- Also touch src/server/app.py']
    assert first.role == 'Server'
    assert second.files == ['docs/HEALTH.md']
    assert second.role == 'Docs'
    assert third.files == []
    assert third.role == 'Utils'


def test_parse_plan_accepts_bare_uppercase_headers() -> None:
    plan = parse_plan('OVERVIEW:\nTiny.\nIMPLEMENTATION STEPS:\n1) Bump the package version in pyproject.toml\nRISKS:\nnone\n')

    assert plan.overview == 'Tiny.'
    assert plan.steps[0].files == ['pyproject.toml']
    assert plan.steps[0].role == 'Version'
    assert plan.risks == ['none']


def test_parse_plan_without_sections_is_empty() -> None:
    plan = parse_plan('I could not produce a plan.')

    assert plan.steps == []
    assert plan.overview == ''


def test_parse_validation_prefers_overall_line() -> None:
    text = (
        '1. Correctness: the fix looks like a pass\n'
        '**Issues Found:**\n'
        '- Missing null check\n'
        '- Typo in log message\n'
        '**Suggestions:**\n'
        '- Add a regression test\n'
        '**Overall Assessment:** Fail\n'
    )

    summary = parse_validation(text)

    assert summary.verdict is ValidationVerdict.FAIL
    assert not summary.passed
    assert summary.issues == ['Missing null check', 'Typo in log message']
    assert summary.suggestions == ['Add a regression test']


def test_parse_validation_needs_improvement_and_default() -> None:
    assert parse_validation('Overall: Needs Improvement before passing').verdict is ValidationVerdict.NEEDS_IMPROVEMENT
    assert parse_validation('Overall Assessment:\n\nPass').verdict is ValidationVerdict.PASS
    assert parse_validation('looks fine to me').verdict is ValidationVerdict.NEEDS_IMPROVEMENT


def test_pr_title_and_branch_name() -> None:
    assert extract_pr_title('intro\n# Add health endpoint\nbody', fallback='x') == 'Add health endpoint'
    assert extract_pr_title('## Only a subheading', fallback='Fallback title') == 'Fallback title'
    assert branch_name_for('task-1', 'Fix: the *Login* page crash on Safari 17!') == 'task/task-1_fix-the-login-page-crash-on-sa'
    assert branch_name_for('task-2', None) == 'task/task-2_implementation'


def test_role_resolution_uses_keyword_priority_and_whole_words() -> None:
    assert resolve_role('Render the client view') == 'Browser'
    assert resolve_role('Open a PR for the change') == 'Git'
    assert resolve_role('Improve the product page') == 'Developer'
    assert resolve_role('Update API typings') == 'Server'

    registry = RoleRegistry()
    assert registry.get('Nobody').name == 'Developer'
    assert registry.for_step('write unit tests').name == 'Validator'
    assert 'agent_Admin' in registry.collections()
    assert len(registry.names()) == 16
