from __future__ import annotations

from string import Template

ANALYSIS_PROMPT = Template(
    """$system_prompt

# Task
$title

$description

# Analysis Requirements
1. Explain in detail what the task is asking for.
2. List the directories and files that need to be examined, as repository-relative paths.
3. Name the specialists that should be involved:
$roster
4. Assess complexity and potential challenges.
5. Give an overall approach.

Your analysis:
"""
)

PLAN_PROMPT = Template(
    """$system_prompt

# Task
$title

$description

# Analysis
$analysis

# Codebase Context
$context

# Planning Requirements
Write a concrete implementation plan that specialists can execute step by step.
For every step, list the exact repository-relative file paths it touches.

Use these sections:
# OVERVIEW
# IMPLEMENTATION STEPS (numbered)
# TESTING
# RISKS

Your implementation plan:
"""
)

IMPLEMENTATION_PROMPT = Template(
    """$system_prompt

# Task
$title

$description

# Step
$step

$details

# File: $path
$file_state

Return the complete new content of $path in a single fenced code block.
"""
)

VALIDATION_PROMPT = Template(
    """$system_prompt

# Task
$title

$description

# Implementation Plan
$plan

# Step Results
$results

# Validation Requirements
Review the implementation and report:
- Issues: a bulleted list of problems found
- Suggestions: a bulleted list of improvements
- Overall Assessment: one of Pass, Fail or Needs Improvement

Your validation:
"""
)

PULL_REQUEST_PROMPT = Template(
    """$system_prompt

# Task
$title

$description

# Changed Files
$files

# Validation
$validation

Write a pull request description in GitHub markdown. Start with a single
"# " heading that is the pull request title, then summarize the changes,
testing performed and notes for reviewers.

Your pull request description:
"""
)

CREATE_FILE_MARKER = 'This file does not exist yet. Create it.'


def render_prompt(template: Template, fields: dict[str, object]) -> str:
    normalized = {str(k): ('' if v is None else str(v)) for k, v in fields.items()}
    return template.safe_substitute(normalized)


def current_file_block(content: str | None) -> str:
    if content is None:
        return CREATE_FILE_MARKER
    return f'Current content:\n```\n{content}\n```'
