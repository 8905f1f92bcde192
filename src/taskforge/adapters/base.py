from __future__ import annotations

import asyncio
from dataclasses import dataclass
import shlex
from typing import Protocol

from taskforge.errors import CompletionError


@dataclass(frozen=True)
class CompletionRequest:
    prompt: str
    purpose: str = 'general'
    provider: str | None = None
    model: str | None = None
    temperature: float = 0.2
    max_tokens: int = 2000
    timeout_seconds: float | None = None


@dataclass(frozen=True)
class CompletionResult:
    output: str
    provider: str
    model: str | None
    returncode: int
    duration_seconds: float


class CompletionClient(Protocol):
    async def complete(self, request: CompletionRequest) -> CompletionResult:
        ...


PURPOSE_ANALYSIS = 'analysis'
PURPOSE_PLAN = 'plan'
PURPOSE_IMPLEMENTATION = 'implementation'
PURPOSE_VALIDATION = 'validation'
PURPOSE_PULL_REQUEST = 'pull_request'

DEFAULT_PROVIDER_REGISTRY = {
    'claude': {
        'command': 'claude -p',
        'model_flag': '--model',
    },
    'codex': {
        'command': 'codex exec --skip-git-repo-check',
        'model_flag': '-m',
    },
    'gemini': {
        'command': 'gemini',
        'model_flag': '-m',
    },
}

DEFAULT_PROVIDER = 'claude'


async def complete_with_timeout(
    client: CompletionClient,
    request: CompletionRequest,
    *,
    timeout_seconds: float,
) -> CompletionResult:
    """Bound a completion call; expiry surfaces as CompletionError."""
    try:
        return await asyncio.wait_for(client.complete(request), timeout=timeout_seconds)
    except asyncio.TimeoutError as exc:
        raise CompletionError(
            f'completion timed out after {timeout_seconds}s purpose={request.purpose}',
            details={'purpose': request.purpose, 'timeout_seconds': timeout_seconds},
        ) from exc


def split_extra_args(value: str | None) -> list[str]:
    text = str(value or '').strip()
    if not text:
        return []
    try:
        return [str(v) for v in shlex.split(text) if str(v).strip()]
    except ValueError:
        return [v for v in text.split() if v]


def has_model_flag(argv: list[str]) -> bool:
    for token in argv:
        text = str(token).strip()
        if text in {'--model', '-m'}:
            return True
        if text.startswith('--model='):
            return True
    return False


def build_argv(*, command: str, model: str | None, model_flag: str | None) -> list[str]:
    argv = split_extra_args(command)
    model_text = str(model or '').strip()
    flag = str(model_flag or '').strip()
    if model_text and flag and not has_model_flag(argv):
        argv.extend([flag, model_text])
    return argv


__all__ = [
    'CompletionClient',
    'CompletionRequest',
    'CompletionResult',
    'DEFAULT_PROVIDER',
    'DEFAULT_PROVIDER_REGISTRY',
    'PURPOSE_ANALYSIS',
    'PURPOSE_IMPLEMENTATION',
    'PURPOSE_PLAN',
    'PURPOSE_PULL_REQUEST',
    'PURPOSE_VALIDATION',
    'build_argv',
    'complete_with_timeout',
    'has_model_flag',
    'split_extra_args',
]
