from __future__ import annotations

import asyncio
import logging
from pathlib import Path
import random
import shutil
import time

from taskforge.adapters.base import (
    DEFAULT_PROVIDER,
    DEFAULT_PROVIDER_REGISTRY,
    PURPOSE_ANALYSIS,
    PURPOSE_IMPLEMENTATION,
    PURPOSE_PLAN,
    PURPOSE_PULL_REQUEST,
    PURPOSE_VALIDATION,
    CompletionRequest,
    CompletionResult,
    build_argv,
)
from taskforge.errors import CompletionError

_log = logging.getLogger(__name__)

_LIMIT_PATTERNS = (
    'hit your limit',
    'usage limit',
    'rate limit',
    'ratelimitexceeded',
    'resource_exhausted',
    'quota exceeded',
    'insufficient_quota',
)
_MIN_ATTEMPT_TIMEOUT_SECONDS = 0.05
_RETRY_PROMPT_CHARS = 1200

_DRY_RUN_OUTPUTS = {
    PURPOSE_ANALYSIS: (
        'Task analysis (dry run)\n\n'
        'Relevant paths:\n'
        '- docs/\n\n'
        'The change is small and can be handled by a single specialist.'
    ),
    PURPOSE_PLAN: (
        '# OVERVIEW\n'
        'Record the requested change in the project notes.\n\n'
        '# IMPLEMENTATION STEPS\n'
        '1. Update the project notes document\n'
        '   - docs/TASK_NOTES.md\n'
        '   Append a short summary of the task.\n\n'
        '# TESTING\n'
        'Review the generated notes.\n\n'
        '# RISKS\n'
        '- None identified'
    ),
    PURPOSE_IMPLEMENTATION: '```markdown\n# Task notes\n\nGenerated during a dry run.\n```',
    PURPOSE_VALIDATION: (
        'Overall Assessment: Pass\n\n'
        'Issues:\n'
        '- None\n\n'
        'Suggestions:\n'
        '- None'
    ),
    PURPOSE_PULL_REQUEST: '# Update project notes\n\nGenerated during a dry run.',
}


class CommandCompletionRunner:
    """Completion capability backed by a provider command line tool.

    The prompt goes to the tool on stdin and stdout is the completion. Timed
    out attempts are retried with a clipped prompt inside the same overall
    time budget.
    """

    def __init__(
        self,
        *,
        command_overrides: dict[str, str] | None = None,
        default_provider: str = DEFAULT_PROVIDER,
        default_model: str | None = None,
        default_timeout_seconds: float = 120.0,
        dry_run: bool = False,
        timeout_retries: int = 1,
        cwd: Path | None = None,
    ):
        self.provider_registry = {
            provider: {
                'command': str(spec.get('command') or '').strip(),
                'model_flag': str(spec.get('model_flag') or '').strip(),
            }
            for provider, spec in DEFAULT_PROVIDER_REGISTRY.items()
        }
        for raw_provider, raw_command in (command_overrides or {}).items():
            provider = str(raw_provider or '').strip().lower()
            command = str(raw_command or '').strip()
            if not provider or not command:
                continue
            existing = dict(self.provider_registry.get(provider) or {'model_flag': '-m'})
            existing['command'] = command
            self.provider_registry[provider] = existing
        self.default_provider = str(default_provider or DEFAULT_PROVIDER).strip().lower()
        self.default_model = default_model
        self.default_timeout_seconds = max(_MIN_ATTEMPT_TIMEOUT_SECONDS, float(default_timeout_seconds))
        self.dry_run = dry_run
        self.timeout_retries = max(0, int(timeout_retries))
        self.cwd = Path(cwd) if cwd else None

    @property
    def providers(self) -> list[str]:
        return sorted(p for p, spec in self.provider_registry.items() if spec.get('command'))

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        provider = str(request.provider or self.default_provider).strip().lower()
        model = request.model or self.default_model
        if self.dry_run:
            await asyncio.sleep(0)
            return CompletionResult(
                output=_DRY_RUN_OUTPUTS.get(request.purpose, f'[dry-run provider={provider}] {request.purpose}'),
                provider=provider,
                model=model,
                returncode=0,
                duration_seconds=0.0,
            )

        spec = self.provider_registry.get(provider) or {}
        command = str(spec.get('command') or '').strip()
        if not command:
            raise CompletionError(f'command_not_configured provider={provider}', details={'provider': provider})

        argv = self._resolve_executable(
            build_argv(command=command, model=model, model_flag=spec.get('model_flag'))
        )
        effective_command = self._format_command(argv)
        timeout_seconds = float(request.timeout_seconds or self.default_timeout_seconds)
        attempts = self.timeout_retries + 1
        started = time.monotonic()
        deadline = started + max(_MIN_ATTEMPT_TIMEOUT_SECONDS, timeout_seconds)
        current_prompt = request.prompt
        completed: tuple[int, str, str] | None = None
        attempts_made = 0

        for attempt in range(1, attempts + 1):
            remaining = max(0.0, deadline - time.monotonic())
            if remaining <= 0:
                break
            attempt_timeout = self._compute_attempt_timeout_seconds(
                remaining_budget=remaining,
                attempts_left=attempts - attempt + 1,
            )
            attempts_made += 1
            try:
                completed = await self._run_once(argv, current_prompt, timeout_seconds=attempt_timeout)
                break
            except FileNotFoundError as exc:
                raise CompletionError(
                    f'command_not_found provider={provider} command={effective_command}',
                    details={'provider': provider},
                ) from exc
            except asyncio.TimeoutError:
                _log.warning('completion_timeout provider=%s attempt=%s/%s', provider, attempt, attempts)
                if attempt >= attempts:
                    break
                current_prompt = self._clip_prompt_for_retry(current_prompt)
                await asyncio.sleep(self._timeout_retry_backoff_seconds(attempt=attempt))

        elapsed = time.monotonic() - started
        if completed is None:
            raise CompletionError(
                f'command_timeout provider={provider} timeout_seconds={timeout_seconds} attempts_made={attempts_made}',
                details={'provider': provider, 'attempts': attempts_made},
            )

        returncode, stdout, stderr = completed
        output = stdout.strip()
        if returncode != 0:
            output = '\n'.join(part for part in [output, stderr.strip()] if part).strip()
        if self._is_provider_limit_output(output):
            raise CompletionError(f'provider_limit provider={provider}', details={'provider': provider})
        if returncode != 0:
            raise CompletionError(
                f'command_failed provider={provider} returncode={returncode}',
                details={'provider': provider, 'returncode': returncode, 'output': output[-2000:]},
            )
        _log.debug('completion_ok provider=%s purpose=%s seconds=%.2f', provider, request.purpose, elapsed)
        return CompletionResult(
            output=output,
            provider=provider,
            model=model,
            returncode=returncode,
            duration_seconds=elapsed,
        )

    async def _run_once(self, argv: list[str], prompt: str, *, timeout_seconds: float) -> tuple[int, str, str]:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=(str(self.cwd) if self.cwd else None),
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(prompt.encode('utf-8')),
                timeout=timeout_seconds,
            )
        except (asyncio.TimeoutError, asyncio.CancelledError):
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise
        return (
            int(process.returncode or 0),
            stdout.decode('utf-8', errors='replace'),
            stderr.decode('utf-8', errors='replace'),
        )

    @staticmethod
    def _compute_attempt_timeout_seconds(*, remaining_budget: float, attempts_left: int) -> float:
        budget = max(0.0, float(remaining_budget))
        left = max(1, int(attempts_left))
        if budget <= 0:
            return 0.0
        requested = max(min(_MIN_ATTEMPT_TIMEOUT_SECONDS, budget), budget / left)
        return min(budget, requested)

    @staticmethod
    def _timeout_retry_backoff_seconds(*, attempt: int) -> float:
        base_delay = min(0.5, 0.15 * max(1, int(attempt)))
        return min(0.75, base_delay + random.uniform(0.0, 0.1))

    @staticmethod
    def _clip_prompt_for_retry(prompt: str) -> str:
        text = prompt or ''
        if len(text) <= _RETRY_PROMPT_CHARS:
            return text
        dropped = len(text) - _RETRY_PROMPT_CHARS
        return text[:_RETRY_PROMPT_CHARS] + f'\n\n[retry prompt clipped: {dropped} chars removed]'

    @staticmethod
    def _is_provider_limit_output(output: str) -> bool:
        text = (output or '').strip().lower()
        return bool(text) and any(pattern in text for pattern in _LIMIT_PATTERNS)

    @staticmethod
    def _resolve_executable(argv: list[str]) -> list[str]:
        if not argv:
            return argv
        resolved = shutil.which(str(argv[0]).strip())
        if not resolved:
            return argv
        return [resolved, *argv[1:]]

    @staticmethod
    def _format_command(argv: list[str]) -> str:
        return ' '.join(str(value) for value in argv)


__all__ = ['CommandCompletionRunner']
