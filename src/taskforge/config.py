from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path

from taskforge.adapters.base import DEFAULT_PROVIDER, DEFAULT_PROVIDER_REGISTRY
from taskforge.vcs import GITHUB_API_BASE


@dataclass(frozen=True)
class Settings:
    data_root: Path
    repository_root: Path
    service_name: str
    otel_endpoint: str | None
    dry_run: bool
    completion_provider: str
    completion_model: str | None
    completion_command: str | None
    completion_timeout_seconds: int
    completion_retries: int
    lock_timeout_ms: int
    github_token: str | None
    github_api_base: str
    pr_base_branch: str
    git_remote: str
    git_timeout_seconds: int
    context_file_limit: int


def _env_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = (os.getenv(name, '') or '').strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_text(name: str, default: str | None = None) -> str | None:
    value = (os.getenv(name, '') or '').strip()
    return value or default


def _env_flag(name: str) -> bool:
    return (os.getenv(name, '') or '').strip().lower() in {'1', 'true', 'yes', 'on'}


def load_settings() -> Settings:
    data_root = Path(_env_text('TASKFORGE_DATA_ROOT', '.taskforge')).resolve()
    repository_root = Path(_env_text('TASKFORGE_REPOSITORY_ROOT', str(Path.cwd()))).resolve()
    completion_provider = str(_env_text('TASKFORGE_COMPLETION_PROVIDER', DEFAULT_PROVIDER)).lower()
    if completion_provider not in DEFAULT_PROVIDER_REGISTRY:
        completion_provider = DEFAULT_PROVIDER
    return Settings(
        data_root=data_root,
        repository_root=repository_root,
        service_name=_env_text('TASKFORGE_SERVICE_NAME', 'taskforge'),
        otel_endpoint=_env_text('TASKFORGE_OTEL_EXPORTER_OTLP_ENDPOINT'),
        dry_run=_env_flag('TASKFORGE_DRY_RUN'),
        completion_provider=completion_provider,
        completion_model=_env_text('TASKFORGE_COMPLETION_MODEL'),
        completion_command=_env_text('TASKFORGE_COMPLETION_COMMAND'),
        completion_timeout_seconds=_env_int('TASKFORGE_COMPLETION_TIMEOUT_SECONDS', 120, minimum=5),
        completion_retries=_env_int('TASKFORGE_COMPLETION_RETRIES', 1, minimum=0),
        lock_timeout_ms=_env_int('TASKFORGE_LOCK_TIMEOUT_MS', 5000, minimum=1),
        github_token=_env_text('TASKFORGE_GITHUB_TOKEN') or _env_text('GITHUB_TOKEN'),
        github_api_base=_env_text('TASKFORGE_GITHUB_API_BASE', GITHUB_API_BASE),
        pr_base_branch=_env_text('TASKFORGE_PR_BASE_BRANCH', 'main'),
        git_remote=_env_text('TASKFORGE_GIT_REMOTE', 'origin'),
        git_timeout_seconds=_env_int('TASKFORGE_GIT_TIMEOUT_SECONDS', 60, minimum=1),
        context_file_limit=_env_int('TASKFORGE_CONTEXT_FILE_LIMIT', 20, minimum=0),
    )
