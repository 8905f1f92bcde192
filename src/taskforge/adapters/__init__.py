from __future__ import annotations

from taskforge.adapters.base import (
    DEFAULT_PROVIDER,
    DEFAULT_PROVIDER_REGISTRY,
    PURPOSE_ANALYSIS,
    PURPOSE_IMPLEMENTATION,
    PURPOSE_PLAN,
    PURPOSE_PULL_REQUEST,
    PURPOSE_VALIDATION,
    CompletionClient,
    CompletionRequest,
    CompletionResult,
    build_argv,
    complete_with_timeout,
    has_model_flag,
    split_extra_args,
)
from taskforge.adapters.runner import CommandCompletionRunner

__all__ = [
    'CommandCompletionRunner',
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
