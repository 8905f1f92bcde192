from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    VALIDATION = 'VALIDATION'
    LOCK_TIMEOUT = 'LOCK_TIMEOUT'
    NOT_FOUND = 'NOT_FOUND'
    TASK_RUNNING = 'TASK_RUNNING'
    FILESYSTEM = 'FILESYSTEM'
    SECURITY = 'SECURITY'
    EXTERNAL = 'EXTERNAL'


class TaskforgeError(Exception):
    """Base error carrying a stable machine-readable code."""

    default_code = ErrorCode.EXTERNAL

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | None = None,
        details: dict | None = None,
    ):
        super().__init__(message)
        self.message = str(message)
        self.code = code or self.default_code
        self.details = dict(details or {})

    def to_dict(self) -> dict:
        payload = {'code': self.code.value, 'message': self.message}
        if self.details:
            payload['details'] = dict(self.details)
        return payload


class InputValidationError(TaskforgeError, ValueError):
    default_code = ErrorCode.VALIDATION

    def __init__(self, message: str, *, field: str | None = None, details: dict | None = None):
        merged = dict(details or {})
        if field:
            merged.setdefault('field', field)
        super().__init__(message, details=merged)
        self.field = field


class InvalidStateError(InputValidationError):
    pass


class LockTimeoutError(TaskforgeError):
    default_code = ErrorCode.LOCK_TIMEOUT


class NotFoundError(TaskforgeError, KeyError):
    default_code = ErrorCode.NOT_FOUND

    def __str__(self) -> str:
        return self.message


class TaskRunningError(TaskforgeError):
    default_code = ErrorCode.TASK_RUNNING


class FilesystemError(TaskforgeError):
    default_code = ErrorCode.FILESYSTEM


class SecurityError(TaskforgeError):
    default_code = ErrorCode.SECURITY


class ExternalError(TaskforgeError):
    default_code = ErrorCode.EXTERNAL


class CompletionError(ExternalError):
    pass


class VcsError(ExternalError):
    pass


__all__ = [
    'CompletionError',
    'ErrorCode',
    'ExternalError',
    'FilesystemError',
    'InputValidationError',
    'InvalidStateError',
    'LockTimeoutError',
    'NotFoundError',
    'SecurityError',
    'TaskRunningError',
    'TaskforgeError',
    'VcsError',
]
