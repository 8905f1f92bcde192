from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

from taskforge.errors import TaskRunningError


@dataclass
class RunRecord:
    task_id: str
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    cancel_requested: bool = False


class RunRegistry:
    """In-flight task ids for one process.

    ``claim`` and ``release`` never await, so a claim cannot interleave with
    another claim for the same id on the same event loop.
    """

    def __init__(self):
        self._runs: dict[str, RunRecord] = {}

    def claim(self, task_id: str) -> RunRecord:
        if task_id in self._runs:
            raise TaskRunningError(f'Task {task_id} is already running', details={'task_id': task_id})
        record = RunRecord(task_id=task_id)
        self._runs[task_id] = record
        return record

    def release(self, task_id: str) -> bool:
        return self._runs.pop(task_id, None) is not None

    def is_running(self, task_id: str) -> bool:
        return task_id in self._runs

    def get(self, task_id: str) -> RunRecord | None:
        return self._runs.get(task_id)

    def request_cancel(self, task_id: str) -> bool:
        record = self._runs.get(task_id)
        if record is None:
            return False
        record.cancel_requested = True
        return True

    def is_cancel_requested(self, task_id: str) -> bool:
        record = self._runs.get(task_id)
        return bool(record and record.cancel_requested)

    def running_ids(self) -> list[str]:
        return list(self._runs)
