from __future__ import annotations


class TaskSyncError(Exception):
    pass


class ValidationError(TaskSyncError, ValueError):
    """Rejected before any optimistic write; the store is untouched."""

    def __init__(self, message: str, *, field: str | None = None, code: str = 'validation_error'):
        super().__init__(message)
        self.message = message
        self.field = field
        self.code = code


class PersistenceError(TaskSyncError):
    """Remote write failed after the optimistic apply."""

    def __init__(self, message: str, *, task_id: str | None = None):
        super().__init__(message)
        self.message = message
        self.task_id = task_id


class PersistenceTimeoutError(PersistenceError):
    pass


def task_not_found(task_id: str) -> ValidationError:
    return ValidationError(f'task not found: {task_id}', field='task_id', code='task_not_found')
