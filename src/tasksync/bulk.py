from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime

from tasksync.domain.models import Task, TaskPriority, TaskStatus
from tasksync.domain.patches import AssigneePatch, DueDatePatch, FieldPatch, PriorityPatch, StatusPatch
from tasksync.engine import MutationEngine, MutationHandle
from tasksync.errors import ValidationError
from tasksync.observability import get_logger

_log = get_logger('tasksync.bulk')

Operation = FieldPatch | Callable[[Task], FieldPatch]


@dataclass(frozen=True)
class BulkResult:
    succeeded: frozenset[str] = frozenset()
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict:
        return {'succeeded': sorted(self.succeeded), 'failed': dict(self.failed)}


def _unique(task_ids: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for task_id in task_ids:
        key = str(task_id or '').strip()
        if key:
            seen.setdefault(key, None)
    return list(seen)


class BulkOperationCoordinator:
    """One operation across many tasks, each settled on its own.

    A failure on one id never rolls back or blocks another; the result lists
    which ids committed and why the rest did not.
    """

    def __init__(self, engine: MutationEngine):
        self.engine = engine

    async def apply_to_set(self, task_ids: Iterable[str], operation: Operation, *, actor: str) -> BulkResult:
        """``operation`` is either one patch for every task or a callable building a patch per task."""
        ids = _unique(task_ids)
        failed: dict[str, str] = {}
        handles: dict[str, MutationHandle] = {}
        for task_id in ids:
            try:
                task = self.engine.store.require(task_id)
                patch = operation(task) if callable(operation) else operation
                handles[task_id] = self.engine.apply(task_id, patch, actor=actor)
            except ValidationError as exc:
                failed[task_id] = exc.message
        return await self._collect(handles, failed)

    async def delete(self, task_ids: Iterable[str], *, actor: str) -> BulkResult:
        failed: dict[str, str] = {}
        handles: dict[str, MutationHandle] = {}
        for task_id in _unique(task_ids):
            try:
                handles[task_id] = self.engine.delete(task_id, actor=actor)
            except ValidationError as exc:
                failed[task_id] = exc.message
        return await self._collect(handles, failed)

    async def complete(self, task_ids: Iterable[str], *, actor: str) -> BulkResult:
        return await self.apply_to_set(task_ids, StatusPatch(TaskStatus.DONE), actor=actor)

    async def assign(self, task_ids: Iterable[str], assignee: str | None, *, actor: str) -> BulkResult:
        return await self.apply_to_set(task_ids, AssigneePatch(assignee), actor=actor)

    async def reschedule(self, task_ids: Iterable[str], due_date: datetime | str | None, *, actor: str) -> BulkResult:
        return await self.apply_to_set(task_ids, DueDatePatch(due_date), actor=actor)

    async def set_priority(self, task_ids: Iterable[str], priority: TaskPriority | str, *, actor: str) -> BulkResult:
        return await self.apply_to_set(task_ids, PriorityPatch(priority), actor=actor)

    @staticmethod
    async def _collect(handles: dict[str, MutationHandle], failed: dict[str, str]) -> BulkResult:
        results = await asyncio.gather(*handles.values())
        succeeded: set[str] = set()
        for task_id, result in zip(handles, results):
            if result.ok:
                succeeded.add(task_id)
            else:
                failed[task_id] = result.error or 'persistence failed'
        if failed:
            _log.warning('bulk operation partial failure succeeded=%s failed=%s', len(succeeded), len(failed))
        return BulkResult(succeeded=frozenset(succeeded), failed=failed)
