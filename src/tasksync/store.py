from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import replace
from itertools import count

from tasksync.domain.models import IMMUTABLE_FIELDS, TASK_FIELDS, Task, utc_now
from tasksync.errors import ValidationError, task_not_found
from tasksync.observability import get_logger

_log = get_logger('tasksync.store')


class TaskStore:
    """In-memory arena of tasks addressed by id.

    Every field write is stamped with a fresh version token drawn from one
    monotonic counter. The store remembers which token currently owns each
    ``(task_id, field)`` and each scope's ordering; settlement code compares
    these tokens to decide whether a rollback may still restore a value.

    The store is owned by a single event loop and is not thread-safe.
    """

    def __init__(self, tasks: Iterable[Task] = ()):
        self._tasks: dict[str, Task] = {}
        self._field_versions: dict[tuple[str, str], int] = {}
        self._scope_versions: dict[str, int] = {}
        self._counter = count(1)
        for task in tasks:
            self.insert(task)

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    # ---- reads ----

    def get(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def require(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise task_not_found(task_id)
        return task

    def list_tasks(self, *, scope_id: str | None = None) -> list[Task]:
        rows = [t for t in self._tasks.values() if scope_id is None or t.scope_id == scope_id]
        rows.sort(key=lambda t: (t.scope_id, t.display_order, t.created_at or utc_now(), t.id))
        return rows

    def scope_ids(self, scope_id: str) -> list[str]:
        return [t.id for t in self.list_tasks(scope_id=scope_id)]

    def next_display_order(self, scope_id: str) -> int:
        orders = [t.display_order for t in self._tasks.values() if t.scope_id == scope_id]
        return (max(orders) + 1) if orders else 0

    def field_version(self, task_id: str, field: str) -> int:
        return self._field_versions.get((task_id, field), 0)

    def scope_version(self, scope_id: str) -> int:
        return self._scope_versions.get(scope_id, 0)

    def ordering(self, scope_id: str) -> dict[str, int]:
        return {t.id: t.display_order for t in self.list_tasks(scope_id=scope_id)}

    # ---- writes ----

    def insert(self, task: Task) -> None:
        if task.id in self._tasks:
            raise ValidationError(f'task already exists: {task.id}', field='id', code='task_exists')
        self._tasks[task.id] = task

    def remove(self, task_id: str) -> Task:
        task = self._tasks.pop(task_id, None)
        if task is None:
            raise task_not_found(task_id)
        return task

    def write_fields(self, task_id: str, values: Mapping[str, object]) -> tuple[dict[str, int], dict[str, int]]:
        """Write ``values`` and return ``(prior_versions, applied_versions)``."""
        task = self.require(task_id)
        unknown = set(values) - TASK_FIELDS
        if unknown:
            raise ValidationError(f'unknown task fields: {sorted(unknown)}', field='patch')
        blocked = set(values) & IMMUTABLE_FIELDS
        if blocked:
            raise ValidationError(f'fields cannot be patched: {sorted(blocked)}', field='patch')

        prior: dict[str, int] = {}
        applied: dict[str, int] = {}
        for name in values:
            key = (task_id, name)
            prior[name] = self._field_versions.get(key, 0)
            token = next(self._counter)
            self._field_versions[key] = token
            applied[name] = token
        self._tasks[task_id] = replace(task, updated_at=utc_now(), **dict(values))
        return prior, applied

    def restore_field(self, task_id: str, field: str, value: object, *, version: int) -> bool:
        task = self._tasks.get(task_id)
        if task is None:
            _log.debug('restore skipped; task %s no longer in store', task_id)
            return False
        self._tasks[task_id] = replace(task, **{field: value})
        self._field_versions[(task_id, field)] = int(version)
        return True

    def write_ordering(self, scope_id: str, ordering: Mapping[str, int]) -> tuple[int, int]:
        """Apply ``{task_id: display_order}`` in one pass; return ``(prior, applied)`` scope versions."""
        for task_id in ordering:
            task = self.require(task_id)
            if task.scope_id != scope_id:
                raise ValidationError(
                    f'task {task_id} does not belong to scope {scope_id}',
                    field='ordered_task_ids',
                )
        for task_id, order in ordering.items():
            self._tasks[task_id] = replace(self._tasks[task_id], display_order=int(order))
        prior = self._scope_versions.get(scope_id, 0)
        applied = next(self._counter)
        self._scope_versions[scope_id] = applied
        return prior, applied

    def restore_ordering(self, scope_id: str, ordering: Mapping[str, int], *, version: int) -> list[str]:
        """Restore a scope ordering snapshot; returns ids that were no longer present."""
        missing: list[str] = []
        for task_id, order in ordering.items():
            task = self._tasks.get(task_id)
            if task is None:
                missing.append(task_id)
                continue
            self._tasks[task_id] = replace(task, display_order=int(order))
        self._scope_versions[scope_id] = int(version)
        return missing

    def rehome_collisions(self, scope_id: str, settled: Iterable[str]) -> dict[str, int]:
        """Move scope tasks outside ``settled`` whose order is already taken to the end of the scope.

        Returns ``{task_id: new_display_order}`` for every task that moved.
        """
        settled = set(settled)
        rows = self.list_tasks(scope_id=scope_id)
        taken = {t.display_order for t in rows if t.id in settled}
        top = max((t.display_order for t in rows), default=-1)
        moved: dict[str, int] = {}
        for task in rows:
            if task.id in settled:
                continue
            order = task.display_order
            if order in taken:
                top += 1
                order = top
                self._tasks[task.id] = replace(task, display_order=order)
                moved[task.id] = order
            taken.add(order)
        return moved
