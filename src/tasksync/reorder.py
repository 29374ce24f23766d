from __future__ import annotations

from dataclasses import dataclass

from tasksync.domain.models import MutationState
from tasksync.engine import MutationEngine, MutationResult
from tasksync.errors import ValidationError
from tasksync.observability import get_logger

_log = get_logger('tasksync.reorder')

DIRECTIONS = ('up', 'down')


@dataclass(frozen=True)
class ReorderResult:
    scope_id: str
    ordered_task_ids: tuple[str, ...]
    state: MutationState
    error: str | None = None
    error_code: str | None = None
    changed: bool = True

    @property
    def ok(self) -> bool:
        return self.state == MutationState.COMMITTED

    @classmethod
    def from_mutation(cls, scope_id: str, ordered: list[str], result: MutationResult) -> ReorderResult:
        return cls(
            scope_id=scope_id,
            ordered_task_ids=tuple(ordered),
            state=result.state,
            error=result.error,
            error_code=result.error_code,
        )


class ReorderCoordinator:
    """Drag-reorder for one list scope, written as a single batch mutation."""

    def __init__(self, engine: MutationEngine):
        self.engine = engine

    @property
    def store(self):
        return self.engine.store

    async def reorder(self, scope_id: str, ordered_task_ids: list[str], *, actor: str) -> ReorderResult:
        """Assign ``display_order = 0..n-1`` following ``ordered_task_ids``.

        The list must be a permutation of the scope's current task ids. On
        persistence failure the whole prior ordering is restored at once.
        """
        ordered = [str(task_id) for task_id in ordered_task_ids]
        current = self.store.scope_ids(scope_id)
        if len(set(ordered)) != len(ordered):
            raise ValidationError('ordered_task_ids contains duplicates', field='ordered_task_ids')
        if set(ordered) != set(current):
            missing = sorted(set(current) - set(ordered))
            extra = sorted(set(ordered) - set(current))
            raise ValidationError(
                f'ordered_task_ids must be a permutation of scope {scope_id}: missing={missing} unknown={extra}',
                field='ordered_task_ids',
                code='invalid_ordering',
            )
        if not ordered:
            return ReorderResult(scope_id, (), MutationState.COMMITTED, changed=False)

        ordering = {task_id: index for index, task_id in enumerate(ordered)}
        handle = self.engine.apply_ordering(scope_id, ordering, actor=actor)
        result = await handle
        if not result.ok:
            _log.warning('reorder of scope %s rolled back: %s', scope_id, result.error)
        return ReorderResult.from_mutation(scope_id, ordered, result)

    async def move_to_position(self, scope_id: str, task_id: str, position: int, *, actor: str) -> ReorderResult:
        ordered = self._current(scope_id, task_id)
        target = max(0, min(int(position), len(ordered) - 1))
        ordered.remove(task_id)
        ordered.insert(target, task_id)
        return await self.reorder(scope_id, ordered, actor=actor)

    async def move(self, scope_id: str, task_id: str, direction: str, *, actor: str) -> ReorderResult:
        key = str(direction or '').strip().lower()
        if key not in DIRECTIONS:
            raise ValidationError('direction must be one of: up, down', field='direction')
        ordered = self._current(scope_id, task_id)
        index = ordered.index(task_id)
        target = index - 1 if key == 'up' else index + 1
        if target < 0 or target >= len(ordered):
            # Already at the boundary.
            return ReorderResult(scope_id, tuple(ordered), MutationState.COMMITTED, changed=False)
        ordered[index], ordered[target] = ordered[target], ordered[index]
        return await self.reorder(scope_id, ordered, actor=actor)

    async def swap(self, scope_id: str, first_id: str, second_id: str, *, actor: str) -> ReorderResult:
        ordered = self._current(scope_id, first_id)
        if second_id not in ordered:
            raise ValidationError(f'task {second_id} is not in scope {scope_id}', field='task_id', code='task_not_found')
        i, j = ordered.index(first_id), ordered.index(second_id)
        ordered[i], ordered[j] = ordered[j], ordered[i]
        return await self.reorder(scope_id, ordered, actor=actor)

    def _current(self, scope_id: str, task_id: str) -> list[str]:
        ordered = self.store.scope_ids(scope_id)
        if task_id not in ordered:
            raise ValidationError(f'task {task_id} is not in scope {scope_id}', field='task_id', code='task_not_found')
        return ordered
