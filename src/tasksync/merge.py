from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime

from tasksync.domain.models import MutationState, Task, TaskPriority, more_urgent, utc_now
from tasksync.domain.patches import MAX_ATTACHMENTS_PER_TASK, AttachmentsPatch, MergePatch
from tasksync.engine import MutationEngine
from tasksync.errors import ValidationError
from tasksync.observability import get_logger

_log = get_logger('tasksync.merge')


@dataclass(frozen=True)
class MergeResult:
    existing_id: str
    incoming_id: str
    state: MutationState
    error: str | None = None
    error_code: str | None = None
    attachments_added: int = 0
    incoming_deleted: bool = False

    @property
    def ok(self) -> bool:
        return self.state == MutationState.COMMITTED


@dataclass(frozen=True)
class MergeManyResult:
    primary_id: str
    merged_ids: tuple[str, ...]
    state: MutationState
    error: str | None = None
    error_code: str | None = None
    deleted: tuple[str, ...] = ()
    failed_deletes: tuple[str, ...] = ()
    attachments_dropped: int = 0

    @property
    def ok(self) -> bool:
        return self.state == MutationState.COMMITTED


def merge_notes(existing: Task, incoming: Task, *, now: datetime) -> str:
    stamp = now.strftime('%Y-%m-%d %H:%M UTC')
    parts = [
        existing.notes,
        f'\n--- Added Content ({stamp}) ---',
        incoming.text if incoming.text != existing.text else None,
        f'\nTranscription:\n{incoming.transcription}' if incoming.transcription else None,
    ]
    return '\n'.join(part for part in parts if part)


def earlier_due_date(a: datetime | None, b: datetime | None) -> datetime | None:
    if a is None:
        return b
    if b is None:
        return a
    return b if b < a else a


def build_merge_patch(existing: Task, incoming: Task, *, now: datetime) -> MergePatch:
    """Combine ``incoming`` into ``existing``; ``existing``'s identity and text are kept."""
    return MergePatch(
        notes=merge_notes(existing, incoming, now=now),
        subtasks=tuple(existing.subtasks) + tuple(incoming.subtasks),
        priority=more_urgent(existing.priority or TaskPriority.MEDIUM, incoming.priority or TaskPriority.MEDIUM),
        due_date=earlier_due_date(existing.due_date, incoming.due_date),
        merged_from=tuple(existing.merged_from) + (incoming.id,),
    )


def merge_history_notes(primary: Task, others: Sequence[Task], *, now: datetime) -> str:
    stamp = now.strftime('%Y-%m-%d %H:%M UTC')
    parts = [primary.notes, *(t.notes for t in others), f'\n--- Merged Tasks ({stamp}) ---']
    for task in others:
        created = f' (created {task.created_at.strftime("%Y-%m-%d")})' if task.created_at else ''
        parts.append(f'• "{task.text}"{created}')
    return '\n'.join(part for part in parts if part)


def build_merge_many_patch(primary: Task, others: Sequence[Task], *, now: datetime) -> tuple[MergePatch, int]:
    """Fold every task in ``others`` into ``primary``; returns the patch and the number of attachments dropped."""
    priority = primary.priority or TaskPriority.MEDIUM
    due_date = primary.due_date
    subtasks = list(primary.subtasks)
    attachments = list(primary.attachments)
    seen = {a.id for a in attachments}
    for task in others:
        priority = more_urgent(priority, task.priority or TaskPriority.MEDIUM)
        due_date = earlier_due_date(due_date, task.due_date)
        subtasks.extend(task.subtasks)
        for attachment in task.attachments:
            if attachment.id not in seen:
                seen.add(attachment.id)
                attachments.append(attachment)
    dropped = max(0, len(attachments) - MAX_ATTACHMENTS_PER_TASK)
    patch = MergePatch(
        notes=merge_history_notes(primary, others, now=now),
        subtasks=tuple(subtasks),
        priority=priority,
        due_date=due_date,
        merged_from=tuple(primary.merged_from) + tuple(t.id for t in others),
        text=f'{primary.text} [+{len(others)} merged]',
        attachments=tuple(attachments[:MAX_ATTACHMENTS_PER_TASK]),
    )
    return patch, dropped


class DuplicateMergeResolver:
    def __init__(self, engine: MutationEngine, *, clock: Callable[[], datetime] = utc_now):
        self.engine = engine
        self._clock = clock

    async def merge(self, existing_id: str, incoming: Task, *, actor: str) -> MergeResult:
        """Fold ``incoming`` into the stored task ``existing_id``.

        The combined notes/subtasks/priority/due date go out as one compound
        patch, so a persistence failure reverts all of them together.
        Attachments follow as a secondary write that may fail on its own, and
        an ``incoming`` record that lives in the store is deleted afterwards.
        """
        if incoming.id == existing_id:
            raise ValidationError('cannot merge a task into itself', field='incoming', code='invalid_merge')
        store = self.engine.store
        existing = store.require(existing_id)
        patch = build_merge_patch(existing, incoming, now=self._clock())
        result = await self.engine.apply(existing_id, patch, actor=actor)
        if not result.ok:
            _log.warning('merge of %s into %s rolled back: %s', incoming.id, existing_id, result.error)
            return MergeResult(existing_id, incoming.id, result.state, result.error, result.error_code)

        added = await self._append_attachments(existing_id, incoming, actor=actor)
        deleted = False
        if incoming.id in store:
            delete_result = await self.engine.delete(incoming.id, actor=actor)
            deleted = delete_result.ok
            if not deleted:
                _log.warning('merged task %s could not be removed: %s', incoming.id, delete_result.error)
        _log.info('merged task %s into %s attachments=%s', incoming.id, existing_id, added)
        return MergeResult(
            existing_id,
            incoming.id,
            MutationState.COMMITTED,
            attachments_added=added,
            incoming_deleted=deleted,
        )

    async def _append_attachments(self, existing_id: str, incoming: Task, *, actor: str) -> int:
        if not incoming.attachments:
            return 0
        current = self.engine.store.get(existing_id)
        if current is None:
            return 0
        known = {a.id for a in current.attachments}
        extra = [a for a in incoming.attachments if a.id not in known]
        room = max(0, MAX_ATTACHMENTS_PER_TASK - len(current.attachments))
        if len(extra) > room:
            _log.warning('dropping %s attachments from merge into %s; task is at capacity', len(extra) - room, existing_id)
            extra = extra[:room]
        if not extra:
            return 0
        result = await self.engine.apply(
            existing_id,
            AttachmentsPatch(tuple(current.attachments) + tuple(extra)),
            actor=actor,
        )
        if not result.ok:
            _log.warning('attachment transfer into %s failed: %s', existing_id, result.error)
            return 0
        return len(extra)

    async def merge_many(self, primary_id: str, other_ids: Sequence[str], *, actor: str) -> MergeManyResult:
        """Fold several stored tasks into ``primary_id`` and delete them.

        All combined fields go out as one compound patch on the primary. The
        other tasks are deleted only after that patch commits; a delete that
        fails leaves its task in place and is reported in ``failed_deletes``.
        """
        ids = list(dict.fromkeys(str(tid) for tid in other_ids))
        if not ids:
            raise ValidationError('at least one task to merge is required', field='task_ids', code='invalid_merge')
        if primary_id in ids:
            raise ValidationError('cannot merge a task into itself', field='task_ids', code='invalid_merge')
        store = self.engine.store
        primary = store.require(primary_id)
        others = [store.require(tid) for tid in ids]
        patch, dropped = build_merge_many_patch(primary, others, now=self._clock())
        if dropped:
            _log.warning('dropping %s attachments from merge into %s; task is at capacity', dropped, primary_id)

        result = await self.engine.apply(primary_id, patch, actor=actor)
        if not result.ok:
            _log.warning('merge of %s into %s rolled back: %s', ids, primary_id, result.error)
            return MergeManyResult(primary_id, tuple(ids), result.state, result.error, result.error_code)

        handles = [self.engine.delete(tid, actor=actor) for tid in ids if tid in store]
        outcomes = await asyncio.gather(*handles)
        deleted = tuple(o.task_id for o in outcomes if o.ok)
        failed = tuple(o.task_id for o in outcomes if not o.ok)
        if failed:
            _log.warning('merged tasks %s could not be removed from %s', list(failed), primary_id)
        _log.info('merged %s tasks into %s', len(ids), primary_id)
        return MergeManyResult(
            primary_id,
            tuple(ids),
            MutationState.COMMITTED,
            deleted=deleted,
            failed_deletes=failed,
            attachments_dropped=dropped,
        )
