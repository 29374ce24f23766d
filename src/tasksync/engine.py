from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import datetime

from tasksync.domain.events import EventType, NotificationType
from tasksync.domain.models import (
    MutationState,
    Recurrence,
    Task,
    TaskStatus,
    new_id,
    next_due_date,
    task_to_dict,
    utc_now,
)
from tasksync.domain.patches import AssigneePatch, FieldPatch, PrivacyPatch, ResolveContext, StatusPatch, TextPatch, ensure_patch
from tasksync.errors import PersistenceError, PersistenceTimeoutError, ValidationError
from tasksync.observability import get_logger, set_mutation_context
from tasksync.repository import (
    ActivityEvent,
    ActivityRecorder,
    NotificationDispatcher,
    NotificationEvent,
    PersistenceAdapter,
)
from tasksync.store import TaskStore

_log = get_logger('tasksync.engine')

KIND_UPDATE = 'update'
KIND_CREATE = 'create'
KIND_DELETE = 'delete'


@dataclass
class MutationRecord:
    """In-flight optimistic write on one task. Never persisted."""

    mutation_id: str
    task_id: str
    kind: str
    actor: str
    before: Task
    patch: FieldPatch | None = None
    snapshot: dict[str, object] = field(default_factory=dict)
    proposed: dict[str, object] = field(default_factory=dict)
    prior_versions: dict[str, int] = field(default_factory=dict)
    applied_versions: dict[str, int] = field(default_factory=dict)
    dispatched_at: datetime = field(default_factory=utc_now)
    state: MutationState = MutationState.PENDING
    error: str | None = None

    @property
    def fields(self) -> tuple[str, ...]:
        return tuple(self.proposed)


@dataclass
class ReorderRecord:
    mutation_id: str
    scope_id: str
    actor: str
    snapshot: dict[str, int]
    proposed: dict[str, int]
    prior_version: int
    applied_version: int
    dispatched_at: datetime = field(default_factory=utc_now)
    state: MutationState = MutationState.PENDING
    error: str | None = None


@dataclass(frozen=True)
class PersistOutcome:
    ok: bool
    error: BaseException | None = None

    @classmethod
    def success(cls) -> PersistOutcome:
        return cls(ok=True)

    @classmethod
    def failure(cls, error: BaseException) -> PersistOutcome:
        return cls(ok=False, error=error)


@dataclass(frozen=True)
class MutationResult:
    mutation_id: str
    task_id: str | None
    state: MutationState
    error: str | None = None
    error_code: str | None = None

    @property
    def ok(self) -> bool:
        return self.state == MutationState.COMMITTED


class MutationHandle:
    """Returned synchronously by dispatch; await it for the settled result."""

    def __init__(self, record: MutationRecord | ReorderRecord, future: asyncio.Future):
        self.record = record
        self._future = future

    @property
    def mutation_id(self) -> str:
        return self.record.mutation_id

    def done(self) -> bool:
        return self._future.done()

    def result(self) -> MutationResult:
        return self._future.result()

    def __await__(self):
        return self._future.__await__()


def _error_code(error: BaseException | None) -> str:
    if isinstance(error, PersistenceTimeoutError):
        return 'persistence_timeout'
    return 'persistence_failed'


class SettlementHandler:
    """Turns a persistence outcome into a commit or a rollback."""

    def __init__(self, engine: MutationEngine):
        self._engine = engine

    async def settle(self, record: MutationRecord | ReorderRecord, outcome: PersistOutcome) -> MutationResult:
        engine = self._engine
        engine._untrack(record)
        if outcome.ok:
            record.state = MutationState.COMMITTED
            _log.info('mutation committed id=%s', record.mutation_id)
            await engine._after_commit(record)
            return self._result(record)

        record.error = str(outcome.error or 'persistence failed')
        if isinstance(record, ReorderRecord):
            await self._persist_moves(record.scope_id, self._rollback_ordering(record))
        elif record.kind == KIND_CREATE:
            if record.task_id in engine.store:
                engine.store.remove(record.task_id)
        elif record.kind == KIND_DELETE:
            if record.task_id not in engine.store:
                engine.store.insert(record.before)
                scope_id = record.before.scope_id
                others = [tid for tid in engine.store.scope_ids(scope_id) if tid != record.task_id]
                await self._persist_moves(scope_id, engine.store.rehome_collisions(scope_id, others))
        else:
            self._rollback_fields(record)
        record.state = MutationState.ROLLED_BACK
        _log.warning('mutation rolled back id=%s error=%s', record.mutation_id, record.error)
        return self._result(record, error_code=_error_code(outcome.error))

    def _rollback_fields(self, record: MutationRecord) -> None:
        store = self._engine.store
        for name in record.fields:
            applied = record.applied_versions[name]
            if store.field_version(record.task_id, name) == applied:
                store.restore_field(record.task_id, name, record.snapshot[name], version=record.prior_versions[name])
                continue
            # A later write owns the field; hand it our snapshot so its own rollback lands on the persisted value.
            successor = self._engine._field_successor(record, name)
            if successor is not None:
                successor.snapshot[name] = record.snapshot[name]
                successor.prior_versions[name] = record.prior_versions[name]

    def _rollback_ordering(self, record: ReorderRecord) -> dict[str, int]:
        store = self._engine.store
        if store.scope_version(record.scope_id) == record.applied_version:
            missing = store.restore_ordering(record.scope_id, record.snapshot, version=record.prior_version)
            if missing:
                _log.debug('ordering restore skipped removed tasks %s', missing)
            # Tasks created while the batch was pending took orders from the optimistic layout.
            return store.rehome_collisions(record.scope_id, record.snapshot)
        successor = self._engine._scope_successor(record)
        if successor is not None:
            successor.snapshot = {**successor.snapshot, **record.snapshot}
            successor.prior_version = record.prior_version
        return {}

    async def _persist_moves(self, scope_id: str, moved: dict[str, int]) -> None:
        """Write display orders that a rollback had to reassign to keep the scope unique."""
        if not moved:
            return
        engine = self._engine
        pairs = sorted(moved.items(), key=lambda item: item[1])
        _log.info('rollback reassigned display orders scope=%s moved=%s', scope_id, moved)
        outcome = await engine.persist(lambda: engine.persistence.batch_reorder(pairs))
        if not outcome.ok:
            _log.warning('reassigned display orders not persisted scope=%s error=%s', scope_id, outcome.error)

    @staticmethod
    def _result(record: MutationRecord | ReorderRecord, *, error_code: str | None = None) -> MutationResult:
        return MutationResult(
            mutation_id=record.mutation_id,
            task_id=getattr(record, 'task_id', None),
            state=record.state,
            error=record.error,
            error_code=error_code,
        )


class MutationEngine:
    """Optimistic writes against a TaskStore with background persistence.

    ``apply``/``create``/``delete``/``apply_ordering`` change the store
    immediately and return a :class:`MutationHandle`. The persistence call
    runs as its own asyncio task bounded by ``persistence_timeout_seconds``;
    a failure or timeout restores the snapshot taken at dispatch. Activity
    entries and notifications are emitted only after a commit.

    Dispatch must happen on the event loop that owns the store.
    """

    def __init__(
        self,
        store: TaskStore,
        persistence: PersistenceAdapter,
        *,
        activity: ActivityRecorder | None = None,
        notifier: NotificationDispatcher | None = None,
        persistence_timeout_seconds: float = 10.0,
        follow_up_hours: int = 48,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.persistence = persistence
        self.activity = activity
        self.notifier = notifier
        self.persistence_timeout_seconds = float(persistence_timeout_seconds)
        self.follow_up_hours = int(follow_up_hours)
        self._clock = clock
        self._settlement = SettlementHandler(self)
        self._pending_fields: dict[tuple[str, str], list[MutationRecord]] = {}
        self._pending_scopes: dict[str, list[ReorderRecord]] = {}

    # ---- dispatch ----

    def apply(self, task_id: str, patch: FieldPatch, *, actor: str) -> MutationHandle:
        loop = asyncio.get_running_loop()
        patch = ensure_patch(patch)
        task = self.store.require(task_id)
        values = patch.resolve(task, ResolveContext(now=self._clock(), follow_up_hours=self.follow_up_hours))
        snapshot = {name: getattr(task, name) for name in values}
        prior, applied = self.store.write_fields(task_id, values)
        record = MutationRecord(
            mutation_id=new_id(),
            task_id=task_id,
            kind=KIND_UPDATE,
            actor=actor,
            before=task,
            patch=patch,
            snapshot=snapshot,
            proposed=dict(values),
            prior_versions=prior,
            applied_versions=applied,
            dispatched_at=self._clock(),
        )
        for name in record.fields:
            self._pending_fields.setdefault((task_id, name), []).append(record)
        set_mutation_context(task_id, record.mutation_id)
        _log.debug('dispatch %s patch on task %s fields=%s', patch.kind, task_id, list(record.fields))
        return self._dispatch(loop, record, lambda: self.persistence.update(task_id, dict(values)))

    def create(self, task: Task, *, actor: str) -> MutationHandle:
        loop = asyncio.get_running_loop()
        text = TextPatch(task.text).text
        if task.id in self.store:
            raise ValidationError(f'task already exists: {task.id}', field='id', code='task_exists')
        now = self._clock()
        created = replace(
            task,
            text=text,
            display_order=self.store.next_display_order(task.scope_id),
            created_by=task.created_by or actor,
            created_at=task.created_at or now,
            updated_at=now,
        )
        self.store.insert(created)
        record = MutationRecord(
            mutation_id=new_id(),
            task_id=created.id,
            kind=KIND_CREATE,
            actor=actor,
            before=created,
            dispatched_at=now,
        )
        set_mutation_context(created.id, record.mutation_id)
        _log.debug('dispatch create task %s scope=%s', created.id, created.scope_id)
        return self._dispatch(loop, record, lambda: self.persistence.insert(created))

    def delete(self, task_id: str, *, actor: str) -> MutationHandle:
        loop = asyncio.get_running_loop()
        task = self.store.remove(task_id)
        record = MutationRecord(
            mutation_id=new_id(),
            task_id=task_id,
            kind=KIND_DELETE,
            actor=actor,
            before=task,
            dispatched_at=self._clock(),
        )
        set_mutation_context(task_id, record.mutation_id)
        _log.debug('dispatch delete task %s', task_id)
        return self._dispatch(loop, record, lambda: self.persistence.delete(task_id))

    def apply_ordering(self, scope_id: str, ordering: dict[str, int], *, actor: str) -> MutationHandle:
        """Write a whole-scope ordering as one batch; rolled back as one unit."""
        loop = asyncio.get_running_loop()
        snapshot = self.store.ordering(scope_id)
        prior, applied = self.store.write_ordering(scope_id, ordering)
        record = ReorderRecord(
            mutation_id=new_id(),
            scope_id=scope_id,
            actor=actor,
            snapshot=snapshot,
            proposed=dict(ordering),
            prior_version=prior,
            applied_version=applied,
            dispatched_at=self._clock(),
        )
        self._pending_scopes.setdefault(scope_id, []).append(record)
        set_mutation_context(None, record.mutation_id)
        pairs = sorted(ordering.items(), key=lambda item: item[1])
        _log.debug('dispatch reorder scope=%s size=%s', scope_id, len(pairs))
        return self._dispatch(loop, record, lambda: self.persistence.batch_reorder(pairs))

    def pending_count(self) -> int:
        records = {id(r) for rows in self._pending_fields.values() for r in rows}
        records.update(id(r) for rows in self._pending_scopes.values() for r in rows)
        return len(records)

    # ---- settlement plumbing ----

    def _dispatch(
        self,
        loop: asyncio.AbstractEventLoop,
        record: MutationRecord | ReorderRecord,
        call: Callable[[], Awaitable[None]],
    ) -> MutationHandle:
        future = loop.create_task(self._run(record, call))
        return MutationHandle(record, future)

    async def _run(self, record: MutationRecord | ReorderRecord, call: Callable[[], Awaitable[None]]) -> MutationResult:
        outcome = await self.persist(call, task_id=getattr(record, 'task_id', None))
        return await self._settlement.settle(record, outcome)

    async def persist(self, call: Callable[[], Awaitable[None]], *, task_id: str | None = None) -> PersistOutcome:
        """Run ``call`` under the persistence timeout.

        On timeout the call is cancelled and then awaited until it unwinds. An
        adapter that cannot abandon a write which is already committing may
        finish it and return normally; that write then counts as persisted, so
        the store never rolls back a value the backend kept.
        """
        work = asyncio.ensure_future(call())
        try:
            done, _ = await asyncio.wait({work}, timeout=self.persistence_timeout_seconds)
            if not done:
                work.cancel()
                await asyncio.wait({work})
                if work.cancelled():
                    return PersistOutcome.failure(
                        PersistenceTimeoutError(
                            f'persistence timed out after {self.persistence_timeout_seconds:g}s',
                            task_id=task_id,
                        )
                    )
                _log.warning('persistence for task %s finished after its timeout', task_id)
            work.result()
        except asyncio.CancelledError:
            work.cancel()
            raise
        except PersistenceError as exc:
            return PersistOutcome.failure(exc)
        except Exception as exc:
            _log.warning('persistence adapter raised %s for task %s', type(exc).__name__, task_id, exc_info=True)
            return PersistOutcome.failure(exc)
        return PersistOutcome.success()

    def _untrack(self, record: MutationRecord | ReorderRecord) -> None:
        if isinstance(record, ReorderRecord):
            rows = self._pending_scopes.get(record.scope_id, [])
            if record in rows:
                rows.remove(record)
            if not rows:
                self._pending_scopes.pop(record.scope_id, None)
            return
        for name in record.fields:
            key = (record.task_id, name)
            rows = self._pending_fields.get(key, [])
            if record in rows:
                rows.remove(record)
            if not rows:
                self._pending_fields.pop(key, None)

    def _field_successor(self, record: MutationRecord, name: str) -> MutationRecord | None:
        applied = record.applied_versions[name]
        for other in self._pending_fields.get((record.task_id, name), []):
            if other is not record and other.prior_versions.get(name) == applied:
                return other
        return None

    def _scope_successor(self, record: ReorderRecord) -> ReorderRecord | None:
        for other in self._pending_scopes.get(record.scope_id, []):
            if other is not record and other.prior_version == record.applied_version:
                return other
        return None

    # ---- post-commit side effects ----

    async def _after_commit(self, record: MutationRecord | ReorderRecord) -> None:
        for event in self._activity_for(record):
            await self._log_activity(event)
        if isinstance(record, ReorderRecord):
            return
        for notification in self._notifications_for(record):
            await self._notify(notification)
        if record.kind == KIND_UPDATE and isinstance(record.patch, StatusPatch):
            await self._spawn_next_occurrence(record)

    def _activity_for(self, record: MutationRecord | ReorderRecord) -> list[ActivityEvent]:
        if isinstance(record, ReorderRecord):
            return [
                ActivityEvent(
                    action=EventType.TASK_REORDERED,
                    task_id=None,
                    actor=record.actor,
                    before=dict(record.snapshot),
                    after=dict(record.proposed),
                    scope_id=record.scope_id,
                    details={'count': len(record.proposed)},
                )
            ]
        task = record.before
        if record.kind == KIND_CREATE:
            return [ActivityEvent(EventType.TASK_CREATED, task.id, record.actor, after=task_to_dict(task), scope_id=task.scope_id)]
        if record.kind == KIND_DELETE:
            return [ActivityEvent(EventType.TASK_DELETED, task.id, record.actor, before=task_to_dict(task), scope_id=task.scope_id)]
        patch = record.patch
        return [
            ActivityEvent(
                action=patch.activity_action(task, record.proposed),
                task_id=task.id,
                actor=record.actor,
                before=dict(record.snapshot),
                after=dict(record.proposed),
                scope_id=task.scope_id,
                details=patch.activity_details(task, record.dispatched_at),
            )
        ]

    def _notifications_for(self, record: MutationRecord) -> list[NotificationEvent]:
        task = record.before
        if record.kind == KIND_CREATE:
            if task.assignee:
                return [NotificationEvent(NotificationType.TASK_ASSIGNED, task.id, record.actor, recipient=task.assignee)]
            return []
        if record.kind != KIND_UPDATE or not record.patch.notifies:
            return []
        if isinstance(record.patch, AssigneePatch):
            previous = record.snapshot.get('assignee')
            current = record.proposed.get('assignee')
            if previous == current:
                return []
            events = []
            if previous:
                events.append(NotificationEvent(NotificationType.TASK_UNASSIGNED, task.id, record.actor, recipient=previous))
            if current:
                events.append(NotificationEvent(NotificationType.TASK_ASSIGNED, task.id, record.actor, recipient=current))
            return events
        if isinstance(record.patch, PrivacyPatch):
            if record.snapshot.get('is_private') == record.proposed.get('is_private'):
                return []
            current = self.store.get(task.id)
            recipient = current.assignee if current is not None else task.assignee
            return [
                NotificationEvent(
                    NotificationType.PRIVACY_CHANGED,
                    task.id,
                    record.actor,
                    recipient=recipient,
                    details={'is_private': record.proposed.get('is_private')},
                )
            ]
        return []

    async def _log_activity(self, event: ActivityEvent) -> None:
        if self.activity is None:
            return
        try:
            await self.activity.log(event)
        except Exception:
            _log.exception('activity log failed action=%s task_id=%s', event.action.value, event.task_id)

    async def _notify(self, event: NotificationEvent) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.notify(event)
        except Exception:
            _log.exception('notification failed type=%s task_id=%s', event.type.value, event.task_id)

    async def _spawn_next_occurrence(self, record: MutationRecord) -> None:
        before = record.before
        if record.proposed.get('status') != TaskStatus.DONE or before.status == TaskStatus.DONE:
            return
        if before.recurrence == Recurrence.NONE or before.due_date is None:
            return
        due = next_due_date(before.due_date, before.recurrence)
        follow_up = Task(
            id=new_id(),
            text=before.text,
            priority=before.priority,
            assignee=before.assignee,
            due_date=due,
            notes=before.notes,
            subtasks=tuple(replace(s, completed=False) for s in before.subtasks),
            recurrence=before.recurrence,
            is_private=before.is_private,
            scope_id=before.scope_id,
        )
        result = await self.create(follow_up, actor=record.actor)
        if result.ok:
            _log.info('recurring task %s scheduled next occurrence %s due=%s', before.id, follow_up.id, due.isoformat())
        else:
            _log.warning('recurring task %s next occurrence failed: %s', before.id, result.error)
