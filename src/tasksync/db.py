from __future__ import annotations

import asyncio
from collections.abc import Callable
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
import json
from threading import Lock
import time
from typing import Iterator, TypeVar

from sqlalchemy import Boolean, DateTime, Integer, String, Text, create_engine, select
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from tasksync.domain.events import EventType
from tasksync.domain.models import (
    ContactType,
    Recurrence,
    Task,
    TaskPriority,
    TaskStatus,
    attachment_from_dict,
    subtask_from_dict,
    to_jsonable,
)
from tasksync.errors import PersistenceError
from tasksync.observability import get_logger
from tasksync.repository import ActivityEvent

_log = get_logger('tasksync.db')

T = TypeVar('T')

# Task fields stored as JSON text columns.
_JSON_COLUMNS = {
    'subtasks': 'subtasks_json',
    'attachments': 'attachments_json',
    'merged_from': 'merged_from_json',
}


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class TaskEntity(Base):
    __tablename__ = 'tasks'

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    scope_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    text: Mapped[str] = mapped_column(Text(), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    priority: Mapped[str] = mapped_column(String(16), nullable=False)
    assignee: Mapped[str | None] = mapped_column(String(255), nullable=True)
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reminder_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reminder_sent: Mapped[bool] = mapped_column(Boolean(), nullable=False, default=False)
    waiting_for_response: Mapped[bool] = mapped_column(Boolean(), nullable=False, default=False)
    waiting_since: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    contact_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    follow_up_after_hours: Mapped[int | None] = mapped_column(Integer(), nullable=True)
    follow_up_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str] = mapped_column(Text(), nullable=False, default='')
    subtasks_json: Mapped[str] = mapped_column(Text(), nullable=False, default='[]')
    attachments_json: Mapped[str] = mapped_column(Text(), nullable=False, default='[]')
    recurrence: Mapped[str] = mapped_column(String(16), nullable=False)
    is_private: Mapped[bool] = mapped_column(Boolean(), nullable=False, default=False)
    display_order: Mapped[int] = mapped_column(Integer(), nullable=False, default=0)
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    transcription: Mapped[str | None] = mapped_column(Text(), nullable=True)
    merged_from_json: Mapped[str] = mapped_column(Text(), nullable=False, default='[]')


class ActivityEntity(Base):
    __tablename__ = 'activity_log'

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    # No foreign key: entries outlive deleted tasks.
    task_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    scope_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    actor: Mapped[str] = mapped_column(String(255), nullable=False)
    before_json: Mapped[str] = mapped_column(Text(), nullable=False)
    after_json: Mapped[str] = mapped_column(Text(), nullable=False)
    details_json: Mapped[str] = mapped_column(Text(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class WriteAbandonedError(PersistenceError):
    """The awaiting coroutine gave up before the worker thread committed."""


class CommitGate:
    """Lets a cancelled caller abandon a worker-thread write that has not started committing."""

    def __init__(self):
        self._lock = Lock()
        self._abandoned = False
        self._committing = False

    def abandon(self) -> bool:
        """Return True if the write will be rolled back, False if its commit is already under way."""
        with self._lock:
            if self._committing:
                return False
            self._abandoned = True
            return True

    def begin_commit(self) -> bool:
        with self._lock:
            if self._abandoned:
                return False
            self._committing = True
            return True


class Database:
    def __init__(self, url: str):
        engine_kwargs: dict[str, object] = {}
        if str(url or '').strip().lower().startswith('sqlite'):
            engine_kwargs['connect_args'] = {'check_same_thread': False, 'timeout': 30}
        self.engine = create_engine(url, **engine_kwargs)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False, class_=Session)
        if self.engine.dialect.name == 'sqlite':
            self._configure_sqlite_pragmas()

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _configure_sqlite_pragmas(self) -> None:
        with self.engine.connect() as conn:
            if self.engine.url.database not in (None, '', ':memory:'):
                conn.exec_driver_sql('PRAGMA journal_mode=WAL')
            conn.exec_driver_sql('PRAGMA synchronous=NORMAL')
            conn.exec_driver_sql('PRAGMA busy_timeout=30000')

    def is_sqlite(self) -> bool:
        return self.engine.dialect.name == 'sqlite'

    @staticmethod
    def _is_sqlite_lock_error(exc: Exception) -> bool:
        text = str(exc or '').lower()
        return 'database is locked' in text or 'database table is locked' in text

    @staticmethod
    def _sqlite_lock_backoff_seconds(attempt: int) -> float:
        return min(0.2, 0.02 * (2 ** max(0, int(attempt) - 1)))

    def run_with_lock_retry(self, fn: Callable[[Session], T], *, gate: CommitGate | None = None) -> T:
        """Run ``fn`` in one session; sqlite lock errors are retried with backoff.

        With a ``gate``, the session is rolled back instead of committed once
        the caller has abandoned the write.
        """
        max_attempts = 8 if self.is_sqlite() else 1
        for attempt in range(max_attempts):
            try:
                with self.session() as session:
                    result = fn(session)
                    if gate is not None and not gate.begin_commit():
                        raise WriteAbandonedError('write abandoned before commit')
                    return result
            except OperationalError as exc:
                if (not self._is_sqlite_lock_error(exc)) or attempt + 1 >= max_attempts:
                    raise
                time.sleep(self._sqlite_lock_backoff_seconds(attempt + 1))
        raise RuntimeError('lock_retry_exhausted')


def _column_value(name: str, value):
    if name in _JSON_COLUMNS:
        return _JSON_COLUMNS[name], json.dumps(to_jsonable(value), ensure_ascii=True)
    if isinstance(value, Enum):
        return name, value.value
    return name, value


def _task_to_entity(task: Task) -> TaskEntity:
    entity = TaskEntity(id=task.id)
    for name in Task.__dataclass_fields__:
        if name == 'id':
            continue
        column, value = _column_value(name, getattr(task, name))
        setattr(entity, column, value)
    return entity


def _entity_to_task(row: TaskEntity) -> Task:
    return Task(
        id=row.id,
        text=row.text,
        status=TaskStatus(row.status),
        priority=TaskPriority(row.priority),
        assignee=row.assignee,
        due_date=_as_utc(row.due_date),
        reminder_at=_as_utc(row.reminder_at),
        reminder_sent=bool(row.reminder_sent),
        waiting_for_response=bool(row.waiting_for_response),
        waiting_since=_as_utc(row.waiting_since),
        contact_type=ContactType(row.contact_type) if row.contact_type else None,
        follow_up_after_hours=row.follow_up_after_hours,
        follow_up_at=_as_utc(row.follow_up_at),
        notes=row.notes or '',
        subtasks=tuple(subtask_from_dict(item) for item in json.loads(row.subtasks_json or '[]')),
        attachments=tuple(attachment_from_dict(item) for item in json.loads(row.attachments_json or '[]')),
        recurrence=Recurrence(row.recurrence),
        is_private=bool(row.is_private),
        display_order=int(row.display_order or 0),
        scope_id=row.scope_id,
        created_by=row.created_by,
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
        transcription=row.transcription,
        merged_from=tuple(json.loads(row.merged_from_json or '[]')),
    )


class SqlPersistenceAdapter:
    """PersistenceAdapter over SQLAlchemy; blocking calls run in a worker thread."""

    def __init__(self, db: Database):
        self.db = db

    def load_tasks(self) -> list[Task]:
        with self.db.session() as session:
            rows = session.execute(
                select(TaskEntity).order_by(TaskEntity.scope_id, TaskEntity.display_order, TaskEntity.created_at)
            ).scalars().all()
            return [_entity_to_task(r) for r in rows]

    async def insert(self, task: Task) -> None:
        await self._call(self._insert, task, task_id=task.id)

    async def update(self, task_id: str, values: dict[str, object]) -> None:
        await self._call(self._update, task_id, dict(values), task_id=task_id)

    async def batch_reorder(self, pairs: list[tuple[str, int]]) -> None:
        await self._call(self._batch_reorder, list(pairs))

    async def delete(self, task_id: str) -> None:
        await self._call(self._delete, task_id, task_id=task_id)

    async def _call(self, fn, *args, task_id: str | None = None) -> None:
        gate = CommitGate()
        work = asyncio.ensure_future(asyncio.to_thread(fn, *args, gate))
        try:
            try:
                await asyncio.shield(work)
            except asyncio.CancelledError:
                if gate.abandon():
                    _log.info('sql write abandoned before commit fn=%s task_id=%s', fn.__name__, task_id)
                    raise
                # The commit already started; its outcome is what the database holds.
                await work
        except SQLAlchemyError as exc:
            _log.warning('sql persistence failed fn=%s task_id=%s', fn.__name__, task_id, exc_info=True)
            raise PersistenceError(f'database error: {type(exc).__name__}', task_id=task_id) from exc

    def _insert(self, task: Task, gate: CommitGate | None = None) -> None:
        def op(session: Session) -> None:
            if session.get(TaskEntity, task.id) is not None:
                raise PersistenceError(f'task already persisted: {task.id}', task_id=task.id)
            session.add(_task_to_entity(task))

        self.db.run_with_lock_retry(op, gate=gate)

    def _update(self, task_id: str, values: dict[str, object], gate: CommitGate | None = None) -> None:
        def op(session: Session) -> None:
            row = session.get(TaskEntity, task_id)
            if row is None:
                raise PersistenceError(f'task not found: {task_id}', task_id=task_id)
            for name, value in values.items():
                column, stored = _column_value(name, value)
                setattr(row, column, stored)
            row.updated_at = datetime.now(timezone.utc)

        self.db.run_with_lock_retry(op, gate=gate)

    def _batch_reorder(self, pairs: list[tuple[str, int]], gate: CommitGate | None = None) -> None:
        def op(session: Session) -> None:
            ids = [task_id for task_id, _ in pairs]
            rows = {
                r.id: r
                for r in session.execute(select(TaskEntity).where(TaskEntity.id.in_(ids))).scalars().all()
            }
            missing = [task_id for task_id in ids if task_id not in rows]
            if missing:
                raise PersistenceError(f'tasks not found: {missing}')
            for task_id, order in pairs:
                rows[task_id].display_order = int(order)

        self.db.run_with_lock_retry(op, gate=gate)

    def _delete(self, task_id: str, gate: CommitGate | None = None) -> None:
        def op(session: Session) -> None:
            row = session.get(TaskEntity, task_id)
            if row is None:
                raise PersistenceError(f'task not found: {task_id}', task_id=task_id)
            session.delete(row)

        self.db.run_with_lock_retry(op, gate=gate)


class SqlActivityRecorder:
    def __init__(self, db: Database):
        self.db = db

    async def log(self, event: ActivityEvent) -> None:
        await asyncio.to_thread(self._append, event)

    def _append(self, event: ActivityEvent) -> None:
        data = event.to_dict()

        def op(session: Session) -> None:
            session.add(
                ActivityEntity(
                    task_id=event.task_id,
                    scope_id=event.scope_id,
                    action=data['action'],
                    actor=event.actor,
                    before_json=json.dumps(data['before'], ensure_ascii=True),
                    after_json=json.dumps(data['after'], ensure_ascii=True),
                    details_json=json.dumps(data['details'], ensure_ascii=True),
                    created_at=event.created_at,
                )
            )

        self.db.run_with_lock_retry(op)

    def list_events(self, task_id: str | None = None) -> list[ActivityEvent]:
        with self.db.session() as session:
            query = select(ActivityEntity).order_by(ActivityEntity.id.asc())
            if task_id is not None:
                query = query.where(ActivityEntity.task_id == task_id)
            rows = session.execute(query).scalars().all()
            return [self._row_to_event(r) for r in rows]

    @staticmethod
    def _row_to_event(row: ActivityEntity) -> ActivityEvent:
        return ActivityEvent(
            action=EventType(row.action),
            task_id=row.task_id,
            actor=row.actor,
            before=json.loads(row.before_json),
            after=json.loads(row.after_json),
            scope_id=row.scope_id,
            details=json.loads(row.details_json),
            created_at=_as_utc(row.created_at),
        )
