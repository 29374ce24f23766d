from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from tasksync.domain.events import EventType, NotificationType
from tasksync.domain.models import Task, task_from_dict, task_to_dict, to_jsonable, utc_now
from tasksync.errors import PersistenceError
from tasksync.observability import get_logger

_log = get_logger('tasksync.repository')


@dataclass(frozen=True)
class ActivityEvent:
    action: EventType
    task_id: str | None
    actor: str
    before: dict = field(default_factory=dict)
    after: dict = field(default_factory=dict)
    scope_id: str | None = None
    details: dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            'action': self.action.value,
            'task_id': self.task_id,
            'actor': self.actor,
            'before': to_jsonable(self.before),
            'after': to_jsonable(self.after),
            'scope_id': self.scope_id,
            'details': to_jsonable(self.details),
            'created_at': self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class NotificationEvent:
    type: NotificationType
    task_id: str
    actor: str
    recipient: str | None = None
    details: dict = field(default_factory=dict)


class PersistenceAdapter(Protocol):
    """Remote task store. Every method raises on failure."""

    async def insert(self, task: Task) -> None:
        ...

    async def update(self, task_id: str, values: dict[str, object]) -> None:
        ...

    async def batch_reorder(self, pairs: list[tuple[str, int]]) -> None:
        ...

    async def delete(self, task_id: str) -> None:
        ...


class ActivityRecorder(Protocol):
    async def log(self, event: ActivityEvent) -> None:
        ...


class NotificationDispatcher(Protocol):
    async def notify(self, event: NotificationEvent) -> None:
        ...


class InMemoryPersistenceAdapter:
    def __init__(self, tasks: list[Task] | None = None):
        self.rows: dict[str, dict] = {}
        for task in tasks or []:
            self.rows[task.id] = task_to_dict(task)

    def load_tasks(self) -> list[Task]:
        return [task_from_dict(row) for row in self.rows.values()]

    async def insert(self, task: Task) -> None:
        if task.id in self.rows:
            raise PersistenceError(f'task already persisted: {task.id}', task_id=task.id)
        self.rows[task.id] = task_to_dict(task)

    async def update(self, task_id: str, values: dict[str, object]) -> None:
        row = self.rows.get(task_id)
        if row is None:
            raise PersistenceError(f'task not found: {task_id}', task_id=task_id)
        row.update(to_jsonable(dict(values)))

    async def batch_reorder(self, pairs: list[tuple[str, int]]) -> None:
        missing = [task_id for task_id, _ in pairs if task_id not in self.rows]
        if missing:
            raise PersistenceError(f'tasks not found: {missing}')
        for task_id, order in pairs:
            self.rows[task_id]['display_order'] = int(order)

    async def delete(self, task_id: str) -> None:
        if self.rows.pop(task_id, None) is None:
            raise PersistenceError(f'task not found: {task_id}', task_id=task_id)


class InMemoryActivityRecorder:
    def __init__(self):
        self.events: list[ActivityEvent] = []

    async def log(self, event: ActivityEvent) -> None:
        self.events.append(event)

    def list_events(self, task_id: str | None = None) -> list[ActivityEvent]:
        if task_id is None:
            return list(self.events)
        return [e for e in self.events if e.task_id == task_id]


class InMemoryNotificationDispatcher:
    def __init__(self):
        self.notifications: list[NotificationEvent] = []

    async def notify(self, event: NotificationEvent) -> None:
        self.notifications.append(event)


class LoggingNotificationDispatcher:
    """Default dispatcher when no delivery channel is wired: one log line per notification."""

    async def notify(self, event: NotificationEvent) -> None:
        _log.info(
            'notification type=%s task_id=%s recipient=%s actor=%s',
            event.type.value,
            event.task_id,
            event.recipient,
            event.actor,
        )
