from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import ClassVar, Union

from tasksync.domain.events import EventType
from tasksync.domain.models import (
    Attachment,
    ContactType,
    Recurrence,
    Subtask,
    Task,
    TaskPriority,
    TaskStatus,
    attachment_from_dict,
    subtask_from_dict,
)
from tasksync.errors import ValidationError

MAX_ATTACHMENTS_PER_TASK = 10
MAX_TEXT_LENGTH = 2000
MAX_FOLLOW_UP_HOURS = 24 * 90


def _coerce_enum(enum_cls, value, field: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value or '').strip().lower())
    except ValueError as exc:
        allowed = ', '.join(e.value for e in enum_cls)
        raise ValidationError(f'{field} must be one of: {allowed}', field=field) from exc


def _coerce_datetime(value, field: str) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            value = datetime.fromisoformat(text.replace('Z', '+00:00'))
        except ValueError as exc:
            raise ValidationError(f'{field} must be an ISO-8601 timestamp', field=field) from exc
    if not isinstance(value, datetime):
        raise ValidationError(f'{field} must be a timestamp', field=field)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class ResolveContext:
    now: datetime
    follow_up_hours: int


class _Patch:
    """Base for the closed set of field patches.

    ``resolve`` turns the patch into the concrete field values written to the
    store and sent to persistence; every field it returns is snapshotted and
    rolled back as one unit.
    """

    kind: ClassVar[str] = ''
    fields: ClassVar[tuple[str, ...]] = ()
    notifies: ClassVar[bool] = False

    def resolve(self, task: Task, ctx: ResolveContext) -> dict[str, object]:
        raise NotImplementedError

    def activity_action(self, before: Task, after: dict[str, object]) -> EventType:
        return EventType.TASK_UPDATED

    def activity_details(self, before: Task, now: datetime) -> dict[str, object]:
        return {}


@dataclass(frozen=True)
class TextPatch(_Patch):
    kind: ClassVar[str] = 'text'
    fields: ClassVar[tuple[str, ...]] = ('text',)

    text: str

    def __post_init__(self):
        text = str(self.text or '').strip()
        if not text:
            raise ValidationError('text is required', field='text')
        if len(text) > MAX_TEXT_LENGTH:
            raise ValidationError(f'text must be at most {MAX_TEXT_LENGTH} characters', field='text')
        object.__setattr__(self, 'text', text)

    def resolve(self, task: Task, ctx: ResolveContext) -> dict[str, object]:
        return {'text': self.text}


@dataclass(frozen=True)
class StatusPatch(_Patch):
    kind: ClassVar[str] = 'status'
    fields: ClassVar[tuple[str, ...]] = ('status',)

    status: TaskStatus

    def __post_init__(self):
        object.__setattr__(self, 'status', _coerce_enum(TaskStatus, self.status, 'status'))

    def resolve(self, task: Task, ctx: ResolveContext) -> dict[str, object]:
        return {'status': self.status}

    def activity_action(self, before: Task, after: dict[str, object]) -> EventType:
        if self.status == TaskStatus.DONE and before.status != TaskStatus.DONE:
            return EventType.TASK_COMPLETED
        if before.status == TaskStatus.DONE and self.status != TaskStatus.DONE:
            return EventType.TASK_REOPENED
        return EventType.STATUS_CHANGED


@dataclass(frozen=True)
class PriorityPatch(_Patch):
    kind: ClassVar[str] = 'priority'
    fields: ClassVar[tuple[str, ...]] = ('priority',)

    priority: TaskPriority

    def __post_init__(self):
        object.__setattr__(self, 'priority', _coerce_enum(TaskPriority, self.priority, 'priority'))

    def resolve(self, task: Task, ctx: ResolveContext) -> dict[str, object]:
        return {'priority': self.priority}

    def activity_action(self, before: Task, after: dict[str, object]) -> EventType:
        return EventType.PRIORITY_CHANGED


@dataclass(frozen=True)
class AssigneePatch(_Patch):
    kind: ClassVar[str] = 'assignee'
    fields: ClassVar[tuple[str, ...]] = ('assignee',)
    notifies: ClassVar[bool] = True

    assignee: str | None

    def __post_init__(self):
        assignee = None
        if self.assignee is not None:
            assignee = str(self.assignee).strip() or None
        object.__setattr__(self, 'assignee', assignee)

    def resolve(self, task: Task, ctx: ResolveContext) -> dict[str, object]:
        return {'assignee': self.assignee}

    def activity_action(self, before: Task, after: dict[str, object]) -> EventType:
        return EventType.ASSIGNED_TO_CHANGED


@dataclass(frozen=True)
class DueDatePatch(_Patch):
    kind: ClassVar[str] = 'due_date'
    fields: ClassVar[tuple[str, ...]] = ('due_date',)

    due_date: datetime | None

    def __post_init__(self):
        object.__setattr__(self, 'due_date', _coerce_datetime(self.due_date, 'due_date'))

    def resolve(self, task: Task, ctx: ResolveContext) -> dict[str, object]:
        return {'due_date': self.due_date}

    def activity_action(self, before: Task, after: dict[str, object]) -> EventType:
        return EventType.DUE_DATE_CHANGED


@dataclass(frozen=True)
class ReminderPatch(_Patch):
    kind: ClassVar[str] = 'reminder'
    fields: ClassVar[tuple[str, ...]] = ('reminder_at', 'reminder_sent')

    reminder_at: datetime | None

    def __post_init__(self):
        object.__setattr__(self, 'reminder_at', _coerce_datetime(self.reminder_at, 'reminder_at'))

    def resolve(self, task: Task, ctx: ResolveContext) -> dict[str, object]:
        return {'reminder_at': self.reminder_at, 'reminder_sent': False}

    def activity_action(self, before: Task, after: dict[str, object]) -> EventType:
        return EventType.REMINDER_ADDED if self.reminder_at is not None else EventType.REMINDER_REMOVED


@dataclass(frozen=True)
class WaitingPatch(_Patch):
    """Mark a task as waiting for a customer response.

    Sets ``waiting_since`` to the dispatch time and the follow-up deadline
    ``follow_up_at`` as one compound write.
    """

    kind: ClassVar[str] = 'waiting'
    fields: ClassVar[tuple[str, ...]] = (
        'waiting_for_response',
        'waiting_since',
        'contact_type',
        'follow_up_after_hours',
        'follow_up_at',
    )

    contact_type: ContactType
    follow_up_after_hours: int | None = None

    def __post_init__(self):
        object.__setattr__(self, 'contact_type', _coerce_enum(ContactType, self.contact_type, 'contact_type'))
        hours = self.follow_up_after_hours
        if hours is not None:
            try:
                hours = int(hours)
            except (TypeError, ValueError) as exc:
                raise ValidationError('follow_up_after_hours must be an integer', field='follow_up_after_hours') from exc
            if hours < 1 or hours > MAX_FOLLOW_UP_HOURS:
                raise ValidationError(
                    f'follow_up_after_hours must be between 1 and {MAX_FOLLOW_UP_HOURS}',
                    field='follow_up_after_hours',
                )
            object.__setattr__(self, 'follow_up_after_hours', hours)

    def resolve(self, task: Task, ctx: ResolveContext) -> dict[str, object]:
        hours = self.follow_up_after_hours or ctx.follow_up_hours
        return {
            'waiting_for_response': True,
            'waiting_since': ctx.now,
            'contact_type': self.contact_type,
            'follow_up_after_hours': hours,
            'follow_up_at': ctx.now + timedelta(hours=hours),
        }

    def activity_action(self, before: Task, after: dict[str, object]) -> EventType:
        return EventType.MARKED_WAITING


@dataclass(frozen=True)
class ClearWaitingPatch(_Patch):
    kind: ClassVar[str] = 'clear_waiting'
    fields: ClassVar[tuple[str, ...]] = WaitingPatch.fields

    def resolve(self, task: Task, ctx: ResolveContext) -> dict[str, object]:
        return {
            'waiting_for_response': False,
            'waiting_since': None,
            'contact_type': None,
            'follow_up_after_hours': None,
            'follow_up_at': None,
        }

    def activity_action(self, before: Task, after: dict[str, object]) -> EventType:
        return EventType.CUSTOMER_RESPONDED

    def activity_details(self, before: Task, now: datetime) -> dict[str, object]:
        if before.waiting_since is None:
            return {}
        waited = (now - before.waiting_since).total_seconds() / 3600
        return {'waited_hours': round(waited, 1)}


@dataclass(frozen=True)
class NotesPatch(_Patch):
    kind: ClassVar[str] = 'notes'
    fields: ClassVar[tuple[str, ...]] = ('notes',)

    notes: str

    def __post_init__(self):
        object.__setattr__(self, 'notes', str(self.notes or ''))

    def resolve(self, task: Task, ctx: ResolveContext) -> dict[str, object]:
        return {'notes': self.notes}

    def activity_action(self, before: Task, after: dict[str, object]) -> EventType:
        return EventType.NOTES_UPDATED


@dataclass(frozen=True)
class SubtasksPatch(_Patch):
    kind: ClassVar[str] = 'subtasks'
    fields: ClassVar[tuple[str, ...]] = ('subtasks',)

    subtasks: tuple[Subtask, ...]

    def __post_init__(self):
        items = tuple(self.subtasks or ())
        if any(not isinstance(item, Subtask) for item in items):
            raise ValidationError('subtasks must contain Subtask items', field='subtasks')
        ids = [item.id for item in items]
        if len(set(ids)) != len(ids):
            raise ValidationError('subtask ids must be unique', field='subtasks')
        object.__setattr__(self, 'subtasks', items)

    def resolve(self, task: Task, ctx: ResolveContext) -> dict[str, object]:
        return {'subtasks': self.subtasks}

    def activity_action(self, before: Task, after: dict[str, object]) -> EventType:
        before_ids = {s.id for s in before.subtasks}
        after_ids = {s.id for s in self.subtasks}
        if after_ids - before_ids:
            return EventType.SUBTASK_ADDED
        if before_ids - after_ids:
            return EventType.SUBTASK_DELETED
        before_done = {s.id for s in before.subtasks if s.completed}
        if {s.id for s in self.subtasks if s.completed} - before_done:
            return EventType.SUBTASK_COMPLETED
        return EventType.TASK_UPDATED


@dataclass(frozen=True)
class AttachmentsPatch(_Patch):
    kind: ClassVar[str] = 'attachments'
    fields: ClassVar[tuple[str, ...]] = ('attachments',)

    attachments: tuple[Attachment, ...]

    def __post_init__(self):
        items = tuple(self.attachments or ())
        if any(not isinstance(item, Attachment) for item in items):
            raise ValidationError('attachments must contain Attachment items', field='attachments')
        if len(items) > MAX_ATTACHMENTS_PER_TASK:
            raise ValidationError(
                f'a task can hold at most {MAX_ATTACHMENTS_PER_TASK} attachments',
                field='attachments',
            )
        object.__setattr__(self, 'attachments', items)

    def resolve(self, task: Task, ctx: ResolveContext) -> dict[str, object]:
        return {'attachments': self.attachments}

    def activity_action(self, before: Task, after: dict[str, object]) -> EventType:
        if len(self.attachments) < len(before.attachments):
            return EventType.ATTACHMENT_REMOVED
        return EventType.ATTACHMENT_ADDED


@dataclass(frozen=True)
class RecurrencePatch(_Patch):
    kind: ClassVar[str] = 'recurrence'
    fields: ClassVar[tuple[str, ...]] = ('recurrence',)

    recurrence: Recurrence

    def __post_init__(self):
        object.__setattr__(self, 'recurrence', _coerce_enum(Recurrence, self.recurrence, 'recurrence'))

    def resolve(self, task: Task, ctx: ResolveContext) -> dict[str, object]:
        return {'recurrence': self.recurrence}


@dataclass(frozen=True)
class PrivacyPatch(_Patch):
    kind: ClassVar[str] = 'privacy'
    fields: ClassVar[tuple[str, ...]] = ('is_private',)
    notifies: ClassVar[bool] = True

    is_private: bool

    def __post_init__(self):
        if not isinstance(self.is_private, bool):
            raise ValidationError('is_private must be a boolean', field='is_private')

    def resolve(self, task: Task, ctx: ResolveContext) -> dict[str, object]:
        return {'is_private': self.is_private}


@dataclass(frozen=True)
class MergePatch(_Patch):
    """Combined field values produced by a duplicate merge.

    ``text`` and ``attachments`` are only written by a multi-task merge;
    ``None`` leaves them untouched.
    """

    kind: ClassVar[str] = 'merge'
    fields: ClassVar[tuple[str, ...]] = (
        'notes', 'subtasks', 'priority', 'due_date', 'merged_from', 'text', 'attachments',
    )

    notes: str
    subtasks: tuple[Subtask, ...]
    priority: TaskPriority
    due_date: datetime | None
    merged_from: tuple[str, ...]
    text: str | None = None
    attachments: tuple[Attachment, ...] | None = None

    def __post_init__(self):
        if self.text is not None:
            object.__setattr__(self, 'text', TextPatch(self.text).text)
        if self.attachments is not None:
            object.__setattr__(self, 'attachments', AttachmentsPatch(self.attachments).attachments)

    def resolve(self, task: Task, ctx: ResolveContext) -> dict[str, object]:
        values: dict[str, object] = {
            'notes': self.notes,
            'subtasks': self.subtasks,
            'priority': self.priority,
            'due_date': self.due_date,
            'merged_from': self.merged_from,
        }
        if self.text is not None:
            values['text'] = self.text
        if self.attachments is not None:
            values['attachments'] = self.attachments
        return values

    def activity_action(self, before: Task, after: dict[str, object]) -> EventType:
        return EventType.TASKS_MERGED

    def activity_details(self, before: Task, now: datetime) -> dict[str, object]:
        added = self.merged_from[len(before.merged_from):]
        if len(added) > 1:
            return {'merged_task_ids': list(added)}
        return {'merged_task_id': self.merged_from[-1]} if self.merged_from else {}


FieldPatch = Union[
    TextPatch,
    StatusPatch,
    PriorityPatch,
    AssigneePatch,
    DueDatePatch,
    ReminderPatch,
    WaitingPatch,
    ClearWaitingPatch,
    NotesPatch,
    SubtasksPatch,
    AttachmentsPatch,
    RecurrencePatch,
    PrivacyPatch,
    MergePatch,
]

PATCH_TYPES: tuple[type, ...] = (
    TextPatch,
    StatusPatch,
    PriorityPatch,
    AssigneePatch,
    DueDatePatch,
    ReminderPatch,
    WaitingPatch,
    ClearWaitingPatch,
    NotesPatch,
    SubtasksPatch,
    AttachmentsPatch,
    RecurrencePatch,
    PrivacyPatch,
    MergePatch,
)

_PATCHES_BY_KIND: dict[str, type] = {cls.kind: cls for cls in PATCH_TYPES if cls is not MergePatch}


def ensure_patch(value) -> FieldPatch:
    if not isinstance(value, PATCH_TYPES):
        raise ValidationError(f'unsupported patch type: {type(value).__name__}', field='patch', code='unsupported_patch')
    return value


def patch_from_payload(kind: str, payload: dict) -> FieldPatch:
    """Build a patch from a ``kind`` tag and a plain payload (API/CLI input)."""
    key = str(kind or '').strip().lower()
    cls = _PATCHES_BY_KIND.get(key)
    if cls is None:
        raise ValidationError(f'unknown patch kind: {kind}', field='kind', code='unsupported_patch')
    data = dict(payload or {})
    try:
        if cls is SubtasksPatch and isinstance(data.get('subtasks'), list):
            data['subtasks'] = tuple(
                item if isinstance(item, Subtask) else subtask_from_dict(dict(item))
                for item in data['subtasks']
            )
        if cls is AttachmentsPatch and isinstance(data.get('attachments'), list):
            data['attachments'] = tuple(
                item if isinstance(item, Attachment) else attachment_from_dict(dict(item))
                for item in data['attachments']
            )
        return cls(**data)
    except ValidationError:
        raise
    except (TypeError, ValueError) as exc:
        raise ValidationError(f'invalid payload for {key} patch: {exc}', field='payload') from exc
