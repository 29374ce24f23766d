from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from uuid import uuid4


DEFAULT_SCOPE_ID = 'default'
DEFAULT_FOLLOW_UP_HOURS = 48


class TaskStatus(str, Enum):
    TODO = 'todo'
    IN_PROGRESS = 'in_progress'
    DONE = 'done'


class TaskPriority(str, Enum):
    URGENT = 'urgent'
    HIGH = 'high'
    MEDIUM = 'medium'
    LOW = 'low'


class Recurrence(str, Enum):
    NONE = 'none'
    DAILY = 'daily'
    WEEKLY = 'weekly'
    MONTHLY = 'monthly'


class ContactType(str, Enum):
    CALL = 'call'
    EMAIL = 'email'
    OTHER = 'other'


class AttachmentCategory(str, Enum):
    DOCUMENT = 'document'
    IMAGE = 'image'
    AUDIO = 'audio'
    VIDEO = 'video'
    ARCHIVE = 'archive'
    OTHER = 'other'


class MutationState(str, Enum):
    PENDING = 'pending'
    COMMITTED = 'committed'
    ROLLED_BACK = 'rolled_back'


# Lower rank is more urgent.
PRIORITY_RANK: dict[TaskPriority, int] = {
    TaskPriority.URGENT: 0,
    TaskPriority.HIGH: 1,
    TaskPriority.MEDIUM: 2,
    TaskPriority.LOW: 3,
}


def more_urgent(a: TaskPriority, b: TaskPriority) -> TaskPriority:
    """Return the more urgent of two priorities; ties keep ``a``."""
    return b if PRIORITY_RANK[b] < PRIORITY_RANK[a] else a


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def next_due_date(due_date: datetime | None, recurrence: Recurrence, *, now: datetime | None = None) -> datetime | None:
    if recurrence == Recurrence.NONE:
        return None
    base = due_date or now or utc_now()
    if recurrence == Recurrence.DAILY:
        return base + timedelta(days=1)
    if recurrence == Recurrence.WEEKLY:
        return base + timedelta(days=7)
    return _add_months(base, 1)


@dataclass(frozen=True)
class Subtask:
    id: str
    text: str
    completed: bool = False
    priority: TaskPriority = TaskPriority.MEDIUM
    estimated_minutes: int | None = None


@dataclass(frozen=True)
class Attachment:
    id: str
    file_name: str
    file_type: AttachmentCategory = AttachmentCategory.OTHER
    file_size: int = 0
    storage_path: str = ''
    mime_type: str = 'application/octet-stream'
    uploaded_by: str = ''
    uploaded_at: datetime | None = None


@dataclass(frozen=True)
class Task:
    id: str
    text: str
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    assignee: str | None = None
    due_date: datetime | None = None
    reminder_at: datetime | None = None
    reminder_sent: bool = False
    waiting_for_response: bool = False
    waiting_since: datetime | None = None
    contact_type: ContactType | None = None
    follow_up_after_hours: int | None = None
    follow_up_at: datetime | None = None
    notes: str = ''
    subtasks: tuple[Subtask, ...] = ()
    attachments: tuple[Attachment, ...] = ()
    recurrence: Recurrence = Recurrence.NONE
    is_private: bool = False
    display_order: int = 0
    scope_id: str = DEFAULT_SCOPE_ID
    created_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    transcription: str | None = None
    merged_from: tuple[str, ...] = ()

    @property
    def completed(self) -> bool:
        return self.status == TaskStatus.DONE


TASK_FIELDS = frozenset(Task.__dataclass_fields__)
# Fields that are never written through a field patch.
IMMUTABLE_FIELDS = frozenset({'id', 'scope_id', 'created_by', 'created_at', 'updated_at', 'display_order'})


def is_follow_up_overdue(task: Task, *, now: datetime | None = None) -> bool:
    if not task.waiting_for_response or task.follow_up_at is None:
        return False
    return (now or utc_now()) >= task.follow_up_at


def task_to_dict(task: Task) -> dict:
    def _ts(value: datetime | None) -> str | None:
        return value.isoformat() if value is not None else None

    return {
        'id': task.id,
        'text': task.text,
        'status': task.status.value,
        'priority': task.priority.value,
        'assignee': task.assignee,
        'due_date': _ts(task.due_date),
        'reminder_at': _ts(task.reminder_at),
        'reminder_sent': task.reminder_sent,
        'waiting_for_response': task.waiting_for_response,
        'waiting_since': _ts(task.waiting_since),
        'contact_type': task.contact_type.value if task.contact_type else None,
        'follow_up_after_hours': task.follow_up_after_hours,
        'follow_up_at': _ts(task.follow_up_at),
        'notes': task.notes,
        'subtasks': [subtask_to_dict(s) for s in task.subtasks],
        'attachments': [attachment_to_dict(a) for a in task.attachments],
        'recurrence': task.recurrence.value,
        'is_private': task.is_private,
        'display_order': task.display_order,
        'scope_id': task.scope_id,
        'created_by': task.created_by,
        'created_at': _ts(task.created_at),
        'updated_at': _ts(task.updated_at),
        'transcription': task.transcription,
        'merged_from': list(task.merged_from),
    }


def subtask_to_dict(subtask: Subtask) -> dict:
    return {
        'id': subtask.id,
        'text': subtask.text,
        'completed': subtask.completed,
        'priority': subtask.priority.value,
        'estimated_minutes': subtask.estimated_minutes,
    }


def subtask_from_dict(data: dict) -> Subtask:
    minutes = data.get('estimated_minutes')
    return Subtask(
        id=str(data.get('id') or new_id()),
        text=str(data.get('text') or ''),
        completed=bool(data.get('completed', False)),
        priority=TaskPriority(data.get('priority') or TaskPriority.MEDIUM.value),
        estimated_minutes=int(minutes) if minutes is not None else None,
    )


def attachment_to_dict(attachment: Attachment) -> dict:
    return {
        'id': attachment.id,
        'file_name': attachment.file_name,
        'file_type': attachment.file_type.value,
        'file_size': attachment.file_size,
        'storage_path': attachment.storage_path,
        'mime_type': attachment.mime_type,
        'uploaded_by': attachment.uploaded_by,
        'uploaded_at': attachment.uploaded_at.isoformat() if attachment.uploaded_at else None,
    }


def attachment_from_dict(data: dict) -> Attachment:
    uploaded_at = data.get('uploaded_at')
    return Attachment(
        id=str(data.get('id') or new_id()),
        file_name=str(data.get('file_name') or ''),
        file_type=AttachmentCategory(data.get('file_type') or AttachmentCategory.OTHER.value),
        file_size=int(data.get('file_size') or 0),
        storage_path=str(data.get('storage_path') or ''),
        mime_type=str(data.get('mime_type') or 'application/octet-stream'),
        uploaded_by=str(data.get('uploaded_by') or ''),
        uploaded_at=datetime.fromisoformat(uploaded_at) if uploaded_at else None,
    )


def to_jsonable(value):
    """Convert task field values (enums, timestamps, nested records) to JSON-safe data."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Subtask):
        return subtask_to_dict(value)
    if isinstance(value, Attachment):
        return attachment_to_dict(value)
    if isinstance(value, Task):
        return task_to_dict(value)
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


def _parse_ts(value) -> datetime | None:
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def task_from_dict(data: dict) -> Task:
    contact_type = data.get('contact_type')
    hours = data.get('follow_up_after_hours')
    return Task(
        id=str(data.get('id') or new_id()),
        text=str(data.get('text') or ''),
        status=TaskStatus(data.get('status') or TaskStatus.TODO.value),
        priority=TaskPriority(data.get('priority') or TaskPriority.MEDIUM.value),
        assignee=data.get('assignee') or None,
        due_date=_parse_ts(data.get('due_date')),
        reminder_at=_parse_ts(data.get('reminder_at')),
        reminder_sent=bool(data.get('reminder_sent', False)),
        waiting_for_response=bool(data.get('waiting_for_response', False)),
        waiting_since=_parse_ts(data.get('waiting_since')),
        contact_type=ContactType(contact_type) if contact_type else None,
        follow_up_after_hours=int(hours) if hours is not None else None,
        follow_up_at=_parse_ts(data.get('follow_up_at')),
        notes=str(data.get('notes') or ''),
        subtasks=tuple(subtask_from_dict(dict(s)) for s in (data.get('subtasks') or [])),
        attachments=tuple(attachment_from_dict(dict(a)) for a in (data.get('attachments') or [])),
        recurrence=Recurrence(data.get('recurrence') or Recurrence.NONE.value),
        is_private=bool(data.get('is_private', False)),
        display_order=int(data.get('display_order') or 0),
        scope_id=str(data.get('scope_id') or DEFAULT_SCOPE_ID),
        created_by=data.get('created_by') or None,
        created_at=_parse_ts(data.get('created_at')),
        updated_at=_parse_ts(data.get('updated_at')),
        transcription=data.get('transcription') or None,
        merged_from=tuple(str(x) for x in (data.get('merged_from') or [])),
    )
