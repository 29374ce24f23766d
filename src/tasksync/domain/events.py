from __future__ import annotations

from enum import Enum


class EventType(str, Enum):
    ASSIGNED_TO_CHANGED = 'assigned_to_changed'
    ATTACHMENT_ADDED = 'attachment_added'
    ATTACHMENT_REMOVED = 'attachment_removed'
    CUSTOMER_RESPONDED = 'customer_responded'
    DUE_DATE_CHANGED = 'due_date_changed'
    MARKED_WAITING = 'marked_waiting'
    NOTES_UPDATED = 'notes_updated'
    PRIORITY_CHANGED = 'priority_changed'
    REMINDER_ADDED = 'reminder_added'
    REMINDER_REMOVED = 'reminder_removed'
    STATUS_CHANGED = 'status_changed'
    SUBTASK_ADDED = 'subtask_added'
    SUBTASK_COMPLETED = 'subtask_completed'
    SUBTASK_DELETED = 'subtask_deleted'
    TASK_COMPLETED = 'task_completed'
    TASK_CREATED = 'task_created'
    TASK_DELETED = 'task_deleted'
    TASK_REOPENED = 'task_reopened'
    TASK_REORDERED = 'task_reordered'
    TASK_UPDATED = 'task_updated'
    TASKS_MERGED = 'tasks_merged'


class NotificationType(str, Enum):
    TASK_ASSIGNED = 'task_assigned'
    TASK_UNASSIGNED = 'task_unassigned'
    PRIVACY_CHANGED = 'privacy_changed'
