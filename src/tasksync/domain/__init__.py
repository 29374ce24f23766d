from tasksync.domain.events import EventType, NotificationType
from tasksync.domain.models import (
    MutationState,
    Task,
    TaskPriority,
    TaskStatus,
    more_urgent,
)

__all__ = [
    'EventType',
    'MutationState',
    'NotificationType',
    'Task',
    'TaskPriority',
    'TaskStatus',
    'more_urgent',
]
