from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from tasksync.bulk import BulkOperationCoordinator, BulkResult
from tasksync.domain.models import (
    DEFAULT_SCOPE_ID,
    Attachment,
    Recurrence,
    Subtask,
    Task,
    TaskPriority,
    is_follow_up_overdue,
    new_id,
    utc_now,
)
from tasksync.domain.patches import (
    AttachmentsPatch,
    ClearWaitingPatch,
    DueDatePatch,
    PriorityPatch,
    RecurrencePatch,
    SubtasksPatch,
    TextPatch,
    WaitingPatch,
    patch_from_payload,
)
from tasksync.duplicates import DuplicateMatch, find_potential_duplicates, should_check_for_duplicates
from tasksync.engine import MutationEngine, MutationResult
from tasksync.errors import ValidationError, task_not_found
from tasksync.merge import DuplicateMergeResolver, MergeManyResult, MergeResult
from tasksync.observability import get_logger
from tasksync.reorder import ReorderCoordinator, ReorderResult
from tasksync.repository import ActivityEvent
from tasksync.store import TaskStore

_log = get_logger('tasksync.service')

BULK_ACTIONS = ('complete', 'assign', 'reschedule', 'set_priority', 'delete')


@dataclass(frozen=True)
class CreateTaskInput:
    text: str
    priority: TaskPriority | str = TaskPriority.MEDIUM
    assignee: str | None = None
    due_date: datetime | str | None = None
    notes: str = ''
    subtasks: tuple[Subtask, ...] = ()
    attachments: tuple[Attachment, ...] = ()
    transcription: str | None = None
    recurrence: Recurrence | str = Recurrence.NONE
    is_private: bool = False
    scope_id: str | None = None


@dataclass(frozen=True)
class CreateTaskOutcome:
    task: Task
    result: MutationResult | None
    duplicates: list[DuplicateMatch] = field(default_factory=list)

    @property
    def created(self) -> bool:
        return self.result is not None and self.result.ok


@dataclass(frozen=True)
class StatsView:
    total: int
    status_counts: dict[str, int]
    priority_counts: dict[str, int]
    waiting: int
    follow_up_overdue: int
    pending_mutations: int


class TaskService:
    """Entry point for outer surfaces (HTTP API, CLI) over the mutation layer."""

    def __init__(
        self,
        *,
        store: TaskStore,
        engine: MutationEngine,
        activity=None,
        duplicate_threshold: float = 0.3,
        default_scope_id: str = DEFAULT_SCOPE_ID,
    ):
        self.store = store
        self.engine = engine
        self.activity = activity if activity is not None else engine.activity
        self.duplicate_threshold = float(duplicate_threshold)
        self.default_scope_id = default_scope_id
        self.reorderer = ReorderCoordinator(engine)
        self.merger = DuplicateMergeResolver(engine)
        self.bulk = BulkOperationCoordinator(engine)

    # ---- reads ----

    def list_tasks(self, *, scope_id: str | None = None) -> list[Task]:
        return self.store.list_tasks(scope_id=scope_id)

    def get_task(self, task_id: str) -> Task | None:
        return self.store.get(task_id)

    def get_stats(self, *, now: datetime | None = None) -> StatsView:
        tasks = self.store.list_tasks()
        status_counts: dict[str, int] = {}
        priority_counts: dict[str, int] = {}
        for task in tasks:
            status_counts[task.status.value] = status_counts.get(task.status.value, 0) + 1
            priority_counts[task.priority.value] = priority_counts.get(task.priority.value, 0) + 1
        current = now or utc_now()
        return StatsView(
            total=len(tasks),
            status_counts=status_counts,
            priority_counts=priority_counts,
            waiting=sum(1 for t in tasks if t.waiting_for_response),
            follow_up_overdue=sum(1 for t in tasks if is_follow_up_overdue(t, now=current)),
            pending_mutations=self.engine.pending_count(),
        )

    def list_activity(self, task_id: str | None = None) -> list[ActivityEvent]:
        if self.activity is None or not hasattr(self.activity, 'list_events'):
            return []
        return list(self.activity.list_events(task_id))

    def find_duplicates(self, text: str, *, scope_id: str | None = None) -> list[DuplicateMatch]:
        if not should_check_for_duplicates(text):
            return []
        return find_potential_duplicates(
            text,
            self.store.list_tasks(scope_id=scope_id),
            threshold=self.duplicate_threshold,
        )

    # ---- writes ----

    def build_task(self, payload: CreateTaskInput, *, actor: str) -> Task:
        """Validate a create payload into a new, not yet stored, Task."""
        return Task(
            id=new_id(),
            text=TextPatch(payload.text).text,
            priority=PriorityPatch(payload.priority).priority,
            assignee=(str(payload.assignee).strip() or None) if payload.assignee else None,
            due_date=DueDatePatch(payload.due_date).due_date,
            notes=str(payload.notes or ''),
            subtasks=SubtasksPatch(tuple(payload.subtasks)).subtasks,
            attachments=AttachmentsPatch(tuple(payload.attachments)).attachments,
            transcription=payload.transcription or None,
            recurrence=RecurrencePatch(payload.recurrence).recurrence,
            is_private=bool(payload.is_private),
            scope_id=str(payload.scope_id or self.default_scope_id),
            created_by=actor,
        )

    async def create_task(self, payload: CreateTaskInput, *, actor: str, check_duplicates: bool = False) -> CreateTaskOutcome:
        task = self.build_task(payload, actor=actor)
        duplicates = self.find_duplicates(task.text, scope_id=task.scope_id) if check_duplicates else []
        if duplicates:
            _log.info('create skipped; %s potential duplicates for new task text', len(duplicates))
            return CreateTaskOutcome(task=task, result=None, duplicates=duplicates)
        result = await self.engine.create(task, actor=actor)
        stored = self.store.get(task.id) or task
        return CreateTaskOutcome(task=stored, result=result)

    async def update_task(self, task_id: str, kind: str, payload: dict, *, actor: str) -> MutationResult:
        patch = patch_from_payload(kind, payload)
        return await self.engine.apply(task_id, patch, actor=actor)

    async def mark_waiting(
        self,
        task_id: str,
        *,
        contact_type: str,
        follow_up_after_hours: int | None = None,
        actor: str,
    ) -> MutationResult:
        patch = WaitingPatch(contact_type, follow_up_after_hours)
        return await self.engine.apply(task_id, patch, actor=actor)

    async def clear_waiting(self, task_id: str, *, actor: str) -> MutationResult:
        return await self.engine.apply(task_id, ClearWaitingPatch(), actor=actor)

    async def delete_task(self, task_id: str, *, actor: str) -> MutationResult:
        return await self.engine.delete(task_id, actor=actor)

    async def reorder(self, scope_id: str, ordered_task_ids: list[str], *, actor: str) -> ReorderResult:
        return await self.reorderer.reorder(scope_id, ordered_task_ids, actor=actor)

    async def move_task(
        self,
        scope_id: str,
        task_id: str,
        *,
        direction: str | None = None,
        position: int | None = None,
        swap_with: str | None = None,
        actor: str,
    ) -> ReorderResult:
        if swap_with:
            return await self.reorderer.swap(scope_id, task_id, swap_with, actor=actor)
        if position is not None:
            return await self.reorderer.move_to_position(scope_id, task_id, position, actor=actor)
        if direction:
            return await self.reorderer.move(scope_id, task_id, direction, actor=actor)
        raise ValidationError('one of direction, position or swap_with is required', field='direction')

    async def merge(
        self,
        existing_id: str,
        *,
        incoming_id: str | None = None,
        incoming: CreateTaskInput | None = None,
        actor: str,
    ) -> MergeResult:
        if incoming_id:
            candidate = self.store.get(incoming_id)
            if candidate is None:
                raise task_not_found(incoming_id)
        elif incoming is not None:
            candidate = self.build_task(incoming, actor=actor)
        else:
            raise ValidationError('incoming_task_id or incoming is required', field='incoming')
        return await self.merger.merge(existing_id, candidate, actor=actor)

    async def merge_many(self, primary_id: str, task_ids: list[str], *, actor: str) -> MergeManyResult:
        return await self.merger.merge_many(primary_id, task_ids, actor=actor)

    async def bulk_action(self, action: str, task_ids: list[str], *, value=None, actor: str) -> BulkResult:
        key = str(action or '').strip().lower()
        if key == 'complete':
            return await self.bulk.complete(task_ids, actor=actor)
        if key == 'assign':
            return await self.bulk.assign(task_ids, value, actor=actor)
        if key == 'reschedule':
            return await self.bulk.reschedule(task_ids, value, actor=actor)
        if key == 'set_priority':
            return await self.bulk.set_priority(task_ids, value, actor=actor)
        if key == 'delete':
            return await self.bulk.delete(task_ids, actor=actor)
        raise ValidationError(f'action must be one of: {", ".join(BULK_ACTIONS)}', field='action')

