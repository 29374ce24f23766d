from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, Literal

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from tasksync.domain.models import DEFAULT_SCOPE_ID, attachment_from_dict, subtask_from_dict, task_to_dict
from tasksync.engine import MutationEngine, MutationResult
from tasksync.errors import ValidationError
from tasksync.repository import InMemoryActivityRecorder, InMemoryNotificationDispatcher, InMemoryPersistenceAdapter
from tasksync.service import CreateTaskInput, TaskService
from tasksync.store import TaskStore

_log = logging.getLogger(__name__)

DEFAULT_ACTOR = 'api'


class SubtaskPayload(BaseModel):
    id: str | None = Field(default=None, max_length=64)
    text: str = Field(min_length=1, max_length=500)
    completed: bool = Field(default=False)
    priority: str = Field(default='medium')
    estimated_minutes: int | None = Field(default=None, ge=0)


class AttachmentPayload(BaseModel):
    id: str | None = Field(default=None, max_length=64)
    file_name: str = Field(min_length=1, max_length=255)
    file_type: str = Field(default='other')
    file_size: int = Field(default=0, ge=0)
    storage_path: str = Field(default='')
    mime_type: str = Field(default='application/octet-stream')
    uploaded_by: str = Field(default='')
    uploaded_at: datetime | None = None


class CreateTaskRequest(BaseModel):
    text: str = Field(min_length=1, max_length=2000)
    priority: str = Field(default='medium')
    assignee: str | None = Field(default=None, max_length=255)
    due_date: datetime | None = None
    notes: str = Field(default='')
    subtasks: list[SubtaskPayload] = Field(default_factory=list)
    attachments: list[AttachmentPayload] = Field(default_factory=list)
    transcription: str | None = None
    recurrence: str = Field(default='none')
    is_private: bool = Field(default=False)
    scope_id: str | None = Field(default=None, max_length=128)
    check_duplicates: bool = Field(default=False)


class PatchTaskRequest(BaseModel):
    kind: str = Field(min_length=1, max_length=32)
    payload: dict[str, Any] = Field(default_factory=dict)


class WaitingRequest(BaseModel):
    contact_type: Literal['call', 'email', 'other']
    follow_up_after_hours: int | None = Field(default=None, ge=1)


class ReorderRequest(BaseModel):
    ordered_task_ids: list[str]


class MoveRequest(BaseModel):
    task_id: str = Field(min_length=1)
    direction: Literal['up', 'down'] | None = None
    position: int | None = Field(default=None, ge=0)
    swap_with: str | None = None


class MergeRequest(BaseModel):
    incoming_task_id: str | None = None
    incoming: CreateTaskRequest | None = None


class MergeManyRequest(BaseModel):
    task_ids: list[str] = Field(min_length=1)


class BulkRequest(BaseModel):
    action: Literal['complete', 'assign', 'reschedule', 'set_priority', 'delete']
    task_ids: list[str] = Field(min_length=1)
    value: Any = None


class SubtaskResponse(BaseModel):
    id: str
    text: str
    completed: bool
    priority: str
    estimated_minutes: int | None


class AttachmentResponse(BaseModel):
    id: str
    file_name: str
    file_type: str
    file_size: int
    storage_path: str
    mime_type: str
    uploaded_by: str
    uploaded_at: str | None


class TaskResponse(BaseModel):
    id: str
    text: str
    status: str
    priority: str
    assignee: str | None
    due_date: str | None
    reminder_at: str | None
    reminder_sent: bool
    waiting_for_response: bool
    waiting_since: str | None
    contact_type: str | None
    follow_up_after_hours: int | None
    follow_up_at: str | None
    notes: str
    subtasks: list[SubtaskResponse]
    attachments: list[AttachmentResponse]
    recurrence: str
    is_private: bool
    display_order: int
    scope_id: str
    created_by: str | None
    created_at: str | None
    updated_at: str | None
    transcription: str | None
    merged_from: list[str]


class MutationResponse(BaseModel):
    mutation_id: str
    task_id: str | None
    state: str
    task: TaskResponse | None = None


class DuplicateResponse(BaseModel):
    task: TaskResponse
    score: float
    reasons: list[str]


class CreateTaskResponse(BaseModel):
    created: bool
    task: TaskResponse
    duplicates: list[DuplicateResponse] = Field(default_factory=list)


class ReorderResponse(BaseModel):
    scope_id: str
    ordered_task_ids: list[str]
    state: str
    changed: bool


class MergeResponse(BaseModel):
    existing_id: str
    incoming_id: str
    state: str
    attachments_added: int
    incoming_deleted: bool
    task: TaskResponse | None = None


class MergeManyResponse(BaseModel):
    primary_id: str
    merged_ids: list[str]
    state: str
    deleted: list[str]
    failed_deletes: list[str]
    attachments_dropped: int
    task: TaskResponse | None = None


class BulkResponse(BaseModel):
    succeeded: list[str]
    failed: dict[str, str]


class ActivityResponse(BaseModel):
    action: str
    task_id: str | None
    actor: str
    before: dict[str, Any]
    after: dict[str, Any]
    scope_id: str | None
    details: dict[str, Any]
    created_at: str


class StatsResponse(BaseModel):
    total: int
    status_counts: dict[str, int]
    priority_counts: dict[str, int]
    waiting: int
    follow_up_overdue: int
    pending_mutations: int


class AppState:
    def __init__(self, service: TaskService):
        self.service = service


class MutationRejected(Exception):
    """A dispatched mutation settled as rolled back."""

    def __init__(self, message: str, *, code: str):
        super().__init__(message)
        self.message = message
        self.code = code


def _to_task_response(task) -> TaskResponse:
    return TaskResponse(**task_to_dict(task))


def _to_create_input(payload: CreateTaskRequest) -> CreateTaskInput:
    return CreateTaskInput(
        text=payload.text,
        priority=payload.priority,
        assignee=payload.assignee,
        due_date=payload.due_date,
        notes=payload.notes,
        subtasks=tuple(subtask_from_dict(item.model_dump()) for item in payload.subtasks),
        attachments=tuple(attachment_from_dict(_attachment_dict(item)) for item in payload.attachments),
        transcription=payload.transcription,
        recurrence=payload.recurrence,
        is_private=payload.is_private,
        scope_id=payload.scope_id,
    )


def _attachment_dict(item: AttachmentPayload) -> dict:
    data = item.model_dump()
    if data.get('uploaded_at') is not None:
        data['uploaded_at'] = data['uploaded_at'].isoformat()
    return data


def _raise_if_rolled_back(result: MutationResult) -> None:
    if not result.ok:
        raise MutationRejected(result.error or 'persistence failed', code=result.error_code or 'persistence_failed')


def create_app(*, service: TaskService | None = None) -> FastAPI:
    if service is None:
        store = TaskStore()
        engine = MutationEngine(
            store,
            InMemoryPersistenceAdapter(),
            activity=InMemoryActivityRecorder(),
            notifier=InMemoryNotificationDispatcher(),
        )
        service = TaskService(store=store, engine=engine)

    app = FastAPI(title='tasksync api', version='0.1.0')
    app.state.container = AppState(service=service)

    def _field_from_loc(loc: tuple | list | None) -> str | None:
        if not loc:
            return None
        parts = list(loc)
        if parts and str(parts[0]) in {'body', 'query', 'path', 'header', 'cookie'}:
            parts = parts[1:]
        field = ''
        for part in parts:
            if isinstance(part, int):
                field += f'[{part}]'
            elif field:
                field += f'.{part}'
            else:
                field = str(part)
        return field or None

    def _error_payload(*, message: str, field: str | None = None, code: str = 'validation_error') -> dict:
        payload: dict[str, str] = {'code': code, 'message': message}
        if field:
            payload['field'] = field
        return payload

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError):  # noqa: ARG001
        details = exc.errors()
        if details:
            first = details[0]
            message = str(first.get('msg') or 'invalid request body')
            field = _field_from_loc(first.get('loc'))
        else:
            message = 'invalid request body'
            field = None
        return JSONResponse(status_code=400, content=_error_payload(message=message, field=field))

    @app.exception_handler(ValidationError)
    async def handle_validation_error(request: Request, exc: ValidationError):  # noqa: ARG001
        status_code = 404 if exc.code == 'task_not_found' else 400
        return JSONResponse(
            status_code=status_code,
            content=_error_payload(message=exc.message, field=exc.field, code=exc.code),
        )

    @app.exception_handler(MutationRejected)
    async def handle_mutation_rejected(request: Request, exc: MutationRejected):  # noqa: ARG001
        _log.info('mutation rejected code=%s message=%s', exc.code, exc.message)
        return JSONResponse(status_code=409, content=_error_payload(message=exc.message, code=exc.code))

    def get_service() -> TaskService:
        return app.state.container.service

    def get_actor(x_tasksync_actor: str | None = Header(default=None)) -> str:
        return str(x_tasksync_actor or '').strip() or DEFAULT_ACTOR

    def _mutation_response(service: TaskService, result: MutationResult) -> MutationResponse:
        _raise_if_rolled_back(result)
        task = service.get_task(result.task_id) if result.task_id else None
        return MutationResponse(
            mutation_id=result.mutation_id,
            task_id=result.task_id,
            state=result.state.value,
            task=_to_task_response(task) if task is not None else None,
        )

    @app.get('/healthz')
    def healthz() -> dict[str, str]:
        return {'status': 'ok'}

    @app.get('/api/tasks', response_model=list[TaskResponse])
    def list_tasks(
        service: TaskService = Depends(get_service),
        scope_id: str | None = Query(default=None, max_length=128),
    ) -> list[TaskResponse]:
        return [_to_task_response(t) for t in service.list_tasks(scope_id=scope_id)]

    @app.get('/api/tasks/{task_id}', response_model=TaskResponse)
    def get_task(task_id: str, service: TaskService = Depends(get_service)) -> TaskResponse:
        task = service.get_task(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail='task not found')
        return _to_task_response(task)

    @app.get('/api/stats', response_model=StatsResponse)
    def get_stats(service: TaskService = Depends(get_service)) -> StatsResponse:
        stats = service.get_stats()
        return StatsResponse(
            total=stats.total,
            status_counts=stats.status_counts,
            priority_counts=stats.priority_counts,
            waiting=stats.waiting,
            follow_up_overdue=stats.follow_up_overdue,
            pending_mutations=stats.pending_mutations,
        )

    @app.post('/api/tasks', response_model=CreateTaskResponse, status_code=201)
    async def create_task(
        payload: CreateTaskRequest,
        service: TaskService = Depends(get_service),
        actor: str = Depends(get_actor),
    ):
        outcome = await service.create_task(
            _to_create_input(payload),
            actor=actor,
            check_duplicates=payload.check_duplicates,
        )
        response = CreateTaskResponse(
            created=outcome.created,
            task=_to_task_response(outcome.task),
            duplicates=[
                DuplicateResponse(task=_to_task_response(m.task), score=m.score, reasons=list(m.reasons))
                for m in outcome.duplicates
            ],
        )
        if outcome.result is None:
            return JSONResponse(status_code=200, content=response.model_dump())
        _raise_if_rolled_back(outcome.result)
        return response

    @app.patch('/api/tasks/{task_id}', response_model=MutationResponse)
    async def patch_task(
        task_id: str,
        payload: PatchTaskRequest,
        service: TaskService = Depends(get_service),
        actor: str = Depends(get_actor),
    ) -> MutationResponse:
        result = await service.update_task(task_id, payload.kind, payload.payload, actor=actor)
        return _mutation_response(service, result)

    @app.delete('/api/tasks/{task_id}', response_model=MutationResponse)
    async def delete_task(
        task_id: str,
        service: TaskService = Depends(get_service),
        actor: str = Depends(get_actor),
    ) -> MutationResponse:
        result = await service.delete_task(task_id, actor=actor)
        return _mutation_response(service, result)

    @app.post('/api/tasks/{task_id}/waiting', response_model=MutationResponse)
    async def mark_waiting(
        task_id: str,
        payload: WaitingRequest,
        service: TaskService = Depends(get_service),
        actor: str = Depends(get_actor),
    ) -> MutationResponse:
        result = await service.mark_waiting(
            task_id,
            contact_type=payload.contact_type,
            follow_up_after_hours=payload.follow_up_after_hours,
            actor=actor,
        )
        return _mutation_response(service, result)

    @app.delete('/api/tasks/{task_id}/waiting', response_model=MutationResponse)
    async def clear_waiting(
        task_id: str,
        service: TaskService = Depends(get_service),
        actor: str = Depends(get_actor),
    ) -> MutationResponse:
        result = await service.clear_waiting(task_id, actor=actor)
        return _mutation_response(service, result)

    @app.post('/api/scopes/{scope_id}/reorder', response_model=ReorderResponse)
    async def reorder_scope(
        scope_id: str,
        payload: ReorderRequest,
        service: TaskService = Depends(get_service),
        actor: str = Depends(get_actor),
    ) -> ReorderResponse:
        result = await service.reorder(scope_id, payload.ordered_task_ids, actor=actor)
        if not result.ok:
            raise MutationRejected(result.error or 'persistence failed', code=result.error_code or 'persistence_failed')
        return ReorderResponse(
            scope_id=result.scope_id,
            ordered_task_ids=list(result.ordered_task_ids),
            state=result.state.value,
            changed=result.changed,
        )

    @app.post('/api/scopes/{scope_id}/move', response_model=ReorderResponse)
    async def move_task(
        scope_id: str,
        payload: MoveRequest,
        service: TaskService = Depends(get_service),
        actor: str = Depends(get_actor),
    ) -> ReorderResponse:
        result = await service.move_task(
            scope_id,
            payload.task_id,
            direction=payload.direction,
            position=payload.position,
            swap_with=payload.swap_with,
            actor=actor,
        )
        if not result.ok:
            raise MutationRejected(result.error or 'persistence failed', code=result.error_code or 'persistence_failed')
        return ReorderResponse(
            scope_id=result.scope_id,
            ordered_task_ids=list(result.ordered_task_ids),
            state=result.state.value,
            changed=result.changed,
        )

    @app.post('/api/tasks/{task_id}/merge', response_model=MergeResponse)
    async def merge_task(
        task_id: str,
        payload: MergeRequest,
        service: TaskService = Depends(get_service),
        actor: str = Depends(get_actor),
    ) -> MergeResponse:
        result = await service.merge(
            task_id,
            incoming_id=payload.incoming_task_id,
            incoming=_to_create_input(payload.incoming) if payload.incoming is not None else None,
            actor=actor,
        )
        if not result.ok:
            raise MutationRejected(result.error or 'persistence failed', code=result.error_code or 'persistence_failed')
        task = service.get_task(task_id)
        return MergeResponse(
            existing_id=result.existing_id,
            incoming_id=result.incoming_id,
            state=result.state.value,
            attachments_added=result.attachments_added,
            incoming_deleted=result.incoming_deleted,
            task=_to_task_response(task) if task is not None else None,
        )

    @app.post('/api/tasks/{task_id}/merge-many', response_model=MergeManyResponse)
    async def merge_many_tasks(
        task_id: str,
        payload: MergeManyRequest,
        service: TaskService = Depends(get_service),
        actor: str = Depends(get_actor),
    ) -> MergeManyResponse:
        result = await service.merge_many(task_id, payload.task_ids, actor=actor)
        if not result.ok:
            raise MutationRejected(result.error or 'persistence failed', code=result.error_code or 'persistence_failed')
        task = service.get_task(task_id)
        return MergeManyResponse(
            primary_id=result.primary_id,
            merged_ids=list(result.merged_ids),
            state=result.state.value,
            deleted=list(result.deleted),
            failed_deletes=list(result.failed_deletes),
            attachments_dropped=result.attachments_dropped,
            task=_to_task_response(task) if task is not None else None,
        )

    @app.post('/api/tasks/bulk', response_model=BulkResponse)
    async def bulk_action(
        payload: BulkRequest,
        service: TaskService = Depends(get_service),
        actor: str = Depends(get_actor),
    ) -> BulkResponse:
        result = await service.bulk_action(payload.action, payload.task_ids, value=payload.value, actor=actor)
        return BulkResponse(**result.to_dict())

    @app.get('/api/tasks/{task_id}/activity', response_model=list[ActivityResponse])
    def list_activity(task_id: str, service: TaskService = Depends(get_service)) -> list[ActivityResponse]:
        return [ActivityResponse(**event.to_dict()) for event in service.list_activity(task_id)]

    @app.get('/api/activity', response_model=list[ActivityResponse])
    def list_all_activity(service: TaskService = Depends(get_service)) -> list[ActivityResponse]:
        return [ActivityResponse(**event.to_dict()) for event in service.list_activity()]

    @app.get('/api/duplicates', response_model=list[DuplicateResponse])
    def find_duplicates(
        text: str = Query(min_length=1, max_length=2000),
        scope_id: str = Query(default=DEFAULT_SCOPE_ID, max_length=128),
        service: TaskService = Depends(get_service),
    ) -> list[DuplicateResponse]:
        return [
            DuplicateResponse(task=_to_task_response(m.task), score=m.score, reasons=list(m.reasons))
            for m in service.find_duplicates(text, scope_id=scope_id)
        ]

    return app
