from __future__ import annotations

import logging

from tasksync.api import create_app
from tasksync.config import Settings, load_settings
from tasksync.db import Database, SqlActivityRecorder, SqlPersistenceAdapter
from tasksync.engine import MutationEngine
from tasksync.observability import configure_observability
from tasksync.repository import InMemoryActivityRecorder, InMemoryPersistenceAdapter, LoggingNotificationDispatcher
from tasksync.service import TaskService
from tasksync.store import TaskStore

_log = logging.getLogger(__name__)


def build_service(settings: Settings) -> TaskService:
    try:
        db = Database(settings.database_url)
        db.create_schema()
        persistence = SqlPersistenceAdapter(db)
        activity = SqlActivityRecorder(db)
        tasks = persistence.load_tasks()
    except Exception:
        _log.exception('database bootstrap failed; falling back to in-memory persistence')
        persistence = InMemoryPersistenceAdapter()
        activity = InMemoryActivityRecorder()
        tasks = []

    store = TaskStore(tasks)
    engine = MutationEngine(
        store,
        persistence,
        activity=activity,
        notifier=LoggingNotificationDispatcher(),
        persistence_timeout_seconds=settings.persistence_timeout_seconds,
        follow_up_hours=settings.follow_up_hours,
    )
    _log.info('loaded %s tasks', len(store))
    return TaskService(
        store=store,
        engine=engine,
        duplicate_threshold=settings.duplicate_threshold,
        default_scope_id=settings.default_scope_id,
    )


def build_app():
    settings = load_settings()
    configure_observability(
        service_name=settings.service_name,
        otlp_endpoint=settings.otel_endpoint,
        level=getattr(logging, settings.log_level, logging.INFO),
    )
    return create_app(service=build_service(settings))


app = build_app()
