from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from itertools import count
from pathlib import Path
import sys

import pytest


def _prepend_repo_src_to_syspath() -> None:
    src = Path(__file__).resolve().parents[1] / 'src'
    if not src.is_dir():
        return
    src_text = str(src)
    key = src_text.replace('\\', '/').lower()
    rest = [p for p in sys.path if str(p or '').replace('\\', '/').lower() != key]
    sys.path[:] = [src_text, *rest]


_prepend_repo_src_to_syspath()

from tasksync.domain.models import Task  # noqa: E402
from tasksync.engine import MutationEngine  # noqa: E402
from tasksync.errors import PersistenceError  # noqa: E402
from tasksync.repository import (  # noqa: E402
    InMemoryActivityRecorder,
    InMemoryNotificationDispatcher,
    InMemoryPersistenceAdapter,
)
from tasksync.store import TaskStore  # noqa: E402

BASE_TIME = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class ScriptedPersistence(InMemoryPersistenceAdapter):
    """In-memory persistence with injectable failures, delays and manual gates."""

    def __init__(self, tasks=None):
        super().__init__(tasks)
        self.fail_task_ids: set[str] = set()
        self.fail_reorder = False
        self.fail_inserts = False
        self.delay_seconds = 0.0
        self.gated = False
        self.gates: list[asyncio.Future] = []
        self.calls: list[tuple[str, object]] = []

    async def _before(self, method: str, arg, task_id: str | None = None) -> None:
        self.calls.append((method, arg))
        if self.gated:
            gate = asyncio.get_running_loop().create_future()
            self.gates.append(gate)
            await gate
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if task_id is not None and task_id in self.fail_task_ids:
            raise PersistenceError(f'remote write rejected for {task_id}', task_id=task_id)

    async def insert(self, task):
        await self._before('insert', task.id, task.id)
        if self.fail_inserts:
            raise PersistenceError('insert rejected', task_id=task.id)
        await super().insert(task)

    async def update(self, task_id, values):
        await self._before('update', (task_id, dict(values)), task_id)
        await super().update(task_id, values)

    async def batch_reorder(self, pairs):
        await self._before('batch_reorder', list(pairs))
        if self.fail_reorder:
            raise PersistenceError('batch reorder rejected')
        await super().batch_reorder(pairs)

    async def delete(self, task_id):
        await self._before('delete', task_id, task_id)
        await super().delete(task_id)

    async def wait_for_gates(self, expected: int) -> None:
        for _ in range(200):
            if len(self.gates) >= expected:
                return
            await asyncio.sleep(0)
        raise AssertionError(f'expected {expected} gated calls, saw {len(self.gates)}')

    def release(self, index: int, *, ok: bool = True, message: str = 'remote write rejected') -> None:
        gate = self.gates[index]
        if ok:
            gate.set_result(None)
        else:
            gate.set_exception(PersistenceError(message))


class FailingActivityRecorder:
    async def log(self, event):
        raise RuntimeError('activity sink offline')


class Harness:
    def __init__(self, tasks, *, timeout: float = 1.0, clock=None, activity=None):
        self.store = TaskStore(tasks)
        self.persistence = ScriptedPersistence(tasks)
        self.activity = activity if activity is not None else InMemoryActivityRecorder()
        self.notifier = InMemoryNotificationDispatcher()
        kwargs = {'clock': clock} if clock is not None else {}
        self.engine = MutationEngine(
            self.store,
            self.persistence,
            activity=self.activity,
            notifier=self.notifier,
            persistence_timeout_seconds=timeout,
            **kwargs,
        )

    def actions(self, task_id: str | None = None) -> list[str]:
        events = self.activity.list_events(task_id) if task_id else self.activity.events
        return [e.action.value for e in events]


@pytest.fixture
def make_task():
    seq = count(1)

    def _make(**overrides) -> Task:
        n = next(seq)
        data = {
            'id': f'task-{n}',
            'text': f'Task number {n}',
            'display_order': n - 1,
            'created_at': BASE_TIME + timedelta(minutes=n),
        }
        data.update(overrides)
        return Task(**data)

    return _make


@pytest.fixture
def build_harness():
    return Harness


@pytest.fixture
def failing_activity():
    return FailingActivityRecorder()
