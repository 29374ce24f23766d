from __future__ import annotations

import pytest

from tasksync.domain.models import MutationState, Task
from tasksync.errors import ValidationError
from tasksync.reorder import ReorderCoordinator


def _setup(make_task, build_harness, n=4):
    h = build_harness([make_task() for _ in range(n)])
    return h, ReorderCoordinator(h.engine)


def _orders(h, scope_id='default'):
    return h.store.ordering(scope_id)


@pytest.mark.asyncio
async def test_reorder_assigns_contiguous_orders_in_one_batch(make_task, build_harness):
    h, coordinator = _setup(make_task, build_harness)

    result = await coordinator.reorder('default', ['task-3', 'task-1', 'task-4', 'task-2'], actor='alex')

    assert result.ok
    assert result.changed
    assert result.ordered_task_ids == ('task-3', 'task-1', 'task-4', 'task-2')
    assert _orders(h) == {'task-3': 0, 'task-1': 1, 'task-4': 2, 'task-2': 3}
    batches = [arg for method, arg in h.persistence.calls if method == 'batch_reorder']
    assert batches == [[('task-3', 0), ('task-1', 1), ('task-4', 2), ('task-2', 3)]]
    assert h.persistence.rows['task-3']['display_order'] == 0

    events = h.activity.events
    assert [e.action.value for e in events] == ['task_reordered']
    assert events[0].scope_id == 'default'
    assert events[0].details == {'count': 4}


@pytest.mark.asyncio
async def test_reorder_back_restores_original_orders(make_task, build_harness):
    h, coordinator = _setup(make_task, build_harness)
    original = _orders(h)

    await coordinator.reorder('default', ['task-4', 'task-3', 'task-2', 'task-1'], actor='alex')
    await coordinator.reorder('default', ['task-1', 'task-2', 'task-3', 'task-4'], actor='alex')

    assert _orders(h) == original


@pytest.mark.asyncio
async def test_reorder_rejects_lists_that_are_not_a_permutation(make_task, build_harness):
    h, coordinator = _setup(make_task, build_harness)
    original = _orders(h)

    with pytest.raises(ValidationError) as exc:
        await coordinator.reorder('default', ['task-1', 'task-2', 'task-3'], actor='alex')
    assert exc.value.code == 'invalid_ordering'

    with pytest.raises(ValidationError) as exc:
        await coordinator.reorder('default', ['task-1', 'task-2', 'task-3', 'task-9'], actor='alex')
    assert exc.value.code == 'invalid_ordering'

    with pytest.raises(ValidationError):
        await coordinator.reorder('default', ['task-1', 'task-1', 'task-2', 'task-3'], actor='alex')

    assert _orders(h) == original
    assert h.persistence.calls == []


@pytest.mark.asyncio
async def test_reorder_of_empty_scope_is_a_committed_noop(make_task, build_harness):
    h, coordinator = _setup(make_task, build_harness)

    result = await coordinator.reorder('empty', [], actor='alex')

    assert result.ok
    assert result.changed is False
    assert h.persistence.calls == []


@pytest.mark.asyncio
async def test_failed_batch_restores_every_order(make_task, build_harness):
    h, coordinator = _setup(make_task, build_harness)
    h.persistence.fail_reorder = True
    original = _orders(h)

    result = await coordinator.reorder('default', ['task-4', 'task-3', 'task-2', 'task-1'], actor='alex')

    assert result.state == MutationState.ROLLED_BACK
    assert result.error_code == 'persistence_failed'
    assert _orders(h) == original
    assert h.activity.events == []


@pytest.mark.asyncio
async def test_move_up_and_down(make_task, build_harness):
    h, coordinator = _setup(make_task, build_harness)

    await coordinator.move('default', 'task-3', 'up', actor='alex')
    assert h.store.scope_ids('default') == ['task-1', 'task-3', 'task-2', 'task-4']

    await coordinator.move('default', 'task-1', 'down', actor='alex')
    assert h.store.scope_ids('default') == ['task-3', 'task-1', 'task-2', 'task-4']


@pytest.mark.asyncio
async def test_move_past_the_boundary_is_a_noop_without_persistence(make_task, build_harness):
    h, coordinator = _setup(make_task, build_harness)

    top = await coordinator.move('default', 'task-1', 'up', actor='alex')
    bottom = await coordinator.move('default', 'task-4', 'down', actor='alex')

    assert top.ok and top.changed is False
    assert bottom.ok and bottom.changed is False
    assert h.persistence.calls == []
    assert h.activity.events == []


@pytest.mark.asyncio
async def test_move_rejects_bad_direction_and_unknown_task(make_task, build_harness):
    h, coordinator = _setup(make_task, build_harness)

    with pytest.raises(ValidationError):
        await coordinator.move('default', 'task-1', 'sideways', actor='alex')
    with pytest.raises(ValidationError) as exc:
        await coordinator.move('default', 'task-9', 'up', actor='alex')
    assert exc.value.code == 'task_not_found'


@pytest.mark.asyncio
async def test_move_to_position_clamps_the_target(make_task, build_harness):
    h, coordinator = _setup(make_task, build_harness)

    await coordinator.move_to_position('default', 'task-1', 99, actor='alex')
    assert h.store.scope_ids('default') == ['task-2', 'task-3', 'task-4', 'task-1']

    await coordinator.move_to_position('default', 'task-4', -5, actor='alex')
    assert h.store.scope_ids('default') == ['task-4', 'task-2', 'task-3', 'task-1']


@pytest.mark.asyncio
async def test_swap_exchanges_two_positions(make_task, build_harness):
    h, coordinator = _setup(make_task, build_harness)

    result = await coordinator.swap('default', 'task-1', 'task-4', actor='alex')

    assert result.ok
    assert h.store.scope_ids('default') == ['task-4', 'task-2', 'task-3', 'task-1']


@pytest.mark.asyncio
async def test_stale_reorder_failure_keeps_the_newer_ordering(make_task, build_harness):
    h, _ = _setup(make_task, build_harness, n=3)
    h.persistence.gated = True

    first = h.engine.apply_ordering('default', {'task-2': 0, 'task-1': 1, 'task-3': 2}, actor='alex')
    second = h.engine.apply_ordering('default', {'task-3': 0, 'task-2': 1, 'task-1': 2}, actor='sam')
    await h.persistence.wait_for_gates(2)

    h.persistence.release(0, ok=False)
    assert not (await first).ok
    assert h.store.scope_ids('default') == ['task-3', 'task-2', 'task-1']

    # The newer write now rolls back to the last persisted ordering.
    h.persistence.release(1, ok=False)
    assert not (await second).ok
    assert h.store.scope_ids('default') == ['task-1', 'task-2', 'task-3']


def _assert_unique_orders(h, scope_id='default'):
    orders = list(_orders(h, scope_id).values())
    assert len(set(orders)) == len(orders)


@pytest.mark.asyncio
async def test_failed_delete_after_a_reorder_moves_the_task_to_the_end(make_task, build_harness):
    h, _ = _setup(make_task, build_harness, n=3)
    h.persistence.gated = True

    delete = h.engine.delete('task-2', actor='alex')
    reorder = h.engine.apply_ordering('default', {'task-3': 0, 'task-1': 1}, actor='sam')
    await h.persistence.wait_for_gates(2)

    h.persistence.release(1)
    assert (await reorder).ok
    h.persistence.gated = False
    h.persistence.release(0, ok=False)
    assert not (await delete).ok

    assert _orders(h) == {'task-3': 0, 'task-1': 1, 'task-2': 2}
    _assert_unique_orders(h)
    assert h.persistence.rows['task-2']['display_order'] == 2


@pytest.mark.asyncio
async def test_failed_reorder_moves_a_task_created_meanwhile_past_the_restored_orders(make_task, build_harness):
    h = build_harness([make_task(display_order=2), make_task(display_order=0)])
    h.persistence.gated = True

    reorder = h.engine.apply_ordering('default', {'task-1': 0, 'task-2': 1}, actor='alex')
    create = h.engine.create(Task(id='new', text='Call back Ortiz'), actor='sam')
    await h.persistence.wait_for_gates(2)
    assert h.store.get('new').display_order == 2

    h.persistence.release(1)
    assert (await create).ok
    h.persistence.gated = False
    h.persistence.release(0, ok=False)
    assert not (await reorder).ok

    assert _orders(h) == {'task-2': 0, 'task-1': 2, 'new': 3}
    _assert_unique_orders(h)
    assert h.persistence.rows['new']['display_order'] == 3
