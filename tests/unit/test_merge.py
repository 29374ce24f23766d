from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from tasksync.domain.models import Attachment, MutationState, Subtask, TaskPriority
from tasksync.errors import ValidationError
from tasksync.merge import (
    DuplicateMergeResolver,
    build_merge_many_patch,
    build_merge_patch,
    earlier_due_date,
    merge_notes,
)

NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)
JAN_1 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _pair(make_task):
    existing = make_task(
        text='Follow up with Dana about renewal',
        priority=TaskPriority.MEDIUM,
        due_date=None,
        subtasks=(Subtask(id='A', text='pull contract'),),
        notes='Existing notes',
    )
    incoming = make_task(
        text='Call Dana re renewal quote',
        priority=TaskPriority.URGENT,
        due_date=JAN_1,
        subtasks=(Subtask(id='B', text='send quote'),),
        transcription='Dana asked for the new pricing.',
    )
    return existing, incoming


def test_build_merge_patch_combines_fields(make_task):
    existing, incoming = _pair(make_task)

    patch = build_merge_patch(existing, incoming, now=NOW)

    assert patch.priority == TaskPriority.URGENT
    assert patch.due_date == JAN_1
    assert [s.id for s in patch.subtasks] == ['A', 'B']
    assert patch.merged_from == (incoming.id,)


def test_merge_notes_appends_a_stamped_section(make_task):
    existing, incoming = _pair(make_task)

    notes = merge_notes(existing, incoming, now=NOW)

    assert notes == (
        'Existing notes\n'
        '\n--- Added Content (2026-03-02 09:30 UTC) ---\n'
        'Call Dana re renewal quote\n'
        '\nTranscription:\nDana asked for the new pricing.'
    )


def test_merge_notes_skips_identical_text(make_task):
    existing = make_task(text='Same text', notes='')
    incoming = make_task(text='Same text')

    assert merge_notes(existing, incoming, now=NOW) == '\n--- Added Content (2026-03-02 09:30 UTC) ---'


def test_earlier_due_date_handles_missing_values():
    later = datetime(2025, 1, 1, tzinfo=timezone.utc)
    assert earlier_due_date(None, JAN_1) == JAN_1
    assert earlier_due_date(JAN_1, None) == JAN_1
    assert earlier_due_date(later, JAN_1) == JAN_1
    assert earlier_due_date(None, None) is None


@pytest.mark.asyncio
async def test_merge_updates_existing_and_deletes_incoming(make_task, build_harness):
    existing, incoming = _pair(make_task)
    h = build_harness([existing, incoming])
    resolver = DuplicateMergeResolver(h.engine, clock=lambda: NOW)

    result = await resolver.merge(existing.id, incoming, actor='alex')

    assert result.ok
    assert result.incoming_deleted is True
    merged = h.store.get(existing.id)
    assert merged.priority == TaskPriority.URGENT
    assert merged.due_date == JAN_1
    assert [s.id for s in merged.subtasks] == ['A', 'B']
    assert merged.text == existing.text
    assert incoming.id not in h.store
    assert incoming.id not in h.persistence.rows

    merge_events = [e for e in h.activity.events if e.action.value == 'tasks_merged']
    assert len(merge_events) == 1
    assert merge_events[0].details == {'merged_task_id': incoming.id}


@pytest.mark.asyncio
async def test_failed_merge_reverts_every_field_and_keeps_incoming(make_task, build_harness):
    existing, incoming = _pair(make_task)
    h = build_harness([existing, incoming])
    h.persistence.fail_task_ids.add(existing.id)
    resolver = DuplicateMergeResolver(h.engine, clock=lambda: NOW)

    result = await resolver.merge(existing.id, incoming, actor='alex')

    assert result.state == MutationState.ROLLED_BACK
    reverted = h.store.get(existing.id)
    assert reverted.priority == TaskPriority.MEDIUM
    assert reverted.due_date is None
    assert reverted.notes == 'Existing notes'
    assert reverted.subtasks == existing.subtasks
    assert reverted.merged_from == ()
    assert incoming.id in h.store
    assert h.activity.events == []


@pytest.mark.asyncio
async def test_attachment_failure_does_not_undo_the_merge(make_task, build_harness):
    existing, incoming = _pair(make_task)
    incoming = replace(incoming, attachments=(Attachment(id='f1', file_name='quote.pdf'),))
    h = build_harness([existing, incoming])
    h.persistence.gated = True
    resolver = DuplicateMergeResolver(h.engine, clock=lambda: NOW)

    running = asyncio.create_task(resolver.merge(existing.id, incoming, actor='alex'))
    await h.persistence.wait_for_gates(1)
    h.persistence.release(0)
    await h.persistence.wait_for_gates(2)
    h.persistence.release(1, ok=False)
    await h.persistence.wait_for_gates(3)
    h.persistence.release(2)
    result = await running

    assert result.ok
    assert result.attachments_added == 0
    merged = h.store.get(existing.id)
    assert merged.priority == TaskPriority.URGENT
    assert merged.attachments == ()
    assert result.incoming_deleted is True


@pytest.mark.asyncio
async def test_attachments_are_capped_at_the_task_limit(make_task, build_harness):
    full = tuple(Attachment(id=f'e{i}', file_name=f'e{i}.pdf') for i in range(9))
    existing = make_task(attachments=full)
    incoming = make_task(attachments=(Attachment(id='n1', file_name='a.pdf'), Attachment(id='n2', file_name='b.pdf')))
    h = build_harness([existing])
    resolver = DuplicateMergeResolver(h.engine, clock=lambda: NOW)

    result = await resolver.merge(existing.id, incoming, actor='alex')

    assert result.ok
    assert result.attachments_added == 1
    assert len(h.store.get(existing.id).attachments) == 10
    assert result.incoming_deleted is False


@pytest.mark.asyncio
async def test_merge_into_itself_is_rejected(make_task, build_harness):
    existing, _ = _pair(make_task)
    h = build_harness([existing])

    with pytest.raises(ValidationError) as exc:
        await DuplicateMergeResolver(h.engine).merge(existing.id, existing, actor='alex')

    assert exc.value.code == 'invalid_merge'


def _group(make_task):
    primary = make_task(
        text='Renewal for Acme',
        notes='Primary notes',
        subtasks=(Subtask(id='A', text='pull contract'),),
        attachments=(Attachment(id='f1', file_name='contract.pdf'),),
    )
    second = make_task(
        text='Acme renewal pricing',
        priority=TaskPriority.HIGH,
        notes='Second notes',
        subtasks=(Subtask(id='B', text='send quote'),),
        attachments=(Attachment(id='f1', file_name='contract.pdf'), Attachment(id='f2', file_name='quote.pdf')),
    )
    third = make_task(
        text='Ping Acme legal',
        priority=TaskPriority.URGENT,
        due_date=JAN_1,
        subtasks=(Subtask(id='C', text='ask for redlines'),),
    )
    return primary, second, third


def test_build_merge_many_patch_combines_every_task(make_task):
    primary, second, third = _group(make_task)

    patch, dropped = build_merge_many_patch(primary, [second, third], now=NOW)

    assert dropped == 0
    assert patch.text == 'Renewal for Acme [+2 merged]'
    assert patch.priority == TaskPriority.URGENT
    assert patch.due_date == JAN_1
    assert [s.id for s in patch.subtasks] == ['A', 'B', 'C']
    assert [a.id for a in patch.attachments] == ['f1', 'f2']
    assert patch.merged_from == (second.id, third.id)
    assert patch.notes == (
        'Primary notes\n'
        'Second notes\n'
        '\n--- Merged Tasks (2026-03-02 09:30 UTC) ---\n'
        '• "Acme renewal pricing" (created 2026-03-02)\n'
        '• "Ping Acme legal" (created 2026-03-02)'
    )


def test_build_merge_many_patch_caps_attachments(make_task):
    primary = make_task(attachments=tuple(Attachment(id=f'p{i}', file_name=f'p{i}.pdf') for i in range(9)))
    other = make_task(attachments=tuple(Attachment(id=f'o{i}', file_name=f'o{i}.pdf') for i in range(3)))

    patch, dropped = build_merge_many_patch(primary, [other], now=NOW)

    assert dropped == 2
    assert len(patch.attachments) == 10
    assert patch.attachments[-1].id == 'o0'


@pytest.mark.asyncio
async def test_merge_many_updates_primary_and_deletes_the_rest(make_task, build_harness):
    primary, second, third = _group(make_task)
    h = build_harness([primary, second, third])
    resolver = DuplicateMergeResolver(h.engine, clock=lambda: NOW)

    result = await resolver.merge_many(primary.id, [second.id, third.id, second.id], actor='alex')

    assert result.ok
    assert result.merged_ids == (second.id, third.id)
    assert sorted(result.deleted) == sorted([second.id, third.id])
    assert result.failed_deletes == ()
    merged = h.store.get(primary.id)
    assert merged.text == 'Renewal for Acme [+2 merged]'
    assert merged.priority == TaskPriority.URGENT
    assert [a.id for a in merged.attachments] == ['f1', 'f2']
    assert h.persistence.rows[primary.id]['text'] == 'Renewal for Acme [+2 merged]'
    assert second.id not in h.store and third.id not in h.store
    assert second.id not in h.persistence.rows

    merge_events = [e for e in h.activity.events if e.action.value == 'tasks_merged']
    assert merge_events[0].details == {'merged_task_ids': [second.id, third.id]}
    assert h.actions().count('task_deleted') == 2


@pytest.mark.asyncio
async def test_failed_merge_many_keeps_every_task(make_task, build_harness):
    primary, second, third = _group(make_task)
    h = build_harness([primary, second, third])
    h.persistence.fail_task_ids.add(primary.id)
    resolver = DuplicateMergeResolver(h.engine, clock=lambda: NOW)

    result = await resolver.merge_many(primary.id, [second.id, third.id], actor='alex')

    assert result.state == MutationState.ROLLED_BACK
    assert result.error_code == 'persistence_failed'
    assert result.deleted == ()
    reverted = h.store.get(primary.id)
    assert reverted.text == 'Renewal for Acme'
    assert reverted.attachments == primary.attachments
    assert reverted.notes == 'Primary notes'
    assert second.id in h.store and third.id in h.store
    assert h.activity.events == []


@pytest.mark.asyncio
async def test_merge_many_reports_deletes_that_fail(make_task, build_harness):
    primary, second, third = _group(make_task)
    h = build_harness([primary, second, third])
    h.persistence.fail_task_ids.add(third.id)
    resolver = DuplicateMergeResolver(h.engine, clock=lambda: NOW)

    result = await resolver.merge_many(primary.id, [second.id, third.id], actor='alex')

    assert result.ok
    assert result.deleted == (second.id,)
    assert result.failed_deletes == (third.id,)
    assert third.id in h.store
    _, orders = zip(*h.store.ordering('default').items())
    assert len(set(orders)) == len(orders)


@pytest.mark.asyncio
async def test_merge_many_rejects_bad_selections(make_task, build_harness):
    primary, second, _ = _group(make_task)
    h = build_harness([primary, second])
    resolver = DuplicateMergeResolver(h.engine)

    for ids in ([], [primary.id, second.id], [second.id, 'missing']):
        with pytest.raises(ValidationError):
            await resolver.merge_many(primary.id, ids, actor='alex')

    assert h.persistence.calls == []
    assert h.store.get(primary.id) == primary
