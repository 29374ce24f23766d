from __future__ import annotations

import argparse
import json
import sys

import httpx

from tasksync.config import load_settings


def _default_actor() -> str:
    try:
        return load_settings().default_actor
    except Exception:
        return 'cli'


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='tasksync', description='Work with a shared task list through the tasksync API')
    parser.add_argument('--api-base', default='http://127.0.0.1:8000', help='tasksync API base URL')
    parser.add_argument('--actor', default='', help='Name recorded as the actor of each change')

    sub = parser.add_subparsers(dest='command', required=True)

    tasks = sub.add_parser('tasks', help='List tasks')
    tasks.add_argument('--scope', default='', help='Only list tasks of this scope')

    show = sub.add_parser('show', help='Show one task')
    show.add_argument('task_id')

    sub.add_parser('stats', help='Show task counts')

    add = sub.add_parser('add', help='Create a task')
    add.add_argument('--text', required=True, help='Task text')
    add.add_argument('--priority', default='medium', choices=['urgent', 'high', 'medium', 'low'])
    add.add_argument('--assignee', default='', help='Assignee name')
    add.add_argument('--due', default='', help='Due date as ISO-8601, e.g. 2026-03-01T09:00:00+00:00')
    add.add_argument('--notes', default='')
    add.add_argument('--recurrence', default='none', choices=['none', 'daily', 'weekly', 'monthly'])
    add.add_argument('--private', action='store_true', help='Create the task as private')
    add.add_argument('--scope', default='', help='List scope to create the task in')
    add.add_argument('--check-duplicates', action=argparse.BooleanOptionalAction, default=True,
                     help='Skip creation when likely duplicates exist (default: on)')

    update = sub.add_parser('update', help='Apply one field patch to a task')
    update.add_argument('task_id')
    update.add_argument('--kind', required=True, help='Patch kind, e.g. status, priority, assignee, due_date, notes')
    update.add_argument('--payload', default='{}', help='Patch payload as a JSON object')

    complete = sub.add_parser('complete', help='Mark a task done')
    complete.add_argument('task_id')

    delete = sub.add_parser('delete', help='Delete a task')
    delete.add_argument('task_id')

    wait = sub.add_parser('wait', help='Mark a task as waiting for a customer response')
    wait.add_argument('task_id')
    wait.add_argument('--contact-type', required=True, choices=['call', 'email', 'other'])
    wait.add_argument('--hours', type=int, default=None, help='Follow-up deadline in hours (default from server config)')

    responded = sub.add_parser('responded', help='Clear the waiting-for-response state')
    responded.add_argument('task_id')

    reorder = sub.add_parser('reorder', help='Set the full order of a scope')
    reorder.add_argument('scope_id')
    reorder.add_argument('task_ids', nargs='+')

    move = sub.add_parser('move', help='Move one task within its scope')
    move.add_argument('scope_id')
    move.add_argument('task_id')
    group = move.add_mutually_exclusive_group(required=True)
    group.add_argument('--direction', choices=['up', 'down'])
    group.add_argument('--position', type=int)
    group.add_argument('--swap-with', default=None)

    merge = sub.add_parser('merge', help='Merge a duplicate task into an existing one')
    merge.add_argument('existing_id')
    merge.add_argument('--incoming-id', required=True)

    merge_many = sub.add_parser('merge-many', help='Merge several tasks into one primary task')
    merge_many.add_argument('primary_id')
    merge_many.add_argument('task_ids', nargs='+')

    bulk = sub.add_parser('bulk', help='Apply one action to several tasks')
    bulk.add_argument('action', choices=['complete', 'assign', 'reschedule', 'set_priority', 'delete'])
    bulk.add_argument('task_ids', nargs='+')
    bulk.add_argument('--value', default=None, help='Assignee, due date or priority, depending on the action')

    activity = sub.add_parser('activity', help='List activity entries of a task')
    activity.add_argument('task_id')

    duplicates = sub.add_parser('duplicates', help='Find likely duplicates of a task text')
    duplicates.add_argument('--text', required=True)
    duplicates.add_argument('--scope', default='', help='Scope to search (default scope when empty)')

    return parser


def _print_json(payload) -> None:
    print(json.dumps(payload, ensure_ascii=True, indent=2))


def _parse_payload(raw: str) -> dict:
    try:
        payload = json.loads(raw or '{}')
    except json.JSONDecodeError as exc:
        raise ValueError(f'--payload must be valid JSON: {exc}') from exc
    if not isinstance(payload, dict):
        raise ValueError('--payload must be a JSON object')
    return payload


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    base = args.api_base.rstrip('/')
    headers = {'x-tasksync-actor': str(args.actor or '').strip() or _default_actor()}

    with httpx.Client(timeout=60) as client:
        if args.command == 'tasks':
            params = {'scope_id': args.scope} if args.scope else None
            response = client.get(f'{base}/api/tasks', params=params)
        elif args.command == 'show':
            response = client.get(f'{base}/api/tasks/{args.task_id}')
        elif args.command == 'stats':
            response = client.get(f'{base}/api/stats')
        elif args.command == 'add':
            response = client.post(
                f'{base}/api/tasks',
                json={
                    'text': args.text,
                    'priority': args.priority,
                    'assignee': args.assignee.strip() or None,
                    'due_date': args.due.strip() or None,
                    'notes': args.notes,
                    'recurrence': args.recurrence,
                    'is_private': bool(args.private),
                    'scope_id': args.scope.strip() or None,
                    'check_duplicates': bool(args.check_duplicates),
                },
                headers=headers,
            )
        elif args.command == 'update':
            try:
                payload = _parse_payload(args.payload)
            except ValueError as exc:
                parser.error(str(exc))
                return 2
            response = client.patch(
                f'{base}/api/tasks/{args.task_id}',
                json={'kind': args.kind, 'payload': payload},
                headers=headers,
            )
        elif args.command == 'complete':
            response = client.patch(
                f'{base}/api/tasks/{args.task_id}',
                json={'kind': 'status', 'payload': {'status': 'done'}},
                headers=headers,
            )
        elif args.command == 'delete':
            response = client.delete(f'{base}/api/tasks/{args.task_id}', headers=headers)
        elif args.command == 'wait':
            response = client.post(
                f'{base}/api/tasks/{args.task_id}/waiting',
                json={'contact_type': args.contact_type, 'follow_up_after_hours': args.hours},
                headers=headers,
            )
        elif args.command == 'responded':
            response = client.delete(f'{base}/api/tasks/{args.task_id}/waiting', headers=headers)
        elif args.command == 'reorder':
            response = client.post(
                f'{base}/api/scopes/{args.scope_id}/reorder',
                json={'ordered_task_ids': list(args.task_ids)},
                headers=headers,
            )
        elif args.command == 'move':
            response = client.post(
                f'{base}/api/scopes/{args.scope_id}/move',
                json={
                    'task_id': args.task_id,
                    'direction': args.direction,
                    'position': args.position,
                    'swap_with': args.swap_with,
                },
                headers=headers,
            )
        elif args.command == 'merge':
            response = client.post(
                f'{base}/api/tasks/{args.existing_id}/merge',
                json={'incoming_task_id': args.incoming_id},
                headers=headers,
            )
        elif args.command == 'merge-many':
            response = client.post(
                f'{base}/api/tasks/{args.primary_id}/merge-many',
                json={'task_ids': list(args.task_ids)},
                headers=headers,
            )
        elif args.command == 'bulk':
            response = client.post(
                f'{base}/api/tasks/bulk',
                json={'action': args.action, 'task_ids': list(args.task_ids), 'value': args.value},
                headers=headers,
            )
        elif args.command == 'activity':
            response = client.get(f'{base}/api/tasks/{args.task_id}/activity')
        elif args.command == 'duplicates':
            params = {'text': args.text}
            if args.scope:
                params['scope_id'] = args.scope
            response = client.get(f'{base}/api/duplicates', params=params)
        else:
            parser.error(f'unsupported command: {args.command}')
            return 2

    if response.status_code >= 400:
        print(f'HTTP {response.status_code}: {response.text}', file=sys.stderr)
        return 1

    _print_json(response.json())
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
