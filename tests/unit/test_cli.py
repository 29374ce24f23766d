from __future__ import annotations

import tasksync.cli as cli_module
from tasksync.cli import build_parser
import pytest


class _FakeResponse:
    def __init__(self, status_code=200, payload=None, text='ok'):
        self.status_code = int(status_code)
        self._payload = payload if payload is not None else {'ok': True}
        self.text = text

    def json(self):
        return self._payload


class _FakeClient:
    def __init__(self, response=None):
        self.calls = []
        self._response = response or _FakeResponse()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def get(self, url, params=None):
        self.calls.append(('GET', url, params, None))
        return self._response

    def post(self, url, json=None, headers=None):
        self.calls.append(('POST', url, json, headers))
        return self._response

    def patch(self, url, json=None, headers=None):
        self.calls.append(('PATCH', url, json, headers))
        return self._response

    def delete(self, url, headers=None):
        self.calls.append(('DELETE', url, None, headers))
        return self._response


def test_cli_parser_add_subcommand_defaults():
    args = build_parser().parse_args(['add', '--text', 'Quote for Acme'])
    assert args.priority == 'medium'
    assert args.recurrence == 'none'
    assert args.check_duplicates is True


def test_cli_parser_move_requires_exactly_one_mode():
    parser = build_parser()
    with pytest.raises(SystemExit):
        parser.parse_args(['move', 'default', 'task-1'])
    with pytest.raises(SystemExit):
        parser.parse_args(['move', 'default', 'task-1', '--direction', 'up', '--position', '2'])


def test_cli_main_routes_http_commands(monkeypatch, capsys):
    fake = _FakeClient()
    monkeypatch.setattr(cli_module.httpx, 'Client', lambda timeout=60: fake)

    cases = [
        (['tasks'], 'GET', '/api/tasks'),
        (['show', 'task-1'], 'GET', '/api/tasks/task-1'),
        (['stats'], 'GET', '/api/stats'),
        (['add', '--text', 'Quote for Acme'], 'POST', '/api/tasks'),
        (['update', 'task-1', '--kind', 'notes', '--payload', '{"notes": "x"}'], 'PATCH', '/api/tasks/task-1'),
        (['complete', 'task-1'], 'PATCH', '/api/tasks/task-1'),
        (['delete', 'task-1'], 'DELETE', '/api/tasks/task-1'),
        (['wait', 'task-1', '--contact-type', 'call'], 'POST', '/api/tasks/task-1/waiting'),
        (['responded', 'task-1'], 'DELETE', '/api/tasks/task-1/waiting'),
        (['reorder', 'default', 'task-2', 'task-1'], 'POST', '/api/scopes/default/reorder'),
        (['move', 'default', 'task-1', '--swap-with', 'task-2'], 'POST', '/api/scopes/default/move'),
        (['merge', 'task-1', '--incoming-id', 'task-2'], 'POST', '/api/tasks/task-1/merge'),
        (['merge-many', 'task-1', 'task-2', 'task-3'], 'POST', '/api/tasks/task-1/merge-many'),
        (['bulk', 'complete', 'task-1', 'task-2'], 'POST', '/api/tasks/bulk'),
        (['activity', 'task-1'], 'GET', '/api/tasks/task-1/activity'),
        (['duplicates', '--text', 'Dana Smith'], 'GET', '/api/duplicates'),
    ]
    for argv, method, path in cases:
        assert cli_module.main(['--actor', 'alex', *argv]) == 0
        got_method, url, _, headers = fake.calls[-1]
        assert got_method == method
        assert url == f'http://127.0.0.1:8000{path}'
        if method != 'GET':
            assert headers == {'x-tasksync-actor': 'alex'}

    assert '"ok": true' in capsys.readouterr().out


def test_cli_complete_sends_status_patch(monkeypatch):
    fake = _FakeClient()
    monkeypatch.setattr(cli_module.httpx, 'Client', lambda timeout=60: fake)

    cli_module.main(['complete', 'task-7'])

    assert fake.calls[-1][2] == {'kind': 'status', 'payload': {'status': 'done'}}


def test_cli_actor_falls_back_to_settings(monkeypatch):
    fake = _FakeClient()
    monkeypatch.setattr(cli_module.httpx, 'Client', lambda timeout=60: fake)
    monkeypatch.setenv('TASKSYNC_DEFAULT_ACTOR', 'ops-bot')

    cli_module.main(['delete', 'task-1'])

    assert fake.calls[-1][3] == {'x-tasksync-actor': 'ops-bot'}


def test_cli_update_rejects_invalid_payload_json(monkeypatch):
    fake = _FakeClient()
    monkeypatch.setattr(cli_module.httpx, 'Client', lambda timeout=60: fake)

    with pytest.raises(SystemExit):
        cli_module.main(['update', 'task-1', '--kind', 'notes', '--payload', '{not json'])
    with pytest.raises(SystemExit):
        cli_module.main(['update', 'task-1', '--kind', 'notes', '--payload', '[1, 2]'])

    assert fake.calls == []


def test_cli_main_returns_1_on_http_error(monkeypatch, capsys):
    fake = _FakeClient(response=_FakeResponse(status_code=409, text='{"code": "persistence_failed"}'))
    monkeypatch.setattr(cli_module.httpx, 'Client', lambda timeout=60: fake)

    assert cli_module.main(['complete', 'task-1']) == 1
    assert 'HTTP 409' in capsys.readouterr().err


def test_cli_merge_many_sends_every_task_id(monkeypatch):
    fake = _FakeClient()
    monkeypatch.setattr(cli_module.httpx, 'Client', lambda timeout=60: fake)

    cli_module.main(['merge-many', 'task-1', 'task-2', 'task-3'])

    assert fake.calls[-1][2] == {'task_ids': ['task-2', 'task-3']}
