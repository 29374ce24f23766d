from __future__ import annotations

from tasksync.config import load_settings


def test_load_settings_defaults(monkeypatch):
    for name in (
        'TASKSYNC_DATABASE_URL',
        'TASKSYNC_LOG_LEVEL',
        'TASKSYNC_PERSISTENCE_TIMEOUT_SECONDS',
        'TASKSYNC_FOLLOW_UP_HOURS',
        'TASKSYNC_DEFAULT_SCOPE',
        'TASKSYNC_DEFAULT_ACTOR',
    ):
        monkeypatch.delenv(name, raising=False)

    settings = load_settings()

    assert settings.database_url.startswith('sqlite')
    assert settings.log_level == 'INFO'
    assert settings.persistence_timeout_seconds == 10.0
    assert settings.follow_up_hours == 48
    assert settings.default_scope_id == 'default'
    assert settings.default_actor == 'system'


def test_load_settings_clamps_numeric_overrides(monkeypatch):
    monkeypatch.setenv('TASKSYNC_PERSISTENCE_TIMEOUT_SECONDS', '0')
    monkeypatch.setenv('TASKSYNC_DUPLICATE_THRESHOLD', '7')
    monkeypatch.setenv('TASKSYNC_FOLLOW_UP_HOURS', '-3')

    settings = load_settings()

    assert settings.persistence_timeout_seconds == 0.05
    assert settings.duplicate_threshold == 1.0
    assert settings.follow_up_hours == 1


def test_load_settings_ignores_garbage_values(monkeypatch):
    monkeypatch.setenv('TASKSYNC_FOLLOW_UP_HOURS', 'soon')
    monkeypatch.setenv('TASKSYNC_LOG_LEVEL', 'chatty')
    monkeypatch.setenv('TASKSYNC_DEFAULT_SCOPE', '   ')

    settings = load_settings()

    assert settings.follow_up_hours == 48
    assert settings.log_level == 'INFO'
    assert settings.default_scope_id == 'default'
