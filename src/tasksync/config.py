from __future__ import annotations

from dataclasses import dataclass
import os

from tasksync.domain.models import DEFAULT_FOLLOW_UP_HOURS, DEFAULT_SCOPE_ID


@dataclass(frozen=True)
class Settings:
    database_url: str
    service_name: str
    otel_endpoint: str | None
    log_level: str
    persistence_timeout_seconds: float
    follow_up_hours: int
    duplicate_threshold: float
    default_scope_id: str
    default_actor: str


def _env_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = (os.getenv(name, '') or '').strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(name: str, default: float, *, minimum: float, maximum: float | None = None) -> float:
    raw = (os.getenv(name, '') or '').strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    value = max(minimum, value)
    if maximum is not None:
        value = min(maximum, value)
    return value


def load_settings() -> Settings:
    database_url = os.getenv('TASKSYNC_DATABASE_URL', 'sqlite+pysqlite:///tasksync.sqlite3')
    service_name = os.getenv('TASKSYNC_SERVICE_NAME', 'tasksync')
    otel_endpoint = os.getenv('TASKSYNC_OTEL_EXPORTER_OTLP_ENDPOINT')
    log_level = str(os.getenv('TASKSYNC_LOG_LEVEL', 'INFO') or 'INFO').strip().upper()
    if log_level not in {'DEBUG', 'INFO', 'WARNING', 'ERROR'}:
        log_level = 'INFO'
    # Every persistence call is bounded; a timeout rolls the mutation back.
    persistence_timeout_seconds = _env_float('TASKSYNC_PERSISTENCE_TIMEOUT_SECONDS', 10.0, minimum=0.05, maximum=300.0)
    follow_up_hours = _env_int('TASKSYNC_FOLLOW_UP_HOURS', DEFAULT_FOLLOW_UP_HOURS, minimum=1)
    duplicate_threshold = _env_float('TASKSYNC_DUPLICATE_THRESHOLD', 0.3, minimum=0.0, maximum=1.0)
    default_scope_id = str(os.getenv('TASKSYNC_DEFAULT_SCOPE', DEFAULT_SCOPE_ID) or DEFAULT_SCOPE_ID).strip() or DEFAULT_SCOPE_ID
    default_actor = str(os.getenv('TASKSYNC_DEFAULT_ACTOR', 'system') or 'system').strip() or 'system'
    return Settings(
        database_url=database_url,
        service_name=service_name,
        otel_endpoint=otel_endpoint,
        log_level=log_level,
        persistence_timeout_seconds=persistence_timeout_seconds,
        follow_up_hours=follow_up_hours,
        duplicate_threshold=duplicate_threshold,
        default_scope_id=default_scope_id,
        default_actor=default_actor,
    )
