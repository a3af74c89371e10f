"""Settings for the queue system.

Values are resolved once at startup, in increasing precedence: built-in
defaults, ``QUEUECTL_*`` environment variables, rows of the ``queue_config``
table (``queuectl config set``), then explicit keyword overrides. The result
is a frozen :class:`Settings` that is handed to every component.
"""
import os
from dataclasses import asdict, dataclass, fields, replace
from typing import Dict, Mapping, Optional

from queuectl.db.base import DEFAULT_DATABASE_URL
from queuectl.db.models import ConfigEntry
from queuectl.errors import ConfigurationError

ENV_PREFIX = "QUEUECTL_"
STORAGE_TYPES = ("database", "memory")


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    storage_type: str = "database"

    # retries
    default_max_attempts: int = 3
    backoff_base: float = 2.0
    backoff_unit_seconds: float = 60.0

    # workers
    max_workers: int = 5
    worker_sleep_time: float = 1.0
    worker_max_memory_mb: float = 128.0
    heartbeat_interval: float = 30.0
    heartbeat_dir: str = ""
    default_max_execution_time: float = 300.0

    # housekeeping
    retention_days: float = 7.0
    cleanup_interval: float = 3600.0
    stuck_timeout_minutes: float = 30.0
    reset_stuck_jobs: bool = True

    # monitoring
    health_check_interval: float = 60.0
    alert_log_size: int = 500
    queue_warning_ratio: float = 0.8
    min_worker_health_percentage: float = 80.0
    worker_min_success_rate: float = 90.0
    max_failed_jobs_percentage: float = 10.0
    max_avg_processing_time: float = 30.0
    max_memory_usage_percentage: float = 85.0

    def validate(self) -> "Settings":
        if self.storage_type not in STORAGE_TYPES:
            raise ConfigurationError(f"Unsupported storage type: {self.storage_type}")
        if self.storage_type == "database" and not self.database_url:
            raise ConfigurationError("database_url is required for database storage")
        if self.default_max_attempts < 1:
            raise ConfigurationError("default_max_attempts must be >= 1")
        if self.backoff_base < 1:
            raise ConfigurationError("backoff_base must be >= 1")
        if self.max_workers < 1:
            raise ConfigurationError("max_workers must be >= 1")
        if not 0 < self.queue_warning_ratio <= 1:
            raise ConfigurationError("queue_warning_ratio must be in (0, 1]")
        for name in (
            "backoff_unit_seconds",
            "worker_sleep_time",
            "heartbeat_interval",
            "default_max_execution_time",
            "retention_days",
            "cleanup_interval",
            "stuck_timeout_minutes",
            "health_check_interval",
            "alert_log_size",
        ):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must not be negative")
        return self

    def as_dict(self) -> Dict[str, object]:
        return asdict(self)


ALLOWED_CONFIG_KEYS = frozenset(f.name for f in fields(Settings))
_FIELD_TYPES = {f.name: f.type for f in fields(Settings)}


def _coerce(key: str, raw) -> object:
    kind = _FIELD_TYPES[key]
    if not isinstance(kind, str):
        kind = kind.__name__
    try:
        if kind == "bool":
            if isinstance(raw, bool):
                return raw
            text = str(raw).strip().lower()
            if text in ("1", "true", "yes", "on"):
                return True
            if text in ("0", "false", "no", "off", ""):
                return False
            raise ValueError(raw)
        if kind == "int":
            return int(raw)
        if kind == "float":
            return float(raw)
        return str(raw)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid value for {key}: {raw!r}")


def load_settings(session=None, env: Optional[Mapping[str, str]] = None, **overrides) -> Settings:
    """Resolve and validate settings. Raises ConfigurationError."""
    env = os.environ if env is None else env
    values: Dict[str, object] = {}

    for key in ALLOWED_CONFIG_KEYS:
        raw = env.get(ENV_PREFIX + key.upper())
        if raw is not None:
            values[key] = _coerce(key, raw)

    if session is not None:
        for key, raw in get_all_config(session).items():
            if key in ALLOWED_CONFIG_KEYS:
                values[key] = _coerce(key, raw)

    for key, raw in overrides.items():
        if key not in ALLOWED_CONFIG_KEYS:
            raise ConfigurationError(f"Unknown setting: {key}")
        if raw is not None:
            values[key] = _coerce(key, raw)

    return Settings(**values).validate()


def with_overrides(settings: Settings, **changes) -> Settings:
    return replace(settings, **changes).validate()


# ---------- key/value config table ----------
def set_config(session, key, value):
    if key not in ALLOWED_CONFIG_KEYS:
        raise ConfigurationError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    _coerce(key, value)
    row = session.query(ConfigEntry).filter_by(key=key).first()
    if row:
        row.value = str(value)
    else:
        session.add(ConfigEntry(key=key, value=str(value)))
    session.commit()


def get_config(session, key, default=None):
    row = session.query(ConfigEntry).filter_by(key=key).first()
    return row.value if row else default


def get_all_config(session) -> Dict[str, str]:
    return {row.key: row.value for row in session.query(ConfigEntry).all()}
