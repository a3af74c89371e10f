import pytest

from queuectl.config import (
    Settings,
    get_all_config,
    get_config,
    load_settings,
    set_config,
    with_overrides,
)
from queuectl.db.base import init_db, make_engine, make_session_factory
from queuectl.errors import ConfigurationError
from queuectl.queue_manager import QueueConfig


@pytest.fixture()
def session():
    print("\n[SETUP] Creating in-memory DB")
    engine = make_engine("sqlite://")
    init_db(engine)
    s = make_session_factory(engine)()
    yield s
    s.close()
    engine.dispose()


def test_defaults_are_valid():
    settings = load_settings(env={})
    assert settings == Settings()
    assert settings.backoff_base == 2.0
    assert settings.backoff_unit_seconds == 60.0
    assert settings.stuck_timeout_minutes == 30.0
    assert settings.max_memory_usage_percentage == 85.0


def test_environment_overrides_defaults():
    settings = load_settings(env={
        "QUEUECTL_MAX_WORKERS": "7",
        "QUEUECTL_RESET_STUCK_JOBS": "no",
        "QUEUECTL_BACKOFF_BASE": "3",
        "UNRELATED": "x",
    })
    assert settings.max_workers == 7
    assert settings.reset_stuck_jobs is False
    assert settings.backoff_base == 3.0


def test_invalid_environment_value_is_rejected():
    with pytest.raises(ConfigurationError):
        load_settings(env={"QUEUECTL_MAX_WORKERS": "lots"})
    with pytest.raises(ConfigurationError):
        load_settings(env={"QUEUECTL_STORAGE_TYPE": "redis"})


def test_table_beats_env_and_overrides_beat_table(session):
    set_config(session, "max_workers", "9")
    env = {"QUEUECTL_MAX_WORKERS": "7"}

    assert load_settings(session, env=env).max_workers == 9
    assert load_settings(session, env=env, max_workers=2).max_workers == 2
    # None means "not given"
    assert load_settings(session, env=env, max_workers=None).max_workers == 9


def test_unknown_override_is_rejected():
    with pytest.raises(ConfigurationError):
        load_settings(env={}, colour="blue")


def test_set_and_get_config(session):
    set_config(session, "backoff_base", "2.5")
    set_config(session, "backoff_base", "4")
    assert get_config(session, "backoff_base") == "4"
    assert get_config(session, "missing", "dflt") == "dflt"
    assert get_all_config(session) == {"backoff_base": "4"}


def test_set_config_validates_key_and_value(session):
    with pytest.raises(ConfigurationError):
        set_config(session, "not_a_setting", "1")
    with pytest.raises(ConfigurationError):
        set_config(session, "max_workers", "many")
    assert get_all_config(session) == {}


def test_validate_rejects_bad_values():
    with pytest.raises(ConfigurationError):
        Settings(max_workers=0).validate()
    with pytest.raises(ConfigurationError):
        Settings(retention_days=-1).validate()
    with pytest.raises(ConfigurationError):
        Settings(queue_warning_ratio=1.5).validate()
    with pytest.raises(ConfigurationError):
        with_overrides(Settings(), backoff_base=0.5)


def test_settings_are_frozen():
    settings = Settings()
    with pytest.raises(AttributeError):
        settings.max_workers = 10
    assert with_overrides(settings, max_workers=10).max_workers == 10
    assert settings.as_dict()["max_workers"] == 5


def test_queue_config_validation():
    assert QueueConfig().max_size == 10000
    assert QueueConfig(priority=99).priority == 10
    with pytest.raises(ConfigurationError):
        QueueConfig(retention_days=-1)
    with pytest.raises(ConfigurationError):
        QueueConfig.from_value({"unknown": True})
