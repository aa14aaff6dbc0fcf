import pytest

from invoice_memory.api import dependencies
from invoice_memory.config import DEFAULT_LOCAL_DATABASE_URL, Settings, get_settings
from invoice_memory.infrastructure.repositories.memory_store import InMemoryStore
from invoice_memory.infrastructure.repositories.sqlalchemy_store import SqlAlchemyStore

ENV_VARS = (
    "DATABASE_URL",
    "LOCAL_DATABASE_URL",
    "OFFLINE_MODE",
    "DB_CONNECT_RETRIES",
    "DB_RETRY_DELAY",
    "LOG_LEVEL",
    "FRONTEND_URL",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    dependencies.get_store.cache_clear()
    yield monkeypatch
    get_settings.cache_clear()
    dependencies.get_store.cache_clear()


def test_defaults(clean_env):
    settings = Settings.from_env()

    assert settings.database_url is None
    assert settings.effective_database_url == DEFAULT_LOCAL_DATABASE_URL
    assert settings.offline_mode is False
    assert settings.db_connect_retries == 3
    assert settings.db_retry_delay == 2.0
    assert settings.log_level == "INFO"


def test_database_url_wins(clean_env):
    clean_env.setenv("DATABASE_URL", "postgresql://u:p@db/memory")
    clean_env.setenv("OFFLINE_MODE", "True")
    clean_env.setenv("LOG_LEVEL", "debug")

    settings = Settings.from_env()

    assert settings.effective_database_url == "postgresql://u:p@db/memory"
    assert settings.offline_mode is True
    assert settings.log_level == "DEBUG"


def test_offline_mode_uses_memory_store(clean_env):
    clean_env.setenv("OFFLINE_MODE", "1")

    assert isinstance(dependencies.get_store(), InMemoryStore)


def test_local_database_store(clean_env, tmp_path):
    clean_env.setenv("LOCAL_DATABASE_URL", f"sqlite:///{tmp_path / 'local.db'}")

    assert isinstance(dependencies.get_store(), SqlAlchemyStore)


def test_unreachable_database_falls_back(clean_env, tmp_path):
    clean_env.setenv("LOCAL_DATABASE_URL", f"sqlite:///{tmp_path / 'missing' / 'x.db'}")
    clean_env.setenv("DB_CONNECT_RETRIES", "1")
    clean_env.setenv("DB_RETRY_DELAY", "0")

    assert isinstance(dependencies.get_store(), InMemoryStore)
