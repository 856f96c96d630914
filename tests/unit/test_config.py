"""
Unit tests -- settings: environment overrides, derived values.
"""
from src.core.config import Settings


def test_settings_config_uses_model_config():
    assert Settings.model_config["env_file"] == ".env"
    assert "Config" not in Settings.__dict__


def test_env_overrides_defaults(monkeypatch):
    monkeypatch.setenv("QUERY_TIMEOUT_MS", "2500")
    monkeypatch.setenv("EXECUTOR_BACKEND", "http")
    settings = Settings()
    assert settings.query_timeout_s == 2.5
    assert settings.executor_backend == "http"


def test_db_url_overrides_parts(monkeypatch):
    monkeypatch.setenv("DB_URL", "sqlite:///copilot.db")
    assert Settings().database_url == "sqlite:///copilot.db"


def test_database_url_from_parts(monkeypatch):
    monkeypatch.delenv("DB_URL", raising=False)
    monkeypatch.setenv("POSTGRES_HOST", "db.internal")
    monkeypatch.setenv("POSTGRES_PORT", "6543")
    url = Settings(db_url="").database_url
    assert url.startswith("postgresql://")
    assert "@db.internal:6543/" in url
