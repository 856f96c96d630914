"""
Centralised application settings loaded from environment / .env file.
"""
from __future__ import annotations

from pathlib import Path
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

# Load .env from project root (two levels up from this file)
_ENV_PATH = Path(__file__).resolve().parents[2] / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # ── Postgres ─────────────────────────────────────────
    postgres_user: str = "copilot"
    postgres_password: str = "copilot_pw"
    postgres_db: str = "engagement"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    db_url: str = ""  # full SQLAlchemy URL; overrides the parts above

    # ── Query executor ───────────────────────────────────
    executor_backend: str = "postgres"  # postgres | http
    executor_url: str = ""              # remote execute-query endpoint (http backend)
    executor_api_key: str = ""
    query_timeout_ms: int = 10_000
    distinct_value_cap: int = 100
    diagnose_empty_results: bool = True

    # ── LLM ──────────────────────────────────────────────
    llm_provider: str = "mock"  # mock | openai | anthropic
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    llm_timeout_s: float = 20.0

    # ── App ──────────────────────────────────────────────
    api_port: int = 8000
    log_level: str = "INFO"
    memory_window: int = 10

    @property
    def database_url(self) -> str:
        if self.db_url:
            return self.db_url
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def query_timeout_s(self) -> float:
        return self.query_timeout_ms / 1000


@lru_cache
def get_settings() -> Settings:
    return Settings()
