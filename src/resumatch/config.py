from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "Resumatch"
    app_env: str = "development"
    app_host: str = "127.0.0.1"
    app_port: int = 8790
    log_level: str = "INFO"

    database_url: str = "sqlite:///./data/resumatch.db"
    data_dir: Path = Path("./data")
    db_max_bind_params: int = 32766

    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model_extractor: str = "gpt-5-nano"
    openai_model_anonymizer: str = "gpt-5-mini"
    openai_model_analyzer: str = "gpt-4o"
    openai_model_scorer: str = "gpt-4o"
    openai_timeout_sec: int = 60
    simulate_rate_limit: bool = False
    max_resume_chars: int = 50000

    inline_max_attempts: int = 3
    worker_max_attempts: int = 3
    worker_poll_interval_sec: float = 10.0
    workers_enabled: bool = True
    dormant_retry_days: int = 365
    shutdown_grace_sec: float = 10.0

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, value: str) -> str:
        allowed = {"development", "staging", "production", "test"}
        if value not in allowed:
            raise ValueError(f"app_env must be one of {sorted(allowed)}")
        return value

    @field_validator("worker_max_attempts", "inline_max_attempts")
    @classmethod
    def validate_attempts(cls, value: int) -> int:
        if value < 1:
            raise ValueError("attempt ceilings must be at least 1")
        return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
