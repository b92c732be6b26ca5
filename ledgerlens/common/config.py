"""
Environment-driven settings for the API, the worker and the categorizer.

Values come from the process environment, then from a local .env file.
"""
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
ENVIRONMENTS = ("development", "test", "staging", "production")
GUARDRAIL_PROFILES = ("strict", "legacy")


def _one_of(value: str, allowed: tuple, name: str) -> str:
    if value not in allowed:
        raise ValueError(f"{name} must be one of {', '.join(allowed)} (got {value!r})")
    return value


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore")

    # Postgres; DATABASE_URL wins over the individual parts
    database_url_override: Optional[str] = Field(default=None, alias="DATABASE_URL")
    db_host: str = Field(default="postgres", alias="DB_HOST")
    db_port: int = Field(default=5432, alias="DB_PORT")
    db_name: str = Field(default="ledgerlens", alias="DB_NAME")
    db_user: str = Field(default="ledgerlens", alias="DB_USER")
    db_password: str = Field(default="", alias="DB_PASSWORD")

    celery_broker_url: str = Field(default="redis://redis:6379/1", alias="CELERY_BROKER_URL")
    celery_result_backend: str = Field(default="redis://redis:6379/2", alias="CELERY_RESULT_BACKEND")

    environment: str = Field(default="production", alias="ENVIRONMENT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    json_logs: bool = Field(default=True, alias="JSON_LOGS")
    metrics_enabled: bool = Field(default=True, alias="METRICS_ENABLED")

    # Pass 2 (Anthropic)
    anthropic_api_key: Optional[str] = Field(default=None, alias="ANTHROPIC_API_KEY")
    anthropic_model: str = Field(default="claude-sonnet-4-5", alias="ANTHROPIC_MODEL")
    llm_enabled: bool = Field(default=True, alias="LLM_ENABLED")
    llm_timeout_seconds: float = Field(default=5.0, alias="LLM_TIMEOUT_SECONDS")
    llm_max_retries: int = Field(default=1, alias="LLM_MAX_RETRIES")

    # Vendor embeddings (OpenAI-compatible endpoint)
    openai_api_key: Optional[str] = Field(default=None, alias="OPENAI_API_KEY")
    embedding_api_url: str = Field(default="https://api.openai.com/v1/embeddings", alias="EMBEDDING_API_URL")
    embedding_model: str = Field(default="text-embedding-3-small", alias="EMBEDDING_MODEL")
    embeddings_enabled: bool = Field(default=True, alias="EMBEDDINGS_ENABLED")
    embedding_batch_size: int = Field(default=20, alias="EMBEDDING_BATCH_SIZE")
    embedding_batch_delay_ms: int = Field(default=100, alias="EMBEDDING_BATCH_DELAY_MS")

    # Categorizer defaults, overridable per request
    industry: str = Field(default="ecommerce", alias="CATEGORIZER_INDUSTRY")
    guardrail_profile: str = Field(default="strict", alias="GUARDRAIL_PROFILE")
    pass2_threshold: float = Field(default=0.75, alias="PASS2_THRESHOLD")
    review_threshold: float = Field(default=0.80, alias="REVIEW_THRESHOLD")
    cache_ttl_seconds: int = Field(default=300, alias="CACHE_TTL_SECONDS")

    @property
    def database_url(self) -> str:
        return self.database_url_override or (
            f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"
        )

    @field_validator("log_level")
    @classmethod
    def _log_level(cls, v: str) -> str:
        return _one_of(v.upper(), LOG_LEVELS, "LOG_LEVEL")

    @field_validator("environment")
    @classmethod
    def _environment(cls, v: str) -> str:
        return _one_of(v.lower(), ENVIRONMENTS, "ENVIRONMENT")

    @field_validator("guardrail_profile")
    @classmethod
    def _guardrail_profile(cls, v: str) -> str:
        return _one_of(v.lower(), GUARDRAIL_PROFILES, "GUARDRAIL_PROFILE")


@lru_cache()
def get_settings() -> Settings:
    return Settings()
