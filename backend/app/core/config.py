from pydantic_settings import BaseSettings
from pydantic import AnyUrl
from functools import lru_cache


class Settings(BaseSettings):
    # core
    ENV: str = "dev"
    API_PREFIX: str = "/api"

    # database & redis
    DATABASE_URL: AnyUrl
    # Keep this as a plain string so redis:// URLs are always accepted
    REDIS_URL: str

    # auth / security
    API_AUTH_KEY: str | None = None
    FRONTEND_ORIGIN: str | None = None
    # Explicit debug-only switch for wide-open CORS in non-prod envs
    CORS_ALLOW_ALL_ORIGINS: bool = False
    # Comma-separated Fernet keys; the first encrypts, all of them decrypt
    FIELD_ENCRYPTION_KEYS: str | None = None

    # external AI collaborators
    OPENAI_API_KEY: str | None = None
    OPENAI_DEEP_RESEARCH_MODEL: str = "o4-mini-deep-research"
    OPENAI_DEEP_RESEARCH_VECTOR_STORE_IDS: str | None = None
    FOLLOW_UP_MODEL: str = "gpt-4o-mini"
    # Hard cap on concurrent LLM calls per process
    LLM_MAX_CONCURRENCY: int = 4

    # credits
    RESEARCH_CREDIT_COST: float = 0.7
    FOLLOW_UP_CREDIT_COST: float = 0.1
    ALLOW_DEV_CREDIT_MUTATION: bool = True

    # research orchestration
    RESEARCH_STATE_MODE: str = "rich"  # or "simple"
    RESEARCH_LOCK_TTL_SECONDS: int = 120
    RESEARCH_REFUND_ON_SUBMISSION_FAILURE: bool = True
    RESEARCH_REFRESH_INTERVAL_SECONDS: int = 30

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache
def get_settings() -> Settings:
    return Settings()
