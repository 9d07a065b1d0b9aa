from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="AVATAR_PIPELINE_", env_file=".env", env_file_encoding="utf-8")

    app_name: str = "avatar-pipeline"
    public_url: str = "http://localhost:8888"

    # Object storage configuration
    s3_endpoint_url: str = ""
    s3_region: str | None = None
    s3_bucket: str = "dop-uploads"
    s3_access_key: str = ""
    s3_secret_key: str = ""
    s3_addressing_style: str | None = None
    persona_prefix: str = "personas/"

    # Provider credentials
    heygen_api_key: str = ""
    heygen_base_url: str = "https://api.heygen.com"
    heygen_upload_url: str = "https://upload.heygen.com"
    elevenlabs_api_key: str = ""
    elevenlabs_base_url: str = "https://api.elevenlabs.io"
    default_voice_id: str = "kDIJK53VQMjfQj3fCrML"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_base_url: str = "https://api.openai.com"
    provider_timeout: float = 30.0

    # Invocation budgets (seconds)
    quick_budget_seconds: float = 25.0
    sweep_budget_seconds: float = 180.0
    safety_margin_seconds: float = 5.0
    max_sort_candidates: int = 500
    poll_reserve_fraction: float = 0.25

    # Render polling
    poll_concurrency: int = 4
    max_pending_age_seconds: float = 2 * 60 * 60

    # Caller-owned retry budget for provider calls
    provider_retry_attempts: int = 2
    provider_retry_base_delay: float = 0.5

    # Ready notifications
    kafka_enabled: bool = False
    kafka_bootstrap_servers: str = "localhost:9092"
    kafka_ready_topic: str = "persona_ready"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
