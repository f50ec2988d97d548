from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # PostgreSQL
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "tg_user"
    postgres_password: str = "changeme"
    postgres_db: str = "tiergate"

    @property
    def postgres_url(self) -> str:
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # Upstream credentials, validated on first use
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    gemini_super_smart_api_key: str = ""
    gemini_pro_smart_api_key: str = ""
    gemini_fallback_api_key: str = ""
    grok_api_key: str = ""
    groq_api_key: str = ""

    # Tier bindings (model ids are swappable without touching callers)
    super_smart_model: str = "gemini-2.5-pro"
    pro_smart_model: str = "gemini-2.5-flash"
    normal_model: str = "grok-3-mini"
    fast_model: str = "moonshotai/kimi-k2-instruct-0905"
    fallback_model: str = "gemini-2.0-flash"

    # Retry policy
    retry_max_retries: int = 3
    retry_base_delay: float = 1.0  # seconds, doubled per attempt
    retry_max_delay: float = 30.0
    retry_jitter: bool = False

    # Credits
    free_daily_credits: int = 50
    pro_daily_credits: int = 3500
    credit_reset_hours: int = 24
    max_grant_credits: int = 50
    max_ad_rewards_per_day: int = 20

    # App
    app_env: str = "development"
    app_debug: bool = True
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # CORS
    allowed_origins: str = "*"  # comma-separated

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    def credential(self, ref: str) -> str:
        """Return the secret stored under settings field ``ref`` (may be empty)."""
        return (getattr(self, ref, "") or "").strip()


settings = Settings()


def validate_settings_for_production() -> None:
    """Validate critical settings. Called on startup in non-test environments.

    Upstream secrets are not checked here: a missing key only
    fails the requests that need it.
    """
    errors: list[str] = []

    if settings.retry_max_retries < 0:
        errors.append("RETRY_MAX_RETRIES must be >= 0")

    if settings.retry_base_delay <= 0:
        errors.append("RETRY_BASE_DELAY must be positive")

    if settings.free_daily_credits < 0 or settings.pro_daily_credits < 0:
        errors.append("Daily credit allowances must be >= 0")

    if settings.app_env == "production":
        if settings.allowed_origins == "*":
            errors.append("ALLOWED_ORIGINS must not be '*' in production")
        if settings.app_debug:
            errors.append("APP_DEBUG must be false in production")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
