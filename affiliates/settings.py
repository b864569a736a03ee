"""Service settings and configuration."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Affiliate service configuration."""

    model_config = SettingsConfigDict(
        env_prefix="AFFILIATES_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "affiliate-ledger"
    env: str = "development"
    log_level: str = "INFO"
    log_format: str = "console"
    site_url: str = "http://localhost:3000"
    allowed_origins: str = "http://localhost:3000"

    # Store
    database_url: str = "sqlite:///./affiliates.db"
    store_timeout_seconds: float = 5.0
    storage_retry_attempts: int = 3

    # Commission
    default_commission_bps: int = 1000  # 10%

    # Attribution
    attribution_cookie_name: str = "affiliate_code"
    attribution_window_days: int = 30
    affiliate_term_days: int | None = 60

    # Admin
    admin_api_token: str = "change-me-in-production"

    # Read APIs
    default_page_size: int = 20
    max_page_size: int = 100

    @property
    def attribution_window_seconds(self) -> int:
        return self.attribution_window_days * 24 * 60 * 60


settings = Settings()
