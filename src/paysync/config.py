from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./paysync.db"
    # 64 hex chars (AES-256). Required; the API refuses to start without it.
    encryption_key: str = ""

    finch_client_id: str = ""
    finch_client_secret: str = ""
    finch_redirect_uri: str = "http://localhost:8000/integrations/finch/callback"
    finch_sandbox_mode: bool = True
    finch_api_version: str = "2020-09-17"
    finch_products: str = "company,directory,individual,employment,payment,pay_statement"

    provider_timeout_seconds: float = 30.0
    provider_max_retries: int = 3
    provider_backoff_seconds: float = 1.0

    sync_max_concurrency: int = 5
    sync_lookback_days: int = 365
    sync_stale_after_seconds: int = 6 * 60 * 60
    directory_page_size: int = 100

    # OAuth state tokens older than this are rejected at callback time
    oauth_state_max_age_seconds: Optional[int] = 15 * 60

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
