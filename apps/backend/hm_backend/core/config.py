from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str = ""
    direct_database_url: str = ""

    environment: str = "development"
    cors_origins: str = "http://localhost:3000"

    github_webhook_secret: str = ""
    github_token: str = ""  # Fallback credential for history fetches
    github_api_url: str = "https://api.github.com"

    # History sync
    stale_after_seconds: int = 300
    sync_lease_seconds: int = 120  # A crashed sync becomes re-claimable after this

    notification_body_limit: int = 200

    # Worker jobs
    stale_sweep_batch_size: int = 50
    repo_sync_targets: str = ""  # Comma separated owner/name list for the repo_sync job

    model_config = SettingsConfigDict(
        env_file=".env.local",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def is_development(self) -> bool:
        return self.environment == "development"


@lru_cache
def get_settings() -> Settings:
    return Settings()
