from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Database
    db_path: str = "/data/integrations.db"

    # WHOOP OAuth client
    whoop_client_id: str = ""
    whoop_client_secret: str = ""
    whoop_redirect_uri: str = ""
    whoop_token_url: str = "https://api.prod.whoop.com/oauth/oauth2/token"
    whoop_api_base: str = "https://api.prod.whoop.com/developer"

    # Base64-encoded 32-byte AES key used to encrypt stored tokens
    whoop_token_encryption_key: str = ""

    # Deadlines (seconds)
    whoop_request_timeout: float = 30.0
    whoop_token_timeout: float = 10.0
    sync_timeout: float = 300.0

    # Scheduled sync
    sync_hour: int = 6
    sync_minute: int = 0
    sync_concurrency: int = 4

    debug: bool = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
