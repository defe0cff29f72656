"""Settings and configuration."""
import logging
from functools import lru_cache
from typing import Optional, List

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

# Development-only fallback. Production deployments must inject SECRET_SALT.
DEV_SECRET_SALT = "1994"


class Settings(BaseSettings):
    # Core
    mode: str = "dev"  # dev, prod
    dev_mode: bool = False
    log_level: str = "INFO"

    # Security
    secret_salt: Optional[str] = None

    # Durable store
    store_backend: str = "file"  # memory, file, redis, sql
    data_dir: str = "./data"
    redis_url: str = "redis://localhost:6379/0"
    database_url: str = "sqlite:///./budgetsync.db"

    # Rate Limiting
    rate_limit_enabled: bool = True
    rate_limit_backend: str = "memory"  # memory, redis
    rate_limit_requests: int = 30
    rate_limit_window_seconds: int = 60
    rate_limit_dev_fail_open: bool = False

    # Hot cache
    hot_cache_ttl_seconds: float = 600

    # CORS
    cors_allow_origins: List[str] = ["*"]

    # Sync client
    client_base_url: str = "http://localhost:8000"
    client_endpoint: str = "/api/user-data"
    client_request_timeout: float = 10.0
    client_cache_ttl_seconds: float = 1800
    client_save_attempts: int = 3
    client_retry_base_delay: float = 0.5
    client_throttle_window: float = 5.0
    client_local_store_path: str = "./local_store.json"

    model_config = {
        "env_file": ".env",
        "extra": "ignore"
    }

    @property
    def is_prod(self) -> bool:
        return self.mode.lower() == "prod"


def resolve_secret_salt(settings: Settings) -> str:
    """Return the key-derivation salt.

    Falls back to the development default outside prod mode; in prod a
    missing salt is fatal.
    """
    if settings.secret_salt:
        return settings.secret_salt
    if settings.is_prod:
        raise RuntimeError("CRITICAL: SECRET_SALT must be set in production mode.")
    logger.warning("SECRET_SALT not set, using development default salt")
    return DEV_SECRET_SALT


@lru_cache()
def get_settings() -> Settings:
    return Settings()
