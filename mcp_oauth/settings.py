# mcp_oauth/settings.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import List, Literal, Optional
import logging
from pathlib import Path

from .oauth.models import OAuthClientConfig

logger = logging.getLogger(__name__)

# This settings.py file is at <project>/mcp_oauth/settings.py
PROJECT_ROOT = Path(__file__).parent.parent.resolve()
DOTENV_PATH = PROJECT_ROOT / ".env"

if DOTENV_PATH.exists():
    logger.debug(f"SETTINGS.PY: .env file found at: {DOTENV_PATH}")
else:
    logger.debug(f"SETTINGS.PY: no .env file at {DOTENV_PATH}. Using OS env vars or defaults.")


class Settings(BaseSettings):
    """OAuth provider settings with environment variable support (prefix OAUTH_)."""

    storage_backend: Literal["memory", "redis"] = "memory"

    # Redis configuration
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: Optional[str] = None
    redis_ssl: bool = False
    redis_key_prefix: str = "oauth:"

    # Storage call bounds and retry policy
    connect_timeout_seconds: float = Field(default=5.0, gt=0)
    operation_timeout_seconds: float = Field(default=2.0, gt=0)
    retry_attempts: int = Field(default=5, ge=0)
    retry_base_delay_seconds: float = Field(default=0.1, ge=0)
    retry_max_delay_seconds: float = Field(default=2.0, ge=0)

    # Credential lifetimes
    access_token_lifetime_seconds: int = Field(default=3600, gt=0)
    refresh_token_lifetime_seconds: int = Field(default=86400, gt=0)
    auth_code_lifetime_seconds: int = Field(default=600, gt=0)

    bcrypt_rounds: int = Field(default=10, ge=4, le=31)
    cleanup_interval_seconds: float = Field(default=300.0, gt=0)

    clients: List[OAuthClientConfig] = Field(
        default_factory=list,
        description="Static client registrations, given as a JSON list in OAUTH_CLIENTS."
    )

    model_config = SettingsConfigDict(
        env_prefix="OAUTH_",
        env_file=DOTENV_PATH if DOTENV_PATH.exists() else None,
        extra="ignore",
        env_file_encoding='utf-8'
    )


settings = Settings()

logger.debug(
    f"SETTINGS.PY: storage_backend='{settings.storage_backend}', redis_host='{settings.redis_host}', "
    f"redis_password={'********' if settings.redis_password else 'None'}, "
    f"clients={[c.client_id for c in settings.clients]}"
)
