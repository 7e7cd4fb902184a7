# mcp_oauth/oauth/models.py
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator
from pydantic.alias_generators import to_camel
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone

from ..utils.security import MAX_SECRET_BYTES, secret_too_long


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class _StoredRecord(BaseModel):
    """Base for records owned by the storage layer. Serialized with camelCase field names."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    @field_validator("expires_at", check_fields=False)
    @classmethod
    def _require_aware_timestamp(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("expires_at must be timezone-aware.")
        return value.astimezone(timezone.utc)

    def is_expired(self, now: datetime) -> bool:
        """expires_at is an exclusive deadline."""
        return now >= self.expires_at


class OAuthClient(BaseModel):
    """A registered OAuth client. Immutable once loaded from configuration."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    client_id: str = Field(min_length=1)
    client_secret_hash: str = Field(min_length=1, description="bcrypt digest of the client secret.")
    redirect_uris: List[str] = Field(min_length=1)
    allowed_scopes: List[str] = Field(default_factory=list)


class AuthCodeData(_StoredRecord):
    """Internal representation of an authorization code for storage and validation."""
    code: str = Field(min_length=1)
    client_id: str = Field(min_length=1)
    redirect_uri: str = Field(min_length=1)
    code_challenge: str = Field(min_length=1)
    scopes: List[str] = Field(default_factory=list)
    expires_at: datetime
    used: bool = False


class AccessTokenData(_StoredRecord):
    """Internal representation of access token data for validation and scope checking."""
    access_token: str = Field(min_length=1)
    client_id: str = Field(min_length=1)
    scopes: List[str] = Field(default_factory=list)
    expires_at: datetime
    refresh_token: Optional[str] = None  # linked refresh token, not ownership


class RefreshTokenData(_StoredRecord):
    """Internal representation of refresh token data for token renewal."""
    refresh_token: str = Field(min_length=1)
    client_id: str = Field(min_length=1)
    scopes: List[str] = Field(default_factory=list)
    expires_at: datetime
    access_token: Optional[str] = None  # linked access token


class TokenResponse(BaseModel):
    """OAuth token response structure as per RFC 6749."""
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: str
    scope: Optional[str] = None

    @property
    def scopes(self) -> List[str]:
        return self.scope.split() if self.scope else []


class VerifiedToken(BaseModel):
    """Result of a successful access token verification."""
    client_id: str
    scopes: List[str]
    expires_at: datetime


class StorageStats(BaseModel):
    clients: int = 0
    access_tokens: int = 0
    refresh_tokens: int = 0
    authorization_codes: int = 0
    memory_usage_bytes: Optional[int] = None
    active_connections: Optional[int] = None


class ComponentHealth(BaseModel):
    healthy: bool
    message: Optional[str] = None


class HealthCheckResult(BaseModel):
    """Outcome of a storage health check."""
    healthy: bool
    message: str
    response_time_ms: float
    timestamp: datetime = Field(default_factory=utc_now)
    components: Dict[str, ComponentHealth] = Field(default_factory=dict)
    errors: List[str] = Field(default_factory=list)

    @property
    def details(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"healthy"})


class OAuthClientConfig(BaseModel):
    """Client registration as it appears in configuration. The secret is hashed at load time."""
    client_id: str = Field(min_length=1)
    client_secret: SecretStr
    redirect_uris: List[str] = Field(min_length=1)
    scopes: List[str] = Field(default_factory=list)

    @field_validator("client_secret")
    @classmethod
    def _validate_secret(cls, value: SecretStr) -> SecretStr:
        secret = value.get_secret_value()
        if not secret:
            raise ValueError("client_secret must not be empty.")
        if secret_too_long(secret):
            raise ValueError(f"client_secret must be at most {MAX_SECRET_BYTES} bytes as UTF-8 (bcrypt limit).")
        return value
