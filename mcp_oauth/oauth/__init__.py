# mcp_oauth/oauth/__init__.py
# OAuth 2.1 Provider Package

# Core OAuth models and data structures
from .models import (
    OAuthClient,
    OAuthClientConfig,
    AuthCodeData,
    AccessTokenData,
    RefreshTokenData,
    TokenResponse,
    VerifiedToken,
    StorageStats,
    HealthCheckResult,
    ComponentHealth,
)

# OAuth error types
from .errors import (
    OAuthError,
    InvalidRequestError,
    InvalidRedirectUriError,
    InvalidClientError,
    InvalidGrantError,
    InvalidScopeError,
    ServerError,
    TemporarilyUnavailableError,
)

# PKCE (Proof Key for Code Exchange) utilities
from .pkce import (
    generate_pkce_code_verifier,
    generate_pkce_code_challenge,
    verify_pkce_code_verifier,
)

# Audit logging
from .audit import AuditEvent, OAuthAuditLogger

# Main OAuth provider implementation
from .provider import PlexusAuthorizationProvider

__all__ = [
    "OAuthClient",
    "OAuthClientConfig",
    "AuthCodeData",
    "AccessTokenData",
    "RefreshTokenData",
    "TokenResponse",
    "VerifiedToken",
    "StorageStats",
    "HealthCheckResult",
    "ComponentHealth",
    "OAuthError",
    "InvalidRequestError",
    "InvalidRedirectUriError",
    "InvalidClientError",
    "InvalidGrantError",
    "InvalidScopeError",
    "ServerError",
    "TemporarilyUnavailableError",
    "generate_pkce_code_verifier",
    "generate_pkce_code_challenge",
    "verify_pkce_code_verifier",
    "AuditEvent",
    "OAuthAuditLogger",
    "PlexusAuthorizationProvider",
]
