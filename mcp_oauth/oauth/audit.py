# mcp_oauth/oauth/audit.py
import logging
from enum import Enum
from typing import Any, Dict, Optional

AUDIT_LOGGER_NAME = "mcp_oauth.audit"

# Keys whose values must never reach a log record in full
_SENSITIVE_KEYS = frozenset({
    "access_token", "refresh_token", "code", "token", "code_verifier", "client_secret", "secret",
})


class AuditEvent(str, Enum):
    AUTHORIZATION_REQUESTED = "oauth.authorization.requested"
    AUTHORIZATION_GRANTED = "oauth.authorization.granted"
    AUTHORIZATION_DENIED = "oauth.authorization.denied"
    TOKEN_ISSUED = "oauth.token.issued"
    TOKEN_REFRESHED = "oauth.token.refreshed"
    TOKEN_REVOKED = "oauth.token.revoked"
    TOKEN_VALIDATION_SUCCESS = "oauth.token.validation.success"
    TOKEN_VALIDATION_FAILED = "oauth.token.validation.failed"
    CLIENT_AUTHENTICATED = "oauth.client.authenticated"


def safe_token_id(token: Optional[str]) -> str:
    """First eight characters of a credential, for correlating log lines without leaking it."""
    if not token:
        return "<none>"
    return token[:8] + "..."


class OAuthAuditLogger:
    """
    Emits OAuth audit events as structured log records.

    Successes are logged at INFO and failures at WARNING on the
    ``mcp_oauth.audit`` logger; the event payload is attached to the record
    under ``oauth_event`` so handlers can ship it to an audit sink.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self._logger = logger or logging.getLogger(AUDIT_LOGGER_NAME)

    def log(
        self,
        event: AuditEvent,
        success: bool,
        client_id: Optional[str] = None,
        **details: Any
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "event": event.value,
            "result": "success" if success else "failure",
            "client_id": client_id,
        }
        for key, value in details.items():
            if key in _SENSITIVE_KEYS and isinstance(value, str):
                value = safe_token_id(value)
            payload[key] = value

        level = logging.INFO if success else logging.WARNING
        self._logger.log(level, f"{event.value} [{payload['result']}] {payload}", extra={"oauth_event": payload})
        return payload
