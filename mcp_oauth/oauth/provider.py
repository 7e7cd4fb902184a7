# mcp_oauth/oauth/provider.py
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable, List, Optional, Sequence
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .models import (
    AuthCodeData,
    AccessTokenData,
    RefreshTokenData,
    OAuthClient,
    OAuthClientConfig,
    TokenResponse,
    VerifiedToken,
    StorageStats,
    HealthCheckResult,
)
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
from .pkce import (
    SUPPORTED_CODE_CHALLENGE_METHODS,
    validate_pkce_code_challenge_format,
    verify_pkce_code_verifier,
)
from .audit import AuditEvent, OAuthAuditLogger, safe_token_id
from ..storage.cleanup import ExpiredRecordCleaner
from ..storage.errors import StaleRecordError, StorageError, StorageUnavailableError
from ..storage.storage_interfaces import AbstractOAuthStorage
from ..utils.security import ClientSecretHasher, generate_opaque_token

logger = logging.getLogger(__name__)

# OAuth token and code lifetime defaults
AUTH_CODE_LIFETIME_SECONDS = 600  # 10 minutes
ACCESS_TOKEN_LIFETIME_SECONDS = 3600  # 1 hour
REFRESH_TOKEN_LIFETIME_SECONDS = 86400  # 24 hours

TOKEN_TYPE_HINTS = ("access_token", "refresh_token")


def _dedupe(scopes: Sequence[str]) -> List[str]:
    return list(dict.fromkeys(scopes))


class PlexusAuthorizationProvider:
    """
    Core logic for the embedded OAuth 2.1 Authorization Server.

    Implements the authorization code + PKCE flow, refresh token rotation,
    access token verification and revocation. Holds no mutable state of its
    own: every record lives in the injected storage backend, so any number of
    provider instances (and processes, with a shared backend) can serve
    requests concurrently.

    Client-facing failures raise the OAuthError subclasses from
    ``mcp_oauth.oauth.errors``. Storage failures are logged and surfaced as
    TemporarilyUnavailableError (503) or ServerError (500); their text never
    reaches the caller.
    """

    def __init__(
        self,
        storage: AbstractOAuthStorage,
        clients: Optional[Sequence[OAuthClientConfig]] = None,
        access_token_lifetime_seconds: int = ACCESS_TOKEN_LIFETIME_SECONDS,
        refresh_token_lifetime_seconds: int = REFRESH_TOKEN_LIFETIME_SECONDS,
        auth_code_lifetime_seconds: int = AUTH_CODE_LIFETIME_SECONDS,
        hasher: Optional[ClientSecretHasher] = None,
        audit_logger: Optional[OAuthAuditLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
        cleanup_interval_seconds: Optional[float] = None,
    ):
        for name, value in (
            ("access_token_lifetime_seconds", access_token_lifetime_seconds),
            ("refresh_token_lifetime_seconds", refresh_token_lifetime_seconds),
            ("auth_code_lifetime_seconds", auth_code_lifetime_seconds),
        ):
            if value <= 0:
                raise ValueError(f"{name} must be positive, got {value}.")

        self.storage = storage
        self._client_configs: List[OAuthClientConfig] = list(clients or [])
        self.access_token_lifetime_seconds = access_token_lifetime_seconds
        self.refresh_token_lifetime_seconds = refresh_token_lifetime_seconds
        self.auth_code_lifetime_seconds = auth_code_lifetime_seconds
        self.hasher = hasher or ClientSecretHasher()
        self.audit = audit_logger or OAuthAuditLogger()
        self._clock = clock or storage.now
        # None leaves expired record purging to the backend's own expiry
        self.cleaner: Optional[ExpiredRecordCleaner] = (
            ExpiredRecordCleaner(storage, cleanup_interval_seconds)
            if cleanup_interval_seconds is not None else None
        )
        logger.info(
            f"PlexusAuthorizationProvider created with {type(storage).__name__} "
            f"and {len(self._client_configs)} configured client(s)."
        )

    # Lifecycle

    async def initialize(self) -> None:
        """
        Connects the storage backend and registers the configured clients.

        Client secrets are hashed concurrently on worker threads; only the
        bcrypt digests are handed to storage. The expired record cleaner, when
        configured, starts once the clients are registered.
        """
        await self.storage.initialize()
        if not self._client_configs:
            logger.warning("No OAuth clients configured; every client request will be rejected.")
        await self._register_clients()
        if self.cleaner is not None:
            self.cleaner.start()

    async def _register_clients(self) -> None:
        secret_hashes, _ = await asyncio.gather(
            asyncio.gather(*(
                self.hasher.hash_secret(config.client_secret.get_secret_value())
                for config in self._client_configs
            )),
            self.hasher.prepare(),
        )
        if not self._client_configs:
            return
        for config, secret_hash in zip(self._client_configs, secret_hashes):
            await self.storage.save_client(OAuthClient(
                client_id=config.client_id,
                client_secret_hash=secret_hash,
                redirect_uris=config.redirect_uris,
                allowed_scopes=config.scopes,
            ))
        logger.info(f"Registered OAuth clients: {[c.client_id for c in self._client_configs]}")

    async def teardown(self) -> None:
        if self.cleaner is not None:
            await self.cleaner.stop()
        await self.storage.teardown()
        logger.info("PlexusAuthorizationProvider torn down.")

    @asynccontextmanager
    async def _storage_guard(self, operation: str) -> AsyncIterator[None]:
        """Translates storage failures into OAuth server errors with a generic description."""
        try:
            yield
        except StorageError as e:
            logger.error(f"Storage failure during {operation}: {e!r}", exc_info=True)
            if isinstance(e, StorageUnavailableError):
                raise TemporarilyUnavailableError() from e
            raise ServerError() from e

    # Client authentication

    async def authenticate_client(self, client_id: str, client_secret: str) -> bool:
        """
        Checks a client's credentials against the stored bcrypt digest.

        Returns False for an unknown client or a wrong secret and never
        raises for either. An unknown client still pays for one bcrypt
        comparison, so response timing does not reveal which check failed.
        """
        async with self._storage_guard("authenticate_client"):
            client = await self.storage.get_client(client_id) if client_id else None

        if client is None or not client_secret:
            await self.hasher.burn_verification(client_secret or "")
            self.audit.log(AuditEvent.CLIENT_AUTHENTICATED, False, client_id=client_id)
            return False

        is_valid = await self.hasher.verify_secret(client_secret, client.client_secret_hash)
        self.audit.log(AuditEvent.CLIENT_AUTHENTICATED, is_valid, client_id=client_id)
        return is_valid

    # Authorization

    async def _validate_client(self, client_id: str, redirect_uri: str) -> OAuthClient:
        """
        Loads the client and checks the redirect URI against its registrations.

        Redirect URIs are compared as exact strings; no prefix or
        normalized matching is performed.
        """
        logger.debug(f"Validating client_id: {client_id}, redirect_uri: {redirect_uri}")

        async with self._storage_guard("client lookup"):
            client = await self.storage.get_client(client_id) if client_id else None
        if client is None:
            logger.warning(f"Unknown client_id: {client_id}")
            raise InvalidClientError("Unknown client.")

        if redirect_uri not in client.redirect_uris:
            logger.warning(
                f"Redirect URI '{redirect_uri}' not registered for client '{client_id}'. "
                f"Registered: {client.redirect_uris}"
            )
            raise InvalidRedirectUriError()
        return client

    def _validate_scopes(self, requested_scopes: Sequence[str], client: OAuthClient) -> List[str]:
        """Every requested scope must be allowed for the client; nothing is silently dropped."""
        scopes = _dedupe(requested_scopes)
        rejected = [scope for scope in scopes if scope not in client.allowed_scopes]
        if rejected:
            logger.warning(
                f"Client '{client.client_id}' requested scopes {rejected} "
                f"outside its allowed_scopes: {client.allowed_scopes}."
            )
            raise InvalidScopeError(f"Scope(s) not permitted for this client: {' '.join(rejected)}")
        return scopes

    async def authorize(
        self,
        client_id: str,
        redirect_uri: str,
        code_challenge: str,
        scopes: Sequence[str],
        state: Optional[str] = None,
        code_challenge_method: str = "S256",
    ) -> AuthCodeData:
        """
        Issues a single-use authorization code bound to the client, redirect
        URI, PKCE challenge and granted scopes.

        Raises:
            InvalidClientError: If the client is unknown
            InvalidRedirectUriError: If redirect_uri is not registered for the client
            InvalidRequestError: If the PKCE challenge is missing, malformed or not S256
            InvalidScopeError: If any requested scope is not allowed for the client
        """
        self.audit.log(AuditEvent.AUTHORIZATION_REQUESTED, True, client_id=client_id, scopes=list(scopes))
        try:
            client = await self._validate_client(client_id, redirect_uri)

            # OAuth 2.1 mandates PKCE for all clients
            if code_challenge_method not in SUPPORTED_CODE_CHALLENGE_METHODS:
                logger.warning(f"Unsupported PKCE method: {code_challenge_method}. Only S256 is supported.")
                raise InvalidRequestError("PKCE code_challenge_method 'S256' is required.")
            if not code_challenge or not validate_pkce_code_challenge_format(code_challenge):
                logger.warning("PKCE code_challenge missing or malformed.")
                raise InvalidRequestError("A valid PKCE code_challenge is required.")

            granted_scopes = self._validate_scopes(scopes, client)
        except OAuthError as e:
            self.audit.log(AuditEvent.AUTHORIZATION_DENIED, False, client_id=client_id, reason=e.kind)
            raise

        auth_code = AuthCodeData(
            code=generate_opaque_token(),
            client_id=client.client_id,
            redirect_uri=redirect_uri,
            code_challenge=code_challenge,
            scopes=granted_scopes,
            expires_at=self._clock() + timedelta(seconds=self.auth_code_lifetime_seconds),
        )
        async with self._storage_guard("authorize"):
            await self.storage.save_auth_code(auth_code)

        self.audit.log(
            AuditEvent.AUTHORIZATION_GRANTED,
            True,
            client_id=client.client_id,
            code=auth_code.code,
            scopes=granted_scopes,
            state_present=state is not None,
        )
        return auth_code

    def build_authorization_redirect(self, code: str, redirect_uri: str, state: Optional[str] = None) -> str:
        """Appends ``code`` and ``state`` to the redirect URI, keeping any existing query parameters."""
        parts = urlsplit(redirect_uri)
        params = parse_qsl(parts.query, keep_blank_values=True)
        params.append(("code", code))
        if state:
            params.append(("state", state))
        return urlunsplit(parts._replace(query=urlencode(params)))

    # Token endpoint grants

    async def _issue_token_pair(
        self,
        client_id: str,
        scopes: List[str],
        previous: Optional[RefreshTokenData] = None,
    ) -> TokenResponse:
        """
        Mints a linked access/refresh token pair and stores both in one transaction.

        When ``previous`` is given, that refresh token is consumed and its
        linked access token deleted in the same transaction (rotation). If
        another request consumed it first, the commit raises StaleRecordError.
        """
        now = self._clock()
        access_token = generate_opaque_token()
        refresh_token = generate_opaque_token()

        access_record = AccessTokenData(
            access_token=access_token,
            client_id=client_id,
            scopes=scopes,
            expires_at=now + timedelta(seconds=self.access_token_lifetime_seconds),
            refresh_token=refresh_token,
        )
        refresh_record = RefreshTokenData(
            refresh_token=refresh_token,
            client_id=client_id,
            scopes=scopes,
            expires_at=now + timedelta(seconds=self.refresh_token_lifetime_seconds),
            access_token=access_token,
        )

        async with await self.storage.begin_transaction() as transaction:
            if previous is not None:
                await transaction.consume_refresh_token(previous.refresh_token)
                if previous.access_token:
                    await transaction.delete_access_token(previous.access_token)
            await transaction.save_access_token(access_record)
            await transaction.save_refresh_token(refresh_record)

        return TokenResponse(
            access_token=access_token,
            expires_in=self.access_token_lifetime_seconds,
            refresh_token=refresh_token,
            scope=" ".join(scopes) or None,
        )

    async def exchange_authorization_code(
        self,
        code: str,
        client_id: str,
        redirect_uri: str,
        code_verifier: str,
    ) -> TokenResponse:
        """
        Exchanges an authorization code for an access/refresh token pair.

        A PKCE mismatch leaves the code unused so the client may retry with
        the right verifier until the code expires. The code is only consumed
        by the atomic mark_auth_code_used, so among concurrent exchanges of
        the same code exactly one succeeds.
        """
        if not code_verifier:
            raise InvalidRequestError("code_verifier is required for PKCE.")

        try:
            async with self._storage_guard("exchange_authorization_code"):
                auth_code = await self.storage.get_auth_code(code) if code else None
                if auth_code is None:
                    logger.warning(f"Authorization code {safe_token_id(code)} not found or expired.")
                    raise InvalidGrantError("Invalid or expired authorization code.")

                if auth_code.client_id != client_id:
                    logger.warning(
                        f"Client ID mismatch for code {safe_token_id(code)}. "
                        f"Expected {auth_code.client_id}, got {client_id}."
                    )
                    raise InvalidGrantError("Authorization code was not issued to this client.")

                if auth_code.redirect_uri != redirect_uri:
                    logger.warning(
                        f"Redirect URI mismatch for code {safe_token_id(code)}. "
                        f"Expected {auth_code.redirect_uri}, got {redirect_uri}."
                    )
                    raise InvalidGrantError("Redirect URI mismatch.")

                if not verify_pkce_code_verifier(code_verifier, auth_code.code_challenge):
                    logger.warning(f"PKCE verification failed for code {safe_token_id(code)}.")
                    raise InvalidGrantError("PKCE verification failed")

                if not await self.storage.mark_auth_code_used(code):
                    logger.warning(f"Authorization code {safe_token_id(code)} already used.")
                    raise InvalidGrantError("authorization code already used")

                response = await self._issue_token_pair(client_id, list(auth_code.scopes))
        except OAuthError as e:
            self.audit.log(
                AuditEvent.TOKEN_ISSUED, False, client_id=client_id, code=code, reason=e.error_description
            )
            raise

        self.audit.log(
            AuditEvent.TOKEN_ISSUED,
            True,
            client_id=client_id,
            grant_type="authorization_code",
            access_token=response.access_token,
            scopes=response.scopes,
        )
        return response

    async def exchange_refresh_token(
        self,
        refresh_token: str,
        client_id: str,
        requested_scopes: Optional[Sequence[str]] = None,
    ) -> TokenResponse:
        """
        Rotates a refresh token: the old access/refresh pair is deleted and a
        brand new pair is issued.

        ``requested_scopes`` may narrow the grant but never widen it. When
        omitted or empty, the original scopes are carried over.
        """
        try:
            async with self._storage_guard("exchange_refresh_token"):
                record = await self.storage.get_refresh_token(refresh_token) if refresh_token else None
                if record is None:
                    logger.warning(f"Refresh token {safe_token_id(refresh_token)} not found or expired.")
                    raise InvalidGrantError("Invalid or expired refresh token.")

                if record.client_id != client_id:
                    logger.warning(
                        f"Refresh token {safe_token_id(refresh_token)} belongs to '{record.client_id}', "
                        f"not '{client_id}'."
                    )
                    raise InvalidGrantError("Refresh token was not issued to this client.")

                if requested_scopes:
                    scopes = _dedupe(requested_scopes)
                    widened = [scope for scope in scopes if scope not in record.scopes]
                    if widened:
                        logger.warning(
                            f"Client '{client_id}' requested scopes {widened} beyond the original grant "
                            f"{record.scopes}."
                        )
                        raise InvalidScopeError(
                            f"Requested scope exceeds the original grant: {' '.join(widened)}"
                        )
                else:
                    scopes = list(record.scopes)

                try:
                    response = await self._issue_token_pair(client_id, scopes, previous=record)
                except StaleRecordError as e:
                    logger.warning(f"Refresh token {safe_token_id(refresh_token)} was rotated by a concurrent request.")
                    raise InvalidGrantError("Invalid or expired refresh token.") from e
        except OAuthError as e:
            self.audit.log(
                AuditEvent.TOKEN_REFRESHED,
                False,
                client_id=client_id,
                refresh_token=refresh_token,
                reason=e.error_description,
            )
            raise

        self.audit.log(
            AuditEvent.TOKEN_REFRESHED,
            True,
            client_id=client_id,
            old_refresh_token=safe_token_id(refresh_token),
            access_token=response.access_token,
            scopes=response.scopes,
        )
        return response

    # Resource server side

    async def verify_access_token(self, token: str) -> Optional[VerifiedToken]:
        """
        Returns the token's client, scopes and expiry, or None if the token is
        unknown or expired. Does not modify any state.
        """
        async with self._storage_guard("verify_access_token"):
            record = await self.storage.get_access_token(token) if token else None

        if record is None:
            self.audit.log(AuditEvent.TOKEN_VALIDATION_FAILED, False, token=token)
            return None

        self.audit.log(AuditEvent.TOKEN_VALIDATION_SUCCESS, True, client_id=record.client_id, token=token)
        return VerifiedToken(client_id=record.client_id, scopes=list(record.scopes), expires_at=record.expires_at)

    async def revoke_token(self, token: str, client_id: str, token_type_hint: Optional[str] = None) -> None:
        """
        Revokes an access or refresh token together with its linked counterpart.

        Unknown tokens and tokens owned by another client are ignored without
        error (RFC 7009), so the result never reveals whether a token exists.
        ``token_type_hint`` only decides which namespace is searched first.
        """
        if not token:
            return

        lookup_order = list(TOKEN_TYPE_HINTS)
        if token_type_hint == "refresh_token":
            lookup_order.reverse()

        async with self._storage_guard("revoke_token"):
            for token_type in lookup_order:
                if token_type == "access_token":
                    record = await self.storage.get_access_token(token)
                    linked = record.refresh_token if record else None
                else:
                    record = await self.storage.get_refresh_token(token)
                    linked = record.access_token if record else None

                if record is None:
                    continue

                if record.client_id != client_id:
                    self.audit.log(
                        AuditEvent.TOKEN_REVOKED, False, client_id=client_id, token=token, reason="client_mismatch"
                    )
                    return

                async with await self.storage.begin_transaction() as transaction:
                    if token_type == "access_token":
                        await transaction.delete_access_token(token)
                        if linked:
                            await transaction.delete_refresh_token(linked)
                    else:
                        await transaction.delete_refresh_token(token)
                        if linked:
                            await transaction.delete_access_token(linked)

                self.audit.log(
                    AuditEvent.TOKEN_REVOKED,
                    True,
                    client_id=client_id,
                    token=token,
                    token_type=token_type,
                    cascaded=bool(linked),
                )
                return

        logger.debug(f"Revocation requested for unknown token {safe_token_id(token)}; ignoring.")

    # Operations

    async def get_stats(self) -> StorageStats:
        async with self._storage_guard("get_stats"):
            return await self.storage.get_stats()

    async def health_check(self) -> HealthCheckResult:
        async with self._storage_guard("health_check"):
            return await self.storage.health_check()
