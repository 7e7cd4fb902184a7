# mcp_oauth/oauth/errors.py
from fastapi import HTTPException, status


class OAuthError(HTTPException):
    """Base class for OAuth 2.1 errors that properly formats error responses."""

    kind: str = "oauth_error"

    def __init__(
        self,
        status_code: int,
        error: str,
        error_description: str | None = None,
        error_uri: str | None = None
    ):
        self.error = error
        self.error_description = error_description
        self.error_uri = error_uri

        headers = {"WWW-Authenticate": "Bearer"}

        # Error detail dictionary according to RFC 6749 Section 5.2
        detail = {"error": error}
        if error_description:
            detail["error_description"] = error_description
        if error_uri:
            detail["error_uri"] = error_uri

        super().__init__(status_code=status_code, detail=detail, headers=headers)

    def __str__(self) -> str:
        if self.error_description:
            return f"{self.error}: {self.error_description}"
        return self.error


class InvalidRequestError(OAuthError):
    """
    The request is missing a required parameter, includes an
    unsupported parameter value (other than grant type),
    repeats a parameter, includes multiple credentials,
    utilizes more than one mechanism for authenticating the
    client, or is otherwise malformed.
    (RFC 6749 - Section 5.2)
    """

    kind = "invalid_request"

    def __init__(self, error_description: str | None = None, error_uri: str | None = None):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error="invalid_request",
            error_description=error_description,
            error_uri=error_uri
        )


class InvalidRedirectUriError(InvalidRequestError):
    """
    The redirect_uri is not one of the URIs registered for the client.
    Reported as invalid_request on the wire; the authorization server
    must not redirect to an unverified URI.
    (RFC 6749 - Section 4.1.2.1)
    """

    kind = "invalid_redirect_uri"

    def __init__(
        self,
        error_description: str | None = "Invalid redirect_uri for the client.",
        error_uri: str | None = None
    ):
        super().__init__(error_description=error_description, error_uri=error_uri)


class InvalidClientError(OAuthError):
    """
    Client authentication failed (e.g., unknown client, no
    client authentication included, or unsupported
    authentication method).
    (RFC 6749 - Section 5.2)
    """

    kind = "invalid_client"

    def __init__(
        self,
        error_description: str | None = "Client authentication failed.",
        error_uri: str | None = None
    ):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            error="invalid_client",
            error_description=error_description,
            error_uri=error_uri
        )


class InvalidGrantError(OAuthError):
    """
    The provided authorization grant (e.g., authorization
    code, resource owner credentials) or refresh token is
    invalid, expired, revoked, does not match the redirection
    URI used in the authorization request, or was issued to
    another client.
    (RFC 6749 - Section 5.2)
    """

    kind = "invalid_grant"

    def __init__(
        self,
        error_description: str | None = "Invalid authorization grant or refresh token.",
        error_uri: str | None = None
    ):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error="invalid_grant",
            error_description=error_description,
            error_uri=error_uri
        )


class InvalidScopeError(OAuthError):
    """
    The requested scope is invalid, unknown, malformed, or
    exceeds the scope granted by the resource owner.
    (RFC 6749 - Section 5.2)
    """

    kind = "invalid_scope"

    def __init__(self, error_description: str | None = None, error_uri: str | None = None):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error="invalid_scope",
            error_description=error_description,
            error_uri=error_uri
        )


class ServerError(OAuthError):
    """
    The authorization server encountered an unexpected
    condition that prevented it from fulfilling the request.
    (RFC 6749 - Section 4.1.2.1 / 4.2.2.1)
    """

    kind = "server_error"

    def __init__(
        self,
        error_description: str | None = "The authorization server encountered an internal error.",
        error_uri: str | None = None
    ):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            error="server_error",
            error_description=error_description,
            error_uri=error_uri
        )


class TemporarilyUnavailableError(OAuthError):
    """
    The authorization server is currently unable to handle the request due to a
    temporary overloading or maintenance of the server.
    (RFC 6749 - Section 5.2)
    """

    kind = "temporarily_unavailable"

    def __init__(
        self,
        error_description: str | None = "The authorization server is temporarily unavailable.",
        error_uri: str | None = None
    ):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            error="temporarily_unavailable",
            error_description=error_description,
            error_uri=error_uri
        )
