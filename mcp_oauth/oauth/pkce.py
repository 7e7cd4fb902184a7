# mcp_oauth/oauth/pkce.py
import secrets
import hashlib
import base64
import hmac
import re

# RFC 7636 specifies length between 43 and 128 characters
CODE_VERIFIER_LENGTH = 64

SUPPORTED_CODE_CHALLENGE_METHODS = ("S256",)

# base64url of a 32-byte SHA-256 digest without padding is always 43 characters
_CODE_CHALLENGE_RE = re.compile(r"^[A-Za-z0-9\-_]{43}$")
_CODE_VERIFIER_RE = re.compile(r"^[A-Za-z0-9\-._~]+$")


def generate_pkce_code_verifier(length: int = CODE_VERIFIER_LENGTH) -> str:
    """
    Generates a cryptographically random PKCE code verifier.
    The verifier is an unreserved string with a minimum length of 43 characters
    and a maximum length of 128 characters. (RFC 7636 - Section 4.1)
    """
    if not (43 <= length <= 128):
        raise ValueError("PKCE code verifier length must be between 43 and 128 characters.")

    # token_urlsafe(n) yields ~1.33n characters, so over-generate and truncate
    verifier = secrets.token_urlsafe(length)
    return verifier[:length]


def generate_pkce_code_challenge(code_verifier: str) -> str:
    """
    Computes the S256 code challenge: base64url(SHA256(code_verifier)) without padding.
    (RFC 7636 - Section 4.2)
    """
    hashed_verifier = hashlib.sha256(code_verifier.encode('ascii')).digest()
    return base64.urlsafe_b64encode(hashed_verifier).rstrip(b'=').decode('ascii')


def validate_pkce_code_verifier_format(code_verifier: str) -> bool:
    """
    Validates the format of a PKCE code_verifier as per RFC 7636.
    Checks length and allowed characters (A-Z, a-z, 0-9, '-', '.', '_', '~').
    """
    if not (43 <= len(code_verifier) <= 128):
        return False
    return bool(_CODE_VERIFIER_RE.match(code_verifier))


def validate_pkce_code_challenge_format(code_challenge: str) -> bool:
    return bool(_CODE_CHALLENGE_RE.match(code_challenge))


def verify_pkce_code_verifier(code_verifier: str, code_challenge: str) -> bool:
    """Returns True iff the verifier hashes to the stored S256 challenge."""
    try:
        expected = generate_pkce_code_challenge(code_verifier)
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(expected, code_challenge)
