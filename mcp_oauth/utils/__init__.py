# mcp_oauth/utils/__init__.py

"""
Utility module initialization file.

This module exposes the secret hashing and token generation helpers
used by the OAuth provider.
"""

from .security import ClientSecretHasher, generate_opaque_token, DEFAULT_BCRYPT_ROUNDS, MAX_SECRET_BYTES

__all__ = ["ClientSecretHasher", "generate_opaque_token", "DEFAULT_BCRYPT_ROUNDS", "MAX_SECRET_BYTES"]
