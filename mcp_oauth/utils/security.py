# mcp_oauth/utils/security.py
import asyncio
import logging
import secrets
from typing import Optional

import bcrypt

logger = logging.getLogger(__name__)

DEFAULT_BCRYPT_ROUNDS = 10
# bcrypt only reads the first 72 bytes of its input
MAX_SECRET_BYTES = 72


def secret_too_long(secret: str) -> bool:
    return len(secret.encode("utf-8")) > MAX_SECRET_BYTES


def generate_opaque_token(num_bytes: int = 32) -> str:
    """Generates an unpredictable URL-safe identifier for codes and tokens."""
    return secrets.token_urlsafe(num_bytes)


class ClientSecretHasher:
    """
    bcrypt hashing for client secrets.

    bcrypt is deliberately slow, so both hashing and verification run on the
    default thread pool via asyncio.to_thread. A burst of client authentication
    attempts then cannot stall other coroutines on the event loop.
    """

    def __init__(self, rounds: int = DEFAULT_BCRYPT_ROUNDS):
        if not (4 <= rounds <= 31):
            raise ValueError("bcrypt rounds must be between 4 and 31.")
        self.rounds = rounds
        self._dummy_hash: Optional[bytes] = None

    def hash_secret_sync(self, secret: str) -> str:
        if secret_too_long(secret):
            raise ValueError(f"Client secret exceeds the bcrypt limit of {MAX_SECRET_BYTES} bytes.")
        return bcrypt.hashpw(secret.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify_secret_sync(self, secret: str, secret_hash: str) -> bool:
        if secret_too_long(secret):
            # No stored secret can be this long, and bcrypt would compare only a prefix
            return False
        try:
            return bcrypt.checkpw(secret.encode("utf-8"), secret_hash.encode("utf-8"))
        except ValueError as e:
            # Malformed stored hash or an over-long secret; both are a mismatch to the caller
            logger.error(f"bcrypt rejected the client secret comparison: {e}")
            return False

    async def hash_secret(self, secret: str) -> str:
        return await asyncio.to_thread(self.hash_secret_sync, secret)

    async def verify_secret(self, secret: str, secret_hash: str) -> bool:
        return await asyncio.to_thread(self.verify_secret_sync, secret, secret_hash)

    async def prepare(self) -> None:
        """Builds the throwaway hash up front so the first lookup miss is not slower than later ones."""
        if self._dummy_hash is None:
            self._dummy_hash = (await self.hash_secret(generate_opaque_token())).encode("utf-8")

    async def burn_verification(self, secret: str) -> None:
        """
        Performs a verification against a throwaway hash so that a lookup miss
        costs the same as a real comparison.
        """
        await self.prepare()
        # Over-long secrets are cut down so the burn still runs a full bcrypt comparison
        burn_input = secret.encode("utf-8")[:MAX_SECRET_BYTES].decode("utf-8", errors="ignore")
        await asyncio.to_thread(self.verify_secret_sync, burn_input, self._dummy_hash.decode("utf-8"))
