from __future__ import annotations

import asyncio
import base64
import hashlib
import logging

import bcrypt

from platformcore.core.config import get_settings
from platformcore.core.errors import CredentialSystemUnavailable


logger = logging.getLogger(__name__)


def _prehash(secret: str) -> bytes:
    # bcrypt only reads 72 bytes; fold the full token into a fixed 44-byte input first.
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return base64.b64encode(digest)


class CredentialHasher:
    """Slow, salted hashing for session tokens and API keys.

    Only call ``verify`` on candidates already narrowed by lookup prefix;
    each call costs roughly 250ms at the default cost factor.
    """

    def __init__(self, rounds: int | None = None) -> None:
        self.rounds = rounds if rounds is not None else get_settings().credential_hash_rounds

    def hash(self, secret: str) -> str:
        try:
            digest = bcrypt.hashpw(_prehash(secret), bcrypt.gensalt(rounds=self.rounds))
        except (ValueError, TypeError) as exc:
            logger.error("credential_hash_failed rounds=%s", self.rounds)
            raise CredentialSystemUnavailable("Credential system unavailable") from exc
        return digest.decode("utf-8")

    def verify(self, secret: str, digest: str) -> bool:
        # Malformed digests are a system fault, never a plain mismatch.
        try:
            return bcrypt.checkpw(_prehash(secret), digest.encode("utf-8"))
        except (ValueError, TypeError) as exc:
            logger.error("credential_verify_failed")
            raise CredentialSystemUnavailable("Credential system unavailable") from exc

    async def hash_async(self, secret: str) -> str:
        return await asyncio.to_thread(self.hash, secret)

    async def verify_async(self, secret: str, digest: str) -> bool:
        return await asyncio.to_thread(self.verify, secret, digest)


def get_hasher() -> CredentialHasher:
    return CredentialHasher()
