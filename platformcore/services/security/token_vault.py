from __future__ import annotations

from base64 import urlsafe_b64encode
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from platformcore.core.config import get_settings
from platformcore.core.errors import ConfigurationError


class TokenVaultError(ConfigurationError):
    """Stored provider token could not be decrypted with the configured key."""


def _build_fernet() -> Fernet:
    settings = get_settings()
    # Provider tokens are never written in plaintext; refuse to run without a key.
    source = (settings.oauth_token_encryption_key or "").strip()
    if not source:
        raise ConfigurationError("OAUTH_TOKEN_ENCRYPTION_KEY is required to store provider tokens")
    digest = hashlib.sha256(source.encode("utf-8")).digest()
    return Fernet(urlsafe_b64encode(digest))


def encrypt_token(secret: str) -> str:
    token = _build_fernet().encrypt(secret.encode("utf-8"))
    return str(token.decode("utf-8"))


def decrypt_token(ciphertext: str) -> str:
    try:
        return _build_fernet().decrypt(ciphertext.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        raise TokenVaultError("Stored provider token could not be decrypted") from exc
