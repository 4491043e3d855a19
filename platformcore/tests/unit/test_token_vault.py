from __future__ import annotations

import pytest

from platformcore.core.config import get_settings
from platformcore.core.errors import ConfigurationError
from platformcore.services.security import token_vault
from platformcore.services.security.token_vault import TokenVaultError, decrypt_token, encrypt_token


def test_round_trip_never_exposes_plaintext() -> None:
    ciphertext = encrypt_token("gho_secret")
    assert "gho_secret" not in ciphertext
    assert decrypt_token(ciphertext) == "gho_secret"


def test_foreign_ciphertext_is_rejected() -> None:
    with pytest.raises(TokenVaultError):
        decrypt_token("not-a-fernet-token")


def test_missing_key_is_a_configuration_error(monkeypatch: pytest.MonkeyPatch) -> None:
    settings = get_settings().model_copy(update={"oauth_token_encryption_key": None})
    monkeypatch.setattr(token_vault, "get_settings", lambda: settings)
    with pytest.raises(ConfigurationError) as excinfo:
        encrypt_token("gho_secret")
    assert "OAUTH_TOKEN_ENCRYPTION_KEY" in excinfo.value.message
