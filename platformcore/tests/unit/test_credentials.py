from __future__ import annotations

import pytest

from platformcore.core.errors import CredentialSystemUnavailable
from platformcore.services.auth.hasher import CredentialHasher
from platformcore.services.auth.tokens import (
    LOOKUP_PREFIX_LENGTH,
    generate_api_key_secret,
    generate_cli_session_token,
    generate_platform_session_id,
    is_api_key,
    is_cli_session_token,
    is_platform_session_id,
    prefix_of,
)


def test_token_shapes_are_distinguishable() -> None:
    cli_token = generate_cli_session_token()
    api_key = generate_api_key_secret()
    platform_id = generate_platform_session_id()

    assert cli_token.startswith("cli_session_") and len(cli_token) == len("cli_session_") + 64
    assert api_key.startswith("sk_live_") and len(api_key) == len("sk_live_") + 64
    assert is_cli_session_token(cli_token) and not is_api_key(cli_token)
    assert is_api_key(api_key) and not is_cli_session_token(api_key)
    assert is_platform_session_id(platform_id) and not is_cli_session_token(platform_id)
    assert not is_cli_session_token("cli_session_not-hex")


def test_lookup_prefix_is_twenty_characters() -> None:
    token = generate_cli_session_token()
    assert prefix_of(token) == token[:LOOKUP_PREFIX_LENGTH]
    assert len(prefix_of(token)) == 20


def test_hasher_round_trip_and_mismatch() -> None:
    hasher = CredentialHasher(rounds=4)
    token = generate_cli_session_token()
    digest = hasher.hash(token)

    assert digest != token
    assert hasher.verify(token, digest)
    assert not hasher.verify(generate_cli_session_token(), digest)


def test_hasher_salts_each_digest() -> None:
    hasher = CredentialHasher(rounds=4)
    token = generate_api_key_secret()
    assert hasher.hash(token) != hasher.hash(token)


def test_malformed_digest_is_a_system_fault() -> None:
    hasher = CredentialHasher(rounds=4)
    with pytest.raises(CredentialSystemUnavailable):
        hasher.verify("cli_session_" + "a" * 64, "not-a-bcrypt-digest")


@pytest.mark.asyncio
async def test_async_helpers_match_sync_behavior() -> None:
    hasher = CredentialHasher(rounds=4)
    digest = await hasher.hash_async("secret-value")
    assert await hasher.verify_async("secret-value", digest)
    assert not await hasher.verify_async("other-value", digest)
