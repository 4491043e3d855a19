from __future__ import annotations

import re
import secrets
from uuid import uuid4


CLI_SESSION_TAG = "cli_session_"
API_KEY_TAG = "sk_live_"
PLATFORM_SESSION_TAG = "ps_"
# Non-secret index length; long enough to keep candidate sets tiny.
LOOKUP_PREFIX_LENGTH = 20

_HEX64 = r"[0-9a-f]{64}"
_CLI_SESSION_RE = re.compile(rf"^{CLI_SESSION_TAG}{_HEX64}$")
_API_KEY_RE = re.compile(rf"^{API_KEY_TAG}{_HEX64}$")
_PLATFORM_SESSION_RE = re.compile(rf"^{PLATFORM_SESSION_TAG}[0-9a-f]{{32}}$")


def generate_cli_session_token() -> str:
    # 32 random bytes keeps collisions negligible at billions of issued tokens.
    return f"{CLI_SESSION_TAG}{secrets.token_hex(32)}"


def generate_api_key_secret() -> str:
    return f"{API_KEY_TAG}{secrets.token_hex(32)}"


def generate_platform_session_id() -> str:
    return f"{PLATFORM_SESSION_TAG}{uuid4().hex}"


def prefix_of(token: str) -> str:
    return token[:LOOKUP_PREFIX_LENGTH]


def has_cli_session_tag(token: str) -> bool:
    # Pre-migration tokens carry the tag with shorter random parts; only the tag is guaranteed.
    return token.startswith(CLI_SESSION_TAG) and len(token) > len(CLI_SESSION_TAG)


def is_cli_session_token(token: str) -> bool:
    return bool(_CLI_SESSION_RE.match(token))


def is_api_key(token: str) -> bool:
    return bool(_API_KEY_RE.match(token))


def is_platform_session_id(token: str) -> bool:
    return bool(_PLATFORM_SESSION_RE.match(token))
