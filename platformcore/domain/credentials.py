from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Union


@dataclass(frozen=True)
class SessionIdentity:
    session_id: str
    user_id: str
    organization_id: str
    email: str
    expires_at: datetime


@dataclass(frozen=True)
class HashedCredential:
    # Current record shape: bcrypt digest located through its lookup prefix.
    identity: SessionIdentity
    token_prefix: str
    token_hash: str


@dataclass(frozen=True)
class LegacyPlaintextCredential:
    # Pre-hashing record shape; only ever read, migrated forward on rotation.
    identity: SessionIdentity
    plaintext_token: str


StoredCredential = Union[HashedCredential, LegacyPlaintextCredential]
