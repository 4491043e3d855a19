from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from platformcore.services.auth.api_keys import WILDCARD_SCOPE


@dataclass(frozen=True)
class ScopeCheck:
    allowed: bool
    missing_scopes: list[str] = field(default_factory=list)


def check_scopes(granted: Iterable[str], needed: Iterable[str]) -> ScopeCheck:
    # Every needed scope must be granted unless the wildcard is present.
    granted_set = set(granted)
    if WILDCARD_SCOPE in granted_set:
        return ScopeCheck(allowed=True)
    missing = [scope for scope in needed if scope not in granted_set]
    return ScopeCheck(allowed=not missing, missing_scopes=missing)
