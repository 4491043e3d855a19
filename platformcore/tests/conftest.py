from __future__ import annotations

import os
import tempfile

# Settings are cached on first import, so the test environment must be in place before any platformcore import.
os.environ["DATABASE_URL"] = (
    f"sqlite+aiosqlite:///{tempfile.gettempdir()}/platformcore-tests-{os.getpid()}.db"
)
os.environ["CREDENTIAL_HASH_ROUNDS"] = "4"
os.environ["OUTBOX_EXECUTION_MODE"] = "inline"
os.environ["OAUTH_TOKEN_ENCRYPTION_KEY"] = "test-oauth-token-key"
os.environ["GITHUB_OAUTH_CLIENT_ID"] = "gh-client"
os.environ["GITHUB_OAUTH_CLIENT_SECRET"] = "gh-secret"
os.environ["CORS_ALLOWED_ORIGINS"] = "*"

import pytest

from platformcore.domain.models import Base
from platformcore.persistence.db import engine
from platformcore.services.background import drain


@pytest.fixture(autouse=True)
async def database() -> None:
    # Fresh schema per test; background touches are drained before tables go away.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await drain()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()
