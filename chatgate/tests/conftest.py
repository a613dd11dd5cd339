from __future__ import annotations

import os
import tempfile


# Point the engine at a throwaway sqlite file before chatgate modules build it.
_DB_DIR = tempfile.mkdtemp(prefix="chatgate-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_DIR}/chatgate.db")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("INDEX_EXECUTION_MODE", "inline")
os.environ.setdefault("CB_REDIS_ENABLED", "false")
os.environ.setdefault("AUTH_JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("PAYMENT_GATEWAY_SECRET", "test-gateway-secret")
os.environ.setdefault("ADMIN_API_TOKEN", "test-admin-token")
os.environ.setdefault("EXT_RETRY_BACKOFF_MS", "1")

import pytest  # noqa: E402

from chatgate.core.config import get_settings  # noqa: E402
from chatgate.domain.models import Base  # noqa: E402
from chatgate.persistence.db import engine  # noqa: E402
from chatgate.providers.answer import set_answer_provider  # noqa: E402
from chatgate.providers.embedding import reset_embedding_provider  # noqa: E402
from chatgate.services.quota import reset_quota_service  # noqa: E402
from chatgate.services.telemetry import reset_telemetry  # noqa: E402


@pytest.fixture(autouse=True)
async def fresh_schema() -> None:
    # Every test starts from empty tables and cached singletons.
    get_settings.cache_clear()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    reset_quota_service()
    reset_embedding_provider()
    set_answer_provider(None)
    reset_telemetry()
    yield
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()
    get_settings.cache_clear()
