from __future__ import annotations

import os
import tempfile

# Point settings at a throwaway database before any maintdesk module builds the engine.
_DEFAULT_TEST_DB = os.path.join(tempfile.gettempdir(), f"maintdesk-test-{os.getpid()}.db")
os.environ["DATABASE_URL"] = os.environ.get("MAINTDESK_TEST_DATABASE_URL", f"sqlite+aiosqlite:///{_DEFAULT_TEST_DB}")
os.environ.setdefault("MANUAL_WEBHOOK_SECRET", "manual-test-secret")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "stripe-test-secret")
os.environ.setdefault("GOOGLE_PLAY_WEBHOOK_SECRET", "google-play-test-secret")
os.environ.setdefault("APPLE_APP_STORE_WEBHOOK_SECRET", "apple-test-secret")
os.environ.setdefault("SWEEP_LOCK_BACKEND", "local")

import pytest  # noqa: E402

from maintdesk.core.config import get_settings  # noqa: E402
from maintdesk.domain.models import Base  # noqa: E402
from maintdesk.persistence.db import engine  # noqa: E402
from maintdesk.services.plan_catalog import reset_plan_catalog_cache  # noqa: E402


@pytest.fixture(autouse=True)
async def fresh_schema() -> None:
    # Every test starts from empty tables; the engine is disposed so no connection outlives its loop.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture(autouse=True)
def _reset_caches() -> None:
    # Clear cached settings and catalog rows between tests to avoid env leakage.
    yield
    get_settings.cache_clear()
    reset_plan_catalog_cache()
