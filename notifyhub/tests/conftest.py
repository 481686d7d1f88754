from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from notifyhub.core.config import get_settings
from notifyhub.domain.models import Base
from notifyhub.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Counters and cached settings are process globals; isolate every test.
    reset_telemetry()
    get_settings.cache_clear()
    yield
    reset_telemetry()
    get_settings.cache_clear()


@pytest.fixture
async def audit_session_factory(tmp_path):
    # File-backed SQLite so every session sees the same schema.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'audit.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()
