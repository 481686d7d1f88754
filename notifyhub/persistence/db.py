from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from notifyhub.core.config import Settings, get_settings


def build_engine(settings: Settings) -> AsyncEngine:
    # The worker writes one audit row per message; a small bounded pool is enough.
    options: dict[str, Any] = {"pool_pre_ping": True}
    if not settings.database_url.startswith("sqlite"):
        options.update(
            pool_size=max(1, int(settings.db_pool_size)),
            max_overflow=max(0, int(settings.db_max_overflow)),
            pool_timeout=30,
            pool_recycle=1800,
        )
    return create_async_engine(settings.database_url, **options)


engine = build_engine(get_settings())
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


def _pool_counter(pool: Any, attribute: str) -> int | None:
    # StaticPool and NullPool expose none of these.
    counter = getattr(pool, attribute, None)
    return int(counter()) if callable(counter) else None


def pool_stats() -> dict[str, int | None]:
    pool = engine.sync_engine.pool
    return {
        "size": _pool_counter(pool, "size"),
        "checked_out": _pool_counter(pool, "checkedout"),
        "checked_in": _pool_counter(pool, "checkedin"),
        "overflow": _pool_counter(pool, "overflow"),
    }
