from __future__ import annotations

from dataclasses import dataclass, field
import hmac
from typing import Any, Callable

from fastapi import HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from notifyhub.core.config import Settings
from notifyhub.services.broker import BrokerConnectionManager
from notifyhub.services.resilience import CircuitBreaker


@dataclass
class OpsRuntime:
    # Live worker components the ops endpoints report on.
    settings: Settings
    broker: BrokerConnectionManager
    session_factory: async_sessionmaker[AsyncSession]
    breakers: dict[str, CircuitBreaker] = field(default_factory=dict)
    pool_stats: Callable[[], dict[str, Any]] | None = None


def get_runtime(request: Request) -> OpsRuntime:
    return request.app.state.runtime


def require_internal_key(request: Request) -> None:
    # Operator actions require the shared internal key; an unset key disables them.
    runtime = get_runtime(request)
    expected = runtime.settings.internal_api_key
    provided = request.headers.get(runtime.settings.internal_api_key_header)
    if not expected or not provided or not hmac.compare_digest(provided, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "AUTH_UNAUTHORIZED", "message": "invalid or missing internal API key"},
        )
