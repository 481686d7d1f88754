from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from notifyhub.apps.api.deps import OpsRuntime, get_runtime


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["health"])


class HealthResponse(BaseModel):
    status: str
    broker_connected: bool


class DependencyHealthResponse(BaseModel):
    status: str
    detail: str | None = None


@router.get("", response_model=HealthResponse)
async def health(runtime: OpsRuntime = Depends(get_runtime)) -> HealthResponse:
    # Liveness stays 200 while the broker reconnects; the flag reports degradation.
    connected = runtime.broker.is_connected()
    return HealthResponse(status="ok" if connected else "degraded", broker_connected=connected)


@router.get("/broker", response_model=DependencyHealthResponse)
async def broker_health(runtime: OpsRuntime = Depends(get_runtime)):
    if runtime.broker.is_connected():
        return DependencyHealthResponse(status="ok")
    payload = DependencyHealthResponse(status="unavailable", detail=runtime.broker.state.value)
    return JSONResponse(status_code=503, content=payload.model_dump())


@router.get("/database", response_model=DependencyHealthResponse)
async def database_health(runtime: OpsRuntime = Depends(get_runtime)):
    try:
        async with runtime.session_factory() as session:
            await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("database_health_failed error=%s", exc.__class__.__name__)
        payload = DependencyHealthResponse(status="unavailable", detail=exc.__class__.__name__)
        return JSONResponse(status_code=503, content=payload.model_dump())
    return DependencyHealthResponse(status="ok")
