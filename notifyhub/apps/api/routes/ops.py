from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from notifyhub.apps.api.deps import OpsRuntime, get_runtime, require_internal_key
from notifyhub.services.telemetry import (
    counters_snapshot,
    external_latency_by_integration,
    gauges_snapshot,
)


router = APIRouter(prefix="/ops", tags=["ops"])


class OpsMetricsResponse(BaseModel):
    broker_state: str
    circuit_breakers: dict[str, dict[str, Any]]
    counters: dict[str, int]
    gauges: dict[str, float]
    external_calls: dict[str, dict[str, float | int | None]]
    db_pool: dict[str, Any] | None = None


class BreakerResetResponse(BaseModel):
    name: str
    state: str


@router.get("/metrics", response_model=OpsMetricsResponse)
async def ops_metrics(
    window_s: int = Query(default=300, ge=1, le=86_400),
    runtime: OpsRuntime = Depends(get_runtime),
) -> OpsMetricsResponse:
    # Point-in-time snapshot; counters are process-local and reset on restart.
    return OpsMetricsResponse(
        broker_state=runtime.broker.state.value,
        circuit_breakers={name: breaker.metrics().as_dict() for name, breaker in runtime.breakers.items()},
        counters=counters_snapshot(),
        gauges=gauges_snapshot(),
        external_calls=external_latency_by_integration(window_s),
        db_pool=runtime.pool_stats() if runtime.pool_stats is not None else None,
    )


@router.post(
    "/circuit-breakers/{name}/reset",
    response_model=BreakerResetResponse,
    dependencies=[Depends(require_internal_key)],
)
async def reset_circuit_breaker(name: str, runtime: OpsRuntime = Depends(get_runtime)) -> BreakerResetResponse:
    breaker = runtime.breakers.get(name)
    if breaker is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "NOT_FOUND", "message": f"unknown circuit breaker '{name}'"},
        )
    breaker.reset()
    return BreakerResetResponse(name=name, state=breaker.state.value)
