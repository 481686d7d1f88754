from __future__ import annotations

import json

import httpx
import pytest

from notifyhub.core.errors import (
    DeliveryConnectionError,
    DeliveryHTTPError,
    DeliveryTimeoutError,
    DeliveryUnavailableError,
)
from notifyhub.providers.delivery.gateway import DeliveryContext, DeliveryGateway
from notifyhub.services.resilience import CircuitBreaker, CircuitBreakerConfig, CircuitState, RetryPolicy


def _gateway(handler, *, breaker: CircuitBreaker | None = None) -> tuple[DeliveryGateway, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def recording(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(recording))
    gateway = DeliveryGateway(
        base_url="http://delivery.test/",
        api_key="internal-secret",
        timeout_s=1.0,
        retry_policy=RetryPolicy(timeout_ms=None, max_attempts=3, backoff_ms=1),
        breaker=breaker,
        client=client,
    )
    return gateway, seen


@pytest.mark.asyncio
async def test_deliver_posts_payload_and_returns_receipt() -> None:
    gateway, seen = _gateway(lambda request: httpx.Response(200, json={"data": {"message_id": "wamid-1"}}))

    receipt = await gateway.deliver(
        "628123",
        "hello",
        DeliveryContext(tenant_id="village-1", notification_type="status_updated"),
    )

    assert receipt.message_id == "wamid-1"
    assert receipt.status_code == 200
    assert len(seen) == 1
    request = seen[0]
    assert str(request.url) == "http://delivery.test/send"
    assert request.headers["X-API-Key"] == "internal-secret"
    assert json.loads(request.content) == {
        "recipient": "628123",
        "message": "hello",
        "tenant_id": "village-1",
        "notification_type": "status_updated",
    }


@pytest.mark.asyncio
async def test_client_errors_are_not_retried_and_keep_breaker_closed() -> None:
    gateway, seen = _gateway(lambda request: httpx.Response(400, text="invalid recipient"))

    with pytest.raises(DeliveryHTTPError) as exc_info:
        await gateway.deliver("bad", "hello")

    assert len(seen) == 1
    assert exc_info.value.status_code == 400
    assert exc_info.value.describe() == "HTTP 400: invalid recipient"
    assert gateway.breaker.state is CircuitState.CLOSED


@pytest.mark.asyncio
async def test_server_errors_are_retried_then_reported() -> None:
    gateway, seen = _gateway(lambda request: httpx.Response(503, text="unavailable"))

    with pytest.raises(DeliveryHTTPError) as exc_info:
        await gateway.deliver("628123", "hello")

    assert len(seen) == 3
    assert exc_info.value.status_code == 503
    assert exc_info.value.kind == "http_error"


@pytest.mark.asyncio
async def test_connection_refused_maps_to_connection_error() -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    gateway, seen = _gateway(refuse)

    with pytest.raises(DeliveryConnectionError) as exc_info:
        await gateway.deliver("628123", "hello")

    assert len(seen) == 3
    assert "connection refused" in exc_info.value.detail


@pytest.mark.asyncio
async def test_read_timeout_maps_to_timeout_error() -> None:
    def stall(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    gateway, _seen = _gateway(stall)

    with pytest.raises(DeliveryTimeoutError):
        await gateway.deliver("628123", "hello")


@pytest.mark.asyncio
async def test_open_breaker_fails_fast_without_calling_endpoint() -> None:
    breaker = CircuitBreaker(
        "delivery-gateway",
        config=CircuitBreakerConfig(failure_threshold=1, timeout_s=1.0, reset_timeout_s=60.0),
    )
    gateway, seen = _gateway(lambda request: httpx.Response(502), breaker=breaker)

    with pytest.raises(DeliveryUnavailableError):
        await gateway.deliver("628123", "first")
    assert len(seen) == 1

    with pytest.raises(DeliveryUnavailableError) as exc_info:
        await gateway.deliver("628123", "second")
    assert len(seen) == 1
    assert exc_info.value.kind == "circuit_open"
    assert gateway.metrics()["state"] == "open"
