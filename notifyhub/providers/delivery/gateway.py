from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Any

import httpx

from notifyhub.core.config import Settings, get_settings
from notifyhub.core.errors import (
    CallTimeoutError,
    CircuitOpenError,
    DeliveryConnectionError,
    DeliveryError,
    DeliveryHTTPError,
    DeliveryTimeoutError,
    DeliveryUnavailableError,
)
from notifyhub.services.resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    RetryPolicy,
    default_circuit_breaker_config,
    retry_async,
)
from notifyhub.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_BODY_PREVIEW_CHARS = 512


@dataclass(frozen=True)
class DeliveryContext:
    tenant_id: str | None = None
    notification_type: str | None = None
    media_url: str | None = None


@dataclass(frozen=True)
class DeliveryReceipt:
    message_id: str | None
    status_code: int


def _is_client_error(exc: Exception) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return 400 <= exc.response.status_code < 500
    return False


def _is_retriable(exc: Exception) -> bool:
    # Network failures and 5xx are worth another attempt; 4xx and an open circuit are not.
    if isinstance(exc, CircuitOpenError):
        return False
    if isinstance(exc, (CallTimeoutError, httpx.TimeoutException, httpx.TransportError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return False


def _extract_message_id(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    data = body.get("data")
    candidates = [body.get("message_id")]
    if isinstance(data, dict):
        candidates.append(data.get("message_id"))
    candidates.append(body.get("id"))
    for candidate in candidates:
        if candidate is not None and str(candidate).strip():
            return str(candidate)
    return None


def _translate_error(exc: Exception) -> DeliveryError:
    # Map transport and breaker failures onto the delivery error taxonomy.
    if isinstance(exc, CircuitOpenError):
        return DeliveryUnavailableError("delivery circuit is open")
    if isinstance(exc, (CallTimeoutError, httpx.TimeoutException)):
        return DeliveryTimeoutError("request timeout")
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        return DeliveryHTTPError(
            f"delivery endpoint returned {response.status_code}",
            status_code=response.status_code,
            body=response.text[:_BODY_PREVIEW_CHARS] if response.text else "",
        )
    if isinstance(exc, httpx.ConnectError):
        return DeliveryConnectionError("connection refused - delivery service not available")
    return DeliveryConnectionError(f"transport error: {exc.__class__.__name__}")


class DeliveryGateway:
    """Client for the channel delivery API guarded by a circuit breaker."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        api_key_header: str = "X-API-Key",
        send_path: str = "/send",
        timeout_s: float = 10.0,
        retry_policy: RetryPolicy | None = None,
        breaker: CircuitBreaker | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = base_url.rstrip("/") + "/" + send_path.lstrip("/")
        self._headers = {"Content-Type": "application/json"}
        if api_key:
            self._headers[api_key_header] = api_key
        self._timeout_s = timeout_s
        self._retry_policy = retry_policy or RetryPolicy(timeout_ms=None, max_attempts=3, backoff_ms=1000)
        self._breaker = breaker or CircuitBreaker(
            "delivery-gateway",
            config=CircuitBreakerConfig(timeout_s=timeout_s),
            is_failure=lambda exc: not _is_client_error(exc),
        )
        self._client = client
        self._owns_client = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> DeliveryGateway:
        settings = settings or get_settings()
        owned = client is None
        if owned:
            client = httpx.AsyncClient(timeout=settings.delivery_timeout_ms / 1000.0)
        breaker = CircuitBreaker(
            "delivery-gateway",
            config=default_circuit_breaker_config(settings),
            is_failure=lambda exc: not _is_client_error(exc),
        )
        gateway = cls(
            base_url=settings.delivery_base_url,
            api_key=settings.internal_api_key,
            api_key_header=settings.internal_api_key_header,
            send_path=settings.delivery_send_path,
            timeout_s=settings.delivery_timeout_ms / 1000.0,
            retry_policy=RetryPolicy(
                # The breaker applies the per-attempt timeout.
                timeout_ms=None,
                max_attempts=max(1, settings.delivery_retries),
                backoff_ms=settings.delivery_retry_backoff_ms,
            ),
            breaker=breaker,
            client=client,
        )
        gateway._owns_client = owned
        return gateway

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    def metrics(self) -> dict[str, Any]:
        return self._breaker.metrics().as_dict()

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
        self._client = None

    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        started = time.monotonic()
        success = False
        try:
            if self._client is not None:
                response = await self._client.post(
                    self._url, json=payload, headers=self._headers, timeout=self._timeout_s
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                    response = await client.post(self._url, json=payload, headers=self._headers)
            if response.status_code >= 400:
                raise httpx.HTTPStatusError(
                    f"Delivery endpoint rejected message ({response.status_code})",
                    request=response.request,
                    response=response,
                )
            success = True
            return response
        finally:
            record_external_call(
                integration="delivery-gateway",
                latency_ms=(time.monotonic() - started) * 1000.0,
                success=success,
            )

    async def deliver(
        self,
        recipient: str,
        message: str,
        context: DeliveryContext | None = None,
    ) -> DeliveryReceipt:
        context = context or DeliveryContext()
        payload: dict[str, Any] = {"recipient": recipient, "message": message}
        if context.tenant_id:
            payload["tenant_id"] = context.tenant_id
        if context.notification_type:
            payload["notification_type"] = context.notification_type
        if context.media_url:
            payload["media_url"] = context.media_url

        try:
            response = await retry_async(
                lambda: self._breaker.execute(lambda: self._post(payload)),
                policy=self._retry_policy,
                retryable=_is_retriable,
                name="delivery-gateway",
            )
        except (CircuitOpenError, CallTimeoutError, httpx.HTTPError) as exc:
            error = _translate_error(exc)
            logger.warning(
                "delivery_failed recipient=%s type=%s kind=%s detail=%s",
                recipient,
                context.notification_type,
                error.kind,
                error.describe(),
            )
            raise error from exc
        receipt = DeliveryReceipt(message_id=_extract_message_id(response), status_code=response.status_code)
        logger.info(
            "delivery_succeeded recipient=%s type=%s message_id=%s",
            recipient,
            context.notification_type,
            receipt.message_id,
        )
        return receipt
