from __future__ import annotations


class NotifyError(Exception):
    """Base error for notifyhub."""


class ConnectivityError(NotifyError):
    """Broker unreachable or credentials rejected."""


class EventDecodeError(NotifyError):
    """Event payload is not valid JSON or does not match the event schema."""


class CircuitOpenError(NotifyError):
    """Call rejected because the circuit breaker is open."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Circuit breaker is open for {name}")
        self.name = name


class CallTimeoutError(NotifyError, TimeoutError):
    """Protected call exceeded the circuit breaker timeout."""


class DeliveryError(NotifyError):
    """Delivery gateway failure after retries were exhausted."""

    kind = "error"

    def __init__(self, detail: str, *, status_code: int | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code

    def describe(self) -> str:
        return f"{self.kind}: {self.detail}"


class DeliveryTimeoutError(DeliveryError):
    """Delivery request timed out."""

    kind = "timeout"


class DeliveryConnectionError(DeliveryError):
    """Delivery endpoint refused or dropped the connection."""

    kind = "connection_refused"


class DeliveryHTTPError(DeliveryError):
    """Delivery endpoint answered with an error status."""

    kind = "http_error"

    def __init__(self, detail: str, *, status_code: int, body: str = "") -> None:
        super().__init__(detail, status_code=status_code)
        self.body = body

    def describe(self) -> str:
        return f"HTTP {self.status_code}: {self.body or self.detail}"


class DeliveryUnavailableError(DeliveryError):
    """Delivery skipped because the gateway circuit is open."""

    kind = "circuit_open"
