from __future__ import annotations

import asyncio
import logging
import time

import httpx

from notifyhub.core.config import Settings, get_settings
from notifyhub.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

# Escalation must never wait on a slow profile service for long.
MAX_LOOKUP_TIMEOUT_S = 5.0


class TenantConfigResolver:
    """Looks up per-tenant overrides from the external profile service.

    Every failure degrades to ``None`` so callers fall back to global defaults.
    Nothing is cached: each urgent alert performs its own lookup.
    """

    def __init__(
        self,
        *,
        profile_url: str | None,
        api_key: str = "",
        api_key_header: str = "X-API-Key",
        timeout_s: float = MAX_LOOKUP_TIMEOUT_S,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._profile_url = profile_url.rstrip("/") if profile_url else None
        self._headers = {api_key_header: api_key} if api_key else {}
        self._timeout_s = min(max(0.1, timeout_s), MAX_LOOKUP_TIMEOUT_S)
        self._client = client

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> TenantConfigResolver:
        settings = settings or get_settings()
        return cls(
            profile_url=settings.tenant_profile_url,
            api_key=settings.internal_api_key,
            api_key_header=settings.internal_api_key_header,
            timeout_s=settings.tenant_lookup_timeout_ms / 1000.0,
            client=client,
        )

    async def _fetch(self, tenant_id: str) -> httpx.Response:
        url = f"{self._profile_url}/profile"
        params = {"tenant_id": tenant_id}
        if self._client is not None:
            return await self._client.get(url, params=params, headers=self._headers, timeout=self._timeout_s)
        async with httpx.AsyncClient(timeout=self._timeout_s) as client:
            return await client.get(url, params=params, headers=self._headers)

    async def resolve_escalation_recipient(self, tenant_id: str | None) -> str | None:
        if not tenant_id:
            return None
        if not self._profile_url:
            return None
        started = time.monotonic()
        try:
            # httpx timeouts are per phase; bound the whole lookup as well.
            response = await asyncio.wait_for(self._fetch(tenant_id), timeout=self._timeout_s)
        except (httpx.HTTPError, TimeoutError) as exc:
            increment_counter("tenant_lookup_failures_total")
            record_external_call(
                integration="tenant-profile",
                latency_ms=(time.monotonic() - started) * 1000.0,
                success=False,
            )
            logger.warning(
                "tenant_lookup_failed tenant_id=%s error=%s",
                tenant_id,
                exc.__class__.__name__,
            )
            return None
        record_external_call(
            integration="tenant-profile",
            latency_ms=(time.monotonic() - started) * 1000.0,
            success=response.is_success,
        )
        if response.status_code == 404:
            logger.info("tenant_escalation_not_configured tenant_id=%s", tenant_id)
            return None
        if not response.is_success:
            increment_counter("tenant_lookup_failures_total")
            logger.warning("tenant_lookup_failed tenant_id=%s status=%s", tenant_id, response.status_code)
            return None
        try:
            body = response.json()
        except ValueError:
            logger.warning("tenant_lookup_malformed tenant_id=%s reason=invalid_json", tenant_id)
            return None
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict):
            logger.warning("tenant_lookup_malformed tenant_id=%s reason=missing_data", tenant_id)
            return None
        value = data.get("escalationRecipient", data.get("escalation_recipient"))
        if not isinstance(value, str) or not value.strip():
            return None
        return value.strip()
