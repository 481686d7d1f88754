from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
import logging
import signal

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import uvicorn

from notifyhub.apps.api.deps import OpsRuntime
from notifyhub.apps.api.main import create_app
from notifyhub.core.config import Settings, get_settings
from notifyhub.core.errors import ConnectivityError
from notifyhub.providers.delivery.gateway import DeliveryGateway
from notifyhub.providers.profile.tenant_config import TenantConfigResolver
from notifyhub.services.audit import AuditLogger
from notifyhub.services.broker import BrokerConnectionManager
from notifyhub.services.notifications.router import EventRouter, RoutingPolicy


logger = logging.getLogger(__name__)


@dataclass
class NotificationRuntime:
    # Everything one worker process wires together, in shutdown order.
    settings: Settings
    http_client: httpx.AsyncClient
    gateway: DeliveryGateway
    tenant_resolver: TenantConfigResolver
    audit: AuditLogger
    router: EventRouter
    broker: BrokerConnectionManager

    def ops_runtime(self, session_factory: async_sessionmaker[AsyncSession], pool_stats=None) -> OpsRuntime:
        return OpsRuntime(
            settings=self.settings,
            broker=self.broker,
            session_factory=session_factory,
            breakers={self.gateway.breaker.name: self.gateway.breaker},
            pool_stats=pool_stats,
        )


def build_runtime(
    settings: Settings,
    *,
    session_factory: async_sessionmaker[AsyncSession],
    http_client: httpx.AsyncClient | None = None,
    broker: BrokerConnectionManager | None = None,
) -> NotificationRuntime:
    # One HTTP client is shared by the gateway and the tenant lookup.
    client = http_client or httpx.AsyncClient(timeout=settings.delivery_timeout_ms / 1000.0)
    gateway = DeliveryGateway.from_settings(settings, client=client)
    tenant_resolver = TenantConfigResolver.from_settings(settings, client=client)
    audit = AuditLogger(session_factory)
    router = EventRouter(
        gateway=gateway,
        audit=audit,
        tenant_resolver=tenant_resolver,
        policy=RoutingPolicy.from_settings(settings),
    )
    return NotificationRuntime(
        settings=settings,
        http_client=client,
        gateway=gateway,
        tenant_resolver=tenant_resolver,
        audit=audit,
        router=router,
        broker=broker or BrokerConnectionManager.from_settings(settings),
    )


class _OpsServer(uvicorn.Server):
    # The worker owns process signals; the ops server stops when told to.
    def install_signal_handlers(self) -> None:
        return None

    @contextlib.contextmanager
    def capture_signals(self):
        yield


async def shutdown_runtime(runtime: NotificationRuntime) -> None:
    # Stop consuming first so no message is left half-processed when clients close.
    await runtime.broker.close()
    await runtime.http_client.aclose()


async def run_notification_worker(settings: Settings | None = None) -> int:
    """Run the consumer and the ops server until SIGTERM/SIGINT; returns the exit status."""
    settings = settings or get_settings()
    from notifyhub.persistence.db import SessionLocal, engine, pool_stats

    runtime = build_runtime(settings, session_factory=SessionLocal)
    try:
        await runtime.broker.connect()
        await runtime.broker.start_consuming(runtime.router.handle)
    except ConnectivityError as exc:
        # Fail fast at startup; the process supervisor owns restarts.
        logger.error("notification_worker_startup_failed error=%s", exc)
        await runtime.http_client.aclose()
        await engine.dispose()
        return 1

    server = _OpsServer(
        uvicorn.Config(
            create_app(runtime.ops_runtime(SessionLocal, pool_stats=pool_stats)),
            host=settings.ops_host,
            port=settings.ops_port,
            log_level="warning",
        )
    )
    server_task = asyncio.create_task(server.serve())

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, stop.set)
    logger.info("notification_worker_started ops_port=%s", settings.ops_port)

    stop_task = asyncio.create_task(stop.wait())
    await asyncio.wait({stop_task, server_task}, return_when=asyncio.FIRST_COMPLETED)
    if server_task.done() and not stop.is_set():
        logger.error("ops_server_stopped_unexpectedly")
    stop_task.cancel()
    logger.info("notification_worker_stopping timeout_s=%s", settings.shutdown_timeout_s)

    async def _graceful() -> None:
        server.should_exit = True
        await asyncio.gather(server_task, return_exceptions=True)
        await shutdown_runtime(runtime)
        await engine.dispose()

    try:
        await asyncio.wait_for(_graceful(), timeout=settings.shutdown_timeout_s)
    except TimeoutError:
        logger.error("notification_worker_forced_exit timeout_s=%s", settings.shutdown_timeout_s)
        return 1
    logger.info("notification_worker_stopped")
    return 0
