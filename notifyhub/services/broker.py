from __future__ import annotations

import asyncio
from enum import Enum
from functools import partial
import logging
import random
from typing import Any, Awaitable, Callable
from urllib.parse import urlsplit, urlunsplit

import aio_pika
from aio_pika.abc import (
    AbstractChannel,
    AbstractConnection,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
)
from aio_pika.exceptions import AMQPException

from notifyhub.core.config import Settings, get_settings
from notifyhub.core.errors import ConnectivityError
from notifyhub.domain.events import MessageOutcome
from notifyhub.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], Awaitable[MessageOutcome]]
ConnectFactory = Callable[[str], Awaitable[AbstractConnection]]

# Caps the exponent so delays stop growing long before max_delay matters.
_MAX_BACKOFF_EXPONENT = 10

_BROKER_ERRORS = (AMQPException, OSError, ConnectionError)


class BrokerState(str, Enum):
    DISCONNECTED = "disconnected"
    RUNNING = "running"
    RECONNECTING = "reconnecting"
    SHUTTING_DOWN = "shutting_down"


def mask_url(url: str) -> str:
    # Never log broker credentials.
    parts = urlsplit(url)
    if parts.password is None:
        return url
    host = parts.hostname or ""
    if parts.port is not None:
        host = f"{host}:{parts.port}"
    netloc = f"{parts.username or ''}:***@{host}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


async def _default_connect(url: str) -> AbstractConnection:
    return await aio_pika.connect(url)


class BrokerConnectionManager:
    """Owns the AMQP connection, the consumer task and reconnection.

    Messages are consumed one at a time; the handler's outcome decides whether a
    message is acked, requeued or dropped. Unexpected connection or channel
    closure triggers a single serialized reconnect loop that re-attaches the
    consumer with the previously registered handler.
    """

    def __init__(
        self,
        *,
        url: str,
        exchange_name: str,
        queue_name: str,
        routing_keys: list[str],
        message_ttl_ms: int = 86_400_000,
        reconnect_base_delay_s: float = 1.0,
        reconnect_max_delay_s: float = 30.0,
        reconnect_jitter: float = 0.3,
        reconnect_max_attempts: int = 0,
        connect_factory: ConnectFactory | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        random_source: Callable[[], float] = random.random,
    ) -> None:
        self._url = url
        self._exchange_name = exchange_name
        self._queue_name = queue_name
        self._routing_keys = list(routing_keys)
        self._message_ttl_ms = message_ttl_ms
        self._base_delay_s = reconnect_base_delay_s
        self._max_delay_s = reconnect_max_delay_s
        self._jitter = reconnect_jitter
        self._max_attempts = reconnect_max_attempts
        self._connect_factory = connect_factory or _default_connect
        self._sleep = sleep
        self._random = random_source

        self._state = BrokerState.DISCONNECTED
        self._state_lock = asyncio.Lock()
        self._processing_lock = asyncio.Lock()
        self._connection: AbstractConnection | None = None
        self._channel: AbstractChannel | None = None
        self._exchange: AbstractExchange | None = None
        self._handler: MessageHandler | None = None
        self._consumer_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._pending_triggers: set[asyncio.Task[None]] = set()
        # Close events from a previous connection must not trigger a reconnect.
        self._generation = 0

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **overrides: Any) -> BrokerConnectionManager:
        settings = settings or get_settings()
        return cls(
            url=settings.broker_url,
            exchange_name=settings.broker_exchange,
            queue_name=settings.broker_queue,
            routing_keys=settings.routing_keys,
            message_ttl_ms=settings.broker_message_ttl_ms,
            reconnect_base_delay_s=settings.broker_reconnect_base_delay_s,
            reconnect_max_delay_s=settings.broker_reconnect_max_delay_s,
            reconnect_jitter=settings.broker_reconnect_jitter,
            reconnect_max_attempts=settings.broker_reconnect_max_attempts,
            **overrides,
        )

    @property
    def state(self) -> BrokerState:
        return self._state

    def is_connected(self) -> bool:
        return (
            self._state is BrokerState.RUNNING
            and self._connection is not None
            and not self._connection.is_closed
        )

    def reconnect_delay(self, attempt: int) -> float:
        exponential = self._base_delay_s * (2 ** min(max(attempt, 0), _MAX_BACKOFF_EXPONENT))
        jittered = exponential * (1 + self._jitter * self._random())
        return min(self._max_delay_s, jittered)

    def _set_state(self, state: BrokerState) -> None:
        self._state = state
        set_gauge("broker_connected", 1.0 if state is BrokerState.RUNNING else 0.0)

    async def _open(self) -> None:
        # Open connection and channel, then declare the exchange events are published to.
        try:
            connection = await self._connect_factory(self._url)
        except _BROKER_ERRORS as exc:
            raise ConnectivityError(f"unable to connect to broker at {mask_url(self._url)}: {exc}") from exc
        try:
            channel = await connection.channel()
            exchange = await channel.declare_exchange(
                self._exchange_name,
                aio_pika.ExchangeType.TOPIC,
                durable=True,
            )
        except _BROKER_ERRORS as exc:
            await self._safe_close(connection)
            raise ConnectivityError(f"unable to open broker channel: {exc}") from exc

        self._generation += 1
        on_close = partial(self._on_close, self._generation)
        connection.close_callbacks.add(on_close)
        channel.close_callbacks.add(on_close)
        self._connection = connection
        self._channel = channel
        self._exchange = exchange

    async def connect(self) -> None:
        logger.info("broker_connecting url=%s exchange=%s", mask_url(self._url), self._exchange_name)
        async with self._state_lock:
            if self._state is BrokerState.SHUTTING_DOWN:
                raise ConnectivityError("broker manager is shutting down")
            await self._open()
            self._set_state(BrokerState.RUNNING)
        logger.info("broker_connected url=%s", mask_url(self._url))

    async def _declare_queue(self) -> AbstractQueue:
        if self._channel is None or self._exchange is None:
            raise ConnectivityError("broker channel is not open")
        try:
            queue = await self._channel.declare_queue(
                self._queue_name,
                durable=True,
                arguments={"x-message-ttl": self._message_ttl_ms},
            )
            for routing_key in self._routing_keys:
                await queue.bind(self._exchange, routing_key=routing_key)
            await self._channel.set_qos(prefetch_count=1)
        except _BROKER_ERRORS as exc:
            raise ConnectivityError(f"unable to declare queue {self._queue_name}: {exc}") from exc
        return queue

    async def start_consuming(self, handler: MessageHandler) -> None:
        self._handler = handler
        queue = await self._declare_queue()
        self._cancel_consumer()
        self._consumer_task = asyncio.create_task(self._consume(queue, handler))
        logger.info(
            "broker_consuming queue=%s routing_keys=%s",
            self._queue_name,
            ",".join(self._routing_keys),
        )

    def _cancel_consumer(self) -> None:
        task = self._consumer_task
        if task is not None and not task.done():
            task.cancel()
        self._consumer_task = None

    async def _consume(self, queue: AbstractQueue, handler: MessageHandler) -> None:
        # Strictly one message at a time; close() waits on the same lock.
        try:
            async with queue.iterator() as messages:
                async for message in messages:
                    async with self._processing_lock:
                        await self._process(message, handler)
        except Exception:  # noqa: BLE001 - channel loss is handled by the reconnect loop.
            if self._state is BrokerState.RUNNING:
                logger.exception("broker_consumer_stopped queue=%s", self._queue_name)

    async def _process(self, message: AbstractIncomingMessage, handler: MessageHandler) -> None:
        routing_key = message.routing_key or ""
        try:
            outcome = await handler(routing_key, message.body)
        except Exception:  # noqa: BLE001 - unexpected failures are retried via redelivery.
            logger.exception("broker_message_failed routing_key=%s", routing_key)
            outcome = MessageOutcome.NACK_REQUEUE

        if outcome is MessageOutcome.ACK:
            await message.ack()
        elif outcome is MessageOutcome.NACK_DROP:
            await message.reject(requeue=False)
        else:
            increment_counter("broker_messages_requeued_total")
            await message.nack(requeue=True)

    def _on_close(self, generation: int, sender: Any = None, exc: BaseException | None = None) -> None:
        if generation != self._generation:
            return
        task = asyncio.get_running_loop().create_task(self.trigger_reconnect(exc))
        self._pending_triggers.add(task)
        task.add_done_callback(self._pending_triggers.discard)

    async def trigger_reconnect(self, reason: BaseException | None = None) -> bool:
        """Start the reconnect loop unless one is running or the manager is shutting down."""
        async with self._state_lock:
            if self._state in (BrokerState.RECONNECTING, BrokerState.SHUTTING_DOWN):
                return False
            self._set_state(BrokerState.RECONNECTING)
            logger.warning("broker_connection_lost reason=%s", reason)
            self._cancel_consumer()
            self._reconnect_task = asyncio.create_task(self._reconnect_loop())
        return True

    async def _reconnect_loop(self) -> None:
        attempt = 0
        while True:
            if self._state is BrokerState.SHUTTING_DOWN:
                return
            if self._max_attempts and attempt >= self._max_attempts:
                logger.error("broker_reconnect_exhausted attempts=%s", attempt)
                async with self._state_lock:
                    if self._state is BrokerState.RECONNECTING:
                        self._set_state(BrokerState.DISCONNECTED)
                return
            delay_s = self.reconnect_delay(attempt)
            increment_counter("broker_reconnect_attempts_total")
            logger.warning("broker_reconnect_scheduled attempt=%s delay_s=%.2f", attempt + 1, delay_s)
            await self._sleep(delay_s)
            if self._state is BrokerState.SHUTTING_DOWN:
                return
            stale = self._connection
            try:
                await self._open()
                if self._handler is not None:
                    await self.start_consuming(self._handler)
            except ConnectivityError as exc:
                logger.warning("broker_reconnect_failed attempt=%s error=%s", attempt + 1, exc)
                if self._connection is not stale:
                    await self._safe_close(self._connection)
                attempt += 1
                continue
            if stale is not None and stale is not self._connection:
                await self._safe_close(stale)
            async with self._state_lock:
                if self._state is BrokerState.RECONNECTING:
                    self._set_state(BrokerState.RUNNING)
            increment_counter("broker_reconnects_total")
            logger.info("broker_reconnected attempts=%s", attempt + 1)
            return

    async def _safe_close(self, resource: Any) -> None:
        if resource is None or getattr(resource, "is_closed", False):
            return
        try:
            await resource.close()
        except _BROKER_ERRORS as exc:
            logger.warning("broker_close_failed error=%s", exc)

    async def close(self) -> None:
        async with self._state_lock:
            if self._state is BrokerState.SHUTTING_DOWN:
                return
            self._set_state(BrokerState.SHUTTING_DOWN)
        logger.info("broker_closing")
        reconnect_task = self._reconnect_task
        if reconnect_task is not None and not reconnect_task.done():
            reconnect_task.cancel()
        # Let the in-flight message finish before tearing the channel down.
        async with self._processing_lock:
            self._cancel_consumer()
        await self._safe_close(self._channel)
        await self._safe_close(self._connection)
        self._channel = None
        self._connection = None
        self._exchange = None
        logger.info("broker_closed")
