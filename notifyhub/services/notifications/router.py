from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Protocol

from notifyhub.core.config import Settings, get_settings
from notifyhub.core.errors import DeliveryError, EventDecodeError
from notifyhub.domain.attempts import AttemptStatus, NotificationAttempt
from notifyhub.domain.events import (
    DEFAULT_CHANNEL_KIND,
    DomainEvent,
    MessageOutcome,
    StatusChanged,
    UrgentAlert,
    parse_event,
)
from notifyhub.providers.delivery.gateway import DeliveryContext, DeliveryReceipt
from notifyhub.services.notifications.recipients import ResolvedRecipient, resolve_recipient
from notifyhub.services.notifications.templates import render_event
from notifyhub.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

SKIP_NO_ESCALATION = "no escalation recipient configured"
SKIP_AUTO_SEND_DISABLED = "auto-send disabled"


class Gateway(Protocol):
    async def deliver(
        self, recipient: str, message: str, context: DeliveryContext | None = None
    ) -> DeliveryReceipt: ...


class AuditSink(Protocol):
    async def record(self, attempt: NotificationAttempt) -> bool: ...


class EscalationLookup(Protocol):
    async def resolve_escalation_recipient(self, tenant_id: str | None) -> str | None: ...


@dataclass(frozen=True)
class RoutingPolicy:
    notify_statuses: frozenset[str]
    urgent_default_recipient: str | None = None
    urgent_auto_send_enabled: bool = False
    dashboard_url: str = "http://localhost:3000"
    locale: str = "id"

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> RoutingPolicy:
        settings = settings or get_settings()
        default_recipient = (settings.urgent_default_recipient or "").strip() or None
        return cls(
            notify_statuses=settings.notify_status_set,
            urgent_default_recipient=default_recipient,
            urgent_auto_send_enabled=settings.urgent_auto_send_enabled,
            dashboard_url=settings.dashboard_url,
            locale=settings.notify_locale,
        )

    def should_notify_status(self, status: str) -> bool:
        return status.strip().upper() in self.notify_statuses


class EventRouter:
    """Turns one consumed message into at most one delivery and exactly one audit record.

    Business skips and delivery failures are terminal and acknowledged. Only
    undecodable payloads are dropped, and only unexpected exceptions escape to
    the broker, which requeues the message.
    """

    def __init__(
        self,
        *,
        gateway: Gateway,
        audit: AuditSink,
        tenant_resolver: EscalationLookup,
        policy: RoutingPolicy,
    ) -> None:
        self._gateway = gateway
        self._audit = audit
        self._tenant_resolver = tenant_resolver
        self._policy = policy

    async def handle(self, routing_key: str, body: bytes | str) -> MessageOutcome:
        try:
            event = parse_event(routing_key, body)
        except EventDecodeError as exc:
            increment_counter("events_dropped_total")
            logger.warning("event_dropped routing_key=%s reason=%s", routing_key, exc)
            return MessageOutcome.NACK_DROP
        if event is None:
            increment_counter("events_unrouted_total")
            logger.warning("event_unrouted routing_key=%s", routing_key)
            return MessageOutcome.ACK

        increment_counter(f"events_received_total.{event.notification_type}")
        logger.info(
            "event_received routing_key=%s type=%s resource_id=%s tenant_id=%s",
            routing_key,
            event.notification_type,
            event.resource_id,
            event.tenant_id,
        )
        if isinstance(event, UrgentAlert):
            await self._handle_urgent(event)
        else:
            await self._handle_citizen_event(event)
        return MessageOutcome.ACK

    async def _handle_citizen_event(self, event: DomainEvent) -> None:
        resolution = resolve_recipient(event)
        if not isinstance(resolution, ResolvedRecipient):
            await self._record(
                event,
                status="skipped",
                channel=resolution.channel or DEFAULT_CHANNEL_KIND.value,
                recipient_id=None,
                message_text="",
                error_detail=resolution.reason,
            )
            return

        if isinstance(event, StatusChanged) and not self._policy.should_notify_status(event.status):
            await self._record(
                event,
                status="skipped",
                channel=resolution.channel_kind.value,
                recipient_id=resolution.recipient_id,
                message_text="",
                error_detail=f"status '{event.status}' is not notify-worthy",
            )
            return

        message = render_event(event, dashboard_url=self._policy.dashboard_url, locale=self._policy.locale)
        if not resolution.channel_kind.supports_push:
            # Pull channels read the stored record instead of receiving a push.
            await self._record(
                event,
                status="skipped",
                channel=resolution.channel_kind.value,
                recipient_id=resolution.recipient_id,
                message_text=message,
                error_detail=f"channel {resolution.channel_kind.value} does not support push",
            )
            return

        await self._deliver(event, resolution.recipient_id, message, channel=resolution.channel_kind.value)

    async def _handle_urgent(self, event: UrgentAlert) -> None:
        # Urgent alerts go to the tenant's escalation contact, never the reporter.
        message = render_event(event, dashboard_url=self._policy.dashboard_url, locale=self._policy.locale)
        recipient = await self._tenant_resolver.resolve_escalation_recipient(event.tenant_id)
        if recipient is None:
            recipient = self._policy.urgent_default_recipient
        channel = DEFAULT_CHANNEL_KIND.value
        if recipient is None:
            await self._record(
                event,
                status="skipped",
                channel=channel,
                recipient_id=None,
                message_text=message,
                error_detail=SKIP_NO_ESCALATION,
            )
            return
        if not self._policy.urgent_auto_send_enabled:
            await self._record(
                event,
                status="skipped",
                channel=channel,
                recipient_id=recipient,
                message_text=message,
                error_detail=SKIP_AUTO_SEND_DISABLED,
            )
            return
        await self._deliver(event, recipient, message, channel=channel)

    async def _deliver(self, event: DomainEvent, recipient: str, message: str, *, channel: str) -> None:
        context = DeliveryContext(tenant_id=event.tenant_id, notification_type=event.notification_type)
        try:
            receipt = await self._gateway.deliver(recipient, message, context)
        except DeliveryError as exc:
            await self._record(
                event,
                status="failed",
                channel=channel,
                recipient_id=recipient,
                message_text=message,
                error_detail=exc.describe(),
            )
            return
        await self._record(
            event,
            status="sent",
            channel=channel,
            recipient_id=recipient,
            message_text=message,
            provider_message_id=receipt.message_id,
        )

    async def _record(
        self,
        event: DomainEvent,
        *,
        status: AttemptStatus,
        channel: str,
        recipient_id: str | None,
        message_text: str,
        error_detail: str | None = None,
        provider_message_id: str | None = None,
    ) -> None:
        attempt = NotificationAttempt(
            channel=channel,
            recipient_id=recipient_id,
            tenant_id=event.tenant_id,
            message_text=message_text,
            notification_type=event.notification_type,
            status=status,
            error_detail=error_detail,
            provider_message_id=provider_message_id,
        )
        log = logger.info if status == "sent" else logger.warning
        log(
            "notification_%s type=%s resource_id=%s recipient=%s detail=%s",
            status,
            event.notification_type,
            event.resource_id,
            recipient_id,
            error_detail,
        )
        await self._audit.record(attempt)
