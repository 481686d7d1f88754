from __future__ import annotations

import json

import pytest

from notifyhub.core.config import Settings
from notifyhub.core.errors import DeliveryHTTPError
from notifyhub.domain.events import MessageOutcome
from notifyhub.services.notifications.router import (
    SKIP_AUTO_SEND_DISABLED,
    SKIP_NO_ESCALATION,
    EventRouter,
    RoutingPolicy,
)
from notifyhub.services.telemetry import counters_snapshot
from notifyhub.tests.utils.fakes import FakeAudit, FakeGateway, FakeTenantResolver


def _router(
    *,
    gateway: FakeGateway | None = None,
    resolver: FakeTenantResolver | None = None,
    **policy,
) -> tuple[EventRouter, FakeGateway, FakeAudit]:
    gateway = gateway or FakeGateway()
    audit = FakeAudit()
    router = EventRouter(
        gateway=gateway,
        audit=audit,
        tenant_resolver=resolver or FakeTenantResolver(),
        policy=RoutingPolicy(
            notify_statuses=policy.pop("notify_statuses", frozenset({"DONE", "REJECT"})),
            dashboard_url="https://dash.example",
            **policy,
        ),
    )
    return router, gateway, audit


def _body(**payload) -> bytes:
    return json.dumps(payload).encode("utf-8")


def _urgent_body(**extra) -> bytes:
    return _body(
        complaint_id="LAP-9",
        kategori="banjir",
        deskripsi="flooding",
        created_at="2026-03-05T14:07:00+07:00",
        village_id="v-1",
        **extra,
    )


@pytest.mark.asyncio
async def test_malformed_json_is_dropped() -> None:
    router, gateway, audit = _router()
    outcome = await router.handle("govconnect.complaint.created", b"{not json")
    assert outcome is MessageOutcome.NACK_DROP
    assert audit.attempts == []
    assert gateway.calls == []
    assert counters_snapshot()["events_dropped_total"] == 1


@pytest.mark.asyncio
async def test_schema_violation_is_dropped() -> None:
    router, _gateway, audit = _router()
    outcome = await router.handle("govconnect.status.updated", _body(complaint_id="LAP-1"))
    assert outcome is MessageOutcome.NACK_DROP
    assert audit.attempts == []


@pytest.mark.asyncio
async def test_unknown_routing_key_is_acked_without_audit() -> None:
    router, gateway, audit = _router()
    outcome = await router.handle("govconnect.ai.reply", _body(wa_user_id="62811"))
    assert outcome is MessageOutcome.ACK
    assert audit.attempts == []
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_complaint_created_is_delivered_and_audited() -> None:
    router, gateway, audit = _router()
    outcome = await router.handle(
        "govconnect.complaint.created",
        _body(complaint_id="LAP-1", kategori="sampah", wa_user_id="62811", village_id="v-1"),
    )
    assert outcome is MessageOutcome.ACK
    assert len(gateway.calls) == 1
    recipient, message, context = gateway.calls[0]
    assert recipient == "62811"
    assert "LAP-1" in message
    assert context.notification_type == "complaint_created"
    assert context.tenant_id == "v-1"

    [attempt] = audit.attempts
    assert attempt.status == "sent"
    assert attempt.channel == "WHATSAPP"
    assert attempt.notification_type == "complaint_created"
    assert attempt.provider_message_id == "msg-1"
    assert attempt.message_text == message


@pytest.mark.asyncio
async def test_ticket_created_is_delivered_as_generic_resource() -> None:
    router, gateway, audit = _router()
    outcome = await router.handle(
        "govconnect.ticket.created",
        _body(ticket_id="TIK-20260301-001", wa_user_id="62811"),
    )
    assert outcome is MessageOutcome.ACK
    [(recipient, message, context)] = gateway.calls
    assert recipient == "62811"
    assert "TIK-20260301-001" in message
    assert context.notification_type == "resource_created"
    assert audit.attempts[0].status == "sent"


@pytest.mark.asyncio
async def test_status_outside_notify_set_is_skipped() -> None:
    router, gateway, audit = _router()
    outcome = await router.handle(
        "govconnect.status.updated",
        _body(complaint_id="LAP-1", status="PROCESS", wa_user_id="62811"),
    )
    assert outcome is MessageOutcome.ACK
    assert gateway.calls == []
    [attempt] = audit.attempts
    assert attempt.status == "skipped"
    assert "PROCESS" in attempt.error_detail


@pytest.mark.asyncio
async def test_status_filter_is_case_insensitive() -> None:
    router, gateway, audit = _router()
    await router.handle("govconnect.status.updated", _body(complaint_id="LAP-1", status="done", wa_user_id="62811"))
    assert len(gateway.calls) == 1
    assert audit.attempts[0].notification_type == "status_updated"


@pytest.mark.asyncio
async def test_reservation_status_update_is_delivered_and_audited() -> None:
    router, gateway, audit = _router()
    outcome = await router.handle(
        "govconnect.status.updated",
        _body(type="reservation", wa_user_id="62811", reservation_id="RSV-1", status="DONE"),
    )
    assert outcome is MessageOutcome.ACK
    [(recipient, message, _context)] = gateway.calls
    assert recipient == "62811"
    assert "Reservation Completed" in message
    assert "RSV-1" in message
    [attempt] = audit.attempts
    assert attempt.status == "sent"
    assert attempt.notification_type == "status_updated"


@pytest.mark.asyncio
async def test_non_push_channel_is_skipped_with_rendered_text() -> None:
    router, gateway, audit = _router()
    await router.handle(
        "govconnect.service.requested",
        _body(request_number="LAY-1", channel="WEBCHAT", channel_identifier="session-1"),
    )
    assert gateway.calls == []
    [attempt] = audit.attempts
    assert attempt.status == "skipped"
    assert attempt.channel == "WEBCHAT"
    assert attempt.recipient_id == "session-1"
    assert "LAY-1" in attempt.message_text
    assert attempt.notification_type == "service_requested"


@pytest.mark.asyncio
async def test_legacy_identifier_on_non_push_channel_is_not_pushed() -> None:
    router, gateway, audit = _router()
    outcome = await router.handle(
        "govconnect.complaint.created",
        _body(complaint_id="LAP-1", channel="WEBCHAT", wa_user_id="sess-9"),
    )
    assert outcome is MessageOutcome.ACK
    assert gateway.calls == []
    [attempt] = audit.attempts
    assert attempt.status == "skipped"
    assert attempt.channel == "WEBCHAT"
    assert attempt.recipient_id == "sess-9"
    assert "LAP-1" in attempt.message_text


@pytest.mark.asyncio
async def test_legacy_identifier_on_unknown_channel_is_skipped() -> None:
    router, gateway, audit = _router()
    outcome = await router.handle(
        "govconnect.complaint.created",
        _body(complaint_id="LAP-1", channel="TELEGRAM", wa_user_id="62811"),
    )
    assert outcome is MessageOutcome.ACK
    assert gateway.calls == []
    [attempt] = audit.attempts
    assert attempt.status == "skipped"
    assert attempt.channel == "TELEGRAM"
    assert attempt.recipient_id is None
    assert "TELEGRAM" in attempt.error_detail


@pytest.mark.asyncio
async def test_missing_recipient_is_skipped() -> None:
    router, gateway, audit = _router()
    await router.handle("govconnect.complaint.created", _body(complaint_id="LAP-1"))
    assert gateway.calls == []
    [attempt] = audit.attempts
    assert attempt.status == "skipped"
    assert attempt.recipient_id is None
    assert attempt.error_detail == "no recipient identifier"


@pytest.mark.asyncio
async def test_delivery_failure_is_audited_and_acked() -> None:
    error = DeliveryHTTPError("rejected", status_code=400, body="invalid recipient")
    router, _gateway, audit = _router(gateway=FakeGateway(error=error))
    outcome = await router.handle(
        "govconnect.complaint.created",
        _body(complaint_id="LAP-1", wa_user_id="62811"),
    )
    assert outcome is MessageOutcome.ACK
    [attempt] = audit.attempts
    assert attempt.status == "failed"
    assert attempt.error_detail == "HTTP 400: invalid recipient"


@pytest.mark.asyncio
async def test_unexpected_errors_propagate() -> None:
    router, _gateway, audit = _router(gateway=FakeGateway(error=RuntimeError("bug")))
    with pytest.raises(RuntimeError):
        await router.handle("govconnect.complaint.created", _body(complaint_id="LAP-1", wa_user_id="62811"))
    assert audit.attempts == []


@pytest.mark.asyncio
async def test_urgent_without_recipient_is_skipped() -> None:
    router, gateway, audit = _router(urgent_auto_send_enabled=True)
    outcome = await router.handle("govconnect.urgent.alert", _urgent_body())
    assert outcome is MessageOutcome.ACK
    assert gateway.calls == []
    [attempt] = audit.attempts
    assert attempt.status == "skipped"
    assert attempt.error_detail == SKIP_NO_ESCALATION
    assert attempt.notification_type == "urgent_alert"


@pytest.mark.asyncio
async def test_urgent_with_auto_send_disabled_is_skipped() -> None:
    router, gateway, audit = _router(urgent_default_recipient="62800")
    await router.handle("govconnect.urgent.alert", _urgent_body())
    assert gateway.calls == []
    [attempt] = audit.attempts
    assert attempt.error_detail == SKIP_AUTO_SEND_DISABLED
    assert attempt.recipient_id == "62800"
    assert "URGENT" in attempt.message_text


@pytest.mark.asyncio
async def test_urgent_prefers_tenant_override() -> None:
    resolver = FakeTenantResolver(recipient="62877")
    router, gateway, audit = _router(
        resolver=resolver,
        urgent_default_recipient="62800",
        urgent_auto_send_enabled=True,
    )
    await router.handle("govconnect.urgent.alert", _urgent_body(wa_user_id="62811"))
    assert resolver.lookups == ["v-1"]
    [(recipient, _message, context)] = gateway.calls
    assert recipient == "62877"
    assert context.notification_type == "urgent_alert"
    assert audit.attempts[0].status == "sent"


@pytest.mark.asyncio
async def test_urgent_falls_back_to_default_recipient() -> None:
    router, gateway, _audit = _router(urgent_default_recipient="62800", urgent_auto_send_enabled=True)
    await router.handle("govconnect.urgent.alert", _urgent_body())
    assert gateway.calls[0][0] == "62800"


@pytest.mark.asyncio
async def test_urgent_bypasses_status_filter() -> None:
    router, gateway, _audit = _router(
        notify_statuses=frozenset(),
        urgent_default_recipient="62800",
        urgent_auto_send_enabled=True,
    )
    await router.handle("govconnect.urgent.alert", _urgent_body(status="PROCESS"))
    assert len(gateway.calls) == 1


def test_policy_from_settings_normalizes_values() -> None:
    policy = RoutingPolicy.from_settings(
        Settings(notify_statuses="done, Reject", urgent_default_recipient="  ", notify_locale="en")
    )
    assert policy.notify_statuses == frozenset({"DONE", "REJECT"})
    assert policy.urgent_default_recipient is None
    assert policy.should_notify_status(" reject ")


@pytest.mark.asyncio
async def test_urgent_override_is_not_sent_when_auto_send_disabled() -> None:
    resolver = FakeTenantResolver(recipient="62877")
    router, gateway, audit = _router(resolver=resolver)
    await router.handle("govconnect.urgent.alert", _urgent_body())
    assert gateway.calls == []
    [attempt] = audit.attempts
    assert attempt.status == "skipped"
    assert attempt.error_detail == SKIP_AUTO_SEND_DISABLED
    assert attempt.recipient_id == "62877"
