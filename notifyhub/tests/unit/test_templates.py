from __future__ import annotations

import pytest

from notifyhub.domain.events import ResourceCreated, StatusChanged, UrgentAlert
from notifyhub.services.notifications.templates import (
    format_timestamp,
    render_event,
    render_resource_created,
    render_status_changed,
    render_urgent_alert,
)


def _status(status: str, **extra) -> StatusChanged:
    return StatusChanged.model_validate({"complaint_id": "LAP-20260301-001", "status": status, **extra})


def _urgent(**extra) -> UrgentAlert:
    payload = {
        "complaint_id": "LAP-20260301-009",
        "kategori": "banjir",
        "deskripsi": "Water rising near the school",
        "created_at": "2026-03-05T14:07:00+07:00",
        **extra,
    }
    return UrgentAlert.model_validate(payload)


def test_complaint_created_mentions_id_and_category() -> None:
    event = ResourceCreated.model_validate(
        {"complaint_id": "LAP-1", "kategori": "jalan_rusak", "resource_type": "complaint"}
    )
    message = render_resource_created(event)
    assert "*Report Received*" in message
    assert "LAP-1" in message
    assert "damaged road" in message


def test_service_request_mentions_service_name() -> None:
    event = ResourceCreated.model_validate(
        {"request_number": "LAY-7", "service_name": "Domicile letter", "resource_type": "service_request"}
    )
    message = render_resource_created(event)
    assert "Service Request Received" in message
    assert "Domicile letter" in message


@pytest.mark.parametrize(
    ("status", "headline"),
    [
        ("DONE", "Report Completed"),
        ("selesai", "Report Completed"),
        ("PROCESS", "Report In Progress"),
        ("ditolak", "Report Rejected"),
        ("CANCELLED", "Report Canceled"),
        ("baru", "Report Received"),
    ],
)
def test_status_aliases_share_phrases(status: str, headline: str) -> None:
    assert f"*{headline}*" in render_status_changed(_status(status))


def test_unknown_status_renders_generic_update() -> None:
    message = render_status_changed(_status("ESCALATED"))
    assert "Status Updated" in message
    assert "ESCALATED" in message


def test_rejection_includes_admin_notes_as_reason() -> None:
    message = render_status_changed(_status("REJECT", admin_notes="Outside village boundary"))
    assert "Reason: _Outside village boundary_" in message


def test_service_request_status_uses_request_label() -> None:
    event = StatusChanged.model_validate({"request_number": "LAY-7", "status": "DONE"})
    assert event.resource_type == "service_request"
    assert "Service Request Completed" in render_status_changed(event)


def test_reservation_status_uses_reservation_label() -> None:
    event = StatusChanged.model_validate({"type": "reservation", "reservation_id": "RSV-1", "status": "DONE"})
    assert event.resource_type == "reservation"
    assert event.resource_id == "RSV-1"
    assert "Reservation Completed" in render_status_changed(event)


def test_urgent_alert_includes_location_and_dashboard_link() -> None:
    message = render_urgent_alert(
        _urgent(alamat="Jl. Merdeka 1", rt_rw="RT 01/RW 02"),
        dashboard_url="https://dash.example/",
        locale="en",
    )
    assert "*Category:* Flooding" in message
    assert "*Address:* Jl. Merdeka 1" in message
    assert "*Neighborhood:* RT 01/RW 02" in message
    assert "March 05, 2026 14:07 (UTC+07:00)" in message
    assert "https://dash.example/dashboard/laporan" in message


def test_urgent_alert_omits_missing_location_lines() -> None:
    message = render_urgent_alert(_urgent(), dashboard_url="https://dash.example")
    assert "Address" not in message
    assert "Neighborhood" not in message


def test_format_timestamp_keeps_source_offset() -> None:
    assert format_timestamp("2026-03-05T14:07:00+07:00", "id") == "05 Maret 2026 14.07 (UTC+07:00)"
    assert format_timestamp("2026-12-31T23:59:00Z", "en") == "December 31, 2026 23:59 (UTC+00:00)"


def test_format_timestamp_naive_and_invalid_inputs() -> None:
    assert format_timestamp("2026-01-02T08:30:00", "id") == "02 Januari 2026 08.30"
    assert format_timestamp("yesterday", "id") == "yesterday"


def test_render_event_is_deterministic() -> None:
    event = _urgent()
    first = render_event(event, dashboard_url="https://dash.example", locale="id")
    second = render_event(event, dashboard_url="https://dash.example", locale="id")
    assert first == second
    assert render_event(_status("DONE"), dashboard_url="x") == render_status_changed(_status("DONE"))
