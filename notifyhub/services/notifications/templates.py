from __future__ import annotations

from datetime import datetime

from notifyhub.domain.events import DomainEvent, ResourceCreated, StatusChanged, UrgentAlert

# Pure rendering only: nothing in this module performs I/O or reads the clock.

CATEGORY_LABELS: dict[str, str] = {
    "jalan_rusak": "Damaged Road",
    "lampu_mati": "Street Light Out",
    "sampah": "Uncollected Garbage",
    "drainase": "Blocked Drainage",
    "pohon_tumbang": "Fallen Tree",
    "fasilitas_rusak": "Damaged Public Facility",
    "banjir": "Flooding",
    "lainnya": "Other",
}

_RESOURCE_LABELS = {
    "complaint": "Report",
    "service_request": "Service Request",
    "reservation": "Reservation",
    "resource": "Request",
}

# Both status vocabularies in use upstream map onto one phrase key.
STATUS_ALIASES: dict[str, str] = {
    "DONE": "completed",
    "SELESAI": "completed",
    "PROCESS": "in_progress",
    "PROSES": "in_progress",
    "REJECT": "rejected",
    "DITOLAK": "rejected",
    "CANCELED": "canceled",
    "CANCELLED": "canceled",
    "DIBATALKAN": "canceled",
    "OPEN": "received",
    "BARU": "received",
    "PENDING": "pending",
}

_STATUS_HEADLINES = {
    "completed": "{label} Completed",
    "in_progress": "{label} In Progress",
    "rejected": "{label} Rejected",
    "canceled": "{label} Canceled",
    "received": "{label} Received",
    "pending": "{label} Pending",
}

_STATUS_BODIES = {
    "completed": "*{id}* has been completed.",
    "in_progress": "*{id}* is being handled by our officers.",
    "rejected": "*{id}* could not be processed.",
    "canceled": "*{id}* has been canceled.",
    "received": "*{id}* has been received.",
    "pending": "*{id}* is being verified.",
}

_MONTH_NAMES = {
    "en": (
        "January", "February", "March", "April", "May", "June",
        "July", "August", "September", "October", "November", "December",
    ),
    "id": (
        "Januari", "Februari", "Maret", "April", "Mei", "Juni",
        "Juli", "Agustus", "September", "Oktober", "November", "Desember",
    ),
}


def category_label(category: str | None) -> str:
    if not category:
        return CATEGORY_LABELS["lainnya"]
    return CATEGORY_LABELS.get(category, category)


def format_timestamp(raw: str, locale: str = "id") -> str:
    """Format an ISO-8601 timestamp for display without changing its timezone.

    Aware timestamps keep their own offset, which is appended to the output;
    naive timestamps are rendered as-is. Unparseable input is returned verbatim.
    """
    try:
        moment = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    except ValueError:
        return raw
    months = _MONTH_NAMES.get(locale, _MONTH_NAMES["en"])
    month = months[moment.month - 1]
    if locale == "id":
        text = f"{moment.day:02d} {month} {moment.year} {moment.hour:02d}.{moment.minute:02d}"
    else:
        text = f"{month} {moment.day:02d}, {moment.year} {moment.hour:02d}:{moment.minute:02d}"
    offset = moment.utcoffset()
    if offset is not None:
        total_minutes = int(offset.total_seconds() // 60)
        sign = "+" if total_minutes >= 0 else "-"
        hours, minutes = divmod(abs(total_minutes), 60)
        text += f" (UTC{sign}{hours:02d}:{minutes:02d})"
    return text


def render_resource_created(event: ResourceCreated) -> str:
    if event.resource_type == "service_request":
        service = event.service_name or "the requested service"
        return (
            "*Service Request Received*\n\n"
            f"No: *{event.resource_id}*\n"
            f"Service: {service}\n\n"
            "Please bring this number to the office. We will notify you once it is ready."
        )
    label = _RESOURCE_LABELS.get(event.resource_type, "Request")
    lines = [f"*{label} Received*", "", f"No: *{event.resource_id}*"]
    if event.category:
        lines.append(f"Category: {category_label(event.category).lower()}")
    lines.extend(["", "We will follow up shortly and notify you when it is resolved."])
    return "\n".join(lines)


def render_status_changed(event: StatusChanged) -> str:
    label = _RESOURCE_LABELS.get(event.resource_type, "Request")
    phrase = STATUS_ALIASES.get(event.status.strip().upper())
    if phrase is None:
        # Unknown vocabulary still produces a readable update.
        return f"*{label} Status Updated*\n\n*{event.resource_id}*: {event.status}"
    message = (
        f"*{_STATUS_HEADLINES[phrase].format(label=label)}*\n\n"
        f"{_STATUS_BODIES[phrase].format(id=event.resource_id)}"
    )
    if event.admin_notes:
        prefix = "Reason: " if phrase == "rejected" else ""
        message += f"\n\n{prefix}_{event.admin_notes}_"
    if phrase == "completed":
        message += "\n\nThank you for using our service."
    return message


def render_urgent_alert(event: UrgentAlert, *, dashboard_url: str, locale: str = "id") -> str:
    lines = [
        "*URGENT REPORT*",
        "",
        f"*ID:* {event.resource_id}",
        f"*Category:* {category_label(event.category)}",
        f"*Time:* {format_timestamp(event.created_at, locale)}",
    ]
    if event.address:
        lines.append(f"*Address:* {event.address}")
    if event.neighborhood:
        lines.append(f"*Neighborhood:* {event.neighborhood}")
    lines.extend(["", "*Description:*", event.description or "-", "", "*Please follow up immediately!*"])
    lines.extend(["", f"Open dashboard: {dashboard_url.rstrip('/')}/dashboard/laporan"])
    return "\n".join(lines)


def render_event(event: DomainEvent, *, dashboard_url: str, locale: str = "id") -> str:
    if isinstance(event, UrgentAlert):
        return render_urgent_alert(event, dashboard_url=dashboard_url, locale=locale)
    if isinstance(event, StatusChanged):
        return render_status_changed(event)
    return render_resource_created(event)
