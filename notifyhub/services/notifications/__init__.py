from notifyhub.services.notifications.recipients import (
    RecipientResolution,
    ResolvedRecipient,
    UnresolvedRecipient,
    resolve_recipient,
)
from notifyhub.services.notifications.router import EventRouter, RoutingPolicy
from notifyhub.services.notifications.templates import (
    format_timestamp,
    render_event,
    render_resource_created,
    render_status_changed,
    render_urgent_alert,
)

__all__ = [
    "EventRouter",
    "RecipientResolution",
    "ResolvedRecipient",
    "RoutingPolicy",
    "UnresolvedRecipient",
    "format_timestamp",
    "render_event",
    "render_resource_created",
    "render_status_changed",
    "render_urgent_alert",
    "resolve_recipient",
]
