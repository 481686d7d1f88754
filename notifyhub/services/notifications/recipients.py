from __future__ import annotations

from dataclasses import dataclass

from notifyhub.domain.events import DEFAULT_CHANNEL_KIND, ChannelKind, EventEnvelope


@dataclass(frozen=True)
class ResolvedRecipient:
    tenant_id: str | None
    channel_kind: ChannelKind
    recipient_id: str


@dataclass(frozen=True)
class UnresolvedRecipient:
    tenant_id: str | None
    reason: str
    # Raw channel value kept for the audit trail.
    channel: str | None = None


RecipientResolution = ResolvedRecipient | UnresolvedRecipient


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _parse_channel(raw: str | None) -> ChannelKind | None:
    cleaned = _clean(raw)
    if cleaned is None:
        return DEFAULT_CHANNEL_KIND
    try:
        return ChannelKind(cleaned.upper())
    except ValueError:
        return None


def resolve_recipient(event: EventEnvelope) -> RecipientResolution:
    """Resolve who an event notifies and over which channel.

    Precedence: the explicit ``channel_identifier``, then the legacy single
    identifier. Either way ``channel`` picks the kind, defaulting to the
    push-capable one; an unknown channel value is unresolved.
    """
    tenant_id = _clean(event.tenant_id)
    identifier = _clean(event.channel_identifier) or _clean(event.legacy_recipient_id)
    if identifier is not None:
        kind = _parse_channel(event.channel)
        if kind is None:
            return UnresolvedRecipient(
                tenant_id=tenant_id,
                reason=f"unsupported channel '{event.channel}'",
                channel=event.channel,
            )
        return ResolvedRecipient(tenant_id=tenant_id, channel_kind=kind, recipient_id=identifier)

    return UnresolvedRecipient(tenant_id=tenant_id, reason="no recipient identifier", channel=_clean(event.channel))
