from __future__ import annotations

from enum import Enum
import json
from typing import Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, model_validator

from notifyhub.core.errors import EventDecodeError


class MessageOutcome(str, Enum):
    # Broker acknowledgement decided by the router for each consumed message.
    ACK = "ack"
    NACK_REQUEUE = "nack_requeue"
    NACK_DROP = "nack_drop"


class ChannelKind(str, Enum):
    WHATSAPP = "WHATSAPP"
    WEBCHAT = "WEBCHAT"

    @property
    def supports_push(self) -> bool:
        return self is ChannelKind.WHATSAPP


DEFAULT_CHANNEL_KIND = ChannelKind.WHATSAPP

_RESOURCE_ID_ALIASES = AliasChoices(
    "resource_id", "complaint_id", "request_number", "ticket_id", "reservation_id"
)


class EventEnvelope(BaseModel):
    # Fields shared by every event kind; recipient fields are resolved later, not validated here.
    model_config = ConfigDict(populate_by_name=True, extra="ignore", coerce_numbers_to_str=True, frozen=True)

    tenant_id: str | None = Field(default=None, validation_alias=AliasChoices("tenant_id", "village_id"))
    channel: str | None = None
    channel_identifier: str | None = None
    legacy_recipient_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("legacy_recipient_id", "wa_user_id", "user_id"),
    )


class ResourceCreated(EventEnvelope):
    kind: Literal["resource_created"] = "resource_created"
    resource_type: Literal["complaint", "service_request", "resource"] = "resource"
    resource_id: str = Field(min_length=1, validation_alias=_RESOURCE_ID_ALIASES)
    category: str | None = Field(default=None, validation_alias=AliasChoices("category", "kategori"))
    service_name: str | None = None

    @property
    def notification_type(self) -> str:
        return {
            "complaint": "complaint_created",
            "service_request": "service_requested",
        }.get(self.resource_type, "resource_created")


class StatusChanged(EventEnvelope):
    kind: Literal["status_changed"] = "status_changed"
    resource_type: Literal["complaint", "service_request", "reservation", "resource"] = "resource"
    resource_id: str = Field(min_length=1, validation_alias=_RESOURCE_ID_ALIASES)
    status: str = Field(min_length=1)
    admin_notes: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _infer_resource_type(cls, data: Any) -> Any:
        if not isinstance(data, dict) or data.get("resource_type"):
            return data
        if data.get("complaint_id"):
            return {**data, "resource_type": "complaint"}
        if data.get("reservation_id") or data.get("type") == "reservation":
            return {**data, "resource_type": "reservation"}
        if data.get("request_number") or data.get("ticket_id"):
            return {**data, "resource_type": "service_request"}
        return data

    @property
    def notification_type(self) -> str:
        return "status_updated"


class UrgentAlert(EventEnvelope):
    kind: Literal["urgent_alert"] = "urgent_alert"
    resource_id: str = Field(min_length=1, validation_alias=_RESOURCE_ID_ALIASES)
    category: str = Field(validation_alias=AliasChoices("category", "kategori"))
    description: str = Field(default="", validation_alias=AliasChoices("description", "deskripsi"))
    address: str | None = Field(default=None, validation_alias=AliasChoices("address", "alamat"))
    neighborhood: str | None = Field(default=None, validation_alias=AliasChoices("neighborhood", "rt_rw"))
    created_at: str
    alert_type: str | None = Field(default=None, validation_alias=AliasChoices("alert_type", "type"))

    @property
    def notification_type(self) -> str:
        return "urgent_alert"


DomainEvent = Union[ResourceCreated, StatusChanged, UrgentAlert]

# Ordered by specificity: the first matching suffix wins.
_ROUTING_SUFFIXES: tuple[tuple[str, type[EventEnvelope], str | None], ...] = (
    (".urgent.alert", UrgentAlert, None),
    (".status.updated", StatusChanged, None),
    (".service.requested", ResourceCreated, "service_request"),
    (".complaint.created", ResourceCreated, "complaint"),
    (".created", ResourceCreated, "resource"),
)


def decode_payload(body: bytes | str) -> dict[str, Any]:
    try:
        text = body.decode("utf-8") if isinstance(body, (bytes, bytearray)) else body
        payload = json.loads(text)
    except (UnicodeDecodeError, ValueError) as exc:
        raise EventDecodeError(f"invalid JSON payload: {exc}") from exc
    if not isinstance(payload, dict):
        raise EventDecodeError("event payload must be a JSON object")
    return payload


def parse_event(routing_key: str, body: bytes | str) -> DomainEvent | None:
    """Decode a raw message into a domain event.

    Returns None when the routing key maps to no known event kind. Raises
    EventDecodeError when the body is not JSON or fails schema validation,
    since redelivering such a message can never succeed.
    """
    payload = decode_payload(body)
    for suffix, model, resource_type in _ROUTING_SUFFIXES:
        if not routing_key.endswith(suffix):
            continue
        if resource_type is not None:
            payload = {**payload, "resource_type": resource_type}
        try:
            return model.model_validate(payload)
        except ValidationError as exc:
            raise EventDecodeError(f"invalid {model.__name__} payload: {exc.error_count()} error(s)") from exc
    return None
