from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal
from uuid import uuid4

AttemptStatus = Literal["sent", "failed", "skipped"]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class NotificationAttempt:
    # One immutable audit entry per event that reached the delivery decision point.
    channel: str
    recipient_id: str | None
    tenant_id: str | None
    message_text: str
    notification_type: str
    status: AttemptStatus
    error_detail: str | None = None
    provider_message_id: str | None = None
    id: str = field(default_factory=lambda: uuid4().hex)
    created_at: datetime = field(default_factory=_utc_now)
