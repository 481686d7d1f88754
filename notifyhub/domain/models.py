from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class NotificationLog(Base):
    __tablename__ = "notification_logs"
    __table_args__ = (
        Index("ix_notification_logs_recipient_created", "recipient_id", "created_at"),
    )

    # Attempt id generated by the worker so retries of the insert stay idempotent.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    channel: Mapped[str] = mapped_column(String(32))
    # Null only when the event never resolved a recipient.
    recipient_id: Mapped[str | None] = mapped_column(String, nullable=True)
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    message_text: Mapped[str] = mapped_column(Text, default="")
    notification_type: Mapped[str] = mapped_column(String, index=True)
    # sent | failed | skipped
    status: Mapped[str] = mapped_column(String(16), index=True)
    error_detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_message_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
